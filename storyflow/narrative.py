"""Narrative flows — the story lifecycle layered on the flow registry.

Per session the story moves through:

    Uninitialized → Described → Begun → InProgress* → Concluded

  descriptionFlow    agree on a premise (repeatable; clearSession restarts)
  beginStoryFlow     opening parts, primary objective, ordered milestones
  continueStoryFlow  one turn: player's choice → new parts, milestone check,
                     progress; achieving the last milestone writes the ending
  genImgFlow         story text → scene description → image data URI

Every flow talks to the model through the injected TextGenerator, records
both sides of the exchange in the session history, and recovers structured
data with parse_partial_json. Provider, parse and validation failures never
leave a flow: each one degrades to the fallback payload documented on it.

Narrative bookkeeping lives in session state under the keys below.
"""

from __future__ import annotations

import logging
from typing import NamedTuple

from pydantic import ValidationError

from storyflow.errors import ConfigError, ProviderFailure
from storyflow.extract import ParseFailure, parse_partial_json, strip_reasoning
from storyflow.flows import FlowContext, FlowDefinition, FlowRegistry
from storyflow.images import ImageGenerator, ImageRequest
from storyflow.llm import TextGenerator
from storyflow.models import (
    NEUTRAL_RATING,
    ContinueDetail,
    ContinueOutput,
    DescriptionInput,
    DescriptionOutput,
    ImageInput,
    StoryDetail,
    StoryInput,
    StoryOutput,
)
from storyflow.prompts import (
    IMAGE_NEGATIVE,
    PromptError,
    begin_story_prompt,
    continue_prompt,
    description_prompt,
    ending_prompt,
    image_description_prompt,
    image_prompt,
    preamble_prompt,
)
from storyflow.sessions import SessionStore

logger = logging.getLogger(__name__)

DESCRIPTION_FLOW = "descriptionFlow"
BEGIN_STORY_FLOW = "beginStoryFlow"
CONTINUE_STORY_FLOW = "continueStoryFlow"
IMAGE_FLOW = "genImgFlow"

# Session state keys
INITIALIZED = "initialized"
PRIMARY_OBJECTIVE = "primaryObjective"
MILESTONES = "milestones"
CURRENT_MILESTONE = "currentMilestone"
CONCLUDED = "concluded"

# Output ceilings (tokens) per call
DESCRIPTION_MAX_TOKENS = 2048
STORY_MAX_TOKENS = 2500
ENDING_MAX_TOKENS = 1000
IMAGE_DESCRIPTION_MAX_TOKENS = 500

IMAGE_SIZE = 512
IMAGE_STEPS = 20

# Reported by a failed continue turn: no new progress was computed.
UNKNOWN_PROGRESS = -1.0

# Anything a flow turns into its fallback payload instead of an error.
RECOVERABLE = (ProviderFailure, ConfigError, ParseFailure, ValidationError, PromptError)

DESCRIPTION_FALLBACK = DescriptionOutput(
    story_premise="",
    next_question="Tell me more about the story",
    premise_options=[],
)


class ProgressStep(NamedTuple):
    milestone: str | None
    progress: float
    concluded: bool


def next_progress(
    milestones: list[str],
    current: str | None,
    achieved: bool,
) -> ProgressStep:
    """Where one turn leaves the milestone pointer and the progress value.

    progress is the position of the current milestone in the sequence
    (index / length). Achieving a milestone moves the pointer to the next one;
    achieving the last one concludes the story at exactly 1. A missing
    sequence or a pointer outside it reports 0 and never advances.
    """
    if not milestones or current not in milestones:
        return ProgressStep(current, 0.0, False)
    index = milestones.index(current)
    total = len(milestones)
    if achieved and index == total - 1:
        return ProgressStep(current, 1.0, True)
    if achieved:
        return ProgressStep(milestones[index + 1], (index + 1) / total, False)
    return ProgressStep(current, index / total, False)


class StoryFlows:
    """Handlers for the four narrative flows, bound to their collaborators."""

    def __init__(
        self,
        store: SessionStore,
        text: TextGenerator,
        images: ImageGenerator,
        *,
        model: str | None = None,
    ) -> None:
        self.store = store
        self.text = text
        self.images = images
        self.model = model

    async def _exchange(self, session_id: str, prompt: str, max_tokens: int) -> str:
        """Send prompt with the session history, then record both sides."""
        history = self.store.get_messages(session_id)
        response = await self.text.generate_with_history(
            history, prompt, model=self.model, max_tokens=max_tokens,
        )
        self.store.add_message(session_id, "user", prompt)
        self.store.add_message(session_id, "assistant", response)
        return response

    def _ensure_session(self, session_id: str) -> None:
        if not self.store.has_session(session_id):
            self.store.create_session(session_id)

    # ------------------------------------------------------------------
    # descriptionFlow
    # ------------------------------------------------------------------

    async def describe(self, data: DescriptionInput, ctx: FlowContext) -> DescriptionOutput:
        """Shape the premise. Falls back to DESCRIPTION_FALLBACK on any failure."""
        sid = ctx.session_id
        if data.clear_session:
            self.store.clear_session(sid)
            self.store.create_session(sid)
            self.store.set_state(sid, INITIALIZED, True)
        else:
            self._ensure_session(sid)

        try:
            if not any(m.role == "system" for m in self.store.get_messages(sid)):
                self.store.add_message(sid, "system", preamble_prompt())
            prompt = description_prompt(data.user_input or "")
            response = await self._exchange(sid, prompt, DESCRIPTION_MAX_TOKENS)
            return DescriptionOutput.model_validate(parse_partial_json(response))
        except RECOVERABLE as e:
            logger.warning("Description flow failed for session %s: %s", sid, e)
            return DESCRIPTION_FALLBACK.model_copy(deep=True)

    # ------------------------------------------------------------------
    # beginStoryFlow
    # ------------------------------------------------------------------

    async def begin(self, data: StoryInput, ctx: FlowContext) -> StoryOutput:
        """Open the story and fix its objective and milestones.

        On failure the session state is left alone and an empty story with
        progress 0 is returned.
        """
        sid = ctx.session_id
        self._ensure_session(sid)
        try:
            response = await self._exchange(sid, begin_story_prompt(data.user_input), STORY_MAX_TOKENS)
            detail = StoryDetail.model_validate(parse_partial_json(response))
        except RECOVERABLE as e:
            logger.warning("Begin-story flow failed for session %s: %s", sid, e)
            return StoryOutput(story_parts=[], options=[], primary_objective="", progress=0)

        self.store.set_state(sid, PRIMARY_OBJECTIVE, detail.primary_objective)
        self.store.set_state(sid, MILESTONES, list(detail.milestones))
        self.store.set_state(sid, CURRENT_MILESTONE, detail.milestones[0] if detail.milestones else None)
        self.store.set_state(sid, CONCLUDED, False)
        logger.info(
            "Story begun for session %s with %d milestones", sid, len(detail.milestones),
        )
        return StoryOutput(
            story_parts=detail.story_parts,
            options=[c.choice for c in detail.choices],
            primary_objective=detail.primary_objective,
            progress=0,
        )

    # ------------------------------------------------------------------
    # continueStoryFlow
    # ------------------------------------------------------------------

    async def continue_story(self, data: StoryInput, ctx: FlowContext) -> ContinueOutput:
        """Play one turn.

        A failed turn reports the stored objective, UNKNOWN_PROGRESS, no parts,
        no options and a neutral rating, and leaves the milestone pointer where
        it was.
        """
        sid = ctx.session_id
        objective = self.store.get_state(sid, PRIMARY_OBJECTIVE) or ""
        try:
            milestone = self.store.get_state(sid, CURRENT_MILESTONE)
            prompt = continue_prompt(data.user_input, milestone)
            response = await self._exchange(sid, prompt, STORY_MAX_TOKENS)
            detail = ContinueDetail.model_validate(parse_partial_json(response))
        except RECOVERABLE as e:
            logger.warning("Continue-story flow failed for session %s: %s", sid, e)
            return ContinueOutput(
                story_parts=[],
                options=[],
                primary_objective=objective,
                progress=UNKNOWN_PROGRESS,
                rating=NEUTRAL_RATING,
            )

        story_parts, progress = await self.advance_progress(
            sid, detail.story_parts, detail.achieved_current_milestone,
        )
        return ContinueOutput(
            story_parts=story_parts,
            options=[c.choice for c in detail.choices],
            primary_objective=self.store.get_state(sid, PRIMARY_OBJECTIVE) or "",
            progress=progress,
            rating=detail.rating or NEUTRAL_RATING,
        )

    async def advance_progress(
        self,
        session_id: str,
        story_parts: list[str],
        achieved: bool,
    ) -> tuple[list[str], float]:
        """Apply one turn's milestone outcome; returns (story_parts, progress).

        Concluding the story appends the generated ending to story_parts. A
        concluded story stays at progress 1 and is not ended a second time.
        """
        if self.store.get_state(session_id, CONCLUDED):
            return story_parts, 1.0

        milestones = self.store.get_state(session_id, MILESTONES) or []
        current = self.store.get_state(session_id, CURRENT_MILESTONE)
        step = next_progress(milestones, current, achieved)

        if step.concluded:
            self.store.set_state(session_id, CONCLUDED, True)
            ending = await self.end_story(session_id)
            logger.info("Story concluded for session %s", session_id)
            return [*story_parts, *ending], step.progress

        if step.milestone != current:
            self.store.set_state(session_id, CURRENT_MILESTONE, step.milestone)
            logger.info("Session %s reached milestone %r", session_id, step.milestone)
        return story_parts, step.progress

    async def end_story(self, session_id: str) -> list[str]:
        """Generate the conclusion as a list of parts; [] when that fails."""
        try:
            response = await self._exchange(session_id, ending_prompt(), ENDING_MAX_TOKENS)
            parts = parse_partial_json(response)
        except RECOVERABLE as e:
            logger.warning("Ending generation failed for session %s: %s", session_id, e)
            return []
        if isinstance(parts, dict):
            parts = parts.get("storyParts", [])
        if not isinstance(parts, list):
            logger.warning("Ending for session %s was not a list, dropping it", session_id)
            return []
        return [str(p) for p in parts if p]

    # ------------------------------------------------------------------
    # genImgFlow
    # ------------------------------------------------------------------

    async def illustrate(self, data: ImageInput, ctx: FlowContext) -> str:
        """Return a PNG data URI for the story, or "" when no image is made."""
        sid = ctx.session_id
        try:
            description = await self.text.generate_with_history(
                self.store.get_messages(sid),
                image_description_prompt(data.story),
                model=self.model,
                max_tokens=IMAGE_DESCRIPTION_MAX_TOKENS,
            )
            description = strip_reasoning(description).strip()
            if not description:
                logger.warning("Empty image description for session %s", sid)
                return ""
            image = await self.images.generate_image(ImageRequest(
                prompt=image_prompt(description),
                negative_prompt=IMAGE_NEGATIVE,
                width=IMAGE_SIZE,
                height=IMAGE_SIZE,
                steps=IMAGE_STEPS,
            ))
        except RECOVERABLE as e:
            logger.warning("Image generation failed for session %s: %s", sid, e)
            return ""
        if not image:
            return ""
        return f"data:image/png;base64,{image}"


def register_story_flows(
    registry: FlowRegistry,
    text: TextGenerator,
    images: ImageGenerator,
    *,
    model: str | None = None,
) -> StoryFlows:
    """Register the four narrative flows on registry, sharing its session store."""
    flows = StoryFlows(registry.store, text, images, model=model)
    registry.register(FlowDefinition(
        name=DESCRIPTION_FLOW,
        handler=flows.describe,
        input_schema=DescriptionInput,
        output_schema=DescriptionOutput,
    ))
    registry.register(FlowDefinition(
        name=BEGIN_STORY_FLOW,
        handler=flows.begin,
        input_schema=StoryInput,
        output_schema=StoryOutput,
    ))
    registry.register(FlowDefinition(
        name=CONTINUE_STORY_FLOW,
        handler=flows.continue_story,
        input_schema=StoryInput,
        output_schema=ContinueOutput,
    ))
    registry.register(FlowDefinition(
        name=IMAGE_FLOW,
        handler=flows.illustrate,
        input_schema=ImageInput,
        output_schema=str,
    ))
    return flows
