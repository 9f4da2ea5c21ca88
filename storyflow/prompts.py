"""Handlebars prompt templates for the narrative flows.

Templates use triple-stash ({{{var}}}) so quotes and angle brackets in
player input reach the model unescaped.
"""

from collections.abc import Callable
from typing import Any

import pybars

_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return str(compiled(context))
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


# ── Templates ────────────────────────────────────────────

PREAMBLE = """You are the narrator of an interactive, choose-your-own-adventure story.
You work together with the player: first you agree on a premise, then you tell
the story in short parts and offer the player choices at every turn.
Keep the story suitable for all ages. Never describe graphic violence or
explicit content. Always answer with a single JSON value and nothing else:
no commentary, no markdown."""

DESCRIPTION = """We are agreeing on the premise of a new story.
{{#if user_input}}The player says: "{{{user_input}}}"
{{else}}The player has not said anything yet. Suggest a few directions.
{{/if}}
Summarise the premise agreed so far and ask one question that helps shape it
further. Offer up to four short answers the player could pick.

Return JSON of the form:
{"storyPremise": "<premise so far>", "nextQuestion": "<one question>", "premiseOptions": ["<option>", "..."]}"""

BEGIN_STORY = """Begin the story based on the premise we agreed on.
{{#if user_input}}The player adds: "{{{user_input}}}"
{{/if}}
Define the characters' primary objective and between three and five
milestones that must be reached, in order, to achieve it. Write the opening in
three short parts, then offer three choices for what happens next. Rate each
choice GOOD, NEUTRAL or BAD for the characters.

Return JSON of the form:
{"storyParts": ["<part>", "..."], "primaryObjective": "<objective>", "milestones": ["<milestone>", "..."], "choices": [{"choice": "<choice>", "rating": "GOOD"}]}"""

CONTINUE_STORY = """The player chose: "{{{user_input}}}"
{{#if milestone}}The characters are working towards this milestone: "{{{milestone}}}"
{{/if}}
Continue the story from that choice in up to three short parts. Do not
repeat earlier parts. Decide whether the choice achieved the current
milestone, rate the choice GOOD, NEUTRAL or BAD, and offer three new choices.

Return JSON of the form:
{"storyParts": ["<part>", "..."], "rating": "NEUTRAL", "achievedCurrentMilestone": false, "choices": [{"choice": "<choice>", "rating": "GOOD"}]}"""

ENDING = """The characters have achieved their primary objective.
Write the conclusion of the story. Don't repeat any of the story. This next
part should be a max of 200 words. Split the conclusion into 3 parts of
similar length. Return a JSON array of strings with the story parts."""

IMAGE_DESCRIPTION = """Describe an image that captures the essence of this story: {{{story}}}
Do not use any words indicating violence or profanity. Return a string only.
Do not return JSON."""

IMAGE = """{{{description}}}, storybook illustration, soft lighting, rich colours, detailed, high quality"""

IMAGE_NEGATIVE = "text, watermark, signature, blurry, deformed, gore, nsfw"


def preamble_prompt() -> str:
    return PREAMBLE


def description_prompt(user_input: str) -> str:
    return render_prompt(DESCRIPTION, {"user_input": user_input})


def begin_story_prompt(user_input: str) -> str:
    return render_prompt(BEGIN_STORY, {"user_input": user_input})


def continue_prompt(user_input: str, milestone: str | None) -> str:
    return render_prompt(CONTINUE_STORY, {"user_input": user_input, "milestone": milestone})


def ending_prompt() -> str:
    return ENDING


def image_description_prompt(story: str) -> str:
    return render_prompt(IMAGE_DESCRIPTION, {"story": story})


def image_prompt(description: str) -> str:
    return render_prompt(IMAGE, {"description": description.strip()})
