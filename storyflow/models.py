"""Core domain models.

The session store, flow registry and narrative flows all operate on these
types. Pydantic is used for validation and serialisation at every data
boundary. Wire names are camelCase (``sessionId``, ``storyParts``); Python
attributes stay snake_case.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

Role = Literal["system", "user", "assistant"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WireModel(BaseModel):
    """Base for every model that crosses the flow boundary."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

class ChatMessage(BaseModel):
    """One entry in a session's append-only conversation history."""

    role: Role
    content: str
    timestamp: datetime = Field(default_factory=utcnow)


class Session(BaseModel):
    id: str
    messages: list[ChatMessage] = Field(default_factory=list)
    state: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Flow boundary
# ---------------------------------------------------------------------------

class FlowRequest(WireModel):
    input: Any = None
    session_id: str | None = None


class FlowResponse(WireModel):
    """Envelope returned by every flow run.

    ``error`` set means ``result`` is meaningless (always None).
    """

    result: Any = None
    session_id: str | None = None
    error: str | None = None


# ---------------------------------------------------------------------------
# Narrative flow inputs / outputs
# ---------------------------------------------------------------------------

Rating = str  # "GOOD" | "NEUTRAL" | "BAD", free text tolerated

NEUTRAL_RATING: Rating = "NEUTRAL"


class DescriptionInput(WireModel):
    user_input: str | None = None
    session_id: str | None = None
    clear_session: bool = False


class DescriptionOutput(WireModel):
    story_premise: str
    next_question: str
    premise_options: list[str]


class StoryInput(WireModel):
    user_input: str
    session_id: str | None = None


class StoryOutput(WireModel):
    story_parts: list[str]
    options: list[str]
    primary_objective: str
    progress: float


class ContinueOutput(StoryOutput):
    rating: Rating


class ImageInput(WireModel):
    story: str
    session_id: str | None = None


# ---------------------------------------------------------------------------
# Shapes extracted from model output (lenient: every field defaulted)
# ---------------------------------------------------------------------------

class ExtractedModel(WireModel):
    """Model-output shape where an explicit null means "use the default"."""

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data


class Choice(ExtractedModel):
    choice: str
    rating: Rating = NEUTRAL_RATING


class StoryDetail(ExtractedModel):
    story: str | None = None
    story_parts: list[str] = Field(default_factory=list)
    primary_objective: str = ""
    milestones: list[str] = Field(default_factory=list)
    choices: list[Choice] = Field(default_factory=list)


class ContinueDetail(ExtractedModel):
    story: str | None = None
    story_parts: list[str] = Field(default_factory=list)
    rating: Rating = NEUTRAL_RATING
    achieved_current_milestone: bool = False
    choices: list[Choice] = Field(default_factory=list)
