"""Pydantic models for classified tasks (Task Dispatcher output)."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

PREVIOUS_RESULT = "[PREVIOUS_RESULT]"

# Classifier output is kept as plain dicts until execution time.
RawTask = dict[str, Any]


class Capability(str, Enum):
    chat = "CHAT"
    search = "SEARCH"
    image_generation = "IMAGE_GENERATION"
    image_editing = "IMAGE_EDITING"
    video_generation = "VIDEO_GENERATION"
    tts = "TTS"


class Task(BaseModel):
    """One classified unit of work.

    The classifier speaks `{"feature": ..., "prompt": ...}`; those keys are
    accepted as aliases so raw dispatcher output validates directly.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    capability: Capability = Field(..., alias="feature")
    instruction: str = Field(..., alias="prompt")


class DispatchResponse(BaseModel):
    """Classifier response envelope. Only the list shape of `tasks` is enforced."""

    tasks: list[Any]
