"""Pydantic models for capability outputs and conversation records."""

from __future__ import annotations

from typing import Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from universal_studio.models.capabilities import Capability

OutputKind = Literal["text", "image", "video", "audio"]
# "user" records are written by the turn runner, never by the pipeline itself.
RecordKind = Literal["user", "text", "image", "video", "audio", "sources", "error"]


class Citation(BaseModel):
    uri: str
    title: str = "Source"


class AttachedFile(BaseModel):
    """User-attached binary file (an image to edit)."""

    model_config = ConfigDict(frozen=True)

    data: bytes
    mime_type: str = "image/png"
    name: str | None = None


class CapabilityOutput(BaseModel):
    """Normalized result of one executor call.

    `payload` is text for text outputs and a reference (data URI or `blob:`
    handle) for media outputs.
    """

    kind: OutputKind
    payload: str
    citations: list[Citation] = Field(default_factory=list)


class ResultRecord(BaseModel):
    """One element of a conversation turn as handed to the conversation store."""

    id: str = Field(default_factory=lambda: uuid4().hex)
    kind: RecordKind
    data: str | list[Citation]
    capability: Capability | None = None
    credential_invalid: bool = False
    # Data URI of the image attached to a "user" record.
    attachment: str | None = None
