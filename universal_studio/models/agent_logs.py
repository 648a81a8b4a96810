"""Pydantic models for pipeline observability logs."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


AgentName = Literal[
    "task_dispatcher",
    "capability_executor",
]


class AgentLogEntry(BaseModel):
    """A single dispatcher/executor interaction persisted to MongoDB."""

    conversation_id: str = Field(..., min_length=1)
    turn_id: str = Field(..., min_length=1)
    agent: AgentName = Field(...)
    stage: str = Field(default="main")
    capability: str | None = None
    model: str | None = None

    prompt: str | None = None
    raw_output: str | None = None
    parsed_output: Any | None = None
    degraded: bool = False
    error: str | None = None

    latency_ms: float | None = Field(default=None, ge=0.0)

    created_at: datetime | None = None
