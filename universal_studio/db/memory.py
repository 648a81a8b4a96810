"""Process-local conversation store used when no MONGODB_URL is configured."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from universal_studio.models.agent_logs import AgentLogEntry
from universal_studio.models.results import ResultRecord


class InMemoryStore:
    """Same interface as `Mongo`, kept in dicts. Not shared between processes."""

    def __init__(self) -> None:
        self._conversations: dict[str, dict[str, Any]] = {}
        self._records: dict[str, list[ResultRecord]] = {}
        self._agent_logs: list[AgentLogEntry] = []

    async def ping(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def create_conversation(self, conversation_id: str, title: str) -> None:
        now = datetime.now(timezone.utc)
        self._conversations.setdefault(
            conversation_id,
            {"conversation_id": conversation_id, "title": title, "created_at": now, "updated_at": now},
        )
        self._records.setdefault(conversation_id, [])

    async def get_conversation(self, conversation_id: str) -> dict[str, Any] | None:
        conv = self._conversations.get(conversation_id)
        if conv is None:
            return None
        return {**conv, "record_count": len(self._records.get(conversation_id, []))}

    async def set_title(self, conversation_id: str, title: str) -> None:
        conv = self._conversations.get(conversation_id)
        if conv is not None:
            conv["title"] = title
            conv["updated_at"] = datetime.now(timezone.utc)

    async def append_record(self, conversation_id: str, record: ResultRecord) -> None:
        await self.create_conversation(conversation_id, "New Chat")
        self._records[conversation_id].append(record)
        self._conversations[conversation_id]["updated_at"] = datetime.now(timezone.utc)

    async def list_records(self, conversation_id: str, *, limit: int = 500) -> list[ResultRecord]:
        return list(self._records.get(conversation_id, [])[:limit])

    async def create_agent_log(self, entry: AgentLogEntry) -> None:
        if entry.created_at is None:
            entry = entry.model_copy(update={"created_at": datetime.now(timezone.utc)})
        self._agent_logs.append(entry)

    async def list_agent_logs(self, conversation_id: str, *, limit: int = 200) -> list[dict[str, Any]]:
        logs = [e.model_dump() for e in reversed(self._agent_logs) if e.conversation_id == conversation_id]
        return logs[:limit]
