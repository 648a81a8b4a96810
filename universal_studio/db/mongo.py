"""MongoDB repository for conversations, their records and agent logs."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pymongo import AsyncMongoClient, ReturnDocument

from universal_studio.models.agent_logs import AgentLogEntry
from universal_studio.models.results import ResultRecord


class Mongo:
    """Async MongoDB conversation store. Records are append-only."""

    def __init__(self, mongo_url: str) -> None:
        self.client = AsyncMongoClient(mongo_url)
        self.db = self.client.universal_studio
        self.conversations = self.db.conversations
        self.records = self.db.conversation_records
        self.agent_logs = self.db.agent_logs

    async def ping(self) -> None:
        await self.client.admin.command("ping")

    async def close(self) -> None:
        await self.client.close()

    async def create_conversation(self, conversation_id: str, title: str) -> None:
        now = datetime.now(timezone.utc)
        await self.conversations.update_one(
            {"conversation_id": conversation_id},
            {
                "$setOnInsert": {
                    "conversation_id": conversation_id,
                    "title": title,
                    "record_count": 0,
                    "created_at": now,
                    "updated_at": now,
                }
            },
            upsert=True,
        )

    async def get_conversation(self, conversation_id: str) -> dict[str, Any] | None:
        return await self.conversations.find_one({"conversation_id": conversation_id}, projection={"_id": 0})

    async def set_title(self, conversation_id: str, title: str) -> None:
        now = datetime.now(timezone.utc)
        await self.conversations.update_one(
            {"conversation_id": conversation_id},
            {"$set": {"title": title, "updated_at": now}},
            upsert=False,
        )

    async def append_record(self, conversation_id: str, record: ResultRecord) -> None:
        """Append one record; `seq` keeps insertion order stable across workers."""
        now = datetime.now(timezone.utc)
        conv = await self.conversations.find_one_and_update(
            {"conversation_id": conversation_id},
            {
                "$inc": {"record_count": 1},
                "$set": {"updated_at": now},
                "$setOnInsert": {"conversation_id": conversation_id, "created_at": now},
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        doc = record.model_dump(mode="json")
        doc.update({"conversation_id": conversation_id, "seq": conv["record_count"], "created_at": now})
        await self.records.insert_one(doc)

    async def list_records(self, conversation_id: str, *, limit: int = 500) -> list[ResultRecord]:
        """List a conversation's records in chronological order (oldest first)."""
        cursor = (
            self.records.find({"conversation_id": conversation_id}, projection={"_id": 0})
            .sort("seq", 1)
            .limit(limit)
        )
        return [ResultRecord.model_validate(doc) async for doc in cursor]

    async def create_agent_log(self, entry: AgentLogEntry) -> None:
        now = datetime.now(timezone.utc)
        doc = entry.model_dump()
        doc["created_at"] = doc.get("created_at") or now
        await self.agent_logs.insert_one(doc)

    async def list_agent_logs(self, conversation_id: str, *, limit: int = 200) -> list[dict[str, Any]]:
        """Fetch recent agent logs for a conversation (most recent first)."""
        cursor = (
            self.agent_logs.find({"conversation_id": conversation_id}, projection={"_id": 0})
            .sort("created_at", -1)
            .limit(limit)
        )
        return [doc async for doc in cursor]
