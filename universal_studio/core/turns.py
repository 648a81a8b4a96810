"""Turn execution for a conversation: gate, serialize, run the pipeline and persist records."""

from __future__ import annotations

import asyncio
import base64
from collections.abc import AsyncGenerator, Callable
from contextlib import aclosing, suppress
from typing import Any, Protocol, runtime_checkable
from uuid import uuid4

import structlog

from universal_studio.agents.prompt_tools import DEFAULT_TITLE, PromptTools
from universal_studio.core.blobs import BlobStore
from universal_studio.core.errors import CredentialsRequiredError, TurnInProgressError
from universal_studio.core.pipeline import CredentialGate, HandleLedger, PipelineOrchestrator
from universal_studio.core.settings import Settings
from universal_studio.models.agent_logs import AgentLogEntry
from universal_studio.models.results import AttachedFile, ResultRecord

log = structlog.get_logger(__name__)


@runtime_checkable
class ConversationStore(Protocol):
    """What the pipeline needs from conversation persistence: read context, append results."""

    async def create_conversation(self, conversation_id: str, title: str) -> None:
        raise NotImplementedError

    async def get_conversation(self, conversation_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    async def append_record(self, conversation_id: str, record: ResultRecord) -> None:
        raise NotImplementedError

    async def set_title(self, conversation_id: str, title: str) -> None:
        raise NotImplementedError


OrchestratorFactory = Callable[[CredentialGate], PipelineOrchestrator]
PromptToolsFactory = Callable[[CredentialGate], PromptTools]


def _attachment_data_uri(attached_file: AttachedFile | None) -> str | None:
    if attached_file is None:
        return None
    encoded = base64.b64encode(attached_file.data).decode("ascii")
    return f"data:{attached_file.mime_type};base64,{encoded}"


class TurnStream:
    """Record stream of one claimed turn.

    Closing it gives the conversation back even when iteration never started.
    """

    def __init__(self, records: AsyncGenerator[ResultRecord, None], release: Callable[[], None]) -> None:
        self._records = records
        self._release = release

    def __aiter__(self) -> TurnStream:
        return self

    async def __anext__(self) -> ResultRecord:
        return await self._records.__anext__()

    async def aclose(self) -> None:
        try:
            await self._records.aclose()
        finally:
            self._release()


class TurnRunner:
    """Caller-facing entry point for user turns.

    At most one turn runs per conversation; a turn is refused while the
    credential gate is closed.
    """

    def __init__(
        self,
        settings: Settings,
        store: ConversationStore,
        *,
        credentials: CredentialGate | None = None,
        blob_store: BlobStore | None = None,
        orchestrator_factory: OrchestratorFactory | None = None,
        prompt_tools_factory: PromptToolsFactory | None = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self.credentials = credentials or CredentialGate(settings.GOOGLE_API_KEY)
        self.blob_store = blob_store if blob_store is not None else BlobStore()
        self._orchestrator_factory = orchestrator_factory or self._default_orchestrator
        self._prompt_tools_factory = prompt_tools_factory or (
            lambda gate: PromptTools(settings, api_key=gate.api_key)
        )
        self._in_flight: dict[str, asyncio.Event] = {}
        self._background: set[asyncio.Task[None]] = set()

    def _default_orchestrator(self, gate: CredentialGate) -> PipelineOrchestrator:
        return PipelineOrchestrator.from_settings(self._settings, gate, blob_store=self.blob_store)

    def prompt_tools(self) -> PromptTools:
        return self._prompt_tools_factory(self.credentials)

    def is_running(self, conversation_id: str) -> bool:
        return conversation_id in self._in_flight

    def cancel(self, conversation_id: str) -> bool:
        """Request cooperative cancellation of the conversation's running turn."""
        event = self._in_flight.get(conversation_id)
        if event is None:
            return False
        event.set()
        log.info("turn_cancel_requested", conversation_id=conversation_id)
        return True

    def start_turn(
        self,
        conversation_id: str,
        user_text: str,
        attached_file: AttachedFile | None = None,
    ) -> TurnStream:
        """Claim the conversation and return the turn's record stream.

        Raises immediately (before any record) when credentials are missing or
        a turn is already in flight. The conversation is released when the
        stream finishes or is closed, started or not.
        """
        if not self.credentials.ready:
            raise CredentialsRequiredError("A valid API key is required before starting a turn.")
        if conversation_id in self._in_flight:
            raise TurnInProgressError(conversation_id)

        cancel_event = asyncio.Event()
        self._in_flight[conversation_id] = cancel_event
        return TurnStream(
            self._run(conversation_id, user_text.strip(), attached_file, cancel_event),
            lambda: self._release(conversation_id, cancel_event),
        )

    def _release(self, conversation_id: str, cancel_event: asyncio.Event) -> None:
        # Only the turn that made the claim may drop it.
        if self._in_flight.get(conversation_id) is cancel_event:
            del self._in_flight[conversation_id]

    async def _run(
        self,
        conversation_id: str,
        user_text: str,
        attached_file: AttachedFile | None,
        cancel_event: asyncio.Event,
    ) -> AsyncGenerator[ResultRecord, None]:
        turn_id = uuid4().hex
        bound = log.bind(conversation_id=conversation_id, turn_id=turn_id)
        try:
            conversation = await self._store.get_conversation(conversation_id)
            if conversation is None:
                await self._store.create_conversation(conversation_id, DEFAULT_TITLE)
                conversation = {}
            is_first_message = not conversation.get("record_count")

            user_record = ResultRecord(kind="user", data=user_text, attachment=_attachment_data_uri(attached_file))
            await self._store.append_record(conversation_id, user_record)
            yield user_record

            if is_first_message and user_text:
                self._schedule_title(conversation_id, user_text)

            bound.info("turn_received", has_attachment=attached_file is not None)
            orchestrator = self._orchestrator_factory(self.credentials)
            dispatch_logged = False
            ledger = HandleLedger()
            turn = orchestrator.run_turn(user_text, attached_file, cancel_event=cancel_event, ledger=ledger)
            async with aclosing(turn) as records:
                async for record in records:
                    if not dispatch_logged:
                        await self._write_agent_log(conversation_id, turn_id, orchestrator.dispatcher, None)
                        dispatch_logged = True
                    await self._store.append_record(conversation_id, record)
                    # A stored record keeps its media, even if the caller goes away now.
                    ledger.claim(record.data)
                    if record.kind not in ("sources", "error"):
                        await self._write_agent_log(conversation_id, turn_id, orchestrator.executor, record)
                    yield record
            if not dispatch_logged:
                await self._write_agent_log(conversation_id, turn_id, orchestrator.dispatcher, None)
            bound.info("turn_completed")
        finally:
            self._release(conversation_id, cancel_event)

    async def _write_agent_log(
        self,
        conversation_id: str,
        turn_id: str,
        agent: Any,
        record: ResultRecord | None,
    ) -> None:
        """Best-effort observability entry from an agent's `last_trace`."""
        if not hasattr(self._store, "create_agent_log"):
            return
        trace = getattr(agent, "last_trace", None) or {}
        if not trace:
            return
        with suppress(Exception):
            await self._store.create_agent_log(
                AgentLogEntry(
                    conversation_id=conversation_id,
                    turn_id=turn_id,
                    agent=trace.get("agent") or "capability_executor",
                    stage=trace.get("stage") or "main",
                    capability=trace.get("capability") or (record.capability.value if record and record.capability else None),
                    model=trace.get("model"),
                    prompt=trace.get("prompt"),
                    raw_output=trace.get("raw_output"),
                    parsed_output=trace.get("parsed_output"),
                    degraded=bool(trace.get("degraded")),
                    error=trace.get("reason"),
                    latency_ms=trace.get("latency_ms"),
                )
            )

    def _schedule_title(self, conversation_id: str, user_text: str) -> None:
        task = asyncio.create_task(self._generate_title(conversation_id, user_text))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _generate_title(self, conversation_id: str, user_text: str) -> None:
        try:
            title = await self.prompt_tools().generate_chat_title(user_text)
            await self._store.set_title(conversation_id, title)
        except Exception as e:  # noqa: BLE001
            log.warning("conversation_title_failed", conversation_id=conversation_id, error=str(e)[:200])

    async def drain(self) -> None:
        """Wait for background work (conversation titles) to finish."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
