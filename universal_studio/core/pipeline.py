"""Pipeline orchestration: one user turn from classification to result records."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass, field, replace
from typing import Any, Protocol

import httpx
import structlog
from google.genai import errors as genai_errors
from langchain_google_genai.chat_models import ChatGoogleGenerativeAIError
from pydantic import ValidationError

from universal_studio.agents.dispatcher import CapabilityRegistry, TaskDispatcher
from universal_studio.agents.executor import CapabilityExecutor, ExecutionContext
from universal_studio.core.blobs import is_blob_handle
from universal_studio.core.errors import (
    PipelineError,
    TurnCancelledError,
    describe_error,
    is_credential_error,
)
from universal_studio.core.settings import Settings
from universal_studio.models.capabilities import Capability, RawTask, Task
from universal_studio.models.results import AttachedFile, CapabilityOutput, ResultRecord

log = structlog.get_logger(__name__)

_TASK_ERRORS = (
    PipelineError,
    ValidationError,
    httpx.HTTPError,
    genai_errors.APIError,
    ChatGoogleGenerativeAIError,
    TimeoutError,
    OSError,
    ValueError,
    KeyError,
    IndexError,
    AttributeError,
    TypeError,
    RuntimeError,
)


class Dispatcher(Protocol):
    async def classify(self, user_text: str, has_attached_image: bool) -> list[RawTask]:
        raise NotImplementedError


class Executor(Protocol):
    async def execute(self, task: RawTask | Task, context: ExecutionContext) -> CapabilityOutput:
        raise NotImplementedError


class CredentialGate:
    """Shared credential state. Once invalidated, no turn may start until a key is re-acquired."""

    def __init__(self, api_key: str | None = None) -> None:
        self._api_key = api_key or None
        self._valid = bool(self._api_key)

    @property
    def api_key(self) -> str | None:
        return self._api_key

    @property
    def ready(self) -> bool:
        return self._valid

    def invalidate(self) -> None:
        if self._valid:
            log.warning("credential_invalidated")
        self._valid = False

    def reacquire(self, api_key: str) -> None:
        self._api_key = api_key
        self._valid = bool(api_key)
        log.info("credential_reacquired")


@dataclass(frozen=True)
class TurnState:
    """Values threaded from one task to the next within a turn."""
    last_text_output: str | None = None
    handles: tuple[str, ...] = field(default_factory=tuple)

    def advance(self, output: CapabilityOutput) -> TurnState:
        handles = self.handles + ((output.payload,) if is_blob_handle(output.payload) else ())
        last_text = output.payload if output.kind == "text" else self.last_text_output
        return replace(self, last_text_output=last_text, handles=handles)


class HandleLedger:
    """Blob handles of one turn that no consumer has taken ownership of yet.

    A handle becomes the consumer's once it asks for the record after the one
    carrying the handle, or once it calls `claim` (e.g. after persisting the
    record). Whatever is still pending when the turn is abandoned is released.
    """

    def __init__(self) -> None:
        self._pending: list[str] = []

    def track(self, handle: str) -> None:
        self._pending.append(handle)

    def claim(self, handle: object) -> None:
        if handle in self._pending:
            self._pending.remove(handle)

    @property
    def pending(self) -> tuple[str, ...]:
        return tuple(self._pending)


def _capability_of(task: Any) -> Capability | None:
    if isinstance(task, Task):
        return task.capability
    try:
        return Capability(task.get("feature")) if isinstance(task, dict) else None
    except ValueError:
        return None


class PipelineOrchestrator:
    """Runs one turn: dispatch, then execute each task in order, yielding records as they are ready."""

    def __init__(
        self,
        dispatcher: Dispatcher,
        executor: Executor,
        *,
        credentials: CredentialGate | None = None,
        registry: CapabilityRegistry | None = None,
    ) -> None:
        self._dispatcher = dispatcher
        self._executor = executor
        self._credentials = credentials
        self._registry = registry or getattr(dispatcher, "registry", None)

    @classmethod
    def from_settings(cls, settings: Settings, credentials: CredentialGate, **executor_kwargs: Any) -> PipelineOrchestrator:
        dispatcher = TaskDispatcher(settings, api_key=credentials.api_key)
        executor = CapabilityExecutor(settings, api_key=credentials.api_key, **executor_kwargs)
        return cls(dispatcher, executor, credentials=credentials, registry=dispatcher.registry)

    @property
    def dispatcher(self) -> Dispatcher:
        return self._dispatcher

    @property
    def executor(self) -> Executor:
        return self._executor

    async def run_turn(
        self,
        user_text: str,
        attached_file: AttachedFile | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
        ledger: HandleLedger | None = None,
    ) -> AsyncIterator[ResultRecord]:
        """Yield the turn's records in order.

        Pass a `ledger` to take ownership of blob handles as soon as their
        record is stored; otherwise ownership passes when the next record is
        requested.
        """
        tasks = await self._dispatcher.classify(user_text, attached_file is not None)
        log.info("pipeline_turn_started", task_count=len(tasks), has_attachment=attached_file is not None)

        ledger = ledger if ledger is not None else HandleLedger()
        state = TurnState()
        finished = False
        try:
            for index, task in enumerate(tasks):
                capability = _capability_of(task)
                try:
                    if cancel_event is not None and cancel_event.is_set():
                        raise TurnCancelledError("Turn cancelled before the next task started.")
                    if self._registry is not None:
                        log.info(
                            "pipeline_task_started",
                            index=index,
                            capability=capability.value if capability else None,
                            progress=self._registry.progress_message_for(capability),
                        )
                    context = ExecutionContext(
                        previous_output=state.last_text_output,
                        attached_file=attached_file,
                        cancel_event=cancel_event,
                    )
                    output = await self._executor.execute(task, context)
                except _TASK_ERRORS as e:
                    record = self._error_record(e, capability, index)
                    finished = True
                    yield record
                    break

                state = state.advance(output)
                if is_blob_handle(output.payload):
                    ledger.track(output.payload)
                yield ResultRecord(kind=output.kind, data=output.payload, capability=capability)
                ledger.claim(output.payload)
                if output.citations:
                    yield ResultRecord(kind="sources", data=output.citations, capability=capability)
            finished = True
            log.info("pipeline_turn_completed", handles=len(state.handles))
        finally:
            if not finished:
                self._release_abandoned(ledger.pending)

    def _error_record(self, error: BaseException, capability: Capability | None, index: int) -> ResultRecord:
        credential_invalid = is_credential_error(error)
        log.error(
            "pipeline_task_failed",
            index=index,
            capability=capability.value if capability else None,
            error=str(error)[:500],
            stage=getattr(error, "stage", "unknown"),
            credential_invalid=credential_invalid,
        )
        if credential_invalid and self._credentials is not None:
            self._credentials.invalidate()
        return ResultRecord(
            kind="error",
            data=describe_error(error),
            capability=capability,
            credential_invalid=credential_invalid,
        )

    def _release_abandoned(self, handles: tuple[str, ...]) -> None:
        store = getattr(self._executor, "blob_store", None)
        if store is None or not handles:
            return
        released = sum(1 for handle in handles if store.release(handle))
        log.info("pipeline_turn_abandoned", released_handles=released)
