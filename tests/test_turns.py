"""Tests for TurnRunner: gating, serialization, persistence and titles."""
from __future__ import annotations

import asyncio

import pytest

from universal_studio.agents.prompt_tools import DEFAULT_TITLE, PromptTools
from universal_studio.core.blobs import BlobStore
from universal_studio.core.errors import CredentialsRequiredError, TransportError, TurnInProgressError
from universal_studio.core.pipeline import CredentialGate, PipelineOrchestrator
from universal_studio.core.settings import Settings
from universal_studio.core.turns import ConversationStore, TurnRunner
from universal_studio.db.memory import InMemoryStore
from universal_studio.models.results import AttachedFile, CapabilityOutput


class DummyMsg:
    def __init__(self, content):
        self.content = content


class TitleLLM:
    def __init__(self, title='"Sea Haiku"'):
        self._title = title

    async def ainvoke(self, prompt):
        return DummyMsg(self._title)


class BrokenLLM:
    async def ainvoke(self, prompt):
        raise RuntimeError("title model down")


class StaticDispatcher:
    def __init__(self, tasks):
        self._tasks = tasks
        self.last_trace = {"agent": "task_dispatcher", "stage": "classification", "degraded": False}

    async def classify(self, user_text, has_attached_image):
        return list(self._tasks)


class GatedExecutor:
    """Blocks inside execute until released, so a turn can be held in flight."""

    def __init__(self):
        self.release = asyncio.Event()
        self.entered = asyncio.Event()
        self.last_trace = {"agent": "capability_executor", "stage": "chat", "capability": "CHAT"}

    async def execute(self, task, context):
        self.entered.set()
        await self.release.wait()
        return CapabilityOutput(kind="text", payload=f"answer to {task['prompt']}")


def _runner(store, *, executor=None, tasks=None, api_key="k", title_llm=None, blob_store=None):
    settings = Settings(GOOGLE_API_KEY=api_key)
    executor = executor or GatedExecutor()
    tasks = tasks or [{"feature": "CHAT", "prompt": "hello"}]

    def orchestrator_factory(gate):
        return PipelineOrchestrator(StaticDispatcher(tasks), executor, credentials=gate)

    return TurnRunner(
        settings,
        store,
        blob_store=blob_store,
        orchestrator_factory=orchestrator_factory,
        prompt_tools_factory=lambda gate: PromptTools(settings, llm=title_llm or TitleLLM()),
    )


def test_memory_store_satisfies_conversation_store():
    assert isinstance(InMemoryStore(), ConversationStore)


def test_turn_refused_without_credentials():
    runner = _runner(InMemoryStore(), api_key=None)
    with pytest.raises(CredentialsRequiredError):
        runner.start_turn("c1", "hello")
    assert not runner.is_running("c1")


@pytest.mark.asyncio
async def test_turn_records_are_streamed_and_persisted():
    store = InMemoryStore()
    executor = GatedExecutor()
    executor.release.set()
    runner = _runner(store, executor=executor)

    records = [r async for r in runner.start_turn("c1", "  hello  ")]

    assert [r.kind for r in records] == ["user", "text"]
    assert records[0].data == "hello"
    assert records[1].data == "answer to hello"
    assert [r.id for r in await store.list_records("c1")] == [r.id for r in records]
    assert not runner.is_running("c1")

    logs = await store.list_agent_logs("c1")
    assert {entry["agent"] for entry in logs} == {"task_dispatcher", "capability_executor"}
    assert len({entry["turn_id"] for entry in logs}) == 1


@pytest.mark.asyncio
async def test_user_record_carries_attachment_as_data_uri():
    store = InMemoryStore()
    executor = GatedExecutor()
    executor.release.set()
    runner = _runner(store, executor=executor)

    records = [r async for r in runner.start_turn("c1", "edit", AttachedFile(data=b"\x01\x02", mime_type="image/jpeg"))]
    assert records[0].attachment == "data:image/jpeg;base64,AQI="


@pytest.mark.asyncio
async def test_second_turn_on_same_conversation_is_rejected_while_running():
    store = InMemoryStore()
    executor = GatedExecutor()
    runner = _runner(store, executor=executor)

    async def consume():
        return [r async for r in runner.start_turn("c1", "first")]

    first = asyncio.create_task(consume())
    await executor.entered.wait()

    with pytest.raises(TurnInProgressError):
        runner.start_turn("c1", "second")

    executor.release.set()
    records = await first
    assert records[-1].data == "answer to hello"
    assert not runner.is_running("c1")


@pytest.mark.asyncio
async def test_other_conversations_are_not_blocked():
    store = InMemoryStore()
    executor = GatedExecutor()
    runner = _runner(store, executor=executor)

    first = asyncio.create_task(_drain(runner.start_turn("c1", "first")))
    await executor.entered.wait()

    other = runner.start_turn("c2", "second")
    executor.release.set()
    await first
    assert [r.kind async for r in other] == ["user", "text"]


async def _drain(stream):
    return [r async for r in stream]


@pytest.mark.asyncio
async def test_cancel_reaches_the_running_turn():
    store = InMemoryStore()
    executor = GatedExecutor()
    tasks = [{"feature": "CHAT", "prompt": "a"}, {"feature": "CHAT", "prompt": "b"}]
    runner = _runner(store, executor=executor, tasks=tasks)

    turn = asyncio.create_task(_drain(runner.start_turn("c1", "go")))
    await executor.entered.wait()

    assert runner.cancel("c1") is True
    executor.release.set()
    records = await turn

    assert [r.kind for r in records] == ["user", "text", "error"]
    assert runner.cancel("c1") is False


@pytest.mark.asyncio
async def test_credential_failure_blocks_following_turns():
    store = InMemoryStore()

    class RejectingExecutor:
        last_trace = None

        async def execute(self, task, context):
            raise TransportError("CHAT request failed: API key not valid. Please pass a valid API key.")

    runner = _runner(store, executor=RejectingExecutor())
    records = await _drain(runner.start_turn("c1", "hello"))

    assert records[-1].credential_invalid is True
    with pytest.raises(CredentialsRequiredError):
        runner.start_turn("c1", "again")

    runner.credentials.reacquire("new-key")
    assert runner.credentials.ready


@pytest.mark.asyncio
async def test_first_message_generates_title_in_background():
    store = InMemoryStore()
    executor = GatedExecutor()
    executor.release.set()
    runner = _runner(store, executor=executor)

    await _drain(runner.start_turn("c1", "Write a haiku about the sea"))
    await runner.drain()

    assert (await store.get_conversation("c1"))["title"] == "Sea Haiku"


@pytest.mark.asyncio
async def test_title_failure_keeps_default_title():
    store = InMemoryStore()
    executor = GatedExecutor()
    executor.release.set()
    runner = _runner(store, executor=executor, title_llm=BrokenLLM())

    records = await _drain(runner.start_turn("c1", "hello"))
    await runner.drain()

    assert records[-1].kind == "text"
    assert (await store.get_conversation("c1"))["title"] == DEFAULT_TITLE


@pytest.mark.asyncio
async def test_closing_stream_early_releases_the_conversation():
    store = InMemoryStore()
    executor = GatedExecutor()
    executor.release.set()
    runner = _runner(store, executor=executor)

    stream = runner.start_turn("c1", "hello")
    first = await stream.__anext__()
    assert first.kind == "user"
    await stream.aclose()

    assert not runner.is_running("c1")


@pytest.mark.asyncio
async def test_closing_a_stream_that_never_started_releases_the_conversation():
    store = InMemoryStore()
    executor = GatedExecutor()
    executor.release.set()
    runner = _runner(store, executor=executor)

    stream = runner.start_turn("c1", "hello")
    assert runner.is_running("c1")
    await stream.aclose()
    assert not runner.is_running("c1")

    records = await _drain(runner.start_turn("c1", "hello again"))
    assert [r.kind for r in records] == ["user", "text"]


@pytest.mark.asyncio
async def test_stale_close_does_not_drop_a_newer_claim():
    store = InMemoryStore()
    executor = GatedExecutor()
    runner = _runner(store, executor=executor)

    old = runner.start_turn("c1", "hello")
    await old.aclose()
    current = runner.start_turn("c1", "hello again")
    await old.aclose()

    assert runner.is_running("c1")
    with pytest.raises(TurnInProgressError):
        runner.start_turn("c1", "third")
    await current.aclose()
    assert not runner.is_running("c1")


class MediaExecutor:
    """Speaks into the shared blob store, then answers in text."""

    def __init__(self, blob_store):
        self.blob_store = blob_store
        self.last_trace = None

    async def execute(self, task, context):
        if task["feature"] == "TTS":
            return CapabilityOutput(kind="audio", payload=self.blob_store.put(b"RIFF", "audio/wav"))
        return CapabilityOutput(kind="text", payload="done")


@pytest.mark.asyncio
async def test_abandoning_after_a_stored_audio_record_keeps_its_blob():
    store = InMemoryStore()
    blobs = BlobStore()
    executor = MediaExecutor(blobs)
    runner = _runner(
        store,
        executor=executor,
        tasks=[{"feature": "TTS", "prompt": "say hi"}, {"feature": "CHAT", "prompt": "then talk"}],
        blob_store=blobs,
    )

    stream = runner.start_turn("c1", "speak")
    async for record in stream:
        if record.kind == "audio":
            handle = record.data
            break
    await stream.aclose()

    assert handle in runner.blob_store
    stored = await store.list_records("c1")
    assert [r.kind for r in stored] == ["user", "audio"]
    assert stored[1].data == handle
    assert not runner.is_running("c1")


def test_credential_gate_without_key_is_not_ready():
    gate = CredentialGate(None)
    assert gate.ready is False
    gate.invalidate()
    assert gate.ready is False
