"""CapabilityExecutor: runs one classified task against the matching Gemini capability.

Text capabilities (CHAT) go through LangChain's ChatGoogleGenerativeAI; search
grounding, Imagen, Veo and audio output go through the google-genai SDK, which
exposes grounding metadata, image/video endpoints and response modalities.
"""

from __future__ import annotations

import asyncio
import base64
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
import time
from typing import Any

import httpx
import structlog
from google import genai
from google.genai import errors as genai_errors
from google.genai import types as genai_types
from langchain_google_genai.chat_models import ChatGoogleGenerativeAIError
from pydantic import ValidationError

from universal_studio.agents.base import build_chat_llm, extract_llm_content
from universal_studio.core.blobs import BlobStore
from universal_studio.core.errors import (
    EmptyResultError,
    GenerationTimeoutError,
    InvalidTaskError,
    MissingInputError,
    TransportError,
    TurnCancelledError,
    UnknownCapabilityError,
)
from universal_studio.core.media import pcm16_to_wav
from universal_studio.core.settings import Settings
from universal_studio.models.capabilities import PREVIOUS_RESULT, Capability, RawTask, Task
from universal_studio.models.results import AttachedFile, CapabilityOutput, Citation

log = structlog.get_logger(__name__)

_REMOTE_ERRORS = (
    genai_errors.APIError,
    httpx.HTTPError,
    ChatGoogleGenerativeAIError,
    TimeoutError,
    OSError,
)

# One handler per capability; checked against the enum at import time.
_HANDLER_NAMES: dict[Capability, str] = {
    Capability.chat: "_chat",
    Capability.search: "_search",
    Capability.image_generation: "_generate_image",
    Capability.image_editing: "_edit_image",
    Capability.video_generation: "_generate_video",
    Capability.tts: "_text_to_speech",
}
if set(_HANDLER_NAMES) != set(Capability):
    raise RuntimeError(f"Executor handlers out of sync with Capability: {set(Capability) ^ set(_HANDLER_NAMES)}")

_FEATURES = frozenset(c.value for c in Capability)


@dataclass(frozen=True)
class ExecutionContext:
    """Per-task inputs derived from the turn: prior text output and the user's file."""
    previous_output: str | None = None
    attached_file: AttachedFile | None = None
    cancel_event: asyncio.Event | None = None


def resolve_task(task: RawTask | Task) -> Task:
    """Validate a raw classifier task.

    An unrecognised feature is an unknown capability; a known feature with a
    bad prompt is reported with the validation reason.
    """
    if isinstance(task, Task):
        return task
    feature = task.get("feature") if isinstance(task, dict) else None
    try:
        return Task.model_validate(task)
    except ValidationError as e:
        if not (isinstance(feature, str) and feature in _FEATURES):
            raise UnknownCapabilityError(f"Unknown feature: {feature}") from e
        reasons = "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors())
        raise InvalidTaskError(f"Invalid {feature} task: {reasons}") from e


def effective_instruction(task: Task, context: ExecutionContext) -> str:
    if task.instruction == PREVIOUS_RESULT and isinstance(context.previous_output, str):
        return context.previous_output
    return task.instruction


def map_grounding_citations(response: Any) -> list[Citation]:
    """Turn grounding chunks into citations; chunks without a uri are dropped."""
    candidates = getattr(response, "candidates", None) or []
    metadata = getattr(candidates[0], "grounding_metadata", None) if candidates else None
    chunks = getattr(metadata, "grounding_chunks", None) or []

    citations: list[Citation] = []
    for chunk in chunks:
        web = getattr(chunk, "web", None)
        uri = getattr(web, "uri", None) or ""
        if not uri:
            continue
        title = getattr(web, "title", None) or "Source"
        citations.append(Citation(uri=uri, title=title))
    return citations


def _first_inline_part(response: Any) -> Any | None:
    candidates = getattr(response, "candidates", None) or []
    content = getattr(candidates[0], "content", None) if candidates else None
    for part in getattr(content, "parts", None) or []:
        inline = getattr(part, "inline_data", None)
        if inline is not None and getattr(inline, "data", None):
            return inline
    return None


def _as_bytes(data: bytes | str) -> bytes:
    # The SDK hands back decoded bytes; raw REST payloads are base64 strings.
    if isinstance(data, str):
        return base64.b64decode(data)
    return data


class CapabilityExecutor:
    """Executes one task per call. No retries at this layer."""

    def __init__(
        self,
        settings: Settings,
        *,
        api_key: str | None = None,
        client: Any | None = None,
        chat_llm: Any | None = None,
        http_client: httpx.AsyncClient | None = None,
        blob_store: BlobStore | None = None,
    ) -> None:
        self._settings = settings
        self._api_key = api_key
        self._client = client
        self._chat_llm = chat_llm
        self._http = http_client
        self._blobs = blob_store if blob_store is not None else BlobStore()
        self.last_trace: dict[str, Any] | None = None

    @property
    def blob_store(self) -> BlobStore:
        return self._blobs

    # -------------------------------------------------------------------------
    # Clients (created lazily so input checks never touch the network)
    # -------------------------------------------------------------------------
    def _require_key(self) -> str:
        if not self._api_key:
            raise TransportError("API Key must be set before calling the Gemini API.")
        return self._api_key

    @property
    def _genai(self) -> Any:
        if self._client is None:
            self._client = genai.Client(api_key=self._require_key())
        return self._client

    @property
    def _llm(self) -> Any:
        if self._chat_llm is None:
            self._chat_llm = build_chat_llm(self._settings.CHAT_MODEL, self._require_key())
        return self._chat_llm

    @contextmanager
    def _remote(self, capability: Capability) -> Iterator[None]:
        try:
            yield
        except _REMOTE_ERRORS as e:
            raise TransportError(f"{capability.value} request failed: {e}") from e

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------
    async def execute(self, task: RawTask | Task, context: ExecutionContext) -> CapabilityOutput:
        resolved = resolve_task(task)
        handler: Callable[[str, ExecutionContext], Awaitable[CapabilityOutput]] = getattr(
            self, _HANDLER_NAMES[resolved.capability]
        )
        prompt = effective_instruction(resolved, context)

        start = time.perf_counter()
        output = await handler(prompt, context)
        latency_ms = (time.perf_counter() - start) * 1000.0

        self.last_trace = {
            "agent": "capability_executor",
            "stage": resolved.capability.value.lower(),
            "capability": resolved.capability.value,
            "prompt": prompt[:500],
            "parsed_output": output.payload[:500] if output.kind == "text" else output.payload[:64],
            "latency_ms": latency_ms,
        }
        log.info(
            "executor_task_completed",
            capability=resolved.capability.value,
            kind=output.kind,
            latency_ms=round(latency_ms, 1),
        )
        return output

    # -------------------------------------------------------------------------
    # Capability handlers
    # -------------------------------------------------------------------------
    async def _chat(self, prompt: str, context: ExecutionContext) -> CapabilityOutput:
        with self._remote(Capability.chat):
            resp = await self._llm.ainvoke(prompt)
        text = extract_llm_content(getattr(resp, "content", None))
        return CapabilityOutput(kind="text", payload=text)

    async def _search(self, prompt: str, context: ExecutionContext) -> CapabilityOutput:
        with self._remote(Capability.search):
            resp = await self._genai.aio.models.generate_content(
                model=self._settings.CHAT_MODEL,
                contents=prompt,
                config=genai_types.GenerateContentConfig(
                    tools=[genai_types.Tool(google_search=genai_types.GoogleSearch())],
                ),
            )
        return CapabilityOutput(
            kind="text",
            payload=getattr(resp, "text", None) or "",
            citations=map_grounding_citations(resp),
        )

    async def _generate_image(self, prompt: str, context: ExecutionContext) -> CapabilityOutput:
        with self._remote(Capability.image_generation):
            resp = await self._genai.aio.models.generate_images(
                model=self._settings.IMAGE_GEN_MODEL,
                prompt=prompt,
                config=genai_types.GenerateImagesConfig(
                    number_of_images=1,
                    output_mime_type="image/png",
                    aspect_ratio=self._settings.IMAGE_ASPECT_RATIO,
                ),
            )
        generated = getattr(resp, "generated_images", None) or []
        image = getattr(generated[0], "image", None) if generated else None
        image_bytes = getattr(image, "image_bytes", None)
        if not image_bytes:
            raise EmptyResultError("Image generation returned no image.")
        encoded = base64.b64encode(_as_bytes(image_bytes)).decode("ascii")
        return CapabilityOutput(kind="image", payload=f"data:image/png;base64,{encoded}")

    async def _edit_image(self, prompt: str, context: ExecutionContext) -> CapabilityOutput:
        attached = context.attached_file
        if attached is None:
            raise MissingInputError("Image editing requires an image.")

        with self._remote(Capability.image_editing):
            resp = await self._genai.aio.models.generate_content(
                model=self._settings.IMAGE_EDIT_MODEL,
                contents=[
                    genai_types.Part.from_bytes(data=attached.data, mime_type=attached.mime_type),
                    genai_types.Part.from_text(text=prompt),
                ],
                config=genai_types.GenerateContentConfig(response_modalities=["IMAGE"]),
            )
        inline = _first_inline_part(resp)
        if inline is None:
            raise EmptyResultError("No image was returned from the editing model.")
        encoded = base64.b64encode(_as_bytes(inline.data)).decode("ascii")
        mime_type = getattr(inline, "mime_type", None) or "image/png"
        return CapabilityOutput(kind="image", payload=f"data:{mime_type};base64,{encoded}")

    async def _generate_video(self, prompt: str, context: ExecutionContext) -> CapabilityOutput:
        settings = self._settings
        with self._remote(Capability.video_generation):
            operation = await self._genai.aio.models.generate_videos(
                model=settings.VIDEO_GEN_MODEL,
                prompt=prompt,
                config=genai_types.GenerateVideosConfig(
                    number_of_videos=1,
                    resolution=settings.VIDEO_RESOLUTION,
                    aspect_ratio=settings.VIDEO_ASPECT_RATIO,
                ),
            )

            polls = 0
            while not getattr(operation, "done", False):
                if settings.VIDEO_MAX_POLLS and polls >= settings.VIDEO_MAX_POLLS:
                    raise GenerationTimeoutError(
                        f"Video generation did not finish after {polls} status checks."
                    )
                await self._wait_before_poll(context.cancel_event)
                polls += 1
                log.info("executor_video_poll", attempt=polls, operation=getattr(operation, "name", None))
                operation = await self._genai.aio.operations.get(operation)

        error = getattr(operation, "error", None)
        if error:
            raise EmptyResultError(f"Video generation failed: {error}")

        response = getattr(operation, "response", None)
        videos = getattr(response, "generated_videos", None) or []
        video = getattr(videos[0], "video", None) if videos else None
        download_link = getattr(video, "uri", None)
        if not download_link:
            raise EmptyResultError("Video generation failed to produce a download link.")

        with self._remote(Capability.video_generation):
            data, mime_type = await self._download(download_link)
        handle = self._blobs.put(data, mime_type)
        return CapabilityOutput(kind="video", payload=handle)

    async def _wait_before_poll(self, cancel_event: asyncio.Event | None) -> None:
        interval = self._settings.VIDEO_POLL_INTERVAL_S
        if cancel_event is None:
            await asyncio.sleep(interval)
            return
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            return
        raise TurnCancelledError("Video generation was cancelled.")

    async def _download(self, uri: str) -> tuple[bytes, str]:
        params = {"key": self._require_key()}
        if self._http is not None:
            resp = await self._http.get(uri, params=params, follow_redirects=True)
        else:
            async with httpx.AsyncClient(timeout=self._settings.HTTP_TIMEOUT_S) as http:
                resp = await http.get(uri, params=params, follow_redirects=True)
        resp.raise_for_status()
        mime_type = resp.headers.get("content-type", "video/mp4").split(";")[0].strip() or "video/mp4"
        return resp.content, mime_type

    async def _text_to_speech(self, prompt: str, context: ExecutionContext) -> CapabilityOutput:
        settings = self._settings
        with self._remote(Capability.tts):
            resp = await self._genai.aio.models.generate_content(
                model=settings.TTS_MODEL,
                contents=[genai_types.Content(parts=[genai_types.Part.from_text(text=prompt)])],
                config=genai_types.GenerateContentConfig(response_modalities=["AUDIO"]),
            )
        inline = _first_inline_part(resp)
        if inline is None:
            raise EmptyResultError("TTS failed to produce audio data.")

        wav = pcm16_to_wav(_as_bytes(inline.data), settings.TTS_SAMPLE_RATE, settings.TTS_CHANNELS)
        handle = self._blobs.put(wav, "audio/wav")
        return CapabilityOutput(kind="audio", payload=handle)
