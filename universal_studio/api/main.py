"""FastAPI application entrypoint and HTTP endpoints."""

from __future__ import annotations

import binascii
import base64
from contextlib import aclosing, asynccontextmanager
from typing import Any
from uuid import uuid4

import structlog
from fastapi import BackgroundTasks, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel, Field

from universal_studio.core.errors import CredentialsRequiredError, TransportError, TurnInProgressError
from universal_studio.core.logging import configure_logging
from universal_studio.core.settings import get_settings
from universal_studio.core.turns import TurnRunner
from universal_studio.db.memory import InMemoryStore
from universal_studio.db.mongo import Mongo
from universal_studio.models.results import AttachedFile, ResultRecord

log = structlog.get_logger(__name__)


class ConversationResponse(BaseModel):
    conversation_id: str
    title: str
    records: list[ResultRecord] = Field(default_factory=list)


class TurnRequest(BaseModel):
    text: str = ""
    image_base64: str | None = None
    image_mime_type: str = "image/png"
    image_name: str | None = None


class CredentialRequest(BaseModel):
    api_key: str = Field(..., min_length=1)


class ImprovePromptRequest(BaseModel):
    prompt: str


class ImprovePromptResponse(BaseModel):
    prompt: str


@asynccontextmanager
async def lifespan(application: FastAPI):
    """Configure logging and build the conversation store and turn runner."""
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL, json_logs=settings.JSON_LOGS)
    store = Mongo(settings.MONGODB_URL) if settings.MONGODB_URL else InMemoryStore()
    application.state.store = store
    application.state.runner = TurnRunner(settings, store)
    await store.ping()
    log.info("api_startup_complete", store=type(store).__name__)
    yield
    await application.state.runner.drain()
    await store.close()
    log.info("api_shutdown_complete")


app = FastAPI(title="Universal Studio API", version="1.0.0", lifespan=lifespan)


def _runner(request: Request) -> TurnRunner:
    return request.app.state.runner


def _decode_attachment(body: TurnRequest) -> AttachedFile | None:
    if not body.image_base64:
        return None
    payload = body.image_base64
    # Accept full data URIs as produced by the UI's FileReader.
    if payload.startswith("data:") and "," in payload:
        header, payload = payload.split(",", 1)
        mime_type = header[5:].split(";")[0] or body.image_mime_type
    else:
        mime_type = body.image_mime_type
    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise HTTPException(status_code=400, detail="image_base64 is not valid base64") from e
    return AttachedFile(data=data, mime_type=mime_type, name=body.image_name)


@app.post("/v1/conversations", status_code=201, response_model=ConversationResponse)
async def create_conversation(request: Request) -> ConversationResponse:
    conversation_id = uuid4().hex
    await request.app.state.store.create_conversation(conversation_id, "New Chat")
    return ConversationResponse(conversation_id=conversation_id, title="New Chat")


@app.get("/v1/conversations/{conversation_id}", response_model=ConversationResponse)
async def get_conversation(conversation_id: str, request: Request) -> ConversationResponse:
    store = request.app.state.store
    doc = await store.get_conversation(conversation_id)
    if not doc:
        raise HTTPException(status_code=404, detail="Conversation not found")
    records = await store.list_records(conversation_id)
    return ConversationResponse(conversation_id=conversation_id, title=doc.get("title") or "New Chat", records=records)


@app.get("/v1/conversations/{conversation_id}/agent-logs")
async def list_agent_logs(conversation_id: str, request: Request, limit: int = 200) -> dict[str, Any]:
    """Dispatcher and executor traces for a conversation, newest first."""
    logs = await request.app.state.store.list_agent_logs(conversation_id, limit=limit)
    return {"conversation_id": conversation_id, "agent_logs": logs}


@app.post("/v1/conversations/{conversation_id}/turns")
async def submit_turn(conversation_id: str, body: TurnRequest, request: Request) -> StreamingResponse:
    """Run one turn and stream its records as NDJSON, one line per record."""
    text = body.text.strip()
    attached_file = _decode_attachment(body)
    if not text and attached_file is None:
        raise HTTPException(status_code=400, detail="Prompt text or an image is required")

    runner = _runner(request)
    try:
        records = runner.start_turn(conversation_id, text, attached_file)
    except CredentialsRequiredError as e:
        raise HTTPException(status_code=401, detail="credentials_required") from e
    except TurnInProgressError as e:
        raise HTTPException(status_code=409, detail="turn_in_progress") from e

    async def ndjson():
        async with aclosing(records) as stream:
            async for record in stream:
                yield record.model_dump_json() + "\n"

    # Runs after the response even when the client left before streaming began.
    cleanup = BackgroundTasks()
    cleanup.add_task(records.aclose)
    return StreamingResponse(ndjson(), media_type="application/x-ndjson", background=cleanup)


@app.post("/v1/conversations/{conversation_id}/cancel")
async def cancel_turn(conversation_id: str, request: Request) -> dict[str, Any]:
    return {"cancelled": _runner(request).cancel(conversation_id)}


@app.put("/v1/credentials", status_code=204)
async def set_credentials(body: CredentialRequest, request: Request) -> Response:
    _runner(request).credentials.reacquire(body.api_key)
    return Response(status_code=204)


@app.get("/v1/credentials")
async def credential_status(request: Request) -> dict[str, Any]:
    return {"ready": _runner(request).credentials.ready}


@app.get("/v1/blobs/{handle}")
async def get_blob(handle: str, request: Request) -> Response:
    blob = _runner(request).blob_store.get(f"blob:{handle}")
    if blob is None:
        raise HTTPException(status_code=404, detail="Blob not found")
    return Response(content=blob.data, media_type=blob.mime_type)


@app.delete("/v1/blobs/{handle}", status_code=204)
async def release_blob(handle: str, request: Request) -> Response:
    if not _runner(request).blob_store.release(f"blob:{handle}"):
        raise HTTPException(status_code=404, detail="Blob not found")
    return Response(status_code=204)


@app.post("/v1/prompts/improve", response_model=ImprovePromptResponse)
async def improve_prompt(body: ImprovePromptRequest, request: Request) -> ImprovePromptResponse:
    prompt = body.prompt.strip()
    if not prompt:
        raise HTTPException(status_code=400, detail="Prompt cannot be empty")
    try:
        improved = await _runner(request).prompt_tools().improve_prompt(prompt)
    except TransportError as e:
        raise HTTPException(status_code=401, detail="credentials_required") from e
    return ImprovePromptResponse(prompt=improved or prompt)


@app.get("/health")
async def health(request: Request) -> JSONResponse:
    """Health check: verifies the conversation store and reports credential state."""
    store = request.app.state.store
    store_ok = True
    store_error: str | None = None
    try:
        await store.ping()
    except (TimeoutError, OSError, ConnectionError, RuntimeError) as e:
        store_ok = False
        store_error = str(e)

    payload: dict[str, Any] = {
        "status": "healthy" if store_ok else "degraded",
        "store": {"ok": store_ok, "error": store_error, "backend": type(store).__name__},
        "credentials": {"ready": _runner(request).credentials.ready},
    }
    return JSONResponse(status_code=200 if store_ok else 503, content=payload)
