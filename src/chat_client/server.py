"""FastAPI application hosting chat sessions over HTTP."""
from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field

from .attachments import AttachmentService, LocalAttachmentService, create_attachment_service, decode_upload_payload
from .config import load_config, redact
from .errors import ChatClientError, SessionNotFoundError
from .inference import InferenceStream, create_inference_stream
from .session import SessionEvent, SessionManager
from .store import TranscriptStore, create_store

logger = logging.getLogger(__name__)

MAX_HISTORY = 50


# -----------------------------
# Pydantic request/response
# -----------------------------
class CreateSessionRequest(BaseModel):
    load_history: bool = Field(default=False, description="Seed the transcript from stored history.")


class SubmitRequest(BaseModel):
    text: str = Field(default="")
    image_url: Optional[str] = Field(default=None)


class EditRequest(BaseModel):
    text: str = Field(default="")


class UploadRequest(BaseModel):
    file: str = Field(default="", description="Base64 payload or data: URL.")


class AttachmentRequest(UploadRequest):
    text: str = Field(default="")


class UploadResponse(BaseModel):
    success: bool = True
    url: str
    public_id: str


# -----------------------------
# Session registry
# -----------------------------
class SessionRegistry:
    """Live sessions of this process, keyed by id."""

    def __init__(self, inference: InferenceStream, store: TranscriptStore, attachments: AttachmentService, cfg: Dict[str, Any]) -> None:
        self._inference = inference
        self._store = store
        self._attachments = attachments
        self._session_cfg = cfg.get("session", {})
        self._sessions: Dict[str, SessionManager] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def create(self) -> SessionManager:
        session = SessionManager(
            self._inference,
            store=self._store,
            attachments=self._attachments,
            window_size=int(self._session_cfg.get("window_size", 20)),
            stale_reply_policy=str(self._session_cfg.get("stale_reply_policy", "replace")),
        )
        self._sessions[session.id] = session
        return session

    def get(self, session_id: str) -> SessionManager:
        try:
            return self._sessions[session_id]
        except KeyError:
            raise SessionNotFoundError(f"No session with id {session_id!r}") from None

    async def close(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is not None:
            await session.aclose()

    async def close_all(self) -> None:
        for session_id in list(self._sessions):
            await self.close(session_id)


# -----------------------------
# Streaming helpers
# -----------------------------
def _line(event: SessionEvent) -> str:
    return json.dumps(event.to_dict(), ensure_ascii=False) + "\n"


async def _ndjson(first: SessionEvent, events: AsyncIterator[SessionEvent]) -> AsyncIterator[str]:
    try:
        yield _line(first)
        async for event in events:
            yield _line(event)
    except ChatClientError as e:
        # Already delivered to the client as a "failed" event.
        logger.debug("Stream ended with %s: %s", type(e).__name__, e)
    finally:
        await events.aclose()


async def _start_stream(events: AsyncIterator[SessionEvent]) -> Optional[StreamingResponse]:
    """Pull the first event eagerly so validation errors become HTTP errors."""
    try:
        first = await events.__anext__()
    except StopAsyncIteration:
        return None
    return StreamingResponse(_ndjson(first, events), media_type="application/x-ndjson")


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    inference: Optional[InferenceStream] = None,
    store: Optional[TranscriptStore] = None,
    attachments: Optional[AttachmentService] = None,
) -> FastAPI:
    cfg = load_config(config_path)

    # CORS
    cors_origins = cfg.get("server", {}).get("cors_origins", ["*"])

    # Services
    inference = inference or create_inference_stream(cfg)
    store = store or create_store(cfg)
    attachments = attachments or create_attachment_service(cfg)
    registry = SessionRegistry(inference, store, attachments, cfg)
    history_limit = min(int(cfg.get("session", {}).get("history_limit", MAX_HISTORY)), MAX_HISTORY)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        store.open()
        logger.info("Chat client host started")
        try:
            yield
        finally:
            await registry.close_all()
            store.close()
            logger.info("Chat client host stopped")

    app = FastAPI(title="Chat Client", version="0.1.0", lifespan=lifespan)
    app.state.registry = registry
    app.state.store = store
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if isinstance(attachments, LocalAttachmentService) and attachments.public_base_url.startswith("/"):
        Path(attachments.root).mkdir(parents=True, exist_ok=True)
        app.mount(attachments.public_base_url, StaticFiles(directory=str(attachments.root)), name="uploads")

    @app.exception_handler(ChatClientError)
    async def chat_error_handler(request: Request, exc: ChatClientError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(exc.to_dict(), status_code=exc.status_code)

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "sessions": len(registry),
            "store": str(getattr(store, "path", "")) or None,
        }

    @app.get("/config")
    def get_config() -> JSONResponse:
        return JSONResponse(redact(cfg))

    # --------- sessions ----------
    @app.post("/sessions")
    async def create_session(req: Optional[CreateSessionRequest] = None) -> Dict[str, Any]:
        session = registry.create()
        if req is not None and req.load_history:
            await session.load_history(history_limit)
        return session.snapshot()

    @app.get("/sessions/{session_id}")
    def get_session(session_id: str) -> Dict[str, Any]:
        return registry.get(session_id).snapshot()

    @app.delete("/sessions/{session_id}")
    async def delete_session(session_id: str) -> Dict[str, Any]:
        registry.get(session_id)
        await registry.close(session_id)
        return {"closed": session_id}

    @app.post("/sessions/{session_id}/messages")
    async def submit(session_id: str, req: SubmitRequest):
        session = registry.get(session_id)
        return await _start_stream(session.stream_submit(req.text, image_url=req.image_url))

    @app.post("/sessions/{session_id}/messages/{message_id}/edit")
    async def edit(session_id: str, message_id: str, req: EditRequest):
        session = registry.get(session_id)
        response = await _start_stream(session.stream_edit(message_id, req.text))
        if response is None:
            return {"edited": False}
        return response

    @app.post("/sessions/{session_id}/regenerate")
    async def regenerate(session_id: str):
        session = registry.get(session_id)
        return await _start_stream(session.stream_regenerate())

    @app.post("/sessions/{session_id}/cancel")
    def cancel(session_id: str) -> Dict[str, Any]:
        return {"cancelled": registry.get(session_id).cancel()}

    @app.post("/sessions/{session_id}/attachments")
    async def submit_attachment(session_id: str, req: AttachmentRequest):
        session = registry.get(session_id)
        data, content_type = decode_upload_payload(req.file)
        attachment = await session.upload(data, content_type)
        return await _start_stream(session.stream_submit(req.text, image_url=attachment.url))

    # --------- uploads & history ----------
    @app.post("/upload", response_model=UploadResponse)
    async def upload(req: UploadRequest) -> UploadResponse:
        data, content_type = decode_upload_payload(req.file)
        attachment = await attachments.upload(data, content_type)
        return UploadResponse(url=attachment.url, public_id=attachment.public_id)

    @app.get("/chat/history")
    async def history(limit: int = Query(default=MAX_HISTORY, ge=1, le=MAX_HISTORY)) -> Dict[str, List[Dict[str, Any]]]:
        messages = await asyncio.to_thread(store.list_recent, limit)
        return {"messages": messages}

    return app
