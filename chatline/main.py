"""
FastAPI application — the chatline entry point.
Serves the chat relay (NDJSON from Ollama in, plain text out) and the
conversation store endpoints the browser UI reads and writes.

Endpoints:
    POST   /api/chat                  streamed reply as text/plain
    GET    /api/chats                 [{id, name}] newest first
    POST   /api/chats                 create {name} -> {id, name}
    GET    /api/chats/{id}            {id, name, messages} or 404
    POST   /api/chats/{id}            rename {name}
    DELETE /api/chats/{id}            delete record + index entry
    GET    /api/chats/{id}/messages   message array ([] if missing)
    POST   /api/chats/{id}/messages   overwrite {messages}
    GET    /api/health                backend reachability
    GET    /api/models                models available on the backend
"""

import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

from chatline import __version__
from chatline.backends.base import BackendUnavailable, BaseBackend, InvalidRequest
from chatline.backends.ollama import OllamaBackend
from chatline.config import get_config
from chatline.storage.models import Message
from chatline.storage.session_store import ConversationNotFound, SessionStore

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Globals, set at startup or on first use
# ---------------------------------------------------------------------------
store: SessionStore | None = None
backend: BaseBackend | None = None
default_model: str = ""


def setup_logging(cfg: dict):
    log_cfg = cfg.get("logging", {})
    level = getattr(logging, str(log_cfg.get("level", "INFO")).upper(), logging.INFO)
    log_file = log_cfg.get("file")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


def build_store(cfg: dict) -> SessionStore:
    return SessionStore(
        cfg.get("storage", {}).get("chats_dir", "./data/chats"),
        default_name=cfg.get("chat", {}).get("default_name", "New chat"),
    )


def build_backend(cfg: dict) -> OllamaBackend:
    backend_cfg = cfg.get("backend", {})
    return OllamaBackend(
        url=backend_cfg.get("url", "http://localhost:11434"),
        timeout=backend_cfg.get("timeout", 120),
    )


def _init(cfg: dict):
    global store, backend, default_model
    if store is None:
        store = build_store(cfg)
    if backend is None:
        backend = build_backend(cfg)
    if not default_model:
        default_model = cfg.get("backend", {}).get("default_model", "")


def _store() -> SessionStore:
    if store is None:
        _init(get_config())
    return store


def _backend() -> BaseBackend:
    if backend is None:
        _init(get_config())
    return backend


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    cfg = get_config()
    setup_logging(cfg)
    _init(cfg)

    logger.info(
        "chatline %s started — backend %s, default model %s",
        __version__, backend.url if backend else "?", default_model or "(none)",
    )
    logger.info("Conversations stored in %s", store.chats_dir if store else "?")

    yield

    logger.info("chatline shutting down")


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------
app = FastAPI(
    title="chatline",
    description="Local chat client for Ollama with on-disk conversation history.",
    version=__version__,
    lifespan=lifespan,
)


async def _json_body(request: Request):
    """Parsed JSON body, or None if it is missing or unparseable."""
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None


# ---------------------------------------------------------------------------
# Chat relay
# ---------------------------------------------------------------------------

@app.post("/api/chat")
async def chat(request: Request):
    """
    Relay a chat request to the backend and stream the reply as plain text.
    400 on a malformed body (backend never contacted), 502 if the backend
    can't be reached or refuses the request.
    """
    body = await _json_body(request)
    if not isinstance(body, dict):
        return JSONResponse({"error": "Invalid request"}, status_code=400)

    try:
        stream = await _backend().open_stream(
            body.get("model") or default_model,
            body.get("messages"),
            body.get("options"),
        )
    except InvalidRequest as e:
        return JSONResponse({"error": "Invalid request", "detail": str(e)}, status_code=400)
    except BackendUnavailable as e:
        return JSONResponse(e.to_json(), status_code=e.status_code)

    async def relay():
        try:
            async for fragment in stream:
                yield fragment.encode("utf-8")
        finally:
            await stream.aclose()

    return StreamingResponse(
        relay(),
        media_type="text/plain; charset=utf-8",
        headers={"Cache-Control": "no-store"},
    )


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------

@app.get("/api/chats")
async def list_chats():
    """All conversations, most recently active first."""
    entries = _store().list_conversations()
    return JSONResponse([{"id": e.id, "name": e.name} for e in entries])


@app.post("/api/chats")
async def create_chat(request: Request):
    body = await _json_body(request)
    name = body.get("name") if isinstance(body, dict) else None
    conv = _store().create(name)
    return JSONResponse({"id": conv.id, "name": conv.name})


@app.get("/api/chats/{conv_id}")
async def get_chat(conv_id: str):
    try:
        conv = _store().get(conv_id)
    except ConversationNotFound:
        return JSONResponse({"error": "Not found"}, status_code=404)
    return JSONResponse(conv.to_dict())


@app.post("/api/chats/{conv_id}")
async def rename_chat(conv_id: str, request: Request):
    """Rename. A body without a usable name is accepted and ignored."""
    body = await _json_body(request)
    name = body.get("name") if isinstance(body, dict) else None
    if not isinstance(name, str) or not name:
        return JSONResponse({"ok": True})
    try:
        _store().rename(conv_id, name)
    except ConversationNotFound:
        return JSONResponse({"error": "Not found"}, status_code=404)
    return JSONResponse({"ok": True})


@app.delete("/api/chats/{conv_id}")
async def delete_chat(conv_id: str):
    _store().delete(conv_id)
    return JSONResponse({"ok": True})


@app.get("/api/chats/{conv_id}/messages")
async def get_messages(conv_id: str):
    messages = _store().get_messages(conv_id)
    return JSONResponse([m.to_dict() for m in messages])


@app.post("/api/chats/{conv_id}/messages")
async def save_messages(conv_id: str, request: Request):
    """Overwrite the stored message list. Anything but a list stores []."""
    body = await _json_body(request)
    raw = body.get("messages") if isinstance(body, dict) else None
    messages = [Message.from_dict(m) for m in raw if isinstance(m, dict)] if isinstance(raw, list) else []
    try:
        _store().save_messages(conv_id, messages)
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    except OSError as e:
        logger.error("Cannot write messages for %s: %s", conv_id, e)
        return JSONResponse({"error": "Cannot write"}, status_code=500)
    return JSONResponse({"ok": True})


# ---------------------------------------------------------------------------
# Backend info
# ---------------------------------------------------------------------------

@app.get("/api/health")
async def health():
    """Health check, including whether the inference backend answers."""
    b = _backend()
    reachable = await b.health_check()
    return JSONResponse({
        "status": "ok",
        "version": __version__,
        "backend": {"url": b.url, "reachable": reachable},
    })


@app.get("/api/models")
async def models():
    """Models the backend has available, plus the configured default."""
    names = await _backend().list_models()
    return JSONResponse({"models": names, "default": default_model})
