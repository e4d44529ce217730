"""FastAPI web server for repochat."""

import hmac
import json
import logging
from typing import Optional

from fastapi import FastAPI, Header, HTTPException, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from .backends import get_answer_provider
from .config import get_admin_key, get_catalog_path, get_db_path
from .core import ChatSession, Message, Project
from .frames import encode_frame
from .session import SessionManager, TurnRequest
from .store import ChatStore, SessionNotFound, StoreError

logger = logging.getLogger(__name__)

app = FastAPI(title="repochat", version="0.1.0")

# Store and manager caches (populated on first request)
_store: ChatStore | None = None
_manager: SessionManager | None = None


def _get_store() -> ChatStore:
    """Lazily open and cache the store."""
    global _store
    if _store is None:
        _store = ChatStore(get_db_path())
        logger.info("Using store at %s", _store.db_path)
    return _store


def _get_manager() -> SessionManager | None:
    """Lazily build the session manager; None if no provider is configured."""
    global _manager
    if _manager is None:
        provider = get_answer_provider()
        if provider is None:
            return None
        _manager = SessionManager(_get_store(), provider)
        logger.info("Answer provider: %s", provider.name)
    return _manager


class HistoryEntry(BaseModel):
    role: str
    content: str = ""
    citations: Optional[list[dict]] = None


class ChatRequest(BaseModel):
    """Body of POST /chat."""

    model_config = ConfigDict(populate_by_name=True)

    question: str
    stream: bool = True
    history: list[HistoryEntry] = Field(default_factory=list)
    visitor_id: Optional[str] = Field(None, alias="visitorId")
    repo: Optional[str] = None
    session_id: Optional[str] = Field(None, alias="sessionId")


def _project_to_dict(project: Project) -> dict:
    return {
        "id": project.id,
        "name": project.name,
        "description": project.description,
        "url": project.url,
        "repoIdentifier": project.repo_identifier,
        "tags": project.tags,
    }


def _session_to_dict(session: ChatSession) -> dict:
    return {
        "id": session.id,
        "createdAt": session.created_at.isoformat() if session.created_at else None,
        "lastMessageAt": session.last_message_at.isoformat() if session.last_message_at else None,
        "lastMessageSummary": session.last_message_summary,
        "activeRepo": session.active_repo,
    }


def _message_to_dict(msg: Message) -> dict:
    data = {
        "id": msg.id,
        "role": msg.role,
        "content": msg.content,
        "createdAt": msg.created_at.isoformat() if msg.created_at else None,
    }
    if msg.role == "assistant":
        data["citations"] = [c.to_dict() for c in msg.citations]
    return data


def load_catalog_file(path) -> list[Project]:
    """Read a JSON list of projects (or {"projects": [...]})."""
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get("projects", [])
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a list of projects")
    return [Project.from_dict(item) for item in data if isinstance(item, dict)]


# ── Routes ───────────────────────────────────────────────────────


@app.get("/healthz")
async def healthz():
    return {"ok": True}


@app.get("/projects")
async def get_projects():
    """Return the tracked repository catalog."""
    return {"projects": [_project_to_dict(p) for p in _get_store().list_projects()]}


@app.post("/chat")
async def chat(body: ChatRequest):
    """Answer a question as a stream of meta/delta/done|error frames."""
    if not body.stream:
        raise HTTPException(status_code=400, detail="Only streaming responses are supported")
    if not body.question.strip():
        raise HTTPException(status_code=400, detail="Question must not be empty")

    manager = _get_manager()
    if manager is None:
        raise HTTPException(status_code=503, detail="Answer provider not configured")

    request = TurnRequest(
        question=body.question,
        history=[entry.model_dump(exclude_none=True) for entry in body.history],
        visitor_id=body.visitor_id,
        repo=body.repo,
        session_id=body.session_id,
    )
    try:
        turn = manager.open_turn(request)
    except SessionNotFound:
        raise HTTPException(status_code=404, detail="Session not found")
    except StoreError as e:
        logger.error("Failed to open turn: %s", e)
        raise HTTPException(status_code=500, detail="Failed to load session")

    async def event_stream():
        async for frame in manager.stream_turn(turn):
            yield encode_frame(frame)

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.get("/api/sessions")
async def get_sessions(visitor_id: str = Query(..., alias="visitorId", min_length=1)):
    """Return a visitor's sessions, most recent first."""
    try:
        sessions = _get_store().list_sessions(visitor_id)
    except StoreError as e:
        logger.error("Failed to list sessions for %s: %s", visitor_id, e)
        raise HTTPException(status_code=500, detail="Failed to load sessions")
    return {"sessions": [_session_to_dict(s) for s in sessions]}


@app.get("/api/sessions/{session_id}/messages")
async def get_session_messages(
    session_id: str,
    visitor_id: str = Query(..., alias="visitorId", min_length=1),
    limit: int = Query(100, ge=1, le=1000),
):
    """Return the newest `limit` messages of a session, oldest first."""
    try:
        messages = _get_store().list_messages(session_id, visitor_id, limit)
    except SessionNotFound:
        raise HTTPException(status_code=404, detail="Session not found")
    except StoreError as e:
        logger.error("Failed to get messages for %s: %s", session_id, e)
        raise HTTPException(status_code=500, detail="Failed to load messages")

    return {
        "sessionId": session_id,
        "messages": [_message_to_dict(m) for m in messages],
    }


@app.post("/admin/reindex")
async def reindex(x_admin_key: Optional[str] = Header(None)):
    """Reload the project catalog from REPOCHAT_CATALOG_PATH."""
    admin_key = get_admin_key()
    if not admin_key:
        raise HTTPException(status_code=503, detail="Admin access not configured")
    if not hmac.compare_digest(x_admin_key or "", admin_key):
        raise HTTPException(status_code=401, detail="Invalid admin key")

    path = get_catalog_path()
    if path is None:
        raise HTTPException(status_code=503, detail="No catalog path configured")

    try:
        projects = load_catalog_file(path)
    except (OSError, ValueError) as e:
        logger.error("Failed to read catalog %s: %s", path, e)
        raise HTTPException(status_code=500, detail="Failed to read catalog")

    try:
        count = _get_store().replace_projects(projects)
    except StoreError as e:
        logger.error("Failed to store catalog: %s", e)
        raise HTTPException(status_code=500, detail="Failed to store catalog")

    return {"ok": True, "projects": count}
