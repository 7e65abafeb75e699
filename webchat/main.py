import argparse
import asyncio
import logging
import os
import re
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError
from starlette.requests import Request

from webchat.broadcaster import Subscription
from webchat.config import WebChatSettings, load_settings
from webchat.errors import RunConflictError, WorkerSpawnError
from webchat.models import (
    AppendMessagesRequest,
    ChatRequest,
    CreateSessionRequest,
    SessionListResponse,
    SessionMessagesResponse,
    SessionSummary,
    StopRequest,
    StopResponse,
)
from webchat.persistence import SessionStore, validate_session_id
from webchat.run_ledger import RunLedger
from webchat.sse import SSE_HEADERS, format_sse, format_sse_comment
from webchat.supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

_WORKSPACE_CONTEXT_RE = re.compile(r"\[Context: workspace file '([^']+)'\]")

router = APIRouter()


def get_settings(request: Request) -> WebChatSettings:
    return request.app.state.settings


def get_ledger(request: Request) -> RunLedger:
    return request.app.state.ledger


def get_store(request: Request) -> SessionStore:
    return request.app.state.store


def _error(status_code: int, error_code: str, message: str) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail={"error_code": error_code, "message": message},
    )


def _checked_session_id(raw: Optional[str]) -> str:
    session_id = str(raw or "").strip()
    if not session_id:
        raise _error(400, "session_id_required", "sessionId required")
    try:
        return validate_session_id(session_id)
    except ValueError as exc:
        raise _error(400, "invalid_session_id", str(exc)) from exc


def _rewrite_workspace_context(text: str, prefix: str) -> str:
    if not prefix:
        return text
    return _WORKSPACE_CONTEXT_RE.sub(
        lambda m: f"[Context: workspace file '{prefix}/{m.group(1)}']",
        text,
        count=1,
    )


async def _event_stream(subscription: Subscription, keepalive_sec: float) -> AsyncIterator[str]:
    try:
        while True:
            try:
                event = await subscription.get(timeout=keepalive_sec)
            except asyncio.TimeoutError:
                yield format_sse_comment()
                continue
            if event is None:
                break
            yield format_sse(event)
    finally:
        # Client went away or the run ended; the worker is unaffected.
        subscription.close()


async def _empty_stream() -> AsyncIterator[str]:
    return
    yield


def _stream_response(
    subscription: Optional[Subscription],
    settings: WebChatSettings,
    extra_headers: Optional[Dict[str, str]] = None,
) -> StreamingResponse:
    headers = dict(SSE_HEADERS)
    if extra_headers:
        headers.update(extra_headers)
    body = (
        _event_stream(subscription, settings.keepalive_interval_sec)
        if subscription is not None
        else _empty_stream()
    )
    return StreamingResponse(body, media_type="text/event-stream", headers=headers)


@router.post("/api/chat")
async def start_chat(
    req: ChatRequest,
    ledger: RunLedger = Depends(get_ledger),
    settings: WebChatSettings = Depends(get_settings),
) -> StreamingResponse:
    last_user = req.last_user_message()
    user_text = last_user.text() if last_user else ""
    if not user_text.strip():
        raise _error(400, "empty_message", "No message provided")
    session_id = _checked_session_id(req.session_id)

    if ledger.has_active_run(session_id):
        raise _error(409, "run_active", "Active run in progress")

    agent_message = _rewrite_workspace_context(user_text, settings.agent_workspace_prefix)

    record: Dict[str, Any] = {
        "content": user_text,
        "parts": [p.model_dump(exclude_none=True) for p in last_user.parts],
    }
    if last_user.id:
        record["id"] = last_user.id

    try:
        await ledger.start_run(
            session_id,
            agent_message,
            agent_session_id=session_id,
            user_message=record,
        )
    except RunConflictError as exc:
        raise _error(409, "run_active", str(exc)) from exc
    except WorkerSpawnError as exc:
        raise _error(500, "worker_spawn_failed", str(exc)) from exc

    # Nothing has been published yet: the worker pump has not had a turn.
    subscription = ledger.subscribe(session_id, replay=False)
    return _stream_response(subscription, settings)


@router.get("/api/chat/stream")
async def reconnect_chat(
    session_id: Optional[str] = Query(default=None, alias="sessionId"),
    ledger: RunLedger = Depends(get_ledger),
    settings: WebChatSettings = Depends(get_settings),
) -> Any:
    sid = _checked_session_id(session_id)
    run = ledger.get_active_run(sid)
    if run is None:
        return JSONResponse({"active": False}, status_code=404)
    subscription = ledger.subscribe(sid, replay=True)
    return _stream_response(
        subscription,
        settings,
        {
            "X-Run-Active": "true" if run.is_active else "false",
            "X-Run-Status": run.status,
        },
    )


@router.post("/api/chat/stop", response_model=StopResponse)
async def stop_chat(request: Request, ledger: RunLedger = Depends(get_ledger)) -> StopResponse:
    try:
        body = await request.json()
    except ValueError:
        body = {}
    try:
        req = StopRequest.model_validate(body if isinstance(body, dict) else {})
    except ValidationError:
        req = StopRequest()
    sid = _checked_session_id(req.session_id)
    aborted = await ledger.abort_run(sid)
    return StopResponse(aborted=aborted)


@router.get("/api/web-sessions", response_model=SessionListResponse, response_model_by_alias=True)
def list_web_sessions(store: SessionStore = Depends(get_store)) -> SessionListResponse:
    sessions: List[SessionSummary] = []
    for item in store.list_sessions():
        try:
            sessions.append(SessionSummary.model_validate(item))
        except ValidationError:
            logger.warning("[persist] skipping malformed index entry %r", item.get("id"))
    return SessionListResponse(sessions=sessions)


@router.post("/api/web-sessions")
async def create_web_session(
    req: CreateSessionRequest,
    store: SessionStore = Depends(get_store),
) -> Dict[str, Any]:
    entry = await store.create_session(req.title)
    return {"session": entry}


@router.get("/api/web-sessions/{session_id}", response_model=SessionMessagesResponse)
def get_web_session(session_id: str, store: SessionStore = Depends(get_store)) -> SessionMessagesResponse:
    sid = _checked_session_id(session_id)
    messages = store.read_messages(sid)
    if messages is None:
        raise _error(404, "session_not_found", "Session not found")
    return SessionMessagesResponse(id=sid, messages=messages)


@router.post("/api/web-sessions/{session_id}/messages")
async def append_web_session_messages(
    session_id: str,
    req: AppendMessagesRequest,
    store: SessionStore = Depends(get_store),
) -> Dict[str, Any]:
    sid = _checked_session_id(session_id)
    if not req.messages:
        raise _error(400, "messages_required", "messages array required")
    await store.upsert_messages(sid, req.messages, title=req.title)
    return {"ok": True}


@router.get("/api/health")
def health(ledger: RunLedger = Depends(get_ledger)) -> Dict[str, Any]:
    return {"status": "ok", "active_runs": ledger.active_count(), "runs": ledger.snapshot()}


def create_app(
    settings: Optional[WebChatSettings] = None,
    ledger: Optional[RunLedger] = None,
    store: Optional[SessionStore] = None,
) -> FastAPI:
    settings = settings or load_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    store = store or SessionStore(settings.web_chat_dir)
    ledger = ledger or RunLedger(settings, ProcessSupervisor(settings), store)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        logger.info("[runs] web chat ready; sessions dir %s", settings.web_chat_dir)
        try:
            yield
        finally:
            await ledger.shutdown()

    app = FastAPI(title="Workspace Web Chat", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.ledger = ledger
    app.include_router(router)
    return app


app = create_app()


def serve(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Workspace web chat server")
    parser.add_argument("--host", default=os.getenv("WEBCHAT_HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.getenv("WEBCHAT_PORT", "8100")))
    args = parser.parse_args(argv)

    import uvicorn

    uvicorn.run("webchat.main:app", host=args.host, port=args.port)


if __name__ == "__main__":
    serve()
