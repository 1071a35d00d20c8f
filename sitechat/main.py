import logging
from contextlib import asynccontextmanager
from pathlib import Path
from queue import Empty, Queue
from typing import Any, AsyncIterator, Dict, Iterator, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException
from fastapi.responses import StreamingResponse
from starlette.requests import Request

from site_crawler import SiteCrawler
from sitechat.assistant_service import AssistantConflict, AssistantService
from sitechat.auth import AuthConfig, AuthService, Principal
from sitechat.config import load_settings
from sitechat.models import (
    AssistantStatusResponse,
    CreateAssistantRequest,
    CreateAssistantResponse,
    CreateThreadRequest,
    CreateThreadResponse,
    MessagesResponse,
    SubmitQueryRequest,
    SubmitQueryResponse,
)
from sitechat.provider import OpenAIProvider
from sitechat.runtime import WorkflowRuntime
from sitechat.sse import format_sse
from sitechat.store import THREADS, Store
from sitechat.thread_service import IdempotencyKeyReused, ThreadConflict, ThreadService


settings = load_settings()
logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger("sitechat.api")

SSE_KEEPALIVE_SEC = 15

store = Store(Path(settings.state_dir))
runtime = WorkflowRuntime(store, settings)
provider = OpenAIProvider()
assistants = AssistantService(store, runtime, provider, SiteCrawler(), settings)
threads = ThreadService(store, runtime, provider, assistants)
auth_service = AuthService(AuthConfig(settings))


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    await runtime.start()
    threads.reschedule_pending()
    bootstrap = settings.bootstrap_assistant
    if bootstrap is not None:
        try:
            assistants.create(bootstrap.name, bootstrap.url, assistant_id=bootstrap.name)
            logger.info("[api] bootstrap assistant '%s' scheduled", bootstrap.name)
        except AssistantConflict as exc:
            logger.error("[api] bootstrap assistant not created: %s", exc)
    try:
        yield
    finally:
        await runtime.stop()


def require_auth(request: Request) -> Optional[Principal]:
    return auth_service.authorize(request)


app = FastAPI(title="sitechat", lifespan=lifespan)
api = APIRouter(prefix="/api", dependencies=[Depends(require_auth)])


def _conflict(error_code: str, message: str) -> HTTPException:
    return HTTPException(status_code=409, detail={"error_code": error_code, "message": message})


@app.get("/healthz")
def healthz() -> dict:
    return {"status": "ok", "runtime": "running" if runtime.running else "stopped"}


@api.post("/assistants", response_model=CreateAssistantResponse)
def create_assistant(req: CreateAssistantRequest) -> CreateAssistantResponse:
    try:
        assistant_id = assistants.create(req.name, req.url, assistant_id=req.assistant_id)
    except AssistantConflict as exc:
        raise _conflict("assistant_exists", str(exc))
    return CreateAssistantResponse(assistant_id=assistant_id)


@api.get("/assistants/{assistant_id}/status", response_model=AssistantStatusResponse)
def assistant_status(assistant_id: str) -> AssistantStatusResponse:
    external_id = assistants.status(assistant_id)
    if external_id is None:
        raise HTTPException(status_code=404, detail="Assistant not found")
    return AssistantStatusResponse(assistant_id=assistant_id, external_assistant_id=external_id)


@api.post("/threads", response_model=CreateThreadResponse)
def create_thread(req: CreateThreadRequest) -> CreateThreadResponse:
    if store.get_assistant(req.assistant_id) is None:
        raise HTTPException(status_code=404, detail="Assistant not found")
    try:
        thread_id = threads.create(req.assistant_id, thread_id=req.thread_id)
    except ThreadConflict as exc:
        raise _conflict("thread_exists", str(exc))
    return CreateThreadResponse(thread_id=thread_id)


@api.post("/threads/{thread_id}/queries", response_model=SubmitQueryResponse, status_code=202)
def submit_query(
    thread_id: str,
    req: SubmitQueryRequest,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
) -> SubmitQueryResponse:
    if store.get_thread(thread_id) is None:
        raise HTTPException(status_code=404, detail="Thread not found")
    try:
        index = threads.submit_query(thread_id, req.content, idempotency_key=idempotency_key)
    except KeyError:
        raise HTTPException(status_code=404, detail="Thread not found")
    except IdempotencyKeyReused as exc:
        raise _conflict("idempotency_key_reused", str(exc))
    return SubmitQueryResponse(thread_id=thread_id, index=index)


def _messages_payload(data: Dict[str, Any]) -> Dict[str, Any]:
    return MessagesResponse(
        thread_id=data["thread_id"],
        active_index=data.get("active_index", 0),
        queries=data.get("queries", []),
    ).model_dump()


@api.get("/threads/{thread_id}/messages", response_model=MessagesResponse)
def get_messages(thread_id: str) -> MessagesResponse:
    record = threads.messages(thread_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Thread not found")
    return MessagesResponse(
        thread_id=record.thread_id,
        active_index=record.active_index,
        queries=record.queries,
    )


def _event_stream(thread_id: str, q: Queue) -> Iterator[str]:
    try:
        current = store.get_thread(thread_id)
        if current is not None:
            yield format_sse(_messages_payload(current.model_dump(mode="json")), "thread")
        while True:
            try:
                data = q.get(timeout=SSE_KEEPALIVE_SEC)
                yield format_sse(_messages_payload(data), "thread")
            except Empty:
                yield ": keep-alive\n\n"
    finally:
        store.unsubscribe(THREADS, thread_id, q)


@api.get("/threads/{thread_id}/events")
def stream_events(thread_id: str) -> StreamingResponse:
    q = store.subscribe(THREADS, thread_id)
    if q is None:
        raise HTTPException(status_code=404, detail="Thread not found")
    return StreamingResponse(
        _event_stream(thread_id, q),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


app.include_router(api)
