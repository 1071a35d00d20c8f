import logging
import re
import uuid
from contextlib import aclosing
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sitechat.assistant_service import AssistantService
from sitechat.durable import (
    WorkflowContext,
    retry_at_most_once,
    retry_idempotent,
    wait_until,
)
from sitechat.models import QueryRecord, ThreadRecord
from sitechat.runtime import WorkflowRuntime
from sitechat.store import THREADS, Store


logger = logging.getLogger("sitechat.thread")

# Appended instead of the provider error, which may carry sensitive details.
FAILURE_SUFFIX = "...encountered an error!"

# File citations point at crawled PDFs, which cannot be linked back to pages.
_CITATION_RE = re.compile(r"【[^】]*】")


def strip_citations(text: str) -> str:
    return _CITATION_RE.sub("", text or "")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ProviderStreamError(RuntimeError):
    pass


class ThreadConflict(ValueError):
    pass


class IdempotencyKeyReused(ValueError):
    pass


class ThreadService:
    CREATE_KIND = "thread.create"
    QUERY_KIND = "thread.query"

    def __init__(
        self,
        store: Store,
        runtime: WorkflowRuntime,
        provider: Any,
        assistants: AssistantService,
    ) -> None:
        self.store = store
        self.runtime = runtime
        self.provider = provider
        self.assistants = assistants
        runtime.register(self.CREATE_KIND, self.create_workflow)
        runtime.register(self.QUERY_KIND, self.query_workflow)

    @staticmethod
    def query_workflow_id(thread_id: str, index: int) -> str:
        return f"thread:{thread_id}:query:{index}"

    def _schedule_creation(self, thread_id: str, assistant_id: str) -> None:
        self.runtime.schedule(
            f"thread:{thread_id}:create",
            self.CREATE_KIND,
            {"thread_id": thread_id, "assistant_id": assistant_id},
        )

    def create(self, assistant_id: str, thread_id: Optional[str] = None) -> str:
        thread_id = thread_id or str(uuid.uuid4())
        now = _now()
        record = ThreadRecord(
            thread_id=thread_id,
            assistant_id=assistant_id,
            created_at=now,
            updated_at=now,
        )
        if not self.store.create(THREADS, thread_id, record):
            existing = self.store.get_thread(thread_id)
            if existing is None or existing.assistant_id != assistant_id:
                raise ThreadConflict(f"Thread '{thread_id}' already exists")
        self._schedule_creation(thread_id, assistant_id)
        return thread_id

    def submit_query(
        self, thread_id: str, content: str, idempotency_key: Optional[str] = None
    ) -> int:
        """Append a query and schedule its turn. Raises KeyError for unknown threads.

        A repeated ``idempotency_key`` returns the index it was first recorded
        with instead of appending; reusing it for different content raises
        ``IdempotencyKeyReused``. The key is stored in the same write as the
        append, so replays are recognised across restarts.
        """
        key = str(idempotency_key or "").strip()

        def append(record: ThreadRecord) -> Dict[str, Any]:
            if key and key in record.submitted_keys:
                index = record.submitted_keys[key]
                if record.queries[index].content != content:
                    raise IdempotencyKeyReused(
                        f"Idempotency-Key was already used for query #{index}"
                    )
                return {"index": index, "assistant_id": record.assistant_id, "replay": True}
            record.queries.append(QueryRecord(content=content))
            index = len(record.queries) - 1
            if key:
                record.submitted_keys[key] = index
            return {"index": index, "assistant_id": record.assistant_id, "replay": False}

        appended = self.store.update(THREADS, thread_id, append)
        index = int(appended["index"])
        if appended["replay"]:
            logger.info("[idempotency] %s key=%s replays query #%d", thread_id, key[:12], index)
        # Scheduling is idempotent, so a replay also repairs a lost schedule.
        self._schedule_creation(thread_id, appended["assistant_id"])
        self.runtime.schedule(
            self.query_workflow_id(thread_id, index),
            self.QUERY_KIND,
            {"thread_id": thread_id, "index": index},
        )
        return index

    def messages(self, thread_id: str) -> Optional[ThreadRecord]:
        return self.store.get_thread(thread_id)

    def reschedule_pending(self) -> int:
        """Schedule turns whose query was stored but whose workflow never was."""
        scheduled = 0
        for thread_id in self.store.keys(THREADS):
            record = self.store.get_thread(thread_id)
            if record is None:
                continue
            if not record.external_thread_id:
                self._schedule_creation(thread_id, record.assistant_id)
            for index in range(record.active_index, len(record.queries)):
                if self.runtime.schedule(
                    self.query_workflow_id(thread_id, index),
                    self.QUERY_KIND,
                    {"thread_id": thread_id, "index": index},
                ):
                    scheduled += 1
        if scheduled:
            logger.info("[turn] rescheduled %d pending turn(s)", scheduled)
        return scheduled

    async def create_workflow(
        self, ctx: WorkflowContext, thread_id: str, assistant_id: str
    ) -> None:
        async def assistant_ready() -> Any:
            return self.assistants.status(assistant_id) or False

        external_assistant_id = await wait_until(
            "assistant is ready",
            ctx,
            assistant_ready,
            validate=lambda value: isinstance(value, str),
        )

        record = self.store.get_thread(thread_id)
        if record is None or record.external_thread_id:
            return

        # Remote threads cannot be listed, so a crash between creating and
        # saving leaves an orphaned remote thread behind.
        external_thread_id = await retry_idempotent(
            "create remote thread",
            ctx,
            lambda: self.provider.create_thread({"sitechat_thread_id": thread_id}),
        )

        def save_ids(r: ThreadRecord) -> None:
            if not r.external_thread_id:
                r.external_assistant_id = external_assistant_id
                r.external_thread_id = external_thread_id

        self.store.update(
            THREADS, thread_id, save_ids, idempotency_key=ctx.idempotency_key("save ids")
        )
        logger.info("[turn] thread %s bound to remote thread %s", thread_id, external_thread_id)

    def _claim_turn(self, thread_id: str, index: int) -> Any:
        current = self.store.get_thread(thread_id)
        if current is None or current.active_index != index:
            return False

        def claim(r: ThreadRecord) -> Any:
            if r.active_index != index:
                return False
            r.queries[index].started = True
            return r.queries[index].content

        return self.store.update(THREADS, thread_id, claim)

    def _append_response(self, ctx: WorkflowContext, thread_id: str, index: int, text: str, n: int) -> None:
        def append(r: ThreadRecord) -> None:
            r.queries[index].response += text

        self.store.update(
            THREADS, thread_id, append, idempotency_key=ctx.idempotency_key(f"append delta #{n}")
        )

    def _mark_completed(self, ctx: WorkflowContext, thread_id: str, index: int) -> None:
        def complete(r: ThreadRecord) -> None:
            r.queries[index].completed = True

        self.store.update(
            THREADS, thread_id, complete, idempotency_key=ctx.idempotency_key("complete")
        )

    async def _run_turn(
        self,
        ctx: WorkflowContext,
        thread_id: str,
        index: int,
        ids: Dict[str, str],
        content: str,
    ) -> None:
        external_thread_id = ids["external_thread_id"]
        await self.provider.create_message(external_thread_id, content)

        stream = self.provider.stream_run(
            external_thread_id,
            ids["external_assistant_id"],
            {"sitechat_thread_id": thread_id, "query_index": str(index)},
        )
        delta = 0
        async with aclosing(stream) as events:
            async for event in events:
                if event.kind == "text_delta":
                    text = strip_citations(event.text)
                    if not text:
                        continue
                    self._append_response(ctx, thread_id, index, text, delta)
                    delta += 1
                elif event.kind == "message_completed":
                    self._mark_completed(ctx, thread_id, index)
                    break
                elif event.kind in ("error", "run_failed"):
                    raise ProviderStreamError(
                        f"Error streaming (code {event.code}): {event.message}"
                    )
                else:
                    logger.debug("[turn] ignoring stream event %s", event.raw_type)

    def _finish(self, ctx: WorkflowContext, thread_id: str, index: int) -> None:
        def finish(r: ThreadRecord) -> None:
            query = r.queries[index]
            if not query.completed:
                query.response += FAILURE_SUFFIX
                query.completed = True
            if r.active_index == index:
                r.active_index += 1
            else:
                logger.error(
                    "[turn] %s #%d finished while active index is %d",
                    thread_id,
                    index,
                    r.active_index,
                )

        self.store.update(
            THREADS,
            thread_id,
            finish,
            idempotency_key=ctx.idempotency_key("finish"),
            forget_prefix=ctx.key_prefix,
        )

    async def query_workflow(self, ctx: WorkflowContext, thread_id: str, index: int) -> None:
        async def resources_ready() -> Any:
            r = self.store.get_thread(thread_id)
            if r is None or not r.external_assistant_id or not r.external_thread_id:
                return False
            return {
                "external_assistant_id": r.external_assistant_id,
                "external_thread_id": r.external_thread_id,
            }

        ids = await wait_until("resources ready", ctx, resources_ready)

        # The provider allows one run per thread at a time, so turns take the
        # active index in order; claiming also marks the query started.
        async def our_turn() -> Any:
            return self._claim_turn(thread_id, index)

        content = await wait_until(
            "our turn",
            ctx,
            our_turn,
            validate=lambda value: isinstance(value, str),
        )

        try:
            await retry_at_most_once(
                "run",
                ctx,
                lambda: self._run_turn(ctx, thread_id, index, ids, content),
            )
        except Exception as exc:
            logger.warning("[turn] provider call failed for %s #%d: %s", thread_id, index, exc)

        # TODO: delete finished runs on the provider instead of waiting for its own expiry.
        self._finish(ctx, thread_id, index)
