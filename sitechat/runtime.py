import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from sitechat.config import Settings
from sitechat.durable import Backoff, FatalError, Loop, WorkflowContext
from sitechat.models import WorkflowRecord
from sitechat.store import WORKFLOWS, Store


logger = logging.getLogger("sitechat.runtime")

WorkflowFn = Callable[..., Awaitable[Optional[Loop]]]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowRuntime:
    """Runs durable workflows as asyncio tasks on one event loop.

    Workflow position lives in the WorkflowRecord (iteration, next_run_at,
    checkpoints), so ``start`` can pick up every unfinished workflow after a
    restart. A failed attempt is retried for the same iteration after a
    backoff; a ``FatalError`` marks the workflow failed for good.
    """

    def __init__(self, store: Store, settings: Settings) -> None:
        self._store = store
        self._handlers: Dict[str, WorkflowFn] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self.wait_backoff = Backoff(
            initial=settings.wait_initial_backoff_sec,
            maximum=settings.wait_max_backoff_sec,
        )
        self.retry_backoff = Backoff(
            initial=settings.retry_initial_backoff_sec,
            maximum=settings.retry_max_backoff_sec,
        )

    @property
    def running(self) -> bool:
        return self._loop is not None

    def register(self, kind: str, fn: WorkflowFn) -> None:
        self._handlers[kind] = fn

    def schedule(
        self,
        workflow_id: str,
        kind: str,
        args: Optional[Dict[str, Any]] = None,
        when: Optional[datetime] = None,
    ) -> bool:
        """Durably schedule a workflow. Scheduling an existing id is a no-op.

        Returns True if the workflow was newly created.
        """
        if kind not in self._handlers:
            raise KeyError(f"No workflow registered for kind '{kind}'")
        now = _now()
        record = WorkflowRecord(
            workflow_id=workflow_id,
            kind=kind,
            args=dict(args or {}),
            next_run_at=when,
            created_at=now,
            updated_at=now,
        )
        created = self._store.create(WORKFLOWS, workflow_id, record)
        if created:
            logger.info("[runtime] scheduled %s (%s)", workflow_id, kind)
        if self._loop is not None:
            self._ensure_task(workflow_id)
        return created

    async def start(self) -> int:
        self._loop = asyncio.get_running_loop()
        resumed = 0
        for workflow_id in self._store.keys(WORKFLOWS):
            record = self._store.get_workflow(workflow_id)
            if record is None or record.status in ("completed", "failed"):
                continue
            self._ensure_task(workflow_id)
            resumed += 1
        if resumed:
            logger.info("[runtime] resumed %d unfinished workflow(s)", resumed)
        return resumed

    async def stop(self) -> None:
        tasks = list(self._tasks.values()) + list(self._background)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._background.clear()
        self._loop = None

    async def wait_for(self, workflow_id: str) -> None:
        task = self._tasks.get(workflow_id)
        if task is not None:
            await task

    async def wait_background(self) -> None:
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def spawn(self, coro: Awaitable[Any], name: str) -> None:
        """Fire-and-continue background work; failures are logged, not raised."""
        if self._loop is None:
            raise RuntimeError("Runtime is not started")
        task = self._loop.create_task(self._run_background(coro, name))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _run_background(self, coro: Awaitable[Any], name: str) -> None:
        try:
            await coro
        except Exception as exc:
            logger.error("[runtime] background task %s failed: %s", name, exc)

    def _ensure_task(self, workflow_id: str) -> None:
        loop = self._loop
        if loop is None:
            return
        try:
            current = asyncio.get_running_loop()
        except RuntimeError:
            current = None
        if current is not loop:
            loop.call_soon_threadsafe(self._ensure_task, workflow_id)
            return
        existing = self._tasks.get(workflow_id)
        if existing is not None and not existing.done():
            return
        task = loop.create_task(self._drive(workflow_id), name=workflow_id)
        self._tasks[workflow_id] = task
        task.add_done_callback(lambda t, wid=workflow_id: self._on_task_done(wid, t))

    def _on_task_done(self, workflow_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(workflow_id) is task:
            self._tasks.pop(workflow_id, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("[runtime] workflow %s crashed: %s", workflow_id, exc)

    def _update(self, workflow_id: str, **fields: Any) -> None:
        def apply(record: WorkflowRecord) -> None:
            for name, value in fields.items():
                setattr(record, name, value)

        self._store.update(WORKFLOWS, workflow_id, apply)

    async def _drive(self, workflow_id: str) -> None:
        while True:
            record = self._store.get_workflow(workflow_id)
            if record is None or record.status in ("completed", "failed"):
                return
            handler = self._handlers.get(record.kind)
            if handler is None:
                logger.error("[runtime] no handler for %s (%s)", workflow_id, record.kind)
                self._update(workflow_id, status="failed", error=f"unknown kind {record.kind}")
                return

            if record.next_run_at is not None:
                delay = (record.next_run_at - _now()).total_seconds()
                if delay > 0:
                    await asyncio.sleep(delay)

            self._update(workflow_id, status="running")
            ctx = WorkflowContext(
                store=self._store,
                workflow_id=workflow_id,
                iteration=record.iteration,
                wait_backoff=self.wait_backoff,
                retry_backoff=self.retry_backoff,
                spawner=self.spawn,
            )
            try:
                outcome = await handler(ctx, **record.args)
            except FatalError as exc:
                logger.error("[runtime] %s failed permanently: %s", workflow_id, exc)
                self._update(workflow_id, status="failed", error=str(exc))
                return
            except Exception as exc:
                attempt = record.attempt + 1
                delay = min(
                    self.retry_backoff.initial * (self.retry_backoff.factor ** (attempt - 1)),
                    self.retry_backoff.maximum,
                )
                logger.warning(
                    "[runtime] %s iteration #%d attempt %d failed, retrying in %.1fs: %s",
                    workflow_id,
                    record.iteration,
                    attempt,
                    delay,
                    exc,
                )
                self._update(workflow_id, attempt=attempt, error=str(exc))
                await asyncio.sleep(delay)
                continue

            if isinstance(outcome, Loop):
                when = outcome.when

                def advance(r: WorkflowRecord) -> None:
                    r.iteration += 1
                    r.next_run_at = when
                    r.checkpoints = {}
                    r.attempt = 0
                    r.error = None
                    r.status = "pending"

                self._store.update(WORKFLOWS, workflow_id, advance)
                continue

            self._update(workflow_id, status="completed", error=None)
            logger.info("[runtime] %s completed", workflow_id)
            return
