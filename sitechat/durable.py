"""Durable execution primitives shared by the crawl loop and the turn scheduler.

Each primitive checkpoints its outcome into the enclosing workflow's record
(keyed by label, scoped to the current loop iteration) so that a resumed
workflow replays completed steps from the record instead of re-running them.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterator, Optional, TypeVar

from sitechat.models import Checkpoint, WorkflowRecord
from sitechat.store import WORKFLOWS, Store


logger = logging.getLogger("sitechat.durable")

T = TypeVar("T")


class WorkflowError(Exception):
    pass


class FatalError(WorkflowError):
    """Configuration-level failure; never retried."""


class AtMostOnceFailed(WorkflowError):
    def __init__(self, label: str, error: str) -> None:
        super().__init__(f"'{label}' failed: {error}")
        self.label = label
        self.error = error


class AtMostOnceAbandoned(WorkflowError):
    """The step started before a crash and may or may not have taken effect."""

    def __init__(self, label: str) -> None:
        super().__init__(f"'{label}' was interrupted and will not be re-run")
        self.label = label


class RetriesExhausted(WorkflowError):
    def __init__(self, label: str, attempts: int, last_error: Exception) -> None:
        super().__init__(f"'{label}' gave up after {attempts} attempt(s): {last_error}")
        self.label = label
        self.attempts = attempts
        self.last_error = last_error


@dataclass(frozen=True)
class Backoff:
    initial: float
    maximum: float
    factor: float = 2.0

    def delays(self) -> Iterator[float]:
        delay = self.initial
        while True:
            yield min(delay, self.maximum)
            delay = min(delay * self.factor, self.maximum)


@dataclass(frozen=True)
class Loop:
    """Returned by a periodic workflow to be re-entered as iteration+1 at ``when``."""

    when: datetime


class WorkflowContext:
    def __init__(
        self,
        store: Store,
        workflow_id: str,
        iteration: int,
        wait_backoff: Backoff,
        retry_backoff: Backoff,
        spawner: Optional[Callable[[Awaitable[Any], str], None]] = None,
    ) -> None:
        self.store = store
        self.workflow_id = workflow_id
        self.iteration = iteration
        self.wait_backoff = wait_backoff
        self.retry_backoff = retry_backoff
        self._spawner = spawner

    def checkpoint(self, label: str) -> Optional[Checkpoint]:
        record = self.store.get_workflow(self.workflow_id)
        if record is None:
            return None
        return record.checkpoints.get(label)

    def set_checkpoint(
        self, label: str, status: str, result: Any = None, error: Optional[str] = None
    ) -> None:
        def apply(record: WorkflowRecord) -> None:
            record.checkpoints[label] = Checkpoint(status=status, result=result, error=error)

        self.store.update(WORKFLOWS, self.workflow_id, apply)

    def idempotency_key(self, label: str) -> str:
        return f"{self.workflow_id}#{self.iteration}:{label}"

    @property
    def key_prefix(self) -> str:
        return f"{self.workflow_id}#"

    def spawn(self, coro: Awaitable[Any], label: str) -> None:
        if self._spawner is None:
            raise RuntimeError("This context cannot spawn background work")
        self._spawner(coro, f"{self.workflow_id}:{label}")


async def retry_idempotent(
    label: str,
    ctx: WorkflowContext,
    op: Callable[[], Awaitable[T]],
    *,
    max_attempts: Optional[int] = None,
) -> T:
    """Run ``op`` until it succeeds, at least once per workflow iteration.

    ``op`` must be idempotent: it can run any number of times. The result must
    be JSON serialisable; once recorded it is returned on replay without
    running ``op`` again.
    """
    cp = ctx.checkpoint(label)
    if cp is not None and cp.status == "completed":
        return cp.result
    delays = ctx.retry_backoff.delays()
    attempt = 0
    while True:
        attempt += 1
        try:
            result = await op()
        except FatalError:
            raise
        except Exception as exc:
            if max_attempts is not None and attempt >= max_attempts:
                raise RetriesExhausted(label, attempt, exc) from exc
            delay = next(delays)
            logger.warning(
                "[durable] '%s' failed on attempt %d, retrying in %.1fs: %s",
                label,
                attempt,
                delay,
                exc,
            )
            await asyncio.sleep(delay)
            continue
        ctx.set_checkpoint(label, "completed", result=result)
        return result


async def retry_at_most_once(
    label: str,
    ctx: WorkflowContext,
    op: Callable[[], Awaitable[T]],
) -> T:
    """Run ``op`` at most once across every replay of the workflow.

    A ``started`` marker is written before ``op`` runs. If the workflow resumes
    and finds only the marker, the effect is treated as lost and
    ``AtMostOnceAbandoned`` is raised instead of running ``op`` again.
    """
    cp = ctx.checkpoint(label)
    if cp is not None:
        if cp.status == "completed":
            return cp.result
        if cp.status == "failed":
            raise AtMostOnceFailed(label, cp.error or "unknown error")
        raise AtMostOnceAbandoned(label)
    ctx.set_checkpoint(label, "started")
    try:
        result = await op()
    except Exception as exc:
        ctx.set_checkpoint(label, "failed", error=str(exc))
        raise AtMostOnceFailed(label, str(exc)) from exc
    ctx.set_checkpoint(label, "completed", result=result)
    return result


async def wait_until(
    label: str,
    ctx: WorkflowContext,
    predicate: Callable[[], Awaitable[Any]],
    *,
    validate: Optional[Callable[[Any], bool]] = None,
) -> Any:
    """Suspend until ``predicate`` returns something other than False/None.

    There is no timeout. The satisfying value is checkpointed so a replay does
    not wait for a condition that later stopped holding.
    """
    cp = ctx.checkpoint(label)
    if cp is not None and cp.status == "completed":
        return cp.result
    delays = ctx.wait_backoff.delays()
    while True:
        value = await predicate()
        if value is not False and value is not None:
            if validate is not None and not validate(value):
                raise ValueError(f"'{label}' produced an invalid result: {value!r}")
            ctx.set_checkpoint(label, "completed", result=value)
            return value
        delay = next(delays)
        logger.debug("[durable] waiting for '%s' (next check in %.2fs)", label, delay)
        await asyncio.sleep(delay)
