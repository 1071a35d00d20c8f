import copy
import hashlib
import json
import logging
import re
import threading
from datetime import datetime, timezone
from pathlib import Path
from queue import Queue
from typing import Any, Callable, Dict, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel

from sitechat.models import AssistantRecord, ThreadRecord, WorkflowRecord


logger = logging.getLogger("sitechat.store")

ASSISTANTS = "assistants"
THREADS = "threads"
WORKFLOWS = "workflows"

_MODELS: Dict[str, Type[BaseModel]] = {
    ASSISTANTS: AssistantRecord,
    THREADS: ThreadRecord,
    WORKFLOWS: WorkflowRecord,
}

R = TypeVar("R")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _sanitize_for_filename(s: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]", "_", s)[:80]


class Store:
    """Durable aggregate store backed by one JSON file per record.

    Every mutation is a read-modify-write under the record's lock, written to
    a temp file and swapped in with ``replace``. Each file holds an envelope::

        {"key": ..., "data": {...record...}, "applied_keys": [...]}

    ``applied_keys`` lets workflows make writes that take effect at most once
    per idempotency key, atomically with the data they change.
    """

    def __init__(self, root: Path) -> None:
        self._root = Path(root)
        for kind in _MODELS:
            (self._root / kind).mkdir(parents=True, exist_ok=True)
        self._locks: Dict[Tuple[str, str], threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._subscribers: Dict[Tuple[str, str], List[Queue]] = {}
        self._subscribers_lock = threading.Lock()

    @property
    def root(self) -> Path:
        return self._root

    def _lock_for(self, kind: str, key: str) -> threading.RLock:
        with self._locks_guard:
            return self._locks.setdefault((kind, key), threading.RLock())

    def _path(self, kind: str, key: str) -> Path:
        if kind not in _MODELS:
            raise KeyError(f"Unknown record kind: {kind}")
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:12]
        return self._root / kind / f"{_sanitize_for_filename(key)}-{digest}.json"

    def _read_envelope(self, kind: str, key: str) -> Optional[Dict[str, Any]]:
        path = self._path(kind, key)
        if not path.exists():
            return None
        raw = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(raw, dict) or not isinstance(raw.get("data"), dict):
            raise ValueError(f"Corrupt {kind} record: {key}")
        return raw

    def _write_envelope(self, kind: str, key: str, envelope: Dict[str, Any]) -> None:
        path = self._path(kind, key)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(json.dumps(envelope, ensure_ascii=False, indent=2), encoding="utf-8")
        tmp.replace(path)

    def exists(self, kind: str, key: str) -> bool:
        return self._path(kind, key).exists()

    def get(self, kind: str, key: str) -> Optional[BaseModel]:
        with self._lock_for(kind, key):
            envelope = self._read_envelope(kind, key)
        if envelope is None:
            return None
        return _MODELS[kind].model_validate(envelope["data"])

    def create(self, kind: str, key: str, record: BaseModel) -> bool:
        """Persist ``record`` unless ``key`` already exists. Returns True if created."""
        with self._lock_for(kind, key):
            if self._path(kind, key).exists():
                return False
            envelope = {
                "key": key,
                "data": record.model_dump(mode="json"),
                "applied_keys": [],
            }
            self._write_envelope(kind, key, envelope)
        self._publish(kind, key, envelope["data"])
        return True

    def update(
        self,
        kind: str,
        key: str,
        mutate: Callable[[Any], R],
        idempotency_key: Optional[str] = None,
        forget_prefix: Optional[str] = None,
    ) -> Optional[R]:
        """Apply ``mutate`` to the record under its lock and persist it.

        With ``idempotency_key`` the mutation is skipped (returning None) if that
        key was already applied. ``forget_prefix`` drops other applied keys with
        that prefix in the same write.
        """
        with self._lock_for(kind, key):
            envelope = self._read_envelope(kind, key)
            if envelope is None:
                raise KeyError(f"{kind} record not found: {key}")
            applied = list(envelope.get("applied_keys", []) or [])
            if idempotency_key is not None and idempotency_key in applied:
                return None
            record = _MODELS[kind].model_validate(envelope["data"])
            result = mutate(record)
            record.version = max(1, int(record.version or 1)) + 1
            record.updated_at = _now()
            if forget_prefix:
                applied = [k for k in applied if not k.startswith(forget_prefix)]
            if idempotency_key is not None:
                applied.append(idempotency_key)
            envelope["data"] = record.model_dump(mode="json")
            envelope["applied_keys"] = applied
            self._write_envelope(kind, key, envelope)
            data = copy.deepcopy(envelope["data"])
        self._publish(kind, key, data)
        return result

    def keys(self, kind: str) -> List[str]:
        out: List[str] = []
        for path in sorted((self._root / kind).glob("*.json")):
            try:
                raw = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                logger.warning("[store] skipping unreadable %s file %s: %s", kind, path.name, exc)
                continue
            key = raw.get("key") if isinstance(raw, dict) else None
            if isinstance(key, str) and key:
                out.append(key)
        return out

    def subscribe(self, kind: str, key: str) -> Optional[Queue]:
        if not self.exists(kind, key):
            return None
        q: Queue = Queue()
        with self._subscribers_lock:
            self._subscribers.setdefault((kind, key), []).append(q)
        return q

    def unsubscribe(self, kind: str, key: str, queue: Queue) -> None:
        with self._subscribers_lock:
            subs = self._subscribers.get((kind, key), [])
            if queue in subs:
                subs.remove(queue)
            if not subs:
                self._subscribers.pop((kind, key), None)

    def _publish(self, kind: str, key: str, data: Dict[str, Any]) -> None:
        with self._subscribers_lock:
            subscribers = list(self._subscribers.get((kind, key), []))
        for q in subscribers:
            q.put(copy.deepcopy(data))

    def get_assistant(self, assistant_id: str) -> Optional[AssistantRecord]:
        return self.get(ASSISTANTS, assistant_id)  # type: ignore[return-value]

    def get_thread(self, thread_id: str) -> Optional[ThreadRecord]:
        return self.get(THREADS, thread_id)  # type: ignore[return-value]

    def get_workflow(self, workflow_id: str) -> Optional[WorkflowRecord]:
        return self.get(WORKFLOWS, workflow_id)  # type: ignore[return-value]
