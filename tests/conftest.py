import asyncio
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest

# sitechat.main builds its store at import time.
os.environ.setdefault("SITECHAT_STATE_DIR", tempfile.mkdtemp(prefix="sitechat-test-"))

from site_crawler import CrawlResult  # noqa: E402
from sitechat.config import Settings  # noqa: E402
from sitechat.provider import RemoteFile, RemoteNamed, RunEvent  # noqa: E402
from sitechat.store import Store  # noqa: E402


class FakeProvider:
    """In-memory stand-in for OpenAIProvider."""

    def __init__(self) -> None:
        self.files: Dict[str, str] = {}
        self.uploads: List[str] = []
        self.deleted: List[str] = []
        self.attached: Dict[str, List[str]] = {}
        self.attach_overlaps = 0
        self._attaching = 0
        self.status_script: Dict[str, List[str]] = {}
        self.vector_stores: List[RemoteNamed] = []
        self.assistants: List[RemoteNamed] = []
        self.models: List[str] = ["gpt-3.5-turbo"]
        self.threads: List[str] = []
        self.messages: List[tuple] = []
        self.run_calls: List[Dict[str, Any]] = []
        self.run_scripts: List[List[RunEvent]] = []
        self.before_run: Optional[Callable[[str, Dict[str, str]], None]] = None
        self.create_file_failures = 0
        self._ids = 0

    def _next_id(self, prefix: str) -> str:
        self._ids += 1
        return f"{prefix}_{self._ids}"

    def add_file(self, filename: str) -> str:
        file_id = self._next_id("file")
        self.files[file_id] = filename
        return file_id

    def filenames(self) -> List[str]:
        return sorted(self.files.values())

    async def list_files(self):
        for file_id, filename in list(self.files.items()):
            yield RemoteFile(id=file_id, filename=filename)

    async def create_file(self, filename: str, content: bytes) -> str:
        if self.create_file_failures > 0:
            self.create_file_failures -= 1
            raise ConnectionError("upload dropped")
        assert content
        self.uploads.append(filename)
        return self.add_file(filename)

    async def delete_file(self, file_id: str) -> None:
        self.files.pop(file_id, None)
        self.deleted.append(file_id)

    async def list_vector_stores(self):
        for vs in list(self.vector_stores):
            yield vs

    async def create_vector_store(self, name: str) -> str:
        vs = RemoteNamed(id=f"vs_{len(self.vector_stores) + 1}", name=name)
        self.vector_stores.append(vs)
        return vs.id

    async def attach_file(self, vector_store_id: str, file_id: str) -> None:
        self._attaching += 1
        if self._attaching > 1:
            self.attach_overlaps += 1
        try:
            await asyncio.sleep(0.001)
            self.attached.setdefault(vector_store_id, []).append(file_id)
        finally:
            self._attaching -= 1

    async def detach_file(self, vector_store_id: str, file_id: str) -> bool:
        attached = self.attached.get(vector_store_id, [])
        if file_id not in attached:
            return False
        attached.remove(file_id)
        return True

    async def vector_store_file_status(self, vector_store_id: str, file_id: str) -> str:
        script = self.status_script.get(file_id)
        if script:
            return script.pop(0)
        return "completed"

    async def list_models(self) -> List[str]:
        return list(self.models)

    async def list_assistants(self):
        for assistant in list(self.assistants):
            yield assistant

    async def create_assistant(
        self, name: str, instructions: str, model: str, vector_store_id: str
    ) -> str:
        assistant = RemoteNamed(id=f"asst_{len(self.assistants) + 1}", name=name)
        self.assistants.append(assistant)
        return assistant.id

    async def create_thread(self, metadata: Dict[str, str]) -> str:
        thread_id = f"remote_thread_{len(self.threads) + 1}"
        self.threads.append(thread_id)
        return thread_id

    async def create_message(self, thread_id: str, content: str) -> None:
        self.messages.append((thread_id, content))

    async def stream_run(self, thread_id: str, assistant_id: str, metadata: Dict[str, str]):
        if self.before_run is not None:
            self.before_run(thread_id, metadata)
        self.run_calls.append(
            {"thread_id": thread_id, "assistant_id": assistant_id, "metadata": dict(metadata)}
        )
        script = self.run_scripts.pop(0) if self.run_scripts else []
        for event in script:
            await asyncio.sleep(0)
            yield event


class FakeCrawler:
    def __init__(self, pages: int = 3) -> None:
        self.pages = pages
        self.calls: List[str] = []

    async def crawl(self, url: str) -> CrawlResult:
        self.calls.append(url)
        temp_dir = Path(tempfile.mkdtemp(prefix="sitechat-fake-crawl-"))
        paths = []
        for i in range(self.pages):
            path = temp_dir / f"{i}.pdf"
            path.write_bytes(f"%PDF page {i} of {url}".encode("utf-8"))
            paths.append(path)
        return CrawlResult(temp_dir, paths)


def delta(text: str) -> RunEvent:
    return RunEvent(kind="text_delta", text=text, raw_type="thread.message.delta")


def completed() -> RunEvent:
    return RunEvent(kind="message_completed", raw_type="thread.message.completed")


async def wait_for_condition(check: Callable[[], bool], timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not check():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def clear_sitechat_env(monkeypatch) -> None:
    for name in list(os.environ):
        if name.startswith("SITECHAT_"):
            monkeypatch.delenv(name)


@pytest.fixture
def settings(tmp_path, monkeypatch) -> Settings:
    # Environment variables take precedence over constructor values.
    clear_sitechat_env(monkeypatch)
    return Settings(
        state_dir=str(tmp_path / "state"),
        crawl_interval_sec=3600.0,
        index_poll_interval_sec=0.01,
        wait_initial_backoff_sec=0.01,
        wait_max_backoff_sec=0.02,
        retry_initial_backoff_sec=0.01,
        retry_max_backoff_sec=0.02,
        gc_max_attempts=3,
    )


@pytest.fixture
def store(settings) -> Store:
    return Store(Path(settings.state_dir))


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def crawler() -> FakeCrawler:
    return FakeCrawler()
