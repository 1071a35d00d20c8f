from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional

from openai import AsyncOpenAI, NotFoundError


@dataclass(frozen=True)
class RemoteFile:
    id: str
    filename: str


@dataclass(frozen=True)
class RemoteNamed:
    id: str
    name: str


@dataclass(frozen=True)
class RunEvent:
    # text_delta | message_completed | error | run_failed | other
    kind: str
    text: str = ""
    code: str = ""
    message: str = ""
    raw_type: str = ""


def _text_from_delta(data: Any) -> str:
    delta = getattr(data, "delta", None)
    parts = getattr(delta, "content", None) or []
    out: List[str] = []
    for part in parts:
        if getattr(part, "type", "") != "text":
            continue
        text = getattr(part, "text", None)
        value = getattr(text, "value", None)
        if value:
            out.append(str(value))
    return "".join(out)


def normalize_event(event: Any) -> RunEvent:
    name = str(getattr(event, "event", "") or "")
    data = getattr(event, "data", None)
    if name == "thread.message.delta":
        return RunEvent(kind="text_delta", text=_text_from_delta(data), raw_type=name)
    if name == "thread.message.completed":
        return RunEvent(kind="message_completed", raw_type=name)
    if name == "error":
        return RunEvent(
            kind="error",
            code=str(getattr(data, "code", "") or ""),
            message=str(getattr(data, "message", "") or ""),
            raw_type=name,
        )
    if name == "thread.run.failed":
        last_error = getattr(data, "last_error", None)
        return RunEvent(
            kind="run_failed",
            code=str(getattr(last_error, "code", "") or ""),
            message=str(getattr(last_error, "message", "") or ""),
            raw_type=name,
        )
    return RunEvent(kind="other", raw_type=name)


class OpenAIProvider:
    """Async binding to the OpenAI files / vector store / assistants APIs.

    Results are reduced to plain values so the orchestration code does not
    depend on SDK response types. The client is created on first use and
    expects ``OPENAI_API_KEY``.
    """

    def __init__(self, client: Optional[AsyncOpenAI] = None, max_retries: int = 3) -> None:
        self._client = client
        self.max_retries = max_retries

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(max_retries=self.max_retries)
        return self._client

    async def list_files(self) -> AsyncIterator[RemoteFile]:
        async for f in self.client.files.list():
            yield RemoteFile(id=f.id, filename=f.filename)

    async def create_file(self, filename: str, content: bytes) -> str:
        f = await self.client.files.create(file=(filename, content), purpose="assistants")
        return f.id

    async def delete_file(self, file_id: str) -> None:
        await self.client.files.delete(file_id)

    async def list_vector_stores(self) -> AsyncIterator[RemoteNamed]:
        async for vs in self.client.vector_stores.list():
            yield RemoteNamed(id=vs.id, name=str(vs.name or ""))

    async def create_vector_store(self, name: str) -> str:
        vs = await self.client.vector_stores.create(name=name)
        return vs.id

    async def attach_file(self, vector_store_id: str, file_id: str) -> None:
        await self.client.vector_stores.files.create(
            vector_store_id=vector_store_id, file_id=file_id
        )

    async def detach_file(self, vector_store_id: str, file_id: str) -> bool:
        """Returns False if the file was never attached."""
        try:
            await self.client.vector_stores.files.delete(
                file_id, vector_store_id=vector_store_id
            )
        except NotFoundError:
            return False
        return True

    async def vector_store_file_status(self, vector_store_id: str, file_id: str) -> str:
        f = await self.client.vector_stores.files.retrieve(
            file_id, vector_store_id=vector_store_id
        )
        return str(f.status)

    async def list_models(self) -> List[str]:
        out: List[str] = []
        async for model in self.client.models.list():
            out.append(model.id)
        return out

    async def list_assistants(self) -> AsyncIterator[RemoteNamed]:
        async for assistant in self.client.beta.assistants.list():
            yield RemoteNamed(id=assistant.id, name=str(assistant.name or ""))

    async def create_assistant(
        self, name: str, instructions: str, model: str, vector_store_id: str
    ) -> str:
        assistant = await self.client.beta.assistants.create(
            name=name,
            instructions=instructions,
            model=model,
            tools=[{"type": "file_search"}],
            tool_resources={"file_search": {"vector_store_ids": [vector_store_id]}},
        )
        return assistant.id

    async def create_thread(self, metadata: Dict[str, str]) -> str:
        thread = await self.client.beta.threads.create(metadata=metadata)
        return thread.id

    async def create_message(self, thread_id: str, content: str) -> None:
        await self.client.beta.threads.messages.create(
            thread_id, role="user", content=content
        )

    async def stream_run(
        self, thread_id: str, assistant_id: str, metadata: Dict[str, str]
    ) -> AsyncIterator[RunEvent]:
        stream = await self.client.beta.threads.runs.create(
            thread_id,
            assistant_id=assistant_id,
            stream=True,
            metadata=metadata,
        )
        # Closing the SDK stream releases the HTTP response when the caller
        # stops early.
        async with stream:
            async for event in stream:
                yield normalize_event(event)
