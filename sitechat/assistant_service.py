import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sitechat.config import Settings
from sitechat.crawl_sync import attach_files, ensure_uploaded, wait_until_indexed
from sitechat.durable import FatalError, Loop, WorkflowContext, retry_idempotent, wait_until
from sitechat.manifest import FileManifest
from sitechat.models import AssistantRecord
from sitechat.runtime import WorkflowRuntime
from sitechat.store import ASSISTANTS, Store


logger = logging.getLogger("sitechat.assistant")

ASSISTANT_INSTRUCTIONS = " ".join(
    [
        "You are a Q/A chatbot, answering questions based on the",
        "uploaded files to provide the best response to the user.",
        "Do not provide an answer to the question if the",
        "information was not retrieved from the knowledge base.",
    ]
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ModelNotFound(FatalError):
    pass


class AssistantConflict(ValueError):
    pass


def vector_store_name(name: str) -> str:
    return f"Vector Store for '{name}'"


class AssistantService:
    PROVISION_KIND = "assistant.provision"
    CRAWL_KIND = "assistant.crawl_loop"

    def __init__(
        self,
        store: Store,
        runtime: WorkflowRuntime,
        provider: Any,
        crawler: Any,
        settings: Settings,
    ) -> None:
        self.store = store
        self.runtime = runtime
        self.provider = provider
        self.crawler = crawler
        self.settings = settings
        self.manifest = FileManifest(provider)
        runtime.register(self.PROVISION_KIND, self.ensure_resources_created)
        runtime.register(self.CRAWL_KIND, self.crawl_control_loop)

    def create(self, name: str, url: str, assistant_id: Optional[str] = None) -> str:
        """Create the assistant record and schedule provisioning plus the crawl loop.

        Re-creating an existing id with the same name and url is a no-op that
        re-schedules (idempotently) anything a crash may have skipped.
        """
        assistant_id = assistant_id or str(uuid.uuid4())
        url = url.rstrip("/")
        now = _now()
        record = AssistantRecord(
            assistant_id=assistant_id,
            name=name,
            url=url,
            created_at=now,
            updated_at=now,
        )
        if not self.store.create(ASSISTANTS, assistant_id, record):
            existing = self.store.get_assistant(assistant_id)
            if existing is None or existing.name != name or existing.url != url:
                raise AssistantConflict(f"Assistant '{assistant_id}' already exists")

        # Provider calls have side effects, so they run as durable workflows
        # rather than inside the request.
        self.runtime.schedule(
            f"assistant:{assistant_id}:provision",
            self.PROVISION_KIND,
            {"assistant_id": assistant_id},
        )
        self.runtime.schedule(
            f"assistant:{assistant_id}:crawl",
            self.CRAWL_KIND,
            {"assistant_id": assistant_id},
        )
        return assistant_id

    def status(self, assistant_id: str) -> Optional[str]:
        record = self.store.get_assistant(assistant_id)
        if record is None:
            return None
        return record.external_assistant_id

    def _set_external_ids(
        self,
        assistant_id: str,
        vector_store_id: Optional[str] = None,
        external_assistant_id: Optional[str] = None,
    ) -> None:
        def apply(record: AssistantRecord) -> None:
            if vector_store_id:
                if not record.external_vector_store_id:
                    record.external_vector_store_id = vector_store_id
                elif record.external_vector_store_id != vector_store_id:
                    logger.warning(
                        "[assistant] %s keeps vector store %s (found %s)",
                        assistant_id,
                        record.external_vector_store_id,
                        vector_store_id,
                    )
            if external_assistant_id:
                if not record.external_assistant_id:
                    record.external_assistant_id = external_assistant_id
                elif record.external_assistant_id != external_assistant_id:
                    logger.warning(
                        "[assistant] %s keeps remote assistant %s (found %s)",
                        assistant_id,
                        record.external_assistant_id,
                        external_assistant_id,
                    )

        self.store.update(ASSISTANTS, assistant_id, apply)

    async def _ensure_vector_store(self, name: str) -> str:
        wanted = vector_store_name(name)
        async for vs in self.provider.list_vector_stores():
            if vs.name == wanted:
                return vs.id
        return await self.provider.create_vector_store(wanted)

    async def _ensure_model(self, model: str) -> None:
        models = await self.provider.list_models()
        if model not in models:
            raise ModelNotFound(f"Trying to use '{model}' which was not found in {models}")

    async def _ensure_assistant(self, name: str, vector_store_id: str) -> str:
        async for assistant in self.provider.list_assistants():
            if assistant.name == name:
                return assistant.id
        await self._ensure_model(self.settings.model)
        # TODO: the vector store is attached to the assistant eventually; poll
        # until it shows up before reporting the assistant as ready.
        return await self.provider.create_assistant(
            name=name,
            instructions=ASSISTANT_INSTRUCTIONS,
            model=self.settings.model,
            vector_store_id=vector_store_id,
        )

    async def ensure_resources_created(self, ctx: WorkflowContext, assistant_id: str) -> None:
        record = self.store.get_assistant(assistant_id)
        if record is None:
            raise FatalError(f"Assistant '{assistant_id}' does not exist")

        vector_store_id = await retry_idempotent(
            "ensure vector store",
            ctx,
            lambda: self._ensure_vector_store(record.name),
        )
        self._set_external_ids(assistant_id, vector_store_id=vector_store_id)

        external_id = await retry_idempotent(
            "ensure assistant",
            ctx,
            lambda: self._ensure_assistant(record.name, vector_store_id),
        )
        self._set_external_ids(assistant_id, external_assistant_id=external_id)
        logger.info("[assistant] remote assistant for '%s' is %s", record.name, external_id)

    async def _remove_all_files(self, vector_store_id: str) -> int:
        return len(await self.manifest.delete_all(vector_store_id))

    async def _remove_stale_files(self, vector_store_id: str, iteration: int) -> int:
        return len(await self.manifest.delete_older_than(vector_store_id, iteration))

    async def crawl_control_loop(self, ctx: WorkflowContext, assistant_id: str) -> Loop:
        async def vector_store_created() -> Any:
            record = self.store.get_assistant(assistant_id)
            if record is None or not record.external_vector_store_id:
                return False
            return record.external_vector_store_id

        vector_store_id = await wait_until(
            "vector store created",
            ctx,
            vector_store_created,
            validate=lambda value: isinstance(value, str),
        )
        record = self.store.get_assistant(assistant_id)
        iteration = ctx.iteration
        logger.info("[crawl] control loop iteration #%d for %s", iteration, assistant_id)

        if iteration == 0:
            logger.info("[crawl] first iteration, removing all old files for a fresh start")
            await retry_idempotent(
                "remove all files",
                ctx,
                lambda: self._remove_all_files(vector_store_id),
            )

        file_ids = await retry_idempotent(
            f"crawl and upload #{iteration}",
            ctx,
            lambda: ensure_uploaded(
                self.provider,
                self.crawler,
                owner_id=vector_store_id,
                url=record.url,
                iteration=iteration,
                upload_concurrency=self.settings.upload_concurrency,
            ),
        )

        await attach_files(self.provider, vector_store_id, file_ids)
        await wait_until_indexed(
            self.provider,
            vector_store_id,
            file_ids,
            poll_interval_sec=self.settings.index_poll_interval_sec,
        )

        # Not awaited: stale cleanup must not hold up the next crawl.
        ctx.spawn(
            retry_idempotent(
                f"remove stale files #{iteration}",
                ctx,
                lambda: self._remove_stale_files(vector_store_id, iteration),
                max_attempts=self.settings.gc_max_attempts,
            ),
            f"remove stale files #{iteration}",
        )

        when = _now() + timedelta(seconds=self.settings.crawl_interval_sec)
        logger.info(
            "[crawl] control loop complete, next crawl in %.0f second(s)",
            self.settings.crawl_interval_sec,
        )
        return Loop(when=when)
