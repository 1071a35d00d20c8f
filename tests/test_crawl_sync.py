import asyncio

import pytest

from conftest import FakeCrawler, wait_for_condition
from sitechat.assistant_service import AssistantService, vector_store_name
from sitechat.crawl_sync import EmptyCrawlError, attach_files, ensure_uploaded, wait_until_indexed
from sitechat.manifest import parse_filename
from sitechat.runtime import WorkflowRuntime


def test_completed_iteration_is_not_crawled_again(provider, crawler):
    ids = [provider.add_file(f"crawl:vs_1:3:{i}.pdf") for i in (1, 2, 0)]

    result = asyncio.run(ensure_uploaded(provider, crawler, "vs_1", "https://example.com", 3))

    assert sorted(result) == sorted(ids)
    assert crawler.calls == []
    assert provider.uploads == []


def test_partial_iteration_is_crawled_again(provider, crawler):
    provider.add_file("crawl:vs_1:3:1.pdf")

    result = asyncio.run(ensure_uploaded(provider, crawler, "vs_1", "https://example.com", 3))

    assert crawler.calls == ["https://example.com"]
    assert len(result) == crawler.pages


def test_sentinel_is_uploaded_last(provider):
    crawler = FakeCrawler(pages=5)

    asyncio.run(ensure_uploaded(provider, crawler, "vs_1", "https://example.com", 0))

    infos = [parse_filename(name) for name in provider.uploads]
    assert [info.is_sentinel for info in infos] == [False] * 4 + [True]
    assert sorted(info.file_index for info in infos) == [0, 1, 2, 3, 4]
    assert {info.iteration for info in infos} == {0}


def test_empty_crawl_raises(provider):
    crawler = FakeCrawler(pages=0)

    with pytest.raises(EmptyCrawlError):
        asyncio.run(ensure_uploaded(provider, crawler, "vs_1", "https://example.com", 0))


def test_attach_never_overlaps(provider):
    ids = [provider.add_file(f"crawl:vs_1:0:{i}.pdf") for i in range(6)]

    asyncio.run(attach_files(provider, "vs_1", ids))

    assert provider.attach_overlaps == 0
    assert provider.attached["vs_1"] == ids


def test_wait_until_indexed_reports_terminal_statuses(provider):
    provider.status_script = {
        "file_a": ["in_progress", "in_progress", "completed"],
        "file_b": ["in_progress", "failed"],
    }

    statuses = asyncio.run(
        wait_until_indexed(provider, "vs_1", ["file_a", "file_b"], poll_interval_sec=0.001)
    )

    assert statuses == {"file_a": "completed", "file_b": "failed"}


def test_first_iteration_provisions_purges_and_indexes(store, settings, provider, crawler):
    stale_id = provider.add_file("crawl:vs_1:7:0.pdf")
    runtime = WorkflowRuntime(store, settings)
    service = AssistantService(store, runtime, provider, crawler, settings)

    async def scenario():
        await runtime.start()
        assistant_id = service.create("docs", "https://example.com/", assistant_id="docs")
        await runtime.wait_for(f"assistant:{assistant_id}:provision")
        await wait_for_condition(
            lambda: store.get_workflow(f"assistant:{assistant_id}:crawl").iteration == 1
        )
        await runtime.stop()
        return assistant_id

    assistant_id = asyncio.run(scenario())

    record = store.get_assistant(assistant_id)
    assert record.url == "https://example.com"
    assert record.external_vector_store_id == "vs_1"
    assert record.external_assistant_id == "asst_1"
    assert provider.vector_stores[0].name == vector_store_name("docs")
    assert stale_id in provider.deleted
    assert crawler.calls == ["https://example.com"]
    assert len(provider.attached["vs_1"]) == crawler.pages
    assert provider.attach_overlaps == 0


def test_next_iteration_removes_stale_files(store, settings, provider, crawler):
    settings = settings.model_copy(update={"crawl_interval_sec": 0.05})
    runtime = WorkflowRuntime(store, settings)
    service = AssistantService(store, runtime, provider, crawler, settings)

    def iteration_zero_gone():
        names = provider.files.values()
        return any(parse_filename(n).iteration >= 1 for n in names) and not any(
            parse_filename(n).iteration == 0 for n in names
        )

    async def scenario():
        await runtime.start()
        service.create("docs", "https://example.com", assistant_id="docs")
        await wait_for_condition(iteration_zero_gone)
        await runtime.stop()

    asyncio.run(scenario())

    assert len(crawler.calls) >= 2


def test_missing_model_fails_provisioning(store, settings, provider, crawler):
    provider.models = ["gpt-4o"]
    runtime = WorkflowRuntime(store, settings)
    service = AssistantService(store, runtime, provider, crawler, settings)

    async def scenario():
        await runtime.start()
        service.create("docs", "https://example.com", assistant_id="docs")
        await runtime.wait_for("assistant:docs:provision")
        await runtime.stop()

    asyncio.run(scenario())

    workflow = store.get_workflow("assistant:docs:provision")
    assert workflow.status == "failed"
    assert "gpt-3.5-turbo" in workflow.error
    assert service.status("docs") == ""
    assert provider.assistants == []


def test_create_is_idempotent_and_detects_conflicts(store, settings, provider, crawler):
    from sitechat.assistant_service import AssistantConflict

    runtime = WorkflowRuntime(store, settings)
    service = AssistantService(store, runtime, provider, crawler, settings)

    assert service.create("docs", "https://example.com", assistant_id="a1") == "a1"
    assert service.create("docs", "https://example.com/", assistant_id="a1") == "a1"
    with pytest.raises(AssistantConflict):
        service.create("docs", "https://other.example.com", assistant_id="a1")
    assert service.status("unknown") is None
