import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, List

from sitechat.manifest import SENTINEL_FILE_INDEX, FileInfo, FileManifest, create_filename


logger = logging.getLogger("sitechat.crawl")


class EmptyCrawlError(RuntimeError):
    pass


async def ensure_uploaded(
    provider: Any,
    crawler: Any,
    owner_id: str,
    url: str,
    iteration: int,
    upload_concurrency: int = 8,
) -> List[str]:
    """Make sure iteration ``iteration`` is fully uploaded; return its file ids.

    If the sentinel for this iteration is already uploaded nothing is crawled
    or uploaded. A partial upload (no sentinel) is ignored and the whole crawl
    is redone; the leftovers are removed with the stale files of a later
    iteration.
    """
    manifest = FileManifest(provider)
    existing = await manifest.list_for_iteration(owner_id, iteration)
    if any(entry.info.is_sentinel for entry in existing):
        logger.info("[crawl] crawl #%d already completed", iteration)
        return [entry.file_id for entry in existing]

    logger.info("[crawl] crawling %s for #%d", url, iteration)
    result = await crawler.crawl(url)
    with result:
        paths: List[Path] = list(result.paths)
        if not paths:
            raise EmptyCrawlError(f"Crawl of {url} produced no pages")
        logger.info("[crawl] crawl #%d produced %d page(s), uploading", iteration, len(paths))

        semaphore = asyncio.Semaphore(max(1, upload_concurrency))

        async def upload(path: Path, file_index: int) -> str:
            filename = create_filename(FileInfo(owner_id, iteration, file_index))
            content = Path(path).read_bytes()
            async with semaphore:
                return await provider.create_file(filename, content)

        # The provider rejects empty files, so the sentinel is a real page
        # (the first one) and only its presence matters.
        sentinel_path, rest = paths[0], paths[1:]
        file_ids = list(
            await asyncio.gather(
                *(upload(path, index) for index, path in enumerate(rest, start=1))
            )
        )
        file_ids.append(await upload(sentinel_path, SENTINEL_FILE_INDEX))
    return file_ids


async def attach_files(provider: Any, vector_store_id: str, file_ids: List[str]) -> None:
    # Concurrent attaches to one vector store fail with a 409.
    for file_id in file_ids:
        await provider.attach_file(vector_store_id, file_id)


async def wait_until_indexed(
    provider: Any,
    vector_store_id: str,
    file_ids: List[str],
    poll_interval_sec: float = 0.5,
) -> Dict[str, str]:
    async def wait_one(file_id: str) -> str:
        while True:
            status = await provider.vector_store_file_status(vector_store_id, file_id)
            if status != "in_progress":
                if status == "completed":
                    logger.debug("[crawl] %s is ready", file_id)
                else:
                    logger.warning("[crawl] %s finished indexing as '%s'", file_id, status)
                return status
            await asyncio.sleep(poll_interval_sec)

    statuses = await asyncio.gather(*(wait_one(file_id) for file_id in file_ids))
    return dict(zip(file_ids, statuses))
