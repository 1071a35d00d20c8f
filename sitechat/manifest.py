import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, List, Optional


logger = logging.getLogger("sitechat.manifest")

# Uploaded last; its presence alone means the iteration's upload finished.
SENTINEL_FILE_INDEX = 0

_FILENAME_RE = re.compile(r"^crawl:([^:]+):(\d+):(\d+)\.pdf$")


@dataclass(frozen=True)
class FileInfo:
    owner_id: str
    iteration: int
    file_index: int

    @property
    def is_sentinel(self) -> bool:
        return self.file_index == SENTINEL_FILE_INDEX


@dataclass(frozen=True)
class ManifestEntry:
    file_id: str
    filename: str
    info: FileInfo


def create_filename(info: FileInfo) -> str:
    if not info.owner_id or ":" in info.owner_id:
        raise ValueError(f"Invalid owner id for file name: {info.owner_id!r}")
    if info.iteration < 0 or info.file_index < 0:
        raise ValueError(f"Negative iteration or file index: {info}")
    return f"crawl:{info.owner_id}:{info.iteration}:{info.file_index}.pdf"


def parse_filename(filename: str) -> Optional[FileInfo]:
    match = _FILENAME_RE.match(filename or "")
    if not match:
        return None
    owner_id, iteration, file_index = match.groups()
    return FileInfo(owner_id=owner_id, iteration=int(iteration), file_index=int(file_index))


class FileManifest:
    """View of the provider's file list as versioned crawl file sets.

    Files whose names do not parse belong to someone else and are skipped by
    every scan.
    """

    def __init__(self, provider: Any) -> None:
        self.provider = provider

    async def _scan(self, keep: Callable[[FileInfo], bool]) -> List[ManifestEntry]:
        out: List[ManifestEntry] = []
        async for f in self.provider.list_files():
            info = parse_filename(f.filename)
            if info is None:
                logger.debug("[manifest] ignoring foreign file %s", f.filename)
                continue
            if keep(info):
                out.append(ManifestEntry(file_id=f.id, filename=f.filename, info=info))
        return out

    async def list_for_owner(self, owner_id: str) -> List[ManifestEntry]:
        return await self._scan(lambda info: info.owner_id == owner_id)

    async def list_for_iteration(self, owner_id: str, iteration: int) -> List[ManifestEntry]:
        return await self._scan(
            lambda info: info.owner_id == owner_id and info.iteration == iteration
        )

    async def sentinel_present(self, owner_id: str, iteration: int) -> bool:
        entries = await self.list_for_iteration(owner_id, iteration)
        return any(e.info.is_sentinel for e in entries)

    async def delete_all(self, owner_id: str) -> List[ManifestEntry]:
        entries = await self.list_for_owner(owner_id)
        await self._delete(owner_id, entries)
        return entries

    async def delete_older_than(self, owner_id: str, iteration: int) -> List[ManifestEntry]:
        entries = await self._scan(
            lambda info: info.owner_id == owner_id and info.iteration < iteration
        )
        await self._delete(owner_id, entries)
        return entries

    async def _delete(self, vector_store_id: str, entries: List[ManifestEntry]) -> None:
        async def detach(entry: ManifestEntry) -> None:
            attached = await self.provider.detach_file(vector_store_id, entry.file_id)
            if not attached:
                logger.debug("[manifest] %s was never attached", entry.filename)

        deletes = []
        for entry in entries:
            logger.info("[manifest] deleting %s", entry.filename)
            deletes.append(self.provider.delete_file(entry.file_id))
            deletes.append(detach(entry))
        await asyncio.gather(*deletes)
