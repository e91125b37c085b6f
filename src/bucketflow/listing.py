"""
Paginated listing and recursive prefix operations
"""

import logging
from datetime import datetime
from typing import AsyncIterator, Callable, List, Optional, Tuple

from .client import S3Client
from .error import ObjectNotFoundException
from .models import ListPage, ObjectRecord, ObjectVersion

ProgressCallback = Callable[[int, int], None]

logger = logging.getLogger(__name__)


class ObjectLister:
    """
    Walks the keys below a prefix and applies per-object work to them.

    Recursive operations run sequentially and stop at the first failing
    object; progress already reported stays reported and nothing is rolled
    back.

    Example:
        lister = ObjectLister(client)

        async for record in lister.list_all("photos/2024/"):
            print(record.key, record.size)

        count, size = await lister.calculate_stats("photos/")
    """

    def __init__(self, client: S3Client):
        self.client = client

    async def list_page(self, prefix: str = "", continuation_token: Optional[str] = None) -> ListPage:
        """One delimiter-aware page, without the prefix's own placeholder."""
        return await self.client.list_objects(prefix, continuation_token, delimiter="/", exclude_self=True)

    async def list_all(self, prefix: str = "") -> AsyncIterator[ObjectRecord]:
        """
        Every object below ``prefix``, across all pages.

        The prefix's own placeholder object is included so recursive
        operations can remove it. Each call starts a fresh enumeration.
        """
        token = None
        while True:
            page = await self.client.list_objects(prefix, token, delimiter=None, exclude_self=False)
            for record in page.records:
                yield record
            if not page.is_truncated:
                return
            if not page.continuation_token:
                logger.warning("[Lister] Truncated listing for %r carried no continuation token", prefix)
                return
            token = page.continuation_token

    async def _sorted_records(self, prefix: str) -> List[ObjectRecord]:
        records = [record async for record in self.list_all(prefix)]
        # children before the placeholders that contain them
        records.sort(key=lambda record: len(record.key), reverse=True)
        return records

    async def delete_recursive(
        self,
        prefix: str,
        progress: Optional[ProgressCallback] = None,
        checkpoint: Optional[Callable[[], None]] = None,
    ) -> Tuple[int, int]:
        """
        Delete every object below ``prefix``, then the prefix placeholder.

        ``checkpoint`` runs before each object is touched and may raise to
        stop the run; nothing is checked once the last object is gone.

        Returns:
            ``(completed, total)``
        """
        records = await self._sorted_records(prefix)
        total = len(records)
        completed = 0
        logger.info("[Lister] Deleting %d objects under %r", total, prefix)
        if progress:
            progress(completed, total)

        for record in records:
            if checkpoint:
                checkpoint()
            await self.client.delete_object(record.key)
            completed += 1
            if progress:
                progress(completed, total)

        if prefix.endswith("/"):
            try:
                await self.client.delete_object(prefix)
            except ObjectNotFoundException:
                logger.debug("[Lister] Placeholder %r already gone", prefix)

        return completed, total

    async def rename_recursive(
        self,
        old_prefix: str,
        new_prefix: str,
        progress: Optional[ProgressCallback] = None,
        checkpoint: Optional[Callable[[], None]] = None,
    ) -> Tuple[int, int]:
        """
        Move every object below ``old_prefix`` to ``new_prefix`` by copy then delete.

        The new key is ``new_prefix`` plus whatever follows ``old_prefix`` in
        the old key, so delimiters inside the remainder are kept verbatim.

        Returns:
            ``(completed, total)``
        """
        records = [r for r in await self._sorted_records(old_prefix) if r.key.startswith(old_prefix)]
        total = len(records)
        completed = 0
        logger.info("[Lister] Renaming %d objects %r -> %r", total, old_prefix, new_prefix)
        if progress:
            progress(completed, total)

        for record in records:
            if checkpoint:
                checkpoint()
            destination = new_prefix + record.key[len(old_prefix):]
            await self.client.copy_object(record.key, destination)
            await self.client.delete_object(record.key)
            completed += 1
            if progress:
                progress(completed, total)

        return completed, total

    async def calculate_stats(self, prefix: str = "") -> Tuple[int, int]:
        """Return ``(object count, total bytes)``; folder placeholders are not counted."""
        count = size = 0
        async for record in self.list_all(prefix):
            if record.is_folder or record.key.endswith("/"):
                continue
            count += 1
            size += record.size
        return count, size

    async def list_folders(self, prefix: str = "", recursive: bool = False) -> List[str]:
        """
        Folder keys below ``prefix``.

        Non-recursive listing returns the immediate common prefixes. The
        recursive form derives every intermediate directory from the object
        keys, including directories that only exist implicitly.
        """
        folders = set()
        if not recursive:
            token = None
            while True:
                page = await self.list_page(prefix, token)
                folders.update(r.key for r in page.records if r.is_folder)
                if not page.is_truncated or not page.continuation_token:
                    break
                token = page.continuation_token
            return sorted(folders)

        async for record in self.list_all(prefix):
            segments = record.key[len(prefix):].split("/")
            # the last segment is a file name, or empty for a placeholder key
            for depth in range(1, len(segments)):
                folder = prefix + "/".join(segments[:depth]) + "/"
                if folder != prefix:
                    folders.add(folder)
        return sorted(folders)

    async def fetch_history(self, prefix: str, start: datetime, end: datetime) -> List[ObjectVersion]:
        """Versions under ``prefix`` modified within ``[start, end]``, newest first."""
        versions = await self.client.list_all_versions(prefix)
        matching = [v for v in versions if start <= v.last_modified <= end]
        matching.sort(key=lambda v: v.last_modified, reverse=True)
        return matching
