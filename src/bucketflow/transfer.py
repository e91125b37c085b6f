"""
Transfer engine: tracked, cancellable uploads, downloads, deletes and renames.

Every accepted operation becomes a :class:`~bucketflow.models.TransferTask`
and runs as its own ``asyncio.Task``. The task registry is only touched on
the event loop through :meth:`TransferManager._update`, which publishes an
immutable snapshot of the task list to subscribers after every change.
"""

import asyncio
import logging
import os
import unicodedata
from dataclasses import replace
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Protocol, Tuple, Union

import aiofiles
import aiofiles.os

from .client import S3Client
from .config import TransferSettings
from .crypto import EncryptionCodec, KeyStore, encryption_alias
from .error import (
    BucketFlowException,
    EncryptionKeyNotFoundException,
    PartSizeMismatchException,
    TransferCancelledError,
)
from .listing import ObjectLister
from .models import (
    ActiveUpload,
    MultipartUploadSession,
    PartInfo,
    TransferStatus,
    TransferTask,
    TransferType,
)

PathLike = Union[str, os.PathLike]
Subscriber = Callable[[List[TransferTask]], None]

logger = logging.getLogger(__name__)


class FileSink(Protocol):
    """Chooses where a downloaded object is written."""

    def choose_destination(self, suggested_name: str) -> Optional[Path]: ...


class DirectorySink:
    """Writes downloads below a fixed local directory."""

    def __init__(self, root: PathLike):
        self.root = Path(root)

    def choose_destination(self, suggested_name: str) -> Optional[Path]:
        return self.root / suggested_name


def _remote_key(prefix: str, relative: str) -> str:
    if prefix and not prefix.endswith("/"):
        prefix += "/"
    return unicodedata.normalize("NFC", prefix + relative)


def _collect_files(root: Path, prefix: str) -> List[Tuple[Path, str]]:
    """Regular, non-hidden files below ``root`` paired with their remote keys."""
    if not root.is_dir():
        raise NotADirectoryError(f"{root} is not a directory")
    files = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
        for name in sorted(filenames):
            if name.startswith("."):
                continue
            path = Path(dirpath) / name
            if not path.is_file():
                continue
            relative = path.relative_to(root).as_posix()
            files.append((path, _remote_key(prefix, relative)))
    return files


class TransferManager:
    """
    Runs transfer operations in the background and tracks them as tasks.

    Example:
        manager = TransferManager(client, key_store=InMemoryKeyStore({"main": key}))
        unsubscribe = manager.subscribe(lambda tasks: render(tasks))

        task_id = manager.upload_file("video.mp4", "media/video.mp4", alias="main")
        task = await manager.wait(task_id)
    """

    def __init__(
        self,
        client: S3Client,
        key_store: Optional[KeyStore] = None,
        settings: Optional[TransferSettings] = None,
        sink: Optional[FileSink] = None,
        on_completed: Optional[Callable[[TransferType], None]] = None,
        on_error: Optional[Callable[[str], None]] = None,
    ):
        self.client = client
        self.lister = ObjectLister(client)
        self.settings = settings or TransferSettings()
        self.sink = sink
        self.codec = EncryptionCodec(key_store) if key_store is not None else None
        self.on_completed = on_completed
        self.on_error = on_error

        self._tasks: Dict[str, TransferTask] = {}
        self._workers: Dict[str, asyncio.Task] = {}
        self._cancel_events: Dict[str, asyncio.Event] = {}
        self._subscribers: List[Subscriber] = []

    # Registry

    @property
    def tasks(self) -> List[TransferTask]:
        """Snapshot of every tracked task in submission order."""
        return list(self._tasks.values())

    def get_task(self, task_id: str) -> Optional[TransferTask]:
        return self._tasks.get(task_id)

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """
        Receive the task list after every change.

        The callback is invoked immediately with the current list. Returns a
        function that removes the subscription.
        """
        self._subscribers.append(callback)
        callback(self.tasks)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _publish(self) -> None:
        snapshot = self.tasks
        for callback in list(self._subscribers):
            callback(snapshot)

    def _update(self, task_id: str, **changes) -> None:
        task = self._tasks.get(task_id)
        if task is None:
            return
        self._tasks[task_id] = replace(task, **changes)
        self._publish()

    def _report(self, task_id: str, completed: int, total: int) -> None:
        self._update(
            task_id,
            completed_units=completed,
            total_units=total,
            progress=completed / total if total else 1.0,
        )

    def _checkpoint(self, task_id: str) -> None:
        event = self._cancel_events.get(task_id)
        if event is not None and event.is_set():
            raise TransferCancelledError()

    def _submit(
        self,
        transfer_type: TransferType,
        name: str,
        work: Callable[[str], Awaitable[None]],
    ) -> str:
        task = TransferTask(type=transfer_type, name=name)
        self._tasks[task.id] = task
        self._cancel_events[task.id] = asyncio.Event()
        self._publish()
        self._workers[task.id] = asyncio.get_running_loop().create_task(self._run(task.id, work))
        return task.id

    async def _run(self, task_id: str, work: Callable[[str], Awaitable[None]]) -> None:
        task = self._tasks.get(task_id)
        event = self._cancel_events.get(task_id)
        try:
            if task is None or event is None or event.is_set():
                return
            self._update(task_id, status=TransferStatus.IN_PROGRESS)
            logger.info("[Transfer] %s started: %s", task.type.value, task.name)
            await work(task_id)
        except TransferCancelledError:
            self._update(task_id, status=TransferStatus.CANCELLED, error_message=None)
            logger.info("[Transfer] %s cancelled: %s", task.type.value, task.name)
        except asyncio.CancelledError:
            self._update(task_id, status=TransferStatus.CANCELLED, error_message=None)
            raise
        except Exception as ex:
            message = str(ex) or type(ex).__name__
            self._update(task_id, status=TransferStatus.FAILED, error_message=message)
            logger.info("[Transfer] %s FAILED: %s (%s)", task.type.value, task.name, message)
            if self.on_error:
                self.on_error(message)
        else:
            self._update(task_id, status=TransferStatus.COMPLETED, progress=1.0)
            logger.info("[Transfer] %s SUCCESS: %s", task.type.value, task.name)
            if self.on_completed:
                self.on_completed(task.type)
        finally:
            self._workers.pop(task_id, None)

    def cancel(self, task_id: str) -> bool:
        """
        Request cancellation; running work stops at its next chunk or file boundary.

        Returns:
            False when the task is unknown or already finished.
        """
        task = self._tasks.get(task_id)
        if task is None or task.status.is_terminal:
            return False
        self._cancel_events[task_id].set()
        if task.status == TransferStatus.PENDING:
            self._update(task_id, status=TransferStatus.CANCELLED)
        return True

    def remove_task(self, task_id: str) -> bool:
        """Forget a finished task. Running tasks are kept."""
        task = self._tasks.get(task_id)
        if task is None or not task.status.is_terminal:
            return False
        del self._tasks[task_id]
        self._cancel_events.pop(task_id, None)
        self._publish()
        return True

    async def wait(self, task_id: str) -> TransferTask:
        """Wait until the task reaches a terminal status and return its snapshot."""
        worker = self._workers.get(task_id)
        if worker is not None:
            await asyncio.shield(worker)
        return self._tasks[task_id]

    async def wait_all(self) -> List[TransferTask]:
        workers = list(self._workers.values())
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)
        return self.tasks

    # Encryption

    def _key_for(self, alias: str) -> bytes:
        if self.codec is None:
            raise EncryptionKeyNotFoundException(alias)
        return self.codec.resolve(alias)

    def _encrypt(self, data: bytes, alias: Optional[str]) -> Tuple[bytes, Dict[str, str]]:
        if alias is None:
            return data, {}
        if self.codec is None:
            raise EncryptionKeyNotFoundException(alias)
        return self.codec.encrypt(data, alias)

    # Uploads

    def upload_file(self, local_path: PathLike, key: str, alias: Optional[str] = None) -> str:
        """
        Upload one file, encrypting it under ``alias`` when given.

        Returns:
            The task id.
        """
        path = Path(local_path)

        async def work(task_id: str):
            await self._upload_file(task_id, path, key, alias, track_bytes=True)

        return self._submit(TransferType.UPLOAD, path.name, work)

    def upload_tree(self, local_dir: PathLike, remote_prefix: str, alias: Optional[str] = None) -> str:
        """Upload every regular, non-hidden file below ``local_dir`` under ``remote_prefix``."""
        root = Path(local_dir)

        async def work(task_id: str):
            files = await asyncio.to_thread(_collect_files, root, remote_prefix)
            self._report(task_id, 0, len(files))
            for index, (path, key) in enumerate(files, start=1):
                self._checkpoint(task_id)
                await self._upload_file(task_id, path, key, alias, track_bytes=False)
                self._report(task_id, index, len(files))

        return self._submit(TransferType.UPLOAD, root.name, work)

    async def _upload_file(
        self, task_id: str, path: Path, key: str, alias: Optional[str], track_bytes: bool
    ) -> None:
        size = (await aiofiles.os.stat(path)).st_size
        self._checkpoint(task_id)

        # sealed payloads cannot be resumed per part, so they always go in one PUT
        if alias is not None or size < self.settings.multipart_threshold:
            async with aiofiles.open(path, "rb") as f:
                data = await f.read()
            data, metadata = self._encrypt(data, alias)
            await self.client.put_object(key, data, metadata=metadata)
            logger.debug("[Transfer] PUT %s (%d bytes)", key, len(data))
            if track_bytes:
                self._report(task_id, size, size)
            return

        await self._upload_multipart(task_id, path, key, size, track_bytes)

    async def _upload_multipart(
        self, task_id: str, path: Path, key: str, size: int, track_bytes: bool
    ) -> None:
        session = await self._open_session(key, size)
        part_size = session.part_size
        done = sum(min(part_size, size - (n - 1) * part_size) for n in session.parts)
        if track_bytes:
            self._report(task_id, done, size)

        async with aiofiles.open(path, "rb") as f:
            for number in session.missing_parts(size):
                self._checkpoint(task_id)
                await f.seek((number - 1) * part_size)
                chunk = await f.read(part_size)
                session.parts[number] = await self.client.upload_part(
                    key, session.upload_id, number, chunk
                )
                done += len(chunk)
                logger.debug("[Transfer] Part %d of %s uploaded (%d/%d bytes)", number, key, done, size)
                if track_bytes:
                    self._report(task_id, done, size)

        await self.client.complete_multipart_upload(key, session.upload_id, session.parts)
        logger.info("[Transfer] Multipart upload of %s completed with %d parts", key, len(session.parts))

    async def _open_session(self, key: str, size: int) -> MultipartUploadSession:
        """Resume the newest open session for ``key`` or start a new one."""
        part_size = self.settings.part_size
        uploads = [u for u in await self.client.list_multipart_uploads(prefix=key) if u.key == key]
        if uploads:
            upload = max(uploads, key=lambda u: u.initiated)
            parts = await self.client.list_parts(key, upload.upload_id)
            try:
                return self._resume_session(upload, parts, size)
            except PartSizeMismatchException as ex:
                logger.warning("[Transfer] Discarding upload %s for %s: %s", upload.upload_id, key, ex)
                await self.client.abort_multipart_upload(key, upload.upload_id)

        upload_id = await self.client.initiate_multipart_upload(key)
        logger.info("[Transfer] Started multipart upload %s for %s", upload_id, key)
        return MultipartUploadSession(key=key, upload_id=upload_id, part_size=part_size)

    def _resume_session(self, upload: ActiveUpload, parts: Dict[int, PartInfo], size: int) -> MultipartUploadSession:
        part_size = self.settings.part_size
        session = MultipartUploadSession(key=upload.key, upload_id=upload.upload_id, part_size=part_size)
        if parts:
            # the lowest part is never the short trailing part of a multi-part upload
            remote_part_size = parts[min(parts)].size
            if remote_part_size != part_size:
                raise PartSizeMismatchException(remote_part_size, part_size)
        count = session.part_count(size)
        session.parts = {n: p.etag for n, p in parts.items() if n <= count}
        logger.info(
            "[Transfer] Resuming upload %s for %s with %d/%d parts committed",
            upload.upload_id, upload.key, len(session.parts), count,
        )
        return session

    # Downloads

    def download_file(
        self,
        key: str,
        destination: Optional[PathLike] = None,
        version_id: Optional[str] = None,
    ) -> str:
        """
        Download one object, asking the sink for a destination when none is given.

        Raises:
            ValueError: when no destination is available.
        """
        if destination is None:
            name = key.rstrip("/").rsplit("/", 1)[-1]
            destination = self.sink.choose_destination(name) if self.sink is not None else None
            if destination is None:
                raise ValueError(f"No destination chosen for {key!r}")
        dest = Path(destination)

        async def work(task_id: str):
            await self._download_file(task_id, key, dest, version_id, track_bytes=True)

        return self._submit(TransferType.DOWNLOAD, dest.name, work)

    def download_tree(self, prefix: str, local_dir: PathLike) -> str:
        """Download every object below ``prefix`` into ``local_dir``, keeping relative paths."""
        root = Path(local_dir)

        async def work(task_id: str):
            records = [r async for r in self.lister.list_all(prefix)]
            files = [r for r in records if not r.is_folder and not r.key.endswith("/")]
            self._report(task_id, 0, len(files))
            for index, record in enumerate(files, start=1):
                self._checkpoint(task_id)
                dest = self._local_path(root, record.key[len(prefix):])
                await self._download_file(task_id, record.key, dest, None, track_bytes=False)
                self._report(task_id, index, len(files))

        return self._submit(TransferType.DOWNLOAD, prefix.rstrip("/").rsplit("/", 1)[-1] or prefix, work)

    @staticmethod
    def _local_path(root: Path, relative: str) -> Path:
        dest = (root / relative.lstrip("/")).resolve()
        if not dest.is_relative_to(root.resolve()):
            raise BucketFlowException(f"Refusing to write outside {root}: {relative!r}")
        return dest

    async def _download_file(
        self, task_id: str, key: str, dest: Path, version_id: Optional[str], track_bytes: bool
    ) -> None:
        metadata = await self.client.head_object(key, version_id)
        alias = encryption_alias(metadata.headers)
        # a tagged object never reaches disk as ciphertext
        secret = self._key_for(alias) if alias is not None else None
        self._checkpoint(task_id)
        await aiofiles.os.makedirs(dest.parent, exist_ok=True)

        if metadata.size < self.settings.multipart_threshold:
            result = await self.client.get_object(key, version_id)
            data = result.content
            if secret is not None:
                data = EncryptionCodec.open(data, secret)
            async with aiofiles.open(dest, "wb") as f:
                await f.write(data)
            if track_bytes:
                self._report(task_id, metadata.size, metadata.size)
            return

        staging = dest.with_name(dest.name + self.settings.staging_suffix)
        await self._download_ranges(task_id, key, staging, metadata.size, version_id, track_bytes)

        if secret is None:
            await aiofiles.os.replace(staging, dest)
            return
        async with aiofiles.open(staging, "rb") as f:
            sealed = await f.read()
        async with aiofiles.open(dest, "wb") as f:
            await f.write(EncryptionCodec.open(sealed, secret))
        await aiofiles.os.remove(staging)

    async def _download_ranges(
        self,
        task_id: str,
        key: str,
        staging: Path,
        size: int,
        version_id: Optional[str],
        track_bytes: bool,
    ) -> None:
        offset = 0
        if await aiofiles.os.path.exists(staging):
            offset = await aiofiles.os.path.getsize(staging)
            if offset > size:
                logger.warning("[Transfer] Staging file %s is larger than %s, starting over", staging, key)
                await aiofiles.os.remove(staging)
                offset = 0
            elif offset:
                logger.info("[Transfer] Resuming download of %s at byte %d", key, offset)

        if track_bytes:
            self._report(task_id, offset, size)

        async with aiofiles.open(staging, "ab") as f:
            while offset < size:
                self._checkpoint(task_id)
                end = min(offset + self.settings.range_size, size) - 1
                result = await self.client.get_object_range(key, offset, end, version_id)
                chunk = result.content
                if "content-range" not in result.headers and len(chunk) > end - offset + 1:
                    # range ignored, full body returned
                    chunk = chunk[offset:end + 1]
                if not chunk:
                    raise BucketFlowException(f"Range {offset}-{end} of {key} returned no data")
                await f.write(chunk)
                await f.flush()
                offset += len(chunk)
                logger.debug("[Transfer] Range of %s written (%d/%d bytes)", key, offset, size)
                if track_bytes:
                    self._report(task_id, offset, size)

    # Prefix operations

    def delete_tree(self, prefix: str) -> str:
        """Delete every object below ``prefix`` and its placeholder."""

        async def work(task_id: str):
            await self.lister.delete_recursive(
                prefix, progress=self._progress_for(task_id), checkpoint=lambda: self._checkpoint(task_id)
            )

        return self._submit(TransferType.DELETE, prefix, work)

    def rename_tree(self, old_prefix: str, new_prefix: str) -> str:
        """Move every object below ``old_prefix`` under ``new_prefix``."""

        async def work(task_id: str):
            await self.lister.rename_recursive(
                old_prefix,
                new_prefix,
                progress=self._progress_for(task_id),
                checkpoint=lambda: self._checkpoint(task_id),
            )

        return self._submit(TransferType.RENAME, old_prefix, work)

    def _progress_for(self, task_id: str) -> Callable[[int, int], None]:
        def progress(completed: int, total: int):
            self._report(task_id, completed, total)

        return progress
