import asyncio
import errno
import os
import random
import shutil
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterable, Callable, Optional

import aiofiles
import aiofiles.os

from filedrop.app.services.name_allocator import NameAllocator
from filedrop.app.services.storage_manager import STAGING_SUFFIX, UsageStats
from filedrop.config import Config
from filedrop.errors import IoFailure, NameConflict, TooLarge, UploadError
from filedrop.formatting import format_size
from filedrop.logger_config import setup_logger

logger = setup_logger()


# errno values meaning the filesystem has no hard links
_NO_LINK_ERRNOS = {errno.EPERM, errno.ENOTSUP, errno.EOPNOTSUPP, errno.ENOSYS}
# errno values meaning the filesystem cannot preallocate
_NO_FALLOCATE_ERRNOS = {errno.EINVAL, errno.ENOTSUP, errno.EOPNOTSUPP, errno.ENOSYS}


@dataclass(frozen=True)
class StoredFile:
    public_name: str
    byte_size: int


@asynccontextmanager
async def staging_file(temp_dir: Path):
    """Yield a fresh staging path in ``temp_dir`` and remove it on every exit path."""
    path = temp_dir / f"{uuid.uuid4().hex}{STAGING_SUFFIX}"
    try:
        yield path
    finally:
        # Synchronous so a second cancellation cannot interrupt the cleanup
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.error(f"Could not remove staging file {path}: {e}")


async def close_source(source) -> None:
    """Stop an async generator source instead of draining it."""
    aclose = getattr(source, "aclose", None)
    if aclose is not None:
        await aclose()


class UploadIngestor:
    """Streams an upload into the staging area and publishes it atomically."""

    def __init__(self, settings: Callable[[], Config], usage: UsageStats, rng: Optional[random.Random] = None):
        self._settings = settings
        self._usage = usage
        self._rng = rng or random.Random()

    async def ingest(
        self,
        source: AsyncIterable[bytes],
        declared_name: str,
        declared_length: Optional[int] = None,
    ) -> StoredFile:
        """Store the bytes produced by ``source`` under a freshly allocated name.

        Args:
            source: Async iterable of byte chunks, read until exhausted.
            declared_name: Name supplied by the client.
            declared_length: Size announced by the client, if any. Only used for
                early rejection and preallocation, the limit is enforced on
                the bytes actually received.

        Raises:
            TooLarge: the declared or received size exceeds ``max_file_size``.
            InvalidName: the name is unusable, too long, or already taken.
            IoFailure: staging or publishing failed.
        """
        # One snapshot for the whole upload even if a reload happens meanwhile
        config = self._settings()
        limit = config.max_file_size

        try:
            if declared_length is not None and declared_length > limit:
                logger.info(f"Rejecting {declared_name}: declared {format_size(declared_length)} exceeds limit")
                raise TooLarge(declared_length, limit)

            allocator = NameAllocator(config.name_prefix_length, config.max_file_name_length, self._rng)
            public_name = allocator.allocate(declared_name)
            target = config.upload_path / public_name

            size_info = f" ({format_size(declared_length)})" if declared_length is not None else ""
            logger.info(f"Uploading {declared_name} as {public_name}{size_info}")

            async with staging_file(config.temp_path) as staged:
                received = await self._stage(source, staged, limit, declared_length)
                await self._publish(staged, target)
        except UploadError:
            raise
        except OSError as e:
            logger.error(f"Error storing upload {declared_name}: {e}", exc_info=True)
            raise IoFailure(f"Error storing upload: {e.strerror or e}") from e
        finally:
            await close_source(source)

        await self._usage.record_publish(received)
        logger.info(f"Stored {public_name} ({format_size(received)})")
        return StoredFile(public_name, received)

    async def _stage(
        self,
        source: AsyncIterable[bytes],
        staged: Path,
        limit: int,
        declared_length: Optional[int],
    ) -> int:
        """Copy ``source`` into ``staged``, returning the byte count."""
        received = 0
        async with aiofiles.open(staged, "wb") as f:
            preallocated = False
            if declared_length:
                preallocated = await self._preallocate(f, declared_length, staged.parent)

            async for chunk in source:
                if not chunk:
                    continue
                received += len(chunk)
                if received > limit:
                    logger.info(f"Aborting upload to {staged.name}: received more than {format_size(limit)}")
                    raise TooLarge(received, limit)
                await f.write(chunk)

            if preallocated and received != declared_length:
                await f.truncate(received)
            await f.flush()

        if declared_length is not None and received != declared_length:
            logger.warning(f"Upload declared {declared_length} bytes but sent {received}")
        return received

    async def _preallocate(self, f, length: int, directory: Path) -> bool:
        """Reserve ``length`` bytes for the staged file.

        Returns True when the file was grown to ``length`` and must be
        truncated if fewer bytes arrive.
        """
        loop = asyncio.get_running_loop()
        if hasattr(os, "posix_fallocate"):
            try:
                await loop.run_in_executor(None, os.posix_fallocate, f.fileno(), 0, length)
                return True
            except OSError as e:
                if e.errno not in _NO_FALLOCATE_ERRNOS:
                    raise
                logger.debug(f"Preallocation not supported in {directory}: {e}")

        usage = await loop.run_in_executor(None, shutil.disk_usage, directory)
        if length > usage.free:
            raise IoFailure(f"Insufficient disk space for {format_size(length)}")
        return False

    async def _publish(self, staged: Path, target: Path):
        """Make ``staged`` visible as ``target`` in one step, never replacing a file."""
        try:
            await aiofiles.os.link(staged, target)
            return
        except FileExistsError:
            raise NameConflict(target.name)
        except OSError as e:
            if e.errno == errno.EXDEV:
                raise IoFailure("temp_dir and upload_dir must be on the same filesystem") from e
            if e.errno not in _NO_LINK_ERRNOS:
                raise
            logger.debug(f"Hard links unavailable in {target.parent}, falling back to rename: {e}")

        if await aiofiles.os.path.exists(target):
            raise NameConflict(target.name)
        await aiofiles.os.rename(staged, target)
