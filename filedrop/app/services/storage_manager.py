import asyncio
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

import aiofiles.os

from filedrop.config import Config
from filedrop.formatting import format_size
from filedrop.logger_config import setup_logger

logger = setup_logger()

DISABLED_POLL_SECONDS = 1.0  # how often a disabled rescan loop re-reads stats_interval
STAGING_SUFFIX = ".part"  # every in-flight upload in temp_dir carries it


@dataclass(frozen=True)
class UsageSnapshot:
    file_count: int = 0
    total_bytes: int = 0
    captured_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class DirectoryListing:
    file_count: int
    total_bytes: int


def scan_directory(directory: Path) -> DirectoryListing:
    """Count the regular files directly inside ``directory`` and sum their sizes."""
    file_count = 0
    total_bytes = 0
    with os.scandir(directory) as entries:
        for entry in entries:
            try:
                if not entry.is_file(follow_symlinks=False):
                    continue
                size = entry.stat(follow_symlinks=False).st_size
            except FileNotFoundError:
                # Removed between listing and stat
                continue
            file_count += 1
            total_bytes += size
    return DirectoryListing(file_count, total_bytes)


class UsageStats:
    """Aggregate file count and byte total of the upload directory.

    Updated incrementally on every publish and replaced wholesale by a
    directory rescan. The current numbers live in one immutable
    :class:`UsageSnapshot`, so readers never need the lock.
    """

    def __init__(self, settings: Callable[[], Config]):
        self._settings = settings
        self._snapshot = UsageSnapshot()
        self._lock = asyncio.Lock()

    @property
    def upload_dir(self) -> Path:
        return self._settings().upload_path

    async def initialize(self):
        """Prepare directories, drop stale staging files and take the first count."""
        logger.info("Initializing usage statistics...")
        config = self._settings()

        # Create directories if they don't exist
        config.upload_path.mkdir(exist_ok=True, parents=True)
        config.temp_path.mkdir(exist_ok=True, parents=True)
        logger.debug(f"Storage directories created/verified: {config.upload_path}, {config.temp_path}")

        # Leftovers from an ungraceful shutdown, never published
        files_removed = 0
        for file in config.temp_path.glob(f"*{STAGING_SUFFIX}"):
            if file.is_file():
                await aiofiles.os.unlink(file)
                files_removed += 1
        logger.info(f"Cleaned temporary directory, removed {files_removed} files")

        snapshot = await self.reconcile()
        logger.info(f"Current usage: {snapshot.file_count} files, {format_size(snapshot.total_bytes)}")

    def snapshot(self) -> UsageSnapshot:
        return self._snapshot

    async def record_publish(self, byte_size: int):
        """Account for one newly published file."""
        async with self._lock:
            previous = self._snapshot
            self._snapshot = UsageSnapshot(previous.file_count + 1, previous.total_bytes + byte_size)
        logger.debug(
            f"Usage updated. Files: {self._snapshot.file_count}, "
            f"Change: {byte_size}, Total: {self._snapshot.total_bytes}"
        )

    async def scan(self, directory: Optional[Path] = None) -> DirectoryListing:
        """List the upload directory without holding the lock."""
        directory = directory or self.upload_dir
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, scan_directory, directory)

    async def reconcile(self, listing: Optional[DirectoryListing] = None) -> UsageSnapshot:
        """Replace the counters with a full rescan of the upload directory."""
        if listing is None:
            listing = await self.scan()

        async with self._lock:
            drift = self._snapshot
            self._snapshot = UsageSnapshot(listing.file_count, listing.total_bytes)
            snapshot = self._snapshot

        if (drift.file_count, drift.total_bytes) != (snapshot.file_count, snapshot.total_bytes):
            logger.debug(
                f"Reconciled usage from {drift.file_count} files/{drift.total_bytes} bytes "
                f"to {snapshot.file_count} files/{snapshot.total_bytes} bytes"
            )
        return snapshot

    async def reconcile_forever(self):
        """Rescan every ``stats_interval`` seconds until cancelled."""
        while True:
            interval = self._settings().stats_interval
            if interval <= 0:
                await asyncio.sleep(DISABLED_POLL_SECONDS)
                continue

            await asyncio.sleep(interval)
            try:
                await self.reconcile()
            except OSError as e:
                # Next round retries with a fresh listing
                logger.warning(f"Usage rescan of {self.upload_dir} failed: {e}")
