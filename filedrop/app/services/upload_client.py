import argparse
import asyncio
import time
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, List, Optional
from urllib.parse import quote

import aiofiles
import httpx

from filedrop.formatting import format_duration, format_rate, format_size
from filedrop.logger_config import setup_logger
from filedrop.throughput import ThroughputEstimator

logger = setup_logger()

CHUNK_SIZE = 64 * 1024
RATE_WINDOW_MS = 15000


class UploadFailed(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class UploadResult:
    path: Path
    public_name: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.public_name is not None


class UploadClient:
    """Streams files to a File Drop server and reports transfer rate and ETA.

    Every file gets its own :class:`ThroughputEstimator`; a batch upload also
    feeds one aggregate estimator with the running total across all files.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        window_ms: float = RATE_WINDOW_MS,
        progress_interval: float = 1.0,
        chunk_size: int = CHUNK_SIZE,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.window_ms = window_ms
        self.progress_interval = progress_interval
        self.chunk_size = chunk_size
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._last_report = 0.0

    async def __aenter__(self):
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self._transport)
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self._client.aclose()
        self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("UploadClient must be used as an async context manager")
        return self._client

    async def fetch_stats(self) -> dict:
        """Fetch the server's usage figures and upload limit."""
        try:
            response = await self.client.get("/stats")
        except httpx.RequestError as e:
            raise UploadFailed(f"Error fetching stats: {e}")
        if response.status_code != 200:
            raise UploadFailed(f"Stats request failed: {response.status_code}", response.status_code)
        return response.json()

    def _report(self, name: str, done: int, total: int, estimator: ThroughputEstimator, force: bool = False):
        now = time.monotonic()
        if not force and now - self._last_report < self.progress_interval:
            return
        self._last_report = now
        logger.info(
            f"{name}: {format_size(done)} / {format_size(total)} "
            f"at {format_rate(estimator.rate())}, ETA {format_duration(estimator.eta(total))}"
        )

    async def _read_chunks(
        self,
        path: Path,
        total: int,
        estimator: ThroughputEstimator,
        aggregate: Optional[ThroughputEstimator],
        batch_offset: int,
    ) -> AsyncIterator[bytes]:
        """Yield the file in chunks, sampling the estimators as each one is handed over."""
        sent = 0
        estimator.sample_now(0)
        async with aiofiles.open(path, "rb") as f:
            while chunk := await f.read(self.chunk_size):
                yield chunk
                sent += len(chunk)
                estimator.sample_now(sent)
                if aggregate is not None:
                    aggregate.sample_now(batch_offset + sent)
                self._report(path.name, sent, total, estimator)

    async def upload_file(
        self,
        path: Path,
        aggregate: Optional[ThroughputEstimator] = None,
        batch_offset: int = 0,
        max_upload: Optional[int] = None,
    ) -> str:
        """Upload one file and return its public name.

        Args:
            path: File to send.
            aggregate: Batch-wide estimator, fed with ``batch_offset`` plus
                the bytes sent so far.
            batch_offset: Bytes already sent by earlier files of the batch.
            max_upload: Server limit, files above it are refused locally.
        """
        path = Path(path)
        total = path.stat().st_size
        if max_upload is not None and total > max_upload:
            raise UploadFailed(
                f"{path.name} is bigger than max file size ({format_size(total)} > {format_size(max_upload)})"
            )

        estimator = ThroughputEstimator(self.window_ms)
        start = time.monotonic()
        logger.info(f"Uploading {path.name} ({format_size(total)})")
        try:
            response = await self.client.put(
                f"/{quote(path.name, safe='')}",
                content=self._read_chunks(path, total, estimator, aggregate, batch_offset),
                headers={
                    "Content-Length": str(total),
                    "Content-Type": "application/octet-stream",
                },
            )
        except httpx.RequestError as e:
            logger.error(f"Upload of {path.name} failed: {e}")
            raise UploadFailed(f"Error uploading {path.name}: {e}")

        if response.status_code != 200:
            raise UploadFailed(
                f"Failed to upload {path.name}: {response.status_code} {response.text}",
                response.status_code,
            )

        public_name = response.text
        self._report(path.name, total, total, estimator, force=True)
        logger.info(f"Uploaded {self.base_url}/file/{public_name} ({format_duration(time.monotonic() - start)})")
        return public_name

    async def upload_many(self, paths: List[Path], aggregate: Optional[ThroughputEstimator] = None) -> List[UploadResult]:
        """Upload files one after another, continuing past failures."""
        stats = await self.fetch_stats()
        max_upload = stats.get("max_upload")
        if aggregate is None:
            aggregate = ThroughputEstimator(self.window_ms)

        start = time.monotonic()
        results = []
        sent = 0
        for path in map(Path, paths):
            # Failed files keep the bytes they sent; the batch total never goes backwards
            transferred = aggregate.latest.cumulative_bytes if aggregate.latest else 0
            try:
                public_name = await self.upload_file(path, aggregate, transferred, max_upload)
            except (UploadFailed, OSError) as e:
                logger.error(str(e))
                results.append(UploadResult(path, error=str(e)))
                continue
            sent += path.stat().st_size
            results.append(UploadResult(path, public_name=public_name))

        uploaded = sum(1 for r in results if r.ok)
        logger.info(
            f"Uploaded {uploaded}/{len(results)} files ({format_size(sent)}) "
            f"in {format_duration(time.monotonic() - start)}, {format_rate(aggregate.rate())}"
        )
        return results


async def _upload(args) -> List[UploadResult]:
    async with UploadClient(args.url, timeout=args.timeout, window_ms=args.window_ms) as client:
        return await client.upload_many(args.files)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Upload files to a File Drop server")
    parser.add_argument("url", help="Server base URL, e.g. http://localhost:4040")
    parser.add_argument("files", nargs="+", type=Path, help="Files to upload")
    parser.add_argument("--timeout", type=float, default=30.0, help="Request timeout in seconds")
    parser.add_argument("--window-ms", type=float, default=RATE_WINDOW_MS,
                        help="Rate estimation window in milliseconds")
    args = parser.parse_args(argv)

    try:
        results = asyncio.run(_upload(args))
    except UploadFailed as e:
        logger.error(str(e))
        return 1
    return 0 if all(r.ok for r in results) else 1


if __name__ == "__main__":
    raise SystemExit(main())
