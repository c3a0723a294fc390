import asyncio
import mimetypes
import sys
import time
from contextlib import asynccontextmanager
from typing import Optional

import aiofiles
import aiofiles.os
import uvicorn
from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.responses import PlainTextResponse, StreamingResponse
from starlette.requests import ClientDisconnect

from filedrop.app.services.form_stream import FORM_OVERHEAD, MultipartFileStream
from filedrop.app.services.limiter import ConcurrencyLimiter
from filedrop.app.services.storage_manager import UsageStats
from filedrop.app.services.upload_service import UploadIngestor
from filedrop.config import Config, ConfigStore
from filedrop.errors import DirectoryMisconfigured, TooLarge, UploadError
from filedrop.formatting import format_size
from filedrop.logger_config import setup_logger

# Logger setup
logger = setup_logger()

CHUNK_SIZE = 64 * 1024

router = APIRouter()


async def start_services(app: FastAPI, store: ConfigStore) -> None:
    """Attach the shared services to ``app.state``."""

    def settings() -> Config:
        return store.current

    app.state.config_store = store
    app.state.usage_stats = UsageStats(settings)
    await app.state.usage_stats.initialize()
    app.state.ingestor = UploadIngestor(settings, app.state.usage_stats)
    app.state.limiter = ConcurrencyLimiter(settings)
    app.state.started_at = time.monotonic()


def create_app(config_store: Optional[ConfigStore] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store = config_store or ConfigStore()
        if not store.loaded:
            store.load()
        await start_services(app, store)

        # Background tasks: config watcher and usage rescans
        tasks = [
            asyncio.create_task(store.watch()),
            asyncio.create_task(app.state.usage_stats.reconcile_forever()),
        ]
        yield
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    app = FastAPI(title="File Drop", lifespan=lifespan)
    app.middleware("http")(log_requests)
    app.include_router(router)
    return app


def client_ip(request: Request) -> str:
    """Peer address, or the first X-Forwarded-For hop when configured to trust it."""
    if request.app.state.config_store.current.trust_forwarded_ip:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    ip = client_ip(request)
    logger.debug(f"Received {request.method} request {request.url.path} by {ip}")

    response = await call_next(request)

    elapsed_ms = (time.perf_counter() - start) * 1000
    logger.info(f"{response.status_code} {request.method} {request.url.path} by {ip} done in {elapsed_ms:.2f}ms")
    return response


def parse_content_length(value: Optional[str]) -> Optional[int]:
    """Parse the Content-Length header, raising HTTPException if it is malformed."""
    if value is None:
        return None
    try:
        length = int(value)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid Content-Length header")
    if length < 0:
        raise HTTPException(status_code=400, detail="Invalid Content-Length header")
    return length


async def ingest_upload(request: Request, source, name: str, declared_length: Optional[int]) -> PlainTextResponse:
    """Run one ingest under the concurrency limit and map errors to HTTP statuses."""
    state = request.app.state
    async with state.limiter:
        try:
            stored = await state.ingestor.ingest(source, name, declared_length)
        except UploadError as e:
            raise HTTPException(status_code=e.status_code, detail=e.message)
        except ClientDisconnect:
            logger.info(f"Client {client_ip(request)} disconnected while uploading {name}")
            raise HTTPException(status_code=400, detail="Upload interrupted")

    logger.info(f"{client_ip(request)} uploaded {stored.public_name} ({format_size(stored.byte_size)})")
    return PlainTextResponse(stored.public_name)


@router.get("/stats")
async def get_stats(request: Request):
    """Report usage figures for the upload page."""
    state = request.app.state
    snapshot = state.usage_stats.snapshot()
    return {
        "storage_used": snapshot.total_bytes,
        "file_count": snapshot.file_count,
        "uptime": round(time.monotonic() - state.started_at, 3),
        "max_upload": state.config_store.current.max_file_size,
    }


@router.post("/up")
async def upload_form(request: Request):
    """Upload a file sent as the ``file`` part of a multipart form.

    The form is parsed while it streams in and the file part goes straight to
    the ingestor, so the size limit applies before the body is read in full.
    """
    content_type = request.headers.get("content-type", "")
    if not content_type.lower().startswith("multipart/form-data"):
        raise HTTPException(status_code=400, detail="Expected a multipart/form-data body")

    limit = request.app.state.config_store.current.max_file_size
    declared_length = parse_content_length(request.headers.get("content-length"))
    if declared_length is not None and declared_length > limit + FORM_OVERHEAD:
        logger.info(f"Rejecting form upload from {client_ip(request)}: declared {format_size(declared_length)}")
        raise HTTPException(status_code=413, detail=TooLarge(declared_length, limit).message)

    form = MultipartFileStream(request.stream(), content_type, limit)
    try:
        try:
            filename = await form.open()
        except UploadError as e:
            raise HTTPException(status_code=e.status_code, detail=e.message)
        except ClientDisconnect:
            raise HTTPException(status_code=400, detail="Upload interrupted")
        if not filename:
            raise HTTPException(status_code=400, detail="Missing file part")
        return await ingest_upload(request, form.chunks(), filename, None)
    finally:
        await form.aclose()


@router.get("/file/{name}")
async def download_file(name: str, request: Request):
    """Stream a published file back by its public name."""
    if not name or "/" in name or "\\" in name or name in (".", ".."):
        raise HTTPException(status_code=400, detail="Invalid file name")

    path = request.app.state.config_store.current.upload_path / name
    if not await aiofiles.os.path.isfile(path):
        raise HTTPException(status_code=404, detail=f"File {name} not found")

    stat = await aiofiles.os.stat(path)
    content_type, _ = mimetypes.guess_type(name)

    async def file_iterator():
        async with aiofiles.open(path, 'rb') as f:
            while chunk := await f.read(CHUNK_SIZE):
                yield chunk

    return StreamingResponse(
        file_iterator(),
        media_type=content_type or "application/octet-stream",
        headers={"content-length": str(stat.st_size)},
    )


@router.put("/{name}")
async def upload_raw(name: str, request: Request):
    """Upload the request body as a file called ``name``."""
    declared_length = parse_content_length(request.headers.get("content-length"))
    return await ingest_upload(request, request.stream(), name, declared_length)


# Create FastAPI app with lifespan
app = create_app()


def run():
    store = ConfigStore()
    try:
        config = store.load()
    except DirectoryMisconfigured as e:
        logger.error(str(e))
        sys.exit(1)

    logger.info("Starting File Drop server...")
    logger.info(f"Upload directory: {config.upload_dir}")
    logger.info(f"Temporary directory: {config.temp_dir}")
    logger.info(f"Maximum upload size: {format_size(config.max_file_size)}")
    uvicorn.run(create_app(store), host=config.host, port=config.port)


if __name__ == "__main__":
    run()
