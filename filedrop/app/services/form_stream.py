from collections import deque
from typing import AsyncIterable, AsyncIterator, Optional

from python_multipart.exceptions import MultipartParseError
from python_multipart.multipart import MultipartParser, parse_options_header

from filedrop.app.services.upload_service import close_source
from filedrop.errors import MalformedUpload, TooLarge
from filedrop.logger_config import setup_logger

logger = setup_logger()

FILE_FIELD = "file"
FORM_OVERHEAD = 64 * 1024  # boundaries, part headers and small fields allowed on top of max_file_size


class MultipartFileStream:
    """Reads the ``file`` part of a multipart/form-data body as it arrives.

    The body is pushed through the parser only as far as the consumer
    reads: :meth:`open` stops once the file part's headers are in,
    :meth:`chunks` yields that part's data and stops at its end. Nothing is
    spooled, and a body bigger than ``limit`` plus :data:`FORM_OVERHEAD` is
    refused before it has been read in full.
    """

    def __init__(self, body: AsyncIterable[bytes], content_type: str, limit: int):
        self._body = aiter(body)
        self._content_type = content_type
        self._limit = limit
        self._max_read = limit + FORM_OVERHEAD
        self._read = 0
        self._parser: Optional[MultipartParser] = None

        self.filename: Optional[str] = None
        self._pending = deque()
        self._in_file_part = False
        self._file_done = False

        # Current part
        self._header_field = b""
        self._header_value = b""
        self._part_name: Optional[str] = None
        self._part_filename: Optional[str] = None

    def _make_parser(self) -> MultipartParser:
        _, params = parse_options_header(self._content_type)
        boundary = params.get(b"boundary")
        if not boundary:
            raise MalformedUpload("Missing multipart boundary")
        return MultipartParser(boundary, {
            "on_part_begin": self._on_part_begin,
            "on_header_field": self._on_header_field,
            "on_header_value": self._on_header_value,
            "on_header_end": self._on_header_end,
            "on_headers_finished": self._on_headers_finished,
            "on_part_data": self._on_part_data,
            "on_part_end": self._on_part_end,
        })

    # Parser callbacks

    def _on_part_begin(self):
        self._part_name = None
        self._part_filename = None

    def _on_header_field(self, data: bytes, start: int, end: int):
        self._header_field += data[start:end]

    def _on_header_value(self, data: bytes, start: int, end: int):
        self._header_value += data[start:end]

    def _on_header_end(self):
        if self._header_field.lower() == b"content-disposition":
            _, options = parse_options_header(self._header_value)
            self._part_name = options.get(b"name", b"").decode("utf-8", "replace")
            filename = options.get(b"filename")
            self._part_filename = filename.decode("utf-8", "replace") if filename is not None else None
        self._header_field = b""
        self._header_value = b""

    def _on_headers_finished(self):
        # Only the first file part is read
        if self.filename is None and self._part_name == FILE_FIELD and self._part_filename:
            self.filename = self._part_filename
            self._in_file_part = True

    def _on_part_data(self, data: bytes, start: int, end: int):
        if self._in_file_part:
            self._pending.append(data[start:end])

    def _on_part_end(self):
        if self._in_file_part:
            self._in_file_part = False
            self._file_done = True

    async def _feed(self) -> bool:
        """Push the next body chunk through the parser, False once the body is exhausted."""
        try:
            chunk = await anext(self._body)
        except StopAsyncIteration:
            self._parser.finalize()
            return False

        self._read += len(chunk)
        if self._read > self._max_read:
            logger.info(f"Aborting multipart upload: body passed {self._max_read} bytes")
            raise TooLarge(self._read, self._limit)

        try:
            self._parser.write(chunk)
        except MultipartParseError as e:
            raise MalformedUpload(f"Malformed multipart body: {e}") from e
        return True

    async def open(self) -> Optional[str]:
        """Read up to the file part's data and return its filename, None if the form has no file part.

        Raises:
            MalformedUpload: no boundary, or the body does not parse.
            TooLarge: the body passed the size allowance before the file part.
        """
        if self._parser is None:
            self._parser = self._make_parser()
        while self.filename is None:
            if not await self._feed():
                return None
        return self.filename

    async def chunks(self) -> AsyncIterator[bytes]:
        """Yield the file part's data; closes the body when done or abandoned."""
        try:
            while self._pending or not self._file_done:
                if self._pending:
                    yield self._pending.popleft()
                elif not await self._feed():
                    raise MalformedUpload("Multipart body ended inside the file part")
        finally:
            await self.aclose()

    async def aclose(self):
        await close_source(self._body)
