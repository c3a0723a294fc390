"""Error taxonomy shared by the ingestion, accounting and configuration layers."""


class UploadError(Exception):
    """Base class for every error raised by the service.

    ``status_code`` is the HTTP status the routes answer with when the error
    escapes an ingest.
    """

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class TooLarge(UploadError):
    """Declared or observed byte count exceeds ``max_file_size``."""

    status_code = 413

    def __init__(self, size: int, limit: int):
        super().__init__(f"File too large ({size} bytes, max {limit} bytes)")
        self.size = size
        self.limit = limit


class InvalidName(UploadError):
    """The requested file name cannot be stored."""

    status_code = 400


class NameTooLong(InvalidName):
    def __init__(self, name: str, limit: int):
        super().__init__(f"File name too long ({len(name.encode('utf-8'))} bytes, max {limit} bytes)")
        self.name = name
        self.limit = limit


class NameConflict(InvalidName):
    """A file is already published under the allocated name."""

    status_code = 409

    def __init__(self, name: str):
        super().__init__(f"A file named {name} already exists")
        self.name = name


class MalformedUpload(UploadError):
    """The request body is not a well-formed multipart form."""

    status_code = 400


class IoFailure(UploadError):
    """Disk full, permission denied or any other unexpected I/O error."""

    status_code = 500


class ConfigInvalid(UploadError):
    """A configuration document could not be parsed or validated."""


class DirectoryMisconfigured(UploadError):
    """A configured directory path is unusable: not a directory, or overlapping another."""

    def __init__(self, path, reason: str = "exists but is not a directory"):
        super().__init__(f"{path} {reason}")
        self.path = path
