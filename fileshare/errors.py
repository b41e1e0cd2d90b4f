"""Error types raised by the transfer core and mapped to HTTP statuses."""


class FileShareError(Exception):
    """Base class for errors surfaced to the HTTP layer."""

    status_code = 500
    public_message = "Internal server error"


class GenerationError(FileShareError):
    """Raised when a fresh token cannot be produced."""


class BlobIOError(FileShareError, OSError):
    """Raised when blob bytes cannot be written or read."""


class StoreError(FileShareError):
    """Raised when the metadata database cannot serialize or commit a record."""


class InvalidToken(FileShareError):
    """Raised for empty or malformed caller-supplied tokens."""

    status_code = 400
    public_message = "Invalid token"


class InvalidUpload(FileShareError):
    """Raised when an upload request carries no usable file."""

    status_code = 400
    public_message = "Invalid upload"


class UploadNotFound(FileShareError):
    """Raised when a token has no live record or blob."""

    status_code = 404
    public_message = "File not found"
