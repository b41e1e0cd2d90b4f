import json
import logging
import os
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import BinaryIO, Generator, Iterator, List, Optional

from .errors import BlobIOError, InvalidToken, StoreError, UploadNotFound
from .tokens import FALLBACK_TOKEN_BYTES, MIN_TOKEN_BYTES, validate_token


BASE_DIR = Path(__file__).resolve().parent


def _resolve_env_path(env_key: str, default: Path) -> Path:
    """Resolve an environment-provided path or fall back to *default*."""

    value = os.environ.get(env_key)
    if value:
        return Path(value).expanduser().resolve()
    return default.resolve()


STORAGE_ROOT = _resolve_env_path("FILESHARE_STORAGE_ROOT", BASE_DIR)
DATA_DIR = _resolve_env_path("FILESHARE_DATA_DIR", STORAGE_ROOT / "data")
UPLOADS_DIR = _resolve_env_path("FILESHARE_UPLOADS_DIR", STORAGE_ROOT / "uploads")
LOGS_DIR = _resolve_env_path("FILESHARE_LOGS_DIR", STORAGE_ROOT / "logs")
DB_PATH = DATA_DIR / "fileshare.db"

UPLOAD_DETAILS_TABLE = "upload_details"

# Constants for file operations
CHUNK_SIZE_BYTES = 1024 * 1024  # 1 MB chunks for streaming
BYTES_PER_MB = 1024 * 1024
DEFAULT_CONTENT_TYPE = "application/octet-stream"


def _safe_int_env(key: str, default: int, min_value: int = 1) -> int:
    """Safely parse integer environment variable with error handling."""
    try:
        return max(min_value, int(os.environ.get(key, str(default))))
    except (TypeError, ValueError):
        logger = logging.getLogger("fileshare.config")
        logger.warning(
            "Invalid value for %s: %s. Using default: %d",
            key, os.environ.get(key), default
        )
        return default


def _safe_float_env(key: str, default: float, min_value: float = 0.0) -> float:
    try:
        return max(min_value, float(os.environ.get(key, str(default))))
    except (TypeError, ValueError):
        logging.getLogger("fileshare.config").warning(
            "Invalid value for %s: %s. Using default: %s",
            key, os.environ.get(key), default
        )
        return default


DEFAULT_MAX_UPLOAD_MB = _safe_int_env("FILESHARE_MAX_UPLOAD_SIZE_MB", 500)
DEFAULT_MAX_CONCURRENT_UPLOADS = _safe_int_env("FILESHARE_MAX_CONCURRENT_UPLOADS", 10)
DEFAULT_RETENTION_HOURS = _safe_float_env("FILESHARE_RETENTION_HOURS", 24.0)
DEFAULT_CLEANUP_INTERVAL_MINUTES = _safe_int_env("FILESHARE_CLEANUP_INTERVAL_MINUTES", 5)
TOKEN_BYTES = _safe_int_env(
    "FILESHARE_TOKEN_BYTES", FALLBACK_TOKEN_BYTES, min_value=MIN_TOKEN_BYTES
)
MAX_FILENAME_LENGTH = _safe_int_env("FILESHARE_MAX_FILENAME_LENGTH", 255)
DEFAULT_UPLOAD_RATE_LIMIT_PER_HOUR = _safe_int_env("FILESHARE_RATE_LIMIT_UPLOADS_PER_HOUR", 100)
DEFAULT_DOWNLOAD_RATE_LIMIT_PER_MINUTE = _safe_int_env("FILESHARE_RATE_LIMIT_DOWNLOADS_PER_MINUTE", 120)

logger = logging.getLogger("fileshare.storage")


def ensure_directories() -> None:
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    UPLOADS_DIR.mkdir(parents=True, exist_ok=True)
    LOGS_DIR.mkdir(parents=True, exist_ok=True)


@dataclass
class UploadRecord:
    """Metadata kept for a token until its single download."""

    token: str
    original_name: str
    content_type: Optional[str] = None
    size: Optional[int] = None
    uploaded_at: Optional[float] = None
    expires_at: Optional[float] = None

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and self.expires_at < now

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, token: str, payload: str) -> "UploadRecord":
        data = json.loads(payload)
        if not isinstance(data, dict) or not isinstance(data.get("original_name"), str):
            raise ValueError("upload details are not an object with a name")
        return cls(
            token=token,
            original_name=data["original_name"],
            content_type=data.get("content_type"),
            size=data.get("size"),
            uploaded_at=data.get("uploaded_at"),
            expires_at=data.get("expires_at"),
        )


@contextmanager
def get_db(db_path: Optional[Path] = None) -> Generator[sqlite3.Connection, None, None]:
    path = Path(db_path or DB_PATH)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, timeout=30.0)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        if conn.in_transaction:
            conn.commit()
    except Exception:
        if conn.in_transaction:
            conn.rollback()
        raise
    finally:
        conn.close()


class MetadataStore:
    """Token -> :class:`UploadRecord` mapping kept in a single SQLite table.

    Every call opens its own connection so the store can be shared by the
    request threads of the WSGI server. SQLite serializes the writers.
    """

    def __init__(self, db_path: Optional[Path] = None) -> None:
        self.db_path = Path(db_path or DB_PATH)

    def init(self) -> None:
        try:
            with get_db(self.db_path) as conn:
                conn.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {UPLOAD_DETAILS_TABLE} (
                        token TEXT PRIMARY KEY,
                        details TEXT NOT NULL,
                        expires_at REAL
                    )
                    """
                )
                conn.execute(
                    f"CREATE INDEX IF NOT EXISTS idx_{UPLOAD_DETAILS_TABLE}_expires_at "
                    f"ON {UPLOAD_DETAILS_TABLE}(expires_at)"
                )
        except sqlite3.Error as error:
            raise StoreError(f"Failed to initialize metadata store: {error}") from error

    def ping(self) -> None:
        try:
            with get_db(self.db_path) as conn:
                conn.execute("SELECT 1").fetchone()
                conn.execute(f"SELECT COUNT(*) FROM {UPLOAD_DETAILS_TABLE}").fetchone()
        except sqlite3.Error as error:
            raise StoreError(f"Metadata store unavailable: {error}") from error

    def put(self, token: str, record: UploadRecord) -> None:
        try:
            payload = record.to_json()
        except (TypeError, ValueError) as error:
            raise StoreError(f"Failed to serialize upload details: {error}") from error

        try:
            with get_db(self.db_path) as conn:
                conn.execute("BEGIN IMMEDIATE")
                conn.execute(
                    f"INSERT INTO {UPLOAD_DETAILS_TABLE} (token, details, expires_at) "
                    "VALUES (?, ?, ?)",
                    (token, payload, record.expires_at),
                )
        except sqlite3.Error as error:
            raise StoreError(f"Failed to save upload details: {error}") from error

    def get(self, token: str) -> Optional[UploadRecord]:
        """Return the record for *token*, or ``None`` if there is none.

        A key holding empty content counts as absent. Database and decode
        failures raise :class:`StoreError`.
        """

        try:
            with get_db(self.db_path) as conn:
                row = conn.execute(
                    f"SELECT details FROM {UPLOAD_DETAILS_TABLE} WHERE token = ?",
                    (token,),
                ).fetchone()
        except sqlite3.Error as error:
            raise StoreError(f"Failed to read upload details: {error}") from error

        if row is None or not row["details"]:
            return None
        try:
            return UploadRecord.from_json(token, row["details"])
        except ValueError as error:
            raise StoreError(f"Corrupt upload details for token: {error}") from error

    def delete(self, token: str) -> None:
        try:
            with get_db(self.db_path) as conn:
                conn.execute("BEGIN IMMEDIATE")
                conn.execute(
                    f"DELETE FROM {UPLOAD_DETAILS_TABLE} WHERE token = ?", (token,)
                )
        except sqlite3.Error as error:
            raise StoreError(f"Failed to delete upload details: {error}") from error

    def expired_tokens(self, now: float) -> List[str]:
        try:
            with get_db(self.db_path) as conn:
                rows = conn.execute(
                    f"SELECT token FROM {UPLOAD_DETAILS_TABLE} "
                    "WHERE expires_at IS NOT NULL AND expires_at < ?",
                    (now,),
                ).fetchall()
        except sqlite3.Error as error:
            raise StoreError(f"Failed to list expired uploads: {error}") from error
        return [row["token"] for row in rows]

    def all_tokens(self) -> List[str]:
        try:
            with get_db(self.db_path) as conn:
                rows = conn.execute(f"SELECT token FROM {UPLOAD_DETAILS_TABLE}").fetchall()
        except sqlite3.Error as error:
            raise StoreError(f"Failed to list uploads: {error}") from error
        return [row["token"] for row in rows]

    def count(self) -> int:
        try:
            with get_db(self.db_path) as conn:
                row = conn.execute(f"SELECT COUNT(*) FROM {UPLOAD_DETAILS_TABLE}").fetchone()
        except sqlite3.Error as error:
            raise StoreError(f"Failed to count uploads: {error}") from error
        return int(row[0])


class BlobStore(ABC):
    """
    Storage for uploaded bytes, one blob per token.

    Contract:
    - create() never overwrites an existing blob and leaves nothing behind
      when it fails
    - open() raises UploadNotFound for anything that is not a stored blob
    - delete() is best-effort and idempotent; it logs instead of raising
    """

    @abstractmethod
    def create(self, token: str, reader: BinaryIO) -> int:
        """Copy *reader* into a new blob and return the number of bytes written."""

    @abstractmethod
    def open(self, token: str) -> BinaryIO:
        """Open the blob for reading."""

    @abstractmethod
    def delete(self, token: str) -> None:
        """Remove the blob if present."""

    @abstractmethod
    def exists(self, token: str) -> bool:
        """Return whether a blob is stored for *token*."""

    @abstractmethod
    def iter_tokens(self, modified_before: Optional[float] = None) -> Iterator[str]:
        """Yield tokens of stored blobs, optionally only those older than a timestamp."""


class LocalBlobStore(BlobStore):
    """Flat directory of files named by token."""

    def __init__(self, root: Optional[Path] = None) -> None:
        self.root = Path(root or UPLOADS_DIR).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, token: str) -> Path:
        if validate_token(token) != token:
            raise InvalidToken("Token has surrounding whitespace")
        path = self.root / token
        if path.parent != self.root:
            raise InvalidToken("Token escapes the storage root")
        return path

    def create(self, token: str, reader: BinaryIO) -> int:
        path = self.path_for(token)
        try:
            fd = os.open(
                path,
                os.O_WRONLY | os.O_CREAT | os.O_EXCL | getattr(os, "O_BINARY", 0),
                0o600,
            )
        except FileExistsError as error:
            raise BlobIOError("A blob already exists for this token") from error
        except OSError as error:
            raise BlobIOError(f"Failed to create blob: {error.strerror}") from error

        written = 0
        try:
            try:
                handle = os.fdopen(fd, "wb")
            except Exception:
                os.close(fd)
                raise
            with handle:
                while True:
                    chunk = reader.read(CHUNK_SIZE_BYTES)
                    if not chunk:
                        break
                    handle.write(chunk)
                    written += len(chunk)
        except Exception as error:
            # Reader failures (client disconnects included) surface as I/O errors.
            self._discard_partial(token, path)
            raise BlobIOError(f"Failed to write blob: {error}") from error
        return written

    def _discard_partial(self, token: str, path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as error:
            logger.warning(
                "blob_partial_cleanup_failed token=%s error=%s", token, error
            )

    def open(self, token: str) -> BinaryIO:
        path = self.path_for(token)
        if not path.is_file():
            raise UploadNotFound("No blob stored for token")
        try:
            return open(path, "rb")
        except OSError as error:
            raise UploadNotFound("Blob could not be opened") from error

    def delete(self, token: str) -> None:
        try:
            path = self.path_for(token)
        except InvalidToken:
            logger.warning("blob_delete_rejected token=%r", token)
            return
        try:
            path.unlink(missing_ok=True)
        except OSError as error:
            logger.warning("blob_delete_failed token=%s error=%s", token, error)

    def exists(self, token: str) -> bool:
        try:
            return self.path_for(token).is_file()
        except InvalidToken:
            return False

    def iter_tokens(self, modified_before: Optional[float] = None) -> Iterator[str]:
        for entry in self.root.iterdir():
            # Dot-files are probes and never tokens.
            if entry.name.startswith("."):
                continue
            try:
                if not entry.is_file():
                    continue
                if modified_before is not None and entry.stat().st_mtime >= modified_before:
                    continue
            except OSError as error:
                logger.warning("blob_scan_failed entry=%s error=%s", entry.name, error)
                continue
            yield entry.name

    def usage_bytes(self) -> int:
        total = 0
        for token in self.iter_tokens():
            try:
                total += (self.root / token).stat().st_size
            except OSError:
                continue
        return total
