import atexit
import logging
import os
import re
import shutil
import threading
import time
import unicodedata
import uuid
from contextlib import contextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Iterator, Optional
from urllib.parse import quote

from apscheduler.schedulers.background import BackgroundScheduler
from flask import Flask, Response, abort, g, has_request_context, jsonify, request, url_for
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.datastructures import FileStorage

from .errors import FileShareError, UploadNotFound
from .storage import (
    BYTES_PER_MB,
    CHUNK_SIZE_BYTES,
    DB_PATH,
    DEFAULT_CLEANUP_INTERVAL_MINUTES,
    DEFAULT_DOWNLOAD_RATE_LIMIT_PER_MINUTE,
    DEFAULT_MAX_CONCURRENT_UPLOADS,
    DEFAULT_MAX_UPLOAD_MB,
    DEFAULT_RETENTION_HOURS,
    DEFAULT_UPLOAD_RATE_LIMIT_PER_HOUR,
    LOGS_DIR,
    MAX_FILENAME_LENGTH,
    TOKEN_BYTES,
    UPLOADS_DIR,
    LocalBlobStore,
    MetadataStore,
    ensure_directories,
)
from .tokens import TokenGenerator
from .transfer import Download, TransferService

# Constants for file operations and limits
LOG_FILE_MAX_BYTES = 5 * 1024 * 1024  # 5 MB max log file size
LOG_FILE_BACKUP_COUNT = 3  # Number of log file backups to keep
DEFAULT_UPLOAD_NAME = "upload"

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
numeric_level = getattr(logging, LOG_LEVEL, logging.INFO)
logging.basicConfig(
    level=numeric_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x1f\x7f-\x9f\n\r]")
_CONTENT_TYPE_PATTERN = re.compile(r"^[\w.+-]+/[\w.+-]+$")


def sanitize_log_value(value: Any) -> Any:
    """Remove control characters from log values to prevent log injection."""

    if isinstance(value, str):
        escaped = value.replace("\n", "\\n").replace("\r", "\\r")
        return _CONTROL_CHAR_PATTERN.sub(
            lambda match: f"\\x{ord(match.group()):02x}", escaped
        )
    return value


def normalize_content_type(value: Optional[str]) -> Optional[str]:
    """Keep a declared upload type only when it is a plain ``type/subtype``."""

    if not value:
        return None
    candidate = value.split(";", 1)[0].strip().lower()
    if not _CONTENT_TYPE_PATTERN.match(candidate):
        return None
    return candidate


def clean_filename(value: Optional[str]) -> str:
    """Reduce a client-supplied name to its base name, keeping unicode and spaces.

    Only path components and control characters are removed. Names that end
    up empty fall back to ``upload``; overlong names are cut, keeping a short
    extension.
    """

    name = re.split(r"[\\/]", value or "")[-1]
    name = _CONTROL_CHAR_PATTERN.sub("", name).strip()
    if name in {"", ".", ".."}:
        return DEFAULT_UPLOAD_NAME
    if len(name) > MAX_FILENAME_LENGTH:
        stem, dot, suffix = name.rpartition(".")
        if stem and len(suffix) < 16:
            name = stem[: MAX_FILENAME_LENGTH - len(suffix) - 1] + dot + suffix
        else:
            name = name[:MAX_FILENAME_LENGTH]
    return name


def attachment_filename_options(filename: str) -> Dict[str, str]:
    """Content-Disposition parameters for *filename*, RFC 2231 encoded when not ASCII."""

    try:
        filename.encode("ascii")
    except UnicodeEncodeError:
        simple = unicodedata.normalize("NFKD", filename).encode("ascii", "ignore").decode("ascii")
        return {
            "filename": simple or DEFAULT_UPLOAD_NAME,
            "filename*": f"UTF-8''{quote(filename, safe='!#$&+^`|~')}",
        }
    return {"filename": filename}


class UploadSlots:
    """Non-blocking cap on uploads being written at the same time."""

    def __init__(self, limit: int) -> None:
        self.limit = max(1, int(limit))
        self.in_use = 0
        self._lock = threading.Lock()

    @contextmanager
    def claim(self) -> Iterator[bool]:
        with self._lock:
            granted = self.in_use < self.limit
            if granted:
                self.in_use += 1
        try:
            yield granted
        finally:
            if granted:
                with self._lock:
                    self.in_use -= 1


class RequestLogAdapter(logging.LoggerAdapter):
    """Prefix messages logged inside a request with its ``request_id``."""

    def process(self, msg, kwargs):
        request_id = getattr(g, "request_id", None) if has_request_context() else None
        if request_id:
            msg = f"request_id={request_id} {msg}"
        return msg, kwargs


def _configure_file_logging() -> Path:
    """Attach a rotating file handler for application and lifecycle logs."""

    ensure_directories()
    log_path = LOGS_DIR / "application.log"
    root_logger = logging.getLogger()
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")

    for handler in root_logger.handlers:
        if isinstance(handler, RotatingFileHandler) and getattr(handler, "baseFilename", "") == str(log_path):
            handler.setLevel(numeric_level)
            handler.setFormatter(formatter)
            return log_path

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)
    return log_path


APP_LOG_PATH = _configure_file_logging()


def _get_optional_bool_env(env_key: str) -> Optional[bool]:
    raw_value = os.environ.get(env_key)
    if raw_value is None:
        return None
    normalized = raw_value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return None


def upload_rate_limit_string() -> str:
    return f"{DEFAULT_UPLOAD_RATE_LIMIT_PER_HOUR} per hour"


def download_rate_limit_string() -> str:
    return f"{DEFAULT_DOWNLOAD_RATE_LIMIT_PER_MINUTE} per minute"


metadata_store = MetadataStore(DB_PATH)
metadata_store.init()
blob_store = LocalBlobStore(UPLOADS_DIR)
transfer_service = TransferService(
    blob_store,
    metadata_store,
    generator=TokenGenerator(TOKEN_BYTES),
    retention_hours=DEFAULT_RETENTION_HOURS,
)
upload_slots = UploadSlots(DEFAULT_MAX_CONCURRENT_UPLOADS)

app = Flask(__name__)
app.config["MAX_CONTENT_LENGTH"] = int(DEFAULT_MAX_UPLOAD_MB * BYTES_PER_MB)
app.logger.setLevel(numeric_level)

_rate_limit_enabled = _get_optional_bool_env("FILESHARE_RATE_LIMIT_ENABLED")
limiter = Limiter(
    key_func=get_remote_address,
    app=app,
    storage_uri=os.environ.get("FILESHARE_RATE_LIMIT_STORAGE", "memory://"),
    enabled=_rate_limit_enabled is not False,
)

_base_lifecycle_logger = logging.getLogger("fileshare.lifecycle")
_base_lifecycle_logger.setLevel(numeric_level)
lifecycle_logger = RequestLogAdapter(_base_lifecycle_logger, {})


def _close_stream_safely(stream: Any, context: str) -> None:
    """Close an upload/input stream while logging failures."""

    if stream is None or not hasattr(stream, "close"):
        return

    try:
        stream.close()
    except OSError as error:
        lifecycle_logger.warning(
            "stream_close_failed context=%s error=%s",
            context,
            sanitize_log_value(str(error)),
        )


@contextmanager
def upload_stream_handler(file_storage: FileStorage) -> Iterator[FileStorage]:
    """Ensure uploaded file streams are always closed."""

    try:
        yield file_storage
    finally:
        _close_stream_safely(
            getattr(file_storage, "stream", None),
            f"upload_stream_handler filename={sanitize_log_value(file_storage.filename or 'unknown')}",
        )


def _stream_download(download: Download) -> Iterator[bytes]:
    try:
        while True:
            chunk = download.read(CHUNK_SIZE_BYTES)
            if not chunk:
                break
            yield chunk
    finally:
        download.close()


@app.before_request
def add_request_id() -> None:
    """Assign a request identifier for downstream logging."""

    g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)


@app.after_request
def log_request_completion(response: Response):
    """Emit lifecycle logs for every completed request."""

    # content_length only; measuring a streamed body would buffer it.
    lifecycle_logger.info(
        "request_completed method=%s path=%s status=%d size=%s",
        request.method,
        sanitize_log_value(request.path),
        response.status_code,
        response.content_length or 0,
    )
    return response


@app.after_request
def add_security_headers(response: Response):
    """Attach security-focused response headers."""

    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "no-referrer"
    response.headers["Cache-Control"] = "no-store"
    response.headers["Content-Security-Policy"] = "default-src 'none'"
    return response


@app.after_request
def add_request_id_header(response: Response):
    """Expose the current request identifier to clients."""

    if hasattr(g, "request_id"):
        response.headers["X-Request-ID"] = g.request_id
    return response


@app.errorhandler(FileShareError)
def handle_fileshare_error(error: FileShareError):
    if isinstance(error, UploadNotFound):
        lifecycle_logger.info("request_not_found path=%s", sanitize_log_value(request.path))
    elif error.status_code < 500:
        lifecycle_logger.warning(
            "request_rejected path=%s reason=%s",
            sanitize_log_value(request.path),
            sanitize_log_value(str(error)),
        )
    else:
        lifecycle_logger.error(
            "request_failed path=%s error_type=%s error=%s",
            sanitize_log_value(request.path),
            type(error).__name__,
            sanitize_log_value(str(error)),
        )
    return jsonify({"error": error.public_message}), error.status_code


@app.errorhandler(413)
def handle_file_too_large(error):  # pragma: no cover - framework hook
    return jsonify({"error": "File too large"}), 413


@app.errorhandler(429)
def handle_rate_limit(error):  # pragma: no cover - framework hook
    description = getattr(error, "description", "Too many requests")
    return jsonify({"error": "Rate limit exceeded", "message": str(description)}), 429


@app.errorhandler(404)
def not_found(error):
    return jsonify({"error": "Not found"}), 404


@app.route("/health")
def health_check():
    checks: Dict[str, Any] = {}
    healthy = True

    try:
        metadata_store.ping()
        checks["database"] = "ok"
        checks["pending_uploads"] = metadata_store.count()
    except FileShareError as error:
        checks["database"] = f"error: {str(error)[:100]}"
        healthy = False

    try:
        usage = shutil.disk_usage(blob_store.root)
        disk_free_gb = usage.free / (1024 ** 3)
        checks["disk_space_gb"] = round(disk_free_gb, 2)
        if disk_free_gb < 1:
            checks["disk_space_status"] = "critical"
            healthy = False
        elif disk_free_gb < 5:
            checks["disk_space_status"] = "warning"
        else:
            checks["disk_space_status"] = "ok"
        checks["stored_bytes"] = blob_store.usage_bytes()
    except OSError as error:
        checks["disk_space_gb"] = 0
        checks["disk_space_status"] = f"error: {str(error)[:100]}"
        healthy = False

    try:
        probe_file = blob_store.root / f".health_check_{uuid.uuid4().hex}"
        probe_file.write_text("health_check", encoding="utf-8")
        probe_file.unlink(missing_ok=True)
        checks["uploads_writable"] = "ok"
    except OSError as error:
        checks["uploads_writable"] = f"error: {str(error)[:100]}"
        healthy = False

    if scheduler is not None:
        job = scheduler.get_job("cleanup_expired_uploads")
        if job and job.next_run_time:
            checks["cleanup"] = "scheduled"
            checks["cleanup_next_run"] = job.next_run_time.isoformat()
        else:
            checks["cleanup"] = "not_scheduled"
        checks["scheduler_running"] = bool(scheduler.running)
    else:
        checks["cleanup"] = "disabled"
        checks["scheduler_running"] = False

    checks["upload_limit"] = upload_slots.limit
    checks["upload_slots_available"] = upload_slots.limit - upload_slots.in_use

    status = "healthy" if healthy else "unhealthy"
    code = 200 if healthy else 503

    return jsonify(
        {
            "status": status,
            "timestamp": time.time(),
            "checks": checks,
        }
    ), code


@app.route("/api/upload", methods=["POST"])
@limiter.limit(lambda: upload_rate_limit_string())
def upload():
    with upload_slots.claim() as acquired:
        if not acquired:
            lifecycle_logger.warning("upload_failed reason=concurrency_limit")
            return jsonify({"error": "Too many concurrent uploads"}), 503

        if "file" not in request.files:
            lifecycle_logger.warning("upload_failed reason=no_file_part")
            return jsonify({"error": "No file part"}), 400

        file_storage = request.files["file"]
        if not file_storage or not file_storage.filename:
            lifecycle_logger.warning("upload_failed reason=no_file_selected")
            return jsonify({"error": "No file selected"}), 400

        filename = clean_filename(file_storage.filename)
        with upload_stream_handler(file_storage) as upload_file:
            token = transfer_service.upload(
                filename,
                upload_file.stream,
                content_type=normalize_content_type(upload_file.content_type),
            )

    lifecycle_logger.info(
        "file_uploaded token=%s filename=%s", token, sanitize_log_value(filename)
    )
    return jsonify(
        {
            "token": token,
            "filename": filename,
            "download_url": url_for("download", token=token, _external=True),
            "message": "File uploaded successfully.",
        }
    ), 201


@app.route("/api/download")
@limiter.limit(lambda: download_rate_limit_string())
def download():
    # HEAD would consume the token without delivering a body.
    if request.method == "HEAD":
        abort(405)

    acquired = transfer_service.download(request.args.get("token"))
    try:
        response = Response(_stream_download(acquired), mimetype=acquired.content_type)
        response.headers.set(
            "Content-Disposition", "attachment", **attachment_filename_options(acquired.filename)
        )
        if acquired.size is not None:
            response.content_length = acquired.size
        # Runs even when the body iterator is never started.
        response.call_on_close(acquired.close)
    except Exception:
        acquired.close()
        raise

    lifecycle_logger.info("file_download_started token=%s", acquired.token)
    return response


scheduler: Optional[BackgroundScheduler] = None

if _get_optional_bool_env("FILESHARE_CLEANUP_SCHEDULER") is not False:
    scheduler = BackgroundScheduler(daemon=True)
    scheduler.add_job(
        func=transfer_service.cleanup_expired_uploads,
        trigger="interval",
        minutes=max(1, DEFAULT_CLEANUP_INTERVAL_MINUTES),
        id="cleanup_expired_uploads",
        name="Clean up expired uploads",
        replace_existing=True,
    )
    scheduler.add_job(
        func=transfer_service.cleanup_orphans,
        trigger="interval",
        hours=1,
        id="cleanup_orphans",
        name="Clean up orphaned blobs and records",
        replace_existing=True,
    )
    scheduler.start()
    atexit.register(lambda: scheduler.shutdown(wait=False))

# Run a single sweep on startup so stale uploads never outlive a restart.
transfer_service.cleanup_expired_uploads()
transfer_service.cleanup_orphans()


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", "3000")), debug=False, threaded=True)
