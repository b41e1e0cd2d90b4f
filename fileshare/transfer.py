"""One-shot upload/download orchestration over a blob store and a metadata store."""

import logging
import threading
import time
from typing import BinaryIO, Callable, Optional

from .errors import InvalidUpload, StoreError, UploadNotFound
from .storage import DEFAULT_CONTENT_TYPE, BlobStore, MetadataStore, UploadRecord
from .tokens import TokenGenerator, validate_token

logger = logging.getLogger("fileshare.transfer")

ORPHAN_GRACE_SECONDS = 600


class Download:
    """An acquired download: the open blob plus the record it belongs to.

    Closing it closes the stream and purges the token. ``close`` runs at most
    once no matter how many exit paths reach it.
    """

    def __init__(
        self,
        record: UploadRecord,
        stream: BinaryIO,
        on_close: Callable[[str], None],
    ) -> None:
        self.record = record
        self.stream = stream
        self._on_close = on_close
        self._closed = False
        self._lock = threading.Lock()

    @property
    def token(self) -> str:
        return self.record.token

    @property
    def filename(self) -> str:
        return self.record.original_name

    @property
    def content_type(self) -> str:
        return self.record.content_type or DEFAULT_CONTENT_TYPE

    @property
    def size(self) -> Optional[int]:
        return self.record.size

    @property
    def closed(self) -> bool:
        return self._closed

    def read(self, size: int = -1) -> bytes:
        return self.stream.read(size)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        try:
            self.stream.close()
        except OSError as error:
            logger.warning(
                "download_stream_close_failed token=%s error=%s", self.token, error
            )
        finally:
            self._on_close(self.token)

    def __enter__(self) -> "Download":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class TransferService:
    def __init__(
        self,
        blob_store: BlobStore,
        metadata_store: MetadataStore,
        generator: Optional[TokenGenerator] = None,
        retention_hours: float = 0.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.blob_store = blob_store
        self.metadata_store = metadata_store
        self.generator = generator or TokenGenerator()
        self.retention_hours = max(0.0, float(retention_hours))
        self._clock = clock

    def _expiry(self, now: float) -> Optional[float]:
        if self.retention_hours <= 0:
            return None
        return now + self.retention_hours * 3600

    def upload(
        self,
        filename: str,
        content: BinaryIO,
        content_type: Optional[str] = None,
    ) -> str:
        """Store *content* under a fresh token and return the token.

        The blob is written before its record so a record never points at
        missing bytes. If the record cannot be saved the blob is removed
        again and the :class:`StoreError` propagates.
        """

        if not filename:
            raise InvalidUpload("Filename is required")

        token = self.generator.generate()
        size = self.blob_store.create(token, content)

        now = self._clock()
        record = UploadRecord(
            token=token,
            original_name=filename,
            content_type=content_type or None,
            size=size,
            uploaded_at=now,
            expires_at=self._expiry(now),
        )
        try:
            self.metadata_store.put(token, record)
        except Exception:
            logger.warning("upload_metadata_failed token=%s - removing blob", token)
            self.blob_store.delete(token)
            raise

        logger.info("upload_stored token=%s size=%d", token, size)
        return token

    def download(self, token: Optional[str]) -> Download:
        """Acquire the upload behind *token* for its single download.

        The returned :class:`Download` must be closed; closing purges the blob
        and the record whether or not the bytes reached the client.
        """

        token = validate_token(token)

        record = self.metadata_store.get(token)
        if record is None:
            logger.info("download_unknown_token token=%s", token)
            raise UploadNotFound("Unknown or consumed token")

        if record.is_expired(self._clock()):
            logger.info("download_expired token=%s", token)
            self.purge(token)
            raise UploadNotFound("Upload expired")

        try:
            stream = self.blob_store.open(token)
        except UploadNotFound:
            logger.warning("download_blob_missing token=%s - removing record", token)
            self._delete_record(token)
            raise

        logger.info("download_acquired token=%s", token)
        return Download(record, stream, on_close=self.purge)

    def purge(self, token: str) -> None:
        """Delete the blob and then the record, logging instead of raising."""

        self.blob_store.delete(token)
        self._delete_record(token)
        logger.info("upload_purged token=%s", token)

    def _delete_record(self, token: str) -> None:
        try:
            self.metadata_store.delete(token)
        except StoreError as error:
            logger.warning("record_delete_failed token=%s error=%s", token, error)

    def cleanup_expired_uploads(self) -> int:
        try:
            expired = self.metadata_store.expired_tokens(self._clock())
        except StoreError:
            logger.exception("cleanup_expired_scan_failed")
            return 0

        for token in expired:
            self.purge(token)
        if expired:
            logger.info("cleanup_completed removed=%d", len(expired))
        return len(expired)

    def cleanup_orphans(self, grace_seconds: float = ORPHAN_GRACE_SECONDS) -> int:
        """Remove blobs without a record and records without a blob.

        Blobs younger than *grace_seconds* are skipped because an upload
        writes its blob before its record.
        """

        try:
            known_tokens = set(self.metadata_store.all_tokens())
        except StoreError:
            logger.exception("orphan_cleanup_scan_failed")
            return 0

        removed = 0
        cutoff = self._clock() - grace_seconds
        for token in list(self.blob_store.iter_tokens(modified_before=cutoff)):
            if token in known_tokens:
                continue
            self.blob_store.delete(token)
            removed += 1
            logger.info("orphan_blob_removed token=%s", token)

        for token in known_tokens:
            if self.blob_store.exists(token):
                continue
            self._delete_record(token)
            removed += 1
            logger.info("orphan_record_removed token=%s", token)

        if removed:
            logger.info("orphan_cleanup_completed removed=%d", removed)
        return removed
