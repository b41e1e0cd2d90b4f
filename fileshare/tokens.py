import logging
import re
import secrets
from typing import Optional

from .errors import GenerationError, InvalidToken

logger = logging.getLogger("fileshare.tokens")

MIN_TOKEN_BYTES = 6
FALLBACK_TOKEN_BYTES = 9
MAX_TOKEN_LENGTH = 128

# token_urlsafe only ever yields this alphabet.
_TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
_FORBIDDEN_TOKEN_CHARS = ("/", "\\", ".")
_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x1f\x7f-\x9f]")


class TokenGenerator:
    """Produce short URL-safe tokens that double as on-disk file names."""

    def __init__(self, nbytes: int = FALLBACK_TOKEN_BYTES) -> None:
        self.nbytes = max(MIN_TOKEN_BYTES, int(nbytes))

    def generate(self) -> str:
        try:
            token = secrets.token_urlsafe(self.nbytes)
        except (NotImplementedError, OSError) as error:
            # os.urandom raises these when no entropy source is available.
            raise GenerationError("Random source unavailable") from error

        if not _TOKEN_PATTERN.match(token):
            logger.error("token_generation_invalid_output length=%d", len(token))
            raise GenerationError("Generated token has unexpected characters")
        return token


def validate_token(value: Optional[str]) -> str:
    """Normalize a caller-supplied token or raise :class:`InvalidToken`.

    Tokens arrive from URLs, so they are treated as untrusted even though
    the generator never emits separators or dots.
    """

    token = (value or "").strip()
    if not token:
        raise InvalidToken("Token is empty")
    if len(token) > MAX_TOKEN_LENGTH:
        raise InvalidToken("Token is too long")
    if any(char in token for char in _FORBIDDEN_TOKEN_CHARS):
        raise InvalidToken("Token contains path characters")
    if _CONTROL_CHAR_PATTERN.search(token):
        raise InvalidToken("Token contains control characters")
    return token
