"""
Gemini API key rotation.

Every AI feature (plant diagnosis, diagnosis chat, crop-detail autofill and
crop-guide generation) runs its single upstream call through
`with_key_rotation`. Keys are tried in order; a rate-limit/quota failure moves
on to the next key, anything else is raised to the caller straight away.
"""
import logging
import os
from enum import Enum
from typing import Callable, List, Optional, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Substrings the upstream API uses in quota / rate-limit error messages.
RETRYABLE_MARKERS = ("429", "quota", "too many requests", "rate limit")


class NoCredentialsError(ValueError):
    """Raised when no API key is configured at all."""

    def __init__(self, message: str = "no credentials available"):
        super().__init__(message)


class ErrorKind(str, Enum):
    RETRYABLE = "retryable"
    TERMINAL = "terminal"
    CONFIGURATION = "configuration"


def build_key_list(primary: Optional[str], additional: Optional[str]) -> List[str]:
    """Combine the primary key with a comma-separated list of extra keys.

    The primary key (when non-empty) is always first. Extra keys keep their
    configured order; blanks and exact duplicates are dropped.
    """
    candidates = [(primary or "").strip()]
    candidates.extend(chunk.strip() for chunk in (additional or "").split(","))
    keys: List[str] = []
    for key in candidates:
        if key and key not in keys:
            keys.append(key)
    return keys


def get_gemini_api_keys() -> List[str]:
    """Return the configured Gemini keys, re-read from the environment on every call."""
    return build_key_list(os.getenv("GEMINI_API_KEY", ""), os.getenv("GEMINI_API_KEYS", ""))


def classify_error(exc: BaseException) -> ErrorKind:
    if isinstance(exc, NoCredentialsError):
        return ErrorKind.CONFIGURATION
    msg = str(exc).lower()
    if any(marker in msg for marker in RETRYABLE_MARKERS):
        return ErrorKind.RETRYABLE
    return ErrorKind.TERMINAL


def is_retryable_error(exc: BaseException) -> bool:
    return classify_error(exc) is ErrorKind.RETRYABLE


def with_key_rotation(
    keys: Sequence[str],
    executor: Callable[[str], T],
    classify: Callable[[BaseException], ErrorKind] = classify_error,
    label: str = "gemini",
) -> T:
    """Run `executor(key)` for each key in order until one attempt succeeds.

    A failure classified as retryable moves on to the next key. Any other
    failure, or a retryable one on the last key, is re-raised unchanged.
    """
    if not keys:
        raise NoCredentialsError()

    last_error: Optional[BaseException] = None
    for idx, key in enumerate(keys):
        try:
            return executor(key)
        except Exception as e:
            last_error = e
            if classify(e) is ErrorKind.RETRYABLE and idx + 1 < len(keys):
                logger.warning("[%s] key #%d hit rate limit/quota, trying key #%d", label, idx + 1, idx + 2)
                continue
            raise

    # all keys exhausted
    raise last_error
