"""
Error taxonomy for the sync service.

Retry and sweep decisions are made by inspecting the error text, so every
error raised by a gateway carries its HTTP status in the message.
"""

from __future__ import annotations

import re
from typing import Optional

# Markers of failures that will not go away by retrying.
TERMINAL_STATUSES = (401, 403, 404, 410)
TERMINAL_MARKERS = (
    "rejected",
    "invalid_grant",
    "token_revoked",
    "invalid_client",
    "unauthorized_client",
)

CREDENTIAL_STATUSES = (401, 403)
CREDENTIAL_MARKERS = ("invalid_grant", "token_revoked", "invalid_client", "unauthorized_client")

_TERMINAL_STATUS_RE = re.compile(r"\b(401|403|404|410)\b")
_CREDENTIAL_STATUS_RE = re.compile(r"\b(401|403)\b")
_GONE_RE = re.compile(r"\b(404|410)\b")
_RATE_LIMITED_RE = re.compile(r"\b429\b")


class SyncError(Exception):
    """Base class for errors raised by the sync service."""


class AuthError(SyncError):
    """The integration's credentials are missing, revoked or rejected."""


class StoreError(SyncError):
    """The local database could not be read or written."""


class RemoteApiError(SyncError):
    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class TerminalApiError(RemoteApiError):
    """4xx responses that retrying cannot fix (gone, forbidden, not found)."""


class TransientApiError(RemoteApiError):
    """5xx, 429, timeouts and network failures."""


def api_error_for_status(status: int, message: str) -> RemoteApiError:
    if status in (408, 429) or status >= 500:
        return TransientApiError(message, status=status)
    return TerminalApiError(message, status=status)


def _text(exc: BaseException) -> str:
    return str(exc).lower()


def is_terminal(exc: BaseException) -> bool:
    """True when retrying cannot help. A known status code wins over the text."""
    if isinstance(exc, AuthError):
        return True
    status = getattr(exc, "status", None)
    if status is not None:
        return status in TERMINAL_STATUSES
    message = _text(exc)
    return bool(_TERMINAL_STATUS_RE.search(message)) or any(
        marker in message for marker in TERMINAL_MARKERS
    )


def is_credential_failure(exc: BaseException) -> bool:
    if isinstance(exc, AuthError):
        return True
    status = getattr(exc, "status", None)
    if status is not None:
        return status in CREDENTIAL_STATUSES
    message = _text(exc)
    return bool(_CREDENTIAL_STATUS_RE.search(message)) or any(
        marker in message for marker in CREDENTIAL_MARKERS
    )


def is_gone(exc: BaseException) -> bool:
    """True when the error says the remote resource no longer exists."""
    status = getattr(exc, "status", None)
    if status is not None:
        return status in (404, 410)
    return bool(_GONE_RE.search(_text(exc)))


def is_rate_limited(exc: BaseException) -> bool:
    status = getattr(exc, "status", None)
    if status is not None:
        return status == 429
    return bool(_RATE_LIMITED_RE.search(_text(exc)))


def categorize_error(exc: BaseException) -> str:
    """Bucket an error for the per-category error counters."""
    message = _text(exc)

    if isinstance(exc, AuthError) or any(
        m in message for m in ("invalid_grant", "token_revoked", "refresh")
    ):
        return "token_refresh"
    if isinstance(exc, StoreError) or any(
        m in message for m in ("database", "sql", "postgres")
    ):
        return "database"
    if any(m in message for m in ("network", "timeout", "timed out", "connection")):
        return "network"
    return "api"
