"""Error types shared by the key pool, its storage and the HTTP layer.

Every error carries the HTTP status it maps to and a short ``error_type``
slug used as the ``type`` member of RFC 7807 problem responses.
"""

from __future__ import annotations


class KeyPoolError(Exception):
    """Base exception for key pool errors."""

    def __init__(
        self,
        detail: str,
        status_code: int = 500,
        error_type: str = "internal_error",
    ) -> None:
        super().__init__(detail)
        self.detail = detail
        self.status_code = status_code
        self.error_type = error_type


class NotFoundError(KeyPoolError):
    def __init__(self, detail: str) -> None:
        super().__init__(detail, 404, "not_found")


class ConflictError(KeyPoolError):
    def __init__(self, detail: str) -> None:
        super().__init__(detail, 409, "conflict")


class DuplicateKeyError(ConflictError):
    def __init__(self, detail: str = "Key already exists") -> None:
        super().__init__(detail)
        self.error_type = "duplicate_key"


class ValidationError(KeyPoolError):
    def __init__(self, detail: str) -> None:
        super().__init__(detail, 400, "validation_error")


class PoolExhaustedError(KeyPoolError):
    """No key can serve the request; the service is degraded, not broken."""

    def __init__(self, detail: str) -> None:
        super().__init__(detail, 503, "pool_exhausted")


class UpstreamTransientError(KeyPoolError):
    """Retryable upstream failure: 429, 5xx, timeouts, connection errors."""

    def __init__(self, detail: str, status_code: int = 0) -> None:
        super().__init__(detail, 502, "upstream_transient")
        self.upstream_status = status_code


class UpstreamTerminalError(KeyPoolError):
    """Upstream rejected the credential itself; retrying will not help.

    ``key_status`` is the status the key should move to (disabled or banned)
    and ``reason`` the upstream explanation used as the ban reason.
    """

    def __init__(
        self,
        detail: str,
        status_code: int = 0,
        key_status: str = "disabled",
        reason: str = "",
    ) -> None:
        super().__init__(detail, 502, "upstream_terminal")
        self.upstream_status = status_code
        self.key_status = key_status
        self.reason = reason or detail


class PersistenceError(KeyPoolError):
    def __init__(self, detail: str) -> None:
        super().__init__(detail, 500, "persistence_error")
