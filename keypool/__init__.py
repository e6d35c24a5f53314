"""API-key pooling reverse proxy."""

__version__ = "1.0.0"

from .errors import (  # noqa: E402
    KeyPoolError,
    NotFoundError,
    PoolExhaustedError,
    ValidationError,
)
from .manager import KeyLease, KeyPoolManager  # noqa: E402
from .models import HealthResult, KeyRecord, KeyStatus, PoolGroup  # noqa: E402
from .settings import PoolConfig  # noqa: E402

__all__ = [
    "__version__",
    "HealthResult",
    "KeyLease",
    "KeyPoolError",
    "KeyPoolManager",
    "KeyRecord",
    "KeyStatus",
    "NotFoundError",
    "PoolConfig",
    "PoolExhaustedError",
    "PoolGroup",
    "ValidationError",
]
