"""In-memory records for pooled credentials and pool groups."""

from __future__ import annotations

import re
import secrets
import time
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from .errors import ValidationError

DEFAULT_GROUP_ID = "default"
MAX_CREDENTIAL_LENGTH = 4000
DAILY_USAGE_DAYS = 31
USAGE_HISTORY_LIMIT = 1000

_GROUP_ID_RE = re.compile(r"^[A-Za-z0-9-]+$")
_GLM_KEY_RE = re.compile(r"^[0-9a-fA-F]{32}\.[A-Za-z0-9]+$")

# Longest prefix first: "sk-ant-" must win over "sk-".
PROVIDER_PREFIXES: tuple[tuple[str, str], ...] = (
    ("sk-ant-", "anthropic"),
    ("fk-", "factory"),
    ("sk-", "openai"),
)


class KeyStatus(str, Enum):
    ACTIVE = "active"
    DISABLED = "disabled"
    BANNED = "banned"


class HealthResult(str, Enum):
    UNTESTED = "untested"
    SUCCESS = "success"
    FAILED = "failed"


# ── Helpers ───────────────────────────────────────────────────────────────────


def now_iso(epoch: Optional[float] = None) -> str:
    """Return UTC time in ISO 8601 format."""
    ts = time.time() if epoch is None else epoch
    return datetime.fromtimestamp(ts, timezone.utc).isoformat()


def parse_iso(value: Optional[str]) -> Optional[float]:
    """Parse an ISO 8601 timestamp into epoch seconds (naive values are UTC)."""
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def utc_day(epoch: float) -> str:
    return datetime.fromtimestamp(epoch, timezone.utc).strftime("%Y-%m-%d")


def mask_secret(value: str) -> str:
    """Mask a secret value for display, showing only prefix/suffix."""
    s = (value or "").strip()
    if not s:
        return ""
    if len(s) <= 8:
        return f"{s[:2]}***"
    return f"{s[:4]}...{s[-4:]}"


def generate_key_id(epoch: Optional[float] = None) -> str:
    ts = time.time() if epoch is None else epoch
    return f"key_{int(ts * 1000)}_{secrets.token_hex(5)}"


def detect_provider(credential: str) -> Optional[str]:
    """Classify a credential by its prefix; ``None`` means unrecognised."""
    for prefix, provider in PROVIDER_PREFIXES:
        if credential.startswith(prefix) and len(credential) > len(prefix):
            return provider
    if _GLM_KEY_RE.match(credential):
        return "glm"
    return None


def normalize_credential(raw: Any) -> tuple[str, str]:
    """Validate a raw credential and return ``(credential, provider)``."""
    if not isinstance(raw, str):
        raise ValidationError("key must be a string")
    credential = raw.strip()
    if not credential:
        raise ValidationError("key is required")
    if len(credential) > MAX_CREDENTIAL_LENGTH:
        raise ValidationError(
            f"key is too long (max {MAX_CREDENTIAL_LENGTH} characters)"
        )
    if any(ch.isspace() for ch in credential):
        raise ValidationError("key must not contain whitespace")
    provider = detect_provider(credential)
    if provider is None:
        raise ValidationError(
            "Invalid key format (expected fk-, sk-, sk-ant- or a GLM id.secret key)"
        )
    return credential, provider


def validate_group_id(group_id: str) -> str:
    gid = (group_id or "").strip()
    if not gid or not _GROUP_ID_RE.match(gid):
        raise ValidationError(
            "pool group id may only contain letters, digits and hyphens"
        )
    return gid


# ── Records ───────────────────────────────────────────────────────────────────


@dataclass
class KeyRecord:
    """One pooled credential with its lifecycle state and counters.

    ``usage_count`` counts selections; ``total_requests`` and
    ``success_requests`` count recorded request outcomes, so
    ``success_requests <= total_requests`` always holds.
    """

    id: str
    key: str
    provider: str
    created_at: str
    pool_group: Optional[str] = None
    notes: str = ""
    status: KeyStatus = KeyStatus.ACTIVE
    last_used_at: Optional[str] = None
    usage_count: int = 0
    tokens_used: int = 0
    total_requests: int = 0
    success_requests: int = 0
    success_rate: float = 0.0
    error_count: int = 0
    consecutive_errors: int = 0
    last_error: Optional[str] = None
    last_test_at: Optional[str] = None
    last_test_result: HealthResult = HealthResult.UNTESTED
    banned_at: Optional[str] = None
    banned_reason: Optional[str] = None
    daily_usage: dict[str, int] = field(default_factory=dict)
    usage_history: list[dict[str, Any]] = field(default_factory=list)

    @property
    def group_id(self) -> str:
        return self.pool_group or DEFAULT_GROUP_ID

    @property
    def eligible(self) -> bool:
        """Active and proven by a successful health test."""
        return (
            self.status == KeyStatus.ACTIVE
            and self.last_test_result == HealthResult.SUCCESS
        )

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["status"] = self.status.value
        out["last_test_result"] = self.last_test_result.value
        return out

    def public_dict(self) -> dict[str, Any]:
        """Record without the raw credential, for list and detail views."""
        out = self.to_dict()
        raw = out.pop("key", "")
        out["key_preview"] = mask_secret(raw)
        out["has_key"] = bool(raw)
        out.pop("usage_history", None)
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "KeyRecord":
        """Build a record from persisted data, filling fields older files lack."""
        known = {f.name for f in fields(cls)}
        d = {k: v for k, v in data.items() if k in known}
        credential = str(d.get("key", ""))
        d.setdefault("provider", detect_provider(credential) or "unknown")
        d.setdefault("created_at", now_iso())
        d["status"] = KeyStatus(d.get("status") or KeyStatus.ACTIVE.value)
        d["last_test_result"] = HealthResult(
            d.get("last_test_result") or HealthResult.UNTESTED.value
        )
        usage = int(d.get("usage_count") or 0)
        errors = int(d.get("error_count") or 0)
        total = int(d.get("total_requests", usage) or 0)
        success = int(d.get("success_requests", max(0, total - errors)) or 0)
        d["usage_count"] = usage
        d["tokens_used"] = max(0, int(d.get("tokens_used") or 0))
        d["error_count"] = errors
        d["total_requests"] = total
        d["success_requests"] = min(max(0, success), total)
        d["success_rate"] = (
            round(d["success_requests"] / total, 4) if total else 0.0
        )
        d["daily_usage"] = {
            str(k): int(v) for k, v in (d.get("daily_usage") or {}).items()
        }
        d["usage_history"] = list(d.get("usage_history") or [])
        return cls(**d)


@dataclass
class PoolGroup:
    id: str
    name: str
    priority: int = 50
    description: str = ""
    created_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PoolGroup":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or data["id"]),
            priority=int(data.get("priority", 50)),
            description=str(data.get("description") or ""),
            created_at=str(data.get("created_at") or now_iso()),
        )
