"""Process settings and the layered pool configuration.

Pool configuration is resolved as ``defaults <- persisted <- environment``.
Runtime updates go through :class:`ConfigPatch`, which validates every field
before anything is applied, so a rejected update never leaves a half-written
config behind.
"""

from __future__ import annotations

import copy
import logging
import os
from dataclasses import asdict, dataclass, field, fields, is_dataclass
from typing import Any, Mapping, Optional

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import ValidationError

LOG = logging.getLogger("keypool.settings")

ALGORITHM_NAMES: tuple[str, ...] = (
    "round-robin",
    "random",
    "least-used",
    "weighted-score",
    "least-token-used",
    "max-remaining",
    "weighted-usage",
    "quota-aware",
    "time-window",
)

DEFAULT_ADMIN_TOKEN = "change-me-admin-token"


# ── Pool config ───────────────────────────────────────────────────────────────


@dataclass
class RetryPolicy:
    enabled: bool = True
    max_retries: int = 3
    retry_delay_ms: int = 1000

    @property
    def attempts(self) -> int:
        return 1 + (self.max_retries if self.enabled else 0)


@dataclass
class AutoBanPolicy:
    enabled: bool = True
    error_threshold: int = 5
    ban_402: bool = True
    ban_401: bool = False


@dataclass
class PerformanceLimits:
    concurrent_limit: int = 100
    request_timeout_ms: int = 10000


@dataclass
class MultiTierConfig:
    enabled: bool = False
    auto_fallback: bool = True


@dataclass
class QuotaLimits:
    per_key_daily_limit: int = 1_000_000
    per_key_monthly_limit: int = 30_000_000
    warning_threshold: float = 0.8


@dataclass
class PoolConfig:
    algorithm: str = "round-robin"
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    auto_ban: AutoBanPolicy = field(default_factory=AutoBanPolicy)
    performance: PerformanceLimits = field(default_factory=PerformanceLimits)
    multi_tier: MultiTierConfig = field(default_factory=MultiTierConfig)
    quota: QuotaLimits = field(default_factory=QuotaLimits)
    time_window_hours: float = 24.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# Older state files used camelCase names.
_LEGACY_NAMES = {
    "autoBan": "auto_ban",
    "multiTier": "multi_tier",
    "quotaLimits": "quota",
    "timeWindowHours": "time_window_hours",
    "maxRetries": "max_retries",
    "retryDelay": "retry_delay_ms",
    "errorThreshold": "error_threshold",
    "ban402": "ban_402",
    "ban401": "ban_401",
    "concurrentLimit": "concurrent_limit",
    "requestTimeout": "request_timeout_ms",
    "autoFallback": "auto_fallback",
    "perKeyDailyLimit": "per_key_daily_limit",
    "perKeyMonthlyLimit": "per_key_monthly_limit",
    "warningThreshold": "warning_threshold",
}


def _normalize_names(data: Mapping[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for k, v in data.items():
        name = _LEGACY_NAMES.get(k, k)
        out[name] = _normalize_names(v) if isinstance(v, Mapping) else v
    return out


# ── Validation ────────────────────────────────────────────────────────────────


class _Patch(BaseModel):
    model_config = ConfigDict(extra="forbid")


class RetryPatch(_Patch):
    enabled: Optional[bool] = None
    max_retries: Optional[int] = Field(default=None, ge=0, le=10)
    retry_delay_ms: Optional[int] = Field(default=None, ge=0, le=60_000)


class AutoBanPatch(_Patch):
    enabled: Optional[bool] = None
    error_threshold: Optional[int] = Field(default=None, ge=1, le=1000)
    ban_402: Optional[bool] = None
    ban_401: Optional[bool] = None


class PerformancePatch(_Patch):
    concurrent_limit: Optional[int] = Field(default=None, ge=1, le=1000)
    request_timeout_ms: Optional[int] = Field(default=None, ge=100, le=300_000)


class MultiTierPatch(_Patch):
    enabled: Optional[bool] = None
    auto_fallback: Optional[bool] = None


class QuotaPatch(_Patch):
    per_key_daily_limit: Optional[int] = Field(default=None, ge=1)
    per_key_monthly_limit: Optional[int] = Field(default=None, ge=1)
    warning_threshold: Optional[float] = Field(default=None, gt=0, le=1)


class ConfigPatch(_Patch):
    algorithm: Optional[str] = None
    retry: Optional[RetryPatch] = None
    auto_ban: Optional[AutoBanPatch] = None
    performance: Optional[PerformancePatch] = None
    multi_tier: Optional[MultiTierPatch] = None
    quota: Optional[QuotaPatch] = None
    time_window_hours: Optional[float] = Field(default=None, ge=1, le=720)

    @field_validator("algorithm")
    @classmethod
    def validate_algorithm(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in ALGORITHM_NAMES:
            raise ValueError(
                f"algorithm must be one of: {', '.join(ALGORITHM_NAMES)}"
            )
        return v


def _describe(exc: pydantic.ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg', 'invalid value')}")
    return "invalid config: " + "; ".join(parts)


def parse_patch(partial: Mapping[str, Any]) -> ConfigPatch:
    """Validate a partial config; raises :class:`ValidationError`."""
    if not isinstance(partial, Mapping):
        raise ValidationError("config update must be an object")
    try:
        return ConfigPatch.model_validate(_normalize_names(partial))
    except pydantic.ValidationError as exc:
        raise ValidationError(_describe(exc)) from exc


def apply_patch(config: PoolConfig, patch: ConfigPatch) -> PoolConfig:
    """Return a new config with the patch merged in field by field."""
    merged = copy.deepcopy(config)
    for name, value in patch.model_dump(exclude_none=True).items():
        current = getattr(merged, name)
        if isinstance(value, dict):
            for sub, sub_value in value.items():
                setattr(current, sub, sub_value)
        else:
            setattr(merged, name, value)
    return merged


def _check(candidate: dict[str, Any]) -> bool:
    try:
        ConfigPatch.model_validate(candidate)
    except pydantic.ValidationError as exc:
        LOG.warning("Ignoring invalid persisted config: %s", _describe(exc))
        return False
    return True


def persisted_patch(data: Optional[Mapping[str, Any]]) -> ConfigPatch:
    """Read a persisted config, dropping only the fields that no longer validate."""
    if not data:
        return ConfigPatch()
    defaults = PoolConfig()
    known = {f.name for f in fields(PoolConfig)}
    clean: dict[str, Any] = {}
    for name, value in _normalize_names(data).items():
        if name not in known:
            LOG.info("Dropping unknown persisted config section %r", name)
            continue
        if is_dataclass(getattr(defaults, name)) and isinstance(value, Mapping):
            clean[name] = {
                sub: sub_value
                for sub, sub_value in value.items()
                if _check({name: {sub: sub_value}})
            }
        elif _check({name: value}):
            clean[name] = value
    return ConfigPatch.model_validate(clean)


# ── Environment overrides ─────────────────────────────────────────────────────

_TRUTHY = {"1", "true", "yes", "on"}

# env var -> (section or None, field, kind)
_ENV_FIELDS: dict[str, tuple[Optional[str], str, str]] = {
    "KEY_POOL_ALGORITHM": (None, "algorithm", "str"),
    "KEY_POOL_RETRY_ENABLED": ("retry", "enabled", "bool"),
    "KEY_POOL_RETRY_MAX": ("retry", "max_retries", "int"),
    "KEY_POOL_RETRY_DELAY_MS": ("retry", "retry_delay_ms", "int"),
    "KEY_POOL_AUTO_BAN_ENABLED": ("auto_ban", "enabled", "bool"),
    "KEY_POOL_ERROR_THRESHOLD": ("auto_ban", "error_threshold", "int"),
    "KEY_POOL_BAN_402": ("auto_ban", "ban_402", "bool"),
    "KEY_POOL_BAN_401": ("auto_ban", "ban_401", "bool"),
    "KEY_POOL_CONCURRENT_LIMIT": ("performance", "concurrent_limit", "int"),
    "KEY_POOL_REQUEST_TIMEOUT_MS": ("performance", "request_timeout_ms", "int"),
    "KEY_POOL_MULTI_TIER_ENABLED": ("multi_tier", "enabled", "bool"),
    "KEY_POOL_MULTI_TIER_AUTO_FALLBACK": ("multi_tier", "auto_fallback", "bool"),
    "KEY_POOL_DAILY_LIMIT": ("quota", "per_key_daily_limit", "int"),
    "KEY_POOL_MONTHLY_LIMIT": ("quota", "per_key_monthly_limit", "int"),
    "KEY_POOL_QUOTA_WARNING": ("quota", "warning_threshold", "float"),
    "KEY_POOL_TIME_WINDOW_HOURS": (None, "time_window_hours", "float"),
}


def env_patch(environ: Optional[Mapping[str, str]] = None) -> ConfigPatch:
    """Build a patch from ``KEY_POOL_*`` variables; invalid values are fatal."""
    env = os.environ if environ is None else environ
    raw: dict[str, Any] = {}
    for var, (section, name, kind) in _ENV_FIELDS.items():
        value = env.get(var)
        if value is None or not value.strip():
            continue
        value = value.strip()
        parsed: Any
        if kind == "bool":
            parsed = value.lower() in _TRUTHY
        elif kind == "int":
            try:
                parsed = int(value)
            except ValueError as exc:
                raise ValidationError(f"{var} must be an integer") from exc
        elif kind == "float":
            try:
                parsed = float(value)
            except ValueError as exc:
                raise ValidationError(f"{var} must be a number") from exc
        else:
            parsed = value
        if section is None:
            raw[name] = parsed
        else:
            raw.setdefault(section, {})[name] = parsed
    return parse_patch(raw)


def resolve_config(
    persisted: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> PoolConfig:
    """Merge defaults, the persisted config and environment overrides."""
    config = apply_patch(PoolConfig(), persisted_patch(persisted))
    return apply_patch(config, env_patch(environ))


# ── Process settings ──────────────────────────────────────────────────────────


@dataclass
class AppSettings:
    state_path: str
    port: int
    admin_token: str
    client_tokens: set[str]
    upstream_base_url: str
    test_url: str
    test_model: str = "claude-3-5-haiku-20241022"
    upstream_timeout_seconds: float = 120.0
    state_backend: str = "json"
    save_debounce_ms: int = 1000
    save_max_retries: int = 3
    save_retry_delay_ms: int = 500
    batch_pause_ms: int = 1000
    notes_max_length: int = 1000
    score_cache_ttl_seconds: float = 300.0
    max_connections: int = 200
    max_keepalive: int = 50
    log_level: str = "INFO"
    cors_origins: list[str] = field(default_factory=lambda: ["*"])
    max_request_body_bytes: int = 10 * 1024 * 1024  # 10 MB
    admin_rate_limit_rpm: int = 300
    environ: Optional[Mapping[str, str]] = None


def load_settings() -> AppSettings:
    """Load settings from environment variables with validation."""
    ct_raw = os.getenv("KEYPOOL_CLIENT_TOKENS", "")
    ct = {t.strip() for t in ct_raw.split(",") if t.strip()}
    cors_raw = os.getenv("KEYPOOL_CORS_ORIGINS", "*")
    cors = [o.strip() for o in cors_raw.split(",") if o.strip()]
    base_url = os.getenv(
        "KEYPOOL_UPSTREAM_BASE_URL", "https://api.factory.ai/api/llm/a"
    ).strip().rstrip("/")
    backend = os.getenv("KEYPOOL_STATE_BACKEND", "json").strip().lower()
    if backend not in ("json", "sqlite"):
        raise ValidationError("KEYPOOL_STATE_BACKEND must be 'json' or 'sqlite'")

    settings = AppSettings(
        state_path=os.getenv("KEYPOOL_STATE_PATH", "./data/key_pool.json"),
        port=int(os.getenv("KEYPOOL_PORT", "3000")),
        admin_token=os.getenv("KEYPOOL_ADMIN_TOKEN", DEFAULT_ADMIN_TOKEN).strip(),
        client_tokens=ct,
        upstream_base_url=base_url,
        test_url=os.getenv("KEYPOOL_TEST_URL", f"{base_url}/v1/messages").strip(),
        test_model=os.getenv("KEYPOOL_TEST_MODEL", "claude-3-5-haiku-20241022"),
        upstream_timeout_seconds=max(
            5.0, float(os.getenv("KEYPOOL_UPSTREAM_TIMEOUT_SECONDS", "120"))
        ),
        state_backend=backend,
        save_debounce_ms=max(0, int(os.getenv("KEYPOOL_SAVE_DEBOUNCE_MS", "1000"))),
        save_max_retries=max(1, int(os.getenv("KEYPOOL_SAVE_MAX_RETRIES", "3"))),
        save_retry_delay_ms=max(0, int(os.getenv("KEYPOOL_SAVE_RETRY_DELAY_MS", "500"))),
        batch_pause_ms=max(0, int(os.getenv("KEYPOOL_BATCH_PAUSE_MS", "1000"))),
        notes_max_length=max(1, int(os.getenv("KEYPOOL_NOTES_MAX_LENGTH", "1000"))),
        score_cache_ttl_seconds=max(
            1.0, float(os.getenv("KEYPOOL_SCORE_CACHE_TTL_SECONDS", "300"))
        ),
        max_connections=max(10, int(os.getenv("KEYPOOL_MAX_CONNECTIONS", "200"))),
        max_keepalive=max(10, int(os.getenv("KEYPOOL_MAX_KEEPALIVE", "50"))),
        log_level=os.getenv("KEYPOOL_LOG_LEVEL", "INFO").upper(),
        cors_origins=cors,
        max_request_body_bytes=int(
            os.getenv("KEYPOOL_MAX_REQUEST_BODY_BYTES", str(10 * 1024 * 1024))
        ),
        admin_rate_limit_rpm=int(os.getenv("KEYPOOL_ADMIN_RATE_LIMIT_RPM", "300")),
    )

    if settings.admin_token == DEFAULT_ADMIN_TOKEN:
        LOG.warning("KEYPOOL_ADMIN_TOKEN uses the default - set a strong token!")
    elif len(settings.admin_token) < 16:
        LOG.warning(
            "KEYPOOL_ADMIN_TOKEN is short (%d chars) - use >=16",
            len(settings.admin_token),
        )

    return settings
