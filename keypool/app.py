"""HTTP surface for the key pool: admin API, health, metrics and proxy.

The pool itself lives in :class:`~keypool.manager.KeyPoolManager`; the
routes here translate HTTP into manager calls and back. Request bodies are
forwarded upstream unchanged with the selected key as bearer token.
"""

from __future__ import annotations

import asyncio
import hmac
import json
import logging
import sys
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

import httpx
import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse
from pydantic import BaseModel, Field, field_validator

from . import __version__
from .errors import KeyPoolError, NotFoundError, UpstreamTerminalError
from .manager import KeyLease, KeyPoolManager, UsageProvider
from .models import KeyStatus, now_iso
from .probe import HealthProbe, classify_response
from .settings import DEFAULT_ADMIN_TOKEN, AppSettings, load_settings
from .store import StateStore, make_backend

LOG = logging.getLogger("keypool.app")

RETRYABLE_STATUSES = {401, 402, 403, 429}
MAX_IMPORT_LINES = 10_000


# ── Helpers ───────────────────────────────────────────────────────────────────


def generate_request_id() -> str:
    """Generate a unique request ID for correlation."""
    return str(uuid.uuid4())


def parse_bearer_token(value: Optional[str]) -> str:
    """Extract bearer token from Authorization header."""
    if not value:
        return ""
    parts = value.strip().split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return ""
    return parts[1].strip()


def constant_time_compare(a: str, b: str) -> bool:
    """Compare two strings in constant time to prevent timing attacks."""
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def join_url(base: str, path: str) -> str:
    return f"{base.rstrip('/')}/{path.lstrip('/')}"


def filtered_response_headers(
    headers: httpx.Headers, key_id: str, request_id: str = ""
) -> dict[str, str]:
    """Filter upstream response headers and tag the key that served them."""
    out: dict[str, str] = {}
    _passthrough = {"content-type", "cache-control", "retry-after"}
    for k, v in headers.items():
        lo = k.lower()
        if lo in _passthrough:
            out[k] = v
        elif lo.startswith("x-ratelimit") or lo.startswith("anthropic-ratelimit"):
            out[k] = v
    out["X-KeyPool-Key"] = key_id
    if request_id:
        out["X-Request-ID"] = request_id
    return out


def build_upstream_headers(request: Request, credential: str) -> dict[str, str]:
    """Copy client headers, replacing all credentials with the pooled key."""
    _blocked = {
        "host", "connection", "content-length", "authorization", "x-api-key",
        "accept-encoding", "x-admin-token", "transfer-encoding",
    }
    headers: dict[str, str] = {}
    for k, v in request.headers.items():
        if k.lower() in _blocked:
            continue
        headers[k] = v
    headers["Authorization"] = f"Bearer {credential}"
    headers["x-api-key"] = credential
    if "content-type" not in {h.lower() for h in headers}:
        headers["Content-Type"] = "application/json"
    req_id = getattr(request.state, "request_id", "")
    if req_id:
        headers["X-Request-ID"] = req_id
    return headers


def _usage_tokens(usage: Any) -> int:
    if not isinstance(usage, dict):
        return 0
    total = 0
    for field_name in ("prompt_tokens", "completion_tokens", "input_tokens", "output_tokens"):
        try:
            total += int(usage.get(field_name) or 0)
        except (TypeError, ValueError):
            continue
    return total


def extract_usage(body: bytes) -> int:
    """Total tokens reported in a JSON response body (OpenAI or Anthropic shape)."""
    try:
        data = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        return 0
    if not isinstance(data, dict):
        return 0
    return _usage_tokens(data.get("usage"))


def extract_stream_usage(chunk: bytes) -> int:
    """Tokens from the last ``usage`` block in a chunk of SSE data lines."""
    tokens = 0
    for line in chunk.decode("utf-8", errors="ignore").split("\n"):
        stripped = line.strip()
        if not stripped.startswith("data:") or stripped == "data: [DONE]":
            continue
        try:
            event = json.loads(stripped[5:].strip())
        except ValueError:
            continue
        if not isinstance(event, dict):
            continue
        usage = event.get("usage")
        if usage is None and isinstance(event.get("message"), dict):
            usage = event["message"].get("usage")
        found = _usage_tokens(usage)
        if found:
            tokens = found
    return tokens


async def relay_stream(
    up: httpx.Response,
    finish: Callable[[bool, bytes], Awaitable[None]],
) -> AsyncIterator[bytes]:
    """Yield the upstream body as it arrives.

    ``finish(completed, last_chunk)`` runs exactly once when the relay stops.
    ``completed`` is true only if the whole body was passed on. Any early exit,
    a client disconnect included, reports false.
    """
    completed = False
    last_data = b""
    try:
        try:
            async for chunk in up.aiter_raw():
                if chunk:
                    last_data = chunk
                    yield chunk
        except httpx.StreamConsumed:
            buf = up.content
            if buf:
                last_data = buf
                yield buf
        completed = True
    finally:
        await finish(completed, last_data)


def problem_detail(
    status: int,
    detail: str,
    error_type: str = "about:blank",
    request_id: str = "",
    **extra: Any,
) -> JSONResponse:
    """Return an RFC 7807 Problem Details JSON response."""
    body: dict[str, Any] = {
        "type": error_type,
        "status": status,
        "detail": detail,
    }
    if request_id:
        body["request_id"] = request_id
    body.update(extra)
    return JSONResponse(body, status_code=status)


# ── Bounded Sliding Window ────────────────────────────────────────────────────


class SlidingWindow:
    """Bounded sliding window for rate/throughput tracking."""

    def __init__(
        self, window_seconds: float = 60.0, max_entries: int = 100_000
    ) -> None:
        self._window_seconds = window_seconds
        self._max_entries = max_entries
        self._entries: list[tuple[float, float]] = []

    def add(self, value: float = 1.0) -> None:
        self._entries.append((time.time(), value))
        if len(self._entries) > self._max_entries:
            self._entries = self._entries[-self._max_entries:]

    def trim(self) -> None:
        cutoff = time.time() - self._window_seconds
        self._entries = [(t, v) for t, v in self._entries if t > cutoff]

    def sum(self) -> float:
        self.trim()
        return sum(v for _, v in self._entries)

    def count(self) -> int:
        self.trim()
        return len(self._entries)

    def rate_per_second(self) -> float:
        s = self.sum()
        return round(s / self._window_seconds, 1) if s else 0

    def count_per_second(self) -> float:
        c = self.count()
        return round(c / self._window_seconds, 1) if c else 0


class RateLimiter:
    """Fixed-budget limiter over a one-minute sliding window."""

    def __init__(self, rpm: int = 300) -> None:
        self._rpm = rpm
        self._window = SlidingWindow(window_seconds=60.0, max_entries=max(1, rpm * 2))

    def check(self) -> bool:
        if self._rpm <= 0:
            return True
        if self._window.count() >= self._rpm:
            return False
        self._window.add(1.0)
        return True


class AuditLogger:
    """Structured audit logging for admin operations."""

    def __init__(self) -> None:
        self._log = logging.getLogger("keypool.audit")

    def log(
        self,
        action: str,
        request_id: str = "",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        entry: dict[str, Any] = {
            "timestamp": now_iso(),
            "action": action,
            "request_id": request_id,
        }
        if details:
            entry["details"] = details
        self._log.info(json.dumps(entry))


# ── Pydantic Models ───────────────────────────────────────────────────────────


class KeyCreate(BaseModel):
    key: str = Field(min_length=1, max_length=4000)
    notes: str = Field(default="", max_length=10_000)
    pool_group: Optional[str] = Field(default=None, max_length=120)


class KeyBatch(BaseModel):
    keys: Optional[list[str]] = None
    text: Optional[str] = None
    pool_group: Optional[str] = Field(default=None, max_length=120)

    def lines(self) -> list[str]:
        if self.keys is not None:
            lines = list(self.keys)
        elif self.text is not None:
            lines = self.text.splitlines()
        else:
            raise HTTPException(400, "either 'keys' or 'text' is required")
        if len(lines) > MAX_IMPORT_LINES:
            raise HTTPException(400, f"too many keys in one import (max {MAX_IMPORT_LINES})")
        return lines


class StatusPatch(BaseModel):
    status: str

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        if v not in (KeyStatus.ACTIVE.value, KeyStatus.DISABLED.value):
            raise ValueError("status must be 'active' or 'disabled'")
        return v


class NotesPatch(BaseModel):
    notes: str = ""


class PoolAssign(BaseModel):
    pool_group: Optional[str] = Field(default=None, max_length=120)


class PoolGroupCreate(BaseModel):
    id: str = Field(min_length=1, max_length=64)
    name: str = Field(default="", max_length=120)
    priority: int = Field(default=50, ge=1, le=100)
    description: str = Field(default="", max_length=500)


class BanRequest(BaseModel):
    reason: str = Field(default="", max_length=1000)


# ── Proxy Engine ──────────────────────────────────────────────────────────────


class ProxyEngine:
    """Upstream HTTP client plus throughput counters for the proxy routes."""

    def __init__(
        self,
        settings: AppSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._tok_window = SlidingWindow()
        self._req_window = SlidingWindow()
        self.inflight = 0
        self.total_requests = 0
        self.total_errors = 0
        self._start_time = time.time()

    async def startup(self) -> None:
        self._client = httpx.AsyncClient(
            http2=True,
            timeout=None,
            transport=self._transport,
            limits=httpx.Limits(
                max_connections=self.settings.max_connections,
                max_keepalive_connections=self.settings.max_keepalive,
            ),
        )
        self._start_time = time.time()

    async def shutdown(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("HTTP client not initialised")
        return self._client

    def note_request(self, tokens: int = 0, error: bool = False) -> None:
        self.total_requests += 1
        self._req_window.add(1.0)
        if tokens:
            self._tok_window.add(float(tokens))
        if error:
            self.total_errors += 1

    def stats(self) -> dict[str, Any]:
        return {
            "tokens_per_second": self._tok_window.rate_per_second(),
            "requests_per_second": self._req_window.count_per_second(),
            "inflight": self.inflight,
            "total_requests_served": self.total_requests,
            "total_errors": self.total_errors,
            "uptime_seconds": round(time.time() - self._start_time, 1),
        }

    def prometheus_metrics(self, manager: KeyPoolManager) -> str:
        """Generate Prometheus-compatible metrics output."""
        st = self.stats()
        pool = manager.get_stats()
        lines = [
            "# HELP keypool_requests_total Proxied requests",
            "# TYPE keypool_requests_total counter",
            f"keypool_requests_total {st['total_requests_served']}",
            "",
            "# HELP keypool_errors_total Proxied requests that failed",
            "# TYPE keypool_errors_total counter",
            f"keypool_errors_total {st['total_errors']}",
            "",
            "# HELP keypool_inflight Current in-flight upstream requests",
            "# TYPE keypool_inflight gauge",
            f"keypool_inflight {st['inflight']}",
            "",
            "# HELP keypool_tokens_per_second Token throughput",
            "# TYPE keypool_tokens_per_second gauge",
            f"keypool_tokens_per_second {st['tokens_per_second']}",
            "",
            "# HELP keypool_keys Keys by status",
            "# TYPE keypool_keys gauge",
        ]
        for status in KeyStatus:
            lines.append(f'keypool_keys{{status="{status.value}"}} {pool[status.value]}')
        lines += [
            "",
            "# HELP keypool_keys_eligible Keys that can be selected",
            "# TYPE keypool_keys_eligible gauge",
            f"keypool_keys_eligible {pool['eligible']}",
            "",
            "# HELP keypool_key_requests_total Recorded outcomes per key",
            "# TYPE keypool_key_requests_total counter",
        ]
        records = manager.records()
        for r in records:
            lines.append(f'keypool_key_requests_total{{key="{r.id}"}} {r.total_requests}')
        lines.append("")
        lines.append("# HELP keypool_key_errors_total Errors per key")
        lines.append("# TYPE keypool_key_errors_total counter")
        for r in records:
            lines.append(f'keypool_key_errors_total{{key="{r.id}"}} {r.error_count}')
        return "\n".join(lines) + "\n"


# ── App Factory ───────────────────────────────────────────────────────────────


def create_app(
    settings: Optional[AppSettings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    usage_provider: Optional[UsageProvider] = None,
) -> FastAPI:
    cfg = settings or load_settings()

    log_fmt = (
        "%(asctime)s %(levelname)s [%(name)s] %(message)s"
        if cfg.log_level != "DEBUG"
        else "%(asctime)s %(levelname)s [%(name)s:%(funcName)s:%(lineno)d] %(message)s"
    )
    logging.basicConfig(level=cfg.log_level, format=log_fmt, stream=sys.stdout)

    store = StateStore(
        make_backend(cfg.state_backend, cfg.state_path),
        max_retries=cfg.save_max_retries,
        retry_delay=cfg.save_retry_delay_ms / 1000,
    )
    probe = HealthProbe(
        cfg.test_url,
        cfg.test_model,
        transport=transport,
        max_connections=cfg.max_connections,
        max_keepalive=cfg.max_keepalive,
    )
    manager = KeyPoolManager(
        store,
        probe=probe,
        usage_provider=usage_provider,
        environ=cfg.environ,
        save_debounce=cfg.save_debounce_ms / 1000,
        score_cache_ttl=cfg.score_cache_ttl_seconds,
        notes_max_length=cfg.notes_max_length,
        batch_pause=cfg.batch_pause_ms / 1000,
    )
    if usage_provider is None:
        # No external balance feed: use the token counts recorded by the proxy.
        manager.use_usage_provider(manager.local_usage)
    engine = ProxyEngine(cfg, transport=transport)
    admin_rate_limiter = RateLimiter(cfg.admin_rate_limit_rpm)
    audit = AuditLogger()

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        await manager.load()
        await probe.startup()
        await engine.startup()
        LOG.info(
            "Key pool v%s ready on port %s (%d keys, algorithm=%s)",
            __version__, cfg.port, len(manager), manager.config.algorithm,
        )
        try:
            yield
        finally:
            await engine.shutdown()
            await probe.shutdown()
            await manager.close()
            LOG.info("Key pool shut down")

    app = FastAPI(
        title="Key Pool Proxy",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.settings = cfg
    app.state.manager = manager
    app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-KeyPool-Key", "X-Request-ID"],
    )

    @app.middleware("http")
    async def security_headers_middleware(request: Request, call_next):
        req_id = request.headers.get("x-request-id", "") or generate_request_id()
        request.state.request_id = req_id
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["X-Request-ID"] = req_id
        return response

    @app.middleware("http")
    async def body_size_middleware(request: Request, call_next):
        cl = request.headers.get("content-length")
        if cl and cl.isdigit() and int(cl) > cfg.max_request_body_bytes:
            return problem_detail(
                413,
                f"Request body too large (max {cfg.max_request_body_bytes} bytes)",
                "request_too_large",
            )
        return await call_next(request)

    @app.exception_handler(KeyPoolError)
    async def pool_error_handler(request: Request, exc: KeyPoolError):
        req_id = getattr(request.state, "request_id", "")
        return problem_detail(exc.status_code, exc.detail, exc.error_type, req_id)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        req_id = getattr(request.state, "request_id", "")
        parts = []
        for err in exc.errors():
            loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
            parts.append(f"{loc}: {err.get('msg', 'invalid value')}" if loc else err.get("msg", ""))
        return problem_detail(400, "; ".join(parts) or "invalid request", "validation_error", req_id)

    @app.exception_handler(HTTPException)
    async def http_error_handler(request: Request, exc: HTTPException):
        req_id = getattr(request.state, "request_id", "")
        return problem_detail(exc.status_code, str(exc.detail), request_id=req_id)

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception):
        req_id = getattr(request.state, "request_id", "")
        LOG.exception("Unhandled error: %s [req=%s]", exc, req_id)
        return problem_detail(500, "internal server error", "internal_error", req_id)

    # Auth dependencies
    def require_admin(
        authorization: Optional[str] = Header(None),
        x_admin_token: Optional[str] = Header(None),
    ) -> None:
        if not admin_rate_limiter.check():
            raise HTTPException(429, "admin API rate limit exceeded")
        if not cfg.admin_token or cfg.admin_token == DEFAULT_ADMIN_TOKEN:
            return
        tok = (x_admin_token or "").strip() or parse_bearer_token(authorization)
        if not constant_time_compare(tok, cfg.admin_token):
            raise HTTPException(401, "admin authorization failed")

    def require_client(
        authorization: Optional[str] = Header(None),
        x_api_key: Optional[str] = Header(None),
    ) -> None:
        if not cfg.client_tokens:
            return
        tok = parse_bearer_token(authorization) or (x_api_key or "").strip()
        if not tok:
            raise HTTPException(401, "client token required")
        if not any(constant_time_compare(tok, ct) for ct in cfg.client_tokens):
            raise HTTPException(401, "client token invalid")

    def request_id(request: Request) -> str:
        return getattr(request.state, "request_id", "")

    # Internal helpers
    async def settle(lease: KeyLease, success: bool, tokens: int = 0, error: Optional[str] = None) -> None:
        engine.note_request(tokens, error=not success)
        try:
            await manager.record_outcome(lease.id, success, tokens=tokens, error=error)
        except NotFoundError:
            LOG.debug("Key %s was removed before its outcome was recorded", lease.id)

    async def settle_response(lease: KeyLease, up: httpx.Response, body: bytes) -> bool:
        """Record an upstream response; ``True`` when another key should be tried."""
        status = up.status_code
        if status in (401, 402):
            try:
                classify_response(up, manager.config.auto_ban)
            except UpstreamTerminalError as exc:
                await settle(lease, False, error=exc.detail)
                if exc.key_status == KeyStatus.BANNED.value:
                    try:
                        await manager.ban_key(lease.id, exc.reason)
                    except NotFoundError:
                        pass
            return True
        if status in RETRYABLE_STATUSES or status >= 500:
            await settle(lease, False, error=f"{status}: {body[:200].decode('utf-8', 'ignore')}")
            return True
        await settle(lease, True, tokens=extract_usage(body))
        return False

    def passthrough(up: httpx.Response, body: bytes, lease: KeyLease, req_id: str) -> Response:
        return Response(
            content=body,
            status_code=up.status_code,
            headers=filtered_response_headers(up.headers, lease.id, req_id),
            media_type=up.headers.get("content-type", "application/json"),
        )

    async def proxy(request: Request, path: str) -> Response:
        req_id = request_id(request)
        raw = await request.body()
        if len(raw) > cfg.max_request_body_bytes:
            raise HTTPException(413, "request body too large")
        try:
            body = json.loads(raw) if raw else {}
        except json.JSONDecodeError:
            raise HTTPException(400, "invalid JSON body")
        if not isinstance(body, dict):
            raise HTTPException(400, "JSON body must be an object")

        config = manager.config
        if engine.inflight >= config.performance.concurrent_limit:
            raise HTTPException(503, "concurrent upstream request limit reached")
        stream = bool(body.get("stream", False))
        url = join_url(cfg.upstream_base_url, path)
        if stream:
            return await proxy_stream(request, url, raw, req_id)

        attempts = config.retry.attempts
        last_detail = ""
        for attempt in range(1, attempts + 1):
            lease = manager.get_next_key()
            headers = build_upstream_headers(request, lease.key)
            engine.inflight += 1
            try:
                up = await engine.client.post(
                    url, content=raw, headers=headers, timeout=cfg.upstream_timeout_seconds
                )
            except httpx.HTTPError as exc:
                last_detail = f"{type(exc).__name__}: {exc}"
                LOG.warning(
                    "Upstream error via key %s (attempt %d/%d): %s [req=%s]",
                    lease.id, attempt, attempts, last_detail, req_id,
                )
                await settle(lease, False, error=last_detail)
                if attempt < attempts:
                    await asyncio.sleep(config.retry.retry_delay_ms / 1000)
                continue
            finally:
                engine.inflight -= 1
            content = up.content
            retry = await settle_response(lease, up, content)
            if retry and attempt < attempts:
                last_detail = f"HTTP {up.status_code}"
                LOG.info(
                    "Retrying with another key after HTTP %d from key %s [req=%s]",
                    up.status_code, lease.id, req_id,
                )
                await asyncio.sleep(config.retry.retry_delay_ms / 1000)
                continue
            return passthrough(up, content, lease, req_id)
        raise HTTPException(502, f"upstream error after {attempts} attempts: {last_detail}")

    async def proxy_stream(request: Request, url: str, raw: bytes, req_id: str) -> Response:
        lease = manager.get_next_key()
        headers = build_upstream_headers(request, lease.key)
        ctx = engine.client.stream(
            "POST", url, content=raw, headers=headers, timeout=cfg.upstream_timeout_seconds
        )
        engine.inflight += 1
        try:
            up = await ctx.__aenter__()
        except httpx.HTTPError as exc:
            engine.inflight -= 1
            LOG.warning("Upstream stream failed via key %s: %s [req=%s]", lease.id, exc, req_id)
            await settle(lease, False, error=f"{type(exc).__name__}: {exc}")
            raise HTTPException(502, f"upstream stream failed: {type(exc).__name__}: {exc}")

        if up.status_code >= 400:
            try:
                content = await up.aread()
            finally:
                await ctx.__aexit__(None, None, None)
                engine.inflight -= 1
            await settle_response(lease, up, content)
            return passthrough(up, content, lease, req_id)

        async def finish(completed: bool, last_data: bytes) -> None:
            try:
                await ctx.__aexit__(None, None, None)
            finally:
                engine.inflight -= 1
                if completed:
                    await settle(lease, True, tokens=extract_stream_usage(last_data))
                else:
                    await settle(lease, False, error="stream interrupted")

        rh = filtered_response_headers(up.headers, lease.id, req_id)
        mt = up.headers.get("content-type", "text/event-stream")
        return StreamingResponse(
            relay_stream(up, finish), status_code=up.status_code, headers=rh, media_type=mt
        )

    # Routes: generic
    def health_payload() -> tuple[dict[str, Any], int]:
        stats = manager.get_stats()
        healthy = stats["eligible"] > 0
        body = {
            "status": "ok" if healthy else "degraded",
            "version": __version__,
            "keys": stats,
            **engine.stats(),
        }
        return body, 200 if healthy else 503

    @app.get("/health")
    async def health():
        """Health check; degraded when no key can be selected."""
        body, status = health_payload()
        return JSONResponse(body, status_code=status)

    @app.head("/health")
    async def health_head():
        _, status = health_payload()
        return Response(status_code=status)

    @app.get("/metrics")
    async def metrics():
        """Prometheus-compatible metrics endpoint."""
        text = engine.prometheus_metrics(manager)
        return Response(content=text, media_type="text/plain; version=0.0.4; charset=utf-8")

    # Routes: admin API
    admin = [Depends(require_admin)]

    @app.get("/admin/api/stats", dependencies=admin)
    async def get_stats():
        return JSONResponse({"pool": manager.get_stats(), "proxy": engine.stats(), "version": __version__})

    @app.get("/admin/api/keys", dependencies=admin)
    async def list_keys(
        page: int = Query(1, ge=1),
        limit: int = Query(10, ge=1, le=1000),
        status: str = Query("all"),
    ):
        result = manager.get_keys(page, limit, status)
        return JSONResponse({
            "keys": [r.public_dict() for r in result["items"]],
            "pagination": result["pagination"],
        })

    @app.get("/admin/api/keys/export", dependencies=admin)
    async def export_keys(request: Request, status: str = Query("all")):
        keys = manager.export_keys(status)
        audit.log("keys_exported", request_id(request), {"status": status, "count": len(keys)})
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d")
        return PlainTextResponse(
            "\n".join(keys),
            headers={"Content-Disposition": f'attachment; filename="keys-{status}-{stamp}.txt"'},
        )

    @app.post("/admin/api/keys", dependencies=admin)
    async def add_key(request: Request, payload: KeyCreate):
        record = await manager.add_key(payload.key, payload.notes, payload.pool_group)
        audit.log("key_added", request_id(request), {"id": record.id, "provider": record.provider})
        return JSONResponse(record.public_dict(), status_code=201)

    @app.post("/admin/api/keys/batch", dependencies=admin)
    async def import_keys(request: Request, payload: KeyBatch):
        result = await manager.import_keys(payload.lines(), payload.pool_group)
        audit.log("keys_imported", request_id(request), {
            "success": result["success"], "duplicate": result["duplicate"], "invalid": result["invalid"],
        })
        return JSONResponse(result)

    @app.post("/admin/api/keys/test-all", dependencies=admin)
    async def test_all(request: Request):
        summary = await manager.test_all_keys()
        audit.log("keys_tested", request_id(request), summary)
        return JSONResponse(summary)

    @app.delete("/admin/api/keys/disabled", dependencies=admin)
    async def delete_disabled(request: Request):
        count = await manager.delete_by_status(KeyStatus.DISABLED.value)
        audit.log("keys_deleted", request_id(request), {"status": "disabled", "count": count})
        return JSONResponse({"deleted": count})

    @app.delete("/admin/api/keys/banned", dependencies=admin)
    async def delete_banned(request: Request):
        count = await manager.delete_by_status(KeyStatus.BANNED.value)
        audit.log("keys_deleted", request_id(request), {"status": "banned", "count": count})
        return JSONResponse({"deleted": count})

    @app.get("/admin/api/keys/{key_id}", dependencies=admin)
    async def get_key(key_id: str):
        return JSONResponse(manager.get_key(key_id).public_dict())

    @app.delete("/admin/api/keys/{key_id}", dependencies=admin)
    async def delete_key(key_id: str, request: Request):
        record = await manager.delete_key(key_id)
        audit.log("key_deleted", request_id(request), {"id": key_id})
        return JSONResponse({"ok": True, "deleted": record.public_dict()})

    @app.patch("/admin/api/keys/{key_id}/toggle", dependencies=admin)
    async def toggle_key(key_id: str, request: Request, payload: StatusPatch):
        record = await manager.toggle_status(key_id, payload.status)
        audit.log("key_status_changed", request_id(request), {"id": key_id, "status": payload.status})
        return JSONResponse(record.public_dict())

    @app.post("/admin/api/keys/{key_id}/ban", dependencies=admin)
    async def ban_key(key_id: str, request: Request, payload: BanRequest):
        record = await manager.ban_key(key_id, payload.reason or None)
        audit.log("key_banned", request_id(request), {"id": key_id, "reason": record.banned_reason})
        return JSONResponse(record.public_dict())

    @app.patch("/admin/api/keys/{key_id}/notes", dependencies=admin)
    async def update_notes(key_id: str, request: Request, payload: NotesPatch):
        record = await manager.update_notes(key_id, payload.notes)
        audit.log("key_notes_updated", request_id(request), {"id": key_id})
        return JSONResponse(record.public_dict())

    @app.patch("/admin/api/keys/{key_id}/pool", dependencies=admin)
    async def assign_pool(key_id: str, request: Request, payload: PoolAssign):
        record = await manager.assign_pool_group(key_id, payload.pool_group)
        audit.log("key_pool_changed", request_id(request), {"id": key_id, "pool_group": record.pool_group})
        return JSONResponse(record.public_dict())

    @app.post("/admin/api/keys/{key_id}/test", dependencies=admin)
    async def test_key(key_id: str, request: Request):
        result = await manager.test_key(key_id)
        audit.log("key_tested", request_id(request), {"id": key_id, "success": result["success"]})
        return JSONResponse(result)

    @app.get("/admin/api/config", dependencies=admin)
    async def get_config():
        return JSONResponse(manager.get_config())

    @app.put("/admin/api/config", dependencies=admin)
    async def update_config(request: Request):
        try:
            partial = await request.json()
        except json.JSONDecodeError:
            raise HTTPException(400, "invalid JSON body")
        config = await manager.update_config(partial)
        audit.log("config_updated", request_id(request), {"fields": sorted(partial)})
        return JSONResponse(config)

    @app.post("/admin/api/config/reset", dependencies=admin)
    async def reset_config(request: Request):
        config = await manager.reset_config()
        audit.log("config_reset", request_id(request))
        return JSONResponse(config)

    @app.get("/admin/api/pool-groups", dependencies=admin)
    async def list_pool_groups():
        return JSONResponse({
            "groups": manager.get_pool_group_stats(),
            "multi_tier": manager.get_config()["multi_tier"],
        })

    @app.post("/admin/api/pool-groups", dependencies=admin)
    async def create_pool_group(request: Request, payload: PoolGroupCreate):
        group = await manager.create_pool_group(
            payload.id, payload.name, payload.priority, payload.description
        )
        audit.log("pool_group_created", request_id(request), {"id": group.id})
        return JSONResponse(group.to_dict(), status_code=201)

    @app.delete("/admin/api/pool-groups/{group_id}", dependencies=admin)
    async def delete_pool_group(group_id: str, request: Request):
        affected = await manager.delete_pool_group(group_id)
        audit.log("pool_group_deleted", request_id(request), {"id": group_id, "affected_keys": affected})
        return JSONResponse({"ok": True, "affected_keys": affected})

    # Routes: proxy
    @app.post("/v1/chat/completions", dependencies=[Depends(require_client)])
    async def chat(request: Request):
        return await proxy(request, "/v1/chat/completions")

    @app.post("/v1/messages", dependencies=[Depends(require_client)])
    async def messages(request: Request):
        return await proxy(request, "/v1/messages")

    return app


def main() -> None:
    s = load_settings()
    uvicorn.run(
        "keypool.app:create_app",
        factory=True,
        host="0.0.0.0",
        port=s.port,
        reload=False,
        log_level=s.log_level.lower(),
        access_log=True,
    )


if __name__ == "__main__":
    main()
