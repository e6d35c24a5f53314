"""Upstream health probe for a single credential."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from .errors import UpstreamTerminalError, UpstreamTransientError
from .models import HealthResult, KeyStatus
from .settings import AutoBanPolicy, RetryPolicy

LOG = logging.getLogger("keypool.probe")

PAYMENT_REQUIRED_REASON = "Payment Required - No Credits"


@dataclass
class ProbeOutcome:
    status_code: int
    result: HealthResult
    message: str
    new_status: Optional[KeyStatus] = None
    detail: Any = None
    attempts: int = 1

    @property
    def success(self) -> bool:
        return self.result == HealthResult.SUCCESS


def upstream_error_message(response: httpx.Response) -> Optional[str]:
    """``error.message`` (or ``message``) from a JSON error body, if present."""
    try:
        body = response.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    err = body.get("error")
    if isinstance(err, dict) and err.get("message"):
        return str(err["message"])
    if isinstance(err, str) and err:
        return err
    if body.get("message"):
        return str(body["message"])
    return None


def error_message(response: httpx.Response) -> str:
    msg = upstream_error_message(response)
    if msg:
        return msg
    text = response.text.strip()
    if text:
        return text[:500]
    return response.reason_phrase or f"HTTP {response.status_code}"


def classify_response(response: httpx.Response, auto_ban: AutoBanPolicy) -> None:
    """Raise if an upstream response says the key is unusable.

    429 and 5xx raise :class:`UpstreamTransientError`; 401, 402 and the other
    4xx raise :class:`UpstreamTerminalError` naming the status the key moves
    to. 402 bans unless ``ban_402`` is off; 401 only bans with ``ban_401``.
    """
    status = response.status_code
    if status < 400:
        return
    if status == 429 or status >= 500:
        raise UpstreamTransientError(f"{status}: {error_message(response)}", status)
    if status == 402:
        reason = upstream_error_message(response) or PAYMENT_REQUIRED_REASON
        key_status = KeyStatus.BANNED if auto_ban.ban_402 else KeyStatus.DISABLED
    elif status == 401:
        reason = error_message(response)
        key_status = KeyStatus.BANNED if auto_ban.ban_401 else KeyStatus.DISABLED
    else:
        reason = error_message(response)
        key_status = KeyStatus.DISABLED
    raise UpstreamTerminalError(
        f"{status}: {reason}", status, key_status.value, reason
    )


class HealthProbe:
    """Issues a minimal upstream request to check whether a key works."""

    def __init__(
        self,
        test_url: str,
        model: str = "claude-3-5-haiku-20241022",
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_connections: int = 100,
        max_keepalive: int = 20,
    ) -> None:
        self.test_url = test_url
        self.model = model
        self._transport = transport
        self._limits = httpx.Limits(
            max_connections=max_connections,
            max_keepalive_connections=max_keepalive,
        )
        self._client: Optional[httpx.AsyncClient] = None

    async def startup(self) -> None:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                http2=True,
                timeout=None,
                transport=self._transport,
                limits=self._limits,
            )

    async def shutdown(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    def _payload(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "max_tokens": 10,
            "messages": [{"role": "user", "content": "test"}],
        }

    async def _attempt(self, credential: str, timeout: float) -> httpx.Response:
        if self._client is None or self._client.is_closed:
            await self.startup()
        request = self._client.post(
            self.test_url,
            json=self._payload(),
            headers={
                "Authorization": f"Bearer {credential}",
                "x-api-key": credential,
                "anthropic-version": "2023-06-01",
            },
            timeout=timeout,
        )
        try:
            return await asyncio.wait_for(request, timeout)
        except asyncio.TimeoutError as exc:
            raise UpstreamTransientError(f"timeout after {timeout:.1f}s") from exc
        except httpx.TimeoutException as exc:
            raise UpstreamTransientError(f"timeout: {exc}") from exc
        except httpx.HTTPError as exc:
            raise UpstreamTransientError(f"{type(exc).__name__}: {exc}") from exc

    async def probe(
        self,
        credential: str,
        retry: RetryPolicy,
        auto_ban: AutoBanPolicy,
        timeout: float = 10.0,
    ) -> ProbeOutcome:
        """Test one credential, retrying transient failures only."""
        attempts = retry.attempts
        attempt = 0
        while True:
            attempt += 1
            try:
                response = await self._attempt(credential, timeout)
                classify_response(response, auto_ban)
            except UpstreamTerminalError as exc:
                LOG.warning("Probe rejected key: %s", exc.detail)
                return ProbeOutcome(
                    exc.upstream_status,
                    HealthResult.FAILED,
                    exc.reason,
                    KeyStatus(exc.key_status),
                    detail=exc.detail,
                    attempts=attempt,
                )
            except UpstreamTransientError as exc:
                LOG.info("Probe attempt %d/%d failed: %s", attempt, attempts, exc.detail)
                if attempt >= attempts:
                    return ProbeOutcome(
                        exc.upstream_status,
                        HealthResult.FAILED,
                        exc.detail,
                        KeyStatus.DISABLED,
                        detail=exc.detail,
                        attempts=attempt,
                    )
                await asyncio.sleep(retry.retry_delay_ms / 1000)
                continue
            return ProbeOutcome(
                response.status_code, HealthResult.SUCCESS, "Key is valid", attempts=attempt
            )
