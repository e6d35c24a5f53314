"""Tests for the upstream health probe and response classification."""

import asyncio

import httpx
import pytest

from keypool.errors import UpstreamTerminalError, UpstreamTransientError
from keypool.models import HealthResult, KeyStatus
from keypool.probe import PAYMENT_REQUIRED_REASON, HealthProbe, classify_response
from keypool.settings import AutoBanPolicy, RetryPolicy

TEST_URL = "https://upstream.test/v1/messages"
RETRY = RetryPolicy(enabled=True, max_retries=2, retry_delay_ms=0)


def scripted(*responses):
    """MockTransport answering with ``responses`` in order; records requests."""
    seen = []
    queue = list(responses)

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        return item

    return httpx.MockTransport(handler), seen


def run_probe(transport, retry=RETRY, auto_ban=None, timeout=5.0):
    probe = HealthProbe(TEST_URL, transport=transport)

    async def go():
        try:
            return await probe.probe("sk-test-1", retry, auto_ban or AutoBanPolicy(), timeout)
        finally:
            await probe.shutdown()

    return asyncio.run(go())


# ── 1. Classification ────────────────────────────────────────────────────


def test_classify_accepts_success() -> None:
    assert classify_response(httpx.Response(200, json={}), AutoBanPolicy()) is None


@pytest.mark.parametrize("status", [429, 500, 503])
def test_classify_transient(status: int) -> None:
    with pytest.raises(UpstreamTransientError) as info:
        classify_response(httpx.Response(status, text="busy"), AutoBanPolicy())
    assert info.value.upstream_status == status


def test_classify_402_uses_upstream_message() -> None:
    resp = httpx.Response(402, json={"error": {"message": "Out of credits"}})
    with pytest.raises(UpstreamTerminalError) as info:
        classify_response(resp, AutoBanPolicy())
    assert info.value.key_status == "banned"
    assert info.value.reason == "Out of credits"


def test_classify_402_default_reason_and_ban_switch() -> None:
    with pytest.raises(UpstreamTerminalError) as info:
        classify_response(httpx.Response(402), AutoBanPolicy(ban_402=False))
    assert info.value.key_status == "disabled"
    assert info.value.reason == PAYMENT_REQUIRED_REASON


def test_classify_401_bans_only_when_enabled() -> None:
    resp = httpx.Response(401, json={"message": "invalid key"})
    with pytest.raises(UpstreamTerminalError) as info:
        classify_response(resp, AutoBanPolicy())
    assert info.value.key_status == "disabled"
    with pytest.raises(UpstreamTerminalError) as info:
        classify_response(resp, AutoBanPolicy(ban_401=True))
    assert info.value.key_status == "banned"
    assert info.value.reason == "invalid key"


# ── 2. Probe requests ────────────────────────────────────────────────────


def test_probe_success_sends_credential_headers() -> None:
    transport, seen = scripted(httpx.Response(200, json={"id": "msg_1"}))
    outcome = run_probe(transport)
    assert outcome.success
    assert outcome.result == HealthResult.SUCCESS
    assert outcome.attempts == 1
    req = seen[0]
    assert str(req.url) == TEST_URL
    assert req.headers["authorization"] == "Bearer sk-test-1"
    assert req.headers["x-api-key"] == "sk-test-1"
    assert req.headers["anthropic-version"] == "2023-06-01"


def test_probe_402_is_not_retried() -> None:
    transport, seen = scripted(httpx.Response(402, json={"error": {"message": "no credits"}}))
    outcome = run_probe(transport)
    assert len(seen) == 1
    assert outcome.attempts == 1
    assert outcome.result == HealthResult.FAILED
    assert outcome.new_status == KeyStatus.BANNED
    assert outcome.message == "no credits"


def test_probe_401_disables_without_retry() -> None:
    transport, seen = scripted(httpx.Response(401, text="unauthorized"))
    outcome = run_probe(transport)
    assert len(seen) == 1
    assert outcome.new_status == KeyStatus.DISABLED
    assert outcome.status_code == 401


def test_probe_retries_server_errors_then_gives_up() -> None:
    transport, seen = scripted(httpx.Response(503, text="overloaded"))
    outcome = run_probe(transport)
    assert len(seen) == RETRY.attempts == 3
    assert outcome.attempts == 3
    assert outcome.new_status == KeyStatus.DISABLED
    assert outcome.status_code == 503


def test_probe_recovers_after_rate_limit() -> None:
    transport, seen = scripted(
        httpx.Response(429, text="slow down"),
        httpx.Response(200, json={}),
    )
    outcome = run_probe(transport)
    assert outcome.success
    assert outcome.attempts == 2
    assert len(seen) == 2


def test_probe_retry_disabled_means_single_attempt() -> None:
    transport, seen = scripted(httpx.Response(500))
    outcome = run_probe(transport, retry=RetryPolicy(enabled=False, max_retries=5))
    assert len(seen) == 1
    assert not outcome.success
    assert outcome.attempts == 1
    assert outcome.status_code == 500
    assert outcome.new_status == KeyStatus.DISABLED


def test_probe_network_error_is_transient() -> None:
    transport, seen = scripted(httpx.ConnectError("connection refused"))
    outcome = run_probe(transport)
    assert len(seen) == 3
    assert outcome.status_code == 0
    assert "ConnectError" in outcome.message


def test_probe_timeout_is_transient() -> None:
    transport, _ = scripted(httpx.ReadTimeout("read timed out"))
    outcome = run_probe(transport, retry=RetryPolicy(enabled=False))
    assert not outcome.success
    assert outcome.message.startswith("timeout")
