"""Tests for multi-endpoint execution (services/rpc/executor.py).

Covers:
- Rotation on rate limit and endpoint cooldown
- Re-enable once the cooldown has passed
- AllEndpointsRateLimited / AllEndpointsFailed / AllEndpointsUnavailable
- Transient retries on one endpoint before rotating
- Fatal errors propagate without rotation
- Cooldown growth on repeated failures
"""

from __future__ import annotations

import pytest

from services.rpc.errors import (
    AllEndpointsFailed,
    AllEndpointsRateLimited,
    AllEndpointsUnavailable,
    RateLimitedError,
    RpcError,
    TransientNetworkError,
)
from services.rpc.executor import RateLimitedExecutor
from services.rpc.retry import ENDPOINT_RETRY_POLICY
from tests.conftest import FakeClock, FakeRpc, account, address, make_executor


# ── Fixtures ─────────────────────────────────────────────────────────────


@pytest.fixture
def pair():
    a, b = FakeRpc("http://rpc-a"), FakeRpc("http://rpc-b")
    for rpc in (a, b):
        rpc.accounts[address(1)] = account(rpc.url.encode())
    return a, b


def read(rpc):
    return rpc.get_account_info(address(1))


# ── Rotation ─────────────────────────────────────────────────────────────


class TestRotation:
    @pytest.mark.asyncio
    async def test_rate_limit_rotates_and_disables(self, pair, clock):
        a, b = pair
        a.failures["getAccountInfo"] = [RateLimitedError(endpoint=a.url)]
        executor = make_executor({a.url: a, b.url: b}, clock)

        info = await executor.execute(read)

        assert info.data == b"http://rpc-b"
        assert a.count("getAccountInfo") == 1
        assert not executor.is_available(a.url)
        status = {s["url"]: s for s in executor.health_status()}
        assert status[a.url]["fail_count"] == 1
        assert status[a.url]["cooldown_remaining"] == pytest.approx(2.0)
        assert status[b.url]["available"]

    @pytest.mark.asyncio
    async def test_disabled_endpoint_skipped_then_reenabled(self, pair, clock):
        a, b = pair
        a.failures["getAccountInfo"] = [RateLimitedError(endpoint=a.url)]
        executor = make_executor({a.url: a, b.url: b}, clock)
        await executor.execute(read)

        await executor.execute(read)
        assert a.count("getAccountInfo") == 1

        clock.now += 2.0
        assert executor.is_available(a.url)
        info = await executor.execute(read)
        assert info.data == b"http://rpc-a"

    @pytest.mark.asyncio
    async def test_default_endpoint_backoff(self, pair, clock):
        a, b = pair
        a.failures["getAccountInfo"] = [TransientNetworkError("reset")]
        executor = make_executor({a.url: a, b.url: b}, clock, retry_policy=ENDPOINT_RETRY_POLICY)

        info = await executor.execute(read)

        assert info.data == b"http://rpc-a"
        # 0.5s * 2^1 plus up to 0.5s jitter
        assert 1.0 <= clock.sleeps[0] <= 1.5
        assert 2.0 <= ENDPOINT_RETRY_POLICY.backoff.delay(2) <= 2.5

    @pytest.mark.asyncio
    async def test_prefer_non_primary(self, pair, clock):
        a, b = pair
        executor = make_executor({a.url: a, b.url: b}, clock)
        info = await executor.execute(read, prefer_non_primary=True)
        assert info.data == b"http://rpc-b"
        assert a.calls == []


# ── Failure modes ────────────────────────────────────────────────────────


class TestFailures:
    @pytest.mark.asyncio
    async def test_all_rate_limited(self, pair, clock):
        a, b = pair
        a.failures["getAccountInfo"] = [RateLimitedError(endpoint=a.url)]
        b.failures["getAccountInfo"] = [RateLimitedError(endpoint=b.url)]
        executor = make_executor({a.url: a, b.url: b}, clock)

        with pytest.raises(AllEndpointsRateLimited) as exc:
            await executor.execute(read)
        assert set(exc.value.errors) == {a.url, b.url}

    @pytest.mark.asyncio
    async def test_all_cooling_waits_once_then_raises(self, pair):
        a, b = pair
        clock = FakeClock(advance=False)
        executor = make_executor({a.url: a, b.url: b}, clock)
        executor.mark_rate_limited(a.url)
        executor.mark_rate_limited(b.url)

        with pytest.raises(AllEndpointsUnavailable) as exc:
            await executor.execute(read)

        assert clock.sleeps == [pytest.approx(2.1)]
        assert exc.value.shortest_cooldown == pytest.approx(2.0)
        assert a.calls == [] and b.calls == []

    @pytest.mark.asyncio
    async def test_all_cooling_resumes_after_wait(self, pair, clock):
        a, b = pair
        executor = make_executor({a.url: a, b.url: b}, clock)
        executor.mark_rate_limited(a.url)
        executor.mark_rate_limited(b.url)

        info = await executor.execute(read)

        assert info.data == b"http://rpc-a"
        assert clock.sleeps == [pytest.approx(2.1)]

    @pytest.mark.asyncio
    async def test_transient_retried_then_rotated(self, pair, clock):
        a, b = pair
        a.failures["getAccountInfo"] = [TransientNetworkError("reset"), TransientNetworkError("reset")]
        executor = make_executor({a.url: a, b.url: b}, clock)

        info = await executor.execute(read)

        assert info.data == b"http://rpc-b"
        assert a.count("getAccountInfo") == 2
        assert clock.sleeps == [0.5]
        # transient failures do not put an endpoint into cooldown
        assert executor.is_available(a.url)

    @pytest.mark.asyncio
    async def test_transient_recovers_on_same_endpoint(self, pair, clock):
        a, b = pair
        a.failures["getAccountInfo"] = [TransientNetworkError("timeout")]
        executor = make_executor({a.url: a, b.url: b}, clock)

        info = await executor.execute(read)

        assert info.data == b"http://rpc-a"
        assert b.calls == []

    @pytest.mark.asyncio
    async def test_all_failed_mixed(self, pair, clock):
        a, b = pair
        a.failures["getAccountInfo"] = [RateLimitedError(endpoint=a.url)]
        b.failures["getAccountInfo"] = [TransientNetworkError("reset")] * 2
        executor = make_executor({a.url: a, b.url: b}, clock)

        with pytest.raises(AllEndpointsFailed) as exc:
            await executor.execute(read)
        assert not isinstance(exc.value, AllEndpointsRateLimited)

    @pytest.mark.asyncio
    async def test_fatal_error_not_rotated(self, pair, clock):
        a, b = pair
        a.failures["getAccountInfo"] = [RpcError("invalid param", code=-32602)]
        executor = make_executor({a.url: a, b.url: b}, clock)

        with pytest.raises(RpcError):
            await executor.execute(read)
        assert b.calls == []
        assert executor.is_available(a.url)


# ── Cooldown ─────────────────────────────────────────────────────────────


class TestCooldown:
    def test_repeated_failures_double_window(self, clock):
        executor = make_executor({"http://a": FakeRpc("http://a")}, clock, cooldown=2.0, max_cooldown=5.0)
        executor.mark_rate_limited("http://a")
        executor.mark_rate_limited("http://a")
        status = executor.health_status()[0]
        assert status["fail_count"] == 2
        assert status["cooldown_remaining"] == pytest.approx(4.0)

        executor.mark_rate_limited("http://a")
        assert executor.health_status()[0]["cooldown_remaining"] == pytest.approx(5.0)

    def test_expired_cooldown_resets_count(self, clock):
        executor = make_executor({"http://a": FakeRpc("http://a")}, clock)
        executor.mark_rate_limited("http://a")
        clock.now += 2.0
        executor.mark_rate_limited("http://a")
        assert executor.health_status()[0]["fail_count"] == 1

    def test_requires_endpoints(self):
        with pytest.raises(ValueError):
            RateLimitedExecutor([])
