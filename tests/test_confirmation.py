"""Tests for transaction confirmation (services/rpc/confirmation.py).

Covers:
- Polling until the commitment is reached, then serving from the cache
- "finalized" accepted when "confirmed" is requested
- Deadline returns pending
- On-chain errors raise TransactionFailedError
- Transient poll failures back off and continue
- Push channel success, error, and fallback to polling
- Confirmed set TTL and sharing between trackers
"""

from __future__ import annotations

import asyncio

import pytest

from services.rpc.confirmation import ConfirmationTracker, ConfirmedSignatureSet
from services.rpc.errors import TransactionFailedError, TransientNetworkError
from services.rpc.transport import SignatureStatus

SIG = "5" * 88


def tracker_for(executor, clock, **kwargs) -> ConfirmationTracker:
    kwargs.setdefault("poll_interval", 3.0)
    kwargs.setdefault("timeout", 60.0)
    return ConfirmationTracker(executor, clock=clock, sleep=clock.sleep, **kwargs)


class FakeSubscriber:
    def __init__(self, result=None, error: Exception = None, hang: bool = False):
        self.result = result
        self.error = error
        self.hang = hang
        self.calls = []

    async def wait_for_signature(self, signature, commitment):
        self.calls.append((signature, commitment))
        if self.hang:
            await asyncio.Event().wait()
        if self.error:
            raise self.error
        return self.result


# ── Polling ──────────────────────────────────────────────────────────────


class TestPolling:
    @pytest.mark.asyncio
    async def test_polls_until_confirmed_then_cached(self, rpc, executor, clock):
        rpc.statuses = [
            None,
            SignatureStatus("processed", None),
            SignatureStatus("confirmed", None, slot=10),
        ]
        tracker = tracker_for(executor, clock)

        result = await tracker.confirm(SIG)
        assert result.confirmed and result.source == "poll"
        assert rpc.count("getSignatureStatuses") == 3
        assert clock.sleeps == [3.0, 3.0]

        again = await tracker.confirm(SIG)
        assert again.source == "cache"
        assert rpc.count("getSignatureStatuses") == 3
        assert tracker.is_confirmed(SIG)

    @pytest.mark.asyncio
    async def test_finalized_counts_as_confirmed(self, rpc, executor, clock):
        rpc.statuses = [SignatureStatus("finalized", None)]
        result = await tracker_for(executor, clock).confirm(SIG)
        assert result.status == "confirmed"

    @pytest.mark.asyncio
    async def test_finalized_commitment_rejects_confirmed(self, rpc, executor, clock):
        rpc.statuses = [SignatureStatus("confirmed", None)]
        tracker = tracker_for(executor, clock, commitment="finalized", timeout=6.0)
        result = await tracker.confirm(SIG)
        assert result.status == "pending"

    @pytest.mark.asyncio
    async def test_timeout_is_pending(self, rpc, executor, clock):
        rpc.statuses = [None]
        start = clock.now
        result = await tracker_for(executor, clock, timeout=10.0).confirm(SIG)
        assert result.status == "pending"
        assert result.source == "timeout"
        assert clock.now - start == pytest.approx(10.0)
        assert rpc.count("getSignatureStatuses") == 4

    @pytest.mark.asyncio
    async def test_onchain_error_raises(self, rpc, executor, clock):
        rpc.statuses = [SignatureStatus("confirmed", {"InstructionError": [0, {"Custom": 6001}]})]
        with pytest.raises(TransactionFailedError) as exc:
            await tracker_for(executor, clock).confirm(SIG)
        assert exc.value.signature == SIG

    @pytest.mark.asyncio
    async def test_transient_failure_backs_off(self, rpc, executor, clock):
        rpc.failures["getSignatureStatuses"] = [TransientNetworkError("reset")] * 2
        rpc.statuses = [SignatureStatus("confirmed", None)]

        result = await tracker_for(executor, clock).confirm(SIG)

        assert result.confirmed
        # executor retry (0.5) then the tracker's transient backoff (poll interval)
        assert clock.sleeps == [0.5, 3.0]


# ── Push ─────────────────────────────────────────────────────────────────


class TestPush:
    @pytest.mark.asyncio
    async def test_push_success_skips_polling(self, rpc, executor, clock):
        subscriber = FakeSubscriber(result=None)
        result = await tracker_for(executor, clock, subscriber=subscriber).confirm(SIG)
        assert result.source == "push"
        assert subscriber.calls == [(SIG, "confirmed")]
        assert rpc.calls == []

    @pytest.mark.asyncio
    async def test_push_error_raises(self, executor, clock):
        subscriber = FakeSubscriber(result={"InstructionError": [0, "Custom"]})
        with pytest.raises(TransactionFailedError):
            await tracker_for(executor, clock, subscriber=subscriber).confirm(SIG)

    @pytest.mark.asyncio
    async def test_push_unavailable_falls_back(self, rpc, executor, clock):
        rpc.statuses = [SignatureStatus("confirmed", None)]
        subscriber = FakeSubscriber(error=ConnectionError("ws closed"))
        result = await tracker_for(executor, clock, subscriber=subscriber).confirm(SIG)
        assert result.source == "poll"

    @pytest.mark.asyncio
    async def test_push_timeout_falls_back(self, rpc, executor, clock):
        rpc.statuses = [SignatureStatus("confirmed", None)]
        subscriber = FakeSubscriber(hang=True)
        tracker = tracker_for(executor, clock, subscriber=subscriber, push_timeout=0.01)
        result = await tracker.confirm(SIG)
        assert result.source == "poll"


# ── Confirmed set ────────────────────────────────────────────────────────


class TestConfirmedSet:
    def test_ttl(self, clock):
        confirmed = ConfirmedSignatureSet(ttl=300, clock=clock)
        confirmed.add(SIG)
        clock.now += 299
        assert SIG in confirmed
        clock.now += 1
        assert SIG not in confirmed

    def test_expired_entries_swept_on_add(self, clock):
        confirmed = ConfirmedSignatureSet(ttl=10, clock=clock)
        confirmed.add("a")
        clock.now += 11
        confirmed.add("b")
        assert len(confirmed) == 1

    def test_empty_set_is_shared_between_trackers(self, executor, clock):
        shared = ConfirmedSignatureSet(clock=clock)
        first = tracker_for(executor, clock, confirmed=shared)
        second = tracker_for(executor, clock, confirmed=shared)
        assert first.confirmed is shared
        assert second.confirmed is shared

        first.confirmed.add(SIG)
        assert SIG in second.confirmed
