"""Tests for note health and spent status (services/settlement/note_status.py)."""

from __future__ import annotations

import pytest

from services.settlement.instruction import derive_nullifier_address
from services.settlement.note_status import NoteStatusService, calculate_note_health
from services.settlement.types import NoteStatus
from tests.conftest import account, make_note, metadata_account_data, root_bytes


class TestHealth:
    def test_nearly_expired(self):
        health = calculate_note_health(5, 2560, 2560)
        assert health.deposits_remaining == 5
        assert health.health_percent == pytest.approx(0.1953125)
        assert health.status == "expiring"

    def test_expired(self):
        health = calculate_note_health(0, 2560, 2560)
        assert health.deposits_remaining == 0
        assert health.health_percent == 0
        assert health.status == "expired"

    def test_long_expired_clamps(self):
        health = calculate_note_health(0, 9000, 2560)
        assert health.deposits_remaining == 0
        assert health.health_percent == 0.0

    def test_ready(self):
        health = calculate_note_health(2000, 2100, 2560)
        assert health.deposits_remaining == 2460
        assert health.status == "ready"

    def test_threshold_is_exclusive(self):
        assert calculate_note_health(100, 1891, 2560).status == "ready"
        assert calculate_note_health(100, 1894, 2560).status == "expiring"

    def test_unknown_leaf_counts_as_latest(self):
        health = calculate_note_health(-1, 100, 2560)
        assert health.deposits_remaining == 2559
        assert health.status == "ready"


class TestService:
    @pytest.mark.asyncio
    async def test_leaf_count_and_active_shard(self, rpc, executor, registry, pool):
        rpc.accounts[pool.metadata_address] = account(metadata_account_data(2555, active_shard=3))
        service = NoteStatusService(executor, registry)
        assert await service.fetch_current_leaf_count(pool) == 2555
        assert await service.fetch_active_shard(pool) == 3

    @pytest.mark.asyncio
    async def test_missing_metadata(self, rpc, executor, registry, pool):
        with pytest.raises(LookupError):
            await NoteStatusService(executor, registry).fetch_current_leaf_count(pool)

    @pytest.mark.asyncio
    async def test_is_spent(self, rpc, executor, registry, pool):
        note = make_note(1, 2)
        service = NoteStatusService(executor, registry)
        assert not await service.is_spent(note)

        nullifier_account = str(derive_nullifier_address(pool, note.nullifier_hash_bytes))
        rpc.accounts[nullifier_account] = account(b"\x01")
        assert await service.is_spent(note)

    @pytest.mark.asyncio
    async def test_report(self, rpc, executor, registry, pool):
        fresh = make_note(1, 2, leaf_index=2500, root=root_bytes(1))
        old = make_note(3, 4, leaf_index=0, root=root_bytes(2))
        spent = make_note(5, 6, leaf_index=10, root=root_bytes(3))
        rpc.accounts[pool.metadata_address] = account(metadata_account_data(2555))
        rpc.accounts[str(derive_nullifier_address(pool, spent.nullifier_hash_bytes))] = account(b"\x01")

        reports = await NoteStatusService(executor, registry).report([fresh, old, spent])

        by_commitment = {r.commitment: r for r in reports}
        assert by_commitment[fresh.commitment].status == "ready"
        assert by_commitment[old.commitment].status == "expiring"
        assert by_commitment[old.commitment].health.deposits_remaining == 5
        assert by_commitment[spent.commitment].spent
        # one batched nullifier read, one metadata read for the pool
        assert rpc.count("getMultipleAccounts") == 1
        assert rpc.count("getAccountInfo") == 1

    @pytest.mark.asyncio
    async def test_report_marks_stored_spent(self, rpc, executor, registry, pool):
        note = make_note(1, 2, status=NoteStatus.SPENT)
        reports = await NoteStatusService(executor, registry).report([note])
        assert reports[0].status == "spent"

    @pytest.mark.asyncio
    async def test_report_unknown_pool_is_error_row(self, rpc, executor, registry, pool):
        good = make_note(1, 2, leaf_index=2500)
        stray = make_note(3, 4, pool_id="gone")
        rpc.accounts[pool.metadata_address] = account(metadata_account_data(2555))

        reports = await NoteStatusService(executor, registry).report([good, stray])

        assert reports[0].status == "ready"
        assert reports[1].status == "error"
        assert "gone" in reports[1].error
