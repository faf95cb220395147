"""Tests for the root acceptance check (services/settlement/root_acceptance.py).

Covers:
- Current root and history hits never read the shards
- Shard hits report the shard index; unallocated shards are skipped
- Roots given as bytes, 0x-hex or decimal strings
- Misses, malformed roots and network failures all report not_found
"""

from __future__ import annotations

import pytest

from services.rpc.errors import TransientNetworkError
from services.settlement.root_acceptance import RootAcceptanceOracle
from services.settlement.types import RootSource
from tests.conftest import account, make_executor, root_bytes, shard_account_data, state_account_data


@pytest.fixture
def chain(rpc, pool):
    """State with current root 1 and history [2]; shard 3 holds root 10."""
    rpc.accounts[pool.state_address] = account(state_account_data(root_bytes(1), [root_bytes(2)]))
    for i, addr in enumerate(pool.shard_addresses):
        entries = [(4, root_bytes(10), 77)] if i == 3 else [(0, root_bytes(20 + i), 1)]
        rpc.accounts[addr] = account(shard_account_data(i, entries))
    return rpc


class TestStateHistory:
    @pytest.mark.asyncio
    async def test_current_root(self, chain, executor, pool):
        result = await RootAcceptanceOracle(executor, pool).is_accepted_root(root_bytes(1))
        assert result.found and result.source is RootSource.STATE_HISTORY
        assert chain.count("getMultipleAccounts") == 0

    @pytest.mark.asyncio
    async def test_history_root_as_hex(self, chain, executor, pool):
        result = await RootAcceptanceOracle(executor, pool).is_accepted_root("0x" + root_bytes(2).hex())
        assert result.source is RootSource.STATE_HISTORY
        assert chain.count("getMultipleAccounts") == 0

    @pytest.mark.asyncio
    async def test_history_root_as_decimal(self, chain, executor, pool):
        oracle = RootAcceptanceOracle(executor, pool)
        decimal = str(int.from_bytes(root_bytes(2), "big"))
        assert (await oracle.is_accepted_root(decimal)).source is RootSource.STATE_HISTORY
        assert (await oracle.is_accepted_root("0x" + root_bytes(2).hex())).source is RootSource.STATE_HISTORY


class TestShards:
    @pytest.mark.asyncio
    async def test_found_in_shard(self, chain, executor, pool):
        result = await RootAcceptanceOracle(executor, pool).is_accepted_root(root_bytes(10))
        assert result.found
        assert result.source is RootSource.SHARDED_RING
        assert result.shard_index == 3
        # all shards in one batched read
        assert chain.count("getMultipleAccounts") == 1

    @pytest.mark.asyncio
    async def test_unallocated_shard_skipped(self, chain, executor, pool):
        chain.accounts[pool.shard_addresses[0]] = None
        result = await RootAcceptanceOracle(executor, pool).is_accepted_root(root_bytes(10))
        assert result.shard_index == 3

    @pytest.mark.asyncio
    async def test_not_found(self, chain, executor, pool):
        result = await RootAcceptanceOracle(executor, pool).is_accepted_root(root_bytes(99))
        assert not result.found
        assert result.source is RootSource.NOT_FOUND
        assert result.shard_index is None


class TestDegraded:
    @pytest.mark.asyncio
    async def test_wrong_length_makes_no_calls(self, chain, executor, pool):
        result = await RootAcceptanceOracle(executor, pool).is_accepted_root(b"\x01" * 31)
        assert result.source is RootSource.NOT_FOUND
        assert chain.calls == []

    @pytest.mark.asyncio
    async def test_unparseable_string_makes_no_calls(self, chain, executor, pool):
        result = await RootAcceptanceOracle(executor, pool).is_accepted_root("not-a-root")
        assert result.source is RootSource.NOT_FOUND
        assert chain.calls == []

    @pytest.mark.asyncio
    async def test_network_failure_is_not_found(self, chain, clock, pool):
        chain.failures["getAccountInfo"] = [TransientNetworkError("reset")] * 2
        executor = make_executor({chain.url: chain}, clock)
        result = await RootAcceptanceOracle(executor, pool).is_accepted_root(root_bytes(1))
        assert result.source is RootSource.NOT_FOUND

    @pytest.mark.asyncio
    async def test_missing_state_account_is_not_found(self, rpc, executor, pool):
        result = await RootAcceptanceOracle(executor, pool).is_accepted_root(root_bytes(1))
        assert result.source is RootSource.NOT_FOUND

    @pytest.mark.asyncio
    async def test_truncated_shard_is_not_found(self, chain, executor, pool):
        chain.accounts[pool.shard_addresses[1]] = account(b"\x00" * 64)
        result = await RootAcceptanceOracle(executor, pool).is_accepted_root(root_bytes(10))
        assert result.source is RootSource.NOT_FOUND
