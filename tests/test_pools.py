"""Tests for the pool registry (services/settlement/pools.py)."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from services.settlement.errors import UnknownPool
from services.settlement.pools import PoolRegistry
from tests.conftest import make_pool

EXAMPLE_CONFIG = Path(__file__).resolve().parent.parent / "config" / "pools.example.json"


def test_loads_example_config():
    registry = PoolRegistry.from_file(EXAMPLE_CONFIG)
    assert registry.ids() == ["sol-0.1"]
    pool = registry.get("sol-0.1")
    assert pool.denomination_lamports == 100_000_000
    assert pool.fee_for() == 500_000
    assert pool.fee_for(10) == 100_000
    # requested fees above the pool maximum are clamped
    assert pool.fee_for(10_000) == 500_000


def test_bare_list_format(tmp_path):
    path = tmp_path / "pools.json"
    path.write_text(json.dumps([make_pool().model_dump()]))
    assert len(PoolRegistry.from_file(path)) == 1


def test_missing_file_gives_empty_registry(tmp_path):
    registry = PoolRegistry.from_file(tmp_path / "absent.json")
    assert len(registry) == 0
    assert "sol-0.1" not in registry


def test_unknown_pool():
    with pytest.raises(UnknownPool):
        PoolRegistry([make_pool()]).get("sol-100")


def test_duplicate_ids():
    with pytest.raises(ValueError):
        PoolRegistry([make_pool(), make_pool()])


def test_shard_for_leaf():
    pool = make_pool()
    assert pool.shard_index_for_leaf(0) == 0
    assert pool.shard_index_for_leaf(pool.shard_capacity) == 1
    assert pool.shard_index_for_leaf(pool.ring_capacity) == 0
