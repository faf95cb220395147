"""
Pool registry: PoolConfig objects loaded once from a JSON file.

File format:
    {"pools": [{"pool_id": "sol-0.1", "program_id": "...", ...}, ...]}
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Union

from services.api.logging_config import get_logger
from services.settlement.errors import UnknownPool
from services.settlement.types import PoolConfig

logger = get_logger("pools")


class PoolRegistry:
    def __init__(self, pools: Iterable[PoolConfig] = ()):
        self._pools: Dict[str, PoolConfig] = {}
        for pool in pools:
            if pool.pool_id in self._pools:
                raise ValueError(f"duplicate pool id: {pool.pool_id}")
            self._pools[pool.pool_id] = pool

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "PoolRegistry":
        path = Path(path)
        if not path.exists():
            logger.warning(f"Pool config not found at {path}; registry is empty")
            return cls()
        raw = json.loads(path.read_text())
        entries = raw.get("pools", raw) if isinstance(raw, dict) else raw
        registry = cls(PoolConfig.model_validate(entry) for entry in entries)
        logger.info(f"Loaded {len(registry)} pool(s) from {path}")
        return registry

    def get(self, pool_id: str) -> PoolConfig:
        try:
            return self._pools[pool_id]
        except KeyError:
            raise UnknownPool(pool_id) from None

    def ids(self) -> List[str]:
        return list(self._pools)

    def __contains__(self, pool_id: str) -> bool:
        return pool_id in self._pools

    def __iter__(self) -> Iterator[PoolConfig]:
        return iter(self._pools.values())

    def __len__(self) -> int:
        return len(self._pools)
