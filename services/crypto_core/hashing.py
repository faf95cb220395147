"""
Poseidon hashing collaborator and note secret generation.

Poseidon itself is computed by circomlibjs in a node helper
(scripts/poseidon.js) so the values match the circuit bit for bit. Anything
that only needs "a hash function over the scalar field" depends on the
Hasher protocol instead, which keeps tests free of node.
"""
from __future__ import annotations

import secrets
from pathlib import Path
from typing import List, Protocol, Sequence

from services.api.logging_config import get_logger
from services.api.subprocess_retry import SubprocessRetryError, run_json_script_with_retry
from services.crypto_core.field_codec import SCALAR_FIELD_MODULUS

logger = get_logger("crypto.hashing")


class HasherError(RuntimeError):
    pass


class Hasher(Protocol):
    async def hash(self, inputs: Sequence[int]) -> int:
        """Poseidon over 1 or 2 scalar field elements."""

    async def hash_many(self, batch: Sequence[Sequence[int]]) -> List[int]:
        """Several Poseidon invocations in one call."""


class NodePoseidonHasher:
    """circomlibjs Poseidon through `node scripts/poseidon.js`."""

    def __init__(self, scripts_dir: Path, node_bin: str = "node", timeout: float = 30):
        self.script = Path(scripts_dir) / "poseidon.js"
        self.node_bin = node_bin
        self.timeout = timeout

    async def hash_many(self, batch: Sequence[Sequence[int]]) -> List[int]:
        payload = {"inputs": [[str(int(x)) for x in row] for row in batch]}
        try:
            out = await run_json_script_with_retry(
                [self.node_bin, str(self.script)],
                payload,
                timeout=self.timeout,
                cwd=self.script.parent,
                description="Poseidon hash",
            )
        except SubprocessRetryError as e:
            raise HasherError(str(e)) from e
        hashes = out.get("hashes")
        if not isinstance(hashes, list) or len(hashes) != len(batch):
            raise HasherError(f"poseidon helper returned {out!r}")
        return [int(h) for h in hashes]

    async def hash(self, inputs: Sequence[int]) -> int:
        (result,) = await self.hash_many([inputs])
        return result


def random_field_element() -> int:
    """Uniform-ish scalar field element from 32 random bytes."""
    return int.from_bytes(secrets.token_bytes(32), "big") % SCALAR_FIELD_MODULUS
