"""
Witness construction for the withdraw circuit.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Union

from services.api.logging_config import get_logger
from services.crypto_core.field_codec import SCALAR_FIELD_MODULUS, field_to_hex, pack_public_inputs, split_address
from services.crypto_core.hashing import Hasher
from services.crypto_core.layouts import TREE_HEIGHT
from services.settlement.errors import CommitmentMismatch
from services.settlement.types import MerklePath, Note

logger = get_logger("witness")

Address = Union[bytes, str]

# fee receiver used when no fee is charged (the all-zero default account)
NO_FEE_RECEIVER = bytes(32)


def path_indices_for(leaf_index: int, height: int = TREE_HEIGHT) -> List[int]:
    """Bits of leaf_index, least significant first."""
    if leaf_index < 0 or leaf_index >= (1 << height):
        raise ValueError(f"leaf index {leaf_index} does not fit a tree of height {height}")
    return [(leaf_index >> level) & 1 for level in range(height)]


@dataclass(frozen=True)
class WithdrawWitness:
    nullifier: int
    secret: int
    path_elements: List[int]
    path_indices: List[int]
    root: int
    nullifier_hash: int
    recipient_high: int
    recipient_low: int
    fee_receiver_high: int
    fee_receiver_low: int
    fee: int
    refund: int = 0

    def to_prover_inputs(self) -> Dict[str, Union[str, List[str], List[int]]]:
        return {
            "nullifier": str(self.nullifier),
            "secret": str(self.secret),
            "pathElements": [str(e) for e in self.path_elements],
            "pathIndices": list(self.path_indices),
            "root": str(self.root),
            "nullifierHash": str(self.nullifier_hash),
            "recipientHigh": str(self.recipient_high),
            "recipientLow": str(self.recipient_low),
            "protocolHigh": str(self.fee_receiver_high),
            "protocolLow": str(self.fee_receiver_low),
            "fee": str(self.fee),
            "refund": str(self.refund),
        }

    def public_inputs(self) -> bytes:
        """The 256-byte public input block the verifier checks the proof against."""
        return pack_public_inputs([
            self.root, self.nullifier_hash,
            self.recipient_high, self.recipient_low,
            self.fee_receiver_high, self.fee_receiver_low,
            self.fee, self.refund,
        ])


class WitnessBuilder:
    def __init__(self, hasher: Hasher, tree_height: int = TREE_HEIGHT):
        self.hasher = hasher
        self.tree_height = tree_height

    async def verify_note(self, note: Note) -> int:
        """Recompute commitment and nullifier hash; returns the nullifier hash.

        Raises:
            CommitmentMismatch: the stored note is corrupt
        """
        commitment, nullifier_hash = await self.hasher.hash_many(
            [[note.nullifier_int, note.secret_int], [note.nullifier_int]]
        )
        if commitment != note.commitment_int:
            raise CommitmentMismatch("commitment", note.commitment, field_to_hex(commitment))
        if nullifier_hash != int(note.nullifier_hash, 16):
            raise CommitmentMismatch("nullifier_hash", note.nullifier_hash, field_to_hex(nullifier_hash))
        return nullifier_hash

    async def build(
        self,
        note: Note,
        path: MerklePath,
        recipient: Address,
        fee_receiver: Optional[Address],
        fee: int,
        refund: int = 0,
    ) -> WithdrawWitness:
        if len(path.siblings) != self.tree_height:
            raise ValueError(f"expected {self.tree_height} siblings, got {len(path.siblings)}")
        if fee < 0:
            raise ValueError("fee must be non-negative")

        nullifier_hash = await self.verify_note(note)

        recipient_high, recipient_low = split_address(recipient)
        if fee == 0 or fee_receiver is None:
            fee_receiver = NO_FEE_RECEIVER
        fee_high, fee_low = split_address(fee_receiver)

        indices = path_indices_for(path.leaf_index, self.tree_height)
        if path.path_indices and list(path.path_indices) != indices:
            logger.warning(
                f"Path indices from recovery disagree with leaf index {path.leaf_index}; using leaf index bits"
            )

        return WithdrawWitness(
            nullifier=note.nullifier_int,
            secret=note.secret_int,
            path_elements=[s % SCALAR_FIELD_MODULUS for s in path.siblings],
            path_indices=indices,
            root=path.root,
            nullifier_hash=nullifier_hash,
            recipient_high=recipient_high,
            recipient_low=recipient_low,
            fee_receiver_high=fee_high,
            fee_receiver_low=fee_low,
            fee=fee,
            refund=refund,
        )
