"""
Withdraw / deposit instruction assembly for the pool program.

Account order and data layout are fixed by the program; see
services.crypto_core.layouts for the byte formats.
"""
from __future__ import annotations

import base64
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID

from services.api.logging_config import get_logger
from services.crypto_core.layouts import DepositInstructionData, WithdrawInstructionData
from services.settlement.types import PoolConfig, RootAcceptanceResult, RootSource

logger = get_logger("instruction")

NULLIFIER_SEED = b"nullifier"

WITHDRAW_COMPUTE_UNITS = 400_000
WITHDRAW_PRIORITY_MICROLAMPORTS = 5_000
DEPOSIT_COMPUTE_UNITS = 100_000
DEPOSIT_PRIORITY_MICROLAMPORTS = 1_000


def _pk(value) -> Pubkey:
    if isinstance(value, Pubkey):
        return value
    if isinstance(value, (bytes, bytearray)):
        return Pubkey.from_bytes(bytes(value))
    return Pubkey.from_string(value)


def derive_nullifier_address(pool: PoolConfig, nullifier_hash: bytes) -> Pubkey:
    address, _bump = Pubkey.find_program_address(
        [NULLIFIER_SEED, bytes(_pk(pool.state_address)), nullifier_hash],
        _pk(pool.program_id),
    )
    return address


def compute_budget_instructions(units: int, micro_lamports: int) -> List[Instruction]:
    return [set_compute_unit_limit(units), set_compute_unit_price(micro_lamports)]


@dataclass(frozen=True)
class BuiltInstruction:
    instruction: Instruction
    compute_units: int
    priority_micro_lamports: int

    @property
    def data(self) -> bytes:
        return bytes(self.instruction.data)

    @property
    def accounts(self) -> List[AccountMeta]:
        return list(self.instruction.accounts)

    def with_compute_budget(self) -> List[Instruction]:
        return compute_budget_instructions(self.compute_units, self.priority_micro_lamports) + [self.instruction]

    def to_relay_format(self) -> Dict[str, Any]:
        return {
            "programId": str(self.instruction.program_id),
            "keys": [
                {"pubkey": str(m.pubkey), "isSigner": m.is_signer, "isWritable": m.is_writable}
                for m in self.instruction.accounts
            ],
            "data": base64.b64encode(self.data).decode(),
        }


class InstructionBuilder:
    def __init__(self, pool: PoolConfig):
        self.pool = pool

    def select_shard(self, acceptance: Optional[RootAcceptanceResult], leaf_index: int) -> Optional[int]:
        """
        Shard account to append after the fixed accounts.

        sharded_ring: the shard holding the root; state_history: none;
        recovered path: the shard the deposit's root was written to.
        """
        if acceptance is not None and acceptance.source is RootSource.SHARDED_RING:
            return acceptance.shard_index
        if acceptance is not None and acceptance.source is RootSource.STATE_HISTORY:
            return None
        if leaf_index < 0:
            return None
        return self.pool.shard_index_for_leaf(leaf_index)

    def build_withdraw(
        self,
        *,
        nullifier_hash: bytes,
        proof: bytes,
        root: bytes,
        recipient,
        fee_receiver,
        payer,
        fee: int,
        acceptance: Optional[RootAcceptanceResult],
        leaf_index: int,
        refund: int = 0,
    ) -> BuiltInstruction:
        data = WithdrawInstructionData(
            nullifier_hash=nullifier_hash, proof=proof, root=root, fee=fee, refund=refund
        ).encode()

        program_id = _pk(self.pool.program_id)
        accounts = [
            AccountMeta(_pk(self.pool.state_address), is_signer=False, is_writable=True),
            AccountMeta(_pk(self.pool.vk_address), is_signer=False, is_writable=False),
            AccountMeta(derive_nullifier_address(self.pool, nullifier_hash), is_signer=False, is_writable=True),
            AccountMeta(_pk(self.pool.vault_address), is_signer=False, is_writable=True),
            AccountMeta(_pk(recipient), is_signer=False, is_writable=True),
            AccountMeta(_pk(fee_receiver), is_signer=False, is_writable=True),
            AccountMeta(_pk(payer), is_signer=True, is_writable=True),
            AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
            # legacy root ring slot: the program id stands in for "absent"
            AccountMeta(program_id, is_signer=False, is_writable=False),
            AccountMeta(_pk(self.pool.metadata_address), is_signer=False, is_writable=False),
        ]

        shard_index = self.select_shard(acceptance, leaf_index)
        if shard_index is not None:
            if shard_index >= len(self.pool.shard_addresses):
                raise ValueError(
                    f"shard {shard_index} not configured for pool {self.pool.pool_id} "
                    f"({len(self.pool.shard_addresses)} shards)"
                )
            accounts.append(
                AccountMeta(_pk(self.pool.shard_addresses[shard_index]), is_signer=False, is_writable=False)
            )

        logger.debug(f"Withdraw instruction: {len(accounts)} accounts, shard={shard_index}, fee={fee}")
        return BuiltInstruction(
            Instruction(program_id, data, accounts),
            WITHDRAW_COMPUTE_UNITS,
            WITHDRAW_PRIORITY_MICROLAMPORTS,
        )

    def build_deposit(self, *, commitment: bytes, depositor, active_shard_index: int) -> BuiltInstruction:
        if not 0 <= active_shard_index < len(self.pool.shard_addresses):
            raise ValueError(f"active shard {active_shard_index} not configured for pool {self.pool.pool_id}")
        data = DepositInstructionData(commitment=commitment).encode()
        program_id = _pk(self.pool.program_id)
        root_ring = _pk(self.pool.root_ring_address) if self.pool.root_ring_address else program_id
        accounts = [
            AccountMeta(_pk(self.pool.state_address), is_signer=False, is_writable=True),
            AccountMeta(_pk(self.pool.vault_address), is_signer=False, is_writable=True),
            AccountMeta(_pk(depositor), is_signer=True, is_writable=True),
            AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
            # cooldown config and user cooldown are disabled in this pool version
            AccountMeta(program_id, is_signer=False, is_writable=False),
            AccountMeta(program_id, is_signer=False, is_writable=False),
            AccountMeta(root_ring, is_signer=False, is_writable=True),
            AccountMeta(_pk(self.pool.metadata_address), is_signer=False, is_writable=True),
            AccountMeta(_pk(self.pool.shard_addresses[active_shard_index]), is_signer=False, is_writable=True),
        ]
        return BuiltInstruction(
            Instruction(program_id, data, accounts),
            DEPOSIT_COMPUTE_UNITS,
            DEPOSIT_PRIORITY_MICROLAMPORTS,
        )
