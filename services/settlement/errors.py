"""
Settlement-level failures. Network failures live in services.rpc.errors.
"""
from typing import Optional


class SettlementError(Exception):
    pass


class CommitmentMismatch(SettlementError):
    """Stored note fields do not hash to the stored commitment. Never retried."""

    def __init__(self, field: str, expected: str, actual: str):
        super().__init__(f"note {field} mismatch: stored {expected}, recomputed {actual}")
        self.field = field
        self.expected = expected
        self.actual = actual


class DuplicateNullifierError(SettlementError):
    """The nullifier is already recorded on-chain: the note was withdrawn before."""

    def __init__(self, nullifier_hash: str, signature: Optional[str] = None):
        super().__init__(f"nullifier {nullifier_hash[:18]}... already used")
        self.nullifier_hash = nullifier_hash
        self.signature = signature


class RecoveryError(SettlementError):
    """The recovery service could not produce a fresh Merkle path."""


class RelayError(SettlementError):
    """The relay rejected or failed to submit a withdrawal."""

    def __init__(self, message: str, code: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.status_code = status_code


class ProverError(SettlementError):
    pass


class DepositEventUnavailable(SettlementError):
    """The deposit landed but its event could not be read back."""

    def __init__(self, signature: str, reason: str):
        super().__init__(
            f"deposit {signature} succeeded on-chain but its event could not be parsed: {reason}. "
            "Keep the note; it can be completed later by re-parsing this signature."
        )
        self.signature = signature


class UnknownPool(SettlementError):
    def __init__(self, pool_id: str):
        super().__init__(f"unknown pool: {pool_id}")
        self.pool_id = pool_id
