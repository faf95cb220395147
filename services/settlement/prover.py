"""
Proving-engine collaborator. The engine is opaque: inputs in, Groth16 proof
and public signals out.
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Protocol, Sequence

from services.api.logging_config import get_logger
from services.api.subprocess_retry import DEFAULT_POLICY, SubprocessRetryError, run_json_script_with_retry
from services.crypto_core.field_codec import serialize_proof
from services.rpc.retry import Backoff, RetryPolicy
from services.settlement.errors import ProverError

logger = get_logger("prover")


@dataclass(frozen=True)
class Groth16Proof:
    pi_a: Sequence[str]
    pi_b: Sequence[Sequence[str]]
    pi_c: Sequence[str]

    @classmethod
    def from_snarkjs(cls, proof: Dict[str, Any]) -> "Groth16Proof":
        try:
            return cls(pi_a=proof["pi_a"], pi_b=proof["pi_b"], pi_c=proof["pi_c"])
        except KeyError as e:
            raise ProverError(f"proof is missing {e}") from e

    def to_bytes(self) -> bytes:
        return serialize_proof(self.pi_a, self.pi_b, self.pi_c)


@dataclass(frozen=True)
class ProofResult:
    proof: Groth16Proof
    public_signals: List[str]


class ProvingEngine(Protocol):
    async def prove(self, inputs: Dict[str, Any]) -> ProofResult:
        ...


class SnarkjsProver:
    """groth16.fullProve through `node scripts/prove.js <wasm> <zkey>`."""

    def __init__(self, wasm_path: str, zkey_path: str, scripts_dir: Path,
                 node_bin: str = "node", timeout: float = 180):
        self.wasm_path = wasm_path
        self.zkey_path = zkey_path
        self.script = Path(scripts_dir) / "prove.js"
        self.node_bin = node_bin
        self.timeout = timeout
        # proving is expensive: at most one retry
        self.policy = RetryPolicy(
            max_attempts=2,
            backoff=Backoff(base=1.0),
            rate_limit_backoff=None,
            classifier=DEFAULT_POLICY.classifier,
        )

    async def prove(self, inputs: Dict[str, Any]) -> ProofResult:
        try:
            out = await run_json_script_with_retry(
                [self.node_bin, str(self.script), self.wasm_path, self.zkey_path],
                inputs,
                timeout=self.timeout,
                cwd=self.script.parent,
                description="Groth16 proof",
                policy=self.policy,
            )
        except SubprocessRetryError as e:
            raise ProverError(str(e)) from e
        if "proof" not in out:
            raise ProverError(f"prover output has no proof: {list(out)}")
        return ProofResult(
            proof=Groth16Proof.from_snarkjs(out["proof"]),
            public_signals=[str(s) for s in out.get("publicSignals", [])],
        )
