"""
Runtime configuration for the settlement service.

Everything comes from environment variables so the same code runs against
localnet, devnet and mainnet-beta without edits.
"""
from __future__ import annotations

import os
import pathlib
from dataclasses import dataclass, field
from typing import Dict, List, Optional

REPO_ROOT = pathlib.Path(__file__).resolve().parents[2]

# Default RPC endpoints per cluster, in priority order
NETWORK_RPC_ENDPOINTS: Dict[str, List[str]] = {
    "devnet": ["https://api.devnet.solana.com"],
    "testnet": ["https://api.testnet.solana.com"],
    "mainnet-beta": ["https://api.mainnet-beta.solana.com"],
    "localnet": ["http://localhost:8899"],
}

DEFAULT_RELAY_URL = "http://localhost:8789"
DEFAULT_RECOVERY_URL = "http://localhost:8788"


def _env_list(name: str) -> List[str]:
    raw = os.getenv(name, "")
    return [item.strip() for item in raw.split(",") if item.strip()]


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw not in (None, "") else default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw not in (None, "") else default


@dataclass
class Settings:
    env: str = "development"
    log_level: str = "INFO"
    cluster: str = "localnet"
    rpc_urls: List[str] = field(default_factory=lambda: list(NETWORK_RPC_ENDPOINTS["localnet"]))
    pools_config_path: pathlib.Path = REPO_ROOT / "config" / "pools.json"
    recovery_url: Optional[str] = DEFAULT_RECOVERY_URL
    relay_url: Optional[str] = None
    database_url: str = f"sqlite+aiosqlite:///{REPO_ROOT / 'data' / 'notes.db'}"
    note_encryption_key: Optional[str] = None
    backup_dir: pathlib.Path = REPO_ROOT / "data" / "backups"

    # Prover / hasher subprocesses
    node_bin: str = "node"
    scripts_dir: pathlib.Path = REPO_ROOT / "scripts"
    prover_wasm: Optional[str] = None
    prover_zkey: Optional[str] = None

    # Direct submission signer (keypair JSON file, solana-keygen format)
    fee_payer_keypair: Optional[str] = None

    # RPC gates
    rpc_max_rps: float = 2.0
    rpc_burst: int = 2
    rpc_max_concurrent: int = 3
    rpc_cooldown_sec: float = 2.0

    # Confirmation / batching
    confirm_concurrency: int = 1
    confirm_timeout_sec: float = 60.0
    confirm_poll_sec: float = 3.0
    proof_delay_sec: float = 1.5

    @classmethod
    def from_env(cls) -> "Settings":
        cluster = os.getenv("SOLANA_CLUSTER", "localnet")
        rpc_urls = _env_list("SOLANA_RPC_URLS") or list(
            NETWORK_RPC_ENDPOINTS.get(cluster, NETWORK_RPC_ENDPOINTS["localnet"])
        )
        default_relay = DEFAULT_RELAY_URL if cluster == "localnet" else None
        return cls(
            env=os.getenv("SETTLEMENT_ENV", "development"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            cluster=cluster,
            rpc_urls=rpc_urls,
            pools_config_path=pathlib.Path(
                os.getenv("POOLS_CONFIG_PATH", str(REPO_ROOT / "config" / "pools.json"))
            ),
            recovery_url=os.getenv("RECOVERY_URL", DEFAULT_RECOVERY_URL) or None,
            relay_url=os.getenv("RELAY_URL", default_relay or "") or None,
            database_url=os.getenv(
                "DATABASE_URL", f"sqlite+aiosqlite:///{REPO_ROOT / 'data' / 'notes.db'}"
            ),
            note_encryption_key=os.getenv("NOTE_ENCRYPTION_KEY") or None,
            backup_dir=pathlib.Path(os.getenv("BACKUP_DIR", str(REPO_ROOT / "data" / "backups"))),
            node_bin=os.getenv("NODE_BIN", "node"),
            scripts_dir=pathlib.Path(os.getenv("SCRIPTS_DIR", str(REPO_ROOT / "scripts"))),
            prover_wasm=os.getenv("PROVER_WASM") or None,
            prover_zkey=os.getenv("PROVER_ZKEY") or None,
            fee_payer_keypair=os.getenv("FEE_PAYER_KEYPAIR") or None,
            rpc_max_rps=_env_float("RPC_MAX_RPS", 2.0),
            rpc_burst=_env_int("RPC_BURST", 2),
            rpc_max_concurrent=_env_int("RPC_MAX_CONCURRENT", 3),
            rpc_cooldown_sec=_env_float("RPC_COOLDOWN_SEC", 2.0),
            confirm_concurrency=_env_int("CONFIRM_CONCURRENCY", 1),
            confirm_timeout_sec=_env_float("CONFIRM_TIMEOUT_SEC", 60.0),
            confirm_poll_sec=_env_float("CONFIRM_POLL_SEC", 3.0),
            proof_delay_sec=_env_float("PROOF_DELAY_SEC", 1.5),
        )

    @property
    def sqlite_path(self) -> Optional[pathlib.Path]:
        """Filesystem path of the note database when it is SQLite, else None."""
        for prefix in ("sqlite+aiosqlite:///", "sqlite:///"):
            if self.database_url.startswith(prefix):
                return pathlib.Path(self.database_url[len(prefix):])
        return None
