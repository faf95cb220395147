#!/usr/bin/env python3
# clients/cli/settlement_cli.py
# Command-line client for the settlement API.

from __future__ import annotations

import argparse
import json
import os
import sys
from typing import Any, Dict, List, Optional, Tuple

import requests

API_URL = os.getenv("API_URL", "http://127.0.0.1:8000")

# withdrawals wait on proof generation and confirmation
LONG_TIMEOUT = 600
SHORT_TIMEOUT = 20


# ======== Color accents (no deps) ========
class C:
    OK = "\033[92m"
    WARN = "\033[93m"
    ERR = "\033[91m"
    DIM = "\033[2m"
    BOLD = "\033[1m"
    RST = "\033[0m"


STATUS_COLORS = {
    "ready": C.OK, "success": C.OK, "confirmed": C.OK, "duplicate": C.OK, "already_spent": C.OK,
    "expiring": C.WARN, "pending": C.WARN, "cancelled": C.WARN,
    "expired": C.ERR, "failed": C.ERR, "error": C.ERR, "spent": C.DIM,
}


def _short(value: Optional[str], head: int = 10, tail: int = 6) -> str:
    if not value or len(value) <= head + tail + 1:
        return value or "-"
    return f"{value[:head]}…{value[-tail:]}"


def _colored(status: str) -> str:
    return f"{STATUS_COLORS.get(status, '')}{status}{C.RST}"


# ======== HTTP ========
def api_get(path: str, **params) -> Tuple[int, Dict[str, Any]]:
    try:
        r = requests.get(f"{API_URL}{path}", params={k: v for k, v in params.items() if v is not None},
                         timeout=SHORT_TIMEOUT)
    except requests.RequestException as e:
        return 0, {"detail": str(e)}
    return r.status_code, _body(r)


def api_post(path: str, payload: Dict[str, Any], timeout: float = SHORT_TIMEOUT) -> Tuple[int, Dict[str, Any]]:
    try:
        r = requests.post(f"{API_URL}{path}", json=payload, timeout=timeout)
    except requests.RequestException as e:
        return 0, {"detail": str(e)}
    return r.status_code, _body(r)


def _body(r: requests.Response) -> Dict[str, Any]:
    try:
        return r.json()
    except ValueError:
        return {"detail": r.text}


def _check(code: int, body: Dict[str, Any]) -> Dict[str, Any]:
    if code != 200:
        where = "unreachable" if code == 0 else f"HTTP {code}"
        print(f"{C.ERR}API {where}: {body.get('detail', body)}{C.RST}", file=sys.stderr)
        sys.exit(1)
    return body


# ======== Commands ========
def cmd_health(args) -> None:
    body = _check(*api_get("/health"))
    if args.json:
        print(json.dumps(body, indent=2))
        return
    print(f"{C.BOLD}Status:{C.RST} {body['status']}  pools={','.join(body.get('pools', [])) or '-'}")
    for name, check in body.get("checks", {}).items():
        if isinstance(check, dict) and "status" in check:
            print(f"  {name:<10} {check['status']}")
    for ep in body.get("checks", {}).get("rpc", {}).get("endpoints", []):
        print(f"    {C.DIM}{ep['url']} {ep['status']} fails={ep['fail_count']}{C.RST}")


def cmd_pools(args) -> None:
    body = _check(*api_get("/pools"))
    for p in body["pools"]:
        sol = p["denomination_lamports"] / 1e9
        print(f"{p['pool_id']:<16} {sol:>10.4f} SOL  shards={p['shard_count']}  "
              f"ring={p['ring_capacity']}  fee<={p['max_fee_bps']}bps  {C.DIM}{p['program_id']}{C.RST}")


def cmd_notes(args) -> None:
    body = _check(*api_get("/notes", pool_id=args.pool, status=args.status))
    if not body["notes"]:
        print("No notes.")
        return
    for n in body["notes"]:
        print(f"{_short(n['commitment'])}  {n['pool_id']:<14} leaf={n['leaf_index']:<6} "
              f"{_colored(n['status'])}")


def cmd_status(args) -> None:
    body = _check(*api_post("/notes/status", {"commitments": args.commitments}, timeout=60))
    for row in body["notes"]:
        health = row.get("health")
        extra = ""
        if health:
            extra = f"{health['health_percent']:.2f}%  ({health['deposits_remaining']} deposits left)"
        elif row.get("error"):
            extra = f"{C.DIM}{row['error']}{C.RST}"
        print(f"{_short(row['commitment'])}  {_colored(row['status']):<20} {extra}")


def _print_withdraw(row: Dict[str, Any]) -> None:
    line = f"{_short(row['commitment'])}  {_colored(row['status'])}"
    if row.get("signature"):
        line += f"  tx={_short(row['signature'], 16, 4)}"
    if row.get("recovered_path"):
        line += f"  {C.DIM}(path recovered){C.RST}"
    if row.get("error"):
        line += f"  {C.ERR}{row.get('stage')}: {row['error']}{C.RST}"
    print(line)


def cmd_withdraw(args) -> None:
    payload: Dict[str, Any] = {"recipient": args.recipient, "fee_bps": args.fee_bps}
    if len(args.commitments) == 1:
        payload["commitment"] = args.commitments[0]
        body = _check(*api_post("/withdraw", payload, timeout=LONG_TIMEOUT))
        _print_withdraw(body)
        return
    payload["commitments"] = args.commitments
    body = _check(*api_post("/withdraw/batch", payload, timeout=LONG_TIMEOUT * len(args.commitments)))
    for row in body["results"]:
        _print_withdraw(row)
    print(f"\n{C.BOLD}{body['succeeded']} succeeded, {body['failed']} failed, {body['pending']} pending{C.RST}")


def cmd_deposit(args) -> None:
    body = _check(*api_post("/deposit", {"pool_id": args.pool}, timeout=LONG_TIMEOUT))
    note = body["note"]
    print(f"{C.OK}Deposited{C.RST} into {note['pool_id']}: leaf {note['leaf_index']}")
    print(f"  commitment {note['commitment']}")
    print(f"  tx         {note['deposit_tx']}")


def cmd_resume(args) -> None:
    body = _check(*api_post("/deposit/resume", {"commitment": args.commitment}, timeout=LONG_TIMEOUT))
    print(f"{C.OK}Finalized{C.RST} {_short(body['note']['commitment'])} at leaf {body['note']['leaf_index']}")


def cmd_check_root(args) -> None:
    body = _check(*api_post("/roots/check", {"pool_id": args.pool, "root": args.root}, timeout=60))
    where = body["source"] + (f" (shard {body['shard_index']})" if body.get("shard_index") is not None else "")
    print(f"{C.OK + 'accepted' if body['found'] else C.ERR + 'not accepted'}{C.RST}: {where}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Shielded pool settlement client")
    parser.add_argument("--api", default=None, help=f"API base URL (default: $API_URL or {API_URL})")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("health", help="Service and dependency health")
    p.add_argument("--json", action="store_true")
    p.set_defaults(func=cmd_health)

    sub.add_parser("pools", help="Configured pools").set_defaults(func=cmd_pools)

    p = sub.add_parser("notes", help="Stored notes")
    p.add_argument("--pool")
    p.add_argument("--status", choices=["pending", "confirmed", "spent", "expired"])
    p.set_defaults(func=cmd_notes)

    p = sub.add_parser("status", help="Health and spent status of notes (all when none given)")
    p.add_argument("commitments", nargs="*")
    p.set_defaults(func=cmd_status)

    p = sub.add_parser("withdraw", help="Withdraw one or more notes")
    p.add_argument("recipient")
    p.add_argument("commitments", nargs="+")
    p.add_argument("--fee-bps", type=int, default=None)
    p.set_defaults(func=cmd_withdraw)

    p = sub.add_parser("deposit", help="Deposit one denomination")
    p.add_argument("pool")
    p.set_defaults(func=cmd_deposit)

    p = sub.add_parser("resume", help="Finalize a submitted deposit whose event was not parsed")
    p.add_argument("commitment")
    p.set_defaults(func=cmd_resume)

    p = sub.add_parser("check-root", help="Is a Merkle root still accepted on-chain")
    p.add_argument("pool")
    p.add_argument("root")
    p.set_defaults(func=cmd_check_root)

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    global API_URL
    args = build_parser().parse_args(argv)
    if args.api:
        API_URL = args.api.rstrip("/")
    args.func(args)


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(130)
