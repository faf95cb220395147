"""Tests for the command-line client (clients/cli/settlement_cli.py)."""

from __future__ import annotations

from typing import Any, Dict, List

import pytest
import requests

from clients.cli import settlement_cli


class FakeResponse:
    def __init__(self, status_code: int, body: Any):
        self.status_code = status_code
        self._body = body
        self.text = str(body)

    def json(self):
        if self._body is None:
            raise ValueError("no json")
        return self._body


class FakeApi:
    def __init__(self, responses: Dict[str, FakeResponse]):
        self.responses = responses
        self.requests: List = []

    def get(self, url, params=None, timeout=None):
        self.requests.append(("GET", url, params))
        return self.responses[url]

    def post(self, url, json=None, timeout=None):
        self.requests.append(("POST", url, json))
        return self.responses[url]


@pytest.fixture
def api(monkeypatch):
    fake = FakeApi({})
    monkeypatch.setattr(settlement_cli, "API_URL", "http://api")
    monkeypatch.setattr(settlement_cli.requests, "get", fake.get)
    monkeypatch.setattr(settlement_cli.requests, "post", fake.post)
    return fake


def withdraw_row(commitment: str, status: str = "success") -> Dict[str, Any]:
    return {"commitment": commitment, "status": status, "signature": "sig-1", "recovered_path": False}


def test_pools(api, capsys):
    api.responses["http://api/pools"] = FakeResponse(200, {"pools": [{
        "pool_id": "sol-0.1", "denomination_lamports": 100_000_000, "shard_count": 4,
        "ring_capacity": 2560, "max_fee_bps": 0, "program_id": "Prog1",
    }]})
    settlement_cli.main(["pools"])
    out = capsys.readouterr().out
    assert "sol-0.1" in out
    assert "0.1000 SOL" in out


def test_notes_filters_are_passed(api, capsys):
    api.responses["http://api/notes"] = FakeResponse(200, {"notes": [], "count": 0})
    settlement_cli.main(["notes", "--pool", "sol-0.1"])
    assert api.requests == [("GET", "http://api/notes", {"pool_id": "sol-0.1"})]
    assert "No notes." in capsys.readouterr().out


def test_single_withdraw(api, capsys):
    api.responses["http://api/withdraw"] = FakeResponse(200, withdraw_row("0xabc"))
    settlement_cli.main(["withdraw", "Recipient1", "0xabc", "--fee-bps", "5"])
    assert api.requests[0][2] == {"recipient": "Recipient1", "fee_bps": 5, "commitment": "0xabc"}
    assert "success" in capsys.readouterr().out


def test_batch_withdraw(api, capsys):
    api.responses["http://api/withdraw/batch"] = FakeResponse(200, {
        "succeeded": 1, "failed": 1, "pending": 0,
        "results": [withdraw_row("0xa"), {**withdraw_row("0xb", "failed"), "stage": "generate_proof",
                                          "error": "prover crashed"}],
    })
    settlement_cli.main(["withdraw", "Recipient1", "0xa", "0xb"])
    out = capsys.readouterr().out
    assert api.requests[0][2]["commitments"] == ["0xa", "0xb"]
    assert "1 succeeded, 1 failed, 0 pending" in out
    assert "generate_proof: prover crashed" in out


def test_check_root(api, capsys):
    api.responses["http://api/roots/check"] = FakeResponse(
        200, {"found": True, "source": "sharded_ring", "shard_index": 2},
    )
    settlement_cli.main(["check-root", "sol-0.1", "0x01"])
    out = capsys.readouterr().out
    assert "accepted" in out
    assert "shard 2" in out


def test_api_error_exits(api, capsys):
    api.responses["http://api/deposit"] = FakeResponse(503, {"detail": "Deposits disabled by configuration"})
    with pytest.raises(SystemExit) as exc:
        settlement_cli.main(["deposit", "sol-0.1"])
    assert exc.value.code == 1
    assert "HTTP 503" in capsys.readouterr().err


def test_unreachable_api(api, monkeypatch, capsys):
    def refuse(*args, **kwargs):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(settlement_cli.requests, "get", refuse)
    with pytest.raises(SystemExit):
        settlement_cli.main(["health"])
    assert "unreachable" in capsys.readouterr().err


def test_api_flag_overrides_url(api, monkeypatch):
    api.responses["http://other/pools"] = FakeResponse(200, {"pools": []})
    settlement_cli.main(["--api", "http://other/", "pools"])
    assert api.requests[0][1] == "http://other/pools"
