from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, List

import httpx
import pytest
import respx
from typer.testing import CliRunner

from council.adapters.mailbox import MailboxChannel
from council.cli.main import EXIT_CONFIG, EXIT_PENDING, app
from council.errors import TransportError
from council.keys import KeyPair
from council.types import SpendingPolicy
from council.version import __version__

from .helpers import ANCHOR, Member, json_rpc_router, membership_table, rpc_error

RPC_URL = "http://node.test/rpc"

runner = CliRunner()


@pytest.fixture(autouse=True)
def cli_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    """Point every directory at tmp_path and keep log output out of results."""
    for key in ("COUNCIL_CONFIG", "COUNCIL_STAGING_URL", "COUNCIL_IDENTITY", "COUNCIL_LOG_FORMAT"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("COUNCIL_RPC_URL", RPC_URL)
    monkeypatch.setenv("COUNCIL_MAILBOX_DIR", str(tmp_path / "mailbox"))
    monkeypatch.setenv("COUNCIL_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("COUNCIL_ANCHOR_ID", ANCHOR)
    monkeypatch.setenv("COUNCIL_HRP", "cncl")
    monkeypatch.setenv("COUNCIL_LOG_LEVEL", "ERROR")
    monkeypatch.setenv("COUNCIL_RETRY_ATTEMPTS", "1")
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def _invoke(*args: str):
    return runner.invoke(app, list(args))


def _json(*args: str):
    result = _invoke("--json", *args)
    assert result.exit_code == 0, result.output
    return json.loads(result.stdout)


def _key_files(tmp_path: Path, members: Dict[str, Member]) -> Dict[str, Path]:
    out = {}
    for name, m in members.items():
        out[name] = m.keypair.save(tmp_path / "keys" / f"{name}.key")
    return out


def _spend_file(tmp_path: Path, payee: str, *, amount: int = 4_000) -> Path:
    path = tmp_path / "spend.json"
    path.write_text(
        json.dumps(
            {
                "utxos": [{"txid": "01" * 32, "index": 0, "amount": 10_000}],
                "outputs": [{"address": payee, "amount": amount}],
                "fee": 100,
                "memo": "grant #7",
            }
        ),
        encoding="utf-8",
    )
    return path


def test_version() -> None:
    result = _invoke("version")
    assert result.exit_code == 0
    assert result.stdout.strip() == __version__


def test_keys_new_and_show(tmp_path: Path) -> None:
    key = tmp_path / "alice.key"
    created = _json("keys", "new", "--out", str(key))
    assert created["address"].startswith("cncl1")
    assert KeyPair.load(key).public_key == created["publicKey"]
    assert (key.stat().st_mode & 0o777) == 0o600

    result = _invoke("keys", "new", "--out", str(key))
    assert result.exit_code == 1

    shown = _json("keys", "show", "-k", str(key))
    assert shown["address"] == created["address"]


def test_missing_config_file_exits_2(tmp_path: Path) -> None:
    result = _invoke("--config", str(tmp_path / "missing.yaml"), "version")
    assert result.exit_code == EXIT_CONFIG


def test_policy_from_explicit_keys(members: Dict[str, Member], policy: SpendingPolicy) -> None:
    args: List[str] = ["policy"]
    for m in members.values():
        args += ["--key", m.public_key]
    out = _json(*args)
    assert out["address"] == policy.address
    assert out["requiredSigners"] == 2
    assert out["publicKeys"] == list(policy.ordered_public_keys)
    assert out["unresolved"] == []


def test_collect_keys_reports_unresolved(members: Dict[str, Member], respx_mock: respx.MockRouter) -> None:
    table = membership_table(ANCHOR, list(members.values()))
    del table[f"account.getPublicKey:{members['C'].address}"]
    respx_mock.post(RPC_URL).mock(side_effect=json_rpc_router(table))

    result = _invoke("--json", "collect-keys")
    assert result.exit_code == 0
    found = json.loads(result.stdout)
    assert len(found["identities"]) == 2
    assert found["unresolved"] == [{"address": members["C"].address, "token": members["C"].token}]


def test_full_flow(
    tmp_path: Path, members: Dict[str, Member], payee: str, policy: SpendingPolicy, respx_mock: respx.MockRouter
) -> None:
    table = membership_table(ANCHOR, list(members.values()))
    table["tx.sendRawTransaction"] = {"txHash": "0xfeed"}
    rpc = respx_mock.post(RPC_URL).mock(side_effect=json_rpc_router(table))
    keys = _key_files(tmp_path, members)

    derived = _json("policy")
    assert derived["address"] == policy.address

    report = _json("propose", "--tx", str(_spend_file(tmp_path, payee)))
    pid = report["proposalId"]
    assert report["requiredSignatures"] == 2
    assert sorted(report["delivered"]) == sorted(m.address for m in members.values())

    signed = _json("sign", "-k", str(keys["A"]))
    assert signed["proposals"] == [
        {"proposalId": pid, "from": "coordinator", "result": "signed", "inputs": [0]}
    ]
    # nothing new the second time round
    assert _json("sign", "-k", str(keys["A"]))["proposals"] == []

    pending = _invoke("--json", "collect", "-p", pid)
    assert pending.exit_code == EXIT_PENDING
    assert json.loads(pending.stdout)["perInput"] == [1]

    _json("sign", "-k", str(keys["C"]))
    status = _json("collect", "-p", pid)
    assert status["state"] == "quorate"
    assert status["signers"] == sorted([members["A"].address, members["C"].address])

    done = _json("finish", "-p", pid)
    assert done == {"proposalId": pid, "state": "submitted", "broadcastId": "0xfeed"}
    sent = [json.loads(c.request.content) for c in rpc.calls]
    assert [b["method"] for b in sent].count("tx.sendRawTransaction") == 1

    listed = _json("status")
    assert [(s["proposalId"], s["state"]) for s in listed] == [(pid, "submitted")]

    again = _invoke("finish", "-p", pid)
    assert again.exit_code == 1


def test_finish_before_quorum_exits_pending(
    tmp_path: Path, members: Dict[str, Member], payee: str, respx_mock: respx.MockRouter
) -> None:
    respx_mock.post(RPC_URL).mock(side_effect=json_rpc_router(membership_table(ANCHOR, list(members.values()))))
    pid = _json("propose", "--tx", str(_spend_file(tmp_path, payee)))["proposalId"]
    result = _invoke("finish", "-p", pid)
    assert result.exit_code == EXIT_PENDING


def test_rejected_broadcast(
    tmp_path: Path, members: Dict[str, Member], payee: str, respx_mock: respx.MockRouter
) -> None:
    table = membership_table(ANCHOR, list(members.values()))
    table["tx.sendRawTransaction"] = rpc_error(-32010, "inputs already spent")
    respx_mock.post(RPC_URL).mock(side_effect=json_rpc_router(table))
    keys = _key_files(tmp_path, members)

    pid = _json("propose", "--tx", str(_spend_file(tmp_path, payee)))["proposalId"]
    for name in "AB":
        _json("sign", "-k", str(keys[name]))

    result = _invoke("--json", "finish", "-p", pid)
    assert result.exit_code == 1
    assert "inputs already spent" in result.output
    assert _json("status", "-p", pid)["state"] == "abandoned"



def test_sign_reports_unsent_signature_and_retries_later(
    tmp_path: Path, members: Dict[str, Member], payee: str, respx_mock: respx.MockRouter,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    respx_mock.post(RPC_URL).mock(side_effect=json_rpc_router(membership_table(ANCHOR, list(members.values()))))
    keys = _key_files(tmp_path, members)
    pid = _json("propose", "--tx", str(_spend_file(tmp_path, payee)))["proposalId"]

    def unreachable(self, recipient: str, envelope) -> None:
        raise TransportError("mailbox unreachable", endpoint=str(self.root))

    with monkeypatch.context() as m:
        m.setattr(MailboxChannel, "send", unreachable)
        result = _invoke("--json", "sign", "-k", str(keys["A"]))
    assert result.exit_code == 1
    entry = json.loads(result.stdout)["proposals"][0]
    assert entry["proposalId"] == pid
    assert entry["result"] == "error"

    # the proposal is still waiting: the next run signs and sends it
    again = _json("sign", "-k", str(keys["A"]))
    assert [(p["proposalId"], p["result"]) for p in again["proposals"]] == [(pid, "signed")]

def test_outsider_has_nothing_to_sign(
    tmp_path: Path, members: Dict[str, Member], outsider: Member, payee: str, respx_mock: respx.MockRouter
) -> None:
    respx_mock.post(RPC_URL).mock(side_effect=json_rpc_router(membership_table(ANCHOR, list(members.values()))))
    _json("propose", "--tx", str(_spend_file(tmp_path, payee)))

    key = outsider.keypair.save(tmp_path / "z.key")
    result = _invoke("sign", "-k", str(key))
    assert result.exit_code == 0
    assert "No proposals waiting." in result.stdout


def test_abandon_and_status(
    tmp_path: Path, members: Dict[str, Member], payee: str, respx_mock: respx.MockRouter
) -> None:
    respx_mock.post(RPC_URL).mock(side_effect=json_rpc_router(membership_table(ANCHOR, list(members.values()))))
    pid = _json("propose", "--tx", str(_spend_file(tmp_path, payee)))["proposalId"]

    result = _invoke("abandon", "-p", pid, "--reason", "wrong payee")
    assert result.exit_code == 0
    info = _json("status", "-p", pid)
    assert info["state"] == "abandoned"
    assert info["reason"] == "wrong payee"


def test_unknown_proposal(tmp_path: Path) -> None:
    result = _invoke("collect", "-p", "ab" * 32)
    assert result.exit_code == 1
    result = _invoke("status", "-p", "not-a-proposal")
    assert result.exit_code == 1


def test_stage_requires_service(tmp_path: Path) -> None:
    blob = tmp_path / "blob.bin"
    blob.write_bytes(b"\x00" * 10)
    result = _invoke("stage", str(blob))
    assert result.exit_code == EXIT_CONFIG


def test_stage_uploads(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, respx_mock: respx.MockRouter) -> None:
    monkeypatch.setenv("COUNCIL_STAGING_URL", "http://stage.test")
    respx_mock.post("http://stage.test/ipfs/upload").mock(
        return_value=httpx.Response(200, json={"success": True, "cid": "bafy42"})
    )
    blob = tmp_path / "blob.bin"
    blob.write_bytes(b"payload")
    assert _json("stage", str(blob)) == {"contentAddress": "bafy42"}
