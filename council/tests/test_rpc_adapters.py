from __future__ import annotations

import json
from typing import Any, Dict

import httpx
import pytest
import respx

from council.adapters.rpc import RpcBroadcaster, RpcClient, RpcError, RpcMembershipResolver
from council.adapters.staging import HttpStager
from council.discovery import MembershipDiscovery
from council.errors import BroadcastRejected, DiscoveryError, StagingError, TransportError
from council.utils.retry import Retrier

from .helpers import ANCHOR, Member, json_rpc_router, membership_table, rpc_error, rpc_result

RPC_URL = "http://node.test/rpc"
STAGING_URL = "http://stage.test"


@pytest.fixture
def client():
    with RpcClient(RPC_URL, timeout=2.0) as c:
        yield c


def test_request_posts_json_rpc(client: RpcClient, respx_mock: respx.MockRouter) -> None:
    route = respx_mock.post(RPC_URL).mock(return_value=rpc_result(["t1"]))
    assert client.request("token.getChildren", [ANCHOR]) == ["t1"]
    sent = json.loads(route.calls.last.request.content)
    assert sent["method"] == "token.getChildren"
    assert sent["params"] == [ANCHOR]
    assert route.calls.last.request.headers["User-Agent"].startswith("council/")


def test_request_surfaces_rpc_errors(client: RpcClient, respx_mock: respx.MockRouter) -> None:
    respx_mock.post(RPC_URL).mock(return_value=rpc_error(-32000, "boom"))
    with pytest.raises(RpcError) as ei:
        client.request("anything")
    assert ei.value.rpc_code == -32000
    assert ei.value.rpc_message == "boom"


@pytest.mark.parametrize("status", [429, 503])
def test_overload_is_transient(client: RpcClient, status: int, respx_mock: respx.MockRouter) -> None:
    respx_mock.post(RPC_URL).mock(return_value=httpx.Response(status))
    with pytest.raises(TransportError):
        client.request("anything")


def test_connection_failure_is_transient(client: RpcClient, respx_mock: respx.MockRouter) -> None:
    respx_mock.post(RPC_URL).mock(side_effect=httpx.ConnectError("refused"))
    with pytest.raises(TransportError):
        client.request("anything")


def test_malformed_response(client: RpcClient, respx_mock: respx.MockRouter) -> None:
    respx_mock.post(RPC_URL).mock(
        side_effect=[httpx.Response(200, text="<html>"), httpx.Response(200, json={"jsonrpc": "2.0", "id": 1})]
    )
    with pytest.raises(RpcError):
        client.request("anything")
    with pytest.raises(RpcError):
        client.request("anything")


def test_discovery_over_rpc(members: Dict[str, Member], client: RpcClient, respx_mock: respx.MockRouter) -> None:
    a, b, c = members["A"], members["B"], members["C"]
    table: Dict[str, Any] = {
        f"token.getChildren:{ANCHOR}": [a.token, b.token, c.token],
        f"token.getHolder:{a.token}": a.address,
        f"token.getHolder:{b.token}": {"address": b.address},
        f"token.getHolder:{c.token}": c.address,
        f"account.getPublicKey:{a.address}": a.public_key,
        f"account.getPublicKey:{b.address}": {"publicKey": b.public_key},
        # C never transacted: the node answers "not found"
    }
    respx_mock.post(RPC_URL).mock(side_effect=json_rpc_router(table))

    found = MembershipDiscovery(RpcMembershipResolver(client), retry=Retrier.immediate()).discover(ANCHOR)

    assert {i.address for i in found.identities} == {a.address, b.address}
    assert [u.address for u in found.unresolved] == [c.address]


def test_discovery_retries_overloaded_node(
    members: Dict[str, Member], client: RpcClient, respx_mock: respx.MockRouter
) -> None:
    a = members["A"]
    table: Dict[str, Any] = {
        f"token.getChildren:{ANCHOR}": [a.token],
        f"token.getHolder:{a.token}": a.address,
        f"account.getPublicKey:{a.address}": a.public_key,
    }
    answer = json_rpc_router(table)
    overloaded = iter([429, 503])

    def flaky(request: httpx.Request) -> httpx.Response:
        status = next(overloaded, None)
        return httpx.Response(status) if status else answer(request)

    route = respx_mock.post(RPC_URL).mock(side_effect=flaky)

    found = MembershipDiscovery(RpcMembershipResolver(client), retry=Retrier.immediate(attempts=3)).discover(ANCHOR)
    assert [i.address for i in found.identities] == [a.address]
    assert route.call_count == 5


def test_unknown_anchor(client: RpcClient, respx_mock: respx.MockRouter) -> None:
    respx_mock.post(RPC_URL).mock(return_value=rpc_error(-32000, "no such token"))
    with pytest.raises(DiscoveryError) as ei:
        RpcMembershipResolver(client).children("nope")
    assert ei.value.details["anchor_id"] == "nope"


def test_public_key_errors_other_than_not_found_propagate(client: RpcClient, respx_mock: respx.MockRouter) -> None:
    respx_mock.post(RPC_URL).mock(return_value=rpc_error(-32000, "database locked"))
    with pytest.raises(RpcError):
        RpcMembershipResolver(client).public_key("cncl1xyz")


def test_key_lookup_error_leaves_holder_unresolved(
    members: Dict[str, Member], client: RpcClient, respx_mock: respx.MockRouter
) -> None:
    table = membership_table(ANCHOR, list(members.values()))
    table[f"account.getPublicKey:{members['B'].address}"] = rpc_error(-32000, "database locked")
    respx_mock.post(RPC_URL).mock(side_effect=json_rpc_router(table))

    found = MembershipDiscovery(RpcMembershipResolver(client), retry=Retrier.immediate()).discover(ANCHOR)

    assert [u.address for u in found.unresolved] == [members["B"].address]
    assert {i.address for i in found.identities} == {members["A"].address, members["C"].address}


@pytest.mark.parametrize("result", ["0xabc", {"txHash": "0xabc"}])
def test_broadcast_returns_hash(client: RpcClient, result: Any, respx_mock: respx.MockRouter) -> None:
    route = respx_mock.post(RPC_URL).mock(return_value=rpc_result(result))
    assert RpcBroadcaster(client).broadcast("a1b2") == "0xabc"
    assert json.loads(route.calls.last.request.content)["params"] == ["a1b2"]


def test_broadcast_rejection(client: RpcClient, respx_mock: respx.MockRouter) -> None:
    respx_mock.post(RPC_URL).mock(return_value=rpc_error(-32010, "inputs already spent"))
    with pytest.raises(BroadcastRejected) as ei:
        RpcBroadcaster(client).broadcast("a1b2")
    assert ei.value.reason == "inputs already spent"


def test_broadcast_without_hash_is_rejected(client: RpcClient, respx_mock: respx.MockRouter) -> None:
    respx_mock.post(RPC_URL).mock(return_value=rpc_result(None))
    with pytest.raises(BroadcastRejected):
        RpcBroadcaster(client).broadcast("a1b2")


def test_stager_upload_and_fetch(respx_mock: respx.MockRouter) -> None:
    upload = respx_mock.post(f"{STAGING_URL}/ipfs/upload").mock(
        return_value=httpx.Response(200, json={"success": True, "cid": "bafy123"})
    )
    respx_mock.get(f"{STAGING_URL}/ipfs/bafy123").mock(return_value=httpx.Response(200, content=b"payload"))
    stager = HttpStager(STAGING_URL + "/")
    try:
        assert stager.stage(b"payload") == "bafy123"
        assert b"payload" in upload.calls.last.request.content
        assert stager.fetch("bafy123") == b"payload"
    finally:
        stager.close()


def test_stager_errors(respx_mock: respx.MockRouter) -> None:
    respx_mock.post(f"{STAGING_URL}/ipfs/upload").mock(return_value=httpx.Response(200, json={"success": False}))
    respx_mock.get(f"{STAGING_URL}/ipfs/gone").mock(return_value=httpx.Response(404, text="not here"))
    respx_mock.get(f"{STAGING_URL}/ipfs/busy").mock(return_value=httpx.Response(503))
    stager = HttpStager(STAGING_URL)
    try:
        with pytest.raises(StagingError):
            stager.stage(b"x")
        with pytest.raises(StagingError):
            stager.fetch("gone")
        with pytest.raises(TransportError):
            stager.fetch("busy")
    finally:
        stager.close()
