"""Tests for the JSON-RPC gateway."""

import asyncio
import socket
from decimal import Decimal
from typing import Any, Dict, List

import aiohttp
import pytest
from fastapi.testclient import TestClient

from switchboard.client import SidechainClient
from switchboard.errors import (
    GatewayError,
    RpcError,
    TransportError,
    UnsupportedOperation,
)
from switchboard.server import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    GatewayServer,
    ServerState,
)
from tests.fixtures.fakes import ALICE, BOB, FakeRpc, ethereum_rpc, make_client


def rpc(
    client: TestClient,
    method: str,
    params: Any = None,
    request_id: int = 1,
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
    if params is not None:
        payload["params"] = params
    response = client.post("/", json=payload)
    assert response.status_code == 200
    return response.json()


def gateway(**kwargs: Any) -> tuple:
    sidechain_client, main, zcash, ethereum = make_client(**kwargs)
    server = GatewayServer(sidechain_client)
    return TestClient(server.app), server, main, zcash, ethereum


def test_generate() -> None:
    http, _, _, zcash, _ = gateway(zcash={"generate": ["a", "b"]})

    body = rpc(http, "generate", [2, 20_000])

    assert body == {"jsonrpc": "2.0", "id": 1, "result": ["a", "b"]}
    assert zcash.calls == [("generate", [2, "0.00020000"])]


def test_named_params() -> None:
    http, _, _, zcash, _ = gateway(zcash={"generate": ["a"]})

    assert rpc(http, "generate", {"count": 1})["result"] == ["a"]
    assert zcash.calls == [("generate", [1, "0.00010000"])]


def test_getbalances_renders_native_decimals() -> None:
    http, *_ = gateway(
        main={"getbalance": Decimal("2")},
        zcash={"getbalance": Decimal("0.25")},
        ethereum=ethereum_rpc({ALICE: 3_000_000_000_000, BOB: 7_000_000_000_000}),
    )

    assert rpc(http, "getbalances")["result"] == {
        "main": "2.00000000",
        "zcash": "0.25000000",
        "ethereum": "0.00001000",
    }


def test_getblockcounts() -> None:
    http, *_ = gateway(
        main={"getblockcount": 10},
        zcash={"getblockcount": 20},
        ethereum=ethereum_rpc(block_number=30),
    )
    assert rpc(http, "getblockcounts")["result"] == {
        "main": 10,
        "zcash": 20,
        "ethereum": 30,
    }


def test_getnewaddress() -> None:
    http, *_ = gateway(main={"getnewaddress": "mainaddr"})
    assert rpc(http, "getnewaddress", ["main"])["result"] == "mainaddr"
    assert rpc(http, "getnewaddress", ["ethereum"])["result"] == ALICE


def test_deposit_withdraw_refund() -> None:
    http, _, main, zcash, _ = gateway(
        main={"createsidechaindeposit": "txid"},
        zcash={"getnewaddress": "zaddr", "withdraw": "w", "refund": "r"},
    )

    assert rpc(http, "deposit", ["zcash", 100_000_000, 1_000])["result"] == "txid"
    assert rpc(http, "withdraw", ["zcash", 5_000, 600])["result"] is None
    assert rpc(http, "refund", ["zcash", 5_000])["result"] is None

    assert main.calls[0][1][2:] == ["1.00000000", "0.00001000"]
    assert zcash.calls[1] == ("withdraw", ["0.00005000", "0.00000600"])
    assert zcash.calls[2] == ("refund", ["0.00005000", "0.00010000"])


def test_refund_ethereum_is_reported_not_crashed() -> None:
    http, _, main, zcash, ethereum = gateway()

    body = rpc(http, "refund", ["ethereum", 5_000, 100])

    assert body["error"]["code"] == UnsupportedOperation.rpc_code
    assert "not supported" in body["error"]["message"]
    assert main.calls == zcash.calls == ethereum.calls == []


def test_raw_passthrough_coerces_string_params() -> None:
    http, _, main, zcash, _ = gateway(
        main={"getblockhash": "00ff"},
        zcash={"z_getbalance": Decimal("1.25")},
    )

    assert rpc(http, "main", ["getblockhash", ["5"]])["result"] == "00ff"
    assert main.calls == [("getblockhash", [5])]

    result = rpc(http, "zcash", ["z_getbalance", ["zaddr", "1", "true", "null"]])["result"]
    assert result == "1.25"
    assert zcash.calls == [("z_getbalance", ["zaddr", 1, True, None])]


def test_raw_passthrough_keeps_every_decimal_digit() -> None:
    http, *_ = gateway(
        main={
            "gettxout": {
                "value": Decimal("184467440737.09551615"),
                "confirmations": 3,
            },
        },
    )

    result = rpc(http, "main", ["gettxout", ["txid", "0"]])["result"]

    assert result == {"value": "184467440737.09551615", "confirmations": 3}

def test_raw_passthrough_without_params() -> None:
    http, _, main, _, _ = gateway(main={"getblockcount": 3})
    assert rpc(http, "main", ["getblockcount"])["result"] == 3
    assert main.calls == [("getblockcount", [])]


def test_rpc_error_is_unwrapped_to_message() -> None:
    http, *_ = gateway(
        main={"createsidechaindeposit": RpcError(-6, "Insufficient funds")},
        zcash={"getnewaddress": "zaddr"},
    )

    body = rpc(http, "deposit", ["zcash", 100])

    assert body["error"] == {"code": RpcError.rpc_code, "message": "Insufficient funds"}


def test_transport_error_is_plain_description() -> None:
    http, *_ = gateway(main={"getblockcount": TransportError("Could not reach main")})

    body = rpc(http, "getblockcounts")

    assert body["error"] == {
        "code": TransportError.rpc_code,
        "message": "Could not reach main",
    }


def test_unexpected_error_does_not_leak() -> None:
    http, *_ = gateway(main={"getnewaddress": ValueError("secret internals")})

    body = rpc(http, "getnewaddress", ["main"])

    assert body["error"] == {"code": INTERNAL_ERROR, "message": "Internal error"}


def test_unknown_method() -> None:
    http, *_ = gateway()
    assert rpc(http, "nosuchmethod")["error"]["code"] == METHOD_NOT_FOUND


@pytest.mark.parametrize(
    ("method", "params"),
    [
        ("deposit", ["bitcoin", 100]),
        ("deposit", ["main", 100]),
        ("deposit", ["zcash", -1]),
        ("deposit", ["zcash", "0.5"]),
        ("deposit", ["zcash", 1.5]),
        ("withdraw", ["zcash"]),
        ("generate", [0]),
        ("generate", [1, 2, 3]),
        ("getnewaddress", ["dogecoin"]),
        ("getbalances", {"unexpected": 1}),
    ],
)
def test_invalid_params(method: str, params: Any) -> None:
    http, _, main, zcash, _ = gateway()

    body = rpc(http, method, params)

    assert body["error"]["code"] == INVALID_PARAMS
    assert main.calls == zcash.calls == []


def test_parse_error_and_invalid_request() -> None:
    http, *_ = gateway()

    response = http.post("/", content=b"{not json")
    assert response.json()["error"]["code"] == PARSE_ERROR

    response = http.post("/", json={"id": 9, "params": []})
    assert response.json()["error"]["code"] == INVALID_REQUEST
    assert response.json()["id"] == 9


def test_draining_rejects_new_requests() -> None:
    http, server, main, _, _ = gateway(main={"getblockcount": 1})
    server.state = ServerState.DRAINING

    response = http.post("/", json={"jsonrpc": "2.0", "id": 1, "method": "getblockcounts"})

    assert response.status_code == 503
    assert "shutting down" in response.json()["error"]["message"]
    assert main.calls == []


class SlowRpc(FakeRpc):
    """Blocks ``getblockcount`` until released."""

    def __init__(self) -> None:
        super().__init__({"getblockcount": 5})
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def call(self, method: str, params: Any = None) -> Any:
        if method == "getblockcount":
            self.entered.set()
            await self.release.wait()
        return await super().call(method, params)


async def _wait_for(predicate: Any, timeout: float = 5.0) -> None:
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


@pytest.mark.asyncio
async def test_run_drains_in_flight_requests_on_stop() -> None:
    slow = SlowRpc()
    sidechain_client = SidechainClient(
        FakeRpc({"getblockcount": 1}),
        slow,
        make_client()[0].ethereum,
    )
    server = GatewayServer(sidechain_client, host="127.0.0.1", port=0)
    stop_event = asyncio.Event()
    states: List[ServerState] = []

    run_task = asyncio.create_task(server.run(stop_event))
    await _wait_for(lambda: server.state is ServerState.LISTENING)
    states.append(server.state)

    url = f"http://127.0.0.1:{server.bound_port}/"
    async with aiohttp.ClientSession() as session:
        async def post() -> Dict[str, Any]:
            payload = {"jsonrpc": "2.0", "id": 1, "method": "getblockcounts"}
            async with session.post(url, json=payload) as response:
                return await response.json()

        request = asyncio.create_task(post())
        await asyncio.wait_for(slow.entered.wait(), 5)

        stop_event.set()
        await _wait_for(lambda: server.state is ServerState.DRAINING)
        states.append(server.state)
        assert not run_task.done()

        slow.release.set()
        body = await request

    await asyncio.wait_for(run_task, 10)
    states.append(server.state)

    assert body["result"] == {"main": 1, "zcash": 5, "ethereum": 7}
    assert states == [ServerState.LISTENING, ServerState.DRAINING, ServerState.STOPPED]


@pytest.mark.asyncio
async def test_run_fails_when_port_is_taken() -> None:
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        sock.listen()
        port = sock.getsockname()[1]
        server = GatewayServer(make_client()[0], host="127.0.0.1", port=port)
        with pytest.raises(GatewayError):
            await server.run(asyncio.Event())
