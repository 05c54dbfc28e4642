import asyncio
import itertools
import json
import math
from decimal import Decimal
from typing import Any, List, Optional, Protocol, Union

import aiohttp
from eth_utils import to_normalized_address
from loguru import logger
from pydantic import ValidationError

from switchboard.errors import RpcError, TransportError
from switchboard.utils.custom_types import hex_int

JsonScalar = Union[int, float, bool, None]


class ChainRpc(Protocol):
    """Capability shared by every per-chain client: one method call per round trip."""

    async def call(self, method: str, params: Optional[List[Any]] = None) -> Any: ...

    async def close(self) -> None: ...


def coerce_param(param: str) -> Union[JsonScalar, str]:
    """
    Reinterpret a shell-style string argument as a JSON scalar when it is one.

    Numbers, booleans and null take priority over the string. Anything else,
    JSON strings, arrays and objects included, is passed on as the original text.

    Args:
        param (str): The untyped argument.

    Returns:
        Union[JsonScalar, str]: The JSON scalar, or ``param`` unchanged.
    """
    try:
        value = json.loads(param, parse_constant=_reject_constant)
    except ValueError:
        return param
    if value is None or isinstance(value, (bool, int)):
        return value
    if isinstance(value, float) and math.isfinite(value):
        return value
    return param


def _reject_constant(name: str) -> Any:
    raise ValueError(f"{name} is not a JSON number")


class RPCClient:
    """RPCClient is an asynchronous JSON-RPC client for bitcoin style daemons."""

    def __init__(
        self,
        rpc_endpoint: str,
        user: Optional[str] = None,
        password: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        """
        Initialize the RPC client.

        Args:
            rpc_endpoint (str): The endpoint URL for the RPC server.
            user (Optional[str]): HTTP basic auth user.
            password (Optional[str]): HTTP basic auth password.
            timeout (Optional[float]): Total timeout per call in seconds. None
                                       lets a call run to completion.

        Attributes:
            session (Optional[aiohttp.ClientSession]): The http session, created on
                                                       first use.
            _id_counter (itertools.count): Counter for generating unique request IDs.
        """
        self.rpc_endpoint = rpc_endpoint
        self.auth = (
            aiohttp.BasicAuth(user, password or "") if user is not None else None
        )
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.session: Optional[aiohttp.ClientSession] = None

        # Incrementing counter for unique IDs
        self._id_counter = itertools.count(1)

    def __repr__(self) -> str:
        return f"RPCClient({self.rpc_endpoint!r})"

    def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(auth=self.auth, timeout=self.timeout)
        return self.session

    async def close(self) -> None:
        """
        Asynchronously closes the session.

        This method should be called to properly close the session and release any
        resources associated with it.
        """
        if self.session is not None:
            await self.session.close()
            self.session = None

    async def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        """
        Makes one JSON-RPC call. Calls are never retried.

        Args:
            method (str): The name of the RPC method to call.
            params (Optional[List[Any]]): The parameters to pass to the RPC method.
                                          Defaults to None.

        Returns:
            Any: The result of the RPC call. JSON numbers with a fraction are
                 decoded as ``Decimal``.

        Raises:
            RpcError: If the daemon answered with a JSON-RPC error.
            TransportError: If the daemon could not be reached or did not answer
                            with JSON.
        """
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._id_counter),
            "method": method,
            "params": params or [],
        }
        session = self._get_session()
        try:
            async with session.post(self.rpc_endpoint, json=payload) as response:
                body = await response.text()
                status = response.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransportError(
                f"Could not reach {self.rpc_endpoint}: {str(exc) or type(exc).__name__}"
            ) from exc

        try:
            data = json.loads(body, parse_float=Decimal)
        except ValueError:
            data = None

        # Bitcoin style daemons answer RPC errors with HTTP 500 and a JSON body
        if isinstance(data, dict) and data.get("error"):
            error = data["error"]
            if isinstance(error, dict):
                raise RpcError(
                    int(error.get("code", -1)),
                    str(error.get("message", "Unknown error")),
                )
            raise RpcError(-1, str(error))

        if status != 200 or not isinstance(data, dict):
            raise TransportError(
                f"RPC call {method} to {self.rpc_endpoint} failed with status {status}"
            )

        logger.debug(f"{method} -> {self.rpc_endpoint} ok")
        return data.get("result")


class EthereumClient:
    """
    Account model client for the ethereum sidechain.

    Wraps a request/response client and exposes the account, balance and block
    accessors the switchboard needs. Everything else goes through ``call``.
    """

    def __init__(self, rpc: ChainRpc) -> None:
        self.rpc = rpc

    @classmethod
    def from_endpoint(
        cls,
        rpc_endpoint: str,
        timeout: Optional[float] = None,
    ) -> "EthereumClient":
        return cls(RPCClient(rpc_endpoint, timeout=timeout))

    async def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        return await self.rpc.call(method, params)

    async def close(self) -> None:
        await self.rpc.close()

    async def list_accounts(self) -> List[str]:
        """Accounts controlled by the node, as lowercase ``0x`` hex addresses."""
        accounts = await self.rpc.call("eth_accounts")
        return [to_normalized_address(account) for account in accounts or []]

    async def get_balance(self, account: str) -> int:
        """
        Balance of ``account`` at the latest block.

        Args:
            account (str): ``0x`` address.

        Returns:
            int: Balance in wei.
        """
        balance = await self.rpc.call("eth_getBalance", [account, "latest"])
        return _quantity("eth_getBalance", balance)

    async def get_block_number(self) -> int:
        """
        Asynchronously retrieves the latest block number.

        This method calls the "eth_blockNumber" RPC method to get the latest block
        number in hexadecimal format and converts it to an integer.

        Returns:
            int: The latest block number as an integer.
        """
        block_number = await self.rpc.call("eth_blockNumber")
        return _quantity("eth_blockNumber", block_number)

    async def withdraw(self, account: str, amount: int, fee: int) -> Any:
        """
        Request a withdrawal to the mainchain.

        Args:
            account (str): Account the funds are withdrawn from.
            amount (int): Amount in satoshis.
            fee (int): Fee in satoshis. The sidechain orders the withdrawal bundle
                       by this value, highest first.

        Returns:
            Any: Whatever the node returns.
        """
        return await self.rpc.call("eth_withdraw", [account, hex(amount), hex(fee)])


def _quantity(method: str, value: Any) -> int:
    try:
        return hex_int.validate_python(value)
    except ValidationError as exc:
        raise TransportError(f"Unexpected {method} response: {value!r}") from exc
