from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, field_serializer

from switchboard.amount import Amount


class Balances(BaseModel):
    """Wallet balances per chain. Serialized as BTC decimal strings."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    main: Amount
    zcash: Amount
    ethereum: Amount

    @field_serializer("main", "zcash", "ethereum")
    def _as_btc(self, amount: Amount) -> str:
        return amount.to_btc_string()


class BlockCounts(BaseModel):
    """Tip heights per chain."""

    model_config = ConfigDict(frozen=True)

    main: int
    zcash: int
    ethereum: int


class RpcRequest(BaseModel):
    """
    A JSON-RPC request as received by the gateway.

    Attributes:
        jsonrpc (str): Protocol version.
        id (Optional[Union[int, str]]): Request id echoed in the response.
        method (str): Name of the gateway method.
        params (Union[List[Any], Dict[str, Any]]): Positional or named params.
    """

    jsonrpc: str = "2.0"
    id: Optional[Union[int, str]] = None
    method: str
    params: Union[List[Any], Dict[str, Any]] = []
