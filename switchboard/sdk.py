from typing import Any, Dict, List, Optional

from switchboard.amount import Amount
from switchboard.chains import Chain, Sidechain
from switchboard.config import Settings
from switchboard.models import Balances, BlockCounts
from switchboard.rpc_client import ChainRpc, RPCClient


class SwitchboardClient:
    """
    A client for talking to a running switchboard gateway.

    Attributes:
        rpc (ChainRpc): JSON-RPC caller pointed at the gateway.

    Methods:
        generate(count, amount) -> List[str]:
            Mine zcash blocks.
        zcash(method, params) -> Any:
            Call a zcash RPC method directly.
        main(method, params) -> Any:
            Call a mainchain RPC method directly.
        get_balances() -> Balances:
        get_block_counts() -> BlockCounts:
        get_new_address(chain) -> str:
        deposit(sidechain, amount, fee) -> str:
        withdraw(sidechain, amount, fee) -> None:
        refund(sidechain, amount, fee) -> None:
    """

    def __init__(self, rpc: ChainRpc) -> None:
        self.rpc = rpc

    @classmethod
    def from_settings(cls, settings: Settings) -> "SwitchboardClient":
        return cls(RPCClient(str(settings.gateway_url), timeout=settings.rpc_timeout))

    async def close(self) -> None:
        await self.rpc.close()

    async def generate(self, count: int, amount: Optional[Amount] = None) -> List[str]:
        params: List[Any] = [count]
        if amount is not None:
            params.append(amount.to_sat())
        return await self.rpc.call("generate", params)

    async def zcash(self, method: str, params: Optional[List[str]] = None) -> Any:
        return await self.rpc.call("zcash", [method, params or []])

    async def main(self, method: str, params: Optional[List[str]] = None) -> Any:
        return await self.rpc.call("main", [method, params or []])

    async def get_balances(self) -> Balances:
        balances: Dict[str, Any] = await self.rpc.call("getbalances")
        return Balances(
            **{chain.value: Amount.parse(str(balances[chain.value])) for chain in Chain}
        )

    async def get_block_counts(self) -> BlockCounts:
        return BlockCounts.model_validate(await self.rpc.call("getblockcounts"))

    async def get_new_address(self, chain: Chain) -> str:
        return await self.rpc.call("getnewaddress", [chain.value])

    async def deposit(
        self,
        sidechain: Sidechain,
        amount: Amount,
        fee: Optional[Amount] = None,
    ) -> str:
        return await self.rpc.call("deposit", _transfer_params(sidechain, amount, fee))

    async def withdraw(
        self,
        sidechain: Sidechain,
        amount: Amount,
        fee: Optional[Amount] = None,
    ) -> None:
        await self.rpc.call("withdraw", _transfer_params(sidechain, amount, fee))

    async def refund(
        self,
        sidechain: Sidechain,
        amount: Amount,
        fee: Optional[Amount] = None,
    ) -> None:
        await self.rpc.call("refund", _transfer_params(sidechain, amount, fee))


def _transfer_params(
    sidechain: Sidechain,
    amount: Amount,
    fee: Optional[Amount],
) -> List[Any]:
    params: List[Any] = [sidechain.value, amount.to_sat()]
    if fee is not None:
        params.append(fee.to_sat())
    return params
