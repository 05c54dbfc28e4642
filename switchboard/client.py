import asyncio
from typing import Any, List, Optional

from loguru import logger

from switchboard.amount import DEFAULT_FEE, Amount
from switchboard.chains import Chain, Sidechain
from switchboard.config import Settings
from switchboard.deposit import format_deposit_address
from switchboard.errors import (
    NoAddressAvailable,
    SwitchboardError,
    UnsupportedOperation,
)
from switchboard.models import Balances, BlockCounts
from switchboard.rpc_client import ChainRpc, EthereumClient, RPCClient

# Blocks mined on regtest after proposing sidechains so the proposals activate.
SIDECHAIN_ACTIVATION_BLOCKS = 200

ETHEREUM_REFUND_GUIDANCE = (
    "Automatic refunds are not supported for ethereum, attach a console to the "
    "ethereum node (geth attach <datadir>/data/ethereum/geth.ipc) to make a refund"
)


class SidechainClient:
    """
    One client for the mainchain and every sidechain.

    SidechainClient translates the switchboard operations into calls on each
    chain's own RPC dialect. It holds no state beyond the per-chain clients, so a
    single instance is shared by every gateway request.

    Methods:
        generate(count, amount) -> List[str]:
            Mine zcash blocks, returning their hashes.
        get_balances() -> Balances:
            Wallet balance on every chain.
        get_block_counts() -> BlockCounts:
            Tip height on every chain.
        get_new_address(chain) -> str:
            A receiving address on ``chain``.
        deposit(sidechain, amount, fee) -> str:
            Move funds from the mainchain to ``sidechain``.
        withdraw(sidechain, amount, fee) -> None:
            Queue funds on ``sidechain`` for withdrawal to the mainchain.
        refund(sidechain, amount, fee) -> None:
            Return funds pending withdrawal back to ``sidechain``.
        activate_sidechains() -> None:
            Propose and activate every sidechain on a regtest mainchain.
        stop() -> None:
            Ask the mainchain and zcash daemons to shut down.
    """

    def __init__(
        self,
        main: ChainRpc,
        zcash: ChainRpc,
        ethereum: EthereumClient,
    ) -> None:
        self.main = main
        self.zcash = zcash
        self.ethereum = ethereum

    @classmethod
    def from_settings(cls, settings: Settings) -> "SidechainClient":
        def bitcoin_style(chain: Chain) -> RPCClient:
            endpoint = getattr(settings, chain.value)
            return RPCClient(
                str(endpoint.url),
                user=settings.rpcuser,
                password=settings.rpcpassword,
                timeout=settings.rpc_timeout,
            )

        return cls(
            main=bitcoin_style(Chain.MAIN),
            zcash=bitcoin_style(Chain.ZCASH),
            ethereum=EthereumClient.from_endpoint(
                str(settings.ethereum.url),
                timeout=settings.rpc_timeout,
            ),
        )

    def rpc(self, chain: Chain) -> ChainRpc:
        """The raw client for ``chain``."""
        return {
            Chain.MAIN: self.main,
            Chain.ZCASH: self.zcash,
            Chain.ETHEREUM: self.ethereum,
        }[chain]

    async def close(self) -> None:
        await asyncio.gather(
            self.main.close(),
            self.zcash.close(),
            self.ethereum.close(),
        )

    async def generate(self, count: int, amount: Optional[Amount] = None) -> List[str]:
        """
        Mine ``count`` zcash blocks.

        Args:
            count (int): Number of blocks.
            amount (Optional[Amount]): Amount the zcash node bids on the mainchain
                                       for each block. Defaults to DEFAULT_FEE.

        Returns:
            List[str]: Block hashes, as returned by the node.
        """
        amount = amount if amount is not None else DEFAULT_FEE
        return await self.zcash.call(
            "generate",
            [count, amount.to_native(Chain.ZCASH)],
        )

    async def get_balances(self) -> Balances:
        """
        Wallet balance on every chain.

        The ethereum balance is the sum over every account the node controls,
        read one account at a time, then floor divided from wei to satoshis.
        """
        main = await self.main.call("getbalance")
        zcash = await self.zcash.call("getbalance")

        wei = 0
        for account in await self.ethereum.list_accounts():
            wei += await self.ethereum.get_balance(account)

        return Balances(
            main=Amount.from_native(Chain.MAIN, main),
            zcash=Amount.from_native(Chain.ZCASH, zcash),
            ethereum=Amount.from_wei(wei),
        )

    async def get_block_counts(self) -> BlockCounts:
        return BlockCounts(
            main=await self.main.call("getblockcount"),
            zcash=await self.zcash.call("getblockcount"),
            ethereum=await self.ethereum.get_block_number(),
        )

    async def get_new_address(self, chain: Chain) -> str:
        """
        A receiving address on ``chain``.

        Main and zcash hand out a fresh address. Ethereum returns the first
        account the node controls.

        Raises:
            NoAddressAvailable: If the ethereum node controls no account.
        """
        if chain is Chain.ETHEREUM:
            return await self._ethereum_account()
        return await self.rpc(chain).call("getnewaddress")

    async def _ethereum_account(self) -> str:
        accounts = await self.ethereum.list_accounts()
        if not accounts:
            raise NoAddressAvailable("No available Ethereum addresses")
        return accounts[0]

    async def deposit(
        self,
        sidechain: Sidechain,
        amount: Amount,
        fee: Optional[Amount] = None,
    ) -> str:
        """
        Move ``amount`` from the mainchain wallet to ``sidechain``.

        Args:
            sidechain (Sidechain): Receiving sidechain.
            amount (Amount): Amount to deposit.
            fee (Optional[Amount]): Deposit fee. Defaults to DEFAULT_FEE.

        Returns:
            str: Mainchain transaction id.
        """
        fee = fee if fee is not None else DEFAULT_FEE
        address = await self.get_new_address(sidechain.chain)
        address = format_deposit_address(sidechain.number, address)
        txid = await self.main.call(
            "createsidechaindeposit",
            [
                sidechain.number,
                address,
                amount.to_native(Chain.MAIN),
                fee.to_native(Chain.MAIN),
            ],
        )
        logger.info(
            f"Created deposit of {amount} to {sidechain} with fee {fee}, txid {txid}"
        )
        return txid

    async def withdraw(
        self,
        sidechain: Sidechain,
        amount: Amount,
        fee: Optional[Amount] = None,
    ) -> None:
        """
        Withdraw ``amount`` from ``sidechain`` back to the mainchain.

        Args:
            sidechain (Sidechain): Sidechain holding the funds.
            amount (Amount): Amount to withdraw.
            fee (Optional[Amount]): Withdrawal fee. The sidechain sorts the
                                    withdrawal bundle by it, higher fees are
                                    included first. Defaults to DEFAULT_FEE.
        """
        fee = fee if fee is not None else DEFAULT_FEE
        if sidechain is Sidechain.ZCASH:
            await self.zcash.call(
                "withdraw",
                [amount.to_native(Chain.ZCASH), fee.to_native(Chain.ZCASH)],
            )
        else:
            account = await self._ethereum_account()
            await self.ethereum.withdraw(
                account,
                amount.to_native(Chain.ETHEREUM),
                fee.to_native(Chain.ETHEREUM),
            )
        logger.info(f"Created withdrawal of {amount} from {sidechain} with fee {fee}")

    async def refund(
        self,
        sidechain: Sidechain,
        amount: Amount,
        fee: Optional[Amount] = None,
    ) -> None:
        """
        Return funds pending withdrawal back to ``sidechain``.

        ``fee`` is the withdrawal fee of the change that goes back into the
        bundle, with the same ordering meaning as in ``withdraw``.

        Raises:
            UnsupportedOperation: For ethereum. Nothing is sent to any node.
        """
        if sidechain is Sidechain.ETHEREUM:
            raise UnsupportedOperation(ETHEREUM_REFUND_GUIDANCE)
        fee = fee if fee is not None else DEFAULT_FEE
        await self.zcash.call(
            "refund",
            [amount.to_native(Chain.ZCASH), fee.to_native(Chain.ZCASH)],
        )
        logger.info(
            f"Refunded {amount} to {sidechain} with change withdrawal fee {fee}"
        )

    async def activate_sidechains(self) -> None:
        """
        Propose every inactive sidechain and mine until the proposals activate.

        Safe to call when the sidechains are already active: nothing is proposed
        or mined then.
        """
        active = await self.main.call("listactivesidechains") or []
        active_numbers = {_sidechain_number(entry) for entry in active}

        proposed = False
        for sidechain in Sidechain:
            if sidechain.number in active_numbers:
                logger.info(f"Sidechain {sidechain} already active")
                continue
            logger.info(f"Proposing sidechain {sidechain} at slot {sidechain.number}")
            await self.main.call(
                "createsidechainproposal",
                [sidechain.number, sidechain.title, f"{sidechain.title} sidechain"],
            )
            proposed = True

        if proposed:
            await self.main.call("generate", [SIDECHAIN_ACTIVATION_BLOCKS])
            logger.info("Sidechains activated")

    async def stop(self) -> None:
        """
        Ask main and zcash to stop. The ethereum daemon is stopped by signal.

        zcash is asked even when main cannot be reached. The first failure is
        raised once both have been asked.
        """
        failures: List[SwitchboardError] = []
        for rpc in (self.main, self.zcash):
            try:
                await rpc.call("stop")
            except SwitchboardError as exc:
                failures.append(exc)
        if failures:
            raise failures[0]


def _sidechain_number(entry: Any) -> Optional[int]:
    # listactivesidechains returns objects keyed by "nsidechain"
    if isinstance(entry, dict):
        return entry.get("nsidechain")
    return entry
