from enum import Enum


class Chain(str, Enum):
    """The chains behind the switchboard."""

    MAIN = "main"
    ZCASH = "zcash"
    ETHEREUM = "ethereum"

    def __str__(self) -> str:
        return self.value


class Sidechain(str, Enum):
    """
    Chains that exchange value with the mainchain.

    Each sidechain occupies a fixed slot on the mainchain. The slot number is
    protocol data: it is part of every deposit address and activation proposal.
    """

    ZCASH = "zcash"
    ETHEREUM = "ethereum"

    @property
    def chain(self) -> Chain:
        return Chain(self.value)

    @property
    def number(self) -> int:
        return _SIDECHAIN_SLOTS[self]

    @property
    def title(self) -> str:
        return _SIDECHAIN_TITLES[self]

    def __str__(self) -> str:
        return self.value


_SIDECHAIN_SLOTS = {
    Sidechain.ZCASH: 0,
    Sidechain.ETHEREUM: 1,
}

_SIDECHAIN_TITLES = {
    Sidechain.ZCASH: "zcash",
    Sidechain.ETHEREUM: "ethereum",
}
