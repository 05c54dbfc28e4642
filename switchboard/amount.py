"""Satoshi precision money values."""

from dataclasses import dataclass
from decimal import Decimal, DecimalException, InvalidOperation, localcontext
from typing import Union

from switchboard.chains import Chain
from switchboard.errors import InvalidAmount

SATOSHIS_PER_BTC = 100_000_000
WEI_PER_SATOSHI = 10_000_000_000
MAX_SATOSHIS = 2**64 - 1
# Decimal.adjusted() of the largest BTC amount that fits in MAX_SATOSHIS
MAX_BTC_DIGITS = 11

NativeValue = Union[str, int, Decimal]


@dataclass(frozen=True, order=True)
class Amount:
    """
    A non-negative count of satoshis.

    Main and zcash speak BTC decimals on the wire, ethereum speaks satoshi
    integers (and wei for balances). Conversions never go through floats.
    """

    sat: int

    def __post_init__(self) -> None:
        if isinstance(self.sat, bool) or not isinstance(self.sat, int):
            raise InvalidAmount(f"Amount must be an integer of satoshis: {self.sat!r}")
        if not 0 <= self.sat <= MAX_SATOSHIS:
            raise InvalidAmount(f"Amount out of range: {self.sat}")

    @classmethod
    def parse(cls, text: str) -> "Amount":
        """
        Parse a BTC decimal string such as ``"0.0001"``.

        Args:
            text (str): Decimal amount in BTC, at most 8 fractional digits.

        Returns:
            Amount: The parsed amount.

        Raises:
            InvalidAmount: If the text is not a finite, non-negative decimal that
                           fits in 64 bits of satoshis.
        """
        if not isinstance(text, str) or not text.strip() or "_" in text:
            raise InvalidAmount(f"Invalid amount: {text!r}")
        try:
            value = Decimal(text.strip())
        except InvalidOperation:
            raise InvalidAmount(f"Invalid amount: {text!r}") from None
        return cls.from_btc(value)

    @classmethod
    def from_btc(cls, value: Union[Decimal, int]) -> "Amount":
        if isinstance(value, bool) or not isinstance(value, (Decimal, int)):
            raise InvalidAmount(f"Invalid amount: {value!r}")
        value = Decimal(value)
        if not value.is_finite() or value.is_signed() and value != 0:
            raise InvalidAmount(f"Invalid amount: {value}")
        if value and value.adjusted() > MAX_BTC_DIGITS:
            raise InvalidAmount(f"Amount out of range: {value}")
        _, digits, exponent = value.as_tuple()
        if exponent < -8 and any(digits[exponent + 8:]):
            raise InvalidAmount(f"Amount has more than 8 decimal places: {value}")
        try:
            with localcontext() as ctx:
                ctx.prec = 60
                sat = int((value * SATOSHIS_PER_BTC).to_integral_value())
        except DecimalException as exc:
            raise InvalidAmount(f"Invalid amount: {value}") from exc
        if sat > MAX_SATOSHIS:
            raise InvalidAmount(f"Amount out of range: {value}")
        return cls(sat)

    @classmethod
    def from_sat(cls, sat: int) -> "Amount":
        return cls(sat)

    @classmethod
    def from_wei(cls, wei: int) -> "Amount":
        # Sub-satoshi wei are dropped.
        return cls(wei // WEI_PER_SATOSHI)

    @classmethod
    def from_native(cls, chain: Chain, value: NativeValue) -> "Amount":
        """Build an amount from the value a chain's RPC returned."""
        if chain is Chain.ETHEREUM:
            if isinstance(value, bool) or not isinstance(value, int):
                raise InvalidAmount(f"Invalid {chain} amount: {value!r}")
            return cls(value)
        if isinstance(value, str):
            return cls.parse(value)
        return cls.from_btc(value)

    def to_sat(self) -> int:
        return self.sat

    def to_wei(self) -> int:
        return self.sat * WEI_PER_SATOSHI

    def to_btc_string(self) -> str:
        whole, frac = divmod(self.sat, SATOSHIS_PER_BTC)
        return f"{whole}.{frac:08d}"

    def to_native(self, chain: Chain) -> NativeValue:
        """The exact representation ``chain`` expects in an RPC call."""
        if chain is Chain.ETHEREUM:
            return self.sat
        return self.to_btc_string()

    def __str__(self) -> str:
        return f"{self.to_btc_string()} BTC"


DEFAULT_FEE = Amount(10_000)
