from typing import Annotated

from pydantic import BeforeValidator, Field, TypeAdapter

from switchboard.amount import MAX_SATOSHIS

HexInt = Annotated[
    int,
    BeforeValidator(
        lambda x: int(x, 16) if isinstance(x, str) and x.startswith("0x") else x
    ),
]

# Integer satoshis as accepted on the gateway surface.
Satoshis = Annotated[int, Field(strict=True, ge=0, le=MAX_SATOSHIS)]

hex_int = TypeAdapter(HexInt)
