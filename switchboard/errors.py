from typing import Optional


class SwitchboardError(Exception):
    """Base error. ``rpc_code`` is the JSON-RPC code the gateway reports."""

    rpc_code: int = -32000

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class InvalidAmount(SwitchboardError):
    """Amount input could not be parsed or is out of range."""

    rpc_code = -32602


class RpcError(SwitchboardError):
    """A daemon rejected a well-formed call."""

    rpc_code = -32000

    def __init__(self, code: int, message: str) -> None:
        self.code = code
        super().__init__(message)

    def __str__(self) -> str:
        return f"RPC error {self.code}: {self.message}"


class TransportError(SwitchboardError):
    """A daemon could not be reached."""

    rpc_code = -32001


class NoAddressAvailable(SwitchboardError):
    """The node controls no account to hand out."""

    rpc_code = -32002


class UnsupportedOperation(SwitchboardError):
    """The operation is recognized but cannot be done through RPC."""

    rpc_code = -32003


class ProvisioningFailure(SwitchboardError):
    """Binaries, parameters or daemons could not be brought up."""


class ProcessExitFailure(SwitchboardError):
    """A daemon did not exit after being asked to stop."""

    def __init__(self, message: str, chain: Optional[str] = None) -> None:
        self.chain = chain
        super().__init__(message)


class GatewayError(SwitchboardError):
    """The gateway server could not start or stopped on its own."""
