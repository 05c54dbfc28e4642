import asyncio
import json
import socket
from contextlib import asynccontextmanager
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, AsyncGenerator, Callable, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import Field, ValidationError, validate_call

from switchboard.amount import Amount
from switchboard.chains import Chain, Sidechain
from switchboard.client import SidechainClient
from switchboard.errors import GatewayError, SwitchboardError
from switchboard.models import RpcRequest
from switchboard.rpc_client import coerce_param
from switchboard.utils.custom_types import Satoshis

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
SHUTTING_DOWN = -32004

BlockCount = Annotated[int, Field(strict=True, ge=1)]


class ServerState(str, Enum):
    STARTING = "starting"
    LISTENING = "listening"
    DRAINING = "draining"
    STOPPED = "stopped"


class MethodNotFound(Exception):
    pass


def _optional_amount(sat: Optional[int]) -> Optional[Amount]:
    return Amount.from_sat(sat) if sat is not None else None


class Switchboardd:
    """
    The gateway's RPC methods.

    Each method validates its parameters and delegates to the shared
    SidechainClient. Amounts arrive as integer satoshis.
    """

    def __init__(self, client: SidechainClient) -> None:
        self.client = client
        self.methods: Dict[str, Callable[..., Any]] = {
            "generate": self.generate,
            "zcash": self.zcash,
            "main": self.main,
            "getbalances": self.getbalances,
            "getblockcounts": self.getblockcounts,
            "getnewaddress": self.getnewaddress,
            "deposit": self.deposit,
            "withdraw": self.withdraw,
            "refund": self.refund,
        }

    async def dispatch(self, request: RpcRequest) -> Any:
        handler = self.methods.get(request.method)
        if handler is None:
            raise MethodNotFound(request.method)
        if isinstance(request.params, dict):
            return await handler(**request.params)
        return await handler(*request.params)

    @validate_call
    async def generate(
        self,
        count: BlockCount,
        amount: Optional[Satoshis] = None,
    ) -> List[str]:
        return await self.client.generate(count, _optional_amount(amount))

    @validate_call
    async def zcash(self, method: str, params: Optional[List[Any]] = None) -> Any:
        return await self._call_raw(Chain.ZCASH, method, params)

    @validate_call
    async def main(self, method: str, params: Optional[List[Any]] = None) -> Any:
        return await self._call_raw(Chain.MAIN, method, params)

    async def _call_raw(
        self,
        chain: Chain,
        method: str,
        params: Optional[List[Any]],
    ) -> Any:
        coerced = [
            coerce_param(param) if isinstance(param, str) else param
            for param in params or []
        ]
        return await self.client.rpc(chain).call(method, coerced)

    @validate_call
    async def getbalances(self) -> Dict[str, str]:
        balances = await self.client.get_balances()
        return balances.model_dump()

    @validate_call
    async def getblockcounts(self) -> Dict[str, int]:
        block_counts = await self.client.get_block_counts()
        return block_counts.model_dump()

    @validate_call
    async def getnewaddress(self, chain: Chain) -> str:
        return await self.client.get_new_address(chain)

    @validate_call
    async def deposit(
        self,
        sidechain: Sidechain,
        amount: Satoshis,
        fee: Optional[Satoshis] = None,
    ) -> str:
        return await self.client.deposit(
            sidechain, Amount.from_sat(amount), _optional_amount(fee),
        )

    @validate_call
    async def withdraw(
        self,
        sidechain: Sidechain,
        amount: Satoshis,
        fee: Optional[Satoshis] = None,
    ) -> None:
        await self.client.withdraw(
            sidechain, Amount.from_sat(amount), _optional_amount(fee),
        )

    @validate_call
    async def refund(
        self,
        sidechain: Sidechain,
        amount: Satoshis,
        fee: Optional[Satoshis] = None,
    ) -> None:
        await self.client.refund(
            sidechain, Amount.from_sat(amount), _optional_amount(fee),
        )


def _result(request_id: Any, result: Any) -> Dict[str, Any]:
    # Node decimals keep every digit, JSON floats would not
    encoded = jsonable_encoder(result, custom_encoder={Decimal: str})
    return {"jsonrpc": "2.0", "id": request_id, "result": encoded}


def _error(request_id: Any, code: int, message: str) -> Dict[str, Any]:
    return {
        "jsonrpc": "2.0",
        "id": request_id,
        "error": {"code": code, "message": message},
    }


def _describe(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in error['loc']) or 'params'}: {error['msg']}"
        for error in exc.errors()
    )


class GatewayServer:
    """
    JSON-RPC server in front of a SidechainClient.

    The server is a stateless router: concurrent requests share the one client.
    ``run`` serves until the stop event fires, then drains in-flight requests.

    Attributes:
        state (ServerState): Where the server is in its lifecycle.
        rpc (Switchboardd): The method table.
        app (FastAPI): The ASGI application.
    """

    def __init__(
        self,
        client: SidechainClient,
        host: str = "127.0.0.1",
        port: int = 18000,
    ) -> None:
        self.host = host
        self.port = port
        self.state = ServerState.STARTING
        self.rpc = Switchboardd(client)
        self.app = self.create_app()
        self.bound_port: Optional[int] = None

    def create_app(self) -> FastAPI:
        @asynccontextmanager
        async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
            self.state = ServerState.LISTENING
            logger.info(f"Gateway listening on {self.host}:{self.bound_port}")
            yield

        app = FastAPI(
            title="switchboard",
            lifespan=lifespan,
            docs_url=None,
            redoc_url=None,
            openapi_url=None,
        )

        @app.middleware("http")
        async def reject_while_draining(request: Request, call_next: Any) -> Any:
            if self.state is ServerState.DRAINING:
                return JSONResponse(
                    _error(None, SHUTTING_DOWN, "Server is shutting down"),
                    status_code=503,
                )
            return await call_next(request)

        app.add_api_route("/", self.handle, methods=["POST"])
        return app

    async def handle(self, request: Request) -> JSONResponse:
        """Handle one JSON-RPC request. Errors never escape as HTTP failures."""
        try:
            payload = json.loads(await request.body())
        except ValueError:
            return JSONResponse(_error(None, PARSE_ERROR, "Parse error"))

        try:
            rpc_request = RpcRequest.model_validate(payload)
        except ValidationError:
            request_id = payload.get("id") if isinstance(payload, dict) else None
            return JSONResponse(_error(request_id, INVALID_REQUEST, "Invalid request"))

        request_id = rpc_request.id
        try:
            result = await self.rpc.dispatch(rpc_request)
        except MethodNotFound:
            logger.warning(f"Unknown method: {rpc_request.method}")
            message = f"Method not found: {rpc_request.method}"
            return JSONResponse(_error(request_id, METHOD_NOT_FOUND, message))
        except ValidationError as exc:
            return JSONResponse(_error(request_id, INVALID_PARAMS, _describe(exc)))
        except SwitchboardError as exc:
            logger.warning(f"{rpc_request.method} failed: {exc}")
            return JSONResponse(_error(request_id, exc.rpc_code, exc.message))
        except Exception:
            logger.exception(f"Unexpected error in {rpc_request.method}")
            return JSONResponse(_error(request_id, INTERNAL_ERROR, "Internal error"))

        return JSONResponse(_result(request_id, result))

    def _bind(self) -> socket.socket:
        family = socket.AF_INET6 if ":" in self.host else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.host, self.port))
        except OSError as exc:
            sock.close()
            raise GatewayError(f"Could not bind {self.host}:{self.port}: {exc}") from exc
        self.bound_port = sock.getsockname()[1]
        return sock

    async def run(self, stop_event: asyncio.Event) -> None:
        """
        Serve until ``stop_event`` is set, then drain and return.

        Raises:
            GatewayError: If the server cannot bind or fails to start.
        """
        sock = self._bind()
        config = uvicorn.Config(self.app, log_config=None, lifespan="on")
        server = uvicorn.Server(config)

        serve_task = asyncio.create_task(server.serve(sockets=[sock]))
        stop_task = asyncio.create_task(stop_event.wait())
        try:
            done, _ = await asyncio.wait(
                {serve_task, stop_task},
                return_when=asyncio.FIRST_COMPLETED,
            )

            if serve_task in done:
                stop_task.cancel()
                self.state = ServerState.STOPPED
                exc = serve_task.exception()
                if exc is not None:
                    raise GatewayError(f"Gateway failed: {exc}") from exc
                if not server.started:
                    raise GatewayError("Gateway failed to start")
                # uvicorn caught the signal before we did
                logger.info("Gateway stopped by signal")
                stop_event.set()
                return

            logger.info("Stop requested, draining gateway")
            self.state = ServerState.DRAINING
            server.should_exit = True
            await serve_task
        finally:
            sock.close()

        self.state = ServerState.STOPPED
        logger.info("Gateway stopped")
