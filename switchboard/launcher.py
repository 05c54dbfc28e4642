import asyncio
import shutil
import signal
import tarfile
from pathlib import Path
from typing import IO, Any, List, NamedTuple, Optional

import aiohttp
from loguru import logger

from switchboard.chains import Chain
from switchboard.config import Settings
from switchboard.errors import ProcessExitFailure, ProvisioningFailure
from switchboard.utils.decorators import log_execution

BINARIES = {
    Chain.MAIN: "drivechaind",
    Chain.ZCASH: "zcashd",
    Chain.ETHEREUM: "geth",
}

ETHEREUM_GENESIS = "genesis.json"
ETHEREUM_PASSWORD = "switchboard"
FETCH_PARAMS_SCRIPT = "fetch-params.sh"


class Daemon:
    """
    Handle on one running daemon process.

    Owned by the supervisor. ``process`` is an ``asyncio.subprocess.Process``.
    """

    def __init__(
        self,
        chain: Chain,
        process: Any,
        log_file: Optional[IO[bytes]] = None,
    ) -> None:
        self.chain = chain
        self.process = process
        self.log_file = log_file

    def __repr__(self) -> str:
        return f"Daemon({self.chain}, pid={self.pid})"

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode

    def interrupt(self) -> None:
        """Ask the daemon to shut down gracefully."""
        if self.returncode is None:
            self.process.send_signal(signal.SIGINT)

    def kill(self) -> None:
        if self.returncode is None:
            self.process.kill()

    async def wait(self, timeout: Optional[float] = None) -> int:
        """
        Wait for the process to exit.

        Args:
            timeout (Optional[float]): Seconds to wait. None waits forever.

        Returns:
            int: The exit status.

        Raises:
            ProcessExitFailure: If the process is still running after ``timeout``.
        """
        try:
            returncode = await asyncio.wait_for(self.process.wait(), timeout)
        except asyncio.TimeoutError:
            raise ProcessExitFailure(
                f"{self.chain} daemon did not exit within {timeout} seconds",
                chain=self.chain.value,
            ) from None
        if self.log_file is not None:
            self.log_file.close()
        return returncode


class Daemons(NamedTuple):
    main: Daemon
    zcash: Daemon
    ethereum: Daemon


class Launcher:
    """
    Provisions and spawns the three daemons.

    Every provisioning step checks for its result on disk first, so running
    them again after a crash only does what is still missing.

    Methods:
        binaries_present() -> bool:
        download_binaries(url: str) -> None:
        params_present() -> bool:
        fetch_params() -> None:
        regtest_genesis_present() -> bool:
        ethereum_regtest_setup() -> None:
        command_line(chain: Chain) -> List[str]:
        spawn(chain: Chain) -> Daemon:
        spawn_daemons() -> Daemons:
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def binary(self, chain: Chain) -> Path:
        return self.settings.bin_dir / BINARIES[chain]

    def chain_datadir(self, chain: Chain) -> Path:
        return self.settings.data_dir / chain.value

    def binaries_present(self) -> bool:
        return self.settings.bin_dir.exists()

    def params_present(self) -> bool:
        return self.settings.params_dir.exists()

    def regtest_genesis_present(self) -> bool:
        return (self.chain_datadir(Chain.ETHEREUM) / "geth" / "chaindata").exists()

    @log_execution("download binaries")
    async def download_binaries(self, url: str) -> None:
        """
        Download the binary archive from ``url`` and unpack it into the datadir.

        The archive holds a top level ``bin`` directory. It is unpacked next to
        its final place and moved in last, so ``bin`` only exists once complete.

        Raises:
            ProvisioningFailure: If the download or the extraction fails.
        """
        datadir = self.settings.datadir
        datadir.mkdir(parents=True, exist_ok=True)
        archive = datadir / "bin.tar.gz.part"
        staging = datadir / "bin.partial"

        logger.info(f"Downloading binaries from {url}")
        try:
            timeout = aiohttp.ClientTimeout(total=self.settings.download_timeout)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(url) as response:
                    if response.status != 200:
                        raise ProvisioningFailure(
                            f"Downloading {url} failed with status {response.status}"
                        )
                    with archive.open("wb") as f:
                        async for chunk in response.content.iter_chunked(1 << 16):
                            f.write(chunk)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            archive.unlink(missing_ok=True)
            reason = str(exc) or type(exc).__name__
            raise ProvisioningFailure(f"Downloading {url} failed: {reason}") from exc

        try:
            await asyncio.to_thread(_extract, archive, staging)
            extracted = staging / "bin"
            if not extracted.is_dir():
                raise ProvisioningFailure(f"Archive from {url} has no bin directory")
            extracted.rename(self.settings.bin_dir)
        finally:
            archive.unlink(missing_ok=True)
            shutil.rmtree(staging, ignore_errors=True)

    @log_execution("fetch zcash parameters")
    async def fetch_params(self) -> None:
        script = self.settings.bin_dir / FETCH_PARAMS_SCRIPT
        await _run(str(script))
        if not self.params_present():
            raise ProvisioningFailure(
                f"{FETCH_PARAMS_SCRIPT} finished but {self.settings.params_dir} is missing"
            )

    @log_execution("ethereum regtest setup")
    async def ethereum_regtest_setup(self) -> None:
        """Initialise the ethereum regtest genesis and create its first account."""
        datadir = self.chain_datadir(Chain.ETHEREUM)
        datadir.mkdir(parents=True, exist_ok=True)
        geth = str(self.binary(Chain.ETHEREUM))
        genesis = self.settings.bin_dir / ETHEREUM_GENESIS

        await _run(geth, "--datadir", str(datadir), "init", str(genesis))

        password_file = self._ethereum_password_file()
        password_file.write_text(ETHEREUM_PASSWORD)
        await _run(
            geth, "--datadir", str(datadir),
            "account", "new", "--password", str(password_file),
        )

    def _ethereum_password_file(self) -> Path:
        return self.chain_datadir(Chain.ETHEREUM) / "password.txt"

    def command_line(self, chain: Chain) -> List[str]:
        """Executable and arguments used to start ``chain``'s daemon."""
        settings = self.settings
        endpoint = getattr(settings, chain.value)
        datadir = self.chain_datadir(chain)
        args = [str(self.binary(chain))]

        if chain is Chain.ETHEREUM:
            args += [
                "--datadir", str(datadir),
                "--http",
                "--http.addr", endpoint.host,
                "--http.port", str(endpoint.port),
                "--http.api", "eth,web3,personal,net",
                "--maxpeers", "0",
                "--nodiscover",
            ]
            if endpoint.p2p_port is not None:
                args += ["--port", str(endpoint.p2p_port)]
            if settings.regtest:
                args += [
                    "--unlock", "0",
                    "--password", str(self._ethereum_password_file()),
                    "--allow-insecure-unlock",
                ]
            return args

        args += [
            f"-datadir={datadir}",
            f"-rpcuser={settings.rpcuser}",
            f"-rpcpassword={settings.rpcpassword}",
            f"-rpcport={endpoint.port}",
            "-server",
        ]
        if endpoint.p2p_port is not None:
            args.append(f"-port={endpoint.p2p_port}")
        if chain is Chain.ZCASH:
            args.append(f"-mainport={settings.main.port}")
        if settings.regtest:
            args.append("-regtest")
        return args

    async def spawn(self, chain: Chain) -> Daemon:
        """
        Start ``chain``'s daemon with its output appended to ``logs/<chain>.log``.

        The daemon gets its own session so a terminal interrupt reaches the
        supervisor only, which then stops the daemons in order.

        Raises:
            ProvisioningFailure: If the process cannot be started.
        """
        datadir = self.chain_datadir(chain)
        datadir.mkdir(parents=True, exist_ok=True)
        if chain is Chain.ZCASH:
            (datadir / "zcash.conf").touch()
        self.settings.log_dir.mkdir(parents=True, exist_ok=True)

        args = self.command_line(chain)
        log_file = (self.settings.log_dir / f"{chain}.log").open("ab")
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=log_file,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as exc:
            log_file.close()
            raise ProvisioningFailure(f"Could not start {chain} daemon: {exc}") from exc

        logger.info(f"Started {chain} daemon, pid {process.pid}")
        return Daemon(chain, process, log_file)

    @log_execution("spawn daemons")
    async def spawn_daemons(self) -> Daemons:
        spawned: List[Daemon] = []
        try:
            for chain in (Chain.MAIN, Chain.ZCASH, Chain.ETHEREUM):
                spawned.append(await self.spawn(chain))
        except ProvisioningFailure:
            for daemon in spawned:
                daemon.kill()
                await daemon.wait()
            raise
        return Daemons(*spawned)


def _extract(archive: Path, destination: Path) -> None:
    shutil.rmtree(destination, ignore_errors=True)
    destination.mkdir(parents=True)
    try:
        with tarfile.open(archive, "r:*") as tar:
            if hasattr(tarfile, "data_filter"):
                tar.extractall(destination, filter="data")
            else:
                tar.extractall(destination)
    except (tarfile.TarError, OSError) as exc:
        raise ProvisioningFailure(f"Could not unpack {archive.name}: {exc}") from exc


async def _run(*args: str) -> None:
    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as exc:
        raise ProvisioningFailure(f"Could not run {args[0]}: {exc}") from exc
    output, _ = await process.communicate()
    if process.returncode != 0:
        tail = output.decode(errors="replace").strip().splitlines()[-5:]
        raise ProvisioningFailure(
            f"{Path(args[0]).name} exited with status {process.returncode}: "
            + " | ".join(tail)
        )
