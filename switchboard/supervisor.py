import asyncio
from enum import Enum
from typing import Optional

from loguru import logger

from switchboard.client import SidechainClient
from switchboard.config import Settings
from switchboard.errors import ProcessExitFailure, SwitchboardError
from switchboard.launcher import Daemon, Daemons, Launcher
from switchboard.server import GatewayServer
from switchboard.utils.decorators import log_execution


class BootState(str, Enum):
    UNPROVISIONED = "unprovisioned"
    PROVISIONED = "provisioned"
    SPAWNED = "spawned"
    ACTIVATED = "activated"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class Supervisor:
    """
    Drives one boot of the switchboard from provisioning to shutdown.

    The supervisor owns the daemon processes. The client and the gateway only
    ever see RPC endpoints. Steps run strictly in order:

    1. provision binaries, zcash parameters and the ethereum regtest genesis,
       each only if missing
    2. spawn main, zcash and ethereum, then wait ``settle_delay``
    3. on the first regtest launch, activate the sidechains
    4. serve the gateway until ``stop_event`` is set
    5. drain the gateway, stop main and zcash over RPC, interrupt ethereum
    6. wait for zcash, main and ethereum to exit, in that order

    Attributes:
        state (BootState): The step the boot has reached.
        first_launch (bool): Whether this boot downloaded the binaries.
    """

    def __init__(
        self,
        settings: Settings,
        stop_event: asyncio.Event,
        launcher: Optional[Launcher] = None,
        client: Optional[SidechainClient] = None,
        server: Optional[GatewayServer] = None,
    ) -> None:
        self.settings = settings
        self.stop_event = stop_event
        self.launcher = launcher or Launcher(settings)
        self.client = client or SidechainClient.from_settings(settings)
        self.server = server or GatewayServer(
            self.client, host=settings.host, port=settings.port,
        )
        self.state = BootState.UNPROVISIONED
        self.first_launch = False

    async def run(self) -> None:
        """
        Run one full boot.

        Raises:
            SwitchboardError: Any provisioning, spawn, gateway or shutdown
                              failure. There is no degraded mode.
        """
        self.first_launch = await self.provision()
        self.state = BootState.PROVISIONED

        daemons = await self.launcher.spawn_daemons()
        self.state = BootState.SPAWNED
        try:
            await asyncio.sleep(self.settings.settle_delay)

            if self.settings.regtest and self.first_launch:
                await self.client.activate_sidechains()
            self.state = BootState.ACTIVATED

            self.state = BootState.RUNNING
            await self.server.run(self.stop_event)
        finally:
            self.state = BootState.STOPPING
            await self.shutdown(daemons)
        self.state = BootState.STOPPED
        logger.info("All daemons stopped")

    async def provision(self) -> bool:
        """
        Bring the datadir up to date.

        Returns:
            bool: True if the binaries were downloaded by this call.
        """
        first_launch = False
        if not self.launcher.binaries_present():
            await self.launcher.download_binaries(self.settings.bin_download_url)
            first_launch = True
        if self.settings.regtest and not self.launcher.regtest_genesis_present():
            await self.launcher.ethereum_regtest_setup()
        if not self.launcher.params_present():
            await self.launcher.fetch_params()
        return first_launch

    @log_execution("shutdown")
    async def shutdown(self, daemons: Daemons) -> None:
        try:
            await self.client.stop()
        except SwitchboardError as exc:
            # The daemons may already be gone, the waits below still decide.
            logger.error(f"Could not stop daemons over RPC: {exc}")
        daemons.ethereum.interrupt()
        try:
            for daemon in (daemons.zcash, daemons.main, daemons.ethereum):
                await self._wait(daemon)
        finally:
            await self.client.close()

    async def _wait(self, daemon: Daemon) -> None:
        timeout = self.settings.shutdown_timeout
        try:
            returncode = await daemon.wait(timeout)
        except ProcessExitFailure:
            logger.error(f"{daemon.chain} daemon did not exit in time, killing it")
            daemon.kill()
            await daemon.wait()
            raise
        if returncode != 0:
            logger.warning(f"{daemon.chain} daemon exited with status {returncode}")
        else:
            logger.info(f"{daemon.chain} daemon exited")
