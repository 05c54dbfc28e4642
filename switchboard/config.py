import os
from pathlib import Path
from typing import Any, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)
from yarl import URL

DEFAULT_DATADIR = Path.home() / ".switchboard"


class ChainSettings(BaseModel):
    """
    RPC endpoint of one daemon.

    Attributes:
        host (str): Interface the daemon serves RPC on.
        port (int): RPC port.
        p2p_port (Optional[int]): Peer-to-peer port, if the daemon should not
                                  use its default.
    """

    model_config = ConfigDict(frozen=True)

    host: str = "127.0.0.1"
    port: int
    p2p_port: Optional[int] = None

    @property
    def url(self) -> URL:
        """
        Assemble the RPC URL from settings.

        :return: RPC URL.
        """
        return URL.build(scheme="http", host=self.host, port=self.port)


class Settings(BaseSettings):
    """Settings for the switchboard daemon, read once at startup."""

    # Filesystem
    datadir: Path = DEFAULT_DATADIR
    bin_download_url: str = "http://localhost:8080/bin.tar.gz"
    params_dir: Path = Field(default_factory=lambda: Path.home() / ".zcash-params")

    # Gateway
    host: str = "127.0.0.1"
    port: int = 18000

    # Network mode
    regtest: bool = True

    # Credentials shared by the bitcoin style daemons
    rpcuser: str = "user"
    rpcpassword: str = "password"

    # Daemons
    main: ChainSettings = ChainSettings(port=18443)
    zcash: ChainSettings = ChainSettings(port=18232)
    ethereum: ChainSettings = ChainSettings(port=8545)

    # Timing
    settle_delay: float = 1.0  # Seconds between spawn and first RPC call
    shutdown_timeout: Optional[float] = 300.0  # None waits forever
    rpc_timeout: Optional[float] = None  # None lets calls run to completion
    download_timeout: Optional[float] = None  # Binary archive download, None waits

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="SWITCHBOARD_",
        env_nested_delimiter="__",
        env_file_encoding="utf-8",
        frozen=True,
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    @property
    def gateway_url(self) -> URL:
        return URL.build(scheme="http", host=self.host, port=self.port)

    @property
    def bin_dir(self) -> Path:
        return self.datadir / "bin"

    @property
    def data_dir(self) -> Path:
        return self.datadir / "data"

    @property
    def log_dir(self) -> Path:
        return self.datadir / "logs"


def load_settings(datadir: Optional[Path] = None, **overrides: Any) -> Settings:
    """
    Load settings, reading ``<datadir>/config.toml`` when it exists.

    Args:
        datadir (Optional[Path]): Data directory. Falls back to
                                  ``SWITCHBOARD_DATADIR`` and then to
                                  ``~/.switchboard``.
        **overrides: Values that take priority over every other source.

    Returns:
        Settings: The loaded, frozen settings.
    """
    datadir = Path(
        datadir or os.environ.get("SWITCHBOARD_DATADIR") or DEFAULT_DATADIR,
    ).expanduser()

    class FileSettings(Settings):
        model_config = SettingsConfigDict(toml_file=datadir / "config.toml")

    return FileSettings(datadir=datadir, **overrides)
