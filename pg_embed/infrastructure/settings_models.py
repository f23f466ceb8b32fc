"""
Pydantic models validating the structure of the pg_embed settings.

These models serve as a strict contract for the values loaded by Dynaconf,
so that a malformed settings file or environment override is caught when
the container is built rather than deep inside a server start.
"""

from pathlib import Path
from typing import Dict, Optional

from pydantic import BaseModel, Field, PositiveFloat, PositiveInt

from . import host as host_info

ZONKY_URL_TEMPLATE = (
    "https://repo1.maven.org/maven2/io/zonky/test/postgres/"
    "embedded-postgres-binaries-{platform}/{version}/"
    "embedded-postgres-binaries-{platform}-{version}.jar"
)


class CacheOptions(BaseModel):
    """Where binary packages come from and where they are kept."""

    root: Optional[Path] = None
    source_url_template: str = ZONKY_URL_TEMPLATE
    platform: Optional[str] = None
    lock_timeout: Optional[PositiveFloat] = None

    @property
    def resolved_root(self) -> Path:
        return self.root or host_info.cache_dir() / "binaries"

    @property
    def resolved_platform(self) -> str:
        return self.platform or host_info.package_platform()


class WorkspaceOptions(BaseModel):
    root: Optional[Path] = None

    @property
    def resolved_root(self) -> Path:
        return self.root or host_info.temp_dir() / "instances"


class DownloadOptions(BaseModel):
    timeout: PositiveFloat = 120
    chunk_size: PositiveInt = 65536
    progress: bool = True
    token: Optional[str] = None


class ExtensionOptions(BaseModel):
    """Retry policy for third-party extension downloads."""

    retry_attempts: PositiveInt = 3
    retry_min_wait: float = Field(default=1, ge=0)
    retry_max_wait: float = Field(default=10, ge=0)


class ServerOptions(BaseModel):
    host: str = "127.0.0.1"
    startup_timeout: PositiveFloat = 60
    poll_interval: PositiveFloat = 0.25
    shutdown_timeout: PositiveFloat = 30
    initdb_timeout: PositiveFloat = 300
    port_attempts: PositiveInt = 20
    port_lock_dir: Optional[Path] = None
    defaults: Dict[str, str] = Field(default_factory=dict)

    @property
    def resolved_port_lock_dir(self) -> Path:
        return self.port_lock_dir or host_info.temp_dir() / "ports"


class LoggingOptions(BaseModel):
    level: str = "INFO"


class EmbedOptions(BaseModel):
    """Represents the top-level structure of the pg_embed settings."""

    cache: CacheOptions = Field(default_factory=CacheOptions)
    workspace: WorkspaceOptions = Field(default_factory=WorkspaceOptions)
    download: DownloadOptions = Field(default_factory=DownloadOptions)
    extensions: ExtensionOptions = Field(default_factory=ExtensionOptions)
    server: ServerOptions = Field(default_factory=ServerOptions)
    logging: LoggingOptions = Field(default_factory=LoggingOptions)
