"""
This module defines the core domain models for the application.

These classes represent the pure, technology-agnostic entities and data
structures that the lifecycle engine operates on, plus the ports (abstract
interfaces) that infrastructure adapters fulfill.
"""

import dataclasses
import enum
from pathlib import Path

from abc import ABC, abstractmethod
from typing import Dict, Optional, Sequence, Tuple


# --- Domain Models ---

@dataclasses.dataclass(frozen=True)
class ServerVersion:
    """
    A canonical server version.

    ``build`` is a packaging revision: it takes part in package selection
    but not in engine-version equality, so ``9.5.5.1`` and ``9.5.5`` share
    one engine version and one cache entry.
    """

    major: int
    minor: int
    patch: int
    build: Optional[int] = dataclasses.field(default=None, compare=False)

    @property
    def engine_version(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"

    @property
    def package_version(self) -> str:
        if self.build is None:
            return self.engine_version
        return f"{self.engine_version}-{self.build}"

    def __str__(self) -> str:
        return self.engine_version


@dataclasses.dataclass(frozen=True)
class CachedBinaryPackage:
    """An unpacked, ready-to-run binary set for one server version."""

    version: ServerVersion
    root: Path

    @property
    def bin_dir(self) -> Path:
        return self.root / "bin"

    @property
    def lib_dir(self) -> Path:
        return self.root / "lib"

    @property
    def share_dir(self) -> Path:
        return self.root / "share"

    def relocated(self, root: Path) -> "CachedBinaryPackage":
        """Returns the same package rooted somewhere else."""
        return dataclasses.replace(self, root=root)


@dataclasses.dataclass
class InstanceWorkspace:
    """
    The directory tree backing one instance.

    ``port`` is filled in by the configuration step and is only meaningful
    while the owning instance holds its port reservation.
    """

    instance_id: str
    root: Path
    port: Optional[int] = None

    @property
    def data_dir(self) -> Path:
        return self.root / "data"

    @property
    def log_dir(self) -> Path:
        return self.root / "logs"

    @property
    def log_file(self) -> Path:
        return self.log_dir / "postgresql.log"

    @property
    def config_file(self) -> Path:
        return self.root / "postgresql.conf"

    @property
    def hba_file(self) -> Path:
        return self.root / "pg_hba.conf"

    @property
    def package_dir(self) -> Path:
        """Location of the private package copy used by extensions."""
        return self.root / "pgsql"

    @property
    def is_initialized(self) -> bool:
        return (self.data_dir / "PG_VERSION").is_file()


@dataclasses.dataclass(frozen=True)
class ExtensionSpec:
    """An extension archive plus the SQL that activates it, in order."""

    download_url: str
    statements: Tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "statements", tuple(self.statements))


class ServerState(enum.Enum):
    """Observed state of the supervised server process."""

    CREATED = "created"
    STARTING = "starting"
    WAITING_READY = "waiting_ready"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ABORTED = "aborted"


ServerParameterSet = Dict[str, str]


# --- Ports (Interfaces) ---

class Downloader(ABC):
    """A port for any file downloader."""

    @abstractmethod
    def download(self, url: str, destination: Path) -> Path:
        """Downloads a single archive to a destination path."""
        pass


class Extractor(ABC):
    """A port for unpacking archives."""

    @abstractmethod
    def extract(self, archive: Path, destination: Path) -> Path:
        """
        Unpacks an archive into ``destination`` and returns the directory
        holding its content. Raises ExtractionError on failure.
        """
        pass


class AdminClient(ABC):
    """A port for the administrative SQL connection to a running instance."""

    @abstractmethod
    def connect(self):
        """Opens a DB-API connection to the instance."""
        pass

    @abstractmethod
    def probe(self) -> bool:
        """Returns True when the server accepts connections."""
        pass

    @abstractmethod
    def execute(self, statements: Sequence[str]):
        """
        Executes statements in order, stopping at the first failure.
        Raises ExtensionInstallError when a statement fails.
        """
        pass
