"""
Materializes an instance's data directory and configuration files and
reserves its listening port.
"""

import dataclasses
import logging
import socket
import subprocess
from pathlib import Path
from typing import Mapping, Optional

from ..application.domain import (
    CachedBinaryPackage,
    InstanceWorkspace,
    ServerParameterSet,
)
from ..application.exceptions import (
    ConfigurationError,
    InitializationError,
    NoPortAvailableError,
)

from .host import executable
from .locks import FileLock
from .process import package_environment

# Parameters owned by the lifecycle engine
RESERVED_PARAMETERS = frozenset(
    {"port", "hba_file", "config_file", "data_directory", "listen_addresses"}
)


def quote_value(value) -> str:
    """Renders a postgresql.conf value as a single-quoted string."""
    text = str(value).lower() if isinstance(value, bool) else str(value)
    return "'" + text.replace("\\", "\\\\").replace("'", "''") + "'"


@dataclasses.dataclass
class PortReservation:
    """A listening port held exclusively until released."""

    port: int
    lock: FileLock

    def release(self):
        self.lock.release()


class ConfigurationAssembler:
    """Bootstraps data directories and writes per-instance configuration."""

    def __init__(
        self,
        host: str,
        port_lock_dir: Path,
        port_attempts: int,
        defaults: Optional[Mapping[str, str]] = None,
        initdb_timeout: float = 300,
    ):
        self.logger = logging.getLogger(self.__class__.__name__)
        self.host = host
        self.port_lock_dir = Path(port_lock_dir)
        self.port_attempts = port_attempts
        self.defaults = dict(defaults or {})
        self.initdb_timeout = initdb_timeout

    def _bind_probe(self, port: int = 0) -> int:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind((self.host, port))
            return s.getsockname()[1]

    def reserve_port(self) -> PortReservation:
        """
        Pick a free loopback port and reserve it against sibling instances.

        The OS hands out a currently free port; a per-port lock file then
        claims it across processes. A port already claimed by a racing
        instance is skipped.

        Raises:
            NoPortAvailableError: If no port is claimed after the configured
                                  number of attempts.
        """

        for attempt in range(1, self.port_attempts + 1):
            try:
                port = self._bind_probe()
            except OSError as e:
                raise NoPortAvailableError(
                    f"Cannot bind on {self.host}: {e}"
                ) from e

            lock = FileLock(self.port_lock_dir / f"{port}.lock")
            if not lock.try_acquire():
                self.logger.debug(f"Port {port} is claimed, retrying...")
                continue

            try:
                # The OS may have given the port away between probe and lock
                self._bind_probe(port)
            except OSError:
                lock.release()
                continue

            self.logger.info(f"Reserved port {port} (attempt {attempt})")
            return PortReservation(port=port, lock=lock)

        raise NoPortAvailableError(
            "No free port could be reserved",
            attempts=self.port_attempts,
            host=self.host,
        )

    def bootstrap(
        self,
        package: CachedBinaryPackage,
        workspace: InstanceWorkspace,
        admin_user: str,
    ) -> bool:
        """
        Runs initdb when the data directory is empty.

        Returns:
            True when a fresh data directory was created, False when an
            existing one was kept.

        Raises:
            InitializationError: If initdb exits non-zero.
        """

        if any(workspace.data_dir.iterdir()):
            self.logger.info(
                f"Data directory {workspace.data_dir} exists, skipping initdb."
            )
            return False

        command = [
            str(package.bin_dir / executable("initdb")),
            "-D", str(workspace.data_dir),
            "-U", admin_user,
            "-A", "trust",
            "-E", "UTF8",
            "--no-locale",
        ]
        self.logger.info(f"Initializing data directory {workspace.data_dir}")
        try:
            result = subprocess.run(
                command,
                env=package_environment(package),
                capture_output=True,
                text=True,
                timeout=self.initdb_timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise InitializationError(
                f"initdb could not run: {e}",
                version=package.version.package_version,
                workspace=workspace.root,
            ) from e

        if result.returncode != 0:
            raise InitializationError(
                f"initdb exited with {result.returncode}: "
                f"{(result.stderr or result.stdout).strip()}",
                version=package.version.package_version,
                workspace=workspace.root,
            )
        return True

    def merged_parameters(
        self, port: int, params: Optional[ServerParameterSet] = None
    ) -> ServerParameterSet:
        """Built-in defaults overlaid with caller overrides, keyed by name."""
        params = dict(params or {})
        reserved = RESERVED_PARAMETERS.intersection(
            k.lower() for k in params
        )
        if reserved:
            raise ConfigurationError(
                "Parameters are managed by pg_embed and cannot be overridden",
                parameters=sorted(reserved),
            )

        merged = {**self.defaults, **params}
        merged["listen_addresses"] = self.host
        merged["port"] = str(port)
        return merged

    def write_config(
        self,
        workspace: InstanceWorkspace,
        port: int,
        params: Optional[ServerParameterSet] = None,
    ):
        merged = self.merged_parameters(port, params)
        merged["hba_file"] = str(workspace.hba_file)

        lines = ["# Generated by pg_embed. Rewritten on every start."]
        lines += [f"{name} = {quote_value(v)}" for name, v in merged.items()]
        workspace.config_file.write_text("\n".join(lines) + "\n")

    def write_hba(self, workspace: InstanceWorkspace):
        """Trust loopback connections; the server listens on loopback only."""
        rules = [
            "# TYPE  DATABASE  USER  ADDRESS       METHOD",
            "host    all       all   127.0.0.1/32  trust",
            "host    all       all   ::1/128       trust",
        ]
        workspace.hba_file.write_text("\n".join(rules) + "\n")

    def initialize(
        self,
        package: CachedBinaryPackage,
        workspace: InstanceWorkspace,
        params: Optional[ServerParameterSet],
        admin_user: str,
    ) -> PortReservation:
        """
        Prepare the workspace to launch: data directory, port and files.

        Returns:
            The port reservation; the caller releases it after stopping.

        Raises:
            InitializationError: If initdb fails.
            NoPortAvailableError: If no port can be claimed.
            ConfigurationError: If a reserved parameter is overridden.
        """

        self.merged_parameters(0, params)
        self.bootstrap(package, workspace, admin_user)
        reservation = self.reserve_port()
        try:
            workspace.port = reservation.port
            self.write_config(workspace, reservation.port, params)
            self.write_hba(workspace)
        except BaseException:
            reservation.release()
            raise
        return reservation
