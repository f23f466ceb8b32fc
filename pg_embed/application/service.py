"""
The lifecycle facade test code holds on to.

PgServer composes the version resolver, binary cache, workspace manager,
configuration assembler, process supervisor and extension installer in
order, and guarantees that every resource it acquired is released again,
whether start-up fails partway, the caller forgets to stop, or an exception
escapes a ``with`` block.
"""

import logging
import shutil
import weakref
from pathlib import Path
from typing import Iterable, List, Mapping, Optional, Union
from uuid import UUID

from ..infrastructure.binary_cache import BinaryCache
from ..infrastructure.containers import Container
from ..infrastructure.host import IS_WINDOWS
from ..infrastructure.process import (
    ProcessSupervisor,
    package_environment,
    pg_ctl_stop_command,
    server_command,
)
from ..infrastructure.workspace import new_instance_id

from .domain import (
    AdminClient,
    CachedBinaryPackage,
    ExtensionSpec,
    InstanceWorkspace,
    ServerState,
)
from .exceptions import (
    AlreadyStartedError,
    ExtensionInstallError,
    PgEmbedError,
)
from .versions import resolve

logger = logging.getLogger(__name__)

_ACTIVE_STATES = (
    ServerState.STARTING, ServerState.WAITING_READY, ServerState.RUNNING
)


def _release_resources(supervisor, reservation, manager, workspace, clear):
    """Finalizer for instances that were never stopped explicitly."""
    supervisor.stop()
    reservation.release()
    manager.release(workspace, clear)


class PgServer:
    """
    A disposable PostgreSQL instance for one test run or test class.

    Example:
        with PgServer("16.2.0", clear_instance_dir_on_stop=True) as server:
            with server.connect() as conn:
                ...
    """

    def __init__(
        self,
        version: str,
        admin_user: str = "postgres",
        server_params: Optional[Mapping[str, str]] = None,
        extensions: Optional[Iterable[ExtensionSpec]] = None,
        instance_id: Optional[Union[str, UUID]] = None,
        add_local_user_access_permission: bool = False,
        clear_instance_dir_on_stop: bool = False,
        fail_on_extension_error: bool = False,
        container: Optional[Container] = None,
    ):
        """
        Initializes the facade. Nothing is started until start().

        Args:
            version: A dotted server version, e.g. "9.5.5.1" or "16.2.0".
            admin_user: The superuser created by initdb.
            server_params: Parameters overriding the built-in defaults.
            extensions: Extensions installed in order once running.
            instance_id: A stable identity; reusing one reuses its data.
            add_local_user_access_permission: Grant the local account full
                access to the instance directory.
            clear_instance_dir_on_stop: Delete the instance directory after
                stopping.
            fail_on_extension_error: Raise the first extension failure from
                start() instead of only recording it in extension_errors.
            container: A DI container, overridable in tests. A container
                created here has its resources (the HTTP client) shut down
                once start() returns.

        Raises:
            InvalidVersionFormatError: If the version cannot be parsed.
            ConfigurationError: If the instance id or settings are invalid.
        """
        self.version = resolve(version)
        self.admin_user = admin_user
        self.server_params = {
            str(k): str(v) for k, v in (server_params or {}).items()
        }
        self.extensions = list(extensions or [])
        self.instance_id = (
            str(instance_id) if instance_id else new_instance_id()
        )
        self.add_local_user_access_permission = (
            add_local_user_access_permission
        )
        self.clear_instance_dir_on_stop = clear_instance_dir_on_stop
        self.fail_on_extension_error = fail_on_extension_error

        self._owns_container = container is None
        self.container = container or Container()
        self.options = self.container.options()
        self._workspace_manager = self.container.workspace_manager()
        self.workspace_path = self._workspace_manager.path_for(
            self.instance_id
        )

        self.extension_errors: List[ExtensionInstallError] = []
        self._package: Optional[CachedBinaryPackage] = None
        self._workspace: Optional[InstanceWorkspace] = None
        self._reservation = None
        self._supervisor: Optional[ProcessSupervisor] = None
        self._finalizer = None

    # --- Observable state ---

    @property
    def state(self) -> ServerState:
        if self._supervisor is None:
            return ServerState.CREATED
        return self._supervisor.state

    @property
    def is_running(self) -> bool:
        return self.state is ServerState.RUNNING

    @property
    def port(self) -> Optional[int]:
        """The listening port while an instance holds one."""
        return self._reservation.port if self._reservation else None

    @property
    def instance_dir(self) -> Path:
        return self.workspace_path

    @property
    def host(self) -> str:
        return self.options.server.host

    def dsn(self, dbname: str = "postgres") -> str:
        return (
            f"postgresql://{self.admin_user}@{self.host}:{self.port}/{dbname}"
        )

    def admin_client(self, dbname: str = "postgres") -> AdminClient:
        return self.container.sql_client(
            port=self.port, user=self.admin_user, dbname=dbname
        )

    def connect(self, dbname: str = "postgres"):
        """Opens a DB-API connection as the admin user."""
        return self.admin_client(dbname).connect()

    # --- Lifecycle ---

    def _private_package(
        self, package: CachedBinaryPackage, workspace: InstanceWorkspace
    ) -> CachedBinaryPackage:
        """A per-instance package copy that extensions may write into."""
        private = package.relocated(workspace.package_dir)
        if not BinaryCache.is_complete(private.root):
            logger.info(f"Copying binaries to {private.root} for extensions")
            shutil.rmtree(private.root, ignore_errors=True)
            shutil.copytree(package.root, private.root, symlinks=True)
        return private

    def _launch(self):
        self._supervisor = None
        cache = self.container.binary_cache()
        package = cache.acquire(self.version)

        workspace = self._workspace_manager.prepare(
            self.instance_id, self.add_local_user_access_permission
        )
        self._workspace = workspace

        if self.extensions:
            package = self._private_package(package, workspace)
        self._package = package

        assembler = self.container.configuration_assembler()
        self._reservation = assembler.initialize(
            package, workspace, self.server_params, self.admin_user
        )

        server = self.options.server
        self._supervisor = ProcessSupervisor(
            command=server_command(package, workspace),
            log_file=workspace.log_file,
            probe=self.admin_client().probe,
            env=package_environment(package),
            startup_timeout=server.startup_timeout,
            poll_interval=server.poll_interval,
            shutdown_timeout=server.shutdown_timeout,
            stop_command=(
                pg_ctl_stop_command(package, workspace) if IS_WINDOWS else None
            ),
        )
        self._finalizer = weakref.finalize(
            self,
            _release_resources,
            self._supervisor,
            self._reservation,
            self._workspace_manager,
            workspace,
            self.clear_instance_dir_on_stop,
        )
        self._supervisor.start()

    def start(self):
        """
        Start the instance and block until it accepts connections.

        Extensions are installed once the server is running. Their failures
        never stop the server; they are collected in ``extension_errors``
        and, with ``fail_on_extension_error``, the first one is raised.

        Raises:
            AlreadyStartedError: If the instance is already running.
            WorkspaceInUseError: If another live instance owns the same
                                 instance id.
            PgEmbedError: Any start-up failure, after everything acquired so
                          far has been released.
        """

        if self.state in _ACTIVE_STATES:
            raise AlreadyStartedError(
                "Instance is already started",
                instance_id=self.instance_id,
                port=self.port,
            )

        logger.info(
            f"Starting PostgreSQL {self.version} instance {self.instance_id}"
        )
        try:
            self._start_and_install()
        finally:
            if self._owns_container:
                # Downloads only happen during start
                self.container.shutdown_resources()

    def _start_and_install(self):
        try:
            self._launch()
        except PgEmbedError as e:
            e.add_context(
                version=self.version.package_version,
                workspace=self.workspace_path,
                port=self.port,
            )
            self._teardown()
            raise
        except BaseException:
            self._teardown()
            raise

        logger.info(
            f"Instance {self.instance_id} is running on port {self.port}"
        )

        if self.extensions:
            installer = self.container.extension_installer()
            self.extension_errors = installer.install_all(
                self.extensions,
                self._package,
                self.admin_client,
                fail_fast=self.fail_on_extension_error,
            )

    def _teardown(self):
        if self._finalizer is not None:
            self._finalizer.detach()
            self._finalizer = None

        try:
            if self._supervisor is not None:
                self._supervisor.stop()
        finally:
            if self._reservation is not None:
                self._reservation.release()
                self._reservation = None
            if self._workspace is not None:
                self._workspace_manager.release(
                    self._workspace, self.clear_instance_dir_on_stop
                )
                self._workspace = None

    def stop(self):
        """
        Stop the instance and release its port and, if requested, its
        directory. Safe to call any number of times.
        """
        if self._workspace is None and self._reservation is None:
            return
        logger.info(f"Stopping instance {self.instance_id}")
        self._teardown()

    def __enter__(self) -> "PgServer":
        if not self.is_running:
            try:
                self.start()
            except BaseException:
                self.stop()
                raise
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()
