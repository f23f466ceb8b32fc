r"""
Supervision of the server child process.

The supervisor is a small state machine:

    CREATED -> STARTING -> WAITING_READY -> RUNNING -> STOPPING -> STOPPED
                   \______________\______________________________-> ABORTED

ABORTED is reached only from a failed start and guarantees the child has
been killed before the error propagates.
"""

import logging
import os
import signal
import subprocess
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from ..application.domain import (
    CachedBinaryPackage,
    InstanceWorkspace,
    ServerState,
)
from ..application.exceptions import (
    ProcessExitedPrematurelyError,
    ReadinessTimeoutError,
    ServerError,
)

from .host import IS_WINDOWS, executable

# Time given to a fresh child to fail fast (bad arguments, missing libs)
_LAUNCH_GRACE_SECONDS = 0.1
_LOG_TAIL_LINES = 20


def package_environment(package: CachedBinaryPackage) -> Dict[str, str]:
    """Child environment that finds the package's shared libraries."""
    env = os.environ.copy()
    if IS_WINDOWS:
        variables = ("PATH",)
        extra = [package.bin_dir, package.lib_dir]
    else:
        variables = ("LD_LIBRARY_PATH", "DYLD_LIBRARY_PATH")
        extra = [package.lib_dir]
    for variable in variables:
        parts = [str(p) for p in extra]
        if env.get(variable):
            parts.append(env[variable])
        env[variable] = os.pathsep.join(parts)
    return env


def server_command(
    package: CachedBinaryPackage, workspace: InstanceWorkspace
) -> List[str]:
    return [
        str(package.bin_dir / executable("postgres")),
        "-D", str(workspace.data_dir),
        "-c", f"config_file={workspace.config_file}",
    ]


def pg_ctl_stop_command(
    package: CachedBinaryPackage, workspace: InstanceWorkspace
) -> List[str]:
    return [
        str(package.bin_dir / executable("pg_ctl")),
        "stop", "-D", str(workspace.data_dir), "-m", "fast", "-W",
    ]


def tail(path: Path, lines: int = _LOG_TAIL_LINES) -> str:
    try:
        content = path.read_text(errors="replace").splitlines()
    except OSError:
        return ""
    return "\n".join(content[-lines:])


class ProcessSupervisor:
    """Launches one server process, waits for readiness and stops it."""

    def __init__(
        self,
        command: Sequence[str],
        log_file: Path,
        probe: Callable[[], bool],
        env: Optional[Dict[str, str]] = None,
        startup_timeout: float = 60,
        poll_interval: float = 0.25,
        shutdown_timeout: float = 30,
        stop_command: Optional[Sequence[str]] = None,
    ):
        """
        Initializes the supervisor in the CREATED state.

        Args:
            command: The server command line.
            log_file: Receives the child's stdout and stderr.
            probe: Returns True once the server accepts connections.
            env: The child environment.
            startup_timeout: Bound on the readiness wait, in seconds.
            poll_interval: Delay between readiness probes.
            shutdown_timeout: Bound on the graceful shutdown wait.
            stop_command: Command requesting a graceful shutdown, used where
                          signals are unavailable. Defaults to SIGINT.
        """
        self.logger = logging.getLogger(self.__class__.__name__)
        self.command = list(command)
        self.log_file = Path(log_file)
        self.probe = probe
        self.env = env
        self.startup_timeout = startup_timeout
        self.poll_interval = poll_interval
        self.shutdown_timeout = shutdown_timeout
        self.stop_command = list(stop_command) if stop_command else None
        self.state = ServerState.CREATED
        self.exit_code: Optional[int] = None
        self._process: Optional[subprocess.Popen] = None

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    def _transition(self, state: ServerState):
        self.logger.debug(f"{self.state.value} -> {state.value}")
        self.state = state

    def _launch(self):
        self.log_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.log_file, "ab") as log:
            try:
                self._process = subprocess.Popen(
                    self.command,
                    stdout=log,
                    stderr=subprocess.STDOUT,
                    stdin=subprocess.DEVNULL,
                    env=self.env,
                )
            except OSError as e:
                raise ServerError(
                    f"Could not launch server: {e}", command=self.command[0]
                ) from e
        self.logger.info(
            f"Launched {Path(self.command[0]).name} (pid {self._process.pid})"
        )

    def _exited_error(self) -> ProcessExitedPrematurelyError:
        self.exit_code = self._process.returncode
        return ProcessExitedPrematurelyError(
            f"Server exited with code {self.exit_code} before accepting "
            f"connections. Log tail:\n{tail(self.log_file)}",
            exit_code=self.exit_code,
            log=self.log_file,
        )

    def _wait_ready(self):
        deadline = time.monotonic() + self.startup_timeout
        while True:
            if self._process.poll() is not None:
                raise self._exited_error()
            if self.probe():
                return
            if time.monotonic() >= deadline:
                raise ReadinessTimeoutError(
                    f"Server not ready after {self.startup_timeout}s. "
                    f"Log tail:\n{tail(self.log_file)}",
                    log=self.log_file,
                )
            time.sleep(self.poll_interval)

    def _kill(self):
        """Force termination and reap the child."""
        if self._process is None or self._process.poll() is not None:
            return
        self.logger.warning(f"Killing server process {self._process.pid}")
        self._process.kill()
        self._process.wait()

    def start(self):
        """
        Launch the server and block until it accepts connections.

        Raises:
            ServerError: If called outside the CREATED state.
            ProcessExitedPrematurelyError: If the child exits during startup.
            ReadinessTimeoutError: If readiness is not reached in time.
        """

        if self.state is not ServerState.CREATED:
            raise ServerError(
                "A supervisor can only be started once", state=self.state.value
            )

        self._transition(ServerState.STARTING)
        try:
            self._launch()
            time.sleep(_LAUNCH_GRACE_SECONDS)
            if self._process.poll() is not None:
                raise self._exited_error()

            self._transition(ServerState.WAITING_READY)
            self._wait_ready()
        except BaseException:
            self._kill()
            if self._process is not None:
                self.exit_code = self._process.returncode
            self._transition(ServerState.ABORTED)
            raise

        self._transition(ServerState.RUNNING)
        self.logger.info(f"Server process {self._process.pid} is ready")

    def _request_shutdown(self):
        if self.stop_command:
            subprocess.run(
                self.stop_command,
                env=self.env,
                capture_output=True,
                timeout=self.shutdown_timeout,
            )
        else:
            self._process.send_signal(signal.SIGINT)

    def stop(self):
        """
        Gracefully stop the server, killing it after the shutdown timeout.

        Idempotent: a no-op in the STOPPED, ABORTED and CREATED states.
        """

        if self.state in (
            ServerState.STOPPED, ServerState.ABORTED, ServerState.CREATED
        ):
            return

        self._transition(ServerState.STOPPING)
        try:
            if self._process.poll() is None:
                try:
                    self._request_shutdown()
                    self._process.wait(timeout=self.shutdown_timeout)
                except (OSError, subprocess.TimeoutExpired):
                    self.logger.warning(
                        f"Server did not stop within "
                        f"{self.shutdown_timeout}s, forcing termination"
                    )
        finally:
            self._kill()
            self.exit_code = self._process.returncode
            self._transition(ServerState.STOPPED)

        if self.exit_code not in (0, None):
            self.logger.error(
                f"Server process exited with code {self.exit_code}"
            )
        else:
            self.logger.info("Server process stopped")
