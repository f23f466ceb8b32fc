"""
Allocation, access grants and release of per-instance directories.
"""

import getpass
import logging
import os
import re
import shutil
import stat
import subprocess
import uuid
from pathlib import Path
from typing import Dict, Optional, Union
from uuid import UUID

from ..application.domain import InstanceWorkspace
from ..application.exceptions import (
    CleanupError,
    ConfigurationError,
    InitializationError,
    WorkspaceInUseError,
)

from .host import IS_WINDOWS
from .locks import FileLock

_SAFE_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def new_instance_id() -> str:
    return str(uuid.uuid4())


class WorkspaceManager:
    """Maps instance identities to private directory trees under a root."""

    def __init__(self, root: Path):
        self.logger = logging.getLogger(self.__class__.__name__)
        self.root = Path(root)
        self._locks: Dict[Path, FileLock] = {}

    def path_for(self, instance_id: Union[str, UUID]) -> Path:
        """Pure mapping from identity to directory."""
        value = str(instance_id)
        if not _SAFE_ID.match(value) or value in (".", ".."):
            raise ConfigurationError(
                "Instance id must be a plain directory name",
                instance_id=repr(value),
            )
        return self.root / value

    def _claim(self, instance_id: str, root: Path):
        """Take the exclusive ownership lock for a workspace."""
        if root in self._locks:
            return
        lock = FileLock(self.root / f"{instance_id}.lock")
        if not lock.try_acquire():
            raise WorkspaceInUseError(
                "Instance directory is owned by another running instance",
                instance_id=instance_id,
                workspace=root,
            )
        self._locks[root] = lock

    def _unclaim(self, root: Path):
        lock = self._locks.pop(root, None)
        if lock is not None:
            lock.release()

    def _grant_local_user_access(self, path: Path):
        """Give the current account full control over the tree."""
        if IS_WINDOWS:
            user = getpass.getuser()
            result = subprocess.run(
                ["icacls", str(path), "/t", "/grant:r", f"{user}:(OI)(CI)F"],
                capture_output=True,
                text=True,
            )
            if result.returncode != 0:
                raise InitializationError(
                    f"icacls failed: {result.stderr.strip()}",
                    workspace=path,
                )
            return

        for current, dirs, files in os.walk(path):
            for name in [current, *(os.path.join(current, f) for f in files)]:
                mode = os.stat(name).st_mode
                os.chmod(name, mode | stat.S_IRWXU)

    def prepare(
        self,
        instance_id: Optional[Union[str, UUID]] = None,
        grant_access: bool = False,
    ) -> InstanceWorkspace:
        """
        Reuse or create the workspace for an identity.

        An existing directory is reused as-is so a stopped instance can be
        restarted against the same data. Without an identity a fresh one is
        generated.

        Args:
            instance_id: A caller-supplied stable identity, or None.
            grant_access: Grant the local user read/write/execute access.

        Returns:
            The workspace, with its directory tree present on disk.
        """

        instance_id = str(instance_id) if instance_id else new_instance_id()
        workspace = InstanceWorkspace(
            instance_id=instance_id, root=self.path_for(instance_id)
        )
        self._claim(instance_id, workspace.root)

        try:
            if workspace.root.is_dir():
                self.logger.info(
                    f"Reusing instance directory {workspace.root}"
                )
            else:
                self.logger.info(
                    f"Creating instance directory {workspace.root}"
                )

            for directory in (workspace.data_dir, workspace.log_dir):
                directory.mkdir(parents=True, exist_ok=True)

            if not IS_WINDOWS:
                # initdb refuses data directories readable by group/others
                workspace.data_dir.chmod(0o700)

            if grant_access:
                self._grant_local_user_access(workspace.root)
        except BaseException:
            self._unclaim(workspace.root)
            raise

        return workspace

    def release(self, workspace: InstanceWorkspace, clear: bool):
        """
        Delete the workspace when ``clear`` is set, otherwise keep it, then
        give up ownership so another instance may use the identity.

        Deletion is best-effort: failures are logged as a CleanupError and
        never raised.
        """

        try:
            if clear:
                self._remove(workspace)
            else:
                self.logger.info(
                    f"Keeping instance directory {workspace.root}"
                )
        finally:
            self._unclaim(workspace.root)

    def _remove(self, workspace: InstanceWorkspace):
        try:
            shutil.rmtree(workspace.root)
            self.logger.info(f"Removed instance directory {workspace.root}")
        except FileNotFoundError:
            pass
        except OSError as e:
            error = CleanupError(
                f"Could not remove instance directory: {e}",
                workspace=workspace.root,
            )
            self.logger.warning(str(error))
