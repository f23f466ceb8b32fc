"""
Unit tests for instance workspaces.

Tests cover:
- Identity to path mapping
- Creation and reuse of directory trees
- Best-effort release
- Exclusive ownership across managers
"""

import logging
import shutil
import stat
import sys
import uuid

import pytest

from pg_embed.application.exceptions import (
    ConfigurationError,
    WorkspaceInUseError,
)
from pg_embed.infrastructure.workspace import WorkspaceManager


@pytest.fixture
def manager(tmp_path):
    return WorkspaceManager(tmp_path / "instances")


class TestPathFor:
    """Tests for the identity to path mapping."""

    def test_pure_function_of_identity(self, manager):
        identity = uuid.uuid4()

        assert manager.path_for(identity) == manager.path_for(str(identity))
        assert manager.path_for(identity).name == str(identity)

    def test_distinct_identities_never_collide(self, manager):
        paths = {manager.path_for(uuid.uuid4()) for _ in range(50)}

        assert len(paths) == 50

    @pytest.mark.parametrize("bad", ["..", "../x", "a/b", "", ".hidden", "a b"])
    def test_unsafe_identities_rejected(self, manager, bad):
        with pytest.raises(ConfigurationError):
            manager.path_for(bad)


class TestPrepare:
    """Tests for WorkspaceManager.prepare()."""

    def test_generated_identity_creates_tree(self, manager):
        workspace = manager.prepare()

        assert workspace.root.parent == manager.root
        assert workspace.data_dir.is_dir()
        assert workspace.log_dir.is_dir()
        uuid.UUID(workspace.instance_id)

    def test_generated_identities_are_distinct(self, manager):
        assert manager.prepare().root != manager.prepare().root

    def test_existing_workspace_is_reused(self, manager):
        first = manager.prepare("reused")
        (first.data_dir / "PG_VERSION").write_text("16\n")

        second = manager.prepare("reused")

        assert second.root == first.root
        assert second.is_initialized

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX modes")
    def test_data_dir_is_private(self, manager):
        workspace = manager.prepare()

        assert stat.S_IMODE(workspace.data_dir.stat().st_mode) == 0o700

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX modes")
    def test_grant_access_gives_owner_full_control(self, manager):
        workspace = manager.prepare("granted")
        config = workspace.root / "postgresql.conf"
        config.write_text("")
        config.chmod(0o400)

        manager.prepare("granted", grant_access=True)

        assert stat.S_IMODE(config.stat().st_mode) & stat.S_IRWXU == stat.S_IRWXU


class TestRelease:
    """Tests for WorkspaceManager.release()."""

    def test_clear_removes_tree(self, manager):
        workspace = manager.prepare()

        manager.release(workspace, clear=True)

        assert not workspace.root.exists()

    def test_keep_leaves_tree(self, manager):
        workspace = manager.prepare()

        manager.release(workspace, clear=False)

        assert workspace.data_dir.is_dir()

    def test_missing_tree_is_fine(self, manager):
        workspace = manager.prepare()
        shutil.rmtree(workspace.root)

        manager.release(workspace, clear=True)

    def test_failure_is_logged_not_raised(self, manager, monkeypatch, caplog):
        workspace = manager.prepare()

        def refuse(path):
            raise PermissionError("in use")

        monkeypatch.setattr(shutil, "rmtree", refuse)
        with caplog.at_level(logging.WARNING):
            manager.release(workspace, clear=True)

        assert "Could not remove instance directory" in caplog.text
        assert workspace.root.exists()


class TestOwnership:
    """Only one live manager may hold an identity at a time."""

    def test_second_owner_is_refused(self, manager):
        workspace = manager.prepare("shared")
        other = WorkspaceManager(manager.root)

        with pytest.raises(WorkspaceInUseError) as excinfo:
            other.prepare("shared")

        assert excinfo.value.context["instance_id"] == "shared"
        assert excinfo.value.context["workspace"] == workspace.root

    def test_refused_owner_leaves_tree_alone(self, manager):
        workspace = manager.prepare("shared")
        (workspace.data_dir / "PG_VERSION").write_text("16\n")
        other = WorkspaceManager(manager.root)

        with pytest.raises(WorkspaceInUseError):
            other.prepare("shared")

        assert workspace.is_initialized

    @pytest.mark.parametrize("clear", [True, False])
    def test_release_frees_identity(self, manager, clear):
        workspace = manager.prepare("shared")
        manager.release(workspace, clear=clear)

        other = WorkspaceManager(manager.root)
        again = other.prepare("shared")

        assert again.root == workspace.root
        other.release(again, clear=True)

    def test_release_frees_identity_after_cleanup_failure(
        self, manager, monkeypatch
    ):
        workspace = manager.prepare("shared")

        def refuse(path):
            raise PermissionError("in use")

        monkeypatch.setattr(shutil, "rmtree", refuse)
        manager.release(workspace, clear=True)
        monkeypatch.undo()

        assert WorkspaceManager(manager.root).prepare("shared").root == (
            workspace.root
        )
