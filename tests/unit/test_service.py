"""
Unit tests for the PgServer facade against fake server executables.

Tests cover:
- Start/stop lifecycle and idempotent stop
- Directory clearing and instance-id reuse
- Concurrent instances
- Cleanup after failed starts and escaped exceptions
- Extension failure policy
- Exclusive workspace ownership
- HTTP client shutdown for self-built containers
"""

import gc
import os
import threading
import uuid

import httpx
import pytest
from dependency_injector import providers

from pg_embed.application.domain import ExtensionSpec, ServerState
from pg_embed.application.exceptions import (
    AlreadyStartedError,
    ExtensionInstallError,
    InvalidVersionFormatError,
    ProcessExitedPrematurelyError,
    WorkspaceInUseError,
)
from pg_embed.application import service
from pg_embed.application.service import PgServer
from pg_embed.application.versions import resolve
from pg_embed.infrastructure.locks import FileLock

from ..conftest import initdb_calls, make_fake_package, posix_only

pytestmark = posix_only

VERSION = "9.5.5.1"


def _alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    return True


@pytest.fixture
def package_root(options):
    return make_fake_package(options.cache.root, resolve(VERSION))


@pytest.fixture
def server_factory(container, package_root):
    servers = []

    def build(**kwargs):
        server = PgServer(VERSION, container=container, **kwargs)
        servers.append(server)
        return server

    yield build

    for server in servers:
        server.stop()


class TestLifecycle:
    """Start and stop."""

    def test_start_and_stop(self, server_factory):
        server = server_factory(clear_instance_dir_on_stop=True)

        server.start()
        pid = server._supervisor.pid

        assert server.state is ServerState.RUNNING
        assert server.port is not None
        assert server.workspace_path.is_dir()
        assert server.dsn() == (
            f"postgresql://postgres@127.0.0.1:{server.port}/postgres"
        )

        server.stop()

        assert server.state is ServerState.STOPPED
        assert not _alive(pid)

    def test_stop_twice_is_safe(self, server_factory):
        server = server_factory()
        server.start()

        server.stop()
        server.stop()

        assert server.state is ServerState.STOPPED

    def test_stop_without_start(self, server_factory):
        server = server_factory()

        server.stop()

        assert server.state is ServerState.CREATED

    def test_start_while_running(self, server_factory):
        server = server_factory()
        server.start()

        with pytest.raises(AlreadyStartedError):
            server.start()

        assert server.is_running

    def test_restart_after_stop(self, server_factory):
        server = server_factory()
        server.start()
        server.stop()

        server.start()

        assert server.is_running

    def test_invalid_version(self, container):
        with pytest.raises(InvalidVersionFormatError):
            PgServer("9.5", container=container)

    def test_server_params_reach_config(self, server_factory):
        server = server_factory(
            server_params={
                "max_connections": "300",
                "synchronous_commit": "off",
            }
        )
        server.start()

        config = (server.workspace_path / "postgresql.conf").read_text()

        assert "max_connections = '300'" in config
        assert "synchronous_commit = 'off'" in config


class TestWorkspaceHandling:
    """Clearing and reuse of instance directories."""

    def test_clear_on_stop(self, server_factory):
        server = server_factory(clear_instance_dir_on_stop=True)
        server.start()
        path = server.workspace_path

        server.stop()

        assert not path.exists()

    def test_keep_by_default(self, server_factory):
        server = server_factory()
        server.start()

        server.stop()

        assert (server.workspace_path / "data" / "PG_VERSION").exists()

    def test_existing_instance_id_reuses_data(self, server_factory, package_root):
        instance_id = uuid.uuid4()

        first = server_factory(instance_id=instance_id)
        first.start()
        (first.workspace_path / "data" / "marker").write_text("kept")
        first.stop()

        second = server_factory(
            instance_id=instance_id, clear_instance_dir_on_stop=True
        )
        second.start()

        assert second.workspace_path == first.workspace_path
        assert (second.workspace_path / "data" / "marker").read_text() == "kept"
        assert len(initdb_calls(package_root)) == 1

        second.stop()
        assert not second.workspace_path.exists()

    def test_running_instance_owns_its_workspace(self, server_factory):
        instance_id = uuid.uuid4()
        first = server_factory(instance_id=instance_id)
        first.start()
        config = (first.workspace_path / "postgresql.conf").read_text()

        second = server_factory(
            instance_id=instance_id, clear_instance_dir_on_stop=True
        )
        with pytest.raises(WorkspaceInUseError) as excinfo:
            second.start()
        second.stop()

        assert excinfo.value.context["instance_id"] == str(instance_id)
        assert excinfo.value.context["workspace"] == first.workspace_path
        assert first.is_running
        assert (first.workspace_path / "data" / "PG_VERSION").exists()
        assert (first.workspace_path / "postgresql.conf").read_text() == config
        assert f"port = '{first.port}'" in config

    def test_workspace_is_free_again_after_stop(self, server_factory):
        instance_id = uuid.uuid4()
        first = server_factory(instance_id=instance_id)
        first.start()
        first.stop()

        second = server_factory(instance_id=instance_id)
        second.start()

        assert second.is_running

    def test_concurrent_instances_are_isolated(self, server_factory):
        servers = [server_factory() for _ in range(4)]
        errors = []

        def start(server):
            try:
                server.start()
            except Exception as e:  # pragma: no cover - reported below
                errors.append(e)

        threads = [threading.Thread(target=start, args=(s,)) for s in servers]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert len({s.port for s in servers}) == 4
        assert len({s.workspace_path for s in servers}) == 4


class TestFailureCleanup:
    """No processes, ports or directories leak from failures."""

    def test_failed_start_releases_everything(self, server_factory, options):
        server = server_factory(
            server_params={"fake_exit_code": "7"},
            clear_instance_dir_on_stop=True,
        )

        with pytest.raises(ProcessExitedPrematurelyError) as excinfo:
            server.start()

        error = excinfo.value
        assert server.state is ServerState.ABORTED
        assert error.context["version"] == "9.5.5-1"
        assert error.context["workspace"] == server.workspace_path
        assert "port" in error.context
        assert server.port is None
        assert not server.workspace_path.exists()
        port_lock = options.server.port_lock_dir / f"{error.context['port']}.lock"
        lock = FileLock(port_lock)
        assert lock.try_acquire()
        lock.release()

    def test_context_manager_stops_on_exception(self, container, package_root):
        with pytest.raises(RuntimeError):
            with PgServer(VERSION, container=container) as server:
                pid = server._supervisor.pid
                raise RuntimeError("test body failed")

        assert server.state is ServerState.STOPPED
        assert not _alive(pid)

    def test_forgotten_instance_is_stopped_on_collection(
        self, container, package_root
    ):
        server = PgServer(VERSION, container=container)
        server.start()
        supervisor = server._supervisor

        del server
        gc.collect()

        assert supervisor.state is ServerState.STOPPED


class TestExtensions:
    """Extension failure policy."""

    @pytest.fixture
    def unreachable(self, container):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        client = httpx.Client(transport=httpx.MockTransport(handler))
        container.http_client.override(providers.Object(client))
        return [
            ExtensionSpec(
                "http://unreachable.test/plv8.zip", ["CREATE EXTENSION plv8"]
            )
        ]

    def test_failure_is_recorded_and_server_keeps_running(
        self, server_factory, unreachable, journal
    ):
        server = server_factory(extensions=unreachable)

        server.start()

        assert server.is_running
        assert len(server.extension_errors) == 1
        assert isinstance(server.extension_errors[0], ExtensionInstallError)
        assert journal == []
        # instances with extensions run from a private package copy
        assert (server.workspace_path / "pgsql" / "bin" / "postgres").exists()

    def test_fail_policy_raises_but_keeps_running(
        self, server_factory, unreachable
    ):
        server = server_factory(
            extensions=unreachable, fail_on_extension_error=True
        )

        with pytest.raises(ExtensionInstallError):
            server.start()

        assert server.is_running


class TestResources:
    """HTTP client lifetime."""

    def test_own_container_closes_http_client(
        self, container, package_root, monkeypatch
    ):
        monkeypatch.setattr(service, "Container", lambda: container)
        server = PgServer(VERSION)
        client = container.http_client()

        try:
            server.start()

            assert client.is_closed
            assert not container.http_client.initialized
            assert server.is_running
        finally:
            server.stop()

    def test_own_container_closes_http_client_after_failure(
        self, container, package_root, monkeypatch
    ):
        monkeypatch.setattr(service, "Container", lambda: container)
        server = PgServer(VERSION, server_params={"fake_exit_code": "3"})
        client = container.http_client()

        with pytest.raises(ProcessExitedPrematurelyError):
            server.start()

        assert client.is_closed

    def test_shared_container_is_left_open(self, server_factory, container):
        client = container.http_client()

        server_factory().start()

        assert not client.is_closed
