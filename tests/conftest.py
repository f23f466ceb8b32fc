"""
Shared fixtures for pg_embed tests.

Unit tests run against fake ``initdb`` and ``postgres`` executables: small
Python scripts that create a data directory and listen on the configured
port, so the real process handling is exercised without PostgreSQL.
"""

import socket
import sys
import textwrap
from pathlib import Path
from typing import List

import pytest
from dependency_injector import providers

from pg_embed.application.domain import AdminClient, ServerVersion
from pg_embed.application.exceptions import ExtensionInstallError
from pg_embed.infrastructure.binary_cache import COMPLETE_MARKER
from pg_embed.infrastructure.containers import Container
from pg_embed.infrastructure.settings_models import (
    CacheOptions,
    DownloadOptions,
    EmbedOptions,
    ExtensionOptions,
    ServerOptions,
    WorkspaceOptions,
)

posix_only = pytest.mark.skipif(
    sys.platform == "win32", reason="fake server scripts need a POSIX shebang"
)

FAKE_INITDB = """\
import os, sys
args = sys.argv[1:]
data = args[args.index("-D") + 1]
with open(os.path.join(os.path.dirname(__file__), "initdb_calls"), "a") as f:
    f.write(data + "\\n")
if os.environ.get("FAKE_INITDB_FAIL"):
    sys.stderr.write("initdb: could not create directory\\n")
    sys.exit(1)
os.makedirs(data, exist_ok=True)
with open(os.path.join(data, "PG_VERSION"), "w") as f:
    f.write("16\\n")
"""

FAKE_POSTGRES = """\
import os, signal, socket, sys
args = sys.argv[1:]
data = args[args.index("-D") + 1]
config = [a for a in args if a.startswith("config_file=")][0].split("=", 1)[1]
params = {}
for line in open(config):
    line = line.strip()
    if line and not line.startswith("#"):
        name, _, value = line.partition("=")
        params[name.strip()] = value.strip().strip("'")
if not os.path.exists(os.path.join(data, "PG_VERSION")):
    sys.stderr.write("FATAL: not a database cluster directory\\n")
    sys.exit(2)
if params.get("fake_exit_code"):
    sys.exit(int(params["fake_exit_code"]))
if params.get("fake_ignore_sigint") == "on":
    signal.signal(signal.SIGINT, signal.SIG_IGN)
else:
    signal.signal(signal.SIGINT, lambda *_: sys.exit(0))
signal.signal(signal.SIGTERM, lambda *_: sys.exit(0))
server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
server.bind((params["listen_addresses"], int(params["port"])))
server.listen(16)
print("database system is ready to accept connections", flush=True)
while True:
    conn, _ = server.accept()
    conn.close()
"""


def _write_script(path: Path, body: str):
    path.write_text(f"#!{sys.executable}\n" + body)
    path.chmod(0o755)


def make_fake_package(root: Path, version: ServerVersion) -> Path:
    """Lays out a complete cache entry with fake server executables."""
    package = root / version.engine_version
    for name in ("bin", "lib", "share/extension"):
        (package / name).mkdir(parents=True, exist_ok=True)
    _write_script(package / "bin" / "initdb", FAKE_INITDB)
    _write_script(package / "bin" / "postgres", FAKE_POSTGRES)
    (package / COMPLETE_MARKER).write_text(version.package_version)
    return package


def initdb_calls(package: Path) -> List[str]:
    calls = package / "bin" / "initdb_calls"
    return calls.read_text().splitlines() if calls.exists() else []


class TcpProbeClient(AdminClient):
    """Probes with a plain TCP connect and records executed statements."""

    def __init__(self, host, port, user, dbname="postgres", journal=None):
        self.host = host
        self.port = port
        self.user = user
        self.dbname = dbname
        self.journal = journal if journal is not None else []

    def connect(self):
        return socket.create_connection((self.host, self.port), timeout=1)

    def probe(self) -> bool:
        try:
            self.connect().close()
        except OSError:
            return False
        return True

    def execute(self, statements):
        for statement in statements:
            if "FAIL" in statement:
                raise ExtensionInstallError(
                    "Statement failed", statement=statement
                )
            self.journal.append(statement)


@pytest.fixture
def options(tmp_path) -> EmbedOptions:
    """Options rooted in a temporary directory with fast timeouts."""
    return EmbedOptions(
        cache=CacheOptions(
            root=tmp_path / "cache",
            source_url_template="https://packages.test/pg-{platform}-{version}.zip",
            platform="linux-amd64",
        ),
        workspace=WorkspaceOptions(root=tmp_path / "instances"),
        download=DownloadOptions(timeout=5, progress=False),
        extensions=ExtensionOptions(
            retry_attempts=3, retry_min_wait=0, retry_max_wait=0
        ),
        server=ServerOptions(
            startup_timeout=10,
            poll_interval=0.05,
            shutdown_timeout=5,
            port_lock_dir=tmp_path / "ports",
        ),
    )


@pytest.fixture
def journal() -> List[str]:
    return []


@pytest.fixture
def container(options, journal) -> Container:
    """A container wired to temporary paths and the TCP probe client."""
    container = Container()
    container.options.override(providers.Object(options))
    container.sql_client.override(
        providers.Factory(TcpProbeClient, host="127.0.0.1", journal=journal)
    )
    yield container
    container.shutdown_resources()
    container.reset_override()
