"""
Dependency Injection container for pg_embed.

This container uses the `dependency-injector` library to wire together all
the collaborators of a server instance, such as the binary cache, the
configuration assembler and the extension installer, based on the
validated settings. Tests override individual providers.
"""

from typing import Iterator

from dependency_injector import containers, providers
import httpx

from ..application.domain import AdminClient, Downloader, Extractor
from ..settings import load_options

from .archives import ArchiveExtractor
from .binary_cache import BinaryCache
from .configuration import ConfigurationAssembler
from .downloader import HttpDownloader, RetryingHttpDownloader
from .extensions import ExtensionInstaller
from .sql_client import PsycopgAdminClient
from .workspace import WorkspaceManager


def open_http_client() -> Iterator[httpx.Client]:
    """Yields a shared HTTP client and closes it on resource shutdown."""
    client = httpx.Client()
    try:
        yield client
    finally:
        client.close()


class Container(containers.DeclarativeContainer):
    """DI container for wiring the lifecycle components."""

    options = providers.Singleton(load_options)

    # Closed by shutdown_resources(); reopened on the next download
    http_client = providers.Resource(open_http_client)

    package_downloader: providers.Factory[Downloader] = providers.Factory(
        HttpDownloader,
        client=http_client,
        timeout=options.provided.download.timeout,
        chunk_size=options.provided.download.chunk_size,
        progress=options.provided.download.progress,
        token=options.provided.download.token,
    )

    extension_downloader: providers.Factory[Downloader] = providers.Factory(
        RetryingHttpDownloader,
        client=http_client,
        timeout=options.provided.download.timeout,
        chunk_size=options.provided.download.chunk_size,
        progress=options.provided.download.progress,
        retry_attempts=options.provided.extensions.retry_attempts,
        retry_min_wait=options.provided.extensions.retry_min_wait,
        retry_max_wait=options.provided.extensions.retry_max_wait,
    )

    extractor: providers.Factory[Extractor] = providers.Factory(
        ArchiveExtractor,
    )

    binary_cache = providers.Factory(
        BinaryCache,
        downloader=package_downloader,
        extractor=extractor,
        root=options.provided.cache.resolved_root,
        source_url_template=options.provided.cache.source_url_template,
        platform=options.provided.cache.resolved_platform,
        lock_timeout=options.provided.cache.lock_timeout,
    )

    workspace_manager = providers.Factory(
        WorkspaceManager,
        root=options.provided.workspace.resolved_root,
    )

    configuration_assembler = providers.Factory(
        ConfigurationAssembler,
        host=options.provided.server.host,
        port_lock_dir=options.provided.server.resolved_port_lock_dir,
        port_attempts=options.provided.server.port_attempts,
        defaults=options.provided.server.defaults,
        initdb_timeout=options.provided.server.initdb_timeout,
    )

    # port and user are supplied per instance at call time
    sql_client: providers.Factory[AdminClient] = providers.Factory(
        PsycopgAdminClient,
        host=options.provided.server.host,
    )

    extension_installer = providers.Factory(
        ExtensionInstaller,
        downloader=extension_downloader,
        extractor=extractor,
    )
