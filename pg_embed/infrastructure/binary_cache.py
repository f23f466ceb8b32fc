"""
Shared on-disk cache of unpacked server binary packages.

One directory per engine version lives under the cache root and is shared
by every instance and every process on the host. Misses are serialized by
a per-version file lock; hits only check for the completion marker.
"""

import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from ..application.domain import (
    CachedBinaryPackage,
    Downloader,
    Extractor,
    ServerVersion,
)
from ..application.exceptions import DownloadError, ExtractionError

from .host import executable
from .locks import FileLock

COMPLETE_MARKER = ".pg_embed_complete"


class BinaryCache:
    """Ensures the binary package for a version exists, unpacked, on disk."""

    def __init__(
        self,
        downloader: Downloader,
        extractor: Extractor,
        root: Path,
        source_url_template: str,
        platform: str,
        lock_timeout: Optional[float] = None,
    ):
        """Initializes the cache rooted at ``root``."""
        self.logger = logging.getLogger(self.__class__.__name__)
        self.downloader = downloader
        self.extractor = extractor
        self.root = Path(root)
        self.source_url_template = source_url_template
        self.platform = platform
        self.lock_timeout = lock_timeout

    def path_for(self, version: ServerVersion) -> Path:
        return self.root / version.engine_version

    def url_for(self, version: ServerVersion) -> str:
        return self.source_url_template.format(
            platform=self.platform,
            version=version.engine_version,
            package_version=version.package_version,
            major=version.major,
            minor=version.minor,
            patch=version.patch,
            build=version.build if version.build is not None else "",
        )

    @staticmethod
    def is_complete(path: Path) -> bool:
        """A cache entry is usable once its marker and server binary exist."""
        return (
            (path / COMPLETE_MARKER).is_file()
            and (path / "bin" / executable("postgres")).is_file()
        )

    def _archive_name(self, url: str) -> str:
        name = Path(urlparse(url).path).name
        return name or "package.zip"

    def _populate(self, version: ServerVersion, final: Path):
        """Download and extract into a scratch dir, then rename into place."""
        url = self.url_for(version)
        scratch = Path(tempfile.mkdtemp(
            prefix=f".{version.engine_version}-", dir=self.root
        ))
        try:
            archive = self.downloader.download(
                url, scratch / self._archive_name(url)
            )
            content = self.extractor.extract(archive, scratch / "unpacked")

            if not (content / "bin" / executable("postgres")).is_file():
                raise ExtractionError(
                    "Package does not contain bin/postgres",
                    version=version.package_version,
                    url=url,
                )

            (content / COMPLETE_MARKER).write_text(version.package_version)
            if final.exists():
                # Leftover from an interrupted run; never marked complete
                shutil.rmtree(final)
            os.replace(content, final)
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

    def acquire(self, version: ServerVersion) -> CachedBinaryPackage:
        """
        Guarantee the package for ``version`` is cached, fetching on a miss.

        Concurrent acquirers of the same version, in this process or in
        sibling processes, wait on a per-version lock; exactly one of them
        downloads and extracts while the rest observe the finished entry.

        Args:
            version: The resolved server version.

        Returns:
            The cached package.

        Raises:
            DownloadError: If the package cannot be downloaded, or another
                           process holds the lock past ``lock_timeout``.
            ExtractionError: If the package cannot be unpacked.
        """

        final = self.path_for(version)
        if self.is_complete(final):
            self.logger.info(
                f"Binaries for {version} found in cache at {final}."
            )
            return CachedBinaryPackage(version=version, root=final)

        self.root.mkdir(parents=True, exist_ok=True)
        lock = FileLock(self.root / f"{version.engine_version}.lock")
        try:
            lock.acquire(timeout=self.lock_timeout)
        except TimeoutError as e:
            raise DownloadError(
                "Timed out waiting for another process to cache binaries",
                version=version.package_version,
                lock=lock.lock_path,
            ) from e

        try:
            if self.is_complete(final):
                self.logger.info(
                    f"Binaries for {version} were cached by another process."
                )
            else:
                self.logger.info(
                    f"Binaries for {version} not cached. Fetching..."
                )
                try:
                    self._populate(version, final)
                except DownloadError as e:
                    raise DownloadError(
                        f"Could not fetch binaries: {e}",
                        version=version.package_version,
                    ) from e
                except ExtractionError as e:
                    raise ExtractionError(
                        f"Could not unpack binaries: {e}",
                        version=version.package_version,
                    ) from e
                except OSError as e:
                    raise ExtractionError(
                        f"Could not publish binaries: {e}",
                        version=version.package_version,
                        path=final,
                    ) from e
        finally:
            lock.release()

        return CachedBinaryPackage(version=version, root=final)
