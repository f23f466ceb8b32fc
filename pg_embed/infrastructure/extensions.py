"""Deploys extension packages into a running instance."""

import logging
import shutil
import tempfile
from pathlib import Path
from typing import Callable, List, Sequence
from urllib.parse import urlparse

from ..application.domain import (
    AdminClient,
    CachedBinaryPackage,
    Downloader,
    ExtensionSpec,
    Extractor,
)
from ..application.exceptions import ExtensionInstallError, PgEmbedError

# Package directories an extension archive may contribute to
_DEPLOYABLE_DIRS = ("bin", "lib", "share")


class ExtensionInstaller:
    """Downloads, deploys and activates extensions in the given order."""

    def __init__(self, downloader: Downloader, extractor: Extractor):
        self.logger = logging.getLogger(self.__class__.__name__)
        self.downloader = downloader
        self.extractor = extractor

    @staticmethod
    def _find_layout_root(content: Path) -> Path:
        """The directory that holds lib/ or share/ inside an archive."""
        for candidate in [content, *sorted(content.rglob("*"))]:
            if candidate.is_dir() and any(
                (candidate / name).is_dir() for name in ("lib", "share")
            ):
                return candidate
        raise ExtensionInstallError(
            "Archive has no lib/ or share/ directory", archive=content
        )

    def _deploy(self, content: Path, package: CachedBinaryPackage):
        root = self._find_layout_root(content)
        for name in _DEPLOYABLE_DIRS:
            source = root / name
            if source.is_dir():
                shutil.copytree(
                    source, package.root / name, dirs_exist_ok=True
                )

    def install(
        self,
        extension: ExtensionSpec,
        package: CachedBinaryPackage,
        client: AdminClient,
    ):
        """
        Install one extension into the package the instance runs from.

        Args:
            extension: The archive URL and setup statements.
            package: The instance's private package copy.
            client: An administrative connection to the running instance.

        Raises:
            ExtensionInstallError: If the download (after retries), the
                                   deployment or a statement fails.
        """

        url = extension.download_url
        self.logger.info(f"Installing extension from {url}")
        scratch = Path(tempfile.mkdtemp(prefix="pg_embed-ext-"))
        try:
            name = Path(urlparse(url).path).name or "extension.zip"
            archive = self.downloader.download(url, scratch / name)
            content = self.extractor.extract(archive, scratch / "unpacked")
            self._deploy(content, package)
        except ExtensionInstallError:
            raise
        except (PgEmbedError, OSError) as e:
            raise ExtensionInstallError(
                f"Could not deploy extension: {e}", url=url
            ) from e
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

        client.execute(extension.statements)
        self.logger.info(f"Extension from {url} installed")

    def install_all(
        self,
        extensions: Sequence[ExtensionSpec],
        package: CachedBinaryPackage,
        client_factory: Callable[[], AdminClient],
        fail_fast: bool = False,
    ) -> List[ExtensionInstallError]:
        """
        Install extensions in order, collecting failures.

        A failing extension does not stop the instance. With ``fail_fast``
        the first failure is raised; otherwise every extension is attempted
        and the failures are logged and returned.
        """

        errors = []
        for extension in extensions:
            try:
                self.install(extension, package, client_factory())
            except ExtensionInstallError as e:
                if fail_fast:
                    raise
                self.logger.error(f"Extension install failed: {e}")
                errors.append(e)
        return errors
