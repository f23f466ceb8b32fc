"""HTTP implementations of the Downloader port."""

import contextlib
from pathlib import Path
from typing import Generator, Iterator, Optional

import httpx
from tqdm import tqdm

from ..application.domain import Downloader
from ..application.exceptions import DownloadError, ExtensionDownloadError

from .base_client import BaseClient
from .decorators import network_retry


class HttpDownloader(BaseClient, Downloader):
    """
    A downloader that fetches files via HTTP atomically.

    Used for the primary binary package source, which is not retried: a
    failure surfaces immediately as a DownloadError.
    """

    error_class = DownloadError

    def __init__(
        self,
        client: httpx.Client,
        timeout: float,
        chunk_size: int,
        progress: bool = True,
        token: Optional[str] = None,
    ):
        """Initializes the downloader adapter."""
        super().__init__(client, timeout, token)
        self.chunk_size = chunk_size
        self.progress = progress

    @contextlib.contextmanager
    def _atomic_target(self, destination: Path) -> Generator[Path, None, None]:
        """Provides a temporary '.part' path and ensures cleanup."""
        part_path = destination.with_suffix(destination.suffix + ".part")
        destination.parent.mkdir(parents=True, exist_ok=True)
        try:
            yield part_path
        finally:
            part_path.unlink(missing_ok=True)

    def _stream_chunks(
        self, response: httpx.Response, target_file: Path,
    ) -> Iterator[int]:
        """Produce byte chunks from a response and write them to a file."""
        with open(target_file, "wb") as f:
            for chunk in response.iter_bytes(self.chunk_size):
                f.write(chunk)
                yield len(chunk)

    def _consume_stream_with_progress(
        self,
        stream: Iterator[int],
        total_size: int,
        desc: str,
    ):
        """Consume the byte stream to update a TQDM progress bar."""

        with tqdm(
            total=total_size or None,
            unit="B",
            unit_scale=True,
            desc=desc,
            disable=not self.progress,
        ) as progress_bar:
            received = 0
            for progress in stream:
                received += progress
                progress_bar.update(progress)

        if total_size != 0 and received != total_size:
            raise self.error_class(
                f"Size mismatch: {received} != {total_size}"
            )

    def _stream_from_network(self, url: str, target_file: Path):
        """Manage the network request and the streaming process."""
        with self.client.stream(
            "GET",
            url,
            timeout=self.timeout,
            headers=self.headers,
            follow_redirects=True,
        ) as response:
            response.raise_for_status()
            total_size = int(response.headers.get("Content-Length") or 0)
            stream = self._stream_chunks(response, target_file)
            self._consume_stream_with_progress(
                stream, total_size, target_file.name
            )

    def _execute_atomic_download(self, url: str, destination: Path):
        """Orchestrate the entire atomic download operation."""
        self.logger.info(f"Downloading {url}...")
        with self._atomic_target(destination) as part_path:
            self._stream_from_network(url, part_path)
            part_path.rename(destination)
        self.logger.info(f"Finished downloading {destination.name}")

    def download(self, url: str, destination: Path) -> Path:
        """
        Guarantee that the archive file exists, downloading only if necessary.

        This is the public method that fulfills the Downloader port contract.
        It handles the idempotency check by verifying if the destination file
        already exists before delegating the actual work to private methods.

        Args:
            url: The archive location.
            destination: The final desired path for the file.

        Returns:
            The path of the archive on disk.

        Raises:
            DownloadError: If the request or the streaming to file fails.
        """

        if destination.exists():
            self.logger.info(
                f"Archive {destination.name} already exists. Skipping download."
            )
            return destination

        try:
            self._execute_atomic_download(url, destination)
        except httpx.HTTPStatusError as e:
            raise self.error_class(
                f"Server answered {e.response.status_code}",
                url=url,
            ) from e
        except (httpx.HTTPError, httpx.InvalidURL, OSError) as e:
            raise self.error_class(
                f"{type(e).__name__}: {e}", url=url
            ) from e

        return destination


class RetryingHttpDownloader(HttpDownloader):
    """
    A downloader for third-party extension archives.

    Network failures are retried with exponential backoff before surfacing
    as ExtensionDownloadError.
    """

    error_class = ExtensionDownloadError

    def __init__(
        self,
        client: httpx.Client,
        timeout: float,
        chunk_size: int,
        progress: bool = True,
        token: Optional[str] = None,
        retry_attempts: int = 3,
        retry_min_wait: float = 1,
        retry_max_wait: float = 10,
    ):
        """Initializes the downloader and wraps the fetch in a retry policy."""
        super().__init__(client, timeout, chunk_size, progress, token)
        self._execute_atomic_download = network_retry(
            retry_attempts, retry_min_wait, retry_max_wait
        )(self._execute_atomic_download)
