"""
Infrastructure adapter for unpacking server and extension archives.
"""

import io
import logging
import shutil
import tarfile
import zipfile
from pathlib import Path

import zstandard

from ..application.domain import Extractor
from ..application.exceptions import ExtractionError

_ZIP_SUFFIXES = (".zip", ".jar")
_TAR_SUFFIXES = (
    ".tar", ".tar.gz", ".tgz", ".tar.xz", ".txz", ".tar.bz2", ".tbz2",
)
_ZSTD_SUFFIXES = (".tar.zst", ".tzst")

# Packaging metadata that does not count as archive content
_IGNORED_ENTRIES = {"META-INF", "__MACOSX"}


def archive_kind(path: Path) -> str:
    """Returns 'zip', 'tar' or 'zstd' for a supported archive name, else ''."""
    name = path.name.lower()
    if name.endswith(_ZIP_SUFFIXES):
        return "zip"
    if name.endswith(_ZSTD_SUFFIXES):
        return "zstd"
    if name.endswith(_TAR_SUFFIXES):
        return "tar"
    return ""


class ArchiveExtractor(Extractor):
    """
    An adapter that implements the Extractor port for zip and tar archives,
    including Zstandard-compressed tarballs.

    A download that unpacks to a single nested archive (a .jar wrapping a
    .txz, for example) is unpacked again, and a lone top-level directory is
    descended into, so the returned directory is the content root.
    """

    def __init__(self, max_depth: int = 3):
        """Initializes the extractor."""
        self.logger = logging.getLogger(self.__class__.__name__)
        self.max_depth = max_depth

    @staticmethod
    def _check_member(destination: Path, name: str):
        """Reject members that would be written outside the destination."""
        target = (destination / name).resolve()
        if not target.is_relative_to(destination.resolve()):
            raise ExtractionError(
                "Archive member escapes the destination", member=name
            )

    def _extract_zip(self, archive: Path, destination: Path):
        with zipfile.ZipFile(archive) as zf:
            for info in zf.infolist():
                self._check_member(destination, info.filename)
                extracted = zf.extract(info, destination)
                # zipfile drops unix permission bits
                mode = (info.external_attr >> 16) & 0o777
                if mode and not info.is_dir():
                    Path(extracted).chmod(mode)

    def _extract_tar_stream(self, tf: tarfile.TarFile, destination: Path):
        members = []
        for member in tf:
            self._check_member(destination, member.name)
            if member.issym() or member.islnk():
                self._check_member(
                    destination,
                    str(Path(member.name).parent / member.linkname),
                )
            members.append(member)
        if hasattr(tarfile, "tar_filter"):
            tf.extractall(destination, members=members, filter="tar")
        else:
            tf.extractall(destination, members=members)

    def _extract_tar(self, archive: Path, destination: Path):
        with tarfile.open(archive, "r:*") as tf:
            self._extract_tar_stream(tf, destination)

    def _extract_zstd(self, archive: Path, destination: Path):
        decompressor = zstandard.ZstdDecompressor()
        with open(archive, "rb") as in_fh:
            with decompressor.stream_reader(in_fh) as reader:
                # tarfile needs seeking for member listing
                buffer = io.BytesIO(reader.read())
        with tarfile.open(fileobj=buffer, mode="r:") as tf:
            self._extract_tar_stream(tf, destination)

    def _unpack_once(self, archive: Path, destination: Path):
        kind = archive_kind(archive)
        handlers = {
            "zip": self._extract_zip,
            "tar": self._extract_tar,
            "zstd": self._extract_zstd,
        }
        if not kind:
            raise ExtractionError(
                "Unsupported archive format", archive=archive.name
            )

        destination.mkdir(parents=True, exist_ok=True)
        try:
            handlers[kind](archive, destination)
        except (
            zipfile.BadZipFile,
            tarfile.TarError,
            zstandard.ZstdError,
            EOFError,
            OSError,
        ) as e:
            raise ExtractionError(
                f"Failed to extract {archive.name}: {e}"
            ) from e

    @staticmethod
    def _entries(directory: Path):
        return [
            p for p in directory.iterdir() if p.name not in _IGNORED_ENTRIES
        ]

    def _content_root(self, directory: Path) -> Path:
        """Descend through single wrapping directories."""
        entries = self._entries(directory)
        while len(entries) == 1 and entries[0].is_dir():
            directory = entries[0]
            entries = self._entries(directory)
        return directory

    def extract(self, archive: Path, destination: Path) -> Path:
        """
        Unpacks ``archive`` into ``destination``.

        Args:
            archive: A supported archive file.
            destination: A directory to unpack into; created if missing.

        Returns:
            The content root inside ``destination``.

        Raises:
            ExtractionError: If the archive is corrupt, unsupported or the
                             disk write fails.
        """

        self.logger.info(f"Extracting {archive.name}...")
        self._unpack_once(archive, destination)
        root = self._content_root(destination)

        for _ in range(self.max_depth):
            entries = self._entries(root)
            if len(entries) != 1 or not archive_kind(entries[0]):
                break
            nested = entries[0]
            inner = root / f".{nested.name}.d"
            self._unpack_once(nested, inner)
            nested.unlink()
            for item in inner.iterdir():
                shutil.move(str(item), str(root / item.name))
            inner.rmdir()
            root = self._content_root(root)

        self.logger.info(f"Finished extracting {archive.name}")
        return root
