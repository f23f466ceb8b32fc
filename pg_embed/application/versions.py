"""Normalization of loosely formatted server version strings."""

from .domain import ServerVersion
from .exceptions import InvalidVersionFormatError


def resolve(version_string: str) -> ServerVersion:
    """
    Parses ``major.minor.patch[.build]`` into a ServerVersion.

    Args:
        version_string: A dotted version such as "9.5.5" or "9.5.5.1".

    Returns:
        The canonical version; the optional fourth segment becomes ``build``.

    Raises:
        InvalidVersionFormatError: If the string does not have three or four
                                   numeric segments.
    """

    raw = (version_string or "").strip()
    segments = raw.split(".")

    numeric = all(s.isascii() and s.isdigit() for s in segments)
    if not numeric or not 3 <= len(segments) <= 4:
        raise InvalidVersionFormatError(
            "Expected three or four numeric dot-separated segments",
            version=repr(version_string),
        )

    major, minor, patch, *rest = (int(s) for s in segments)
    return ServerVersion(major, minor, patch, rest[0] if rest else None)
