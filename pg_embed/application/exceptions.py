"""
Core exceptions for the embedded server lifecycle.

This module defines a hierarchy of custom exceptions to allow for granular
error handling and clear separation of failure domains. Every exception
accepts keyword context (version, workspace, port, ...) which is kept on
``.context`` and appended to the message, so a failure can be diagnosed
without inspecting internals.
"""


class PgEmbedError(Exception):
    """Base exception for all component-specific errors."""

    def __init__(self, message: str = "", **context):
        self.context = {k: v for k, v in context.items() if v is not None}
        if self.context:
            details = ", ".join(f"{k}={v}" for k, v in self.context.items())
            message = f"{message} [{details}]"
        super().__init__(message)

    def add_context(self, **context) -> "PgEmbedError":
        """Attach context the raiser did not know about, e.g. the workspace."""
        new = {
            k: v for k, v in context.items()
            if v is not None and k not in self.context
        }
        if new:
            self.context.update(new)
            details = ", ".join(f"{k}={v}" for k, v in new.items())
            self.args = (f"{self.args[0]} [{details}]", *self.args[1:])
        return self


# --- Configuration Errors ---

class ConfigurationError(PgEmbedError):
    """Raised for errors related to application configuration."""
    pass


class InvalidVersionFormatError(PgEmbedError):
    """Raised when a version string has fewer than three numeric segments."""
    pass


# --- Infrastructure Errors ---

class InfrastructureError(PgEmbedError):
    """Base class for errors related to external systems (network, disk, ...)."""
    pass


class DownloadError(InfrastructureError):
    """Raised when a binary package download fails."""
    pass


class ExtractionError(InfrastructureError):
    """Raised when an archive cannot be unpacked."""
    pass


# --- Server Lifecycle Errors ---

class ServerError(PgEmbedError):
    """Base class for failures of the server process lifecycle."""
    pass


class InitializationError(ServerError):
    """Raised when the data directory bootstrap routine fails."""
    pass


class NoPortAvailableError(ServerError):
    """Raised when no free listening port could be reserved."""
    pass


class ReadinessTimeoutError(ServerError):
    """Raised when the server does not accept connections in time."""
    pass


class ProcessExitedPrematurelyError(ServerError):
    """Raised when the server process exits before becoming ready."""
    pass


class AlreadyStartedError(ServerError):
    """Raised when start() is called on a running instance."""
    pass


class WorkspaceInUseError(ServerError):
    """Raised when another live instance owns the requested workspace."""
    pass


# --- Extension Errors ---

class ExtensionInstallError(PgEmbedError):
    """Raised when an extension cannot be deployed or its SQL fails."""
    pass


class ExtensionDownloadError(ExtensionInstallError):
    """Raised when an extension archive download fails after all retries."""
    pass


# --- Cleanup Errors ---

class CleanupError(PgEmbedError):
    """Non-fatal failure while releasing an instance workspace. Logged only."""
    pass
