"""Shared exception classes for the brain installer."""


class BrainInstallerError(Exception):
    """Base exception for brain installer errors.

    Args:
        message: Human readable description.
        tool: Slug of the tool the error belongs to, when known.
    """

    kind = "error"

    def __init__(self, message: str, tool: str | None = None):
        super().__init__(message)
        self.tool = tool
        # Name of the pipeline step that failed, set by the pipeline
        self.step: str | None = None


class ConfigError(BrainInstallerError):
    """Raised when tools.yaml, the overlay map or a path template is invalid."""

    kind = "config"


class PathEscapeError(BrainInstallerError):
    """Raised when a destination resolves outside its scope root."""

    kind = "path_escape"


class CollisionError(BrainInstallerError):
    """Raised when two generated files claim the same destination."""

    kind = "collision"


class ComposeError(BrainInstallerError):
    """Raised when a composable document cannot be assembled."""

    kind = "compose"


class InstallIOError(BrainInstallerError):
    """Raised when a filesystem operation fails during a pipeline step."""

    kind = "io"


class MergeConflictError(BrainInstallerError):
    """Raised when a host-owned JSON file cannot be merged into."""

    kind = "merge_conflict"


class DetectionError(BrainInstallerError):
    """Raised when the host tool is not installed on this machine."""

    kind = "detection"


class CancelledError(BrainInstallerError):
    """Raised when a pipeline observes cancellation at a step boundary."""

    kind = "cancelled"

