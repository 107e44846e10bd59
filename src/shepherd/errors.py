"""Error taxonomy for shepherd jobs."""

from __future__ import annotations


class ShepherdError(RuntimeError):
    """Base error for job execution failures."""


class ConfigError(ShepherdError, ValueError):
    """Raised when job parameters are malformed."""


class LocalIOError(ShepherdError):
    """Raised when the local filesystem refuses a staging or capture step."""


class RemoteError(ShepherdError):
    """Raised when the remote object store cannot be read or written."""


class MountError(ShepherdError):
    """Raised when the mount or unmount helper fails."""


class UnsupportedError(ShepherdError):
    """Raised for parameter combinations a strategy does not implement."""


class ProcessLaunchError(ShepherdError):
    """Raised when the job command cannot be started or waited on."""
