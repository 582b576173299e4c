"""Exception hierarchy for the release orchestrator.

Fatal conditions are raised as one of these; warnings are never raised, they
are accumulated on the run report instead.
"""
from __future__ import annotations


class DeployError(Exception):
    """Base class for every fatal orchestrator error."""


class ConfigError(DeployError):
    """Required configuration keys are missing or still placeholders."""

    def __init__(self, keys: list[str]) -> None:
        self.keys = list(keys)
        super().__init__(f"Required configuration keys missing or placeholder: {', '.join(self.keys)}")


class TopologyError(DeployError):
    """Requested persistence topology conflicts with what is deployed."""


class DiskError(DeployError):
    """Free space stayed below the threshold after reclamation."""

    def __init__(self, root: str, free_mb: int, threshold_mb: int) -> None:
        self.root = root
        self.free_mb = free_mb
        self.threshold_mb = threshold_mb
        super().__init__(f"Only {free_mb} MB free on {root}, need {threshold_mb} MB")


class LockError(DeployError):
    """Another live run holds the deployment lock."""


class RuntimeUnavailable(DeployError):
    """The container runtime cannot be reached."""


class RegistryAuthError(DeployError):
    """The registry rejected the login."""


class PullError(DeployError):
    """An image could not be pulled."""


class ReleaseError(DeployError):
    """The service group could not be stopped or started."""


class HealthCheckError(DeployError):
    """The readiness probe never succeeded within its bound."""


class NoSnapshotError(DeployError):
    """Rollback was requested but no snapshot exists."""

    def __init__(self, message: str = "No backup found") -> None:
        super().__init__(message)
