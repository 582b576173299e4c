from __future__ import annotations

from .docker_ops import ContainerRuntime
from .errors import NoSnapshotError
from .snapshots import SnapshotStore


class RollbackController:
    """Put the newest snapshot back in place.

    Health is not re-checked afterwards: a rollback is best-effort recovery.
    """

    def __init__(self, runtime: ContainerRuntime, snapshots: SnapshotStore, project: str) -> None:
        self.runtime = runtime
        self.snapshots = snapshots
        self.project = project

    def rollback(self) -> str:
        latest = self.snapshots.latest()
        if latest is None:
            raise NoSnapshotError()
        self.runtime.down(self.project)
        self.snapshots.restore(latest)
        return latest
