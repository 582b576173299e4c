from __future__ import annotations

import os
import time
from typing import Callable, Protocol

from .context import TopologyKind
from .docker_ops import ContainerRuntime
from .envfile import EnvironmentConfig
from .errors import ReleaseError
from .manifest import APP_SERVICE, DB_SERVICE, SQLITE_PATH


class PersistenceBackend(Protocol):
    """Moves the application's data in and out of a snapshot."""

    artifact_name: str

    def export(self, runtime: ContainerRuntime, project: str, dest_dir: str) -> str:
        """Write the data artifact into ``dest_dir`` and return its path."""
        ...

    def restore(self, runtime: ContainerRuntime, project: str, artifact: str) -> None: ...


class FileArtifactBackend:
    """File database living at a fixed path inside the app service."""

    artifact_name = "db.sqlite3"

    def __init__(self, container_path: str = SQLITE_PATH, service: str = APP_SERVICE) -> None:
        self.container_path = container_path
        self.service = service

    def export(self, runtime: ContainerRuntime, project: str, dest_dir: str) -> str:
        dest = os.path.join(dest_dir, self.artifact_name)
        runtime.copy_from(project, self.service, self.container_path, dest)
        return dest

    def restore(self, runtime: ContainerRuntime, project: str, artifact: str) -> None:
        runtime.copy_to(project, self.service, artifact, self.container_path)


class LogicalDumpBackend:
    """Relational database exported with pg_dump and replayed with psql."""

    artifact_name = "db.sql"
    dump_path = "/tmp/dro-dump.sql"
    restore_path = "/tmp/dro-restore.sql"

    def __init__(
        self,
        user: str,
        database: str,
        service: str = DB_SERVICE,
        ready_attempts: int = 30,
        ready_interval_s: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.user = user
        self.database = database
        self.service = service
        self.ready_attempts = ready_attempts
        self.ready_interval_s = ready_interval_s
        self.sleep = sleep

    def wait_ready(self, runtime: ContainerRuntime, project: str) -> None:
        """Poll pg_isready; a freshly started server refuses connections for a while."""
        res = None
        for attempt in range(1, self.ready_attempts + 1):
            res = runtime.exec(project, self.service, ["pg_isready", "-U", self.user, "-d", self.database])
            if res.ok:
                return
            if attempt < self.ready_attempts:
                self.sleep(self.ready_interval_s)
        detail = res.output.strip() if res else ""
        raise ReleaseError(f"Database not ready after {self.ready_attempts} checks: {detail}")

    def export(self, runtime: ContainerRuntime, project: str, dest_dir: str) -> str:
        res = runtime.exec(
            project,
            self.service,
            ["pg_dump", "-U", self.user, "-d", self.database, "--clean", "--if-exists", "-f", self.dump_path],
        )
        if not res.ok:
            raise ReleaseError(f"pg_dump exited {res.exit_code}: {res.output.strip()}")
        dest = os.path.join(dest_dir, self.artifact_name)
        runtime.copy_from(project, self.service, self.dump_path, dest)
        runtime.exec(project, self.service, ["rm", "-f", self.dump_path])
        return dest

    def restore(self, runtime: ContainerRuntime, project: str, artifact: str) -> None:
        self.wait_ready(runtime, project)
        runtime.copy_to(project, self.service, artifact, self.restore_path)
        res = runtime.exec(
            project,
            self.service,
            ["psql", "-U", self.user, "-d", self.database, "-v", "ON_ERROR_STOP=1", "-f", self.restore_path],
        )
        if not res.ok:
            raise ReleaseError(f"psql restore exited {res.exit_code}: {res.output.strip()}")


def backend_for(kind: TopologyKind, config: EnvironmentConfig | None = None) -> PersistenceBackend:
    if TopologyKind(kind).file_based:
        return FileArtifactBackend()
    cfg = config or EnvironmentConfig()
    user = cfg.get("POSTGRES_USER") or "postgres"
    return LogicalDumpBackend(user=user, database=cfg.get("POSTGRES_DB") or user)
