from __future__ import annotations

import os
import re
import shutil
from datetime import datetime, timedelta, timezone
from typing import Callable

from pydantic import BaseModel

from .context import ENV_NAME, MANIFEST_NAME, DeploymentContext, TopologyKind
from .docker_ops import ContainerRuntime
from .envfile import EnvironmentConfig, atomic_write
from .errors import DeployError, NoSnapshotError
from .manifest import APP_SERVICE, ServiceManifest
from .persistence import PersistenceBackend, backend_for


ID_FORMAT = "%Y%m%d-%H%M%S-%f"
ID_RE = re.compile(r"^\d{8}-\d{6}-\d{6}$")
META_NAME = "snapshot.json"


class SnapshotInfo(BaseModel):
    id: str
    created_at: str
    image: str | None = None
    topology: TopologyKind
    artifact: str | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SnapshotStore:
    """Timestamped copies of manifest + config + data under ``ctx.backup_dir``."""

    def __init__(
        self,
        ctx: DeploymentContext,
        runtime: ContainerRuntime,
        warn: Callable[[str], None] | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.ctx = ctx
        self.runtime = runtime
        self.warn = warn or (lambda msg: None)
        self.clock = clock

    def path(self, snapshot_id: str) -> str:
        return os.path.join(self.ctx.backup_dir, snapshot_id)

    def list_ids(self) -> list[str]:
        if not os.path.isdir(self.ctx.backup_dir):
            return []
        ids = [
            name
            for name in os.listdir(self.ctx.backup_dir)
            if ID_RE.match(name) and os.path.exists(os.path.join(self.ctx.backup_dir, name, MANIFEST_NAME))
        ]
        return sorted(ids)

    def latest(self) -> str | None:
        ids = self.list_ids()
        return ids[-1] if ids else None

    def info(self, snapshot_id: str) -> SnapshotInfo:
        meta = os.path.join(self.path(snapshot_id), META_NAME)
        if not os.path.exists(meta):
            raise NoSnapshotError(f"Snapshot {snapshot_id} not found")
        with open(meta, encoding="utf-8") as f:
            return SnapshotInfo.model_validate_json(f.read())

    def _next_id(self) -> str:
        now = self.clock()
        latest = self.latest()
        if latest is not None:
            floor = datetime.strptime(latest, ID_FORMAT).replace(tzinfo=timezone.utc)
            if now <= floor:
                now = floor + timedelta(microseconds=1)
        return now.strftime(ID_FORMAT)

    def capture(
        self,
        manifest_path: str,
        config_path: str,
        backend: PersistenceBackend,
        image: str | None = None,
    ) -> str | None:
        """Snapshot the live deployment; None when the group is not running."""
        if not self.runtime.is_running(self.ctx.project):
            return None
        if not os.path.exists(manifest_path):
            self.warn(f"Service group is running but {manifest_path} is missing; no snapshot taken.")
            return None

        snapshot_id = self._next_id()
        tmp_dir = self.path(f".partial-{snapshot_id}")
        os.makedirs(tmp_dir, exist_ok=True)
        try:
            shutil.copyfile(manifest_path, os.path.join(tmp_dir, MANIFEST_NAME))
            if os.path.exists(config_path):
                shutil.copyfile(config_path, os.path.join(tmp_dir, ENV_NAME))
                os.chmod(os.path.join(tmp_dir, ENV_NAME), 0o600)

            live = ServiceManifest.load(manifest_path)
            artifact = None
            try:
                artifact = os.path.basename(backend.export(self.runtime, self.ctx.project, tmp_dir))
            except (OSError, DeployError) as e:
                self.warn(f"Data export failed, snapshot {snapshot_id} holds manifest and config only: {e}")

            app = live.services.get(APP_SERVICE)
            info = SnapshotInfo(
                id=snapshot_id,
                created_at=self.clock().isoformat(),
                image=image or (app.image if app else None),
                topology=live.topology,
                artifact=artifact,
            )
            with open(os.path.join(tmp_dir, META_NAME), "w", encoding="utf-8") as f:
                f.write(info.model_dump_json(indent=2))
            os.replace(tmp_dir, self.path(snapshot_id))
        except BaseException:
            shutil.rmtree(tmp_dir, ignore_errors=True)
            raise
        return snapshot_id

    def restore(self, snapshot_id: str) -> None:
        src = self.path(snapshot_id)
        if not os.path.exists(os.path.join(src, MANIFEST_NAME)):
            raise NoSnapshotError(f"Snapshot {snapshot_id} not found")
        info = self.info(snapshot_id)

        with open(os.path.join(src, MANIFEST_NAME), "rb") as f:
            atomic_write(self.ctx.manifest_path, f.read())
        config = None
        if os.path.exists(os.path.join(src, ENV_NAME)):
            with open(os.path.join(src, ENV_NAME), "rb") as f:
                atomic_write(self.ctx.env_path, f.read(), mode=0o600)
            config = EnvironmentConfig.load(self.ctx.env_path)

        manifest = ServiceManifest.load(self.ctx.manifest_path)
        self.runtime.down(self.ctx.project)
        self.runtime.up(self.ctx.project, manifest)

        artifact = os.path.join(src, info.artifact) if info.artifact else None
        if not artifact or not os.path.exists(artifact):
            self.warn(f"Snapshot {snapshot_id} has no data artifact; restored structure only.")
            return
        backend = backend_for(info.topology, config)
        try:
            backend.restore(self.runtime, self.ctx.project, artifact)
            self.runtime.restart_service(self.ctx.project, APP_SERVICE)
        except (OSError, DeployError) as e:
            self.warn(f"Data restore from snapshot {snapshot_id} failed; restored structure only: {e}")

    def prune(self, keep: int) -> list[str]:
        """Delete all but the newest ``keep`` snapshots; returns removed ids."""
        ids = self.list_ids()
        doomed = ids[: max(0, len(ids) - max(0, keep))]
        for snapshot_id in doomed:
            shutil.rmtree(self.path(snapshot_id), ignore_errors=True)
        return doomed
