"""Deployment state machine.

Drives one invocation from ``Idle`` to ``Healthy``, ``Failed`` or
``RolledBack``. Every transition is checked against ``TRANSITIONS`` and
recorded in the journal; the newest run row is the state marker the next
invocation reads.
"""
from __future__ import annotations

import os
import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable
from urllib.parse import quote

from docker.errors import DockerException

from . import envfile
from .context import DeploymentContext, DeploymentTarget, TopologyKind
from .db import Journal
from .diskguard import DiskGuard, free_mb
from .docker_ops import ContainerRuntime
from .envfile import EnvironmentConfig, atomic_write
from .errors import ConfigError, DeployError, HealthCheckError, LockError, NoSnapshotError
from .health import Probe, url_probe, wait_healthy
from .lock import DeploymentLock
from .manifest import DB_SERVICE, SQLITE_PATH, detect_topology_conflict, render
from .metadata import allowed_hosts, discover_public_ip
from .persistence import backend_for
from .registry import Credentials, login, resolve_credentials
from .release import ReleaseController
from .rollback import RollbackController
from .settings import settings
from .snapshots import SnapshotStore


class DeploymentState(str, Enum):
    IDLE = "Idle"
    RECONCILING = "Reconciling"
    GUARDING_DISK = "GuardingDisk"
    SNAPSHOTTING = "Snapshotting"
    PULLING = "Pulling"
    STOPPING = "Stopping"
    STARTING = "Starting"
    MIGRATING = "Migrating"
    HEALTH_CHECKING = "HealthChecking"
    HEALTHY = "Healthy"
    FAILED = "Failed"
    ROLLING_BACK = "RollingBack"
    ROLLED_BACK = "RolledBack"


S = DeploymentState

_HAPPY_PATH = [
    S.IDLE,
    S.RECONCILING,
    S.GUARDING_DISK,
    S.SNAPSHOTTING,
    S.PULLING,
    S.STOPPING,
    S.STARTING,
    S.MIGRATING,
    S.HEALTH_CHECKING,
    S.HEALTHY,
]

TRANSITIONS: dict[DeploymentState, set[DeploymentState]] = {
    a: {b, S.FAILED} for a, b in zip(_HAPPY_PATH, _HAPPY_PATH[1:])
}
# Operator-requested rollback starts straight from Idle.
TRANSITIONS[S.IDLE].add(S.ROLLING_BACK)
TRANSITIONS[S.FAILED] = {S.ROLLING_BACK}
TRANSITIONS[S.ROLLING_BACK] = {S.ROLLED_BACK, S.FAILED}
TRANSITIONS[S.HEALTHY] = set()
TRANSITIONS[S.ROLLED_BACK] = set()

# Failures here happen after the live files were replaced, so a rollback makes sense.
ROLLBACK_STAGES = {S.PULLING, S.STOPPING, S.STARTING, S.MIGRATING, S.HEALTH_CHECKING}


class InvalidTransition(RuntimeError):
    pass


@dataclass
class RunReport:
    run_id: int | None
    kind: str
    state: DeploymentState
    snapshot_id: str | None = None
    warnings: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.state is (S.ROLLED_BACK if self.kind == "rollback" else S.HEALTHY)


class RunTracker:
    """Current state of one run plus its accumulated warnings."""

    def __init__(self, journal: Journal, kind: str, image: str | None) -> None:
        self.journal = journal
        self.image = image
        self.state = S.IDLE
        self.row = journal.start_run(kind, image, self.state.value)
        self.report = RunReport(run_id=self.row.id, kind=kind, state=self.state)

    def transition(self, new: DeploymentState) -> None:
        new = DeploymentState(new)
        if new not in TRANSITIONS[self.state]:
            raise InvalidTransition(f"{self.state.value} -> {new.value} is not allowed")
        self.journal.log_event("INFO", f"{self.state.value} -> {new.value}", run_id=self.row.id, stage=new.value, image=self.image)
        self.state = new
        self.report.state = new
        self.journal.set_run_state(self.row.id, new.value)

    def info(self, message: str) -> None:
        self.journal.log_event("INFO", message, run_id=self.row.id, stage=self.state.value, image=self.image)

    def warn(self, message: str) -> None:
        self.report.warnings.append(message)
        self.journal.log_event("WARN", message, run_id=self.row.id, stage=self.state.value, image=self.image)

    def error(self, message: str) -> None:
        self.report.error = message if not self.report.error else f"{self.report.error}; {message}"
        self.journal.log_event("ERROR", message, run_id=self.row.id, stage=self.state.value, image=self.image)

    def set_snapshot(self, snapshot_id: str) -> None:
        self.report.snapshot_id = snapshot_id
        self.journal.set_run_snapshot(self.row.id, snapshot_id)

    def finish(self) -> RunReport:
        self.journal.finish_run(self.row.id, self.state.value, self.report.warnings, self.report.error)
        return self.report


def required_defaults(ctx: DeploymentContext) -> dict[str, str]:
    out = {"DJANGO_SECRET_KEY": secrets.token_urlsafe(50)}
    if ctx.topology is TopologyKind.POSTGRES:
        out.update(
            {
                "POSTGRES_DB": ctx.project,
                "POSTGRES_USER": ctx.project,
                "POSTGRES_PASSWORD": secrets.token_urlsafe(24),
            }
        )
    return out


def computed_overrides(ctx: DeploymentContext, target: DeploymentTarget, public_ip: str | None) -> dict[str, str]:
    out = {
        "DJANGO_ALLOWED_HOSTS": allowed_hosts(public_ip, ctx.extra_hosts),
        "IMAGE_REGISTRY": target.registry,
        "IMAGE_REPOSITORY": target.repository,
        "IMAGE_TAG": target.tag,
    }
    if ctx.topology.file_based:
        out["DATABASE_URL"] = f"sqlite:///{SQLITE_PATH}"
        out["DJANGO_SQLITE_PATH"] = SQLITE_PATH
    return out


def postgres_url(cfg: EnvironmentConfig) -> str:
    user = cfg.get("POSTGRES_USER") or "postgres"
    password = quote(cfg.get("POSTGRES_PASSWORD") or "", safe="")
    name = cfg.get("POSTGRES_DB") or user
    return f"postgres://{quote(user, safe='')}:{password}@{DB_SERVICE}:5432/{name}"


class Orchestrator:
    def __init__(
        self,
        ctx: DeploymentContext,
        runtime: ContainerRuntime,
        journal: Journal | None = None,
        probe: Probe | None = None,
        sleep: Callable[[float], None] = time.sleep,
        disk_usage: Callable[[str], int] = free_mb,
        discover_ip: Callable[[], str | None] = discover_public_ip,
        credentials: Callable[[DeploymentTarget], Credentials | None] | None = None,
    ) -> None:
        self.ctx = ctx
        self.runtime = runtime
        self.journal = journal or Journal(ctx.db_path)
        self.probe = probe or url_probe(ctx.health_urls)
        self.sleep = sleep
        self.disk_usage = disk_usage
        self.discover_ip = discover_ip
        self.credentials = credentials or (lambda t: resolve_credentials(t, settings))

    def _store(self, run: RunTracker) -> SnapshotStore:
        return SnapshotStore(self.ctx, self.runtime, warn=run.warn)

    def _acquire_lock(self) -> tuple[DeploymentLock, list[str]]:
        """Take the deployment lock; stale-lock warnings are returned for the run."""
        pending: list[str] = []
        lock = DeploymentLock(self.ctx.lock_path, self.ctx.lock_stale_s, on_warning=pending.append)
        lock.acquire()
        return lock, pending

    def _not_started(self, kind: str, image: str | None, err: BaseException) -> RunReport:
        # No run row: the run holding the lock stays the newest state marker.
        message = f"{type(err).__name__}: {err}"
        self.journal.log_event("ERROR", f"{kind} not started: {message}", image=image)
        return RunReport(run_id=None, kind=kind, state=S.FAILED, error=message)

    def deploy(self, target: DeploymentTarget) -> RunReport:
        try:
            lock, pending = self._acquire_lock()
        except (LockError, OSError) as e:
            return self._not_started("deploy", target.image, e)
        try:
            previous = self.journal.latest_run()
            run = RunTracker(self.journal, "deploy", target.image)
            for message in pending:
                run.warn(message)
            if previous and previous.state == S.FAILED.value:
                run.warn(f"Previous run #{previous.id} ended Failed; consider a rollback if this one fails too.")
            try:
                self._deploy(run, target)
            except (DeployError, DockerException, OSError) as e:
                self._handle_failure(run, e)
            except BaseException as e:
                run.error(f"Aborted: {type(e).__name__}: {e}")
                if S.FAILED in TRANSITIONS[run.state]:
                    run.transition(S.FAILED)
                run.finish()
                raise
            return run.finish()
        finally:
            lock.release()

    def _deploy(self, run: RunTracker, target: DeploymentTarget) -> None:
        ctx = self.ctx
        store = self._store(run)

        run.transition(S.RECONCILING)
        self.runtime.ensure_available()
        detect_topology_conflict(ctx, ctx.topology)
        public_ip = self.discover_ip()
        if not public_ip:
            run.info("Public address not discoverable; allowed hosts limited to local names.")
        config = envfile.plan(
            ctx.env_path,
            required_defaults(ctx),
            computed_overrides(ctx, target, public_ip),
            template=ctx.env_template_path,
        )
        if ctx.topology is TopologyKind.POSTGRES:
            config.set("DATABASE_URL", postgres_url(config))
        try:
            config.check_required()
        except ConfigError as e:
            if ctx.strict_config:
                raise
            run.warn(str(e))
        manifest = render(target, ctx.topology, ctx)
        if login(self.runtime, target, self.credentials(target)):
            run.info(f"Logged in to {target.registry}")

        run.transition(S.GUARDING_DISK)
        guard = DiskGuard(
            self.runtime,
            store,
            retention=ctx.snapshot_retention,
            log_truncate_mb=ctx.log_truncate_mb,
            usage=self.disk_usage,
        )
        try:
            free = guard.ensure_free_space(ctx.docker_root, ctx.min_free_mb)
        finally:
            for r in guard.results:
                (run.info if r.ok else run.warn)(f"Reclaim {r.step}: {r.detail}")
        run.info(f"{free} MB free on {ctx.docker_root}")

        run.transition(S.SNAPSHOTTING)
        live_config = EnvironmentConfig.load(ctx.env_path) if os.path.exists(ctx.env_path) else config
        snapshot_id = store.capture(ctx.manifest_path, ctx.env_path, backend_for(ctx.topology, live_config), target.image)
        if snapshot_id:
            run.set_snapshot(snapshot_id)
            run.info(f"Backup stored at {store.path(snapshot_id)}")
        else:
            run.info("No running service group; skipping snapshot.")

        if config.write(ctx.env_path):
            run.info(f"Wrote {ctx.env_path}")
        atomic_write(ctx.manifest_path, manifest.to_yaml().encode("utf-8"))
        run.info(f"Wrote {ctx.manifest_path}")
        if ctx.topology is TopologyKind.BIND:
            os.makedirs(ctx.data_dir, exist_ok=True)

        release = ReleaseController(
            self.runtime,
            ctx.project,
            start_grace_s=ctx.start_grace_s,
            on_stage=run.transition,
            warn=run.warn,
            sleep=self.sleep,
        )
        release.rollout(manifest)

        run.transition(S.HEALTH_CHECKING)
        outcome = wait_healthy(
            self.probe,
            max_attempts=ctx.health_attempts,
            interval_s=ctx.health_interval_s,
            settle_s=ctx.health_settle_s,
            sleep=self.sleep,
            on_attempt=lambda i, ok, msg: run.info(f"Health {i}/{ctx.health_attempts}: {msg}"),
        )
        if not outcome.healthy:
            raise HealthCheckError(f"Health check failed after {outcome.attempts} attempts: {outcome.last_message}")
        run.transition(S.HEALTHY)
        self._prune(run, store)

    def _prune(self, run: RunTracker, store: SnapshotStore) -> None:
        try:
            reclaimed = self.runtime.prune_images()
            run.info(f"Pruned dangling images ({reclaimed // (1024 * 1024)} MB)")
        except (DeployError, DockerException) as e:
            run.warn(f"Image prune failed: {e}")
        removed = store.prune(self.ctx.snapshot_retention)
        if removed:
            run.info(f"Removed old snapshots: {', '.join(removed)}")

    def _handle_failure(self, run: RunTracker, err: BaseException) -> None:
        failed_in = run.state
        run.error(f"{type(err).__name__}: {err}")
        if S.FAILED not in TRANSITIONS[failed_in]:
            return
        run.transition(S.FAILED)
        if failed_in not in ROLLBACK_STAGES or not self.ctx.auto_rollback:
            return
        if self._store(run).latest() is None:
            run.warn("No backup found; failure left uncorrected.")
            return
        self._rollback(run)

    def _rollback(self, run: RunTracker) -> None:
        run.transition(S.ROLLING_BACK)
        controller = RollbackController(self.runtime, self._store(run), self.ctx.project)
        try:
            snapshot_id = controller.rollback()
        except (DeployError, DockerException, OSError) as e:
            run.error(f"Rollback failed: {type(e).__name__}: {e}")
            run.transition(S.FAILED)
            return
        run.info(f"Restored snapshot {snapshot_id}; health not re-checked.")
        run.transition(S.ROLLED_BACK)

    def rollback(self) -> RunReport:
        """Operator-requested rollback to the newest snapshot."""
        try:
            lock, pending = self._acquire_lock()
        except (LockError, OSError) as e:
            return self._not_started("rollback", None, e)
        try:
            run = RunTracker(self.journal, "rollback", None)
            for message in pending:
                run.warn(message)
            try:
                self.runtime.ensure_available()
                if self._store(run).latest() is None:
                    raise NoSnapshotError()
                self._rollback(run)
            except (DeployError, DockerException, OSError) as e:
                run.error(str(e) if isinstance(e, DeployError) else f"{type(e).__name__}: {e}")
                if S.FAILED in TRANSITIONS[run.state]:
                    run.transition(S.FAILED)
            return run.finish()
        finally:
            lock.release()
