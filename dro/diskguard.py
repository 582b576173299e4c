from __future__ import annotations

import glob
import os
import shutil
import subprocess
from dataclasses import dataclass
from typing import Callable

from docker.errors import DockerException

from .docker_ops import ContainerRuntime
from .errors import DiskError, RuntimeUnavailable
from .snapshots import SnapshotStore


MB = 1024 * 1024


@dataclass(frozen=True)
class ReclaimResult:
    step: str
    ok: bool
    detail: str


def free_mb(root: str) -> int:
    # The runtime root may not exist yet on a fresh host; measure its filesystem.
    path = os.path.abspath(root)
    while not os.path.exists(path):
        parent = os.path.dirname(path)
        if parent == path:
            break
        path = parent
    return int(shutil.disk_usage(path).free // MB)


def _run(cmd: list[str], timeout_s: int = 120) -> tuple[bool, str]:
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout_s)
    except (OSError, subprocess.TimeoutExpired) as e:
        return False, str(e)
    detail = (proc.stdout or proc.stderr or "").strip().splitlines()
    return proc.returncode == 0, detail[-1] if detail else f"exit {proc.returncode}"


class DiskGuard:
    """Refuses to let a rollout start on a nearly full runtime root.

    Reclamation steps are individually best-effort; only the final
    measurement decides.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        snapshots: SnapshotStore,
        retention: int,
        log_truncate_mb: int = 100,
        usage: Callable[[str], int] = free_mb,
        run: Callable[[list[str]], tuple[bool, str]] | None = None,
        which: Callable[[str], str | None] | None = None,
    ) -> None:
        self.runtime = runtime
        self.snapshots = snapshots
        self.retention = retention
        self.log_truncate_mb = log_truncate_mb
        self.usage = usage
        self.run = run or _run
        self.which = which or shutil.which
        self.results: list[ReclaimResult] = []

    def ensure_free_space(self, root: str, threshold_mb: int) -> int:
        """Return free MB on success; raise DiskError otherwise."""
        self.results = []
        initial = self.usage(root)
        if initial >= threshold_mb:
            return initial
        for name, step in self.steps(root):
            try:
                ok, detail = step()
            except (OSError, DockerException, RuntimeUnavailable) as e:
                ok, detail = False, f"{type(e).__name__}: {e}"
            self.results.append(ReclaimResult(step=name, ok=ok, detail=detail))
        remaining = self.usage(root)
        if remaining < threshold_mb:
            raise DiskError(root, remaining, threshold_mb)
        return remaining

    def steps(self, root: str) -> list[tuple[str, Callable[[], tuple[bool, str]]]]:
        return [
            ("runtime-prune", self._prune_runtime),
            ("truncate-container-logs", lambda: self._truncate_logs(root)),
            ("vacuum-journal", self._vacuum_journal),
            ("clean-package-cache", self._clean_package_cache),
            ("snapshot-retention", self._prune_snapshots),
        ]

    def _prune_runtime(self) -> tuple[bool, str]:
        reclaimed = self.runtime.prune()
        return True, f"reclaimed {reclaimed // MB} MB"

    def _truncate_logs(self, root: str) -> tuple[bool, str]:
        limit = self.log_truncate_mb * MB
        truncated = 0
        for path in glob.glob(os.path.join(root, "containers", "*", "*-json.log")):
            if os.path.getsize(path) > limit:
                with open(path, "r+b") as f:
                    f.truncate(0)
                truncated += 1
        return True, f"truncated {truncated} log(s)"

    def _vacuum_journal(self) -> tuple[bool, str]:
        if not self.which("journalctl"):
            return False, "journalctl not found"
        return self.run(["journalctl", "--vacuum-size=200M"])

    def _clean_package_cache(self) -> tuple[bool, str]:
        for tool, cmd in (
            ("dnf", ["dnf", "clean", "all"]),
            ("yum", ["yum", "clean", "all"]),
            ("apt-get", ["apt-get", "clean"]),
        ):
            if self.which(tool):
                return self.run(cmd)
        return False, "no package manager found"

    def _prune_snapshots(self) -> tuple[bool, str]:
        removed = self.snapshots.prune(self.retention)
        return True, f"removed {len(removed)} snapshot(s)"
