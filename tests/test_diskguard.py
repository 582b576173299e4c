import os

import pytest

from dro.diskguard import DiskGuard, free_mb
from dro.errors import DiskError
from dro.snapshots import SnapshotStore


class _Usage:
    """Mutable free-space reading; tests bump ``free`` from a reclaim step."""

    def __init__(self, free):
        self.free = free
        self.calls = 0

    def __call__(self, root):
        self.calls += 1
        return self.free


def _guard(ctx, runtime, usage, **kw):
    runs = []

    def fake_run(cmd):
        runs.append(cmd)
        return True, "ok"

    guard = DiskGuard(
        runtime,
        SnapshotStore(ctx, runtime),
        retention=2,
        usage=usage,
        run=fake_run,
        which=kw.get("which", lambda tool: f"/usr/bin/{tool}" if tool in {"journalctl", "dnf"} else None),
    )
    return guard, runs


def test_enough_space_skips_reclamation(ctx, runtime):
    guard, runs = _guard(ctx, runtime, _Usage(5000))

    assert guard.ensure_free_space(ctx.docker_root, 1024) == 5000
    assert "prune" not in runtime.calls
    assert runs == []


def test_reclamation_recovers_space(ctx, runtime):
    usage = _Usage(100)
    runtime.on_prune = lambda: setattr(usage, "free", 4000)
    guard, runs = _guard(ctx, runtime, usage)

    assert guard.ensure_free_space(ctx.docker_root, 1024) == 4000
    assert [r.step for r in guard.results] == [
        "runtime-prune",
        "truncate-container-logs",
        "vacuum-journal",
        "clean-package-cache",
        "snapshot-retention",
    ]
    assert ["journalctl", "--vacuum-size=200M"] in runs
    assert ["dnf", "clean", "all"] in runs


def test_insufficient_reclamation_raises(ctx, runtime):
    guard, _ = _guard(ctx, runtime, _Usage(100))

    with pytest.raises(DiskError) as exc:
        guard.ensure_free_space(ctx.docker_root, 1024)
    assert exc.value.free_mb == 100
    assert exc.value.threshold_mb == 1024


def test_failing_steps_are_not_fatal(ctx, runtime):
    usage = _Usage(100)

    def broken_prune():
        raise OSError("docker socket gone")

    runtime.prune = broken_prune
    guard, _ = _guard(ctx, runtime, usage, which=lambda tool: None)

    def later_step_frees_space():
        usage.free = 2048
        return []

    guard.snapshots.prune = lambda keep: later_step_frees_space()

    assert guard.ensure_free_space(ctx.docker_root, 1024) == 2048
    by_step = {r.step: r for r in guard.results}
    assert by_step["runtime-prune"].ok is False
    assert "docker socket gone" in by_step["runtime-prune"].detail
    assert by_step["vacuum-journal"].ok is False
    assert by_step["snapshot-retention"].ok is True


def test_truncates_only_oversized_container_logs(ctx, runtime):
    big = os.path.join(ctx.docker_root, "containers", "abc", "abc-json.log")
    small = os.path.join(ctx.docker_root, "containers", "def", "def-json.log")
    for path, size in ((big, 3 * 1024 * 1024), (small, 10)):
        os.makedirs(os.path.dirname(path))
        with open(path, "wb") as f:
            f.write(b"x" * size)
    guard, _ = _guard(ctx, runtime, _Usage(0))
    guard.log_truncate_mb = 1

    with pytest.raises(DiskError):
        guard.ensure_free_space(ctx.docker_root, 1024)

    assert os.path.getsize(big) == 0
    assert os.path.getsize(small) == 10


def test_free_mb_measures_nearest_existing_parent(tmp_path):
    assert free_mb(str(tmp_path / "does" / "not" / "exist")) > 0
