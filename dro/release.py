from __future__ import annotations

import time
from typing import Callable

from .docker_ops import ContainerRuntime
from .manifest import APP_SERVICE, ServiceManifest


ONEOFF_COMMANDS: tuple[tuple[str, list[str]], ...] = (
    ("migrate", ["python", "manage.py", "migrate", "--noinput"]),
    ("collectstatic", ["python", "manage.py", "collectstatic", "--noinput"]),
)


class ReleaseController:
    """Pull, stop, start, then run the one-off maintenance commands.

    ``on_stage`` is told about each stage before it starts. Pull, stop and
    start failures propagate; one-off failures become warnings.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        project: str,
        start_grace_s: float = 20,
        on_stage: Callable[[str], None] | None = None,
        warn: Callable[[str], None] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.runtime = runtime
        self.project = project
        self.start_grace_s = start_grace_s
        self.on_stage = on_stage or (lambda stage: None)
        self.warn = warn or (lambda msg: None)
        self.sleep = sleep

    def rollout(self, manifest: ServiceManifest) -> None:
        self.on_stage("Pulling")
        self.runtime.pull(manifest)

        # The proxy binds fixed host ports; the old group must be gone before start.
        self.on_stage("Stopping")
        self.runtime.down(self.project)

        self.on_stage("Starting")
        self.runtime.up(self.project, manifest)
        if self.start_grace_s > 0:
            self.sleep(self.start_grace_s)

        self.on_stage("Migrating")
        self.run_oneoffs(manifest)

    def run_oneoffs(self, manifest: ServiceManifest) -> list[str]:
        failed = []
        for name, command in ONEOFF_COMMANDS:
            res = self.runtime.run_oneoff(self.project, manifest, APP_SERVICE, command)
            if not res.ok:
                tail = res.output.strip().splitlines()[-1:] or [""]
                self.warn(f"{name} failed (exit {res.exit_code}): {tail[0]}")
                failed.append(name)
        return failed
