import os
import sys

import pytest

# Ensure project root is importable (so `import dro` / `import main` work without installing)
_project_root = os.path.dirname(os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from dro.context import DeploymentContext, DeploymentTarget  # noqa: E402
from dro.docker_ops import CommandResult  # noqa: E402
from dro.errors import PullError  # noqa: E402
from dro.settings import Settings  # noqa: E402


class FakeRuntime:
    """In-memory ContainerRuntime.

    ``files`` maps (service, container_path) -> bytes and survives down/up,
    like data on a volume.
    """

    def __init__(self, running=False):
        self.running = running
        self.files = {}
        self.calls = []
        self.pulled = []
        self.manifest = None
        self.fail_pull = False
        self.fail_oneoff = set()
        self.fail_export = False
        self.prune_bytes = 0
        self.on_prune = None
        self.db_not_ready = 0

    def ensure_available(self):
        self.calls.append("ensure_available")

    def login(self, registry, username, password):
        self.calls.append(("login", registry, username))

    def pull(self, manifest):
        self.calls.append("pull")
        if self.fail_pull:
            raise PullError("manifest unknown")
        self.pulled.extend(manifest.images())

    def is_running(self, project):
        return self.running

    def down(self, project):
        self.calls.append("down")
        self.running = False

    def up(self, project, manifest):
        self.calls.append(("up", manifest.services["app"].image))
        self.manifest = manifest
        self.running = True

    def restart_service(self, project, service):
        self.calls.append(("restart", service))

    def run_oneoff(self, project, manifest, service, command):
        name = command[2] if len(command) > 2 else command[0]
        self.calls.append(("oneoff", name))
        if name in self.fail_oneoff:
            return CommandResult(exit_code=1, output="django.db.utils.OperationalError: boom\n")
        return CommandResult(exit_code=0, output="ok\n")

    def exec(self, project, service, command):
        self.calls.append(("exec", service, command[0]))
        if command[0] == "pg_isready" and self.db_not_ready > 0:
            self.db_not_ready -= 1
            return CommandResult(exit_code=2, output="/var/run/postgresql:5432 - no response")
        if command[0] == "pg_dump":
            if self.fail_export:
                return CommandResult(exit_code=1, output="connection refused")
            self.files[(service, command[-1])] = b"-- dump\nCREATE TABLE t();\n"
        return CommandResult(exit_code=0, output="")

    def copy_from(self, project, service, src, dest):
        self.calls.append(("copy_from", service, src))
        if self.fail_export or (service, src) not in self.files:
            raise FileNotFoundError(f"{service}:{src}")
        with open(dest, "wb") as f:
            f.write(self.files[(service, src)])

    def copy_to(self, project, service, src, dest):
        self.calls.append(("copy_to", service, dest))
        with open(src, "rb") as f:
            self.files[(service, dest)] = f.read()

    def prune(self):
        self.calls.append("prune")
        if self.on_prune:
            self.on_prune()
        return self.prune_bytes

    def prune_images(self):
        self.calls.append("prune_images")
        return 0


def make_context(tmp_path, **overrides):
    s = Settings(
        project="webapp",
        deploy_dir=str(tmp_path / "deploy"),
        backup_dir=str(tmp_path / "backups"),
        db_path="",
        topology="volume",
        docker_root=str(tmp_path / "docker"),
        min_free_mb=1024,
        snapshot_retention=3,
        start_grace_s=0,
        health_attempts=10,
        health_interval_s=10,
        health_settle_s=5,
    )
    return DeploymentContext.from_settings(s, **overrides)


@pytest.fixture
def ctx(tmp_path):
    c = make_context(tmp_path)
    os.makedirs(c.deploy_dir, exist_ok=True)
    return c


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def target():
    return DeploymentTarget(registry="123456789012.dkr.ecr.us-east-1.amazonaws.com", repository="webapp", tag="1.0.0")


@pytest.fixture
def make_ctx(tmp_path):
    def _make(**overrides):
        return make_context(tmp_path, **overrides)

    return _make
