from __future__ import annotations

import os
import re
from dataclasses import dataclass
from enum import Enum

from .settings import Settings


REPOSITORY_RE = re.compile(r"^[a-z0-9][a-z0-9\-\._/]{0,254}$")
TAG_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_\-\.]{0,127}$")

MANIFEST_NAME = "docker-compose-deploy.yml"
ENV_NAME = ".env"
ENV_TEMPLATE_NAME = ".env.template"
LOCK_NAME = ".dro.lock"


class TopologyKind(str, Enum):
    BIND = "bind"
    VOLUME = "volume"
    POSTGRES = "postgres"

    @property
    def file_based(self) -> bool:
        return self is not TopologyKind.POSTGRES


@dataclass(frozen=True)
class DeploymentTarget:
    registry: str
    repository: str
    tag: str

    @property
    def image(self) -> str:
        return f"{self.registry}/{self.repository}:{self.tag}"

    @property
    def proxy_image(self) -> str:
        return f"{self.registry}/{self.repository}-proxy:{self.tag}"


def parse_target(ref: str) -> DeploymentTarget:
    """Split ``registry/repository:tag`` into a DeploymentTarget."""
    ref = ref.strip()
    if "/" not in ref:
        raise ValueError(f"Image reference '{ref}' has no registry host.")
    registry, rest = ref.split("/", 1)
    if ":" not in rest:
        raise ValueError(f"Image reference '{ref}' has no tag.")
    repository, tag = rest.rsplit(":", 1)
    if not registry or not REPOSITORY_RE.match(repository):
        raise ValueError(f"Invalid repository in '{ref}'.")
    if not TAG_RE.match(tag):
        raise ValueError(f"Invalid tag in '{ref}'.")
    return DeploymentTarget(registry=registry, repository=repository, tag=tag)


@dataclass(frozen=True)
class DeploymentContext:
    """Everything one invocation needs, passed explicitly to each component."""

    project: str
    deploy_dir: str
    backup_dir: str
    db_path: str
    topology: TopologyKind
    docker_root: str
    min_free_mb: int
    snapshot_retention: int
    log_truncate_mb: int
    start_grace_s: int
    health_attempts: int
    health_interval_s: int
    health_settle_s: int
    lock_stale_s: int
    strict_config: bool
    auto_rollback: bool
    allow_topology_change: bool = False
    extra_hosts: tuple[str, ...] = ()
    health_urls: tuple[str, ...] = ("http://localhost/health/", "http://localhost:8000/health/")

    @property
    def manifest_path(self) -> str:
        return os.path.join(self.deploy_dir, MANIFEST_NAME)

    @property
    def env_path(self) -> str:
        return os.path.join(self.deploy_dir, ENV_NAME)

    @property
    def env_template_path(self) -> str:
        return os.path.join(self.deploy_dir, ENV_TEMPLATE_NAME)

    @property
    def lock_path(self) -> str:
        return os.path.join(self.deploy_dir, LOCK_NAME)

    @property
    def data_dir(self) -> str:
        return os.path.join(self.deploy_dir, "data")

    @classmethod
    def from_settings(cls, s: Settings, **overrides) -> DeploymentContext:
        deploy_dir = overrides.pop("deploy_dir", None) or s.deploy_dir
        values = dict(
            project=s.project,
            deploy_dir=deploy_dir,
            backup_dir=s.backup_dir,
            db_path=s.db_path or os.path.join(deploy_dir, "dro.db"),
            topology=TopologyKind(s.topology),
            docker_root=s.docker_root,
            min_free_mb=s.min_free_mb,
            snapshot_retention=max(1, s.snapshot_retention),
            log_truncate_mb=s.log_truncate_mb,
            start_grace_s=max(0, s.start_grace_s),
            health_attempts=max(1, s.health_attempts),
            health_interval_s=max(0, s.health_interval_s),
            health_settle_s=max(0, s.health_settle_s),
            lock_stale_s=max(1, s.lock_stale_s),
            strict_config=s.strict_config,
            auto_rollback=s.auto_rollback,
            extra_hosts=tuple(h.strip() for h in s.extra_allowed_hosts.split(",") if h.strip()),
        )
        values.update({k: v for k, v in overrides.items() if v is not None})
        if not isinstance(values["topology"], TopologyKind):
            values["topology"] = TopologyKind(values["topology"])
        return cls(**values)
