from __future__ import annotations

import os
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field

from .context import DeploymentContext, DeploymentTarget, TopologyKind
from .errors import TopologyError


APP_SERVICE = "app"
PROXY_SERVICE = "proxy"
DB_SERVICE = "db"
CACHE_SERVICE = "cache"
NETWORK = "app-network"

DATA_MOUNT = "/data"
SQLITE_PATH = "/data/db.sqlite3"
SQLITE_VOLUME = "sqlite-data"
POSTGRES_VOLUME = "postgres-data"

POSTGRES_IMAGE = "postgres:16-alpine"
CACHE_IMAGE = "redis:7-alpine"


class ServiceSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    image: str
    restart: str = "always"
    command: list[str] | None = None
    depends_on: list[str] = Field(default_factory=list)
    env_file: list[str] = Field(default_factory=list)
    environment: dict[str, str] = Field(default_factory=dict)
    ports: list[str] = Field(default_factory=list)
    volumes: list[str] = Field(default_factory=list)
    networks: list[str] = Field(default_factory=list)


class NetworkSpec(BaseModel):
    driver: str = "bridge"


class ServiceManifest(BaseModel):
    """Typed compose document for the service group."""

    model_config = ConfigDict(populate_by_name=True)

    topology: TopologyKind = Field(alias="x-dro-topology")
    services: dict[str, ServiceSpec]
    volumes: dict[str, dict[str, Any]] = Field(default_factory=dict)
    networks: dict[str, NetworkSpec] = Field(default_factory=dict)

    def to_yaml(self) -> str:
        raw = self.model_dump(mode="json", by_alias=True)
        for svc in raw["services"].values():
            for k in [k for k, v in svc.items() if v in (None, [], {})]:
                del svc[k]
        return yaml.safe_dump(raw, default_flow_style=False, sort_keys=False, allow_unicode=True)

    @classmethod
    def from_yaml(cls, text: str) -> ServiceManifest:
        return cls.model_validate(yaml.safe_load(text) or {})

    @classmethod
    def load(cls, path: str) -> ServiceManifest:
        with open(path, encoding="utf-8") as f:
            return cls.from_yaml(f.read())

    def start_order(self) -> list[str]:
        """Service names with dependencies first; ties keep declaration order."""
        order: list[str] = []
        visiting: set[str] = set()

        def visit(name: str) -> None:
            if name in order:
                return
            if name in visiting:
                raise ValueError(f"Dependency cycle through service '{name}'.")
            visiting.add(name)
            for dep in self.services[name].depends_on:
                if dep in self.services:
                    visit(dep)
            visiting.discard(name)
            order.append(name)

        for name in self.services:
            visit(name)
        return order

    def images(self) -> list[str]:
        out: list[str] = []
        for svc in self.services.values():
            if svc.image not in out:
                out.append(svc.image)
        return out


def render(target: DeploymentTarget, kind: TopologyKind, ctx: DeploymentContext) -> ServiceManifest:
    kind = TopologyKind(kind)
    static = ["static-data:/vol/web", "media-data:/vol/web/media"]

    if kind is TopologyKind.BIND:
        data_volume = f"{ctx.data_dir}:{DATA_MOUNT}"
    elif kind is TopologyKind.VOLUME:
        data_volume = f"{SQLITE_VOLUME}:{DATA_MOUNT}"
    else:
        data_volume = None

    app = ServiceSpec(
        image=target.image,
        env_file=[ctx.env_path],
        environment={"DEBUG": "0"},
        volumes=([data_volume] if data_volume else []) + static,
        networks=[NETWORK],
    )
    proxy = ServiceSpec(
        image=target.proxy_image,
        depends_on=[APP_SERVICE],
        ports=["80:8000", "443:8443"],
        volumes=["static-data:/vol/static", "media-data:/vol/media"],
        networks=[NETWORK],
    )

    services: dict[str, ServiceSpec] = {}
    volumes: dict[str, dict[str, Any]] = {}

    if kind is TopologyKind.POSTGRES:
        services[DB_SERVICE] = ServiceSpec(
            image=POSTGRES_IMAGE,
            env_file=[ctx.env_path],
            volumes=[f"{POSTGRES_VOLUME}:/var/lib/postgresql/data"],
            networks=[NETWORK],
        )
        services[CACHE_SERVICE] = ServiceSpec(image=CACHE_IMAGE, networks=[NETWORK])
        app.depends_on = [DB_SERVICE, CACHE_SERVICE]
        volumes[POSTGRES_VOLUME] = {}
    elif kind is TopologyKind.VOLUME:
        volumes[SQLITE_VOLUME] = {}

    services[APP_SERVICE] = app
    services[PROXY_SERVICE] = proxy
    volumes["static-data"] = {}
    volumes["media-data"] = {}

    return ServiceManifest(
        topology=kind,
        services=services,
        volumes=volumes,
        networks={NETWORK: NetworkSpec()},
    )


def detect_topology_conflict(ctx: DeploymentContext, kind: TopologyKind) -> None:
    """Reject switching persistence backends without an explicit migration."""
    if ctx.allow_topology_change:
        return
    kind = TopologyKind(kind)
    if os.path.exists(ctx.manifest_path):
        try:
            live = ServiceManifest.load(ctx.manifest_path)
        except (OSError, ValueError, yaml.YAMLError) as e:
            raise TopologyError(f"Cannot read live manifest {ctx.manifest_path}: {e}") from e
        if live.topology is not kind:
            raise TopologyError(
                f"Live deployment uses '{live.topology.value}' persistence; refusing to switch to '{kind.value}' "
                "without --allow-topology-change."
            )
    if kind is TopologyKind.POSTGRES and os.path.exists(os.path.join(ctx.data_dir, "db.sqlite3")):
        raise TopologyError(
            f"Found file database under {ctx.data_dir} while a relational topology was requested."
        )
