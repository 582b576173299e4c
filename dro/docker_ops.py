from __future__ import annotations

import io
import os
import tarfile
import time
from dataclasses import dataclass
from typing import Any, Protocol

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from .envfile import EnvironmentConfig
from .errors import PullError, RegistryAuthError, ReleaseError, RuntimeUnavailable
from .manifest import ServiceManifest, ServiceSpec


LABEL_PROJECT = "dro.project"
LABEL_SERVICE = "dro.service"
LABEL_ONEOFF = "dro.oneoff"


@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    output: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class ContainerRuntime(Protocol):
    """Primitive operations the orchestrator needs from a container runtime."""

    def ensure_available(self) -> None: ...

    def login(self, registry: str, username: str, password: str) -> None: ...

    def pull(self, manifest: ServiceManifest) -> None: ...

    def is_running(self, project: str) -> bool: ...

    def down(self, project: str) -> None: ...

    def up(self, project: str, manifest: ServiceManifest) -> None: ...

    def restart_service(self, project: str, service: str) -> None: ...

    def run_oneoff(self, project: str, manifest: ServiceManifest, service: str, command: list[str]) -> CommandResult: ...

    def exec(self, project: str, service: str, command: list[str]) -> CommandResult: ...

    def copy_from(self, project: str, service: str, src: str, dest: str) -> None: ...

    def copy_to(self, project: str, service: str, src: str, dest: str) -> None: ...

    def prune(self) -> int: ...

    def prune_images(self) -> int: ...


def parse_port(spec: str) -> tuple[str, int]:
    """``"80:8000"`` -> ``("8000/tcp", 80)``."""
    host, _, container = spec.rpartition(":")
    if not host:
        raise ValueError(f"Port binding '{spec}' must be HOST:CONTAINER.")
    proto = "tcp"
    if "/" in container:
        container, proto = container.split("/", 1)
    return f"{int(container)}/{proto}", int(host)


def _read_env_files(paths: list[str]) -> dict[str, str]:
    env: dict[str, str] = {}
    for p in paths:
        if os.path.exists(p):
            env.update(EnvironmentConfig.load(p).as_dict())
    return env


def _container_name(project: str, service: str) -> str:
    return f"{project}-{service}-1"


class DockerRuntime:
    """ContainerRuntime backed by the Docker Engine API (docker-py).

    The manifest is applied directly: one container per service, labeled with
    the project so the group can be rediscovered, stopped and inspected.
    """

    def __init__(self, client: docker.DockerClient | None = None, stop_timeout_s: int = 10) -> None:
        self._client_override = client
        self.stop_timeout_s = stop_timeout_s

    def _client(self) -> docker.DockerClient:
        if self._client_override is not None:
            return self._client_override
        try:
            self._client_override = docker.from_env()
        except DockerException as e:
            raise RuntimeUnavailable(f"Docker is not available: {e}") from e
        return self._client_override

    def ensure_available(self) -> None:
        try:
            self._client().ping()
        except DockerException as e:
            raise RuntimeUnavailable(f"Docker is not available: {e}") from e

    def login(self, registry: str, username: str, password: str) -> None:
        try:
            self._client().login(username=username, password=password, registry=registry, reauth=True)
        except APIError as e:
            raise RegistryAuthError(f"Registry login to {registry} rejected: {e.explanation or e}") from e

    def pull(self, manifest: ServiceManifest) -> None:
        c = self._client()
        for image in manifest.images():
            repo, _, tag = image.rpartition(":")
            if "/" in tag or not repo:
                repo, tag = image, "latest"
            try:
                c.images.pull(repo, tag=tag)
            except (ImageNotFound, APIError) as e:
                raise PullError(f"Failed to pull {image}: {e}") from e

    def _containers(self, project: str, service: str | None = None, include_stopped: bool = True) -> list[Any]:
        labels = [f"{LABEL_PROJECT}={project}"]
        if service:
            labels.append(f"{LABEL_SERVICE}={service}")
        return self._client().containers.list(all=include_stopped, filters={"label": labels})

    def _service_container(self, project: str, service: str) -> Any:
        for cont in self._containers(project, service, include_stopped=False):
            if cont.labels.get(LABEL_ONEOFF) != "true":
                return cont
        raise NotFound(f"No running container for service '{service}' in project '{project}'.")

    def is_running(self, project: str) -> bool:
        try:
            return any(c.status == "running" for c in self._containers(project, include_stopped=False))
        except DockerException as e:
            raise RuntimeUnavailable(f"Cannot list containers of project '{project}': {e}") from e

    def down(self, project: str) -> None:
        for cont in self._containers(project):
            try:
                cont.stop(timeout=self.stop_timeout_s)
                cont.remove(force=True)
            except NotFound:
                continue
            except APIError as e:
                raise ReleaseError(f"Failed to stop {cont.name}: {e}") from e
        # Host ports are only free once every container is gone.
        deadline = time.time() + self.stop_timeout_s
        while self._containers(project):
            if time.time() > deadline:
                left = ", ".join(c.name for c in self._containers(project))
                raise ReleaseError(f"Containers still present after stop: {left}")
            time.sleep(0.5)

    def _ensure_network(self, name: str, driver: str) -> Any:
        c = self._client()
        try:
            return c.networks.get(name)
        except NotFound:
            return c.networks.create(name, driver=driver)

    def _ensure_volume(self, name: str) -> None:
        c = self._client()
        try:
            c.volumes.get(name)
        except NotFound:
            c.volumes.create(name)

    def _volume_binds(self, project: str, manifest: ServiceManifest, spec: ServiceSpec) -> dict[str, dict[str, str]]:
        binds: dict[str, dict[str, str]] = {}
        for v in spec.volumes:
            src, _, dst = v.partition(":")
            if src in manifest.volumes:
                src = f"{project}_{src}"
                self._ensure_volume(src)
            else:
                os.makedirs(src, exist_ok=True)
            binds[src] = {"bind": dst, "mode": "rw"}
        return binds

    def _create(
        self,
        project: str,
        manifest: ServiceManifest,
        service: str,
        command: list[str] | None = None,
        oneoff: bool = False,
    ) -> Any:
        spec = manifest.services[service]
        env = _read_env_files(spec.env_file)
        env.update(spec.environment)
        labels = {LABEL_PROJECT: project, LABEL_SERVICE: service}
        kwargs: dict[str, Any] = {}
        if oneoff:
            labels[LABEL_ONEOFF] = "true"
        else:
            kwargs["name"] = _container_name(project, service)
            kwargs["ports"] = dict(parse_port(p) for p in spec.ports)
            kwargs["restart_policy"] = {"Name": spec.restart}

        c = self._client()
        cont = c.containers.create(
            spec.image,
            command=command or spec.command,
            environment=env,
            labels=labels,
            volumes=self._volume_binds(project, manifest, spec),
            **kwargs,
        )
        # Swap the default bridge for the manifest networks so services resolve each other by name.
        for net_name in spec.networks:
            net_spec = manifest.networks.get(net_name)
            net = self._ensure_network(f"{project}_{net_name}", net_spec.driver if net_spec else "bridge")
            net.connect(cont, aliases=[service])
        if spec.networks:
            try:
                c.networks.get("bridge").disconnect(cont)
            except (NotFound, APIError):
                pass
        return cont

    def up(self, project: str, manifest: ServiceManifest) -> None:
        for service in manifest.start_order():
            try:
                self._create(project, manifest, service).start()
            except (ImageNotFound, APIError) as e:
                raise ReleaseError(f"Failed to start service '{service}': {e}") from e

    def restart_service(self, project: str, service: str) -> None:
        try:
            self._service_container(project, service).restart(timeout=self.stop_timeout_s)
        except (NotFound, APIError) as e:
            raise ReleaseError(f"Failed to restart service '{service}': {e}") from e

    def run_oneoff(self, project: str, manifest: ServiceManifest, service: str, command: list[str]) -> CommandResult:
        try:
            cont = self._create(project, manifest, service, command=command, oneoff=True)
        except (ImageNotFound, APIError) as e:
            return CommandResult(exit_code=125, output=str(e))
        try:
            cont.start()
            status = cont.wait()
            output = cont.logs().decode("utf-8", errors="replace")
            return CommandResult(exit_code=int(status.get("StatusCode", 1)), output=output)
        except APIError as e:
            return CommandResult(exit_code=125, output=str(e))
        finally:
            try:
                cont.remove(force=True)
            except (NotFound, APIError):
                pass

    def exec(self, project: str, service: str, command: list[str]) -> CommandResult:
        try:
            res = self._service_container(project, service).exec_run(command, demux=False)
        except (NotFound, APIError) as e:
            return CommandResult(exit_code=125, output=str(e))
        out = res.output.decode("utf-8", errors="replace") if isinstance(res.output, bytes) else str(res.output)
        return CommandResult(exit_code=res.exit_code, output=out)

    def copy_from(self, project: str, service: str, src: str, dest: str) -> None:
        """Copy one file out of the service container.

        Raises FileNotFoundError when the container or the file is missing.
        """
        try:
            stream, _ = self._service_container(project, service).get_archive(src)
            buf = io.BytesIO(b"".join(stream))
        except NotFound as e:
            raise FileNotFoundError(f"{service}:{src}") from e
        except APIError as e:
            raise ReleaseError(f"Copy of {service}:{src} failed: {e}") from e
        with tarfile.open(fileobj=buf) as tar:
            files = [m for m in tar.getmembers() if m.isfile()]
            if not files:
                raise FileNotFoundError(f"{service}:{src} is not a regular file")
            data = tar.extractfile(files[0]).read()
        with open(dest, "wb") as f:
            f.write(data)

    def copy_to(self, project: str, service: str, src: str, dest: str) -> None:
        buf = io.BytesIO()
        with tarfile.open(fileobj=buf, mode="w") as tar:
            tar.add(src, arcname=os.path.basename(dest))
        try:
            ok = self._service_container(project, service).put_archive(os.path.dirname(dest) or "/", buf.getvalue())
        except NotFound as e:
            raise FileNotFoundError(f"{service}:{os.path.dirname(dest)}") from e
        except APIError as e:
            raise ReleaseError(f"Copy of {src} into {service}:{dest} failed: {e}") from e
        if not ok:
            raise ReleaseError(f"Copy of {src} into {service}:{dest} was refused.")

    def prune(self) -> int:
        c = self._client()
        reclaimed = 0
        reclaimed += (c.containers.prune() or {}).get("SpaceReclaimed", 0) or 0
        reclaimed += (c.images.prune(filters={"dangling": False}) or {}).get("SpaceReclaimed", 0) or 0
        reclaimed += (c.api.prune_builds() or {}).get("SpaceReclaimed", 0) or 0
        reclaimed += (c.volumes.prune() or {}).get("SpaceReclaimed", 0) or 0
        return int(reclaimed)

    def prune_images(self) -> int:
        res = self._client().images.prune(filters={"dangling": True}) or {}
        return int(res.get("SpaceReclaimed", 0) or 0)
