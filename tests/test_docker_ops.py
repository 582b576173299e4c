import io
import tarfile
from unittest.mock import MagicMock

import pytest
from docker.errors import APIError, DockerException, NotFound

from dro.context import TopologyKind
from dro.docker_ops import LABEL_ONEOFF, LABEL_PROJECT, LABEL_SERVICE, DockerRuntime, parse_port
from dro.errors import PullError, ReleaseError, RuntimeUnavailable
from dro.manifest import ServiceManifest, ServiceSpec, render


def _container(name="webapp-app-1", status="running", labels=None):
    cont = MagicMock()
    cont.name = name
    cont.status = status
    cont.labels = labels or {}
    return cont


def _tar(name, data=None):
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        info = tarfile.TarInfo(name)
        if data is None:
            info.type = tarfile.DIRTYPE
            tar.addfile(info)
        else:
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def docker_runtime(client):
    return DockerRuntime(client=client, stop_timeout_s=0)


class TestParsePort:
    def test_host_to_container(self):
        assert parse_port("80:8000") == ("8000/tcp", 80)

    def test_protocol_suffix(self):
        assert parse_port("53:53/udp") == ("53/udp", 53)

    def test_requires_host_port(self):
        with pytest.raises(ValueError):
            parse_port("8443")


class TestPull:
    def _manifest(self, *images):
        return ServiceManifest(
            topology=TopologyKind.VOLUME,
            services={f"s{i}": ServiceSpec(image=img) for i, img in enumerate(images)},
        )

    def test_splits_repository_and_tag(self, docker_runtime, client):
        docker_runtime.pull(self._manifest("reg.local:5000/webapp:1.2", "reg.local:5000/webapp"))

        assert [c.args + (c.kwargs["tag"],) for c in client.images.pull.call_args_list] == [
            ("reg.local:5000/webapp", "1.2"),
            ("reg.local:5000/webapp", "latest"),
        ]

    def test_api_error_becomes_pull_error(self, docker_runtime, client):
        client.images.pull.side_effect = APIError("manifest unknown")

        with pytest.raises(PullError, match="reg.local/webapp:9"):
            docker_runtime.pull(self._manifest("reg.local/webapp:9"))


class TestGroupLifecycle:
    def test_is_running_filters_by_project(self, docker_runtime, client):
        client.containers.list.return_value = [_container(status="running")]

        assert docker_runtime.is_running("webapp") is True
        client.containers.list.assert_called_with(all=False, filters={"label": [f"{LABEL_PROJECT}=webapp"]})

    def test_is_running_raises_when_daemon_unreachable(self, docker_runtime, client):
        client.containers.list.side_effect = DockerException("connection refused")

        with pytest.raises(RuntimeUnavailable):
            docker_runtime.is_running("webapp")

    def test_down_stops_and_removes(self, docker_runtime, client):
        cont = _container()
        client.containers.list.side_effect = [[cont], []]

        docker_runtime.down("webapp")

        cont.stop.assert_called_once_with(timeout=0)
        cont.remove.assert_called_once_with(force=True)

    def test_down_reports_leftover_containers(self, docker_runtime, client, monkeypatch):
        monkeypatch.setattr("dro.docker_ops.time.sleep", lambda s: None)
        client.containers.list.return_value = [_container(name="webapp-proxy-1")]

        with pytest.raises(ReleaseError, match="webapp-proxy-1"):
            docker_runtime.down("webapp")

    def test_up_wires_volumes_ports_and_networks(self, docker_runtime, client, ctx, target):
        bridge = MagicMock()
        app_net = MagicMock()

        def get_network(name):
            if name == "bridge":
                return bridge
            raise NotFound(name)

        client.networks.get.side_effect = get_network
        client.networks.create.return_value = app_net
        client.volumes.get.side_effect = NotFound("no volume")
        created = [_container(name="webapp-app-1"), _container(name="webapp-proxy-1")]
        client.containers.create.side_effect = created

        docker_runtime.up("webapp", render(target, TopologyKind.VOLUME, ctx))

        app_call = client.containers.create.call_args_list[0]
        assert app_call.args == (target.image,)
        assert app_call.kwargs["name"] == "webapp-app-1"
        assert app_call.kwargs["labels"] == {LABEL_PROJECT: "webapp", LABEL_SERVICE: "app"}
        assert app_call.kwargs["volumes"]["webapp_sqlite-data"] == {"bind": "/data", "mode": "rw"}
        assert app_call.kwargs["environment"] == {"DEBUG": "0"}
        proxy_call = client.containers.create.call_args_list[1]
        assert proxy_call.kwargs["ports"] == {"8000/tcp": 80, "8443/tcp": 443}
        client.volumes.create.assert_any_call("webapp_sqlite-data")
        client.networks.create.assert_called_with("webapp_app-network", driver="bridge")
        app_net.connect.assert_any_call(created[0], aliases=["app"])
        bridge.disconnect.assert_any_call(created[0])
        for cont in created:
            cont.start.assert_called_once_with()

    def test_up_failure_becomes_release_error(self, docker_runtime, client, ctx, target):
        client.containers.create.side_effect = APIError("port is already allocated")

        with pytest.raises(ReleaseError, match="app"):
            docker_runtime.up("webapp", render(target, TopologyKind.VOLUME, ctx))


class TestCopy:
    def test_copy_from_extracts_file(self, docker_runtime, client, tmp_path):
        cont = _container()
        cont.get_archive.return_value = (iter([_tar("db.sqlite3", b"rows")]), {})
        client.containers.list.return_value = [cont]
        dest = tmp_path / "db.sqlite3"

        docker_runtime.copy_from("webapp", "app", "/data/db.sqlite3", str(dest))

        assert dest.read_bytes() == b"rows"
        cont.get_archive.assert_called_once_with("/data/db.sqlite3")

    def test_copy_from_skips_oneoff_containers(self, docker_runtime, client, tmp_path):
        oneoff = _container(labels={LABEL_ONEOFF: "true"})
        service = _container()
        service.get_archive.return_value = (iter([_tar("db.sqlite3", b"rows")]), {})
        client.containers.list.return_value = [oneoff, service]

        docker_runtime.copy_from("webapp", "app", "/data/db.sqlite3", str(tmp_path / "out"))

        oneoff.get_archive.assert_not_called()

    def test_copy_from_directory_is_not_a_file(self, docker_runtime, client, tmp_path):
        cont = _container()
        cont.get_archive.return_value = (iter([_tar("data")]), {})
        client.containers.list.return_value = [cont]

        with pytest.raises(FileNotFoundError, match="not a regular file"):
            docker_runtime.copy_from("webapp", "app", "/data", str(tmp_path / "out"))

    def test_copy_from_missing_file(self, docker_runtime, client, tmp_path):
        cont = _container()
        cont.get_archive.side_effect = NotFound("no such file")
        client.containers.list.return_value = [cont]

        with pytest.raises(FileNotFoundError):
            docker_runtime.copy_from("webapp", "app", "/data/db.sqlite3", str(tmp_path / "out"))

    def test_copy_from_without_running_service(self, docker_runtime, client, tmp_path):
        client.containers.list.return_value = []

        with pytest.raises(FileNotFoundError):
            docker_runtime.copy_from("webapp", "app", "/data/db.sqlite3", str(tmp_path / "out"))

    def test_copy_to_sends_archive(self, docker_runtime, client, tmp_path):
        cont = _container()
        cont.put_archive.return_value = True
        client.containers.list.return_value = [cont]
        src = tmp_path / "snapshot.sqlite3"
        src.write_bytes(b"rows")

        docker_runtime.copy_to("webapp", "app", str(src), "/data/db.sqlite3")

        path, payload = cont.put_archive.call_args.args
        assert path == "/data"
        with tarfile.open(fileobj=io.BytesIO(payload)) as tar:
            assert tar.getnames() == ["db.sqlite3"]
            assert tar.extractfile("db.sqlite3").read() == b"rows"

    def test_copy_to_refused(self, docker_runtime, client, tmp_path):
        cont = _container()
        cont.put_archive.return_value = False
        client.containers.list.return_value = [cont]
        src = tmp_path / "db.sql"
        src.write_bytes(b"-- dump\n")

        with pytest.raises(ReleaseError, match="refused"):
            docker_runtime.copy_to("webapp", "db", str(src), "/tmp/dro-restore.sql")


def test_run_oneoff_returns_exit_code_and_removes_container(docker_runtime, client, ctx, target):
    cont = _container()
    cont.wait.return_value = {"StatusCode": 1}
    cont.logs.return_value = b"django.db.utils.OperationalError: boom\n"
    client.containers.create.return_value = cont
    manifest = render(target, TopologyKind.VOLUME, ctx)

    res = docker_runtime.run_oneoff("webapp", manifest, "app", ["python", "manage.py", "migrate", "--noinput"])

    assert res.exit_code == 1
    assert "OperationalError" in res.output
    assert client.containers.create.call_args.kwargs["labels"][LABEL_ONEOFF] == "true"
    assert "name" not in client.containers.create.call_args.kwargs
    cont.remove.assert_called_once_with(force=True)
