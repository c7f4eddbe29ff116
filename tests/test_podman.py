import io

import pytest
import requests
from podman.errors import APIError, ImageNotFound, NotFound

from mads import podman as podman_module
from mads.errors import AlreadyStartedError, GatewayError, InvalidPodError, NotFoundError
from mads.settings import Settings
from mads.podman import (
    LAST_APPLIED_LABEL,
    SERVICE_IDS_LABEL,
    ContainerCreateRequest,
    Mount,
    PodCreateRequest,
    PodmanClient,
    PortMapping,
)


def _api_error(status: int, explanation: str) -> APIError:
    resp = requests.Response()
    resp.status_code = status
    return APIError(f"{status} Server Error", response=resp, explanation=explanation)


class Resource:
    def __init__(self, attrs, calls=None, error=None, archive_ok=True):
        self.attrs = attrs
        self.calls = calls if calls is not None else []
        self.error = error
        self.archive_ok = archive_ok

    @property
    def id(self):
        return self.attrs.get("Id")

    def start(self):
        self.calls.append(("start", self.id))
        if self.error is not None:
            raise self.error

    def put_archive(self, path, data):
        self.calls.append(("put_archive", self.id, path, data))
        return self.archive_ok


class Manager:
    """Records calls; `items` answers get(), `error` is raised by every call."""

    def __init__(self, calls):
        self.calls = calls
        self.items = {}
        self.error = None
        self.result = None

    def _call(self, *args):
        self.calls.append(args)
        if self.error is not None:
            raise self.error

    def exists(self, key):
        self._call("exists", key)
        return key in self.items

    def get(self, key):
        self._call("get", key)
        if key not in self.items:
            raise NotFound(f"no such object: {key}", explanation=f"no pod with name or ID {key} found")
        return self.items[key]

    def create(self, *args, **kwargs):
        self._call("create", args, kwargs)
        return self.result

    def remove(self, key, force=None):
        self._call("remove", key, force)

    def pull(self, reference, **kwargs):
        self._call("pull", reference, kwargs)
        return self.result

    def load(self, data=None):
        self._call("load", data)
        return iter(self.result or [])


class FakeSDK:
    def __init__(self):
        self.calls = []
        self.pods = Manager(self.calls)
        self.containers = Manager(self.calls)
        self.images = Manager(self.calls)


@pytest.fixture()
def sdk():
    return FakeSDK()


@pytest.fixture()
def client(sdk):
    return PodmanClient(client=sdk)


def test_pod_exists_and_inspect(sdk, client):
    sdk.pods.items["web"] = Resource(
        {
            "Id": "abc123",
            "Name": "web",
            "State": "Running",
            "Labels": {LAST_APPLIED_LABEL: "h1", SERVICE_IDS_LABEL: "web-a,web-b"},
        }
    )

    assert client.pod_exists("web") is True
    assert client.pod_exists("other") is False

    info = client.inspect_pod("web")
    assert info.id == "abc123"
    assert info.owned
    assert info.running
    assert info.last_applied_hash == "h1"
    assert info.service_ids == ("web-a", "web-b")


def test_inspect_unlabelled_pod_is_not_owned(sdk, client):
    sdk.pods.items["legacy"] = Resource({"Id": "x", "Name": "legacy", "State": "Exited", "Labels": None})

    info = client.inspect_pod("legacy")

    assert not info.owned
    assert info.service_ids == ()


def test_inspect_missing_pod_raises_not_found(client):
    with pytest.raises(NotFoundError) as exc:
        client.inspect_pod("nope")
    assert exc.value.status == 404
    assert "no pod with name" in str(exc.value)


def test_create_pod_passes_spec(sdk, client):
    sdk.pods.result = Resource({"Id": "newpod"})
    req = PodCreateRequest(
        name="web",
        last_applied_hash="h2",
        service_ids=("web-a", "web-b"),
        labels={"team": "x", LAST_APPLIED_LABEL: "forged"},
        hostname="web.local",
        host_add=["db:10.0.0.7"],
        port_mappings=[PortMapping(container_port=8080, host_port=80, protocol="tcp")],
    )

    assert client.create_pod(req) == "newpod"
    assert sdk.calls[-1] == (
        "create",
        ("web",),
        {
            "labels": {"team": "x", LAST_APPLIED_LABEL: "h2", SERVICE_IDS_LABEL: "web-a,web-b"},
            "hostname": "web.local",
            "hostadd": ["db:10.0.0.7"],
            "portmappings": [{"container_port": 8080, "host_port": 80, "protocol": "tcp"}],
        },
    )


def test_start_pod_not_modified_is_already_started(sdk, client):
    sdk.pods.items["web"] = Resource({"Id": "p1"}, error=_api_error(304, ""))

    with pytest.raises(AlreadyStartedError):
        client.start_pod("web")


def test_delete_pod_passes_force(sdk, client):
    client.delete_pod("web", force=True)

    assert sdk.calls == [("remove", "web", True)]


def test_api_error_carries_status_and_message(sdk, client):
    sdk.pods.error = _api_error(500, "storage broken")

    with pytest.raises(GatewayError) as exc:
        client.delete_pod("web")
    assert not isinstance(exc.value, NotFoundError)
    assert exc.value.status == 500
    assert exc.value.op == "delete pod"
    assert "storage broken" in str(exc.value)


def test_connection_error_is_wrapped(sdk, client):
    sdk.pods.error = requests.ConnectionError("socket missing")

    with pytest.raises(GatewayError):
        client.inspect_pod("web")


def test_create_container_and_copy(sdk, client):
    ctr = Resource({"Id": "c1"}, calls=sdk.calls)
    sdk.containers.result = ctr
    sdk.containers.items["web-app"] = ctr
    req = ContainerCreateRequest(
        name="web-app",
        image="sha256:1",
        pod="pod1",
        restart_policy="always",
        command=["serve"],
        mounts=[Mount(destination="/data", source="/srv", options=["ro", "Z", "rshared"])],
    )

    assert client.create_container(req) == "c1"
    client.copy_into_container("web-app", b"tarbytes")

    assert sdk.calls[0] == (
        "create",
        ("sha256:1",),
        {
            "name": "web-app",
            "pod": "pod1",
            "restart_policy": {"Name": "always"},
            "command": ["serve"],
            "mounts": [
                {
                    "type": "bind",
                    "target": "/data",
                    "source": "/srv",
                    "read_only": True,
                    "relabel": "Z",
                    "propagation": "rshared",
                }
            ],
        },
    )
    assert sdk.calls[-1] == ("put_archive", "c1", "/", b"tarbytes")


def test_rejected_archive_is_an_error(sdk, client):
    sdk.containers.items["web-app"] = Resource({"Id": "c1"}, archive_ok=False)

    with pytest.raises(GatewayError):
        client.copy_into_container("web-app", b"tarbytes")


def test_unknown_mount_option_is_rejected():
    with pytest.raises(InvalidPodError):
        Mount(destination="/data", source="/srv", options=["noexec"]).to_api()


def test_pull_image_with_policy(sdk, client):
    sdk.images.result = Resource({"Id": "sha1", "RepoTags": ["img:1"]})

    info = client.pull_image("img:1", policy="missing")

    assert sdk.calls == [("pull", "img:1", {"policy": "missing"})]
    assert info.id == "sha1"
    assert info.names == ("img:1",)


def test_pull_image_without_id_is_an_error(sdk, client):
    sdk.images.result = Resource({})

    with pytest.raises(GatewayError) as exc:
        client.pull_image("img:missing")
    assert "no image id" in str(exc.value)


def test_pull_unknown_image_is_not_found(sdk, client):
    sdk.images.error = ImageNotFound("manifest unknown", explanation="manifest unknown")

    with pytest.raises(NotFoundError):
        client.pull_image("img:missing")


def test_load_image(sdk, client):
    sdk.images.result = [Resource({"Id": "sha9", "RepoTags": ["localhost/app:dev"]})]

    info = client.load_image(io.BytesIO(b"archive"))

    assert sdk.calls == [("load", b"archive")]
    assert info.id == "sha9"


def test_socket_path_becomes_unix_url(monkeypatch):
    seen = {}

    def fake_sdk(**kwargs):
        seen.update(kwargs)
        return FakeSDK()

    monkeypatch.setattr(podman_module, "SDKClient", fake_sdk)

    PodmanClient(socket_path="/run/user/1000/podman/podman.sock", timeout_s=7)

    assert seen == {"base_url": "unix:///run/user/1000/podman/podman.sock", "timeout": 7.0}


def test_missing_socket_is_rejected(monkeypatch):
    monkeypatch.setattr(podman_module, "settings", Settings(podman_socket=None))

    with pytest.raises(ValueError):
        PodmanClient(socket_path=None)
