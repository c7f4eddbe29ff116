from __future__ import annotations

import pytest

from mads.consul import GrpcAddress, RegisteredService, sidecar_id
from mads.entities import Pod
from mads.errors import AlreadyStartedError, GatewayError, NotFoundError
from mads.orchestrator import Orchestrator
from mads.podman import ImageInfo, PodCreateRequest, PodInfo


class FakePodman:
    """In-memory stand-in for PodmanClient. Every call is appended to `log`."""

    def __init__(self, log: list[tuple]):
        self.log = log
        self.pods: dict[str, dict] = {}  # pod id -> record
        self.containers: dict[str, dict] = {}  # container name -> record
        self.fail_containers: set[str] = set()
        self.fail_delete = False
        self.start_error: GatewayError | None = None  # raised by start_pod when set
        self._seq = 0

    def _find(self, name_or_id: str) -> str | None:
        for pid, p in self.pods.items():
            if name_or_id in (pid, p["name"]):
                return pid
        return None

    def add_pod(self, name: str, labels: dict[str, str] | None = None, state: str = "Running") -> str:
        self._seq += 1
        pid = f"pod{self._seq}"
        self.pods[pid] = {"name": name, "labels": dict(labels or {}), "state": state, "request": None}
        return pid

    def pod_exists(self, name_or_id: str) -> bool:
        self.log.append(("pod_exists", name_or_id))
        return self._find(name_or_id) is not None

    def inspect_pod(self, name_or_id: str) -> PodInfo:
        self.log.append(("inspect_pod", name_or_id))
        pid = self._find(name_or_id)
        if pid is None:
            raise NotFoundError("inspect pod", name_or_id, "no such pod", status=404)
        p = self.pods[pid]
        return PodInfo(id=pid, name=p["name"], state=p["state"], labels=dict(p["labels"]))

    def create_pod(self, req: PodCreateRequest) -> str:
        self.log.append(("create_pod", req.name))
        if self._find(req.name) is not None:
            raise GatewayError("create pod", req.name, "pod already exists", status=409)
        pid = self.add_pod(req.name, req.all_labels(), state="Created")
        self.pods[pid]["request"] = req
        return pid

    def start_pod(self, name_or_id: str) -> None:
        self.log.append(("start_pod", name_or_id))
        pid = self._find(name_or_id)
        if pid is None:
            raise NotFoundError("start pod", name_or_id, "no such pod", status=404)
        if self.start_error is not None:
            raise self.start_error
        if self.pods[pid]["state"] == "Running":
            raise AlreadyStartedError("start pod", name_or_id, "already started", status=304)
        self.pods[pid]["state"] = "Running"

    def delete_pod(self, name_or_id: str, force: bool = False) -> None:
        self.log.append(("delete_pod", name_or_id, force))
        if self.fail_delete:
            raise GatewayError("delete pod", name_or_id, "device busy", status=500)
        pid = self._find(name_or_id)
        if pid is None:
            raise NotFoundError("delete pod", name_or_id, "no such pod", status=404)
        del self.pods[pid]
        self.containers = {n: c for n, c in self.containers.items() if c["pod"] != pid}

    def create_container(self, req) -> str:
        self.log.append(("create_container", req.name))
        if req.name in self.fail_containers:
            raise GatewayError("create container", req.name, "image has no entrypoint", status=500)
        self.containers[req.name] = {"pod": req.pod, "request": req, "archive": None}
        return f"ctr-{req.name}"

    def copy_into_container(self, name_or_id: str, archive: bytes, path: str = "/") -> None:
        self.log.append(("copy_into_container", name_or_id))
        self.containers[name_or_id]["archive"] = archive

    def pull_image(self, reference: str, policy: str = "always") -> ImageInfo:
        self.log.append(("pull_image", reference, policy))
        return ImageInfo(id=f"sha256:{reference}")

    def load_image(self, archive) -> ImageInfo:
        self.log.append(("load_image",))
        return ImageInfo(id="sha256:loaded")

    def pods_named(self, name: str) -> list[dict]:
        return [p for p in self.pods.values() if p["name"] == name]


class FakeConsul:
    """In-memory consul agent. Registering a sidecar service auto-creates the
    `<id>-sidecar-proxy` entry the way the real agent does."""

    def __init__(self, log: list[tuple]):
        self.log = log
        self.services: dict[str, dict] = {}
        self.deregister_errors: dict[str, Exception] = {}
        self.sidecar_port = 21000

    def register_service(self, registration: dict) -> None:
        self.log.append(("register_service", registration["ID"]))
        self.services[registration["ID"]] = registration
        connect = registration.get("Connect") or {}
        if "SidecarService" in connect:
            proxy = connect["SidecarService"].get("Proxy") or {}
            sid = sidecar_id(registration["ID"])
            self.services[sid] = {
                "ID": sid,
                "Service": f"{registration['Name']}-sidecar-proxy",
                "Port": self.sidecar_port,
                "Proxy": {"Expose": proxy.get("Expose") or {}},
            }

    def deregister_service(self, svc_id: str) -> None:
        self.log.append(("deregister_service", svc_id))
        if svc_id in self.deregister_errors:
            raise self.deregister_errors[svc_id]
        if svc_id not in self.services:
            raise NotFoundError("deregister service", svc_id, "Unknown service ID", status=404)
        del self.services[svc_id]
        self.services.pop(sidecar_id(svc_id), None)

    def service(self, svc_id: str) -> RegisteredService | None:
        self.log.append(("service", svc_id))
        data = self.services.get(svc_id)
        if data is None:
            return None
        return RegisteredService.from_api(data)

    def grpc_address(self) -> GrpcAddress:
        return GrpcAddress(host="10.0.0.5", port=8502, tls=False)


@pytest.fixture()
def call_log() -> list[tuple]:
    return []


@pytest.fixture()
def podman(call_log) -> FakePodman:
    return FakePodman(call_log)


@pytest.fixture()
def consul(call_log) -> FakeConsul:
    return FakeConsul(call_log)


@pytest.fixture()
def orch(podman, consul) -> Orchestrator:
    return Orchestrator(podman, consul, envoy_image="docker.io/envoyproxy/envoy:test")


@pytest.fixture()
def web_pod() -> Pod:
    return Pod.model_validate(
        {
            "name": "web",
            "containers": [{"name": "app", "image": "img:1"}],
            "services": [{"name": "web-svc", "port": 8080, "connect": {"native": True}}],
        }
    )
