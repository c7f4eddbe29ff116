from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import IO, Any

import requests
from podman import PodmanClient as SDKClient
from podman.errors import APIError, ImageNotFound, NotFound, PodmanError

from .errors import AlreadyStartedError, GatewayError, InvalidPodError, NotFoundError
from .logger import logger
from .settings import settings

# Label keys written on every pod mads creates. Existing pods are matched by
# these exact strings, so they must not change between releases.
LAST_APPLIED_LABEL = "mads/last-applied-configuration"
SERVICE_IDS_LABEL = "mads/service-ids"

POD_STATE_RUNNING = "Running"

MOUNT_PROPAGATIONS = {"private", "rprivate", "shared", "rshared", "slave", "rslave"}


def join_service_ids(ids: tuple[str, ...]) -> str:
    return ",".join(ids)


def split_service_ids(raw: str | None) -> tuple[str, ...]:
    if not raw:
        return ()
    return tuple(s for s in raw.split(",") if s)


@dataclass(frozen=True)
class PodInfo:
    id: str
    name: str
    state: str
    labels: dict[str, str] = field(default_factory=dict)

    @property
    def owned(self) -> bool:
        return LAST_APPLIED_LABEL in self.labels

    @property
    def last_applied_hash(self) -> str | None:
        return self.labels.get(LAST_APPLIED_LABEL)

    @property
    def service_ids(self) -> tuple[str, ...]:
        return split_service_ids(self.labels.get(SERVICE_IDS_LABEL))

    @property
    def running(self) -> bool:
        return self.state == POD_STATE_RUNNING

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> PodInfo:
        return cls(
            id=data.get("Id", ""),
            name=data.get("Name", ""),
            state=data.get("State", ""),
            labels=dict(data.get("Labels") or {}),
        )


@dataclass(frozen=True)
class ImageInfo:
    id: str
    names: tuple[str, ...] = ()

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> ImageInfo:
        return cls(id=data.get("Id", ""), names=tuple(data.get("RepoTags") or ()))


@dataclass(frozen=True)
class PortMapping:
    container_port: int
    host_port: int = 0
    host_ip: str | None = None
    protocol: str | None = None

    def to_api(self) -> dict[str, Any]:
        out: dict[str, Any] = {"container_port": self.container_port}
        if self.host_port:
            out["host_port"] = self.host_port
        if self.host_ip:
            out["host_ip"] = self.host_ip
        if self.protocol:
            out["protocol"] = self.protocol
        return out


@dataclass(frozen=True)
class PodCreateRequest:
    """Pod creation request.

    The reserved labels are applied last so user labels can never shadow
    them.
    """

    name: str
    last_applied_hash: str
    service_ids: tuple[str, ...] = ()
    labels: dict[str, str] = field(default_factory=dict)
    hostname: str | None = None
    host_add: list[str] = field(default_factory=list)
    port_mappings: list[PortMapping] = field(default_factory=list)

    def all_labels(self) -> dict[str, str]:
        labels = dict(self.labels)
        labels[SERVICE_IDS_LABEL] = join_service_ids(self.service_ids)
        labels[LAST_APPLIED_LABEL] = self.last_applied_hash
        return labels

    def to_api(self) -> dict[str, Any]:
        """Pod spec fields besides the name, as libpod expects them."""
        body: dict[str, Any] = {"labels": self.all_labels()}
        if self.hostname:
            body["hostname"] = self.hostname
        if self.host_add:
            body["hostadd"] = list(self.host_add)
        if self.port_mappings:
            body["portmappings"] = [m.to_api() for m in self.port_mappings]
        return body


@dataclass(frozen=True)
class Mount:
    destination: str
    type: str = "bind"
    source: str | None = None
    options: list[str] = field(default_factory=list)

    def to_api(self) -> dict[str, Any]:
        """Mount in the docker-style form `containers.create` takes."""
        out: dict[str, Any] = {"type": self.type, "target": self.destination}
        if self.source:
            out["source"] = self.source
        for opt in self.options:
            key, sep, value = opt.partition("=")
            if opt == "ro":
                out["read_only"] = True
            elif opt == "rw":
                out["read_only"] = False
            elif opt in ("z", "Z"):
                out["relabel"] = opt
            elif opt == "U":
                out["U"] = True
            elif opt in MOUNT_PROPAGATIONS:
                out["propagation"] = opt
            elif sep and key in ("mode", "size", "consistency"):
                out[key] = value
            else:
                raise InvalidPodError(f"unsupported option '{opt}' on mount '{self.destination}'")
        return out


@dataclass(frozen=True)
class ContainerCreateRequest:
    name: str
    image: str
    pod: str | None = None
    restart_policy: str | None = None
    command: list[str] = field(default_factory=list)
    mounts: list[Mount] = field(default_factory=list)

    def to_api(self) -> dict[str, Any]:
        """Keyword arguments for `containers.create` besides the image."""
        kwargs: dict[str, Any] = {"name": self.name}
        if self.pod:
            kwargs["pod"] = self.pod
        if self.restart_policy:
            kwargs["restart_policy"] = {"Name": self.restart_policy}
        if self.command:
            kwargs["command"] = list(self.command)
        if self.mounts:
            kwargs["mounts"] = [m.to_api() for m in self.mounts]
        return kwargs


def _explain(e: APIError) -> str:
    return e.explanation or str(e)


@contextmanager
def _gateway(op: str, target: str) -> Iterator[None]:
    """Translate podman SDK failures into mads gateway errors."""
    try:
        yield
    except (NotFound, ImageNotFound) as e:
        raise NotFoundError(op, target, _explain(e), status=404) from e
    except APIError as e:
        status = e.response.status_code if e.response is not None else None
        if status == 304:
            raise AlreadyStartedError(op, target, "already started", status=304) from e
        raise GatewayError(op, target, _explain(e), status=status) from e
    except (PodmanError, requests.RequestException) as e:
        raise GatewayError(op, target, e) from e


class PodmanClient:
    """Podman gateway on top of the podman SDK, speaking mads types and errors."""

    def __init__(
        self,
        socket_path: str | None = None,
        timeout_s: float | None = None,
        client: Any | None = None,
    ):
        if client is None:
            socket_path = socket_path or settings.podman_socket
            if not socket_path:
                raise ValueError("No podman socket configured. Set MADS_PODMAN_SOCKET or pass --socket.")
            client = SDKClient(
                base_url=f"unix://{socket_path}",
                timeout=float(timeout_s or settings.request_timeout_s),
            )
        self._client = client

    def close(self) -> None:
        self._client.close()

    # -- pods -----------------------------------------------------------

    def pod_exists(self, name_or_id: str) -> bool:
        with _gateway("check pod", name_or_id):
            return bool(self._client.pods.exists(name_or_id))

    def inspect_pod(self, name_or_id: str) -> PodInfo:
        with _gateway("inspect pod", name_or_id):
            pod = self._client.pods.get(name_or_id)
        return PodInfo.from_api(pod.attrs)

    def create_pod(self, req: PodCreateRequest) -> str:
        with _gateway("create pod", req.name):
            pod = self._client.pods.create(req.name, **req.to_api())
        logger.debug("Created pod", pod=req.name, id=pod.id)
        return pod.id

    def start_pod(self, name_or_id: str) -> None:
        """Start a pod. Raises AlreadyStartedError if it is running already."""
        with _gateway("start pod", name_or_id):
            self._client.pods.get(name_or_id).start()

    def delete_pod(self, name_or_id: str, force: bool = False) -> None:
        with _gateway("delete pod", name_or_id):
            self._client.pods.remove(name_or_id, force=force)

    # -- containers -----------------------------------------------------

    def create_container(self, req: ContainerCreateRequest) -> str:
        kwargs = req.to_api()
        with _gateway("create container", req.name):
            ctr = self._client.containers.create(req.image, **kwargs)
        return ctr.id

    def copy_into_container(self, name_or_id: str, archive: bytes, path: str = "/") -> None:
        with _gateway("copy archive into container", name_or_id):
            ok = self._client.containers.get(name_or_id).put_archive(path, archive)
        if not ok:
            raise GatewayError("copy archive into container", name_or_id, "archive rejected by podman")

    # -- images ---------------------------------------------------------

    def pull_image(self, reference: str, policy: str = "always") -> ImageInfo:
        """Pull an image honouring the podman pull policy."""
        with _gateway("pull image", reference):
            image = self._client.images.pull(reference, policy=policy)
        if isinstance(image, list):
            image = image[0] if image else None
        # the SDK hands back an empty image when the stream held no id
        if image is None or not image.id:
            raise GatewayError("pull image", reference, "no image id in pull response")
        return ImageInfo.from_api(image.attrs)

    def load_image(self, archive: IO[bytes]) -> ImageInfo:
        data = archive.read()
        with _gateway("load image", "archive"):
            images = list(self._client.images.load(data=data))
        if not images:
            raise GatewayError("load image", "archive", "load returned no images")
        return ImageInfo.from_api(images[0].attrs)
