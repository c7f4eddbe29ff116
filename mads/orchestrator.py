from __future__ import annotations

import io
import tarfile
import time
from dataclasses import dataclass
from threading import Event

from .consul import ConsulClient, GrpcAddress, RegisteredService, build_registration, sidecar_id
from .entities import Container, ContainerFile, ContainerPortMapping, Pod, Service
from .envoy import CONFIG_PATH, BootstrapParams, render_bootstrap
from .errors import (
    AlreadyStartedError,
    CancelledError,
    ContainerCreateError,
    ForeignPodError,
    GatewayError,
    InvalidPodError,
    NotFoundError,
)
from .images import realize_image
from .logger import logger
from .podman import (
    SERVICE_IDS_LABEL,
    ContainerCreateRequest,
    Mount,
    PodCreateRequest,
    PodmanClient,
    PortMapping,
    join_service_ids,
)
from .settings import settings

# apply() outcomes
CREATED = "created"
REPLACED = "replaced"
UNCHANGED = "unchanged"


@dataclass(frozen=True)
class ApplyResult:
    pod: str
    action: str
    content_hash: str
    service_ids: tuple[str, ...] = ()


def files_archive(files: list[ContainerFile]) -> bytes:
    """Pack inline container files into a tar archive rooted at /."""
    buf = io.BytesIO()
    now = time.time()
    with tarfile.open(fileobj=buf, mode="w", format=tarfile.GNU_FORMAT) as tar:
        for f in files:
            data = f.content.encode("utf-8")
            info = tarfile.TarInfo(name=f.destination.lstrip("/"))
            info.size = len(data)
            info.mode = f.mode or 0o644
            info.mtime = now
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


class Orchestrator:
    """Converges podman pods and consul services to pod definitions.

    Nothing is remembered between calls: whether a pod is ours, what was
    applied last and which services belong to it are all read back from the
    labels on the podman pod.
    """

    def __init__(
        self,
        podman: PodmanClient,
        consul: ConsulClient,
        envoy_image: str | None = None,
        grpc_address: GrpcAddress | None = None,
        agent_ca_pem: str | None = None,
        consul_token: str | None = None,
        cancel: Event | None = None,
    ):
        self.podman = podman
        self.consul = consul
        self.envoy_image = envoy_image or settings.envoy_image
        self.agent_ca_pem = agent_ca_pem
        self.consul_token = consul_token
        self.cancel = cancel
        self._grpc_address = grpc_address

    @classmethod
    def from_settings(cls, socket_path: str | None = None, cancel: Event | None = None) -> Orchestrator:
        ca_pem = None
        if settings.consul_cacert:
            with open(settings.consul_cacert, encoding="utf-8") as f:
                ca_pem = f.read()
        return cls(
            podman=PodmanClient(socket_path),
            consul=ConsulClient(),
            agent_ca_pem=ca_pem,
            consul_token=settings.consul_token,
            cancel=cancel,
        )

    def _check_cancelled(self) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise CancelledError("reconciliation cancelled")

    def grpc_address(self) -> GrpcAddress:
        # Only needed once a sidecar is injected; resolved on first use.
        if self._grpc_address is None:
            self._grpc_address = self.consul.grpc_address()
        return self._grpc_address

    # -- apply ----------------------------------------------------------

    def apply(self, pod: Pod) -> ApplyResult:
        if not pod.name:
            raise InvalidPodError("pod name must not be empty")
        log = logger.bind(pod=pod.name)

        svc_ids: list[str] = []
        sidecars: list[Container] = []
        for svc in pod.services:
            self._check_cancelled()
            sid, sidecar = self._register_service(pod.name, svc)
            svc_ids.append(sid)
            if sidecar is not None:
                sidecars.append(sidecar)
        service_ids = tuple(dict.fromkeys(svc_ids))

        # reserved label wins over a user label of the same key
        labels = {**pod.labels, SERVICE_IDS_LABEL: join_service_ids(service_ids)}
        desired = pod.model_copy(update={"containers": [*pod.containers, *sidecars], "labels": labels})
        content_hash = desired.content_hash()

        self._check_cancelled()
        exists = self.podman.pod_exists(pod.name)
        action = CREATED
        if exists:
            info = self.podman.inspect_pod(pod.name)
            if not info.owned:
                raise ForeignPodError(pod.name)
            if info.last_applied_hash == content_hash:
                action = UNCHANGED
            else:
                log.info("Pod definition changed, replacing pod", old_hash=info.last_applied_hash, new_hash=content_hash)
                self._check_cancelled()
                self.podman.delete_pod(info.id, force=True)
                action = REPLACED

        if action != UNCHANGED:
            self._create(desired, content_hash, service_ids)

        self._start(pod.name)
        log.info("Applied pod", action=action, services=list(service_ids))
        return ApplyResult(pod=pod.name, action=action, content_hash=content_hash, service_ids=service_ids)

    def _register_service(self, pod_name: str, svc: Service) -> tuple[str, Container | None]:
        reg = build_registration(pod_name, svc)
        self.consul.register_service(reg)
        if not svc.wants_sidecar:
            return reg["ID"], None

        sidecar = self.consul.service(sidecar_id(reg["ID"]))
        if sidecar is None:
            logger.warning("No sidecar registered for service", pod=pod_name, service=svc.name)
            return reg["ID"], None
        return reg["ID"], self._sidecar_container(svc, sidecar)

    def _sidecar_container(self, svc: Service, sidecar: RegisteredService) -> Container:
        grpc = self.grpc_address()
        config = render_bootstrap(
            BootstrapParams(
                admin_address=settings.envoy_admin_address,
                admin_port=settings.envoy_admin_port,
                service_name=svc.name,
                service_id=sidecar.id,
                agent_address=grpc.host,
                agent_port=grpc.port,
                agent_tls=grpc.tls,
                agent_ca_pem=self.agent_ca_pem if grpc.tls else None,
                token=self.consul_token,
            )
        )
        ports = [ContainerPortMapping(host_port=sidecar.port, container_port=sidecar.port, protocol="tcp")]
        ports += [ContainerPortMapping(host_port=p, container_port=p, protocol="tcp") for p in sidecar.expose_ports]
        return Container(
            name=f"{svc.name}-sidecar-proxy",
            image=self.envoy_image,
            image_pull_policy="missing",
            restart_policy="always",
            args=["-c", CONFIG_PATH],
            ports=ports,
            files=[ContainerFile(destination=CONFIG_PATH, content=config, mode=0o644)],
        )

    def _create(self, pod: Pod, content_hash: str, service_ids: tuple[str, ...]) -> str:
        req = PodCreateRequest(
            name=pod.name,
            last_applied_hash=content_hash,
            service_ids=service_ids,
            labels=dict(pod.labels),
            hostname=pod.hostname,
            host_add=pod.host_add(),
            # port publishing happens on the pod's infra container
            port_mappings=[
                PortMapping(
                    container_port=p.container_port,
                    host_port=p.host_port,
                    host_ip=p.host_ip,
                    protocol=p.protocol,
                )
                for ctr in pod.containers
                for p in ctr.ports
            ],
        )
        self._check_cancelled()
        pod_id = self.podman.create_pod(req)

        for ctr in pod.containers:
            try:
                self._check_cancelled()
                self._create_container(f"{pod.name}-{ctr.name}", pod_id, ctr)
            except Exception as e:
                cleanup_error: GatewayError | None = None
                try:
                    self.podman.delete_pod(pod_id, force=True)
                except GatewayError as ce:
                    cleanup_error = ce
                    logger.warning("Could not clean up partially created pod", pod=pod.name, err=str(ce))
                raise ContainerCreateError(pod.name, ctr.name, e, cleanup_error) from e
        return pod_id

    def _create_container(self, name: str, pod_id: str, ctr: Container) -> None:
        image = realize_image(self.podman, ctr.image, ctr.image_pull_policy)
        self.podman.create_container(
            ContainerCreateRequest(
                name=name,
                image=image.id,
                pod=pod_id,
                restart_policy=ctr.restart_policy,
                command=list(ctr.args),
                mounts=[
                    Mount(destination=m.destination, type=m.type, source=m.source, options=list(m.options))
                    for m in ctr.mounts
                ],
            )
        )
        # files must be in place before the pod starts
        if ctr.files:
            self.podman.copy_into_container(name, files_archive(ctr.files))

    def _start(self, name: str) -> None:
        self._check_cancelled()
        info = self.podman.inspect_pod(name)
        if info.running:
            return
        try:
            self.podman.start_pod(name)
        except AlreadyStartedError:
            pass

    # -- delete ---------------------------------------------------------

    def delete(self, name_or_id: str) -> tuple[str, ...]:
        """Deregister a pod's services, then remove the pod.

        Returns the service IDs that were deregistered (or already gone).
        """
        info = self.podman.inspect_pod(name_or_id)
        if not info.owned:
            raise ForeignPodError(name_or_id)

        log = logger.bind(pod=info.name or name_or_id)
        # The pod label is the only record of these IDs; the pod must outlive them.
        for sid in info.service_ids:
            self._check_cancelled()
            try:
                self.consul.deregister_service(sid)
            except NotFoundError:
                log.info("Service already deregistered", service_id=sid)

        self._check_cancelled()
        self.podman.delete_pod(info.id or name_or_id, force=True)
        log.info("Deleted pod", services=list(info.service_ids))
        return info.service_ids
