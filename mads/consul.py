from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from typing import Any

import requests

from .entities import Service
from .errors import GatewayError, NotFoundError
from .settings import settings

MANAGED_META = "mads_managed"
POD_NAME_META = "mads_pod_name"


def service_id(pod_name: str, service_name: str) -> str:
    """Registry ID of a pod's service, stable across applies."""
    return f"{pod_name}-{service_name}"


def sidecar_id(svc_id: str) -> str:
    # Consul names auto-registered sidecars this way.
    return f"{svc_id}-sidecar-proxy"


@dataclass(frozen=True)
class RegisteredService:
    id: str
    name: str
    port: int
    expose_ports: tuple[int, ...] = ()

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> RegisteredService:
        proxy = data.get("Proxy") or {}
        paths = (proxy.get("Expose") or {}).get("Paths") or []
        return cls(
            id=data.get("ID", ""),
            name=data.get("Service", ""),
            port=int(data.get("Port") or 0),
            expose_ports=tuple(int(p["ListenerPort"]) for p in paths if p.get("ListenerPort")),
        )


@dataclass(frozen=True)
class GrpcAddress:
    host: str
    port: int
    tls: bool


def build_registration(pod_name: str, svc: Service) -> dict[str, Any]:
    """Translate a pod's service into a consul agent service registration."""
    reg: dict[str, Any] = {
        "ID": service_id(pod_name, svc.name),
        "Name": svc.name,
        "Tags": list(svc.tags),
        "Port": svc.port,
        "Meta": {MANAGED_META: "true", POD_NAME_META: pod_name},
        "Connect": {"Native": svc.connect.native},
    }
    if not svc.wants_sidecar:
        return reg

    sidecar: dict[str, Any] = {}
    proxy = svc.connect.sidecar_service.proxy if svc.connect.sidecar_service else None
    if proxy is not None and (proxy.upstreams or proxy.expose.paths):
        cfg: dict[str, Any] = {"Mode": "transparent"}
        if proxy.upstreams:
            cfg["Upstreams"] = [
                {
                    "DestinationName": u.destination_name,
                    "LocalBindAddress": u.local_bind_address or "",
                    "LocalBindPort": u.local_bind_port,
                }
                for u in proxy.upstreams
            ]
        if proxy.expose.paths:
            cfg["Expose"] = {
                "Paths": [
                    {
                        "Path": p.path,
                        "LocalPathPort": p.local_path_port,
                        "ListenerPort": p.listener_port,
                        "Protocol": p.protocol or "",
                    }
                    for p in proxy.expose.paths
                ]
            }
        sidecar["Proxy"] = cfg
    reg["Connect"]["SidecarService"] = sidecar
    return reg


def find_grpc_address(self_info: dict[str, Any]) -> GrpcAddress:
    """Pick the agent gRPC listener sidecars should connect to.

    TLS listeners win over plain ones; only tcp:// addresses on a
    non-loopback IP qualify.
    """
    debug = self_info.get("DebugConfig") or {}
    for key, tls in (("GRPCTLSAddrs", True), ("GRPCAddrs", False)):
        for addr in debug.get(key) or []:
            if not isinstance(addr, str) or not addr.startswith("tcp://"):
                continue
            host, _, port = addr[len("tcp://"):].rpartition(":")
            try:
                ip = ipaddress.ip_address(host.strip("[]"))
                port_num = int(port)
            except ValueError:
                continue
            if ip.is_loopback or not 0 < port_num < 65536:
                continue
            return GrpcAddress(host=str(ip), port=port_num, tls=tls)
    raise GatewayError("find grpc address of", "consul agent", "no usable grpc listener found")


class ConsulClient:
    """Thin client for the consul agent HTTP API."""

    def __init__(
        self,
        addr: str | None = None,
        token: str | None = None,
        timeout_s: float | None = None,
        session: requests.Session | None = None,
    ):
        self.base = (addr or settings.consul_addr).rstrip("/")
        if "://" not in self.base:
            self.base = f"http://{self.base}"
        self.timeout_s = float(timeout_s or settings.request_timeout_s)
        self.session = session or requests.Session()
        token = token if token is not None else settings.consul_token
        if token:
            self.session.headers["X-Consul-Token"] = token
        if session is None:
            if not settings.consul_tls_verify:
                self.session.verify = False
            elif settings.consul_cacert:
                self.session.verify = settings.consul_cacert

    def _request(self, op: str, target: str, method: str, path: str, **kwargs: Any) -> requests.Response:
        try:
            r = self.session.request(method, f"{self.base}{path}", timeout=self.timeout_s, **kwargs)
        except requests.RequestException as e:
            raise GatewayError(op, target, e) from e
        if r.ok:
            return r
        detail = (r.text or "").strip() or f"HTTP {r.status_code}"
        # Older agents answer 500 "Unknown service ID" instead of 404.
        if r.status_code == 404 or "Unknown service" in detail:
            raise NotFoundError(op, target, detail, status=r.status_code)
        raise GatewayError(op, target, detail, status=r.status_code)

    def register_service(self, registration: dict[str, Any]) -> None:
        self._request("register service", registration["ID"], "PUT", "/v1/agent/service/register", json=registration)

    def deregister_service(self, svc_id: str) -> None:
        """Raises NotFoundError when the agent does not know `svc_id`."""
        self._request("deregister service", svc_id, "PUT", f"/v1/agent/service/deregister/{svc_id}")

    def service(self, svc_id: str) -> RegisteredService | None:
        try:
            r = self._request("look up service", svc_id, "GET", f"/v1/agent/service/{svc_id}")
        except NotFoundError:
            return None
        return RegisteredService.from_api(r.json())

    def self_info(self) -> dict[str, Any]:
        return self._request("read agent info of", "consul agent", "GET", "/v1/agent/self").json()

    def grpc_address(self) -> GrpcAddress:
        return find_grpc_address(self.self_info())
