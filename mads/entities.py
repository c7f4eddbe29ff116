from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ParseError

PullPolicy = Literal["always", "missing", "newer", "never"]
RestartPolicy = Literal["no", "always", "on-failure", "unless-stopped"]


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ContainerPortMapping(_Model):
    host_ip: str | None = Field(None, alias="hostIP")
    host_port: int = Field(0, alias="hostPort", ge=0, le=65535)
    container_port: int = Field(..., alias="containerPort", ge=1, le=65535)
    protocol: str | None = None


class ContainerFile(_Model):
    destination: str
    content: str
    mode: int = 0o644


class ContainerMount(_Model):
    type: str = "bind"
    source: str | None = None
    destination: str
    options: list[str] = Field(default_factory=list)


class Container(_Model):
    name: str = Field(..., min_length=1)
    image: str = Field(..., min_length=1)
    image_pull_policy: PullPolicy = Field("always", alias="imagePullPolicy")
    restart_policy: RestartPolicy = Field("always", alias="restartPolicy")
    args: list[str] = Field(default_factory=list)
    ports: list[ContainerPortMapping] = Field(default_factory=list)
    files: list[ContainerFile] = Field(default_factory=list)
    mounts: list[ContainerMount] = Field(default_factory=list)

    @field_validator("restart_policy", mode="before")
    @classmethod
    def _yaml_no(cls, v: Any) -> Any:
        # YAML 1.1 reads a bare `no` as False.
        if v is False:
            return "no"
        return v


class Upstream(_Model):
    destination_name: str = Field(..., alias="destinationName")
    local_bind_address: str | None = Field(None, alias="localBindAddress")
    local_bind_port: int = Field(..., alias="localBindPort", ge=1, le=65535)


class ExposePath(_Model):
    path: str
    local_path_port: int = Field(..., alias="localPathPort", ge=1, le=65535)
    listener_port: int = Field(..., alias="listenerPort", ge=1, le=65535)
    protocol: str | None = None


class Expose(_Model):
    paths: list[ExposePath] = Field(default_factory=list)


class SidecarProxy(_Model):
    upstreams: list[Upstream] = Field(default_factory=list)
    expose: Expose = Field(default_factory=Expose)


class SidecarService(_Model):
    proxy: SidecarProxy | None = None


class ServiceConnect(_Model):
    native: bool = False
    sidecar_service: SidecarService | None = Field(None, alias="sidecarService")


class Service(_Model):
    name: str = Field(..., min_length=1)
    tags: list[str] = Field(default_factory=list)
    port: int = Field(0, ge=0, le=65535)
    connect: ServiceConnect = Field(default_factory=ServiceConnect)

    @property
    def wants_sidecar(self) -> bool:
        return not self.connect.native and self.connect.sidecar_service is not None


class Pod(_Model):
    name: str
    hostname: str | None = None
    hosts: dict[str, str] = Field(default_factory=dict)
    labels: dict[str, str] = Field(default_factory=dict)
    containers: list[Container] = Field(default_factory=list)
    services: list[Service] = Field(default_factory=list)

    @field_validator("hosts", "labels", mode="before")
    @classmethod
    def _string_values(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return {str(k): _stringify(val) for k, val in v.items() if val is not None}
        return v

    def canonical_json(self) -> str:
        """Serialize with a stable key order; the input of `content_hash`."""
        data = self.model_dump(mode="json", by_alias=True, exclude_none=True)
        return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    def content_hash(self) -> str:
        return hashlib.sha256(self.canonical_json().encode("utf-8")).hexdigest()

    def host_add(self) -> list[str]:
        return [f"{host}:{ip}" for host, ip in sorted(self.hosts.items())]


def parse_pod(text: str | bytes, source: str = "<string>") -> Pod:
    """Decode a YAML pod definition.

    Raises ParseError for malformed YAML, a non-mapping document, or a
    document that does not validate.
    """
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ParseError(source, e) from e
    if not isinstance(data, dict):
        raise ParseError(source, f"expected a mapping, got {type(data).__name__}")
    try:
        return Pod.model_validate(data)
    except ValidationError as e:
        raise ParseError(source, e) from e


def load_pod_file(path: str | Path) -> Pod | None:
    """Read and parse a pod definition file.

    Returns None for a file with no content (editors create the file before
    writing it); every other failure raises ParseError.
    """
    p = Path(path)
    try:
        raw = p.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ParseError(str(p), e) from e
    if not raw.strip():
        return None
    return parse_pod(raw, source=str(p))
