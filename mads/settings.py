from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_path(name: str, default: str | None = None) -> str | None:
    raw = os.getenv(name, default)
    if raw is None or not raw.strip():
        return None
    return os.path.expandvars(os.path.expanduser(raw.strip()))


@dataclass(frozen=True)
class Settings:
    # Podman
    podman_socket: str | None = _env_path("MADS_PODMAN_SOCKET", "$XDG_RUNTIME_DIR/podman/podman.sock")
    request_timeout_s: int = _env_int("MADS_REQUEST_TIMEOUT_S", 30)

    # Agent
    watch_dir: str | None = _env_path("MADS_WATCH_DIR")
    event_buffer: int = _env_int("MADS_EVENT_BUFFER", 100)
    status_addr: str | None = os.getenv("MADS_STATUS_ADDR") or None

    # Sidecar proxies
    envoy_image: str = os.getenv("MADS_ENVOY_IMAGE", "docker.io/envoyproxy/envoy:v1.24-latest")
    envoy_admin_address: str = os.getenv("MADS_ENVOY_ADMIN_ADDRESS", "0.0.0.0")
    envoy_admin_port: int = _env_int("MADS_ENVOY_ADMIN_PORT", 9100)

    # Consul agent. Variable names match the ones the consul CLI reads.
    consul_addr: str = os.getenv("CONSUL_HTTP_ADDR", "http://127.0.0.1:8500")
    consul_token: str | None = os.getenv("CONSUL_HTTP_TOKEN") or None
    consul_cacert: str | None = _env_path("CONSUL_CACERT")
    consul_tls_verify: bool = not _env_bool("CONSUL_HTTP_SSL_VERIFY_DISABLE", False)


settings = Settings()
