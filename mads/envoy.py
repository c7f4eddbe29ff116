from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import yaml

CONFIG_PATH = "/etc/envoy/envoy.yml"
LOCAL_AGENT_CLUSTER = "local_agent"


@dataclass(frozen=True)
class BootstrapParams:
    admin_address: str
    admin_port: int
    service_name: str
    service_id: str
    agent_address: str
    agent_port: int
    agent_tls: bool = False
    agent_ca_pem: str | None = None
    token: str | None = None


def _agent_cluster(p: BootstrapParams) -> dict[str, Any]:
    cluster: dict[str, Any] = {
        "name": LOCAL_AGENT_CLUSTER,
        "connect_timeout": "1s",
        "type": "STATIC",
        "typed_extension_protocol_options": {
            "envoy.extensions.upstreams.http.v3.HttpProtocolOptions": {
                "@type": "type.googleapis.com/envoy.extensions.upstreams.http.v3.HttpProtocolOptions",
                "explicit_http_config": {"http2_protocol_options": {}},
            }
        },
        "load_assignment": {
            "cluster_name": LOCAL_AGENT_CLUSTER,
            "endpoints": [
                {
                    "lb_endpoints": [
                        {
                            "endpoint": {
                                "address": {
                                    "socket_address": {"address": p.agent_address, "port_value": p.agent_port}
                                }
                            }
                        }
                    ]
                }
            ],
        },
    }
    if p.agent_tls:
        tls: dict[str, Any] = {"@type": "type.googleapis.com/envoy.extensions.transport_sockets.tls.v3.UpstreamTlsContext"}
        if p.agent_ca_pem:
            tls["common_tls_context"] = {"validation_context": {"trusted_ca": {"inline_string": p.agent_ca_pem}}}
        cluster["transport_socket"] = {"name": "tls", "typed_config": tls}
    return cluster


def render_bootstrap(params: BootstrapParams) -> str:
    """Render the envoy bootstrap config for a consul connect sidecar.

    Envoy gets everything but the agent connection from consul over ADS, so
    the document only wires up the admin listener and the local agent
    cluster.
    """
    grpc_service: dict[str, Any] = {"envoy_grpc": {"cluster_name": LOCAL_AGENT_CLUSTER}}
    if params.token:
        grpc_service["initial_metadata"] = [{"key": "x-consul-token", "value": params.token}]

    doc = {
        "admin": {
            "access_log_path": "/dev/null",
            "address": {"socket_address": {"address": params.admin_address, "port_value": params.admin_port}},
        },
        "node": {
            "cluster": params.service_name,
            "id": params.service_id,
            "metadata": {"namespace": "default", "partition": "default"},
        },
        "static_resources": {"clusters": [_agent_cluster(params)]},
        "dynamic_resources": {
            "lds_config": {"ads": {}, "resource_api_version": "V3"},
            "cds_config": {"ads": {}, "resource_api_version": "V3"},
            "ads_config": {
                "api_type": "DELTA_GRPC",
                "transport_api_version": "V3",
                "grpc_services": grpc_service,
            },
        },
    }
    return yaml.safe_dump(doc, sort_keys=False, default_flow_style=False)
