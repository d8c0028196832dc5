from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

import grpc
from google.protobuf.descriptor_pool import DescriptorPool
from google.protobuf.message_factory import GetMessageClass
from grpc_reflection.v1alpha.proto_reflection_descriptor_database import (
    ProtoReflectionDescriptorDatabase,
)

from unitoperator.src import naming
from unitoperator.src.constants import (
    AGENT_DEFAULT_PORT,
    LABEL_UNITSET_NAME,
    PROCESS_UNKNOWN,
)
from unitoperator.src.errors import AgentError
from unitoperator.src.metrics import METRICS

# gRPC services registered by the agent, matched by their unqualified name.
SYNC_CONFIG_SERVICE = "SyncConfigService"
LIFECYCLE_SERVICE = "ServiceLifecycle"

# Process states reported by the agent's supervisor, by wire code.
SERVICE_STATES = {
    0: "stopped",
    1: "starting",
    2: "running",
    3: "backoff",
    4: "stopping",
    5: "exited",
    6: "fatal",
    7: PROCESS_UNKNOWN,
}


@dataclass(frozen=True)
class _Method:
    path: str
    request_class: type
    response_class: type


class AgentClient:
    """gRPC client for the ``unit-agent`` sidecar running next to every unit's main container.

    The agent is addressed either by the unit's stable DNS name behind the
    fleet headless service (``domain``) or by the pod's first IP (``ip``).
    Message types are resolved once through the agent's server reflection
    and reused for every later call. Connection failures, deadlines and
    error statuses raise :class:`AgentError`.
    """

    def __init__(
        self,
        host_type: str = "domain",
        port: int = AGENT_DEFAULT_PORT,
        timeout_seconds: float = 10,
        channel_factory: Callable[[str], grpc.Channel] = grpc.insecure_channel,
        logger: logging.Logger | None = None,
    ) -> None:
        self.host_type = host_type
        self.port = port
        self.timeout_seconds = timeout_seconds
        self.channel_factory = channel_factory
        self.logger = logger or logging.getLogger(__name__)
        self._methods: dict[tuple[str, str], _Method] = {}
        self._methods_lock = threading.Lock()

    def address(self, unit: dict[str, Any], pod: dict[str, Any] | None) -> str:
        metadata = unit.get("metadata") or {}
        if self.host_type == "ip":
            pod_ips = ((pod or {}).get("status") or {}).get("podIPs") or []
            if not pod_ips or not pod_ips[0].get("ip"):
                raise AgentError(f"unit {metadata.get('name')} has no pod IP yet")
            return f"{pod_ips[0]['ip']}:{self.port}"
        unitset_name = (metadata.get("labels") or {}).get(LABEL_UNITSET_NAME, "")
        host = naming.unit_agent_host(
            metadata.get("name", ""), unitset_name, metadata.get("namespace", "")
        )
        return f"{host}:{self.port}"

    def _resolve(self, channel: grpc.Channel, service: str, method: str) -> _Method:
        key = (service, method)
        with self._methods_lock:
            cached = self._methods.get(key)
        if cached is not None:
            return cached

        database = ProtoReflectionDescriptorDatabase(channel)
        full_names = [name for name in database.get_services() if name.rsplit(".", 1)[-1] == service]
        if not full_names:
            raise AgentError(f"agent does not serve {service}")
        service_descriptor = DescriptorPool(database).FindServiceByName(full_names[0])
        descriptor = service_descriptor.methods_by_name.get(method)
        if descriptor is None:
            raise AgentError(f"agent service {full_names[0]} has no method {method}")
        resolved = _Method(
            path=f"/{full_names[0]}/{method}",
            request_class=GetMessageClass(descriptor.input_type),
            response_class=GetMessageClass(descriptor.output_type),
        )
        with self._methods_lock:
            self._methods[key] = resolved
        self.logger.debug("Resolved agent method %s", resolved.path)
        return resolved

    def _call(
        self,
        action: str,
        unit: dict[str, Any],
        pod: dict[str, Any] | None,
        service: str,
        method: str,
        fields: dict[str, Any] | None = None,
    ) -> Any:
        target = self.address(unit, pod)
        try:
            with self.channel_factory(target) as channel:
                grpc.channel_ready_future(channel).result(timeout=self.timeout_seconds)
                resolved = self._resolve(channel, service, method)
                rpc = channel.unary_unary(
                    resolved.path,
                    request_serializer=resolved.request_class.SerializeToString,
                    response_deserializer=resolved.response_class.FromString,
                )
                response = rpc(resolved.request_class(**(fields or {})), timeout=self.timeout_seconds)
        except grpc.FutureTimeoutError as exc:
            METRICS.agent_calls_total.labels(action=action, result="error").inc()
            raise AgentError(
                f"{action} on {target} failed: agent unreachable after {self.timeout_seconds}s"
            ) from exc
        except grpc.RpcError as exc:
            METRICS.agent_calls_total.labels(action=action, result="error").inc()
            code = exc.code() if isinstance(exc, grpc.Call) else None
            details = exc.details() if isinstance(exc, grpc.Call) else str(exc)
            status = code.name if code is not None else "UNKNOWN"
            raise AgentError(f"{action} on {target} returned {status}: {details}") from exc
        except AgentError:
            METRICS.agent_calls_total.labels(action=action, result="error").inc()
            raise
        METRICS.agent_calls_total.labels(action=action, result="success").inc()
        return response

    def sync_config(
        self,
        unit: dict[str, Any],
        pod: dict[str, Any] | None,
        *,
        main_container: str,
        template_config_map: str,
        value_config_map: str,
        extend_value_config_maps: Sequence[str] = (),
    ) -> str:
        """Ask the agent to render the unit's config from its template and value maps."""
        fields = {
            "template_configmap_name": template_config_map,
            "value_configmap_name": value_config_map,
            "namespace": (unit.get("metadata") or {}).get("namespace", ""),
            "key": main_container,
            "extend_value_configmaps": list(extend_value_config_maps),
        }
        response = self._call("sync_config", unit, pod, SYNC_CONFIG_SERVICE, "SyncConfig", fields)
        return response.message

    def start_service(self, unit: dict[str, Any], pod: dict[str, Any] | None) -> str:
        return self._call("start_service", unit, pod, LIFECYCLE_SERVICE, "StartService").message

    def stop_service(self, unit: dict[str, Any], pod: dict[str, Any] | None) -> str:
        return self._call("stop_service", unit, pod, LIFECYCLE_SERVICE, "StopService").message

    def service_status(self, unit: dict[str, Any], pod: dict[str, Any] | None) -> str:
        response = self._call("service_status", unit, pod, LIFECYCLE_SERVICE, "GetServiceStatus")
        return SERVICE_STATES.get(int(response.service_status), PROCESS_UNKNOWN)
