from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes import client, config
from kubernetes.client import (
    ApiextensionsV1Api,
    CoreV1Api,
    CustomObjectsApi,
    RbacAuthorizationV1Api,
)
from kubernetes.config.config_exception import ConfigException

from unitoperator.src.constants import (
    API_GROUP,
    API_VERSION,
    CERT_MANAGER_GROUP,
    CERT_MANAGER_VERSION,
    MONITORING_GROUP,
    MONITORING_VERSION,
    UNIT_PLURAL,
    UNITSET_PLURAL,
)
from unitoperator.src.errors import is_not_found

LOGGER = logging.getLogger(__name__)

STRATEGIC_MERGE_PATCH = "application/strategic-merge-patch+json"
MERGE_PATCH = "application/merge-patch+json"

POD = "Pod"
PERSISTENT_VOLUME_CLAIM = "PersistentVolumeClaim"
PERSISTENT_VOLUME = "PersistentVolume"
CONFIG_MAP = "ConfigMap"
SERVICE = "Service"
SERVICE_ACCOUNT = "ServiceAccount"
POD_TEMPLATE = "PodTemplate"
NODE = "Node"
EVENT = "Event"
ROLE = "Role"
ROLE_BINDING = "RoleBinding"
UNIT = "Unit"
UNITSET = "UnitSet"
ISSUER = "Issuer"
CERTIFICATE = "Certificate"
POD_MONITOR = "PodMonitor"


@dataclass(frozen=True)
class Kind:
    """How to reach one resource kind through the generated client."""

    api: str
    namespaced: bool = True
    snake: str = ""
    group: str = ""
    version: str = ""
    plural: str = ""

    @property
    def custom(self) -> bool:
        return self.api == "custom"


KINDS: dict[str, Kind] = {
    POD: Kind("core", snake="pod"),
    PERSISTENT_VOLUME_CLAIM: Kind("core", snake="persistent_volume_claim"),
    PERSISTENT_VOLUME: Kind("core", namespaced=False, snake="persistent_volume"),
    CONFIG_MAP: Kind("core", snake="config_map"),
    SERVICE: Kind("core", snake="service"),
    SERVICE_ACCOUNT: Kind("core", snake="service_account"),
    POD_TEMPLATE: Kind("core", snake="pod_template"),
    NODE: Kind("core", namespaced=False, snake="node"),
    EVENT: Kind("core", snake="event"),
    ROLE: Kind("rbac", snake="role"),
    ROLE_BINDING: Kind("rbac", snake="role_binding"),
    UNIT: Kind("custom", group=API_GROUP, version=API_VERSION, plural=UNIT_PLURAL),
    UNITSET: Kind("custom", group=API_GROUP, version=API_VERSION, plural=UNITSET_PLURAL),
    ISSUER: Kind(
        "custom", group=CERT_MANAGER_GROUP, version=CERT_MANAGER_VERSION, plural="issuers"
    ),
    CERTIFICATE: Kind(
        "custom", group=CERT_MANAGER_GROUP, version=CERT_MANAGER_VERSION, plural="certificates"
    ),
    POD_MONITOR: Kind(
        "custom", group=MONITORING_GROUP, version=MONITORING_VERSION, plural="podmonitors"
    ),
}


def load_kube_configuration() -> str:
    """Load client configuration and return its source, ``in-cluster`` or ``kubeconfig``.

    The service account token mounted into the operator pod wins; a local
    kubeconfig is only used when running outside a cluster.
    """
    try:
        config.load_incluster_config()
    except ConfigException as exc:
        LOGGER.debug("No in-cluster configuration (%s), trying kubeconfig", exc)
        config.load_kube_config()
        source = "kubeconfig"
    else:
        source = "in-cluster"
    LOGGER.info("Using %s Kubernetes configuration", source)
    return source


def _decode(response: Any) -> dict[str, Any]:
    data = response.data
    if isinstance(data, bytes):
        data = data.decode("utf-8")
    return json.loads(data) if data else {}


class ResourceStore:
    """Dictionary-in, dictionary-out CRUD over every kind the operator touches.

    Typed core and RBAC calls are made with ``_preload_content=False`` so the
    reconcilers always see the server's JSON (camelCase keys) rather than
    generated model objects. ``get`` returns ``None`` for a missing object and
    ``delete`` returns ``False`` when there was nothing to delete; every other
    API error propagates as :class:`kubernetes.client.ApiException`.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        custom_api: CustomObjectsApi,
        rbac_api: RbacAuthorizationV1Api,
        extensions_api: ApiextensionsV1Api,
    ) -> None:
        self.core_api = core_api
        self.custom_api = custom_api
        self.rbac_api = rbac_api
        self.extensions_api = extensions_api

    @classmethod
    def from_default_clients(cls) -> ResourceStore:
        return cls(
            core_api=client.CoreV1Api(),
            custom_api=client.CustomObjectsApi(),
            rbac_api=client.RbacAuthorizationV1Api(),
            extensions_api=client.ApiextensionsV1Api(),
        )

    # ------------------------------------------------------------------
    # Dispatch helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _kind(kind: str) -> Kind:
        try:
            return KINDS[kind]
        except KeyError as exc:
            raise ValueError(f"unsupported kind: {kind}") from exc

    def _typed_api(self, spec: Kind) -> Any:
        return self.core_api if spec.api == "core" else self.rbac_api

    def _typed_method(self, spec: Kind, verb: str, suffix: str = "") -> Callable[..., Any]:
        scope = "namespaced_" if spec.namespaced else ""
        return getattr(self._typed_api(spec), f"{verb}_{scope}{spec.snake}{suffix}")

    @staticmethod
    def _meta(obj: dict[str, Any]) -> tuple[str, str]:
        metadata = obj.get("metadata") or {}
        return metadata.get("namespace", ""), metadata.get("name", "")

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def get(self, kind: str, namespace: str, name: str) -> dict[str, Any] | None:
        spec = self._kind(kind)
        try:
            if spec.custom:
                return self.custom_api.get_namespaced_custom_object(
                    spec.group, spec.version, namespace, spec.plural, name
                )
            read = self._typed_method(spec, "read")
            args = (name, namespace) if spec.namespaced else (name,)
            return _decode(read(*args, _preload_content=False))
        except client.ApiException as exc:
            if is_not_found(exc):
                return None
            raise

    def list_snapshot(
        self,
        kind: str,
        namespace: str | None = None,
        label_selector: str | None = None,
    ) -> tuple[list[dict[str, Any]], str | None]:
        """Return the items and the list resourceVersion for a watch to resume from."""
        func, kwargs = self.list_function(kind, namespace)
        if label_selector:
            kwargs["label_selector"] = label_selector
        if self._kind(kind).custom:
            body = func(**kwargs)
        else:
            body = _decode(func(_preload_content=False, **kwargs))
        items = body.get("items") or []
        kind_spec = self._kind(kind)
        for item in items:
            # List items omit apiVersion and kind; fill them so owner
            # references and events built from them are complete.
            item.setdefault("kind", kind)
            if kind_spec.custom:
                item.setdefault("apiVersion", f"{kind_spec.group}/{kind_spec.version}")
        return items, (body.get("metadata") or {}).get("resourceVersion")

    def list(
        self,
        kind: str,
        namespace: str | None = None,
        label_selector: str | None = None,
    ) -> list[dict[str, Any]]:
        items, _ = self.list_snapshot(kind, namespace, label_selector)
        return items

    def list_function(
        self, kind: str, namespace: str | None = None
    ) -> tuple[Callable[..., Any], dict[str, Any]]:
        """Return the list callable and its keyword arguments, as ``watch.Watch.stream`` expects."""
        spec = self._kind(kind)
        if spec.custom:
            kwargs: dict[str, Any] = {
                "group": spec.group,
                "version": spec.version,
                "plural": spec.plural,
            }
            if namespace:
                kwargs["namespace"] = namespace
                return self.custom_api.list_namespaced_custom_object, kwargs
            return self.custom_api.list_cluster_custom_object, kwargs
        api = self._typed_api(spec)
        if not spec.namespaced:
            return getattr(api, f"list_{spec.snake}"), {}
        if namespace:
            return getattr(api, f"list_namespaced_{spec.snake}"), {"namespace": namespace}
        return getattr(api, f"list_{spec.snake}_for_all_namespaces"), {}

    def create(self, kind: str, obj: dict[str, Any]) -> dict[str, Any]:
        spec = self._kind(kind)
        namespace, _ = self._meta(obj)
        if spec.custom:
            return self.custom_api.create_namespaced_custom_object(
                spec.group, spec.version, namespace, spec.plural, obj
            )
        create = self._typed_method(spec, "create")
        args = (namespace, obj) if spec.namespaced else (obj,)
        return _decode(create(*args, _preload_content=False))

    def replace(self, kind: str, obj: dict[str, Any]) -> dict[str, Any]:
        spec = self._kind(kind)
        namespace, name = self._meta(obj)
        if spec.custom:
            return self.custom_api.replace_namespaced_custom_object(
                spec.group, spec.version, namespace, spec.plural, name, obj
            )
        replace = self._typed_method(spec, "replace")
        args = (name, namespace, obj) if spec.namespaced else (name, obj)
        return _decode(replace(*args, _preload_content=False))

    def replace_status(self, kind: str, obj: dict[str, Any]) -> dict[str, Any]:
        spec = self._kind(kind)
        namespace, name = self._meta(obj)
        if spec.custom:
            return self.custom_api.replace_namespaced_custom_object_status(
                spec.group, spec.version, namespace, spec.plural, name, obj
            )
        replace = self._typed_method(spec, "replace", "_status")
        args = (name, namespace, obj) if spec.namespaced else (name, obj)
        return _decode(replace(*args, _preload_content=False))

    def patch(
        self, kind: str, namespace: str, name: str, body: dict[str, Any]
    ) -> dict[str, Any]:
        """Strategic merge patch for built-in kinds, JSON merge patch for custom ones."""
        spec = self._kind(kind)
        if spec.custom:
            return self.custom_api.patch_namespaced_custom_object(
                spec.group,
                spec.version,
                namespace,
                spec.plural,
                name,
                body,
                _content_type=MERGE_PATCH,
            )
        patch = self._typed_method(spec, "patch")
        args = (name, namespace, body) if spec.namespaced else (name, body)
        return _decode(
            patch(*args, _content_type=STRATEGIC_MERGE_PATCH, _preload_content=False)
        )

    def delete(
        self,
        kind: str,
        namespace: str,
        name: str,
        grace_period_seconds: int | None = None,
    ) -> bool:
        spec = self._kind(kind)
        kwargs: dict[str, Any] = {}
        if grace_period_seconds is not None:
            kwargs["grace_period_seconds"] = grace_period_seconds
        try:
            if spec.custom:
                self.custom_api.delete_namespaced_custom_object(
                    spec.group, spec.version, namespace, spec.plural, name, **kwargs
                )
            else:
                delete = self._typed_method(spec, "delete")
                args = (name, namespace) if spec.namespaced else (name,)
                delete(*args, _preload_content=False, **kwargs)
        except client.ApiException as exc:
            if is_not_found(exc):
                return False
            raise
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def has_crd(self, name: str) -> bool:
        try:
            self.extensions_api.read_custom_resource_definition(name, _preload_content=False)
        except client.ApiException as exc:
            if is_not_found(exc):
                return False
            raise
        return True

    def persistent_volumes_for_claim(self, claim: str) -> list[dict[str, Any]]:
        """Return every PersistentVolume whose ``claimRef`` names ``claim``."""
        return [
            volume
            for volume in self.list(PERSISTENT_VOLUME)
            if ((volume.get("spec") or {}).get("claimRef") or {}).get("name") == claim
        ]
