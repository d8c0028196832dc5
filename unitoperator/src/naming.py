from __future__ import annotations

from typing import Any

from unitoperator.src.constants import (
    ANNOTATION_NODEPORT_PREFIX,
    ANNOTATION_NODEPORT_SUFFIX,
)


def _versioned_base(spec: dict[str, Any]) -> str:
    parts = [spec.get("type", "")]
    if spec.get("edition"):
        parts.append(spec["edition"])
    parts.append(spec.get("version", ""))
    return "-".join(parts)


def unit_name(unitset_name: str, ordinal: int) -> str:
    return f"{unitset_name}-{ordinal}"


def unit_names(unitset_name: str, replicas: int) -> list[str]:
    return [unit_name(unitset_name, i) for i in range(max(replicas, 0))]


def global_config_template_name(spec: dict[str, Any], version: str | None = None) -> str:
    """Name of the shared config template for a type/edition/version triple.

    ``version`` overrides ``spec.version`` so callers can address the
    template of a previous version during an upgrade.
    """
    if version is not None:
        spec = {**spec, "version": version}
    return f"{_versioned_base(spec)}-config-template"


def global_config_value_name(spec: dict[str, Any], version: str | None = None) -> str:
    if version is not None:
        spec = {**spec, "version": version}
    return f"{_versioned_base(spec)}-config-value"


def global_pod_template_name(spec: dict[str, Any]) -> str:
    return _versioned_base(spec)


def config_template_name(unitset_name: str) -> str:
    return f"{unitset_name}-config-template"


def config_value_name(unit: str) -> str:
    return f"{unit}-config-value"


def pod_template_name(unitset_name: str) -> str:
    return f"{unitset_name}-podtemplate"


def headless_service_name(unitset_name: str) -> str:
    return f"{unitset_name}-headless-svc"


def external_service_name(unitset_name: str) -> str:
    return f"{unitset_name}-svc"


def unit_service_name(unit: str) -> str:
    return f"{unit}-svc"


def claim_name(unit: str, volume: str) -> str:
    return f"{unit}-{volume}"


def service_account_name(namespace: str) -> str:
    return f"{namespace}-serviceaccount"


def role_name(namespace: str) -> str:
    return f"{namespace}-role"


def role_binding_name(namespace: str) -> str:
    return f"{namespace}-rolebinding"


def issuer_name(unit: str) -> str:
    return f"{unit}-certmanager-issuer"


def certificate_name(unit: str) -> str:
    return f"{unit}-certmanager-ca"


def certificate_secret_name(unit: str) -> str:
    return f"{unit}-certmanager-ca-secret"


def pod_monitor_name(unitset_name: str) -> str:
    return f"{unitset_name}-exporter-podmon"


def nodeport_annotation_key(port_name: str) -> str:
    return f"{ANNOTATION_NODEPORT_PREFIX}{port_name}{ANNOTATION_NODEPORT_SUFFIX}"


def unit_agent_host(unit: str, unitset_name: str, namespace: str) -> str:
    """DNS name of a unit behind its fleet's headless service."""
    return f"{unit}.{headless_service_name(unitset_name)}.{namespace}.svc"
