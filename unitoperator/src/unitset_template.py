"""Fleet pod template handling and synthesis of Unit objects from it."""

from __future__ import annotations

import copy
import json
from typing import Any

from unitoperator.src import naming
from unitoperator.src.constants import (
    ANNOTATION_MAIN_CONTAINER_NAME,
    ANNOTATION_MAIN_CONTAINER_VERSION,
    ANNOTATION_NODE_NAME_MAP,
    ANNOTATION_NODEPORT_PREFIX,
    ANNOTATION_NODEPORT_SUFFIX,
    CERTIFICATE_MOUNT_PATH,
    CERTIFICATE_VOLUME_NAME,
    FINALIZER_POD_DELETE,
    FINALIZER_PVC_DELETE,
    GROUP_VERSION,
    HOSTNAME_TOPOLOGY_KEY,
    LABEL_UNIT_NAME,
    LABEL_UNIT_SN,
    LABEL_UNITSET_NAME,
    LEGACY_UNPINNED,
    NODE_GROUP_TOPOLOGY_KEY,
    UNIT_KIND,
)
from unitoperator.src.context import ReconcileContext
from unitoperator.src.errors import PreconditionError, ReconcileError
from unitoperator.src.kube import POD_TEMPLATE
from unitoperator.src.podutil import annotations_of, labels_of, name_of, namespace_of, owner_reference
from unitoperator.src.unitset_certs import certificates_enabled

ANNOTATION_STORAGE_PREFIX = "unit-operator/storage."
ANNOTATION_CERTIFICATE_PREFIX = "unit-operator/certificate."
ANNOTATION_EXTRA_VOLUME_PREFIX = "unit-operator/extra-volume."
LAST_APPLIED = "kubectl.kubernetes.io/last-applied-configuration"

DEFAULT_RECOVERY_POLICY = {"enabled": True, "reconcileThreshold": 6}


# ----------------------------------------------------------------------
# Pod templates
# ----------------------------------------------------------------------


def golden_pod_template(ctx: ReconcileContext, unitset: dict[str, Any]) -> dict[str, Any]:
    """Return the shared pod template for the fleet's type, edition and version."""
    name = naming.global_pod_template_name(unitset.get("spec") or {})
    found = ctx.store.get(POD_TEMPLATE, ctx.config.manager_namespace, name)
    if found is None:
        raise ReconcileError(f"pod template {ctx.config.manager_namespace}/{name} not found")
    return found


def main_ports(unitset: dict[str, Any], pod_template: dict[str, Any]) -> list[dict[str, Any]]:
    main_name = (unitset.get("spec") or {}).get("type", "")
    spec = (pod_template.get("template") or {}).get("spec") or {}
    for container in spec.get("containers") or []:
        if container.get("name") == main_name:
            return list(container.get("ports") or [])
    return []


def ensure_pod_template(ctx: ReconcileContext, unitset: dict[str, Any]) -> dict[str, Any]:
    """Return the fleet's own pod template, copying it from the shared one when absent."""
    namespace = namespace_of(unitset)
    name = naming.pod_template_name(name_of(unitset))
    current = ctx.store.get(POD_TEMPLATE, namespace, name)
    if current is not None:
        return current

    golden = golden_pod_template(ctx, unitset)
    if not main_ports(unitset, golden):
        raise PreconditionError(
            f"pod template {name_of(golden)} declares no ports on container "
            f"{(unitset.get('spec') or {}).get('type')}"
        )
    body = {
        "apiVersion": "v1",
        "kind": "PodTemplate",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "labels": {},
            "annotations": {},
            "ownerReferences": [owner_reference(unitset)],
        },
        "template": copy.deepcopy(golden.get("template") or {}),
    }
    ctx.logger.info("Created pod template %s/%s from %s", namespace, name, name_of(golden))
    return ctx.store.create(POD_TEMPLATE, body)


# ----------------------------------------------------------------------
# Node pinning
# ----------------------------------------------------------------------


def node_name_map(unitset: dict[str, Any]) -> dict[str, str | None]:
    """Parse the node pinning map; ``None`` marks a unit as intentionally unpinned."""
    raw = annotations_of(unitset).get(ANNOTATION_NODE_NAME_MAP)
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError as exc:
        raise PreconditionError(f"annotation {ANNOTATION_NODE_NAME_MAP} is not valid JSON") from exc
    result: dict[str, str | None] = {}
    for unit, node in (parsed or {}).items():
        result[str(unit)] = None if node in (None, "", LEGACY_UNPINNED) else str(node)
    return result


def is_fleet_only_annotation(key: str) -> bool:
    if key in (ANNOTATION_NODE_NAME_MAP, LAST_APPLIED):
        return True
    return key.startswith(ANNOTATION_NODEPORT_PREFIX) and key.endswith(ANNOTATION_NODEPORT_SUFFIX)


# ----------------------------------------------------------------------
# Unit synthesis
# ----------------------------------------------------------------------


def storage_layout(
    unitset: dict[str, Any],
) -> tuple[list[dict[str, Any]], list[dict[str, Any]], list[dict[str, Any]]]:
    """Return ``(mounts, volumes, claim_templates)`` declared by the fleet."""
    spec = unitset.get("spec") or {}
    mounts: list[dict[str, Any]] = []
    volumes: list[dict[str, Any]] = []
    claims: list[dict[str, Any]] = []

    for storage in spec.get("storage") or []:
        claim_spec: dict[str, Any] = {
            "accessModes": ["ReadWriteOnce"],
            "resources": {"requests": {"storage": storage.get("size")}},
        }
        if storage.get("storageClassName"):
            claim_spec["storageClassName"] = storage["storageClassName"]
        claims.append({"name": storage["name"], "spec": claim_spec})
        mounts.append({"name": storage["name"], "mountPath": storage.get("mountPath", "")})
        volumes.append({"name": storage["name"], "persistentVolumeClaim": {"claimName": ""}})

    for empty_dir in spec.get("emptyDir") or []:
        mounts.append({"name": empty_dir["name"], "mountPath": empty_dir.get("mountPath", "")})
        source: dict[str, Any] = {}
        if empty_dir.get("size"):
            source["sizeLimit"] = empty_dir["size"]
        volumes.append({"name": empty_dir["name"], "emptyDir": source})

    if certificates_enabled(unitset):
        volumes.append({"name": CERTIFICATE_VOLUME_NAME, "secret": {"secretName": ""}})
        mounts.append(
            {"name": CERTIFICATE_VOLUME_NAME, "mountPath": CERTIFICATE_MOUNT_PATH, "readOnly": True}
        )

    for extra in spec.get("extraVolume") or []:
        volume = copy.deepcopy(extra.get("volume") or {})
        mounts.append({"name": volume.get("name", ""), "mountPath": extra.get("volumeMountPath", "")})
        volumes.append(volume)

    return mounts, volumes, claims


def _layout_annotations(unitset: dict[str, Any]) -> dict[str, str]:
    spec = unitset.get("spec") or {}
    result: dict[str, str] = {}
    for entry in list(spec.get("storage") or []) + list(spec.get("emptyDir") or []):
        result[f"{ANNOTATION_STORAGE_PREFIX}{entry['name']}.mountPath"] = entry.get("mountPath", "")
    if certificates_enabled(unitset):
        result[f"{ANNOTATION_CERTIFICATE_PREFIX}certMount"] = CERTIFICATE_MOUNT_PATH
        result[f"{ANNOTATION_CERTIFICATE_PREFIX}certORG"] = json.dumps(
            spec["certificateProfile"]["organizations"]
        )
    for extra in spec.get("extraVolume") or []:
        volume = extra.get("volume") or {}
        prefix = f"{ANNOTATION_EXTRA_VOLUME_PREFIX}{volume.get('name', '')}"
        if volume.get("secret"):
            result[f"{prefix}.secretName"] = volume["secret"].get("secretName", "")
        elif volume.get("configMap"):
            result[f"{prefix}.configMapName"] = volume["configMap"].get("name", "")
        result[f"{prefix}.volumeMountPath"] = extra.get("volumeMountPath", "")
    return result


def _merge_envs(*layers: list[dict[str, Any]]) -> list[dict[str, Any]]:
    merged: list[dict[str, Any]] = []
    seen: set[str] = set()
    for layer in layers:
        for env in layer or []:
            if env.get("name") in seen:
                continue
            seen.add(env.get("name"))
            merged.append(copy.deepcopy(env))
    return merged


def _add_mounts(container: dict[str, Any], mounts: list[dict[str, Any]]) -> None:
    existing = container.setdefault("volumeMounts", [])
    names = {mount.get("name") for mount in existing}
    for mount in mounts:
        if mount["name"] not in names:
            existing.append(copy.deepcopy(mount))
            names.add(mount["name"])


def _required_node_terms(pod_spec: dict[str, Any]) -> list[dict[str, Any]]:
    node_affinity = pod_spec.setdefault("affinity", {}).setdefault("nodeAffinity", {})
    required = node_affinity.setdefault(
        "requiredDuringSchedulingIgnoredDuringExecution", {"nodeSelectorTerms": []}
    )
    return required.setdefault("nodeSelectorTerms", [])


def _apply_scheduling(pod_spec: dict[str, Any], unitset: dict[str, Any]) -> None:
    spec = unitset.get("spec") or {}
    presets = spec.get("nodeAffinityPreset") or []
    if presets:
        pod_spec.setdefault("affinity", {})["nodeAffinity"] = {
            "requiredDuringSchedulingIgnoredDuringExecution": {
                "nodeSelectorTerms": [
                    {
                        "matchExpressions": [
                            {"key": p["key"], "operator": "In", "values": list(p.get("values") or [])}
                            for p in presets
                        ]
                    }
                ]
            }
        }

    preset = spec.get("podAntiAffinityPreset")
    if preset in ("soft", "hard"):
        pod_spec.setdefault("affinity", {})["podAntiAffinity"] = {
            "requiredDuringSchedulingIgnoredDuringExecution": [
                {
                    "labelSelector": {
                        "matchExpressions": [
                            {"key": LABEL_UNITSET_NAME, "operator": "In", "values": [name_of(unitset)]}
                        ]
                    },
                    "topologyKey": HOSTNAME_TOPOLOGY_KEY,
                }
            ]
        }
        pod_spec.setdefault("topologySpreadConstraints", []).append(
            {
                "maxSkew": 1,
                "topologyKey": NODE_GROUP_TOPOLOGY_KEY,
                "whenUnsatisfiable": "ScheduleAnyway" if preset == "soft" else "DoNotSchedule",
                "labelSelector": {"matchLabels": {LABEL_UNITSET_NAME: name_of(unitset)}},
            }
        )


def build_unit_template(
    unitset: dict[str, Any], unit: str, pod_template: dict[str, Any]
) -> dict[str, Any]:
    """Return the ``spec.template`` of ``unit`` rendered from the fleet's pod template.

    The result is a pure function of its inputs, so rendering it again for an
    existing unit yields the same instance-specific fields (hostname, claim
    names, certificate secret, node pin).
    """
    spec = unitset.get("spec") or {}
    template = copy.deepcopy(pod_template.get("template") or {})
    template_meta = template.get("metadata") or {}
    pod_spec = template.get("spec") or {}
    mounts, volumes, _ = storage_layout(unitset)

    pod_spec["subdomain"] = naming.headless_service_name(name_of(unitset))
    pod_spec["enableServiceLinks"] = True
    pod_spec["serviceAccountName"] = naming.service_account_name(namespace_of(unitset))
    pod_spec["hostname"] = unit

    storage_names = {s["name"] for s in spec.get("storage") or []}
    for volume in volumes:
        volume = copy.deepcopy(volume)
        if volume["name"] in storage_names and "persistentVolumeClaim" in volume:
            volume["persistentVolumeClaim"]["claimName"] = naming.claim_name(unit, volume["name"])
        if volume["name"] == CERTIFICATE_VOLUME_NAME and "secret" in volume:
            volume["secret"]["secretName"] = naming.certificate_secret_name(unit)
        pod_spec.setdefault("volumes", []).append(volume)

    for key in ("initContainers", "containers"):
        for container in pod_spec.get(key) or []:
            _add_mounts(container, mounts)
            envs = _merge_envs(spec.get("env") or [], container.get("env") or [])
            if envs:
                container["env"] = envs
            if key == "containers" and container.get("name") == spec.get("type"):
                container["resources"] = copy.deepcopy(spec.get("resources") or {})

    _apply_scheduling(pod_spec, unitset)

    pinned = node_name_map(unitset).get(unit)
    if pinned:
        _required_node_terms(pod_spec).append(
            {
                "matchExpressions": [
                    {"key": HOSTNAME_TOPOLOGY_KEY, "operator": "In", "values": [pinned]}
                ]
            }
        )

    return {
        "metadata": {
            "labels": dict(template_meta.get("labels") or {}),
            "annotations": dict(template_meta.get("annotations") or {}),
        },
        "spec": pod_spec,
    }


def unit_labels(unitset: dict[str, Any], unit: str, ordinal: int) -> dict[str, str]:
    labels = dict(labels_of(unitset))
    labels[LABEL_UNITSET_NAME] = name_of(unitset)
    labels[LABEL_UNIT_SN] = str(ordinal)
    labels[LABEL_UNIT_NAME] = unit
    return labels


def unit_annotations(unitset: dict[str, Any]) -> dict[str, str]:
    spec = unitset.get("spec") or {}
    annotations = {
        key: value
        for key, value in annotations_of(unitset).items()
        if not is_fleet_only_annotation(key)
    }
    annotations.update(_layout_annotations(unitset))
    annotations[ANNOTATION_MAIN_CONTAINER_NAME] = spec.get("type", "")
    annotations[ANNOTATION_MAIN_CONTAINER_VERSION] = spec.get("version", "")
    return annotations


def build_unit(
    unitset: dict[str, Any], unit: str, ordinal: int, pod_template: dict[str, Any]
) -> dict[str, Any]:
    """Synthesize a new Unit for ordinal ``ordinal`` of the fleet."""
    _, _, claims = storage_layout(unitset)
    return {
        "apiVersion": GROUP_VERSION,
        "kind": UNIT_KIND,
        "metadata": {
            "name": unit,
            "namespace": namespace_of(unitset),
            "labels": unit_labels(unitset, unit, ordinal),
            "annotations": unit_annotations(unitset),
            "ownerReferences": [owner_reference(unitset)],
            "finalizers": [FINALIZER_POD_DELETE, FINALIZER_PVC_DELETE],
        },
        "spec": {
            "startup": True,
            "configTemplateName": naming.config_template_name(name_of(unitset)),
            "configValueName": naming.config_value_name(unit),
            "volumeClaimTemplates": claims,
            "failedPodRecoveryPolicy": dict(DEFAULT_RECOVERY_POLICY),
            "template": build_unit_template(unitset, unit, pod_template),
        },
    }
