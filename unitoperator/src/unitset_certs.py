from __future__ import annotations

from typing import Any

from unitoperator.src import naming
from unitoperator.src.concurrency import fan_out
from unitoperator.src.constants import (
    CERT_MANAGER_GROUP,
    CERT_MANAGER_VERSION,
    CERTIFICATE_DURATION,
    CERTIFICATE_RENEW_BEFORE,
    LABEL_UNIT_NAME,
)
from unitoperator.src.context import ReconcileContext
from unitoperator.src.kube import CERTIFICATE, ISSUER
from unitoperator.src.podutil import labels_of, name_of, namespace_of, owner_reference


def certificates_enabled(unitset: dict[str, Any]) -> bool:
    profile = (unitset.get("spec") or {}).get("certificateProfile") or {}
    return bool(profile.get("organizations")) and bool(profile.get("rootSecret"))


def _metadata(unitset: dict[str, Any], name: str, unit: str) -> dict[str, Any]:
    labels = dict(labels_of(unitset))
    labels[LABEL_UNIT_NAME] = unit
    return {
        "name": name,
        "namespace": namespace_of(unitset),
        "labels": labels,
        "ownerReferences": [owner_reference(unitset)],
    }


def build_issuer(unitset: dict[str, Any], unit: str) -> dict[str, Any]:
    profile = unitset["spec"]["certificateProfile"]
    return {
        "apiVersion": f"{CERT_MANAGER_GROUP}/{CERT_MANAGER_VERSION}",
        "kind": "Issuer",
        "metadata": _metadata(unitset, naming.issuer_name(unit), unit),
        "spec": {"ca": {"secretName": profile["rootSecret"]}},
    }


def build_certificate(unitset: dict[str, Any], unit: str) -> dict[str, Any]:
    profile = unitset["spec"]["certificateProfile"]
    return {
        "apiVersion": f"{CERT_MANAGER_GROUP}/{CERT_MANAGER_VERSION}",
        "kind": "Certificate",
        "metadata": _metadata(unitset, naming.certificate_name(unit), unit),
        "spec": {
            "dnsNames": [unit],
            "subject": {"organizations": list(profile["organizations"])},
            "privateKey": {"algorithm": "RSA", "encoding": "PKCS8", "size": 2048},
            "issuerRef": {
                "group": CERT_MANAGER_GROUP,
                "kind": "Issuer",
                "name": naming.issuer_name(unit),
            },
            "secretName": naming.certificate_secret_name(unit),
            "duration": CERTIFICATE_DURATION,
            "renewBefore": CERTIFICATE_RENEW_BEFORE,
        },
    }


def reconcile_certificates(ctx: ReconcileContext, unitset: dict[str, Any]) -> None:
    """Create a CA issuer and a certificate for every unit when a profile is configured."""
    if not certificates_enabled(unitset):
        return
    namespace = namespace_of(unitset)

    def _ensure(unit: str) -> None:
        for kind, body in (
            (ISSUER, build_issuer(unitset, unit)),
            (CERTIFICATE, build_certificate(unitset, unit)),
        ):
            if ctx.store.get(kind, namespace, body["metadata"]["name"]) is None:
                ctx.store.create(kind, body)
                ctx.logger.info("Created %s %s/%s", kind, namespace, body["metadata"]["name"])

    units = naming.unit_names(name_of(unitset), (unitset.get("spec") or {}).get("units") or 0)
    fan_out(units, _ensure)
