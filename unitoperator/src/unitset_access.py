from __future__ import annotations

from typing import Any

from unitoperator.src import naming
from unitoperator.src.constants import API_GROUP, LABEL_OWNER
from unitoperator.src.context import ReconcileContext
from unitoperator.src.kube import ROLE, ROLE_BINDING, SERVICE_ACCOUNT
from unitoperator.src.podutil import namespace_of

# What the unit agent needs to read its config and report back.
AGENT_RULES = [
    {"apiGroups": [""], "resources": ["pods", "secrets"], "verbs": ["get", "list"]},
    {
        "apiGroups": [""],
        "resources": ["configmaps"],
        "verbs": ["get", "list", "patch", "update"],
    },
    {"apiGroups": [API_GROUP], "resources": ["units"], "verbs": ["get", "list"]},
    {"apiGroups": [""], "resources": ["events"], "verbs": ["create", "patch"]},
]


def _metadata(ctx: ReconcileContext, name: str, namespace: str) -> dict[str, Any]:
    return {
        "name": name,
        "namespace": namespace,
        "labels": {LABEL_OWNER: ctx.config.manager_namespace},
    }


def reconcile_service_account(ctx: ReconcileContext, unitset: dict[str, Any]) -> None:
    """Create the namespace-wide service account, role and binding used by unit pods.

    The three objects are shared by every fleet in the namespace, so they are
    created when missing and otherwise left alone.
    """
    namespace = namespace_of(unitset)
    desired = [
        (
            SERVICE_ACCOUNT,
            {
                "apiVersion": "v1",
                "kind": "ServiceAccount",
                "metadata": _metadata(ctx, naming.service_account_name(namespace), namespace),
            },
        ),
        (
            ROLE,
            {
                "apiVersion": "rbac.authorization.k8s.io/v1",
                "kind": "Role",
                "metadata": _metadata(ctx, naming.role_name(namespace), namespace),
                "rules": AGENT_RULES,
            },
        ),
        (
            ROLE_BINDING,
            {
                "apiVersion": "rbac.authorization.k8s.io/v1",
                "kind": "RoleBinding",
                "metadata": _metadata(ctx, naming.role_binding_name(namespace), namespace),
                "roleRef": {
                    "apiGroup": "rbac.authorization.k8s.io",
                    "kind": "Role",
                    "name": naming.role_name(namespace),
                },
                "subjects": [
                    {
                        "kind": "ServiceAccount",
                        "name": naming.service_account_name(namespace),
                        "namespace": namespace,
                    }
                ],
            },
        ),
    ]
    for kind, body in desired:
        name = body["metadata"]["name"]
        if ctx.store.get(kind, namespace, name) is None:
            ctx.store.create(kind, body)
            ctx.logger.info("Created %s %s/%s", kind, namespace, name)
