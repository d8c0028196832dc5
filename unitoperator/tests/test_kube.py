from __future__ import annotations

import json
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import ApiException

from unitoperator.src.constants import GROUP_VERSION
from unitoperator.src.kube import (
    CONFIG_MAP,
    MERGE_PATCH,
    NODE,
    POD,
    STRATEGIC_MERGE_PATCH,
    UNIT,
    ResourceStore,
    load_kube_configuration,
)


def _response(body: dict[str, Any]) -> SimpleNamespace:
    return SimpleNamespace(data=json.dumps(body).encode())


def _store() -> tuple[ResourceStore, MagicMock, MagicMock, MagicMock]:
    core, custom, rbac, extensions = MagicMock(), MagicMock(), MagicMock(), MagicMock()
    return ResourceStore(core, custom, rbac, extensions), core, custom, extensions


def test_load_kube_configuration_in_cluster() -> None:
    with (
        patch("unitoperator.src.kube.config.load_incluster_config") as mock_incluster,
        patch("unitoperator.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        assert load_kube_configuration() == "in-cluster"

    mock_incluster.assert_called_once()
    mock_kubeconfig.assert_not_called()


def test_load_kube_configuration_local_fallback() -> None:
    from kubernetes.config.config_exception import ConfigException

    with (
        patch(
            "unitoperator.src.kube.config.load_incluster_config",
            side_effect=ConfigException("not in cluster"),
        ),
        patch("unitoperator.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        assert load_kube_configuration() == "kubeconfig"

    mock_kubeconfig.assert_called_once()


def test_get_decodes_raw_json_for_core_kinds() -> None:
    store, core, _, _ = _store()
    core.read_namespaced_pod.return_value = _response({"metadata": {"name": "demo-0"}})

    pod = store.get(POD, "default", "demo-0")

    assert pod == {"metadata": {"name": "demo-0"}}
    core.read_namespaced_pod.assert_called_once_with("demo-0", "default", _preload_content=False)


def test_get_returns_none_when_missing() -> None:
    store, _, custom, _ = _store()
    custom.get_namespaced_custom_object.side_effect = ApiException(status=404, reason="NotFound")

    assert store.get(UNIT, "default", "demo-0") is None


def test_get_propagates_other_errors() -> None:
    store, core, _, _ = _store()
    core.read_node.side_effect = ApiException(status=500, reason="boom")

    with pytest.raises(ApiException):
        store.get(NODE, "", "node-1")


def test_list_snapshot_fills_kind_and_returns_resource_version() -> None:
    store, _, custom, _ = _store()
    custom.list_namespaced_custom_object.return_value = {
        "metadata": {"resourceVersion": "42"},
        "items": [{"metadata": {"name": "demo-0"}}],
    }

    items, rv = store.list_snapshot(UNIT, "default", "unit-operator/unitset.name=demo")

    assert rv == "42"
    assert items[0]["kind"] == UNIT
    assert items[0]["apiVersion"] == GROUP_VERSION
    kwargs = custom.list_namespaced_custom_object.call_args.kwargs
    assert kwargs["namespace"] == "default"
    assert kwargs["label_selector"] == "unit-operator/unitset.name=demo"


def test_list_function_picks_cluster_wide_variants() -> None:
    store, core, custom, _ = _store()

    func, kwargs = store.list_function(CONFIG_MAP)
    assert func is core.list_config_map_for_all_namespaces
    assert kwargs == {}

    func, kwargs = store.list_function(NODE, "default")
    assert func is core.list_node

    func, kwargs = store.list_function(UNIT)
    assert func is custom.list_cluster_custom_object
    assert "namespace" not in kwargs


def test_patch_uses_merge_patch_for_custom_kinds() -> None:
    store, core, custom, _ = _store()
    core.patch_namespaced_pod.return_value = _response({})

    store.patch(UNIT, "default", "demo-0", {"metadata": {"labels": {"a": "b"}}})
    store.patch(POD, "default", "demo-0", {"metadata": {"labels": {"a": "b"}}})

    assert custom.patch_namespaced_custom_object.call_args.kwargs["_content_type"] == MERGE_PATCH
    assert core.patch_namespaced_pod.call_args.kwargs["_content_type"] == STRATEGIC_MERGE_PATCH


def test_delete_reports_missing_objects() -> None:
    store, core, _, _ = _store()
    core.delete_namespaced_pod.side_effect = ApiException(status=404, reason="NotFound")

    assert store.delete(POD, "default", "demo-0", grace_period_seconds=0) is False
    assert core.delete_namespaced_pod.call_args.kwargs["grace_period_seconds"] == 0


def test_has_crd() -> None:
    store, _, _, extensions = _store()
    assert store.has_crd("podmonitors.monitoring.coreos.com") is True

    extensions.read_custom_resource_definition.side_effect = ApiException(status=404)
    assert store.has_crd("podmonitors.monitoring.coreos.com") is False


def test_unsupported_kind_is_rejected() -> None:
    store, _, _, _ = _store()

    with pytest.raises(ValueError, match="unsupported kind"):
        store.get("Deployment", "default", "x")
