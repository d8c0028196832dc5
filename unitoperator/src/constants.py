from __future__ import annotations

API_GROUP = "upm.syntropycloud.io"
API_VERSION = "v1alpha2"
GROUP_VERSION = f"{API_GROUP}/{API_VERSION}"

UNIT_KIND = "Unit"
UNITSET_KIND = "UnitSet"
UNIT_PLURAL = "units"
UNITSET_PLURAL = "unitsets"

# Labels
LABEL_UNITSET_NAME = "unit-operator/unitset.name"
LABEL_UNIT_NAME = "unit-operator/unit.name"
LABEL_UNIT_SN = "unit-operator/unit.sn"
LABEL_OWNER = "owner"

# Annotations
ANNOTATION_MAINTENANCE = "unit-operator/maintenance"
ANNOTATION_FORCE_DELETE = "unit-operator/force-delete"
ANNOTATION_MAIN_CONTAINER_NAME = "kubectl.kubernetes.io/default-container"
ANNOTATION_MAIN_CONTAINER_VERSION = "kubectl.kubernetes.io/default-container-version"
ANNOTATION_NODE_NAME_MAP = "unit-operator/unit.node-name.map"
ANNOTATION_UNIT_SERVICE_TYPE = "unit-operator/unit-service.type"
ANNOTATION_EXTERNAL_SERVICE_TYPE = "unit-operator/external-service.type"
ANNOTATION_CONFIG_TEMPLATE_VERSION = "unit-operator/config-template.version"
ANNOTATION_CONFIG_VALUE_VERSION = "unit-operator/config-value.version"
ANNOTATION_POD_TEMPLATE_HASH = "unit-operator/pod-template.hash"
ANNOTATION_NODEPORT_PREFIX = "unit-operator/unit-service."
ANNOTATION_NODEPORT_SUFFIX = ".nodeport.map"

# Legacy spelling of an explicitly unpinned node-name map entry.
LEGACY_UNPINNED = "noneSet"

# Finalizers
FINALIZER_UNIT_DELETE = "unit-operator/unit-delete"
FINALIZER_CONFIGMAP_DELETE = "unit-operator/configmap-delete"
FINALIZER_POD_DELETE = "unit-operator/pod-delete"
FINALIZER_PVC_DELETE = "unit-operator/pvc-delete"

# Unit phases
PHASE_RUNNING = "Running"
PHASE_READY = "Ready"
PHASE_SUCCEEDED = "Succeeded"
PHASE_FAILED = "Failed"

CONDITION_TRUE = "True"
CONDITION_FALSE = "False"

# Sidecar agent
AGENT_CONTAINER_NAME = "unit-agent"
AGENT_DEFAULT_PORT = 2214
PROCESS_RUNNING = "running"
PROCESS_STARTING = "starting"
PROCESS_UNKNOWN = "unknown"

# Pod wiring
CERTIFICATE_VOLUME_NAME = "certificate"
CERTIFICATE_MOUNT_PATH = "/CERT_MOUNT"
NODE_GROUP_TOPOLOGY_KEY = "upm.api/node-group"
HOSTNAME_TOPOLOGY_KEY = "kubernetes.io/hostname"

# cert-manager
CERT_MANAGER_GROUP = "cert-manager.io"
CERT_MANAGER_VERSION = "v1"
CERTIFICATE_DURATION = "87600h"
CERTIFICATE_RENEW_BEFORE = "2160h"

# prometheus-operator
MONITORING_GROUP = "monitoring.coreos.com"
MONITORING_VERSION = "v1"
POD_MONITOR_CRD = "podmonitors.monitoring.coreos.com"
EXPORTER_PORT_NAME = "exporter"

ROLLING_UPDATE = "RollingUpdate"

DEFAULT_MANAGER_NAMESPACE = "upm-system"
EVENT_SOURCE_COMPONENT = "unit-operator"
