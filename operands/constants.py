"""
Constants for the GPU operand controller (labels, env names, paths, defaults).
"""

# Node labels
GPU_PRESENT_LABEL = "nvidia.com/gpu.present"
KERNEL_FULL_LABEL = "feature.node.kubernetes.io/kernel-version.full"
OS_RELEASE_ID_LABEL = "feature.node.kubernetes.io/system-os_release.ID"
OS_VERSION_ID_LABEL = "feature.node.kubernetes.io/system-os_release.VERSION_ID"
OSTREE_VERSION_LABEL = "feature.node.kubernetes.io/system-os_release.OSTREE_VERSION"

# Object labels used to find variants later
PRECOMPILED_LABEL = "nvidia.com/precompiled"
DTK_LABEL = "openshift.driver-toolkit"
DTK_RHCOS_LABEL = "openshift.driver-toolkit.rhcos"
DTK_IMAGE_MISSING_LABEL = "openshift.driver-toolkit.rhcos-image-missing"

# Label keys a user may never override on operand templates
PROTECTED_LABEL_KEYS = ("app", "app.kubernetes.io/part-of")

# Drift detection
FINGERPRINT_ANNOTATION = "nvidia.com/last-applied-hash"
KATA_CONFIG_HASH_ANNOTATION = "nvidia.com/kata-manager.last-applied-hash"
KATA_RUNTIME_CLASS_LABEL = "nvidia.com/kata-runtime-class"

# Readiness
CONTROLLER_REVISION_HASH_LABEL = "controller-revision-hash"

# Placeholders in bundled assets
FILLED_BY_OPERATOR = "FILLED BY THE OPERATOR"
RUNTIME_CLASS_PLACEHOLDER = "FILLED_BY_OPERATOR"

# Container runtimes
CONTAINERD = "containerd"
DOCKER = "docker"
CRIO = "crio"
SUPPORTED_RUNTIMES = (CONTAINERD, DOCKER, CRIO)

DEFAULT_RUNTIME_CLASS = "nvidia"

# Paths inside operand containers where runtime files are mounted
RUNTIME_CONFIG_TARGET_DIR = "/runtime/config-dir/"
RUNTIME_DROP_IN_TARGET_DIR = "/runtime/config-dir.d/"
RUNTIME_SOCKET_TARGET_DIR = "/runtime/sock-dir/"

# Host-side runtime defaults
DEFAULT_CONTAINERD_CONFIG_FILE = "/etc/containerd/config.toml"
DEFAULT_CONTAINERD_SOCKET_FILE = "/run/containerd/containerd.sock"
DEFAULT_CONTAINERD_DROP_IN_FILE = "/etc/containerd/conf.d/99-nvidia.toml"
DEFAULT_DOCKER_CONFIG_FILE = "/etc/docker/daemon.json"
DEFAULT_DOCKER_SOCKET_FILE = "/var/run/docker.sock"
DEFAULT_CRIO_CONFIG_FILE = "/etc/crio/crio.conf.d/99-nvidia.conf"
DEFAULT_CRIO_DROP_IN_FILE = "/etc/crio/crio.conf.d/99-nvidia.toml"

CRIO_HOOKS_HOST_PATH = "/usr/share/containers/oci/hooks.d"

DEFAULT_TOOLKIT_INSTALL_DIR = "/usr/local/nvidia"
DEFAULT_MPS_ROOT = "/run/nvidia/mps"
DEFAULT_KATA_ARTIFACTS_DIR = "/opt/nvidia-gpu-operator/artifacts/runtimeclasses"

# CDI annotation prefixes
CDI_ANNOTATION_PREFIX = "nvidia.cdi.k8s.io/"
OPENSHIFT_CDI_ANNOTATION_PREFIX = "cdi.k8s.io/"

# Well-known container and volume names in the bundled templates
DRIVER_CONTAINER = "nvidia-driver-ctr"
VGPU_MANAGER_CONTAINER = "nvidia-vgpu-manager-ctr"
DRIVER_MANAGER_INIT = "k8s-driver-manager"
DTK_CONTAINER = "openshift-driver-toolkit-ctr"
PEERMEM_CONTAINER = "nvidia-peermem"
GDS_CONTAINER = "nvidia-fs"
GDRCOPY_CONTAINER = "nvidia-gdrcopy"
MPS_CONTROL_DAEMON_CONTAINER = "mps-control-daemon-ctr"
MPS_CONTROL_DAEMON_MOUNTS_INIT = "mps-control-daemon-mounts"
CONFIG_MANAGER_INIT = "config-manager-init"
CONFIG_MANAGER_SIDECAR = "config-manager"
PLUGIN_CONFIG_MOUNT_PATH = "/available-configs"
PLUGIN_CONFIG_SHARED_VOLUME = "config"
PLUGIN_CONFIG_SHARED_PATH = "/config"
PLUGIN_CONFIG_FILE = "/config/config.yaml"
DTK_SHARED_VOLUME = "shared-nvidia-driver-toolkit"
DTK_SHARED_PATH = "/mnt/shared-nvidia-driver-toolkit"
LICENSING_VOLUME = "licensing-config"
KERNEL_MODULE_CONFIG_VOLUME = "kernel-module-config"
DCGM_METRICS_VOLUME = "metrics-config"
DCGM_METRICS_MOUNT_PATH = "/etc/dcgm-exporter/dcp-metrics-included.csv"
DCGM_METRICS_FILE = "dcgm-metrics.csv"
DCGM_REMOTE_HOSTENGINE = "nvidia-dcgm:5555"

# Default config maps shipped with the operator
DEFAULT_MIG_PARTED_CONFIG = "default-mig-parted-config"
DEFAULT_GPU_CLIENTS_CONFIG = "default-gpu-clients"
DEFAULT_VGPU_DEVICES_CONFIG = "default-vgpu-devices-config"
KATA_MANAGER_CONFIG = "nvidia-kata-manager-config"

# Sandbox workloads
WORKLOAD_CONTAINER = "container"
WORKLOAD_VM_PASSTHROUGH = "vm-passthrough"
WORKLOAD_VM_VGPU = "vm-vgpu"
SUPPORTED_WORKLOADS = (WORKLOAD_CONTAINER, WORKLOAD_VM_PASSTHROUGH, WORKLOAD_VM_VGPU)

# Host OS-release file surfaced into the operator pod
DEFAULT_OS_RELEASE_PATH = "/host-etc/os-release"

# Kubernetes servers up to this version only serve node.k8s.io/v1beta1
RUNTIME_CLASS_V1BETA1_MAX_VERSION = "1.20.0"
