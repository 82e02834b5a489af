"""
Declarative configuration for the GPU operand stack.

The configuration mirrors the ``spec`` of a ClusterPolicy custom resource:
one sub-spec per operand kind plus a few cluster-wide sections (operator,
daemonsets, MIG, CDI, sandbox workloads).  Parsing is split the same way as
the rest of our YAML-driven tooling: :func:`load_policy_file` reads the file,
:func:`parse_policy` turns the raw mapping into typed dataclasses.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, ClassVar, Protocol

import yaml

from operands.constants import (
    DEFAULT_KATA_ARTIFACTS_DIR,
    DEFAULT_MPS_ROOT,
    DEFAULT_OS_RELEASE_PATH,
    DEFAULT_RUNTIME_CLASS,
    DEFAULT_TOOLKIT_INSTALL_DIR,
    SUPPORTED_WORKLOADS,
    WORKLOAD_CONTAINER,
)
from operands.errors import ConfigurationError

PULL_POLICIES = ("Always", "Never", "IfNotPresent")


class HasImageSpec(Protocol):
    """Anything carrying container image coordinates."""

    image_env: ClassVar[str]
    repository: str
    image: str
    version: str
    image_pull_policy: str
    image_pull_secrets: list[str]


def image_path(spec: HasImageSpec) -> str:
    """Resolve the full image reference of a sub-spec.

    Falls back to the sub-spec's environment variable (e.g. ``DRIVER_IMAGE``)
    when the configuration carries no image coordinates at all.

    Raises:
        ConfigurationError: If neither the configuration nor the environment
            provide an image.
    """
    path = ""
    if not spec.repository and not spec.version:
        path = spec.image
    elif spec.version.startswith("sha256:"):
        path = f"{spec.repository}/{spec.image}@{spec.version}"
    else:
        path = f"{spec.repository}/{spec.image}:{spec.version}"

    if path:
        return path

    path = os.environ.get(spec.image_env, "")
    if not path:
        raise ConfigurationError(
            f"empty image path provided through both ClusterPolicy CR and ENV {spec.image_env}"
        )
    return path


def image_pull_policy(policy: str) -> str:
    """Normalise a pull policy; unknown or empty values become IfNotPresent."""
    if policy in PULL_POLICIES:
        return policy
    return "IfNotPresent"


# ---------------------------------------------------------------------------
# Sub-specs
# ---------------------------------------------------------------------------


@dataclass
class ComponentSpec:
    """Fields shared by every image-bearing operand sub-spec."""

    image_env: ClassVar[str] = ""

    enabled: bool = True
    repository: str = ""
    image: str = ""
    version: str = ""
    image_pull_policy: str = ""
    image_pull_secrets: list[str] = field(default_factory=list)
    # Kubernetes ResourceRequirements mapping; None keeps the template default
    resources: dict[str, Any] | None = None
    # Replaces the template's args when non-empty
    args: list[str] = field(default_factory=list)
    # List of {"name": ..., "value": ...}
    env: list[dict[str, str]] = field(default_factory=list)


@dataclass
class DriverManagerSpec(ComponentSpec):
    image_env: ClassVar[str] = "DRIVER_MANAGER_IMAGE"


@dataclass
class RDMASpec:
    enabled: bool = False
    use_host_mofed: bool = False


@dataclass
class LicensingConfig:
    config_map_name: str = ""
    nls_enabled: bool = False


@dataclass
class DriverSpec(ComponentSpec):
    image_env: ClassVar[str] = "DRIVER_IMAGE"

    use_precompiled: bool = False
    kernel_module_type: str = "auto"
    manager: DriverManagerSpec = field(default_factory=DriverManagerSpec)
    rdma: RDMASpec = field(default_factory=RDMASpec)
    licensing_config: LicensingConfig = field(default_factory=LicensingConfig)
    kernel_module_config_name: str = ""
    # Probe overrides keyed by probe name ("startupProbe", ...)
    probes: dict[str, dict[str, int]] = field(default_factory=dict)

    def open_kernel_modules_enabled(self) -> bool:
        return self.kernel_module_type == "open"

    def gpu_direct_rdma_enabled(self) -> bool:
        return self.rdma.enabled

    def use_host_mofed(self) -> bool:
        return self.rdma.enabled and self.rdma.use_host_mofed


@dataclass
class VGPUManagerSpec(ComponentSpec):
    image_env: ClassVar[str] = "VGPU_MANAGER_IMAGE"

    enabled: bool = False
    manager: DriverManagerSpec = field(default_factory=DriverManagerSpec)


@dataclass
class ToolkitSpec(ComponentSpec):
    image_env: ClassVar[str] = "CONTAINER_TOOLKIT_IMAGE"

    install_dir: str = DEFAULT_TOOLKIT_INSTALL_DIR


@dataclass
class PluginConfig:
    """Reference to a user ConfigMap holding device-plugin configurations."""

    name: str = ""
    default: str = ""


@dataclass
class DevicePluginSpec(ComponentSpec):
    image_env: ClassVar[str] = "DEVICE_PLUGIN_IMAGE"

    config: PluginConfig = field(default_factory=PluginConfig)
    mps_root: str = DEFAULT_MPS_ROOT


@dataclass
class SandboxDevicePluginSpec(ComponentSpec):
    image_env: ClassVar[str] = "SANDBOX_DEVICE_PLUGIN_IMAGE"

    enabled: bool = False


@dataclass
class ServiceMonitorConfig:
    enabled: bool = False
    interval: str = ""
    honor_labels: bool | None = None
    additional_labels: dict[str, str] = field(default_factory=dict)
    relabelings: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class DCGMExporterSpec(ComponentSpec):
    image_env: ClassVar[str] = "DCGM_EXPORTER_IMAGE"

    metrics_config_name: str = ""
    service_monitor: ServiceMonitorConfig = field(default_factory=ServiceMonitorConfig)


@dataclass
class DCGMSpec(ComponentSpec):
    image_env: ClassVar[str] = "DCGM_IMAGE"


@dataclass
class GFDSpec(ComponentSpec):
    image_env: ClassVar[str] = "GFD_IMAGE"


@dataclass
class MIGManagerSpec(ComponentSpec):
    image_env: ClassVar[str] = "MIG_MANAGER_IMAGE"

    config_name: str = ""
    gpu_clients_config_name: str = ""


@dataclass
class NodeStatusExporterSpec(ComponentSpec):
    image_env: ClassVar[str] = "VALIDATOR_IMAGE"

    enabled: bool = False


@dataclass
class ValidatorComponentSpec:
    env: list[dict[str, str]] = field(default_factory=list)


@dataclass
class ValidatorSpec(ComponentSpec):
    """Operator and sandbox validator settings; validators are always on."""

    image_env: ClassVar[str] = "VALIDATOR_IMAGE"

    plugin: ValidatorComponentSpec = field(default_factory=ValidatorComponentSpec)
    driver: ValidatorComponentSpec = field(default_factory=ValidatorComponentSpec)
    toolkit: ValidatorComponentSpec = field(default_factory=ValidatorComponentSpec)
    cuda: ValidatorComponentSpec = field(default_factory=ValidatorComponentSpec)
    vfio_pci: ValidatorComponentSpec = field(default_factory=ValidatorComponentSpec)
    vgpu_manager: ValidatorComponentSpec = field(default_factory=ValidatorComponentSpec)
    vgpu_devices: ValidatorComponentSpec = field(default_factory=ValidatorComponentSpec)


@dataclass
class VGPUDeviceManagerSpec(ComponentSpec):
    image_env: ClassVar[str] = "VGPU_DEVICE_MANAGER_IMAGE"

    enabled: bool = False
    config_name: str = ""
    config_default: str = ""


@dataclass
class VFIOManagerSpec(ComponentSpec):
    image_env: ClassVar[str] = "VFIO_MANAGER_IMAGE"

    enabled: bool = False
    manager: DriverManagerSpec = field(default_factory=DriverManagerSpec)


@dataclass
class KataManagerSpec(ComponentSpec):
    image_env: ClassVar[str] = "KATA_MANAGER_IMAGE"

    enabled: bool = False
    # Free-form kata-manager configuration (artifactsDir, runtimeClasses)
    config: dict[str, Any] = field(default_factory=dict)

    def artifacts_dir(self) -> str:
        return self.config.get("artifactsDir") or DEFAULT_KATA_ARTIFACTS_DIR

    def runtime_classes(self) -> list[dict[str, Any]]:
        return list(self.config.get("runtimeClasses") or [])


@dataclass
class CCManagerSpec(ComponentSpec):
    image_env: ClassVar[str] = "CC_MANAGER_IMAGE"

    enabled: bool = False
    default_mode: str = ""


@dataclass
class GDSSpec(ComponentSpec):
    image_env: ClassVar[str] = "GDS_IMAGE"

    enabled: bool = False


@dataclass
class GDRCopySpec(ComponentSpec):
    image_env: ClassVar[str] = "GDRCOPY_IMAGE"

    enabled: bool = False


# ---------------------------------------------------------------------------
# Cluster-wide sections
# ---------------------------------------------------------------------------


@dataclass
class OperatorSpec:
    default_runtime: str = "containerd"
    runtime_class: str = DEFAULT_RUNTIME_CLASS
    use_ocp_driver_toolkit: bool = True


@dataclass
class DaemonsetsSpec:
    """Settings applied to every operand DaemonSet."""

    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    priority_class_name: str = ""
    tolerations: list[dict[str, Any]] = field(default_factory=list)
    update_strategy: str = "RollingUpdate"
    # "N" or "N%"; empty keeps the template default
    max_unavailable: str = ""


@dataclass
class MIGSpec:
    strategy: str = ""


@dataclass
class CDIConfigSpec:
    enabled: bool = False
    default: bool = False


@dataclass
class SandboxWorkloadsSpec:
    enabled: bool = False
    default_workload: str = WORKLOAD_CONTAINER


@dataclass
class PolicySpec:
    """The whole declarative configuration for one reconciliation pass."""

    operator: OperatorSpec = field(default_factory=OperatorSpec)
    daemonsets: DaemonsetsSpec = field(default_factory=DaemonsetsSpec)
    driver: DriverSpec = field(default_factory=DriverSpec)
    toolkit: ToolkitSpec = field(default_factory=ToolkitSpec)
    device_plugin: DevicePluginSpec = field(default_factory=DevicePluginSpec)
    dcgm_exporter: DCGMExporterSpec = field(default_factory=DCGMExporterSpec)
    dcgm: DCGMSpec = field(default_factory=DCGMSpec)
    gfd: GFDSpec = field(default_factory=GFDSpec)
    mig: MIGSpec = field(default_factory=MIGSpec)
    mig_manager: MIGManagerSpec = field(default_factory=MIGManagerSpec)
    node_status_exporter: NodeStatusExporterSpec = field(default_factory=NodeStatusExporterSpec)
    validator: ValidatorSpec = field(default_factory=ValidatorSpec)
    vgpu_manager: VGPUManagerSpec = field(default_factory=VGPUManagerSpec)
    vgpu_device_manager: VGPUDeviceManagerSpec = field(default_factory=VGPUDeviceManagerSpec)
    vfio_manager: VFIOManagerSpec = field(default_factory=VFIOManagerSpec)
    sandbox_device_plugin: SandboxDevicePluginSpec = field(default_factory=SandboxDevicePluginSpec)
    sandbox_workloads: SandboxWorkloadsSpec = field(default_factory=SandboxWorkloadsSpec)
    kata_manager: KataManagerSpec = field(default_factory=KataManagerSpec)
    cc_manager: CCManagerSpec = field(default_factory=CCManagerSpec)
    gds: GDSSpec = field(default_factory=GDSSpec)
    gdrcopy: GDRCopySpec = field(default_factory=GDRCopySpec)
    cdi: CDIConfigSpec = field(default_factory=CDIConfigSpec)

    def default_workload(self) -> str:
        """Default sandbox workload, falling back to plain containers."""
        workload = self.sandbox_workloads.default_workload
        if workload in SUPPORTED_WORKLOADS:
            return workload
        return WORKLOAD_CONTAINER


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _mapping(raw: Any, key: str) -> dict[str, Any]:
    value = (raw or {}).get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"'{key}' must be a mapping, got {type(value).__name__}")
    return value


def _common(raw: dict[str, Any]) -> dict[str, Any]:
    """Keyword arguments for the :class:`ComponentSpec` fields present in *raw*."""
    kwargs: dict[str, Any] = {
        "repository": raw.get("repository") or "",
        "image": raw.get("image") or "",
        "version": str(raw.get("version") or ""),
        "image_pull_policy": raw.get("imagePullPolicy") or "",
        "image_pull_secrets": list(raw.get("imagePullSecrets") or []),
        "resources": raw.get("resources") or None,
        "args": [str(a) for a in raw.get("args") or []],
        "env": _env_list(raw.get("env")),
    }
    if raw.get("enabled") is not None:
        kwargs["enabled"] = bool(raw["enabled"])
    return kwargs


def _env_list(raw: Any) -> list[dict[str, str]]:
    env = []
    for item in raw or []:
        if "name" not in item:
            raise ConfigurationError(f"env entry without a name: {item}")
        env.append({"name": item["name"], "value": str(item.get("value", ""))})
    return env


def _validator_component(raw: dict[str, Any], key: str) -> ValidatorComponentSpec:
    return ValidatorComponentSpec(env=_env_list(_mapping(raw, key).get("env")))


def _parse_driver(raw: dict[str, Any]) -> DriverSpec:
    rdma = _mapping(raw, "rdma")
    licensing = _mapping(raw, "licensingConfig")
    kernel_module_type = raw.get("kernelModuleType") or "auto"
    if raw.get("useOpenKernelModules"):
        kernel_module_type = "open"
    probes = {
        name: dict(_mapping(raw, name))
        for name in ("startupProbe", "livenessProbe", "readinessProbe")
        if _mapping(raw, name)
    }
    return DriverSpec(
        **_common(raw),
        use_precompiled=bool(raw.get("usePrecompiled", False)),
        kernel_module_type=kernel_module_type,
        manager=DriverManagerSpec(**_common(_mapping(raw, "manager"))),
        rdma=RDMASpec(
            enabled=bool(rdma.get("enabled", False)),
            use_host_mofed=bool(rdma.get("useHostMofed", False)),
        ),
        licensing_config=LicensingConfig(
            config_map_name=licensing.get("configMapName") or "",
            nls_enabled=bool(licensing.get("nlsEnabled", False)),
        ),
        kernel_module_config_name=_mapping(raw, "kernelModuleConfig").get("name") or "",
        probes=probes,
    )


def parse_policy(raw_policy: dict[str, Any]) -> PolicySpec:
    """
    Parse a raw ClusterPolicy document (or its bare ``spec``) into a PolicySpec.

    Args:
        raw_policy: Mapping loaded from YAML or read from the cluster

    Returns:
        PolicySpec with defaults filled in for every absent section

    Raises:
        ConfigurationError: If a section has the wrong shape
    """
    raw = raw_policy.get("spec", raw_policy) if raw_policy else {}
    raw = raw or {}

    operator = _mapping(raw, "operator")
    daemonsets = _mapping(raw, "daemonsets")
    rolling_update = _mapping(daemonsets, "rollingUpdate")
    device_plugin = _mapping(raw, "devicePlugin")
    dcgm_exporter = _mapping(raw, "dcgmExporter")
    service_monitor = _mapping(dcgm_exporter, "serviceMonitor")
    mig_manager = _mapping(raw, "migManager")
    validator = _mapping(raw, "validator")
    vgpu_manager = _mapping(raw, "vgpuManager")
    vgpu_device_manager = _mapping(raw, "vgpuDeviceManager")
    vfio_manager = _mapping(raw, "vfioManager")
    sandbox_workloads = _mapping(raw, "sandboxWorkloads")
    kata_manager = _mapping(raw, "kataManager")
    cc_manager = _mapping(raw, "ccManager")
    cdi = _mapping(raw, "cdi")

    max_unavailable = rolling_update.get("maxUnavailable")
    return PolicySpec(
        operator=OperatorSpec(
            default_runtime=operator.get("defaultRuntime") or "containerd",
            runtime_class=operator.get("runtimeClass") or DEFAULT_RUNTIME_CLASS,
            use_ocp_driver_toolkit=bool(operator.get("use_ocp_driver_toolkit", True)),
        ),
        daemonsets=DaemonsetsSpec(
            labels=dict(daemonsets.get("labels") or {}),
            annotations=dict(daemonsets.get("annotations") or {}),
            priority_class_name=daemonsets.get("priorityClassName") or "",
            tolerations=list(daemonsets.get("tolerations") or []),
            update_strategy=daemonsets.get("updateStrategy") or "RollingUpdate",
            max_unavailable="" if max_unavailable is None else str(max_unavailable),
        ),
        driver=_parse_driver(_mapping(raw, "driver")),
        toolkit=ToolkitSpec(
            **_common(_mapping(raw, "toolkit")),
            install_dir=_mapping(raw, "toolkit").get("installDir") or DEFAULT_TOOLKIT_INSTALL_DIR,
        ),
        device_plugin=DevicePluginSpec(
            **_common(device_plugin),
            config=PluginConfig(
                name=_mapping(device_plugin, "config").get("name") or "",
                default=_mapping(device_plugin, "config").get("default") or "",
            ),
            mps_root=_mapping(device_plugin, "mps").get("root") or DEFAULT_MPS_ROOT,
        ),
        dcgm_exporter=DCGMExporterSpec(
            **_common(dcgm_exporter),
            metrics_config_name=_mapping(dcgm_exporter, "config").get("name") or "",
            service_monitor=ServiceMonitorConfig(
                enabled=bool(service_monitor.get("enabled", False)),
                interval=service_monitor.get("interval") or "",
                honor_labels=service_monitor.get("honorLabels"),
                additional_labels=dict(service_monitor.get("additionalLabels") or {}),
                relabelings=list(service_monitor.get("relabelings") or []),
            ),
        ),
        dcgm=DCGMSpec(**_common(_mapping(raw, "dcgm"))),
        gfd=GFDSpec(**_common(_mapping(raw, "gfd"))),
        mig=MIGSpec(strategy=_mapping(raw, "mig").get("strategy") or ""),
        mig_manager=MIGManagerSpec(
            **_common(mig_manager),
            config_name=_mapping(mig_manager, "config").get("name") or "",
            gpu_clients_config_name=_mapping(mig_manager, "gpuClientsConfig").get("name") or "",
        ),
        node_status_exporter=NodeStatusExporterSpec(**_common(_mapping(raw, "nodeStatusExporter"))),
        validator=ValidatorSpec(
            **_common(validator),
            plugin=_validator_component(validator, "plugin"),
            driver=_validator_component(validator, "driver"),
            toolkit=_validator_component(validator, "toolkit"),
            cuda=_validator_component(validator, "cuda"),
            vfio_pci=_validator_component(validator, "vfioPCI"),
            vgpu_manager=_validator_component(validator, "vgpuManager"),
            vgpu_devices=_validator_component(validator, "vgpuDevices"),
        ),
        vgpu_manager=VGPUManagerSpec(
            **_common(vgpu_manager),
            manager=DriverManagerSpec(**_common(_mapping(vgpu_manager, "driverManager"))),
        ),
        vgpu_device_manager=VGPUDeviceManagerSpec(
            **_common(vgpu_device_manager),
            config_name=_mapping(vgpu_device_manager, "config").get("name") or "",
            config_default=_mapping(vgpu_device_manager, "config").get("default") or "",
        ),
        vfio_manager=VFIOManagerSpec(
            **_common(vfio_manager),
            manager=DriverManagerSpec(**_common(_mapping(vfio_manager, "driverManager"))),
        ),
        sandbox_device_plugin=SandboxDevicePluginSpec(**_common(_mapping(raw, "sandboxDevicePlugin"))),
        sandbox_workloads=SandboxWorkloadsSpec(
            enabled=bool(sandbox_workloads.get("enabled", False)),
            default_workload=sandbox_workloads.get("defaultWorkload") or WORKLOAD_CONTAINER,
        ),
        kata_manager=KataManagerSpec(
            **_common(kata_manager),
            config=dict(kata_manager.get("config") or {}),
        ),
        cc_manager=CCManagerSpec(
            **_common(cc_manager),
            default_mode=cc_manager.get("defaultMode") or "",
        ),
        gds=GDSSpec(**_common(_mapping(raw, "gds"))),
        gdrcopy=GDRCopySpec(**_common(_mapping(raw, "gdrcopy"))),
        cdi=CDIConfigSpec(
            enabled=bool(cdi.get("enabled", False)),
            default=bool(cdi.get("default", False)),
        ),
    )


def load_policy_file(policy_path: str | Path) -> dict[str, Any]:
    """
    Load a ClusterPolicy document from a YAML file.

    Raises:
        FileNotFoundError: If the policy file doesn't exist
        yaml.YAMLError: If the file contains invalid YAML
    """
    policy_path = Path(policy_path).expanduser()

    if not policy_path.exists():
        raise FileNotFoundError(f"Policy file not found: {policy_path}")

    with open(policy_path) as f:
        policy = yaml.safe_load(f)

    return policy or {}


def load_policy(policy_path: str | Path) -> PolicySpec:
    """Load and parse a ClusterPolicy YAML file."""
    return parse_policy(load_policy_file(policy_path))


class Settings:
    """Operator process settings taken from the environment."""

    namespace: str
    assets_dir: str | None
    os_release_path: str
    reconcile_interval_sec: int

    def __init__(self):
        self.namespace = os.getenv("OPERATOR_NAMESPACE", "").strip()
        self.assets_dir = os.getenv("OPERAND_ASSETS_DIR") or None
        self.os_release_path = os.getenv("HOST_OS_RELEASE_PATH", DEFAULT_OS_RELEASE_PATH)
        self.reconcile_interval_sec = int(os.getenv("RECONCILE_INTERVAL_SECONDS", 300))

        if not self.namespace:
            raise ValueError("OPERATOR_NAMESPACE must be specified")
        if self.reconcile_interval_sec <= 0:
            raise ValueError("RECONCILE_INTERVAL_SECONDS must be a positive integer")
