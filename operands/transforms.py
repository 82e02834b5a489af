"""
Per-operand DaemonSet transforms.

``transform_daemonset`` turns a bundled base DaemonSet into the derived
object for the current configuration and cluster facts:

1. Common DaemonSet settings (update strategy, priority class, tolerations)
2. The operand-specific transform, looked up by base DaemonSet name
3. User labels and annotations on the pod template

The base template is deep-copied first and never modified.  A DaemonSet
name without a registered transform is logged and returned unchanged.
"""

from __future__ import annotations

import copy
import dataclasses
import logging
import posixpath
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Optional

import yaml

from operands.config import (
    ComponentSpec,
    DriverManagerSpec,
    DriverSpec,
    image_path,
    image_pull_policy,
)
from operands.constants import (
    CDI_ANNOTATION_PREFIX,
    CONFIG_MANAGER_INIT,
    CONFIG_MANAGER_SIDECAR,
    CONTAINERD,
    CRIO,
    CRIO_HOOKS_HOST_PATH,
    DCGM_METRICS_FILE,
    DCGM_METRICS_MOUNT_PATH,
    DCGM_METRICS_VOLUME,
    DCGM_REMOTE_HOSTENGINE,
    DEFAULT_GPU_CLIENTS_CONFIG,
    DEFAULT_MIG_PARTED_CONFIG,
    DEFAULT_MPS_ROOT,
    DEFAULT_TOOLKIT_INSTALL_DIR,
    DEFAULT_VGPU_DEVICES_CONFIG,
    DRIVER_CONTAINER,
    DRIVER_MANAGER_INIT,
    DTK_CONTAINER,
    DTK_IMAGE_MISSING_LABEL,
    DTK_LABEL,
    DTK_RHCOS_LABEL,
    DTK_SHARED_PATH,
    DTK_SHARED_VOLUME,
    GDRCOPY_CONTAINER,
    GDS_CONTAINER,
    KATA_CONFIG_HASH_ANNOTATION,
    KERNEL_FULL_LABEL,
    LICENSING_VOLUME,
    MPS_CONTROL_DAEMON_CONTAINER,
    MPS_CONTROL_DAEMON_MOUNTS_INIT,
    OPENSHIFT_CDI_ANNOTATION_PREFIX,
    OSTREE_VERSION_LABEL,
    PEERMEM_CONTAINER,
    PLUGIN_CONFIG_FILE,
    PLUGIN_CONFIG_MOUNT_PATH,
    PLUGIN_CONFIG_SHARED_PATH,
    PLUGIN_CONFIG_SHARED_VOLUME,
    PRECOMPILED_LABEL,
    PROTECTED_LABEL_KEYS,
    VGPU_MANAGER_CONTAINER,
)
from operands.errors import ConfigurationError, OperandError
from operands.fingerprint import content_hash
from operands.podspec import (
    add_pull_secrets,
    add_volume,
    add_volume_mount,
    apply_component,
    containers,
    find_container,
    find_volume,
    get_env,
    host_path_volume,
    init_containers,
    pod_spec,
    pod_template,
    remove_container,
    remove_containers_matching,
    require_container,
    set_host_path,
    set_image,
    set_mount_path,
    set_resources,
    set_runtime_class,
    upsert_env,
    upsert_envs,
)
from operands.runtime import (
    pod_runtime_class,
    runtime_class_name,
    runtime_config_file,
    runtime_socket_file,
    transform_for_runtime,
)
from operands.validator import (
    OPERATOR_VALIDATOR_COMPONENTS,
    SANDBOX_VALIDATOR_COMPONENTS,
    transform_validation_init_containers,
    transform_validator_component,
)

if TYPE_CHECKING:
    from operands.config import PolicySpec
    from operands.facts import ClusterFacts

logger = logging.getLogger(__name__)

Obj = dict[str, Any]

DRIVER_DAEMONSET_PREFIX = "nvidia-driver-daemonset"

VGPU_LICENSING_FILE = "gridd.conf"
VGPU_LICENSING_MOUNT_PATH = "/drivers/gridd.conf"
NLS_TOKEN_FILE = "client_configuration_token.tok"
NLS_TOKEN_MOUNT_PATH = "/drivers/ClientConfigToken/client_configuration_token.tok"
KERNEL_MODULE_CONFIG_DIR = "/drivers"
PROBE_FIELDS = ("initialDelaySeconds", "timeoutSeconds", "failureThreshold", "successThreshold", "periodSeconds")


class OperandKind(str, Enum):
    """Operand DaemonSets with a transform, keyed by their base name."""

    DRIVER = "nvidia-driver-daemonset"
    VGPU_MANAGER = "nvidia-vgpu-manager-daemonset"
    VGPU_DEVICE_MANAGER = "nvidia-vgpu-device-manager"
    VFIO_MANAGER = "nvidia-vfio-manager"
    TOOLKIT = "nvidia-container-toolkit-daemonset"
    DEVICE_PLUGIN = "nvidia-device-plugin-daemonset"
    MPS_CONTROL_DAEMON = "nvidia-device-plugin-mps-control-daemon"
    SANDBOX_DEVICE_PLUGIN = "nvidia-sandbox-device-plugin-daemonset"
    DCGM = "nvidia-dcgm"
    DCGM_EXPORTER = "nvidia-dcgm-exporter"
    NODE_STATUS_EXPORTER = "nvidia-node-status-exporter"
    GFD = "gpu-feature-discovery"
    MIG_MANAGER = "nvidia-mig-manager"
    VALIDATOR = "nvidia-operator-validator"
    SANDBOX_VALIDATOR = "nvidia-sandbox-validator"
    KATA_MANAGER = "nvidia-kata-manager"
    CC_MANAGER = "nvidia-cc-manager"

    @classmethod
    def lookup(cls, name: str) -> Optional["OperandKind"]:
        try:
            return cls(name)
        except ValueError:
            return None


@dataclass
class RenderContext:
    """Everything a transform may read besides the object itself."""

    policy: PolicySpec
    facts: ClusterFacts
    namespace: str = ""
    # Variant being rendered: kernel (precompiled drivers) or OS-image revision
    kernel: str = ""
    rhcos: str = ""
    # Returns the keys of a ConfigMap in the operator namespace
    config_map_keys: Optional[Callable[[str], list[str]]] = None

    def for_kernel(self, kernel: str) -> "RenderContext":
        return dataclasses.replace(self, kernel=kernel, rhcos="")

    def for_rhcos(self, rhcos: str) -> "RenderContext":
        return dataclasses.replace(self, kernel="", rhcos=rhcos)

    def target_kernel(self) -> str:
        return self.kernel or self.facts.primary_kernel

    def os_tag(self) -> str:
        if self.kernel:
            return self.facts.kernel_versions.get(self.kernel, "")
        return self.facts.primary_os_tag

    def lookup_config_map_keys(self, name: str) -> list[str]:
        if self.config_map_keys is None:
            raise OperandError(f"cannot read ConfigMap {name}: no cluster access")
        return self.config_map_keys(name)


# ---------------------------------------------------------------------------
# Shared steps
# ---------------------------------------------------------------------------


def sanitize_kernel_version(kernel: str) -> str:
    """Make a kernel version usable inside an object name.

    Architecture strings and trailing dots are dropped, ``_`` becomes ``.``.
    """
    for arch in ("x86_64_64k", "aarch64_64k", "x86_64", "aarch64"):
        kernel = kernel.replace(arch, "")
    return kernel.replace("_", ".").rstrip(".").lower()


def resolve_driver_image(spec: ComponentSpec, ctx: RenderContext) -> str:
    """
    Image of a driver-like container for the kernel/OS being rendered.

    Precompiled drivers carry the kernel in their tag.  Every other image
    gets the OS tag appended unless it is pinned by digest.

    Raises:
        ConfigurationError: If no kernel version is known or the image
            cannot be resolved
    """
    kernel = ctx.target_kernel()
    if not kernel:
        raise ConfigurationError("Could not find kernel full version")

    if isinstance(spec, DriverSpec) and spec.use_precompiled:
        if not spec.repository and not spec.version:
            if not spec.image:
                raise ConfigurationError(
                    "Unable to resolve driver image path for pre-compiled drivers, driver.repository, "
                    "driver.image and driver.version have to be specified in the ClusterPolicy"
                )
            image = f"{spec.image}-{kernel}"
        else:
            image = f"{spec.repository}/{spec.image}:{spec.version}-{kernel}"
    else:
        image = image_path(spec)

    os_tag = ctx.os_tag()
    if "sha256:" not in image and os_tag:
        image = f"{image}-{os_tag}"
    return image


def apply_update_strategy(obj: Obj, policy: PolicySpec) -> None:
    """
    Raises:
        ConfigurationError: If maxUnavailable is neither ``N`` nor ``N%``
    """
    daemonsets = policy.daemonsets
    spec = obj.setdefault("spec", {})
    if daemonsets.update_strategy == "OnDelete":
        spec["updateStrategy"] = {"type": "OnDelete"}
        return
    if not daemonsets.max_unavailable:
        return
    if obj["metadata"]["name"].startswith(DRIVER_DAEMONSET_PREFIX):
        # driver pods are never rolled automatically
        return

    value: int | str = daemonsets.max_unavailable
    if not daemonsets.max_unavailable.endswith("%"):
        try:
            value = int(daemonsets.max_unavailable)
        except ValueError as exc:
            raise ConfigurationError(f"failed to apply rolling update config: {exc}") from exc
    spec["updateStrategy"] = {"type": "RollingUpdate", "rollingUpdate": {"maxUnavailable": value}}


def apply_common_daemonset_config(obj: Obj, policy: PolicySpec) -> None:
    apply_update_strategy(obj, policy)
    if policy.daemonsets.priority_class_name:
        pod_spec(obj)["priorityClassName"] = policy.daemonsets.priority_class_name
    if policy.daemonsets.tolerations:
        pod_spec(obj)["tolerations"] = copy.deepcopy(policy.daemonsets.tolerations)


def apply_common_daemonset_metadata(obj: Obj, policy: PolicySpec) -> None:
    """Copy user labels/annotations onto the pod template."""
    metadata = pod_template(obj)["metadata"]
    if policy.daemonsets.labels:
        labels = metadata.setdefault("labels", {})
        for key, value in policy.daemonsets.labels.items():
            if key in PROTECTED_LABEL_KEYS:
                continue
            labels[key] = value
    if policy.daemonsets.annotations:
        metadata.setdefault("annotations", {}).update(policy.daemonsets.annotations)


def apply_mig_configuration(container: Obj, strategy: str) -> None:
    if not strategy:
        # let the plugin decide per node
        upsert_env(container, "NVIDIA_MIG_MONITOR_DEVICES", "all")
        return
    upsert_env(container, "MIG_STRATEGY", strategy)
    if strategy != "none":
        upsert_env(container, "NVIDIA_MIG_MONITOR_DEVICES", "all")


def _set_pod_runtime_class(obj: Obj, ctx: RenderContext) -> None:
    set_runtime_class(obj, pod_runtime_class(ctx.policy, ctx.facts))


def _config_map_volume(name: str, items: Optional[list[dict[str, str]]] = None, volume_name: str = "") -> Obj:
    source: Obj = {"name": name}
    if items:
        source["items"] = items
    return {"name": volume_name or name, "configMap": source}


def _mount_config_map_keys(container: Obj, ctx: RenderContext, name: str, directory: str) -> list[dict[str, str]]:
    """Mount every key of ConfigMap *name* as a file under *directory*."""
    keys = ctx.lookup_config_map_keys(name)
    for key in keys:
        add_volume_mount(container, {
            "name": name,
            "mountPath": posixpath.join(directory, key),
            "subPath": key,
            "readOnly": True,
        })
    return [{"key": key, "path": key} for key in keys]


def _openshift_version_env(container: Obj, ctx: RenderContext) -> None:
    version = ctx.facts.os_release.get("OPENSHIFT_VERSION")
    if version:
        upsert_env(container, "OPENSHIFT_VERSION", version)


# ---------------------------------------------------------------------------
# Driver and its sidecars
# ---------------------------------------------------------------------------


def _transform_driver_manager(obj: Obj, manager: DriverManagerSpec, driver: Optional[DriverSpec] = None) -> None:
    container = find_container(init_containers(obj), DRIVER_MANAGER_INIT)
    if container is None:
        raise ConfigurationError(f"failed to find {DRIVER_MANAGER_INIT} initContainer in spec")

    container["image"] = image_path(manager)
    if manager.image_pull_policy:
        container["imagePullPolicy"] = image_pull_policy(manager.image_pull_policy)
    if driver is not None and driver.gpu_direct_rdma_enabled():
        upsert_env(container, "GPU_DIRECT_RDMA_ENABLED", "true")
        if driver.use_host_mofed():
            upsert_env(container, "USE_HOST_MOFED", "true")
    upsert_envs(container, manager.env)
    add_pull_secrets(obj, manager.image_pull_secrets)


def _apply_probe_overrides(container: Obj, driver: DriverSpec) -> None:
    for probe_name, overrides in driver.probes.items():
        probe = container.get(probe_name)
        if probe is None:
            logger.warning("Probe %s is not defined on %s, ignoring overrides", probe_name, container["name"])
            continue
        for key in PROBE_FIELDS:
            if not overrides.get(key):
                continue
            try:
                probe[key] = int(overrides[key])
            except (TypeError, ValueError) as exc:
                raise ConfigurationError(f"invalid driver {probe_name}.{key}: {overrides[key]!r}") from exc


def _apply_licensing_config(obj: Obj, container: Obj, driver: DriverSpec) -> None:
    licensing = driver.licensing_config
    if not licensing.config_map_name:
        return
    add_volume_mount(container, {
        "name": LICENSING_VOLUME,
        "readOnly": True,
        "mountPath": VGPU_LICENSING_MOUNT_PATH,
        "subPath": VGPU_LICENSING_FILE,
    })
    items = [{"key": VGPU_LICENSING_FILE, "path": VGPU_LICENSING_FILE}]
    if licensing.nls_enabled:
        items.append({"key": NLS_TOKEN_FILE, "path": NLS_TOKEN_FILE})
        add_volume_mount(container, {
            "name": LICENSING_VOLUME,
            "readOnly": True,
            "mountPath": NLS_TOKEN_MOUNT_PATH,
            "subPath": NLS_TOKEN_FILE,
        })
    add_volume(obj, _config_map_volume(licensing.config_map_name, items, volume_name=LICENSING_VOLUME))


def _transform_driver_container(obj: Obj, ctx: RenderContext) -> Obj:
    driver = ctx.policy.driver
    container = require_container(
        obj, DRIVER_CONTAINER,
        f"driver container ({DRIVER_CONTAINER}) is missing from the driver daemonset manifest",
    )
    set_image(container, driver, resolve_driver_image(driver, ctx))
    add_pull_secrets(obj, driver.image_pull_secrets)
    set_resources(container, driver)
    if driver.args:
        container["args"] = list(driver.args)
    upsert_envs(container, driver.env)
    if driver.open_kernel_modules_enabled():
        upsert_env(container, "OPEN_KERNEL_MODULES_ENABLED", "true")
    _apply_probe_overrides(container, driver)

    if driver.gpu_direct_rdma_enabled():
        upsert_env(container, "GPU_DIRECT_RDMA_ENABLED", "true")
        if driver.use_host_mofed():
            # build nvidia-peermem against the MOFED sources installed on the host
            set_host_path(obj, "mlnx-ofed-usr-src", "/usr/src")
            upsert_env(container, "USE_HOST_MOFED", "true")

    _apply_licensing_config(obj, container, driver)

    if driver.kernel_module_config_name:
        name = driver.kernel_module_config_name
        items = _mount_config_map_keys(container, ctx, name, KERNEL_MODULE_CONFIG_DIR)
        add_volume(obj, _config_map_volume(name, items))

    if not driver.use_precompiled:
        _openshift_version_env(container, ctx)
    return container


def _transform_peermem(obj: Obj, ctx: RenderContext) -> None:
    driver = ctx.policy.driver
    if not driver.gpu_direct_rdma_enabled():
        remove_containers_matching(obj, PEERMEM_CONTAINER)
        return
    for container in containers(obj):
        if PEERMEM_CONTAINER not in container["name"]:
            continue
        container["image"] = resolve_driver_image(driver, ctx)
        if driver.image_pull_policy:
            container["imagePullPolicy"] = image_pull_policy(driver.image_pull_policy)
        if driver.use_host_mofed():
            upsert_env(container, "USE_HOST_MOFED", "true")
        if driver.kernel_module_config_name:
            _mount_config_map_keys(container, ctx, driver.kernel_module_config_name, KERNEL_MODULE_CONFIG_DIR)


def _transform_driver_sidecar(
    obj: Obj,
    ctx: RenderContext,
    spec: ComponentSpec,
    fragment: str,
    prefix: bool,
    feature: str,
) -> None:
    """GDS and GDRCopy sidecars: dropped when disabled, driver-tagged otherwise."""
    if not spec.enabled:
        remove_containers_matching(obj, fragment, prefix=prefix)
        return
    for container in containers(obj):
        name = container["name"]
        if not (name.startswith(fragment) if prefix else fragment in name):
            continue
        if ctx.policy.driver.use_precompiled:
            raise ConfigurationError(f"{feature} is not supported along with pre-compiled NVIDIA drivers")
        container["image"] = resolve_driver_image(spec, ctx)
        if spec.image_pull_policy:
            container["imagePullPolicy"] = image_pull_policy(spec.image_pull_policy)
        add_pull_secrets(obj, spec.image_pull_secrets)
        upsert_envs(container, spec.env)


def _transform_driver_toolkit(obj: Obj, ctx: RenderContext, main: Obj) -> None:
    """Wire the OpenShift driver-toolkit sidecar, or drop it."""
    if not ctx.rhcos:
        remove_container(obj, DTK_CONTAINER)
        return

    policy = ctx.policy
    rhcos = ctx.rhcos
    dtk = find_container(containers(obj), DTK_CONTAINER)
    if dtk is None:
        raise ConfigurationError(f"could not find the '{DTK_CONTAINER}' container")

    metadata = obj["metadata"]
    if rhcos not in metadata["name"]:
        metadata["name"] = f"{metadata['name']}-{rhcos}"
    labels = metadata.setdefault("labels", {})
    template_labels = pod_template(obj)["metadata"].setdefault("labels", {})
    labels["app"] = metadata["name"]
    obj["spec"].setdefault("selector", {}).setdefault("matchLabels", {})["app"] = metadata["name"]
    template_labels["app"] = metadata["name"]

    labels[DTK_RHCOS_LABEL] = rhcos
    pod_spec(obj).setdefault("nodeSelector", {})[OSTREE_VERSION_LABEL] = rhcos
    labels[DTK_LABEL] = "true"
    template_labels[DTK_LABEL] = "true"

    upsert_env(dtk, "RHCOS_VERSION", rhcos)
    if policy.gds.enabled:
        upsert_env(dtk, "GDS_ENABLED", "true")
    if policy.gdrcopy.enabled:
        upsert_env(dtk, "GDRCOPY_ENABLED", "true")

    image = ctx.facts.dtk_images.get(rhcos)
    if image:
        dtk["image"] = image
    else:
        logger.warning("Driver toolkit image missing for RHCOS %s, using fallback mode", rhcos)
        labels[DTK_IMAGE_MISSING_LABEL] = "true"
        template_labels[DTK_IMAGE_MISSING_LABEL] = "true"
        dtk["image"] = main["image"]
        upsert_env(main, "RHCOS_IMAGE_MISSING", "true")
        upsert_env(main, "RHCOS_VERSION", rhcos)
        upsert_env(dtk, "RHCOS_IMAGE_MISSING", "true")

    main["command"] = ["ocp_dtk_entrypoint"]
    main["args"] = ["nv-ctr-run-with-dtk"]

    add_volume_mount(main, {"name": DTK_SHARED_VOLUME, "mountPath": DTK_SHARED_PATH})
    if find_volume(obj, DTK_SHARED_VOLUME) is None:
        add_volume(obj, {"name": DTK_SHARED_VOLUME, "emptyDir": {}})


def _make_precompiled_variant(obj: Obj, ctx: RenderContext) -> None:
    """Make the DaemonSet specific to the kernel being rendered."""
    kernel = ctx.kernel
    if not kernel:
        raise ConfigurationError("Could not find kernel full version")
    metadata = obj["metadata"]
    metadata["name"] = f"{metadata['name']}-{sanitize_kernel_version(kernel)}-{ctx.os_tag()}"
    metadata.setdefault("labels", {})[PRECOMPILED_LABEL] = "true"
    pod_template(obj)["metadata"].setdefault("labels", {})[PRECOMPILED_LABEL] = "true"
    pod_spec(obj).setdefault("nodeSelector", {})[KERNEL_FULL_LABEL] = kernel


def transform_driver(obj: Obj, ctx: RenderContext) -> None:
    policy = ctx.policy
    transform_validation_init_containers(obj, policy)
    _transform_driver_manager(obj, policy.driver.manager, policy.driver)
    main = _transform_driver_container(obj, ctx)
    _transform_peermem(obj, ctx)
    _transform_driver_sidecar(
        obj, ctx, policy.gds, GDS_CONTAINER, prefix=False,
        feature="GPUDirect Storage driver (nvidia-fs)",
    )
    _transform_driver_sidecar(obj, ctx, policy.gdrcopy, GDRCOPY_CONTAINER, prefix=True, feature="GDRCopy")
    _transform_driver_toolkit(obj, ctx, main)
    if policy.driver.use_precompiled:
        _make_precompiled_variant(obj, ctx)


def transform_vgpu_manager(obj: Obj, ctx: RenderContext) -> None:
    policy = ctx.policy
    spec = policy.vgpu_manager
    _transform_driver_manager(obj, spec.manager)
    container = require_container(obj, VGPU_MANAGER_CONTAINER, f"failed to find {VGPU_MANAGER_CONTAINER} in spec")
    set_image(container, spec, resolve_driver_image(spec, ctx))
    add_pull_secrets(obj, spec.image_pull_secrets)
    set_resources(container, spec)
    if spec.args:
        container["args"] = list(spec.args)
    upsert_envs(container, spec.env)
    _openshift_version_env(container, ctx)
    _transform_driver_toolkit(obj, ctx, container)


# ---------------------------------------------------------------------------
# Container toolkit
# ---------------------------------------------------------------------------


def transform_toolkit(obj: Obj, ctx: RenderContext) -> None:
    policy, facts = ctx.policy, ctx.facts
    transform_validation_init_containers(obj, policy)
    container = apply_component(obj, policy.toolkit)

    if policy.cdi.enabled:
        upsert_env(container, "CDI_ENABLED", "true")
        upsert_env(container, "NVIDIA_CONTAINER_RUNTIME_MODES_CDI_ANNOTATION_PREFIXES", CDI_ANNOTATION_PREFIX)
        upsert_env(container, "CRIO_CONFIG_MODE", "config")
        if policy.cdi.default:
            upsert_env(container, "NVIDIA_CONTAINER_RUNTIME_MODE", "cdi")

    if facts.is_openshift:
        upsert_env(container, "NVIDIA_RUNTIME_SET_AS_DEFAULT", "false")

    install_dir = policy.toolkit.install_dir
    if install_dir and install_dir != DEFAULT_TOOLKIT_INSTALL_DIR:
        upsert_env(container, "ROOT", install_dir)
        set_host_path(obj, "toolkit-install-dir", install_dir)
        set_mount_path(container, "toolkit-install-dir", install_dir)

    transform_for_runtime(obj, container, facts.runtime, runtime_class_name(policy))

    if not facts.is_openshift and facts.runtime == CRIO:
        set_host_path(obj, "crio-hooks", CRIO_HOOKS_HOST_PATH)


# ---------------------------------------------------------------------------
# Device plugin family
# ---------------------------------------------------------------------------


def _add_plugin_config_mounts(container: Obj, config_name: str) -> None:
    add_volume_mount(container, {"name": PLUGIN_CONFIG_SHARED_VOLUME, "mountPath": PLUGIN_CONFIG_SHARED_PATH})
    add_volume_mount(container, {"name": config_name, "mountPath": PLUGIN_CONFIG_MOUNT_PATH})


def handle_device_plugin_config(obj: Obj, policy: PolicySpec) -> None:
    """Wire the config-manager containers to a user plugin ConfigMap, or drop them."""
    config = policy.device_plugin.config
    if not config.name:
        remove_container(obj, CONFIG_MANAGER_INIT, init=True)
        remove_container(obj, CONFIG_MANAGER_SIDECAR)
        return

    for container in containers(obj):
        if container["name"] in ("nvidia-device-plugin", "gpu-feature-discovery", MPS_CONTROL_DAEMON_CONTAINER):
            upsert_env(container, "CONFIG_FILE", PLUGIN_CONFIG_FILE)
            _add_plugin_config_mounts(container, config.name)

    pod_spec(obj)["shareProcessNamespace"] = True
    add_volume(obj, _config_map_volume(config.name))
    add_volume(obj, {"name": PLUGIN_CONFIG_SHARED_VOLUME, "emptyDir": {}})

    manager_image = image_path(policy.device_plugin)
    for container in (
        find_container(init_containers(obj), CONFIG_MANAGER_INIT),
        find_container(containers(obj), CONFIG_MANAGER_SIDECAR),
    ):
        if container is None:
            continue
        container["image"] = manager_image
        if policy.device_plugin.image_pull_policy:
            container["imagePullPolicy"] = image_pull_policy(policy.device_plugin.image_pull_policy)
        upsert_env(container, "DEFAULT_CONFIG", config.default)
        upsert_env(container, "FALLBACK_STRATEGIES", "empty")
        _add_plugin_config_mounts(container, config.name)


def _apply_mps_root(obj: Obj, container: Obj, policy: PolicySpec, set_env: bool) -> None:
    root = policy.device_plugin.mps_root
    if not root or root == DEFAULT_MPS_ROOT:
        return
    set_host_path(obj, "mps-root", root)
    set_host_path(obj, "mps-shm", posixpath.join(root, "shm"))
    if set_env:
        upsert_env(container, "MPS_ROOT", root)


def transform_device_plugin(obj: Obj, ctx: RenderContext) -> None:
    policy, facts = ctx.policy, ctx.facts
    transform_validation_init_containers(obj, policy)
    container = apply_component(obj, policy.device_plugin)

    if policy.gds.enabled:
        upsert_env(container, "GDS_ENABLED", "true")
        upsert_env(container, "MOFED_ENABLED", "true")

    handle_device_plugin_config(obj, policy)
    _set_pod_runtime_class(obj, ctx)
    apply_mig_configuration(container, policy.mig.strategy)

    if policy.cdi.enabled:
        upsert_env(container, "CDI_ENABLED", "true")
        upsert_env(container, "DEVICE_LIST_STRATEGY", "envvar,cdi-annotations")
        prefix = OPENSHIFT_CDI_ANNOTATION_PREFIX if facts.is_openshift else CDI_ANNOTATION_PREFIX
        upsert_env(container, "CDI_ANNOTATION_PREFIX", prefix)
        if policy.toolkit.enabled:
            upsert_env(container, "NVIDIA_CTK_PATH", posixpath.join(policy.toolkit.install_dir, "toolkit/nvidia-ctk"))

    _apply_mps_root(obj, container, policy, set_env=True)


def transform_mps_control_daemon(obj: Obj, ctx: RenderContext) -> None:
    policy = ctx.policy
    spec = policy.device_plugin
    transform_validation_init_containers(obj, policy)

    image = image_path(spec)
    policy_value = image_pull_policy(spec.image_pull_policy)
    mounts_init = find_container(init_containers(obj), MPS_CONTROL_DAEMON_MOUNTS_INIT)
    if mounts_init is not None:
        mounts_init["image"] = image
        mounts_init["imagePullPolicy"] = policy_value

    main = require_container(
        obj, MPS_CONTROL_DAEMON_CONTAINER,
        f"failed to find main container '{MPS_CONTROL_DAEMON_CONTAINER}'",
    )
    main["image"] = image
    main["imagePullPolicy"] = policy_value
    add_pull_secrets(obj, spec.image_pull_secrets)
    for container in containers(obj):
        set_resources(container, spec)

    handle_device_plugin_config(obj, policy)
    _set_pod_runtime_class(obj, ctx)
    apply_mig_configuration(main, policy.mig.strategy)
    _apply_mps_root(obj, main, policy, set_env=False)


def transform_gfd(obj: Obj, ctx: RenderContext) -> None:
    policy = ctx.policy
    transform_validation_init_containers(obj, policy)
    container = apply_component(obj, policy.gfd)
    handle_device_plugin_config(obj, policy)
    _set_pod_runtime_class(obj, ctx)
    apply_mig_configuration(container, policy.mig.strategy)


def transform_sandbox_device_plugin(obj: Obj, ctx: RenderContext) -> None:
    transform_validation_init_containers(obj, ctx.policy)
    apply_component(obj, ctx.policy.sandbox_device_plugin)


# ---------------------------------------------------------------------------
# Monitoring
# ---------------------------------------------------------------------------


def transform_dcgm_exporter(obj: Obj, ctx: RenderContext) -> None:
    policy = ctx.policy
    spec = policy.dcgm_exporter
    transform_validation_init_containers(obj, policy)
    container = apply_component(obj, spec)

    if policy.dcgm.enabled:
        upsert_env(container, "DCGM_REMOTE_HOSTENGINE_INFO", DCGM_REMOTE_HOSTENGINE)
    else:
        remote = get_env(container, "DCGM_REMOTE_HOSTENGINE_INFO") or ""
        if remote.startswith("localhost"):
            # the exporter reaches a host-local hostengine
            pod_spec(obj)["hostNetwork"] = True

    _set_pod_runtime_class(obj, ctx)

    if spec.metrics_config_name:
        add_volume_mount(container, {
            "name": DCGM_METRICS_VOLUME,
            "readOnly": True,
            "mountPath": DCGM_METRICS_MOUNT_PATH,
            "subPath": DCGM_METRICS_FILE,
        })
        add_volume(obj, _config_map_volume(
            spec.metrics_config_name,
            [{"key": DCGM_METRICS_FILE, "path": DCGM_METRICS_FILE}],
            volume_name=DCGM_METRICS_VOLUME,
        ))
        upsert_env(container, "DCGM_EXPORTER_COLLECTORS", DCGM_METRICS_MOUNT_PATH)


def transform_dcgm(obj: Obj, ctx: RenderContext) -> None:
    transform_validation_init_containers(obj, ctx.policy)
    apply_component(obj, ctx.policy.dcgm)
    _set_pod_runtime_class(obj, ctx)


def transform_node_status_exporter(obj: Obj, ctx: RenderContext) -> None:
    transform_validation_init_containers(obj, ctx.policy)
    apply_component(obj, ctx.policy.node_status_exporter)


# ---------------------------------------------------------------------------
# Managers
# ---------------------------------------------------------------------------


def _set_config_map_volume(obj: Obj, fragment: str, name: str) -> None:
    for volume in pod_spec(obj).get("volumes") or []:
        if fragment in volume.get("name", "") and "configMap" in volume:
            volume["configMap"]["name"] = name


def transform_mig_manager(obj: Obj, ctx: RenderContext) -> None:
    policy = ctx.policy
    spec = policy.mig_manager
    transform_validation_init_containers(obj, policy)
    container = apply_component(obj, spec)
    _set_pod_runtime_class(obj, ctx)
    _set_config_map_volume(obj, "mig-parted-config", spec.config_name or DEFAULT_MIG_PARTED_CONFIG)
    _set_config_map_volume(obj, "gpu-clients", spec.gpu_clients_config_name or DEFAULT_GPU_CLIENTS_CONFIG)
    if policy.cdi.enabled:
        upsert_env(container, "CDI_ENABLED", "true")


def transform_vgpu_device_manager(obj: Obj, ctx: RenderContext) -> None:
    policy = ctx.policy
    spec = policy.vgpu_device_manager
    transform_validation_init_containers(obj, policy)
    container = apply_component(obj, spec)
    _set_config_map_volume(obj, "vgpu-config", spec.config_name or DEFAULT_VGPU_DEVICES_CONFIG)
    upsert_env(container, "DEFAULT_VGPU_CONFIG", spec.config_default or "default")


def transform_vfio_manager(obj: Obj, ctx: RenderContext) -> None:
    policy = ctx.policy
    transform_validation_init_containers(obj, policy)
    _transform_driver_manager(obj, policy.vfio_manager.manager)
    apply_component(obj, policy.vfio_manager)


def transform_cc_manager(obj: Obj, ctx: RenderContext) -> None:
    spec = ctx.policy.cc_manager
    transform_validation_init_containers(obj, ctx.policy)
    container = apply_component(obj, spec)
    if spec.default_mode:
        upsert_env(container, "DEFAULT_CC_MODE", spec.default_mode)


def transform_kata_manager(obj: Obj, ctx: RenderContext) -> None:
    """Kata manager only drives containerd."""
    spec = ctx.policy.kata_manager
    container = apply_component(obj, spec)

    artifacts_dir = spec.artifacts_dir()
    upsert_env(container, "KATA_ARTIFACTS_DIR", artifacts_dir)
    add_volume_mount(container, {"name": "kata-artifacts", "mountPath": artifacts_dir})
    add_volume(obj, host_path_volume("kata-artifacts", artifacts_dir, "DirectoryOrCreate"))

    config_file = runtime_config_file(container, CONTAINERD)
    socket_file = runtime_socket_file(container, CONTAINERD)
    upsert_env(container, "CONTAINERD_CONFIG", posixpath.join("/runtime/config-dir/", posixpath.basename(config_file)))
    upsert_env(container, "CONTAINERD_SOCKET", posixpath.join("/runtime/sock-dir/", posixpath.basename(socket_file)))
    add_volume_mount(container, {"name": "containerd-config", "mountPath": "/runtime/config-dir/"})
    add_volume(obj, host_path_volume("containerd-config", posixpath.dirname(config_file), "DirectoryOrCreate"))
    add_volume_mount(container, {"name": "containerd-socket", "mountPath": "/runtime/sock-dir/"})
    add_volume(obj, host_path_volume("containerd-socket", posixpath.dirname(socket_file)))

    # pods restart whenever the kata configuration changes
    config_hash = content_hash(yaml.safe_dump(spec.config, sort_keys=True))
    pod_template(obj)["metadata"].setdefault("annotations", {})[KATA_CONFIG_HASH_ANNOTATION] = config_hash


# ---------------------------------------------------------------------------
# Validators
# ---------------------------------------------------------------------------


def _transform_validator_common(obj: Obj, ctx: RenderContext, components: tuple[str, ...]) -> None:
    policy = ctx.policy
    apply_component(obj, policy.validator)
    _set_pod_runtime_class(obj, ctx)
    for component in components:
        transform_validator_component(obj, policy, component)


def transform_validator(obj: Obj, ctx: RenderContext) -> None:
    _transform_validator_common(obj, ctx, OPERATOR_VALIDATOR_COMPONENTS)


def transform_sandbox_validator(obj: Obj, ctx: RenderContext) -> None:
    _transform_validator_common(obj, ctx, SANDBOX_VALIDATOR_COMPONENTS)


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


TRANSFORMS: dict[OperandKind, Callable[[Obj, RenderContext], None]] = {
    OperandKind.DRIVER: transform_driver,
    OperandKind.VGPU_MANAGER: transform_vgpu_manager,
    OperandKind.VGPU_DEVICE_MANAGER: transform_vgpu_device_manager,
    OperandKind.VFIO_MANAGER: transform_vfio_manager,
    OperandKind.TOOLKIT: transform_toolkit,
    OperandKind.DEVICE_PLUGIN: transform_device_plugin,
    OperandKind.MPS_CONTROL_DAEMON: transform_mps_control_daemon,
    OperandKind.SANDBOX_DEVICE_PLUGIN: transform_sandbox_device_plugin,
    OperandKind.DCGM: transform_dcgm,
    OperandKind.DCGM_EXPORTER: transform_dcgm_exporter,
    OperandKind.NODE_STATUS_EXPORTER: transform_node_status_exporter,
    OperandKind.GFD: transform_gfd,
    OperandKind.MIG_MANAGER: transform_mig_manager,
    OperandKind.VALIDATOR: transform_validator,
    OperandKind.SANDBOX_VALIDATOR: transform_sandbox_validator,
    OperandKind.KATA_MANAGER: transform_kata_manager,
    OperandKind.CC_MANAGER: transform_cc_manager,
}


def transform_daemonset(template: Obj, ctx: RenderContext) -> Obj:
    """
    Derive the DaemonSet to apply from a bundled base template.

    Args:
        template: Base DaemonSet (left untouched)
        ctx: Configuration, cluster facts and the variant being rendered

    Returns:
        The derived DaemonSet

    Raises:
        ConfigurationError: For non-retryable configuration problems
        OperandError: If a referenced object cannot be read yet
    """
    obj = copy.deepcopy(template)
    name = obj["metadata"]["name"]
    kind = OperandKind.lookup(name)
    if kind is None:
        logger.info("No transformation for DaemonSet '%s'", name)
        return obj

    obj["metadata"]["namespace"] = ctx.namespace or obj["metadata"].get("namespace")
    apply_common_daemonset_config(obj, ctx.policy)
    TRANSFORMS[kind](obj, ctx)
    apply_common_daemonset_metadata(obj, ctx.policy)
    return obj
