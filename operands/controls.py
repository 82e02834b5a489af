"""
Per-kind controls: apply (or delete) one bundled manifest.

Every control gets a private deep copy of the manifest, edits it for the
current configuration and cluster facts, and applies it idempotently:
objects are created when missing and updated only when their content
fingerprint changed.  Store errors propagate to the state manager.
"""

from __future__ import annotations

import copy
import logging
from typing import TYPE_CHECKING, Any, Callable

import yaml

from operands.constants import (
    DEFAULT_GPU_CLIENTS_CONFIG,
    DEFAULT_MIG_PARTED_CONFIG,
    DEFAULT_VGPU_DEVICES_CONFIG,
    FILLED_BY_OPERATOR,
    KATA_MANAGER_CONFIG,
    KATA_RUNTIME_CLASS_LABEL,
    PROTECTED_LABEL_KEYS,
    RUNTIME_CLASS_PLACEHOLDER,
    RUNTIME_CLASS_V1BETA1_MAX_VERSION,
)
from operands.errors import ConfigurationError
from operands.fingerprint import stamp, stored_fingerprint
from operands.readiness import State, daemonset_readiness
from operands.runtime import runtime_class_name
from operands.variants import (
    VARIANT_CAPABLE,
    cleanup_other_flavours,
    delete_all_variants,
    expand_daemonset,
)
from shared.kube_client import NotFoundError, object_key
from shared.version_utils import version_at_most

if TYPE_CHECKING:
    from operands.config import PolicySpec
    from operands.transforms import RenderContext
    from shared.kube_client import ObjectStore

logger = logging.getLogger(__name__)

Obj = dict[str, Any]
Control = Callable[["ObjectStore", Obj, "RenderContext", str], State]

CLUSTER_SCOPED_KINDS = ("ClusterRole", "ClusterRoleBinding", "RuntimeClass")
CDI_RUNTIME_CLASSES = ("nvidia-cdi", "nvidia-legacy")
DCGM_EXPORTER_STATE = "state-dcgm-exporter"
KATA_MANAGER_STATE = "state-kata-manager"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def place_manifest(obj: Obj, ctx: RenderContext) -> Obj:
    """Deep-copy a manifest and put it into the operator namespace if namespaced."""
    obj = copy.deepcopy(obj)
    metadata = obj.setdefault("metadata", {})
    if obj.get("kind") in CLUSTER_SCOPED_KINDS:
        metadata.pop("namespace", None)
    else:
        metadata["namespace"] = ctx.namespace
    return obj


def apply_object(store: ObjectStore, obj: Obj, keep: Callable[[Obj, Obj], None] | None = None) -> Obj:
    """
    Create *obj*, or update it when its fingerprint differs from the stored one.

    Args:
        store: Object store
        obj: Desired object; its fingerprint annotation is (re)computed
        keep: Copies server-assigned fields from the found object before an update

    Returns:
        The object as stored (the found object when nothing changed)
    """
    value = stamp(obj)
    api_version, kind, namespace, name = object_key(obj)
    try:
        found = store.get(api_version, kind, name, namespace or None)
    except NotFoundError:
        logger.info("%s %s not found, creating", kind, name)
        return store.create(obj)

    if stored_fingerprint(found) == value:
        logger.debug("%s %s identical, skipping update", kind, name)
        return found

    obj["metadata"]["resourceVersion"] = found["metadata"].get("resourceVersion")
    if keep is not None:
        keep(obj, found)
    logger.info("%s %s changed, updating", kind, name)
    return store.update(obj)


def delete_object(store: ObjectStore, obj: Obj) -> None:
    """Delete *obj*; an object that is already gone is not an error."""
    _, kind, namespace, name = object_key(obj)
    try:
        store.delete(obj)
        logger.info("Deleted %s %s", kind, f"{namespace}/{name}" if namespace else name)
    except NotFoundError:
        logger.debug("%s %s not found, nothing to delete", kind, name)


def _runtime_class_api_version(ctx: RenderContext) -> str:
    if ctx.facts.k8s_version and version_at_most(ctx.facts.k8s_version, RUNTIME_CLASS_V1BETA1_MAX_VERSION):
        return "node.k8s.io/v1beta1"
    return "node.k8s.io/v1"


def _fill_runtime_class(obj: Obj, ctx: RenderContext) -> None:
    obj["apiVersion"] = _runtime_class_api_version(ctx)
    if obj["metadata"]["name"] == RUNTIME_CLASS_PLACEHOLDER:
        name = runtime_class_name(ctx.policy)
        obj["metadata"]["name"] = name
        obj["handler"] = name


# ---------------------------------------------------------------------------
# RBAC
# ---------------------------------------------------------------------------


def service_account(store: ObjectStore, obj: Obj, ctx: RenderContext, state: str) -> State:
    obj = place_manifest(obj, ctx)
    api_version, kind, namespace, name = object_key(obj)
    try:
        store.get(api_version, kind, name, namespace)
        logger.debug("ServiceAccount %s already exists", name)
    except NotFoundError:
        logger.info("ServiceAccount %s not found, creating", name)
        store.create(obj)
    return State.READY


def generic(store: ObjectStore, obj: Obj, ctx: RenderContext, state: str) -> State:
    """Role, ClusterRole and PrometheusRule: plain create-or-update."""
    apply_object(store, place_manifest(obj, ctx))
    return State.READY


def role_binding(store: ObjectStore, obj: Obj, ctx: RenderContext, state: str) -> State:
    obj = place_manifest(obj, ctx)
    for subject in obj.get("subjects") or []:
        if subject.get("namespace") == FILLED_BY_OPERATOR:
            subject["namespace"] = ctx.namespace
    apply_object(store, obj)
    return State.READY


def cluster_role_binding(store: ObjectStore, obj: Obj, ctx: RenderContext, state: str) -> State:
    obj = place_manifest(obj, ctx)
    for subject in obj.get("subjects") or []:
        subject["namespace"] = ctx.namespace
    apply_object(store, obj)
    return State.READY


# ---------------------------------------------------------------------------
# ConfigMaps and Services
# ---------------------------------------------------------------------------


def _custom_config_name(policy: PolicySpec, name: str) -> str:
    """Name of the user ConfigMap that replaces default ConfigMap *name*, if any."""
    if name == DEFAULT_MIG_PARTED_CONFIG:
        custom = policy.mig_manager.config_name
        return custom if custom != DEFAULT_MIG_PARTED_CONFIG else ""
    if name == DEFAULT_GPU_CLIENTS_CONFIG:
        return policy.mig_manager.gpu_clients_config_name
    if name == DEFAULT_VGPU_DEVICES_CONFIG:
        return policy.vgpu_device_manager.config_name
    return ""


def config_map(store: ObjectStore, obj: Obj, ctx: RenderContext, state: str) -> State:
    obj = place_manifest(obj, ctx)
    name = obj["metadata"]["name"]

    custom = _custom_config_name(ctx.policy, name)
    if custom:
        logger.info("Not creating ConfigMap %s, custom ConfigMap provided: %s", name, custom)
        return State.READY

    if name == KATA_MANAGER_CONFIG:
        obj["data"] = {"config.yaml": yaml.safe_dump(ctx.policy.kata_manager.config, sort_keys=True)}

    apply_object(store, obj)
    return State.READY


def _keep_cluster_ip(obj: Obj, found: Obj) -> None:
    cluster_ip = (found.get("spec") or {}).get("clusterIP")
    if cluster_ip:
        obj.setdefault("spec", {})["clusterIP"] = cluster_ip


def service(store: ObjectStore, obj: Obj, ctx: RenderContext, state: str) -> State:
    apply_object(store, place_manifest(obj, ctx), keep=_keep_cluster_ip)
    return State.READY


# ---------------------------------------------------------------------------
# Monitoring
# ---------------------------------------------------------------------------


def service_monitor(store: ObjectStore, obj: Obj, ctx: RenderContext, state: str) -> State:
    obj = place_manifest(obj, ctx)
    supported = ctx.facts.service_monitor_supported

    if state == DCGM_EXPORTER_STATE:
        settings = ctx.policy.dcgm_exporter.service_monitor
        if not settings.enabled:
            if not supported:
                return State.READY
            delete_object(store, obj)
            return State.DISABLED
        if not supported:
            logger.error("ServiceMonitor kind not served, install Prometheus and its CRDs to collect GPU metrics")
            return State.NOT_READY

        endpoint = obj["spec"]["endpoints"][0]
        if settings.interval:
            endpoint["interval"] = settings.interval
        if settings.honor_labels is not None:
            endpoint["honorLabels"] = settings.honor_labels
        if settings.additional_labels:
            obj["metadata"].setdefault("labels", {}).update(settings.additional_labels)
        if settings.relabelings:
            endpoint["relabelings"] = copy.deepcopy(settings.relabelings)
    else:
        if not supported:
            logger.debug("ServiceMonitor kind not served, skipping %s", obj["metadata"]["name"])
            return State.READY
        obj["spec"].setdefault("namespaceSelector", {})["matchNames"] = [ctx.namespace]

    selector = obj["spec"].get("namespaceSelector") or {}
    selector["matchNames"] = [
        ctx.namespace if value == FILLED_BY_OPERATOR else value for value in selector.get("matchNames") or []
    ]
    apply_object(store, obj)
    return State.READY


def prometheus_rule(store: ObjectStore, obj: Obj, ctx: RenderContext, state: str) -> State:
    if not ctx.facts.service_monitor_supported:
        logger.debug("Prometheus operator kinds not served, skipping %s", obj["metadata"]["name"])
        return State.READY
    return generic(store, obj, ctx, state)


# ---------------------------------------------------------------------------
# RuntimeClasses
# ---------------------------------------------------------------------------


def _kata_runtime_classes(store: ObjectStore, template: Obj, ctx: RenderContext) -> State:
    """One RuntimeClass per kata runtime class configured; stale ones are deleted.

    Raises:
        ConfigurationError: If a kata runtime class reuses the operand runtime class name
    """
    api_version = _runtime_class_api_version(ctx)
    wanted = {rc["name"]: rc for rc in ctx.policy.kata_manager.runtime_classes() if rc.get("name")}

    for existing in store.list(api_version, "RuntimeClass", label_selector=f"{KATA_RUNTIME_CLASS_LABEL}=true"):
        if existing["metadata"]["name"] not in wanted:
            delete_object(store, {"apiVersion": api_version, "kind": "RuntimeClass",
                                  "metadata": {"name": existing["metadata"]["name"]}})

    operand_class = runtime_class_name(ctx.policy)
    template_selector = (template.get("scheduling") or {}).get("nodeSelector") or {}
    for name, rc in sorted(wanted.items()):
        if name == operand_class:
            raise ConfigurationError(
                f"error creating kata runtimeclass '{name}' as it conflicts with "
                "the runtimeclass used for the gpu-operator operand pods itself"
            )
        apply_object(store, {
            "apiVersion": api_version,
            "kind": "RuntimeClass",
            "metadata": {"name": name, "labels": dict(template["metadata"].get("labels") or {})},
            "handler": name,
            "scheduling": {"nodeSelector": {**template_selector, **(rc.get("nodeSelector") or {})}},
        })
    return State.READY


def runtime_class(store: ObjectStore, obj: Obj, ctx: RenderContext, state: str) -> State:
    obj = place_manifest(obj, ctx)
    if state == KATA_MANAGER_STATE:
        return _kata_runtime_classes(store, obj, ctx)

    _fill_runtime_class(obj, ctx)
    if not ctx.policy.cdi.enabled and obj["metadata"]["name"] in CDI_RUNTIME_CLASSES:
        delete_object(store, obj)
        return State.READY

    apply_object(store, obj)
    return State.READY


# ---------------------------------------------------------------------------
# DaemonSets
# ---------------------------------------------------------------------------


def _merge_daemonset_metadata(ds: Obj, policy: PolicySpec) -> None:
    metadata = ds["metadata"]
    labels = metadata.setdefault("labels", {})
    for key, value in policy.daemonsets.labels.items():
        if key not in PROTECTED_LABEL_KEYS:
            labels[key] = value
    if policy.daemonsets.annotations:
        metadata.setdefault("annotations", {}).update(policy.daemonsets.annotations)


def apply_daemonset(store: ObjectStore, ds: Obj, policy: PolicySpec) -> State:
    """Apply one derived DaemonSet and return its readiness."""
    _merge_daemonset_metadata(ds, policy)
    stored = apply_object(store, ds)
    return daemonset_readiness(store, stored)


def daemonset(store: ObjectStore, obj: Obj, ctx: RenderContext, state: str) -> State:
    """
    Apply an operand DaemonSet, expanding driver-like ones into variants.

    Nothing is created while the cluster has no GPU nodes.
    """
    name = obj["metadata"]["name"]
    if not ctx.facts.has_gpu_nodes:
        logger.info("No GPU node in the cluster, not creating DaemonSet %s", name)
        return State.READY

    if name in VARIANT_CAPABLE and cleanup_other_flavours(store, name, ctx):
        return State.NOT_READY

    template = copy.deepcopy(obj)
    return expand_daemonset(store, template, ctx, lambda ds: apply_daemonset(store, ds, ctx.policy))


CONTROLS: dict[str, Control] = {
    "ServiceAccount": service_account,
    "Role": generic,
    "RoleBinding": role_binding,
    "ClusterRole": generic,
    "ClusterRoleBinding": cluster_role_binding,
    "ConfigMap": config_map,
    "DaemonSet": daemonset,
    "Service": service,
    "ServiceMonitor": service_monitor,
    "RuntimeClass": runtime_class,
    "PrometheusRule": prometheus_rule,
}


def apply_manifest(store: ObjectStore, obj: Obj, ctx: RenderContext, state: str) -> State:
    return CONTROLS[obj["kind"]](store, obj, ctx, state)


def remove_manifest(store: ObjectStore, obj: Obj, ctx: RenderContext, state: str) -> State:
    """
    Delete whatever *obj* would have created for a disabled state.

    Returns:
        State.DISABLED
    """
    obj = place_manifest(obj, ctx)
    kind, name = obj["kind"], obj["metadata"]["name"]

    if kind in ("ServiceMonitor", "PrometheusRule") and not ctx.facts.service_monitor_supported:
        return State.DISABLED
    if kind == "DaemonSet" and name in VARIANT_CAPABLE:
        delete_all_variants(store, name, ctx.namespace)
        return State.DISABLED
    if kind == "RuntimeClass":
        if state != KATA_MANAGER_STATE:
            # operand pods still select this class when the toolkit is preinstalled on the hosts
            runtime_class(store, obj, ctx, state)
            return State.DISABLED
        api_version = _runtime_class_api_version(ctx)
        for rc in store.list(api_version, "RuntimeClass", label_selector=f"{KATA_RUNTIME_CLASS_LABEL}=true"):
            delete_object(store, {"apiVersion": api_version, "kind": "RuntimeClass",
                                  "metadata": {"name": rc["metadata"]["name"]}})
        return State.DISABLED

    delete_object(store, obj)
    return State.DISABLED
