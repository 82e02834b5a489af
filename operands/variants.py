"""
Variant expansion for driver-like DaemonSets.

Some operands must run a binary built for the exact kernel (precompiled
drivers) or inside an image matching the exact OS build (OpenShift driver
toolkit).  Such operands are materialized once per key found on the GPU
nodes, each variant pinned to its key with a node selector.

Variants that no longer match any node are pruned before the current ones
are applied.  A variant whose DaemonSet still has pods scheduled is never
deleted.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

from operands.constants import (
    DTK_LABEL,
    DTK_RHCOS_LABEL,
    KERNEL_FULL_LABEL,
    PRECOMPILED_LABEL,
)
from operands.readiness import State, aggregate
from operands.transforms import OperandKind, transform_daemonset
from shared.kube_client import NotFoundError

if TYPE_CHECKING:
    from operands.transforms import RenderContext
    from shared.kube_client import ObjectStore

logger = logging.getLogger(__name__)

# Base DaemonSets that may be expanded, and whose flavours are cleaned up
VARIANT_CAPABLE = (OperandKind.DRIVER.value, OperandKind.VGPU_MANAGER.value)


class VariantAxis(Enum):
    NONE = "none"
    KERNEL = "kernel"
    OS_IMAGE = "os-image"


def variant_axis(name: str, ctx: RenderContext) -> VariantAxis:
    """Which axis a base DaemonSet is expanded along; precompiled drivers win."""
    if name == OperandKind.DRIVER.value and ctx.policy.driver.use_precompiled:
        return VariantAxis.KERNEL
    if name in VARIANT_CAPABLE and ctx.facts.dtk_enabled:
        return VariantAxis.OS_IMAGE
    return VariantAxis.NONE


def variant_contexts(name: str, ctx: RenderContext) -> list[RenderContext]:
    """One render context per variant key, or just *ctx* for variant-less DaemonSets."""
    axis = variant_axis(name, ctx)
    if axis == VariantAxis.KERNEL:
        return [ctx.for_kernel(kernel) for kernel in sorted(ctx.facts.kernel_versions)]
    if axis == VariantAxis.OS_IMAGE:
        return [ctx.for_rhcos(rhcos) for rhcos in sorted(ctx.facts.rhcos_versions)]
    return [ctx]


def _delete_daemonset(store: ObjectStore, name: str, namespace: str) -> None:
    try:
        store.delete({
            "apiVersion": "apps/v1",
            "kind": "DaemonSet",
            "metadata": {"name": name, "namespace": namespace},
        })
        logger.info("Deleted DaemonSet %s/%s", namespace, name)
    except NotFoundError:
        logger.debug("DaemonSet %s/%s already gone", namespace, name)


def _labels(obj: dict[str, Any]) -> dict[str, str]:
    return obj["metadata"].get("labels") or {}


def _flavour(ds: dict[str, Any]) -> VariantAxis:
    labels = _labels(ds)
    if labels.get(PRECOMPILED_LABEL) == "true":
        return VariantAxis.KERNEL
    if labels.get(DTK_LABEL) == "true":
        return VariantAxis.OS_IMAGE
    return VariantAxis.NONE


def cleanup_other_flavours(store: ObjectStore, base_name: str, ctx: RenderContext) -> bool:
    """
    Delete DaemonSets of *base_name* built for a flavour that is no longer selected.

    Switching between precompiled, driver-toolkit and plain drivers leaves
    the previous flavour's DaemonSets behind; they are removed here.

    Returns:
        True while pods of deleted DaemonSets are still present
    """
    wanted = variant_axis(base_name, ctx)
    for ds in store.list("apps/v1", "DaemonSet", ctx.namespace):
        name = ds["metadata"]["name"]
        if not name.startswith(base_name) or _flavour(ds) == wanted:
            continue
        logger.info("Removing DaemonSet %s of unselected driver flavour %s", name, _flavour(ds).value)
        _delete_daemonset(store, name, ctx.namespace)

    # pods carry their DaemonSet's flavour labels from the pod template
    leftover = [
        pod["metadata"]["name"]
        for pod in store.list("v1", "Pod", ctx.namespace)
        if pod["metadata"]["name"].startswith(base_name) and _flavour(pod) != wanted
    ]
    if leftover:
        logger.info("Driver DaemonSet cleanup in progress, %d pod(s) left", len(leftover))
    return bool(leftover)


def delete_all_variants(store: ObjectStore, base_name: str, namespace: str) -> None:
    """Delete the base DaemonSet and every variant derived from it."""
    for ds in store.list("apps/v1", "DaemonSet", namespace):
        if ds["metadata"]["name"].startswith(base_name):
            _delete_daemonset(store, ds["metadata"]["name"], namespace)


def _is_scheduled(ds: dict[str, Any]) -> bool:
    status = ds.get("status") or {}
    return status.get("desiredNumberScheduled", 0) != 0 or status.get("numberMisscheduled", 0) != 0


def prune_stale_kernel_variants(store: ObjectStore, base_name: str, ctx: RenderContext) -> list[str]:
    """Delete precompiled variants whose kernel is gone from every GPU node.

    Returns:
        Names of the deleted DaemonSets
    """
    deleted = []
    for ds in store.list("apps/v1", "DaemonSet", ctx.namespace, f"{PRECOMPILED_LABEL}=true"):
        name = ds["metadata"]["name"]
        if not name.startswith(base_name):
            continue
        if _is_scheduled(ds):
            continue
        node_selector = ds["spec"]["template"]["spec"].get("nodeSelector") or {}
        kernel = node_selector.get(KERNEL_FULL_LABEL)
        if not kernel:
            logger.warning("Precompiled DaemonSet %s has no %s node selector, skipping", name, KERNEL_FULL_LABEL)
            continue
        if kernel in ctx.facts.kernel_versions:
            continue
        logger.info("Kernel %s no longer present, deleting stale DaemonSet %s", kernel, name)
        _delete_daemonset(store, name, ctx.namespace)
        deleted.append(name)
    return deleted


def prune_stale_os_image_variants(store: ObjectStore, base_name: str, ctx: RenderContext) -> list[str]:
    """Delete driver-toolkit variants whose OS revision is gone from every GPU node.

    Returns:
        Names of the deleted DaemonSets
    """
    deleted = []
    for ds in store.list("apps/v1", "DaemonSet", ctx.namespace, f"{DTK_LABEL}=true"):
        name = ds["metadata"]["name"]
        if not name.startswith(base_name):
            continue
        if (ds.get("status") or {}).get("desiredNumberScheduled", 0) != 0:
            continue
        rhcos = _labels(ds).get(DTK_RHCOS_LABEL)
        if not rhcos:
            logger.warning("Driver toolkit DaemonSet %s has no %s label, skipping", name, DTK_RHCOS_LABEL)
            continue
        if rhcos in ctx.facts.rhcos_versions:
            continue
        logger.info("RHCOS %s no longer present, deleting stale DaemonSet %s", rhcos, name)
        _delete_daemonset(store, name, ctx.namespace)
        deleted.append(name)
    return deleted


def expand_daemonset(
    store: ObjectStore,
    template: dict[str, Any],
    ctx: RenderContext,
    apply: Callable[[dict[str, Any]], State],
) -> State:
    """
    Transform *template* and apply it once, or once per variant key.

    Stale variants are pruned first; variants are then applied one by one
    in key order and their readiness aggregated.

    Args:
        store: Object store
        template: Base DaemonSet
        ctx: Render context for this pass
        apply: Applies one derived DaemonSet and returns its readiness

    Returns:
        Aggregate readiness of everything applied
    """
    base_name = template["metadata"]["name"]
    axis = variant_axis(base_name, ctx)

    if axis == VariantAxis.NONE:
        return apply(transform_daemonset(template, ctx))

    if axis == VariantAxis.KERNEL:
        prune_stale_kernel_variants(store, base_name, ctx)
    else:
        prune_stale_os_image_variants(store, base_name, ctx)

    contexts = variant_contexts(base_name, ctx)
    logger.info("Expanding %s into %d %s variant(s)", base_name, len(contexts), axis.value)
    return aggregate([apply(transform_daemonset(template, variant_ctx)) for variant_ctx in contexts])
