"""
Cluster facts probe.

Facts are recomputed at the start of every reconciliation pass from node
labels, a handful of cluster objects and the host OS-release file.  Nothing
here is cached between passes.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from operands.constants import (
    CONTAINERD,
    CRIO,
    DOCKER,
    GPU_PRESENT_LABEL,
    KERNEL_FULL_LABEL,
    OS_RELEASE_ID_LABEL,
    OS_VERSION_ID_LABEL,
    OSTREE_VERSION_LABEL,
)
from operands.errors import ConfigurationError
from shared.kube_client import NotFoundError
from shared.version_utils import parse_k8s_version

if TYPE_CHECKING:
    from operands.config import PolicySpec
    from shared.kube_client import ObjectStore

logger = logging.getLogger(__name__)

OS_RELEASE_LINE = re.compile(r"^(\w+)=(.+)")

CLUSTER_VERSION_API = "config.openshift.io/v1"
IMAGE_STREAM_API = "image.openshift.io/v1"
DTK_IMAGE_STREAM = "driver-toolkit"
DTK_IMAGE_STREAM_NAMESPACE = "openshift"
SERVICE_MONITOR_API = "monitoring.coreos.com/v1"


@dataclass
class ClusterFacts:
    """What the probe found out about the cluster in this pass."""

    runtime: str = CONTAINERD
    has_gpu_nodes: bool = False
    # Kernel full version -> OS tag (e.g. "ubuntu22.04"); precompiled drivers only
    kernel_versions: dict[str, str] = field(default_factory=dict)
    # Kernel and OS tag of the first GPU node, used for driver image tags
    primary_kernel: str = ""
    primary_os_tag: str = ""
    # Empty when the cluster is not OpenShift
    openshift_version: str = ""
    k8s_version: str = ""
    # OSTREE_VERSION revisions present on GPU nodes
    rhcos_versions: list[str] = field(default_factory=list)
    # Revision -> driver-toolkit image from the driver-toolkit ImageStream
    dtk_images: dict[str, str] = field(default_factory=dict)
    dtk_enabled: bool = False
    service_monitor_supported: bool = False
    os_release: dict[str, str] = field(default_factory=dict)

    @property
    def is_openshift(self) -> bool:
        return bool(self.openshift_version)


def read_os_release(path: str | Path) -> dict[str, str]:
    """Parse an os-release file into a dict.

    Raises:
        ConfigurationError: If the file does not exist.
    """
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"os-release file not found: {path}")

    release: dict[str, str] = {}
    for line in path.read_text().splitlines():
        match = OS_RELEASE_LINE.match(line)
        if match:
            release[match.group(1)] = match.group(2).strip('"')
    return release


def runtime_from_version_string(runtime_version: str) -> str:
    """Map a node's containerRuntimeVersion (``<runtime>://<x.y.z>``) to a runtime.

    Raises:
        ValueError: If the runtime is not recognized.
    """
    if runtime_version.startswith("docker"):
        return DOCKER
    if runtime_version.startswith("containerd"):
        return CONTAINERD
    if runtime_version.startswith("cri-o"):
        return CRIO
    raise ValueError(f"runtime not recognized: {runtime_version}")


def detect_runtime(nodes: list[dict[str, Any]], default: str = CONTAINERD) -> str:
    """Pick the container runtime of the GPU nodes; containerd wins ties."""
    runtime = ""
    for node in nodes:
        version = ((node.get("status") or {}).get("nodeInfo") or {}).get("containerRuntimeVersion", "")
        try:
            runtime = runtime_from_version_string(version)
        except ValueError as exc:
            logger.warning("Unable to get runtime info for node %s: %s", _node_name(node), exc)
            continue
        if runtime == CONTAINERD:
            break
    return runtime or default


def kernel_version_map(nodes: list[dict[str, Any]]) -> dict[str, str]:
    """Map every kernel version found on GPU nodes to its OS tag.

    Raises:
        ConfigurationError: If a GPU node has no kernel label, or the same
            kernel shows up on two different OS versions.
    """
    kernels: dict[str, str] = {}
    for node in nodes:
        labels = _labels(node)
        kernel = labels.get(KERNEL_FULL_LABEL)
        if not kernel:
            raise ConfigurationError(
                f"unable to retrieve kernel version from node {_node_name(node)}: "
                f"label {KERNEL_FULL_LABEL} is missing"
            )
        os_tag = labels.get(OS_RELEASE_ID_LABEL, "") + labels.get(OS_VERSION_ID_LABEL, "")
        if kernels.get(kernel, os_tag) != os_tag:
            raise ConfigurationError(
                f"different OS versions found for the same kernel version {kernel}, "
                "unsupported configuration"
            )
        kernels[kernel] = os_tag
    return kernels


def rhcos_versions(nodes: list[dict[str, Any]]) -> list[str]:
    """Return the distinct OSTREE_VERSION labels of the GPU nodes, sorted."""
    versions = set()
    for node in nodes:
        version = _labels(node).get(OSTREE_VERSION_LABEL)
        if version:
            versions.add(version)
        else:
            logger.warning("Node %s has no %s label", _node_name(node), OSTREE_VERSION_LABEL)
    return sorted(versions)


def _labels(node: dict[str, Any]) -> dict[str, str]:
    return (node.get("metadata") or {}).get("labels") or {}


def _node_name(node: dict[str, Any]) -> str:
    return (node.get("metadata") or {}).get("name", "<unknown>")


def _openshift_version(store: ObjectStore) -> str:
    if not store.has_kind(CLUSTER_VERSION_API, "ClusterVersion"):
        return ""
    try:
        cluster_version = store.get(CLUSTER_VERSION_API, "ClusterVersion", "version")
    except NotFoundError:
        return ""
    return ((cluster_version.get("status") or {}).get("desired") or {}).get("version", "")


def _dtk_images(store: ObjectStore) -> dict[str, str] | None:
    """Read revision -> image from the driver-toolkit ImageStream, None if absent."""
    if not store.has_kind(IMAGE_STREAM_API, "ImageStream"):
        return None
    try:
        stream = store.get(IMAGE_STREAM_API, "ImageStream", DTK_IMAGE_STREAM, DTK_IMAGE_STREAM_NAMESPACE)
    except NotFoundError:
        return None

    images = {}
    for tag in (stream.get("spec") or {}).get("tags") or []:
        source = tag.get("from") or {}
        if tag.get("name") and source.get("name"):
            images[tag["name"]] = source["name"]
    return images


def probe_cluster_facts(
    store: ObjectStore,
    policy: PolicySpec,
    os_release_path: str | Path,
) -> ClusterFacts:
    """
    Gather the cluster facts needed by one reconciliation pass.

    Args:
        store: Object store to read nodes and cluster objects from
        policy: Declarative configuration (decides which facts are needed)
        os_release_path: Host os-release file surfaced into the operator pod

    Returns:
        ClusterFacts for this pass

    Raises:
        ConfigurationError: On an invalid server version, a missing os-release
            file, or inconsistent kernel labels with precompiled drivers
    """
    facts = ClusterFacts()
    facts.os_release = read_os_release(os_release_path)

    git_version = store.server_version()
    try:
        parse_k8s_version(git_version)
    except ValueError as exc:
        raise ConfigurationError(f"kubernetes version {git_version} is not a valid semantic version") from exc
    facts.k8s_version = git_version

    facts.openshift_version = _openshift_version(store)
    facts.service_monitor_supported = store.has_kind(SERVICE_MONITOR_API, "ServiceMonitor")

    nodes = store.list("v1", "Node", label_selector=f"{GPU_PRESENT_LABEL}=true")
    facts.has_gpu_nodes = bool(nodes)
    if not nodes:
        logger.info("No GPU nodes found (label %s=true)", GPU_PRESENT_LABEL)

    if facts.is_openshift:
        facts.runtime = CRIO
    else:
        facts.runtime = detect_runtime(nodes, policy.operator.default_runtime or CONTAINERD)

    if nodes:
        first = _labels(nodes[0])
        facts.primary_kernel = first.get(KERNEL_FULL_LABEL, "")
        facts.primary_os_tag = first.get(OS_RELEASE_ID_LABEL, "") + first.get(OS_VERSION_ID_LABEL, "")

    if policy.driver.enabled and policy.driver.use_precompiled:
        facts.kernel_versions = kernel_version_map(nodes)

    if facts.is_openshift and policy.operator.use_ocp_driver_toolkit:
        facts.rhcos_versions = rhcos_versions(nodes)
        images = _dtk_images(store)
        if images is None:
            logger.info("ImageStream %s/%s not found, driver toolkit disabled",
                        DTK_IMAGE_STREAM_NAMESPACE, DTK_IMAGE_STREAM)
        else:
            facts.dtk_images = images
        facts.dtk_enabled = (
            bool(facts.rhcos_versions)
            and images is not None
            and not policy.driver.use_precompiled
        )

    logger.info(
        "Cluster facts: runtime=%s gpu_nodes=%d openshift=%s k8s=%s kernels=%s dtk=%s",
        facts.runtime,
        len(nodes),
        facts.openshift_version or "no",
        facts.k8s_version,
        sorted(facts.kernel_versions),
        facts.dtk_enabled,
    )
    return facts
