"""In-memory object store and object builders for the operand tests."""

from __future__ import annotations

import copy
from typing import Any, Optional

from operands.assets import default_assets_dir, load_state
from operands.config import PolicySpec, parse_policy
from operands.constants import (
    GPU_PRESENT_LABEL,
    KERNEL_FULL_LABEL,
    OS_RELEASE_ID_LABEL,
    OS_VERSION_ID_LABEL,
    OSTREE_VERSION_LABEL,
)
from operands.facts import ClusterFacts
from operands.transforms import RenderContext
from shared.kube_client import ConflictError, NotFoundError, ObjectStore

NAMESPACE = "gpu-operator"

# Image coordinates for every component so image resolution never falls back to env
IMAGES: dict[str, dict[str, str]] = {
    "driver": {"repository": "nvcr.io/nvidia", "image": "driver", "version": "550.54.15"},
    "toolkit": {"repository": "nvcr.io/nvidia/k8s", "image": "container-toolkit", "version": "v1.15.0"},
    "devicePlugin": {"repository": "nvcr.io/nvidia", "image": "k8s-device-plugin", "version": "v0.15.0"},
    "dcgmExporter": {"repository": "nvcr.io/nvidia/k8s", "image": "dcgm-exporter", "version": "3.3.5"},
    "dcgm": {"repository": "nvcr.io/nvidia/cloud-native", "image": "dcgm", "version": "3.3.5"},
    "gfd": {"repository": "nvcr.io/nvidia", "image": "gpu-feature-discovery", "version": "v0.15.0"},
    "migManager": {"repository": "nvcr.io/nvidia/cloud-native", "image": "k8s-mig-manager", "version": "v0.7.0"},
    "nodeStatusExporter": {"repository": "nvcr.io/nvidia/cloud-native", "image": "gpu-operator-validator",
                           "version": "v24.3.0"},
    "validator": {"repository": "nvcr.io/nvidia/cloud-native", "image": "gpu-operator-validator",
                  "version": "v24.3.0"},
    "vgpuManager": {"repository": "nvcr.io/nvidia", "image": "vgpu-manager", "version": "550.54.16"},
    "vgpuDeviceManager": {"repository": "nvcr.io/nvidia/cloud-native", "image": "vgpu-device-manager",
                          "version": "v0.2.6"},
    "vfioManager": {"repository": "nvcr.io/nvidia", "image": "cuda", "version": "12.4.1-base-ubi8"},
    "sandboxDevicePlugin": {"repository": "nvcr.io/nvidia", "image": "kubevirt-gpu-device-plugin",
                            "version": "v1.2.7"},
    "kataManager": {"repository": "nvcr.io/nvidia/cloud-native", "image": "k8s-kata-manager", "version": "v0.2.0"},
    "ccManager": {"repository": "nvcr.io/nvidia/cloud-native", "image": "k8s-cc-manager", "version": "v0.1.1"},
    "gds": {"repository": "nvcr.io/nvidia/cloud-native", "image": "nvidia-fs", "version": "2.17.5"},
    "gdrcopy": {"repository": "nvcr.io/nvidia/cloud-native", "image": "gdrdrv", "version": "v2.4.1"},
}

DRIVER_MANAGER_IMAGE = {"repository": "nvcr.io/nvidia/cloud-native", "image": "k8s-driver-manager",
                        "version": "v0.6.8"}


def _merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def raw_policy(**overrides: Any) -> dict[str, Any]:
    """A complete ClusterPolicy spec; keyword arguments are deep-merged into it."""
    spec: dict[str, Any] = {key: dict(value) for key, value in IMAGES.items()}
    spec["driver"]["manager"] = dict(DRIVER_MANAGER_IMAGE)
    spec["vgpuManager"]["driverManager"] = dict(DRIVER_MANAGER_IMAGE)
    spec["vfioManager"]["driverManager"] = dict(DRIVER_MANAGER_IMAGE)
    return {"spec": _merge(spec, overrides)}


def make_policy(**overrides: Any) -> PolicySpec:
    return parse_policy(raw_policy(**overrides))


def make_facts(**overrides: Any) -> ClusterFacts:
    values: dict[str, Any] = {
        "runtime": "containerd",
        "has_gpu_nodes": True,
        "primary_kernel": "5.15.0-91-generic",
        "primary_os_tag": "ubuntu22.04",
        "k8s_version": "v1.29.3",
        "service_monitor_supported": True,
    }
    values.update(overrides)
    return ClusterFacts(**values)


def make_context(policy: Optional[PolicySpec] = None, facts: Optional[ClusterFacts] = None,
                 **kwargs: Any) -> RenderContext:
    return RenderContext(policy or make_policy(), facts or make_facts(), NAMESPACE, **kwargs)


def bundled(state: str, kind: str, name: Optional[str] = None) -> dict[str, Any]:
    """First bundled manifest of *kind* (and *name*) in *state*."""
    for manifest in load_state(default_assets_dir(), state).manifests:
        if manifest.kind == kind and (name is None or manifest.name == name):
            return copy.deepcopy(manifest.obj)
    raise LookupError(f"no {kind} {name or ''} in {state}")


def bundled_daemonset(state: str) -> dict[str, Any]:
    return bundled(state, "DaemonSet")


def gpu_node(
    name: str,
    kernel: str = "5.15.0-91-generic",
    os_id: str = "ubuntu",
    os_version: str = "22.04",
    runtime: str = "containerd://1.7.2",
    ostree: Optional[str] = None,
) -> dict[str, Any]:
    labels = {
        GPU_PRESENT_LABEL: "true",
        KERNEL_FULL_LABEL: kernel,
        OS_RELEASE_ID_LABEL: os_id,
        OS_VERSION_ID_LABEL: os_version,
    }
    if ostree:
        labels[OSTREE_VERSION_LABEL] = ostree
    return {
        "apiVersion": "v1",
        "kind": "Node",
        "metadata": {"name": name, "labels": labels},
        "status": {"nodeInfo": {"containerRuntimeVersion": runtime}},
    }


def daemonset(
    name: str,
    containers: Optional[list[dict[str, Any]]] = None,
    init_containers: Optional[list[dict[str, Any]]] = None,
    volumes: Optional[list[dict[str, Any]]] = None,
    labels: Optional[dict[str, str]] = None,
    namespace: str = NAMESPACE,
) -> dict[str, Any]:
    """Minimal DaemonSet; containers default to a single ``<name>-ctr``."""
    labels = dict(labels or {"app": name})
    spec: dict[str, Any] = {"containers": containers or [{"name": f"{name}-ctr", "image": "placeholder"}]}
    if init_containers:
        spec["initContainers"] = init_containers
    if volumes:
        spec["volumes"] = volumes
    return {
        "apiVersion": "apps/v1",
        "kind": "DaemonSet",
        "metadata": {"name": name, "namespace": namespace, "labels": dict(labels)},
        "spec": {
            "selector": {"matchLabels": {"app": labels.get("app", name)}},
            "template": {"metadata": {"labels": dict(labels)}, "spec": spec},
        },
    }


def env_of(container: dict[str, Any]) -> dict[str, str]:
    return {item["name"]: item.get("value") for item in container.get("env") or []}


def container_named(obj: dict[str, Any], name: str, init: bool = False) -> dict[str, Any]:
    key = "initContainers" if init else "containers"
    for container in obj["spec"]["template"]["spec"].get(key) or []:
        if container["name"] == name:
            return container
    raise LookupError(f"{name} not found in {obj['metadata']['name']}")


def volume_named(obj: dict[str, Any], name: str) -> Optional[dict[str, Any]]:
    for volume in obj["spec"]["template"]["spec"].get("volumes") or []:
        if volume["name"] == name:
            return volume
    return None


# ---------------------------------------------------------------------------
# Object store
# ---------------------------------------------------------------------------


def _matches(labels: dict[str, str], selector: Optional[str]) -> bool:
    if not selector:
        return True
    for term in selector.split(","):
        key, _, value = term.partition("=")
        if labels.get(key) != value:
            return False
    return True


class FakeObjectStore(ObjectStore):
    """
    ObjectStore kept in a dict, with the API server semantics the engine relies on:
    NotFoundError on missing objects, ConflictError on duplicate creates and
    stale resourceVersions, status preserved across updates.

    Every mutating call is recorded in ``calls`` as ``(verb, kind, name)``.
    """

    def __init__(self, server_version: str = "v1.29.3", missing_kinds: tuple[str, ...] = ()):
        self.objects: dict[tuple[str, str, str], dict[str, Any]] = {}
        self.version = server_version
        self.missing_kinds = set(missing_kinds)
        self.calls: list[tuple[str, str, str]] = []
        self._counter = 0

    # -- test helpers --------------------------------------------------------

    def _next(self) -> int:
        self._counter += 1
        return self._counter

    @staticmethod
    def _key(kind: str, namespace: Optional[str], name: str) -> tuple[str, str, str]:
        return kind, namespace or "", name

    def add(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Seed an object without recording a call."""
        obj = copy.deepcopy(obj)
        metadata = obj.setdefault("metadata", {})
        metadata.setdefault("resourceVersion", str(self._next()))
        metadata.setdefault("uid", f"uid-{metadata['name']}")
        self.objects[self._key(obj["kind"], metadata.get("namespace"), metadata["name"])] = obj
        return copy.deepcopy(obj)

    def set_status(self, kind: str, name: str, status: dict[str, Any], namespace: Optional[str] = NAMESPACE) -> None:
        self.objects[self._key(kind, namespace, name)]["status"] = copy.deepcopy(status)

    def find(self, kind: str, name: str, namespace: Optional[str] = NAMESPACE) -> Optional[dict[str, Any]]:
        return self.objects.get(self._key(kind, namespace, name))

    def names(self, kind: str) -> list[str]:
        return sorted(key[2] for key in self.objects if key[0] == kind)

    def called(self, verb: str, kind: Optional[str] = None) -> list[str]:
        return [name for v, k, name in self.calls if v == verb and (kind is None or k == kind)]

    # -- ObjectStore ---------------------------------------------------------

    def _served(self, kind: str) -> None:
        if kind in self.missing_kinds:
            raise NotFoundError(f"kind {kind} is not served")

    def get(self, api_version, kind, name, namespace=None):
        self._served(kind)
        obj = self.objects.get(self._key(kind, namespace, name))
        if obj is None:
            raise NotFoundError(f"{kind} {namespace or ''}/{name} not found")
        return copy.deepcopy(obj)

    def list(self, api_version, kind, namespace=None, label_selector=None):
        self._served(kind)
        return [
            copy.deepcopy(obj)
            for (obj_kind, obj_namespace, _), obj in sorted(self.objects.items())
            if obj_kind == kind
            and (namespace is None or obj_namespace == namespace)
            and _matches((obj.get("metadata") or {}).get("labels") or {}, label_selector)
        ]

    def create(self, obj):
        kind, metadata = obj["kind"], obj["metadata"]
        self._served(kind)
        key = self._key(kind, metadata.get("namespace"), metadata["name"])
        if key in self.objects:
            raise ConflictError(f"{kind} {metadata['name']} already exists")
        stored = copy.deepcopy(obj)
        stored["metadata"]["resourceVersion"] = str(self._next())
        stored["metadata"]["uid"] = f"uid-{metadata['name']}"
        self.objects[key] = stored
        self.calls.append(("create", kind, metadata["name"]))
        return copy.deepcopy(stored)

    def update(self, obj):
        kind, metadata = obj["kind"], obj["metadata"]
        self._served(kind)
        key = self._key(kind, metadata.get("namespace"), metadata["name"])
        found = self.objects.get(key)
        if found is None:
            raise NotFoundError(f"{kind} {metadata['name']} not found")
        if metadata.get("resourceVersion") != found["metadata"]["resourceVersion"]:
            raise ConflictError(f"{kind} {metadata['name']}: the object has been modified")
        stored = copy.deepcopy(obj)
        stored["metadata"]["resourceVersion"] = str(self._next())
        stored["metadata"]["uid"] = found["metadata"]["uid"]
        if "status" in found:
            stored["status"] = found["status"]
        self.objects[key] = stored
        self.calls.append(("update", kind, metadata["name"]))
        return copy.deepcopy(stored)

    def delete(self, obj):
        kind, metadata = obj["kind"], obj["metadata"]
        self._served(kind)
        key = self._key(kind, metadata.get("namespace"), metadata["name"])
        if key not in self.objects:
            raise NotFoundError(f"{kind} {metadata['name']} not found")
        del self.objects[key]
        self.calls.append(("delete", kind, metadata["name"]))

    def has_kind(self, api_version, kind):
        return kind not in self.missing_kinds

    def server_version(self):
        return self.version
