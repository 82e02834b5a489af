"""
Primitives for editing DaemonSet pod templates held as plain dicts.

Every transform is composed from these helpers.  They operate in place on a
derived copy; bundled templates are never passed in directly.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Iterator, Optional

from operands.config import ComponentSpec, image_path, image_pull_policy
from operands.errors import ConfigurationError

logger = logging.getLogger(__name__)

Obj = dict[str, Any]

# Security context given to every validation init container
VALIDATION_SECURITY_CONTEXT = {"privileged": True, "runAsUser": 0}


# ---------------------------------------------------------------------------
# Navigation
# ---------------------------------------------------------------------------


def pod_template(obj: Obj) -> Obj:
    template = obj.setdefault("spec", {}).setdefault("template", {})
    template.setdefault("metadata", {})
    return template


def pod_spec(obj: Obj) -> Obj:
    return pod_template(obj).setdefault("spec", {})


def containers(obj: Obj) -> list[Obj]:
    return pod_spec(obj).setdefault("containers", [])


def init_containers(obj: Obj) -> list[Obj]:
    return pod_spec(obj).setdefault("initContainers", [])


def all_containers(obj: Obj) -> Iterator[Obj]:
    yield from init_containers(obj)
    yield from containers(obj)


def find_container(items: list[Obj], name: str) -> Optional[Obj]:
    for container in items:
        if container.get("name") == name:
            return container
    return None


def require_container(obj: Obj, name: str, message: str) -> Obj:
    """Return the main container *name* or raise ConfigurationError(message)."""
    container = find_container(containers(obj), name)
    if container is None:
        raise ConfigurationError(message)
    return container


def main_container(obj: Obj) -> Obj:
    items = containers(obj)
    if not items:
        raise ConfigurationError(f"DaemonSet {obj['metadata']['name']} has no containers")
    return items[0]


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------


def upsert_env(container: Obj, name: str, value: str) -> None:
    """Set env *name* to *value*, in place if present, appended otherwise."""
    env = container.setdefault("env", [])
    for item in env:
        if item.get("name") == name:
            item.pop("valueFrom", None)
            item["value"] = value
            return
    env.append({"name": name, "value": value})


def upsert_envs(container: Obj, env: Iterable[dict[str, str]]) -> None:
    for item in env:
        upsert_env(container, item["name"], item.get("value", ""))


def get_env(container: Obj, name: str) -> Optional[str]:
    for item in container.get("env") or []:
        if item.get("name") == name:
            return item.get("value", "")
    return None


# ---------------------------------------------------------------------------
# Volumes
# ---------------------------------------------------------------------------


def find_volume(obj: Obj, name: str) -> Optional[Obj]:
    for volume in pod_spec(obj).get("volumes") or []:
        if volume.get("name") == name:
            return volume
    return None


def add_volume(obj: Obj, volume: Obj) -> None:
    """Add *volume*, replacing an existing volume of the same name."""
    volumes = pod_spec(obj).setdefault("volumes", [])
    for index, existing in enumerate(volumes):
        if existing.get("name") == volume["name"]:
            volumes[index] = volume
            return
    volumes.append(volume)


def add_volume_mount(container: Obj, mount: Obj) -> None:
    """Add *mount* unless the same volume is already mounted at the same path."""
    mounts = container.setdefault("volumeMounts", [])
    for index, existing in enumerate(mounts):
        if existing.get("name") == mount["name"] and existing.get("mountPath") == mount["mountPath"]:
            mounts[index] = mount
            return
    mounts.append(mount)


def host_path_volume(name: str, path: str, path_type: Optional[str] = None) -> Obj:
    host_path: Obj = {"path": path}
    if path_type:
        host_path["type"] = path_type
    return {"name": name, "hostPath": host_path}


def set_host_path(obj: Obj, volume_name: str, path: str) -> bool:
    """Point an existing hostPath volume somewhere else. Returns False if absent."""
    volume = find_volume(obj, volume_name)
    if volume is None or "hostPath" not in volume:
        return False
    volume["hostPath"]["path"] = path
    return True


def set_mount_path(container: Obj, volume_name: str, path: str) -> None:
    for mount in container.get("volumeMounts") or []:
        if mount.get("name") == volume_name:
            mount["mountPath"] = path


def remove_container(obj: Obj, name: str, init: bool = False) -> bool:
    """Remove a (init) container and the volumes only it was using.

    Returns True if the container was present.
    """
    items = init_containers(obj) if init else containers(obj)
    target = find_container(items, name)
    if target is None:
        return False
    items.remove(target)

    still_used = {
        mount.get("name")
        for container in all_containers(obj)
        for mount in container.get("volumeMounts") or []
    }
    orphaned = {
        mount.get("name")
        for mount in target.get("volumeMounts") or []
        if mount.get("name") not in still_used
    }
    if orphaned:
        spec = pod_spec(obj)
        spec["volumes"] = [v for v in spec.get("volumes") or [] if v.get("name") not in orphaned]
        logger.debug("Removed container %s and volumes %s", name, sorted(orphaned))
    return True


def remove_containers_matching(obj: Obj, fragment: str, init: bool = False, prefix: bool = False) -> None:
    """Remove every (init) container whose name contains or starts with *fragment*."""
    items = init_containers(obj) if init else containers(obj)
    names = [
        c["name"] for c in items
        if (c["name"].startswith(fragment) if prefix else fragment in c["name"])
    ]
    for name in names:
        remove_container(obj, name, init=init)


# ---------------------------------------------------------------------------
# Images and the generic component settings
# ---------------------------------------------------------------------------


def add_pull_secrets(obj: Obj, secrets: Iterable[str]) -> None:
    """Merge pull secrets into the pod spec; secrets are a set by name."""
    refs = pod_spec(obj).get("imagePullSecrets") or []
    known = {ref.get("name") for ref in refs}
    for secret in secrets:
        if secret not in known:
            refs.append({"name": secret})
            known.add(secret)
    if refs:
        pod_spec(obj)["imagePullSecrets"] = refs


def set_image(container: Obj, spec: ComponentSpec, image: Optional[str] = None) -> None:
    """Set image and pull policy of *container* from *spec*."""
    container["image"] = image if image is not None else image_path(spec)
    container["imagePullPolicy"] = image_pull_policy(spec.image_pull_policy)


def set_resources(container: Obj, spec: ComponentSpec) -> None:
    """Copy configured requests/limits onto *container*; no-op when unset."""
    if not spec.resources:
        return
    container["resources"] = {
        key: dict(value) for key, value in spec.resources.items() if key in ("requests", "limits")
    }


def apply_resources(obj: Obj, spec: ComponentSpec) -> None:
    """Apply resource requirements to all containers, only when configured."""
    for container in containers(obj):
        set_resources(container, spec)


def apply_component(obj: Obj, spec: ComponentSpec, container: Optional[Obj] = None, image: Optional[str] = None) -> Obj:
    """
    Apply the settings every operand shares to *container* (default: first).

    Image, pull policy, pull secrets, resources (all containers), args
    (replace when configured) and env (upsert) are applied in that order.

    Returns:
        The container that received the image
    """
    if container is None:
        container = main_container(obj)
    set_image(container, spec, image)
    add_pull_secrets(obj, spec.image_pull_secrets)
    apply_resources(obj, spec)
    if spec.args:
        container["args"] = list(spec.args)
    upsert_envs(container, spec.env)
    return container


def set_runtime_class(obj: Obj, runtime_class: Optional[str]) -> None:
    spec = pod_spec(obj)
    if runtime_class:
        spec["runtimeClassName"] = runtime_class
    else:
        spec.pop("runtimeClassName", None)
