"""
Container-runtime wiring for operands that configure the node's runtime.

The host's runtime config file, drop-in directory and control socket are
mounted at fixed directories inside the operand container, and env vars
tell the operand where to find them.
"""

from __future__ import annotations

import posixpath
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional

from operands.constants import (
    CONTAINERD,
    CRIO,
    DEFAULT_CONTAINERD_CONFIG_FILE,
    DEFAULT_CONTAINERD_DROP_IN_FILE,
    DEFAULT_CONTAINERD_SOCKET_FILE,
    DEFAULT_CRIO_CONFIG_FILE,
    DEFAULT_CRIO_DROP_IN_FILE,
    DEFAULT_DOCKER_CONFIG_FILE,
    DEFAULT_DOCKER_SOCKET_FILE,
    DEFAULT_RUNTIME_CLASS,
    DOCKER,
    RUNTIME_CONFIG_TARGET_DIR,
    RUNTIME_DROP_IN_TARGET_DIR,
    RUNTIME_SOCKET_TARGET_DIR,
)
from operands.errors import ConfigurationError
from operands.podspec import add_volume, add_volume_mount, get_env, host_path_volume, upsert_env

if TYPE_CHECKING:
    from operands.config import PolicySpec
    from operands.facts import ClusterFacts


@dataclass(frozen=True)
class RuntimeFiles:
    """Default host locations of a runtime's files; empty means unsupported."""

    config_file: str
    socket_file: str
    drop_in_file: str


RUNTIME_FILES = {
    CONTAINERD: RuntimeFiles(
        DEFAULT_CONTAINERD_CONFIG_FILE,
        DEFAULT_CONTAINERD_SOCKET_FILE,
        DEFAULT_CONTAINERD_DROP_IN_FILE,
    ),
    DOCKER: RuntimeFiles(DEFAULT_DOCKER_CONFIG_FILE, DEFAULT_DOCKER_SOCKET_FILE, ""),
    CRIO: RuntimeFiles(DEFAULT_CRIO_CONFIG_FILE, "", DEFAULT_CRIO_DROP_IN_FILE),
}


def _defaults(runtime: str) -> RuntimeFiles:
    try:
        return RUNTIME_FILES[runtime]
    except KeyError:
        raise ConfigurationError(f"invalid runtime: {runtime}") from None


def runtime_config_file(container: dict[str, Any], runtime: str) -> str:
    """Host path of the runtime config; ``<RUNTIME>_CONFIG`` env overrides it."""
    default = _defaults(runtime).config_file
    return get_env(container, f"{runtime.upper()}_CONFIG") or default


def runtime_socket_file(container: dict[str, Any], runtime: str) -> str:
    """Host path of the runtime socket, empty for runtimes without one."""
    default = _defaults(runtime).socket_file
    if not default:
        return ""
    return get_env(container, f"{runtime.upper()}_SOCKET") or default


def runtime_drop_in_file(container: dict[str, Any], runtime: str) -> str:
    default = _defaults(runtime).drop_in_file
    if not default:
        return ""
    return get_env(container, "RUNTIME_DROP_IN_CONFIG") or default


def transform_for_runtime(
    obj: dict[str, Any],
    container: dict[str, Any],
    runtime: str,
    runtime_class: str,
) -> None:
    """
    Mount the runtime's files into *container* and point env vars at them.

    Args:
        obj: DaemonSet being transformed (receives the volumes)
        container: Container that configures the runtime
        runtime: One of containerd, docker, crio
        runtime_class: Runtime class name to register with containerd

    Raises:
        ConfigurationError: If the runtime is not supported
    """
    prefix = runtime.upper()
    config_file = runtime_config_file(container, runtime)
    socket_file = runtime_socket_file(container, runtime)
    drop_in_file = runtime_drop_in_file(container, runtime)

    upsert_env(container, "RUNTIME", runtime)
    if runtime == CONTAINERD:
        upsert_env(container, "CONTAINERD_RUNTIME_CLASS", runtime_class)

    config_target = RUNTIME_CONFIG_TARGET_DIR + posixpath.basename(config_file)
    upsert_env(container, "RUNTIME_CONFIG", config_target)
    upsert_env(container, f"{prefix}_CONFIG", config_target)
    config_volume = f"{runtime}-config"
    add_volume_mount(container, {"name": config_volume, "mountPath": RUNTIME_CONFIG_TARGET_DIR})
    add_volume(obj, host_path_volume(config_volume, posixpath.dirname(config_file), "DirectoryOrCreate"))

    if drop_in_file:
        upsert_env(container, "RUNTIME_DROP_IN_CONFIG", RUNTIME_DROP_IN_TARGET_DIR + posixpath.basename(drop_in_file))
        drop_in_volume = f"{runtime}-drop-in-config"
        add_volume_mount(container, {"name": drop_in_volume, "mountPath": RUNTIME_DROP_IN_TARGET_DIR})
        add_volume(obj, host_path_volume(drop_in_volume, posixpath.dirname(drop_in_file), "DirectoryOrCreate"))

    if socket_file:
        socket_target = RUNTIME_SOCKET_TARGET_DIR + posixpath.basename(socket_file)
        upsert_env(container, "RUNTIME_SOCKET", socket_target)
        upsert_env(container, f"{prefix}_SOCKET", socket_target)
        socket_volume = f"{runtime}-socket"
        add_volume_mount(container, {"name": socket_volume, "mountPath": RUNTIME_SOCKET_TARGET_DIR})
        add_volume(obj, host_path_volume(socket_volume, posixpath.dirname(socket_file)))


def runtime_class_name(policy: PolicySpec) -> str:
    return policy.operator.runtime_class or DEFAULT_RUNTIME_CLASS


def pod_runtime_class(policy: PolicySpec, facts: ClusterFacts) -> Optional[str]:
    """Runtime class for operand pods, or None when only hooks can inject GPUs.

    cri-o without CDI relies on the OCI hook, which needs no runtime class.
    """
    if facts.runtime == CRIO and not policy.cdi.enabled:
        return None
    return runtime_class_name(policy)
