"""
Validation init-container wiring.

Validation init containers run the validator image before an operand's
main containers start.  Some of them launch a throwaway workload pod, so
they are told which image, pull policy, pull secrets and runtime class to
use for it.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from operands.config import image_path, image_pull_policy
from operands.errors import ConfigurationError
from operands.podspec import (
    VALIDATION_SECURITY_CONTEXT,
    add_pull_secrets,
    init_containers,
    pod_spec,
    upsert_env,
    upsert_envs,
)

if TYPE_CHECKING:
    from operands.config import PolicySpec

logger = logging.getLogger(__name__)

OPERATOR_VALIDATOR_COMPONENTS = ("driver", "nvidia-fs", "toolkit", "cuda", "plugin")
SANDBOX_VALIDATOR_COMPONENTS = ("cc-manager", "vfio-pci", "vgpu-manager", "vgpu-devices")


def _set_validator_image(container: dict[str, Any], policy: PolicySpec) -> str:
    image = image_path(policy.validator)
    container["image"] = image
    if policy.validator.image_pull_policy:
        container["imagePullPolicy"] = image_pull_policy(policy.validator.image_pull_policy)
    return image


def transform_validation_init_containers(obj: dict[str, Any], policy: PolicySpec) -> None:
    """Point every ``*validation*`` init container at the validator image."""
    for container in init_containers(obj):
        name = container.get("name", "")
        if "validation" not in name:
            continue
        if name.startswith("driver"):
            upsert_envs(container, policy.validator.driver.env)
        if name.startswith("toolkit"):
            upsert_envs(container, policy.validator.toolkit.env)
        _set_validator_image(container, policy)
        container.setdefault("securityContext", {}).update(VALIDATION_SECURITY_CONTEXT)
    add_pull_secrets(obj, policy.validator.image_pull_secrets)


def _workload_env(container: dict[str, Any], obj: dict[str, Any], policy: PolicySpec, image: str) -> None:
    """Env needed by validators that spin off their own workload pod."""
    upsert_env(container, "VALIDATOR_IMAGE", image)
    upsert_env(container, "VALIDATOR_IMAGE_PULL_POLICY", image_pull_policy(policy.validator.image_pull_policy))
    if policy.validator.image_pull_secrets:
        upsert_env(container, "VALIDATOR_IMAGE_PULL_SECRETS", ",".join(policy.validator.image_pull_secrets))
    runtime_class = pod_spec(obj).get("runtimeClassName")
    if runtime_class:
        upsert_env(container, "VALIDATOR_RUNTIME_CLASS", runtime_class)


def transform_validator_component(obj: dict[str, Any], policy: PolicySpec, component: str) -> None:
    """
    Apply component-specific settings to the ``<component>-validation`` init containers.

    Init containers for features that are switched off (device plugin, GDS,
    CC manager) are removed.

    Raises:
        ConfigurationError: If *component* is unknown
    """
    if component not in OPERATOR_VALIDATOR_COMPONENTS + SANDBOX_VALIDATOR_COMPONENTS:
        raise ConfigurationError("invalid component provided to apply validator changes")

    validator = policy.validator
    workload = policy.default_workload()
    items = init_containers(obj)
    for container in list(items):
        if f"{component}-validation" not in container.get("name", ""):
            continue

        if (
            (component == "plugin" and not policy.device_plugin.enabled)
            or (component == "nvidia-fs" and not policy.gds.enabled)
            or (component == "cc-manager" and not policy.cc_manager.enabled)
        ):
            logger.debug("Removing %s from %s", container["name"], obj["metadata"]["name"])
            items.remove(container)
            continue

        image = _set_validator_image(container, policy)
        container.setdefault("securityContext", {}).update(VALIDATION_SECURITY_CONTEXT)
        if component == "cuda":
            upsert_envs(container, validator.cuda.env)
            _workload_env(container, obj, policy, image)
        elif component == "plugin":
            upsert_envs(container, validator.plugin.env)
            _workload_env(container, obj, policy, image)
            upsert_env(container, "MIG_STRATEGY", policy.mig.strategy)
        elif component == "driver":
            upsert_envs(container, validator.driver.env)
        elif component == "toolkit":
            upsert_envs(container, validator.toolkit.env)
        elif component == "vfio-pci":
            upsert_env(container, "DEFAULT_GPU_WORKLOAD_CONFIG", workload)
            upsert_envs(container, validator.vfio_pci.env)
        elif component == "vgpu-manager":
            upsert_env(container, "DEFAULT_GPU_WORKLOAD_CONFIG", workload)
            upsert_envs(container, validator.vgpu_manager.env)
        elif component == "vgpu-devices":
            upsert_env(container, "DEFAULT_GPU_WORKLOAD_CONFIG", workload)
            upsert_envs(container, validator.vgpu_devices.env)
