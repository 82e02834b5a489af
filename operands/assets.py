"""
Bundled operand manifests.

Each reconciliation state is a directory under ``operands/assets/`` holding
``NNNN_<kind>.yaml`` manifests, applied in file-name order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from operands.errors import ConfigurationError

logger = logging.getLogger(__name__)

# Reconciliation order: accounts and roles first, workloads, then monitoring
STATE_NAMES = (
    "pre-requisites",
    "state-operator-metrics",
    "state-driver",
    "state-container-toolkit",
    "state-operator-validation",
    "state-device-plugin",
    "state-mps-control-daemon",
    "state-dcgm",
    "state-dcgm-exporter",
    "gpu-feature-discovery",
    "state-mig-manager",
    "state-node-status-exporter",
    "state-vgpu-manager",
    "state-vgpu-device-manager",
    "state-sandbox-validation",
    "state-vfio-manager",
    "state-sandbox-device-plugin",
    "state-kata-manager",
    "state-cc-manager",
)

SUPPORTED_KINDS = (
    "ServiceAccount",
    "Role",
    "RoleBinding",
    "ClusterRole",
    "ClusterRoleBinding",
    "ConfigMap",
    "DaemonSet",
    "Service",
    "ServiceMonitor",
    "RuntimeClass",
    "PrometheusRule",
)


def default_assets_dir() -> Path:
    return Path(__file__).parent / "assets"


@dataclass
class Manifest:
    """One bundled manifest and the file it came from."""

    path: Path
    obj: dict[str, Any]

    @property
    def kind(self) -> str:
        return self.obj.get("kind", "")

    @property
    def name(self) -> str:
        return (self.obj.get("metadata") or {}).get("name", "")

    @property
    def openshift_only(self) -> bool:
        return "openshift" in self.path.name


@dataclass
class StateAssets:
    name: str
    manifests: list[Manifest] = field(default_factory=list)

    def for_platform(self, openshift: bool) -> list[Manifest]:
        """Manifests to apply; ``*openshift*`` files only on OpenShift."""
        return [m for m in self.manifests if openshift or not m.openshift_only]


def load_state(assets_dir: Path, state: str) -> StateAssets:
    """
    Load the manifests of one state.

    Raises:
        ConfigurationError: If the state directory is missing or a manifest
            cannot be parsed
    """
    state_dir = assets_dir / state
    if not state_dir.is_dir():
        raise ConfigurationError(f"assets for state {state} not found in {assets_dir}")

    assets = StateAssets(state)
    for path in sorted(state_dir.glob("*.yaml")):
        try:
            obj = yaml.safe_load(path.read_text())
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"failed to parse {path}: {exc}") from exc
        if not isinstance(obj, dict) or not obj.get("kind"):
            raise ConfigurationError(f"{path} is not a Kubernetes manifest")
        if obj["kind"] not in SUPPORTED_KINDS:
            logger.warning("Unknown resource kind %s in %s, ignoring", obj["kind"], path)
            continue
        assets.manifests.append(Manifest(path, obj))
    logger.debug("Loaded %d manifests for %s", len(assets.manifests), state)
    return assets


def load_all_states(assets_dir: Path | str | None = None) -> list[StateAssets]:
    """Load every state in reconciliation order."""
    base = Path(assets_dir) if assets_dir else default_assets_dir()
    return [load_state(base, state) for state in STATE_NAMES]
