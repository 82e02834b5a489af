"""
Reconciliation state machine.

A pass probes the cluster facts, then walks every state in declaration
order.  Each state applies (or, when disabled, deletes) its bundled
manifests.  A failing state never stops the pass:

- ConfigurationError: the state is aborted and reported ``notReady``; the
  first such error of the pass is returned to the caller
- StoreError / OperandError: the state is ``notReady`` and retried on the
  next pass

The manager keeps no state between passes apart from the loaded assets.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from operands.assets import StateAssets, load_all_states
from operands.constants import DEFAULT_OS_RELEASE_PATH
from operands.controls import apply_manifest, remove_manifest
from operands.errors import ConfigurationError, OperandError
from operands.facts import probe_cluster_facts
from operands.readiness import State, aggregate
from operands.transforms import RenderContext
from shared.kube_client import NotFoundError, StoreError

if TYPE_CHECKING:
    from operands.config import PolicySpec
    from shared.kube_client import ObjectStore

logger = logging.getLogger(__name__)

ALWAYS_ENABLED_STATES = ("pre-requisites", "state-operator-validation", "state-operator-metrics")


@dataclass
class StateResult:
    name: str
    state: State
    # Message of the error that made the state notReady, if any
    error: Optional[str] = None
    config_error: Optional[ConfigurationError] = None


@dataclass
class PassResult:
    """Outcome of one reconciliation pass."""

    status: State
    states: list[StateResult] = field(default_factory=list)
    # First non-retryable error of the pass
    error: Optional[ConfigurationError] = None

    def state_of(self, name: str) -> Optional[State]:
        for result in self.states:
            if result.name == name:
                return result.state
        return None


def is_state_enabled(name: str, policy: PolicySpec) -> bool:
    """Whether a state is switched on by the configuration."""
    sandbox = policy.sandbox_workloads.enabled
    gates = {
        "state-driver": policy.driver.enabled,
        "state-container-toolkit": policy.toolkit.enabled,
        "state-device-plugin": policy.device_plugin.enabled,
        "state-mps-control-daemon": policy.device_plugin.enabled,
        "state-dcgm": policy.dcgm.enabled,
        "state-dcgm-exporter": policy.dcgm_exporter.enabled,
        "state-mig-manager": policy.mig_manager.enabled,
        "gpu-feature-discovery": policy.gfd.enabled,
        "state-node-status-exporter": policy.node_status_exporter.enabled,
        "state-sandbox-device-plugin": sandbox and policy.sandbox_device_plugin.enabled,
        "state-kata-manager": sandbox and policy.kata_manager.enabled,
        "state-vfio-manager": sandbox and policy.vfio_manager.enabled,
        "state-vgpu-device-manager": sandbox and policy.vgpu_device_manager.enabled,
        "state-vgpu-manager": sandbox and policy.vgpu_manager.enabled,
        "state-cc-manager": sandbox and policy.cc_manager.enabled,
        "state-sandbox-validation": sandbox,
    }
    if name in ALWAYS_ENABLED_STATES:
        return True
    if name not in gates:
        logger.error("Invalid state passed: %s", name)
        return False
    return gates[name]


class StateManager:
    """Runs reconciliation passes against an object store."""

    def __init__(
        self,
        store: ObjectStore,
        namespace: str,
        assets_dir: Path | str | None = None,
        os_release_path: Path | str = DEFAULT_OS_RELEASE_PATH,
    ) -> None:
        self.store = store
        self.namespace = namespace
        self.os_release_path = os_release_path
        self.states: list[StateAssets] = load_all_states(assets_dir)

    def config_map_keys(self, name: str) -> list[str]:
        """Sorted data keys of a ConfigMap in the operator namespace.

        Raises:
            OperandError: If the ConfigMap does not exist (yet)
        """
        try:
            config_map = self.store.get("v1", "ConfigMap", name, self.namespace)
        except NotFoundError as exc:
            raise OperandError(f"ConfigMap {self.namespace}/{name} not found") from exc
        return sorted(config_map.get("data") or {})

    def reconcile_state(self, assets: StateAssets, ctx: RenderContext) -> StateResult:
        name = assets.name
        enabled = is_state_enabled(name, ctx.policy)
        outcomes: list[State] = []
        try:
            for manifest in assets.for_platform(ctx.facts.is_openshift):
                if enabled:
                    outcomes.append(apply_manifest(self.store, manifest.obj, ctx, name))
                else:
                    outcomes.append(remove_manifest(self.store, manifest.obj, ctx, name))
        except ConfigurationError as exc:
            logger.error("State %s failed with a configuration error: %s", name, exc)
            return StateResult(name, State.NOT_READY, str(exc), config_error=exc)
        except (OperandError, StoreError) as exc:
            logger.warning("State %s not ready: %s", name, exc)
            return StateResult(name, State.NOT_READY, str(exc))

        state = aggregate(outcomes) if enabled else State.DISABLED
        logger.info("State %s: %s", name, state)
        return StateResult(name, state)

    def reconcile(self, policy: PolicySpec) -> PassResult:
        """
        Run one full reconciliation pass.

        Args:
            policy: Declarative configuration, read fresh for this pass

        Returns:
            PassResult with the aggregate status, per-state outcomes in
            declaration order, and the first configuration error
        """
        try:
            facts = probe_cluster_facts(self.store, policy, self.os_release_path)
        except ConfigurationError as exc:
            logger.error("Cluster facts probe failed: %s", exc)
            return PassResult(State.NOT_READY, error=exc)
        except StoreError as exc:
            logger.warning("Cluster facts probe failed, retrying next pass: %s", exc)
            return PassResult(State.NOT_READY)

        ctx = RenderContext(policy, facts, self.namespace, config_map_keys=self.config_map_keys)
        results = [self.reconcile_state(assets, ctx) for assets in self.states]

        first_error = next((r.config_error for r in results if r.config_error is not None), None)
        status = aggregate([r.state for r in results])
        logger.info("Reconciliation pass finished: %s", status)
        return PassResult(status, results, first_error)
