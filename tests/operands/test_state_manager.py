"""Tests for the reconciliation state machine."""

from __future__ import annotations

import pytest

from operands.assets import STATE_NAMES
from operands.errors import ConfigurationError, OperandError
from operands.readiness import State
from operands.state_manager import StateManager, is_state_enabled
from shared.kube_client import StoreError
from tests.operands.fakes import NAMESPACE, FakeObjectStore, gpu_node, make_policy

pytestmark = pytest.mark.operands


class FailingStore(FakeObjectStore):
    """Store whose writes of one kind always fail."""

    def __init__(self, failing_kind: str, **kwargs):
        super().__init__(**kwargs)
        self.failing_kind = failing_kind

    def create(self, obj):
        if obj["kind"] == self.failing_kind:
            raise StoreError(f"{obj['kind']} {obj['metadata']['name']}: 500 Internal Server Error")
        return super().create(obj)


@pytest.fixture
def manager(gpu_store, os_release_file):
    """Return a state manager over a one-node GPU cluster."""
    return StateManager(gpu_store, NAMESPACE, os_release_path=os_release_file)


# ---------------------------------------------------------------------------
# State enablement
# ---------------------------------------------------------------------------


class TestIsStateEnabled:
    @pytest.mark.parametrize("name", ["pre-requisites", "state-operator-validation", "state-operator-metrics"])
    def test_always_enabled(self, name):
        policy = make_policy(driver={"enabled": False}, toolkit={"enabled": False})
        assert is_state_enabled(name, policy)

    def test_follows_component_flags(self):
        policy = make_policy(dcgm={"enabled": False})
        assert not is_state_enabled("state-dcgm", policy)
        assert is_state_enabled("state-dcgm-exporter", policy)

    def test_mps_follows_device_plugin(self):
        assert not is_state_enabled("state-mps-control-daemon", make_policy(devicePlugin={"enabled": False}))

    def test_sandbox_states_need_sandbox_workloads(self):
        policy = make_policy(vfioManager={"enabled": True})
        assert not is_state_enabled("state-vfio-manager", policy)
        assert not is_state_enabled("state-sandbox-validation", policy)

        policy = make_policy(sandboxWorkloads={"enabled": True}, vfioManager={"enabled": True})
        assert is_state_enabled("state-vfio-manager", policy)
        assert is_state_enabled("state-sandbox-validation", policy)
        assert not is_state_enabled("state-kata-manager", policy)

    def test_unknown_state(self):
        assert not is_state_enabled("state-bogus", make_policy())


# ---------------------------------------------------------------------------
# Full passes
# ---------------------------------------------------------------------------


class TestReconcile:
    def test_default_pass(self, manager, gpu_store):
        result = manager.reconcile(make_policy())

        assert result.status == State.READY
        assert result.error is None
        assert [s.name for s in result.states] == list(STATE_NAMES)
        assert result.state_of("state-driver") == State.READY
        assert result.state_of("state-node-status-exporter") == State.DISABLED
        assert result.state_of("state-vgpu-manager") == State.DISABLED
        assert gpu_store.names("DaemonSet") == [
            "gpu-feature-discovery",
            "nvidia-container-toolkit-daemonset",
            "nvidia-dcgm",
            "nvidia-dcgm-exporter",
            "nvidia-device-plugin-daemonset",
            "nvidia-device-plugin-mps-control-daemon",
            "nvidia-driver-daemonset",
            "nvidia-mig-manager",
            "nvidia-operator-validator",
        ]
        assert gpu_store.names("RuntimeClass") == ["nvidia"]

    def test_second_pass_writes_nothing(self, manager, gpu_store):
        manager.reconcile(make_policy())
        writes = len(gpu_store.calls)

        result = manager.reconcile(make_policy())

        assert result.status == State.READY
        assert len(gpu_store.calls) == writes

    def test_disabling_an_operand(self, manager, gpu_store):
        manager.reconcile(make_policy())
        assert "nvidia-dcgm" in gpu_store.names("DaemonSet")

        result = manager.reconcile(make_policy(dcgm={"enabled": False}))

        assert ("delete", "DaemonSet", "nvidia-dcgm") in gpu_store.calls
        assert "nvidia-dcgm" not in gpu_store.names("DaemonSet")
        assert result.state_of("state-dcgm") == State.DISABLED
        assert result.state_of("state-dcgm-exporter") == State.READY
        assert result.state_of("state-driver") == State.READY
        assert result.status == State.READY

    def test_reenabling_recreates_from_template(self, manager, gpu_store):
        manager.reconcile(make_policy())
        original = gpu_store.find("DaemonSet", "nvidia-dcgm")
        manager.reconcile(make_policy(dcgm={"enabled": False}))

        result = manager.reconcile(make_policy())

        assert result.state_of("state-dcgm") == State.READY
        assert gpu_store.called("create", "DaemonSet").count("nvidia-dcgm") == 2
        recreated = gpu_store.find("DaemonSet", "nvidia-dcgm")
        assert recreated["spec"] == original["spec"]

    def test_configuration_error_does_not_stop_the_pass(self, manager, gpu_store, monkeypatch):
        monkeypatch.delenv("DRIVER_IMAGE", raising=False)
        policy = make_policy(driver={"repository": "", "image": "", "version": ""})

        result = manager.reconcile(policy)

        driver = next(s for s in result.states if s.name == "state-driver")
        assert driver.state == State.NOT_READY
        assert isinstance(driver.config_error, ConfigurationError)
        assert result.error is driver.config_error
        assert result.status == State.NOT_READY
        # later states still ran
        assert result.state_of("state-container-toolkit") == State.READY
        assert "nvidia-container-toolkit-daemonset" in gpu_store.names("DaemonSet")

    def test_malformed_probe_fails_only_the_driver(self, manager, gpu_store):
        policy = make_policy(driver={"startupProbe": {"initialDelaySeconds": "soon"}})

        result = manager.reconcile(policy)

        driver = next(s for s in result.states if s.name == "state-driver")
        assert driver.state == State.NOT_READY
        assert isinstance(driver.config_error, ConfigurationError)
        assert result.error is driver.config_error
        assert "startupProbe.initialDelaySeconds" in str(result.error)
        assert result.state_of("state-container-toolkit") == State.READY
        assert result.state_of("state-dcgm") == State.READY
        assert "nvidia-driver-daemonset" not in gpu_store.names("DaemonSet")

    def test_first_configuration_error_is_reported(self, manager):
        policy = make_policy(daemonsets={"rollingUpdate": {"maxUnavailable": "lots"}})

        result = manager.reconcile(policy)

        failed = [s for s in result.states if s.config_error is not None]
        assert failed[0].name == "state-container-toolkit"
        assert len(failed) > 1
        assert result.error is failed[0].config_error
        assert "failed to apply rolling update config" in str(result.error)
        # driver pods are never rolled, so the driver state is unaffected
        assert result.state_of("state-driver") == State.READY

    def test_store_errors_are_retryable(self, gpu_store, os_release_file):
        store = FailingStore("Service")
        store.objects.update(gpu_store.objects)
        manager = StateManager(store, NAMESPACE, os_release_path=os_release_file)

        result = manager.reconcile(make_policy())

        dcgm = next(s for s in result.states if s.name == "state-dcgm")
        assert dcgm.state == State.NOT_READY
        assert "500" in dcgm.error
        assert dcgm.config_error is None
        assert result.error is None
        assert result.status == State.NOT_READY
        assert result.state_of("state-driver") == State.READY

    def test_no_gpu_nodes(self, store, os_release_file):
        manager = StateManager(store, NAMESPACE, os_release_path=os_release_file)
        result = manager.reconcile(make_policy())
        assert result.status == State.READY
        assert store.names("DaemonSet") == []
        # accounts and roles are still created
        assert "nvidia-driver" in store.names("ServiceAccount")

    def test_facts_probe_failure(self, gpu_store, tmp_path):
        manager = StateManager(gpu_store, NAMESPACE, os_release_path=tmp_path / "absent")
        result = manager.reconcile(make_policy())
        assert result.status == State.NOT_READY
        assert isinstance(result.error, ConfigurationError)
        assert result.states == []
        assert gpu_store.calls == []

    def test_not_ready_daemonset(self, manager, gpu_store):
        manager.reconcile(make_policy())
        gpu_store.set_status("DaemonSet", "nvidia-dcgm", {"desiredNumberScheduled": 1, "numberUnavailable": 1})

        result = manager.reconcile(make_policy())

        assert result.state_of("state-dcgm") == State.NOT_READY
        assert result.status == State.NOT_READY
        assert result.error is None

    def test_precompiled_variants(self, store, os_release_file):
        store.add(gpu_node("node-a", kernel="5.15.0-91-generic"))
        store.add(gpu_node("node-b", kernel="6.8.0-31-generic"))
        manager = StateManager(store, NAMESPACE, os_release_path=os_release_file)

        result = manager.reconcile(make_policy(driver={"usePrecompiled": True, "version": "550"}))

        assert result.state_of("state-driver") == State.READY
        drivers = [name for name in store.names("DaemonSet") if name.startswith("nvidia-driver-daemonset")]
        assert drivers == [
            "nvidia-driver-daemonset-5.15.0-91-generic-ubuntu22.04",
            "nvidia-driver-daemonset-6.8.0-31-generic-ubuntu22.04",
        ]


class TestConfigMapKeys:
    def test_sorted_keys(self, manager, gpu_store):
        gpu_store.add({
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {"name": "kmod", "namespace": NAMESPACE},
            "data": {"nvidia.conf": "", "nvidia-uvm.conf": ""},
        })
        assert manager.config_map_keys("kmod") == ["nvidia-uvm.conf", "nvidia.conf"]

    def test_missing_config_map(self, manager):
        with pytest.raises(OperandError, match="not found"):
            manager.config_map_keys("kmod")

    def test_missing_config_map_is_transient(self, manager):
        result = manager.reconcile(make_policy(driver={"kernelModuleConfig": {"name": "kmod"}}))
        driver = next(s for s in result.states if s.name == "state-driver")
        assert driver.state == State.NOT_READY
        assert driver.config_error is None
        assert result.error is None
