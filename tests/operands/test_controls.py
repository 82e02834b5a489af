"""Tests for the per-kind controls."""

from __future__ import annotations

import pytest
import yaml

from operands.constants import KATA_RUNTIME_CLASS_LABEL
from operands.controls import (
    apply_manifest,
    config_map,
    place_manifest,
    remove_manifest,
    role_binding,
    runtime_class,
    service,
    service_account,
    service_monitor,
)
from operands.errors import ConfigurationError
from operands.readiness import State
from tests.operands.fakes import (
    NAMESPACE,
    FakeObjectStore,
    bundled,
    daemonset,
    make_context,
    make_facts,
    make_policy,
)

pytestmark = pytest.mark.operands


def _kata_ctx(runtime_classes, **operator):
    policy = make_policy(
        sandboxWorkloads={"enabled": True},
        kataManager={"enabled": True, "config": {"runtimeClasses": runtime_classes}},
        operator=operator,
    )
    return make_context(policy)


class TestPlacement:
    def test_namespaced_object(self, ctx):
        obj = place_manifest(bundled("state-dcgm", "Service"), ctx)
        assert obj["metadata"]["namespace"] == NAMESPACE

    def test_cluster_scoped_object(self, ctx):
        obj = place_manifest(bundled("state-driver", "ClusterRole"), ctx)
        assert "namespace" not in obj["metadata"]


# ---------------------------------------------------------------------------
# RBAC
# ---------------------------------------------------------------------------


class TestRBAC:
    def test_service_account_created_once(self, store, ctx):
        manifest = bundled("state-dcgm", "ServiceAccount")
        assert service_account(store, manifest, ctx, "state-dcgm") == State.READY
        store.objects[("ServiceAccount", NAMESPACE, "nvidia-dcgm")]["secrets"] = [{"name": "token"}]

        service_account(store, manifest, ctx, "state-dcgm")

        assert store.calls == [("create", "ServiceAccount", "nvidia-dcgm")]
        assert store.find("ServiceAccount", "nvidia-dcgm")["secrets"] == [{"name": "token"}]

    def test_role_binding_fills_operator_namespace(self, store, ctx):
        role_binding(store, bundled("state-dcgm", "RoleBinding"), ctx, "state-dcgm")
        subjects = store.find("RoleBinding", "nvidia-dcgm")["subjects"]
        assert subjects[0]["namespace"] == NAMESPACE

    def test_role_binding_keeps_foreign_namespace(self, store, ctx):
        role_binding(store, bundled("state-operator-metrics", "RoleBinding"), ctx, "state-operator-metrics")
        subjects = store.find("RoleBinding", "prometheus-k8s")["subjects"]
        assert subjects[0]["namespace"] == "openshift-monitoring"

    def test_cluster_role_binding(self, store, ctx):
        apply_manifest(store, bundled("state-driver", "ClusterRoleBinding"), ctx, "state-driver")
        binding = store.find("ClusterRoleBinding", "nvidia-driver", namespace=None)
        assert binding["subjects"][0]["namespace"] == NAMESPACE


# ---------------------------------------------------------------------------
# ConfigMaps and Services
# ---------------------------------------------------------------------------


class TestConfigMaps:
    def test_default_config_map_created(self, store, ctx):
        config_map(store, bundled("state-mig-manager", "ConfigMap", "default-mig-parted-config"),
                   ctx, "state-mig-manager")
        assert store.names("ConfigMap") == ["default-mig-parted-config"]

    def test_skipped_when_custom_config_map_given(self, store):
        ctx = make_context(make_policy(migManager={"config": {"name": "my-mig"}}))
        state = config_map(store, bundled("state-mig-manager", "ConfigMap", "default-mig-parted-config"),
                           ctx, "state-mig-manager")
        assert state == State.READY
        assert store.calls == []

    def test_kata_config_rendered(self, store):
        ctx = _kata_ctx([{"name": "kata-nvidia-gpu"}])
        config_map(store, bundled("state-kata-manager", "ConfigMap", "nvidia-kata-manager-config"),
                   ctx, "state-kata-manager")
        data = store.find("ConfigMap", "nvidia-kata-manager-config")["data"]
        assert yaml.safe_load(data["config.yaml"]) == {"runtimeClasses": [{"name": "kata-nvidia-gpu"}]}

    def test_service_keeps_cluster_ip(self, store, ctx):
        manifest = bundled("state-dcgm", "Service")
        service(store, manifest, ctx, "state-dcgm")
        stored = store.objects[("Service", NAMESPACE, "nvidia-dcgm")]
        stored["spec"]["clusterIP"] = "10.96.0.12"
        # force an update
        stored["metadata"]["annotations"]["nvidia.com/last-applied-hash"] = "stale"

        service(store, manifest, ctx, "state-dcgm")

        assert store.calls[-1] == ("update", "Service", "nvidia-dcgm")
        assert store.find("Service", "nvidia-dcgm")["spec"]["clusterIP"] == "10.96.0.12"


# ---------------------------------------------------------------------------
# Monitoring
# ---------------------------------------------------------------------------


class TestServiceMonitor:
    STATE = "state-dcgm-exporter"

    def _manifest(self):
        return bundled(self.STATE, "ServiceMonitor")

    def test_disabled_monitor_is_deleted(self, store, ctx):
        store.add(place_manifest(self._manifest(), ctx))
        assert service_monitor(store, self._manifest(), ctx, self.STATE) == State.DISABLED
        assert store.called("delete", "ServiceMonitor") == ["nvidia-dcgm-exporter"]

    def test_disabled_and_kind_not_served(self):
        store = FakeObjectStore(missing_kinds=("ServiceMonitor",))
        ctx = make_context(facts=make_facts(service_monitor_supported=False))
        assert service_monitor(store, self._manifest(), ctx, self.STATE) == State.READY
        assert store.calls == []

    def test_enabled_but_kind_not_served(self):
        store = FakeObjectStore(missing_kinds=("ServiceMonitor",))
        policy = make_policy(dcgmExporter={"serviceMonitor": {"enabled": True}})
        ctx = make_context(policy, make_facts(service_monitor_supported=False))
        assert service_monitor(store, self._manifest(), ctx, self.STATE) == State.NOT_READY

    def test_enabled_settings_applied(self, store):
        policy = make_policy(dcgmExporter={"serviceMonitor": {
            "enabled": True,
            "interval": "15s",
            "honorLabels": True,
            "additionalLabels": {"release": "prometheus"},
            "relabelings": [{"action": "labeldrop", "regex": "pod"}],
        }})
        state = service_monitor(store, self._manifest(), make_context(policy), self.STATE)

        assert state == State.READY
        monitor = store.find("ServiceMonitor", "nvidia-dcgm-exporter")
        endpoint = monitor["spec"]["endpoints"][0]
        assert endpoint["interval"] == "15s"
        assert endpoint["honorLabels"] is True
        assert endpoint["relabelings"] == [{"action": "labeldrop", "regex": "pod"}]
        assert monitor["metadata"]["labels"]["release"] == "prometheus"
        assert monitor["spec"]["namespaceSelector"]["matchNames"] == [NAMESPACE]

    def test_operator_metrics_monitor(self, store, ctx):
        state = service_monitor(store, bundled("state-operator-metrics", "ServiceMonitor"), ctx,
                                "state-operator-metrics")
        assert state == State.READY
        monitor = store.find("ServiceMonitor", "gpu-operator")
        assert monitor["spec"]["namespaceSelector"]["matchNames"] == [NAMESPACE]

    def test_prometheus_rule_skipped_without_prometheus(self):
        store = FakeObjectStore(missing_kinds=("PrometheusRule",))
        ctx = make_context(facts=make_facts(service_monitor_supported=False))
        manifest = bundled("state-operator-metrics", "PrometheusRule")
        assert apply_manifest(store, manifest, ctx, "state-operator-metrics") == State.READY
        assert store.calls == []


# ---------------------------------------------------------------------------
# RuntimeClasses
# ---------------------------------------------------------------------------


class TestRuntimeClass:
    def test_placeholder_filled(self, store):
        ctx = make_context(make_policy(operator={"runtimeClass": "nvidia-gpu"}))
        runtime_class(store, bundled("pre-requisites", "RuntimeClass", "FILLED_BY_OPERATOR"), ctx, "pre-requisites")
        rc = store.find("RuntimeClass", "nvidia-gpu", namespace=None)
        assert rc["handler"] == "nvidia-gpu"
        assert rc["apiVersion"] == "node.k8s.io/v1"

    def test_old_servers_use_v1beta1(self, store):
        ctx = make_context(facts=make_facts(k8s_version="v1.20.0"))
        runtime_class(store, bundled("pre-requisites", "RuntimeClass", "FILLED_BY_OPERATOR"), ctx, "pre-requisites")
        assert store.find("RuntimeClass", "nvidia", namespace=None)["apiVersion"] == "node.k8s.io/v1beta1"

    def test_cdi_classes_follow_cdi_setting(self, store):
        manifest = bundled("pre-requisites", "RuntimeClass", "nvidia-cdi")
        runtime_class(store, manifest, make_context(make_policy(cdi={"enabled": True})), "pre-requisites")
        assert store.names("RuntimeClass") == ["nvidia-cdi"]

        runtime_class(store, manifest, make_context(make_policy()), "pre-requisites")
        assert store.names("RuntimeClass") == []

    def test_kata_runtime_classes(self, store):
        store.add({
            "apiVersion": "node.k8s.io/v1",
            "kind": "RuntimeClass",
            "metadata": {"name": "kata-old", "labels": {KATA_RUNTIME_CLASS_LABEL: "true"}},
            "handler": "kata-old",
        })
        ctx = _kata_ctx([
            {"name": "kata-qemu-nvidia-gpu", "nodeSelector": {"gpu-type": "a100"}},
            {"name": "kata-nvidia-gpu"},
        ])

        state = runtime_class(store, bundled("state-kata-manager", "RuntimeClass"), ctx, "state-kata-manager")

        assert state == State.READY
        assert store.names("RuntimeClass") == ["kata-nvidia-gpu", "kata-qemu-nvidia-gpu"]
        qemu = store.find("RuntimeClass", "kata-qemu-nvidia-gpu", namespace=None)
        assert qemu["handler"] == "kata-qemu-nvidia-gpu"
        assert qemu["metadata"]["labels"][KATA_RUNTIME_CLASS_LABEL] == "true"
        assert qemu["scheduling"]["nodeSelector"] == {
            "nvidia.com/gpu.workload.config": "vm-passthrough",
            "gpu-type": "a100",
        }

    def test_kata_class_may_not_shadow_operand_class(self, store):
        ctx = _kata_ctx([{"name": "nvidia"}])
        with pytest.raises(ConfigurationError, match="conflicts"):
            runtime_class(store, bundled("state-kata-manager", "RuntimeClass"), ctx, "state-kata-manager")


# ---------------------------------------------------------------------------
# Removal of disabled states
# ---------------------------------------------------------------------------


class TestRemoveManifest:
    def test_deletes_object(self, store, ctx):
        manifest = bundled("state-dcgm", "DaemonSet")
        store.add(place_manifest(manifest, ctx))
        assert remove_manifest(store, manifest, ctx, "state-dcgm") == State.DISABLED
        assert store.names("DaemonSet") == []

    def test_missing_object_is_fine(self, store, ctx):
        assert remove_manifest(store, bundled("state-dcgm", "Service"), ctx, "state-dcgm") == State.DISABLED

    def test_driver_variants_removed(self, store, ctx):
        store.add(daemonset("nvidia-driver-daemonset-5.15.0-91-generic-ubuntu22.04"))
        store.add(daemonset("nvidia-driver-daemonset-6.8.0-31-generic-ubuntu22.04"))
        remove_manifest(store, bundled("state-driver", "DaemonSet"), ctx, "state-driver")
        assert store.names("DaemonSet") == []

    def test_operand_runtime_class_kept(self, store, ctx):
        manifest = bundled("pre-requisites", "RuntimeClass", "FILLED_BY_OPERATOR")
        remove_manifest(store, manifest, ctx, "state-container-toolkit")
        assert store.names("RuntimeClass") == ["nvidia"]

    def test_kata_runtime_classes_removed(self, store, ctx):
        store.add({
            "apiVersion": "node.k8s.io/v1",
            "kind": "RuntimeClass",
            "metadata": {"name": "kata-nvidia-gpu", "labels": {KATA_RUNTIME_CLASS_LABEL: "true"}},
        })
        remove_manifest(store, bundled("state-kata-manager", "RuntimeClass"), ctx, "state-kata-manager")
        assert store.names("RuntimeClass") == []

    def test_monitoring_kinds_skipped_when_not_served(self):
        store = FakeObjectStore(missing_kinds=("ServiceMonitor",))
        ctx = make_context(facts=make_facts(service_monitor_supported=False))
        manifest = bundled("state-dcgm-exporter", "ServiceMonitor")
        assert remove_manifest(store, manifest, ctx, "state-dcgm-exporter") == State.DISABLED
