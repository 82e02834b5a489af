#!/usr/bin/env python3
"""
Reconcile GPU operands against a cluster, or render them offline.

Usage:
  gpu-operands reconcile --policy cluster-policy.yaml          # loop until interrupted
  gpu-operands reconcile --policy-name cluster-policy --once   # one pass, ClusterPolicy read from the cluster
  gpu-operands render --policy cluster-policy.yaml --runtime containerd --kernel 5.15.0-91-generic --os-tag ubuntu22.04
"""

from __future__ import annotations

import argparse
import logging
import sys
import time

import yaml

from operands.assets import load_all_states
from operands.config import Settings, load_policy, parse_policy
from operands.constants import SUPPORTED_RUNTIMES
from operands.controls import place_manifest
from operands.errors import ConfigurationError, OperandError
from operands.facts import ClusterFacts
from operands.readiness import State
from operands.state_manager import PassResult, StateManager, is_state_enabled
from operands.transforms import RenderContext, transform_daemonset
from operands.variants import variant_contexts
from shared.kube_client import KubernetesObjectStore, StoreError

logger = logging.getLogger(__name__)

CLUSTER_POLICY_API = "nvidia.com/v1"

EXIT_READY = 0
EXIT_NOT_READY = 1
EXIT_CONFIG_ERROR = 2


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Reconcile the GPU software stack described by a ClusterPolicy.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s reconcile --policy cluster-policy.yaml --once
  %(prog)s render --policy cluster-policy.yaml --runtime crio --openshift 4.15.0
""",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity (default: INFO).",
    )

    subparsers = parser.add_subparsers(dest="command", help="Action to perform")

    reconcile = subparsers.add_parser("reconcile", help="Reconcile operands against the cluster")
    source = reconcile.add_mutually_exclusive_group(required=True)
    source.add_argument("--policy", help="Path to a ClusterPolicy YAML file.")
    source.add_argument("--policy-name", help="Name of the ClusterPolicy object in the cluster.")
    reconcile.add_argument("--once", action="store_true", help="Run a single pass and exit.")
    reconcile.add_argument("--kubeconfig", help="Kubeconfig file (default: in-cluster, then ~/.kube/config).")

    render = subparsers.add_parser("render", help="Print derived operand objects without a cluster")
    render.add_argument("--policy", required=True, help="Path to a ClusterPolicy YAML file.")
    render.add_argument("--runtime", required=True, choices=SUPPORTED_RUNTIMES, help="Container runtime of the nodes.")
    render.add_argument("--kernel", default="", help="Kernel full version of the GPU nodes.")
    render.add_argument("--os-tag", default="", help="OS tag of the GPU nodes, e.g. ubuntu22.04.")
    render.add_argument("--openshift", default="", help="OpenShift version, when rendering for OpenShift.")
    render.add_argument("--k8s-version", default="v1.30.0", help="Kubernetes server version.")
    render.add_argument("--namespace", default="gpu-operator", help="Operator namespace.")

    return parser.parse_args(argv)


def print_pass_summary(result: PassResult) -> None:
    print("\n" + "=" * 60)
    print(f"Reconciliation pass: {result.status}")
    print("=" * 60)
    for state in result.states:
        line = f"  {state.name:<32} {state.state}"
        if state.error:
            line += f"  ({state.error})"
        print(line)
    if result.error is not None:
        print(f"Configuration error: {result.error}")


def _exit_code(result: PassResult) -> int:
    if result.error is not None:
        return EXIT_CONFIG_ERROR
    if result.status == State.NOT_READY:
        return EXIT_NOT_READY
    return EXIT_READY


def run_reconcile(args: argparse.Namespace) -> int:
    try:
        settings = Settings()
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    store = KubernetesObjectStore.from_environment(args.kubeconfig)
    manager = StateManager(store, settings.namespace, settings.assets_dir, settings.os_release_path)

    while True:
        # the policy is re-read on every pass
        try:
            if args.policy:
                policy = load_policy(args.policy)
            else:
                policy = parse_policy(store.get(CLUSTER_POLICY_API, "ClusterPolicy", args.policy_name))
        except (FileNotFoundError, yaml.YAMLError, ConfigurationError) as e:
            print(f"Error: {e}", file=sys.stderr)
            return EXIT_CONFIG_ERROR
        except StoreError as e:
            logger.warning("Could not read ClusterPolicy %s: %s", args.policy_name, e)
            result = PassResult(State.NOT_READY)
        else:
            result = manager.reconcile(policy)
            print_pass_summary(result)

        if args.once:
            return _exit_code(result)
        time.sleep(settings.reconcile_interval_sec)


def render_facts(args: argparse.Namespace, use_precompiled: bool) -> ClusterFacts:
    """Cluster facts for offline rendering, taken from the command line."""
    facts = ClusterFacts(
        runtime=args.runtime,
        has_gpu_nodes=True,
        primary_kernel=args.kernel,
        primary_os_tag=args.os_tag,
        openshift_version=args.openshift,
        k8s_version=args.k8s_version,
        service_monitor_supported=True,
    )
    if use_precompiled and args.kernel:
        facts.kernel_versions = {args.kernel: args.os_tag}
    if args.openshift:
        facts.os_release = {"OPENSHIFT_VERSION": ".".join(args.openshift.split(".")[:2])}
    return facts


def run_render(args: argparse.Namespace) -> int:
    try:
        policy = load_policy(args.policy)
    except (FileNotFoundError, yaml.YAMLError, ConfigurationError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    facts = render_facts(args, policy.driver.use_precompiled)
    ctx = RenderContext(policy, facts, args.namespace)

    documents = []
    try:
        for assets in load_all_states():
            if not is_state_enabled(assets.name, policy):
                continue
            for manifest in assets.for_platform(facts.is_openshift):
                if manifest.kind != "DaemonSet":
                    documents.append(place_manifest(manifest.obj, ctx))
                    continue
                for variant_ctx in variant_contexts(manifest.name, ctx):
                    documents.append(transform_daemonset(manifest.obj, variant_ctx))
    except OperandError as e:
        # ConfigMap-backed settings need a cluster to resolve
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    yaml.safe_dump_all(documents, sys.stdout, sort_keys=False)
    return EXIT_READY


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "reconcile":
        return run_reconcile(args)
    if args.command == "render":
        return run_render(args)

    print("Error: no command specified. Use one of: reconcile, render", file=sys.stderr)
    return 1


if __name__ == "__main__":
    sys.exit(main())
