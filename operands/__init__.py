"""
GPU operand lifecycle controller.

Turns a ClusterPolicy plus facts probed from the cluster into operand
objects and keeps the cluster converged on them:
- Per-operand DaemonSet transforms (images, env, runtime wiring, validators)
- Variant expansion per kernel version or per OpenShift OS image revision
- An ordered, fingerprint-based reconciliation state machine
"""

from operands.config import PolicySpec, load_policy, parse_policy
from operands.errors import ConfigurationError, OperandError
from operands.readiness import State
from operands.state_manager import PassResult, StateManager
from operands.transforms import RenderContext, transform_daemonset

__all__ = [
    "ConfigurationError",
    "OperandError",
    "PassResult",
    "PolicySpec",
    "RenderContext",
    "State",
    "StateManager",
    "load_policy",
    "parse_policy",
    "transform_daemonset",
]
