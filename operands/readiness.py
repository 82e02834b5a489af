"""
DaemonSet readiness.

A DaemonSet is ready when none of its pods are unavailable.  With the
``OnDelete`` update strategy pods are never rolled automatically, so the
running pods must additionally carry the revision hash of the DaemonSet's
newest ControllerRevision; otherwise stale pods would look ready.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from operands.constants import CONTROLLER_REVISION_HASH_LABEL

if TYPE_CHECKING:
    from shared.kube_client import ObjectStore

logger = logging.getLogger(__name__)


class State(str, Enum):
    """Outcome of one state or one object in a reconciliation pass."""

    READY = "ready"
    NOT_READY = "notReady"
    DISABLED = "disabled"

    def __str__(self) -> str:
        return self.value


def aggregate(states: list[State]) -> State:
    """NotReady wins over Ready; Disabled only when everything is disabled."""
    if not states:
        return State.READY
    if State.NOT_READY in states:
        return State.NOT_READY
    if all(state == State.DISABLED for state in states):
        return State.DISABLED
    return State.READY


def selector_string(labels: dict[str, str]) -> str:
    return ",".join(f"{key}={value}" for key, value in sorted(labels.items()))


def _owned_pods(store: ObjectStore, ds: dict[str, Any]) -> list[dict[str, Any]]:
    metadata = ds["metadata"]
    template_labels = ds["spec"]["template"]["metadata"].get("labels") or {}
    pods = store.list("v1", "Pod", metadata.get("namespace"), selector_string(template_labels))
    owned = []
    for pod in pods:
        owners = pod["metadata"].get("ownerReferences") or []
        if not owners:
            logger.warning("Pod %s has no owner, ignoring", pod["metadata"]["name"])
            continue
        if owners[0].get("uid") == metadata.get("uid"):
            owned.append(pod)
    return owned


def latest_revision_hash(store: ObjectStore, ds: dict[str, Any]) -> Optional[str]:
    """Hash of the newest ControllerRevision owned by *ds*, None if there is none."""
    metadata = ds["metadata"]
    selector = ds["spec"].get("selector", {}).get("matchLabels") or {}
    revisions = store.list("apps/v1", "ControllerRevision", metadata.get("namespace"), selector_string(selector))
    prefix = f"{metadata['name']}-"
    revisions = [r for r in revisions if r["metadata"]["name"].startswith(prefix)]
    if not revisions:
        return None
    newest = max(revisions, key=lambda r: int(r.get("revision", 0)))
    return newest["metadata"]["name"][len(prefix):]


def _pod_ready(pod: dict[str, Any]) -> bool:
    status = pod.get("status") or {}
    if status.get("phase") != "Running":
        return False
    return all(cs.get("ready") for cs in status.get("containerStatuses") or [])


def daemonset_readiness(store: ObjectStore, ds: dict[str, Any]) -> State:
    """
    Compute readiness of an applied DaemonSet.

    Args:
        store: Object store holding the DaemonSet's pods and revisions
        ds: DaemonSet as last read from the store (with status)

    Returns:
        State.READY or State.NOT_READY
    """
    name = ds["metadata"]["name"]
    status = ds.get("status") or {}

    if status.get("desiredNumberScheduled", 0) == 0:
        logger.debug("DaemonSet %s has no pods scheduled", name)
        return State.READY
    if status.get("numberUnavailable", 0) != 0:
        logger.debug("DaemonSet %s has %d unavailable pods", name, status["numberUnavailable"])
        return State.NOT_READY

    strategy = (ds["spec"].get("updateStrategy") or {}).get("type")
    if strategy != "OnDelete":
        return State.READY

    revision_hash = latest_revision_hash(store, ds)
    if revision_hash is None:
        logger.debug("No ControllerRevision found for DaemonSet %s yet", name)
        return State.NOT_READY

    pods = _owned_pods(store, ds)
    if not pods:
        logger.debug("No pods found for DaemonSet %s", name)
        return State.NOT_READY
    for pod in pods:
        pod_hash = (pod["metadata"].get("labels") or {}).get(CONTROLLER_REVISION_HASH_LABEL)
        if pod_hash != revision_hash:
            logger.debug("Pod %s runs revision %s, expected %s", pod["metadata"]["name"], pod_hash, revision_hash)
            return State.NOT_READY
        if not _pod_ready(pod):
            logger.debug("Pod %s is not ready", pod["metadata"]["name"])
            return State.NOT_READY
    return State.READY
