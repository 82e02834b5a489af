"""
Abstraction for reading and writing objects in the cluster's object store.

ObjectStore is the interface the reconciler depends on.
KubernetesObjectStore talks to a real API server through the dynamic client,
so any kind (including custom resources such as ServiceMonitor) can be
handled as a plain dict.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from kubernetes import client, config, dynamic
from kubernetes.dynamic.exceptions import DynamicApiError, ResourceNotFoundError

logger = logging.getLogger(__name__)


class StoreError(RuntimeError):
    """Raised when an object-store call fails."""


class NotFoundError(StoreError):
    """Raised when the requested object does not exist."""


class ConflictError(StoreError):
    """Raised on a stale resourceVersion or when an object already exists."""


def object_key(obj: dict[str, Any]) -> tuple[str, str, str, str]:
    """Return (apiVersion, kind, namespace, name) for an object dict."""
    meta = obj.get("metadata") or {}
    return (
        obj.get("apiVersion", ""),
        obj.get("kind", ""),
        meta.get("namespace") or "",
        meta.get("name", ""),
    )


class ObjectStore:
    """
    Create/get/update/delete/list access to cluster objects as plain dicts.
    Implementations: KubernetesObjectStore (API server) and in-memory fakes.
    """

    def get(
        self,
        api_version: str,
        kind: str,
        name: str,
        namespace: Optional[str] = None,
    ) -> dict[str, Any]:
        """Return the object. Raises NotFoundError if it does not exist."""
        raise NotImplementedError

    def list(
        self,
        api_version: str,
        kind: str,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        """Return all objects of a kind matching the label selector."""
        raise NotImplementedError

    def create(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Create the object. Raises ConflictError if it already exists."""
        raise NotImplementedError

    def update(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Replace the object. Raises ConflictError on a stale resourceVersion."""
        raise NotImplementedError

    def delete(self, obj: dict[str, Any]) -> None:
        """Delete the object. Raises NotFoundError if it does not exist."""
        raise NotImplementedError

    def has_kind(self, api_version: str, kind: str) -> bool:
        """Return True if the API server serves this kind."""
        raise NotImplementedError

    def server_version(self) -> str:
        """Return the API server's gitVersion, e.g. ``v1.29.3``."""
        raise NotImplementedError


def _translate(exc: DynamicApiError, what: str) -> StoreError:
    if exc.status == 404:
        return NotFoundError(f"{what} not found")
    if exc.status == 409:
        return ConflictError(f"{what}: {exc.reason}")
    return StoreError(f"{what}: {exc.status} {exc.reason}")


class KubernetesObjectStore(ObjectStore):
    """ObjectStore backed by the Kubernetes dynamic client."""

    def __init__(self, api_client: Optional[client.ApiClient] = None) -> None:
        self.api_client = api_client or client.ApiClient()
        self.dynamic = dynamic.DynamicClient(self.api_client)

    @classmethod
    def from_environment(cls, kubeconfig: Optional[str] = None) -> "KubernetesObjectStore":
        """Load in-cluster config, falling back to a kubeconfig file."""
        if kubeconfig:
            config.load_kube_config(config_file=kubeconfig)
        else:
            try:
                config.load_incluster_config()
            except config.ConfigException:
                config.load_kube_config()
        return cls()

    def _resource(self, api_version: str, kind: str):
        try:
            return self.dynamic.resources.get(api_version=api_version, kind=kind)
        except ResourceNotFoundError as exc:
            raise NotFoundError(f"kind {api_version}/{kind} is not served") from exc

    def get(self, api_version, kind, name, namespace=None):
        resource = self._resource(api_version, kind)
        try:
            return resource.get(name=name, namespace=namespace).to_dict()
        except DynamicApiError as exc:
            raise _translate(exc, f"{kind} {namespace or ''}/{name}") from exc

    def list(self, api_version, kind, namespace=None, label_selector=None):
        resource = self._resource(api_version, kind)
        try:
            result = resource.get(namespace=namespace, label_selector=label_selector)
        except DynamicApiError as exc:
            raise _translate(exc, f"{kind} list") from exc
        return result.to_dict().get("items") or []

    def create(self, obj):
        api_version, kind, namespace, name = object_key(obj)
        resource = self._resource(api_version, kind)
        try:
            return resource.create(body=obj, namespace=namespace or None).to_dict()
        except DynamicApiError as exc:
            raise _translate(exc, f"{kind} {namespace}/{name}") from exc

    def update(self, obj):
        api_version, kind, namespace, name = object_key(obj)
        resource = self._resource(api_version, kind)
        try:
            return resource.replace(body=obj, name=name, namespace=namespace or None).to_dict()
        except DynamicApiError as exc:
            raise _translate(exc, f"{kind} {namespace}/{name}") from exc

    def delete(self, obj):
        api_version, kind, namespace, name = object_key(obj)
        resource = self._resource(api_version, kind)
        try:
            resource.delete(name=name, namespace=namespace or None)
        except DynamicApiError as exc:
            raise _translate(exc, f"{kind} {namespace}/{name}") from exc

    def has_kind(self, api_version, kind):
        try:
            self.dynamic.resources.get(api_version=api_version, kind=kind)
        except ResourceNotFoundError:
            return False
        return True

    def server_version(self):
        return client.VersionApi(self.api_client).get_code().git_version
