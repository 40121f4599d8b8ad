from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

GROUP = "source.kubesrun.top"
VERSION = "v1alpha1"
API_VERSION = f"{GROUP}/{VERSION}"
KIND = "Application"
PLURAL = "applications"

DEFAULT_REPLICAS = 1

# Typed client models expose snake_case attributes, custom-object dicts camelCase.
_DICT_FIELD_NAMES = {
    "resource_version": "resourceVersion",
    "owner_references": "ownerReferences",
    "api_version": "apiVersion",
    "available_replicas": "availableReplicas",
}


def get_field(obj: Any, name: str) -> Any:
    """Read ``name`` from either a typed Kubernetes model or a plain dict."""
    if isinstance(obj, dict):
        return obj.get(_DICT_FIELD_NAMES.get(name, name))
    return getattr(obj, name, None)


def object_meta(obj: Any, name: str) -> Any:
    """Read a ``metadata`` field from either a typed Kubernetes model or a plain dict."""
    metadata = get_field(obj, "metadata")
    if metadata is None:
        return None
    return get_field(metadata, name)


@dataclass(frozen=True)
class Application:
    """Read-only view of an ``Application`` custom object from the cache.

    ``raw`` keeps the object exactly as the API returned it so the status
    writer can submit a copy with only ``status`` changed.
    """

    namespace: str
    name: str
    uid: str | None
    resource_version: str | None
    deployment_name: str
    replicas: int | None
    available_replicas: int | None
    raw: dict[str, Any] = field(repr=False, compare=False)

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> Application:
        metadata = obj.get("metadata") or {}
        spec = obj.get("spec") or {}
        status = obj.get("status") or {}
        replicas = spec.get("replicas")
        available = status.get("availableReplicas")
        return cls(
            namespace=metadata.get("namespace") or "",
            name=metadata.get("name") or "",
            uid=metadata.get("uid"),
            resource_version=metadata.get("resourceVersion"),
            deployment_name=(spec.get("deploymentName") or "").strip(),
            replicas=int(replicas) if replicas is not None else None,
            available_replicas=int(available) if available is not None else None,
            raw=obj,
        )

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}" if self.namespace else self.name

    @property
    def desired_replicas(self) -> int:
        """Replica target with the default applied; an explicit 0 is kept."""
        return DEFAULT_REPLICAS if self.replicas is None else self.replicas

    @property
    def status(self) -> dict[str, Any]:
        return dict(self.raw.get("status") or {})


def deployment_replicas(deployment: Any) -> int | None:
    spec = get_field(deployment, "spec")
    if spec is None:
        return None
    return get_field(spec, "replicas")


def deployment_available_replicas(deployment: Any) -> int | None:
    status = get_field(deployment, "status")
    if status is None:
        return None
    return get_field(status, "available_replicas")
