from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from controller.src.errors import InvalidKeyError
from controller.src.models import object_meta


@dataclass(frozen=True)
class DeletedFinalStateUnknown:
    """Tombstone for an object whose delete event was missed.

    The informer emits one when a relist no longer contains an object it had
    cached. ``obj`` is the last state the cache saw and may be stale.
    """

    key: str
    obj: Any


def meta_namespace_key(obj: Any) -> str:
    """Return ``<namespace>/<name>`` (or ``<name>`` when cluster scoped) for ``obj``."""
    name = object_meta(obj, "name")
    if not name:
        raise InvalidKeyError(f"object has no metadata.name: {obj!r}")
    namespace = object_meta(obj, "namespace")
    if namespace:
        return f"{namespace}/{name}"
    return name


def deletion_handling_key(obj: Any) -> str:
    if isinstance(obj, DeletedFinalStateUnknown):
        return obj.key
    return meta_namespace_key(obj)


def split_meta_namespace_key(key: str) -> tuple[str, str]:
    """Split a queue key into ``(namespace, name)``; namespace is empty when cluster scoped."""
    parts = key.split("/")
    if len(parts) == 1:
        namespace, name = "", parts[0]
    elif len(parts) == 2:
        namespace, name = parts
    else:
        raise InvalidKeyError(f"unexpected key format: {key!r}")
    if not name:
        raise InvalidKeyError(f"unexpected key format: {key!r}")
    return namespace, name
