from __future__ import annotations

from typing import Any

from kubernetes.client import V1OwnerReference

from controller.src.models import API_VERSION, GROUP, KIND, Application, get_field, object_meta


def controller_of(obj: Any) -> Any | None:
    """Return the owner reference marked ``controller: true``, if any.

    At most one owner reference may be the controller, so the first match is
    the only one.
    """
    for ref in object_meta(obj, "owner_references") or []:
        if get_field(ref, "controller"):
            return ref
    return None


def is_application_ref(ref: Any) -> bool:
    """Return True if ``ref`` points at an Application of this API group, any version."""
    api_version = get_field(ref, "api_version") or ""
    return get_field(ref, "kind") == KIND and api_version.split("/", 1)[0] == GROUP


def is_controlled_by(obj: Any, application: Application) -> bool:
    """Return True if ``obj`` names ``application`` as its controller.

    The UID check rejects objects left behind by a deleted Application that
    has since been recreated under the same name.
    """
    ref = controller_of(obj)
    if ref is None:
        return False
    if not is_application_ref(ref):
        return False
    if application.uid:
        return get_field(ref, "uid") == application.uid
    return get_field(ref, "name") == application.name


def new_controller_ref(application: Application) -> V1OwnerReference:
    return V1OwnerReference(
        api_version=API_VERSION,
        kind=KIND,
        name=application.name,
        uid=application.uid or "",
        controller=True,
        block_owner_deletion=True,
    )
