from __future__ import annotations

from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock

from controller.src.metrics import METRICS
from controller.src.models import Application
from controller.src.status import compute_status, update_application_status


def make_application(status: dict[str, Any] | None = None) -> Application:
    obj: dict[str, Any] = {
        "apiVersion": "source.kubesrun.top/v1alpha1",
        "kind": "Application",
        "metadata": {"name": "demo", "namespace": "apps", "uid": "uid-1"},
        "spec": {"deploymentName": "web", "replicas": 2},
    }
    if status is not None:
        obj["status"] = status
    return Application.from_object(obj)


def make_deployment(available: int | None) -> SimpleNamespace:
    return SimpleNamespace(status=SimpleNamespace(available_replicas=available))


def test_compute_status_copies_available_replicas() -> None:
    assert compute_status(make_application(), make_deployment(2)) == {"availableReplicas": 2}


def test_compute_status_keeps_previous_value_when_deployment_reports_none() -> None:
    application = make_application(status={"availableReplicas": 1})

    assert compute_status(application, make_deployment(None)) == {"availableReplicas": 1}
    assert compute_status(application, SimpleNamespace(status=None)) == {"availableReplicas": 1}


def test_compute_status_defaults_to_zero() -> None:
    assert compute_status(make_application(), make_deployment(None)) == {"availableReplicas": 0}


def test_compute_status_preserves_unrelated_fields() -> None:
    application = make_application(status={"availableReplicas": 1, "note": "kept"})

    assert compute_status(application, make_deployment(2)) == {
        "availableReplicas": 2,
        "note": "kept",
    }


def test_update_writes_copy_through_status_subresource() -> None:
    custom_api = MagicMock()
    application = make_application()
    before = METRICS.status_updates_total._value.get()

    assert update_application_status(custom_api, application, make_deployment(2)) is True

    call_kwargs = custom_api.replace_namespaced_custom_object_status.call_args.kwargs
    assert call_kwargs["name"] == "demo"
    assert call_kwargs["namespace"] == "apps"
    assert call_kwargs["body"]["status"] == {"availableReplicas": 2}
    assert call_kwargs["body"]["spec"] == {"deploymentName": "web", "replicas": 2}
    assert "status" not in application.raw
    assert METRICS.status_updates_total._value.get() - before == 1


def test_update_skips_when_status_unchanged() -> None:
    custom_api = MagicMock()
    application = make_application(status={"availableReplicas": 2})

    assert update_application_status(custom_api, application, make_deployment(2)) is False
    custom_api.replace_namespaced_custom_object_status.assert_not_called()
