from __future__ import annotations

import copy
import logging
from typing import Any

from kubernetes.client import CustomObjectsApi

from controller.src.kube import replace_application_status
from controller.src.metrics import METRICS
from controller.src.models import Application, deployment_available_replicas

LOGGER = logging.getLogger(__name__)


def compute_status(application: Application, deployment: Any) -> dict[str, Any]:
    """Return the Application status implied by the latest observed Deployment.

    A Deployment that does not report ``availableReplicas`` yet (for example
    the object returned by a create) keeps the previously recorded value, or
    0 when nothing was recorded.
    """
    status = application.status
    available = deployment_available_replicas(deployment)
    if available is None:
        available = application.available_replicas
    if available is None:
        available = 0
    status["availableReplicas"] = int(available)
    return status


def update_application_status(
    custom_api: CustomObjectsApi,
    application: Application,
    deployment: Any,
) -> bool:
    """Write the computed status through the ``status`` subresource.

    The write is skipped when the computed status equals the cached one.
    Otherwise a deep copy of the cached object, with only ``status``
    replaced, is submitted; the cached object itself is never modified.
    Returns True when a write was issued.
    """
    status = compute_status(application, deployment)
    if status == application.status:
        LOGGER.debug("Status of Application %s is unchanged; skipping update", application.key)
        return False

    body = copy.deepcopy(application.raw)
    body["status"] = status
    replace_application_status(custom_api, body)
    METRICS.status_updates_total.inc()
    LOGGER.debug(
        "Updated status of Application %s: availableReplicas=%s",
        application.key,
        status["availableReplicas"],
    )
    return True
