from __future__ import annotations

import logging
from datetime import UTC, datetime

from kubernetes.client import CoreV1Api, CoreV1Event, V1EventSource, V1ObjectMeta, V1ObjectReference

from controller.src.models import API_VERSION, KIND, Application

LOGGER = logging.getLogger(__name__)

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"

SUCCESS_SYNCED = "SuccessSynced"
ERR_RESOURCE_EXISTS = "ErrResourceExists"

MESSAGE_RESOURCE_SYNCED = "Application synced successfully"
MESSAGE_RESOURCE_EXISTS = 'Resource "{name}" already exists and is not managed by Application'


class EventRecorder:
    """Publish core/v1 Events about Applications so ``kubectl describe`` shows sync outcomes.

    Event delivery is best effort: failures are logged and never fail the
    sync that produced them.
    """

    def __init__(self, core_api: CoreV1Api, component: str = "application-controller") -> None:
        self.core_api = core_api
        self.component = component

    def event(self, application: Application, event_type: str, reason: str, message: str) -> None:
        now = datetime.now(UTC)
        body = CoreV1Event(
            metadata=V1ObjectMeta(
                generate_name=f"{application.name}.",
                namespace=application.namespace,
            ),
            involved_object=V1ObjectReference(
                api_version=API_VERSION,
                kind=KIND,
                name=application.name,
                namespace=application.namespace,
                uid=application.uid,
                resource_version=application.resource_version,
            ),
            reason=reason,
            message=message,
            type=event_type,
            source=V1EventSource(component=self.component),
            first_timestamp=now,
            last_timestamp=now,
            count=1,
        )
        try:
            self.core_api.create_namespaced_event(namespace=application.namespace, body=body)
        except Exception:
            LOGGER.warning(
                "Failed to record %s event for Application %s",
                reason,
                application.key,
                exc_info=True,
            )
