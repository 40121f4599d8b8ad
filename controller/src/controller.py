from __future__ import annotations

import logging
import threading
import time
from typing import Any

from kubernetes.client import ApiException, AppsV1Api, CoreV1Api, CustomObjectsApi

from controller.src.config import ControllerConfig
from controller.src.deployment import new_deployment, with_replicas
from controller.src.errors import (
    CacheSyncTimeoutError,
    InformerFailedError,
    InvalidApplicationError,
    InvalidKeyError,
    OwnershipConflictError,
    ReconcileError,
)
from controller.src.events import (
    ERR_RESOURCE_EXISTS,
    EVENT_TYPE_NORMAL,
    EVENT_TYPE_WARNING,
    MESSAGE_RESOURCE_EXISTS,
    MESSAGE_RESOURCE_SYNCED,
    SUCCESS_SYNCED,
    EventRecorder,
)
from controller.src.informer import Informer, wait_for_cache_sync
from controller.src.keys import (
    DeletedFinalStateUnknown,
    deletion_handling_key,
    split_meta_namespace_key,
)
from controller.src.kube import (
    application_list_call,
    create_deployment,
    deployment_list_call,
    update_deployment,
)
from controller.src.metrics import METRICS
from controller.src.models import KIND, Application, deployment_replicas, get_field, object_meta
from controller.src.ownership import controller_of, is_application_ref, is_controlled_by
from controller.src.status import update_application_status
from controller.src.workqueue import ItemExponentialFailureRateLimiter, RateLimitingQueue


class ApplicationController:
    """Drives each Application's Deployment toward the replica count the Application asks for.

    Informer callbacks only resolve a reconciliation key and put it on the
    work queue; they never call the API. Worker threads pull keys and run
    :meth:`sync_handler`, which re-reads both caches on every attempt, so
    the event that woke a key up is only a hint and the key is the unit of
    work.

    Failed syncs are requeued with per-key exponential backoff. After
    ``max_retries`` requeues the key is forgotten; a later event for the
    same Application starts a fresh cycle. Ownership conflicts and invalid
    specs take the same path as transient API errors.
    """

    def __init__(
        self,
        apps_api: AppsV1Api,
        custom_api: CustomObjectsApi,
        application_informer: Informer,
        deployment_informer: Informer,
        queue: RateLimitingQueue | None = None,
        recorder: EventRecorder | None = None,
        max_retries: int = 15,
        logger: logging.Logger | None = None,
    ) -> None:
        self.apps_api = apps_api
        self.custom_api = custom_api
        self.application_informer = application_informer
        self.deployment_informer = deployment_informer
        self.queue = queue or RateLimitingQueue()
        self.recorder = recorder
        self.max_retries = max_retries
        self.logger = logger or logging.getLogger(__name__)

        self.ready = threading.Event()
        self._external_stop = threading.Event()

        application_informer.add_event_handler(
            on_add=self.enqueue_application,
            on_update=self._on_application_update,
            on_delete=self.enqueue_application,
        )
        deployment_informer.add_event_handler(
            on_add=self.handle_object,
            on_update=self._on_deployment_update,
            on_delete=self.handle_object,
        )

    # -- key resolution ---------------------------------------------------------

    def enqueue_application(self, obj: Any) -> None:
        """Queue the key of an Application (or of an Application tombstone)."""
        try:
            key = deletion_handling_key(obj)
        except InvalidKeyError as exc:
            self.logger.error("Dropping Application event with malformed key: %s", exc)
            return
        self.queue.add(key)

    def _on_application_update(self, old: Any, new: Any) -> None:
        self.enqueue_application(new)

    def _on_deployment_update(self, old: Any, new: Any) -> None:
        old_version = object_meta(old, "resource_version")
        new_version = object_meta(new, "resource_version")
        if old_version is not None and old_version == new_version:
            # Periodic resync; nothing changed on the Deployment.
            return
        self.handle_object(new)

    def handle_object(self, obj: Any) -> None:
        """Queue the Application that controls a Deployment, if any.

        Deployments without an Application controller reference are not ours
        and are ignored. Deleted Deployments still resolve to their owner, so
        a Deployment removed out from under its Application is recreated.
        """
        if isinstance(obj, DeletedFinalStateUnknown):
            obj = obj.obj

        ref = controller_of(obj)
        if ref is None or not is_application_ref(ref):
            return

        owner_name = get_field(ref, "name")
        namespace = object_meta(obj, "namespace") or ""
        if not owner_name:
            self.logger.error(
                "Dropping Deployment %s/%s event: controller reference has no name",
                namespace,
                object_meta(obj, "name"),
            )
            return

        application = self.application_informer.cache.get(namespace, owner_name)
        if application is None:
            self.logger.debug(
                "Ignoring orphaned Deployment %s/%s of Application %s",
                namespace,
                object_meta(obj, "name"),
                owner_name,
            )
            return
        self.enqueue_application(application)

    # -- reconciliation ---------------------------------------------------------

    def _record(self, application: Application, event_type: str, reason: str, message: str) -> None:
        if self.recorder is not None:
            self.recorder.event(application, event_type, reason, message)

    def sync_handler(self, key: str) -> None:
        """Converge the Deployment of one Application and report its status.

        Safe to run any number of times: a sync with no drift issues no
        Deployment writes, and the status write is skipped when nothing
        changed. Raises on any error that should be retried by the queue.
        """
        try:
            namespace, name = split_meta_namespace_key(key)
        except InvalidKeyError:
            self.logger.error("Invalid resource key in work queue: %s", key)
            return

        obj = self.application_informer.cache.get(namespace, name)
        if obj is None:
            self.logger.info("Application %s in work queue no longer exists", key)
            return

        application = Application.from_object(obj)
        if not application.deployment_name:
            raise InvalidApplicationError(key, "spec.deploymentName must be specified")

        desired = application.desired_replicas
        deployment = self.deployment_informer.cache.get(namespace, application.deployment_name)
        if deployment is None:
            deployment = create_deployment(self.apps_api, new_deployment(application))
            METRICS.deployments_created_total.inc()
            self.logger.info(
                "Created Deployment %s/%s for Application %s with %d replica(s)",
                namespace,
                application.deployment_name,
                key,
                desired,
            )
        elif not is_controlled_by(deployment, application):
            METRICS.ownership_conflicts_total.inc()
            self._record(
                application,
                EVENT_TYPE_WARNING,
                ERR_RESOURCE_EXISTS,
                MESSAGE_RESOURCE_EXISTS.format(name=application.deployment_name),
            )
            raise OwnershipConflictError(key, application.deployment_name)
        else:
            current = deployment_replicas(deployment)
            if current != desired:
                self.logger.info(
                    "Application %s wants %d replica(s), Deployment %s has %s; updating",
                    key,
                    desired,
                    application.deployment_name,
                    current,
                )
                deployment = update_deployment(self.apps_api, with_replicas(deployment, desired))
                METRICS.deployments_updated_total.inc()

        update_application_status(self.custom_api, application, deployment)
        self._record(application, EVENT_TYPE_NORMAL, SUCCESS_SYNCED, MESSAGE_RESOURCE_SYNCED)

    def _handle_error(self, key: str, exc: Exception) -> None:
        requeues = self.queue.num_requeues(key)
        unexpected = not isinstance(exc, (ReconcileError, ApiException))
        if requeues < self.max_retries:
            METRICS.retries_total.inc()
            self.logger.warning(
                "Error syncing Application %s (retry %d/%d): %s",
                key,
                requeues + 1,
                self.max_retries,
                exc,
                exc_info=unexpected,
            )
            self.queue.add_rate_limited(key)
            return

        self.queue.forget(key)
        METRICS.dropped_keys_total.inc()
        self.logger.error(
            "Dropping Application %s out of the queue after %d failed sync(s): %s",
            key,
            requeues + 1,
            exc,
            exc_info=unexpected,
        )

    def process_next_work_item(self) -> bool:
        """Run one dequeue/sync/done cycle. Returns False once the queue is shut down."""
        key = self.queue.get()
        if key is None:
            return False

        started = time.monotonic()
        try:
            self.sync_handler(key)
        except Exception as exc:
            METRICS.syncs_total.labels(result="error").inc()
            self._handle_error(key, exc)
        else:
            METRICS.syncs_total.labels(result="success").inc()
            self.queue.forget(key)
            self.logger.debug("Successfully synced Application %s", key)
        finally:
            METRICS.sync_duration_seconds.observe(time.monotonic() - started)
            self.queue.done(key)
        return True

    def run_worker(self) -> None:
        while self.process_next_work_item():
            pass

    # -- lifecycle --------------------------------------------------------------

    def request_stop(self) -> None:
        """Stop dequeuing immediately; in-flight syncs are allowed to finish."""
        self._external_stop.set()
        self.queue.shut_down()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _failed_informers(self) -> list[str]:
        return [
            informer.kind
            for informer in (self.application_informer, self.deployment_informer)
            if informer.failed
        ]

    def _raise_if_informer_failed(self) -> None:
        failed = self._failed_informers()
        if failed:
            self.ready.clear()
            raise InformerFailedError(
                f"{', '.join(failed)} informer stopped; cached state is no longer updated"
            )

    def run(
        self,
        workers: int = 1,
        shutdown_event: threading.Event | None = None,
        cache_sync_timeout_seconds: float = 60,
    ) -> None:
        """Start informers and workers and block until shutdown.

        1. Starts both informers and waits for their initial list. A timeout
           raises :class:`CacheSyncTimeoutError` rather than reconciling
           against an incomplete view.
           An informer that stops on an authorization error ends the run with
           :class:`InformerFailedError`, before or after the caches synced.
        2. Starts ``workers`` worker threads and marks the controller ready.
        3. On shutdown stops dequeuing, lets in-flight syncs finish, joins
           the workers and stops both informers.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()
        if self.queue.shutting_down:
            # A previous run (e.g. before a leadership handoff) closed the queue.
            self.queue = RateLimitingQueue(self.queue.rate_limiter)

        self.logger.info("Starting Application controller")
        self.application_informer.start()
        self.deployment_informer.start()
        threads: list[threading.Thread] = []
        try:
            self.logger.info("Waiting for informer caches to sync")
            synced = wait_for_cache_sync(
                cache_sync_timeout_seconds,
                self.application_informer,
                self.deployment_informer,
                stopped=lambda: self._should_stop(stop) or bool(self._failed_informers()),
            )
            if not synced:
                self._raise_if_informer_failed()
                if self._should_stop(stop):
                    return
                raise CacheSyncTimeoutError(
                    f"informer caches did not sync within {cache_sync_timeout_seconds}s"
                )

            for index in range(workers):
                thread = threading.Thread(
                    target=self.run_worker,
                    name=f"application-worker-{index}",
                    daemon=True,
                )
                thread.start()
                threads.append(thread)
            self.ready.set()
            self.logger.info("Started %d worker(s)", workers)

            while not self._should_stop(stop):
                self._raise_if_informer_failed()
                stop.wait(timeout=1.0)
        finally:
            self.logger.info("Shutting down workers")
            self.ready.clear()
            self.queue.shut_down()
            for thread in threads:
                thread.join()
            self.application_informer.stop()
            self.deployment_informer.stop()


def build_controller(
    apps_api: AppsV1Api,
    core_api: CoreV1Api,
    custom_api: CustomObjectsApi,
    config: ControllerConfig,
) -> ApplicationController:
    """Construct an :class:`ApplicationController` and its informers from ``config``."""
    application_list_fn, application_list_kwargs = application_list_call(
        custom_api, config.namespace
    )
    deployment_list_fn, deployment_list_kwargs = deployment_list_call(apps_api, config.namespace)

    application_informer = Informer(
        kind=KIND,
        list_fn=application_list_fn,
        list_kwargs=application_list_kwargs,
        resync_period_seconds=config.resync_period_seconds,
    )
    deployment_informer = Informer(
        kind="Deployment",
        list_fn=deployment_list_fn,
        list_kwargs=deployment_list_kwargs,
        resync_period_seconds=config.resync_period_seconds,
    )
    queue = RateLimitingQueue(
        ItemExponentialFailureRateLimiter(
            base_delay=config.retry_base_delay_seconds,
            max_delay=config.retry_max_delay_seconds,
        )
    )
    return ApplicationController(
        apps_api=apps_api,
        custom_api=custom_api,
        application_informer=application_informer,
        deployment_informer=deployment_informer,
        queue=queue,
        recorder=EventRecorder(core_api),
        max_retries=config.max_retries,
    )
