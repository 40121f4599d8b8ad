from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from controller.src.errors import InvalidKeyError
from controller.src.keys import DeletedFinalStateUnknown, deletion_handling_key, meta_namespace_key
from controller.src.metrics import METRICS
from controller.src.models import get_field, object_meta


class ObjectCache:
    """Thread-safe store of the latest known state of each object, keyed by ``namespace/name``.

    Only the owning :class:`Informer` writes to it. Readers get the stored
    objects themselves and must treat them as read-only.
    """

    def __init__(self) -> None:
        self._items: dict[str, Any] = {}
        self._lock = threading.RLock()

    def add(self, obj: Any) -> Any | None:
        """Insert or replace ``obj``; return the previous object stored under its key."""
        key = meta_namespace_key(obj)
        with self._lock:
            previous = self._items.get(key)
            self._items[key] = obj
        return previous

    update = add

    def delete(self, obj: Any) -> Any | None:
        key = deletion_handling_key(obj)
        with self._lock:
            return self._items.pop(key, None)

    def replace(self, objs: list[Any]) -> dict[str, Any]:
        """Swap in a full listing and return the previous contents."""
        new_items = {meta_namespace_key(obj): obj for obj in objs}
        with self._lock:
            previous = self._items
            self._items = new_items
        return previous

    def get_by_key(self, key: str) -> Any | None:
        with self._lock:
            return self._items.get(key)

    def get(self, namespace: str, name: str) -> Any | None:
        return self.get_by_key(f"{namespace}/{name}" if namespace else name)

    def list(self) -> list[Any]:
        with self._lock:
            return list(self._items.values())

    def list_keys(self) -> list[str]:
        with self._lock:
            return list(self._items.keys())


@dataclass(frozen=True)
class EventHandler:
    on_add: Callable[[Any], None] | None = None
    on_update: Callable[[Any, Any], None] | None = None
    on_delete: Callable[[Any], None] | None = None


class Informer:
    """List-then-watch mirror of one resource kind with add/update/delete callbacks.

    The run loop:

    1. Lists the resource, replaces the cache, and emits add/update events
       for every listed object (plus a :class:`DeletedFinalStateUnknown`
       delete for every cached object missing from the listing).
    2. Watches from the list's ``resourceVersion``, applying each event to
       the cache before calling handlers.
    3. On ``410 Gone`` re-lists; on ``401``/``403`` stops with an error
       (RBAC problems are not transient); on other errors backs off
       exponentially with jitter, capped at 30 s.
    4. Every ``resync_period_seconds`` (when > 0) replays the cache to the
       update handlers so missed edges are eventually re-delivered.

    Handlers run on the informer thread and must only enqueue work.
    """

    def __init__(
        self,
        kind: str,
        list_fn: Callable[..., Any],
        list_kwargs: dict[str, Any] | None = None,
        resync_period_seconds: int = 0,
        watch_timeout_seconds: int = 30,
        logger: logging.Logger | None = None,
    ) -> None:
        self.kind = kind
        self.list_fn = list_fn
        self.list_kwargs = dict(list_kwargs or {})
        self.resync_period_seconds = resync_period_seconds
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)

        self.cache = ObjectCache()
        self._handlers: list[EventHandler] = []
        self._resource_version: str | None = None
        self._synced = threading.Event()
        self._stop = threading.Event()
        self._failed = threading.Event()
        self._thread: threading.Thread | None = None
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    @property
    def has_synced(self) -> bool:
        """Return True once the initial full list has been stored."""
        return self._synced.is_set()

    @property
    def failed(self) -> bool:
        """Return True if list/watch stopped for good on an authorization error."""
        return self._failed.is_set()

    def add_event_handler(
        self,
        on_add: Callable[[Any], None] | None = None,
        on_update: Callable[[Any, Any], None] | None = None,
        on_delete: Callable[[Any], None] | None = None,
    ) -> None:
        self._handlers.append(EventHandler(on_add=on_add, on_update=on_update, on_delete=on_delete))

    def start(self) -> None:
        """Start the list/watch loop on a daemon thread if not already running."""
        if self._thread is not None and self._thread.is_alive():
            if not self._stop.is_set():
                return
            # A previous run is still unwinding its watch; it exits within one watch timeout.
            self._thread.join()
        self._stop.clear()
        self._synced.clear()
        self._failed.clear()
        self._thread = threading.Thread(
            target=self.run,
            name=f"informer-{self.kind.lower()}",
            daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        """Stop event delivery and interrupt any open watch stream."""
        self._stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout=timeout)

    # -- event dispatch ---------------------------------------------------------

    def _dispatch(self, callback_name: str, *args: Any) -> None:
        for handler in self._handlers:
            callback = getattr(handler, callback_name)
            if callback is None:
                continue
            try:
                callback(*args)
            except Exception:
                self.logger.exception("%s %s handler failed", self.kind, callback_name)

    def _apply_event(self, event_type: str, obj: Any) -> None:
        try:
            meta_namespace_key(obj)
        except InvalidKeyError:
            self.logger.warning(
                "Dropping %s %s event for object without a name", self.kind, event_type
            )
            return

        if event_type == "ADDED":
            previous = self.cache.add(obj)
            if previous is None:
                self._dispatch("on_add", obj)
            else:
                self._dispatch("on_update", previous, obj)
        elif event_type == "MODIFIED":
            previous = self.cache.update(obj)
            if previous is None:
                self._dispatch("on_add", obj)
            else:
                self._dispatch("on_update", previous, obj)
        elif event_type == "DELETED":
            self.cache.delete(obj)
            self._dispatch("on_delete", obj)

    def resync(self) -> None:
        """Replay every cached object to the update handlers."""
        for obj in self.cache.list():
            self._dispatch("on_update", obj, obj)

    # -- list/watch -------------------------------------------------------------

    def _list_and_replace(self) -> None:
        response = self.list_fn(**self.list_kwargs)
        items: list[Any] = []
        for obj in get_field(response, "items") or []:
            if not object_meta(obj, "name"):
                self.logger.warning("Skipping listed %s object without a name", self.kind)
                continue
            items.append(obj)
        self._resource_version = object_meta(response, "resource_version")

        previous = self.cache.replace(items)
        for obj in items:
            old = previous.pop(meta_namespace_key(obj), None)
            if old is None:
                self._dispatch("on_add", obj)
            else:
                self._dispatch("on_update", old, obj)
        for key, old in previous.items():
            self._dispatch("on_delete", DeletedFinalStateUnknown(key=key, obj=old))

        self._synced.set()
        self.logger.info(
            "Listed %d %s object(s) at resourceVersion %s",
            len(items),
            self.kind,
            self._resource_version,
        )

    def _watch_timeout(self, next_resync: float | None) -> int:
        if next_resync is None:
            return self.watch_timeout_seconds
        remaining = int(next_resync - time.monotonic())
        return max(1, min(self.watch_timeout_seconds, remaining))

    def _watch_once(self, next_resync: float | None) -> None:
        watcher = watch.Watch()
        with self._watcher_lock:
            self._active_watcher = watcher
        try:
            stream = watcher.stream(
                self.list_fn,
                resource_version=self._resource_version,
                timeout_seconds=self._watch_timeout(next_resync),
                **self.list_kwargs,
            )
            for event in stream:
                if self._stop.is_set():
                    break

                event_type = str(event.get("type", ""))
                obj = event.get("object")
                if event_type == "ERROR":
                    code = get_field(obj, "code") if obj is not None else None
                    raise ApiException(status=code or 500, reason="watch error event")
                if obj is None:
                    continue

                resource_version = object_meta(obj, "resource_version")
                if resource_version:
                    self._resource_version = resource_version
                if event_type == "BOOKMARK":
                    continue
                self._apply_event(event_type, obj)
        finally:
            watcher.stop()
            with self._watcher_lock:
                if self._active_watcher is watcher:
                    self._active_watcher = None

    def run(self) -> None:
        """Block running the list/watch loop until :meth:`stop` is called."""
        need_list = True
        backoff_seconds = 1
        watch_stream_count = 0
        next_resync = (
            time.monotonic() + self.resync_period_seconds
            if self.resync_period_seconds > 0
            else None
        )

        while not self._stop.is_set():
            try:
                if need_list:
                    self._list_and_replace()
                    need_list = False

                if next_resync is not None and time.monotonic() >= next_resync:
                    self.resync()
                    next_resync = time.monotonic() + self.resync_period_seconds

                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(kind=self.kind).inc()
                watch_stream_count += 1
                self._watch_once(next_resync)
                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    # etcd compacted past our resourceVersion; re-list and resume.
                    self.logger.warning("%s watch resource version expired, re-listing", self.kind)
                    self._resource_version = None
                    need_list = True
                    continue

                METRICS.watch_errors_total.labels(kind=self.kind).inc()
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied for %s list/watch (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        self.kind,
                        exc.status,
                    )
                    self._failed.set()
                    self._stop.set()
                    break

                self.logger.exception("Kubernetes API %s list/watch error", self.kind)
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                self._stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                METRICS.watch_errors_total.labels(kind=self.kind).inc()
                self.logger.exception("Unexpected %s list/watch error", self.kind)
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                self._stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)


def wait_for_cache_sync(
    timeout_seconds: float,
    *informers: Informer,
    stopped: Callable[[], bool] = lambda: False,
    poll_interval_seconds: float = 0.1,
) -> bool:
    """Wait until every informer has completed its initial list.

    Returns ``False`` if ``stopped()`` becomes true or ``timeout_seconds``
    elapses first.
    """
    deadline = time.monotonic() + timeout_seconds
    while not all(informer.has_synced for informer in informers):
        if stopped():
            return False
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False
        time.sleep(min(poll_interval_seconds, remaining))
    return True
