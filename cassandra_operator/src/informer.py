from __future__ import annotations

import logging
import math
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from cassandra_operator.src.metrics import METRICS


@dataclass(frozen=True)
class Live:
    """A notification carrying an object as observed by the watch."""

    obj: Any


@dataclass(frozen=True)
class Tombstone:
    """A delete notification for an object that vanished while the watch was down.

    ``obj`` is the last state held in the local store; it may be stale.
    """

    key: str
    obj: Any


Notification = Live | Tombstone


def meta_namespace_key(obj: Any) -> str:
    """Return the ``namespace/name`` key for *obj* (just ``name`` when unnamespaced)."""
    if isinstance(obj, Tombstone):
        return obj.key
    if isinstance(obj, Live):
        obj = obj.obj
    metadata = getattr(obj, "metadata", None)
    name = getattr(metadata, "name", None)
    if not name:
        raise ValueError(f"object of type {type(obj).__name__} has no metadata.name")
    namespace = getattr(metadata, "namespace", None)
    if namespace:
        return f"{namespace}/{name}"
    return name


def split_meta_namespace_key(key: str) -> tuple[str, str]:
    """Split a ``namespace/name`` key.  Raises ``ValueError`` for malformed keys."""
    parts = key.split("/")
    if len(parts) == 1:
        namespace, name = "", parts[0]
    elif len(parts) == 2:
        namespace, name = parts
    else:
        raise ValueError(f"unexpected key format: {key!r}")
    if not name:
        raise ValueError(f"unexpected key format: {key!r}")
    return namespace, name


class ObjectStore:
    """Thread-safe local cache of watched objects keyed by ``namespace/name``.

    Returned objects are shared with every reader and with the informer
    thread that refreshes them; callers must not modify them in place.
    """

    def __init__(self) -> None:
        self._items: dict[str, Any] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def get(self, namespace: str, name: str) -> Any | None:
        key = f"{namespace}/{name}" if namespace else name
        return self.get_by_key(key)

    def get_by_key(self, key: str) -> Any | None:
        with self._lock:
            return self._items.get(key)

    def list(self) -> list[Any]:
        with self._lock:
            return list(self._items.values())

    def put(self, obj: Any) -> Any | None:
        """Insert or replace *obj*; return the previous object for its key."""
        key = meta_namespace_key(obj)
        with self._lock:
            previous = self._items.get(key)
            self._items[key] = obj
        return previous

    def remove(self, key: str) -> Any | None:
        with self._lock:
            return self._items.pop(key, None)

    def replace(self, objects: dict[str, Any]) -> dict[str, Any]:
        """Swap in a full snapshot and return the one it replaced."""
        with self._lock:
            previous = self._items
            self._items = dict(objects)
        return previous


def _list_items(listing: Any) -> list[Any]:
    if isinstance(listing, dict):
        return listing.get("items") or []
    return getattr(listing, "items", None) or []


def _resource_version(obj: Any) -> str | None:
    if isinstance(obj, dict):
        return (obj.get("metadata") or {}).get("resourceVersion")
    return getattr(getattr(obj, "metadata", None), "resource_version", None)


class Informer:
    """List-then-watch a single resource kind into an :class:`ObjectStore`.

    1. Lists with jittered exponential backoff until the first list
       succeeds, fills the store, and reports :meth:`has_synced`.
    2. Watches from the list's ``resourceVersion`` and applies every event to
       the store before notifying handlers.
    3. On ``410 Gone`` re-lists; objects missing from the fresh list are
       removed and announced to ``on_delete`` as :class:`Tombstone`.
    4. Every ``resync_period_seconds`` re-delivers each cached object to
       ``on_update(obj, obj)`` so handlers get a periodic level-triggered pass.

    ``401`` / ``403`` responses are treated as RBAC misconfiguration and stop
    the informer.  Handler exceptions are logged and do not stop the watch.
    """

    def __init__(
        self,
        name: str,
        list_fn: Callable[..., Any],
        list_args: tuple[Any, ...] = (),
        list_kwargs: dict[str, Any] | None = None,
        decode: Callable[[Any], Any] | None = None,
        resync_period_seconds: float = 0,
        logger: logging.Logger | None = None,
    ) -> None:
        self.name = name
        self.list_fn = list_fn
        self.list_args = list_args
        self.list_kwargs = dict(list_kwargs or {})
        self.decode = decode
        self.resync_period_seconds = resync_period_seconds
        self.logger = logger or logging.getLogger(__name__)

        self.store = ObjectStore()
        self._handlers: list[
            tuple[
                Callable[[Any], None] | None,
                Callable[[Any, Any], None] | None,
                Callable[[Notification], None] | None,
            ]
        ] = []
        self._synced = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()
        self._next_resync_at: float | None = None

    def add_event_handler(
        self,
        on_add: Callable[[Any], None] | None = None,
        on_update: Callable[[Any, Any], None] | None = None,
        on_delete: Callable[[Notification], None] | None = None,
    ) -> None:
        self._handlers.append((on_add, on_update, on_delete))

    def has_synced(self) -> bool:
        return self._synced.is_set()

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def start(self, stop_event: threading.Event) -> threading.Thread:
        thread = threading.Thread(
            target=self.run,
            kwargs={"stop_event": stop_event},
            name=f"informer-{self.name}",
            daemon=True,
        )
        thread.start()
        return thread

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _decode(self, raw: Any) -> Any | None:
        if self.decode is None:
            return raw
        try:
            return self.decode(raw)
        except (ValueError, TypeError, KeyError):
            self.logger.exception("Failed to decode %s object; skipping it", self.name)
            return None

    def _notify_add(self, obj: Any) -> None:
        for on_add, _, _ in self._handlers:
            if on_add is None:
                continue
            try:
                on_add(obj)
            except Exception:
                self.logger.exception("%s add handler failed", self.name)

    def _notify_update(self, old: Any, new: Any) -> None:
        for _, on_update, _ in self._handlers:
            if on_update is None:
                continue
            try:
                on_update(old, new)
            except Exception:
                self.logger.exception("%s update handler failed", self.name)

    def _notify_delete(self, notification: Notification) -> None:
        for _, _, on_delete in self._handlers:
            if on_delete is None:
                continue
            try:
                on_delete(notification)
            except Exception:
                self.logger.exception("%s delete handler failed", self.name)

    def _replace_from_list(self, listing: Any) -> str | None:
        """Replace the store with a full listing and notify handlers of the difference."""
        fresh: dict[str, Any] = {}
        for raw in _list_items(listing):
            obj = self._decode(raw)
            if obj is None:
                continue
            try:
                fresh[meta_namespace_key(obj)] = obj
            except ValueError:
                self.logger.warning("Skipping listed %s object without a name", self.name)

        previous = self.store.replace(fresh)
        for key, obj in fresh.items():
            old = previous.get(key)
            if old is None:
                self._notify_add(obj)
            else:
                self._notify_update(old, obj)
        for key, old in previous.items():
            if key not in fresh:
                self._notify_delete(Tombstone(key=key, obj=old))

        return _resource_version(listing)

    def _list(self) -> Any:
        return self.list_fn(*self.list_args, **self.list_kwargs)

    def handle_watch_event(self, event_type: str, raw: Any) -> str | None:
        """Apply one watch event to the store and notify handlers.

        Returns the event's ``resourceVersion`` so the caller can resume the
        watch from it.  ``BOOKMARK`` events only advance the version.
        """
        if event_type == "BOOKMARK":
            return _resource_version(raw)
        if event_type not in {"ADDED", "MODIFIED", "DELETED"}:
            return None
        obj = self._decode(raw)
        if obj is None:
            return _resource_version(raw)
        try:
            key = meta_namespace_key(obj)
        except ValueError:
            self.logger.warning(
                "Ignoring %s %s event for object without a name", self.name, event_type
            )
            return _resource_version(raw)

        if event_type == "DELETED":
            self.store.remove(key)
            self._notify_delete(Live(obj))
        else:
            old = self.store.put(obj)
            if old is None:
                self._notify_add(obj)
            else:
                self._notify_update(old, obj)
        return _resource_version(obj)

    def resync(self) -> None:
        """Re-deliver every cached object to update handlers."""
        for obj in self.store.list():
            self._notify_update(obj, obj)

    def _maybe_resync(self, now_monotonic: float) -> None:
        if self._next_resync_at is None or now_monotonic < self._next_resync_at:
            return
        self.logger.debug("Resyncing %d cached %s object(s)", len(self.store), self.name)
        self.resync()
        self._next_resync_at = now_monotonic + self.resync_period_seconds

    def _next_watch_timeout_seconds(self, now_monotonic: float) -> int:
        """Return the next watch timeout, shortened so the stream ends in time for a resync."""
        if self._next_resync_at is None:
            return 30
        remaining = max(1.0, self._next_resync_at - now_monotonic)
        return min(30, max(1, math.ceil(remaining)))

    def run(self, stop_event: threading.Event | None = None) -> None:
        """List, then watch until stopped."""
        stop = stop_event or threading.Event()
        self._external_stop.clear()

        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                resource_version = self._replace_from_list(self._list())
                self._synced.set()
                if self.resync_period_seconds > 0:
                    self._next_resync_at = time.monotonic() + self.resync_period_seconds
                self.logger.info(
                    "Synced %d %s object(s); watching from resourceVersion %s",
                    len(self.store),
                    self.name,
                    resource_version,
                )
                break
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied during initial %s list (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        self.name,
                        exc.status,
                    )
                    return
                self.logger.exception("Initial %s list failed", self.name)
                METRICS.watch_errors_total.labels(informer=self.name).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial %s list", self.name)
                METRICS.watch_errors_total.labels(informer=self.name).inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)

        if self._should_stop(stop):
            return

        # Reset to 1 on every clean stream end; doubled on error up to 30 s.
        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop):
            self._maybe_resync(time.monotonic())
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(informer=self.name).inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self.list_fn,
                    *self.list_args,
                    resource_version=resource_version,
                    timeout_seconds=self._next_watch_timeout_seconds(time.monotonic()),
                    **self.list_kwargs,
                )

                for event in stream:
                    if self._should_stop(stop):
                        break

                    raw = event.get("object")
                    if raw is None:
                        continue

                    event_version = self.handle_watch_event(str(event.get("type", "")), raw)
                    if event_version:
                        resource_version = event_version
                    self._maybe_resync(time.monotonic())

                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone means etcd compacted past our resourceVersion.
                if exc.status == 410:
                    self.logger.warning("%s watch resource version expired, re-listing", self.name)
                    METRICS.relists_total.labels(informer=self.name).inc()
                    try:
                        resource_version = self._replace_from_list(self._list())
                    except ApiException as relist_exc:
                        if relist_exc.status in {401, 403}:
                            self.logger.error(
                                "Kubernetes API access denied during %s re-list (status=%s). "
                                "Check controller RBAC and service account permissions.",
                                self.name,
                                relist_exc.status,
                            )
                            return
                        self.logger.exception("Failed to re-list %s after 410", self.name)
                        METRICS.watch_errors_total.labels(informer=self.name).inc()
                        resource_version = None
                    continue

                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API %s watch denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        self.name,
                        exc.status,
                    )
                    METRICS.watch_errors_total.labels(informer=self.name).inc()
                    return

                self.logger.exception("Kubernetes API %s watch error", self.name)
                METRICS.watch_errors_total.labels(informer=self.name).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected %s watch error", self.name)
                METRICS.watch_errors_total.labels(informer=self.name).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None


def wait_for_cache_sync(
    stop_event: threading.Event,
    *has_synced: Callable[[], bool],
    poll_interval_seconds: float = 0.1,
    alive: Callable[[], bool] | None = None,
) -> bool:
    """Block until every *has_synced* reports True.

    Returns False if stopped first, or as soon as *alive* reports False.
    """
    while True:
        if all(synced() for synced in has_synced):
            return True
        if alive is not None and not alive():
            return False
        if stop_event.wait(timeout=poll_interval_seconds):
            return False
