from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from kubernetes.client import V1OwnerReference

from cassandra_operator.src.informer import Live, Notification, ObjectStore, Tombstone
from cassandra_operator.src.objects import CassandraCluster


def get_controller_of(obj: Any) -> Any | None:
    """Return the owner reference flagged ``controller: true`` on *obj*, if any."""
    metadata = getattr(obj, "metadata", None)
    for ref in getattr(metadata, "owner_references", None) or []:
        if getattr(ref, "controller", False):
            return ref
    return None


def is_controlled_by(obj: Any, owner: CassandraCluster) -> bool:
    """Return True when *obj*'s controller reference points at *owner* (matched by UID)."""
    ref = get_controller_of(obj)
    if ref is None:
        return False
    return ref.kind == owner.kind and bool(ref.uid) and ref.uid == owner.metadata.uid


def new_controller_ref(owner: CassandraCluster) -> V1OwnerReference:
    return V1OwnerReference(
        api_version=owner.api_version,
        kind=owner.kind,
        name=owner.metadata.name,
        uid=owner.metadata.uid,
        controller=True,
        block_owner_deletion=True,
    )


def _has_metadata(obj: Any) -> bool:
    return getattr(getattr(obj, "metadata", None), "name", None) is not None


class OwnershipRouter:
    """Route changes of derived objects to the key of the object that owns them.

    Any change to a StatefulSet the controller created (including manual
    edits and deletions) funnels back into one reconciliation of its owning
    ``CassandraCluster``.  Objects without a controller reference, owned by a
    different kind, or whose owner is no longer cached are ignored.
    """

    def __init__(
        self,
        owner_kind: str,
        owners: ObjectStore,
        enqueue: Callable[[Any], None],
        logger: logging.Logger | None = None,
    ) -> None:
        self.owner_kind = owner_kind
        self.owners = owners
        self.enqueue = enqueue
        self.logger = logger or logging.getLogger(__name__)

    def _resolve(self, notification: Notification) -> Any | None:
        if isinstance(notification, Tombstone):
            if not _has_metadata(notification.obj):
                self.logger.error(
                    "Error decoding object tombstone %s, invalid type", notification.key
                )
                return None
            self.logger.debug(
                "Recovered deleted object %r from tombstone", notification.obj.metadata.name
            )
            return notification.obj

        if isinstance(notification, Live) and _has_metadata(notification.obj):
            return notification.obj

        self.logger.error("Error decoding object, invalid type: %r", notification)
        return None

    def handle_object(self, notification: Notification) -> bool:
        """Enqueue the owner of the object in *notification*.  Returns True if enqueued."""
        obj = self._resolve(notification)
        if obj is None:
            return False

        self.logger.debug("Processing object: %s", obj.metadata.name)
        owner_ref = get_controller_of(obj)
        if owner_ref is None or owner_ref.kind != self.owner_kind:
            return False

        namespace = getattr(obj.metadata, "namespace", None) or ""
        owner = self.owners.get(namespace, owner_ref.name)
        if owner is None:
            self.logger.debug(
                "Ignoring orphaned object %s/%s of %s %r",
                namespace,
                obj.metadata.name,
                self.owner_kind,
                owner_ref.name,
            )
            return False

        self.enqueue(owner)
        return True
