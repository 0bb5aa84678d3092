from __future__ import annotations

import logging
from types import SimpleNamespace
from typing import Any

import pytest

from cassandra_operator.src.informer import Live, ObjectStore, Tombstone
from cassandra_operator.src.objects import CassandraCluster
from cassandra_operator.src.ownership import (
    OwnershipRouter,
    get_controller_of,
    is_controlled_by,
    new_controller_ref,
)
from cassandra_operator.src.workqueue import RateLimitingQueue


def make_cluster(name: str = "demo", namespace: str = "db", uid: str = "uid-1") -> CassandraCluster:
    return CassandraCluster.from_dict(
        {
            "metadata": {"name": name, "namespace": namespace, "uid": uid},
            "spec": {"statefulsetName": "cassandra", "replicas": 3},
        }
    )


def make_ref(
    name: str = "demo",
    kind: str = "CassandraCluster",
    uid: str = "uid-1",
    controller: bool | None = True,
) -> SimpleNamespace:
    return SimpleNamespace(name=name, kind=kind, uid=uid, controller=controller)


def make_statefulset(
    owner_references: list[Any] | None = None, name: str = "cassandra", namespace: str = "db"
) -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(
            name=name, namespace=namespace, owner_references=owner_references
        )
    )


def _router(*clusters: CassandraCluster) -> tuple[OwnershipRouter, RateLimitingQueue]:
    store = ObjectStore()
    for cluster in clusters:
        store.put(cluster)
    queue = RateLimitingQueue(name="test")

    def enqueue(obj: Any) -> None:
        queue.add(f"{obj.metadata.namespace}/{obj.metadata.name}")

    return OwnershipRouter(owner_kind="CassandraCluster", owners=store, enqueue=enqueue), queue


def test_get_controller_of_returns_controller_ref_only() -> None:
    plain = make_ref(name="other", controller=False)
    controller = make_ref()

    assert get_controller_of(make_statefulset([plain, controller])) is controller
    assert get_controller_of(make_statefulset([plain])) is None
    assert get_controller_of(make_statefulset(None)) is None


def test_is_controlled_by_matches_uid_and_kind() -> None:
    cluster = make_cluster(uid="uid-1")

    assert is_controlled_by(make_statefulset([make_ref(uid="uid-1")]), cluster)
    assert not is_controlled_by(make_statefulset([make_ref(uid="uid-2")]), cluster)
    assert not is_controlled_by(make_statefulset([make_ref(kind="Deployment")]), cluster)
    assert not is_controlled_by(make_statefulset([]), cluster)


def test_is_controlled_by_rejects_recreated_owner_with_same_name() -> None:
    statefulset = make_statefulset([make_ref(name="demo", uid="uid-old")])

    assert not is_controlled_by(statefulset, make_cluster(name="demo", uid="uid-new"))


def test_is_controlled_by_requires_uid() -> None:
    cluster = make_cluster(uid="")

    assert not is_controlled_by(make_statefulset([make_ref(uid="")]), cluster)


def test_new_controller_ref_points_at_cluster() -> None:
    ref = new_controller_ref(make_cluster(uid="uid-9"))

    assert ref.api_version == "cassandra.camilocot.com/v1alpha1"
    assert ref.kind == "CassandraCluster"
    assert ref.name == "demo"
    assert ref.uid == "uid-9"
    assert ref.controller is True
    assert ref.block_owner_deletion is True


def test_router_enqueues_owning_cluster() -> None:
    router, queue = _router(make_cluster())

    assert router.handle_object(Live(make_statefulset([make_ref()])))
    assert queue.get()[0] == "db/demo"


def test_router_recovers_tombstone() -> None:
    router, queue = _router(make_cluster())

    notification = Tombstone(key="db/cassandra", obj=make_statefulset([make_ref()]))

    assert router.handle_object(notification)
    assert len(queue) == 1


@pytest.mark.parametrize(
    "owner_references",
    [
        None,
        [make_ref(controller=False)],
        [make_ref(kind="Deployment")],
    ],
)
def test_router_ignores_objects_not_controlled_by_cluster(owner_references: Any) -> None:
    router, queue = _router(make_cluster())

    assert not router.handle_object(Live(make_statefulset(owner_references)))
    assert len(queue) == 0


def test_router_drops_orphan_whose_owner_is_not_cached() -> None:
    router, queue = _router()

    assert not router.handle_object(Live(make_statefulset([make_ref(name="missing")])))
    assert len(queue) == 0


def test_router_looks_up_owner_in_object_namespace() -> None:
    router, queue = _router(make_cluster(namespace="other"))

    assert not router.handle_object(Live(make_statefulset([make_ref()], namespace="db")))
    assert len(queue) == 0


def test_router_logs_undecodable_tombstone(caplog: pytest.LogCaptureFixture) -> None:
    router, queue = _router(make_cluster())

    with caplog.at_level(logging.ERROR):
        assert not router.handle_object(Tombstone(key="db/cassandra", obj="garbage"))

    assert len(queue) == 0
    assert "Error decoding object tombstone db/cassandra, invalid type" in caplog.text


def test_router_logs_undecodable_object(caplog: pytest.LogCaptureFixture) -> None:
    router, queue = _router(make_cluster())

    with caplog.at_level(logging.ERROR):
        assert not router.handle_object(Live(object()))

    assert len(queue) == 0
    assert "Error decoding object, invalid type" in caplog.text
