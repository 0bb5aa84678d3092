from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any

API_GROUP = "cassandra.camilocot.com"
API_VERSION = "v1alpha1"
KIND = "CassandraCluster"
PLURAL = "cassandraclusters"


@dataclass
class OwnerReference:
    api_version: str
    kind: str
    name: str
    uid: str
    controller: bool | None = None
    block_owner_deletion: bool | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> OwnerReference:
        return cls(
            api_version=str(raw.get("apiVersion", "")),
            kind=str(raw.get("kind", "")),
            name=str(raw.get("name", "")),
            uid=str(raw.get("uid", "")),
            controller=raw.get("controller"),
            block_owner_deletion=raw.get("blockOwnerDeletion"),
        )


@dataclass
class ObjectMeta:
    """The subset of ``metadata`` the controller reads.

    Attribute names mirror ``kubernetes.client.V1ObjectMeta`` so cluster
    objects and typed client models can be handled by the same helpers.
    """

    name: str
    namespace: str = ""
    uid: str = ""
    resource_version: str | None = None
    owner_references: list[OwnerReference] = field(default_factory=list)


@dataclass
class CassandraClusterSpec:
    statefulset_name: str = ""
    replicas: int | None = None


@dataclass
class CassandraClusterStatus:
    current_replicas: int = 0


@dataclass
class CassandraCluster:
    """Desired state of a Cassandra ring as declared by the user.

    Instances are decoded from the custom-objects API, which returns plain
    JSON dicts.  The received body is kept in ``raw`` so a full-object
    replace does not drop fields this controller does not model.

    Objects served from an informer store are shared with other workers:
    use :meth:`deep_copy` before changing anything that will be written back.
    """

    metadata: ObjectMeta
    spec: CassandraClusterSpec = field(default_factory=CassandraClusterSpec)
    status: CassandraClusterStatus = field(default_factory=CassandraClusterStatus)
    raw: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    api_version = f"{API_GROUP}/{API_VERSION}"
    kind = KIND

    @classmethod
    def from_dict(cls, body: Any) -> CassandraCluster:
        if not isinstance(body, dict):
            raise ValueError(f"expected a {KIND} object, got {type(body).__name__}")

        raw_metadata = body.get("metadata") or {}
        name = raw_metadata.get("name")
        if not name:
            raise ValueError(f"{KIND} object has no metadata.name")

        metadata = ObjectMeta(
            name=name,
            namespace=raw_metadata.get("namespace") or "",
            uid=raw_metadata.get("uid") or "",
            resource_version=raw_metadata.get("resourceVersion"),
            owner_references=[
                OwnerReference.from_dict(ref)
                for ref in raw_metadata.get("ownerReferences") or []
                if isinstance(ref, dict)
            ],
        )

        raw_spec = body.get("spec") or {}
        replicas = raw_spec.get("replicas")
        spec = CassandraClusterSpec(
            statefulset_name=raw_spec.get("statefulsetName") or "",
            replicas=None if replicas is None else int(replicas),
        )

        raw_status = body.get("status") or {}
        status = CassandraClusterStatus(
            current_replicas=int(raw_status.get("currentReplicas") or 0),
        )
        return cls(metadata=metadata, spec=spec, status=status, raw=copy.deepcopy(body))

    def to_dict(self) -> dict[str, Any]:
        body = copy.deepcopy(self.raw)
        body["apiVersion"] = self.api_version
        body["kind"] = self.kind

        metadata = body.setdefault("metadata", {})
        metadata["name"] = self.metadata.name
        if self.metadata.namespace:
            metadata["namespace"] = self.metadata.namespace
        if self.metadata.resource_version is not None:
            metadata["resourceVersion"] = self.metadata.resource_version

        spec = body.setdefault("spec", {})
        spec["statefulsetName"] = self.spec.statefulset_name
        spec["replicas"] = self.spec.replicas

        status = body.setdefault("status", {})
        status["currentReplicas"] = self.status.current_replicas
        return body

    def deep_copy(self) -> CassandraCluster:
        return copy.deepcopy(self)
