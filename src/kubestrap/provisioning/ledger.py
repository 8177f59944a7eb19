"""Persisted ledger of resource records."""

import asyncio

from kubestrap.core.models import Node, NodeRole, ResourceKind, ResourceRecord, ResourceStatus, utcnow
from kubestrap.interfaces.state_store import StateStore
from kubestrap.utils.logging import get_logger

logger = get_logger(__name__)


def node_from_record(record: ResourceRecord) -> Node | None:
    """Build a Node from a Ready instance record, or None if not addressable yet."""
    if record.kind != ResourceKind.INSTANCE or record.status != ResourceStatus.READY:
        return None
    public_ip = record.attributes.get("public_ip")
    if not record.physical_id or not public_ip:
        return None
    role = NodeRole(record.attributes.get("role") or NodeRole.WORKER.value)
    return Node(
        name=record.name,
        role=role,
        physical_id=record.physical_id,
        public_address=public_ip,
        private_address=record.attributes.get("private_ip"),
    )


class Ledger:
    """Resource records keyed by logical name.

    Writes are serialized by a single writer lock and persisted on every
    change. Records are replaced, never mutated in place, so readers can
    take snapshots while a write is in flight.
    """

    def __init__(
        self,
        cluster_name: str,
        store: StateStore,
        records: dict[str, ResourceRecord] | None = None,
    ):
        self.cluster_name = cluster_name
        self.store = store
        self._records: dict[str, ResourceRecord] = dict(records or {})
        self._lock = asyncio.Lock()

    @classmethod
    async def load(cls, cluster_name: str, store: StateStore) -> "Ledger":
        """Load the persisted ledger for a cluster.

        Raises:
            StateStoreError: If the ledger cannot be read
        """
        records = await store.load_records(cluster_name)
        logger.debug("ledger_loaded", cluster=cluster_name, records=len(records))
        return cls(cluster_name, store, records)

    def get(self, name: str) -> ResourceRecord | None:
        return self._records.get(name)

    def snapshot(self) -> dict[str, ResourceRecord]:
        """Point-in-time copy of every record."""
        return {name: record.model_copy(deep=True) for name, record in list(self._records.items())}

    def __len__(self) -> int:
        return len(self._records)

    def is_ready(self, name: str) -> bool:
        record = self._records.get(name)
        return record is not None and record.status == ResourceStatus.READY

    async def put(self, record: ResourceRecord) -> None:
        """Replace a record and persist the ledger.

        Raises:
            StateStoreError: If persisting fails
        """
        async with self._lock:
            self._records[record.name] = record.model_copy(update={"updated_at": utcnow()})
            await self.store.save_records(self.cluster_name, self.snapshot())
        logger.debug("ledger_record_saved", name=record.name, status=record.status.value)

    async def remove(self, name: str) -> None:
        async with self._lock:
            self._records.pop(name, None)
            await self.store.save_records(self.cluster_name, self.snapshot())

    def nodes(self) -> list[Node]:
        """Every addressable node, control plane first."""
        nodes = [n for r in self._records.values() if (n := node_from_record(r)) is not None]
        return sorted(nodes, key=lambda n: (n.role != NodeRole.CONTROL_PLANE, n.name))

    def node(self, name: str) -> Node | None:
        record = self._records.get(name)
        return node_from_record(record) if record else None
