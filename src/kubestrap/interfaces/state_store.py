"""State store interface for the resource ledger and cluster state."""

from abc import ABC, abstractmethod

from kubestrap.core.models import ClusterState, ResourceRecord


class StateStore(ABC):
    """Abstract interface for state persistence.

    The resource ledger and the cluster state are the only data that
    survive process restarts. Both are keyed by the user-chosen cluster
    name and written independently, each by its single owner.
    """

    @abstractmethod
    async def load_records(self, cluster_name: str) -> dict[str, ResourceRecord]:
        """Load the resource ledger (empty if none was saved).

        Raises:
            StateStoreError: If the ledger exists but cannot be read
        """

    @abstractmethod
    async def save_records(self, cluster_name: str, records: dict[str, ResourceRecord]) -> None:
        """Persist the full resource ledger.

        Raises:
            StateStoreError: If the write fails
        """

    @abstractmethod
    async def load_cluster_state(self, cluster_name: str) -> ClusterState | None:
        """Load the cluster bootstrap state, or None if never saved.

        Raises:
            StateStoreError: If the state exists but cannot be read
        """

    @abstractmethod
    async def save_cluster_state(self, state: ClusterState) -> None:
        """Persist the cluster bootstrap state.

        Raises:
            StateStoreError: If the write fails
        """

    @abstractmethod
    async def delete(self, cluster_name: str) -> None:
        """Remove everything stored for a cluster.

        Raises:
            StateStoreError: If deletion fails
        """
