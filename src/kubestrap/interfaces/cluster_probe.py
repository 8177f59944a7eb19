"""Cluster probe interface for API server and node readiness."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field


@dataclass
class NodeInfo:
    """Normalized Kubernetes node information."""

    name: str
    ready: bool
    addresses: list[str] = field(default_factory=list)
    conditions: dict[str, str] = field(default_factory=dict)


class ClusterProbe(ABC):
    """Read-only view of a bootstrapping cluster's health.

    Probes never mutate the cluster; they answer whether the API server
    responds and which nodes report Ready.
    """

    @abstractmethod
    async def api_server_ready(self) -> bool:
        """Whether the API server answers its readiness endpoint."""

    @abstractmethod
    async def get_nodes(self) -> list[NodeInfo]:
        """List registered nodes with their Ready condition.

        Raises:
            KubestrapError: If the node list cannot be retrieved
        """

    async def ready_addresses(self) -> set[str]:
        """Addresses of every node currently reporting Ready."""
        nodes = await self.get_nodes()
        return {address for node in nodes if node.ready for address in node.addresses}
