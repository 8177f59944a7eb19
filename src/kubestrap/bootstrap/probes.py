"""Cluster probes: API server and node readiness."""

import asyncio
import json
from collections.abc import Callable

from kubestrap.clients.kubernetes_client import KubernetesClient, node_is_ready
from kubestrap.core.exceptions import ProbeError, RemoteExecError
from kubestrap.core.models import Node
from kubestrap.interfaces.cluster_probe import ClusterProbe, NodeInfo
from kubestrap.interfaces.remote_executor import RemoteExecutor
from kubestrap.utils.logging import get_logger

logger = get_logger(__name__)

ADMIN_CONF = "/etc/kubernetes/admin.conf"
KUBECTL = f"kubectl --kubeconfig {ADMIN_CONF} --request-timeout=10s"


def parse_node_list(payload: str) -> list[NodeInfo]:
    """Parse ``kubectl get nodes -o json`` output."""
    try:
        document = json.loads(payload)
    except ValueError as e:
        raise ProbeError(f"Unparseable node list: {e}") from e

    nodes = []
    for item in document.get("items", []):
        status = item.get("status", {})
        conditions = {c.get("type"): c.get("status") for c in status.get("conditions", [])}
        nodes.append(
            NodeInfo(
                name=item.get("metadata", {}).get("name", ""),
                ready=conditions.get("Ready") == "True",
                addresses=[a.get("address") for a in status.get("addresses", []) if a.get("address")],
                conditions=conditions,
            )
        )
    return nodes


class KubectlProbe(ClusterProbe):
    """Run kubectl on the control plane over the RemoteExecutor."""

    def __init__(self, executor: RemoteExecutor, control_plane: Node):
        self.executor = executor
        self.control_plane = control_plane

    async def api_server_ready(self) -> bool:
        try:
            result = await self.executor.run(self.control_plane, f"{KUBECTL} get --raw=/readyz", check=False)
        except RemoteExecError as e:
            logger.debug("api_probe_unreachable", error=str(e))
            return False
        return result.ok and result.stdout.strip() == "ok"

    async def get_nodes(self) -> list[NodeInfo]:
        try:
            result = await self.executor.run(self.control_plane, f"{KUBECTL} get nodes -o json")
        except RemoteExecError as e:
            raise ProbeError(f"kubectl get nodes failed on {self.control_plane.name}: {e}") from e
        return parse_node_list(result.stdout)


class KubernetesApiProbe(ClusterProbe):
    """Query the API server directly with the fetched admin kubeconfig.

    The client is built lazily, since the kubeconfig only exists once the
    control plane has been initialized.
    """

    def __init__(
        self,
        kubeconfig_path: str,
        client_factory: Callable[[str], KubernetesClient] = KubernetesClient,
    ):
        self.kubeconfig_path = kubeconfig_path
        self._client_factory = client_factory
        self._client: KubernetesClient | None = None

    def _get_client(self) -> KubernetesClient:
        if self._client is None:
            self._client = self._client_factory(self.kubeconfig_path)
        return self._client

    async def api_server_ready(self) -> bool:
        try:
            k8s = await asyncio.to_thread(self._get_client)
        except ProbeError:
            return False
        return await asyncio.to_thread(k8s.is_api_ready)

    async def get_nodes(self) -> list[NodeInfo]:
        k8s = await asyncio.to_thread(self._get_client)
        nodes = await asyncio.to_thread(k8s.get_nodes)
        return [
            NodeInfo(
                name=n.metadata.name,
                ready=node_is_ready(n),
                addresses=[a.address for a in (n.status.addresses or [])],
                conditions={c.type: c.status for c in (n.status.conditions or [])},
            )
            for n in nodes
        ]
