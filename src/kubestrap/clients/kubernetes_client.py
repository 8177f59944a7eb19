"""Kubernetes client for read-only cluster health queries."""

from kubernetes import client, config
from kubernetes.client.exceptions import ApiException
from kubernetes.client.models import V1Node
from urllib3.exceptions import HTTPError

from kubestrap.core.exceptions import ProbeError
from kubestrap.utils.logging import get_logger

logger = get_logger(__name__)


def node_is_ready(node: V1Node) -> bool:
    """Whether a node's Ready condition is True."""
    for condition in node.status.conditions or []:
        if condition.type == "Ready":
            return bool(condition.status == "True")
    return False


class KubernetesClient:
    """Kubernetes client wrapper bound to one kubeconfig file."""

    def __init__(self, kubeconfig_path: str, context: str | None = None, request_timeout: float = 10.0):
        """Initialize Kubernetes client.

        Args:
            kubeconfig_path: Path to kubeconfig file
            context: Kubernetes context to use (optional)
            request_timeout: Per-request timeout in seconds

        Raises:
            ProbeError: If the kubeconfig cannot be loaded
        """
        try:
            api_client = config.new_client_from_config(config_file=kubeconfig_path, context=context)
        except (config.ConfigException, OSError) as e:
            logger.error("k8s_client_initialization_failed", error=str(e))
            raise ProbeError(f"Failed to load kubeconfig {kubeconfig_path}: {e}") from e

        self.request_timeout = request_timeout
        self.core_v1 = client.CoreV1Api(api_client)
        self.version = client.VersionApi(api_client)

        logger.debug("k8s_client_initialized", kubeconfig=kubeconfig_path)

    def is_api_ready(self) -> bool:
        """Whether the API server answers a version request."""
        try:
            self.version.get_code(_request_timeout=self.request_timeout)
            return True
        except (ApiException, HTTPError, OSError) as e:
            logger.debug("k8s_api_not_ready", error=str(e))
            return False

    def get_nodes(self) -> list[V1Node]:
        """Get all nodes in the cluster.

        Returns:
            List of V1Node objects

        Raises:
            ProbeError: If nodes cannot be retrieved
        """
        try:
            response = self.core_v1.list_node(_request_timeout=self.request_timeout)
        except ApiException as e:
            logger.error("get_nodes_failed", status=e.status, reason=e.reason)
            raise ProbeError(f"Failed to get nodes: {e.reason}") from e
        except (HTTPError, OSError) as e:
            logger.error("get_nodes_failed", error=str(e))
            raise ProbeError(f"Failed to get nodes: {e}") from e

        nodes = list(response.items)
        logger.debug("nodes_retrieved", count=len(nodes))
        return nodes
