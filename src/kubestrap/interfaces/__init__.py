"""Interface definitions for the orchestrator's external seams."""

from kubestrap.interfaces.cloud_provider import CloudProvider
from kubestrap.interfaces.cloud_types import ProviderResult
from kubestrap.interfaces.cluster_probe import ClusterProbe, NodeInfo
from kubestrap.interfaces.remote_executor import RemoteExecutor
from kubestrap.interfaces.state_store import StateStore

__all__ = [
    "CloudProvider",
    "ProviderResult",
    "ClusterProbe",
    "NodeInfo",
    "RemoteExecutor",
    "StateStore",
]
