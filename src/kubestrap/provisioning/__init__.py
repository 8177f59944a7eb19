"""Resource graph provisioning."""

from kubestrap.provisioning.blueprint import build_cluster_graph
from kubestrap.provisioning.graph import ResourceGraph
from kubestrap.provisioning.ledger import Ledger
from kubestrap.provisioning.provisioner import ProvisionResult, Provisioner

__all__ = ["Ledger", "ProvisionResult", "Provisioner", "ResourceGraph", "build_cluster_graph"]
