"""Cluster bootstrap: control plane init, pod network, worker join."""

from kubestrap.bootstrap.bootstrapper import BootstrapSettings, ClusterBootstrapper
from kubestrap.bootstrap.probes import KubectlProbe, KubernetesApiProbe

__all__ = ["BootstrapSettings", "ClusterBootstrapper", "KubectlProbe", "KubernetesApiProbe"]
