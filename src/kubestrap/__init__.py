"""kubestrap.

Provision AWS infrastructure and bootstrap a kubeadm Kubernetes cluster as one
idempotent, resumable control program.
"""

__version__ = "0.1.0"
__author__ = "Platform Engineering Team"
__license__ = "Apache-2.0"
