"""Adapters implementing kubestrap interfaces."""

from kubestrap.adapters.aws_adapter import AWSAdapter
from kubestrap.adapters.ssh_executor import SSHExecutor

__all__ = ["AWSAdapter", "SSHExecutor"]
