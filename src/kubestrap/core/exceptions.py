"""Custom exceptions for kubestrap.

Every failure names the resource or node it concerns and, for bootstrap
failures, the phase reached, so an operator can resume from that point.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from kubestrap.core.models import BootstrapPhase, CommandResult


class KubestrapError(Exception):
    """Base exception for all kubestrap errors."""


class ConfigurationError(KubestrapError):
    """Configuration-related errors."""


class StateStoreError(KubestrapError):
    """Persisted state could not be read or written."""


class ProviderErrorKind(str, Enum):
    """Classification of cloud provider failures."""

    TRANSIENT = "transient"
    NOT_FOUND = "not-found"
    CONFLICT = "conflict"
    PERMISSION_DENIED = "permission-denied"
    INVALID = "invalid"  # malformed request, never retried


class ProviderError(KubestrapError):
    """Cloud provider operation failed.

    Attributes:
        kind: Failure classification, drives retry decisions
        resource: Logical name or physical id of the resource concerned
        code: Raw provider error code, if any
    """

    def __init__(
        self,
        message: str,
        kind: ProviderErrorKind,
        resource: str | None = None,
        code: str | None = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.resource = resource
        self.code = code

    @property
    def is_transient(self) -> bool:
        return self.kind == ProviderErrorKind.TRANSIENT


class DependencyFailedError(KubestrapError):
    """A resource was skipped because one of its dependencies failed."""

    def __init__(self, resource: str, dependency: str):
        super().__init__(f"Resource {resource} skipped: dependency {dependency} is not Ready")
        self.resource = resource
        self.dependency = dependency


class ResourceTimeoutError(KubestrapError):
    """A resource did not reach a terminal state before its deadline."""

    def __init__(self, resource: str, timeout: float):
        super().__init__(f"Resource {resource} not ready after {timeout:.0f}s")
        self.resource = resource
        self.timeout = timeout


class RemoteExecErrorKind(str, Enum):
    """Classification of remote execution failures."""

    CONNECT_FAILED = "connect-failed"
    COMMAND_FAILED = "command-failed"


class RemoteExecError(KubestrapError):
    """Remote command could not be run, or exited non-zero.

    Attributes:
        kind: CONNECT_FAILED or COMMAND_FAILED
        node: Logical node name
        result: Captured command result for COMMAND_FAILED
    """

    def __init__(
        self,
        message: str,
        kind: RemoteExecErrorKind,
        node: str,
        result: CommandResult | None = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.node = node
        self.result = result

    @property
    def is_transient(self) -> bool:
        return self.kind == RemoteExecErrorKind.CONNECT_FAILED


class ConvergenceError(KubestrapError):
    """A preparation step's verification never succeeded."""

    def __init__(self, node: str, step: str, detail: str = ""):
        message = f"Step {step} did not converge on node {node}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.node = node
        self.step = step


class BootstrapErrorKind(str, Enum):
    """Classification of cluster bootstrap failures."""

    PREFLIGHT_FAILED = "preflight-failed"
    INIT_FAILED = "init-failed"
    NETWORK_NOT_READY = "network-not-ready"
    JOIN_FAILED = "join-failed"
    TOKEN_EXPIRED = "token-expired"
    TIMED_OUT = "timed-out"


class BootstrapError(KubestrapError):
    """Cluster bootstrap transition failed.

    Attributes:
        kind: Failure classification
        phase: Bootstrap phase reached when the failure happened
        nodes: Node names the failure concerns
    """

    def __init__(
        self,
        message: str,
        kind: BootstrapErrorKind,
        phase: BootstrapPhase | None = None,
        nodes: list[str] | None = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.phase = phase
        self.nodes = nodes or []


class ProbeError(KubestrapError):
    """Cluster health could not be observed."""


class TeardownBlockedError(KubestrapError):
    """Teardown refused because a bootstrap is in progress."""
