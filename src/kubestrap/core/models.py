"""Core data models for kubestrap."""

from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, SecretStr


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(UTC)


class ResourceKind(str, Enum):
    """Cloud resource kinds managed by the provisioner."""

    VPC = "vpc"
    SUBNET = "subnet"
    INTERNET_GATEWAY = "internet-gateway"
    ROUTE_TABLE = "route-table"
    SECURITY_GROUP = "security-group"
    INSTANCE = "instance"


class ResourceStatus(str, Enum):
    """Resource lifecycle status as confirmed by the provider."""

    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"
    DELETED = "deleted"


class ResourceSpec(BaseModel):
    """Desired state of one cloud resource.

    Identity is the caller-chosen logical ``name``. ``refs`` maps a
    parameter role (``vpc``, ``subnet``, ...) to the logical name of the
    resource whose physical id fills it; every referenced resource is an
    implicit dependency.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, description="Stable logical name")
    kind: ResourceKind
    attributes: dict[str, Any] = Field(default_factory=dict)
    refs: dict[str, str] = Field(default_factory=dict)
    depends_on: frozenset[str] = Field(default_factory=frozenset)

    @property
    def dependencies(self) -> frozenset[str]:
        """Logical names this spec depends on."""
        return frozenset(self.refs.values()) | self.depends_on


class ResourceRecord(BaseModel):
    """Provider-confirmed state of one resource, owned by the provisioner."""

    name: str
    kind: ResourceKind
    physical_id: str | None = None
    status: ResourceStatus = ResourceStatus.PENDING
    attributes: dict[str, Any] = Field(default_factory=dict)
    dependencies: list[str] = Field(default_factory=list)
    error: str | None = None
    updated_at: datetime = Field(default_factory=utcnow)


class NodeRole(str, Enum):
    """Role a node plays in the cluster."""

    CONTROL_PLANE = "control-plane"
    WORKER = "worker"


class Node(BaseModel):
    """A running instance addressed by the bootstrap phases.

    Addresses never change once assigned; readiness is updated through
    :meth:`with_ready`, which returns a copy.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    role: NodeRole
    physical_id: str
    public_address: str
    private_address: str | None = None
    ready: bool = False

    def with_ready(self, ready: bool) -> "Node":
        return self.model_copy(update={"ready": ready})


class CommandResult(BaseModel):
    """Captured result of a remote script."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        return (self.stdout + self.stderr).strip()


class JoinToken(BaseModel):
    """Short-lived capability allowing one worker to join the control plane.

    The token value is a ``SecretStr`` so it never appears in reprs or logs.
    Tokens are never persisted.
    """

    token: SecretStr
    discovery_hash: str
    endpoint: str
    expires_at: datetime

    def is_expired(self, now: datetime | None = None, margin: timedelta | None = None) -> bool:
        current = now or utcnow()
        return current + (margin or timedelta(0)) >= self.expires_at

    def join_command(self) -> str:
        """Render the ``kubeadm join`` command line for this token."""
        return (
            f"kubeadm join {self.endpoint} --token {self.token.get_secret_value()} "
            f"--discovery-token-ca-cert-hash {self.discovery_hash}"
        )


class BootstrapPhase(str, Enum):
    """Cluster bootstrap phases, in the order they are traversed."""

    UNINITIALIZED = "uninitialized"
    CONTROL_PLANE_INITIALIZING = "control-plane-initializing"
    CONTROL_PLANE_READY = "control-plane-ready"
    NETWORK_DEPLOYING = "network-deploying"
    NETWORK_READY = "network-ready"
    WORKERS_JOINING = "workers-joining"
    READY = "ready"
    ABORTED = "aborted"


PHASE_ORDER: list[BootstrapPhase] = [
    BootstrapPhase.UNINITIALIZED,
    BootstrapPhase.CONTROL_PLANE_INITIALIZING,
    BootstrapPhase.CONTROL_PLANE_READY,
    BootstrapPhase.NETWORK_DEPLOYING,
    BootstrapPhase.NETWORK_READY,
    BootstrapPhase.WORKERS_JOINING,
    BootstrapPhase.READY,
]


class ClusterState(BaseModel):
    """Bootstrap progress of one cluster, owned by the bootstrapper."""

    cluster_name: str
    phase: BootstrapPhase = BootstrapPhase.UNINITIALIZED
    control_plane: Node | None = None
    workers: dict[str, Node] = Field(default_factory=dict)
    cni_deployed: bool = False
    joined_workers: list[str] = Field(default_factory=list)
    failed_workers: list[str] = Field(default_factory=list)
    kubeconfig_path: str | None = None
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_mid_bootstrap(self) -> bool:
        """True while bootstrap has started but neither completed nor been aborted."""
        return self.phase not in (
            BootstrapPhase.UNINITIALIZED,
            BootstrapPhase.READY,
            BootstrapPhase.ABORTED,
        )

    @property
    def node_count(self) -> int:
        return (1 if self.control_plane else 0) + len(self.workers)

    def reached(self, phase: BootstrapPhase) -> bool:
        """Whether the state is at or past ``phase`` in the traversal order."""
        if self.phase == BootstrapPhase.ABORTED:
            return False
        return PHASE_ORDER.index(self.phase) >= PHASE_ORDER.index(phase)


class StepResult(BaseModel):
    """Outcome of one convergence step on one node."""

    step_name: str
    node: str
    skipped: bool
    message: str = ""
    timestamp: datetime = Field(default_factory=utcnow)
