"""Pytest configuration and shared fixtures."""

import asyncio
from collections import defaultdict
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from kubestrap.bootstrap.bootstrapper import INSPECT_CONTROL_PLANE, BootstrapSettings
from kubestrap.core.config import KubestrapConfig, NodesConfig
from kubestrap.core.exceptions import ProviderError, ProviderErrorKind, RemoteExecError, RemoteExecErrorKind
from kubestrap.core.models import (
    ClusterState,
    CommandResult,
    Node,
    NodeRole,
    ResourceKind,
    ResourceRecord,
    ResourceSpec,
    ResourceStatus,
)
from kubestrap.interfaces.cloud_provider import CloudProvider
from kubestrap.interfaces.cloud_types import ProviderResult
from kubestrap.interfaces.cluster_probe import ClusterProbe, NodeInfo
from kubestrap.interfaces.remote_executor import RemoteExecutor
from kubestrap.interfaces.state_store import StateStore
from kubestrap.preparation.steps import ConvergenceStep, default_steps
from kubestrap.utils.retry import RetryPolicy

FAST_RETRY = RetryPolicy(max_attempts=3, min_wait=0, max_wait=0, max_elapsed=5)

ADMIN_CONF_YAML = """apiVersion: v1
kind: Config
clusters:
- name: kubernetes
  cluster:
    certificate-authority-data: Y2E=
    server: https://10.0.1.10:6443
contexts:
- name: kubernetes-admin@kubernetes
  context:
    cluster: kubernetes
    user: kubernetes-admin
current-context: kubernetes-admin@kubernetes
users:
- name: kubernetes-admin
  user:
    client-certificate-data: Y2VydA==
"""

JOIN_OUTPUT = (
    "kubeadm join 10.0.1.10:6443 --token abcdef.0123456789abcdef "
    "--discovery-token-ca-cert-hash sha256:" + "a" * 64 + "\n"
)


# ==============================================================================
# Fakes
# ==============================================================================


class InMemoryStateStore(StateStore):
    """State store keeping JSON round-tripped copies in memory."""

    def __init__(self) -> None:
        self.records: dict[str, dict[str, Any]] = {}
        self.states: dict[str, dict[str, Any]] = {}
        self.saves = 0

    async def load_records(self, cluster_name: str) -> dict[str, ResourceRecord]:
        raw = self.records.get(cluster_name, {})
        return {name: ResourceRecord.model_validate(value) for name, value in raw.items()}

    async def save_records(self, cluster_name: str, records: dict[str, ResourceRecord]) -> None:
        self.saves += 1
        self.records[cluster_name] = {n: r.model_dump(mode="json") for n, r in records.items()}

    async def load_cluster_state(self, cluster_name: str) -> ClusterState | None:
        raw = self.states.get(cluster_name)
        return ClusterState.model_validate(raw) if raw is not None else None

    async def save_cluster_state(self, state: ClusterState) -> None:
        self.saves += 1
        self.states[state.cluster_name] = state.model_dump(mode="json")

    async def delete(self, cluster_name: str) -> None:
        self.records.pop(cluster_name, None)
        self.states.pop(cluster_name, None)


class SlowStateStore(InMemoryStateStore):
    """In-memory store whose saves suspend, like a real file or S3 write."""

    def __init__(self, delay: float = 0.01) -> None:
        super().__init__()
        self.delay = delay

    async def save_records(self, cluster_name: str, records: dict[str, ResourceRecord]) -> None:
        await asyncio.sleep(self.delay)
        await super().save_records(cluster_name, records)

    async def save_cluster_state(self, state: ClusterState) -> None:
        await asyncio.sleep(self.delay)
        await super().save_cluster_state(state)


class FakeProvider(CloudProvider):
    """In-memory cloud with scripted failures.

    Attributes:
        calls: (verb, logical name or physical id) in call order
        fail_create: Logical name -> error raised by every create
        transient_creates: Logical name -> number of TRANSIENT failures before success
        pending_polls: Describes answering PENDING before a resource turns Ready
        never_ready: Logical names that stay PENDING forever
        conflicts: Physical id -> number of CONFLICT failures on delete
        transient_configures: Logical name -> TRANSIENT failures of the follow-up call
        fail_configure: Logical name -> error raised by every follow-up call
    """

    def __init__(self) -> None:
        self.resources: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, str]] = []
        self.fail_create: dict[str, ProviderError] = {}
        self.transient_creates: dict[str, int] = {}
        self.transient_configures: dict[str, int] = {}
        self.fail_configure: dict[str, ProviderError] = {}
        self.pending_polls = 0
        self.never_ready: set[str] = set()
        self.conflicts: dict[str, int] = {}
        self._counter = 0

    @property
    def created(self) -> list[str]:
        return [name for verb, name in self.calls if verb == "create"]

    @property
    def deleted(self) -> list[str]:
        return [pid for verb, pid in self.calls if verb == "delete"]

    def name_of(self, physical_id: str) -> str:
        return self.resources[physical_id]["name"]

    async def create(self, spec: ResourceSpec, refs: dict[str, str]) -> ProviderResult:
        self.calls.append(("create", spec.name))
        if spec.name in self.fail_create:
            raise self.fail_create[spec.name]
        if self.transient_creates.get(spec.name, 0) > 0:
            self.transient_creates[spec.name] -= 1
            raise ProviderError("throttled", kind=ProviderErrorKind.TRANSIENT, code="RequestLimitExceeded")

        self._counter += 1
        physical_id = f"{spec.kind.value}-{self._counter:04d}"
        attributes: dict[str, Any] = {"refs": dict(refs)}
        if spec.kind == ResourceKind.INSTANCE:
            attributes.update(
                {
                    "public_ip": f"54.0.0.{self._counter}",
                    "private_ip": f"10.0.1.{self._counter}",
                    "role": spec.attributes.get("role"),
                    "state": "running",
                }
            )
        self.resources[physical_id] = {
            "name": spec.name,
            "kind": spec.kind,
            "polls": self.pending_polls,
            "attributes": attributes,
        }
        return ProviderResult(physical_id=physical_id, status=ResourceStatus.PENDING, attributes=dict(attributes))

    async def configure(self, spec: ResourceSpec, physical_id: str, refs: dict[str, str]) -> None:
        self.calls.append(("configure", spec.name))
        if spec.name in self.fail_configure:
            raise self.fail_configure[spec.name]
        if self.transient_configures.get(spec.name, 0) > 0:
            self.transient_configures[spec.name] -= 1
            raise ProviderError("throttled", kind=ProviderErrorKind.TRANSIENT, code="RequestLimitExceeded")

    async def describe(self, kind: ResourceKind, physical_id: str) -> ProviderResult:
        self.calls.append(("describe", physical_id))
        resource = self.resources.get(physical_id)
        if resource is None:
            raise ProviderError(f"{physical_id} not found", kind=ProviderErrorKind.NOT_FOUND, resource=physical_id)
        if resource["name"] in self.never_ready:
            return ProviderResult(physical_id, ResourceStatus.PENDING, dict(resource["attributes"]))
        if resource["polls"] > 0:
            resource["polls"] -= 1
            return ProviderResult(physical_id, ResourceStatus.PENDING, dict(resource["attributes"]))
        return ProviderResult(physical_id, ResourceStatus.READY, dict(resource["attributes"]))

    async def delete(self, kind: ResourceKind, physical_id: str, attributes: dict[str, Any]) -> None:
        self.calls.append(("delete", physical_id))
        if self.conflicts.get(physical_id, 0) > 0:
            self.conflicts[physical_id] -= 1
            raise ProviderError("still in use", kind=ProviderErrorKind.CONFLICT, code="DependencyViolation")
        if physical_id not in self.resources:
            raise ProviderError(f"{physical_id} not found", kind=ProviderErrorKind.NOT_FOUND, resource=physical_id)
        del self.resources[physical_id]


class FakeExecutor(RemoteExecutor):
    """Simulated nodes that understand the preparation and kubeadm scripts.

    Attributes:
        log: (node name, script) for every run, in order
        satisfied: Node name -> names of convergence steps that hold
        broken_steps: Step names whose apply never makes verification pass
        connect_failures: Node name -> CONNECT_FAILED errors before connecting
        init_output: If set, ``kubeadm init`` fails with this output
        join_output: If set, ``kubeadm join`` fails with this output
        half_initialized: Control planes with manifests but no admin.conf
    """

    def __init__(self, steps: list[ConvergenceStep] | None = None) -> None:
        self.steps = steps or default_steps()
        self.log: list[tuple[str, str]] = []
        self.satisfied: dict[str, set[str]] = defaultdict(set)
        self.broken_steps: set[str] = set()
        self.connect_failures: dict[str, int] = {}
        self.init_output: str | None = None
        self.join_output: str | None = None
        self.initialized: set[str] = set()
        self.half_initialized: set[str] = set()
        self.joined: set[str] = set()
        self.cni_applied = False
        self.tokens_issued = 0

    def converge_all(self, node_name: str) -> None:
        self.satisfied[node_name] = {s.name for s in self.steps}

    def mutating_scripts(self, node_name: str | None = None) -> list[str]:
        applies = {s.apply for s in self.steps}
        return [script for name, script in self.log if script in applies and node_name in (None, name)]

    def index_of(self, prefix: str, node_name: str | None = None) -> int:
        for i, (name, script) in enumerate(self.log):
            if script.startswith(prefix) and node_name in (None, name):
                return i
        return -1

    async def run(self, node: Node, script: str, check: bool = True, timeout: float | None = None) -> CommandResult:
        if self.connect_failures.get(node.name, 0) > 0:
            self.connect_failures[node.name] -= 1
            raise RemoteExecError("connection refused", kind=RemoteExecErrorKind.CONNECT_FAILED, node=node.name)

        self.log.append((node.name, script))
        result = self._simulate(node, script)
        if check and not result.ok:
            raise RemoteExecError(
                f"exit {result.exit_code}", kind=RemoteExecErrorKind.COMMAND_FAILED, node=node.name, result=result
            )
        return result

    def _simulate(self, node: Node, script: str) -> CommandResult:
        for step in self.steps:
            if script == step.verify:
                return CommandResult(exit_code=0 if step.name in self.satisfied[node.name] else 1)
            if script == step.apply:
                if step.name not in self.broken_steps:
                    self.satisfied[node.name].add(step.name)
                return CommandResult(exit_code=0)

        if script == INSPECT_CONTROL_PLANE:
            markers = []
            if node.name in self.initialized:
                markers += ["admin-conf", "manifests"]
            elif node.name in self.half_initialized:
                markers.append("manifests")
            return CommandResult(exit_code=0, stdout="\n".join(markers))
        if script.startswith("kubeadm init"):
            if self.init_output is not None:
                return CommandResult(exit_code=1, stderr=self.init_output)
            self.initialized.add(node.name)
            return CommandResult(exit_code=0, stdout="Your Kubernetes control-plane has initialized successfully!")
        if script == "sudo cat /etc/kubernetes/admin.conf":
            if node.name not in self.initialized:
                return CommandResult(exit_code=1, stderr="No such file or directory")
            return CommandResult(exit_code=0, stdout=ADMIN_CONF_YAML)
        if " apply -f " in script:
            self.cni_applied = True
            return CommandResult(exit_code=0, stdout="daemonset.apps/kube-flannel-ds created")
        if script.startswith("kubeadm token create"):
            self.tokens_issued += 1
            return CommandResult(exit_code=0, stdout=JOIN_OUTPUT)
        if script == "test -f /etc/kubernetes/kubelet.conf":
            return CommandResult(exit_code=0 if node.name in self.joined else 1)
        if script.startswith("kubeadm join"):
            if self.join_output is not None:
                return CommandResult(exit_code=1, stderr=self.join_output)
            self.joined.add(node.name)
            return CommandResult(exit_code=0, stdout="This node has joined the cluster")
        return CommandResult(exit_code=127, stderr=f"unknown script: {script[:40]}")


class FakeProbe(ClusterProbe):
    """Cluster view derived from a FakeExecutor's simulated nodes."""

    def __init__(self, executor: FakeExecutor, nodes: list[Node]) -> None:
        self.executor = executor
        self.nodes = {n.name: n for n in nodes}
        self.never_ready: set[str] = set()

    async def api_server_ready(self) -> bool:
        return bool(self.executor.initialized)

    async def get_nodes(self) -> list[NodeInfo]:
        registered = self.executor.initialized | self.executor.joined
        return [
            NodeInfo(
                name=f"ip-{self.nodes[name].private_address.replace('.', '-')}",
                ready=self.executor.cni_applied and name not in self.never_ready,
                addresses=[self.nodes[name].private_address],
            )
            for name in sorted(registered)
            if name in self.nodes
        ]


class FakeClock:
    """Settable clock for token expiry."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


# ==============================================================================
# Fixtures
# ==============================================================================


@pytest.fixture
def sample_config() -> KubestrapConfig:
    """Provide a sample configuration with one worker."""
    return KubestrapConfig(
        cluster_name="test",
        nodes=NodesConfig(ami_id="ami-0123456789abcdef0", worker_count=1),
    )


@pytest.fixture
def memory_store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def slow_store() -> SlowStateStore:
    """State store that yields to the event loop on every save."""
    return SlowStateStore()


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def fake_executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def control_plane_node() -> Node:
    return Node(
        name="control-plane",
        role=NodeRole.CONTROL_PLANE,
        physical_id="i-0aaa",
        public_address="54.0.0.10",
        private_address="10.0.1.10",
    )


@pytest.fixture
def worker_nodes() -> list[Node]:
    return [
        Node(
            name=f"worker-{i}",
            role=NodeRole.WORKER,
            physical_id=f"i-0bb{i}",
            public_address=f"54.0.0.{20 + i}",
            private_address=f"10.0.1.{20 + i}",
        )
        for i in (1, 2)
    ]


@pytest.fixture
def fast_retry() -> RetryPolicy:
    return FAST_RETRY


@pytest.fixture
def make_probe(fake_executor: FakeExecutor):
    """Factory building a FakeProbe over ``fake_executor`` for the given nodes."""

    def _make(nodes: list[Node]) -> FakeProbe:
        return FakeProbe(fake_executor, nodes)

    return _make


@pytest.fixture
def fake_executor_class() -> type[FakeExecutor]:
    return FakeExecutor


@pytest.fixture
def fast_settings(tmp_path) -> BootstrapSettings:
    """Bootstrap settings with zero waits and sub-second deadlines."""
    return BootstrapSettings(
        pod_network_cidr="10.244.0.0/16",
        vpc_cidr="10.0.0.0/16",
        token_ttl_seconds=600,
        api_server_timeout=0.2,
        network_timeout=0.2,
        workers_timeout=0.2,
        poll_interval=0.01,
        join_attempts=3,
        join_policy=FAST_RETRY,
        kubeconfig_path=tmp_path / "admin.conf",
    )


# ==============================================================================
# Pytest Markers
# ==============================================================================


def pytest_configure(config: Any) -> None:
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
