"""Tests for the cluster bootstrap state machine."""

import os
import stat
from unittest.mock import AsyncMock

import pytest

from kubestrap.bootstrap import BootstrapSettings, ClusterBootstrapper
from kubestrap.core.exceptions import BootstrapError, BootstrapErrorKind, RemoteExecError, RemoteExecErrorKind
from kubestrap.core.models import BootstrapPhase, ClusterState, Node, NodeRole
from kubestrap.preparation import NodePreparer
from kubestrap.provisioning import Ledger, Provisioner, build_cluster_graph

CNI_APPLY = "kubectl --kubeconfig /etc/kubernetes/admin.conf apply -f "


@pytest.fixture
def all_nodes(control_plane_node, worker_nodes):
    return [control_plane_node, *worker_nodes]


@pytest.fixture
def probe(make_probe, all_nodes):
    return make_probe(all_nodes)


@pytest.fixture
def make_bootstrapper(memory_store, fake_executor, probe, fast_settings, fake_clock, control_plane_node, worker_nodes):
    """Factory resuming a bootstrapper from the store with the fixture nodes registered."""

    async def _make(settings: BootstrapSettings | None = None) -> ClusterBootstrapper:
        bootstrapper = await ClusterBootstrapper.load(
            "test",
            memory_store,
            executor=fake_executor,
            probe_factory=lambda node: probe,
            settings=settings or fast_settings,
            clock=fake_clock,
        )
        await bootstrapper.register_nodes(control_plane_node, worker_nodes)
        return bootstrapper

    return _make


def flaky_join(executor, node_name: str | None = None, failures: int = 1, kind=RemoteExecErrorKind.CONNECT_FAILED):
    """Make ``kubeadm join`` fail ``failures`` times on ``node_name`` (any node if None)."""
    original = executor.run
    remaining = {"count": failures}

    async def run(node, script, check=True, timeout=None):
        if script.startswith("kubeadm join") and node_name in (None, node.name) and remaining["count"] > 0:
            remaining["count"] -= 1
            raise RemoteExecError("join broke", kind=kind, node=node.name)
        return await original(node, script, check=check, timeout=timeout)

    executor.run = run


class TestControlPlane:
    """Tests for control plane initialization."""

    @pytest.mark.asyncio
    async def test_initialize_reaches_control_plane_ready(self, make_bootstrapper, fake_executor, fast_settings):
        """Test a fresh control plane is initialized and its kubeconfig fetched."""
        bootstrapper = await make_bootstrapper()
        await bootstrapper.initialize_control_plane()

        state = bootstrapper.snapshot()
        assert state.phase == BootstrapPhase.CONTROL_PLANE_READY
        assert state.kubeconfig_path == str(fast_settings.kubeconfig_path)
        init = [s for _, s in fake_executor.log if s.startswith("kubeadm init")]
        assert init == ["kubeadm init --pod-network-cidr=10.244.0.0/16 --apiserver-cert-extra-sans=54.0.0.10"]

        kubeconfig = fast_settings.kubeconfig_path.read_text()
        assert "server: https://54.0.0.10:6443" in kubeconfig
        assert stat.S_IMODE(os.stat(fast_settings.kubeconfig_path).st_mode) == 0o600

    @pytest.mark.asyncio
    async def test_non_overlapping_pod_network_succeeds(self, make_bootstrapper, fast_settings):
        """Test 10.244.0.0/16 alongside a 10.0.0.0/16 VPC passes preflight."""
        assert fast_settings.pod_network_cidr == "10.244.0.0/16"
        assert fast_settings.vpc_cidr == "10.0.0.0/16"
        bootstrapper = await make_bootstrapper()
        await bootstrapper.initialize_control_plane()
        assert bootstrapper.snapshot().phase == BootstrapPhase.CONTROL_PLANE_READY

    @pytest.mark.asyncio
    async def test_overlapping_pod_network_fails_preflight(self, make_bootstrapper, fake_executor, fast_settings):
        """Test a pod network overlapping the VPC fails before kubeadm runs."""
        fast_settings.pod_network_cidr = "10.0.0.0/8"
        bootstrapper = await make_bootstrapper()

        with pytest.raises(BootstrapError) as exc_info:
            await bootstrapper.initialize_control_plane()

        assert exc_info.value.kind == BootstrapErrorKind.PREFLIGHT_FAILED
        assert exc_info.value.nodes == ["control-plane"]
        assert bootstrapper.snapshot().phase == BootstrapPhase.UNINITIALIZED
        assert fake_executor.index_of("kubeadm init") == -1

    @pytest.mark.asyncio
    async def test_kubeadm_preflight_errors_classified(self, make_bootstrapper, fake_executor):
        """Test kubeadm's own preflight errors map to PREFLIGHT_FAILED."""
        fake_executor.init_output = (
            "[preflight] Running pre-flight checks\n"
            "error execution phase preflight: [preflight] Some fatal errors occurred:\n"
            "\t[ERROR NumCPU]: the number of available CPUs 1 is less than the required 2\n"
        )
        bootstrapper = await make_bootstrapper()

        with pytest.raises(BootstrapError) as exc_info:
            await bootstrapper.initialize_control_plane()

        assert exc_info.value.kind == BootstrapErrorKind.PREFLIGHT_FAILED
        assert exc_info.value.phase == BootstrapPhase.CONTROL_PLANE_INITIALIZING

    @pytest.mark.asyncio
    async def test_other_init_failures(self, make_bootstrapper, fake_executor):
        """Test other kubeadm init failures map to INIT_FAILED."""
        fake_executor.init_output = "timed out waiting for the condition"
        bootstrapper = await make_bootstrapper()

        with pytest.raises(BootstrapError) as exc_info:
            await bootstrapper.initialize_control_plane()
        assert exc_info.value.kind == BootstrapErrorKind.INIT_FAILED

    @pytest.mark.asyncio
    async def test_half_initialized_node_is_not_reinitialized(self, make_bootstrapper, fake_executor):
        """Test leftover manifests without admin.conf need manual reset."""
        fake_executor.half_initialized.add("control-plane")
        bootstrapper = await make_bootstrapper()

        with pytest.raises(BootstrapError, match="kubeadm reset") as exc_info:
            await bootstrapper.initialize_control_plane()

        assert exc_info.value.kind == BootstrapErrorKind.INIT_FAILED
        assert fake_executor.index_of("kubeadm init") == -1

    @pytest.mark.asyncio
    async def test_initialized_node_is_adopted(self, make_bootstrapper, fake_executor):
        """Test a resumed bootstrap never runs kubeadm init twice."""
        fake_executor.initialized.add("control-plane")
        bootstrapper = await make_bootstrapper()
        await bootstrapper.initialize_control_plane()

        assert bootstrapper.snapshot().phase == BootstrapPhase.CONTROL_PLANE_READY
        assert fake_executor.index_of("kubeadm init") == -1

    @pytest.mark.asyncio
    async def test_ready_control_plane_is_skipped(self, make_bootstrapper, fake_executor):
        """Test a second call does nothing once the control plane is ready."""
        await (await make_bootstrapper()).initialize_control_plane()
        runs = len(fake_executor.log)

        await (await make_bootstrapper()).initialize_control_plane()
        assert len(fake_executor.log) == runs

    @pytest.mark.asyncio
    async def test_api_server_timeout(self, make_bootstrapper, probe):
        """Test an unresponsive API server times out instead of hanging."""
        probe.api_server_ready = AsyncMock(return_value=False)
        bootstrapper = await make_bootstrapper()

        with pytest.raises(BootstrapError) as exc_info:
            await bootstrapper.initialize_control_plane()

        assert exc_info.value.kind == BootstrapErrorKind.TIMED_OUT
        assert bootstrapper.snapshot().phase == BootstrapPhase.CONTROL_PLANE_INITIALIZING


class TestNetwork:
    """Tests for pod network deployment."""

    @pytest.mark.asyncio
    async def test_bootstrap_reaches_network_ready(self, make_bootstrapper, fake_executor, memory_store):
        """Test bootstrap applies the CNI and waits for the control plane node."""
        state = await (await make_bootstrapper()).bootstrap()

        assert state.phase == BootstrapPhase.NETWORK_READY
        assert state.cni_deployed
        assert state.control_plane.ready
        assert fake_executor.index_of(CNI_APPLY) > fake_executor.index_of("kubeadm init")
        assert (await memory_store.load_cluster_state("test")).phase == BootstrapPhase.NETWORK_READY

    @pytest.mark.asyncio
    async def test_deploy_requires_control_plane(self, make_bootstrapper):
        """Test the network cannot be deployed before the control plane is ready."""
        with pytest.raises(BootstrapError):
            await (await make_bootstrapper()).deploy_network()

    @pytest.mark.asyncio
    async def test_node_never_ready(self, make_bootstrapper, probe):
        """Test a control plane that stays NotReady yields NETWORK_NOT_READY."""
        probe.never_ready.add("control-plane")
        bootstrapper = await make_bootstrapper()

        with pytest.raises(BootstrapError) as exc_info:
            await bootstrapper.bootstrap()

        assert exc_info.value.kind == BootstrapErrorKind.NETWORK_NOT_READY
        state = bootstrapper.snapshot()
        assert state.phase == BootstrapPhase.NETWORK_DEPLOYING
        assert state.cni_deployed


class TestWorkers:
    """Tests for worker join."""

    @pytest.mark.asyncio
    async def test_join_refused_before_network_ready(self, make_bootstrapper, fake_executor):
        """Test no worker begins joining before the network is ready."""
        bootstrapper = await make_bootstrapper()
        await bootstrapper.initialize_control_plane()

        with pytest.raises(BootstrapError) as exc_info:
            await bootstrapper.join_worker("worker-1")

        assert exc_info.value.kind == BootstrapErrorKind.NETWORK_NOT_READY
        assert fake_executor.tokens_issued == 0
        assert fake_executor.index_of("kubeadm join") == -1

    @pytest.mark.asyncio
    async def test_join_all_workers(self, make_bootstrapper, fake_executor, memory_store):
        """Test every worker joins with its own token and the cluster becomes Ready."""
        bootstrapper = await make_bootstrapper()
        await bootstrapper.bootstrap()
        state = await bootstrapper.join()

        assert state.phase == BootstrapPhase.READY
        assert state.joined_workers == ["worker-1", "worker-2"]
        assert all(w.ready for w in state.workers.values())
        assert fake_executor.tokens_issued == 2
        cni_index = fake_executor.index_of(CNI_APPLY)
        for name in ("worker-1", "worker-2"):
            assert fake_executor.index_of("kubeadm join", name) > cni_index

    @pytest.mark.asyncio
    async def test_concurrent_joins_are_all_recorded(
        self, slow_store, fake_executor, make_probe, control_plane_node, fast_settings
    ):
        """Test parallel joins against a store that yields never drop a joined worker."""
        workers = [
            Node(
                name=f"worker-{i}",
                role=NodeRole.WORKER,
                physical_id=f"i-0cc{i}",
                public_address=f"54.0.1.{i}",
                private_address=f"10.0.2.{i}",
            )
            for i in (1, 2, 3)
        ]
        probe = make_probe([control_plane_node, *workers])
        bootstrapper = await ClusterBootstrapper.load(
            "test", slow_store, executor=fake_executor, probe_factory=lambda node: probe, settings=fast_settings
        )
        await bootstrapper.register_nodes(control_plane_node, workers)
        await bootstrapper.bootstrap()

        state = await bootstrapper.join()

        assert state.phase == BootstrapPhase.READY
        assert state.joined_workers == ["worker-1", "worker-2", "worker-3"]
        persisted = await slow_store.load_cluster_state("test")
        assert persisted.phase == BootstrapPhase.READY
        assert persisted.joined_workers == ["worker-1", "worker-2", "worker-3"]

    @pytest.mark.asyncio
    async def test_cluster_without_workers_becomes_ready(
        self, memory_store, fake_executor, make_probe, control_plane_node, fast_settings
    ):
        """Test a control-plane-only cluster reaches Ready through an empty join."""
        probe = make_probe([control_plane_node])
        bootstrapper = await ClusterBootstrapper.load(
            "test", memory_store, executor=fake_executor, probe_factory=lambda node: probe, settings=fast_settings
        )
        await bootstrapper.register_nodes(control_plane_node, [])
        await bootstrapper.bootstrap()

        state = await bootstrapper.join()

        assert state.phase == BootstrapPhase.READY
        assert state.joined_workers == []
        assert fake_executor.tokens_issued == 0

    @pytest.mark.asyncio
    async def test_join_tokens_are_never_persisted(self, make_bootstrapper, memory_store):
        """Test no token value reaches the state store."""
        bootstrapper = await make_bootstrapper()
        await bootstrapper.bootstrap()
        await bootstrapper.join()
        assert "abcdef.0123456789abcdef" not in str(memory_store.states)

    @pytest.mark.asyncio
    async def test_expired_token_fails_fast(self, make_bootstrapper, fake_executor, fake_clock):
        """Test a token whose expiry elapsed before use fails with TOKEN_EXPIRED."""
        bootstrapper = await make_bootstrapper()
        await bootstrapper.bootstrap()
        token = await bootstrapper.request_join_token()
        fake_clock.advance(601)

        with pytest.raises(BootstrapError) as exc_info:
            await bootstrapper.join_worker("worker-1", token)

        assert exc_info.value.kind == BootstrapErrorKind.TOKEN_EXPIRED
        assert exc_info.value.nodes == ["worker-1"]
        assert fake_executor.index_of("kubeadm join") == -1
        assert bootstrapper.snapshot().failed_workers == ["worker-1"]

    @pytest.mark.asyncio
    async def test_fresh_token_after_clock_moves(self, make_bootstrapper, fake_executor, fake_clock):
        """Test joins without a supplied token always request a fresh one."""
        bootstrapper = await make_bootstrapper()
        await bootstrapper.bootstrap()
        await bootstrapper.request_join_token()
        fake_clock.advance(3600)

        await bootstrapper.join_worker("worker-1")
        assert "worker-1" in fake_executor.joined
        assert fake_executor.tokens_issued == 2

    @pytest.mark.asyncio
    async def test_connection_failures_are_retried_with_new_tokens(self, make_bootstrapper, fake_executor):
        """Test a dropped connection during join is retried with a fresh token."""
        bootstrapper = await make_bootstrapper()
        await bootstrapper.bootstrap()
        flaky_join(fake_executor, "worker-1", failures=1)

        await bootstrapper.join_worker("worker-1")

        assert "worker-1" in fake_executor.joined
        assert fake_executor.tokens_issued == 2
        assert bootstrapper.snapshot().joined_workers == ["worker-1"]

    @pytest.mark.asyncio
    async def test_kubeadm_join_failure_not_retried(self, make_bootstrapper, fake_executor):
        """Test a join rejected by kubeadm surfaces after one attempt."""
        fake_executor.join_output = "error execution phase preflight: /etc/kubernetes/kubelet.conf already exists"
        bootstrapper = await make_bootstrapper()
        await bootstrapper.bootstrap()

        with pytest.raises(BootstrapError) as exc_info:
            await bootstrapper.join_worker("worker-1")

        assert exc_info.value.kind == BootstrapErrorKind.JOIN_FAILED
        assert fake_executor.tokens_issued == 1

    @pytest.mark.asyncio
    async def test_one_failed_worker_does_not_block_others(self, make_bootstrapper, fake_executor):
        """Test workers join independently and failures are reported together."""
        bootstrapper = await make_bootstrapper()
        await bootstrapper.bootstrap()
        flaky_join(fake_executor, "worker-2", failures=10, kind=RemoteExecErrorKind.COMMAND_FAILED)

        with pytest.raises(BootstrapError) as exc_info:
            await bootstrapper.join_workers()

        assert exc_info.value.kind == BootstrapErrorKind.JOIN_FAILED
        assert exc_info.value.nodes == ["worker-2"]
        state = bootstrapper.snapshot()
        assert state.joined_workers == ["worker-1"]
        assert state.failed_workers == ["worker-2"]
        assert state.phase == BootstrapPhase.WORKERS_JOINING

    @pytest.mark.asyncio
    async def test_already_joined_worker_is_skipped(self, make_bootstrapper, fake_executor):
        """Test a worker with a kubelet config is recorded as joined without a token."""
        bootstrapper = await make_bootstrapper()
        await bootstrapper.bootstrap()
        fake_executor.joined.add("worker-1")

        await bootstrapper.join_worker("worker-1")

        assert fake_executor.tokens_issued == 0
        assert bootstrapper.snapshot().joined_workers == ["worker-1"]

    @pytest.mark.asyncio
    async def test_unknown_worker(self, make_bootstrapper):
        """Test joining a node that was never registered."""
        bootstrapper = await make_bootstrapper()
        await bootstrapper.bootstrap()
        with pytest.raises(BootstrapError, match="Unknown worker"):
            await bootstrapper.join_worker("worker-9")

    @pytest.mark.asyncio
    async def test_workers_ready_timeout(self, make_bootstrapper, probe):
        """Test workers stuck NotReady time out with their names."""
        probe.never_ready.add("worker-2")
        bootstrapper = await make_bootstrapper()
        await bootstrapper.bootstrap()

        with pytest.raises(BootstrapError) as exc_info:
            await bootstrapper.join()

        assert exc_info.value.kind == BootstrapErrorKind.TIMED_OUT
        assert exc_info.value.nodes == ["worker-2"]
        assert bootstrapper.snapshot().phase == BootstrapPhase.WORKERS_JOINING


class TestRegistration:
    """Tests for recording the nodes a cluster is built from."""

    @pytest.mark.asyncio
    async def test_same_nodes_keep_progress(self, make_bootstrapper):
        """Test re-registering unchanged nodes leaves a Ready cluster Ready."""
        bootstrapper = await make_bootstrapper()
        await bootstrapper.bootstrap()
        await bootstrapper.join()

        state = (await make_bootstrapper()).snapshot()

        assert state.phase == BootstrapPhase.READY
        assert state.joined_workers == ["worker-1", "worker-2"]
        assert all(w.ready for w in state.workers.values())

    @pytest.mark.asyncio
    async def test_replaced_control_plane_is_reinitialized(
        self, make_bootstrapper, fake_executor, control_plane_node, worker_nodes
    ):
        """Test a control plane with a new instance id resets progress and is initialized again."""
        bootstrapper = await make_bootstrapper()
        await bootstrapper.bootstrap()
        await bootstrapper.join()

        # The new instance starts blank
        fake_executor.initialized.clear()
        fake_executor.joined.clear()
        replacement = control_plane_node.model_copy(update={"physical_id": "i-0fff"})
        await bootstrapper.register_nodes(replacement, worker_nodes)

        state = bootstrapper.snapshot()
        assert state.phase == BootstrapPhase.UNINITIALIZED
        assert state.joined_workers == []
        assert state.cni_deployed is False
        assert state.kubeconfig_path is None

        await bootstrapper.bootstrap()
        state = await bootstrapper.join()

        assert state.phase == BootstrapPhase.READY
        assert len([s for _, s in fake_executor.log if s.startswith("kubeadm init")]) == 2
        assert state.control_plane.physical_id == "i-0fff"

    @pytest.mark.asyncio
    async def test_replaced_worker_must_rejoin(self, make_bootstrapper, control_plane_node, worker_nodes):
        """Test a worker with a new instance id loses its joined mark."""
        bootstrapper = await make_bootstrapper()
        await bootstrapper.bootstrap()
        await bootstrapper.join()

        replacement = worker_nodes[1].model_copy(update={"physical_id": "i-0ddd"})
        await bootstrapper.register_nodes(control_plane_node, [worker_nodes[0], replacement])

        state = bootstrapper.snapshot()
        assert state.joined_workers == ["worker-1"]
        assert state.workers["worker-2"].ready is False
        assert state.phase == BootstrapPhase.READY


class TestAbort:
    """Tests for abort and resume."""

    @pytest.mark.asyncio
    async def test_abort_mid_bootstrap(self, make_bootstrapper, probe, memory_store):
        """Test aborting a stuck bootstrap persists ABORTED."""
        probe.never_ready.add("control-plane")
        bootstrapper = await make_bootstrapper()
        with pytest.raises(BootstrapError):
            await bootstrapper.bootstrap()

        state = await bootstrapper.abort()

        assert state.phase == BootstrapPhase.ABORTED
        assert not state.is_mid_bootstrap
        assert (await memory_store.load_cluster_state("test")).phase == BootstrapPhase.ABORTED

    @pytest.mark.asyncio
    async def test_abort_outside_bootstrap_is_noop(self, make_bootstrapper):
        """Test aborting an untouched cluster changes nothing."""
        state = await (await make_bootstrapper()).abort()
        assert state.phase == BootstrapPhase.UNINITIALIZED

    @pytest.mark.asyncio
    async def test_resume_after_abort(self, make_bootstrapper, probe, fake_executor):
        """Test an aborted bootstrap can be resumed without re-running kubeadm init."""
        probe.never_ready.add("control-plane")
        bootstrapper = await make_bootstrapper()
        with pytest.raises(BootstrapError):
            await bootstrapper.bootstrap()
        await bootstrapper.abort()
        probe.never_ready.clear()

        state = await (await make_bootstrapper()).bootstrap()

        assert state.phase == BootstrapPhase.NETWORK_READY
        assert len([s for _, s in fake_executor.log if s.startswith("kubeadm init")]) == 1


@pytest.mark.asyncio
async def test_end_to_end_provision_prepare_bootstrap_join(
    sample_config, fake_provider, fake_executor, make_probe, memory_store, fast_settings, fast_retry
):
    """Test provision, prepare, bootstrap and join yield a Ready two-node cluster."""
    ledger = await Ledger.load("test", memory_store)
    result = await Provisioner(fake_provider, ledger, policy=fast_retry, poll_interval=0).apply(
        build_cluster_graph(sample_config)
    )
    assert result.ok

    nodes = ledger.nodes()
    assert [n.name for n in nodes] == ["control-plane", "worker-1"]

    preparer = NodePreparer(fake_executor)
    for node in nodes:
        await preparer.prepare(node)

    probe = make_probe(nodes)
    bootstrapper = await ClusterBootstrapper.load(
        "test", memory_store, executor=fake_executor, probe_factory=lambda node: probe, settings=fast_settings
    )
    await bootstrapper.register_nodes(nodes[0], nodes[1:])
    await bootstrapper.bootstrap()
    state = await bootstrapper.join()

    assert state.phase == BootstrapPhase.READY
    assert state.node_count == 2
    assert fake_executor.index_of("kubeadm init") > fake_executor.index_of("set -euo pipefail", "control-plane")

    persisted = await memory_store.load_cluster_state("test")
    assert isinstance(persisted, ClusterState)
    assert persisted.phase == BootstrapPhase.READY
