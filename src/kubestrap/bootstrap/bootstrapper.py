"""Cluster bootstrap state machine: control plane, network, worker join."""

import asyncio
import ipaddress
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from kubestrap.bootstrap.kubeconfig import rewrite_server, write_private_file
from kubestrap.bootstrap.probes import ADMIN_CONF
from kubestrap.bootstrap.tokens import parse_join_command, token_create_command
from kubestrap.core.config import KubestrapConfig
from kubestrap.core.exceptions import (
    BootstrapError,
    BootstrapErrorKind,
    KubestrapError,
    ProbeError,
    RemoteExecError,
    RemoteExecErrorKind,
)
from kubestrap.core.models import BootstrapPhase, ClusterState, JoinToken, Node, utcnow
from kubestrap.interfaces.cluster_probe import ClusterProbe
from kubestrap.interfaces.remote_executor import RemoteExecutor
from kubestrap.interfaces.state_store import StateStore
from kubestrap.utils.logging import get_logger
from kubestrap.utils.retry import RetryPolicy, call_with_retry

logger = get_logger(__name__)

KUBELET_CONF = "/etc/kubernetes/kubelet.conf"
MANIFESTS_DIR = "/etc/kubernetes/manifests"

TRANSITIONS: dict[BootstrapPhase, set[BootstrapPhase]] = {
    BootstrapPhase.UNINITIALIZED: {BootstrapPhase.CONTROL_PLANE_INITIALIZING},
    BootstrapPhase.CONTROL_PLANE_INITIALIZING: {BootstrapPhase.CONTROL_PLANE_READY},
    BootstrapPhase.CONTROL_PLANE_READY: {BootstrapPhase.NETWORK_DEPLOYING},
    BootstrapPhase.NETWORK_DEPLOYING: {BootstrapPhase.NETWORK_READY},
    BootstrapPhase.NETWORK_READY: {BootstrapPhase.WORKERS_JOINING},
    BootstrapPhase.WORKERS_JOINING: {BootstrapPhase.READY},
    # New workers can be joined to a finished cluster
    BootstrapPhase.READY: {BootstrapPhase.WORKERS_JOINING},
    BootstrapPhase.ABORTED: {BootstrapPhase.CONTROL_PLANE_INITIALIZING},
}

INSPECT_CONTROL_PLANE = f"""test -f {ADMIN_CONF} && echo admin-conf
test -n "$(ls -A {MANIFESTS_DIR} 2>/dev/null)" && echo manifests
true
"""


@dataclass
class BootstrapSettings:
    """Inputs and bounds for one cluster bootstrap."""

    pod_network_cidr: str = "10.244.0.0/16"
    vpc_cidr: str | None = None
    cni_manifest_url: str = (
        "https://raw.githubusercontent.com/flannel-io/flannel/master/Documentation/kube-flannel.yml"
    )
    token_ttl_seconds: int = 600
    api_server_timeout: float = 300.0
    network_timeout: float = 300.0
    workers_timeout: float = 600.0
    poll_interval: float = 5.0
    join_attempts: int = 3
    join_policy: RetryPolicy = RetryPolicy(max_attempts=3, min_wait=2, max_wait=15, max_elapsed=300)
    command_timeout: float | None = 900.0
    kubeconfig_path: Path | None = None

    @classmethod
    def from_config(cls, config: KubestrapConfig) -> "BootstrapSettings":
        retry = config.retry
        return cls(
            pod_network_cidr=config.kubernetes.pod_network_cidr,
            vpc_cidr=config.network.vpc_cidr,
            cni_manifest_url=config.kubernetes.cni_manifest_url,
            token_ttl_seconds=config.kubernetes.token_ttl_seconds,
            api_server_timeout=config.timeouts.api_server_ready,
            network_timeout=config.timeouts.network_ready,
            workers_timeout=config.timeouts.workers_ready,
            poll_interval=config.timeouts.poll_interval,
            join_attempts=retry.join_attempts,
            join_policy=RetryPolicy(retry.join_attempts, retry.min_wait, retry.max_wait, retry.max_elapsed),
            kubeconfig_path=config.state_dir() / "admin.conf",
        )


class ClusterBootstrapper:
    """Drive ClusterState through the bootstrap phases.

    The bootstrapper is the only writer of ClusterState. Writes are
    serialized by one lock and persisted on every change; readers use
    :meth:`snapshot`. A phase only advances after its transition has been
    confirmed, so a failure leaves the state at the phase reached.

    Workers never start joining before the phase has reached
    ``NETWORK_READY``.
    """

    def __init__(
        self,
        state: ClusterState,
        store: StateStore,
        executor: RemoteExecutor,
        probe_factory: Callable[[Node], ClusterProbe],
        settings: BootstrapSettings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the bootstrapper.

        Args:
            state: Current cluster state (see :meth:`load`)
            store: Persistence for the cluster state
            executor: Remote executor for node commands
            probe_factory: Builds a ClusterProbe for a control plane node
            settings: Bootstrap inputs and bounds
            clock: Source of the current time, used for token expiry
        """
        self.state = state
        self.store = store
        self.executor = executor
        self.probe_factory = probe_factory
        self.settings = settings or BootstrapSettings()
        self.clock = clock
        self._lock = asyncio.Lock()
        self._probe: ClusterProbe | None = None

    @classmethod
    async def load(cls, cluster_name: str, store: StateStore, **kwargs) -> "ClusterBootstrapper":
        """Resume from the persisted state, or start a fresh one."""
        state = await store.load_cluster_state(cluster_name) or ClusterState(cluster_name=cluster_name)
        return cls(state, store, **kwargs)

    # State

    def snapshot(self) -> ClusterState:
        return self.state.model_copy(deep=True)

    async def _save(self, **changes) -> None:
        await self._update(lambda state: changes)

    async def _update(self, change: Callable[[ClusterState], dict]) -> None:
        """Apply ``change`` to the current state and persist it.

        ``change`` reads the state under the writer lock, so concurrent
        updates to the same list or mapping are never lost.
        """
        async with self._lock:
            await self._commit(change(self.state))

    async def _commit(self, changes: dict) -> None:
        # Caller holds the lock
        self.state = self.state.model_copy(update={**changes, "updated_at": utcnow()})
        await self.store.save_cluster_state(self.state)

    async def _advance(self, target: BootstrapPhase, **changes) -> None:
        async with self._lock:
            await self._transition(target, changes)

    async def _transition(self, target: BootstrapPhase, changes: dict) -> None:
        # Caller holds the lock
        current = self.state.phase
        if current == target:
            return
        if target not in TRANSITIONS.get(current, set()):
            raise BootstrapError(
                f"Cannot move from {current.value} to {target.value}",
                kind=self._kind_for(target),
                phase=current,
            )
        await self._commit({**changes, "phase": target})
        logger.info("phase_advanced", cluster=self.state.cluster_name, previous=current.value, phase=target.value)

    @staticmethod
    def _kind_for(target: BootstrapPhase) -> BootstrapErrorKind:
        if target in (BootstrapPhase.WORKERS_JOINING, BootstrapPhase.READY):
            return BootstrapErrorKind.NETWORK_NOT_READY
        return BootstrapErrorKind.INIT_FAILED

    def _error(self, message: str, kind: BootstrapErrorKind, nodes: list[str] | None = None) -> BootstrapError:
        logger.error("bootstrap_failed", kind=kind.value, phase=self.state.phase.value, nodes=nodes, error=message)
        return BootstrapError(message, kind=kind, phase=self.state.phase, nodes=nodes)

    async def register_nodes(self, control_plane: Node, workers: Iterable[Node]) -> None:
        """Record the nodes this cluster is built from.

        A control plane with a different physical id than the one recorded
        is a new instance: bootstrap progress is reset so it gets initialized.
        A replaced worker loses its joined and ready marks.
        """
        workers = list(workers)
        async with self._lock:
            state = self.state
            previous = state.control_plane
            replaced = previous is not None and previous.physical_id != control_plane.physical_id
            existing = {} if replaced else state.workers

            merged: dict[str, Node] = {}
            stale: set[str] = set()
            for w in workers:
                known = existing.get(w.name)
                if known is not None and known.physical_id == w.physical_id:
                    merged[w.name] = w.with_ready(known.ready)
                else:
                    merged[w.name] = w
                    stale.add(w.name)

            changes: dict = {"control_plane": control_plane, "workers": merged}
            if replaced:
                changes.update(
                    phase=BootstrapPhase.UNINITIALIZED,
                    cni_deployed=False,
                    joined_workers=[],
                    failed_workers=[],
                    kubeconfig_path=None,
                )
            else:
                changes["joined_workers"] = [w for w in state.joined_workers if w not in stale]
            await self._commit(changes)
        self._probe = None
        if replaced:
            logger.warning(
                "control_plane_replaced",
                previous=previous.physical_id,
                physical_id=control_plane.physical_id,
                phase=BootstrapPhase.UNINITIALIZED.value,
            )
        logger.debug("nodes_registered", control_plane=control_plane.name, workers=sorted(merged))

    @property
    def control_plane(self) -> Node:
        if self.state.control_plane is None:
            raise self._error("No control plane node registered", BootstrapErrorKind.INIT_FAILED)
        return self.state.control_plane

    @property
    def probe(self) -> ClusterProbe:
        if self._probe is None:
            self._probe = self.probe_factory(self.control_plane)
        return self._probe

    def worker(self, name: str) -> Node:
        try:
            return self.state.workers[name]
        except KeyError:
            raise self._error(f"Unknown worker {name}", BootstrapErrorKind.JOIN_FAILED, [name]) from None

    # Control plane

    def preflight(self) -> None:
        """Local checks run before ``kubeadm init``.

        Raises:
            BootstrapError: PREFLIGHT_FAILED if the pod network overlaps the VPC
        """
        pod_network = ipaddress.ip_network(self.settings.pod_network_cidr)
        if self.settings.vpc_cidr:
            vpc = ipaddress.ip_network(self.settings.vpc_cidr)
            if pod_network.overlaps(vpc):
                raise self._error(
                    f"Pod network {pod_network} overlaps VPC {vpc}",
                    BootstrapErrorKind.PREFLIGHT_FAILED,
                    [self.control_plane.name],
                )

    async def initialize_control_plane(self) -> None:
        """Run ``kubeadm init`` once and confirm the API server responds.

        Never retried automatically: a failed init leaves files on the node
        that need inspection.

        Raises:
            BootstrapError: PREFLIGHT_FAILED, INIT_FAILED or TIMED_OUT
        """
        if self.state.reached(BootstrapPhase.CONTROL_PLANE_READY):
            logger.info("control_plane_already_ready", node=self.control_plane.name)
            return

        node = self.control_plane
        self.preflight()
        await self._advance(BootstrapPhase.CONTROL_PLANE_INITIALIZING)

        inspection = await self.executor.run(node, INSPECT_CONTROL_PLANE, check=False)
        markers = set(inspection.stdout.split())
        if "admin-conf" in markers:
            logger.info("control_plane_already_initialized", node=node.name)
        elif "manifests" in markers:
            raise self._error(
                f"{MANIFESTS_DIR} is populated on {node.name} but {ADMIN_CONF} is missing; "
                "inspect the node and run 'kubeadm reset' before retrying",
                BootstrapErrorKind.INIT_FAILED,
                [node.name],
            )
        else:
            await self._kubeadm_init(node)

        kubeconfig_path = await self._fetch_kubeconfig(node)
        await self._wait_api_server()
        await self._advance(BootstrapPhase.CONTROL_PLANE_READY, kubeconfig_path=kubeconfig_path)

    async def _kubeadm_init(self, node: Node) -> None:
        command = (
            f"kubeadm init --pod-network-cidr={self.settings.pod_network_cidr} "
            f"--apiserver-cert-extra-sans={node.public_address}"
        )
        logger.info("kubeadm_init_started", node=node.name, pod_network_cidr=self.settings.pod_network_cidr)
        try:
            await self.executor.run(node, command, timeout=self.settings.command_timeout)
        except RemoteExecError as e:
            if e.kind == RemoteExecErrorKind.CONNECT_FAILED:
                raise
            output = e.result.output if e.result else str(e)
            kind = (
                BootstrapErrorKind.PREFLIGHT_FAILED
                if "[preflight]" in output and "ERROR" in output
                else BootstrapErrorKind.INIT_FAILED
            )
            raise self._error(f"kubeadm init failed on {node.name}: {output[-500:]}", kind, [node.name]) from e
        logger.info("kubeadm_init_finished", node=node.name)

    async def _fetch_kubeconfig(self, node: Node) -> str | None:
        content = await self.executor.fetch_file(node, ADMIN_CONF)
        path = self.settings.kubeconfig_path
        if path is None:
            return None
        await asyncio.to_thread(write_private_file, path, rewrite_server(content, node.public_address))
        return str(path)

    async def _wait_api_server(self) -> None:
        if not await self._poll(self.probe.api_server_ready, self.settings.api_server_timeout):
            raise self._error(
                f"API server on {self.control_plane.name} not ready after {self.settings.api_server_timeout:.0f}s",
                BootstrapErrorKind.TIMED_OUT,
                [self.control_plane.name],
            )
        logger.info("api_server_ready", node=self.control_plane.name)

    # Network

    async def deploy_network(self) -> None:
        """Apply the CNI manifest and wait for the control plane node to report Ready.

        Raises:
            BootstrapError: NETWORK_NOT_READY if the apply fails or the node
                stays NotReady past the deadline
        """
        if self.state.reached(BootstrapPhase.NETWORK_READY):
            logger.info("network_already_ready")
            return
        if not self.state.reached(BootstrapPhase.CONTROL_PLANE_READY):
            raise self._error("Control plane is not ready", BootstrapErrorKind.INIT_FAILED)

        node = self.control_plane
        await self._advance(BootstrapPhase.NETWORK_DEPLOYING)
        try:
            await self.executor.run(
                node,
                f"kubectl --kubeconfig {ADMIN_CONF} apply -f {self.settings.cni_manifest_url}",
                timeout=self.settings.command_timeout,
            )
        except RemoteExecError as e:
            if e.kind == RemoteExecErrorKind.CONNECT_FAILED:
                raise
            raise self._error(f"CNI manifest apply failed: {e}", BootstrapErrorKind.NETWORK_NOT_READY, [node.name]) from e
        await self._save(cni_deployed=True)
        logger.info("cni_applied", manifest=self.settings.cni_manifest_url)

        async def control_plane_ready() -> bool:
            return not await self._unready([node])

        if not await self._poll(control_plane_ready, self.settings.network_timeout):
            raise self._error(
                f"Node {node.name} not Ready {self.settings.network_timeout:.0f}s after CNI deployment",
                BootstrapErrorKind.NETWORK_NOT_READY,
                [node.name],
            )
        await self._advance(BootstrapPhase.NETWORK_READY, control_plane=node.with_ready(True))

    async def bootstrap(self) -> ClusterState:
        """Initialize the control plane and deploy the pod network."""
        await self.initialize_control_plane()
        await self.deploy_network()
        return self.snapshot()

    # Workers

    async def request_join_token(self) -> JoinToken:
        """Create a fresh join token on the control plane.

        Raises:
            BootstrapError: NETWORK_NOT_READY before the network is ready,
                JOIN_FAILED if the token cannot be created
        """
        self._require_network()
        issued_at = self.clock()
        ttl = self.settings.token_ttl_seconds
        try:
            result = await self.executor.run(self.control_plane, token_create_command(ttl))
            token = parse_join_command(result.stdout, ttl, issued_at)
        except RemoteExecError as e:
            if e.kind == RemoteExecErrorKind.CONNECT_FAILED:
                raise
            raise self._error(f"Join token creation failed: {e}", BootstrapErrorKind.JOIN_FAILED) from e
        except ValueError as e:
            raise self._error(str(e), BootstrapErrorKind.JOIN_FAILED) from e
        logger.info("join_token_created", expires_at=token.expires_at.isoformat())
        return token

    def _require_network(self) -> None:
        if self.state.phase not in (
            BootstrapPhase.NETWORK_READY,
            BootstrapPhase.WORKERS_JOINING,
            BootstrapPhase.READY,
        ):
            raise self._error(
                "API server and pod network must be ready before workers join",
                BootstrapErrorKind.NETWORK_NOT_READY,
            )

    async def join_worker(self, name: str, token: JoinToken | None = None) -> None:
        """Join one worker to the control plane.

        A fresh token is requested for every attempt unless ``token`` is
        given, in which case it is used for the first attempt only.
        Connection failures are retried; a kubeadm failure is not.

        Raises:
            BootstrapError: TOKEN_EXPIRED if the token expired before use,
                JOIN_FAILED if kubeadm rejects the join or attempts run out
        """
        self._require_network()
        worker = self.worker(name)
        if self.state.phase == BootstrapPhase.NETWORK_READY:
            await self._advance(BootstrapPhase.WORKERS_JOINING)
        elif self.state.phase == BootstrapPhase.READY and name not in self.state.joined_workers:
            await self._advance(BootstrapPhase.WORKERS_JOINING)

        already = await self.executor.run(worker, f"test -f {KUBELET_CONF}", check=False)
        if already.ok:
            logger.info("worker_already_joined", node=name)
            await self._mark_joined(name)
            return

        supplied = [token] if token is not None else []

        async def attempt() -> None:
            current = supplied.pop() if supplied else await self.request_join_token()
            if current.is_expired(self.clock()):
                raise self._error(
                    f"Join token for {name} expired at {current.expires_at.isoformat()}",
                    BootstrapErrorKind.TOKEN_EXPIRED,
                    [name],
                )
            logger.info("worker_joining", node=name, endpoint=current.endpoint)
            await self.executor.run(worker, current.join_command(), timeout=self.settings.command_timeout)

        try:
            await call_with_retry(
                attempt,
                policy=self.settings.join_policy.with_attempts(self.settings.join_attempts),
                operation=f"join:{name}",
            )
        except RemoteExecError as e:
            await self._mark_failed(name)
            raise self._error(f"Worker {name} failed to join: {e}", BootstrapErrorKind.JOIN_FAILED, [name]) from e
        except BootstrapError:
            await self._mark_failed(name)
            raise

        await self._mark_joined(name)
        logger.info("worker_joined", node=name)

    async def _mark_joined(self, name: str) -> None:
        await self._update(
            lambda state: {
                "joined_workers": sorted(set(state.joined_workers) | {name}),
                "failed_workers": [w for w in state.failed_workers if w != name],
            }
        )

    async def _mark_failed(self, name: str) -> None:
        await self._update(lambda state: {"failed_workers": sorted(set(state.failed_workers) | {name})})

    async def join_workers(self, names: Iterable[str] | None = None) -> list[str]:
        """Join workers concurrently, each independently.

        Returns:
            Names of the workers joined

        Raises:
            BootstrapError: JOIN_FAILED naming every worker that failed,
                after all joins have finished
        """
        targets = sorted(names) if names is not None else sorted(self.state.workers)
        self._require_network()
        for name in targets:
            self.worker(name)

        outcomes = await asyncio.gather(*(self.join_worker(n) for n in targets), return_exceptions=True)
        failed: list[str] = []
        for name, outcome in zip(targets, outcomes, strict=True):
            if isinstance(outcome, KubestrapError):
                failed.append(name)
            elif isinstance(outcome, BaseException):
                raise outcome
        if failed:
            raise self._error(f"Workers failed to join: {', '.join(failed)}", BootstrapErrorKind.JOIN_FAILED, failed)
        return targets

    async def wait_workers_ready(self, names: Iterable[str] | None = None) -> ClusterState:
        """Wait until workers report Ready, then mark the cluster Ready once all have joined.

        Raises:
            BootstrapError: TIMED_OUT naming the workers still NotReady; the
                phase stays at WORKERS_JOINING
        """
        targets = [self.worker(n) for n in (sorted(names) if names is not None else sorted(self.state.workers))]
        pending: list[Node] = list(targets)

        async def all_ready() -> bool:
            pending[:] = await self._unready(targets)
            return not pending

        if not await self._poll(all_ready, self.settings.workers_timeout):
            missing = sorted(n.name for n in pending)
            raise self._error(
                f"Workers not Ready after {self.settings.workers_timeout:.0f}s: {', '.join(missing)}",
                BootstrapErrorKind.TIMED_OUT,
                missing,
            )

        ready = {node.name for node in targets}
        async with self._lock:
            workers = {name: w.with_ready(True) if name in ready else w for name, w in self.state.workers.items()}
            await self._commit({"workers": workers})
            state = self.state
            if set(state.workers) <= set(state.joined_workers) and all(w.ready for w in workers.values()):
                # A cluster without workers passes through WORKERS_JOINING with nothing to join
                if state.phase == BootstrapPhase.NETWORK_READY:
                    await self._transition(BootstrapPhase.WORKERS_JOINING, {})
                await self._transition(BootstrapPhase.READY, {})
        return self.snapshot()

    async def join(self, names: Iterable[str] | None = None) -> ClusterState:
        """Join workers and wait for them to report Ready."""
        joined = await self.join_workers(names)
        return await self.wait_workers_ready(joined)

    # Abort

    async def abort(self) -> ClusterState:
        """Mark an in-progress bootstrap as aborted so teardown may proceed."""
        async with self._lock:
            if not self.state.is_mid_bootstrap:
                logger.info("abort_ignored", phase=self.state.phase.value)
                return self.snapshot()
            previous = self.state.phase
            self.state = self.state.model_copy(update={"phase": BootstrapPhase.ABORTED, "updated_at": utcnow()})
            await self.store.save_cluster_state(self.state)
        logger.warning("bootstrap_aborted", previous=previous.value)
        return self.snapshot()

    # Polling

    async def _unready(self, nodes: list[Node]) -> list[Node]:
        """Nodes not reporting Ready, matched by private address or node name."""
        try:
            reported = [n for n in await self.probe.get_nodes() if n.ready]
        except ProbeError as e:
            logger.debug("probe_failed", error=str(e))
            return list(nodes)
        addresses = {address for n in reported for address in n.addresses}
        names = {n.name for n in reported}
        return [n for n in nodes if (n.private_address or n.public_address) not in addresses and n.name not in names]

    async def _poll(self, check: Callable[[], Awaitable[bool]], timeout: float) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            if await check():
                return True
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(self.settings.poll_interval, remaining))
