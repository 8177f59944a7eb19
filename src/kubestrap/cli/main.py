"""Main CLI entry point for kubestrap."""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Coroutine
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click
from rich.console import Console
from rich.table import Table

from kubestrap import __version__
from kubestrap.core.exceptions import (
    BootstrapError,
    BootstrapErrorKind,
    ConfigurationError,
    ConvergenceError,
    DependencyFailedError,
    KubestrapError,
    ProbeError,
    ProviderError,
    RemoteExecError,
    ResourceTimeoutError,
    StateStoreError,
    TeardownBlockedError,
)
from kubestrap.core.models import ClusterState, NodeRole, ResourceStatus
from kubestrap.utils.logging import get_logger, log_error

if TYPE_CHECKING:
    from kubestrap.adapters.aws_adapter import AWSAdapter
    from kubestrap.bootstrap.bootstrapper import ClusterBootstrapper
    from kubestrap.clients.aws_client import AWSClient
    from kubestrap.core.config import KubestrapConfig
    from kubestrap.core.models import Node
    from kubestrap.interfaces.cluster_probe import ClusterProbe
    from kubestrap.interfaces.remote_executor import RemoteExecutor
    from kubestrap.interfaces.state_store import StateStore
    from kubestrap.provisioning.ledger import Ledger
    from kubestrap.utils.retry import RetryPolicy

console = Console()
logger = get_logger(__name__)

EXIT_OK = 0
EXIT_UNEXPECTED = 1
EXIT_PROVIDER = 3
EXIT_REMOTE = 4
EXIT_BOOTSTRAP = 5
EXIT_TIMEOUT = 6
EXIT_CONFIG = 7

STATUS_COLORS = {
    ResourceStatus.READY: "green",
    ResourceStatus.PENDING: "yellow",
    ResourceStatus.FAILED: "red",
    ResourceStatus.DELETED: "dim",
}


def exit_code_for(error: BaseException) -> int:
    """Map an error onto the CLI exit code contract."""
    if isinstance(error, ResourceTimeoutError):
        return EXIT_TIMEOUT
    if isinstance(error, BootstrapError):
        return EXIT_TIMEOUT if error.kind == BootstrapErrorKind.TIMED_OUT else EXIT_BOOTSTRAP
    if isinstance(error, ProbeError):
        return EXIT_BOOTSTRAP
    if isinstance(error, (ProviderError, DependencyFailedError)):
        return EXIT_PROVIDER
    if isinstance(error, (RemoteExecError, ConvergenceError)):
        return EXIT_REMOTE
    if isinstance(error, (ConfigurationError, StateStoreError, TeardownBlockedError)):
        return EXIT_CONFIG
    return EXIT_UNEXPECTED


def describe_error(error: BaseException) -> str:
    """One line naming the failure with its resource, node or phase."""
    parts = [str(error)]
    if isinstance(error, ProviderError):
        parts.append(f"kind={error.kind.value}")
    if isinstance(error, RemoteExecError):
        parts.append(f"node={error.node}")
    if isinstance(error, BootstrapError):
        parts.append(f"kind={error.kind.value}")
        if error.phase is not None:
            parts.append(f"phase={error.phase.value}")
        if error.nodes:
            parts.append(f"nodes={','.join(error.nodes)}")
    return " ".join(parts)


class KubestrapContext:
    """Shared context for CLI commands with lazy initialization."""

    def __init__(self, config_path: str, cluster_name: str | None = None, verbose: bool = False):
        """Initialize context with config path.

        Args:
            config_path: Path to configuration file
            cluster_name: Overrides ``cluster_name`` from the config file
            verbose: Force DEBUG logging
        """
        self.config_path = config_path
        self.cluster_name = cluster_name
        self.verbose = verbose
        self._config: KubestrapConfig | None = None
        self._store: StateStore | None = None
        self._aws_client: AWSClient | None = None
        self._provider: AWSAdapter | None = None
        self._executor: RemoteExecutor | None = None

    @property
    def config(self) -> KubestrapConfig:
        """Get or create config lazily, configuring logging on first load."""
        if self._config is None:
            from kubestrap.core.config import KubestrapConfig
            from kubestrap.utils.logging import bind_cluster, setup_logging

            config = KubestrapConfig.from_file(Path(self.config_path).expanduser())
            if self.cluster_name:
                config = config.model_copy(update={"cluster_name": self.cluster_name})
            setup_logging(
                level="DEBUG" if self.verbose else config.logging.level,
                format=config.logging.format,
                output=config.logging.output,
            )
            bind_cluster(config.cluster_name)
            self._config = config
        return self._config

    @property
    def store(self) -> StateStore:
        """Get or create the state store lazily."""
        if self._store is None:
            from kubestrap.state import build_state_store

            self._store = build_state_store(
                self.config.state, region=self.config.aws.region, profile=self.config.aws.profile
            )
        return self._store

    @property
    def aws_client(self) -> AWSClient:
        """Get or create AWS client lazily."""
        if self._aws_client is None:
            from kubestrap.clients.aws_client import AWSClient

            self._aws_client = AWSClient(region=self.config.aws.region, profile=self.config.aws.profile)
        return self._aws_client

    @property
    def provider(self) -> AWSAdapter:
        """Get or create AWS adapter lazily."""
        if self._provider is None:
            from kubestrap.adapters.aws_adapter import AWSAdapter

            self._provider = AWSAdapter(client=self.aws_client)
        return self._provider

    @property
    def retry_policy(self) -> RetryPolicy:
        from kubestrap.utils.retry import RetryPolicy

        retry = self.config.retry
        return RetryPolicy(retry.max_attempts, retry.min_wait, retry.max_wait, retry.max_elapsed)

    @property
    def executor(self) -> RemoteExecutor:
        """Get or create the SSH executor lazily.

        A configured private key is used as-is; otherwise every connection
        gets a fresh key pushed with EC2 Instance Connect.
        """
        if self._executor is None:
            from kubestrap.adapters.ssh_executor import SSHExecutor
            from kubestrap.clients.ssh_client import SSHClient

            nodes = self.config.nodes
            client = SSHClient(
                username=nodes.ssh_user,
                private_key_path=nodes.private_key_path,
                aws_client=None if nodes.private_key_path else self.aws_client,
            )
            self._executor = SSHExecutor(
                client, connect_policy=self.retry_policy.with_attempts(self.config.retry.ssh_connect_attempts)
            )
        return self._executor

    def probe_for(self, control_plane: Node) -> ClusterProbe:
        from kubestrap.bootstrap.probes import KubectlProbe, KubernetesApiProbe

        if self.config.kubernetes.probe == "api":
            return KubernetesApiProbe(str(self.config.state_dir() / "admin.conf"))
        return KubectlProbe(self.executor, control_plane)

    async def ledger(self) -> Ledger:
        from kubestrap.provisioning.ledger import Ledger

        return await Ledger.load(self.config.cluster_name, self.store)

    async def bootstrapper(self) -> ClusterBootstrapper:
        """Load the bootstrapper and register the provisioned nodes with it."""
        from kubestrap.bootstrap.bootstrapper import BootstrapSettings, ClusterBootstrapper

        bootstrapper = await ClusterBootstrapper.load(
            self.config.cluster_name,
            self.store,
            executor=self.executor,
            probe_factory=self.probe_for,
            settings=BootstrapSettings.from_config(self.config),
        )
        nodes = (await self.ledger()).nodes()
        control_planes = [n for n in nodes if n.role == NodeRole.CONTROL_PLANE]
        if control_planes:
            await bootstrapper.register_nodes(control_planes[0], [n for n in nodes if n.role == NodeRole.WORKER])
        return bootstrapper


def run_command(coro: Coroutine[Any, Any, int | None]) -> None:
    """Run an async command body and exit with the mapped code on failure."""
    try:
        code = asyncio.run(coro)
    except KubestrapError as e:
        console.print(f"[red]✗ {describe_error(e)}[/red]")
        log_error(logger, e, operation="command")
        sys.exit(exit_code_for(e))
    sys.exit(code or EXIT_OK)


def print_records(records: dict[str, Any], title: str) -> None:
    table = Table(title=title)
    table.add_column("Name", style="cyan")
    table.add_column("Kind", style="magenta")
    table.add_column("Physical ID", style="blue")
    table.add_column("Status", style="bold")
    table.add_column("Detail")
    for name, record in records.items():
        color = STATUS_COLORS.get(record.status, "white")
        detail = record.error or record.attributes.get("public_ip") or ""
        table.add_row(
            name,
            record.kind.value,
            record.physical_id or "-",
            f"[{color}]{record.status.value}[/{color}]",
            str(detail),
        )
    console.print(table)


def print_cluster_state(state: ClusterState) -> None:
    table = Table(title=f"Cluster {state.cluster_name}: {state.phase.value}")
    table.add_column("Node", style="cyan")
    table.add_column("Role", style="magenta")
    table.add_column("Public", style="blue")
    table.add_column("Private", style="blue")
    table.add_column("Joined")
    table.add_column("Ready", style="bold")
    nodes = ([state.control_plane] if state.control_plane else []) + list(state.workers.values())
    for node in nodes:
        joined = node.role == NodeRole.CONTROL_PLANE or node.name in state.joined_workers
        table.add_row(
            node.name,
            node.role.value,
            node.public_address,
            node.private_address or "-",
            "[red]failed[/red]" if node.name in state.failed_workers else ("yes" if joined else "no"),
            "[green]yes[/green]" if node.ready else "[yellow]no[/yellow]",
        )
    console.print(table)
    if state.kubeconfig_path:
        console.print(f"Kubeconfig: {state.kubeconfig_path}")


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    type=click.Path(),
    default="~/.kubestrap/config.yaml",
    help="Path to configuration file",
)
@click.option("--cluster", "cluster_name", help="Cluster name (overrides the config file)")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, config: str, cluster_name: str | None, verbose: bool) -> None:
    """kubestrap - Provision AWS infrastructure and bootstrap a kubeadm cluster."""
    ctx.obj = KubestrapContext(config_path=config, cluster_name=cluster_name, verbose=verbose)


@cli.command()
@click.pass_context
def provision(ctx: click.Context) -> None:
    """Create or verify every cloud resource of the cluster."""
    from kubestrap.provisioning.blueprint import build_cluster_graph
    from kubestrap.provisioning.provisioner import Provisioner

    async def _provision() -> int:
        kctx: KubestrapContext = ctx.obj
        config = kctx.config
        console.print(f"[bold blue]Provisioning cluster {config.cluster_name}[/bold blue]")

        graph = build_cluster_graph(config)
        provisioner = Provisioner(
            kctx.provider,
            await kctx.ledger(),
            policy=kctx.retry_policy,
            resource_timeout=config.timeouts.resource_ready,
            poll_interval=config.timeouts.poll_interval,
            max_parallel=config.concurrency.max_parallel,
        )
        result = await provisioner.apply(graph)
        print_records(result.records, f"Resources ({len(result.records)})")

        console.print(f"  Created: {len(result.created)}  Verified: {len(result.verified)}")
        if result.ok:
            console.print("[green]✓ All resources ready[/green]")
            return EXIT_OK

        for name, error in result.failures.items():
            console.print(f"  [red]✗ {name}: {describe_error(error)}[/red]")
        if result.not_attempted:
            console.print(f"  [yellow]Not attempted: {', '.join(result.not_attempted)}[/yellow]")
        return max(exit_code_for(e) for e in result.failures.values()) if result.failures else EXIT_TIMEOUT

    run_command(_provision())


@cli.command()
@click.argument("node", required=False)
@click.option("--all", "all_nodes", is_flag=True, help="Prepare every node concurrently")
@click.pass_context
def prepare(ctx: click.Context, node: str | None, all_nodes: bool) -> None:
    """Converge a node's OS (kernel modules, sysctl, containerd, kube tools)."""
    from kubestrap.preparation.preparer import NodePreparer
    from kubestrap.preparation.steps import default_steps

    if not node and not all_nodes:
        raise click.UsageError("Give a NODE name or --all")

    async def _prepare() -> int:
        kctx: KubestrapContext = ctx.obj
        config = kctx.config
        ledger = await kctx.ledger()
        nodes = ledger.nodes()
        if node:
            nodes = [n for n in nodes if n.name == node]
            if not nodes:
                raise ConfigurationError(f"Node {node} is not provisioned and Ready")

        preparer = NodePreparer(
            kctx.executor,
            steps=default_steps(config.kubernetes.version),
            attempts=config.retry.convergence_attempts,
        )
        semaphore = asyncio.Semaphore(config.concurrency.max_parallel)

        async def _one(target: Node) -> list:
            async with semaphore:
                return await preparer.prepare(target, target.role)

        outcomes = await asyncio.gather(*(_one(n) for n in nodes), return_exceptions=True)
        errors: list[KubestrapError] = []
        for target, outcome in zip(nodes, outcomes, strict=True):
            if isinstance(outcome, KubestrapError):
                errors.append(outcome)
                console.print(f"[red]✗ {target.name}: {describe_error(outcome)}[/red]")
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                applied = [r.step_name for r in outcome if not r.skipped]
                console.print(
                    f"[green]✓ {target.name}[/green] applied: {', '.join(applied) or 'none'} "
                    f"({len(outcome) - len(applied)} already satisfied)"
                )
        return max((exit_code_for(e) for e in errors), default=EXIT_OK)

    run_command(_prepare())


@cli.command()
@click.pass_context
def bootstrap(ctx: click.Context) -> None:
    """Initialize the control plane and deploy the pod network."""

    async def _bootstrap() -> int:
        kctx: KubestrapContext = ctx.obj
        bootstrapper = await kctx.bootstrapper()
        console.print(f"[bold blue]Bootstrapping {kctx.config.cluster_name}[/bold blue]")
        state = await bootstrapper.bootstrap()
        print_cluster_state(state)
        console.print(f"[green]✓ Phase: {state.phase.value}[/green]")
        return EXIT_OK

    run_command(_bootstrap())


@cli.command()
@click.argument("node", required=False)
@click.option("--all", "all_nodes", is_flag=True, help="Join every worker concurrently")
@click.pass_context
def join(ctx: click.Context, node: str | None, all_nodes: bool) -> None:
    """Join workers to the control plane and wait for them to be Ready."""
    if not node and not all_nodes:
        raise click.UsageError("Give a NODE name or --all")

    async def _join() -> int:
        kctx: KubestrapContext = ctx.obj
        bootstrapper = await kctx.bootstrapper()
        state = await bootstrapper.join([node] if node else None)
        print_cluster_state(state)
        console.print(f"[green]✓ Phase: {state.phase.value}[/green]")
        return EXIT_OK

    run_command(_join())


@cli.command()
@click.option("--format", type=click.Choice(["table", "json"]), default="table")
@click.pass_context
def status(ctx: click.Context, format: str) -> None:
    """Show the resource ledger and bootstrap phase."""

    async def _status() -> int:
        kctx: KubestrapContext = ctx.obj
        cluster_name = kctx.config.cluster_name
        records = (await kctx.ledger()).snapshot()
        state = await kctx.store.load_cluster_state(cluster_name)

        if format == "json":
            document = {
                "cluster": cluster_name,
                "phase": state.phase.value if state else None,
                "resources": {name: r.model_dump(mode="json") for name, r in records.items()},
                "cluster_state": state.model_dump(mode="json") if state else None,
            }
            print(json.dumps(document, indent=2, default=str))
            return EXIT_OK

        if not records and state is None:
            console.print(f"[yellow]Nothing recorded for cluster {cluster_name}[/yellow]")
            return EXIT_OK
        print_records(records, f"Resources ({len(records)})")
        if state is not None:
            print_cluster_state(state)
        return EXIT_OK

    run_command(_status())


@cli.command()
@click.pass_context
def abort(ctx: click.Context) -> None:
    """Abort an in-progress bootstrap so the cluster can be destroyed."""

    async def _abort() -> int:
        kctx: KubestrapContext = ctx.obj
        bootstrapper = await kctx.bootstrapper()
        state = await bootstrapper.abort()
        console.print(f"Phase: {state.phase.value}")
        return EXIT_OK

    run_command(_abort())


@cli.command()
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@click.option("--keep-state", is_flag=True, help="Keep the ledger after a successful teardown")
@click.pass_context
def destroy(ctx: click.Context, yes: bool, keep_state: bool) -> None:
    """Delete every provisioned resource in reverse dependency order."""
    from kubestrap.teardown.engine import Teardown, teardown_order

    async def _destroy() -> int:
        kctx: KubestrapContext = ctx.obj
        config = kctx.config
        ledger = await kctx.ledger()
        state = await kctx.store.load_cluster_state(config.cluster_name)

        order = teardown_order(ledger.snapshot())
        if not order:
            console.print(f"[yellow]No resources recorded for cluster {config.cluster_name}[/yellow]")
            return EXIT_OK
        console.print(f"Deleting in order: {', '.join(order)}")
        if not yes and not click.confirm(f"Destroy cluster {config.cluster_name}?"):
            console.print("Aborted.")
            return EXIT_OK

        teardown = Teardown(
            kctx.provider,
            ledger,
            policy=kctx.retry_policy,
            resource_timeout=config.timeouts.resource_ready,
            poll_interval=config.timeouts.poll_interval,
            max_parallel=config.concurrency.max_parallel,
        )
        result = await teardown.destroy(state)
        for name, error in result.failures.items():
            console.print(f"  [red]✗ {name}: {describe_error(error)}[/red]")
        if result.blocked:
            console.print(f"  [yellow]Blocked: {', '.join(result.blocked)}[/yellow]")
        if not result.ok:
            return max((exit_code_for(e) for e in result.failures.values()), default=EXIT_PROVIDER)

        if state is not None and state.kubeconfig_path:
            Path(state.kubeconfig_path).unlink(missing_ok=True)
        if keep_state:
            # Nothing is left to bootstrap; a later provision starts over
            await kctx.store.save_cluster_state(ClusterState(cluster_name=config.cluster_name))
        else:
            await kctx.store.delete(config.cluster_name)
        console.print(f"[green]✓ Destroyed {len(result.deleted)} resource(s)[/green]")
        return EXIT_OK

    run_command(_destroy())


@cli.command()
@click.pass_context
def validate(ctx: click.Context) -> None:
    """Validate configuration, state backend and AWS access."""

    async def _validate() -> int:
        kctx: KubestrapContext = ctx.obj
        console.print("[bold]1. Configuration File[/bold]")
        console.print(f"  Path: {Path(kctx.config_path).expanduser()}")
        config = kctx.config
        console.print(f"  [green]✓ Config valid (cluster {config.cluster_name})[/green]\n")

        console.print("[bold]2. State Backend[/bold]")
        await kctx.store.load_records(config.cluster_name)
        console.print(f"  [green]✓ {config.state.backend} backend readable[/green]\n")

        console.print("[bold]3. AWS Access[/bold]")
        zones = await asyncio.to_thread(kctx.aws_client.describe_availability_zones)
        console.print(f"  [green]✓ {config.aws.region}: {len(zones)} availability zone(s)[/green]\n")

        console.print("[bold green]✓ Validation complete![/bold green]")
        return EXIT_OK

    run_command(_validate())


if __name__ == "__main__":
    cli()
