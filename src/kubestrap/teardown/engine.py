"""Reverse-order teardown of every resource in the ledger."""

import asyncio
from dataclasses import dataclass, field
from graphlib import TopologicalSorter

from kubestrap.core.exceptions import (
    KubestrapError,
    ProviderError,
    ProviderErrorKind,
    ResourceTimeoutError,
    TeardownBlockedError,
)
from kubestrap.core.models import ClusterState, ResourceKind, ResourceRecord, ResourceStatus
from kubestrap.interfaces.cloud_provider import CloudProvider
from kubestrap.provisioning.ledger import Ledger
from kubestrap.utils.logging import get_logger
from kubestrap.utils.retry import RetryPolicy, call_with_retry, is_transient

logger = get_logger(__name__)


def teardown_order(records: dict[str, ResourceRecord]) -> list[str]:
    """Logical names with every dependent before the resources it depends on."""
    graph = {name: {d for d in record.dependencies if d in records} for name, record in records.items()}
    return list(reversed(list(TopologicalSorter(graph).static_order())))


def _retry_delete(error: BaseException) -> bool:
    if isinstance(error, ProviderError) and error.kind == ProviderErrorKind.CONFLICT:
        return True
    return is_transient(error)


@dataclass
class TeardownResult:
    """Outcome of one destroy."""

    deleted: list[str] = field(default_factory=list)
    failures: dict[str, KubestrapError] = field(default_factory=dict)
    blocked: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures and not self.blocked


class Teardown:
    """Delete ledger resources in reverse dependency order.

    A resource is deleted only after everything that depends on it is
    gone. NotFound counts as success; Conflict and transient errors are
    retried with backoff. Independent resources (e.g. instances) are
    deleted concurrently.
    """

    def __init__(
        self,
        provider: CloudProvider,
        ledger: Ledger,
        policy: RetryPolicy | None = None,
        resource_timeout: float = 300.0,
        poll_interval: float = 5.0,
        max_parallel: int = 4,
    ):
        self.provider = provider
        self.ledger = ledger
        self.policy = policy or RetryPolicy()
        self.resource_timeout = resource_timeout
        self.poll_interval = poll_interval
        self._semaphore = asyncio.Semaphore(max_parallel)

    async def destroy(self, cluster_state: ClusterState | None = None) -> TeardownResult:
        """Delete every resource in the ledger.

        Args:
            cluster_state: Current bootstrap state, checked before any delete

        Returns:
            TeardownResult listing deleted, failed and blocked resources

        Raises:
            TeardownBlockedError: If a bootstrap is in progress
        """
        if cluster_state is not None and cluster_state.is_mid_bootstrap:
            raise TeardownBlockedError(
                f"Cluster {cluster_state.cluster_name} is mid-bootstrap "
                f"(phase {cluster_state.phase.value}); finish or abort it first"
            )

        records = self.ledger.snapshot()
        # Edges run from a resource to its dependents, so dependents finish first
        reverse: dict[str, set[str]] = {name: set() for name in records}
        for name, record in records.items():
            for dependency in record.dependencies:
                if dependency in reverse:
                    reverse[dependency].add(name)

        sorter = TopologicalSorter(reverse)
        sorter.prepare()
        result = TeardownResult()
        stuck: set[str] = set()
        in_flight: dict[asyncio.Task[None], str] = {}

        logger.info("teardown_started", resources=len(records))
        try:
            while sorter.is_active():
                for name in sorter.get_ready():
                    if reverse[name] & stuck:
                        stuck.add(name)
                        result.blocked.append(name)
                        logger.warning("delete_blocked", name=name, dependents=sorted(reverse[name] & stuck))
                        sorter.done(name)
                    else:
                        in_flight[asyncio.create_task(self._delete(records[name]))] = name

                if not in_flight:
                    continue

                done, _ = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    name = in_flight.pop(task)
                    try:
                        task.result()
                    except KubestrapError as e:
                        stuck.add(name)
                        result.failures[name] = e
                        logger.error("delete_failed", name=name, error=str(e))
                    else:
                        result.deleted.append(name)
                    sorter.done(name)
        finally:
            for task in in_flight:
                task.cancel()
            if in_flight:
                await asyncio.gather(*in_flight, return_exceptions=True)

        logger.info(
            "teardown_finished",
            deleted=len(result.deleted),
            failed=len(result.failures),
            blocked=len(result.blocked),
        )
        return result

    async def _delete(self, record: ResourceRecord) -> None:
        async with self._semaphore:
            if record.physical_id is None:
                logger.debug("delete_skipped_never_created", name=record.name)
            else:
                try:
                    await call_with_retry(
                        self.provider.delete,
                        record.kind,
                        record.physical_id,
                        record.attributes,
                        policy=self.policy,
                        should_retry=_retry_delete,
                        operation=f"delete:{record.name}",
                    )
                    logger.info("resource_deleting", name=record.name, physical_id=record.physical_id)
                except ProviderError as e:
                    if e.kind != ProviderErrorKind.NOT_FOUND:
                        e.resource = record.name
                        raise
                    logger.info("resource_already_gone", name=record.name, physical_id=record.physical_id)

                if record.kind == ResourceKind.INSTANCE:
                    await self._wait_terminated(record, record.physical_id)

            await self.ledger.put(record.model_copy(update={"status": ResourceStatus.DELETED, "error": None}))

    async def _wait_terminated(self, record: ResourceRecord, physical_id: str) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.resource_timeout
        while True:
            try:
                observed = await call_with_retry(
                    self.provider.describe,
                    record.kind,
                    physical_id,
                    policy=self.policy,
                    operation=f"describe:{record.name}",
                )
            except ProviderError as e:
                if e.kind == ProviderErrorKind.NOT_FOUND:
                    return
                raise
            if observed.status == ResourceStatus.DELETED and observed.attributes.get("state") != "shutting-down":
                return

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise ResourceTimeoutError(record.name, self.resource_timeout)
            await asyncio.sleep(min(self.poll_interval, remaining))
