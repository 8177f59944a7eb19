"""Dependency-ordered, idempotent resource provisioning."""

import asyncio
from dataclasses import dataclass, field

from kubestrap.core.exceptions import (
    DependencyFailedError,
    KubestrapError,
    ProviderError,
    ProviderErrorKind,
    ResourceTimeoutError,
)
from kubestrap.core.models import ResourceRecord, ResourceSpec, ResourceStatus
from kubestrap.interfaces.cloud_provider import CloudProvider
from kubestrap.interfaces.cloud_types import ProviderResult
from kubestrap.provisioning.graph import ResourceGraph
from kubestrap.provisioning.ledger import Ledger
from kubestrap.utils.logging import get_logger
from kubestrap.utils.retry import RetryPolicy, call_with_retry

logger = get_logger(__name__)


@dataclass
class ProvisionResult:
    """Outcome of one apply.

    Attributes:
        records: Ledger snapshot taken when apply returned
        created: Logical names created during this apply
        verified: Logical names already Ready and left untouched
        failures: Errors keyed by logical name
        not_attempted: Names skipped because apply halted after a timeout
    """

    records: dict[str, ResourceRecord]
    created: list[str] = field(default_factory=list)
    verified: list[str] = field(default_factory=list)
    failures: dict[str, KubestrapError] = field(default_factory=dict)
    not_attempted: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures and not self.not_attempted


class Provisioner:
    """Drive a ResourceGraph to Ready through a CloudProvider.

    Resources whose dependencies are Ready are created concurrently, up to
    ``max_parallel`` at a time. A failure only blocks the failed resource's
    dependents; independent branches keep going. Records already Ready are
    re-checked against the provider and recreated only if they vanished.
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

    async def apply(self, graph: ResourceGraph) -> ProvisionResult:
        """Converge every spec in the graph.

        Args:
            graph: Resource graph to realize

        Returns:
            ProvisionResult with a ledger snapshot and per-resource errors

        Raises:
            ValueError: If the graph has a cycle or a dangling dependency
            StateStoreError: If the ledger cannot be persisted
        """
        sorter = graph.sorter()
        result = ProvisionResult(records={})
        failed: set[str] = set()
        halted = False
        in_flight: dict[asyncio.Task[str], str] = {}

        logger.info("provision_started", resources=len(graph))
        try:
            while sorter.is_active():
                for name in sorter.get_ready():
                    spec = graph.get(name)
                    broken = sorted(d for d in spec.dependencies if d in failed)
                    if broken:
                        failed.add(name)
                        result.failures[name] = DependencyFailedError(name, broken[0])
                        logger.warning("resource_skipped", name=name, dependency=broken[0])
                        sorter.done(name)
                    elif halted:
                        result.not_attempted.append(name)
                        failed.add(name)
                        sorter.done(name)
                    else:
                        in_flight[asyncio.create_task(self._ensure(spec))] = name

                if not in_flight:
                    continue

                done, _ = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    name = in_flight.pop(task)
                    try:
                        outcome = task.result()
                    except ResourceTimeoutError as e:
                        halted = True
                        failed.add(name)
                        result.failures[name] = e
                    except KubestrapError as e:
                        failed.add(name)
                        result.failures[name] = e
                    else:
                        (result.created if outcome == "created" else result.verified).append(name)
                    sorter.done(name)
        finally:
            for task in in_flight:
                task.cancel()
            if in_flight:
                await asyncio.gather(*in_flight, return_exceptions=True)

        result.records = self.ledger.snapshot()
        logger.info(
            "provision_finished",
            created=len(result.created),
            verified=len(result.verified),
            failed=len(result.failures),
            not_attempted=len(result.not_attempted),
        )
        return result

    async def _ensure(self, spec: ResourceSpec) -> str:
        async with self._semaphore:
            record = self.ledger.get(spec.name)
            if record is not None and record.physical_id:
                physical_id = record.physical_id
                observed = await self._observe(spec, physical_id)
                if observed is not None and observed.status == ResourceStatus.READY:
                    if record.status == ResourceStatus.READY:
                        await self._mark_ready(spec, record, observed)
                        logger.debug("resource_verified", name=spec.name, physical_id=physical_id)
                        return "verified"
                if observed is not None and observed.status in (ResourceStatus.PENDING, ResourceStatus.READY):
                    # Created by an earlier run that stopped before confirming it
                    await self._configure(spec, record, physical_id, self._resolve_refs(spec))
                    await self._wait_ready(spec, record, physical_id)
                    return "created"
                logger.warning(
                    "resource_drifted",
                    name=spec.name,
                    physical_id=physical_id,
                    observed=observed.status.value if observed else "missing",
                )

            refs = self._resolve_refs(spec)
            try:
                created = await call_with_retry(
                    self.provider.create,
                    spec,
                    refs,
                    policy=self.policy,
                    operation=f"create:{spec.name}",
                )
            except ProviderError as e:
                e.resource = e.resource or spec.name
                await self.ledger.put(
                    ResourceRecord(
                        name=spec.name,
                        kind=spec.kind,
                        status=ResourceStatus.FAILED,
                        dependencies=sorted(spec.dependencies),
                        error=str(e),
                    )
                )
                logger.error("resource_create_failed", name=spec.name, kind=e.kind.value, error=str(e))
                raise

            record = ResourceRecord(
                name=spec.name,
                kind=spec.kind,
                physical_id=created.physical_id,
                status=ResourceStatus.PENDING,
                attributes=dict(created.attributes),
                dependencies=sorted(spec.dependencies),
            )
            # Recorded before any follow-up call so a later failure cannot orphan it
            await self.ledger.put(record)
            logger.info("resource_created", name=spec.name, kind=spec.kind.value, physical_id=created.physical_id)
            await self._configure(spec, record, created.physical_id, refs)
            await self._wait_ready(spec, record, created.physical_id)
            return "created"

    async def _configure(
        self, spec: ResourceSpec, record: ResourceRecord, physical_id: str, refs: dict[str, str]
    ) -> None:
        try:
            await call_with_retry(
                self.provider.configure,
                spec,
                physical_id,
                refs,
                policy=self.policy,
                operation=f"configure:{spec.name}",
            )
        except ProviderError as e:
            e.resource = spec.name
            await self._mark_failed(record, str(e))
            logger.error("resource_configure_failed", name=spec.name, physical_id=physical_id, error=str(e))
            raise

    def _resolve_refs(self, spec: ResourceSpec) -> dict[str, str]:
        refs: dict[str, str] = {}
        for role, dependency in spec.refs.items():
            record = self.ledger.get(dependency)
            if record is None or record.status != ResourceStatus.READY or not record.physical_id:
                raise DependencyFailedError(spec.name, dependency)
            refs[role] = record.physical_id
        for dependency in spec.depends_on:
            if not self.ledger.is_ready(dependency):
                raise DependencyFailedError(spec.name, dependency)
        return refs

    async def _observe(self, spec: ResourceSpec, physical_id: str) -> ProviderResult | None:
        try:
            return await call_with_retry(
                self.provider.describe,
                spec.kind,
                physical_id,
                policy=self.policy,
                operation=f"describe:{spec.name}",
            )
        except ProviderError as e:
            if e.kind == ProviderErrorKind.NOT_FOUND:
                return None
            raise

    async def _wait_ready(self, spec: ResourceSpec, record: ResourceRecord, physical_id: str) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.resource_timeout

        while True:
            observed = await self._observe(spec, physical_id)
            # Freshly created resources may not be visible yet
            if observed is not None:
                if observed.status == ResourceStatus.READY:
                    await self._mark_ready(spec, record, observed)
                    logger.info("resource_ready", name=spec.name, physical_id=physical_id)
                    return
                if observed.status in (ResourceStatus.FAILED, ResourceStatus.DELETED):
                    message = f"Resource {spec.name} entered {observed.status.value} state"
                    await self._mark_failed(record, message, observed)
                    raise ProviderError(message, ProviderErrorKind.INVALID, resource=spec.name)

            remaining = deadline - loop.time()
            if remaining <= 0:
                error = ResourceTimeoutError(spec.name, self.resource_timeout)
                await self._mark_failed(record, str(error))
                logger.error("resource_timeout", name=spec.name, timeout=self.resource_timeout)
                raise error
            await asyncio.sleep(min(self.poll_interval, remaining))

    async def _mark_ready(self, spec: ResourceSpec, record: ResourceRecord, observed: ProviderResult) -> None:
        attributes = {**record.attributes, **{k: v for k, v in observed.attributes.items() if v is not None}}
        dependencies = sorted(spec.dependencies)
        unchanged = (
            record.status == ResourceStatus.READY
            and record.attributes == attributes
            and record.dependencies == dependencies
            and record.error is None
        )
        if unchanged:
            return
        await self.ledger.put(
            record.model_copy(
                update={
                    "status": ResourceStatus.READY,
                    "attributes": attributes,
                    "dependencies": dependencies,
                    "error": None,
                }
            )
        )

    async def _mark_failed(
        self,
        record: ResourceRecord,
        message: str,
        observed: ProviderResult | None = None,
    ) -> None:
        attributes = dict(record.attributes)
        if observed is not None:
            attributes.update({k: v for k, v in observed.attributes.items() if v is not None})
        await self.ledger.put(
            record.model_copy(update={"status": ResourceStatus.FAILED, "attributes": attributes, "error": message})
        )
