"""Cloud provider interface for resource lifecycle operations."""

from abc import ABC, abstractmethod
from typing import Any

from kubestrap.core.models import ResourceKind, ResourceSpec
from kubestrap.interfaces.cloud_types import ProviderResult


class CloudProvider(ABC):
    """Abstract interface for cloud resource create/describe/delete.

    Implementations hide provider-specific details (boto3 responses,
    ClientError codes) and surface failures as ``ProviderError`` tagged
    with a ``ProviderErrorKind``. They never retry: callers own retry
    policy.
    """

    @abstractmethod
    async def create(self, spec: ResourceSpec, refs: dict[str, str]) -> ProviderResult:
        """Create the resource described by ``spec``.

        Args:
            spec: Desired resource
            refs: Parameter role -> physical id of each referenced resource

        Returns:
            ProviderResult with the new physical id and initial status

        Raises:
            ProviderError: If creation fails
        """

    async def configure(self, spec: ResourceSpec, physical_id: str, refs: dict[str, str]) -> None:
        """Apply the follow-up settings of a created resource.

        ``create`` performs exactly one mutating call, so a retried create
        never leaves an unrecorded resource behind. Everything after it
        (attributes, attachments, ingress rules) happens here, once the
        physical id is in the ledger. Must be idempotent: it is re-run
        whenever a recorded resource is not yet Ready.

        Args:
            spec: Desired resource
            physical_id: Provider-assigned id returned by ``create``
            refs: Parameter role -> physical id of each referenced resource

        Raises:
            ProviderError: If a follow-up call fails
        """

    @abstractmethod
    async def describe(self, kind: ResourceKind, physical_id: str) -> ProviderResult:
        """Observe the current status of a resource.

        Args:
            kind: Resource kind
            physical_id: Provider-assigned id

        Returns:
            ProviderResult with current status and attributes

        Raises:
            ProviderError: NOT_FOUND if the resource no longer exists
        """

    @abstractmethod
    async def delete(self, kind: ResourceKind, physical_id: str, attributes: dict[str, Any]) -> None:
        """Delete a resource.

        Args:
            kind: Resource kind
            physical_id: Provider-assigned id
            attributes: Last observed attributes (e.g. the VPC a gateway is attached to)

        Raises:
            ProviderError: NOT_FOUND if already gone, CONFLICT if still referenced
        """
