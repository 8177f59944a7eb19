"""Data types for the CloudProvider interface."""

from dataclasses import dataclass, field
from typing import Any

from kubestrap.core.models import ResourceStatus


@dataclass
class ProviderResult:
    """Physical id and observed status of a resource after a provider call."""

    physical_id: str
    status: ResourceStatus
    attributes: dict[str, Any] = field(default_factory=dict)
