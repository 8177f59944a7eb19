"""Persisted state backends."""

from kubestrap.core.config import StateConfig
from kubestrap.core.exceptions import ConfigurationError
from kubestrap.interfaces.state_store import StateStore
from kubestrap.state.dynamodb_store import DynamoDBStateStore
from kubestrap.state.file_store import FileStateStore


def build_state_store(config: StateConfig, region: str = "us-east-1", profile: str | None = None) -> StateStore:
    """Create the state store selected by ``config.backend``."""
    if config.backend == "file":
        return FileStateStore(config.directory)
    if config.backend == "dynamodb":
        return DynamoDBStateStore(config.dynamodb_table, region=region, profile=profile)
    raise ConfigurationError(f"Unknown state backend: {config.backend}")


__all__ = ["DynamoDBStateStore", "FileStateStore", "build_state_store"]
