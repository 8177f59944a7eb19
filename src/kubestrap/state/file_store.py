"""JSON file state store."""

import asyncio
import json
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from kubestrap.core.exceptions import StateStoreError
from kubestrap.core.models import ClusterState, ResourceRecord
from kubestrap.interfaces.state_store import StateStore
from kubestrap.utils.logging import get_logger

logger = get_logger(__name__)

STATE_FILE = "state.json"


class FileStateStore(StateStore):
    """Store each cluster's ledger and bootstrap state in one JSON document.

    Layout is ``<directory>/<cluster>/state.json``. Every write replaces the
    file atomically, so a crash mid-write leaves the previous version intact.
    """

    def __init__(self, directory: str | Path = "~/.kubestrap"):
        self.directory = Path(directory).expanduser()
        self._lock = asyncio.Lock()

    def cluster_dir(self, cluster_name: str) -> Path:
        return self.directory / cluster_name

    def _path(self, cluster_name: str) -> Path:
        return self.cluster_dir(cluster_name) / STATE_FILE

    def _read(self, cluster_name: str) -> dict[str, Any]:
        path = self._path(cluster_name)
        if not path.exists():
            return {}
        try:
            with path.open() as f:
                return dict(json.load(f))
        except (OSError, ValueError) as e:
            raise StateStoreError(f"Failed to read state for {cluster_name}: {e}") from e

    def _write(self, cluster_name: str, document: dict[str, Any]) -> None:
        path = self._path(cluster_name)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w", dir=path.parent, prefix=".state-", suffix=".tmp", delete=False
            ) as f:
                json.dump(document, f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
                tmp_name = f.name
            os.replace(tmp_name, path)
        except OSError as e:
            raise StateStoreError(f"Failed to write state for {cluster_name}: {e}") from e

    async def _update(self, cluster_name: str, key: str, value: Any) -> None:
        async with self._lock:
            document = await asyncio.to_thread(self._read, cluster_name)
            document[key] = value
            await asyncio.to_thread(self._write, cluster_name, document)

    async def load_records(self, cluster_name: str) -> dict[str, ResourceRecord]:
        document = await asyncio.to_thread(self._read, cluster_name)
        try:
            return {
                name: ResourceRecord.model_validate(raw)
                for name, raw in document.get("records", {}).items()
            }
        except ValidationError as e:
            raise StateStoreError(f"Corrupt resource ledger for {cluster_name}: {e}") from e

    async def save_records(self, cluster_name: str, records: dict[str, ResourceRecord]) -> None:
        payload = {name: record.model_dump(mode="json") for name, record in records.items()}
        await self._update(cluster_name, "records", payload)

    async def load_cluster_state(self, cluster_name: str) -> ClusterState | None:
        document = await asyncio.to_thread(self._read, cluster_name)
        raw = document.get("cluster_state")
        if raw is None:
            return None
        try:
            return ClusterState.model_validate(raw)
        except ValidationError as e:
            raise StateStoreError(f"Corrupt cluster state for {cluster_name}: {e}") from e

    async def save_cluster_state(self, state: ClusterState) -> None:
        await self._update(state.cluster_name, "cluster_state", state.model_dump(mode="json"))

    async def delete(self, cluster_name: str) -> None:
        path = self.cluster_dir(cluster_name)
        async with self._lock:
            try:
                await asyncio.to_thread(shutil.rmtree, path, ignore_errors=False)
            except FileNotFoundError:
                pass
            except OSError as e:
                raise StateStoreError(f"Failed to delete state for {cluster_name}: {e}") from e
        logger.info("state_deleted", cluster=cluster_name, path=str(path))
