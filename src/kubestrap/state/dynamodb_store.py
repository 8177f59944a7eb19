"""DynamoDB state store."""

import asyncio
import json
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import ValidationError

from kubestrap.core.exceptions import StateStoreError
from kubestrap.core.models import ClusterState, ResourceRecord, utcnow
from kubestrap.interfaces.state_store import StateStore
from kubestrap.utils.logging import get_logger

logger = get_logger(__name__)


class DynamoDBStateStore(StateStore):
    """Store each cluster as one DynamoDB item keyed by ``cluster_name``.

    The ledger and the cluster state live in separate attributes as JSON
    strings and are updated independently, so the provisioner and the
    bootstrapper never overwrite each other's writes.
    """

    def __init__(self, table_name: str, region: str = "us-east-1", profile: str | None = None):
        """Initialize DynamoDB state store.

        Args:
            table_name: DynamoDB table name (partition key ``cluster_name``)
            region: AWS region
            profile: AWS profile name (optional)

        Raises:
            StateStoreError: If the table handle cannot be created
        """
        try:
            self.table_name = table_name
            self.region = region

            session = boto3.Session(profile_name=profile, region_name=region)
            self.table = session.resource("dynamodb").Table(table_name)

            logger.debug("dynamodb_store_initialized", table_name=table_name)

        except (ClientError, BotoCoreError) as e:
            logger.error("dynamodb_store_init_failed", table_name=table_name, error=str(e))
            raise StateStoreError(f"Failed to initialize DynamoDB state store: {e}") from e

    def _get_item(self, cluster_name: str) -> dict[str, Any]:
        try:
            response = self.table.get_item(Key={"cluster_name": cluster_name})
        except (ClientError, BotoCoreError) as e:
            logger.error("get_state_failed", cluster=cluster_name, error=str(e))
            raise StateStoreError(f"Failed to read state for {cluster_name}: {e}") from e
        return dict(response.get("Item", {}))

    def _set_attribute(self, cluster_name: str, attribute: str, payload: str) -> None:
        try:
            self.table.update_item(
                Key={"cluster_name": cluster_name},
                UpdateExpression="SET #attr = :payload, updated_at = :updated_at",
                ExpressionAttributeNames={"#attr": attribute},
                ExpressionAttributeValues={":payload": payload, ":updated_at": utcnow().isoformat()},
            )
        except (ClientError, BotoCoreError) as e:
            logger.error("save_state_failed", cluster=cluster_name, attribute=attribute, error=str(e))
            raise StateStoreError(f"Failed to save {attribute} for {cluster_name}: {e}") from e

    async def load_records(self, cluster_name: str) -> dict[str, ResourceRecord]:
        item = await asyncio.to_thread(self._get_item, cluster_name)
        if "records" not in item:
            return {}
        try:
            raw = json.loads(item["records"])
            return {name: ResourceRecord.model_validate(value) for name, value in raw.items()}
        except (ValueError, ValidationError) as e:
            raise StateStoreError(f"Corrupt resource ledger for {cluster_name}: {e}") from e

    async def save_records(self, cluster_name: str, records: dict[str, ResourceRecord]) -> None:
        payload = json.dumps({name: r.model_dump(mode="json") for name, r in records.items()})
        await asyncio.to_thread(self._set_attribute, cluster_name, "records", payload)

    async def load_cluster_state(self, cluster_name: str) -> ClusterState | None:
        item = await asyncio.to_thread(self._get_item, cluster_name)
        if "cluster_state" not in item:
            return None
        try:
            return ClusterState.model_validate_json(item["cluster_state"])
        except ValidationError as e:
            raise StateStoreError(f"Corrupt cluster state for {cluster_name}: {e}") from e

    async def save_cluster_state(self, state: ClusterState) -> None:
        await asyncio.to_thread(
            self._set_attribute, state.cluster_name, "cluster_state", state.model_dump_json()
        )

    async def delete(self, cluster_name: str) -> None:
        def _delete() -> None:
            try:
                self.table.delete_item(Key={"cluster_name": cluster_name})
            except (ClientError, BotoCoreError) as e:
                raise StateStoreError(f"Failed to delete state for {cluster_name}: {e}") from e

        await asyncio.to_thread(_delete)
        logger.info("state_deleted", cluster=cluster_name, table=self.table_name)
