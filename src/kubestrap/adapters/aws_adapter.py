"""AWS adapter implementing the CloudProvider interface."""

import asyncio
from collections.abc import Callable
from typing import Any

from kubestrap.clients.aws_client import AWSClient
from kubestrap.core.exceptions import ProviderError, ProviderErrorKind
from kubestrap.core.models import ResourceKind, ResourceSpec, ResourceStatus
from kubestrap.interfaces.cloud_provider import CloudProvider
from kubestrap.interfaces.cloud_types import ProviderResult
from kubestrap.utils.logging import get_logger

logger = get_logger(__name__)

INSTANCE_STATES = {
    "pending": ResourceStatus.PENDING,
    "running": ResourceStatus.READY,
    "stopping": ResourceStatus.FAILED,
    "stopped": ResourceStatus.FAILED,
    "shutting-down": ResourceStatus.DELETED,
    "terminated": ResourceStatus.DELETED,
}


class AWSAdapter(CloudProvider):
    """Adapter wrapping AWSClient to implement the CloudProvider interface.

    Each resource kind maps onto the EC2 verbs a human would run by hand.
    ``create`` issues the single call that brings a resource into being;
    ``configure`` issues the rest (subnet public addressing, gateway
    attachment, security group ingress) and tolerates having run before.
    A route table entry is a default route added to the VPC's main table.
    Blocking boto3 calls run in worker threads so only the issuing task
    waits.
    """

    def __init__(self, region: str = "us-east-1", profile: str | None = None, client: AWSClient | None = None):
        """Initialize AWS adapter.

        Args:
            region: AWS region
            profile: AWS profile name (optional)
            client: Pre-built AWSClient (optional, overrides region/profile)
        """
        self.client = client or AWSClient(region=region, profile=profile)
        self._creators: dict[ResourceKind, Callable[[ResourceSpec, dict[str, str]], ProviderResult]] = {
            ResourceKind.VPC: self._create_vpc,
            ResourceKind.SUBNET: self._create_subnet,
            ResourceKind.INTERNET_GATEWAY: self._create_internet_gateway,
            ResourceKind.ROUTE_TABLE: self._create_route,
            ResourceKind.SECURITY_GROUP: self._create_security_group,
            ResourceKind.INSTANCE: self._create_instance,
        }
        self._configurers: dict[ResourceKind, Callable[[ResourceSpec, str, dict[str, str]], None]] = {
            ResourceKind.VPC: self._configure_vpc,
            ResourceKind.SUBNET: self._configure_subnet,
            ResourceKind.INTERNET_GATEWAY: self._attach_internet_gateway,
            ResourceKind.SECURITY_GROUP: self._authorize_ingress,
        }
        self._describers: dict[ResourceKind, Callable[[str], ProviderResult]] = {
            ResourceKind.VPC: self._describe_vpc,
            ResourceKind.SUBNET: self._describe_subnet,
            ResourceKind.INTERNET_GATEWAY: self._describe_internet_gateway,
            ResourceKind.ROUTE_TABLE: self._describe_route_table,
            ResourceKind.SECURITY_GROUP: self._describe_security_group,
            ResourceKind.INSTANCE: self._describe_instance,
        }
        logger.debug("aws_adapter_initialized", region=self.client.region)

    async def create(self, spec: ResourceSpec, refs: dict[str, str]) -> ProviderResult:
        """Create the resource described by ``spec``.

        Args:
            spec: Desired resource
            refs: Parameter role -> physical id of referenced resources

        Returns:
            ProviderResult for the new resource

        Raises:
            ProviderError: If creation fails
        """
        creator = self._creators[spec.kind]
        logger.debug("creating_resource", name=spec.name, kind=spec.kind.value)
        try:
            return await asyncio.to_thread(creator, spec, refs)
        except ProviderError as e:
            e.resource = spec.name
            raise

    async def configure(self, spec: ResourceSpec, physical_id: str, refs: dict[str, str]) -> None:
        """Apply follow-up settings to a created resource; safe to repeat.

        Raises:
            ProviderError: If a follow-up call fails
        """
        configurer = self._configurers.get(spec.kind)
        if configurer is None:
            return
        try:
            await asyncio.to_thread(configurer, spec, physical_id, refs)
        except ProviderError as e:
            e.resource = spec.name
            raise

    async def describe(self, kind: ResourceKind, physical_id: str) -> ProviderResult:
        """Observe the current status of a resource.

        Raises:
            ProviderError: NOT_FOUND if the resource no longer exists
        """
        return await asyncio.to_thread(self._describers[kind], physical_id)

    async def delete(self, kind: ResourceKind, physical_id: str, attributes: dict[str, Any]) -> None:
        """Delete a resource.

        Raises:
            ProviderError: NOT_FOUND if already gone, CONFLICT if still referenced
        """
        logger.debug("deleting_resource", kind=kind.value, physical_id=physical_id)
        await asyncio.to_thread(self._delete, kind, physical_id, attributes)

    # Creation

    @staticmethod
    def _tags(spec: ResourceSpec) -> dict[str, str]:
        tags = dict(spec.attributes.get("tags", {}))
        tags.setdefault("Name", spec.name)
        return tags

    def _create_vpc(self, spec: ResourceSpec, refs: dict[str, str]) -> ProviderResult:
        return self._vpc_result(self.client.create_vpc(spec.attributes["cidr_block"], self._tags(spec)))

    def _configure_vpc(self, spec: ResourceSpec, vpc_id: str, refs: dict[str, str]) -> None:
        if spec.attributes.get("enable_dns_hostnames", True):
            self.client.modify_vpc_attribute(vpc_id, enable_dns_hostnames=True)

    def _create_subnet(self, spec: ResourceSpec, refs: dict[str, str]) -> ProviderResult:
        subnet = self.client.create_subnet(
            vpc_id=refs["vpc"],
            cidr_block=spec.attributes["cidr_block"],
            tags=self._tags(spec),
            availability_zone=spec.attributes.get("availability_zone"),
        )
        return self._subnet_result(subnet)

    def _configure_subnet(self, spec: ResourceSpec, subnet_id: str, refs: dict[str, str]) -> None:
        if spec.attributes.get("map_public_ip_on_launch", True):
            self.client.modify_subnet_attribute(subnet_id, map_public_ip_on_launch=True)

    def _create_internet_gateway(self, spec: ResourceSpec, refs: dict[str, str]) -> ProviderResult:
        gateway = self.client.create_internet_gateway(self._tags(spec))
        return ProviderResult(
            physical_id=gateway["InternetGatewayId"],
            status=ResourceStatus.PENDING,
            attributes={"vpc_id": refs["vpc"]},
        )

    def _attach_internet_gateway(self, spec: ResourceSpec, gateway_id: str, refs: dict[str, str]) -> None:
        vpc_id = refs["vpc"]
        attachments = self.client.describe_internet_gateway(gateway_id).get("Attachments", [])
        if any(a.get("VpcId") == vpc_id for a in attachments):
            logger.debug("internet_gateway_already_attached", gateway_id=gateway_id, vpc_id=vpc_id)
            return
        self.client.attach_internet_gateway(gateway_id, vpc_id)

    def _create_route(self, spec: ResourceSpec, refs: dict[str, str]) -> ProviderResult:
        vpc_id = refs["vpc"]
        gateway_id = refs["gateway"]
        destination = spec.attributes.get("destination_cidr", "0.0.0.0/0")

        tables = self.client.describe_route_tables(vpc_id, main_only=True)
        if not tables:
            raise ProviderError(
                f"No main route table found for VPC {vpc_id}",
                kind=ProviderErrorKind.NOT_FOUND,
                resource=spec.name,
            )
        route_table_id = tables[0]["RouteTableId"]

        try:
            self.client.create_route(route_table_id, destination, gateway_id)
        except ProviderError as e:
            # A leftover route through the same gateway is what we wanted anyway
            existing = self._find_route(tables[0], destination)
            if e.code != "RouteAlreadyExists" or not existing or existing.get("GatewayId") != gateway_id:
                raise

        return ProviderResult(
            physical_id=route_table_id,
            status=ResourceStatus.PENDING,
            attributes={
                "vpc_id": vpc_id,
                "gateway_id": gateway_id,
                "destination_cidr": destination,
            },
        )

    def _create_security_group(self, spec: ResourceSpec, refs: dict[str, str]) -> ProviderResult:
        vpc_id = refs["vpc"]
        group_id = self.client.create_security_group(
            group_name=spec.attributes.get("group_name", spec.name),
            description=spec.attributes.get("description", f"{spec.name} security group"),
            vpc_id=vpc_id,
            tags=self._tags(spec),
        )
        return ProviderResult(
            physical_id=group_id,
            status=ResourceStatus.PENDING,
            attributes={"vpc_id": vpc_id},
        )

    def _authorize_ingress(self, spec: ResourceSpec, group_id: str, refs: dict[str, str]) -> None:
        permissions = [self._ip_permission(rule) for rule in spec.attributes.get("ingress", [])]
        if not permissions:
            return
        try:
            self.client.authorize_security_group_ingress(group_id, permissions)
        except ProviderError as e:
            if e.code != "InvalidPermission.Duplicate":
                raise

    def _create_instance(self, spec: ResourceSpec, refs: dict[str, str]) -> ProviderResult:
        attrs = spec.attributes
        instance = self.client.run_instances(
            image_id=attrs["ami_id"],
            instance_type=attrs["instance_type"],
            subnet_id=refs["subnet"],
            security_group_ids=[refs["security_group"]],
            tags=self._tags(spec),
            key_name=attrs.get("key_name"),
            root_volume_gb=attrs.get("root_volume_gb"),
        )
        result = self._instance_result(instance)
        result.attributes["role"] = attrs.get("role")
        return result

    @staticmethod
    def _ip_permission(rule: dict[str, Any]) -> dict[str, Any]:
        protocol = str(rule.get("protocol", "tcp"))
        permission: dict[str, Any] = {
            "IpProtocol": protocol,
            "IpRanges": [{"CidrIp": rule["cidr"], "Description": rule.get("description", "")}],
        }
        if protocol != "-1":
            permission["FromPort"] = int(rule["from_port"])
            permission["ToPort"] = int(rule.get("to_port", rule["from_port"]))
        return permission

    # Description

    def _describe_vpc(self, vpc_id: str) -> ProviderResult:
        return self._vpc_result(self.client.describe_vpc(vpc_id))

    def _describe_subnet(self, subnet_id: str) -> ProviderResult:
        return self._subnet_result(self.client.describe_subnet(subnet_id))

    def _describe_internet_gateway(self, gateway_id: str) -> ProviderResult:
        gateway = self.client.describe_internet_gateway(gateway_id)
        attachments = gateway.get("Attachments", [])
        attached = [a for a in attachments if a.get("State") in ("available", "attached")]
        return ProviderResult(
            physical_id=gateway_id,
            status=ResourceStatus.READY if attached else ResourceStatus.PENDING,
            attributes={"vpc_id": attached[0]["VpcId"]} if attached else {},
        )

    def _describe_route_table(self, route_table_id: str) -> ProviderResult:
        table = self.client.describe_route_table(route_table_id)
        routes = [r for r in table.get("Routes", []) if r.get("GatewayId", "").startswith("igw-")]
        if not routes:
            raise ProviderError(
                f"No gateway route in route table {route_table_id}",
                kind=ProviderErrorKind.NOT_FOUND,
                resource=route_table_id,
            )
        route = routes[0]
        state = route.get("State", "active")
        return ProviderResult(
            physical_id=route_table_id,
            status=ResourceStatus.READY if state == "active" else ResourceStatus.FAILED,
            attributes={
                "vpc_id": table.get("VpcId"),
                "gateway_id": route["GatewayId"],
                "destination_cidr": route.get("DestinationCidrBlock", "0.0.0.0/0"),
            },
        )

    def _describe_security_group(self, group_id: str) -> ProviderResult:
        group = self.client.describe_security_group(group_id)
        return ProviderResult(
            physical_id=group_id,
            status=ResourceStatus.READY,
            attributes={"vpc_id": group.get("VpcId"), "group_name": group.get("GroupName")},
        )

    def _describe_instance(self, instance_id: str) -> ProviderResult:
        return self._instance_result(self.client.describe_instance(instance_id))

    @staticmethod
    def _vpc_result(vpc: dict[str, Any]) -> ProviderResult:
        state = vpc.get("State", "pending")
        return ProviderResult(
            physical_id=vpc["VpcId"],
            status=ResourceStatus.READY if state == "available" else ResourceStatus.PENDING,
            attributes={"cidr_block": vpc.get("CidrBlock")},
        )

    @staticmethod
    def _subnet_result(subnet: dict[str, Any]) -> ProviderResult:
        state = subnet.get("State", "pending")
        return ProviderResult(
            physical_id=subnet["SubnetId"],
            status=ResourceStatus.READY if state == "available" else ResourceStatus.PENDING,
            attributes={
                "vpc_id": subnet.get("VpcId"),
                "cidr_block": subnet.get("CidrBlock"),
                "availability_zone": subnet.get("AvailabilityZone"),
            },
        )

    @staticmethod
    def _instance_result(instance: dict[str, Any]) -> ProviderResult:
        state = instance.get("State", {}).get("Name", "pending")
        status = INSTANCE_STATES.get(state, ResourceStatus.PENDING)
        # A running instance without its public address yet is not usable
        if status == ResourceStatus.READY and not instance.get("PublicIpAddress"):
            status = ResourceStatus.PENDING
        tags = {t["Key"]: t["Value"] for t in instance.get("Tags", [])}
        return ProviderResult(
            physical_id=instance["InstanceId"],
            status=status,
            attributes={
                "state": state,
                "public_ip": instance.get("PublicIpAddress"),
                "private_ip": instance.get("PrivateIpAddress"),
                "availability_zone": instance.get("Placement", {}).get("AvailabilityZone"),
                "role": tags.get("kubestrap:role"),
            },
        )

    @staticmethod
    def _find_route(table: dict[str, Any], destination: str) -> dict[str, Any] | None:
        return next(
            (r for r in table.get("Routes", []) if r.get("DestinationCidrBlock") == destination),
            None,
        )

    # Deletion

    def _delete(self, kind: ResourceKind, physical_id: str, attributes: dict[str, Any]) -> None:
        if kind == ResourceKind.INSTANCE:
            self.client.terminate_instances([physical_id])
        elif kind == ResourceKind.SECURITY_GROUP:
            self.client.delete_security_group(physical_id)
        elif kind == ResourceKind.ROUTE_TABLE:
            # The main route table goes with its VPC; only our route is removed
            self.client.delete_route(physical_id, attributes.get("destination_cidr", "0.0.0.0/0"))
        elif kind == ResourceKind.INTERNET_GATEWAY:
            vpc_id = attributes.get("vpc_id")
            if vpc_id:
                try:
                    self.client.detach_internet_gateway(physical_id, vpc_id)
                except ProviderError as e:
                    if e.kind != ProviderErrorKind.NOT_FOUND:
                        raise
            self.client.delete_internet_gateway(physical_id)
        elif kind == ResourceKind.SUBNET:
            self.client.delete_subnet(physical_id)
        elif kind == ResourceKind.VPC:
            self.client.delete_vpc(physical_id)
        else:  # pragma: no cover
            raise ValueError(f"Unsupported resource kind: {kind}")
