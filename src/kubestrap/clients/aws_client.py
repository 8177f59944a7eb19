"""AWS client for EC2 and EC2 Instance Connect operations."""

from typing import Any, cast

import boto3
from botocore.exceptions import BotoCoreError, ClientError, EndpointConnectionError

from kubestrap.core.exceptions import ProviderError, ProviderErrorKind
from kubestrap.utils.logging import get_logger

logger = get_logger(__name__)

TRANSIENT_CODES = frozenset(
    {
        "RequestLimitExceeded",
        "Throttling",
        "ThrottlingException",
        "InternalError",
        "InternalFailure",
        "ServiceUnavailable",
        "Unavailable",
        "InsufficientInstanceCapacity",
    }
)

CONFLICT_CODES = frozenset(
    {
        "DependencyViolation",
        "IncorrectState",
        "IncorrectInstanceState",
        "InvalidGroup.InUse",
        "Resource.AlreadyAssociated",
        "InvalidGroup.Duplicate",
        "RouteAlreadyExists",
        "InvalidPermission.Duplicate",
    }
)

PERMISSION_CODES = frozenset(
    {
        "UnauthorizedOperation",
        "AccessDenied",
        "AccessDeniedException",
        "AuthFailure",
        "OptInRequired",
    }
)


def classify_error_code(code: str, http_status: int | None = None) -> ProviderErrorKind:
    """Map an EC2 error code onto the provider error taxonomy.

    Args:
        code: ``Error.Code`` from the ClientError response
        http_status: HTTP status of the failed call, if known

    Returns:
        The matching ProviderErrorKind
    """
    if code in TRANSIENT_CODES or (http_status is not None and http_status >= 500):
        return ProviderErrorKind.TRANSIENT
    if code.endswith(".NotFound") or code in ("Gateway.NotAttached", "InvalidRoute.NotFound"):
        return ProviderErrorKind.NOT_FOUND
    if code in CONFLICT_CODES:
        return ProviderErrorKind.CONFLICT
    if code in PERMISSION_CODES:
        return ProviderErrorKind.PERMISSION_DENIED
    return ProviderErrorKind.INVALID


def to_provider_error(error: Exception, operation: str, resource: str | None = None) -> ProviderError:
    """Translate a botocore failure into a tagged ProviderError."""
    if isinstance(error, ClientError):
        code = error.response.get("Error", {}).get("Code", "Unknown")
        status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        kind = classify_error_code(code, status)
        return ProviderError(
            f"{operation} failed for {resource or 'request'}: {code}",
            kind=kind,
            resource=resource,
            code=code,
        )
    if isinstance(error, (EndpointConnectionError, BotoCoreError)):
        return ProviderError(
            f"{operation} failed for {resource or 'request'}: {error}",
            kind=ProviderErrorKind.TRANSIENT,
            resource=resource,
        )
    return ProviderError(
        f"{operation} failed for {resource or 'request'}: {error}",
        kind=ProviderErrorKind.INVALID,
        resource=resource,
    )


def tag_specifications(resource_type: str, tags: dict[str, str]) -> list[dict[str, Any]]:
    """Build an EC2 ``TagSpecifications`` list."""
    return [
        {
            "ResourceType": resource_type,
            "Tags": [{"Key": key, "Value": value} for key, value in sorted(tags.items())],
        }
    ]


class AWSClient:
    """AWS client for EC2 network, instance and Instance Connect operations.

    Methods are thin, synchronous wrappers over boto3. Every botocore
    failure is re-raised as a ProviderError; nothing is retried here.
    """

    def __init__(
        self,
        region: str = "us-east-1",
        profile: str | None = None,
        session: boto3.Session | None = None,
    ):
        """Initialize AWS client.

        Args:
            region: AWS region
            profile: AWS profile name (optional)
            session: Existing boto3 session (optional, overrides profile)
        """
        self.region = region
        self.profile = profile

        if session:
            self.session = session
        elif profile:
            self.session = boto3.Session(profile_name=profile, region_name=region)
        else:
            self.session = boto3.Session(region_name=region)

        self.ec2 = self.session.client("ec2")
        self.instance_connect = self.session.client("ec2-instance-connect")

        logger.debug("aws_client_initialized", region=region, profile=profile)

    def _call(self, operation: str, resource: str | None, **params: Any) -> dict[str, Any]:
        try:
            logger.debug("ec2_call", operation=operation, resource=resource)
            method = getattr(self.ec2, operation)
            return cast(dict[str, Any], method(**params))
        except (ClientError, BotoCoreError) as e:
            error = to_provider_error(e, operation, resource)
            logger.warning(
                "ec2_call_failed",
                operation=operation,
                resource=resource,
                code=error.code,
                kind=error.kind.value,
            )
            raise error from e

    def describe_availability_zones(self) -> list[str]:
        """Zone names available in the region; doubles as a credentials check."""
        response = self._call("describe_availability_zones", None)
        return [z["ZoneName"] for z in response.get("AvailabilityZones", [])]

    # VPC

    def create_vpc(self, cidr_block: str, tags: dict[str, str]) -> dict[str, Any]:
        response = self._call(
            "create_vpc",
            None,
            CidrBlock=cidr_block,
            TagSpecifications=tag_specifications("vpc", tags),
        )
        vpc = response["Vpc"]
        logger.info("vpc_created", vpc_id=vpc["VpcId"], cidr_block=cidr_block)
        return vpc

    def modify_vpc_attribute(self, vpc_id: str, enable_dns_hostnames: bool = True) -> None:
        self._call(
            "modify_vpc_attribute",
            vpc_id,
            VpcId=vpc_id,
            EnableDnsHostnames={"Value": enable_dns_hostnames},
        )

    def describe_vpc(self, vpc_id: str) -> dict[str, Any]:
        response = self._call("describe_vpcs", vpc_id, VpcIds=[vpc_id])
        return self._single(response, "Vpcs", vpc_id, "InvalidVpcID.NotFound")

    def delete_vpc(self, vpc_id: str) -> None:
        self._call("delete_vpc", vpc_id, VpcId=vpc_id)
        logger.info("vpc_deleted", vpc_id=vpc_id)

    # Subnet

    def create_subnet(
        self,
        vpc_id: str,
        cidr_block: str,
        tags: dict[str, str],
        availability_zone: str | None = None,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {
            "VpcId": vpc_id,
            "CidrBlock": cidr_block,
            "TagSpecifications": tag_specifications("subnet", tags),
        }
        if availability_zone:
            params["AvailabilityZone"] = availability_zone
        subnet = self._call("create_subnet", None, **params)["Subnet"]
        logger.info("subnet_created", subnet_id=subnet["SubnetId"], vpc_id=vpc_id)
        return subnet

    def modify_subnet_attribute(self, subnet_id: str, map_public_ip_on_launch: bool = True) -> None:
        self._call(
            "modify_subnet_attribute",
            subnet_id,
            SubnetId=subnet_id,
            MapPublicIpOnLaunch={"Value": map_public_ip_on_launch},
        )

    def describe_subnet(self, subnet_id: str) -> dict[str, Any]:
        response = self._call("describe_subnets", subnet_id, SubnetIds=[subnet_id])
        return self._single(response, "Subnets", subnet_id, "InvalidSubnetID.NotFound")

    def delete_subnet(self, subnet_id: str) -> None:
        self._call("delete_subnet", subnet_id, SubnetId=subnet_id)
        logger.info("subnet_deleted", subnet_id=subnet_id)

    # Internet gateway

    def create_internet_gateway(self, tags: dict[str, str]) -> dict[str, Any]:
        response = self._call(
            "create_internet_gateway",
            None,
            TagSpecifications=tag_specifications("internet-gateway", tags),
        )
        gateway = response["InternetGateway"]
        logger.info("internet_gateway_created", gateway_id=gateway["InternetGatewayId"])
        return gateway

    def attach_internet_gateway(self, gateway_id: str, vpc_id: str) -> None:
        self._call(
            "attach_internet_gateway", gateway_id, InternetGatewayId=gateway_id, VpcId=vpc_id
        )
        logger.info("internet_gateway_attached", gateway_id=gateway_id, vpc_id=vpc_id)

    def describe_internet_gateway(self, gateway_id: str) -> dict[str, Any]:
        response = self._call(
            "describe_internet_gateways", gateway_id, InternetGatewayIds=[gateway_id]
        )
        return self._single(
            response, "InternetGateways", gateway_id, "InvalidInternetGatewayID.NotFound"
        )

    def detach_internet_gateway(self, gateway_id: str, vpc_id: str) -> None:
        self._call(
            "detach_internet_gateway", gateway_id, InternetGatewayId=gateway_id, VpcId=vpc_id
        )
        logger.info("internet_gateway_detached", gateway_id=gateway_id, vpc_id=vpc_id)

    def delete_internet_gateway(self, gateway_id: str) -> None:
        self._call("delete_internet_gateway", gateway_id, InternetGatewayId=gateway_id)
        logger.info("internet_gateway_deleted", gateway_id=gateway_id)

    # Route tables

    def describe_route_tables(self, vpc_id: str, main_only: bool = False) -> list[dict[str, Any]]:
        filters = [{"Name": "vpc-id", "Values": [vpc_id]}]
        if main_only:
            filters.append({"Name": "association.main", "Values": ["true"]})
        response = self._call("describe_route_tables", vpc_id, Filters=filters)
        return cast(list[dict[str, Any]], response.get("RouteTables", []))

    def describe_route_table(self, route_table_id: str) -> dict[str, Any]:
        response = self._call(
            "describe_route_tables", route_table_id, RouteTableIds=[route_table_id]
        )
        return self._single(response, "RouteTables", route_table_id, "InvalidRouteTableID.NotFound")

    def create_route(self, route_table_id: str, destination_cidr: str, gateway_id: str) -> None:
        self._call(
            "create_route",
            route_table_id,
            RouteTableId=route_table_id,
            DestinationCidrBlock=destination_cidr,
            GatewayId=gateway_id,
        )
        logger.info(
            "route_created",
            route_table_id=route_table_id,
            destination=destination_cidr,
            gateway_id=gateway_id,
        )

    def delete_route(self, route_table_id: str, destination_cidr: str) -> None:
        self._call(
            "delete_route",
            route_table_id,
            RouteTableId=route_table_id,
            DestinationCidrBlock=destination_cidr,
        )
        logger.info("route_deleted", route_table_id=route_table_id, destination=destination_cidr)

    # Security groups

    def create_security_group(
        self, group_name: str, description: str, vpc_id: str, tags: dict[str, str]
    ) -> str:
        response = self._call(
            "create_security_group",
            group_name,
            GroupName=group_name,
            Description=description,
            VpcId=vpc_id,
            TagSpecifications=tag_specifications("security-group", tags),
        )
        group_id = cast(str, response["GroupId"])
        logger.info("security_group_created", group_id=group_id, group_name=group_name)
        return group_id

    def authorize_security_group_ingress(
        self, group_id: str, permissions: list[dict[str, Any]]
    ) -> None:
        self._call(
            "authorize_security_group_ingress",
            group_id,
            GroupId=group_id,
            IpPermissions=permissions,
        )
        logger.info("security_group_ingress_authorized", group_id=group_id, rules=len(permissions))

    def describe_security_group(self, group_id: str) -> dict[str, Any]:
        response = self._call("describe_security_groups", group_id, GroupIds=[group_id])
        return self._single(response, "SecurityGroups", group_id, "InvalidGroup.NotFound")

    def delete_security_group(self, group_id: str) -> None:
        self._call("delete_security_group", group_id, GroupId=group_id)
        logger.info("security_group_deleted", group_id=group_id)

    # Instances

    def run_instances(
        self,
        image_id: str,
        instance_type: str,
        subnet_id: str,
        security_group_ids: list[str],
        tags: dict[str, str],
        key_name: str | None = None,
        root_volume_gb: int | None = None,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {
            "ImageId": image_id,
            "InstanceType": instance_type,
            "MinCount": 1,
            "MaxCount": 1,
            "SubnetId": subnet_id,
            "SecurityGroupIds": security_group_ids,
            "TagSpecifications": tag_specifications("instance", tags),
        }
        if key_name:
            params["KeyName"] = key_name
        if root_volume_gb:
            params["BlockDeviceMappings"] = [
                {
                    "DeviceName": "/dev/sda1",
                    "Ebs": {"VolumeSize": root_volume_gb, "VolumeType": "gp3"},
                }
            ]
        instance = self._call("run_instances", tags.get("Name"), **params)["Instances"][0]
        logger.info(
            "instance_launched",
            instance_id=instance["InstanceId"],
            instance_type=instance_type,
        )
        return cast(dict[str, Any], instance)

    def describe_instance(self, instance_id: str) -> dict[str, Any]:
        response = self._call("describe_instances", instance_id, InstanceIds=[instance_id])
        reservations = response.get("Reservations", [])
        instances = [i for r in reservations for i in r.get("Instances", [])]
        if not instances:
            raise ProviderError(
                f"Instance not found: {instance_id}",
                kind=ProviderErrorKind.NOT_FOUND,
                resource=instance_id,
                code="InvalidInstanceID.NotFound",
            )
        return cast(dict[str, Any], instances[0])

    def terminate_instances(self, instance_ids: list[str]) -> None:
        self._call("terminate_instances", ",".join(instance_ids), InstanceIds=instance_ids)
        logger.info("instances_terminating", instance_ids=instance_ids)

    def send_ssh_public_key(
        self,
        instance_id: str,
        os_user: str,
        public_key: str,
        availability_zone: str | None = None,
    ) -> None:
        """Push a one-time public key, valid for 60 seconds, with EC2 Instance Connect.

        Raises:
            ProviderError: If the key cannot be published
        """
        params: dict[str, Any] = {
            "InstanceId": instance_id,
            "InstanceOSUser": os_user,
            "SSHPublicKey": public_key,
        }
        if availability_zone:
            params["AvailabilityZone"] = availability_zone
        try:
            self.instance_connect.send_ssh_public_key(**params)
            logger.debug("ssh_public_key_sent", instance_id=instance_id, os_user=os_user)
        except (ClientError, BotoCoreError) as e:
            raise to_provider_error(e, "send_ssh_public_key", instance_id) from e

    @staticmethod
    def _single(
        response: dict[str, Any], key: str, resource_id: str, not_found_code: str
    ) -> dict[str, Any]:
        items = response.get(key, [])
        if not items:
            raise ProviderError(
                f"{key[:-1]} not found: {resource_id}",
                kind=ProviderErrorKind.NOT_FOUND,
                resource=resource_id,
                code=not_found_code,
            )
        return cast(dict[str, Any], items[0])
