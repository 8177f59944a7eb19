"""Default resource graph for a single-subnet kubeadm cluster."""

from kubestrap.core.config import KubestrapConfig
from kubestrap.core.models import NodeRole, ResourceKind, ResourceSpec
from kubestrap.provisioning.graph import ResourceGraph

CONTROL_PLANE_NAME = "control-plane"
CLUSTER_TAG = "kubestrap:cluster"
ROLE_TAG = "kubestrap:role"


def worker_name(index: int) -> str:
    return f"worker-{index}"


def build_cluster_graph(config: KubestrapConfig) -> ResourceGraph:
    """Build the resource graph for ``config``.

    One VPC with a public subnet, an attached internet gateway, a default
    route on the VPC's main route table, one security group, a control
    plane instance and ``nodes.worker_count`` workers.
    """
    cluster = config.cluster_name
    network = config.network
    nodes = config.nodes

    def tags(name: str, **extra: str) -> dict[str, str]:
        return {"Name": f"{cluster}-{name}", CLUSTER_TAG: cluster, **extra}

    graph = ResourceGraph()
    graph.add(
        ResourceSpec(
            name="vpc",
            kind=ResourceKind.VPC,
            attributes={"cidr_block": network.vpc_cidr, "enable_dns_hostnames": True, "tags": tags("vpc")},
        )
    )
    graph.add(
        ResourceSpec(
            name="subnet",
            kind=ResourceKind.SUBNET,
            refs={"vpc": "vpc"},
            attributes={
                "cidr_block": network.subnet_cidr,
                "availability_zone": network.availability_zone,
                "map_public_ip_on_launch": True,
                "tags": tags("subnet"),
            },
        )
    )
    graph.add(
        ResourceSpec(
            name="internet-gateway",
            kind=ResourceKind.INTERNET_GATEWAY,
            refs={"vpc": "vpc"},
            attributes={"tags": tags("igw")},
        )
    )
    graph.add(
        ResourceSpec(
            name="route-table",
            kind=ResourceKind.ROUTE_TABLE,
            refs={"vpc": "vpc", "gateway": "internet-gateway"},
            attributes={"destination_cidr": "0.0.0.0/0"},
        )
    )
    graph.add(
        ResourceSpec(
            name="security-group",
            kind=ResourceKind.SECURITY_GROUP,
            refs={"vpc": "vpc"},
            attributes={
                "group_name": f"{cluster}-nodes",
                "description": f"kubestrap cluster {cluster} nodes",
                "tags": tags("sg"),
                "ingress": [
                    {"protocol": "tcp", "from_port": 22, "cidr": network.admin_cidr, "description": "ssh"},
                    {"protocol": "tcp", "from_port": 6443, "cidr": network.admin_cidr, "description": "kube-apiserver"},
                    {"protocol": "-1", "cidr": network.vpc_cidr, "description": "intra-cluster"},
                ],
            },
        )
    )

    def instance(name: str, role: NodeRole) -> ResourceSpec:
        return ResourceSpec(
            name=name,
            kind=ResourceKind.INSTANCE,
            refs={"subnet": "subnet", "security_group": "security-group"},
            # Nodes need outbound internet for packages before they are useful
            depends_on=frozenset({"route-table"}),
            attributes={
                "ami_id": nodes.ami_id,
                "instance_type": nodes.instance_type,
                "key_name": nodes.key_name,
                "root_volume_gb": nodes.root_volume_gb,
                "role": role.value,
                "tags": tags(name, **{ROLE_TAG: role.value}),
            },
        )

    graph.add(instance(CONTROL_PLANE_NAME, NodeRole.CONTROL_PLANE))
    for index in range(1, nodes.worker_count + 1):
        graph.add(instance(worker_name(index), NodeRole.WORKER))

    graph.validate()
    return graph
