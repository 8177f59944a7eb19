"""Tests for the resource graph and the default cluster blueprint."""

import pytest

from kubestrap.core.models import ResourceKind, ResourceSpec
from kubestrap.provisioning.blueprint import CLUSTER_TAG, ROLE_TAG, build_cluster_graph
from kubestrap.provisioning.graph import ResourceGraph


def spec(name: str, *deps: str, **refs: str) -> ResourceSpec:
    return ResourceSpec(name=name, kind=ResourceKind.VPC, refs=refs, depends_on=frozenset(deps))


class TestResourceGraph:
    """Tests for ResourceGraph."""

    def test_duplicate_name_rejected(self):
        """Test a logical name can only be submitted once."""
        graph = ResourceGraph([spec("a")])
        with pytest.raises(ValueError, match="already submitted"):
            graph.add(spec("a"))

    def test_dangling_dependency_rejected(self):
        """Test validation catches references to unknown specs."""
        graph = ResourceGraph([spec("a", vpc="missing")])
        with pytest.raises(ValueError, match="unknown missing"):
            graph.validate()

    def test_cycle_rejected(self):
        """Test validation catches cycles."""
        graph = ResourceGraph([spec("a", "b"), spec("b", "a")])
        with pytest.raises(ValueError, match="cycle"):
            graph.topological_order()

    def test_topological_order_puts_dependencies_first(self):
        """Test every dependency precedes its dependents."""
        graph = ResourceGraph([spec("c", "b"), spec("b", vpc="a"), spec("a")])
        order = graph.topological_order()
        assert order.index("a") < order.index("b") < order.index("c")

    def test_dependents_are_transitive(self):
        """Test dependents include indirect dependents only."""
        graph = ResourceGraph([spec("a"), spec("b", "a"), spec("c", "b"), spec("d")])
        assert graph.dependents("a") == {"b", "c"}
        assert graph.dependents("d") == set()

    def test_container_protocol(self):
        """Test membership, length and iteration."""
        graph = ResourceGraph([spec("a"), spec("b")])
        assert "a" in graph
        assert "z" not in graph
        assert len(graph) == 2
        assert [s.name for s in graph] == graph.names == ["a", "b"]


class TestClusterBlueprint:
    """Tests for build_cluster_graph."""

    def test_graph_shape(self, sample_config):
        """Test the default graph holds the network and one node per role."""
        graph = build_cluster_graph(sample_config)
        assert set(graph.names) == {
            "vpc",
            "subnet",
            "internet-gateway",
            "route-table",
            "security-group",
            "control-plane",
            "worker-1",
        }

    def test_worker_count_drives_instances(self, sample_config):
        """Test one instance spec per configured worker."""
        config = sample_config.model_copy(
            update={"nodes": sample_config.nodes.model_copy(update={"worker_count": 3})}
        )
        graph = build_cluster_graph(config)
        assert {"worker-1", "worker-2", "worker-3"} <= set(graph.names)

    def test_instances_wait_for_routing(self, sample_config):
        """Test instances depend on subnet, security group and the default route."""
        graph = build_cluster_graph(sample_config)
        worker = graph.get("worker-1")
        assert worker.refs == {"subnet": "subnet", "security_group": "security-group"}
        assert worker.dependencies == {"subnet", "security-group", "route-table"}

    def test_instances_are_tagged(self, sample_config):
        """Test instance tags carry cluster, role and name."""
        graph = build_cluster_graph(sample_config)
        tags = graph.get("control-plane").attributes["tags"]
        assert tags == {"Name": "test-control-plane", CLUSTER_TAG: "test", ROLE_TAG: "control-plane"}
        assert graph.get("worker-1").attributes["role"] == "worker"

    def test_security_group_rules(self, sample_config):
        """Test ingress allows SSH and API from the admin CIDR and everything inside the VPC."""
        ingress = build_cluster_graph(sample_config).get("security-group").attributes["ingress"]
        ports = {(rule["protocol"], rule.get("from_port"), rule["cidr"]) for rule in ingress}
        assert ports == {
            ("tcp", 22, "0.0.0.0/0"),
            ("tcp", 6443, "0.0.0.0/0"),
            ("-1", None, "10.0.0.0/16"),
        }
