"""Tests for the resource ledger."""

import pytest

from kubestrap.core.models import NodeRole, ResourceKind, ResourceRecord, ResourceStatus
from kubestrap.provisioning.ledger import Ledger, node_from_record


def instance_record(name: str, role: str, status: ResourceStatus = ResourceStatus.READY) -> ResourceRecord:
    return ResourceRecord(
        name=name,
        kind=ResourceKind.INSTANCE,
        physical_id=f"i-{name}",
        status=status,
        attributes={"public_ip": "54.1.1.1", "private_ip": "10.0.1.5", "role": role},
    )


def test_node_from_record_requires_ready_instance():
    """Test only Ready instances with a public address become nodes."""
    assert node_from_record(instance_record("worker-1", "worker", ResourceStatus.PENDING)) is None
    assert node_from_record(ResourceRecord(name="vpc", kind=ResourceKind.VPC, status=ResourceStatus.READY)) is None

    no_ip = instance_record("worker-1", "worker")
    no_ip.attributes.pop("public_ip")
    assert node_from_record(no_ip) is None

    node = node_from_record(instance_record("worker-1", "worker"))
    assert node is not None
    assert node.role == NodeRole.WORKER
    assert node.public_address == "54.1.1.1"
    assert node.private_address == "10.0.1.5"


@pytest.mark.asyncio
async def test_put_persists_every_change(memory_store):
    """Test each put writes the whole ledger through the store."""
    ledger = Ledger("test", memory_store)
    await ledger.put(ResourceRecord(name="vpc", kind=ResourceKind.VPC, physical_id="vpc-1"))
    await ledger.put(ResourceRecord(name="vpc", kind=ResourceKind.VPC, physical_id="vpc-1", status=ResourceStatus.READY))

    assert memory_store.saves == 2
    reloaded = await Ledger.load("test", memory_store)
    assert reloaded.is_ready("vpc")
    assert len(reloaded) == 1


@pytest.mark.asyncio
async def test_snapshot_is_isolated(memory_store):
    """Test snapshots are unaffected by later writes."""
    ledger = Ledger("test", memory_store)
    await ledger.put(ResourceRecord(name="vpc", kind=ResourceKind.VPC))
    snapshot = ledger.snapshot()
    await ledger.put(ResourceRecord(name="vpc", kind=ResourceKind.VPC, status=ResourceStatus.READY))

    assert snapshot["vpc"].status == ResourceStatus.PENDING
    assert ledger.get("vpc").status == ResourceStatus.READY


@pytest.mark.asyncio
async def test_remove(memory_store):
    """Test removing a record persists the removal."""
    ledger = Ledger("test", memory_store)
    await ledger.put(ResourceRecord(name="vpc", kind=ResourceKind.VPC))
    await ledger.remove("vpc")
    await ledger.remove("never-there")
    assert (await Ledger.load("test", memory_store)).get("vpc") is None


def test_nodes_lists_control_plane_first(memory_store):
    """Test nodes() orders the control plane ahead of workers."""
    ledger = Ledger(
        "test",
        memory_store,
        {
            "worker-2": instance_record("worker-2", "worker"),
            "worker-1": instance_record("worker-1", "worker"),
            "control-plane": instance_record("control-plane", "control-plane"),
            "worker-3": instance_record("worker-3", "worker", ResourceStatus.FAILED),
        },
    )
    assert [n.name for n in ledger.nodes()] == ["control-plane", "worker-1", "worker-2"]
    assert ledger.node("worker-3") is None
    assert ledger.node("missing") is None
