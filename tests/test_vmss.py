import threading

import pytest

from identitysync.resource_id import InvalidResourceIDError
from identitysync.types import Node
from identitysync.vmss import (
    NodeNotFoundError,
    NodeStore,
    VMSSGroupList,
    get_vmss_group_from_possibly_unreferenced_node,
    get_vmss_groups,
    get_vmss_name,
    is_vmss,
    make_vmss_id,
    vmss_from_node_ref,
)
from identitysync.resource_id import parse_resource_id

VMSS_PREFIX = (
    "azure:///subscriptions/fakeSub/resourceGroups/fakeGroup/providers/"
    "Microsoft.Compute/virtualMachineScaleSets/"
)
VM_PREFIX = (
    "azure:///subscriptions/testSub/resourceGroups/fakeGroup/providers/"
    "Microsoft.Compute/virtualMachines/"
)


def vmss_node(name, vmss, index):
    return Node(name=name, provider_id=f"{VMSS_PREFIX}{vmss}/virtualMachines/{index}")


def vm_node(name):
    return Node(name=name, provider_id=VM_PREFIX + name)


@pytest.fixture
def store():
    return NodeStore(
        [
            vmss_node("test-node1", "testvmss1", 0),
            vmss_node("test-node2", "testvmss1", 1),
            vmss_node("test-node3", "testvmss2", 0),
            vm_node("plain-node"),
        ]
    )


def test_store_get_add_delete():
    nodes = NodeStore()
    node = vm_node("n1")
    nodes.add(node)
    assert nodes.get("n1") == node
    nodes.delete("n1")
    with pytest.raises(NodeNotFoundError) as info:
        nodes.get("n1")
    assert "not found" in str(info.value)


def test_store_start_marks_synced():
    nodes = NodeStore()
    assert nodes.synced is False
    exit_event = threading.Event()
    nodes.start(exit_event)
    assert nodes.synced is True
    assert nodes.exit_event is exit_event


def test_is_vmss_for_scale_set_instance():
    assert is_vmss(vmss_node("n", "testvmss1", 0)) == "fakeSub/fakeGroup/testvmss1"


def test_is_vmss_for_vm_and_empty_provider():
    assert is_vmss(vm_node("n")) is None
    assert is_vmss(Node(name="n")) is None


def test_is_vmss_invalid_provider_raises():
    with pytest.raises(InvalidResourceIDError):
        is_vmss(Node(name="n", provider_id="garbage"))


def test_vmss_id_and_name_round_trip():
    resource = parse_resource_id(VMSS_PREFIX + "testvmss2/virtualMachines/3")
    vmss_id = make_vmss_id(resource)
    assert vmss_id.split("/") == ["fakeSub", "fakeGroup", "testvmss2"]
    assert get_vmss_name(vmss_id) == "testvmss2"


def test_vmss_from_node_ref_missing_node(store):
    assert vmss_from_node_ref(store, "absent") is None
    assert vmss_from_node_ref(store, "test-node3") == "fakeSub/fakeGroup/testvmss2"


def test_get_vmss_groups(store):
    groups = get_vmss_groups(store, ["test-node1", "test-node2", "test-node3", "plain-node", "absent"])
    assert set(groups.groups) == {"fakeSub/fakeGroup/testvmss1", "fakeSub/fakeGroup/testvmss2"}
    group = groups.get_by_node("test-node1")
    assert group is groups.get_by_node("test-node2")
    assert group.has_node("test-node2")
    assert not group.has_node("test-node3")
    assert groups.get_by_node("plain-node") is None
    assert groups.get_by_node("absent") is None


def test_group_list_add_node():
    groups = VMSSGroupList()
    groups.add_node("a/b/c", "n1")
    groups.add_node("a/b/c", "n2")
    assert groups.get("a/b/c").nodes == {"n1", "n2"}
    assert groups.get("missing") is None


def test_unreferenced_node_is_cached(store):
    groups = get_vmss_groups(store, ["test-node1"])
    assert groups.get_by_node("test-node2") is None
    group = get_vmss_group_from_possibly_unreferenced_node(store, groups, "test-node2")
    assert group is groups.get_by_node("test-node1")
    assert group.has_node("test-node2")
    assert groups.get_by_node("test-node2") is group


def test_unreferenced_non_vmss_node(store):
    groups = VMSSGroupList()
    assert get_vmss_group_from_possibly_unreferenced_node(store, groups, "plain-node") is None
    assert get_vmss_group_from_possibly_unreferenced_node(store, groups, "absent") is None
    assert groups.groups == {}