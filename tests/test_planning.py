import pytest

from identitysync.planning import (
    assigned_id_name,
    assigned_ids_to_create,
    assigned_ids_to_delete,
    assigned_ids_to_update,
    convert_id_list_to_map,
    desired_assigned_identities,
    generate_identity_assignment_diff,
    get_id_key,
    is_user_assigned_msi,
    make_assigned_id,
    match_assigned_id,
    msi_exists_on_node,
    unique_ids,
)
from identitysync.types import (
    BEHAVIOR_KEY,
    BEHAVIOR_NAMESPACED,
    CRD_LABEL_KEY,
    AssignedIDStatus,
    AzureIdentity,
    AzureIdentityBinding,
    IdentityType,
    Pod,
)

TEST_RESOURCE_ID = (
    "/subscriptions/00000000-0000-0000-0000-000000000000/resourcegroups/rg/providers/"
    "Microsoft.ManagedIdentity/userAssignedIdentities/identity1"
)


def _identity(name="test-id", namespace="default", rv="", rid=TEST_RESOURCE_ID, **kw):
    return AzureIdentity(name=name, namespace=namespace, resource_version=rv, resource_id=rid, **kw)


def _binding(name="testbinding", namespace="default", identity="test-id", selector="sel", rv=""):
    return AzureIdentityBinding(
        name=name, namespace=namespace, resource_version=rv, azure_identity=identity, selector=selector
    )


def _pod(name="test-pod", namespace="default", node="test-node", selector="sel"):
    labels = {CRD_LABEL_KEY: selector} if selector else {}
    return Pod(name=name, namespace=namespace, node_name=node, labels=labels)


@pytest.fixture
def id_map():
    identities = [
        AzureIdentity(name="testazid1", namespace="default", resource_id=TEST_RESOURCE_ID),
        AzureIdentity(name="testazid2", namespace="ns00", resource_id=TEST_RESOURCE_ID),
        AzureIdentity(name="testazid3", namespace="default", resource_id="testResourceID"),
        AzureIdentity(
            name="testazid5",
            namespace="default",
            type=IdentityType.SERVICE_PRINCIPAL,
            tenant_id="tenantid",
            client_id="clientid",
        ),
    ]
    return convert_id_list_to_map(identities)


@pytest.mark.parametrize(
    "name,namespace,should_exist",
    [
        ("testazid1", "default", True),
        ("testazid2", "ns00", True),
        ("testazid3", "default", False),
        ("testazid4", "default", False),
        ("testazid1", "ns00", False),
        ("testazid5", "default", True),
    ],
)
def test_convert_id_list_to_map(id_map, name, namespace, should_exist):
    key = get_id_key(namespace, name)
    assert (key in id_map) is should_exist
    if should_exist:
        assert id_map[key].name == name
        assert id_map[key].namespace == namespace


def test_keys_and_names():
    assert get_id_key("ns", "id") == "ns/id"
    assert assigned_id_name("test-pod", "default", "test-id") == "test-pod-default-test-id"


def test_is_user_assigned_msi():
    assert is_user_assigned_msi(_identity()) is True
    assert is_user_assigned_msi(_identity(type=IdentityType.SERVICE_PRINCIPAL)) is False


def test_make_assigned_id_default_namespace():
    identity = _identity(namespace="other")
    assigned = make_assigned_id(identity, _binding(), "p", "pns", "n1", False)
    assert assigned.name == "p-pns-test-id"
    assert assigned.namespace == "default"
    assert assigned.labels == {"nodename": "n1"}
    assert assigned.available_replicas == 1
    assert assigned.status is None
    assert assigned.identity == identity
    assert assigned.identity is not identity


def test_make_assigned_id_namespaced():
    identity = _identity(namespace="other")
    assert make_assigned_id(identity, _binding(), "p", "pns", "n1", True).namespace == "other"
    annotated = _identity(namespace="x", annotations={BEHAVIOR_KEY: BEHAVIOR_NAMESPACED})
    assert make_assigned_id(annotated, _binding(), "p", "pns", "n1", False).namespace == "x"


def test_desired_assigned_identities_basic():
    ids = convert_id_list_to_map([_identity()])
    pods = [
        _pod(),
        _pod(name="no-node", node=""),
        _pod(name="no-label", selector=""),
        _pod(name="no-binding", node="other-node", selector="none"),
    ]
    desired, refs = desired_assigned_identities(pods, [_binding()], ids, False)
    assert list(desired) == ["test-pod-default-test-id"]
    assigned = desired["test-pod-default-test-id"]
    assert assigned.pod == "test-pod"
    assert assigned.node_name == "test-node"
    assert assigned.binding.name == "testbinding"
    assert refs == {"test-node"}


def test_desired_skips_missing_identity():
    desired, refs = desired_assigned_identities([_pod()], [_binding(identity="gone")], {}, False)
    assert desired == {}
    assert refs == {"test-node"}


def test_desired_namespaced_enforced():
    ids = convert_id_list_to_map([_identity(namespace="default"), _identity(namespace="default2")])
    bindings = [_binding(namespace="default"), _binding(namespace="default2")]
    pods = [_pod(namespace="default"), _pod(name="p2", namespace="default2")]
    desired, _ = desired_assigned_identities(pods, bindings, ids, True)
    assert sorted(desired) == ["p2-default2-test-id", "test-pod-default-test-id"]
    assert desired["p2-default2-test-id"].namespace == "default2"

    desired_open, _ = desired_assigned_identities(pods, bindings, ids, False)
    # without enforcement each pod matches both bindings; names collide per pod
    assert sorted(desired_open) == ["p2-default2-test-id", "test-pod-default-test-id"]


def test_match_assigned_id():
    a = make_assigned_id(_identity(rv="1"), _binding(), "p", "ns", "n", False)
    b = make_assigned_id(_identity(rv="1"), _binding(), "p", "ns", "n", False)
    c = make_assigned_id(_identity(rv="2"), _binding(), "p", "ns", "n", False)
    d = make_assigned_id(_identity(rv="1"), _binding(), "p", "ns", "other", False)
    assert match_assigned_id(a, b) is True
    assert match_assigned_id(a, c) is False
    assert match_assigned_id(a, d) is False


def test_to_create():
    new_id = make_assigned_id(_identity(), _binding(), "p", "ns", "n", False)
    new = {new_id.name: new_id}
    assert assigned_ids_to_create({}, new) == new

    old_assigned = make_assigned_id(_identity(), _binding(), "p", "ns", "n", False)
    old_assigned.status = AssignedIDStatus.ASSIGNED
    assert assigned_ids_to_create({old_assigned.name: old_assigned}, new) == {}

    old_created = make_assigned_id(_identity(), _binding(), "p", "ns", "n", False)
    old_created.status = AssignedIDStatus.CREATED
    result = assigned_ids_to_create({old_created.name: old_created}, new)
    assert result[new_id.name].status == AssignedIDStatus.CREATED

    changed = make_assigned_id(_identity(rv="9"), _binding(), "p", "ns", "n", False)
    result = assigned_ids_to_create({changed.name: changed}, new)
    assert result[new_id.name] is new_id


def test_to_delete():
    a = make_assigned_id(_identity(), _binding(), "p", "ns", "n", False)
    b = make_assigned_id(_identity(), _binding(), "q", "ns", "n", False)
    assert assigned_ids_to_delete({}, {a.name: a}) == {}
    assert assigned_ids_to_delete({a.name: a}, {}) == {a.name: a}
    assert assigned_ids_to_delete({a.name: a, b.name: b}, {a.name: a}) == {b.name: b}


def test_to_update_moves_common_names():
    old = make_assigned_id(_identity(rv="1"), _binding(), "p", "ns", "n", False)
    old.namespace = "kept"
    old.labels = {"nodename": "n", "extra": "x"}
    new = make_assigned_id(_identity(rv="2"), _binding(), "p", "ns", "n", False)
    other = make_assigned_id(_identity(), _binding(), "q", "ns", "n", False)
    add = {new.name: new, other.name: other}
    delete = {old.name: old}
    before, after = assigned_ids_to_update(add, delete)
    assert before == {old.name: old}
    assert after[new.name].identity.resource_version == "2"
    assert after[new.name].namespace == "kept"
    assert after[new.name].labels == {"nodename": "n", "extra": "x"}
    assert add == {other.name: other}
    assert delete == {}


def test_to_update_empty():
    a = make_assigned_id(_identity(), _binding(), "p", "ns", "n", False)
    assert assigned_ids_to_update({a.name: a}, {}) == ({}, {})


def test_msi_exists_on_node():
    identity = _identity()
    assert msi_exists_on_node(identity, [TEST_RESOURCE_ID.upper()]) is True
    assert msi_exists_on_node(identity, ["/other"]) is False
    assert msi_exists_on_node(identity, []) is False


def test_unique_ids():
    assert unique_ids(["a", "b", "a", "c", "b"]) == ["a", "b", "c"]
    assert unique_ids([]) == []


@pytest.mark.parametrize(
    "current,desired,expected",
    [
        ({"node-0": {"id-0": True}}, {"node-0": {"id-0": True}}, {}),
        (
            {"node-1": {"id-1": True}},
            {"node-0": {"id-0": True}, "node-1": {"id-0": True, "id-1": True}},
            {"node-0": ["id-0"], "node-1": ["id-0"]},
        ),
        (None, {"node-0": {"id-0": True}}, {"node-0": ["id-0"]}),
        ({"node-0": {"id-0": True}}, None, {}),
    ],
)
def test_generate_identity_assignment_diff(current, desired, expected):
    assert generate_identity_assignment_diff(current, desired) == expected