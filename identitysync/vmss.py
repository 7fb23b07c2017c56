"""Node lookup and grouping of nodes by virtual machine scale set."""

from __future__ import annotations

import threading
from collections.abc import Iterable
from dataclasses import dataclass, field

from identitysync.resource_id import VMSS_RESOURCE_TYPE, Resource, parse_resource_id
from identitysync.types import Node


class NodeNotFoundError(LookupError):
    """Raised when a node is not known to the node store."""

    def __init__(self, name: str) -> None:
        super().__init__(f'node "{name}" not found')
        self.name = name


class NodeStore:
    """A thread-safe, in-memory cache of cluster nodes."""

    def __init__(self, nodes: Iterable[Node] = ()) -> None:
        self._lock = threading.Lock()
        self._nodes: dict[str, Node] = {node.name: node for node in nodes}
        self._synced = threading.Event()
        self.exit_event: threading.Event | None = None

    def get(self, name: str) -> Node:
        """Return the named node or raise NodeNotFoundError."""
        with self._lock:
            try:
                return self._nodes[name]
            except KeyError:
                raise NodeNotFoundError(name) from None

    def add(self, node: Node) -> None:
        """Insert or replace a node."""
        with self._lock:
            self._nodes[node.name] = node

    def delete(self, name: str) -> None:
        """Remove a node if present."""
        with self._lock:
            self._nodes.pop(name, None)

    def start(self, exit_event: threading.Event) -> None:
        """Mark the cache as synced; it stays usable until exit_event is set."""
        self.exit_event = exit_event
        self._synced.set()

    @property
    def synced(self) -> bool:
        """Whether start has been called."""
        return self._synced.is_set()


@dataclass
class VMSSGroup:
    """The set of node references that belong to one scale set."""

    nodes: set[str] = field(default_factory=set)

    def has_node(self, ref: str) -> bool:
        return ref in self.nodes


@dataclass
class VMSSGroupList:
    """Scale-set groups, indexed by scale-set id and by node."""

    groups: dict[str, VMSSGroup] = field(default_factory=dict)
    node_index: dict[str, VMSSGroup] = field(default_factory=dict)

    def add_node(self, vmss: str, node: str) -> None:
        group = self.groups.setdefault(vmss, VMSSGroup())
        group.nodes.add(node)
        self.node_index[node] = group

    def get_by_node(self, ref: str) -> VMSSGroup | None:
        """Return the group the node belongs to, if any."""
        return self.node_index.get(ref)

    def get(self, vmss_id: str) -> VMSSGroup | None:
        """Return the group for a scale-set id, if any."""
        return self.groups.get(vmss_id)


def make_vmss_id(resource: Resource) -> str:
    """Build the scale-set id: subscription/resource-group/name."""
    parts = (resource.subscription_id, resource.resource_group, resource.resource_name)
    return "/".join(part for part in parts if part)


def get_vmss_name(vmss_id: str) -> str:
    """Return the scale-set name, the last element of its id."""
    return vmss_id.rsplit("/", 1)[-1]


def is_vmss(node: Node) -> str | None:
    """Return the scale-set id if the node is a scale-set instance, else None.

    Raises InvalidResourceIDError for a non-empty provider id that cannot be parsed.
    """
    if not node.provider_id:
        return None
    resource = parse_resource_id(node.provider_id)
    if resource.resource_type != VMSS_RESOURCE_TYPE:
        return None
    return make_vmss_id(resource)


def vmss_from_node_ref(nodes: NodeStore, ref: str) -> str | None:
    """Return the scale-set id of a node by name; None if unknown or not in a scale set."""
    try:
        node = nodes.get(ref)
    except NodeNotFoundError:
        return None
    return is_vmss(node)


def get_vmss_groups(nodes: NodeStore, refs: Iterable[str]) -> VMSSGroupList:
    """Group node references by scale set; nodes outside a scale set are left out."""
    groups = VMSSGroupList()
    for ref in refs:
        vmss_id = vmss_from_node_ref(nodes, ref)
        if vmss_id is not None:
            groups.add_node(vmss_id, ref)
    return groups


def get_vmss_group_from_possibly_unreferenced_node(
    nodes: NodeStore, groups: VMSSGroupList, ref: str
) -> VMSSGroup | None:
    """Find a node's scale-set group, looking the node up and caching it if needed."""
    group = groups.get_by_node(ref)
    if group is not None:
        return group
    vmss_id = vmss_from_node_ref(nodes, ref)
    if vmss_id is None:
        return None
    groups.add_node(vmss_id, ref)
    return groups.get(vmss_id)