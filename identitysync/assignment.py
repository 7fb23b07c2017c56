"""Per-node bookkeeping and the application of identity changes to nodes."""

from __future__ import annotations

import dataclasses
import logging
import threading
from collections import Counter
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any

from identitysync.planning import is_user_assigned_msi, msi_exists_on_node, unique_ids
from identitysync.resource_id import InvalidResourceIDError
from identitysync.types import AssignedIDStatus, AzureAssignedIdentity, IdentityType
from identitysync.vmss import (
    NodeNotFoundError,
    NodeStore,
    VMSSGroupList,
    get_vmss_group_from_possibly_unreferenced_node,
    get_vmss_groups,
    get_vmss_name,
    is_vmss,
)

logger = logging.getLogger(__name__)

EVENT_NORMAL = "Normal"
EVENT_WARNING = "Warning"


@dataclass
class NodeTracking:
    """What has to change on one node or scale set in a sync cycle."""

    add_msi_ids: list[str] = field(default_factory=list)
    remove_msi_ids: list[str] = field(default_factory=list)
    to_create: list[AzureAssignedIdentity] = field(default_factory=list)
    to_delete: list[AzureAssignedIdentity] = field(default_factory=list)
    to_update: list[AzureAssignedIdentity] = field(default_factory=list)
    is_vmss: bool = False


def track_by_node(
    add: Mapping[str, AzureAssignedIdentity],
    delete: Mapping[str, AzureAssignedIdentity],
    update: Mapping[str, AzureAssignedIdentity],
) -> dict[str, NodeTracking]:
    """Sort the assignments to create, delete and update by node name."""
    node_map: dict[str, NodeTracking] = {}
    for assigned in add.values():
        node_map.setdefault(assigned.node_name, NodeTracking()).to_create.append(assigned)
    for assigned in delete.values():
        node_map.setdefault(assigned.node_name, NodeTracking()).to_delete.append(assigned)
    for assigned in update.values():
        node_map.setdefault(assigned.node_name, NodeTracking()).to_update.append(assigned)
    return node_map


def append_to_add_list(node_map: dict[str, NodeTracking], resource_id: str, node_name: str) -> None:
    """Record that an identity is to be assigned to a node."""
    node_map.setdefault(node_name, NodeTracking()).add_msi_ids.append(resource_id)


def append_to_remove_list(node_map: dict[str, NodeTracking], resource_id: str, node_name: str) -> None:
    """Record that an identity is to be removed from a node."""
    node_map.setdefault(node_name, NodeTracking()).remove_msi_ids.append(resource_id)


def is_in_use(
    assigned_id: AzureAssignedIdentity,
    assigned_ids: Mapping[str, AzureAssignedIdentity],
    nodes: NodeStore,
    vmss_groups: VMSSGroupList,
) -> bool:
    """Return True if another pod still needs the same user-assigned identity on the node.

    An identity on a scale set serves every instance of it, so another pod on
    any node of the same scale set also counts.
    """
    check = assigned_id.identity
    for other in assigned_ids.values():
        if check.type != IdentityType.USER_ASSIGNED_MSI:
            continue
        if assigned_id.pod == other.pod:
            continue
        if check.client_id != other.identity.client_id:
            continue
        if assigned_id.node_name == other.node_name:
            return True
        group = get_vmss_group_from_possibly_unreferenced_node(nodes, vmss_groups, assigned_id.node_name)
        if group is not None and group.has_node(other.node_name):
            return True
    return False


def consolidate_vmss_nodes(
    node_map: dict[str, NodeTracking], nodes: NodeStore
) -> dict[str, NodeTracking]:
    """Merge the entries of scale-set instances into one entry per scale set.

    Merged entries are keyed by scale-set name. Nodes no longer known are
    taken out of ``node_map`` and returned, so that their assignments can
    be cleaned up.
    """
    vmss_map: dict[str, list[str]] = {}
    missing: dict[str, NodeTracking] = {}

    for node_name in list(node_map):
        try:
            node = nodes.get(node_name)
        except NodeNotFoundError as err:
            logger.warning(
                "failed to get node %s while updating user-assigned identities, error: %s", node_name, err
            )
            missing[node_name] = node_map.pop(node_name)
            continue
        try:
            vmss_id = is_vmss(node)
        except InvalidResourceIDError as err:
            logger.error("failed to check if node %s is VMSS, error: %s", node_name, err)
            continue
        if vmss_id is not None:
            vmss_map.setdefault(vmss_id, []).append(node_name)

    for vmss_id, vmss_nodes in vmss_map.items():
        merged = NodeTracking(is_vmss=True)
        for node_name in vmss_nodes:
            tracking = node_map.pop(node_name)
            merged.add_msi_ids.extend(tracking.add_msi_ids)
            merged.remove_msi_ids.extend(tracking.remove_msi_ids)
            merged.to_create.extend(tracking.to_create)
            merged.to_delete.extend(tracking.to_delete)
            merged.to_update.extend(tracking.to_update)
        node_map[get_vmss_name(vmss_id)] = merged
    return missing


class NodeUpdater:
    """Applies the changes tracked for one node or scale set.

    ``crd`` stores assigned identities, ``cloud`` changes the identities of
    virtual machines and scale sets, and ``recorder`` receives events.
    At most ``create_delete_batch`` store requests are in flight at once.
    """

    def __init__(
        self,
        crd: Any,
        cloud: Any,
        recorder: Any,
        nodes: NodeStore,
        create_delete_batch: int,
    ) -> None:
        if create_delete_batch < 1:
            raise ValueError(f"create_delete_batch must be at least 1, got {create_delete_batch}")
        self.crd = crd
        self.cloud = cloud
        self.recorder = recorder
        self.nodes = nodes
        self.create_delete_batch = create_delete_batch
        self.totals: Counter[str] = Counter()
        self._totals_lock = threading.Lock()

    def _count(self, key: str, amount: int = 1) -> None:
        with self._totals_lock:
            self.totals[key] += amount

    def _run_batched(
        self, work: Callable[[AzureAssignedIdentity], None], items: Iterable[AzureAssignedIdentity]
    ) -> None:
        items = list(items)
        if not items:
            return
        with ThreadPoolExecutor(max_workers=self.create_delete_batch) as pool:
            list(pool.map(work, items))

    def _create(self, assigned: AzureAssignedIdentity) -> None:
        if assigned.status is not None:
            return
        pending = dataclasses.replace(assigned, status=AssignedIDStatus.CREATED)
        try:
            self.crd.create_assigned_identity(pending)
        except Exception as err:
            message = (
                f"failed to create AzureAssignedIdentity {pending.name}/{pending.namespace} "
                f"for pod {pending.pod_namespace}/{pending.pod}, error: {err}"
            )
            self.recorder.event(pending.binding, EVENT_WARNING, "binding apply error", message)
            logger.error(message)

    def _update(self, assigned: AzureAssignedIdentity) -> None:
        if assigned.status is not None:
            return
        pending = dataclasses.replace(assigned, status=AssignedIDStatus.CREATED)
        try:
            self.crd.update_assigned_identity(pending)
        except Exception as err:
            message = (
                f"failed to update AzureAssignedIdentity {pending.namespace}/{pending.name} "
                f"for pod {pending.pod}/{pending.pod_namespace}, error: {err}"
            )
            self.recorder.event(pending.binding, EVENT_WARNING, "binding apply error", message)
            logger.error(message)

    def _mark_assigned(self, assigned: AzureAssignedIdentity) -> None:
        target = dataclasses.replace(assigned)
        try:
            self.crd.update_assigned_identity_status(target, AssignedIDStatus.ASSIGNED)
        except Exception as err:
            message = (
                f"failed to update AzureAssignedIdentity {target.namespace}/{target.name} status to "
                f"{AssignedIDStatus.ASSIGNED.value} for pod {target.pod}, error: {err}"
            )
            self.recorder.event(target, EVENT_WARNING, "status update error", message)
            logger.error(message)
            return
        binding = target.binding
        binding_name = binding.name if binding is not None else ""
        self.recorder.event(
            binding,
            EVENT_NORMAL,
            "binding applied",
            f"Binding {binding_name} applied on node {target.node_name} for pod {target.name}",
        )

    def _unassign_and_remove(self, assigned: AzureAssignedIdentity) -> None:
        target = dataclasses.replace(assigned)
        try:
            self.crd.update_assigned_identity_status(target, AssignedIDStatus.UNASSIGNED)
        except Exception as err:
            message = (
                f"failed to update AzureAssignedIdentity {target.namespace}/{target.name} status to "
                f"{AssignedIDStatus.UNASSIGNED.value} for pod {target.pod_namespace}/{target.pod}, error: {err}"
            )
            self.recorder.event(target, EVENT_WARNING, "status update error", message)
            logger.error(message)
            return
        try:
            self.crd.remove_assigned_identity(target)
        except Exception as err:
            logger.error(
                "failed to remove AzureAssignedIdentity %s/%s, error: %s", target.namespace, target.name, err
            )
            return
        logger.info("deleted assigned identity %s/%s", target.namespace, target.name)

    def update_user_msi(
        self,
        new_assigned_ids: Mapping[str, AzureAssignedIdentity],
        node_name: str,
        tracking: NodeTracking,
        node_refs: Iterable[str],
    ) -> None:
        """Store new assignments, change the node's identities and record the outcome."""
        logger.info(
            "processing node %s, add [%d], del [%d], update [%d]",
            node_name,
            len(tracking.to_create),
            len(tracking.to_delete),
            len(tracking.to_update),
        )
        node_refs = list(node_refs)

        self._run_batched(self._create, tracking.to_create)
        self._run_batched(self._update, tracking.to_update)

        add_ids = unique_ids(tracking.add_msi_ids)
        remove_ids = unique_ids(tracking.remove_msi_ids)
        create_or_update = [*tracking.to_create, *tracking.to_update]

        try:
            self.cloud.update_user_msi(add_ids, remove_ids, node_name, tracking.is_vmss)
        except Exception as err:
            logger.error(
                "failed to update user-assigned identities on node %s (add [%d], del [%d], update[%d]), error: %s",
                node_name,
                len(tracking.to_create),
                len(tracking.to_delete),
                len(tracking.to_update),
                err,
            )
            self._recover_after_cloud_error(new_assigned_ids, node_name, tracking, node_refs, create_or_update, err)
            return

        self._run_batched(self._mark_assigned, create_or_update)
        self._run_batched(self._unassign_and_remove, tracking.to_delete)

        self._count("created", len(tracking.to_create))
        self._count("updated", len(tracking.to_update))
        self._count("deleted", len(tracking.to_delete))

    def _recover_after_cloud_error(
        self,
        new_assigned_ids: Mapping[str, AzureAssignedIdentity],
        node_name: str,
        tracking: NodeTracking,
        node_refs: list[str],
        create_or_update: list[AzureAssignedIdentity],
        cloud_error: Exception,
    ) -> None:
        """Compare with what the node really holds and record what did succeed."""
        try:
            msi_list = list(self.cloud.get_user_msis(node_name, tracking.is_vmss) or [])
        except Exception as err:
            logger.error("failed to get a list of user-assigned identites from node %s, error: %s", node_name, err)
            return

        for assigned in create_or_update:
            identity = assigned.identity
            binding = assigned.binding
            binding_namespace = binding.namespace if binding is not None else ""
            binding_name = binding.name if binding is not None else ""
            if is_user_assigned_msi(identity) and not msi_exists_on_node(identity, msi_list):
                message = (
                    f"failed to apply binding {binding_namespace}/{binding_name} node {assigned.node_name} "
                    f"for pod {assigned.pod_namespace}/{assigned.pod}, error: {cloud_error}"
                )
                self.recorder.event(binding, EVENT_WARNING, "binding apply error", message)
                logger.error(message)
                continue
            self.recorder.event(
                binding,
                EVENT_NORMAL,
                "binding applied",
                f"binding {binding_name} applied on node {assigned.node_name} for pod {assigned.name}",
            )
            logger.info(
                "identity %s/%s has successfully been assigned to node %s",
                identity.namespace,
                identity.name,
                assigned.node_name,
            )
            target = dataclasses.replace(assigned)
            try:
                self.crd.update_assigned_identity_status(target, AssignedIDStatus.ASSIGNED)
            except Exception as err:
                message = (
                    f"failed to update AzureAssignedIdentity {target.namespace}/{target.name} status to "
                    f"{AssignedIDStatus.ASSIGNED.value} for pod {target.pod_namespace}/{target.pod}, error: {err}"
                )
                self.recorder.event(target, EVENT_WARNING, "status update error", message)
                logger.error(message)
            is_create = any(assigned == candidate for candidate in tracking.to_create)
            self._count("created" if is_create else "updated")

        for assigned in tracking.to_delete:
            identity = assigned.identity
            try:
                groups = get_vmss_groups(self.nodes, node_refs)
                in_use = is_in_use(assigned, new_assigned_ids, self.nodes, groups)
            except InvalidResourceIDError as err:
                logger.error("failed to check if identity is in use, error: %s", err)
                continue
            still_on_node = msi_exists_on_node(identity, msi_list)
            if is_user_assigned_msi(identity) and not in_use and still_on_node:
                binding_name = assigned.binding.name if assigned.binding is not None else ""
                logger.error(
                    "failed to remove AzureIdentityBinding %s from node %s for pod %s/%s, error: %s",
                    binding_name,
                    assigned.node_name,
                    assigned.pod_namespace,
                    assigned.pod,
                    cloud_error,
                )
                continue
            logger.info(
                "updating msis on node %s failed, but identity %s/%s has successfully been removed from node",
                assigned.node_name,
                identity.namespace,
                identity.name,
            )
            try:
                self.crd.remove_assigned_identity(dataclasses.replace(assigned))
            except Exception as err:
                logger.error("failed to remove AzureAssignedIdentity %s, error: %s", assigned.name, err)
                continue
            logger.info("deleted assigned identity %s/%s", assigned.namespace, assigned.name)
            self._count("deleted")

    def clean_up_node(self, node_name: str, tracking: NodeTracking) -> None:
        """Delete every tracked assignment of a node that no longer exists."""
        logger.info("deleting all assigned identites for %s as node not found", node_name)
        for assigned in tracking.to_delete:
            binding = assigned.binding
            binding_namespace = binding.namespace if binding is not None else ""
            binding_name = binding.name if binding is not None else ""
            try:
                self.crd.remove_assigned_identity(dataclasses.replace(assigned))
            except Exception as err:
                message = (
                    f"failed to remove AzureIdentityBinding {binding_namespace}/{binding_name} from node "
                    f"{assigned.node_name} for pod {assigned.pod_namespace}/{assigned.pod}, error: {err}"
                )
                self.recorder.event(binding, EVENT_WARNING, "binding remove error", message)
                logger.error(message)
                continue
            self.recorder.event(
                binding,
                EVENT_NORMAL,
                "binding removed",
                f"Binding {binding_name} removed from node {assigned.node_name} for pod {assigned.pod}",
            )