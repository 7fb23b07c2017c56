"""Pure planning steps of a sync cycle.

These functions work out which identity assignments should exist, and how
they differ from the assignments that exist now.
"""

from __future__ import annotations

import copy
import dataclasses
import logging
from collections.abc import Iterable, Mapping

from identitysync.resource_id import InvalidResourceIDError, validate_resource_id
from identitysync.types import (
    CRD_LABEL_KEY,
    AssignedIDStatus,
    AzureAssignedIdentity,
    AzureIdentity,
    AzureIdentityBinding,
    IdentityType,
    Pod,
    is_namespaced_identity,
)

logger = logging.getLogger(__name__)

AssignedIDMap = dict[str, AzureAssignedIdentity]


def get_id_key(namespace: str, name: str) -> str:
    """Return the lookup key "namespace/name"."""
    return f"{namespace}/{name}"


def assigned_id_name(pod_name: str, pod_namespace: str, identity_name: str) -> str:
    """Return the name of the assignment of an identity to a pod."""
    return f"{pod_name}-{pod_namespace}-{identity_name}"


def is_user_assigned_msi(identity: AzureIdentity) -> bool:
    """Return True if the identity is a user-assigned managed identity."""
    return identity.type == IdentityType.USER_ASSIGNED_MSI


def convert_id_list_to_map(identities: Iterable[AzureIdentity]) -> dict[str, AzureIdentity]:
    """Index identities by "namespace/name".

    User-assigned identities whose resource id is malformed are left out.
    """
    result: dict[str, AzureIdentity] = {}
    for identity in identities:
        if is_user_assigned_msi(identity):
            try:
                validate_resource_id(identity.resource_id)
            except InvalidResourceIDError as err:
                logger.error(
                    "ignoring azure identity %s/%s, error: %s",
                    identity.namespace,
                    identity.name,
                    err,
                )
                continue
        result[get_id_key(identity.namespace, identity.name)] = identity
    return result


def make_assigned_id(
    identity: AzureIdentity,
    binding: AzureIdentityBinding,
    pod_name: str,
    pod_namespace: str,
    node_name: str,
    namespaced: bool,
) -> AzureAssignedIdentity:
    """Build the assignment of an identity to a pod through a binding."""
    identity_copy = copy.deepcopy(identity)
    if namespaced or is_namespaced_identity(identity_copy):
        namespace = identity.namespace
    else:
        # Kept in "default" for compatibility with existing assignments.
        namespace = "default"
    return AzureAssignedIdentity(
        identity=identity_copy,
        binding=copy.deepcopy(binding),
        name=assigned_id_name(pod_name, pod_namespace, identity.name),
        namespace=namespace,
        pod=pod_name,
        pod_namespace=pod_namespace,
        node_name=node_name,
        labels={"nodename": node_name},
        status=None,
        available_replicas=1,
    )


def desired_assigned_identities(
    pods: Iterable[Pod],
    bindings: Iterable[AzureIdentityBinding],
    id_map: Mapping[str, AzureIdentity],
    namespaced: bool,
) -> tuple[AssignedIDMap, set[str]]:
    """Work out the assignments that should exist.

    Returns the assignments keyed by name, and the names of the nodes that
    hold a pod matched by at least one binding.
    """
    bindings = list(bindings)
    node_refs: set[str] = set()
    desired: AssignedIDMap = {}

    for pod in pods:
        if not pod.node_name:
            logger.info("pod %s/%s has no assigned node yet. it will be ignored", pod.namespace, pod.name)
            continue
        selector = pod.labels.get(CRD_LABEL_KEY, "")
        if not selector:
            logger.info(
                "pod %s/%s doesn't contain %s label field. it will be ignored",
                pod.namespace,
                pod.name,
                CRD_LABEL_KEY,
            )
            continue

        matched = [binding for binding in bindings if binding.selector == selector]
        if not matched:
            logger.info(
                "No AzureIdentityBinding found for pod %s/%s that matches selector: %s. it will be ignored",
                pod.namespace,
                pod.name,
                selector,
            )
            continue
        node_refs.add(pod.node_name)

        for binding in matched:
            identity = id_map.get(get_id_key(binding.namespace, binding.azure_identity))
            if identity is None:
                logger.info(
                    "%s identity not found when using %s/%s binding",
                    binding.azure_identity,
                    binding.namespace,
                    binding.name,
                )
                continue
            if namespaced or is_namespaced_identity(identity):
                if not (identity.namespace == binding.namespace == pod.namespace):
                    logger.debug(
                        "identity %s/%s matched via binding %s/%s to %s/%s but namespaced "
                        "identity is enforced, so it will be ignored",
                        identity.namespace,
                        identity.name,
                        binding.namespace,
                        binding.name,
                        pod.namespace,
                        pod.name,
                    )
                    continue
            assigned = make_assigned_id(
                identity, binding, pod.name, pod.namespace, pod.node_name, namespaced
            )
            desired[assigned.name] = assigned
    return desired, node_refs


def match_assigned_id(x: AzureAssignedIdentity, y: AzureAssignedIdentity) -> bool:
    """Return True if two assignments refer to the same binding, identity, pod and node."""
    bx, by = x.binding, y.binding
    bx_key = (bx.name, bx.resource_version) if bx is not None else None
    by_key = (by.name, by.resource_version) if by is not None else None
    return (
        bx_key == by_key
        and x.identity.name == y.identity.name
        and x.identity.resource_version == y.identity.resource_version
        and x.pod == y.pod
        and x.pod_namespace == y.pod_namespace
        and x.node_name == y.node_name
    )


def assigned_ids_to_create(old: Mapping[str, AzureAssignedIdentity], new: AssignedIDMap) -> AssignedIDMap:
    """Return the assignments to create.

    Existing assignments still in the created state are returned again so
    that their assignment to the node is retried.
    """
    if not old:
        return new
    create: AssignedIDMap = {}
    for name, new_id in new.items():
        old_id = old.get(name)
        matched = old_id is not None and match_assigned_id(old_id, new_id)
        if matched and old_id.status == AssignedIDStatus.CREATED:
            create[name] = old_id
        elif not matched:
            create[name] = new_id
    return create


def assigned_ids_to_delete(old: AssignedIDMap, new: Mapping[str, AzureAssignedIdentity]) -> AssignedIDMap:
    """Return the existing assignments that are no longer wanted."""
    if not old:
        return {}
    if not new:
        return old
    return {
        name: old_id
        for name, old_id in old.items()
        if not (name in new and match_assigned_id(old_id, new[name]))
    }


def assigned_ids_to_update(
    add: AssignedIDMap, delete: AssignedIDMap
) -> tuple[AssignedIDMap, AssignedIDMap]:
    """Find assignments present in both lists and turn them into updates.

    Such names are removed from ``add`` and ``delete`` in place. Returns the
    assignments as they are now and as they should become; the new values
    keep the metadata (name, namespace, labels) of the existing ones.
    """
    before: AssignedIDMap = {}
    after: AssignedIDMap = {}
    if not add or not delete:
        return before, after
    for name in [name for name in add if name in delete]:
        old_id = delete.pop(name)
        new_id = add.pop(name)
        before[name] = old_id
        after[name] = dataclasses.replace(
            new_id,
            name=old_id.name,
            namespace=old_id.namespace,
            labels=dict(old_id.labels),
        )
    return before, after


def msi_exists_on_node(identity: AzureIdentity, msi_list: Iterable[str]) -> bool:
    """Return True if the identity's resource id is in the list, ignoring case."""
    wanted = identity.resource_id.casefold()
    return any(msi.casefold() == wanted for msi in msi_list)


def unique_ids(ids: Iterable[str]) -> list[str]:
    """Return the ids without duplicates, in order of first appearance."""
    return list(dict.fromkeys(ids))


def generate_identity_assignment_diff(
    current_state: Mapping[str, Mapping[str, bool]] | None,
    desired_state: Mapping[str, Mapping[str, bool]] | None,
) -> dict[str, list[str]]:
    """Return, per node, the identities wanted but not yet assigned."""
    current_state = current_state or {}
    diff: dict[str, list[str]] = {}
    for node_name, resource_ids in (desired_state or {}).items():
        current = current_state.get(node_name, {})
        missing = [rid for rid in resource_ids if not current.get(rid, False)]
        if missing:
            diff[node_name] = missing
    return diff