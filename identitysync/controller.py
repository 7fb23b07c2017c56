"""The sync controller that keeps identity assignments in line with pods and bindings."""

from __future__ import annotations

import copy
import logging
import queue
import threading
import time
from collections.abc import Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any

from identitysync.assignment import (
    NodeTracking,
    NodeUpdater,
    append_to_add_list,
    append_to_remove_list,
    consolidate_vmss_nodes,
    is_in_use,
    track_by_node,
)
from identitysync.planning import (
    assigned_ids_to_create,
    assigned_ids_to_delete,
    assigned_ids_to_update,
    convert_id_list_to_map,
    desired_assigned_identities,
    generate_identity_assignment_diff,
    get_id_key,
    is_user_assigned_msi,
)
from identitysync.resource_id import InvalidResourceIDError
from identitysync.types import (
    AssignedIDStatus,
    AzureAssignedIdentity,
    AzureIdentity,
    AzureIdentityBinding,
    EventType,
    IdentityType,
    Pod,
)
from identitysync.vmss import NodeStore, VMSSGroupList, get_vmss_groups, get_vmss_name, is_vmss

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.1


class ConcurrentSyncError(RuntimeError):
    """Raised when a sync loop is started while another one is running."""


class CRDClient:
    """In-memory store of identities, bindings and assigned identities."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._identities: dict[str, AzureIdentity] = {}
        self._bindings: dict[str, AzureIdentityBinding] = {}
        self._assigned: dict[str, AzureAssignedIdentity] = {}
        self._started = threading.Event()
        self.exit_event: threading.Event | None = None
        self.remove_error: Exception | None = None

    def start(self, exit_event: threading.Event) -> None:
        """Mark the store as ready; it stays usable until exit_event is set."""
        self.exit_event = exit_event
        self._started.set()

    @property
    def started(self) -> bool:
        return self._started.is_set()

    def add_identity(self, identity: AzureIdentity) -> None:
        """Insert or replace an identity."""
        with self._lock:
            self._identities[get_id_key(identity.namespace, identity.name)] = copy.deepcopy(identity)

    def delete_identity(self, namespace: str, name: str) -> None:
        with self._lock:
            self._identities.pop(get_id_key(namespace, name), None)

    def add_binding(self, binding: AzureIdentityBinding) -> None:
        """Insert or replace a binding."""
        with self._lock:
            self._bindings[get_id_key(binding.namespace, binding.name)] = copy.deepcopy(binding)

    def delete_binding(self, namespace: str, name: str) -> None:
        with self._lock:
            self._bindings.pop(get_id_key(namespace, name), None)

    def list_ids(self) -> list[AzureIdentity]:
        with self._lock:
            return copy.deepcopy(list(self._identities.values()))

    def list_bindings(self) -> list[AzureIdentityBinding]:
        with self._lock:
            return copy.deepcopy(list(self._bindings.values()))

    def list_assigned_ids(self) -> list[AzureAssignedIdentity]:
        with self._lock:
            return copy.deepcopy(list(self._assigned.values()))

    def list_assigned_ids_in_map(self) -> dict[str, AzureAssignedIdentity]:
        with self._lock:
            return copy.deepcopy(dict(self._assigned))

    def create_assigned_identity(self, assigned: AzureAssignedIdentity) -> None:
        with self._lock:
            self._assigned[assigned.name] = copy.deepcopy(assigned)

    def update_assigned_identity(self, assigned: AzureAssignedIdentity) -> None:
        with self._lock:
            self._assigned[assigned.name] = copy.deepcopy(assigned)

    def update_assigned_identity_status(
        self, assigned: AzureAssignedIdentity, status: AssignedIDStatus
    ) -> None:
        """Set the status on the given assignment and store it."""
        assigned.status = status
        with self._lock:
            self._assigned[assigned.name] = copy.deepcopy(assigned)

    def remove_assigned_identity(self, assigned: AzureAssignedIdentity) -> None:
        """Delete an assignment; raises remove_error if one is set."""
        with self._lock:
            if self.remove_error is not None:
                raise self.remove_error
            self._assigned.pop(assigned.name, None)


class CloudClient:
    """In-memory record of the user-assigned identities of VMs and scale sets."""

    def __init__(self, cluster_identity: str = "") -> None:
        self.cluster_identity = cluster_identity
        self._lock = threading.Lock()
        self._vms: dict[str, set[str]] = {}
        self._vmss: dict[str, set[str]] = {}
        self._pending_error: Exception | None = None

    def fail_next_update(self, error: Exception) -> None:
        """Make the next update_user_msi call raise error without changing anything."""
        with self._lock:
            self._pending_error = error

    def _store(self, is_vmss_node: bool) -> dict[str, set[str]]:
        return self._vmss if is_vmss_node else self._vms

    def get_user_msis(self, name: str, is_vmss_node: bool) -> list[str]:
        """Return the identities assigned to a VM or scale set, sorted."""
        with self._lock:
            return sorted(self._store(is_vmss_node).get(name, ()))

    def update_user_msi(
        self, add_ids: Iterable[str], remove_ids: Iterable[str], name: str, is_vmss_node: bool
    ) -> None:
        """Remove and then add identities on a VM or scale set."""
        with self._lock:
            if self._pending_error is not None:
                error, self._pending_error = self._pending_error, None
                raise error
            current = self._store(is_vmss_node).setdefault(name, set())
            removed = {rid.casefold() for rid in remove_ids}
            current.difference_update({rid for rid in current if rid.casefold() in removed})
            current.update(add_ids)


class PodClient:
    """In-memory list of pods."""

    def __init__(self, pods: Iterable[Pod] = ()) -> None:
        self._lock = threading.Lock()
        self._pods: list[Pod] = list(pods)
        self._started = threading.Event()
        self.exit_event: threading.Event | None = None

    def start(self, exit_event: threading.Event) -> None:
        self.exit_event = exit_event
        self._started.set()

    @property
    def started(self) -> bool:
        return self._started.is_set()

    def add(self, pod: Pod) -> None:
        with self._lock:
            self._pods.append(pod)

    def delete(self, name: str, namespace: str) -> None:
        with self._lock:
            self._pods = [p for p in self._pods if not (p.name == name and p.namespace == namespace)]

    def get_pods(self) -> list[Pod]:
        with self._lock:
            return copy.deepcopy(self._pods)


@dataclass(frozen=True)
class RecordedEvent:
    """One event about a binding or assignment."""

    obj: Any
    type: str
    reason: str
    message: str


class EventRecorder:
    """Collects events and lets callers wait for them."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self.events: list[RecordedEvent] = []

    def event(self, obj: Any, event_type: str, reason: str, message: str) -> None:
        with self._cond:
            self.events.append(RecordedEvent(obj, event_type, reason, message))
            self._cond.notify_all()

    def wait_for_events(self, count: int, timeout: float) -> bool:
        """Wait until at least count events have been recorded in total."""
        with self._cond:
            return self._cond.wait_for(lambda: len(self.events) >= count, timeout)


class Controller:
    """Runs sync cycles that create, update and delete identity assignments."""

    def __init__(
        self,
        crd: CRDClient,
        cloud: CloudClient,
        pods: PodClient,
        nodes: NodeStore,
        recorder: EventRecorder,
        *,
        namespaced: bool = False,
        sync_retry_interval: float = 120.0,
        identity_assignment_reconcile_interval: float = 180.0,
        create_delete_batch: int = 4,
        immutable_user_msis: Iterable[str] = (),
        work_done_delay: float = 0.2,
    ) -> None:
        self.crd = crd
        self.cloud = cloud
        self.pods = pods
        self.nodes = nodes
        self.recorder = recorder
        self.namespaced = namespaced
        self.sync_retry_interval = sync_retry_interval
        self.reconcile_interval = identity_assignment_reconcile_interval
        self.work_done_delay = work_done_delay
        immutable = {item.lower() for item in immutable_user_msis}
        # The cluster's own identity must never be taken off a node.
        cluster_identity = getattr(cloud, "cluster_identity", "")
        if cluster_identity:
            immutable.add(cluster_identity)
        self.immutable_user_msis = frozenset(immutable)
        self.updater = NodeUpdater(crd, cloud, recorder, nodes, create_delete_batch)
        self.events: queue.Queue[EventType] = queue.Queue()
        self.sync_loop_started = False
        self._sync_lock = threading.Lock()
        self._total_cycles = 0
        self._work_cycles = 0

    def start(self, exit_event: threading.Event) -> threading.Thread:
        """Start the clients, then run the sync loop in a background thread."""
        starters = [
            threading.Thread(target=client.start, args=(exit_event,))
            for client in (self.pods, self.crd, self.nodes)
        ]
        for thread in starters:
            thread.start()
        for thread in starters:
            thread.join()
        sync_thread = threading.Thread(target=self.sync, args=(exit_event,), daemon=True)
        sync_thread.start()
        return sync_thread

    def sync(self, exit_event: threading.Event) -> None:
        """Run sync cycles on events and periodically until exit_event is set."""
        if not self._sync_lock.acquire(blocking=False):
            raise ConcurrentSyncError("concurrent syncs")
        try:
            self._sync_loop(exit_event)
        finally:
            self._sync_lock.release()

    def _sync_loop(self, exit_event: threading.Event) -> None:
        logger.info("sync thread started.")
        self.sync_loop_started = True
        now = time.monotonic()
        next_sync = now + self.sync_retry_interval
        next_reconcile = now + self.reconcile_interval
        while not exit_event.is_set():
            now = time.monotonic()
            wait = max(0.0, min(next_sync, next_reconcile, now + _POLL_INTERVAL) - now)
            try:
                event = self.events.get(timeout=wait)
            except queue.Empty:
                if exit_event.is_set():
                    return
                now = time.monotonic()
                if now >= next_reconcile:
                    next_reconcile = now + self.reconcile_interval
                    logger.debug("reconciling identity assignment on Azure")
                    self.reconcile_identity_assignment()
                    continue
                if now < next_sync:
                    continue
                next_sync = now + self.sync_retry_interval
                logger.debug("running periodic sync loop")
            else:
                logger.debug("received event: %s", event)
            self._run_cycle()

    def _run_cycle(self) -> None:
        self._total_cycles += 1
        begin = time.monotonic()
        try:
            work_done = self.sync_once()
        except Exception:
            logger.exception("sync cycle failed")
            return
        if work_done:
            self._work_cycles += 1
        if work_done or self._total_cycles % 1000 == 0:
            logger.info(
                "total work cycles: %d, out of which work was done in: %d, last cycle took %.3fs",
                self._total_cycles,
                self._work_cycles,
                time.monotonic() - begin,
            )
            if work_done and self.work_done_delay > 0:
                time.sleep(self.work_done_delay)

    def sync_once(self) -> bool:
        """Run one sync cycle; return True if there were changes to apply."""
        pods = self.pods.get_pods()
        bindings = self.crd.list_bindings()
        identities = self.crd.list_ids()
        id_map = convert_id_list_to_map(identities)
        current = self.crd.list_assigned_ids_in_map()

        desired, node_refs = desired_assigned_identities(pods, bindings, id_map, self.namespaced)
        to_create = dict(assigned_ids_to_create(current, desired))
        to_delete = dict(assigned_ids_to_delete(current, desired))
        before_update, after_update = assigned_ids_to_update(to_create, to_delete)
        logger.debug("del: %s, add: %s, update: %s", list(to_delete), list(to_create), list(after_update))

        node_map = track_by_node(to_create, to_delete, after_update)
        work_done = False
        if to_delete or before_update:
            work_done = True
            self._plan_removals(to_delete, before_update, after_update, desired, node_map, node_refs)
        if to_create or after_update:
            work_done = True
            for assigned in (*to_create.values(), *after_update.values()):
                self._plan_assignment(assigned, node_map)

        missing = consolidate_vmss_nodes(node_map, self.nodes)
        self._apply(desired, node_map, missing, node_refs)
        logger.info(
            "work done: %s. Found %d pods, %d ids, %d bindings",
            work_done,
            len(pods),
            len(identities),
            len(bindings),
        )
        return work_done

    def _plan_removals(
        self,
        to_delete: Mapping[str, AzureAssignedIdentity],
        before_update: Mapping[str, AzureAssignedIdentity],
        after_update: Mapping[str, AzureAssignedIdentity],
        desired: Mapping[str, AzureAssignedIdentity],
        node_map: dict[str, NodeTracking],
        node_refs: Iterable[str],
    ) -> None:
        try:
            groups = get_vmss_groups(self.nodes, node_refs)
        except InvalidResourceIDError as err:
            logger.error("failed to get VMSS groups, error: %s", err)
            return
        still_wanted = {**desired, **after_update}
        for assigned in (*to_delete.values(), *before_update.values()):
            try:
                self._plan_removal(assigned, still_wanted, node_map, groups)
            except InvalidResourceIDError as err:
                logger.error("failed to check if identity should be removed, error: %s", err)

    def _plan_removal(
        self,
        assigned: AzureAssignedIdentity,
        still_wanted: Mapping[str, AzureAssignedIdentity],
        node_map: dict[str, NodeTracking],
        groups: VMSSGroupList,
    ) -> None:
        in_use = is_in_use(assigned, still_wanted, self.nodes, groups)
        identity = assigned.identity
        if assigned.status in (AssignedIDStatus.ASSIGNED, None):
            if not in_use and is_user_assigned_msi(identity) and not self.is_identity_immutable(identity.client_id):
                append_to_remove_list(node_map, identity.resource_id, assigned.node_name)

    def _plan_assignment(self, assigned: AzureAssignedIdentity, node_map: dict[str, NodeTracking]) -> None:
        if assigned.status in (None, AssignedIDStatus.CREATED) and is_user_assigned_msi(assigned.identity):
            append_to_add_list(node_map, assigned.identity.resource_id, assigned.node_name)

    def _apply(
        self,
        desired: Mapping[str, AzureAssignedIdentity],
        node_map: Mapping[str, NodeTracking],
        missing: Mapping[str, NodeTracking],
        node_refs: set[str],
    ) -> None:
        task_count = len(node_map) + len(missing)
        if task_count == 0:
            return
        with ThreadPoolExecutor(max_workers=task_count) as pool:
            futures = [
                pool.submit(self.updater.clean_up_node, name, tracking) for name, tracking in missing.items()
            ]
            futures += [
                pool.submit(self.updater.update_user_msi, desired, name, tracking, node_refs)
                for name, tracking in node_map.items()
            ]
            for future in futures:
                try:
                    future.result()
                except Exception:
                    logger.exception("failed to apply identity changes")

    def is_identity_immutable(self, client_id: str) -> bool:
        """Return True if the identity must never be removed from a node."""
        return client_id in self.immutable_user_msis

    def generate_identity_assignment_state(
        self,
    ) -> tuple[dict[str, dict[str, bool]], dict[str, dict[str, bool]], dict[str, bool]]:
        """Return the current and desired identities per node, and which nodes are scale sets.

        Raises NodeNotFoundError or InvalidResourceIDError if a node cannot be resolved.
        """
        node_cache: dict[str, tuple[str, bool]] = {}
        is_vmss_map: dict[str, bool] = {}
        current: dict[str, dict[str, bool]] = {}
        desired: dict[str, dict[str, bool]] = {}
        for assigned in self.crd.list_assigned_ids():
            if assigned.node_name not in node_cache:
                node = self.nodes.get(assigned.node_name)
                vmss_id = is_vmss(node)
                if vmss_id is not None:
                    node_cache[assigned.node_name] = (get_vmss_name(vmss_id), True)
                else:
                    node_cache[assigned.node_name] = (assigned.node_name, False)
            node_name, node_is_vmss = node_cache[assigned.node_name]
            is_vmss_map[node_name] = node_is_vmss

            # Assignments still in the created state are in progress or failing.
            if (
                assigned.status == AssignedIDStatus.ASSIGNED
                and assigned.identity.type == IdentityType.USER_ASSIGNED_MSI
            ):
                desired.setdefault(node_name, {})[assigned.identity.resource_id] = True

            if node_name not in current:
                current[node_name] = {
                    rid: True for rid in self.cloud.get_user_msis(node_name, node_is_vmss)
                }
        return current, desired, is_vmss_map

    def reconcile_identity_assignment(self) -> None:
        """Assign on the cloud side any identity that assigned identities say should be there."""
        try:
            current, desired, is_vmss_map = self.generate_identity_assignment_state()
        except Exception as err:
            logger.error("failed to generate identity assignment state, error: %s", err)
            return
        diff = generate_identity_assignment_diff(current, desired)
        for node_name, identities in diff.items():
            logger.info("reconciling identity assignment for %s on node %s", identities, node_name)
            try:
                self.cloud.update_user_msi(identities, [], node_name, is_vmss_map[node_name])
            except Exception as err:
                logger.error("failed to update user-assigned identities on node %s, error: %s", node_name, err)