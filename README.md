# identitysync

`identitysync` keeps user-assigned managed identities on cluster nodes in step with pod identity
bindings. For each cycle it works out which pods should hold which identities. It then works out
which node or scale set each identity has to go to, assigns or removes the identities through a
cloud client, and records each result as an `AzureAssignedIdentity` in an identity store.

The package has no third-party dependencies. The test suite uses pytest, which the `test` extra
installs.

## Concepts

- `AzureIdentity`: an identity. It is either a user-assigned MSI, which has a resource ID, or a
  service principal (`IdentityType`).
- `AzureIdentityBinding`: links an identity to the pods whose `aadpodidbinding` label
  (`types.CRD_LABEL_KEY`) equals the binding's selector.
- `AzureAssignedIdentity`: records that one identity is assigned to one pod on one node. Its
  `status` starts as `None`. It then takes the `AssignedIDStatus` values `CREATED`, `ASSIGNED` and
  `UNASSIGNED`.
- `Pod` and `Node`: the few cluster facts the reconciler needs. For a node this is its name and
  its provider ID.
- Scale sets: nodes whose provider ID points at a virtual machine scale set are grouped together.
  An identity is added to or removed from the scale set as a whole, not from each node.
- Namespaced identities: if the controller runs with `namespaced=True`, an identity is assigned
  only when the identity, the binding and the pod share a namespace. The same holds for any
  identity for which `is_namespaced_identity` is true.

## Modules

- `identitysync.types`: the data model, with `IdentityType`, `AssignedIDStatus`, `EventType` and
  `is_namespaced_identity`.
- `identitysync.resource_id`: `parse_resource_id`, which splits a resource or node provider ID into
  a `Resource`, and `validate_resource_id` for user-assigned identity IDs. Both raise
  `InvalidResourceIDError` on a malformed ID.
- `identitysync.vmss`: `NodeStore` is a thread-safe node cache that raises `NodeNotFoundError`.
  The module also handles scale-set grouping through `VMSSGroup`, `VMSSGroupList`,
  `get_vmss_groups`, `get_vmss_group_from_possibly_unreferenced_node`, `is_vmss`, `make_vmss_id`
  and `get_vmss_name`.
- `identitysync.planning`: pure functions.
  - `desired_assigned_identities` computes the assignments that should exist.
  - `assigned_ids_to_create`, `assigned_ids_to_delete` and `assigned_ids_to_update` compare them
    with the existing assignments.
  - `generate_identity_assignment_diff` lists the identities that each node is still missing.
- `identitysync.assignment`: sorts work by node.
  - `NodeTracking` holds the work for one node.
  - `track_by_node` and `consolidate_vmss_nodes` sort and merge that work.
  - `is_in_use` checks whether an identity is still needed.
  - `NodeUpdater` applies the work to one node or scale set.
- `identitysync.controller`: `Controller` and the in-memory clients it works with.

## The clients

The clients in `identitysync.controller` keep their state in memory.

- `CRDClient` stores identities, bindings and assigned identities. Setting `remove_error` makes
  removals fail.
- `CloudClient` records the identities held by each VM and scale set. `fail_next_update` makes the
  next update raise. A `cluster_identity` given to it is always treated as immutable.
- `PodClient` holds the pods.
- `EventRecorder` collects events in `events`. `wait_for_events(count, timeout)` blocks until that
  many events have been recorded.

The controller works with any objects that have the same methods.

## Example

```python
from identitysync.controller import CloudClient, Controller, CRDClient, EventRecorder, PodClient
from identitysync.types import CRD_LABEL_KEY, AzureIdentity, AzureIdentityBinding, Node, Pod
from identitysync.vmss import NodeStore

resource_id = (
    "/subscriptions/00000000-0000-0000-0000-000000000000/resourcegroups/rg"
    "/providers/Microsoft.ManagedIdentity/userAssignedIdentities/web-id"
)
crd = CRDClient()
crd.add_identity(AzureIdentity(name="web-id", namespace="default",
                               resource_id=resource_id, client_id="web-client"))
crd.add_binding(AzureIdentityBinding(name="web-binding", namespace="default",
                                     azure_identity="web-id", selector="web"))
pods = PodClient([Pod(name="web-0", namespace="default", node_name="node-0",
                      labels={CRD_LABEL_KEY: "web"})])
nodes = NodeStore([Node(name="node-0", provider_id=(
    "azure:///subscriptions/sub/resourceGroups/rg"
    "/providers/Microsoft.Compute/virtualMachines/node-0"))])
cloud = CloudClient()

controller = Controller(crd, cloud, pods, nodes, EventRecorder())
controller.sync_once()                 # True: there was work to do
cloud.get_user_msis("node-0", False)   # [resource_id]
crd.list_assigned_ids()[0].status      # AssignedIDStatus.ASSIGNED
```

## Running the controller

- `start(exit_event)` starts the pod, identity and node clients. It then runs `sync` in a
  background thread, which it returns.
- `sync(exit_event)` runs the loop on the current thread until `exit_event` is set. A cycle runs
  for each `EventType` put on `controller.events`, and also every `sync_retry_interval` seconds.
  Every `identity_assignment_reconcile_interval` seconds the loop calls
  `reconcile_identity_assignment` instead. A second `sync` started while one is running raises
  `ConcurrentSyncError`.
- `sync_once()` runs a single cycle. It returns whether anything had to change.
- `reconcile_identity_assignment()` assigns on the cloud side any identity that is missing there.
  It takes the assigned identities in the `ASSIGNED` state as the source of truth.
  `generate_identity_assignment_state()` returns the current and desired state it compares, and
  whether each node is a scale set.

Constructor options:

- `namespaced`
- `sync_retry_interval`, 120 s by default
- `identity_assignment_reconcile_interval`, 180 s by default
- `create_delete_batch`, which limits the store requests in flight at once, 4 by default
- `immutable_user_msis`
- `work_done_delay`, a pause after a cycle that did work, 0.2 s by default

Client IDs listed as immutable are never removed from a node or scale set, even when no pod uses
them any more. `is_identity_immutable(client_id)` checks a client ID against that list.

## What the package does not do

The package does not connect to a Kubernetes API server or to a cloud provider. The stores and the
cloud client are in memory, and a real deployment has to supply objects with the same methods.
The package also does not provide:

- a command-line program
- leader election
- metrics
- watching of a cloud configuration file