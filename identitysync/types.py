"""Data model for pod identities, bindings, assignments, pods and nodes."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum, auto

CRD_LABEL_KEY = "aadpodidbinding"
CRD_GROUP = "aadpodidentity.k8s.io"
BEHAVIOR_KEY = "aadpodidentity.k8s.io/Behavior"
BEHAVIOR_NAMESPACED = "namespaced"


class IdentityType(IntEnum):
    """Kind of credential an identity refers to."""

    USER_ASSIGNED_MSI = 0
    SERVICE_PRINCIPAL = 1
    SERVICE_PRINCIPAL_CERTIFICATE = 2


class AssignedIDStatus(str, Enum):
    """Lifecycle state of an assigned identity."""

    CREATED = "Created"
    ASSIGNED = "Assigned"
    UNASSIGNED = "Unassigned"


class EventType(Enum):
    """Change notifications that trigger a sync cycle."""

    POD_CREATED = auto()
    POD_DELETED = auto()
    POD_UPDATED = auto()
    IDENTITY_CREATED = auto()
    IDENTITY_DELETED = auto()
    IDENTITY_UPDATED = auto()
    BINDING_CREATED = auto()
    BINDING_DELETED = auto()
    BINDING_UPDATED = auto()
    EXIT = auto()


@dataclass
class AzureIdentity:
    """A cloud identity that pods may be bound to."""

    name: str
    namespace: str = ""
    resource_version: str = ""
    type: IdentityType = IdentityType.USER_ASSIGNED_MSI
    resource_id: str = ""
    client_id: str = ""
    tenant_id: str = ""
    ad_resource_id: str = ""
    ad_endpoint: str = ""
    annotations: dict[str, str] = field(default_factory=dict)


@dataclass
class AzureIdentityBinding:
    """Links pods carrying a selector label to an identity."""

    name: str
    namespace: str = ""
    resource_version: str = ""
    azure_identity: str = ""
    selector: str = ""


@dataclass
class AzureAssignedIdentity:
    """The assignment of an identity to one pod on one node."""

    identity: AzureIdentity
    binding: AzureIdentityBinding | None = None
    name: str = ""
    namespace: str = ""
    pod: str = ""
    pod_namespace: str = ""
    node_name: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    status: AssignedIDStatus | None = None
    available_replicas: int = 0


@dataclass
class Pod:
    """The parts of a pod the controller looks at."""

    name: str
    namespace: str = ""
    node_name: str = ""
    labels: dict[str, str] = field(default_factory=dict)


@dataclass
class Node:
    """The parts of a cluster node the controller looks at."""

    name: str
    provider_id: str = ""


def is_namespaced_identity(identity: AzureIdentity) -> bool:
    """Return True if the identity is annotated to be used only in its namespace."""
    return identity.annotations.get(BEHAVIOR_KEY) == BEHAVIOR_NAMESPACED