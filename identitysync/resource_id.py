"""Parsing and validation of cloud resource identifiers."""

from __future__ import annotations

import re
from dataclasses import dataclass

VM_RESOURCE_TYPE = "virtualMachines"
VMSS_RESOURCE_TYPE = "virtualMachineScaleSets"

_PROVIDER_PREFIX = "azure://"

_RESOURCE_ID_RE = re.compile(
    r"^/?subscriptions/(?P<subscription>[^/]+)"
    r"/resourceGroups/(?P<group>[^/]+)"
    r"/providers/(?P<provider>[^/]+)"
    r"/(?P<type>[^/]+)"
    r"/(?P<name>[^/]+)"
    r"(?:/.*)?$",
    re.IGNORECASE,
)

_USER_IDENTITY_RE = re.compile(
    r"^/subscriptions/[^/]+/resourcegroups/[^/]+"
    r"/providers/microsoft\.managedidentity/userassignedidentities/[^/]+$",
    re.IGNORECASE,
)


class InvalidResourceIDError(ValueError):
    """Raised when a resource identifier does not have the expected form."""


@dataclass(frozen=True)
class Resource:
    """The components of a resource identifier."""

    subscription_id: str = ""
    resource_group: str = ""
    provider: str = ""
    resource_type: str = ""
    resource_name: str = ""


def parse_resource_id(resource_id: str) -> Resource:
    """Split a resource or node provider identifier into its parts.

    For nested resources such as an instance of a scale set, the outer
    resource type and name are returned.
    """
    text = resource_id
    if text.lower().startswith(_PROVIDER_PREFIX):
        text = text[len(_PROVIDER_PREFIX):]
    match = _RESOURCE_ID_RE.match(text)
    if match is None:
        raise InvalidResourceIDError(
            f"parsing failed for {resource_id}. Invalid resource Id format"
        )
    return Resource(
        subscription_id=match["subscription"],
        resource_group=match["group"],
        provider=match["provider"],
        resource_type=match["type"],
        resource_name=match["name"],
    )


def validate_resource_id(resource_id: str) -> None:
    """Raise InvalidResourceIDError unless this is a user-assigned identity id."""
    if not _USER_IDENTITY_RE.match(resource_id):
        raise InvalidResourceIDError(
            f"invalid resource id: {resource_id}, must match "
            "/subscriptions/<subscriptionid>/resourcegroups/<resourcegroup>"
            "/providers/Microsoft.ManagedIdentity/userAssignedIdentities/<name>"
        )