"""Reconcile pod identity bindings with user-assigned managed identities on nodes and scale sets."""

__version__ = "0.1.0"

__all__ = ["assignment", "controller", "planning", "resource_id", "types", "vmss"]