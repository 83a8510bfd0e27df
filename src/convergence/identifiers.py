"""Resource identifiers.

A node is identified by its resource type and name. Child resources use
slash-separated names (type "Microsoft.KeyVault/vaults/accessPolicies",
name "kv-main/add"). Full resource ids follow the ARM layout:

    /subscriptions/{sub}/resourceGroups/{rg}/providers/{namespace}/{type}/{name}[/{childType}/{childName}]
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class NodeId:
    """Unique identity of a resource node (type + name)."""

    type: str
    name: str

    def __str__(self) -> str:
        return f"{self.type}/{self.name}"

    @property
    def key(self) -> str:
        """Case-insensitive lookup key."""
        return str(self).lower()


def format_resource_id(
    subscription_id: str,
    resource_group: str | None,
    resource_type: str,
    name: str,
) -> str:
    """Build an ARM resource id for a (possibly nested) resource.

    Args:
        subscription_id: Subscription GUID.
        resource_group: Resource group name, or None for subscription scope.
        resource_type: Full type, e.g. "Microsoft.Web/sites".
        name: Resource name; child names are slash separated.

    Raises:
        ValueError: If the type and name segment counts do not line up.
    """
    type_segments = resource_type.split("/")
    name_segments = name.split("/")
    if len(type_segments) < 2 or len(type_segments) - 1 != len(name_segments):
        raise ValueError(
            f"Resource type '{resource_type}' needs {len(type_segments) - 1} name "
            f"segment(s), got '{name}'"
        )

    path = type_segments[0]
    for type_part, name_part in zip(type_segments[1:], name_segments, strict=True):
        path += f"/{type_part}/{name_part}"

    prefix = f"/subscriptions/{subscription_id}"
    if resource_group:
        prefix += f"/resourceGroups/{resource_group}"
    return f"{prefix}/providers/{path}"


def parse_resource_id(resource_id: str) -> NodeId | None:
    """Extract (type, name) from an ARM resource id.

    Returns:
        NodeId, or None if the id has no provider segment.
    """
    parts = resource_id.split("/providers/")
    if len(parts) < 2:
        return None

    segments = [s for s in parts[-1].split("/") if s]
    if len(segments) < 3 or (len(segments) - 1) % 2 != 0:
        return None

    namespace = segments[0]
    types = segments[1::2]
    names = segments[2::2]
    return NodeId(type="/".join([namespace, *types]), name="/".join(names))


def is_resource_id(value: str) -> bool:
    """Check whether a string looks like a full resource id."""
    return value.startswith("/subscriptions/") and "/providers/" in value
