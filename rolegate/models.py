"""
Capability protocols shared by every rolegate engine.

Engines never depend on concrete user, group or resource types. Anything
that can report a stable identifier (and, for roles, its parents) can be
passed wherever a plain identifier is accepted.
"""

from typing import Hashable, Protocol, Sequence, Union, runtime_checkable

from .errors import InvalidArgument


@runtime_checkable
class Roler(Protocol):
    """
    Something that can act as a role.

    Implementations must be cheap and must not raise; engines call these
    methods while holding their locks.

    Example:
        >>> class Group:
        ...     def __init__(self, name):
        ...         self.name = name
        ...     def role_id(self):
        ...         return "group-" + self.name
        ...     def parents(self):
        ...         return []
    """

    def role_id(self) -> Hashable: ...

    def parents(self) -> Sequence["Roler"]: ...


@runtime_checkable
class Resourcer(Protocol):
    """Something that can be protected by a grant."""

    def resource_id(self) -> str: ...


RoleRef = Union[Hashable, Roler]
ResourceRef = Union[str, Resourcer]


def role_key(role: RoleRef) -> Hashable:
    """Return the identifier of a role given either an id or a Roler."""
    if isinstance(role, Roler):
        key = role.role_id()
    else:
        key = role
    if key is None or key == "":
        raise InvalidArgument("Role identifier cannot be empty")
    try:
        hash(key)
    except TypeError as e:
        raise InvalidArgument(f"Role identifier must be hashable: {key!r}") from e
    return key


def resource_key(resource: ResourceRef) -> str:
    """Return the identifier of a resource given either an id or a Resourcer."""
    if isinstance(resource, Resourcer):
        key = resource.resource_id()
    else:
        key = resource
    if not isinstance(key, str):
        raise InvalidArgument(f"Resource identifier must be a string: {key!r}")
    if not key:
        raise InvalidArgument("Resource identifier cannot be empty")
    return key


def unique(items):
    """De-duplicate while keeping first-seen order."""
    seen = set()
    out = []
    for item in items:
        if item not in seen:
            seen.add(item)
            out.append(item)
    return out
