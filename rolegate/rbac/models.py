"""
RBAC Models - Data structures for the role graph and role tree.

This module defines the core data models used by the engines:
- Permission: explicit per-resource state of a role in the role tree
- Decision: result of a resolution pre-hook
- Role: a node of the persisted role graph
- RoleNode: a node of the in-memory role tree
- RoleRecord: the shape a Store hands back when loading roles
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Permission(str, Enum):
    """
    Explicit state of a (role, resource) pair.

    UNSET is never stored; a resource missing from a role's permission map
    is UNSET and defers to the parent.
    """

    ALLOW = "allow"
    DENY = "deny"
    UNSET = "unset"


class Decision(str, Enum):
    """Outcome of a pre-resolution hook."""

    ALLOW = "allow"
    DENY = "deny"
    CONTINUE = "continue"


# hook(role_id, resource_id) -> Decision
ResolutionHook = Callable[[object, str], Decision]


@dataclass
class Role:
    """
    A role of the persisted role graph.

    Attributes:
        id: Identifier allocated by the engine.
        count: Maximum number of users that may hold the role, 0 for unlimited.
        parent: Identifier of the parent role, if any.
        excludes: Roles that may never be held together with this one.
        resources: Resources granted to the role.
        users: Users currently associated with the role.
    """

    id: int
    count: int = 0
    parent: Optional[int] = None
    excludes: Set[int] = field(default_factory=set)
    resources: Set[str] = field(default_factory=set)
    users: Set[str] = field(default_factory=set)

    def __post_init__(self) -> None:
        if self.count < 0:
            raise ValueError("Role count cannot be negative")
        if self.parent == self.id:
            raise ValueError("Role cannot be its own parent")

    def is_full(self) -> bool:
        return self.count > 0 and len(self.users) >= self.count

    def copy(self) -> "Role":
        return Role(
            id=self.id,
            count=self.count,
            parent=self.parent,
            excludes=set(self.excludes),
            resources=set(self.resources),
            users=set(self.users),
        )

    @classmethod
    def from_record(cls, record: "RoleRecord") -> "Role":
        return cls(
            id=record.id,
            count=record.count,
            parent=record.parent,
            excludes=set(record.excludes),
            resources=set(record.resources),
            users=set(record.users),
        )


@dataclass
class RoleNode:
    """
    A role of the tri-state role tree.

    Attributes:
        id: Role identifier.
        parent: Identifier of the parent role, if any.
        permissions: Explicit ALLOW/DENY state per resource.
    """

    id: object
    parent: Optional[object] = None
    permissions: Dict[str, Permission] = field(default_factory=dict)

    def state(self, resource: str) -> Permission:
        return self.permissions.get(resource, Permission.UNSET)

    def set_state(self, resource: str, state: Permission) -> None:
        if state is Permission.UNSET:
            self.permissions.pop(resource, None)
        else:
            self.permissions[resource] = state


class RoleRecord(BaseModel):
    """Persisted form of a role as returned by ``Store.load_roles``."""

    model_config = ConfigDict(extra="forbid")

    id: int = Field(..., ge=1)
    count: int = Field(default=0, ge=0)
    parent: Optional[int] = None
    excludes: List[int] = Field(default_factory=list)
    resources: List[str] = Field(default_factory=list)
    users: List[str] = Field(default_factory=list)

    @field_validator("parent")
    @classmethod
    def validate_parent(cls, v: Optional[int]) -> Optional[int]:
        """Treat 0 as "no parent", as some backends store it that way."""
        if v == 0:
            return None
        return v
