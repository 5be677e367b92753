"""
rolegate: role-based permission engine

Answers whether a user or role may access a resource, resolving permission
through a role hierarchy with explicit overrides.

Features:
    - Tri-state role tree where a local deny beats an inherited allow
    - Store-backed role graph with strict subset inheritance
    - Mutual exclusion between roles and per-role user caps
    - Write-through persistence with in-memory and Redis stores

Example:
    >>> from rolegate import MemoryStore, RBACEngine
    >>>
    >>> engine = RBACEngine(MemoryStore())
    >>> admin = engine.new_role()
    >>> engine.allow(admin, "settings")
    >>> engine.related("alice", admin)
    >>> engine.is_allow("alice", "settings")
    True
"""

__version__ = "0.1.0"

from .errors import (
    AlreadyExists,
    ConflictingAssociation,
    DependentStillAllowed,
    ExcludeNotFound,
    HasDependents,
    InvalidArgument,
    NotFound,
    NotSubsetOfParent,
    ParentNotFound,
    RBACError,
    ResourceNotFound,
    RoleNotFound,
    StoreError,
    TooManyUsers,
)
from .models import Resourcer, Roler
from .rbac import Decision, Permission, RBACEngine, ResourceRegistry, RoleTree
from .settings import Settings
from .setup import setup_engine
from .stores import MemoryStore, RedisStore, Store

__all__ = [
    "RBACEngine",
    "RoleTree",
    "ResourceRegistry",
    "Permission",
    "Decision",
    "Roler",
    "Resourcer",
    "Settings",
    "setup_engine",
    "Store",
    "MemoryStore",
    "RedisStore",
    "RBACError",
    "AlreadyExists",
    "NotFound",
    "RoleNotFound",
    "ParentNotFound",
    "ExcludeNotFound",
    "ResourceNotFound",
    "HasDependents",
    "TooManyUsers",
    "ConflictingAssociation",
    "NotSubsetOfParent",
    "DependentStillAllowed",
    "InvalidArgument",
    "StoreError",
]
