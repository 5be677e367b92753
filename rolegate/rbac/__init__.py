"""
RBAC (Role-Based Access Control) core for rolegate.

Two engines with deliberately different inheritance policies:

- RoleTree: in-memory, tri-state (allow/deny/unset) permissions where the
  nearest explicit state up the parent chain decides.
- RBACEngine: store-backed, users and roles, strict subset inheritance,
  mutual exclusion and per-role user caps.
"""

from .engine import RBACEngine
from .models import Decision, Permission, Role, RoleNode, RoleRecord
from .registry import ResourceRegistry
from .tree import RoleTree

__all__ = [
    "RBACEngine",
    "RoleTree",
    "ResourceRegistry",
    "Permission",
    "Decision",
    "Role",
    "RoleNode",
    "RoleRecord",
]
