"""
Role Tree - in-memory roles with tri-state permissions.

Each role holds an explicit ALLOW or DENY per resource, or nothing. A role
with nothing set for a resource defers to its parent, so a DENY on a child
overrides an ALLOW inherited from above. Each role has at most one parent.

Roles are created on demand by ``set_role``, ``allow`` and ``deny``.
"""

import logging
import threading
from typing import Dict, List, Optional

from ..errors import HasDependents, InvalidArgument, ResourceNotFound, RoleNotFound
from ..models import ResourceRef, Roler, RoleRef, resource_key, role_key, unique
from .models import Decision, Permission, ResolutionHook, RoleNode
from .registry import ResourceRegistry

logger = logging.getLogger(__name__)


class RoleTree:
    """
    Thread-safe tri-state role hierarchy.

    Example:
        >>> tree = RoleTree()
        >>> tree.set_role("alice", "staff")
        >>> tree.allow("staff", "wiki")
        >>> tree.is_allow("alice", "wiki")
        True
        >>> tree.deny("alice", "wiki")
        >>> tree.is_allow("alice", "wiki")
        False
    """

    def __init__(
        self,
        registry: Optional[ResourceRegistry] = None,
        strict_resources: bool = False,
        hook: Optional[ResolutionHook] = None,
    ):
        """
        Args:
            registry: Resource registry to share. A fresh one is created if None.
            strict_resources: Reject allow/deny of unregistered resources.
            hook: Optional ``hook(role_id, resource) -> Decision`` consulted
                before the standard resolution.
        """
        self.roles: Dict[object, RoleNode] = {}
        self.resources = registry or ResourceRegistry()
        self.strict_resources = strict_resources
        self.hook = hook
        self._lock = threading.RLock()

    def _node(self, key) -> RoleNode:
        node = self.roles.get(key)
        if node is None:
            node = RoleNode(id=key)
            self.roles[key] = node
        return node

    def _ancestors(self, key) -> List[object]:
        """Ancestors of ``key``, nearest first. Stops on a revisited role."""
        out = []
        seen = {key}
        node = self.roles.get(key)
        while node is not None and node.parent is not None:
            if node.parent in seen:
                break
            seen.add(node.parent)
            out.append(node.parent)
            node = self.roles.get(node.parent)
        return out

    def _prepare(self, resources) -> List[str]:
        keys = unique(resource_key(r) for r in resources)
        if not keys:
            raise InvalidArgument("At least one resource is required")
        if self.strict_resources:
            missing = self.resources.missing(keys)
            if missing:
                raise ResourceNotFound(f"Resources {missing} are not registered")
        return keys

    def _set(self, role: RoleRef, resources, state: Permission) -> None:
        key = role_key(role)
        keys = self._prepare(resources)
        with self._lock:
            node = self._node(key)
            for resource in keys:
                node.set_state(resource, state)
        logger.info(
            f"Set {keys} to {state.value} for role '{key}'",
            extra={"role_id": key, "resources": keys, "state": state.value},
        )

    # Resource Registry
    def add_resource(self, resource: ResourceRef) -> str:
        return self.resources.add(resource)

    def remove_resource(self, resource: ResourceRef) -> None:
        """Unregister a resource and clear every role's state for it."""
        key = resource_key(resource)
        with self._lock:
            for node in self.roles.values():
                node.permissions.pop(key, None)
            self.resources.remove(key)
        logger.info(f"Removed resource '{key}'", extra={"resource": key})

    def has_resource(self, resource: ResourceRef) -> bool:
        return self.resources.has(resource)

    # Role Management
    def set_role(self, role: RoleRef, parent: Optional[RoleRef] = None) -> None:
        """
        Create a role, or change its parent.

        The parent is created if it does not exist yet. Passing no parent
        leaves an existing parent in place; use ``detach`` to clear it.

        Raises:
            InvalidArgument: If the new parent would create a cycle.
        """
        key = role_key(role)
        parent_key = role_key(parent) if parent is not None else None

        with self._lock:
            if parent_key is not None:
                self._link(key, parent_key)
            node = self._node(key)

        logger.info(
            f"Set role '{key}' with parent '{node.parent}'",
            extra={"role_id": key, "parent": node.parent},
        )

    def detach(self, role: RoleRef) -> bool:
        """Clear the parent of a role. Returns False if it had none."""
        key = role_key(role)
        with self._lock:
            node = self.roles.get(key)
            if node is None or node.parent is None:
                return False
            previous, node.parent = node.parent, None

        logger.info(
            f"Detached role '{key}' from '{previous}'",
            extra={"role_id": key, "parent": previous},
        )
        return True

    def _link(self, key, parent_key) -> None:
        """Point key at parent_key, creating both. Call with the lock held."""
        if parent_key == key or key in self._ancestors(parent_key):
            raise InvalidArgument(
                f"Setting '{parent_key}' as parent of '{key}' creates a cycle"
            )
        self._node(parent_key)
        self._node(key).parent = parent_key

    def register(self, roler: Roler) -> None:
        """
        Register a Roler and its chain of parents.

        Raises:
            InvalidArgument: If any role in the chain reports more than one parent.
        """
        chain = []
        seen = set()
        current: Optional[Roler] = roler
        while current is not None and role_key(current) not in seen:
            seen.add(role_key(current))
            parents = [p for p in (current.parents() or []) if p is not None]
            if len(parents) > 1:
                raise InvalidArgument(
                    f"Role '{role_key(current)}' has {len(parents)} parents; "
                    f"at most one is supported"
                )
            parent = parents[0] if parents else None
            chain.append((current, parent))
            current = parent

        # register from the top so every parent exists before its child
        with self._lock:
            for child, parent in reversed(chain):
                if parent is None:
                    self._node(role_key(child)).parent = None
                else:
                    self._link(role_key(child), role_key(parent))

        logger.info(
            f"Registered role '{role_key(roler)}' with {len(chain) - 1} ancestors",
            extra={
                "role_id": role_key(roler),
                "chain": [role_key(c) for c, _ in chain],
            },
        )

    def del_role(self, role: RoleRef) -> None:
        """
        Delete a role. Unknown roles are ignored.

        Raises:
            HasDependents: If another role has this role as parent.
        """
        key = role_key(role)
        with self._lock:
            if key not in self.roles:
                return
            children = [n.id for n in self.roles.values() if n.parent == key]
            if children:
                raise HasDependents(f"Role '{key}' is the parent of {children}")
            del self.roles[key]
        logger.info(f"Removed role '{key}'", extra={"role_id": key})

    def parent_of(self, role: RoleRef) -> Optional[object]:
        with self._lock:
            node = self.roles.get(role_key(role))
            return node.parent if node else None

    def list_roles(self) -> List[object]:
        with self._lock:
            return list(self.roles)

    # Permission Management
    def allow(self, role: RoleRef, *resources: ResourceRef) -> None:
        """Explicitly allow resources for a role, creating the role if needed."""
        self._set(role, resources, Permission.ALLOW)

    def deny(self, role: RoleRef, *resources: ResourceRef) -> None:
        """
        Explicitly deny resources for a role, creating the role if needed.

        Unlike ``revoke``, a denial wins over anything inherited from parents.
        """
        self._set(role, resources, Permission.DENY)

    def revoke(self, role: RoleRef, *resources: ResourceRef) -> None:
        """
        Clear the explicit state of resources for a role.

        The role may still inherit access from its parent.

        Raises:
            RoleNotFound: If the role does not exist.
        """
        key = role_key(role)
        keys = unique(resource_key(r) for r in resources)
        with self._lock:
            node = self.roles.get(key)
            if node is None:
                raise RoleNotFound(f"Role '{key}' does not exist")
            for resource in keys:
                node.set_state(resource, Permission.UNSET)
        logger.info(
            f"Revoked {keys} for role '{key}'",
            extra={"role_id": key, "resources": keys},
        )

    def revoke_role(self, role: RoleRef) -> None:
        """
        Clear every explicit state of a role.

        Raises:
            RoleNotFound: If the role does not exist.
        """
        key = role_key(role)
        with self._lock:
            node = self.roles.get(key)
            if node is None:
                raise RoleNotFound(f"Role '{key}' does not exist")
            node.permissions.clear()
        logger.info(f"Revoked all resources for role '{key}'", extra={"role_id": key})

    def role_resources(self, role: RoleRef) -> Dict[str, Permission]:
        """Explicit states set directly on a role; empty if it does not exist."""
        with self._lock:
            node = self.roles.get(role_key(role))
            return dict(node.permissions) if node else {}

    # Permission Checking
    def is_allow(self, role: RoleRef, resource: ResourceRef) -> bool:
        """
        Check whether a role may access a resource.

        The nearest explicit state on the way from the role up to the root
        decides. With no explicit state anywhere, access is denied.
        """
        try:
            key = role_key(role)
            res = resource_key(resource)
        except InvalidArgument:
            return False

        with self._lock:
            if self.hook is not None:
                decision = self.hook(key, res)
                if decision is not Decision.CONTINUE:
                    return decision is Decision.ALLOW

            if key not in self.roles:
                return False

            for current in [key] + self._ancestors(key):
                current_node = self.roles.get(current)
                if current_node is None:
                    break
                state = current_node.state(res)
                if state is not Permission.UNSET:
                    logger.debug(
                        "Role '%s' resolved '%s' to %s via '%s'",
                        key,
                        res,
                        state.value,
                        current,
                    )
                    return state is Permission.ALLOW

        return False
