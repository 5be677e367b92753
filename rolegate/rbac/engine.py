"""
RBAC Engine - Store-backed role graph and permission resolver.

This module implements the persisted role model: roles arranged in a
single-parent hierarchy, resources granted to roles, users associated with
roles, mutual-exclusion constraints and per-role user caps. Every mutation
is written to the Store first and applied to memory second, so a Store
failure leaves the engine unchanged.

Inheritance is strict: a child role may only be granted resources its parent
already holds, and a parent cannot lose a resource while a descendant still
holds it. Because grants are copied down explicitly, resolving a permission
never needs to walk up the hierarchy.
"""

import logging
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from ..errors import (
    ConflictingAssociation,
    DependentStillAllowed,
    ExcludeNotFound,
    HasDependents,
    InvalidArgument,
    NotSubsetOfParent,
    ParentNotFound,
    RBACError,
    ResourceNotFound,
    RoleNotFound,
    StoreError,
    TooManyUsers,
)
from ..models import ResourceRef, RoleRef, resource_key, role_key, unique
from ..settings import Settings
from ..stores.base import Store
from .models import Decision, ResolutionHook, Role
from .registry import ResourceRegistry

logger = logging.getLogger(__name__)


class RBACEngine:
    """
    Store-backed RBAC engine for role management and permission checks.

    The engine keeps every role in memory and loads user-role relations
    lazily, the first time a user is referenced. It provides methods for:
    - Role lifecycle (new_role, del_role, set_count, set_exclude)
    - Grants (allow, deny) under the subset-of-parent invariant
    - User association (related, unrelated) under exclusion and count limits
    - Permission checks (is_allow, role_allows)

    Example:
        >>> engine = RBACEngine(MemoryStore())
        >>> staff = engine.new_role()
        >>> engine.allow(staff, "reports")
        >>> engine.related("alice", staff)
        >>> engine.is_allow("alice", "reports")
        True

    Thread Safety:
        One reentrant lock guards the role graph and the relation cache for
        the whole check-then-act sequence of every operation, Store call
        included.
    """

    def __init__(
        self,
        store: Store,
        settings: Optional[Settings] = None,
        registry: Optional[ResourceRegistry] = None,
        hook: Optional[ResolutionHook] = None,
    ):
        """
        Initialize the engine and load every role from the store.

        Args:
            store: Persistence backend, authoritative at startup.
            settings: Engine settings. Defaults are used if None.
            registry: Resource registry to share. A fresh one is created if None.
            hook: Optional ``hook(uid, resource) -> Decision`` consulted before
                the standard resolution.

        Raises:
            StoreError: If the roles cannot be loaded.
            InvalidArgument: If the stored roles are inconsistent.
        """
        self.store = store
        self.settings = settings or Settings()
        self.resources = registry or ResourceRegistry()
        self.hook = hook

        self.roles: Dict[int, Role] = {}
        self.relations: Dict[str, Set[int]] = {}  # uid -> role ids

        self._lock = threading.RLock()
        self._next_id = 1
        self._permission_checks = 0
        self._created_at = datetime.now(timezone.utc)

        self.load()

    def _call_store(self, operation: str, *args):
        """Invoke a Store method, wrapping backend failures in StoreError."""
        try:
            return getattr(self.store, operation)(*args)
        except RBACError:
            raise
        except Exception as e:
            logger.error(
                f"Store operation '{operation}' failed: {e}",
                extra={"operation": operation, "error": str(e)},
            )
            raise StoreError(
                f"Store operation '{operation}' failed: {e}", operation=operation
            ) from e

    def load(self) -> None:
        """
        (Re)load every role from the store and drop cached user relations.

        Raises:
            StoreError: If the store cannot be read.
            InvalidArgument: If a stored role references a missing role, forms
                a cycle or breaks the subset invariant.
        """
        records = self._call_store("load_roles")

        roles: Dict[int, Role] = {}
        for record in records:
            try:
                roles[record.id] = Role.from_record(record)
            except ValueError as e:
                raise InvalidArgument(f"Stored role {record.id} is invalid: {e}") from e
        self._validate_graph(roles)

        with self._lock:
            self.roles = roles
            self.relations.clear()
            self._next_id = max(roles, default=0) + 1

        logger.info(
            f"Loaded {len(roles)} roles from store",
            extra={"roles_count": len(roles)},
        )

    def _validate_graph(self, roles: Dict[int, Role]) -> None:
        for role in roles.values():
            if role.parent is not None:
                if role.parent not in roles:
                    raise InvalidArgument(
                        f"Role {role.id} references missing parent {role.parent}"
                    )
                extra = role.resources - roles[role.parent].resources
                if extra:
                    raise InvalidArgument(
                        f"Role {role.id} holds {sorted(extra)} not held by "
                        f"parent {role.parent}"
                    )
            missing = role.excludes - roles.keys()
            if missing:
                raise InvalidArgument(
                    f"Role {role.id} excludes missing roles {sorted(missing)}"
                )
            self._check_cycle(roles, role.id)

    @staticmethod
    def _check_cycle(roles: Dict[int, Role], role_id: int) -> None:
        seen = {role_id}
        parent = roles[role_id].parent
        while parent is not None:
            if parent in seen:
                raise InvalidArgument(f"Role inheritance cycle detected at role {role_id}")
            seen.add(parent)
            parent = roles[parent].parent if parent in roles else None

    def _find(self, role: RoleRef) -> Optional[Role]:
        return self.roles.get(role_key(role))

    def _require(self, role: RoleRef, error=RoleNotFound) -> Role:
        key = role_key(role)
        found = self.roles.get(key)
        if found is None:
            raise error(f"Role {key} does not exist")
        return found

    def _children(self, role_id: int) -> List[Role]:
        return [r for r in self.roles.values() if r.parent == role_id]

    def _descendants(self, role_id: int) -> List[Role]:
        """Every role below ``role_id``, nearest first."""
        out: List[Role] = []
        visited = {role_id}
        queue = deque([role_id])
        while queue:
            current = queue.popleft()
            for child in self._children(current):
                if child.id in visited:
                    continue
                visited.add(child.id)
                out.append(child)
                queue.append(child.id)
        return out

    def _depth(self, role: Role) -> int:
        depth = 0
        seen = {role.id}
        parent = role.parent
        while parent is not None and parent not in seen:
            seen.add(parent)
            depth += 1
            parent = self.roles[parent].parent if parent in self.roles else None
        return depth

    def _check_registered(self, resources: List[str]) -> None:
        if not self.settings.strict_resources:
            return
        missing = self.resources.missing(resources)
        if missing:
            raise ResourceNotFound(f"Resources {missing} are not registered")

    @staticmethod
    def _resource_keys(resources) -> List[str]:
        keys = unique(resource_key(r) for r in resources)
        if not keys:
            raise InvalidArgument("At least one resource is required")
        return keys

    # Resource Registry
    def add_resource(self, resource: ResourceRef) -> str:
        """
        Register a resource.

        Raises:
            AlreadyExists: If the resource is already registered.
        """
        key = self.resources.add(resource)
        logger.info(f"Added resource '{key}'", extra={"resource": key})
        return key

    def remove_resource(self, resource: ResourceRef) -> None:
        """
        Unregister a resource and revoke it from every role holding it.

        Descendants are stripped before their ancestors, so the subset
        invariant holds after every individual Store call. Memory is only
        updated once every call succeeded; on failure the grants already
        removed from the store are put back and nothing changes. Removing
        an unknown resource is a no-op.

        Raises:
            StoreError: If the store rejects one of the removals.
        """
        key = resource_key(resource)
        with self._lock:
            holders = [r for r in self.roles.values() if key in r.resources]
            holders.sort(key=self._depth, reverse=True)
            stripped = []
            try:
                for role in holders:
                    self._call_store("del_resource", role.id, key)
                    stripped.append(role)
            except StoreError:
                self._restore_resource(key, stripped)
                raise
            for role in holders:
                role.resources.discard(key)
            self.resources.remove(key)

        logger.info(
            f"Removed resource '{key}' from {len(holders)} roles",
            extra={"resource": key, "roles": [r.id for r in holders]},
        )

    def _restore_resource(self, key: str, roles: List[Role]) -> None:
        """Re-grant ``key`` in the store, ancestors first."""
        for role in reversed(roles):
            try:
                self.store.add_resource(role.id, key)
            except Exception as e:
                logger.error(
                    f"Could not restore resource '{key}' on role {role.id}: {e}",
                    extra={"role_id": role.id, "resource": key, "error": str(e)},
                )

    def has_resource(self, resource: ResourceRef) -> bool:
        return self.resources.has(resource)

    def list_resources(self) -> List[str]:
        return self.resources.list()

    # Role Management
    def new_role(
        self, count: int = 0, parent: Optional[RoleRef] = None, *excludes: RoleRef
    ) -> int:
        """
        Create a role and return its identifier.

        Args:
            count: Maximum number of users, 0 for unlimited.
            parent: Role to inherit from, if any.
            excludes: Roles that may never be held together with the new role.

        Returns:
            The identifier allocated to the new role.

        Raises:
            InvalidArgument: If count is negative.
            ParentNotFound: If parent does not exist.
            ExcludeNotFound: If any excluded role does not exist.
            StoreError: If the store rejects the role.
        """
        if count < 0:
            raise InvalidArgument("Role count cannot be negative")

        exclude_ids = unique(role_key(e) for e in excludes)

        with self._lock:
            parent_id = None
            if parent is not None:
                parent_id = self._require(parent, ParentNotFound).id
            for exclude_id in exclude_ids:
                self._require(exclude_id, ExcludeNotFound)

            role_id = self._next_id
            self._call_store("add_role", role_id, count, parent_id, *exclude_ids)
            self.roles[role_id] = Role(
                id=role_id, count=count, parent=parent_id, excludes=set(exclude_ids)
            )
            self._next_id += 1

        logger.info(
            f"Added role {role_id} (parent={parent_id}, count={count})",
            extra={"role_id": role_id, "parent": parent_id, "excludes": exclude_ids},
        )
        return role_id

    def del_role(self, role: RoleRef) -> None:
        """
        Delete a role.

        The role is removed from every user and from every other role's
        exclude set. Deleting an unknown role is a no-op.

        Raises:
            HasDependents: If another role has this role as parent.
            StoreError: If the store rejects the deletion.
        """
        with self._lock:
            found = self._find(role)
            if found is None:
                return

            children = self._children(found.id)
            if children:
                raise HasDependents(
                    f"Role {found.id} is the parent of roles "
                    f"{sorted(c.id for c in children)}"
                )

            self._call_store("del_role", found.id)

            for held in self.relations.values():
                held.discard(found.id)
            for other in self.roles.values():
                other.excludes.discard(found.id)
            del self.roles[found.id]

        logger.info(f"Removed role {found.id}", extra={"role_id": found.id})

    def set_count(self, role: RoleRef, count: int) -> None:
        """
        Change the maximum number of users of a role.

        Raises:
            InvalidArgument: If count is negative.
            RoleNotFound: If the role does not exist.
            TooManyUsers: If more than ``count`` users already hold the role.
        """
        if count < 0:
            raise InvalidArgument("Role count cannot be negative")

        with self._lock:
            found = self._require(role)
            if count > 0 and len(found.users) > count:
                raise TooManyUsers(
                    f"Role {found.id} is held by {len(found.users)} users, "
                    f"more than {count}"
                )

            self._call_store("set_count", found.id, count)
            found.count = count

        logger.info(
            f"Set count of role {found.id} to {count}",
            extra={"role_id": found.id, "count": count},
        )

    def set_exclude(self, role: RoleRef, *excludes: RoleRef) -> None:
        """
        Replace the set of roles mutually exclusive with ``role``.

        Raises:
            RoleNotFound: If the role does not exist.
            ExcludeNotFound: If an excluded role does not exist.
            InvalidArgument: If the role excludes itself.
            ConflictingAssociation: If some user already holds the role and
                one of the excluded roles.
        """
        exclude_ids = unique(role_key(e) for e in excludes)

        with self._lock:
            found = self._require(role)
            for exclude_id in exclude_ids:
                self._require(exclude_id, ExcludeNotFound)
            if found.id in exclude_ids:
                raise InvalidArgument(f"Role {found.id} cannot exclude itself")

            wanted = set(exclude_ids)
            for uid in sorted(found.users):
                clash = self._load_user(uid) & wanted
                if clash:
                    raise ConflictingAssociation(
                        f"User '{uid}' holds role {found.id} and excluded roles "
                        f"{sorted(clash)}"
                    )

            self._call_store("set_exclude", found.id, *exclude_ids)
            found.excludes = wanted

        logger.info(
            f"Set excludes of role {found.id} to {exclude_ids}",
            extra={"role_id": found.id, "excludes": exclude_ids},
        )

    def get_role(self, role: RoleRef) -> Optional[Role]:
        """Return a copy of a role, or None if it does not exist."""
        with self._lock:
            found = self._find(role)
            return found.copy() if found else None

    def list_roles(self) -> List[int]:
        with self._lock:
            return sorted(self.roles)

    def children_of(self, role: RoleRef) -> List[int]:
        with self._lock:
            return sorted(r.id for r in self._children(role_key(role)))

    def users_of(self, role: RoleRef) -> Set[str]:
        with self._lock:
            found = self._find(role)
            return set(found.users) if found else set()

    # Grants
    def allow(self, role: RoleRef, *resources: ResourceRef) -> None:
        """
        Grant resources to a role.

        Resources the role already holds are skipped. An unknown role is
        ignored.

        Raises:
            InvalidArgument: If no resource is given.
            ResourceNotFound: In strict mode, if a resource is not registered.
            NotSubsetOfParent: If the parent does not hold every new resource.
            StoreError: If the store rejects the grant.
        """
        keys = self._resource_keys(resources)

        with self._lock:
            found = self._find(role)
            if found is None:
                logger.debug("Ignoring grant to unknown role %s", role)
                return
            self._check_registered(keys)

            delta = [k for k in keys if k not in found.resources]
            if not delta:
                return

            if found.parent is not None:
                parent = self.roles[found.parent]
                missing = [k for k in delta if k not in parent.resources]
                if missing:
                    raise NotSubsetOfParent(
                        f"Parent role {parent.id} does not hold {missing}"
                    )

            self._call_store("add_resource", found.id, *delta)
            found.resources.update(delta)

        logger.info(
            f"Granted {delta} to role {found.id}",
            extra={"role_id": found.id, "resources": delta},
        )

    def deny(self, role: RoleRef, *resources: ResourceRef) -> None:
        """
        Revoke resources from a role.

        Resources the role does not hold are skipped. An unknown role is
        ignored.

        Raises:
            InvalidArgument: If no resource is given.
            ResourceNotFound: In strict mode, if a resource is not registered.
            DependentStillAllowed: If a descendant role still holds a resource.
            StoreError: If the store rejects the revocation.
        """
        keys = self._resource_keys(resources)

        with self._lock:
            found = self._find(role)
            if found is None:
                logger.debug("Ignoring denial for unknown role %s", role)
                return
            self._check_registered(keys)

            held = [k for k in keys if k in found.resources]
            if not held:
                return

            for descendant in self._descendants(found.id):
                still = [k for k in held if k in descendant.resources]
                if still:
                    raise DependentStillAllowed(
                        f"Role {descendant.id} below role {found.id} still "
                        f"holds {still}"
                    )

            self._call_store("del_resource", found.id, *held)
            found.resources.difference_update(held)

        logger.info(
            f"Revoked {held} from role {found.id}",
            extra={"role_id": found.id, "resources": held},
        )

    def role_resources(self, role: RoleRef) -> Set[str]:
        """Resources granted to a role; empty if the role does not exist."""
        with self._lock:
            found = self._find(role)
            return set(found.resources) if found else set()

    # User Role Management
    def _load_user(self, uid: str) -> Set[int]:
        """Return the cached role set of a user, loading it on first use.

        Must be called with the lock held.
        """
        held = self.relations.get(uid)
        if held is None:
            ids = self._call_store("load_relate", uid)
            held = {i for i in ids if i in self.roles}
            for role_id in held:
                self.roles[role_id].users.add(uid)
            self.relations[uid] = held
            logger.debug("Loaded %d roles for user '%s'", len(held), uid)
        return held

    @staticmethod
    def _user_key(uid) -> str:
        key = role_key(uid)
        if not isinstance(key, str):
            raise InvalidArgument("User identifier must be a string")
        return key

    def _excluded(self, a: int, b: int) -> bool:
        return b in self.roles[a].excludes or a in self.roles[b].excludes

    def related(self, uid: RoleRef, *roles: RoleRef) -> None:
        """
        Associate a user with roles.

        Roles the user already holds are skipped.

        Raises:
            InvalidArgument: If uid is empty or no role is given.
            RoleNotFound: If a role does not exist.
            ConflictingAssociation: If a new role is mutually exclusive with a
                role the user holds or with another new role.
            TooManyUsers: If a new role is already held by its maximum number
                of users.
            StoreError: If the store rejects the association.
        """
        user = self._user_key(uid)
        role_ids = unique(role_key(r) for r in roles)
        if not role_ids:
            raise InvalidArgument("At least one role is required")

        with self._lock:
            for role_id in role_ids:
                self._require(role_id)

            held = self._load_user(user)
            new = [r for r in role_ids if r not in held]
            if not new:
                return

            combined = sorted(held | set(new))
            for role_id in new:
                for other in combined:
                    if other != role_id and self._excluded(role_id, other):
                        raise ConflictingAssociation(
                            f"Roles {role_id} and {other} are mutually exclusive "
                            f"for user '{user}'"
                        )

            for role_id in new:
                if self.roles[role_id].is_full():
                    raise TooManyUsers(
                        f"Role {role_id} already has its maximum of "
                        f"{self.roles[role_id].count} users"
                    )

            self._call_store("relate", user, *new)
            held.update(new)
            for role_id in new:
                self.roles[role_id].users.add(user)

        logger.info(
            f"Assigned roles {new} to user '{user}'",
            extra={"user_id": user, "roles": new},
        )

    def unrelated(self, uid: RoleRef, *roles: RoleRef) -> None:
        """
        Remove roles from a user. Roles the user does not hold are skipped.

        Raises:
            InvalidArgument: If uid is empty or no role is given.
            RoleNotFound: If a role does not exist.
            StoreError: If the store rejects the change.
        """
        user = self._user_key(uid)
        role_ids = unique(role_key(r) for r in roles)
        if not role_ids:
            raise InvalidArgument("At least one role is required")

        with self._lock:
            for role_id in role_ids:
                self._require(role_id)

            held = self._load_user(user)
            drop = [r for r in role_ids if r in held]
            if not drop:
                return

            self._call_store("unrelate", user, *drop)
            held.difference_update(drop)
            for role_id in drop:
                self.roles[role_id].users.discard(user)

        logger.info(
            f"Revoked roles {drop} from user '{user}'",
            extra={"user_id": user, "roles": drop},
        )

    def user_roles(self, uid: RoleRef) -> Set[int]:
        """Role ids held by a user, loading them from the store if needed."""
        with self._lock:
            return set(self._load_user(self._user_key(uid)))

    def forget_user(self, uid: RoleRef) -> bool:
        """Drop a user's cached relations so the next reference reloads them.

        Role membership loaded from the store is kept, so count limits and
        exclusion checks still see the user.
        """
        user = self._user_key(uid)
        with self._lock:
            return self.relations.pop(user, None) is not None

    # Permission Checking
    def is_allow(self, uid: RoleRef, resource: ResourceRef) -> bool:
        """
        Check whether a user may access a resource.

        Access is allowed if any role the user holds was granted the resource.
        Unknown users, roles and resources are simply not allowed.

        Raises:
            StoreError: If the user's relations cannot be loaded.
        """
        try:
            user = self._user_key(uid)
            key = resource_key(resource)
        except InvalidArgument:
            return False

        with self._lock:
            self._permission_checks += 1

            if self.hook is not None:
                decision = self.hook(user, key)
                if decision is not Decision.CONTINUE:
                    logger.debug(
                        "Hook decided %s for user '%s' on '%s'", decision.value, user, key
                    )
                    return decision is Decision.ALLOW

            held = self._load_user(user)
            allowed = any(key in self.roles[r].resources for r in held)

        if self.settings.debug:
            logger.debug(
                f"Permission check for '{user}' on '{key}' -> "
                f"{'ALLOWED' if allowed else 'DENIED'}"
            )
        return allowed

    def role_allows(self, role: RoleRef, resource: ResourceRef) -> bool:
        """Check whether a role was granted a resource."""
        try:
            key = resource_key(resource)
            with self._lock:
                found = self._find(role)
                return found is not None and key in found.resources
        except InvalidArgument:
            return False

    # Statistics and Monitoring
    def get_stats(self) -> Dict[str, Any]:
        """
        Get engine statistics.

        Returns:
            Dictionary containing role, user and check counters.
        """
        with self._lock:
            role_usage = {r.id: len(r.users) for r in self.roles.values()}
            return {
                "roles_count": len(self.roles),
                "resources_count": len(self.resources),
                "cached_users": len(self.relations),
                "permission_checks": self._permission_checks,
                "role_usage": role_usage,
                "uptime_seconds": (
                    datetime.now(timezone.utc) - self._created_at
                ).total_seconds(),
                "created_at": self._created_at.isoformat(),
            }

    def health_check(self) -> Dict[str, Any]:
        """
        Verify the in-memory invariants.

        Returns:
            Dictionary with health status and any issues found.
        """
        issues = []

        with self._lock:
            try:
                self._validate_graph(self.roles)
            except InvalidArgument as e:
                issues.append(f"Role graph issue: {e}")

            for role in self.roles.values():
                if role.count > 0 and len(role.users) > role.count:
                    issues.append(
                        f"Role {role.id} has {len(role.users)} users, cap {role.count}"
                    )

            for uid, held in self.relations.items():
                for a in held:
                    for b in held:
                        if a < b and self._excluded(a, b):
                            issues.append(
                                f"User '{uid}' holds exclusive roles {a} and {b}"
                            )

        return {
            "status": "healthy" if not issues else "unhealthy",
            "issues": issues,
            "checked_at": datetime.now(timezone.utc).isoformat(),
        }
