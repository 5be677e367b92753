"""
Tests for the store-backed RBAC engine
"""

import threading

import pytest

from rolegate.errors import (
    AlreadyExists,
    ConflictingAssociation,
    DependentStillAllowed,
    ExcludeNotFound,
    HasDependents,
    InvalidArgument,
    NotSubsetOfParent,
    ParentNotFound,
    ResourceNotFound,
    RoleNotFound,
    StoreError,
    TooManyUsers,
)
from rolegate.rbac import Decision, RBACEngine
from rolegate.settings import Settings
from rolegate.stores.memory import MemoryStore


class TestRoleManagement:
    """Test role creation, deletion, counts and exclusions"""

    def setup_method(self):
        self.store = MemoryStore()
        self.engine = RBACEngine(self.store)

    def test_new_role_allocates_increasing_ids(self):
        first = self.engine.new_role()
        second = self.engine.new_role(5, first)
        assert second > first
        assert self.engine.list_roles() == [first, second]

        role = self.engine.get_role(second)
        assert role.parent == first
        assert role.count == 5
        assert role.resources == set()

    def test_new_role_validation(self):
        with pytest.raises(InvalidArgument):
            self.engine.new_role(-1)
        with pytest.raises(ParentNotFound):
            self.engine.new_role(0, 99)
        with pytest.raises(ExcludeNotFound):
            self.engine.new_role(0, None, 99)
        assert self.engine.list_roles() == []

    def test_new_role_persists(self):
        parent = self.engine.new_role()
        other = self.engine.new_role()
        child = self.engine.new_role(2, parent, other, other)

        records = {r.id: r for r in self.store.load_roles()}
        assert records[child].parent == parent
        assert records[child].count == 2
        assert records[child].excludes == [other]

    def test_del_role(self):
        parent = self.engine.new_role()
        child = self.engine.new_role(0, parent)

        with pytest.raises(HasDependents):
            self.engine.del_role(parent)

        self.engine.del_role(child)
        self.engine.del_role(parent)
        self.engine.del_role(12345)  # unknown is a no-op
        assert self.engine.list_roles() == []
        assert self.store.load_roles() == []

    def test_del_role_cascades_relations_and_excludes(self):
        a = self.engine.new_role()
        b = self.engine.new_role(0, None, a)
        self.engine.related("u", a)

        self.engine.del_role(a)
        assert self.engine.user_roles("u") == set()
        assert self.engine.get_role(b).excludes == set()
        assert self.store.load_relate("u") == []

    def test_deleted_ids_are_not_reused(self):
        first = self.engine.new_role()
        second = self.engine.new_role()
        self.engine.del_role(second)
        third = self.engine.new_role()
        assert third not in (first, second)

    def test_set_count(self):
        role = self.engine.new_role()
        self.engine.set_count(role, 3)
        assert self.engine.get_role(role).count == 3

        with pytest.raises(InvalidArgument):
            self.engine.set_count(role, -1)
        with pytest.raises(RoleNotFound):
            self.engine.set_count(999, 1)

    def test_set_exclude(self):
        a = self.engine.new_role()
        b = self.engine.new_role()
        c = self.engine.new_role()

        self.engine.set_exclude(a, b, c, b)
        assert self.engine.get_role(a).excludes == {b, c}

        self.engine.set_exclude(a)
        assert self.engine.get_role(a).excludes == set()

        with pytest.raises(RoleNotFound):
            self.engine.set_exclude(999, a)
        with pytest.raises(ExcludeNotFound):
            self.engine.set_exclude(a, 999)
        with pytest.raises(InvalidArgument):
            self.engine.set_exclude(a, a)

    def test_set_exclude_rejects_existing_conflict(self):
        a = self.engine.new_role()
        b = self.engine.new_role()
        self.engine.related("u", a, b)

        with pytest.raises(ConflictingAssociation):
            self.engine.set_exclude(a, b)
        assert self.engine.get_role(a).excludes == set()

    def test_get_role_returns_copy(self):
        role = self.engine.new_role()
        copy = self.engine.get_role(role)
        copy.resources.add("x")
        assert self.engine.role_resources(role) == set()
        assert self.engine.get_role(999) is None


class TestGrants:
    """Test allow/deny under the subset invariant"""

    def setup_method(self):
        self.store = MemoryStore()
        self.engine = RBACEngine(self.store)

    def test_allow_round_trip(self):
        role = self.engine.new_role()
        self.engine.allow(role, "x")
        assert self.engine.role_allows(role, "x")
        assert self.engine.role_resources(role) == {"x"}

    def test_allow_is_idempotent(self):
        role = self.engine.new_role()
        self.engine.allow(role, "x", "x")
        self.engine.allow(role, "x")
        assert self.engine.role_resources(role) == {"x"}
        assert self.store.load_roles()[0].resources == ["x"]

    def test_allow_unknown_role_is_ignored(self):
        self.engine.allow(999, "x")
        self.engine.deny(999, "x")
        assert self.engine.role_resources(999) == set()

    def test_allow_requires_resource(self):
        role = self.engine.new_role()
        with pytest.raises(InvalidArgument):
            self.engine.allow(role)

    def test_child_grant_must_be_subset(self):
        parent = self.engine.new_role()
        child = self.engine.new_role(0, parent)
        self.engine.allow(parent, "x")

        with pytest.raises(NotSubsetOfParent):
            self.engine.allow(child, "x", "y")
        assert self.engine.role_resources(child) == set()

        self.engine.allow(child, "x")
        assert self.engine.role_resources(child) == {"x"}

    def test_scenario_d_deny_blocked_by_dependent(self):
        p = self.engine.new_role()
        self.engine.allow(p, "x")
        c = self.engine.new_role(0, p)
        self.engine.allow(c, "x")

        with pytest.raises(DependentStillAllowed):
            self.engine.deny(p, "x")
        assert self.engine.role_resources(p) == {"x"}

        self.engine.deny(c, "x")
        self.engine.deny(p, "x")
        assert self.engine.role_resources(p) == set()

    def test_deny_checks_whole_subtree(self):
        a = self.engine.new_role()
        b = self.engine.new_role(0, a)
        c = self.engine.new_role(0, b)
        self.engine.allow(a, "x")
        self.engine.allow(b, "x")
        self.engine.allow(c, "x")

        self.engine.deny(c, "x")
        with pytest.raises(DependentStillAllowed):
            self.engine.deny(a, "x")

    def test_deny_skips_resources_not_held(self):
        role = self.engine.new_role()
        self.engine.allow(role, "x")
        self.engine.deny(role, "x", "never-granted")
        assert self.engine.role_resources(role) == set()

    def test_subset_invariant_holds(self):
        parent = self.engine.new_role()
        child = self.engine.new_role(0, parent)
        self.engine.allow(parent, "a", "b", "c")
        self.engine.allow(child, "a", "b")
        self.engine.deny(child, "b")
        self.engine.deny(parent, "b", "c")

        for role_id in self.engine.list_roles():
            role = self.engine.get_role(role_id)
            if role.parent is not None:
                assert role.resources <= self.engine.role_resources(role.parent)

    def test_strict_resources(self):
        engine = RBACEngine(MemoryStore(), settings=Settings(strict_resources=True))
        role = engine.new_role()
        engine.add_resource("x")

        engine.allow(role, "x")
        with pytest.raises(ResourceNotFound):
            engine.allow(role, "y")

    def test_remove_resource_cascades(self):
        parent = self.engine.new_role()
        child = self.engine.new_role(0, parent)
        self.engine.add_resource("x")
        self.engine.allow(parent, "x")
        self.engine.allow(child, "x")

        self.engine.remove_resource("x")
        assert not self.engine.has_resource("x")
        assert self.engine.role_resources(parent) == set()
        assert self.engine.role_resources(child) == set()
        assert all(r.resources == [] for r in self.store.load_roles())

        # removing again is a no-op
        self.engine.remove_resource("x")

    def test_duplicate_resource_registration(self):
        self.engine.add_resource("x")
        with pytest.raises(AlreadyExists):
            self.engine.add_resource("x")
        assert self.engine.list_resources() == ["x"]


class TestUserRoles:
    """Test user association, exclusion and count limits"""

    def setup_method(self):
        self.store = MemoryStore()
        self.engine = RBACEngine(self.store)

    def test_related_and_unrelated(self):
        a = self.engine.new_role()
        b = self.engine.new_role()

        self.engine.related("u", a, b, a)
        assert self.engine.user_roles("u") == {a, b}
        assert self.store.load_relate("u") == sorted([a, b])

        self.engine.related("u", a)  # already held
        self.engine.unrelated("u", a)
        assert self.engine.user_roles("u") == {b}
        assert self.engine.users_of(a) == set()
        assert self.engine.users_of(b) == {"u"}

    def test_unknown_roles_rejected(self):
        a = self.engine.new_role()
        with pytest.raises(RoleNotFound):
            self.engine.related("u", a, 999)
        assert self.engine.user_roles("u") == set()

        with pytest.raises(RoleNotFound):
            self.engine.unrelated("u", 999)

    def test_invalid_user(self):
        a = self.engine.new_role()
        with pytest.raises(InvalidArgument):
            self.engine.related("", a)
        with pytest.raises(InvalidArgument):
            self.engine.related("u")

    def test_scenario_c_mutual_exclusion(self):
        p = self.engine.new_role(0)
        c1 = self.engine.new_role(0, p)
        c2 = self.engine.new_role(0, p, c1)

        self.engine.related("u", c1)
        with pytest.raises(ConflictingAssociation):
            self.engine.related("u", c2)
        assert self.engine.user_roles("u") == {c1}

    def test_exclusion_checked_both_ways(self):
        a = self.engine.new_role()
        b = self.engine.new_role(0, None, a)

        self.engine.related("u", b)
        with pytest.raises(ConflictingAssociation):
            self.engine.related("u", a)

    def test_exclusion_within_one_call(self):
        a = self.engine.new_role()
        b = self.engine.new_role(0, None, a)
        with pytest.raises(ConflictingAssociation):
            self.engine.related("u", a, b)
        assert self.engine.user_roles("u") == set()

    def test_scenario_e_count_limit(self):
        role = self.engine.new_role(2)
        self.engine.related("u1", role)
        self.engine.related("u2", role)

        with pytest.raises(TooManyUsers):
            self.engine.related("u3", role)
        with pytest.raises(TooManyUsers):
            self.engine.set_count(role, 1)

        self.engine.set_count(role, 0)
        self.engine.related("u3", role)
        assert self.engine.users_of(role) == {"u1", "u2", "u3"}

    def test_relations_loaded_lazily(self):
        role = self.engine.new_role()
        self.engine.allow(role, "x")
        self.store.relate("outside", role)

        assert "outside" not in self.engine.relations
        assert self.engine.is_allow("outside", "x")
        assert self.engine.relations["outside"] == {role}

    def test_forget_user(self):
        role = self.engine.new_role()
        self.engine.related("u", role)
        assert self.engine.forget_user("u")
        assert not self.engine.forget_user("u")
        assert self.engine.user_roles("u") == {role}

    def test_forget_user_keeps_count_limit(self):
        role = self.engine.new_role(2)
        self.engine.related("u1", role)
        self.engine.related("u2", role)
        self.engine.forget_user("u1")

        assert self.engine.users_of(role) == {"u1", "u2"}
        with pytest.raises(TooManyUsers):
            self.engine.related("u3", role)
        with pytest.raises(TooManyUsers):
            self.engine.set_count(role, 1)

    def test_forget_user_keeps_exclusion_check(self):
        a = self.engine.new_role()
        b = self.engine.new_role()
        self.engine.related("u", a, b)
        self.engine.forget_user("u")

        with pytest.raises(ConflictingAssociation):
            self.engine.set_exclude(a, b)
        assert self.engine.get_role(a).excludes == set()


class TestPermissionChecking:
    """Test permission resolution for users"""

    def setup_method(self):
        self.store = MemoryStore()
        self.engine = RBACEngine(self.store)

    def test_is_allow_union_of_roles(self):
        a = self.engine.new_role()
        b = self.engine.new_role()
        self.engine.allow(a, "x")
        self.engine.allow(b, "y")
        self.engine.related("u", a, b)

        assert self.engine.is_allow("u", "x")
        assert self.engine.is_allow("u", "y")
        assert not self.engine.is_allow("u", "z")

    def test_allow_then_deny(self):
        role = self.engine.new_role()
        self.engine.related("u", role)
        self.engine.allow(role, "x")
        assert self.engine.is_allow("u", "x")

        self.engine.deny(role, "x")
        assert not self.engine.is_allow("u", "x")

    def test_unknown_subjects_are_denied(self):
        assert not self.engine.is_allow("nobody", "x")
        assert not self.engine.is_allow("", "x")
        assert not self.engine.is_allow("u", "")
        assert not self.engine.is_allow(["u"], "x")
        assert not self.engine.is_allow("u", {"x"})
        assert not self.engine.role_allows([1], "x")
        assert not self.engine.role_allows(999, "x")
        assert self.engine.role_resources(999) == set()

    def test_hook(self):
        role = self.engine.new_role()
        self.engine.allow(role, "x")
        self.engine.related("u", role)

        def hook(uid, resource):
            if uid == "root":
                return Decision.ALLOW
            if resource == "x":
                return Decision.DENY
            return Decision.CONTINUE

        engine = RBACEngine(self.store, hook=hook)
        assert engine.is_allow("root", "anything")
        assert not engine.is_allow("u", "x")

    def test_stats_and_health(self):
        role = self.engine.new_role()
        self.engine.related("u", role)
        self.engine.is_allow("u", "x")

        stats = self.engine.get_stats()
        assert stats["roles_count"] == 1
        assert stats["cached_users"] == 1
        assert stats["permission_checks"] == 1
        assert stats["role_usage"] == {role: 1}

        assert self.engine.health_check()["status"] == "healthy"


class TestPersistence:
    """Test store-first ordering and reload"""

    def test_reload_restores_state(self):
        store = MemoryStore()
        engine = RBACEngine(store)
        parent = engine.new_role()
        child = engine.new_role(1, parent)
        engine.allow(parent, "x")
        engine.allow(child, "x")
        engine.related("u", child)

        restarted = RBACEngine(store)
        assert restarted.list_roles() == [parent, child]
        assert restarted.role_resources(child) == {"x"}
        assert restarted.users_of(child) == {"u"}
        assert restarted.is_allow("u", "x")
        assert restarted.new_role() == child + 1

        # the cap survives a restart
        with pytest.raises(TooManyUsers):
            restarted.related("v", child)

    def test_store_failure_leaves_memory_unchanged(self, failing_store):
        engine = RBACEngine(failing_store)
        role = engine.new_role()
        failing_store.fail_on = {"add_resource", "relate", "add_role", "del_role"}

        with pytest.raises(StoreError) as exc:
            engine.allow(role, "x")
        assert exc.value.operation == "add_resource"
        assert isinstance(exc.value.__cause__, ConnectionError)
        assert engine.role_resources(role) == set()

        with pytest.raises(StoreError):
            engine.related("u", role)
        assert engine.user_roles("u") == set()

        with pytest.raises(StoreError):
            engine.new_role()
        assert engine.list_roles() == [role]

        with pytest.raises(StoreError):
            engine.del_role(role)
        assert engine.list_roles() == [role]

    def test_failed_updates_leave_memory_unchanged(self, failing_store):
        engine = RBACEngine(failing_store)
        a = engine.new_role(3)
        b = engine.new_role()
        engine.allow(a, "x")
        engine.related("u", a)
        failing_store.fail_on = {
            "set_count",
            "set_exclude",
            "del_resource",
            "unrelate",
        }

        with pytest.raises(StoreError) as exc:
            engine.set_count(a, 1)
        assert exc.value.operation == "set_count"
        assert engine.get_role(a).count == 3

        with pytest.raises(StoreError):
            engine.set_exclude(a, b)
        assert engine.get_role(a).excludes == set()
        engine.related("u", b)
        assert engine.user_roles("u") == {a, b}

        with pytest.raises(StoreError):
            engine.deny(a, "x")
        assert engine.role_resources(a) == {"x"}
        assert engine.is_allow("u", "x")

        with pytest.raises(StoreError):
            engine.unrelated("u", a)
        assert engine.user_roles("u") == {a, b}
        assert engine.users_of(a) == {"u"}

    def test_remove_resource_is_all_or_nothing(self, failing_store):
        engine = RBACEngine(failing_store)
        parent = engine.new_role()
        child = engine.new_role(0, parent)
        engine.add_resource("x")
        engine.allow(parent, "x")
        engine.allow(child, "x")
        # the child is stripped first, the parent's removal fails
        failing_store.fail_after = {"del_resource": 1}

        with pytest.raises(StoreError):
            engine.remove_resource("x")
        assert engine.role_resources(child) == {"x"}
        assert engine.role_resources(parent) == {"x"}
        assert engine.has_resource("x")

        # the store was rolled back as well
        restarted = RBACEngine(failing_store)
        assert restarted.role_resources(child) == {"x"}
        assert restarted.role_resources(parent) == {"x"}

        failing_store.fail_after = {}
        engine.remove_resource("x")
        assert engine.role_resources(child) == set()
        assert engine.role_resources(parent) == set()
        assert not engine.has_resource("x")

    def test_validation_happens_before_store(self, failing_store):
        engine = RBACEngine(failing_store)
        parent = engine.new_role()
        child = engine.new_role(0, parent)
        failing_store.calls.clear()

        with pytest.raises(NotSubsetOfParent):
            engine.allow(child, "x")
        with pytest.raises(HasDependents):
            engine.del_role(parent)
        assert failing_store.calls == []

    def test_load_failure_propagates(self, failing_store):
        engine = RBACEngine(failing_store)
        failing_store.fail_on = {"load_relate"}
        with pytest.raises(StoreError):
            engine.is_allow("u", "x")

    def test_inconsistent_store_rejected(self):
        store = MemoryStore()
        store.add_role(1, 0, 2)
        with pytest.raises(InvalidArgument):
            RBACEngine(store)


class TestConcurrency:
    """Test invariants under concurrent mutation"""

    def test_count_limit_under_contention(self):
        engine = RBACEngine(MemoryStore())
        role = engine.new_role(5)
        errors = []

        def join(uid):
            try:
                engine.related(uid, role)
            except TooManyUsers as e:
                errors.append(e)

        threads = [threading.Thread(target=join, args=(f"u{i}",)) for i in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(engine.users_of(role)) == 5
        assert len(errors) == 15
