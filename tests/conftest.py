import os
import sys

import fakeredis
import pytest

# Ensure project root is on sys.path so tests can import the package under test
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from rolegate.rbac.engine import RBACEngine  # noqa: E402
from rolegate.stores.memory import MemoryStore  # noqa: E402
from rolegate.stores.redis_store import RedisStore  # noqa: E402


class FailingStore(MemoryStore):
    """MemoryStore whose writes can be made to fail on demand"""

    def __init__(self):
        super().__init__()
        self.fail_on = set()
        # operation -> number of calls that still succeed before it fails
        self.fail_after = {}
        self.calls = []

    def _maybe_fail(self, operation):
        self.calls.append(operation)
        if operation in self.fail_after:
            if self.fail_after[operation] <= 0:
                raise ConnectionError(f"backend unavailable during {operation}")
            self.fail_after[operation] -= 1
        if operation in self.fail_on:
            raise ConnectionError(f"backend unavailable during {operation}")

    def add_role(self, role_id, count, parent, *excludes):
        self._maybe_fail("add_role")
        super().add_role(role_id, count, parent, *excludes)

    def del_role(self, role_id):
        self._maybe_fail("del_role")
        super().del_role(role_id)

    def set_count(self, role_id, count):
        self._maybe_fail("set_count")
        super().set_count(role_id, count)

    def set_exclude(self, role_id, *excludes):
        self._maybe_fail("set_exclude")
        super().set_exclude(role_id, *excludes)

    def add_resource(self, role_id, *resources):
        self._maybe_fail("add_resource")
        super().add_resource(role_id, *resources)

    def del_resource(self, role_id, *resources):
        self._maybe_fail("del_resource")
        super().del_resource(role_id, *resources)

    def relate(self, uid, *role_ids):
        self._maybe_fail("relate")
        super().relate(uid, *role_ids)

    def unrelate(self, uid, *role_ids):
        self._maybe_fail("unrelate")
        super().unrelate(uid, *role_ids)

    def load_relate(self, uid):
        self._maybe_fail("load_relate")
        return super().load_relate(uid)


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def engine(memory_store):
    return RBACEngine(memory_store)


@pytest.fixture
def failing_store():
    return FailingStore()


@pytest.fixture
def redis_client():
    """Isolated fake Redis server per test"""
    server = fakeredis.FakeServer()
    return fakeredis.FakeStrictRedis(server=server)


@pytest.fixture
def redis_store(redis_client):
    return RedisStore(redis_url="redis://fake", namespace="test", client=redis_client)
