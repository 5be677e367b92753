import threading
from typing import Dict, List, Optional, Set

from ..rbac.models import RoleRecord
from .base import Store


class MemoryStore(Store):
    """Thread-safe in-memory store suitable for tests and single-process use.

    Nothing survives the process; build a new engine on the same instance to
    simulate a restart.
    """

    def __init__(self):
        self._roles: Dict[int, RoleRecord] = {}
        self._relations: Dict[str, Set[int]] = {}
        self._lock = threading.RLock()

    def load_roles(self) -> List[RoleRecord]:
        with self._lock:
            return [record.model_copy(deep=True) for record in self._roles.values()]

    def add_role(
        self, role_id: int, count: int, parent: Optional[int], *excludes: int
    ) -> None:
        with self._lock:
            self._roles[role_id] = RoleRecord(
                id=role_id, count=count, parent=parent, excludes=list(excludes)
            )

    def del_role(self, role_id: int) -> None:
        with self._lock:
            self._roles.pop(role_id, None)
            for record in self._roles.values():
                if role_id in record.excludes:
                    record.excludes = [r for r in record.excludes if r != role_id]
            for roles in self._relations.values():
                roles.discard(role_id)

    def set_count(self, role_id: int, count: int) -> None:
        with self._lock:
            self._roles[role_id].count = count

    def set_exclude(self, role_id: int, *excludes: int) -> None:
        with self._lock:
            self._roles[role_id].excludes = list(excludes)

    def add_resource(self, role_id: int, *resources: str) -> None:
        with self._lock:
            record = self._roles[role_id]
            for resource in resources:
                if resource not in record.resources:
                    record.resources.append(resource)

    def del_resource(self, role_id: int, *resources: str) -> None:
        with self._lock:
            record = self._roles[role_id]
            record.resources = [r for r in record.resources if r not in resources]

    def relate(self, uid: str, *role_ids: int) -> None:
        with self._lock:
            held = self._relations.setdefault(uid, set())
            for role_id in role_ids:
                held.add(role_id)
                record = self._roles[role_id]
                if uid not in record.users:
                    record.users.append(uid)

    def unrelate(self, uid: str, *role_ids: int) -> None:
        with self._lock:
            held = self._relations.get(uid, set())
            for role_id in role_ids:
                held.discard(role_id)
                record = self._roles.get(role_id)
                if record is not None and uid in record.users:
                    record.users.remove(uid)

    def load_relate(self, uid: str) -> List[int]:
        with self._lock:
            return sorted(self._relations.get(uid, set()))
