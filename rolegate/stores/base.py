from abc import ABC, abstractmethod
from typing import List, Optional

from ..rbac.models import RoleRecord


class Store(ABC):
    """Durable persistence for roles, grants and user-role relations.

    The engine treats the Store as the source of truth at startup and as the
    write-through target of every mutation. The engine validates every call
    before making it, so implementations may assume that referenced roles
    exist, that ``add_resource``/``relate`` never receive values already
    stored, and that ``del_role`` is never called for a role with children.

    Implementations raise whatever their backend raises; the engine wraps
    those errors in ``StoreError``.
    """

    @abstractmethod
    def load_roles(self) -> List[RoleRecord]:
        """Return every stored role, including its resources and users."""
        raise NotImplementedError()

    @abstractmethod
    def add_role(
        self, role_id: int, count: int, parent: Optional[int], *excludes: int
    ) -> None:
        raise NotImplementedError()

    @abstractmethod
    def del_role(self, role_id: int) -> None:
        """Delete a role, its grants, its user relations and references to it
        from other roles' exclude lists."""
        raise NotImplementedError()

    @abstractmethod
    def set_count(self, role_id: int, count: int) -> None:
        raise NotImplementedError()

    @abstractmethod
    def set_exclude(self, role_id: int, *excludes: int) -> None:
        raise NotImplementedError()

    @abstractmethod
    def add_resource(self, role_id: int, *resources: str) -> None:
        raise NotImplementedError()

    @abstractmethod
    def del_resource(self, role_id: int, *resources: str) -> None:
        raise NotImplementedError()

    @abstractmethod
    def relate(self, uid: str, *role_ids: int) -> None:
        raise NotImplementedError()

    @abstractmethod
    def unrelate(self, uid: str, *role_ids: int) -> None:
        raise NotImplementedError()

    @abstractmethod
    def load_relate(self, uid: str) -> List[int]:
        """Return the ids of the roles associated with ``uid``."""
        raise NotImplementedError()
