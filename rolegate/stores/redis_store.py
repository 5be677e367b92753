import json
import logging
from typing import List, Optional

try:
    import redis

    REDIS_AVAILABLE = True
except ImportError:
    REDIS_AVAILABLE = False
    redis = None

from ..rbac.models import RoleRecord
from .base import Store

logger = logging.getLogger(__name__)


def _text(val) -> str:
    # redis returns bytes unless the client was built with decode_responses
    if isinstance(val, (bytes, bytearray)):
        return val.decode("utf-8")
    return val


class RedisStore(Store):
    """Redis-backed store.

    Layout, every key prefixed with ``namespace``:
      - ``{ns}:roles``: set of role ids
      - ``{ns}:role:{id}``: hash with ``count``, ``parent`` and ``excludes`` (JSON)
      - ``{ns}:role:{id}:resources``: set of granted resources
      - ``{ns}:role:{id}:users``: set of associated user ids
      - ``{ns}:user:{uid}``: set of role ids held by the user

    Writes touching more than one key go through a transactional pipeline.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        namespace: str = "rolegate",
        client=None,
    ):
        self.redis_url = redis_url
        self.namespace = namespace
        self._client = client

    @property
    def client(self):
        if self._client is None:
            if not REDIS_AVAILABLE:
                raise ImportError(
                    "The 'redis' package is required for RedisStore. "
                    "Install it with: pip install redis"
                )
            self._client = redis.from_url(self.redis_url)
            logger.info("Connected Redis store at %s", self.redis_url)
        return self._client

    def _roles_key(self) -> str:
        return f"{self.namespace}:roles"

    def _role_key(self, role_id: int) -> str:
        return f"{self.namespace}:role:{role_id}"

    def _resources_key(self, role_id: int) -> str:
        return f"{self.namespace}:role:{role_id}:resources"

    def _users_key(self, role_id: int) -> str:
        return f"{self.namespace}:role:{role_id}:users"

    def _user_key(self, uid: str) -> str:
        return f"{self.namespace}:user:{uid}"

    def _role_ids(self) -> List[int]:
        return sorted(int(_text(v)) for v in self.client.smembers(self._roles_key()))

    def _excludes(self, role_id: int, client=None) -> List[int]:
        client = self.client if client is None else client
        raw = client.hget(self._role_key(role_id), "excludes")
        return json.loads(_text(raw)) if raw else []

    def load_roles(self) -> List[RoleRecord]:
        records = []
        for role_id in self._role_ids():
            data = {
                _text(k): _text(v)
                for k, v in self.client.hgetall(self._role_key(role_id)).items()
            }
            parent = data.get("parent")
            records.append(
                RoleRecord(
                    id=role_id,
                    count=int(data.get("count") or 0),
                    parent=int(parent) if parent else None,
                    excludes=json.loads(data.get("excludes") or "[]"),
                    resources=sorted(
                        _text(v)
                        for v in self.client.smembers(self._resources_key(role_id))
                    ),
                    users=sorted(
                        _text(v) for v in self.client.smembers(self._users_key(role_id))
                    ),
                )
            )
        return records

    def add_role(
        self, role_id: int, count: int, parent: Optional[int], *excludes: int
    ) -> None:
        pipe = self.client.pipeline(transaction=True)
        pipe.sadd(self._roles_key(), role_id)
        pipe.hset(
            self._role_key(role_id),
            mapping={
                "count": count,
                "parent": "" if parent is None else parent,
                "excludes": json.dumps(list(excludes)),
            },
        )
        pipe.execute()

    def del_role(self, role_id: int) -> None:
        roles_key = self._roles_key()
        users_key = self._users_key(role_id)

        def remove(pipe):
            # reads run immediately while the keys are watched
            users = [_text(v) for v in pipe.smembers(users_key)]
            others = [
                int(_text(v))
                for v in pipe.smembers(roles_key)
                if int(_text(v)) != role_id
            ]
            if others:
                pipe.watch(*[self._role_key(other) for other in others])
            excludes = {other: self._excludes(other, pipe) for other in others}

            pipe.multi()
            pipe.srem(roles_key, role_id)
            pipe.delete(
                self._role_key(role_id),
                self._resources_key(role_id),
                users_key,
            )
            for uid in users:
                pipe.srem(self._user_key(uid), role_id)
            for other, current in excludes.items():
                if role_id in current:
                    kept = [r for r in current if r != role_id]
                    pipe.hset(self._role_key(other), "excludes", json.dumps(kept))

        self.client.transaction(remove, roles_key, users_key)

    def set_count(self, role_id: int, count: int) -> None:
        self.client.hset(self._role_key(role_id), "count", count)

    def set_exclude(self, role_id: int, *excludes: int) -> None:
        self.client.hset(
            self._role_key(role_id), "excludes", json.dumps(list(excludes))
        )

    def add_resource(self, role_id: int, *resources: str) -> None:
        if resources:
            self.client.sadd(self._resources_key(role_id), *resources)

    def del_resource(self, role_id: int, *resources: str) -> None:
        if resources:
            self.client.srem(self._resources_key(role_id), *resources)

    def relate(self, uid: str, *role_ids: int) -> None:
        if not role_ids:
            return
        pipe = self.client.pipeline(transaction=True)
        pipe.sadd(self._user_key(uid), *role_ids)
        for role_id in role_ids:
            pipe.sadd(self._users_key(role_id), uid)
        pipe.execute()

    def unrelate(self, uid: str, *role_ids: int) -> None:
        if not role_ids:
            return
        pipe = self.client.pipeline(transaction=True)
        pipe.srem(self._user_key(uid), *role_ids)
        for role_id in role_ids:
            pipe.srem(self._users_key(role_id), uid)
        pipe.execute()

    def load_relate(self, uid: str) -> List[int]:
        return sorted(int(_text(v)) for v in self.client.smembers(self._user_key(uid)))
