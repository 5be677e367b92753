from .base import Store
from .memory import MemoryStore
from .redis_store import RedisStore
from .registry import create_store, get_store_factory, register_store

register_store("memory", lambda settings: MemoryStore())
register_store(
    "redis",
    lambda settings: RedisStore(
        redis_url=settings.redis_url, namespace=settings.redis_namespace
    ),
)

__all__ = [
    "Store",
    "MemoryStore",
    "RedisStore",
    "create_store",
    "get_store_factory",
    "register_store",
]
