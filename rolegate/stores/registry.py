from typing import Callable, Dict

from ..settings import Settings
from .base import Store

StoreFactory = Callable[[Settings], Store]

_STORES: Dict[str, StoreFactory] = {}


def register_store(name: str, factory: StoreFactory):
    _STORES[name] = factory


def get_store_factory(name: str) -> StoreFactory:
    factory = _STORES.get(name)
    if not factory:
        raise LookupError(f"Unknown store backend: {name}")
    return factory


def create_store(settings: Settings) -> Store:
    return get_store_factory(settings.store_backend)(settings)
