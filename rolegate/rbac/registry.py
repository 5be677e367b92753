"""Registry of known resource identifiers."""

import logging
import threading
from typing import Iterator, List, Set

from ..errors import AlreadyExists, InvalidArgument
from ..models import ResourceRef, resource_key

logger = logging.getLogger(__name__)


class ResourceRegistry:
    """
    Thread-safe set of registered resource identifiers.

    The registry only tracks existence. Engines owning a registry are
    responsible for stripping grants when a resource is removed.
    """

    def __init__(self):
        self._resources: Set[str] = set()
        self._lock = threading.RLock()

    def add(self, resource: ResourceRef) -> str:
        """
        Register a resource.

        Raises:
            AlreadyExists: If the resource is already registered.
            InvalidArgument: If the identifier is empty.
        """
        key = resource_key(resource)
        with self._lock:
            if key in self._resources:
                raise AlreadyExists(f"Resource '{key}' already exists")
            self._resources.add(key)
        logger.debug("Registered resource '%s'", key)
        return key

    def remove(self, resource: ResourceRef) -> bool:
        """Unregister a resource. Returns False if it was not registered."""
        key = resource_key(resource)
        with self._lock:
            if key not in self._resources:
                return False
            self._resources.discard(key)
        logger.debug("Unregistered resource '%s'", key)
        return True

    def has(self, resource: ResourceRef) -> bool:
        try:
            key = resource_key(resource)
        except InvalidArgument:
            return False
        with self._lock:
            return key in self._resources

    def list(self) -> List[str]:
        with self._lock:
            return sorted(self._resources)

    def missing(self, resources) -> List[str]:
        """Return the identifiers among ``resources`` that are not registered."""
        with self._lock:
            return [r for r in resources if r not in self._resources]

    def __contains__(self, resource) -> bool:
        return self.has(resource)

    def __len__(self) -> int:
        with self._lock:
            return len(self._resources)

    def __iter__(self) -> Iterator[str]:
        return iter(self.list())
