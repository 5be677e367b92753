"""
Engine setup for rolegate.

This module wires Settings, a Store backend and the RBAC engine together.
"""

import logging
from typing import Optional

from .rbac.engine import RBACEngine
from .rbac.models import ResolutionHook
from .settings import Settings
from .stores import Store, create_store

logger = logging.getLogger(__name__)


def setup_engine(
    settings: Optional[Settings] = None,
    store: Optional[Store] = None,
    hook: Optional[ResolutionHook] = None,
) -> RBACEngine:
    """
    Build a store-backed RBAC engine.

    This function:
    1. Validates the configuration
    2. Creates the configured Store backend, unless one is given
    3. Builds the engine, which loads every role from the store

    Args:
        settings: Configuration settings. If None, default settings are used.
        store: Store to use instead of the configured backend.
        hook: Optional pre-resolution hook passed to the engine.

    Returns:
        The loaded RBACEngine.

    Raises:
        ValueError: If the configuration is invalid.
        LookupError: If the configured backend is unknown.
        StoreError: If the roles cannot be loaded.

    Example:
        >>> from rolegate import Settings, setup_engine
        >>> engine = setup_engine(Settings(store_backend="memory"))
    """
    settings = settings or Settings()

    try:
        settings.validate_configuration()
    except ValueError as e:
        logger.error(f"Configuration validation failed: {e}")
        raise

    if store is None:
        store = create_store(settings)
        logger.info(f"Using store backend: {settings.store_backend}")

    engine = RBACEngine(store, settings=settings, hook=hook)
    logger.info("RBAC engine configured")
    return engine
