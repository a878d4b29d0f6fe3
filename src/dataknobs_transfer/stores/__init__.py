"""Document store collaborators and their factory."""

from __future__ import annotations

import logging
from typing import Any

from dataknobs_common import Registry
from dataknobs_config import FactoryBase

from ..exceptions import JobConfigurationError
from .base import BatchWriteResult, DocumentCollection, DocumentSink, DocumentSource, DocumentStore, IndexSpec
from .memory import MemoryCollection, MemoryStore
from .mongo import MongoCollection, MongoStore

logger = logging.getLogger(__name__)

store_registry: Registry[type[DocumentStore]] = Registry("transfer_stores", enable_metrics=True)
store_registry.register("memory", MemoryStore, metadata={"description": "In-process store"})
store_registry.register("mongodb", MongoStore, metadata={"description": "MongoDB via pymongo"})


class StoreFactory(FactoryBase):
    """Create document stores from configuration.

    Example:
        ```python
        factory = StoreFactory()
        store = factory.create(backend="mongodb", uri="mongodb://localhost:27017")
        ```
    """

    def create(self, **config: Any) -> DocumentStore:
        config = dict(config)
        backend = config.pop("backend", "memory").lower()
        if backend in ("mongo", "mongodb"):
            backend = "mongodb"
        store_class = store_registry.get_optional(backend)
        if store_class is None:
            raise JobConfigurationError(
                "backend",
                f"unknown store backend '{backend}'; available: {store_registry.list_keys()}",
            )
        logger.debug(f"Creating {backend} store")
        return store_class.from_config(config)


store_factory = StoreFactory()

__all__ = [
    "BatchWriteResult",
    "DocumentCollection",
    "DocumentSink",
    "DocumentSource",
    "DocumentStore",
    "IndexSpec",
    "MemoryCollection",
    "MemoryStore",
    "MongoCollection",
    "MongoStore",
    "StoreFactory",
    "store_factory",
    "store_registry",
]
