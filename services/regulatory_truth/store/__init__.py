"""
Pipeline Stores
===============

Persistence backends for pipeline state.

Usage:
    from services.regulatory_truth.store import create_store

    store = create_store()  # backend from settings.pipeline.store_backend
"""

from services.regulatory_truth.store.base import PipelineStore
from services.regulatory_truth.store.memory import InMemoryStore
from shared.config import StoreBackend, settings


def create_store(backend: StoreBackend | None = None) -> PipelineStore:
    """Build the configured store backend."""
    backend = backend or settings.pipeline.store_backend
    if backend == StoreBackend.POSTGRES:
        from services.regulatory_truth.store.postgres import PostgresStore

        return PostgresStore()
    return InMemoryStore()


__all__ = ["PipelineStore", "InMemoryStore", "create_store"]
