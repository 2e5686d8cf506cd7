"""Service layer - use case orchestration over the store, engine and services."""

from .retrieval_service import RetrievalService


__all__ = [
    "RetrievalService",
]
