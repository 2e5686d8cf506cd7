"""Services shared by the retrieval orchestrator: caching, pagination and admission control."""

from .admission import AdmissionController
from .cache_service import MemoryCacheBackend, RedisCacheBackend, ResultCache
from .pagination import Paginator


__all__ = [
    "AdmissionController",
    "MemoryCacheBackend",
    "Paginator",
    "RedisCacheBackend",
    "ResultCache",
]
