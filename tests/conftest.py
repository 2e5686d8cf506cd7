"""Shared test fixtures and configuration."""

from datetime import datetime, timedelta, timezone
import os

import pytest


# Test environment overriding every setting the suite depends on
TEST_ENV = {
    "RETRIEVAL_CACHE_ENABLED": "true",
    "RETRIEVAL_CACHE_BACKEND": "memory",
    "RETRIEVAL_CACHE_TTL_SECONDS": "300",
    "RETRIEVAL_MAX_CONCURRENT_SEARCHES": "50",
    "RETRIEVAL_MAX_CONCURRENT_INDEXING": "5",
    "RETRIEVAL_LOG_LEVEL": "info",
    "RETRIEVAL_LOG_JSON": "false",
    "RETRIEVAL_LOG_CONFIGURE": "false",
}


for key, value in TEST_ENV.items():
    os.environ[key] = value

from docs_retrieval.adapters.document_store import InMemoryDocumentStore
from docs_retrieval.config import Settings
from docs_retrieval.domain.model import Document
from docs_retrieval.search.indexing import index_document
from docs_retrieval.service_layer.retrieval_service import RetrievalService


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Reset retrieval environment variables before each test."""
    for key in list(os.environ):
        if key.startswith("RETRIEVAL_") and key not in TEST_ENV:
            monkeypatch.delenv(key, raising=False)
    for key, value in TEST_ENV.items():
        monkeypatch.setenv(key, value)


class FakeClock:
    """Manually advanced wall clock for TTL tests."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(_env_file=None)


@pytest.fixture
def make_document():
    """Build an indexed document; keyword arguments override defaults."""

    def _make(title="Sample", content="Sample content for testing purposes", owner_id="user-1", **kwargs):
        document = Document(owner_id=owner_id, title=title, content=content, **kwargs)
        return index_document(document)

    return _make


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def service(store, settings):
    return RetrievalService(store, settings=settings)


@pytest.fixture
def last_year():
    return datetime.now(timezone.utc) - timedelta(days=365)
