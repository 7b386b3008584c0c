"""Shared test fixtures for the booking orchestrator test suite."""

from __future__ import annotations

import os
from datetime import date
from unittest.mock import MagicMock

import pytest


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py won't fail on module load.
    """
    os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key-123")
    os.environ.setdefault("GOOGLE_API_KEY", "test-google-key-456")
    os.environ["METRICS_ENABLED"] = "false"
    os.environ.pop("SUPABASE_URL", None)


@pytest.fixture
def embeddings():
    """Deterministic embedder: equal texts embed equally, others are near-orthogonal."""
    from langchain_core.embeddings import DeterministicFakeEmbedding

    from booking_orchestrator.services.embeddings import EmbeddingClient

    return EmbeddingClient(DeterministicFakeEmbedding(size=768), dimension=768)


@pytest.fixture
def vector_store():
    """Qdrant in local in-memory mode with all five collections created."""
    from qdrant_client import QdrantClient

    from booking_orchestrator.services.vector_store import VectorStore

    store = VectorStore(QdrantClient(":memory:"), dimension=768)
    store.ensure_collections()
    return store


@pytest.fixture
def seed():
    from booking_orchestrator.container import load_seed

    return load_seed()


@pytest.fixture
def directory(seed):
    from booking_orchestrator.services.clinic_directory import ClinicDirectory

    return ClinicDirectory.from_seed(seed)


@pytest.fixture
def schedule_store(seed):
    from booking_orchestrator.services.schedule_store import InMemoryScheduleStore

    return InMemoryScheduleStore.from_seed(seed, today=date.today())


@pytest.fixture
def mapper(directory, embeddings, vector_store):
    from booking_orchestrator.services.catalog_mapper import CatalogMapper

    return CatalogMapper(directory, embeddings, vector_store)


def make_router_llm(label: str = "INFORMATION") -> MagicMock:
    from langchain_core.messages import AIMessage

    llm = MagicMock()
    llm.invoke.return_value = AIMessage(content=label)
    return llm


def make_agent_llm(*responses) -> MagicMock:
    """Chat model whose tool-bound ``invoke`` yields *responses* in order."""
    llm = MagicMock()
    bound = llm.bind_tools.return_value
    if len(responses) == 1:
        bound.invoke.return_value = responses[0]
    else:
        bound.invoke.side_effect = list(responses)
    return llm


@pytest.fixture
def build(embeddings, vector_store, schedule_store):
    """Factory for a fully wired orchestrator over fake models."""
    from booking_orchestrator.container import build_orchestrator

    created = []

    def _build(llm, router_llm=None):
        orchestrator = build_orchestrator(
            llm=llm,
            router_llm=router_llm or make_router_llm(),
            embeddings=embeddings,
            vector_store=vector_store,
            schedule_store=schedule_store,
        )
        created.append(orchestrator)
        return orchestrator

    yield _build
    for orchestrator in created:
        orchestrator.close()
