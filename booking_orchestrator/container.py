"""Wiring: build a ready ``BookingOrchestrator`` from config and the seed file.

Everything external can be passed in (tests hand over fake models, a fake
embedder and a local Qdrant); whatever is not passed is built from
``config``.  The schedule store and the conversation state store are
Supabase when ``SUPABASE_URL`` and ``SUPABASE_KEY`` are set; otherwise
conversation state stays in memory and schedules come from the in-process
store seeded from the same JSON file as the clinic directory.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from langchain_core.language_models import BaseChatModel

from booking_orchestrator.agent import BookingAgent
from booking_orchestrator.config import SUPABASE_KEY, SUPABASE_URL
from booking_orchestrator.orchestrator import BookingOrchestrator
from booking_orchestrator.services.catalog_mapper import CatalogMapper, MappingKind
from booking_orchestrator.services.clinic_directory import DEFAULT_SEED_PATH, ClinicDirectory
from booking_orchestrator.services.conversation_state import (
    ConversationStateStore,
    build_supabase_state_store,
)
from booking_orchestrator.services.embeddings import EmbeddingClient, build_embedding_client
from booking_orchestrator.services.intent_router import IntentRouter
from booking_orchestrator.services.schedule_store import (
    InMemoryScheduleStore,
    ScheduleStore,
    build_supabase_store,
)
from booking_orchestrator.services.semantic_cache import SemanticCache
from booking_orchestrator.services.session_cache import SessionIdentityMap
from booking_orchestrator.services.slot_booking import SlotBookingService
from booking_orchestrator.services.spam_filter import SpamScorer
from booking_orchestrator.services.vector_store import VectorStore, build_vector_store
from booking_orchestrator.tools.context import ToolContext
from booking_orchestrator.tools.registry import build_tool_table

logger = logging.getLogger(__name__)


def load_seed(path: Path = DEFAULT_SEED_PATH) -> dict[str, Any]:
    with open(path, encoding="utf-8") as fh:
        return json.load(fh)


def seed_collections(
    seed: dict[str, Any],
    directory: ClinicDirectory,
    mapper: CatalogMapper,
    spam_scorer: SpamScorer,
) -> int:
    """Load off-topic exemplars and catalog mapping rows into the vector store.

    Mapping rows name their target by id; service rows are filed under the
    service's specialty so ``map_service`` can filter by parent.
    """
    stored = spam_scorer.add_irrelevant_examples(seed.get("irrelevant_questions", []))

    for row in seed.get("specialty_mappings", []):
        specialty = directory.get_specialty(row["target_id"])
        if specialty is None:
            logger.warning("Skipping specialty mapping %r: unknown target", row.get("text"))
            continue
        mapper.add_mapping(
            MappingKind.SPECIALTY, row["text"], specialty.id, specialty.name,
            priority=row.get("priority", 0), note=row.get("note", ""),
        )
        stored += 1

    for row in seed.get("service_mappings", []):
        service = directory.get_service(row["target_id"])
        if service is None:
            logger.warning("Skipping service mapping %r: unknown target", row.get("text"))
            continue
        mapper.add_mapping(
            MappingKind.SERVICE, row["text"], service.id, service.name,
            priority=row.get("priority", 0), parent_id=service.specialty_id,
        )
        stored += 1

    for row in seed.get("doctor_mappings", []):
        doctor = directory.get_doctor(row["target_id"])
        if doctor is None:
            logger.warning("Skipping doctor mapping %r: unknown target", row.get("text"))
            continue
        mapper.add_mapping(
            MappingKind.DOCTOR, row["text"], doctor.id, doctor.full_name,
            priority=row.get("priority", 0), parent_id=doctor.specialty_id,
        )
        stored += 1

    logger.info("Vector collections seeded with %d rows", stored)
    return stored


def _build_schedule_store(seed: dict[str, Any]) -> ScheduleStore:
    if SUPABASE_URL and SUPABASE_KEY:
        return build_supabase_store(SUPABASE_URL, SUPABASE_KEY)
    return InMemoryScheduleStore.from_seed(seed)


def _build_state_store() -> ConversationStateStore:
    if SUPABASE_URL and SUPABASE_KEY:
        return build_supabase_state_store(SUPABASE_URL, SUPABASE_KEY)
    return ConversationStateStore()


def build_orchestrator(
    seed_path: Path = DEFAULT_SEED_PATH,
    *,
    llm: BaseChatModel | None = None,
    router_llm: BaseChatModel | None = None,
    embeddings: EmbeddingClient | None = None,
    vector_store: VectorStore | None = None,
    schedule_store: ScheduleStore | None = None,
    sessions: SessionIdentityMap | None = None,
    state_store: ConversationStateStore | None = None,
    seed_vectors: bool = True,
) -> BookingOrchestrator:
    seed = load_seed(seed_path)
    directory = ClinicDirectory.from_seed(seed)

    embeddings = embeddings or build_embedding_client()
    vector_store = vector_store or build_vector_store()
    schedule_store = schedule_store or _build_schedule_store(seed)
    sessions = sessions or SessionIdentityMap()
    state_store = state_store or _build_state_store()

    mapper = CatalogMapper(directory, embeddings, vector_store)
    spam_scorer = SpamScorer(embeddings, vector_store)
    if seed_vectors:
        seed_collections(seed, directory, mapper, spam_scorer)

    ctx = ToolContext(
        directory=directory,
        mapper=mapper,
        booking=SlotBookingService(schedule_store, directory),
        sessions=sessions,
    )
    agent = BookingAgent(build_tool_table(ctx), llm)

    orchestrator = BookingOrchestrator(
        spam_scorer=spam_scorer,
        cache=SemanticCache(embeddings, vector_store),
        router=IntentRouter(router_llm),
        mapper=mapper,
        state_store=state_store,
        sessions=sessions,
        agent=agent,
    )
    logger.info("Booking orchestrator ready (%d tools)", len(agent.tool_table))
    return orchestrator
