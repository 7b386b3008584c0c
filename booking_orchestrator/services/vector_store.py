"""Qdrant-backed vector store with five independent cosine collections.

Collections
-----------
``irrelevant_questions``  off-topic exemplars for the relevance gate
``common_answers``        cached question/answer pairs (semantic cache)
``specialty_mappings``    symptom/alias text → specialty
``service_mappings``      free text → medical service
``doctor_mappings``       free text → doctor

Every collection uses cosine distance over ``EMBEDDING_DIMENSION`` vectors.
Callers deal in plain ids, vectors and payload dicts; Qdrant types stay in
this module.  Any client failure surfaces as ``VectorStoreError`` so the
filter layers can fail open on one exception type.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from qdrant_client import QdrantClient
from qdrant_client.http import models

from booking_orchestrator.config import EMBEDDING_DIMENSION, QDRANT_API_KEY, QDRANT_URL
from booking_orchestrator.services.metrics import timed

logger = logging.getLogger(__name__)


class Collection(StrEnum):
    IRRELEVANT = "irrelevant_questions"
    ANSWERS = "common_answers"
    SPECIALTIES = "specialty_mappings"
    SERVICES = "service_mappings"
    DOCTORS = "doctor_mappings"


class VectorStoreError(Exception):
    """Raised when the vector database cannot serve a request."""


@dataclass(frozen=True)
class SearchHit:
    """One ranked search result."""

    id: str
    score: float
    payload: dict[str, Any]


def _point_id(raw_id: str | int) -> str | int:
    """Qdrant only accepts unsigned ints or UUIDs as point ids."""
    if isinstance(raw_id, int):
        return raw_id
    try:
        return str(uuid.UUID(str(raw_id)))
    except ValueError:
        return str(uuid.uuid5(uuid.NAMESPACE_URL, str(raw_id)))


class VectorStore:
    """Nearest-neighbour search over the five logical collections."""

    def __init__(self, client: QdrantClient, dimension: int = EMBEDDING_DIMENSION) -> None:
        self._client = client
        self.dimension = dimension

    def ensure_collections(self) -> None:
        """Create any missing collection (idempotent)."""
        for collection in Collection:
            try:
                if self._client.collection_exists(collection.value):
                    continue
                self._client.create_collection(
                    collection_name=collection.value,
                    vectors_config=models.VectorParams(
                        size=self.dimension, distance=models.Distance.COSINE,
                    ),
                )
                logger.info("Created Qdrant collection %s", collection.value)
            except Exception as exc:
                raise VectorStoreError(
                    f"Could not prepare collection {collection.value}: {exc}"
                ) from exc

    def upsert(
        self,
        collection: Collection,
        point_id: str | int,
        vector: list[float],
        payload: dict[str, Any],
    ) -> None:
        """Insert or replace one point.  ``payload["_id"]`` keeps the caller's id."""
        point = models.PointStruct(
            id=_point_id(point_id),
            vector=vector,
            payload={**payload, "_id": str(point_id)},
        )
        try:
            with timed("qdrant", f"upsert:{collection.value}"):
                self._client.upsert(collection_name=collection.value, points=[point], wait=True)
        except Exception as exc:
            raise VectorStoreError(f"Upsert into {collection.value} failed: {exc}") from exc

    def search(
        self,
        collection: Collection,
        vector: list[float],
        *,
        limit: int = 1,
        score_threshold: float | None = None,
        match: dict[str, Any] | None = None,
    ) -> list[SearchHit]:
        """Return up to *limit* hits with score ≥ *score_threshold*, best first.

        *match* restricts results to points whose payload fields equal the
        given values (e.g. ``{"parentId": "sp-nhi"}``).
        """
        query_filter = None
        if match:
            query_filter = models.Filter(
                must=[
                    models.FieldCondition(key=key, match=models.MatchValue(value=value))
                    for key, value in match.items()
                ]
            )
        try:
            with timed("qdrant", f"search:{collection.value}"):
                response = self._client.query_points(
                    collection_name=collection.value,
                    query=vector,
                    limit=limit,
                    score_threshold=score_threshold,
                    query_filter=query_filter,
                    with_payload=True,
                )
        except Exception as exc:
            raise VectorStoreError(f"Search in {collection.value} failed: {exc}") from exc

        hits = []
        for point in response.points:
            payload = dict(point.payload or {})
            hit_id = payload.pop("_id", str(point.id))
            hits.append(SearchHit(id=hit_id, score=float(point.score), payload=payload))
        return hits

    def delete(self, collection: Collection, point_id: str | int) -> None:
        try:
            self._client.delete(
                collection_name=collection.value,
                points_selector=models.PointIdsList(points=[_point_id(point_id)]),
                wait=True,
            )
        except Exception as exc:
            raise VectorStoreError(f"Delete from {collection.value} failed: {exc}") from exc


def build_vector_store() -> VectorStore:
    """Connect to the configured Qdrant instance and prepare collections."""
    client = QdrantClient(url=QDRANT_URL, api_key=QDRANT_API_KEY)
    store = VectorStore(client)
    store.ensure_collections()
    logger.info("Vector store ready at %s", QDRANT_URL)
    return store
