"""Resolve free text (symptoms, service names, doctor names) to catalog ids.

Resolution order for every kind:

1. exact, case-insensitive name match against the clinic directory;
2. vector search over the kind's mapping collection, keeping hits at or
   above the kind's threshold (specialty 0.8, service/doctor 0.7), optionally
   restricted to a parent id (e.g. services of one specialty).

Vector hits are ordered by score, with the mapping's ``priority`` breaking
ties between near-equal scores.  Mapping rows are authored by administrators
through ``add_mapping``; inactive rows are ignored.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum

from booking_orchestrator.services.clinic_directory import ClinicDirectory
from booking_orchestrator.services.embeddings import EmbeddingClient, EmbeddingError
from booking_orchestrator.services.vector_store import Collection, VectorStore, VectorStoreError

logger = logging.getLogger(__name__)

# Scores equal to this many decimals count as a tie.
SCORE_TIE_DECIMALS = 2


class MappingKind(StrEnum):
    SPECIALTY = "specialty"
    SERVICE = "service"
    DOCTOR = "doctor"


_COLLECTIONS = {
    MappingKind.SPECIALTY: Collection.SPECIALTIES,
    MappingKind.SERVICE: Collection.SERVICES,
    MappingKind.DOCTOR: Collection.DOCTORS,
}

THRESHOLDS = {
    MappingKind.SPECIALTY: 0.8,
    MappingKind.SERVICE: 0.7,
    MappingKind.DOCTOR: 0.7,
}


@dataclass(frozen=True)
class CatalogMatch:
    target_id: str
    target_name: str
    score: float
    priority: int = 0
    matched_text: str = ""
    exact: bool = False


class CatalogMapper:
    def __init__(
        self,
        directory: ClinicDirectory,
        embeddings: EmbeddingClient,
        vector_store: VectorStore,
    ) -> None:
        self._directory = directory
        self._embeddings = embeddings
        self._vectors = vector_store

    def resolve(
        self,
        kind: MappingKind,
        query: str,
        *,
        parent_id: str | None = None,
        limit: int = 3,
    ) -> list[CatalogMatch]:
        """Best catalog matches for *query*, best first (empty if none)."""
        query = (query or "").strip()
        if not query:
            return []

        exact = self._exact_match(kind, query, parent_id)
        if exact is not None:
            return [exact]
        return self._vector_matches(kind, query, parent_id, limit)

    def map_specialty(self, query: str) -> CatalogMatch | None:
        matches = self.resolve(MappingKind.SPECIALTY, query, limit=1)
        return matches[0] if matches else None

    def specialty_in_text(self, text: str) -> CatalogMatch | None:
        """Specialty named verbatim inside *text*, else the best mapping hit."""
        specialty = self._directory.specialty_mentioned_in(text or "")
        if specialty is not None:
            return CatalogMatch(specialty.id, specialty.name, 1.0, matched_text=specialty.name, exact=True)
        return self.map_specialty(text)

    def map_service(self, query: str, specialty_id: str | None = None) -> CatalogMatch | None:
        matches = self.resolve(MappingKind.SERVICE, query, parent_id=specialty_id, limit=1)
        return matches[0] if matches else None

    def map_doctor(self, query: str, specialty_id: str | None = None) -> CatalogMatch | None:
        matches = self.resolve(MappingKind.DOCTOR, query, parent_id=specialty_id, limit=1)
        return matches[0] if matches else None

    def add_mapping(
        self,
        kind: MappingKind,
        text: str,
        target_id: str,
        target_name: str,
        *,
        priority: int = 0,
        parent_id: str | None = None,
        is_active: bool = True,
        note: str = "",
    ) -> None:
        """Embed and store one administrator-authored mapping row."""
        vector = self._embeddings.embed(text)
        payload = {
            "text": text,
            "targetId": target_id,
            "targetName": target_name,
            "priority": priority,
            "isActive": is_active,
            "note": note,
        }
        if parent_id:
            payload["parentId"] = parent_id
        self._vectors.upsert(_COLLECTIONS[kind], f"{kind}:{target_id}:{text}", vector, payload)
        logger.debug("Mapping stored: %s %r -> %s", kind, text, target_name)

    # ── Internal ─────────────────────────────────────────────────────

    def _exact_match(
        self, kind: MappingKind, query: str, parent_id: str | None,
    ) -> CatalogMatch | None:
        if kind is MappingKind.SPECIALTY:
            specialty = self._directory.specialty_by_name(query)
            if specialty and (parent_id is None or parent_id == specialty.id):
                return CatalogMatch(specialty.id, specialty.name, 1.0, matched_text=query, exact=True)
        elif kind is MappingKind.SERVICE:
            service = self._directory.service_by_name(query, specialty_id=parent_id)
            if service:
                return CatalogMatch(service.id, service.name, 1.0, matched_text=query, exact=True)
        else:
            doctor = self._directory.doctor_by_name(query, specialty_id=parent_id)
            if doctor:
                return CatalogMatch(doctor.id, doctor.full_name, 1.0, matched_text=query, exact=True)
        return None

    def _vector_matches(
        self, kind: MappingKind, query: str, parent_id: str | None, limit: int,
    ) -> list[CatalogMatch]:
        try:
            vector = self._embeddings.embed(query)
            hits = self._vectors.search(
                _COLLECTIONS[kind],
                vector,
                limit=max(limit * 4, 10),
                score_threshold=THRESHOLDS[kind],
                match={"parentId": parent_id} if parent_id else None,
            )
        except (EmbeddingError, VectorStoreError) as exc:
            logger.warning("Catalog lookup for %s unavailable: %s", kind, exc)
            return []

        best: dict[str, CatalogMatch] = {}
        for hit in hits:
            payload = hit.payload
            if payload.get("isActive") is False or not payload.get("targetId"):
                continue
            match = CatalogMatch(
                target_id=payload["targetId"],
                target_name=payload.get("targetName", ""),
                score=hit.score,
                priority=int(payload.get("priority", 0)),
                matched_text=payload.get("text", ""),
            )
            current = best.get(match.target_id)
            if current is None or _rank(match) < _rank(current):
                best[match.target_id] = match

        ranked = sorted(best.values(), key=_rank)
        if ranked:
            logger.debug(
                "Catalog %s %r -> %s (%.3f)", kind, query[:60], ranked[0].target_name, ranked[0].score,
            )
        return ranked[:limit]


def _rank(match: CatalogMatch) -> tuple[float, int, float]:
    return (-round(match.score, SCORE_TIE_DECIMALS), -match.priority, -match.score)
