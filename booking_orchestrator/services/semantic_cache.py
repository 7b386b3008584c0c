"""Semantic answer cache over the ``common_answers`` collection.

A cached answer is reused when a new utterance embeds within cosine 0.95 of
a stored question.  Because the answer was produced for *someone else*, the
cache is guarded on both sides by the specificity heuristic
(``contains_specific_data``): nothing that looks like a booking code, a
person-bound date or slot, a prescription/record/payment identifier, or a
money amount is ever written, and a stored entry that matches it is never
served.

The heuristic is a regex policy and cannot recognise every way personal
data might be phrased; it narrows the leak surface, it does not close it.
"""

from __future__ import annotations

import hashlib
import logging
import re

from booking_orchestrator.services.embeddings import EmbeddingClient, EmbeddingError
from booking_orchestrator.services.metrics import metrics
from booking_orchestrator.services.slot_booking import find_reference_code_in_text
from booking_orchestrator.services.spam_filter import SpamZone
from booking_orchestrator.services.vector_store import Collection, VectorStore, VectorStoreError

logger = logging.getLogger(__name__)

CACHE_THRESHOLD = 0.95

# ── Specificity heuristic ────────────────────────────────────────────

_BOOKING_CODE = re.compile(r"\bAPT-[A-Z0-9]{4,}\b", re.IGNORECASE)
_PRESCRIPTION_CODE = re.compile(r"\bPRS-[A-Z0-9]{4,}\b", re.IGNORECASE)
_RECORD_OR_PAYMENT_ID = re.compile(
    r"\b(?:MR|HSBA|BN|PAY|TXN|INV|HD|ORD)[-_]?[A-Z0-9]*\d[A-Z0-9]{3,}\b"
    r"|\b(?:mã (?:bệnh án|bệnh nhân|hồ sơ|giao dịch|thanh toán|hóa đơn))\s*[:#]?\s*[A-Z0-9-]{4,}",
    re.IGNORECASE,
)
_MONEY = re.compile(
    r"\d[\d.,]*\s*(?:đ|₫|vnđ|vnd|đồng|usd)(?!\w)"
    r"|\$\s?\d[\d.,]*",
    re.IGNORECASE,
)
_DATE = re.compile(r"\b\d{1,2}[/-]\d{1,2}[/-]\d{2,4}\b")
_SLOT_CODE = re.compile(r"\bL\d{2}\b")
_SCHEDULING_VOCAB = re.compile(
    r"(lịch|hẹn|khám|đặt|giờ|slot|appointment|booking|booked|schedule|\b\d{1,2}:\d{2}\b)",
    re.IGNORECASE,
)


def contains_specific_data(text: str | None) -> bool:
    """True if *text* looks like it carries one person's private data."""
    if not text:
        return False
    if _BOOKING_CODE.search(text) or _PRESCRIPTION_CODE.search(text):
        return True
    if _RECORD_OR_PAYMENT_ID.search(text) or _MONEY.search(text):
        return True
    scheduling = _SCHEDULING_VOCAB.search(text) is not None
    if scheduling and (_DATE.search(text) or _SLOT_CODE.search(text)):
        return True
    return False


# ── Turn eligibility ─────────────────────────────────────────────────

_CONFIRMATIONS = {
    "ok", "oke", "okay", "okie", "ừ", "ừm", "uh", "vâng", "dạ", "có", "không",
    "đúng", "đúng rồi", "được", "được rồi", "rồi", "đồng ý", "chắc chắn",
    "yes", "no", "yep", "sure", "cảm ơn", "thanks", "thank you",
}

_TRANSACTIONAL_KEYWORDS = (
    # appointments
    "đặt lịch", "đặt hẹn", "lịch hẹn", "lịch của tôi", "lịch khám của tôi",
    "hủy lịch", "huỷ lịch", "đổi lịch", "dời lịch", "chọn l",
    "appointment", "booking", "book ", "reschedule", "cancel",
    # prescriptions
    "đơn thuốc", "toa thuốc", "kê đơn", "prescription",
    # billing
    "hóa đơn", "hoá đơn", "thanh toán", "viện phí", "hoàn tiền",
    "payment", "invoice", "bill", "refund",
)
_TRAILING_PUNCT = re.compile(r"[\s.!?,~]+$")


def is_short_confirmation(text: str) -> bool:
    normalized = _TRAILING_PUNCT.sub("", text.strip().lower())
    return normalized in _CONFIRMATIONS


def is_cache_eligible(text: str, zone: SpamZone) -> bool:
    """Whether a turn may read from or write to the semantic cache."""
    if zone is not SpamZone.NORMAL or not text or not text.strip():
        return False
    if is_short_confirmation(text):
        return False
    if find_reference_code_in_text(text):
        return False
    lowered = f"{text.lower()} "
    if any(keyword in lowered for keyword in _TRANSACTIONAL_KEYWORDS):
        return False
    return not contains_specific_data(text)


def _entry_id(query: str) -> str:
    normalized = " ".join(query.lower().split())
    return hashlib.sha1(normalized.encode("utf-8")).hexdigest()


class SemanticCache:
    """Read/write layer over the ``common_answers`` collection."""

    def __init__(self, embeddings: EmbeddingClient, vector_store: VectorStore) -> None:
        self._embeddings = embeddings
        self._vectors = vector_store

    def find(self, query: str) -> str | None:
        """Return a safe cached answer for *query*, or ``None``."""
        if contains_specific_data(query):
            return None
        try:
            vector = self._embeddings.embed(query)
            hits = self._vectors.search(
                Collection.ANSWERS, vector, limit=1, score_threshold=CACHE_THRESHOLD,
            )
        except (EmbeddingError, VectorStoreError) as exc:
            logger.warning("Semantic cache lookup failed, treating as miss: %s", exc)
            metrics.record_outcome("CacheLookup", "error")
            return None

        if not hits:
            metrics.record_outcome("CacheLookup", "miss")
            return None

        hit = hits[0]
        answer = hit.payload.get("answer")
        stored_query = hit.payload.get("query")
        if not answer or contains_specific_data(answer) or contains_specific_data(stored_query):
            logger.warning("Refusing to serve cached entry %s: looks personal", hit.id)
            metrics.record_outcome("CacheLookup", "rejected")
            return None

        logger.info("Semantic cache hit (%.3f) for %r", hit.score, query[:60])
        metrics.record_outcome("CacheLookup", "hit")
        return answer

    def store(self, query: str, answer: str) -> bool:
        """Write a Q/A pair if neither side looks personal.  Returns ``True`` if stored."""
        if not query or not answer:
            return False
        if contains_specific_data(query) or contains_specific_data(answer):
            logger.debug("Not caching %r: specific data detected", query[:60])
            return False
        try:
            vector = self._embeddings.embed(query)
            self._vectors.upsert(
                Collection.ANSWERS, _entry_id(query), vector,
                {"query": query, "answer": answer},
            )
        except (EmbeddingError, VectorStoreError) as exc:
            logger.warning("Semantic cache write failed: %s", exc)
            return False
        logger.info("Cached answer for %r", query[:60])
        return True
