"""Relevance gate and spam scorer.

Every inbound utterance gets a ``SpamAssessment`` before any model call:

* **content score**: off-topic similarity (+0.4), abusive/link/ad regex
  (+0.3, once), abnormal length (+0.1)
* **behavior score**: requests from the same session in the last 60 s,
  tiered >10 → 0.1, >20 → 0.3, >30 → 0.5
* ``spam_score = 0.6 * content + 0.4 * behavior`` clamped to [0, 1]

Zones: ``< 0.3`` normal, ``[0.3, 0.7)`` suspicious, ``>= 0.7`` spam.
A session above the flood ceiling (more than 30 requests in the window) is
always placed in the spam zone.

Infrastructure failures (embedding or vector store down) fail *open*: the
off-topic check contributes nothing and the turn proceeds.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol

from booking_orchestrator.services.embeddings import EmbeddingClient, EmbeddingError
from booking_orchestrator.services.metrics import metrics
from booking_orchestrator.services.session_cache import Clock
from booking_orchestrator.services.vector_store import Collection, VectorStore, VectorStoreError

logger = logging.getLogger(__name__)

IRRELEVANT_THRESHOLD = 0.95
SUSPICIOUS_THRESHOLD = 0.3
SPAM_THRESHOLD = 0.7
BEHAVIOR_WINDOW_SECONDS = 60.0
FLOOD_CEILING = 30

MIN_LENGTH = 3
MAX_LENGTH = 1000

SUSPICIOUS_MESSAGE = (
    "Anh/chị có đang muốn tư vấn y tế hoặc đặt lịch khám không ạ? "
    "Nếu có, vui lòng cho biết triệu chứng hoặc bệnh viện mong muốn."
)
SPAM_MESSAGE = (
    "Xin lỗi, tôi chỉ có thể hỗ trợ các câu hỏi liên quan đến việc "
    "tìm kiếm và đặt lịch y tế."
)

_SPAM_PATTERNS = [
    re.compile(r"(https?://|www\.|\.com\b|\.vn\b|\.net\b)", re.IGNORECASE),
    re.compile(r"(quảng cáo|advertisement|\bads\b|\bspam\b)", re.IGNORECASE),
    re.compile(r"(\bđm\b|địt|đụ|fuck|shit|damn)", re.IGNORECASE),
    re.compile(r"(cờ bạc|casino|\bbet\b|đánh bạc)", re.IGNORECASE),
    re.compile(r"(\bsex\b|porn|\bxxx\b)", re.IGNORECASE),
    re.compile(r"(\bhack|virus|malware|trojan)", re.IGNORECASE),
]


class SpamZone(StrEnum):
    NORMAL = "normal"
    SUSPICIOUS = "suspicious"
    SPAM = "spam"


@dataclass(frozen=True)
class SpamAssessment:
    content_score: float
    behavior_score: float
    spam_score: float
    zone: SpamZone

    @property
    def canned_reply(self) -> str | None:
        """The fixed reply for a non-normal zone, ``None`` when normal."""
        if self.zone is SpamZone.SPAM:
            return SPAM_MESSAGE
        if self.zone is SpamZone.SUSPICIOUS:
            return SUSPICIOUS_MESSAGE
        return None


def zone_for(score: float) -> SpamZone:
    if score >= SPAM_THRESHOLD:
        return SpamZone.SPAM
    if score >= SUSPICIOUS_THRESHOLD:
        return SpamZone.SUSPICIOUS
    return SpamZone.NORMAL


def behavior_tier(requests_in_window: int) -> float:
    """Map a request count to its behavior score tier."""
    if requests_in_window > 30:
        return 0.5
    if requests_in_window > 20:
        return 0.3
    if requests_in_window > 10:
        return 0.1
    return 0.0


# ── Behavior store ───────────────────────────────────────────────────


class BehaviorStore(Protocol):
    """Per-session request tracking.

    The in-memory implementation is process-local; a multi-instance
    deployment plugs in a shared key-value implementation instead.
    """

    def record_request(self, session_id: str, now: float, window: float) -> int:
        """Log one request and return the count inside the trailing window."""
        ...

    def reset(self, session_id: str) -> None: ...


class InMemoryBehaviorStore:
    """Rolling timestamp windows keyed by session id.

    Sessions whose newest request has left the window are swept, at most
    once per window length, so idle sessions do not accumulate.
    """

    def __init__(self) -> None:
        self._windows: dict[str, deque[float]] = {}
        self._last_sweep: float | None = None
        self._lock = threading.Lock()

    def record_request(self, session_id: str, now: float, window: float) -> int:
        cutoff = now - window
        with self._lock:
            if self._last_sweep is None or now - self._last_sweep >= window:
                self._sweep(cutoff)
                self._last_sweep = now
            times = self._windows.setdefault(session_id, deque())
            times.append(now)
            while times and times[0] <= cutoff:
                times.popleft()
            return len(times)

    def tracked_sessions(self) -> int:
        with self._lock:
            return len(self._windows)

    def reset(self, session_id: str) -> None:
        with self._lock:
            self._windows.pop(session_id, None)

    def _sweep(self, cutoff: float) -> None:
        idle = [sid for sid, times in self._windows.items() if not times or times[-1] <= cutoff]
        for sid in idle:
            del self._windows[sid]
        if idle:
            logger.debug("Swept %d idle behavior windows", len(idle))


# ── Scorer ───────────────────────────────────────────────────────────


class SpamScorer:
    """Computes a ``SpamAssessment`` for each (utterance, session) pair."""

    def __init__(
        self,
        embeddings: EmbeddingClient,
        vector_store: VectorStore,
        behavior_store: BehaviorStore | None = None,
        *,
        clock: Clock = time.monotonic,
    ) -> None:
        self._embeddings = embeddings
        self._vectors = vector_store
        self._behavior = behavior_store or InMemoryBehaviorStore()
        self._clock = clock

    # ── Content ──────────────────────────────────────────────────────

    def is_irrelevant(self, text: str) -> bool:
        """True if *text* is near-identical to a known off-topic exemplar."""
        try:
            vector = self._embeddings.embed(text)
            hits = self._vectors.search(
                Collection.IRRELEVANT, vector,
                limit=1, score_threshold=IRRELEVANT_THRESHOLD,
            )
        except (EmbeddingError, VectorStoreError) as exc:
            logger.warning("Relevance gate unavailable, failing open: %s", exc)
            return False
        if hits:
            logger.info(
                "Off-topic match %.3f for %r (exemplar %r)",
                hits[0].score, text[:60], hits[0].payload.get("text"),
            )
            return True
        return False

    def content_score(self, text: str) -> float:
        text = text or ""
        score = 0.0
        if text.strip() and self.is_irrelevant(text):
            score += 0.4
        if any(p.search(text) for p in _SPAM_PATTERNS):
            score += 0.3
        if len(text) < MIN_LENGTH or len(text) > MAX_LENGTH:
            score += 0.1
        return min(score, 1.0)

    # ── Behavior ─────────────────────────────────────────────────────

    def _requests_in_window(self, session_id: str | None) -> int:
        if not session_id:
            return 0
        return self._behavior.record_request(
            session_id, self._clock(), BEHAVIOR_WINDOW_SECONDS,
        )

    # ── Public API ───────────────────────────────────────────────────

    def assess(self, text: str, session_id: str | None) -> SpamAssessment:
        """Score one turn.  Records the request against the session."""
        content = self.content_score(text)
        requests = self._requests_in_window(session_id)
        behavior = behavior_tier(requests)

        spam_score = min(max(0.6 * content + 0.4 * behavior, 0.0), 1.0)
        zone = zone_for(spam_score)
        if requests > FLOOD_CEILING:
            zone = SpamZone.SPAM
            spam_score = max(spam_score, SPAM_THRESHOLD)

        assessment = SpamAssessment(
            content_score=content,
            behavior_score=behavior,
            spam_score=spam_score,
            zone=zone,
        )
        metrics.record_outcome("SpamZone", zone.value)
        logger.debug(
            "Spam assessment session=%s content=%.2f behavior=%.2f score=%.3f zone=%s",
            (session_id or "-")[:8], content, behavior, spam_score, zone,
        )
        return assessment

    def reset_behavior(self, session_id: str) -> None:
        self._behavior.reset(session_id)
        logger.info("Behavior counters reset for session %s", session_id[:8])

    def add_irrelevant_examples(self, texts: list[str]) -> int:
        """Seed the off-topic collection.  Returns the number stored."""
        stored = 0
        for text in texts:
            vector = self._embeddings.embed(text)
            self._vectors.upsert(Collection.IRRELEVANT, f"irrelevant:{text}", vector, {"text": text})
            stored += 1
        logger.info("Stored %d off-topic exemplars", stored)
        return stored
