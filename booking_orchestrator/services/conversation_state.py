"""Per-session conversation state machine with non-destructive merges.

``get_state`` never destroys anything: it lazily creates a ``GREETING``
record.  ``update_state`` applies a patch where scalar fields overwrite but
the nested objects (``patient_info``, ``booking_request``, ``drug_queries``)
merge key by key, so a later turn that sets ``booking_request.status``
keeps the ``booking_request.doctor_id`` set earlier.
"""

from __future__ import annotations

import copy
import logging
import threading
from collections.abc import Callable
from dataclasses import asdict, dataclass, field, fields, replace
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

from booking_orchestrator.services.metrics import timed

logger = logging.getLogger(__name__)

RECENT_MESSAGES_LIMIT = 10
DEFAULT_IDLE_TTL = timedelta(hours=24)


class ConversationStage(StrEnum):
    GREETING = "GREETING"
    COLLECTING_SYMPTOMS = "COLLECTING_SYMPTOMS"
    TRIAGE_DEPARTMENT = "TRIAGE_DEPARTMENT"
    BACK_TO_TRIAGE = "BACK_TO_TRIAGE"
    BOOKING_OPTIONS = "BOOKING_OPTIONS"
    CONFIRM_BOOKING = "CONFIRM_BOOKING"
    DONE = "DONE"


MERGEABLE_FIELDS = frozenset({"patient_info", "booking_request", "drug_queries"})
BOOKING_STAGES = frozenset({ConversationStage.BOOKING_OPTIONS, ConversationStage.CONFIRM_BOOKING})


@dataclass
class ConversationState:
    session_id: str
    user_id: str | None = None
    current_state: ConversationStage = ConversationStage.GREETING
    patient_info: dict[str, Any] = field(default_factory=dict)
    booking_request: dict[str, Any] = field(default_factory=dict)
    drug_queries: dict[str, Any] = field(default_factory=dict)
    summary: str = ""
    booking_intent: bool = False
    triage_locked: bool = False
    recent_messages: list[dict[str, str]] = field(default_factory=list)
    last_updated_at: datetime | None = None


_FIELD_NAMES = frozenset(f.name for f in fields(ConversationState)) - {"session_id"}


def deep_merge(base: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    """Return *base* updated with *patch*, merging nested dicts recursively."""
    merged = dict(base)
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class StateStoreError(Exception):
    """The persistent state backend failed."""


class ConversationStateStore:
    """Thread-safe in-memory store of ``ConversationState`` records.

    Callers always receive copies; mutate state only through
    ``update_state``.  Records idle for longer than ``idle_ttl`` are evicted
    whenever a new session is stored.  Subclasses persist elsewhere by
    overriding ``_load``, ``_save`` and ``_remove``.
    """

    def __init__(
        self,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
        *,
        idle_ttl: timedelta = DEFAULT_IDLE_TTL,
    ) -> None:
        self._states: dict[str, ConversationState] = {}
        self._lock = threading.Lock()
        self._now = now
        self._idle_ttl = idle_ttl

    def get_state(self, session_id: str, user_id: str | None = None) -> ConversationState:
        with self._lock:
            state = self._get_or_create(session_id, user_id)
            return copy.deepcopy(state)

    def update_state(self, session_id: str, patch: dict[str, Any]) -> ConversationState:
        """Apply *patch* to the session's state and return the new state.

        Raises ``ValueError`` for unknown fields or an invalid stage.
        """
        unknown = set(patch) - _FIELD_NAMES
        if unknown:
            raise ValueError(f"Unknown conversation state field(s): {sorted(unknown)}")

        with self._lock:
            state = copy.deepcopy(self._get_or_create(session_id, None))
            for key, value in patch.items():
                if key in MERGEABLE_FIELDS:
                    if not isinstance(value, dict):
                        raise ValueError(f"{key} patch must be a mapping")
                    setattr(state, key, deep_merge(getattr(state, key), value))
                elif key == "current_state":
                    state.current_state = ConversationStage(value)
                else:
                    setattr(state, key, copy.deepcopy(value))
            state.last_updated_at = self._now()
            self._save(state)
            logger.debug("State %s -> %s (%s)", session_id[:8], state.current_state, sorted(patch))
            return copy.deepcopy(state)

    def append_message(self, session_id: str, role: str, content: str) -> None:
        """Keep a rolling window of the last few messages for summaries."""
        with self._lock:
            state = copy.deepcopy(self._get_or_create(session_id, None))
            state.recent_messages.append({"role": role, "content": content})
            del state.recent_messages[:-RECENT_MESSAGES_LIMIT]
            state.last_updated_at = self._now()
            self._save(state)

    def save_summary(self, session_id: str, summary: str) -> ConversationState:
        return self.update_state(session_id, {"summary": summary})

    def delete_state(self, session_id: str) -> bool:
        """Explicit session teardown.  Returns ``True`` if a record existed."""
        with self._lock:
            existed = self._remove(session_id)
        if existed:
            logger.info("Conversation state deleted for session %s", session_id[:8])
        return existed

    def can_proceed_to_booking(self, session_id: str, spam_score: float) -> bool:
        """Whether the session may move into (or act within) a booking step."""
        if spam_score >= 0.7:
            return False
        state = self.get_state(session_id)
        if state.current_state in BOOKING_STAGES:
            return True
        if spam_score >= 0.3 and state.current_state is ConversationStage.GREETING:
            return False
        return True

    def _get_or_create(self, session_id: str, user_id: str | None) -> ConversationState:
        state = self._load(session_id)
        if state is None:
            state = ConversationState(session_id=session_id, user_id=user_id, last_updated_at=self._now())
            self._save(state)
            logger.debug("Conversation state created for session %s", session_id[:8])
        elif user_id and state.user_id is None:
            state = replace(state, user_id=user_id)
            self._save(state)
        return state

    # ── Storage ──────────────────────────────────────────────────────

    def _load(self, session_id: str) -> ConversationState | None:
        return self._states.get(session_id)

    def _save(self, state: ConversationState) -> None:
        if state.session_id not in self._states:
            self._evict_idle()
        self._states[state.session_id] = state

    def _remove(self, session_id: str) -> bool:
        return self._states.pop(session_id, None) is not None

    def _evict_idle(self) -> None:
        cutoff = self._now() - self._idle_ttl
        idle = [
            sid for sid, s in self._states.items()
            if s.last_updated_at is not None and s.last_updated_at < cutoff
        ]
        for sid in idle:
            del self._states[sid]
        if idle:
            logger.info("Evicted %d idle conversation states", len(idle))


# ── Supabase persistence ─────────────────────────────────────────────


def _state_to_row(state: ConversationState) -> dict[str, Any]:
    row = asdict(state)
    row["current_state"] = str(state.current_state)
    row["last_updated_at"] = state.last_updated_at.isoformat() if state.last_updated_at else None
    return row


def _state_from_row(row: dict[str, Any]) -> ConversationState:
    updated = row.get("last_updated_at")
    return ConversationState(
        session_id=row["session_id"],
        user_id=row.get("user_id"),
        current_state=ConversationStage(row.get("current_state") or ConversationStage.GREETING),
        patient_info=row.get("patient_info") or {},
        booking_request=row.get("booking_request") or {},
        drug_queries=row.get("drug_queries") or {},
        summary=row.get("summary") or "",
        booking_intent=bool(row.get("booking_intent")),
        triage_locked=bool(row.get("triage_locked")),
        recent_messages=row.get("recent_messages") or [],
        last_updated_at=datetime.fromisoformat(updated) if updated else None,
    )


class SupabaseConversationStateStore(ConversationStateStore):
    """Table ``conversation_states`` keyed by ``session_id`` (jsonb for nested fields).

    The lock serialises read-merge-write inside one process only; across
    instances the last write wins.
    """

    TABLE = "conversation_states"

    def __init__(self, client, now: Callable[[], datetime] = lambda: datetime.now(UTC)) -> None:
        super().__init__(now)
        self._client = client

    def _execute(self, operation: str, query):
        try:
            with timed("supabase", operation):
                return query.execute()
        except Exception as exc:
            logger.exception("Supabase %s failed", operation)
            raise StateStoreError(f"{operation} failed: {exc}") from exc

    def _load(self, session_id: str) -> ConversationState | None:
        resp = self._execute(
            "get_state",
            self._client.table(self.TABLE).select("*").eq("session_id", session_id).limit(1),
        )
        rows = resp.data or []
        return _state_from_row(rows[0]) if rows else None

    def _save(self, state: ConversationState) -> None:
        self._execute("save_state", self._client.table(self.TABLE).upsert(_state_to_row(state)))

    def _remove(self, session_id: str) -> bool:
        resp = self._execute(
            "delete_state",
            self._client.table(self.TABLE).delete().eq("session_id", session_id),
        )
        return bool(resp.data)


def build_supabase_state_store(url: str, key: str) -> SupabaseConversationStateStore:
    from supabase import create_client

    logger.info("Using Supabase conversation state store at %s", url)
    return SupabaseConversationStateStore(create_client(url, key))
