"""Turn API: one user utterance in, one assistant reply out.

Pipeline for ``handle_turn``:

    spam/relevance gate -> slot-selection short-circuit -> semantic cache
    -> intent router -> catalog context -> agent loop
    -> conversation-state patch -> cache write-back

Non-normal spam zones get a canned reply without any model call.  Every
unexpected failure is logged and turned into an apology; callers never see
a traceback.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from langchain_core.messages import AIMessage, AnyMessage, HumanMessage

from booking_orchestrator.agent import (
    LOOP_EXCEEDED_MESSAGE,
    Answer,
    BookingAgent,
    LoopExceeded,
    ToolCallRecord,
    is_error_result,
)
from booking_orchestrator.config import MAX_HISTORY_MESSAGES
from booking_orchestrator.prompts import get_system_prompt
from booking_orchestrator.services.catalog_mapper import CatalogMapper, CatalogMatch
from booking_orchestrator.services.conversation_state import (
    ConversationStage,
    ConversationState,
    ConversationStateStore,
)
from booking_orchestrator.services.intent_router import Intent, IntentRouter
from booking_orchestrator.services.metrics import metrics
from booking_orchestrator.services.semantic_cache import SemanticCache, is_cache_eligible
from booking_orchestrator.services.session_cache import SessionIdentityMap
from booking_orchestrator.services.slot_booking import find_reference_code_in_text
from booking_orchestrator.services.spam_filter import SpamAssessment, SpamScorer, SpamZone
from booking_orchestrator.tools.context import is_authentication_required
from booking_orchestrator.tools.registry import SESSION_SCOPED, ToolName, tools_for_intent

logger = logging.getLogger(__name__)

APOLOGY_MESSAGE = (
    "Xin lỗi, hệ thống đang gặp sự cố khi xử lý yêu cầu của bạn. "
    "Bạn vui lòng thử lại sau ít phút nhé."
)
TOOL_ERROR_FALLBACK = "Xin lỗi, tôi chưa thể thực hiện yêu cầu này. Bạn vui lòng thử lại nhé."

_USER_ROLES = frozenset({"user", "human"})
_ASSISTANT_ROLES = frozenset({"assistant", "model", "ai"})


@dataclass
class TurnResult:
    text: str
    used_tool: bool
    intent: Intent | None = None
    zone: SpamZone = SpamZone.NORMAL
    cached: bool = False
    specialty_id: str | None = None


def history_to_messages(history: list[dict[str, Any]] | None, limit: int) -> list[AnyMessage]:
    """Last *limit* history entries as LangChain messages.

    Leading assistant turns are dropped so the transcript always opens with
    the user; entries with unknown roles or no text are skipped.
    """
    messages: list[AnyMessage] = []
    for entry in (history or [])[-limit:]:
        role = str(entry.get("role", "")).lower()
        content = entry.get("content") or ""
        if not isinstance(content, str) or not content.strip():
            continue
        if role in _USER_ROLES:
            messages.append(HumanMessage(content=content))
        elif role in _ASSISTANT_ROLES and messages:
            messages.append(AIMessage(content=content))
    return messages


def error_text(error: Any) -> str:
    """User-facing text for a tool error payload."""
    if isinstance(error, dict):
        message = error.get("message")
        if is_authentication_required(error) and message:
            return "Bạn cần đăng nhập để tiếp tục. Vui lòng đăng nhập rồi nhắn lại cho tôi nhé."
        if isinstance(error.get("error"), str) and not error["error"].isupper():
            return error["error"]
        if message:
            return message
    return TOOL_ERROR_FALLBACK


class BookingOrchestrator:
    def __init__(
        self,
        *,
        spam_scorer: SpamScorer,
        cache: SemanticCache,
        router: IntentRouter,
        mapper: CatalogMapper,
        state_store: ConversationStateStore,
        sessions: SessionIdentityMap,
        agent: BookingAgent,
        max_history: int = MAX_HISTORY_MESSAGES,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._spam = spam_scorer
        self._cache = cache
        self._router = router
        self._mapper = mapper
        self._states = state_store
        self._sessions = sessions
        self._agent = agent
        self._max_history = max_history
        self._now = now

    # ── Turn API ─────────────────────────────────────────────────────

    def handle_turn(
        self,
        user_prompt: str,
        history: list[dict[str, Any]] | None,
        session_id: str,
    ) -> TurnResult:
        try:
            return self._handle(user_prompt or "", history, session_id)
        except Exception:
            logger.exception("Turn failed for session %s", session_id[:8])
            metrics.record_outcome("Turn", "error")
            return TurnResult(APOLOGY_MESSAGE, used_tool=False)

    # ── Session management ───────────────────────────────────────────

    def bind_user(self, session_id: str, user_id: str) -> None:
        self._sessions.set_user_id(session_id, user_id)
        self._states.update_state(session_id, {"user_id": user_id})

    def end_session(self, session_id: str) -> bool:
        """Explicit teardown: state, behavior counters, identity and slots."""
        existed = self._states.delete_state(session_id)
        self._spam.reset_behavior(session_id)
        self._sessions.forget(session_id)
        return existed

    def reset_behavior(self, session_id: str) -> None:
        self._spam.reset_behavior(session_id)

    def close(self) -> None:
        self._agent.close()

    # ── Pipeline ─────────────────────────────────────────────────────

    def _handle(
        self, user_prompt: str, history: list[dict[str, Any]] | None, session_id: str,
    ) -> TurnResult:
        assessment = self._spam.assess(user_prompt, session_id)
        if assessment.zone is not SpamZone.NORMAL:
            logger.info(
                "Turn for session %s short-circuited: zone=%s score=%.2f",
                session_id[:8], assessment.zone, assessment.spam_score,
            )
            metrics.record_outcome("Turn", assessment.zone.value)
            return TurnResult(assessment.canned_reply, used_tool=False, zone=assessment.zone)

        state = self._states.get_state(session_id, self._sessions.get_user_id(session_id))

        selected = self._try_slot_selection(user_prompt, session_id, assessment)
        if selected is not None:
            self._remember(session_id, user_prompt, selected.text)
            return selected

        eligible = is_cache_eligible(user_prompt, assessment.zone)
        if eligible:
            cached = self._cache.find(user_prompt)
            if cached is not None:
                self._remember(session_id, user_prompt, cached)
                metrics.record_outcome("Turn", "cached")
                return TurnResult(cached, used_tool=False, cached=True)

        intent = self._router.classify(user_prompt)

        hint = self._catalog_hint(user_prompt, intent)
        if hint is not None and state.current_state is ConversationStage.GREETING:
            state = self._states.update_state(
                session_id,
                {
                    "current_state": ConversationStage.COLLECTING_SYMPTOMS,
                    "booking_request": {"specialtyId": hint.target_id, "specialtyName": hint.target_name},
                },
            )

        messages = history_to_messages(history, self._max_history)
        messages.append(HumanMessage(content=user_prompt))
        system_prompt = get_system_prompt(intent, self._context(state, hint), self._now())

        result = self._agent.run(
            messages,
            intent=intent,
            session_id=session_id,
            user_prompt=user_prompt,
            system_prompt=system_prompt,
        )
        self._apply_tool_effects(session_id, result.tool_calls)

        if isinstance(result, Answer):
            text = result.text or TOOL_ERROR_FALLBACK
            if eligible and result.text and not _touched_patient_records(result.tool_calls):
                self._cache.store(user_prompt, result.text)
            outcome = "answer"
        elif isinstance(result, LoopExceeded):
            text = LOOP_EXCEEDED_MESSAGE
            outcome = "loop_exceeded"
        else:
            text = error_text(result.error)
            outcome = "tool_error"

        self._remember(session_id, user_prompt, text)
        metrics.record_outcome("Turn", outcome)
        return TurnResult(
            text,
            used_tool=result.used_tool,
            intent=intent,
            specialty_id=hint.target_id if hint else None,
        )

    def _try_slot_selection(
        self, user_prompt: str, session_id: str, assessment: SpamAssessment,
    ) -> TurnResult | None:
        """Book directly when the prompt names a slot from the cached list."""
        code = find_reference_code_in_text(user_prompt)
        if code is None or not self._sessions.get_available_slots(session_id):
            return None
        if not self._states.can_proceed_to_booking(session_id, assessment.spam_score):
            return None

        logger.info("Session %s picked %s, booking directly", session_id[:8], code)
        table = tools_for_intent(self._agent.tool_table, Intent.APPOINTMENT)
        args = {"slot_index": code}
        result = self._agent.execute_tool(
            table, ToolName.BOOK_APPOINTMENT, args, session_id, user_prompt,
        )
        record = ToolCallRecord(ToolName.BOOK_APPOINTMENT, args, result, is_error_result(result))
        self._apply_tool_effects(session_id, [record])
        metrics.record_outcome("Turn", "direct_booking")

        if record.is_error:
            return TurnResult(error_text(result), used_tool=True, intent=Intent.APPOINTMENT)
        return TurnResult(
            f"Tôi đã đặt lịch {code} thành công. Mã đặt lịch của bạn là {result['bookingCode']} "
            f"({result['doctorName']}, {result['date']} lúc {result['time']}).",
            used_tool=True,
            intent=Intent.APPOINTMENT,
        )

    def _catalog_hint(self, user_prompt: str, intent: Intent) -> CatalogMatch | None:
        if intent not in (Intent.INFORMATION, Intent.APPOINTMENT):
            return None
        hint = self._mapper.specialty_in_text(user_prompt)
        if hint is not None:
            logger.debug("Catalog hint for %r: %s", user_prompt[:60], hint.target_name)
        return hint

    @staticmethod
    def _context(state: ConversationState, hint: CatalogMatch | None) -> str:
        lines = [f"Trạng thái hội thoại: {state.current_state}"]
        if state.summary:
            lines.append(f"Tóm tắt: {state.summary}")
        department = state.booking_request.get("provisionalDepartment")
        if department:
            lines.append(f"Chuyên khoa đã phân loại: {department}")
        if hint is not None:
            lines.append(f"Chuyên khoa phù hợp với câu hỏi: {hint.target_name} (mã {hint.target_id})")
        return "\n".join(lines)

    def _remember(self, session_id: str, user_prompt: str, reply: str) -> None:
        self._states.append_message(session_id, "user", user_prompt)
        self._states.append_message(session_id, "assistant", reply)

    def _apply_tool_effects(self, session_id: str, records: list[ToolCallRecord]) -> None:
        """Advance the conversation state from successful tool results."""
        for record in records:
            if record.is_error or not isinstance(record.result, dict):
                continue
            patch = _state_patch(record)
            if patch:
                self._states.update_state(session_id, patch)


def _state_patch(record: ToolCallRecord) -> dict[str, Any] | None:
    name, args, result = ToolName.parse(record.name), record.args, record.result

    if name is ToolName.TRIAGE_SPECIALTY:
        patient: dict[str, Any] = {
            "symptoms": [s.strip() for s in str(args.get("symptoms", "")).split(",") if s.strip()],
        }
        if args.get("age") is not None:
            patient["age"] = args["age"]
        return {
            "current_state": ConversationStage.TRIAGE_DEPARTMENT,
            "triage_locked": True,
            "patient_info": patient,
            "booking_request": {
                "provisionalDepartment": result.get("department"),
                "riskLevel": result.get("riskLevel", "normal"),
            },
        }

    if name is ToolName.FIND_AVAILABLE_SLOTS:
        return {
            "current_state": ConversationStage.BOOKING_OPTIONS,
            "booking_intent": True,
            "booking_request": {
                "query": args.get("query"),
                "date": args.get("date"),
                "specialtyName": result.get("specialty"),
                "status": "options_shown",
            },
        }

    if name is ToolName.BOOK_APPOINTMENT:
        return {
            "current_state": ConversationStage.DONE,
            "booking_request": {
                "status": "confirmed",
                "bookingCode": result.get("bookingCode"),
                "doctorName": result.get("doctorName"),
            },
        }

    if name is ToolName.CANCEL_APPOINTMENT:
        return {"booking_request": {"status": "cancelled", "bookingCode": result.get("bookingCode")}}

    if name is ToolName.RESCHEDULE_APPOINTMENT:
        return {"booking_request": {"status": "rescheduled", "bookingCode": result.get("bookingCode")}}

    if name is ToolName.CHECK_INVENTORY_AND_PRESCRIBE:
        return {
            "drug_queries": {
                "lastTool": str(name),
                "symptom": args.get("symptom"),
                "prescriptionCode": result.get("prescriptionCode"),
                "medicines": result.get("medicinesFound", []),
                "status": result.get("status"),
            },
        }

    if name in (ToolName.GET_MY_PRESCRIPTIONS, ToolName.CANCEL_PRESCRIPTION):
        return {"drug_queries": {"lastTool": str(name), "status": result.get("status")}}

    return None


def _touched_patient_records(records: list[ToolCallRecord]) -> bool:
    """Answers built from a patient's own records are never shared."""
    return any(ToolName.parse(r.name) in SESSION_SCOPED for r in records)
