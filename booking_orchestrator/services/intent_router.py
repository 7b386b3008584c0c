"""Intent classification: which persona and tool-set handles a turn.

A cheap model call labels the utterance with one of four intents.  If the
call fails, or the model answers anything other than exactly one label, a
deterministic keyword matcher decides instead (appointment keywords win
over medication, which win over information; everything else is GENERAL).
"""

from __future__ import annotations

import logging
import re
import time
from enum import StrEnum

from langchain_anthropic import ChatAnthropic
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage

from booking_orchestrator.config import ANTHROPIC_API_KEY, ROUTER_MODEL_NAME
from booking_orchestrator.services.metrics import metrics

logger = logging.getLogger(__name__)


class Intent(StrEnum):
    APPOINTMENT = "APPOINTMENT"
    INFORMATION = "INFORMATION"
    MEDICATION = "MEDICATION"
    GENERAL = "GENERAL"


INTENT_INSTRUCTION = (
    "You are an intent classifier for a Vietnamese hospital booking assistant. "
    "Classify the user's message into exactly one intent:\n\n"
    "APPOINTMENT: booking, cancelling, rescheduling or viewing their own "
    "appointments, or picking a slot (\"đặt lịch\", \"hủy lịch\", \"đổi lịch\", "
    "\"lịch của tôi\", \"chọn L01\", \"tôi chọn số 1\").\n"
    "INFORMATION: finding doctors, hospitals or specialties, asking about "
    "symptoms or medical services (\"tìm bác sĩ tim mạch\", \"đau đầu là bệnh gì\").\n"
    "MEDICATION: medicine advice or their prescriptions (\"tư vấn thuốc\", "
    "\"đơn thuốc của tôi\").\n"
    "GENERAL: anything else.\n\n"
    "Reply with ONLY one word: APPOINTMENT, INFORMATION, MEDICATION or GENERAL."
)

APPOINTMENT_KEYWORDS = (
    "đặt lịch", "đặt hẹn", "book appointment", "tìm lịch", "lịch trống",
    "hủy lịch", "huỷ lịch", "cancel", "xóa lịch",
    "đổi lịch", "reschedule", "dời lịch",
    "lịch của tôi", "lịch hẹn của tôi", "xem lịch",
    "chọn l", "l01", "l02", "slot",
)
MEDICATION_KEYWORDS = (
    "thuốc", "kê đơn", "đơn thuốc", "toa thuốc", "prescription",
    "tư vấn thuốc", "có thuốc nào", "uống thuốc",
)
INFORMATION_KEYWORDS = (
    "bác sĩ", "doctor", "tìm bác sĩ", "có bác sĩ nào",
    "bệnh viện", "hospital", "chuyên khoa", "specialty",
    "đau đầu", "triệu chứng", "bệnh gì", "tư vấn sức khỏe",
)

_NON_LETTERS = re.compile(r"[^A-Z]")


def classify_by_keywords(text: str) -> Intent:
    lower = (text or "").lower()
    if any(k in lower for k in APPOINTMENT_KEYWORDS):
        return Intent.APPOINTMENT
    if any(k in lower for k in MEDICATION_KEYWORDS):
        return Intent.MEDICATION
    if any(k in lower for k in INFORMATION_KEYWORDS):
        return Intent.INFORMATION
    return Intent.GENERAL


def parse_intent(raw: object) -> Intent | None:
    """Return the label if *raw* is exactly one valid intent, else ``None``."""
    if isinstance(raw, list):
        raw = "".join(part.get("text", "") if isinstance(part, dict) else str(part) for part in raw)
    label = _NON_LETTERS.sub("", str(raw or "").strip().upper())
    try:
        return Intent(label)
    except ValueError:
        return None


def _build_router_llm() -> ChatAnthropic:
    """Small, deterministic model for one-word classification."""
    return ChatAnthropic(
        model=ROUTER_MODEL_NAME,
        api_key=ANTHROPIC_API_KEY,
        temperature=0.0,
        max_tokens=10,
    )


class IntentRouter:
    def __init__(self, llm: BaseChatModel | None = None) -> None:
        self._llm = llm if llm is not None else _build_router_llm()

    def classify(self, text: str) -> Intent:
        t0 = time.perf_counter()
        try:
            response = self._llm.invoke(
                [SystemMessage(content=INTENT_INSTRUCTION), HumanMessage(content=text)]
            )
            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_success("anthropic", "intent_classify", latency_ms=elapsed)
        except Exception as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_failure(
                "anthropic", "intent_classify",
                error_type=type(exc).__name__, latency_ms=elapsed,
            )
            intent = classify_by_keywords(text)
            logger.warning("Intent model failed (%s), keyword fallback -> %s", exc, intent)
            return intent

        intent = parse_intent(response.content)
        if intent is None:
            fallback = classify_by_keywords(text)
            logger.warning(
                "Intent model returned %r, keyword fallback -> %s", response.content, fallback,
            )
            return fallback

        logger.debug("Intent %s for %r (%.0fms)", intent, text[:50], elapsed)
        return intent
