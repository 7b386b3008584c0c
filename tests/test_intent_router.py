"""Tests for intent classification."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from langchain_core.messages import AIMessage

from booking_orchestrator.services.intent_router import (
    Intent,
    IntentRouter,
    classify_by_keywords,
    parse_intent,
)


def _router(content=None, error: Exception | None = None) -> tuple[IntentRouter, MagicMock]:
    llm = MagicMock()
    if error is not None:
        llm.invoke.side_effect = error
    else:
        llm.invoke.return_value = AIMessage(content=content)
    return IntentRouter(llm), llm


class TestParseIntent:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("APPOINTMENT", Intent.APPOINTMENT),
            (" medication\n", Intent.MEDICATION),
            ("INFORMATION.", Intent.INFORMATION),
            ([{"type": "text", "text": "GENERAL"}], Intent.GENERAL),
        ],
    )
    def test_single_label_is_accepted(self, raw, expected):
        assert parse_intent(raw) is expected

    @pytest.mark.parametrize("raw", ["The intent is APPOINTMENT", "BOOKING", "", None])
    def test_anything_else_is_rejected(self, raw):
        assert parse_intent(raw) is None


class TestKeywordFallback:
    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("Tôi muốn đặt lịch khám", Intent.APPOINTMENT),
            ("chọn L01", Intent.APPOINTMENT),
            ("đơn thuốc của tôi", Intent.MEDICATION),
            ("tìm bác sĩ tim mạch", Intent.INFORMATION),
            ("xin chào", Intent.GENERAL),
        ],
    )
    def test_keywords(self, text, expected):
        assert classify_by_keywords(text) is expected

    def test_appointment_beats_medication(self):
        assert classify_by_keywords("hủy lịch lấy thuốc") is Intent.APPOINTMENT


class TestIntentRouter:
    def test_model_label_is_used(self):
        router, llm = _router("MEDICATION")
        assert router.classify("xin chào") is Intent.MEDICATION
        llm.invoke.assert_called_once()

    def test_model_failure_falls_back_to_keywords(self):
        router, _ = _router(error=RuntimeError("overloaded"))
        assert router.classify("Tôi muốn đặt lịch khám") is Intent.APPOINTMENT

    def test_chatty_model_answer_falls_back_to_keywords(self):
        router, _ = _router("I think this is about medication")
        assert router.classify("tìm bác sĩ tim mạch") is Intent.INFORMATION
