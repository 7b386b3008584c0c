"""Tests for the LangChain tools and the tool registry."""

from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime

import pytest

from booking_orchestrator.services.catalog_mapper import MappingKind
from booking_orchestrator.services.intent_router import Intent
from booking_orchestrator.services.schedule_store import AppointmentStatus
from booking_orchestrator.services.session_cache import SessionIdentityMap
from booking_orchestrator.services.slot_booking import SlotBookingService
from booking_orchestrator.tools.context import (
    AUTHENTICATION_REQUIRED,
    ToolContext,
    is_authentication_required,
)
from booking_orchestrator.tools.registry import ToolName, build_tool_table, tools_for_intent


@pytest.fixture
def ctx(directory, mapper, schedule_store):
    return ToolContext(
        directory=directory,
        mapper=mapper,
        booking=SlotBookingService(schedule_store, directory),
        sessions=SessionIdentityMap(),
    )


@pytest.fixture
def tools(ctx):
    return build_tool_table(ctx)


@pytest.fixture
def logged_in(ctx):
    ctx.sessions.set_user_id("s1", "user-demo")
    return "s1"


def _find_slots(tools, session_id, query="Nhi khoa"):
    return tools[ToolName.FIND_AVAILABLE_SLOTS].invoke({"query": query, "session_id": session_id})


class TestRegistry:
    def test_every_tool_name_has_a_handler(self, tools):
        assert set(tools) == set(ToolName)

    def test_appointment_intent_gets_booking_tools(self, tools):
        names = set(tools_for_intent(tools, Intent.APPOINTMENT))
        assert ToolName.BOOK_APPOINTMENT in names
        assert ToolName.CANCEL_PRESCRIPTION not in names

    def test_medication_intent_gets_prescription_tools(self, tools):
        names = set(tools_for_intent(tools, Intent.MEDICATION))
        assert {
            ToolName.CHECK_INVENTORY_AND_PRESCRIBE,
            ToolName.GET_MY_PRESCRIPTIONS,
            ToolName.CANCEL_PRESCRIPTION,
            ToolName.GET_APPOINTMENT_HISTORY,
        } <= names
        assert ToolName.BOOK_APPOINTMENT not in names

    def test_injected_args_are_hidden_from_the_model(self, tools):
        schema = tools[ToolName.BOOK_APPOINTMENT].tool_call_schema.model_json_schema()
        assert set(schema["properties"]) == {"slot_index"}

    def test_parse_unknown_name(self):
        assert ToolName.parse("drop_tables") is None
        assert ToolName.parse("book_appointment") is ToolName.BOOK_APPOINTMENT


class TestTriage:
    def test_emergency_keyword(self, tools):
        result = tools[ToolName.TRIAGE_SPECIALTY].invoke({"symptoms": "bé bị co giật"})
        assert result["department"] == "Khoa Cấp cứu"
        assert result["riskLevel"] == "emergency"

    def test_young_child_goes_to_pediatrics(self, tools):
        result = tools[ToolName.TRIAGE_SPECIALTY].invoke({"symptoms": "đau bụng", "age": 3})
        assert result["department"] == "Nhi khoa"
        assert result["departmentId"] == "sp-nhi"

    def test_mapping_decides_for_adults(self, tools, mapper):
        mapper.add_mapping(MappingKind.SPECIALTY, "đau dạ dày", "sp-tieuhoa", "Tiêu hóa")
        result = tools[ToolName.TRIAGE_SPECIALTY].invoke({"symptoms": "đau dạ dày", "age": 40})
        assert result["department"] == "Tiêu hóa"

    def test_unknown_symptoms_default_to_internal_medicine(self, tools):
        result = tools[ToolName.TRIAGE_SPECIALTY].invoke({"symptoms": "hơi mệt"})
        assert result["department"] == "Nội khoa"

    def test_blank_symptoms(self, tools):
        assert "error" in tools[ToolName.TRIAGE_SPECIALTY].invoke({"symptoms": "  "})


class TestCatalogTools:
    def test_find_doctors_by_specialty(self, tools):
        result = tools[ToolName.FIND_DOCTORS].invoke({"specialty": "Tim mạch"})
        assert [d["doctorId"] for d in result["doctors"]] == ["dr-04"]

    def test_find_doctors_unknown_specialty(self, tools):
        result = tools[ToolName.FIND_DOCTORS].invoke({"specialty": "du hành vũ trụ"})
        assert result["doctors"] == []

    def test_find_hospitals_by_specialty(self, tools):
        result = tools[ToolName.FIND_HOSPITALS].invoke({"specialty": "Sản phụ khoa"})
        assert [h["hospitalId"] for h in result["hospitals"]] == ["hs-hcm"]

    def test_get_doctor_info(self, tools):
        info = tools[ToolName.GET_DOCTOR_INFO].invoke({"doctor_id": "dr-04"})
        assert info["experienceYears"] == 25
        assert "error" in tools[ToolName.GET_DOCTOR_INFO].invoke({"doctor_id": "dr-99"})


class TestFindAndBook:
    def test_find_slots_caches_them_for_the_session(self, tools, ctx):
        result = _find_slots(tools, "s1")
        assert result["specialty"] == "Nhi khoa"
        assert result["availableSlots"][0]["referenceCode"] == "L01"
        assert len(ctx.sessions.get_available_slots("s1")) == len(result["availableSlots"])

    def test_find_slots_with_unknown_query(self, tools):
        assert "error" in _find_slots(tools, "s1", query="sửa xe máy")

    def test_booking_requires_login(self, tools):
        _find_slots(tools, "anon")
        result = tools[ToolName.BOOK_APPOINTMENT].invoke({"slot_index": "L01", "session_id": "anon"})
        assert result["error"] == AUTHENTICATION_REQUIRED
        assert is_authentication_required(result)

    def test_book_by_reference_code(self, tools, ctx, logged_in):
        _find_slots(tools, logged_in)
        result = tools[ToolName.BOOK_APPOINTMENT].invoke(
            {"slot_index": "L01", "session_id": logged_in, "user_prompt": "chọn L01"}
        )
        assert result["success"] is True
        assert result["bookingCode"].startswith("APT-")
        assert result["statusLabel"] == "Chờ xác nhận"
        assert ctx.sessions.get_available_slots(logged_in) is None

    def test_book_without_a_slot_list(self, tools, logged_in):
        result = tools[ToolName.BOOK_APPOINTMENT].invoke({"slot_index": "L01", "session_id": logged_in})
        assert result["code"] == "slots_expired"

    def test_list_cancel_and_reschedule(self, tools, logged_in):
        _find_slots(tools, logged_in)
        booked = tools[ToolName.BOOK_APPOINTMENT].invoke({"slot_index": 1, "session_id": logged_in})
        code = booked["bookingCode"]

        listed = tools[ToolName.GET_MY_APPOINTMENTS].invoke({"session_id": logged_in})
        assert [a["bookingCode"] for a in listed["appointments"]] == [code]

        moved = tools[ToolName.RESCHEDULE_APPOINTMENT].invoke(
            {"booking_code": code, "preferred_date": "mai", "preferred_time": "9h", "session_id": logged_in}
        )
        assert moved["success"] is True
        assert moved["rescheduleCount"] == 1

        cancelled = tools[ToolName.CANCEL_APPOINTMENT].invoke(
            {"booking_code": code, "reason": "bận", "session_id": logged_in}
        )
        assert cancelled["success"] is True
        again = tools[ToolName.CANCEL_APPOINTMENT].invoke({"booking_code": code, "session_id": logged_in})
        assert again["code"] == "already_cancelled"


class TestPrescriptions:
    def test_requires_login(self, tools):
        result = tools[ToolName.GET_MY_PRESCRIPTIONS].invoke({"session_id": "anon"})
        assert result["error"] == AUTHENTICATION_REQUIRED

    def test_list_filtered_by_status(self, tools, logged_in):
        result = tools[ToolName.GET_MY_PRESCRIPTIONS].invoke(
            {"status": "pending_approval", "session_id": logged_in}
        )
        assert [r["prescriptionCode"] for r in result["records"]] == ["PRS-4F7Q2B"]

    def test_cancel_pending_then_again(self, tools, logged_in):
        cancel = tools[ToolName.CANCEL_PRESCRIPTION]
        first = cancel.invoke({"prescription_code": "prs-4f7q2b", "session_id": logged_in})
        assert first["success"] is True
        assert first["status"] == "cancelled"
        second = cancel.invoke({"prescription_code": "PRS-4F7Q2B", "session_id": logged_in})
        assert second["error"] == "Đơn thuốc này đã bị hủy trước đó."

    def test_approved_prescription_cannot_be_cancelled(self, tools, logged_in):
        result = tools[ToolName.CANCEL_PRESCRIPTION].invoke(
            {"prescription_code": "PRS-9K3M1T", "session_id": logged_in}
        )
        assert "không thể hủy" in result["error"]

    def test_someone_elses_prescription_is_not_found(self, tools, ctx):
        ctx.sessions.set_user_id("s2", "user-other")
        result = tools[ToolName.CANCEL_PRESCRIPTION].invoke(
            {"prescription_code": "PRS-4F7Q2B", "session_id": "s2"}
        )
        assert "Không tìm thấy" in result["error"]


class TestAppointmentHistory:
    def _completed(self, schedule_store, user_id, day):
        schedule = schedule_store.get_schedule("sch-0101")
        appointment = schedule_store.create_appointment(user_id, "dr-01", schedule, schedule.time_slots[0])
        schedule_store.save_appointment(replace(appointment, date=day, status=AppointmentStatus.COMPLETED))

    def test_requires_login(self, tools):
        result = tools[ToolName.GET_APPOINTMENT_HISTORY].invoke({"session_id": "anon"})
        assert result["error"] == AUTHENTICATION_REQUIRED

    def test_last_five_completed_newest_first(self, tools, schedule_store, logged_in):
        for day in range(1, 7):
            self._completed(schedule_store, "user-demo", date(2026, 9, day))
        self._completed(schedule_store, "user-other", date(2026, 9, 30))
        _find_slots(tools, logged_in)
        tools[ToolName.BOOK_APPOINTMENT].invoke({"slot_index": "L01", "session_id": logged_in})

        result = tools[ToolName.GET_APPOINTMENT_HISTORY].invoke({"session_id": logged_in})

        assert result["count"] == 5
        assert [a["date"] for a in result["appointments"]] == [
            "06/09/2026", "05/09/2026", "04/09/2026", "03/09/2026", "02/09/2026",
        ]
        assert {a["status"] for a in result["appointments"]} == {"completed"}

    def test_no_completed_visits(self, tools, logged_in):
        result = tools[ToolName.GET_APPOINTMENT_HISTORY].invoke({"session_id": logged_in})
        assert result == {"success": True, "appointments": [], "count": 0}


class TestMedicationGuidance:
    @pytest.fixture(autouse=True)
    def fixed_clock(self, ctx):
        ctx.now = lambda: datetime(2026, 10, 19, 9, 0)

    def _prescribe(self, tools, session_id, symptom):
        return tools[ToolName.CHECK_INVENTORY_AND_PRESCRIBE].invoke({"symptom": symptom, "session_id": session_id})

    def test_requires_login(self, tools):
        assert self._prescribe(tools, "anon", "đau đầu")["error"] == AUTHENTICATION_REQUIRED

    def test_creates_a_pending_draft_from_stock(self, tools, ctx, logged_in):
        result = self._prescribe(tools, logged_in, "Tôi bị đau đầu từ sáng")

        assert result["success"] is True
        assert result["prescriptionCode"].startswith("PRS-")
        assert result["status"] == "pending_approval"
        assert result["medicinesFound"] == ["Paracetamol 500mg"]
        assert result["hospital"]["name"] == "Phòng khám Đa khoa An Bình Hà Nội"
        assert result["doctor"] == "ThS.BS. Nguyễn Văn An"
        assert "disclaimer" in result

        draft = ctx.directory.get_prescription(result["prescriptionCode"])
        assert draft.user_id == "user-demo"
        assert draft.status == "pending_approval"
        assert draft.doctor_id == "dr-01"
        assert [item["name"] for item in draft.items] == ["Paracetamol 500mg"]

    def test_draft_shows_up_and_can_be_cancelled(self, tools, logged_in):
        code = self._prescribe(tools, logged_in, "ợ chua")["prescriptionCode"]

        listed = tools[ToolName.GET_MY_PRESCRIPTIONS].invoke({"status": "pending_approval", "session_id": logged_in})
        assert code in [r["prescriptionCode"] for r in listed["records"]]

        cancelled = tools[ToolName.CANCEL_PRESCRIPTION].invoke({"prescription_code": code, "session_id": logged_in})
        assert cancelled["success"] is True

    def test_daily_limit_skips_cancelled_drafts(self, tools, logged_in):
        first = self._prescribe(tools, logged_in, "đau đầu")
        assert self._prescribe(tools, logged_in, "ngứa")["success"] is True

        blocked = self._prescribe(tools, logged_in, "sốt")
        assert blocked["limitReached"] is True

        tools[ToolName.CANCEL_PRESCRIPTION].invoke(
            {"prescription_code": first["prescriptionCode"], "session_id": logged_in}
        )
        assert self._prescribe(tools, logged_in, "sốt")["success"] is True

    def test_out_of_stock_everywhere(self, tools, ctx, logged_in):
        before = len(ctx.directory.prescriptions_for_user("user-demo", limit=50))
        result = self._prescribe(tools, logged_in, "ho khan về đêm")

        assert "success" not in result
        assert "hết thuốc" in result["message"]
        assert result["branches"][0]["outOfStock"] == ["Dextromethorphan 15mg"]
        assert len(ctx.directory.prescriptions_for_user("user-demo", limit=50)) == before

    def test_unknown_symptom(self, tools, logged_in):
        result = self._prescribe(tools, logged_in, "mỏi mắt")
        assert "chưa đủ dữ liệu" in result["message"]

    def test_keywords_match_whole_words(self, directory):
        assert directory.medications_for_symptom("ho khan") != []
        assert directory.medications_for_symptom("cho khan") == []
