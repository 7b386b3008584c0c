"""LangChain tools for finding, booking, cancelling and rescheduling appointments.

``session_id`` (and, for booking, ``user_prompt``) are injected by the agent
loop and hidden from the model's tool schema.  Each user-scoped tool resolves
the session to a user itself and returns the AUTHENTICATION_REQUIRED marker
when it cannot.
"""

import logging
from typing import Annotated

from langchain_core.tools import BaseTool, InjectedToolArg, tool

from booking_orchestrator.services.schedule_store import Appointment, AppointmentStatus, ScheduleStoreError
from booking_orchestrator.services.slot_booking import (
    BookingError,
    parse_preferred_date,
    resolve_slot_id,
)
from booking_orchestrator.tools.context import ToolContext, authentication_required

logger = logging.getLogger(__name__)

STATUS_LABELS = {
    "pending": "Chờ xác nhận",
    "confirmed": "Đã xác nhận",
    "rescheduled": "Đã đổi lịch",
    "cancelled": "Đã hủy",
    "completed": "Đã hoàn thành",
}

STORE_UNAVAILABLE = "Hệ thống đặt lịch đang bận. Vui lòng thử lại sau ít phút."
HISTORY_LIMIT = 5


def appointment_summary(ctx: ToolContext, appointment: Appointment) -> dict:
    doctor = ctx.directory.get_doctor(appointment.doctor_id)
    hospital = ctx.directory.get_hospital(doctor.hospital_id) if doctor else None
    status = str(appointment.status)
    return {
        "bookingCode": appointment.booking_code,
        "doctorName": f"{doctor.title} {doctor.full_name}" if doctor else "Bác sĩ",
        "hospitalName": hospital.name if hospital else None,
        "date": appointment.date.strftime("%d/%m/%Y"),
        "time": f"{appointment.start_time} - {appointment.end_time}",
        "status": status,
        "statusLabel": STATUS_LABELS.get(status, status),
    }


def make_appointment_tools(ctx: ToolContext) -> list[BaseTool]:

    # ── Tool 1: Find available slots ────────────────────────────────

    @tool
    def find_available_slots(
        query: str,
        date: str | None = None,
        session_id: Annotated[str, InjectedToolArg] = "",
    ) -> dict:
        """Find free appointment slots for a specialty, service or symptom.

        Returns at most 10 slots labelled L01..L10. Do NOT call this again
        when the patient has just picked one of those codes; call
        book_appointment instead.

        Args:
            query: Specialty, service or symptom, e.g. "khám nhi", "đau bụng".
            date: Preferred day, e.g. "mai", "20/12" or "2026-12-20".
        """
        specialty = ctx.mapper.specialty_in_text(query)
        if specialty is None:
            return {
                "error": (
                    f"Xin lỗi, hệ thống không thể xác định chuyên khoa cho \"{query}\". "
                    "Vui lòng thử lại với từ khóa khác hoặc chỉ định rõ chuyên khoa."
                )
            }

        service = ctx.mapper.map_service(query, specialty.target_id)
        doctors = ctx.directory.search_doctors(specialty_id=specialty.target_id, limit=50)
        if not doctors:
            return {"error": f"Không có bác sĩ nào thuộc chuyên khoa {specialty.target_name}."}

        today = ctx.now().date()
        day = parse_preferred_date(date, today) if date else None
        if date and day is None:
            logger.warning("Could not parse date %r, searching from today", date)

        try:
            slots = ctx.booking.list_available(
                doctors, day or today, day,
                service_name=service.target_name if service else None,
            )
        except ScheduleStoreError:
            return {"error": STORE_UNAVAILABLE, "retryable": True}

        if not slots:
            return {
                "error": (
                    f"Rất tiếc, đã hết lịch trống cho chuyên khoa {specialty.target_name} "
                    "trong khoảng thời gian này."
                )
            }

        if session_id:
            ctx.sessions.set_available_slots(session_id, slots)
        return {
            "specialty": specialty.target_name,
            "availableSlots": [s.to_payload() for s in slots],
        }

    # ── Tool 2: Book a slot ─────────────────────────────────────────

    @tool
    def book_appointment(
        slot_index: str | int,
        session_id: Annotated[str, InjectedToolArg] = "",
        user_prompt: Annotated[str, InjectedToolArg] = "",
    ) -> dict:
        """Book the slot the patient picked from the last find_available_slots result.

        Call this IMMEDIATELY when the patient says "chọn L01", "tôi chọn số 1"
        or similar.

        Args:
            slot_index: The reference code ("L01") or its number ("1").
        """
        user_id = ctx.user_for(session_id)
        if not user_id:
            return authentication_required("đặt lịch")

        try:
            slot_id = resolve_slot_id(ctx.sessions.get_available_slots(session_id), slot_index, user_prompt)
            appointment = ctx.booking.book(user_id, slot_id)
        except BookingError as exc:
            return exc.to_payload()
        except ScheduleStoreError:
            return {"error": STORE_UNAVAILABLE, "retryable": True}

        ctx.sessions.clear_available_slots(session_id)
        result = appointment_summary(ctx, appointment)
        result["success"] = True
        return result

    # ── Tool 3: List my appointments ────────────────────────────────

    @tool
    def get_my_appointments(session_id: Annotated[str, InjectedToolArg] = "") -> dict:
        """List the patient's upcoming appointments (pending, confirmed, rescheduled)."""
        user_id = ctx.user_for(session_id)
        if not user_id:
            return authentication_required("xem lịch hẹn")
        try:
            appointments = ctx.booking.appointments_for(user_id)
        except ScheduleStoreError:
            return {"error": STORE_UNAVAILABLE, "retryable": True}
        return {
            "success": True,
            "appointments": [appointment_summary(ctx, a) for a in appointments],
            "count": len(appointments),
        }

    # ── Tool 4: Cancel ──────────────────────────────────────────────

    @tool
    def cancel_appointment(
        booking_code: str,
        reason: str = "",
        session_id: Annotated[str, InjectedToolArg] = "",
    ) -> dict:
        """Cancel one of the patient's appointments.

        Args:
            booking_code: The appointment's booking code, e.g. "APT-7K2M9QXA".
            reason: Why the patient is cancelling.
        """
        user_id = ctx.user_for(session_id)
        if not user_id:
            return authentication_required("hủy lịch")
        try:
            appointment = ctx.booking.cancel(user_id, booking_code, reason)
        except BookingError as exc:
            return exc.to_payload()
        except ScheduleStoreError:
            return {"error": STORE_UNAVAILABLE, "retryable": True}
        return {
            "success": True,
            "message": f"Đã hủy lịch hẹn {appointment.booking_code}.",
            "bookingCode": appointment.booking_code,
        }

    # ── Tool 5: Reschedule ──────────────────────────────────────────

    @tool
    def reschedule_appointment(
        booking_code: str,
        preferred_date: str,
        preferred_time: str | None = None,
        session_id: Annotated[str, InjectedToolArg] = "",
    ) -> dict:
        """Move an appointment to another free slot with the same doctor.

        At most 2 reschedules per appointment, and not within 4 hours of it.

        Args:
            booking_code: The appointment's booking code.
            preferred_date: New day, e.g. "mai", "20-12", "2026-12-20".
            preferred_time: "09:00", "sáng", "chiều" or "tối".
        """
        user_id = ctx.user_for(session_id)
        if not user_id:
            return authentication_required("dời lịch")
        try:
            appointment = ctx.booking.reschedule(user_id, booking_code, preferred_date, preferred_time)
        except BookingError as exc:
            return exc.to_payload()
        except ScheduleStoreError:
            return {"error": STORE_UNAVAILABLE, "retryable": True}
        result = appointment_summary(ctx, appointment)
        result.update(success=True, rescheduleCount=appointment.reschedule_count)
        return result

    # ── Tool 6: Visit history ───────────────────────────────────────

    @tool
    def get_appointment_history(session_id: Annotated[str, InjectedToolArg] = "") -> dict:
        """List the patient's last five completed appointments, most recent first."""
        user_id = ctx.user_for(session_id)
        if not user_id:
            return authentication_required("xem lịch sử khám")
        try:
            appointments = ctx.booking.appointments_for(user_id, active_only=False)
        except ScheduleStoreError:
            return {"error": STORE_UNAVAILABLE, "retryable": True}
        completed = [a for a in appointments if a.status == AppointmentStatus.COMPLETED]
        completed.sort(key=lambda a: (a.date, a.start_time), reverse=True)
        completed = completed[:HISTORY_LIMIT]
        return {
            "success": True,
            "appointments": [appointment_summary(ctx, a) for a in completed],
            "count": len(completed),
        }

    return [
        find_available_slots,
        book_appointment,
        get_my_appointments,
        cancel_appointment,
        reschedule_appointment,
        get_appointment_history,
    ]
