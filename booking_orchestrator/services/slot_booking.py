"""Slot booking transaction, plus cancel and reschedule of an appointment.

Booking turns a human-chosen reference code ("L01", "1", "l 3") from the
session's last slot list into a ``scheduleId_timeSlotId`` pair, then runs
an all-or-nothing sequence against the schedule store:

    load schedule -> locate slot -> check is_booked -> claim (CAS)
    -> create appointment -> (on failure) release the claim

Every user-facing failure is a ``BookingError`` carrying a stable ``code``
and a Vietnamese message the model can relay as-is.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta

from booking_orchestrator.services.clinic_directory import ClinicDirectory, Doctor
from booking_orchestrator.services.schedule_store import (
    ACTIVE_STATUSES,
    Appointment,
    AppointmentStatus,
    ClaimResult,
    Schedule,
    ScheduleStore,
    ScheduleStoreError,
    TimeSlot,
)

logger = logging.getLogger(__name__)

MAX_LISTED_SLOTS = 10
MAX_RESCHEDULES = 2
RESCHEDULE_CUTOFF = timedelta(hours=4)
RESCHEDULE_SEARCH_LIMIT = 5

_REFERENCE_CODE = re.compile(r"^\s*l\s*0*(\d{1,2})\s*$", re.IGNORECASE)
_REFERENCE_IN_TEXT = re.compile(r"(?<![0-9a-zà-ỹ])l\s*0?(\d{1,2})(?!\d)", re.IGNORECASE)
_BARE_INDEX = re.compile(r"^\s*0*(\d{1,2})\s*$")
_DAY_MONTH = re.compile(r"(\d{1,2})[-/](\d{1,2})(?:[-/](\d{2,4}))?")
_CLOCK = re.compile(r"(?<!\d)(\d{1,2})\s*(?::|h|giờ)", re.IGNORECASE)

MORNING = range(8, 12)
AFTERNOON = range(13, 17)
EVENING = range(17, 20)


class BookingError(Exception):
    """A booking operation failed in a way the user should be told about."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    def to_payload(self) -> dict:
        return {"error": self.message, "code": self.code}


@dataclass(frozen=True)
class AvailableSlot:
    reference_code: str
    slot_id: str
    doctor_id: str
    doctor_name: str
    date: str
    time: str
    hospital_name: str = ""
    service_name: str | None = None

    def to_payload(self) -> dict:
        payload = {
            "referenceCode": self.reference_code,
            "slotId": self.slot_id,
            "doctorName": self.doctor_name,
            "date": self.date,
            "time": self.time,
        }
        if self.hospital_name:
            payload["hospitalName"] = self.hospital_name
        if self.service_name:
            payload["serviceName"] = self.service_name
        return payload


# ── Reference codes ──────────────────────────────────────────────────


def reference_code(index: int) -> str:
    return f"L{index:02d}"


def normalize_reference_code(value: str | int) -> str | None:
    """``"l1"``, ``"L01"``, ``"1"`` and ``1`` all become ``"L01"``."""
    if isinstance(value, int):
        return reference_code(value) if value > 0 else None
    match = _REFERENCE_CODE.match(value) or _BARE_INDEX.match(value)
    if not match or int(match.group(1)) == 0:
        return None
    return reference_code(int(match.group(1)))


def find_reference_code_in_text(text: str | None) -> str | None:
    """First slot reference mentioned in free text ("tôi chọn L03 nhé")."""
    if not text:
        return None
    match = _REFERENCE_IN_TEXT.search(text)
    if not match or int(match.group(1)) == 0:
        return None
    return reference_code(int(match.group(1)))


def resolve_slot_id(
    slots: list[AvailableSlot] | None,
    identifier: str | int | None,
    user_prompt: str | None = None,
) -> str:
    """Map what the user picked to a ``scheduleId_timeSlotId`` string.

    Raw slot ids pass through untouched.  Otherwise the identifier (or, if
    it does not parse, the reference code written in *user_prompt*) is
    looked up in the session's cached slot list.
    """
    if isinstance(identifier, str) and "_" in identifier:
        return identifier.strip()

    if not slots:
        raise BookingError(
            "slots_expired",
            "Danh sách lịch trước đó đã hết hạn. Vui lòng tìm lại lịch trống trước khi đặt.",
        )

    code = normalize_reference_code(identifier) if identifier not in (None, "") else None
    if code is None:
        code = find_reference_code_in_text(user_prompt)

    for slot in slots:
        if slot.reference_code == code:
            return slot.slot_id

    shown = code or identifier
    raise BookingError(
        "slot_not_found",
        f"Không tìm thấy mã slot {shown} trong danh sách trước đó. "
        f"Vui lòng chọn một mã từ L01 đến {slots[-1].reference_code}.",
    )


def split_slot_id(slot_id: str) -> tuple[str, str]:
    schedule_id, _, time_slot_id = (slot_id or "").partition("_")
    if not schedule_id or not time_slot_id:
        raise BookingError(
            "invalid_slot",
            "Mã lịch hẹn (slotId) không đúng định dạng. Vui lòng chọn lại từ danh sách.",
        )
    return schedule_id, time_slot_id


# ── Date/time parsing ────────────────────────────────────────────────


def parse_preferred_date(text: str, today: date) -> date | None:
    """Accepts "mai"/"tomorrow", "20-12", "20/12/2026" or ISO dates."""
    lower = (text or "").strip().lower()
    if not lower:
        return None
    if "mai" in lower or "tomorrow" in lower:
        return today + timedelta(days=1)

    try:
        return date.fromisoformat(lower[:10])
    except ValueError:
        pass

    match = _DAY_MONTH.search(lower)
    if match:
        day, month, year = match.groups()
        explicit_year = year is not None
        if year is None:
            year = today.year
        elif len(year) == 2:
            year = 2000 + int(year)
        try:
            parsed = date(int(year), int(month), int(day))
        except ValueError:
            return None
        if not explicit_year and parsed < today:
            parsed = parsed.replace(year=parsed.year + 1)
        return parsed
    return None


def _slot_hour(slot: TimeSlot) -> int:
    return int(slot.start_time.split(":")[0])


def slot_matches_time(slot: TimeSlot, preferred_time: str | None) -> bool:
    """Clock times match within one hour; "sáng"/"chiều"/"tối" match a period."""
    if not preferred_time:
        return True
    lower = preferred_time.lower()
    hour = _slot_hour(slot)
    clock = _CLOCK.search(lower)
    if clock:
        return abs(int(clock.group(1)) - hour) <= 1
    if "sáng" in lower or "morning" in lower:
        return hour in MORNING
    if "chiều" in lower or "afternoon" in lower:
        return hour in AFTERNOON
    if "tối" in lower or "evening" in lower:
        return hour in EVENING
    return True


# ── Service ──────────────────────────────────────────────────────────


class SlotBookingService:
    def __init__(
        self,
        store: ScheduleStore,
        directory: ClinicDirectory,
        *,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._store = store
        self._directory = directory
        self._now = now

    def list_available(
        self,
        doctors: Iterable[Doctor],
        date_from: date | None = None,
        date_to: date | None = None,
        *,
        service_name: str | None = None,
        limit: int = MAX_LISTED_SLOTS,
    ) -> list[AvailableSlot]:
        """Free slots of *doctors*, earliest first, labelled L01..L{limit}."""
        by_id = {d.id: d for d in doctors}
        if not by_id:
            return []
        start = date_from or self._now().date()
        schedules = self._store.find_schedules(list(by_id), start, date_to, limit=20)

        slots: list[AvailableSlot] = []
        for schedule in schedules:
            doctor = by_id[schedule.doctor_id]
            hospital = self._directory.get_hospital(doctor.hospital_id)
            for ts in schedule.time_slots:
                if ts.is_booked:
                    continue
                slots.append(AvailableSlot(
                    reference_code=reference_code(len(slots) + 1),
                    slot_id=f"{schedule.id}_{ts.id}",
                    doctor_id=doctor.id,
                    doctor_name=f"{doctor.title} {doctor.full_name}".strip(),
                    date=schedule.date.strftime("%d/%m/%Y"),
                    time=ts.start_time,
                    hospital_name=hospital.name if hospital else "",
                    service_name=service_name,
                ))
                if len(slots) >= limit:
                    return slots
        return slots

    def book(self, user_id: str, slot_id: str) -> Appointment:
        """Claim the slot and create the user's appointment, atomically."""
        schedule_id, time_slot_id = split_slot_id(slot_id)

        schedule = self._load_schedule(schedule_id)
        slot = schedule.slot(time_slot_id)
        if slot is None:
            raise BookingError("slot_missing", "Giờ hẹn không còn tồn tại.")
        if slot.is_booked:
            raise BookingError("slot_taken", "Rất tiếc, giờ hẹn này vừa có người khác đặt mất.")

        self._claim(schedule_id, time_slot_id)
        try:
            appointment = self._store.create_appointment(user_id, schedule.doctor_id, schedule, slot)
        except Exception:
            logger.exception("Appointment creation failed for slot %s, releasing claim", slot_id)
            try:
                self._store.release_slot(schedule_id, time_slot_id)
            except Exception:
                logger.exception("Could not release slot %s; it stays claimed with no appointment", slot_id)
            raise BookingError(
                "booking_failed", "Có lỗi xảy ra khi đặt lịch. Vui lòng thử lại.",
            ) from None

        logger.info("Slot %s booked as %s", slot_id, appointment.booking_code)
        return appointment

    def appointments_for(self, user_id: str, *, active_only: bool = True) -> list[Appointment]:
        appointments = self._store.appointments_for_user(user_id)
        if active_only:
            appointments = [a for a in appointments if a.status in ACTIVE_STATUSES]
        return appointments

    def cancel(self, user_id: str, booking_code: str, reason: str = "") -> Appointment:
        appointment = self._owned(user_id, booking_code, "hủy")
        if appointment.status is AppointmentStatus.CANCELLED:
            raise BookingError("already_cancelled", "Lịch hẹn này đã được hủy trước đó.")
        if appointment.status is AppointmentStatus.COMPLETED:
            raise BookingError("already_completed", "Không thể hủy lịch hẹn đã hoàn thành.")

        cancelled = replace(
            appointment,
            status=AppointmentStatus.CANCELLED,
            cancel_reason=reason or "Hủy qua trợ lý ảo",
        )
        self._store.save_appointment(cancelled)
        self._store.release_slot(appointment.schedule_id, appointment.time_slot_id)
        logger.info("Appointment %s cancelled", appointment.booking_code)
        return cancelled

    def reschedule(
        self,
        user_id: str,
        booking_code: str,
        preferred_date: str,
        preferred_time: str | None = None,
    ) -> Appointment:
        """Move an appointment to a free slot of the same doctor.

        The new slot is claimed before the old one is released, so a
        failure midway never leaves the patient without a slot.
        """
        if not preferred_date:
            raise BookingError("missing_date", "Vui lòng cung cấp ngày mới mà bạn muốn dời đến.")

        appointment = self._owned(user_id, booking_code, "dời")
        if appointment.status not in (AppointmentStatus.PENDING, AppointmentStatus.RESCHEDULED):
            raise BookingError(
                "invalid_status",
                f"Không thể dời lịch hẹn có trạng thái '{appointment.status}'. "
                "Chỉ có thể dời lịch đang chờ xác nhận hoặc đã được dời trước đó.",
            )
        if appointment.reschedule_count >= MAX_RESCHEDULES:
            raise BookingError(
                "reschedule_limit", "Lịch hẹn này đã được đổi 2 lần, không thể đổi thêm.",
            )

        now = self._now()
        if appointment.starts_at() - now.replace(tzinfo=None) < RESCHEDULE_CUTOFF:
            raise BookingError(
                "too_late", "Không thể đổi lịch trong vòng 4 giờ trước thời gian hẹn.",
            )

        today = now.date()
        target = parse_preferred_date(preferred_date, today)
        if target is None or target < today:
            raise BookingError(
                "invalid_date",
                f'Không thể parse ngày "{preferred_date}" hoặc ngày đã qua. '
                'Vui lòng cung cấp ngày hợp lệ (ví dụ: "ngày 20-12", "sáng mai").',
            )

        schedule, slot = self._find_replacement(appointment, target, preferred_time)
        self._claim(schedule.id, slot.id)

        moved = replace(
            appointment,
            schedule_id=schedule.id,
            time_slot_id=slot.id,
            date=schedule.date,
            start_time=slot.start_time,
            end_time=slot.end_time,
            status=AppointmentStatus.RESCHEDULED,
            reschedule_count=appointment.reschedule_count + 1,
        )
        try:
            self._store.save_appointment(moved)
        except ScheduleStoreError:
            self._store.release_slot(schedule.id, slot.id)
            raise
        self._store.release_slot(appointment.schedule_id, appointment.time_slot_id)
        logger.info(
            "Appointment %s moved to %s %s", appointment.booking_code, moved.date, moved.start_time,
        )
        return moved

    # ── Internal ─────────────────────────────────────────────────────

    def _load_schedule(self, schedule_id: str) -> Schedule:
        schedule = self._store.get_schedule(schedule_id)
        if schedule is None:
            raise BookingError("schedule_missing", "Lịch hẹn không còn tồn tại.")
        return schedule

    def _claim(self, schedule_id: str, time_slot_id: str) -> None:
        result = self._store.claim_slot(schedule_id, time_slot_id)
        if result is ClaimResult.SUCCESS:
            return
        if result is ClaimResult.ALREADY_BOOKED:
            logger.info("Lost race for slot %s_%s", schedule_id, time_slot_id)
            raise BookingError("slot_taken", "Rất tiếc, giờ hẹn này vừa có người khác đặt mất.")
        if result is ClaimResult.SCHEDULE_MISSING:
            raise BookingError("schedule_missing", "Lịch hẹn không còn tồn tại.")
        raise BookingError("slot_missing", "Giờ hẹn không còn tồn tại.")

    def _owned(self, user_id: str, booking_code: str, verb: str) -> Appointment:
        code = (booking_code or "").strip().upper()
        if not code:
            raise BookingError("missing_code", f"Vui lòng cung cấp mã đặt lịch để {verb} lịch.")
        appointment = self._store.get_appointment_by_code(code)
        if appointment is None or appointment.user_id != user_id:
            raise BookingError(
                "not_found",
                f"Không tìm thấy lịch hẹn với mã {code} hoặc bạn không có quyền {verb} lịch này.",
            )
        return appointment

    def _find_replacement(
        self, appointment: Appointment, target: date, preferred_time: str | None,
    ) -> tuple[Schedule, TimeSlot]:
        doctor_ids = [appointment.doctor_id]
        schedules = self._store.find_schedules(doctor_ids, target, target)
        if not schedules:
            schedules = self._store.find_schedules(doctor_ids, target, limit=RESCHEDULE_SEARCH_LIMIT)
        if not schedules:
            raise BookingError(
                "no_schedule",
                f"Không tìm thấy lịch trống cho bác sĩ này từ ngày {target.strftime('%d/%m/%Y')}.",
            )

        for schedule in schedules:
            for ts in schedule.time_slots:
                if ts.is_booked:
                    continue
                if schedule.id == appointment.schedule_id and ts.id == appointment.time_slot_id:
                    continue
                if slot_matches_time(ts, preferred_time):
                    return schedule, ts
        raise BookingError(
            "no_matching_slot",
            "Không tìm thấy lịch trống phù hợp với yêu cầu của bạn. Vui lòng thử ngày hoặc giờ khác.",
        )
