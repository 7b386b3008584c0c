"""Tests for the slot booking transaction, cancel and reschedule."""

from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime, timedelta
from unittest.mock import patch

import pytest

from booking_orchestrator.services.schedule_store import (
    AppointmentStatus,
    InMemoryScheduleStore,
    Schedule,
    ScheduleStoreError,
    TimeSlot,
)
from booking_orchestrator.services.slot_booking import (
    AvailableSlot,
    BookingError,
    SlotBookingService,
    find_reference_code_in_text,
    normalize_reference_code,
    parse_preferred_date,
    resolve_slot_id,
    slot_matches_time,
)

NOW = datetime(2026, 10, 19, 10, 0)
TODAY = NOW.date()


@pytest.fixture
def store(seed):
    return InMemoryScheduleStore.from_seed(seed, today=TODAY)


@pytest.fixture
def booking(store, directory):
    return SlotBookingService(store, directory, now=lambda: NOW)


def _slots(n: int) -> list[AvailableSlot]:
    return [
        AvailableSlot(f"L{i:02d}", f"sch-{i}_ts1", "dr-1", "BS. A", "20/10/2026", "08:00")
        for i in range(1, n + 1)
    ]


class TestReferenceCodes:
    @pytest.mark.parametrize("value", ["L01", "l1", "1", " l 01 ", 1])
    def test_normalize(self, value):
        assert normalize_reference_code(value) == "L01"

    @pytest.mark.parametrize("value", ["L00", "0", "abc", "L100", 0, -3])
    def test_normalize_rejects(self, value):
        assert normalize_reference_code(value) is None

    def test_found_inside_text(self):
        assert find_reference_code_in_text("Tôi chọn L03 nhé") == "L03"
        assert find_reference_code_in_text("chọn l7") == "L07"

    def test_words_starting_with_l_are_not_codes(self):
        assert find_reference_code_in_text("Tôi muốn đặt lịch khám") is None
        assert find_reference_code_in_text("lúc 10 giờ") is None

    def test_every_listed_code_resolves_to_its_slot(self):
        slots = _slots(10)
        for slot in slots:
            assert resolve_slot_id(slots, slot.reference_code) == slot.slot_id

    def test_numeric_identifier(self):
        assert resolve_slot_id(_slots(3), 2) == "sch-2_ts1"

    def test_prompt_is_used_when_identifier_is_garbage(self):
        assert resolve_slot_id(_slots(3), "cái thứ ba", "tôi chọn L03") == "sch-3_ts1"

    def test_raw_slot_id_passes_through(self):
        assert resolve_slot_id(None, "sch-0201_ts1") == "sch-0201_ts1"

    def test_expired_list(self):
        with pytest.raises(BookingError) as exc:
            resolve_slot_id(None, "L01")
        assert exc.value.code == "slots_expired"

    def test_code_outside_list(self):
        with pytest.raises(BookingError) as exc:
            resolve_slot_id(_slots(3), "L09")
        assert exc.value.code == "slot_not_found"
        assert "L03" in exc.value.message


class TestDateAndTime:
    def test_tomorrow(self):
        assert parse_preferred_date("sáng mai", TODAY) == TODAY + timedelta(days=1)

    def test_day_month_rolls_into_next_year_when_past(self):
        assert parse_preferred_date("20-12", TODAY) == date(2026, 12, 20)
        assert parse_preferred_date("01/02", TODAY) == date(2027, 2, 1)

    def test_iso_and_invalid(self):
        assert parse_preferred_date("2026-11-05", TODAY) == date(2026, 11, 5)
        assert parse_preferred_date("31/02", TODAY) is None
        assert parse_preferred_date("hôm nào đó", TODAY) is None

    def test_time_preferences(self):
        slot = TimeSlot("ts", "09:00", "09:30")
        assert slot_matches_time(slot, "9h")
        assert slot_matches_time(slot, "sáng")
        assert not slot_matches_time(slot, "chiều")
        assert not slot_matches_time(slot, "14:00")
        assert slot_matches_time(slot, None)

    def test_day_number_is_not_an_hour(self):
        afternoon = TimeSlot("ts", "15:00", "15:30")
        assert slot_matches_time(afternoon, "chiều ngày 20")
        assert not slot_matches_time(afternoon, "sáng ngày 15")
        assert slot_matches_time(afternoon, "15 giờ")


class TestListAvailable:
    def test_codes_are_sequential_and_capped(self, booking, directory):
        doctors = directory.search_doctors(specialty_id="sp-nhi")
        slots = booking.list_available(doctors, TODAY)
        assert [s.reference_code for s in slots] == [f"L{i:02d}" for i in range(1, len(slots) + 1)]
        assert len(slots) == 7
        assert slots[0].slot_id == "sch-0201_ts1"

    def test_booked_slots_are_skipped(self, booking, directory):
        doctors = [directory.get_doctor("dr-01")]
        slot_ids = [s.slot_id for s in booking.list_available(doctors, TODAY)]
        assert slot_ids == ["sch-0101_ts1", "sch-0101_ts3"]

    def test_limit(self, booking, directory):
        doctors = directory.search_doctors(specialty_id="sp-nhi")
        assert len(booking.list_available(doctors, TODAY, limit=2)) == 2


class TestBook:
    def test_book_creates_pending_appointment(self, booking, store):
        appointment = booking.book("user-1", "sch-0201_ts1")
        assert appointment.status is AppointmentStatus.PENDING
        assert appointment.booking_code.startswith("APT-")
        assert store.get_schedule("sch-0201").slot("ts1").is_booked is True

    def test_second_booking_of_same_slot_fails(self, booking):
        booking.book("user-1", "sch-0201_ts1")
        with pytest.raises(BookingError) as exc:
            booking.book("user-2", "sch-0201_ts1")
        assert exc.value.code == "slot_taken"

    def test_malformed_and_unknown_slots(self, booking):
        with pytest.raises(BookingError) as exc:
            booking.book("user-1", "garbage")
        assert exc.value.code == "invalid_slot"
        with pytest.raises(BookingError) as exc:
            booking.book("user-1", "sch-9999_ts1")
        assert exc.value.code == "schedule_missing"
        with pytest.raises(BookingError) as exc:
            booking.book("user-1", "sch-0201_ts9")
        assert exc.value.code == "slot_missing"

    def test_failed_creation_releases_the_claim(self, booking, store):
        with patch.object(store, "create_appointment", side_effect=ScheduleStoreError("insert failed")):
            with pytest.raises(BookingError) as exc:
                booking.book("user-1", "sch-0201_ts1")
        assert exc.value.code == "booking_failed"
        assert store.get_schedule("sch-0201").slot("ts1").is_booked is False
        assert store.appointment_count() == 0

    def test_failed_release_still_reports_booking_failed(self, booking, store):
        with patch.object(store, "create_appointment", side_effect=ScheduleStoreError("insert failed")), \
                patch.object(store, "release_slot", side_effect=ScheduleStoreError("store down")):
            with pytest.raises(BookingError) as exc:
                booking.book("user-1", "sch-0201_ts1")
        assert exc.value.code == "booking_failed"

    def test_lost_race_is_reported_plainly(self, booking, store):
        # The slot looks free when loaded but another request claims it first.
        original = store.get_schedule

        def stale_then_claimed(schedule_id):
            schedule = original(schedule_id)
            store.claim_slot(schedule_id, "ts1")
            return schedule

        with patch.object(store, "get_schedule", side_effect=stale_then_claimed):
            with pytest.raises(BookingError) as exc:
                booking.book("user-1", "sch-0201_ts1")
        assert exc.value.code == "slot_taken"
        assert store.appointment_count() == 0


class TestCancel:
    def test_cancel_releases_slot(self, booking, store):
        appointment = booking.book("user-1", "sch-0201_ts1")
        cancelled = booking.cancel("user-1", appointment.booking_code, "bận việc")
        assert cancelled.status is AppointmentStatus.CANCELLED
        assert cancelled.cancel_reason == "bận việc"
        assert store.get_schedule("sch-0201").slot("ts1").is_booked is False
        assert booking.appointments_for("user-1") == []

    def test_only_owner_can_cancel(self, booking):
        appointment = booking.book("user-1", "sch-0201_ts1")
        with pytest.raises(BookingError) as exc:
            booking.cancel("user-2", appointment.booking_code)
        assert exc.value.code == "not_found"

    def test_cancel_twice(self, booking):
        appointment = booking.book("user-1", "sch-0201_ts1")
        booking.cancel("user-1", appointment.booking_code)
        with pytest.raises(BookingError) as exc:
            booking.cancel("user-1", appointment.booking_code)
        assert exc.value.code == "already_cancelled"


class TestReschedule:
    def test_moves_to_same_doctor_and_frees_old_slot(self, booking, store):
        appointment = booking.book("user-1", "sch-0201_ts1")
        target = (TODAY + timedelta(days=2)).isoformat()

        moved = booking.reschedule("user-1", appointment.booking_code, target, "10:00")

        assert (moved.schedule_id, moved.time_slot_id) == ("sch-0202", "ts2")
        assert moved.status is AppointmentStatus.RESCHEDULED
        assert moved.reschedule_count == 1
        assert store.get_schedule("sch-0202").slot("ts2").is_booked is True
        assert store.get_schedule("sch-0201").slot("ts1").is_booked is False

    def test_limit_of_two_reschedules(self, booking, store):
        appointment = booking.book("user-1", "sch-0201_ts1")
        store.save_appointment(replace(appointment, reschedule_count=2))
        with pytest.raises(BookingError) as exc:
            booking.reschedule("user-1", appointment.booking_code, "mai")
        assert exc.value.code == "reschedule_limit"

    def test_not_within_four_hours(self, store, directory):
        store.add_schedule(Schedule("sch-today", "dr-02", TODAY, [TimeSlot("ts1", "12:00", "12:30")]))
        booking = SlotBookingService(store, directory, now=lambda: NOW)
        appointment = booking.book("user-1", "sch-today_ts1")
        with pytest.raises(BookingError) as exc:
            booking.reschedule("user-1", appointment.booking_code, "mai")
        assert exc.value.code == "too_late"

    def test_confirmed_appointment_cannot_be_moved(self, booking, store):
        appointment = booking.book("user-1", "sch-0201_ts1")
        store.save_appointment(replace(appointment, status=AppointmentStatus.CONFIRMED))
        with pytest.raises(BookingError) as exc:
            booking.reschedule("user-1", appointment.booking_code, "mai")
        assert exc.value.code == "invalid_status"

    def test_unparseable_date(self, booking):
        appointment = booking.book("user-1", "sch-0201_ts1")
        with pytest.raises(BookingError) as exc:
            booking.reschedule("user-1", appointment.booking_code, "hôm nào đó")
        assert exc.value.code == "invalid_date"

    def test_no_matching_time(self, booking):
        appointment = booking.book("user-1", "sch-0201_ts1")
        with pytest.raises(BookingError) as exc:
            booking.reschedule("user-1", appointment.booking_code, "mai", "tối")
        assert exc.value.code == "no_matching_slot"
