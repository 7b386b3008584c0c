"""Tests for the schedule stores and their slot claim."""

from __future__ import annotations

import threading
from datetime import date, timedelta
from unittest.mock import MagicMock

import pytest

from booking_orchestrator.services.schedule_store import (
    BOOKING_CODE_ALPHABET,
    AppointmentStatus,
    ClaimResult,
    InMemoryScheduleStore,
    Schedule,
    ScheduleStoreError,
    SupabaseScheduleStore,
    TimeSlot,
    generate_booking_code,
)

TODAY = date(2026, 10, 19)


@pytest.fixture
def store():
    store = InMemoryScheduleStore()
    store.add_schedule(Schedule(
        id="sch-1", doctor_id="dr-1", date=TODAY + timedelta(days=1),
        time_slots=[TimeSlot("ts1", "08:00", "08:30"), TimeSlot("ts2", "09:00", "09:30")],
    ))
    return store


class TestBookingCode:
    def test_format(self):
        code = generate_booking_code()
        assert code.startswith("APT-")
        assert len(code) == 12
        assert set(code[4:]) <= set(BOOKING_CODE_ALPHABET)


class TestSeedLoading:
    def test_day_offsets_are_relative_to_today(self, seed):
        store = InMemoryScheduleStore.from_seed(seed, today=TODAY)
        assert store.get_schedule("sch-0101").date == TODAY + timedelta(days=1)

    def test_explicit_dates_are_kept(self):
        store = InMemoryScheduleStore.from_seed(
            {"schedules": [{"id": "x", "doctor_id": "d", "date": "2026-12-20", "time_slots": []}]}
        )
        assert store.get_schedule("x").date == date(2026, 12, 20)

    def test_booked_flag_is_loaded(self, seed):
        store = InMemoryScheduleStore.from_seed(seed, today=TODAY)
        assert store.get_schedule("sch-0101").slot("ts2").is_booked is True


class TestInMemoryClaim:
    def test_claim_then_claim_again(self, store):
        assert store.claim_slot("sch-1", "ts1") is ClaimResult.SUCCESS
        assert store.claim_slot("sch-1", "ts1") is ClaimResult.ALREADY_BOOKED

    def test_missing_schedule_and_slot(self, store):
        assert store.claim_slot("nope", "ts1") is ClaimResult.SCHEDULE_MISSING
        assert store.claim_slot("sch-1", "nope") is ClaimResult.SLOT_MISSING

    def test_release_frees_the_slot(self, store):
        store.claim_slot("sch-1", "ts1")
        store.release_slot("sch-1", "ts1")
        assert store.claim_slot("sch-1", "ts1") is ClaimResult.SUCCESS

    def test_exactly_one_concurrent_claim_wins(self, store):
        results: list[ClaimResult] = []
        barrier = threading.Barrier(16)

        def claim():
            barrier.wait()
            results.append(store.claim_slot("sch-1", "ts2"))

        threads = [threading.Thread(target=claim) for _ in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(ClaimResult.SUCCESS) == 1
        assert results.count(ClaimResult.ALREADY_BOOKED) == 15

    def test_returned_schedules_are_copies(self, store):
        schedule = store.get_schedule("sch-1")
        schedule.time_slots[0].is_booked = True
        assert store.get_schedule("sch-1").slot("ts1").is_booked is False


class TestInMemoryAppointments:
    def test_create_links_slot_and_is_findable_by_code(self, store):
        schedule = store.get_schedule("sch-1")
        store.claim_slot("sch-1", "ts1")
        appointment = store.create_appointment("user-1", "dr-1", schedule, schedule.slot("ts1"))

        assert appointment.status is AppointmentStatus.PENDING
        assert store.get_schedule("sch-1").slot("ts1").appointment_id == appointment.id
        assert store.get_appointment_by_code(appointment.booking_code.lower()).id == appointment.id
        assert [a.id for a in store.appointments_for_user("user-1")] == [appointment.id]

    def test_save_unknown_appointment_fails(self, store):
        schedule = store.get_schedule("sch-1")
        appointment = store.create_appointment("user-1", "dr-1", schedule, schedule.slot("ts1"))
        store.delete_appointment(appointment.id)
        with pytest.raises(ScheduleStoreError):
            store.save_appointment(appointment)

    def test_find_schedules_filters_by_doctor_and_range(self, store):
        store.add_schedule(Schedule("sch-2", "dr-1", TODAY + timedelta(days=5)))
        store.add_schedule(Schedule("sch-3", "dr-2", TODAY + timedelta(days=1)))
        found = store.find_schedules(["dr-1"], TODAY, TODAY + timedelta(days=2))
        assert [s.id for s in found] == ["sch-1"]


def _supabase_client(update_rows, schedule_rows=None, slot_rows=None):
    """A MagicMock shaped like the fluent supabase-py query builder."""
    client = MagicMock()
    table = client.table.return_value
    update_chain = table.update.return_value.eq.return_value.eq.return_value
    update_chain.eq.return_value.execute.return_value.data = update_rows
    update_chain.execute.return_value.data = update_rows
    select = table.select.return_value
    select.eq.return_value.limit.return_value.execute.return_value.data = schedule_rows or []
    select.in_.return_value.order.return_value.execute.return_value.data = slot_rows or []
    return client


class TestSupabaseClaim:
    def test_conditional_update_filters_on_is_booked(self):
        client = _supabase_client(update_rows=[{"id": "ts1", "is_booked": True}])
        store = SupabaseScheduleStore(client)

        assert store.claim_slot("sch-1", "ts1") is ClaimResult.SUCCESS

        table = client.table.return_value
        table.update.assert_called_with({"is_booked": True})
        last_eq = table.update.return_value.eq.return_value.eq.return_value.eq
        last_eq.assert_called_with("is_booked", False)

    def test_no_row_updated_on_a_booked_slot(self):
        client = _supabase_client(
            update_rows=[],
            schedule_rows=[{"id": "sch-1", "doctor_id": "dr-1", "date": "2026-10-20"}],
            slot_rows=[{"id": "ts1", "schedule_id": "sch-1", "start_time": "08:00",
                        "end_time": "08:30", "is_booked": True}],
        )
        store = SupabaseScheduleStore(client)
        assert store.claim_slot("sch-1", "ts1") is ClaimResult.ALREADY_BOOKED

    def test_no_row_updated_on_a_missing_schedule(self):
        store = SupabaseScheduleStore(_supabase_client(update_rows=[]))
        assert store.claim_slot("sch-x", "ts1") is ClaimResult.SCHEDULE_MISSING

    def test_client_errors_become_store_errors(self):
        client = MagicMock()
        select = client.table.return_value.select.return_value
        select.eq.return_value.limit.return_value.execute.side_effect = ConnectionError("timeout")
        store = SupabaseScheduleStore(client)
        with pytest.raises(ScheduleStoreError):
            store.get_appointment_by_code("APT-AAAA1111")
