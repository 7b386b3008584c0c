"""Schedule store: doctors' schedules, bookable time slots and appointments.

The only operation here that must be safe under contention is
``claim_slot``: it flips a slot's ``is_booked`` flag from false to true as
one compare-and-swap and reports whether *this* caller won.

* ``InMemoryScheduleStore``: single-process store; the CAS runs under the
  store's own lock.  Used for local development, the CLI and tests.
* ``SupabaseScheduleStore``: Postgres through Supabase; the CAS is a
  conditional ``UPDATE … WHERE is_booked = false`` and the row count
  returned decides the winner, so it holds across process instances.
"""

from __future__ import annotations

import copy
import json
import logging
import secrets
import string
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from enum import StrEnum
from pathlib import Path
from typing import Any

from booking_orchestrator.services.metrics import timed

logger = logging.getLogger(__name__)

BOOKING_CODE_ALPHABET = string.ascii_uppercase + string.digits
BOOKING_CODE_LENGTH = 8


def generate_booking_code() -> str:
    suffix = "".join(secrets.choice(BOOKING_CODE_ALPHABET) for _ in range(BOOKING_CODE_LENGTH))
    return f"APT-{suffix}"


class AppointmentStatus(StrEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    RESCHEDULED = "rescheduled"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


ACTIVE_STATUSES = frozenset(
    {AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED, AppointmentStatus.RESCHEDULED}
)


class ClaimResult(StrEnum):
    SUCCESS = "success"
    ALREADY_BOOKED = "already_booked"
    SCHEDULE_MISSING = "schedule_missing"
    SLOT_MISSING = "slot_missing"


class ScheduleStoreError(Exception):
    """The underlying store failed (connection, constraint, malformed row)."""


@dataclass
class TimeSlot:
    id: str
    start_time: str
    end_time: str
    is_booked: bool = False
    appointment_id: str | None = None


@dataclass
class Schedule:
    id: str
    doctor_id: str
    date: date
    time_slots: list[TimeSlot] = field(default_factory=list)

    def slot(self, time_slot_id: str) -> TimeSlot | None:
        return next((ts for ts in self.time_slots if ts.id == time_slot_id), None)


@dataclass
class Appointment:
    id: str
    booking_code: str
    user_id: str
    doctor_id: str
    schedule_id: str
    time_slot_id: str
    date: date
    start_time: str
    end_time: str
    status: AppointmentStatus = AppointmentStatus.PENDING
    reschedule_count: int = 0
    cancel_reason: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def starts_at(self) -> datetime:
        hour, minute = (int(part) for part in self.start_time.split(":")[:2])
        return datetime(self.date.year, self.date.month, self.date.day, hour, minute)


class ScheduleStore(ABC):
    """Booking collaborator used by the slot booking transaction."""

    @abstractmethod
    def get_schedule(self, schedule_id: str) -> Schedule | None: ...

    @abstractmethod
    def find_schedules(
        self,
        doctor_ids: list[str],
        date_from: date,
        date_to: date | None = None,
        limit: int = 20,
    ) -> list[Schedule]:
        """Schedules of the given doctors in a date range, earliest first."""

    @abstractmethod
    def claim_slot(self, schedule_id: str, time_slot_id: str) -> ClaimResult:
        """Atomically mark a free slot booked."""

    @abstractmethod
    def release_slot(self, schedule_id: str, time_slot_id: str) -> None: ...

    @abstractmethod
    def create_appointment(
        self,
        user_id: str,
        doctor_id: str,
        schedule: Schedule,
        slot: TimeSlot,
    ) -> Appointment: ...

    @abstractmethod
    def delete_appointment(self, appointment_id: str) -> None: ...

    @abstractmethod
    def save_appointment(self, appointment: Appointment) -> None:
        """Persist changes to an existing appointment."""

    @abstractmethod
    def get_appointment_by_code(self, booking_code: str) -> Appointment | None: ...

    @abstractmethod
    def appointments_for_user(self, user_id: str) -> list[Appointment]: ...


# ── In-memory implementation ─────────────────────────────────────────


class InMemoryScheduleStore(ScheduleStore):
    def __init__(self) -> None:
        self._schedules: dict[str, Schedule] = {}
        self._appointments: dict[str, Appointment] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_seed(cls, data: dict[str, Any], today: date | None = None) -> InMemoryScheduleStore:
        """Rows carry either an ISO ``date`` or a ``day_offset`` from *today*."""
        today = today or date.today()
        store = cls()
        for row in data.get("schedules", []):
            if "day_offset" in row:
                day = today + timedelta(days=int(row["day_offset"]))
            else:
                day = date.fromisoformat(row["date"])
            store.add_schedule(
                Schedule(
                    id=row["id"],
                    doctor_id=row["doctor_id"],
                    date=day,
                    time_slots=[TimeSlot(**ts) for ts in row.get("time_slots", [])],
                )
            )
        logger.info("Schedule store seeded with %d schedules", len(store._schedules))
        return store

    @classmethod
    def from_json(cls, path: Path) -> InMemoryScheduleStore:
        with open(path, encoding="utf-8") as fh:
            return cls.from_seed(json.load(fh))

    def add_schedule(self, schedule: Schedule) -> None:
        with self._lock:
            self._schedules[schedule.id] = copy.deepcopy(schedule)

    def get_schedule(self, schedule_id: str) -> Schedule | None:
        with self._lock:
            schedule = self._schedules.get(schedule_id)
            return copy.deepcopy(schedule) if schedule else None

    def find_schedules(self, doctor_ids, date_from, date_to=None, limit=20):
        wanted = set(doctor_ids)
        with self._lock:
            matches = [
                copy.deepcopy(s) for s in self._schedules.values()
                if s.doctor_id in wanted
                and s.date >= date_from
                and (date_to is None or s.date <= date_to)
            ]
        matches.sort(key=lambda s: (s.date, s.id))
        return matches[:limit]

    def claim_slot(self, schedule_id: str, time_slot_id: str) -> ClaimResult:
        with self._lock:
            schedule = self._schedules.get(schedule_id)
            if schedule is None:
                return ClaimResult.SCHEDULE_MISSING
            slot = schedule.slot(time_slot_id)
            if slot is None:
                return ClaimResult.SLOT_MISSING
            if slot.is_booked:
                return ClaimResult.ALREADY_BOOKED
            slot.is_booked = True
            return ClaimResult.SUCCESS

    def release_slot(self, schedule_id: str, time_slot_id: str) -> None:
        with self._lock:
            schedule = self._schedules.get(schedule_id)
            slot = schedule.slot(time_slot_id) if schedule else None
            if slot is not None:
                slot.is_booked = False
                slot.appointment_id = None

    def create_appointment(self, user_id, doctor_id, schedule, slot):
        appointment = Appointment(
            id=str(uuid.uuid4()),
            booking_code=generate_booking_code(),
            user_id=user_id,
            doctor_id=doctor_id,
            schedule_id=schedule.id,
            time_slot_id=slot.id,
            date=schedule.date,
            start_time=slot.start_time,
            end_time=slot.end_time,
        )
        with self._lock:
            stored = self._schedules.get(schedule.id)
            stored_slot = stored.slot(slot.id) if stored else None
            if stored_slot is None:
                raise ScheduleStoreError(f"Slot {schedule.id}_{slot.id} vanished")
            stored_slot.appointment_id = appointment.id
            self._appointments[appointment.id] = appointment
        return copy.deepcopy(appointment)

    def delete_appointment(self, appointment_id: str) -> None:
        with self._lock:
            self._appointments.pop(appointment_id, None)

    def save_appointment(self, appointment: Appointment) -> None:
        with self._lock:
            if appointment.id not in self._appointments:
                raise ScheduleStoreError(f"Unknown appointment {appointment.id}")
            self._appointments[appointment.id] = copy.deepcopy(appointment)
            schedule = self._schedules.get(appointment.schedule_id)
            slot = schedule.slot(appointment.time_slot_id) if schedule else None
            if slot is not None and slot.is_booked:
                slot.appointment_id = appointment.id

    def get_appointment_by_code(self, booking_code: str) -> Appointment | None:
        code = booking_code.strip().upper()
        with self._lock:
            for appointment in self._appointments.values():
                if appointment.booking_code == code:
                    return copy.deepcopy(appointment)
        return None

    def appointments_for_user(self, user_id: str) -> list[Appointment]:
        with self._lock:
            mine = [copy.deepcopy(a) for a in self._appointments.values() if a.user_id == user_id]
        mine.sort(key=lambda a: (a.date, a.start_time))
        return mine

    def appointment_count(self) -> int:
        with self._lock:
            return len(self._appointments)


# ── Supabase implementation ──────────────────────────────────────────


def _appointment_from_row(row: dict[str, Any]) -> Appointment:
    return Appointment(
        id=str(row["id"]),
        booking_code=row["booking_code"],
        user_id=str(row["user_id"]),
        doctor_id=str(row["doctor_id"]),
        schedule_id=str(row["schedule_id"]),
        time_slot_id=str(row["time_slot_id"]),
        date=date.fromisoformat(str(row["date"])[:10]),
        start_time=row["start_time"],
        end_time=row["end_time"],
        status=AppointmentStatus(row.get("status", "pending")),
        reschedule_count=int(row.get("reschedule_count") or 0),
        cancel_reason=row.get("cancel_reason"),
        created_at=datetime.fromisoformat(row["created_at"]) if row.get("created_at") else datetime.now(UTC),
    )


def _slot_from_row(row: dict[str, Any]) -> TimeSlot:
    return TimeSlot(
        id=str(row["id"]),
        start_time=row["start_time"],
        end_time=row["end_time"],
        is_booked=bool(row.get("is_booked")),
        appointment_id=row.get("appointment_id"),
    )


class SupabaseScheduleStore(ScheduleStore):
    """Tables: ``schedules``, ``time_slots`` (FK ``schedule_id``), ``appointments``."""

    def __init__(self, client) -> None:
        self._client = client

    def _execute(self, operation: str, query):
        try:
            with timed("supabase", operation):
                return query.execute()
        except Exception as exc:
            logger.exception("Supabase %s failed", operation)
            raise ScheduleStoreError(f"{operation} failed: {exc}") from exc

    def _slots_for(self, schedule_ids: list[str]) -> dict[str, list[TimeSlot]]:
        if not schedule_ids:
            return {}
        resp = self._execute(
            "select_time_slots",
            self._client.table("time_slots").select("*")
            .in_("schedule_id", schedule_ids).order("start_time"),
        )
        grouped: dict[str, list[TimeSlot]] = {}
        for row in resp.data or []:
            grouped.setdefault(str(row["schedule_id"]), []).append(_slot_from_row(row))
        return grouped

    def get_schedule(self, schedule_id: str) -> Schedule | None:
        resp = self._execute(
            "get_schedule",
            self._client.table("schedules").select("*").eq("id", schedule_id).limit(1),
        )
        if not resp.data:
            return None
        row = resp.data[0]
        slots = self._slots_for([schedule_id]).get(schedule_id, [])
        return Schedule(
            id=str(row["id"]), doctor_id=str(row["doctor_id"]),
            date=date.fromisoformat(str(row["date"])[:10]), time_slots=slots,
        )

    def find_schedules(self, doctor_ids, date_from, date_to=None, limit=20):
        if not doctor_ids:
            return []
        query = (
            self._client.table("schedules").select("*")
            .in_("doctor_id", list(doctor_ids))
            .gte("date", date_from.isoformat())
        )
        if date_to is not None:
            query = query.lte("date", date_to.isoformat())
        resp = self._execute("find_schedules", query.order("date").limit(limit))
        rows = resp.data or []
        slots = self._slots_for([str(r["id"]) for r in rows])
        return [
            Schedule(
                id=str(r["id"]), doctor_id=str(r["doctor_id"]),
                date=date.fromisoformat(str(r["date"])[:10]),
                time_slots=slots.get(str(r["id"]), []),
            )
            for r in rows
        ]

    def claim_slot(self, schedule_id: str, time_slot_id: str) -> ClaimResult:
        resp = self._execute(
            "claim_slot",
            self._client.table("time_slots").update({"is_booked": True})
            .eq("id", time_slot_id).eq("schedule_id", schedule_id).eq("is_booked", False),
        )
        if resp.data:
            return ClaimResult.SUCCESS

        # Nothing updated: find out why.
        schedule = self.get_schedule(schedule_id)
        if schedule is None:
            return ClaimResult.SCHEDULE_MISSING
        if schedule.slot(time_slot_id) is None:
            return ClaimResult.SLOT_MISSING
        return ClaimResult.ALREADY_BOOKED

    def release_slot(self, schedule_id: str, time_slot_id: str) -> None:
        self._execute(
            "release_slot",
            self._client.table("time_slots")
            .update({"is_booked": False, "appointment_id": None})
            .eq("id", time_slot_id).eq("schedule_id", schedule_id),
        )

    def create_appointment(self, user_id, doctor_id, schedule, slot):
        row = {
            "booking_code": generate_booking_code(),
            "user_id": user_id,
            "doctor_id": doctor_id,
            "schedule_id": schedule.id,
            "time_slot_id": slot.id,
            "date": schedule.date.isoformat(),
            "start_time": slot.start_time,
            "end_time": slot.end_time,
            "status": AppointmentStatus.PENDING.value,
            "reschedule_count": 0,
        }
        resp = self._execute("create_appointment", self._client.table("appointments").insert(row))
        if not resp.data:
            raise ScheduleStoreError("Appointment insert returned no row")
        appointment = _appointment_from_row(resp.data[0])
        try:
            self._execute(
                "link_slot",
                self._client.table("time_slots").update({"appointment_id": appointment.id})
                .eq("id", slot.id).eq("schedule_id", schedule.id),
            )
        except ScheduleStoreError:
            self.delete_appointment(appointment.id)
            raise
        return appointment

    def delete_appointment(self, appointment_id: str) -> None:
        self._execute(
            "delete_appointment",
            self._client.table("appointments").delete().eq("id", appointment_id),
        )

    def save_appointment(self, appointment: Appointment) -> None:
        self._execute(
            "save_appointment",
            self._client.table("appointments").update({
                "schedule_id": appointment.schedule_id,
                "time_slot_id": appointment.time_slot_id,
                "date": appointment.date.isoformat(),
                "start_time": appointment.start_time,
                "end_time": appointment.end_time,
                "status": appointment.status.value,
                "reschedule_count": appointment.reschedule_count,
                "cancel_reason": appointment.cancel_reason,
            }).eq("id", appointment.id),
        )

    def get_appointment_by_code(self, booking_code: str) -> Appointment | None:
        resp = self._execute(
            "get_appointment",
            self._client.table("appointments").select("*")
            .eq("booking_code", booking_code.strip().upper()).limit(1),
        )
        return _appointment_from_row(resp.data[0]) if resp.data else None

    def appointments_for_user(self, user_id: str) -> list[Appointment]:
        resp = self._execute(
            "user_appointments",
            self._client.table("appointments").select("*")
            .eq("user_id", user_id).order("date"),
        )
        return [_appointment_from_row(r) for r in resp.data or []]


def build_supabase_store(url: str, key: str) -> SupabaseScheduleStore:
    from supabase import create_client

    logger.info("Using Supabase schedule store at %s", url)
    return SupabaseScheduleStore(create_client(url, key))

