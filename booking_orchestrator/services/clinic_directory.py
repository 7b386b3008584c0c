"""In-process clinic directory: specialties, services, hospitals, doctors,
pharmacy stock and prescriptions.

This is the read-mostly reference data the tools and the catalog mapper
consult.  It is loaded from a JSON seed (``data/clinic_seed.json`` by
default); a deployment backed by the main application database swaps in an
object with the same methods.
"""

from __future__ import annotations

import json
import logging
import re
import secrets
import string
import threading
import unicodedata
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_SEED_PATH = Path(__file__).resolve().parent.parent / "data" / "clinic_seed.json"

PRESCRIPTION_CODE_ALPHABET = string.ascii_uppercase + string.digits
PRESCRIPTION_CODE_LENGTH = 6


def normalize_name(value: str) -> str:
    """Case-fold and collapse whitespace; keeps Vietnamese diacritics."""
    return " ".join(unicodedata.normalize("NFC", value).casefold().split())


@dataclass(frozen=True)
class Specialty:
    id: str
    name: str
    description: str = ""


@dataclass(frozen=True)
class Service:
    id: str
    name: str
    specialty_id: str
    price: int = 0


@dataclass(frozen=True)
class Hospital:
    id: str
    name: str
    city: str
    address: str = ""
    specialty_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class Doctor:
    id: str
    full_name: str
    specialty_id: str
    hospital_id: str
    title: str = "BS."
    experience_years: int = 0
    consultation_fee: int = 0
    bio: str = ""


@dataclass(frozen=True)
class Medication:
    """One stocked product at one hospital pharmacy.

    ``symptoms`` are the keywords the product is indicated for; a symptom
    description matches when it contains one of them as whole words.
    """

    id: str
    name: str
    active_ingredient: str
    hospital_id: str
    specialty_id: str
    symptoms: tuple[str, ...] = ()
    unit_price: int = 0
    stock: int = 0

    @property
    def in_stock(self) -> bool:
        return self.stock > 0


@dataclass(frozen=True)
class Prescription:
    code: str
    user_id: str
    status: str
    items: tuple[dict[str, Any], ...] = ()
    doctor_id: str | None = None
    created_at: datetime = field(default_factory=datetime.now)
    hospital_id: str | None = None
    symptom: str = ""


class ClinicDirectory:
    """Lookup tables over the clinic's reference data."""

    def __init__(self) -> None:
        self._specialties: dict[str, Specialty] = {}
        self._services: dict[str, Service] = {}
        self._hospitals: dict[str, Hospital] = {}
        self._doctors: dict[str, Doctor] = {}
        self._medications: dict[str, Medication] = {}
        self._prescriptions: dict[str, Prescription] = {}
        self._lock = threading.Lock()

    # ── Loading ──────────────────────────────────────────────────────

    @classmethod
    def from_seed(cls, data: dict[str, Any]) -> ClinicDirectory:
        directory = cls()
        for row in data.get("specialties", []):
            directory.add_specialty(Specialty(**row))
        for row in data.get("services", []):
            directory.add_service(Service(**row))
        for row in data.get("hospitals", []):
            row = {**row, "specialty_ids": tuple(row.get("specialty_ids", ()))}
            directory.add_hospital(Hospital(**row))
        for row in data.get("doctors", []):
            directory.add_doctor(Doctor(**row))
        for row in data.get("medications", []):
            row = {**row, "symptoms": tuple(row.get("symptoms", ()))}
            directory.add_medication(Medication(**row))
        for row in data.get("prescriptions", []):
            row = {**row, "items": tuple(row.get("items", ()))}
            if "created_at" in row:
                row["created_at"] = datetime.fromisoformat(row["created_at"])
            directory.add_prescription(Prescription(**row))
        logger.info(
            "Clinic directory loaded: %d specialties, %d services, %d hospitals, %d doctors, %d medications",
            len(directory._specialties), len(directory._services),
            len(directory._hospitals), len(directory._doctors), len(directory._medications),
        )
        return directory

    @classmethod
    def from_json(cls, path: Path = DEFAULT_SEED_PATH) -> ClinicDirectory:
        with open(path, encoding="utf-8") as fh:
            return cls.from_seed(json.load(fh))

    def add_specialty(self, specialty: Specialty) -> None:
        self._specialties[specialty.id] = specialty

    def add_service(self, service: Service) -> None:
        self._services[service.id] = service

    def add_hospital(self, hospital: Hospital) -> None:
        self._hospitals[hospital.id] = hospital

    def add_doctor(self, doctor: Doctor) -> None:
        self._doctors[doctor.id] = doctor

    def add_medication(self, medication: Medication) -> None:
        self._medications[medication.id] = medication

    def add_prescription(self, prescription: Prescription) -> None:
        with self._lock:
            self._prescriptions[prescription.code.upper()] = prescription

    # ── Exact lookups ────────────────────────────────────────────────

    def get_specialty(self, specialty_id: str) -> Specialty | None:
        return self._specialties.get(specialty_id)

    def get_service(self, service_id: str) -> Service | None:
        return self._services.get(service_id)

    def get_hospital(self, hospital_id: str) -> Hospital | None:
        return self._hospitals.get(hospital_id)

    def get_doctor(self, doctor_id: str) -> Doctor | None:
        return self._doctors.get(doctor_id)

    def specialty_by_name(self, name: str) -> Specialty | None:
        wanted = normalize_name(name)
        return next(
            (s for s in self._specialties.values() if normalize_name(s.name) == wanted), None,
        )

    def specialty_mentioned_in(self, text: str) -> Specialty | None:
        """The specialty whose name appears in *text*; longest name wins."""
        haystack = f" {normalize_name(text)} "
        mentioned = [
            s for s in self._specialties.values() if f" {normalize_name(s.name)} " in haystack
        ]
        return max(mentioned, key=lambda s: len(s.name), default=None)

    def service_by_name(self, name: str, specialty_id: str | None = None) -> Service | None:
        wanted = normalize_name(name)
        for service in self._services.values():
            if specialty_id and service.specialty_id != specialty_id:
                continue
            if normalize_name(service.name) == wanted:
                return service
        return None

    def doctor_by_name(self, name: str, specialty_id: str | None = None) -> Doctor | None:
        wanted = normalize_name(name)
        for doctor in self._doctors.values():
            if specialty_id and doctor.specialty_id != specialty_id:
                continue
            if normalize_name(doctor.full_name) == wanted:
                return doctor
        return None

    # ── Listings ─────────────────────────────────────────────────────

    def specialties(self) -> list[Specialty]:
        return list(self._specialties.values())

    def search_doctors(
        self,
        *,
        specialty_id: str | None = None,
        name: str | None = None,
        limit: int = 10,
    ) -> list[Doctor]:
        """Doctors filtered by specialty and/or a name fragment."""
        fragment = normalize_name(name) if name else None
        results = []
        for doctor in self._doctors.values():
            if specialty_id and doctor.specialty_id != specialty_id:
                continue
            if fragment and fragment not in normalize_name(doctor.full_name):
                continue
            results.append(doctor)
        results.sort(key=lambda d: (-d.experience_years, d.full_name))
        return results[:limit]

    def search_hospitals(
        self,
        *,
        specialty_id: str | None = None,
        city: str | None = None,
        name: str | None = None,
        limit: int = 10,
    ) -> list[Hospital]:
        city_q = normalize_name(city) if city else None
        name_q = normalize_name(name) if name else None
        results = []
        for hospital in self._hospitals.values():
            if specialty_id and specialty_id not in hospital.specialty_ids:
                continue
            if city_q and city_q not in normalize_name(f"{hospital.city} {hospital.address}"):
                continue
            if name_q and name_q not in normalize_name(hospital.name):
                continue
            results.append(hospital)
        return results[:limit]

    # ── Pharmacy ─────────────────────────────────────────────────────

    def medications_for_symptom(self, symptom: str) -> list[Medication]:
        """Products indicated for *symptom*, in or out of stock."""
        text = normalize_name(symptom or "")
        if not text:
            return []
        return [
            m for m in self._medications.values()
            if any(_contains_words(text, normalize_name(keyword)) for keyword in m.symptoms)
        ]

    # ── Prescriptions ────────────────────────────────────────────────

    def prescriptions_for_user(self, user_id: str, limit: int = 10) -> list[Prescription]:
        with self._lock:
            mine = [p for p in self._prescriptions.values() if p.user_id == user_id]
        mine.sort(key=lambda p: p.created_at, reverse=True)
        return mine[:limit]

    def get_prescription(self, code: str) -> Prescription | None:
        with self._lock:
            return self._prescriptions.get(code.strip().upper())

    def set_prescription_status(self, code: str, status: str) -> Prescription:
        with self._lock:
            key = code.strip().upper()
            updated = replace(self._prescriptions[key], status=status)
            self._prescriptions[key] = updated
            return updated

    def prescriptions_created_on(self, user_id: str, day: date) -> int:
        """Prescriptions the user created on *day*, not counting cancelled ones."""
        with self._lock:
            return sum(
                1 for p in self._prescriptions.values()
                if p.user_id == user_id and p.created_at.date() == day and p.status != "cancelled"
            )

    def create_prescription(
        self,
        user_id: str,
        items: list[dict[str, Any]],
        *,
        status: str,
        created_at: datetime,
        doctor_id: str | None = None,
        hospital_id: str | None = None,
        symptom: str = "",
    ) -> Prescription:
        """Store a new prescription under a fresh ``PRS-`` code."""
        with self._lock:
            code = generate_prescription_code()
            while code in self._prescriptions:
                code = generate_prescription_code()
            prescription = Prescription(
                code=code,
                user_id=user_id,
                status=status,
                items=tuple(items),
                doctor_id=doctor_id,
                created_at=created_at,
                hospital_id=hospital_id,
                symptom=symptom,
            )
            self._prescriptions[code] = prescription
        logger.info("Prescription %s created for user %s", code, user_id)
        return prescription


def generate_prescription_code() -> str:
    suffix = "".join(secrets.choice(PRESCRIPTION_CODE_ALPHABET) for _ in range(PRESCRIPTION_CODE_LENGTH))
    return f"PRS-{suffix}"


def _contains_words(text: str, phrase: str) -> bool:
    return bool(phrase) and re.search(rf"(?<!\w){re.escape(phrase)}(?!\w)", text) is not None
