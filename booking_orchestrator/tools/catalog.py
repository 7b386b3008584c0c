"""LangChain tools over the clinic directory: doctors, hospitals and triage.

None of these need a logged-in user.  They return plain dicts; the agent
serialises them for the model.
"""

import logging

from langchain_core.tools import BaseTool, tool

from booking_orchestrator.services.catalog_mapper import MappingKind
from booking_orchestrator.services.clinic_directory import Doctor
from booking_orchestrator.tools.context import ToolContext

logger = logging.getLogger(__name__)

DEFAULT_DEPARTMENT = "Nội khoa"
PEDIATRICS = "Nhi khoa"
EMERGENCY_DEPARTMENT = "Khoa Cấp cứu"
PEDIATRIC_AGE_LIMIT = 5

EMERGENCY_KEYWORDS = (
    "đau ngực dữ dội", "đau tim", "nhồi máu cơ tim", "suy tim",
    "khó thở nặng", "thở gấp", "ngạt thở",
    "ngất xỉu", "bất tỉnh", "mất ý thức",
    "chảy máu nhiều", "xuất huyết", "chảy máu không cầm",
    "sốc phản vệ", "phản vệ",
    "co giật", "động kinh",
    "đau bụng dữ dội", "viêm ruột thừa", "thủng dạ dày",
    "tai nạn", "chấn thương nặng", "gãy xương", "bỏng nặng",
    "ngộ độc", "uống nhầm thuốc", "uống nhầm hóa chất",
    "đột quỵ", "tai biến mạch máu não", "liệt nửa người",
    "sốt cao trên 40", "sốt rất cao",
)

MAX_RESULTS = 5


def detect_emergency(symptoms: str) -> str | None:
    """The first emergency keyword found in *symptoms*, if any."""
    lower = (symptoms or "").lower()
    return next((k for k in EMERGENCY_KEYWORDS if k in lower), None)


def doctor_summary(ctx: ToolContext, doctor: Doctor) -> dict:
    specialty = ctx.directory.get_specialty(doctor.specialty_id)
    hospital = ctx.directory.get_hospital(doctor.hospital_id)
    return {
        "doctorId": doctor.id,
        "name": f"{doctor.title} {doctor.full_name}".strip(),
        "specialty": specialty.name if specialty else None,
        "hospital": hospital.name if hospital else None,
        "consultationFee": doctor.consultation_fee,
    }


def make_triage_tool(ctx: ToolContext) -> BaseTool:
    @tool
    def triage_specialty(symptoms: str, age: int | None = None) -> dict:
        """Suggest which department should examine the patient's symptoms.

        Call this when the patient describes symptoms but has not named a
        specialty. Emergencies are flagged with riskLevel "emergency".

        Args:
            symptoms: The patient's own description of their symptoms.
            age: Patient age in years, if known.
        """
        if not symptoms or not symptoms.strip():
            return {"error": "Vui lòng mô tả triệu chứng của bạn."}

        keyword = detect_emergency(symptoms)
        if keyword:
            logger.info("Emergency keyword in triage: %s", keyword)
            return {
                "department": EMERGENCY_DEPARTMENT,
                "riskLevel": "emergency",
                "reason": f"Phát hiện triệu chứng cấp cứu: {keyword}",
            }

        if age is not None and age < PEDIATRIC_AGE_LIMIT:
            pediatrics = ctx.directory.specialty_by_name(PEDIATRICS)
            return {
                "department": PEDIATRICS,
                "departmentId": pediatrics.id if pediatrics else None,
                "riskLevel": "normal",
                "reason": f"Bệnh nhân dưới {PEDIATRIC_AGE_LIMIT} tuổi, đề xuất khám Nhi khoa.",
            }

        matches = ctx.mapper.resolve(MappingKind.SPECIALTY, symptoms, limit=1)
        if matches:
            best = matches[0]
            return {
                "department": best.target_name,
                "departmentId": best.target_id,
                "riskLevel": "normal",
                "reason": f"Dựa trên mức tương đồng {best.score:.3f} với \"{best.matched_text}\"",
            }

        default = ctx.directory.specialty_by_name(DEFAULT_DEPARTMENT)
        return {
            "department": DEFAULT_DEPARTMENT,
            "departmentId": default.id if default else None,
            "riskLevel": "normal",
            "reason": "Không tìm thấy chuyên khoa phù hợp, đề xuất khoa Nội khoa (tổng quát).",
        }

    return triage_specialty


def make_catalog_tools(ctx: ToolContext) -> list[BaseTool]:
    def _specialty_id(specialty: str | None) -> tuple[bool, str | None]:
        if not specialty:
            return True, None
        match = ctx.mapper.map_specialty(specialty)
        return (match is not None), (match.target_id if match else None)

    @tool
    def find_doctors(specialty: str | None = None, name: str | None = None) -> dict:
        """Find doctors by specialty and/or (part of) their name.

        Args:
            specialty: Specialty name or a symptom, e.g. "tim mạch".
            name: Part of the doctor's name.
        """
        found, specialty_id = _specialty_id(specialty)
        if not found:
            return {"doctors": [], "message": f"Không tìm thấy chuyên khoa \"{specialty}\"."}
        doctors = ctx.directory.search_doctors(specialty_id=specialty_id, name=name, limit=MAX_RESULTS)
        return {"doctors": [doctor_summary(ctx, d) for d in doctors]}

    @tool
    def find_hospitals(
        specialty: str | None = None, city: str | None = None, name: str | None = None,
    ) -> dict:
        """Find hospitals by specialty, city or name.

        Args:
            specialty: Specialty the hospital must offer.
            city: City or district, e.g. "Hà Nội".
            name: Part of the hospital's name.
        """
        found, specialty_id = _specialty_id(specialty)
        if not found:
            return {"hospitals": []}
        hospitals = ctx.directory.search_hospitals(
            specialty_id=specialty_id, city=city, name=name, limit=MAX_RESULTS,
        )
        return {
            "hospitals": [
                {"hospitalId": h.id, "name": h.name, "address": h.address, "city": h.city}
                for h in hospitals
            ]
        }

    @tool
    def get_doctor_info(doctor_id: str) -> dict:
        """Full profile of one doctor (experience, fee, bio).

        Args:
            doctor_id: The doctorId returned by find_doctors.
        """
        doctor = ctx.directory.get_doctor(doctor_id)
        if doctor is None:
            return {"error": f"Không tìm thấy bác sĩ với mã {doctor_id}."}
        info = doctor_summary(ctx, doctor)
        info.update(experienceYears=doctor.experience_years, bio=doctor.bio)
        return info

    return [find_doctors, find_hospitals, get_doctor_info]
