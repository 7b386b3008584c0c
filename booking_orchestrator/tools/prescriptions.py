"""Prescription tools: suggest stocked medication as a draft prescription, list
the patient's prescriptions and cancel a pending one.

A suggestion is never a dispensed prescription: it is filed as
``pending_approval`` and a doctor must approve it first.
"""

import logging
from typing import Annotated

from langchain_core.tools import BaseTool, InjectedToolArg, tool

from booking_orchestrator.services.clinic_directory import Medication, Prescription
from booking_orchestrator.tools.context import ToolContext, authentication_required

logger = logging.getLogger(__name__)

CANCELLABLE_STATUS = "pending_approval"
CANCELLED_STATUS = "cancelled"
DAILY_DRAFT_LIMIT = 2
MAX_DRAFT_ITEMS = 3
DISCLAIMER = "Thông tin chỉ mang tính tham khảo. Cần bác sĩ/dược sĩ xác nhận trước khi dùng thuốc."


def _format(ctx: ToolContext, prescription: Prescription) -> dict:
    doctor = ctx.directory.get_doctor(prescription.doctor_id) if prescription.doctor_id else None
    return {
        "prescriptionCode": prescription.code,
        "status": prescription.status,
        "doctor": f"{doctor.title} {doctor.full_name}" if doctor else None,
        "medications": [
            {"name": item.get("name"), "quantity": item.get("quantity")}
            for item in prescription.items
        ],
        "createdAt": prescription.created_at.strftime("%d/%m/%Y"),
    }


def _group_by_hospital(ctx: ToolContext, medications: list[Medication]) -> list[dict]:
    """Matching stock per hospital, the best-stocked branch first."""
    branches: dict[str, dict] = {}
    for med in medications:
        branch = branches.get(med.hospital_id)
        if branch is None:
            hospital = ctx.directory.get_hospital(med.hospital_id)
            branch = branches[med.hospital_id] = {
                "hospitalId": med.hospital_id,
                "hospitalName": hospital.name if hospital else "Chi nhánh không xác định",
                "address": hospital.address if hospital else None,
                "inStock": [],
                "outOfStock": [],
            }
        branch["inStock" if med.in_stock else "outOfStock"].append(med)
    return sorted(branches.values(), key=lambda b: -len(b["inStock"]))


def _branch_payload(branch: dict) -> dict:
    return {
        "hospitalName": branch["hospitalName"],
        "address": branch["address"],
        "inStock": [m.name for m in branch["inStock"]],
        "outOfStock": [m.name for m in branch["outOfStock"]],
    }


def make_prescription_tools(ctx: ToolContext) -> list[BaseTool]:
    @tool
    def check_inventory_and_prescribe(
        symptom: str,
        session_id: Annotated[str, InjectedToolArg] = "",
    ) -> dict:
        """Look up stocked medication for a symptom and file it as a draft prescription.

        The draft waits for a doctor's approval.  Call this when the patient
        describes a mild symptom and asks what medicine they could take.

        Args:
            symptom: The symptom in the patient's words, e.g. "đau đầu", "ợ chua".
        """
        user_id = ctx.user_for(session_id)
        if not user_id:
            return authentication_required("nhận gợi ý thuốc")
        if not symptom or not symptom.strip():
            return {"error": "Vui lòng mô tả triệu chứng để tôi tra cứu thuốc phù hợp."}

        now = ctx.now()
        created_today = ctx.directory.prescriptions_created_on(user_id, now.date())
        if created_today >= DAILY_DRAFT_LIMIT:
            return {
                "error": (
                    f"Bạn đã tạo đủ {DAILY_DRAFT_LIMIT} đơn thuốc trong ngày hôm nay. "
                    "Vui lòng quay lại vào ngày mai để tạo đơn mới."
                ),
                "limitReached": True,
                "limit": DAILY_DRAFT_LIMIT,
            }

        matches = ctx.directory.medications_for_symptom(symptom)
        if not matches:
            return {
                "message": (
                    "Hệ thống chưa đủ dữ liệu để gợi ý thuốc cho triệu chứng này. "
                    "Bạn vui lòng mô tả chi tiết hơn hoặc đặt lịch khám."
                ),
                "disclaimer": DISCLAIMER,
            }

        branches = _group_by_hospital(ctx, matches)
        stocked = [b for b in branches if b["inStock"]]
        if not stocked:
            return {
                "message": "Các chi nhánh hiện đều hết thuốc phù hợp. Bạn có thể đặt lịch khám để được bác sĩ kê đơn.",
                "branches": [_branch_payload(b) for b in branches[:3]],
                "disclaimer": DISCLAIMER,
            }

        specialty = ctx.directory.specialty_mentioned_in(symptom) or ctx.directory.get_specialty(
            stocked[0]["inStock"][0].specialty_id
        )
        specialty_id = specialty.id if specialty else None
        doctors = ctx.directory.search_doctors(specialty_id=specialty_id, limit=50)
        branch, doctor = stocked[0], None
        for candidate in stocked:
            doctor = next((d for d in doctors if d.hospital_id == candidate["hospitalId"]), None)
            if doctor is not None:
                branch = candidate
                break
        if doctor is None and doctors:
            doctor = doctors[0]
        if doctor is None:
            logger.warning("No doctor in %s to review a draft prescription", specialty_id)

        chosen = branch["inStock"][:MAX_DRAFT_ITEMS]
        draft = ctx.directory.create_prescription(
            user_id,
            [
                {"name": m.name, "activeIngredient": m.active_ingredient, "quantity": 1, "price": m.unit_price}
                for m in chosen
            ],
            status=CANCELLABLE_STATUS,
            created_at=now,
            doctor_id=doctor.id if doctor else None,
            hospital_id=branch["hospitalId"],
            symptom=symptom.strip(),
        )
        return {
            "success": True,
            "prescriptionCode": draft.code,
            "status": draft.status,
            "medicinesFound": [m.name for m in chosen],
            "activeIngredients": sorted({m.active_ingredient for m in chosen}),
            "hospital": {"name": branch["hospitalName"], "address": branch["address"]},
            "specialty": specialty.name if specialty else None,
            "doctor": f"{doctor.title} {doctor.full_name}" if doctor else None,
            "branches": [_branch_payload(b) for b in branches[:3]],
            "message": (
                f"Đơn thuốc nháp đã được tạo với mã {draft.code}. "
                "Đơn cần bác sĩ duyệt trước khi cấp thuốc."
            ),
            "disclaimer": DISCLAIMER,
        }

    @tool
    def get_my_prescriptions(
        status: str | None = None,
        limit: int = 10,
        session_id: Annotated[str, InjectedToolArg] = "",
    ) -> dict:
        """List the patient's prescriptions, newest first.

        Args:
            status: Only prescriptions with this status, e.g. "pending_approval".
            limit: Maximum number of records (1-50).
        """
        user_id = ctx.user_for(session_id)
        if not user_id:
            return authentication_required("xem đơn thuốc")
        limit = max(1, min(limit, 50))
        records = ctx.directory.prescriptions_for_user(user_id, limit=50)
        if status:
            records = [p for p in records if p.status == status]
        return {
            "success": True,
            "total": len(records),
            "records": [_format(ctx, p) for p in records[:limit]],
        }

    @tool
    def cancel_prescription(
        prescription_code: str,
        reason: str = "",
        session_id: Annotated[str, InjectedToolArg] = "",
    ) -> dict:
        """Cancel a prescription that is still waiting for approval.

        Args:
            prescription_code: Code like "PRS-4F7Q2B".
            reason: Why the patient is cancelling.
        """
        user_id = ctx.user_for(session_id)
        if not user_id:
            return authentication_required("hủy đơn thuốc")
        if not prescription_code or not prescription_code.strip():
            return {"error": "Vui lòng cung cấp mã đơn thuốc (prescriptionCode)."}

        prescription = ctx.directory.get_prescription(prescription_code)
        if prescription is None or prescription.user_id != user_id:
            return {
                "error": f"Không tìm thấy đơn thuốc với mã {prescription_code}.",
                "suggestion": "Bạn hãy kiểm tra lại mã đơn thuốc (PRS-XXXXXX).",
            }
        if prescription.status == CANCELLED_STATUS:
            return {"error": "Đơn thuốc này đã bị hủy trước đó."}
        if prescription.status != CANCELLABLE_STATUS:
            return {
                "error": (
                    f"Đơn thuốc {prescription.code} hiện ở trạng thái \"{prescription.status}\" "
                    "nên không thể hủy."
                ),
                "suggestion": "Bạn chỉ có thể hủy các đơn đang chờ duyệt.",
            }

        updated = ctx.directory.set_prescription_status(prescription.code, CANCELLED_STATUS)
        logger.info("Prescription %s cancelled (%s)", updated.code, reason or "no reason")
        return {
            "success": True,
            "message": f"Đã hủy đơn thuốc {updated.code}.",
            "status": updated.status,
        }

    return [check_inventory_and_prescribe, get_my_prescriptions, cancel_prescription]
