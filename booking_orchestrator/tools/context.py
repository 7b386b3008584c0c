"""Shared collaborators handed to every tool factory."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from booking_orchestrator.services.catalog_mapper import CatalogMapper
from booking_orchestrator.services.clinic_directory import ClinicDirectory
from booking_orchestrator.services.session_cache import SessionIdentityMap
from booking_orchestrator.services.slot_booking import SlotBookingService

logger = logging.getLogger(__name__)

AUTHENTICATION_REQUIRED = "AUTHENTICATION_REQUIRED"


@dataclass
class ToolContext:
    directory: ClinicDirectory
    mapper: CatalogMapper
    booking: SlotBookingService
    sessions: SessionIdentityMap
    now: Callable[[], datetime] = field(default=datetime.now)

    def user_for(self, session_id: str | None) -> str | None:
        return self.sessions.get_user_id(session_id)


def authentication_required(action: str) -> dict:
    """Marker returned by user-scoped tools when the session has no user.

    The model is told to guide the patient through the normal login, never
    to ask for an id.
    """
    return {
        "error": AUTHENTICATION_REQUIRED,
        "message": (
            f"Người dùng chưa đăng nhập. Để {action}, người dùng cần đăng nhập vào hệ thống "
            "trước. Vui lòng hướng dẫn họ đăng nhập, KHÔNG yêu cầu họ cung cấp ID."
        ),
    }


def is_authentication_required(result: object) -> bool:
    return isinstance(result, dict) and result.get("error") == AUTHENTICATION_REQUIRED
