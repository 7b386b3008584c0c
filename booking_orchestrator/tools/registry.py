"""Typed tool identifiers and the per-intent tool sets.

The agent dispatches a model's tool call by looking its name up in a
``ToolName -> BaseTool`` table; a name outside the enum is an unknown tool.
"""

from __future__ import annotations

from enum import StrEnum

from langchain_core.tools import BaseTool

from booking_orchestrator.services.intent_router import Intent
from booking_orchestrator.tools.appointments import make_appointment_tools
from booking_orchestrator.tools.catalog import make_catalog_tools, make_triage_tool
from booking_orchestrator.tools.context import ToolContext
from booking_orchestrator.tools.prescriptions import make_prescription_tools


class ToolName(StrEnum):
    FIND_AVAILABLE_SLOTS = "find_available_slots"
    BOOK_APPOINTMENT = "book_appointment"
    GET_MY_APPOINTMENTS = "get_my_appointments"
    CANCEL_APPOINTMENT = "cancel_appointment"
    RESCHEDULE_APPOINTMENT = "reschedule_appointment"
    GET_APPOINTMENT_HISTORY = "get_appointment_history"
    TRIAGE_SPECIALTY = "triage_specialty"
    FIND_DOCTORS = "find_doctors"
    FIND_HOSPITALS = "find_hospitals"
    GET_DOCTOR_INFO = "get_doctor_info"
    CHECK_INVENTORY_AND_PRESCRIBE = "check_inventory_and_prescribe"
    GET_MY_PRESCRIPTIONS = "get_my_prescriptions"
    CANCEL_PRESCRIPTION = "cancel_prescription"

    @classmethod
    def parse(cls, name: str) -> ToolName | None:
        try:
            return cls(name)
        except ValueError:
            return None


# Tools that receive the caller's session id.
SESSION_SCOPED = frozenset({
    ToolName.FIND_AVAILABLE_SLOTS,
    ToolName.BOOK_APPOINTMENT,
    ToolName.GET_MY_APPOINTMENTS,
    ToolName.CANCEL_APPOINTMENT,
    ToolName.RESCHEDULE_APPOINTMENT,
    ToolName.GET_APPOINTMENT_HISTORY,
    ToolName.CHECK_INVENTORY_AND_PRESCRIBE,
    ToolName.GET_MY_PRESCRIPTIONS,
    ToolName.CANCEL_PRESCRIPTION,
})

# Tools that also receive the raw user prompt.
PROMPT_SCOPED = frozenset({ToolName.BOOK_APPOINTMENT})

APPOINTMENT_TOOLS = (
    ToolName.FIND_AVAILABLE_SLOTS,
    ToolName.BOOK_APPOINTMENT,
    ToolName.GET_MY_APPOINTMENTS,
    ToolName.CANCEL_APPOINTMENT,
    ToolName.RESCHEDULE_APPOINTMENT,
    ToolName.GET_APPOINTMENT_HISTORY,
    ToolName.TRIAGE_SPECIALTY,
)
INFORMATION_TOOLS = (
    ToolName.FIND_DOCTORS,
    ToolName.FIND_HOSPITALS,
    ToolName.GET_DOCTOR_INFO,
    ToolName.TRIAGE_SPECIALTY,
)
MEDICATION_TOOLS = (
    ToolName.CHECK_INVENTORY_AND_PRESCRIBE,
    ToolName.GET_MY_PRESCRIPTIONS,
    ToolName.CANCEL_PRESCRIPTION,
    ToolName.GET_APPOINTMENT_HISTORY,
    *INFORMATION_TOOLS,
)

TOOLS_BY_INTENT: dict[Intent, tuple[ToolName, ...]] = {
    Intent.APPOINTMENT: APPOINTMENT_TOOLS,
    Intent.INFORMATION: INFORMATION_TOOLS,
    Intent.MEDICATION: MEDICATION_TOOLS,
    Intent.GENERAL: INFORMATION_TOOLS,
}


def build_tool_table(ctx: ToolContext) -> dict[ToolName, BaseTool]:
    """Instantiate every tool over *ctx*, keyed by its ``ToolName``."""
    tools = [
        *make_appointment_tools(ctx),
        make_triage_tool(ctx),
        *make_catalog_tools(ctx),
        *make_prescription_tools(ctx),
    ]
    table = {ToolName(t.name): t for t in tools}
    missing = set(ToolName) - set(table)
    if missing:
        raise RuntimeError(f"Tools without a handler: {sorted(missing)}")
    return table


def tools_for_intent(table: dict[ToolName, BaseTool], intent: Intent) -> dict[ToolName, BaseTool]:
    return {name: table[name] for name in TOOLS_BY_INTENT[intent]}
