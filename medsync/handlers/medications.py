"""
Medication command handlers
Workflow endpoints (create, take, miss, status, undo, correct) and command/event reads
"""

from datetime import datetime
from typing import Any, Dict

from medsync.core.engine import get_engine
from medsync.core.errors import MedsyncError, NotFoundError
from medsync.core.logger import get_logger
from medsync.models.requests import (
    CommandIdRequest,
    CommandQuery,
    CorrectionRequest,
    CreateMedicationRequest,
    EventIdRequest,
    EventQuery,
    MarkTakenRequest,
    MissedDoseRequest,
    StatusChangeRequest,
    UndoRequest,
    UpdateMedicationRequest,
)
from medsync.models.results import WorkflowResult

from . import api_handler, error_response, success_response

logger = get_logger(__name__)


def workflow_response(result: WorkflowResult) -> Dict[str, Any]:
    response = {
        "success": result.success,
        "data": result.model_dump(mode="json"),
        "timestamp": datetime.now().isoformat(),
    }
    if not result.success:
        response["message"] = result.error
        response["errorCode"] = result.error_code
    return response


# ==================== Workflows ====================


@api_handler(
    body=CreateMedicationRequest,
    method="POST",
    path="/medications/create",
    tags=["medications"],
    summary="Create medication",
    description="Validate and create a medication command, record its creation events and generate scheduled doses",
)
async def create_medication(body: CreateMedicationRequest) -> Dict[str, Any]:
    """Create medication

    @param body Medication, schedule and reminder settings
    @returns Workflow result with the stored command
    """
    result = await get_engine().orchestrator.create_medication_workflow(body)
    return workflow_response(result)


@api_handler(
    body=UpdateMedicationRequest,
    method="POST",
    path="/medications/update",
    tags=["medications"],
    summary="Update medication",
    description="Apply partial changes to a command; schedule changes regenerate future scheduled doses",
)
async def update_medication(body: UpdateMedicationRequest) -> Dict[str, Any]:
    """Update medication"""
    result = await get_engine().orchestrator.update_medication_workflow(body)
    return workflow_response(result)


@api_handler(
    body=MarkTakenRequest,
    method="POST",
    path="/medications/mark-taken",
    tags=["medications"],
    summary="Mark dose as taken",
)
async def mark_medication_taken(body: MarkTakenRequest) -> Dict[str, Any]:
    """Mark dose as taken

    @param body Dose slot, taken time and event variant
    @returns Workflow result with isOnTime and minutesLate
    """
    result = await get_engine().orchestrator.mark_medication_taken_workflow(body)
    return workflow_response(result)


@api_handler(
    body=MissedDoseRequest,
    method="POST",
    path="/medications/missed",
    tags=["medications"],
    summary="Record missed dose",
)
async def record_missed_dose(body: MissedDoseRequest) -> Dict[str, Any]:
    """Record missed dose (idempotent per dose slot)"""
    result = await get_engine().orchestrator.process_missed_medication_workflow(body)
    return workflow_response(result)


@api_handler(
    body=StatusChangeRequest,
    method="POST",
    path="/medications/status",
    tags=["medications"],
    summary="Change medication status",
)
async def change_medication_status(body: StatusChangeRequest) -> Dict[str, Any]:
    """Change medication status"""
    result = await get_engine().orchestrator.medication_status_change_workflow(body)
    return workflow_response(result)


@api_handler(
    body=UndoRequest,
    method="POST",
    path="/medications/undo",
    tags=["medications"],
    summary="Undo taken dose",
    description="Reverse a taken dose inside the undo window; later requests are refused with a correction hint",
)
async def undo_medication(body: UndoRequest) -> Dict[str, Any]:
    """Undo taken dose"""
    result = await get_engine().orchestrator.undo_medication_workflow(body)
    return workflow_response(result)


@api_handler(
    body=CorrectionRequest,
    method="POST",
    path="/medications/correct",
    tags=["medications"],
    summary="Correct taken dose",
)
async def correct_medication(body: CorrectionRequest) -> Dict[str, Any]:
    """Correct taken dose inside the correction window"""
    result = await get_engine().orchestrator.correct_medication_workflow(body)
    return workflow_response(result)


@api_handler(
    body=EventIdRequest,
    method="POST",
    path="/medications/undo/validate",
    tags=["medications"],
    summary="Check undo window",
)
async def validate_undo(body: EventIdRequest) -> Dict[str, Any]:
    """Check whether an event can still be undone or corrected"""
    try:
        validation = get_engine().undo.validate_undo(body.event_id)
        return success_response(validation.model_dump(mode="json"))
    except MedsyncError as e:
        return error_response(e)


@api_handler(
    body=CommandIdRequest,
    method="POST",
    path="/medications/regenerate-schedule",
    tags=["medications"],
    summary="Regenerate scheduled doses",
)
async def regenerate_schedule(body: CommandIdRequest) -> Dict[str, Any]:
    """Replace future scheduled dose events with ones from the current schedule"""
    result = get_engine().orchestrator.regenerate_scheduled_events(body.command_id)
    return {
        "success": result["success"],
        "data": result,
        "timestamp": datetime.now().isoformat(),
    }


# ==================== Reads ====================


@api_handler(
    body=CommandQuery,
    method="POST",
    path="/medications/list",
    tags=["medications"],
    summary="List medications",
)
async def list_medications(body: CommandQuery) -> Dict[str, Any]:
    """List medications matching the query"""
    try:
        commands = get_engine().commands.query(body)
        return success_response([c.to_document() for c in commands])
    except MedsyncError as e:
        return error_response(e)


@api_handler(
    method="GET",
    path="/medications/stats/{patient_id}",
    tags=["medications"],
    summary="Medication counts for a patient",
)
async def get_medication_stats(patient_id: str) -> Dict[str, Any]:
    """Medication counts by status and type"""
    return success_response(get_engine().commands.get_stats(patient_id))


@api_handler(
    method="GET",
    path="/medications/{command_id}",
    tags=["medications"],
    summary="Get medication",
)
async def get_medication(command_id: str) -> Dict[str, Any]:
    """Get medication by id"""
    try:
        command = get_engine().commands.require(command_id)
        return success_response(command.to_document())
    except NotFoundError as e:
        return error_response(e)


@api_handler(
    method="DELETE",
    path="/medications/{command_id}",
    tags=["medications"],
    summary="Delete medication",
)
async def delete_medication(command_id: str) -> Dict[str, Any]:
    """Delete medication (events are kept)"""
    try:
        if not get_engine().commands.delete(command_id):
            raise NotFoundError("Medication", command_id)
        return success_response({"commandId": command_id}, message="Medication deleted")
    except MedsyncError as e:
        return error_response(e)


@api_handler(
    method="GET",
    path="/medications/{command_id}/events",
    tags=["events"],
    summary="Events of a medication",
)
async def get_medication_events(command_id: str, limit: int = 50) -> Dict[str, Any]:
    """Most recent events of one medication"""
    events = get_engine().events.get_events_for_command(command_id, limit=limit)
    return success_response([e.to_document() for e in events])


@api_handler(
    body=EventQuery,
    method="POST",
    path="/events/query",
    tags=["events"],
    summary="Query events",
)
async def query_events(body: EventQuery) -> Dict[str, Any]:
    """Query events"""
    try:
        events = get_engine().events.query(body)
        return success_response([e.to_document() for e in events])
    except MedsyncError as e:
        return error_response(e)


@api_handler(
    method="GET",
    path="/events/{event_id}/chain",
    tags=["events"],
    summary="Event chain",
    description="Original event followed by its undo and correction events",
)
async def get_event_chain(event_id: str) -> Dict[str, Any]:
    """Event chain"""
    try:
        return success_response(get_engine().events.get_event_chain(event_id))
    except MedsyncError as e:
        return error_response(e)
