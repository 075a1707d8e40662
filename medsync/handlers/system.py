"""
System handlers
Scheduled jobs (missed detection, daily reset) and engine statistics
"""

from typing import Any, Dict

from medsync.core.engine import get_engine
from medsync.core.errors import NotFoundError
from medsync.core.logger import get_logger
from medsync.models.requests import DailyResetRequest

from . import api_handler, error_response, success_response

logger = get_logger(__name__)


@api_handler(
    method="GET",
    path="/system/stats",
    tags=["system"],
    summary="Engine statistics",
    description="Active settings, notification dispatcher and workflow/transaction statistics for the last 24 hours",
)
async def get_system_stats() -> Dict[str, Any]:
    """Engine statistics"""
    return success_response(get_engine().get_stats())


@api_handler(
    method="GET",
    path="/system/transactions/{transaction_id}",
    tags=["system"],
    summary="Transaction log entry",
)
async def get_transaction_status(transaction_id: str) -> Dict[str, Any]:
    """Transaction log entry by id"""
    entry = get_engine().transactions.get_transaction_status(transaction_id)
    if entry is None:
        return error_response(NotFoundError("Transaction", transaction_id))
    return success_response(entry.to_document())


@api_handler(
    method="POST",
    path="/system/detect-missed",
    tags=["system"],
    summary="Run missed dose detection",
)
async def detect_missed_doses() -> Dict[str, Any]:
    """Run missed dose detection over all active medications"""
    result = await get_engine().orchestrator.process_missed_medication_detection()
    return {
        "success": result.success,
        "data": result.model_dump(mode="json"),
    }


@api_handler(
    body=DailyResetRequest,
    method="POST",
    path="/system/daily-reset",
    tags=["system"],
    summary="Run daily reset for a patient",
    description="Summarize and archive the patient's previous local day (timezone from preferences unless given)",
)
async def run_daily_reset(body: DailyResetRequest) -> Dict[str, Any]:
    """Run daily reset for a patient"""
    service = get_engine().daily_reset
    timezone = body.timezone or service.timezone_for(body.patient_id)
    result = service.execute_daily_reset(body.patient_id, timezone, dry_run=body.dry_run)
    response = {"success": result.success, "data": result.model_dump(mode="json")}
    if not result.success:
        response["message"] = result.error
    return response


@api_handler(
    method="POST",
    path="/system/daily-reset/all",
    tags=["system"],
    summary="Run daily reset for all patients",
)
async def run_daily_reset_all(dry_run: bool = False) -> Dict[str, Any]:
    """Run daily reset for all patients"""
    results = get_engine().daily_reset.run_for_all_patients(dry_run=dry_run)
    return {
        "success": all(r.success for r in results),
        "data": [r.model_dump(mode="json") for r in results],
    }
