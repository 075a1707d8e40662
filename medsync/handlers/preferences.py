"""
Time preference handlers
Patient time buckets, schedule computation and bucket status
"""

from typing import Any, Dict

from medsync.core.engine import get_engine
from medsync.core.errors import MedsyncError
from medsync.core.logger import get_logger
from medsync.models.requests import (
    ComputeScheduleRequest,
    CreatePreferencesRequest,
    UpdatePreferencesRequest,
)

from . import api_handler, error_response, success_response

logger = get_logger(__name__)


@api_handler(
    method="GET",
    path="/preferences/{patient_id}",
    tags=["preferences"],
    summary="Get time preferences",
    description="Stored time preferences of a patient, or the defaults when none are stored",
)
async def get_time_preferences(patient_id: str) -> Dict[str, Any]:
    """Get time preferences"""
    prefs = get_engine().time_buckets.get_time_preferences(patient_id)
    return success_response(prefs.to_document())


@api_handler(
    body=CreatePreferencesRequest,
    method="POST",
    path="/preferences/create",
    tags=["preferences"],
    summary="Create time preferences",
)
async def create_time_preferences(body: CreatePreferencesRequest) -> Dict[str, Any]:
    """Create time preferences

    @param body Buckets, frequency mapping and lifestyle; omitted parts use defaults
    @returns Stored preferences
    """
    try:
        prefs = get_engine().time_buckets.create_time_preferences(
            body.patient_id,
            time_buckets=body.time_buckets,
            frequency_mapping=body.frequency_mapping,
            lifestyle=body.lifestyle,
            created_by=body.created_by,
        )
        return success_response(prefs.to_document(), message="Time preferences created")
    except MedsyncError as e:
        logger.warning(f"Failed to create time preferences for {body.patient_id}: {e}")
        return error_response(e)


@api_handler(
    body=UpdatePreferencesRequest,
    method="POST",
    path="/preferences/update",
    tags=["preferences"],
)
async def update_time_preferences(body: UpdatePreferencesRequest) -> Dict[str, Any]:
    """Update time preferences"""
    try:
        prefs = get_engine().time_buckets.update_time_preferences(
            body.patient_id, body.changes, updated_by=body.updated_by
        )
        return success_response(prefs.to_document(), message="Time preferences updated")
    except MedsyncError as e:
        logger.warning(f"Failed to update time preferences for {body.patient_id}: {e}")
        return error_response(e)


@api_handler(
    body=ComputeScheduleRequest,
    method="POST",
    path="/preferences/compute-schedule",
    tags=["preferences"],
    summary="Compute dose times",
    description="Resolve the dose times of a frequency through the patient's time buckets",
)
async def compute_schedule(body: ComputeScheduleRequest) -> Dict[str, Any]:
    """Compute dose times"""
    try:
        schedule = get_engine().time_buckets.compute_schedule(
            body.patient_id,
            body.frequency,
            overrides=body.overrides,
            flexible_config=body.flexible_config,
        )
        return success_response(schedule.to_document())
    except MedsyncError as e:
        return error_response(e)


@api_handler(
    method="GET",
    path="/preferences/{patient_id}/bucket-status",
    tags=["preferences"],
    summary="Time bucket status",
)
async def get_time_bucket_status(patient_id: str) -> Dict[str, Any]:
    """Medications due per bucket and whether each bucket is upcoming, current or past"""
    engine = get_engine()
    status = engine.time_buckets.get_time_bucket_status(
        patient_id, engine.commands.get_active(patient_id)
    )
    return success_response(status)
