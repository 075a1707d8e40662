"""
Adherence analytics handlers
"""

from datetime import date
from typing import Any, Dict, Optional

from medsync.core.engine import get_engine
from medsync.core.errors import MedsyncError
from medsync.core.logger import get_logger
from medsync.models.requests import AnalyticsRequest, MilestoneRequest, ReportRequest

from . import api_handler, error_response, success_response

logger = get_logger(__name__)


@api_handler(
    body=AnalyticsRequest,
    method="POST",
    path="/analytics/adherence",
    tags=["analytics"],
    summary="Calculate adherence analytics",
    description="Adherence metrics, timing patterns and risk assessment over a period (default: last 30 days)",
)
async def calculate_adherence(body: AnalyticsRequest) -> Dict[str, Any]:
    """Calculate adherence analytics

    @param body Patient, optional medication and period
    @returns Metrics, patterns and risk assessment
    """
    try:
        analytics = get_engine().analytics.calculate(
            body.patient_id,
            medication_id=body.medication_id,
            start=body.start_date,
            end=body.end_date,
            tz=body.timezone,
        )
        return success_response(analytics.to_document())
    except MedsyncError as e:
        return error_response(e)


@api_handler(
    body=ReportRequest,
    method="POST",
    path="/analytics/report",
    tags=["analytics"],
    summary="Generate adherence report",
)
async def generate_report(body: ReportRequest) -> Dict[str, Any]:
    """Generate adherence report"""
    try:
        report = get_engine().analytics.generate_report(
            body.patient_id,
            report_type=body.report_type,
            start=body.start_date,
            end=body.end_date,
            tz=body.timezone,
        )
        return success_response(report.to_document())
    except MedsyncError as e:
        return error_response(e)


@api_handler(
    body=MilestoneRequest,
    method="POST",
    path="/analytics/milestones",
    tags=["analytics"],
    summary="Check milestones",
    description="Award milestones reached since the last check; already awarded ones are not returned again",
)
async def check_milestones(body: MilestoneRequest) -> Dict[str, Any]:
    """Check milestones"""
    try:
        milestones = get_engine().analytics.check_milestones(
            body.patient_id, medication_id=body.medication_id
        )
        return success_response([m.to_document() for m in milestones])
    except MedsyncError as e:
        return error_response(e)


@api_handler(
    method="GET",
    path="/analytics/daily-summaries/{patient_id}",
    tags=["analytics"],
    summary="Daily summaries",
)
async def get_daily_summaries(
    patient_id: str,
    start: Optional[date] = None,
    end: Optional[date] = None,
    limit: Optional[int] = None,
) -> Dict[str, Any]:
    """Daily summaries of a patient, newest first"""
    try:
        summaries = get_engine().daily_reset.get_daily_summaries(
            patient_id, start=start, end=end, limit=limit
        )
        return success_response([s.to_document() for s in summaries])
    except MedsyncError as e:
        return error_response(e)
