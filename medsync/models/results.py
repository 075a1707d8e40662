"""
Result models returned across the workflow boundary
"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import Field

from .base import BaseModel
from .events import MedicationEvent


class WorkflowResult(BaseModel):
    """Outcome of one orchestrator workflow; failures are reported, never raised"""

    success: bool
    workflow_id: str
    correlation_id: Optional[str] = None
    command_id: Optional[str] = None
    event_ids: List[str] = Field(default_factory=list)
    notifications_sent: int = 0
    transaction_id: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)
    execution_time_ms: float = 0
    data: Dict[str, Any] = Field(default_factory=dict)


class MissedDetectionResult(BaseModel):
    success: bool
    medications_processed: int = 0
    missed_detected: int = 0
    workflows_executed: int = 0
    notifications_sent: int = 0
    errors: List[str] = Field(default_factory=list)
    execution_time_ms: float = 0


class BatchCreateResult(BaseModel):
    created: List[str] = Field(default_factory=list)
    failed: List[Dict[str, Any]] = Field(default_factory=list)
    correlation_id: str


class UndoValidation(BaseModel):
    can_undo: bool
    can_correct: bool
    window: Literal["undo", "correction", "locked"]
    elapsed_seconds: float
    reason: Optional[str] = None
    original_event: Optional[MedicationEvent] = None


class AdherenceImpact(BaseModel):
    previous_adherence: int = 0
    new_adherence: int = 0
    streak_impact: str = ""


class UndoResult(BaseModel):
    success: bool
    undo_event_id: Optional[str] = None
    correction_event_id: Optional[str] = None
    correlation_id: Optional[str] = None
    adherence_impact: Optional[AdherenceImpact] = None
