"""
Adherence analytics models
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import Field

from .base import BaseModel


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


RISK_ORDER = [RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.CRITICAL]


class Trend(str, Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    DECLINING = "declining"


class AnalyticsPeriod(BaseModel):
    start_date: datetime
    end_date: datetime
    timezone: str = "UTC"


class AdherenceMetrics(BaseModel):
    total_scheduled_doses: int = 0
    total_taken_doses: int = 0
    full_doses_taken: int = 0
    partial_doses_taken: int = 0
    adjusted_doses_taken: int = 0
    missed_doses: int = 0
    skipped_doses: int = 0
    undone_doses: int = 0
    on_time_doses: int = 0
    overall_adherence_rate: float = 0
    full_dose_adherence_rate: float = 0
    on_time_adherence_rate: float = 0
    average_delay_minutes: float = 0
    median_delay_minutes: float = 0
    max_delay_minutes: float = 0
    early_doses: int = 0
    late_doses: int = 0
    very_late_doses: int = 0


class UndoPatterns(BaseModel):
    total_undos: int = 0
    undo_reasons: Dict[str, int] = Field(default_factory=dict)
    average_undo_seconds: float = 0


class AdherencePatterns(BaseModel):
    most_missed_time_slot: Optional[str] = None
    most_missed_day_of_week: Optional[str] = None
    weekday_adherence_rate: float = 0
    weekend_adherence_rate: float = 0
    weekday_vs_weekend_delta: float = 0
    consecutive_missed_doses: int = 0
    longest_adherence_streak: int = 0
    current_adherence_streak: int = 0
    improvement_trend: Trend = Trend.STABLE
    common_miss_reasons: List[str] = Field(default_factory=list)
    undo_patterns: UndoPatterns = Field(default_factory=UndoPatterns)


class RiskAssessment(BaseModel):
    risk_level: RiskLevel
    risk_factors: List[str] = Field(default_factory=list)
    protective_factors: List[str] = Field(default_factory=list)
    intervention_recommendations: List[str] = Field(default_factory=list)
    predicted_adherence_next7_days: float = 0
    confidence_level: float = 50
    risk_trend: Trend = Trend.STABLE


class AdherenceAnalytics(BaseModel):
    patient_id: str
    medication_id: Optional[str] = None
    medication_name: Optional[str] = None
    period: AnalyticsPeriod
    metrics: AdherenceMetrics
    patterns: AdherencePatterns
    risk_assessment: RiskAssessment
    calculated_at: datetime


class ReportSummary(BaseModel):
    total_medications: int = 0
    overall_adherence_rate: float = 0
    on_time_adherence_rate: float = 0
    medications_at_risk: List[str] = Field(default_factory=list)
    best_performing: Optional[str] = None
    needs_attention: Optional[str] = None


class AdherenceReport(BaseModel):
    report_id: str
    patient_id: str
    report_type: str
    period: AnalyticsPeriod
    overall: AdherenceAnalytics
    medications: List[AdherenceAnalytics] = Field(default_factory=list)
    summary: ReportSummary
    generated_at: datetime


class Milestone(BaseModel):
    id: str
    patient_id: str
    medication_id: Optional[str] = None
    milestone_type: str
    title: str
    description: str
    value: float
    achieved_at: datetime
