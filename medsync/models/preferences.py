"""
Patient time preferences and flexible scheduling configuration
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Literal, Optional

from pydantic import Field

from .base import BaseModel


class TimeBucketName(str, Enum):
    """Named parts of the day"""

    MORNING = "morning"
    LUNCH = "lunch"
    EVENING = "evening"
    BEFORE_BED = "beforeBed"


BUCKET_ORDER = [
    TimeBucketName.MORNING,
    TimeBucketName.LUNCH,
    TimeBucketName.EVENING,
    TimeBucketName.BEFORE_BED,
]


class ScheduleMethod(str, Enum):
    TIME_BUCKETS = "time_buckets"
    SPECIFIC_TIMES = "specific_times"
    INTERVAL_BASED = "interval_based"
    MEAL_RELATIVE = "meal_relative"


# ============================================================================
# Time buckets
# ============================================================================


class TimeRange(BaseModel):
    """Inclusive clock range; earliest > latest means it wraps past midnight.

    @property earliest - HH:MM
    @property latest - HH:MM
    """

    earliest: str
    latest: str


class TimeBucket(BaseModel):
    default_time: str
    label: str
    time_range: TimeRange
    is_active: bool = True


class TimeBuckets(BaseModel):
    morning: TimeBucket
    lunch: TimeBucket
    evening: TimeBucket
    before_bed: TimeBucket

    def get(self, name: "TimeBucketName | str") -> TimeBucket:
        key = TimeBucketName(name)
        return {
            TimeBucketName.MORNING: self.morning,
            TimeBucketName.LUNCH: self.lunch,
            TimeBucketName.EVENING: self.evening,
            TimeBucketName.BEFORE_BED: self.before_bed,
        }[key]

    def items(self):
        return [(name, self.get(name)) for name in BUCKET_ORDER]


class Spacing(BaseModel):
    minimum_hours: float
    preferred_hours: float


class DailyMapping(BaseModel):
    preferred_bucket: TimeBucketName
    fallback_buckets: List[TimeBucketName] = Field(default_factory=list)


class MultiDoseMapping(BaseModel):
    preferred_buckets: List[TimeBucketName]
    spacing: Optional[Spacing] = None


class FrequencyMapping(BaseModel):
    daily: DailyMapping
    twice_daily: MultiDoseMapping
    three_times: MultiDoseMapping
    four_times: MultiDoseMapping


class MealTimes(BaseModel):
    breakfast: Optional[str] = None
    lunch: Optional[str] = None
    dinner: Optional[str] = None


class Lifestyle(BaseModel):
    wake_up_time: str = "07:00"
    bed_time: str = "23:00"
    timezone: str = "America/Chicago"
    meal_times: Optional[MealTimes] = None


class PreferencesMetadata(BaseModel):
    version: int = 1
    created_at: datetime
    created_by: str
    updated_at: datetime
    updated_by: str


class PatientTimePreferences(BaseModel):
    """Per-patient bucket configuration, versioned.

    @property id - Document id (same as patientId)
    @property timeBuckets - The four named buckets
    @property frequencyMapping - Frequency to bucket list mapping
    @property lifestyle - Wake/bed times, timezone and meal times
    @property metadata - Optional until the preferences are persisted
    """

    id: str
    patient_id: str
    time_buckets: TimeBuckets
    frequency_mapping: FrequencyMapping
    lifestyle: Lifestyle = Field(default_factory=Lifestyle)
    metadata: Optional[PreferencesMetadata] = None

    @property
    def version(self) -> int:
        return self.metadata.version if self.metadata else 0


def _bucket(default: str, label: str, earliest: str, latest: str) -> TimeBucket:
    return TimeBucket(
        default_time=default,
        label=label,
        time_range=TimeRange(earliest=earliest, latest=latest),
    )


def default_time_buckets() -> TimeBuckets:
    return TimeBuckets(
        morning=_bucket("08:00", "Morning", "06:00", "10:00"),
        lunch=_bucket("12:00", "Lunch", "11:00", "14:00"),
        evening=_bucket("18:00", "Evening", "17:00", "20:00"),
        before_bed=_bucket("22:00", "Before Bed", "21:00", "23:30"),
    )


def night_shift_time_buckets() -> TimeBuckets:
    """Profile for patients who sleep during the day"""
    return TimeBuckets(
        morning=_bucket("15:00", "Wake Up", "14:00", "18:00"),
        lunch=_bucket("20:00", "Mid-Shift", "19:00", "22:00"),
        evening=_bucket("00:00", "Late Shift", "23:00", "02:00"),
        before_bed=_bucket("08:00", "Before Sleep", "06:00", "10:00"),
    )


def default_frequency_mapping() -> FrequencyMapping:
    return FrequencyMapping(
        daily=DailyMapping(
            preferred_bucket=TimeBucketName.MORNING,
            fallback_buckets=[
                TimeBucketName.EVENING,
                TimeBucketName.LUNCH,
                TimeBucketName.BEFORE_BED,
            ],
        ),
        twice_daily=MultiDoseMapping(
            preferred_buckets=[TimeBucketName.MORNING, TimeBucketName.EVENING],
            spacing=Spacing(minimum_hours=8, preferred_hours=12),
        ),
        three_times=MultiDoseMapping(
            preferred_buckets=[
                TimeBucketName.MORNING,
                TimeBucketName.LUNCH,
                TimeBucketName.EVENING,
            ],
            spacing=Spacing(minimum_hours=6, preferred_hours=8),
        ),
        four_times=MultiDoseMapping(
            preferred_buckets=list(BUCKET_ORDER),
            spacing=Spacing(minimum_hours=4, preferred_hours=6),
        ),
    )


def default_preferences(patient_id: str) -> PatientTimePreferences:
    return PatientTimePreferences(
        id=patient_id,
        patient_id=patient_id,
        time_buckets=default_time_buckets(),
        frequency_mapping=default_frequency_mapping(),
        lifestyle=Lifestyle(),
    )


# ============================================================================
# Flexible scheduling
# ============================================================================


class TimeBucketsSpec(BaseModel):
    buckets: List[TimeBucketName]
    use_patient_defaults: bool = True
    custom_times: Dict[TimeBucketName, str] = Field(default_factory=dict)


class SpecificTimesSpec(BaseModel):
    times: List[str]
    allow_flexibility: bool = False
    flexibility_minutes: Optional[int] = None


class IntervalSpec(BaseModel):
    interval_hours: float = Field(gt=0, le=24)
    start_time: str
    end_time: Optional[str] = None
    respect_sleep_hours: bool = False
    max_doses_per_day: Optional[int] = Field(default=None, ge=1)


class MealRelativeSpec(BaseModel):
    meal_type: Literal["breakfast", "lunch", "dinner", "any_meal"]
    timing: Literal["before", "with", "after"]
    offset_minutes: int = Field(default=0, ge=0)
    fallback_time: Optional[str] = None


class FlexibleScheduleConfig(BaseModel):
    """How dose times are computed.

    @property method - time_buckets | specific_times | interval_based | meal_relative
    """

    method: ScheduleMethod
    time_buckets: Optional[TimeBucketsSpec] = None
    specific_times: Optional[SpecificTimesSpec] = None
    interval_based: Optional[IntervalSpec] = None
    meal_relative: Optional[MealRelativeSpec] = None


class BucketValidation(BaseModel):
    is_valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    is_night_shift: bool = False


class ComputedSchedule(BaseModel):
    """Resolved clock times and the bucket each belongs to ("custom" if none)"""

    times: List[str]
    buckets: List[str]
    method: str
    preferences_version: int = 0
