"""
Medication command model
Authoritative, mutable, versioned state of one prescribed medication
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import Field

from .base import BaseModel
from .preferences import FlexibleScheduleConfig


class Frequency(str, Enum):
    DAILY = "daily"
    TWICE_DAILY = "twice_daily"
    THREE_TIMES_DAILY = "three_times_daily"
    FOUR_TIMES_DAILY = "four_times_daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    AS_NEEDED = "as_needed"
    CUSTOM = "custom"


class MedicationStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    HELD = "held"
    DISCONTINUED = "discontinued"
    COMPLETED = "completed"


class MedicationType(str, Enum):
    """Grace-period classification"""

    CRITICAL = "critical"
    STANDARD = "standard"
    VITAMIN = "vitamin"
    PRN = "prn"


class TimingType(str, Enum):
    ABSOLUTE = "absolute"
    TIME_BUCKETS = "time_buckets"
    INTERVAL = "interval"
    MEAL_RELATIVE = "meal_relative"


class NotificationMethod(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"
    BROWSER = "browser"


# Expected number of daily times per frequency
EXPECTED_TIMES_COUNT: Dict[Frequency, int] = {
    Frequency.DAILY: 1,
    Frequency.TWICE_DAILY: 2,
    Frequency.THREE_TIMES_DAILY: 3,
    Frequency.FOUR_TIMES_DAILY: 4,
}

# Used when a command has no explicit times and no patient preferences apply
DEFAULT_TIMES_BY_FREQUENCY: Dict[Frequency, List[str]] = {
    Frequency.DAILY: ["08:00"],
    Frequency.TWICE_DAILY: ["08:00", "20:00"],
    Frequency.THREE_TIMES_DAILY: ["08:00", "14:00", "20:00"],
    Frequency.FOUR_TIMES_DAILY: ["08:00", "12:00", "17:00", "22:00"],
    Frequency.WEEKLY: ["08:00"],
    Frequency.MONTHLY: ["08:00"],
    Frequency.AS_NEEDED: [],
    Frequency.CUSTOM: [],
}

DEFAULT_GRACE_PERIODS: Dict[MedicationType, int] = {
    MedicationType.CRITICAL: 15,
    MedicationType.STANDARD: 30,
    MedicationType.VITAMIN: 120,
    MedicationType.PRN: 0,
}

CRITICAL_MEDICATIONS = [
    "insulin",
    "warfarin",
    "digoxin",
    "levothyroxine",
    "phenytoin",
    "lithium",
    "tacrolimus",
    "cyclosporine",
    "methotrexate",
]

VITAMIN_KEYWORDS = [
    "vitamin",
    "multivitamin",
    "calcium",
    "iron",
    "magnesium",
    "zinc",
    "fish oil",
    "omega",
    "supplement",
    "probiotic",
]


class MedicationInfo(BaseModel):
    name: str
    generic_name: Optional[str] = None
    brand_name: Optional[str] = None
    rxcui: Optional[str] = None
    dosage: Optional[str] = None
    strength: Optional[str] = None
    dosage_form: Optional[str] = None
    route: Optional[str] = None
    instructions: Optional[str] = None
    prescribed_by: Optional[str] = None
    prescribed_date: Optional[datetime] = None
    pharmacy: Optional[str] = None
    prescription_number: Optional[str] = None
    refills_remaining: Optional[int] = None
    notes: Optional[str] = None


class ComputedScheduleInfo(BaseModel):
    computed_at: datetime
    computed_by: str
    based_on_preferences_version: int = 0
    method: str = "frequency_mapping"
    buckets: List[str] = Field(default_factory=list)


class Schedule(BaseModel):
    """Dose schedule.

    @property daysOfWeek - 0-6 with Monday = 0 (weekly frequency)
    @property dayOfMonth - 1-31 (monthly frequency, defaults to 1)
    @property timezone - IANA zone the HH:MM times are expressed in
    """

    frequency: Frequency
    times: List[str] = Field(default_factory=list)
    days_of_week: Optional[List[int]] = None
    day_of_month: Optional[int] = Field(default=None, ge=1, le=31)
    start_date: datetime
    end_date: Optional[datetime] = None
    is_indefinite: bool = True
    dosage_amount: str
    instructions: Optional[str] = None
    timezone: str = "UTC"
    timing_type: TimingType = TimingType.ABSOLUTE
    flexible_scheduling: Optional[FlexibleScheduleConfig] = None
    time_bucket_overrides: Dict[str, str] = Field(default_factory=dict)
    computed_schedule: Optional[ComputedScheduleInfo] = None


class QuietHours(BaseModel):
    start: str = "22:00"
    end: str = "07:00"
    enabled: bool = True


class ReminderSettings(BaseModel):
    enabled: bool = True
    minutes_before: List[int] = Field(default_factory=lambda: [15, 5])
    notification_methods: List[NotificationMethod] = Field(
        default_factory=lambda: [NotificationMethod.BROWSER, NotificationMethod.PUSH]
    )
    quiet_hours: Optional[QuietHours] = Field(default_factory=QuietHours)


class GracePeriod(BaseModel):
    default_minutes: int = Field(ge=0)
    medication_type: MedicationType
    weekend_multiplier: float = 1.5
    holiday_multiplier: float = 2.0


class CommandStatus(BaseModel):
    current: MedicationStatus = MedicationStatus.ACTIVE
    is_active: bool = True
    is_prn: bool = Field(default=False, alias="isPRN")
    paused_until: Optional[datetime] = None
    hold_reason: Optional[str] = None
    discontinue_reason: Optional[str] = None
    discontinue_date: Optional[datetime] = None
    last_status_change: datetime
    status_changed_by: str


class CommandMetadata(BaseModel):
    version: int = 1
    created_at: datetime
    created_by: str
    updated_at: datetime
    updated_by: str
    last_event_id: Optional[str] = None
    checksum: Optional[str] = None


class MedicationCommand(BaseModel):
    """Current authoritative state of a prescribed medication"""

    id: str
    patient_id: str
    medication: MedicationInfo
    schedule: Schedule
    reminders: ReminderSettings = Field(default_factory=ReminderSettings)
    grace_period: GracePeriod
    status: CommandStatus
    metadata: CommandMetadata

    @property
    def is_prn(self) -> bool:
        return self.schedule.frequency == Frequency.AS_NEEDED

    def flags_consistent(self) -> bool:
        return (
            self.status.is_active == (self.status.current == MedicationStatus.ACTIVE)
            and self.status.is_prn == self.is_prn
        )
