"""
Time bucket scheduling
Patient time preferences, bucket validation and dose-time computation
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from medsync.core import collections
from medsync.core.errors import ConflictError, ValidationError
from medsync.core.logger import get_logger
from medsync.core.protocols import Clock
from medsync.core.storage import AtomicStorage, Transaction, apply_update
from medsync.core.timeutils import (
    MINUTES_PER_DAY,
    ensure_utc,
    get_zone,
    is_valid_time,
    minutes_to_time,
    normalize_time,
    time_to_minutes,
    utcnow,
)
from medsync.models.commands import Frequency, MedicationCommand
from medsync.models.preferences import (
    BUCKET_ORDER,
    BucketValidation,
    ComputedSchedule,
    FlexibleScheduleConfig,
    FrequencyMapping,
    Lifestyle,
    PatientTimePreferences,
    PreferencesMetadata,
    ScheduleMethod,
    TimeBucketName,
    TimeBuckets,
    default_preferences,
)

logger = get_logger(__name__)

CUSTOM_BUCKET = "custom"

# Night-shift inference: morning default inside this window
NIGHT_SHIFT_MORNING_RANGE = ("14:00", "18:00")

# Which meal sits in which bucket, for meal-aware optimal times
MEAL_FOR_BUCKET = {
    TimeBucketName.MORNING: "breakfast",
    TimeBucketName.LUNCH: "lunch",
    TimeBucketName.EVENING: "dinner",
}

PROTECTED_FIELDS = ("id", "patientId", "metadata")


def pydantic_messages(exc: PydanticValidationError) -> List[str]:
    return [
        f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
        for err in exc.errors()
    ]


def time_in_range(value: str, earliest: str, latest: str) -> bool:
    """Inclusive containment; earliest > latest wraps past midnight"""
    t = time_to_minutes(value)
    start = time_to_minutes(earliest)
    end = time_to_minutes(latest)
    if start <= end:
        return start <= t <= end
    return t >= start or t <= end


def _range_segments(earliest: str, latest: str) -> List[Tuple[int, int]]:
    start = time_to_minutes(earliest)
    end = time_to_minutes(latest)
    if start <= end:
        return [(start, end)]
    return [(start, MINUTES_PER_DAY - 1), (0, end)]


def _segments_overlap(a: List[Tuple[int, int]], b: List[Tuple[int, int]]) -> bool:
    return any(a1 <= b2 and b1 <= a2 for a1, a2 in a for b1, b2 in b)


def get_time_bucket_for_time(value: str, prefs: PatientTimePreferences) -> str:
    for name, bucket in prefs.time_buckets.items():
        if time_in_range(value, bucket.time_range.earliest, bucket.time_range.latest):
            return name.value
    return CUSTOM_BUCKET


def validate_time_buckets(prefs: PatientTimePreferences) -> BucketValidation:
    """Check bucket times and ranges; night-shift rules apply when inferred"""
    errors: List[str] = []
    warnings: List[str] = []
    valid_ranges: Dict[str, List[Tuple[int, int]]] = {}

    for name, bucket in prefs.time_buckets.items():
        values = {
            "default": bucket.default_time,
            "earliest": bucket.time_range.earliest,
            "latest": bucket.time_range.latest,
        }
        bad = [label for label, value in values.items() if not is_valid_time(value)]
        for label in bad:
            errors.append(f"{name.value}: invalid {label} time '{values[label]}'")
        if bad:
            continue

        earliest, latest = bucket.time_range.earliest, bucket.time_range.latest
        if time_to_minutes(earliest) == time_to_minutes(latest):
            errors.append(f"{name.value}: time range {earliest}-{latest} has zero length")
            continue
        if not time_in_range(bucket.default_time, earliest, latest):
            errors.append(
                f"{name.value}: default time {bucket.default_time} is outside range {earliest}-{latest}"
            )
        valid_ranges[name.value] = _range_segments(earliest, latest)

    is_night_shift = _is_night_shift(prefs)
    if is_night_shift:
        for name, bucket in prefs.time_buckets.items():
            if not is_valid_time(bucket.default_time):
                continue
            if time_to_minutes(bucket.default_time) != time_to_minutes("02:00"):
                continue
            if name == TimeBucketName.EVENING:
                errors.append("evening: night-shift evening default cannot be 02:00, use 00:00")
            else:
                warnings.append(f"{name.value}: default time 02:00 falls in the usual sleep window")

    names = list(valid_ranges)
    for i, first in enumerate(names):
        for second in names[i + 1 :]:
            if _segments_overlap(valid_ranges[first], valid_ranges[second]):
                warnings.append(f"Time ranges of {first} and {second} overlap")

    return BucketValidation(
        is_valid=not errors,
        errors=errors,
        warnings=warnings,
        is_night_shift=is_night_shift,
    )


def _is_night_shift(prefs: PatientTimePreferences) -> bool:
    morning = prefs.time_buckets.morning
    if is_valid_time(morning.default_time) and time_in_range(
        morning.default_time, *NIGHT_SHIFT_MORNING_RANGE
    ):
        return True
    evening_range = prefs.time_buckets.evening.time_range
    if is_valid_time(evening_range.earliest) and is_valid_time(evening_range.latest):
        return time_to_minutes(evening_range.earliest) > time_to_minutes(evening_range.latest)
    return False


class TimeBucketService:
    """Patient time preferences and schedule computation"""

    def __init__(self, storage: AtomicStorage, clock: Clock = utcnow):
        self.storage = storage
        self.clock = clock

    # ==================== Preferences ====================

    def get_time_preferences(self, patient_id: str) -> PatientTimePreferences:
        """Stored preferences, or unpersisted defaults"""
        doc = self.storage.get(collections.TIME_PREFERENCES, patient_id)
        if doc is None:
            return default_preferences(patient_id)
        return PatientTimePreferences.from_document(doc)

    def get_or_create_time_preferences(
        self, patient_id: str, created_by: str = "system"
    ) -> PatientTimePreferences:
        def _get_or_create(txn: Transaction) -> PatientTimePreferences:
            doc = txn.get(collections.TIME_PREFERENCES, patient_id)
            if doc is not None:
                return PatientTimePreferences.from_document(doc)
            prefs = default_preferences(patient_id)
            prefs.metadata = self._new_metadata(created_by)
            txn.create(collections.TIME_PREFERENCES, patient_id, prefs.to_document())
            logger.info(f"✓ Default time preferences created for patient {patient_id}")
            return prefs

        return self.storage.run_transaction(_get_or_create)

    def create_time_preferences(
        self,
        patient_id: str,
        time_buckets: Optional[TimeBuckets] = None,
        frequency_mapping: Optional[FrequencyMapping] = None,
        lifestyle: Optional[Lifestyle] = None,
        created_by: str = "system",
    ) -> PatientTimePreferences:
        prefs = default_preferences(patient_id)
        if time_buckets is not None:
            prefs.time_buckets = time_buckets
        if frequency_mapping is not None:
            prefs.frequency_mapping = frequency_mapping
        if lifestyle is not None:
            prefs.lifestyle = lifestyle

        result = validate_time_buckets(prefs)
        if not result.is_valid:
            raise ValidationError(result.errors, result.warnings)
        prefs.metadata = self._new_metadata(created_by)

        def _create(txn: Transaction) -> None:
            if txn.exists(collections.TIME_PREFERENCES, patient_id):
                raise ConflictError(
                    f"Time preferences already exist for patient {patient_id}",
                    {"patientId": patient_id},
                )
            txn.create(collections.TIME_PREFERENCES, patient_id, prefs.to_document())

        self.storage.run_transaction(_create)
        logger.info(f"✓ Time preferences created for patient {patient_id}")
        return prefs

    def update_time_preferences(
        self, patient_id: str, changes: Dict[str, Any], updated_by: str = "system"
    ) -> PatientTimePreferences:
        """Merge camelCase (dotted) changes, validate, bump the version"""
        protected = [key for key in changes if key.split(".")[0] in PROTECTED_FIELDS]
        if protected:
            raise ValidationError([f"Field cannot be changed: {key}" for key in protected])

        def _update(txn: Transaction) -> PatientTimePreferences:
            now = self.clock()
            doc = txn.get(collections.TIME_PREFERENCES, patient_id)
            if doc is None:
                base = default_preferences(patient_id)
                base.metadata = self._new_metadata(updated_by)
                base.metadata.version = 0
                doc = base.to_document()

            merged = apply_update(doc, changes)
            try:
                prefs = PatientTimePreferences.from_document(merged)
            except PydanticValidationError as e:
                raise ValidationError(pydantic_messages(e)) from e

            result = validate_time_buckets(prefs)
            if not result.is_valid:
                raise ValidationError(result.errors, result.warnings)

            metadata = prefs.metadata or self._new_metadata(updated_by)
            metadata.version += 1
            metadata.updated_at = now
            metadata.updated_by = updated_by
            prefs.metadata = metadata
            txn.set(collections.TIME_PREFERENCES, patient_id, prefs.to_document())
            return prefs

        prefs = self.storage.run_transaction(_update)
        logger.info(f"✓ Time preferences updated for patient {patient_id} (v{prefs.version})")
        return prefs

    def _new_metadata(self, by: str) -> PreferencesMetadata:
        now = self.clock()
        return PreferencesMetadata(
            version=1, created_at=now, created_by=by, updated_at=now, updated_by=by
        )

    # ==================== Schedule computation ====================

    def compute_schedule(
        self,
        patient_id: str,
        frequency: Frequency,
        overrides: Optional[Dict[str, str]] = None,
        flexible_config: Optional[FlexibleScheduleConfig] = None,
    ) -> ComputedSchedule:
        prefs = self.get_time_preferences(patient_id)
        overrides = overrides or {}

        if flexible_config is not None:
            times, buckets = self._compute_flexible(prefs, flexible_config, overrides)
            method = flexible_config.method.value
        else:
            bucket_names = self._buckets_for_frequency(prefs, Frequency(frequency))
            times = [
                normalize_time(overrides.get(name.value) or prefs.time_buckets.get(name).default_time)
                for name in bucket_names
            ]
            buckets = [name.value for name in bucket_names]
            method = "frequency_mapping"

        bad = [t for t in times if not is_valid_time(t)]
        if bad:
            raise ValidationError([f"Invalid time format: {t}" for t in bad])

        return ComputedSchedule(
            times=times,
            buckets=buckets,
            method=method,
            preferences_version=prefs.version,
        )

    def _buckets_for_frequency(
        self, prefs: PatientTimePreferences, frequency: Frequency
    ) -> List[TimeBucketName]:
        mapping = prefs.frequency_mapping
        if frequency == Frequency.DAILY:
            candidates = [mapping.daily.preferred_bucket, *mapping.daily.fallback_buckets]
            for name in candidates:
                if prefs.time_buckets.get(name).is_active:
                    return [name]
            return [mapping.daily.preferred_bucket]
        if frequency == Frequency.TWICE_DAILY:
            return list(mapping.twice_daily.preferred_buckets)
        if frequency == Frequency.THREE_TIMES_DAILY:
            return list(mapping.three_times.preferred_buckets)
        if frequency == Frequency.FOUR_TIMES_DAILY:
            return list(mapping.four_times.preferred_buckets)
        if frequency in (Frequency.WEEKLY, Frequency.MONTHLY):
            return [TimeBucketName.MORNING]
        return []

    def _compute_flexible(
        self,
        prefs: PatientTimePreferences,
        config: FlexibleScheduleConfig,
        overrides: Dict[str, str],
    ) -> Tuple[List[str], List[str]]:
        if config.method == ScheduleMethod.TIME_BUCKETS:
            method_config = config.time_buckets
            if method_config is None:
                raise ValidationError(["timeBuckets configuration is required"])
            times = []
            for name in method_config.buckets:
                custom = method_config.custom_times.get(name) or overrides.get(name.value)
                times.append(custom or prefs.time_buckets.get(name).default_time)
            return [normalize_time(t) if is_valid_time(t) else t for t in times], [
                name.value for name in method_config.buckets
            ]

        if config.method == ScheduleMethod.SPECIFIC_TIMES:
            method_config = config.specific_times
            if method_config is None or not method_config.times:
                raise ValidationError(["specificTimes requires at least one time"])
            bad = [t for t in method_config.times if not is_valid_time(t)]
            if bad:
                raise ValidationError([f"Invalid time format: {t}" for t in bad])
            times = [normalize_time(t) for t in method_config.times]
            return times, [get_time_bucket_for_time(t, prefs) for t in times]

        if config.method == ScheduleMethod.INTERVAL_BASED:
            method_config = config.interval_based
            if method_config is None:
                raise ValidationError(["intervalBased configuration is required"])
            times = self._interval_times(prefs, method_config)
            return times, [get_time_bucket_for_time(t, prefs) for t in times]

        method_config = config.meal_relative
        if method_config is None:
            raise ValidationError(["mealRelative configuration is required"])
        time = self._meal_relative_time(prefs, method_config)
        return [time], [get_time_bucket_for_time(time, prefs)]

    def _interval_times(self, prefs: PatientTimePreferences, method_config) -> List[str]:
        for label, value in (("startTime", method_config.start_time), ("endTime", method_config.end_time)):
            if value is not None and not is_valid_time(value):
                raise ValidationError([f"Invalid {label}: {value}"])

        current = time_to_minutes(method_config.start_time)
        end = time_to_minutes(method_config.end_time) if method_config.end_time else MINUTES_PER_DAY
        step = max(1, int(round(method_config.interval_hours * 60)))
        limit = method_config.max_doses_per_day or MINUTES_PER_DAY
        wake, bed = prefs.lifestyle.wake_up_time, prefs.lifestyle.bed_time

        times: List[str] = []
        while current < end and len(times) < limit:
            clock_time = minutes_to_time(current)
            if not method_config.respect_sleep_hours or time_in_range(clock_time, wake, bed):
                times.append(clock_time)
            current += step
        return times

    def _meal_relative_time(self, prefs: PatientTimePreferences, method_config) -> str:
        meals = prefs.lifestyle.meal_times
        meal_time: Optional[str] = None
        if meals is not None:
            if method_config.meal_type == "any_meal":
                meal_time = meals.breakfast or meals.lunch or meals.dinner
            else:
                meal_time = getattr(meals, method_config.meal_type)

        if not meal_time:
            if method_config.fallback_time and is_valid_time(method_config.fallback_time):
                return normalize_time(method_config.fallback_time)
            raise ValidationError(
                [f"No {method_config.meal_type} time on file and no fallbackTime given"]
            )
        if not is_valid_time(meal_time):
            raise ValidationError([f"Invalid meal time: {meal_time}"])

        minutes = time_to_minutes(meal_time)
        if method_config.timing == "before":
            minutes -= method_config.offset_minutes
        elif method_config.timing == "after":
            minutes += method_config.offset_minutes
        minutes = min(max(minutes, 0), MINUTES_PER_DAY - 1)
        return minutes_to_time(minutes)

    # ==================== Helpers ====================

    def get_optimal_medication_time(
        self,
        patient_id: str,
        bucket: "TimeBucketName | str",
        must_take_with: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Bucket default, or the meal time inside the bucket when taken with food"""
        prefs = self.get_time_preferences(patient_id)
        name = TimeBucketName(bucket)
        time_bucket = prefs.time_buckets.get(name)
        time = time_bucket.default_time
        reason = "bucket_default"

        if must_take_with in ("food", "meal") and prefs.lifestyle.meal_times is not None:
            meal = MEAL_FOR_BUCKET.get(name)
            meal_time = getattr(prefs.lifestyle.meal_times, meal) if meal else None
            if (
                meal_time
                and is_valid_time(meal_time)
                and time_in_range(
                    meal_time, time_bucket.time_range.earliest, time_bucket.time_range.latest
                )
            ):
                time = normalize_time(meal_time)
                reason = f"with_{meal}"

        return {"bucket": name.value, "time": time, "reason": reason}

    def get_time_bucket_status(
        self,
        patient_id: str,
        commands: List[MedicationCommand],
        now: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """Per bucket: medications due and whether the bucket is upcoming, current or past"""
        prefs = self.get_time_preferences(patient_id)
        local_now = ensure_utc(now or self.clock()).astimezone(get_zone(prefs.lifestyle.timezone))
        now_clock = minutes_to_time(local_now.hour * 60 + local_now.minute)

        statuses = []
        for name in BUCKET_ORDER:
            bucket = prefs.time_buckets.get(name)
            earliest, latest = bucket.time_range.earliest, bucket.time_range.latest
            if time_in_range(now_clock, earliest, latest):
                state = "current"
            elif time_to_minutes(earliest) <= time_to_minutes(latest):
                state = "upcoming" if time_to_minutes(now_clock) < time_to_minutes(earliest) else "past"
            else:
                # Wrapping bucket not containing now: between latest and earliest
                state = "upcoming"

            due = []
            for command in commands:
                for clock_time in command.schedule.times:
                    if get_time_bucket_for_time(clock_time, prefs) == name.value:
                        due.append(
                            {
                                "commandId": command.id,
                                "medicationName": command.medication.name,
                                "time": clock_time,
                                "dosageAmount": command.schedule.dosage_amount,
                            }
                        )

            statuses.append(
                {
                    "bucket": name.value,
                    "label": bucket.label,
                    "defaultTime": bucket.default_time,
                    "timeRange": {"earliest": earliest, "latest": latest},
                    "status": state,
                    "medications": sorted(due, key=lambda m: m["time"]),
                }
            )
        return statuses

    def validate_time_buckets(self, prefs: PatientTimePreferences) -> BucketValidation:
        return validate_time_buckets(prefs)

    def time_in_range(self, value: str, earliest: str, latest: str) -> bool:
        return time_in_range(value, earliest, latest)

    def get_time_bucket_for_time(self, value: str, prefs: PatientTimePreferences) -> str:
        return get_time_bucket_for_time(value, prefs)
