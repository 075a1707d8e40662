"""
Command store
Authoritative medication state: validation, grace-period classification,
time resolution, versioned updates and dedicated status changes
"""

import hashlib
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from medsync.core import collections
from medsync.core.errors import ConflictError, NotFoundError, ValidationError
from medsync.core.ids import hashed_id
from medsync.core.logger import get_logger
from medsync.core.protocols import Clock
from medsync.core.storage import AtomicStorage, Transaction, apply_update
from medsync.core.timeutils import is_valid_time, is_valid_timezone, normalize_time, utcnow
from medsync.models.commands import (
    CRITICAL_MEDICATIONS,
    DEFAULT_GRACE_PERIODS,
    DEFAULT_TIMES_BY_FREQUENCY,
    EXPECTED_TIMES_COUNT,
    VITAMIN_KEYWORDS,
    CommandMetadata,
    CommandStatus,
    ComputedScheduleInfo,
    Frequency,
    GracePeriod,
    MedicationCommand,
    MedicationStatus,
    MedicationType,
    ReminderSettings,
    Schedule,
    TimingType,
)
from medsync.models.requests import CommandQuery, CreateMedicationRequest
from medsync.services.time_buckets import TimeBucketService, pydantic_messages

logger = get_logger(__name__)

ORDER_FIELDS = {
    "name": "medication.name",
    "createdAt": "metadata.createdAt",
    "updatedAt": "metadata.updatedAt",
}

IMMUTABLE_FIELDS = ("id", "patientId", "metadata", "status")


def normalize_name(name: str) -> str:
    return " ".join(name.lower().split())


def classify_medication(name: str, frequency: Optional[Frequency]) -> MedicationType:
    """PRN first, then named critical drugs, then vitamin keywords"""
    if frequency == Frequency.AS_NEEDED:
        return MedicationType.PRN
    lowered = normalize_name(name)
    if any(drug in lowered for drug in CRITICAL_MEDICATIONS):
        return MedicationType.CRITICAL
    if any(keyword in lowered for keyword in VITAMIN_KEYWORDS):
        return MedicationType.VITAMIN
    return MedicationType.STANDARD


def generate_command_id(patient_id: str, name: str) -> str:
    return hashed_id("cmd", patient_id, normalize_name(name))


def compute_checksum(command: MedicationCommand) -> str:
    parts = [
        command.id,
        command.medication.name,
        command.schedule.frequency.value,
        ",".join(command.schedule.times),
        command.schedule.dosage_amount,
        str(command.metadata.version),
    ]
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


def determine_time_slot(clock_time: str) -> str:
    """Map an HH:MM time to morning / lunch / evening / beforeBed"""
    hour = int(clock_time.split(":")[0])
    if hour < 11:
        return "morning"
    if hour < 15:
        return "lunch"
    if hour < 20:
        return "evening"
    return "beforeBed"


def _schedule_errors(schedule: Schedule) -> List[str]:
    errors = []
    for t in schedule.times:
        if not is_valid_time(t):
            errors.append(f"Invalid time format: {t} (expected HH:MM)")
    if schedule.days_of_week:
        for day in schedule.days_of_week:
            if day < 0 or day > 6:
                errors.append(f"Invalid day of week: {day} (expected 0-6, Monday = 0)")
    if not is_valid_timezone(schedule.timezone):
        errors.append(f"Invalid timezone: {schedule.timezone}")
    if schedule.end_date and schedule.end_date < schedule.start_date:
        errors.append("End date must be after start date")
    if not schedule.dosage_amount or not schedule.dosage_amount.strip():
        errors.append("Dosage amount is required")
    if schedule.frequency != Frequency.AS_NEEDED and not schedule.times:
        errors.append("At least one dose time is required")
    return errors


class CommandStore:
    """Medication command persistence and rules"""

    def __init__(
        self,
        storage: AtomicStorage,
        time_buckets: Optional[TimeBucketService] = None,
        clock: Clock = utcnow,
    ):
        self.storage = storage
        self.time_buckets = time_buckets or TimeBucketService(storage, clock)
        self.clock = clock

    # ==================== Create ====================

    def build_command(
        self, request: CreateMedicationRequest, created_by: Optional[str] = None
    ) -> Tuple[MedicationCommand, List[str]]:
        """Validate and assemble a command without writing it

        Returns the command and any non-blocking warnings.
        Raises ValidationError with every field-level problem found.
        """
        created_by = created_by or request.created_by
        errors: List[str] = []
        warnings: List[str] = []
        sched = request.schedule
        name = (request.medication.name or "").strip()

        if not request.patient_id:
            errors.append("Patient ID is required")
        if not name:
            errors.append("Medication name is required")
        if sched.frequency is None:
            errors.append("Frequency is required")
        if not sched.dosage_amount or not sched.dosage_amount.strip():
            errors.append("Dosage amount is required")
        if sched.start_date is None:
            errors.append("Start date is required")
        if sched.timezone is not None and not is_valid_timezone(sched.timezone):
            errors.append(f"Invalid timezone: {sched.timezone}")
        for t in sched.times:
            if not is_valid_time(t):
                errors.append(f"Invalid time format: {t} (expected HH:MM)")
        for day in sched.days_of_week or []:
            if day < 0 or day > 6:
                errors.append(f"Invalid day of week: {day} (expected 0-6, Monday = 0)")
        if sched.start_date and sched.end_date and sched.end_date < sched.start_date:
            errors.append("End date must be after start date")
        if errors:
            raise ValidationError(errors)

        frequency = Frequency(sched.frequency)
        times, timing_type, computed = self._resolve_times(request, frequency, created_by, errors)
        if frequency != Frequency.AS_NEEDED and not times:
            errors.append("At least one dose time is required")
        if errors:
            raise ValidationError(errors)

        expected = EXPECTED_TIMES_COUNT.get(frequency)
        if expected is not None and len(times) != expected:
            warnings.append(
                f"Frequency {frequency.value} expects {expected} time(s) but {len(times)} given"
            )
        duplicate = self._find_duplicate(request.patient_id, name)
        if duplicate is not None:
            warnings.append(
                f"Patient already has an active medication named '{duplicate.medication.name}' ({duplicate.id})"
            )

        now = self.clock()
        medication_type = classify_medication(name, frequency)
        grace_minutes = request.grace_period_minutes
        if grace_minutes is None:
            grace_minutes = DEFAULT_GRACE_PERIODS[medication_type]

        command_id = generate_command_id(request.patient_id, name)
        try:
            command = MedicationCommand(
                id=command_id,
                patient_id=request.patient_id,
                medication=request.medication.model_copy(update={"name": name}),
                schedule=Schedule(
                    frequency=frequency,
                    times=times,
                    days_of_week=sched.days_of_week,
                    day_of_month=sched.day_of_month,
                    start_date=sched.start_date,
                    end_date=sched.end_date,
                    is_indefinite=sched.is_indefinite and sched.end_date is None,
                    dosage_amount=sched.dosage_amount.strip(),
                    instructions=sched.instructions,
                    timezone=sched.timezone or "UTC",
                    timing_type=timing_type,
                    flexible_scheduling=sched.flexible_scheduling,
                    time_bucket_overrides=sched.time_bucket_overrides,
                    computed_schedule=computed,
                ),
                reminders=request.reminders or ReminderSettings(),
                grace_period=GracePeriod(
                    default_minutes=grace_minutes, medication_type=medication_type
                ),
                status=CommandStatus(
                    current=MedicationStatus.ACTIVE,
                    is_active=True,
                    is_prn=frequency == Frequency.AS_NEEDED,
                    last_status_change=now,
                    status_changed_by=created_by,
                ),
                metadata=CommandMetadata(
                    version=1,
                    created_at=now,
                    created_by=created_by,
                    updated_at=now,
                    updated_by=created_by,
                ),
            )
        except PydanticValidationError as e:
            raise ValidationError(pydantic_messages(e)) from e

        command.metadata.checksum = compute_checksum(command)
        return command, warnings

    def _resolve_times(
        self,
        request: CreateMedicationRequest,
        frequency: Frequency,
        created_by: str,
        errors: List[str],
    ) -> Tuple[List[str], TimingType, Optional[ComputedScheduleInfo]]:
        """Explicit times, then patient preferences, then per-frequency defaults"""
        sched = request.schedule
        if sched.times:
            return [normalize_time(t) for t in sched.times], TimingType.ABSOLUTE, None

        if sched.use_patient_time_preferences or sched.flexible_scheduling is not None:
            try:
                computed = self.time_buckets.compute_schedule(
                    request.patient_id,
                    frequency,
                    overrides=sched.time_bucket_overrides,
                    flexible_config=sched.flexible_scheduling,
                )
            except ValidationError as e:
                errors.extend(e.errors)
                return [], TimingType.TIME_BUCKETS, None
            info = ComputedScheduleInfo(
                computed_at=self.clock(),
                computed_by=created_by,
                based_on_preferences_version=computed.preferences_version,
                method=computed.method,
                buckets=computed.buckets,
            )
            return list(computed.times), TimingType.TIME_BUCKETS, info

        return list(DEFAULT_TIMES_BY_FREQUENCY[frequency]), TimingType.ABSOLUTE, None

    def _find_duplicate(self, patient_id: str, name: str) -> Optional[MedicationCommand]:
        target = normalize_name(name)
        for command in self.get_active(patient_id):
            if normalize_name(command.medication.name) == target:
                return command
        return None

    def create(
        self, request: CreateMedicationRequest, created_by: Optional[str] = None
    ) -> Tuple[MedicationCommand, List[str]]:
        command, warnings = self.build_command(request, created_by)

        def _create(txn: Transaction) -> None:
            txn.create(collections.COMMANDS, command.id, command.to_document())

        self.storage.run_transaction(_create)
        logger.info(f"✓ Medication command created: {command.id} ({command.medication.name})")
        for warning in warnings:
            logger.warning(f"Command {command.id}: {warning}")
        return command, warnings

    # ==================== Read ====================

    def get(self, command_id: str) -> Optional[MedicationCommand]:
        doc = self.storage.get(collections.COMMANDS, command_id)
        return MedicationCommand.from_document(doc) if doc else None

    def require(self, command_id: str) -> MedicationCommand:
        command = self.get(command_id)
        if command is None:
            raise NotFoundError("Medication command", command_id)
        return command

    def query(self, query: CommandQuery) -> List[MedicationCommand]:
        filters = []
        if query.patient_id:
            filters.append(("patientId", "==", query.patient_id))
        if query.status is not None:
            filters.append(("status.current", "==", query.status.value))
        if query.is_active is not None:
            filters.append(("status.isActive", "==", query.is_active))
        if query.is_prn is not None:
            filters.append(("status.isPRN", "==", query.is_prn))
        if query.frequency is not None:
            filters.append(("schedule.frequency", "==", query.frequency.value))

        docs = self.storage.query(
            collections.COMMANDS,
            filters,
            order_by=ORDER_FIELDS[query.order_by],
            descending=query.order_direction == "desc",
        )
        commands = [MedicationCommand.from_document(doc) for doc in docs]

        if query.name:
            needle = query.name.lower()
            commands = [
                c
                for c in commands
                if any(
                    needle in (value or "").lower()
                    for value in (c.medication.name, c.medication.generic_name, c.medication.brand_name)
                )
            ]
        if query.order_by == "name":
            commands.sort(
                key=lambda c: c.medication.name.lower(),
                reverse=query.order_direction == "desc",
            )
        if query.limit is not None:
            commands = commands[: query.limit]
        return commands

    def get_active(self, patient_id: Optional[str] = None) -> List[MedicationCommand]:
        return self.query(CommandQuery(patient_id=patient_id, is_active=True))

    def get_needing_reminders(self, patient_id: Optional[str] = None) -> List[MedicationCommand]:
        return [
            c
            for c in self.query(CommandQuery(patient_id=patient_id, is_active=True, is_prn=False))
            if c.reminders.enabled
        ]

    def get_stats(self, patient_id: str) -> Dict[str, Any]:
        commands = self.query(CommandQuery(patient_id=patient_id))
        by_status: Dict[str, int] = {}
        by_frequency: Dict[str, int] = {}
        for command in commands:
            by_status[command.status.current.value] = by_status.get(command.status.current.value, 0) + 1
            by_frequency[command.schedule.frequency.value] = (
                by_frequency.get(command.schedule.frequency.value, 0) + 1
            )
        return {
            "total": len(commands),
            "active": sum(1 for c in commands if c.status.is_active),
            "prn": sum(1 for c in commands if c.status.is_prn),
            "byStatus": by_status,
            "byFrequency": by_frequency,
        }

    # ==================== Update ====================

    def update(
        self, command_id: str, changes: Dict[str, Any], updated_by: str = "system"
    ) -> MedicationCommand:
        """Merge camelCase (dotted) changes, re-validate, bump version and checksum"""
        blocked = [key for key in changes if key.split(".")[0] in IMMUTABLE_FIELDS]
        if blocked:
            messages = []
            for key in blocked:
                if key.split(".")[0] == "status":
                    messages.append(f"{key}: status changes must use change_status")
                else:
                    messages.append(f"{key}: field cannot be changed")
            raise ValidationError(messages)

        def _update(txn: Transaction) -> MedicationCommand:
            doc = txn.get(collections.COMMANDS, command_id)
            if doc is None:
                raise NotFoundError("Medication command", command_id)
            merged = apply_update(doc, changes)
            try:
                command = MedicationCommand.from_document(merged)
            except PydanticValidationError as e:
                raise ValidationError(pydantic_messages(e)) from e

            errors = _schedule_errors(command.schedule)
            if not command.medication.name.strip():
                errors.append("Medication name is required")
            if errors:
                raise ValidationError(errors)

            command.schedule.times = [normalize_time(t) for t in command.schedule.times]
            command.status.is_prn = command.is_prn
            command.metadata.version += 1
            command.metadata.updated_at = self.clock()
            command.metadata.updated_by = updated_by
            command.metadata.checksum = compute_checksum(command)
            txn.set(collections.COMMANDS, command_id, command.to_document())
            return command

        command = self.storage.run_transaction(_update)
        logger.info(f"✓ Medication command updated: {command_id} (v{command.metadata.version})")
        return command

    def status_changes(
        self,
        command: MedicationCommand,
        new_status: MedicationStatus,
        reason: Optional[str],
        changed_by: str,
        paused_until: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Dotted-key update for a status transition, including audit fields"""
        new_status = MedicationStatus(new_status)
        if command.status.current == new_status:
            raise ConflictError(
                f"Medication {command.id} is already {new_status.value}",
                {"commandId": command.id, "status": new_status.value},
            )
        now = now or self.clock()
        changes: Dict[str, Any] = {
            "status.current": new_status.value,
            "status.isActive": new_status == MedicationStatus.ACTIVE,
            "status.isPRN": command.is_prn,
            "status.lastStatusChange": now.isoformat(),
            "status.statusChangedBy": changed_by,
        }
        if new_status == MedicationStatus.PAUSED:
            changes["status.pausedUntil"] = paused_until.isoformat() if paused_until else None
        elif new_status == MedicationStatus.HELD:
            changes["status.holdReason"] = reason
        elif new_status == MedicationStatus.DISCONTINUED:
            changes["status.discontinueReason"] = reason
            changes["status.discontinueDate"] = now.isoformat()
        elif new_status == MedicationStatus.ACTIVE:
            changes["status.pausedUntil"] = None
            changes["status.holdReason"] = None
            changes["status.discontinueReason"] = None
            changes["status.discontinueDate"] = None

        changes["metadata.version"] = command.metadata.version + 1
        changes["metadata.updatedAt"] = now.isoformat()
        changes["metadata.updatedBy"] = changed_by
        return changes

    def change_status(
        self,
        command_id: str,
        new_status: MedicationStatus,
        reason: Optional[str] = None,
        updated_by: str = "system",
        paused_until: Optional[datetime] = None,
    ) -> MedicationCommand:
        def _change(txn: Transaction) -> MedicationCommand:
            doc = txn.get(collections.COMMANDS, command_id)
            if doc is None:
                raise NotFoundError("Medication command", command_id)
            current = MedicationCommand.from_document(doc)
            changes = self.status_changes(current, new_status, reason, updated_by, paused_until)
            command = MedicationCommand.from_document(apply_update(doc, changes))
            command.metadata.checksum = compute_checksum(command)
            txn.set(collections.COMMANDS, command_id, command.to_document())
            return command

        command = self.storage.run_transaction(_change)
        logger.info(f"✓ Medication {command_id} status changed to {command.status.current.value}")
        return command

    def discontinue(
        self, command_id: str, reason: Optional[str] = None, updated_by: str = "system"
    ) -> MedicationCommand:
        return self.change_status(
            command_id, MedicationStatus.DISCONTINUED, reason=reason, updated_by=updated_by
        )

    def delete(self, command_id: str) -> bool:
        """Hard delete; returns whether the command existed"""

        def _delete(txn: Transaction) -> bool:
            if not txn.exists(collections.COMMANDS, command_id):
                return False
            txn.delete(collections.COMMANDS, command_id)
            return True

        deleted = self.storage.run_transaction(_delete)
        if deleted:
            logger.info(f"✓ Medication command deleted: {command_id}")
        return deleted

    # ==================== Helpers ====================

    def determine_time_slot(self, clock_time: str) -> str:
        return determine_time_slot(clock_time)

    def verify_checksum(self, command: MedicationCommand) -> bool:
        return command.metadata.checksum == compute_checksum(command)
