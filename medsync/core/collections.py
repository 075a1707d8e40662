"""
Document collection names
"""

COMMANDS = "medication_commands"
EVENTS = "medication_events"
TIME_PREFERENCES = "patient_time_preferences"
DAILY_SUMMARIES = "medication_daily_summaries"
TRANSACTION_LOG = "medication_transaction_log"
ROLLBACK_LOG = "medication_rollback_log"
NOTIFICATION_DELIVERY_LOG = "notification_delivery_log"
FAMILY_ACCESS = "family_access"
PATIENTS = "patients"
MILESTONES = "adherence_milestones"

ALL_COLLECTIONS = [
    COMMANDS,
    EVENTS,
    TIME_PREFERENCES,
    DAILY_SUMMARIES,
    TRANSACTION_LOG,
    ROLLBACK_LOG,
    NOTIFICATION_DELIVERY_LOG,
    FAMILY_ACCESS,
    PATIENTS,
    MILESTONES,
]
