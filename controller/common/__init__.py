"""
Common Utilities

Shared modules used across all controller services:
- models.py - Domain records (facility, zone, tariff, schedule, report)
- config.py - Settings dataclasses and YAML loading
- exceptions.py - Error taxonomy
- logging_setup.py - Structured logging setup
- retry.py - Bounded retry policy
- dedup.py - Event de-duplication cache
- scheduler.py - Fixed-interval loops
- timestamp.py - UTC and interval helpers
"""

from .models import (
    ActionKind,
    ScheduleStatus,
    ShedReason,
    CancelReason,
    ActuationState,
    AckStatus,
    Facility,
    Zone,
    RateWindow,
    RateSchedule,
    SafetyEnvelope,
    SensorSnapshot,
    EnergyReading,
    NonRoutineEvent,
    LoadSheddingSchedule,
    DemandResponseEvent,
    SavingsReport,
    AuditEntry,
    Alert,
    TERMINAL_STATUSES,
)
from .config import (
    ControllerSettings,
    ControlLoopSettings,
    ActuationSettings,
    RetrySettings,
    SafetyModelSettings,
    BaselineSettings,
    RateSettings,
    VerificationSettings,
    DedupSettings,
    ConflictPolicy,
    load_controller_settings,
    load_controller_settings_file,
)
from .exceptions import (
    CanopyError,
    ConfigurationError,
    CapacityExceededError,
    SafetyViolation,
    ActuationFailed,
    ScheduleStateError,
    NotFoundError,
    PersistenceTimeout,
)
from .logging_setup import (
    setup_logging,
    get_service_logger,
    log_transition,
    log_control_tick,
    log_alarm,
)
from .retry import RetryPolicy
from .dedup import DedupCache, TTLDedupCache

__all__ = [
    # Models
    "ActionKind",
    "ScheduleStatus",
    "ShedReason",
    "CancelReason",
    "ActuationState",
    "AckStatus",
    "Facility",
    "Zone",
    "RateWindow",
    "RateSchedule",
    "SafetyEnvelope",
    "SensorSnapshot",
    "EnergyReading",
    "NonRoutineEvent",
    "LoadSheddingSchedule",
    "DemandResponseEvent",
    "SavingsReport",
    "AuditEntry",
    "Alert",
    "TERMINAL_STATUSES",
    # Config
    "ControllerSettings",
    "ControlLoopSettings",
    "ActuationSettings",
    "RetrySettings",
    "SafetyModelSettings",
    "BaselineSettings",
    "RateSettings",
    "VerificationSettings",
    "DedupSettings",
    "ConflictPolicy",
    "load_controller_settings",
    "load_controller_settings_file",
    # Exceptions
    "CanopyError",
    "ConfigurationError",
    "CapacityExceededError",
    "SafetyViolation",
    "ActuationFailed",
    "ScheduleStateError",
    "NotFoundError",
    "PersistenceTimeout",
    # Logging
    "setup_logging",
    "get_service_logger",
    "log_transition",
    "log_control_tick",
    "log_alarm",
    # Helpers
    "RetryPolicy",
    "DedupCache",
    "TTLDedupCache",
]
