"""
Custom Exception Classes for the Canopy Energy Controller

Hierarchical exception structure shared by the control loop, the
verification engine and the HTTP API.

Synchronous errors (configuration, capacity, state) are raised to the
caller. SafetyViolation and ActuationFailed describe asynchronous
outcomes: the control loop turns them into alerts and schedule flags
instead of letting them escape.
"""


class CanopyError(Exception):
    """Base exception for all Canopy controller errors"""

    def __init__(self, message: str, recoverable: bool = True):
        self.message = message
        self.recoverable = recoverable
        super().__init__(message)


class ConfigurationError(CanopyError):
    """Missing or invalid rate schedule, safety envelope or zone config"""

    def __init__(self, message: str, subject: str | None = None):
        self.subject = subject
        super().__init__(f"Configuration Error: {message}", recoverable=False)


class CapacityExceededError(CanopyError):
    """Requested shed does not fit in the zone's controllable capacity"""

    def __init__(
        self,
        zone_id: str,
        requested_kw: float,
        capacity_kw: float,
        committed_kw: float = 0.0,
    ):
        self.zone_id = zone_id
        self.requested_kw = requested_kw
        self.capacity_kw = capacity_kw
        self.committed_kw = committed_kw
        available = max(0.0, capacity_kw - committed_kw)
        super().__init__(
            f"Requested {requested_kw:.1f}kW on zone {zone_id} exceeds available "
            f"capacity {available:.1f}kW (capacity {capacity_kw:.1f}kW, "
            f"committed {committed_kw:.1f}kW). Resubmit a smaller request.",
            recoverable=True,
        )


class SafetyViolation(CanopyError):
    """A running or starting action would push a zone outside its envelope"""

    def __init__(
        self,
        zone_id: str,
        dimension: str,
        reason: str,
        recovery_minutes: float = 0.0,
    ):
        self.zone_id = zone_id
        self.dimension = dimension
        self.reason = reason
        self.recovery_minutes = recovery_minutes
        super().__init__(
            f"Safety violation on zone {zone_id} ({dimension}): {reason}; "
            f"recovery {recovery_minutes:.0f} min",
            recoverable=True,
        )


class ActuationFailed(CanopyError):
    """Device did not acknowledge a command after all retries"""

    def __init__(self, zone_id: str, command_id: str, attempts: int):
        self.zone_id = zone_id
        self.command_id = command_id
        self.attempts = attempts
        super().__init__(
            f"Actuation failed on zone {zone_id}: command {command_id} "
            f"not acknowledged after {attempts} attempts",
            recoverable=True,
        )


class ScheduleStateError(CanopyError):
    """Operation not permitted in the schedule's current state"""

    def __init__(self, schedule_id: str, message: str):
        self.schedule_id = schedule_id
        super().__init__(f"Schedule {schedule_id}: {message}", recoverable=False)


class NotFoundError(CanopyError):
    """Referenced facility, zone or schedule does not exist"""

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}", recoverable=False)


class PersistenceTimeout(CanopyError):
    """Persistence layer did not answer within the configured bound"""

    def __init__(self, operation: str, timeout_s: float):
        self.operation = operation
        self.timeout_s = timeout_s
        super().__init__(
            f"Persistence timeout: {operation} exceeded {timeout_s:.1f}s",
            recoverable=True,
        )
