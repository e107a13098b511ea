"""
Configuration Dataclasses

Type-safe configuration structures for the energy controller.
Settings are loaded from a YAML file (see controller/main.py) or from a
plain dict handed over by the API process.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from .exceptions import ConfigurationError


class ConflictPolicy(str, Enum):
    """How overlapping schedules on one zone are resolved"""
    EXCLUSIVE = "exclusive"  # any overlap: lower rank is superseded
    STACK = "stack"          # stack up to capacity, supersede only the excess


@dataclass
class ControlLoopSettings:
    """Per-facility control loop configuration"""
    poll_interval_s: float = 30.0
    safety_grace_s: float = 300.0       # ACTIVE: unsafe longer than this -> cancel
    activation_grace_s: float = 600.0   # PENDING: unsafe past start + this -> cancel
    persistence_timeout_s: float = 5.0
    conflict_policy: ConflictPolicy = ConflictPolicy.EXCLUSIVE
    optimizer_enabled: bool = True
    optimizer_horizon_hours: float = 24.0
    optimizer_shed_fraction: float = 0.2


@dataclass
class ActuationSettings:
    """Device gateway and acknowledgement tracking"""
    gateway_url: str = "http://127.0.0.1:8090"
    request_timeout_s: float = 5.0
    ack_timeout_s: float = 60.0
    max_attempts: int = 3


@dataclass
class RetrySettings:
    """Bounded retry policy for persistence writes"""
    max_attempts: int = 3
    backoff_base_s: float = 1.0
    backoff_multiplier: float = 2.0
    backoff_max_s: float = 8.0


@dataclass
class SafetyModelSettings:
    """Drift and recovery rates of the zone environmental model"""
    hvac_temp_drift_c_per_hour: float = 4.0
    hvac_humidity_drift_pct_per_hour: float = 10.0
    light_dli_per_hour: float = 2.0
    light_temp_drop_c_per_hour: float = 1.5
    temp_recovery_c_per_hour: float = 6.0
    humidity_recovery_pct_per_hour: float = 15.0
    dli_recovery_per_hour: float = 2.0
    sensor_max_age_s: float = 900.0


@dataclass
class BaselineSettings:
    """Comparable-day baseline configuration"""
    interval_minutes: int = 15
    lookback_weeks: int = 4
    min_comparable_days: int = 3
    fallback_days: int = 7


@dataclass
class RateSettings:
    """Conservative defaults for advisory (non-billing) rate lookups"""
    fallback_energy_rate: float = 0.30
    fallback_demand_charge: float = 15.0


@dataclass
class VerificationSettings:
    """Savings verification configuration"""
    default_emissions_factor_kg_per_kwh: float = 0.4
    emissions_factors: dict[str, float] = field(default_factory=dict)

    def emissions_factor(self, region: str) -> float:
        return self.emissions_factors.get(region, self.default_emissions_factor_kg_per_kwh)


@dataclass
class DedupSettings:
    """Demand-response event de-duplication window"""
    ttl_s: float = 86400.0
    max_entries: int = 10000


@dataclass
class ControllerSettings:
    """Complete controller configuration"""
    facility_ids: list[str] = field(default_factory=list)
    health_port: int = 8084
    log_level: str = "INFO"
    control: ControlLoopSettings = field(default_factory=ControlLoopSettings)
    actuation: ActuationSettings = field(default_factory=ActuationSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    safety: SafetyModelSettings = field(default_factory=SafetyModelSettings)
    baseline: BaselineSettings = field(default_factory=BaselineSettings)
    rates: RateSettings = field(default_factory=RateSettings)
    verification: VerificationSettings = field(default_factory=VerificationSettings)
    dedup: DedupSettings = field(default_factory=DedupSettings)


def _section(data: dict, cls: type, name: str) -> Any:
    """Build a settings dataclass from a dict section, rejecting unknown keys"""
    values = data.get(name) or {}
    if not isinstance(values, dict):
        raise ConfigurationError(f"section '{name}' must be a mapping", subject=name)

    known = set(cls.__dataclass_fields__)
    unknown = sorted(set(values) - known)
    if unknown:
        raise ConfigurationError(
            f"unknown keys in '{name}': {', '.join(unknown)}", subject=name
        )
    return cls(**values)


def load_controller_settings(data: dict | None) -> ControllerSettings:
    """Load ControllerSettings from a dictionary (e.g., parsed YAML)"""
    data = data or {}

    control = _section(data, ControlLoopSettings, "control")
    try:
        control.conflict_policy = ConflictPolicy(control.conflict_policy)
    except ValueError:
        raise ConfigurationError(
            f"unknown conflict_policy '{control.conflict_policy}'",
            subject="control",
        ) from None

    settings = ControllerSettings(
        facility_ids=list(data.get("facility_ids", [])),
        health_port=int(data.get("health_port", 8084)),
        log_level=data.get("log_level", "INFO"),
        control=control,
        actuation=_section(data, ActuationSettings, "actuation"),
        retry=_section(data, RetrySettings, "retry"),
        safety=_section(data, SafetyModelSettings, "safety"),
        baseline=_section(data, BaselineSettings, "baseline"),
        rates=_section(data, RateSettings, "rates"),
        verification=_section(data, VerificationSettings, "verification"),
        dedup=_section(data, DedupSettings, "dedup"),
    )

    if settings.control.poll_interval_s <= 0:
        raise ConfigurationError("poll_interval_s must be positive", subject="control")
    if settings.baseline.interval_minutes <= 0:
        raise ConfigurationError("interval_minutes must be positive", subject="baseline")
    if settings.actuation.max_attempts < 1 or settings.retry.max_attempts < 1:
        raise ConfigurationError("max_attempts must be at least 1")

    return settings


def load_controller_settings_file(path: str | Path) -> ControllerSettings:
    """Load ControllerSettings from a YAML file"""
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"config file not found: {path}", subject=str(path))

    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    return load_controller_settings(data)
