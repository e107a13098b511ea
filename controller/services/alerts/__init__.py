"""
Alerts - user-visible alarms from the control loop
"""

from .sink import AlertSink, AlertType, LoggingAlertSink, Severity, StoreAlertSink

__all__ = ["AlertSink", "AlertType", "LoggingAlertSink", "Severity", "StoreAlertSink"]
