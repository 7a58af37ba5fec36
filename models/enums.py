"""Enums for metrics, operators, severity, channels and delivery outcomes."""
from enum import Enum


class Metric(str, Enum):
    CPU = "cpu"
    MEMORY = "memory"
    DISK = "disk"
    PROCESS = "process"
    NETWORK = "network"
    USB = "usb"


class Operator(str, Enum):
    GTE = ">="
    GT = ">"
    LTE = "<="
    LT = "<"
    EQ = "=="
    NE = "!="


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class EventType(str, Enum):
    TELEMETRY = "telemetry"
    STATUS = "status"
    SCAN = "scan"
    ANOMALY = "anomaly"


class ChannelType(str, Enum):
    EMAIL = "email"
    WEBHOOK = "webhook"


class DeliveryOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
