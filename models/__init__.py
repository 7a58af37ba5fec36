"""Data models."""
from models.enums import Metric, Operator, Severity, EventType, ChannelType, DeliveryOutcome, DeliveryStatus
from models.metrics import MetricSample
from models.alerts import Rule, RuleState, AlertOccurrence, AlertChannel, DeliveryAttempt
