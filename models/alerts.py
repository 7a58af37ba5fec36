"""Dataclasses for rules, rule state, alert occurrences, channels and deliveries."""
import json
from dataclasses import dataclass, field
from typing import Optional

from models.enums import ChannelType, DeliveryOutcome, Metric, Operator, Severity


@dataclass
class Rule:
    id: str = ""
    group_id: str = ""
    name: str = ""
    metric: Metric = Metric.CPU
    operator: Operator = Operator.GTE
    threshold: str = "0"
    severity: Severity = Severity.WARNING
    window_seconds: int = 60
    enabled: bool = True
    webhook_url: Optional[str] = None
    account_id: str = ""

    @classmethod
    def from_row(cls, row):
        return cls(
            id=row["id"],
            group_id=row["group_id"],
            name=row["name"],
            metric=Metric(row["metric"]),
            operator=Operator(row["operator"]),
            threshold=str(row["threshold"]),
            severity=Severity(row["severity"]),
            window_seconds=max(1, int(row["window_seconds"])),
            enabled=bool(row["enabled"]),
            webhook_url=row["webhook_url"] or None,
            account_id=row["account_id"] or "",
        )

    def describe(self):
        return f"{self.metric.value} {self.operator.value} {self.threshold} for {self.window_seconds}s"


@dataclass
class RuleState:
    agent_id: str
    rule_id: str
    is_firing: bool = False
    firing_since: Optional[float] = None
    last_sample_at: Optional[float] = None
    occurrence_id: Optional[str] = None

    @classmethod
    def from_row(cls, row):
        return cls(
            agent_id=row["agent_id"],
            rule_id=row["rule_id"],
            is_firing=bool(row["is_firing"]),
            firing_since=row["firing_since"],
            last_sample_at=row["last_sample_at"],
            occurrence_id=row["occurrence_id"],
        )


@dataclass(frozen=True)
class AlertOccurrence:
    id: str
    account_id: str
    group_id: str
    agent_id: str
    rule_id: str
    severity: Severity
    metric: Metric
    message: str
    anomaly_type: str
    anomaly_data: dict = field(default_factory=dict, compare=False, hash=False)
    created_at: float = 0.0

    @classmethod
    def from_row(cls, row):
        return cls(
            id=row["id"],
            account_id=row["account_id"],
            group_id=row["group_id"],
            agent_id=row["agent_id"],
            rule_id=row["rule_id"],
            severity=Severity(row["severity"]),
            metric=Metric(row["metric"]),
            message=row["message"],
            anomaly_type=row["anomaly_type"],
            anomaly_data=json.loads(row["anomaly_data"] or "{}"),
            created_at=row["created_at"],
        )

    def to_dict(self):
        return {
            "id": self.id,
            "account_id": self.account_id,
            "group_id": self.group_id,
            "agent_id": self.agent_id,
            "rule_id": self.rule_id,
            "severity": self.severity.value,
            "metric": self.metric.value,
            "message": self.message,
            "anomaly_type": self.anomaly_type,
            "anomaly_data": dict(self.anomaly_data),
            "created_at": self.created_at,
        }


@dataclass
class AlertChannel:
    id: str = ""
    group_id: str = ""
    type: ChannelType = ChannelType.EMAIL
    target: str = ""
    webhook_method: Optional[str] = None
    webhook_headers: Optional[str] = None  # JSON object string, parsed at delivery time
    webhook_body: Optional[str] = None
    enabled: bool = True

    @classmethod
    def from_row(cls, row):
        return cls(
            id=row["id"],
            group_id=row["group_id"],
            type=ChannelType(row["type"]),
            target=row["target"],
            webhook_method=row["webhook_method"],
            webhook_headers=row["webhook_headers"],
            webhook_body=row["webhook_body"],
            enabled=bool(row["enabled"]),
        )


@dataclass(frozen=True)
class DeliveryAttempt:
    occurrence_id: str
    channel_id: str
    attempt_number: int
    outcome: DeliveryOutcome
    response_code: Optional[int] = None
    attempted_at: float = 0.0
    error: Optional[str] = None

    @property
    def succeeded(self):
        return self.outcome == DeliveryOutcome.SUCCESS
