"""Dataclasses for normalized agent metric samples."""
from dataclasses import dataclass, field
from typing import Union

from models.enums import Metric


@dataclass(frozen=True)
class MetricSample:
    """One observation of one metric for one agent. Numeric metrics carry
    floats, status-like metrics (network, usb, process) carry strings."""
    agent_id: str
    metric: Metric
    value: Union[float, str]
    observed_at: float
    details: dict = field(default_factory=dict, compare=False, hash=False)

    def to_dict(self):
        return {
            "agent_id": self.agent_id,
            "metric": self.metric.value,
            "value": self.value,
            "observed_at": self.observed_at,
            "details": dict(self.details),
        }
