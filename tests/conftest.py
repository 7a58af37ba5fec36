"""Shared test fixtures."""
import os
import sys
import pytest
import tempfile
from unittest.mock import MagicMock

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from models.database import Database
from models.alerts import AlertChannel, AlertOccurrence, Rule
from models.enums import ChannelType, Metric, Operator, Severity


class FakeClock:
    """Callable clock that only moves when told to."""
    def __init__(self, start=0.0):
        self.now = float(start)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds
        return self.now


def make_rule(id="cpu-high", metric=Metric.CPU, operator=Operator.GTE, threshold="90",
              window_seconds=30, severity=Severity.WARNING, group_id="g1", **kwargs):
    name = kwargs.pop("name", id)
    return Rule(id=id, group_id=group_id, name=name, metric=metric,
                operator=operator, threshold=str(threshold), severity=severity,
                window_seconds=window_seconds, **kwargs)


def make_occurrence(id="occ-1", agent_id="a1", rule_id="cpu-high", group_id="g1", created_at=100.0, **data):
    anomaly_data = {"value": 95.0, "threshold": "90", "operator": ">=", "window_seconds": 30,
                    "rule_name": "CPU high", "observed_at": created_at}
    anomaly_data.update(data)
    return AlertOccurrence(
        id=id, account_id="acct-1", group_id=group_id, agent_id=agent_id, rule_id=rule_id,
        severity=Severity.CRITICAL, metric=Metric.CPU, message="cpu >= 90 for 30s",
        anomaly_type="threshold_cpu", anomaly_data=anomaly_data, created_at=created_at,
    )


def make_webhook(id="hook-1", target="https://hooks.test/alert", group_id="g1", **kwargs):
    kwargs.setdefault("webhook_method", "POST")
    return AlertChannel(id=id, group_id=group_id, type=ChannelType.WEBHOOK, target=target, **kwargs)


def make_email(id="mail-1", target="ops@test.com", group_id="g1"):
    return AlertChannel(id=id, group_id=group_id, type=ChannelType.EMAIL, target=target)


@pytest.fixture
def temp_db():
    """Create a temporary database for testing."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name
    db = Database(db_path)
    db.connect()
    yield db
    db.close()
    for suffix in ("", "-wal", "-shm"):
        if os.path.exists(db_path + suffix):
            os.unlink(db_path + suffix)


@pytest.fixture
def clock():
    return FakeClock(1_000.0)


@pytest.fixture
def fleet_db(temp_db):
    """Group g1 with agents a1/a2, three rules and one webhook channel."""
    temp_db.upsert_group("g1", "Store 1", account_id="acct-1")
    temp_db.upsert_agent("a1", "g1", "acct-1")
    temp_db.upsert_agent("a2", "g1", "acct-1")
    temp_db.upsert_rule(make_rule("cpu-high", account_id="acct-1"))
    temp_db.upsert_rule(make_rule("net-down", Metric.NETWORK, Operator.EQ, "disconnected",
                                  window_seconds=1, severity=Severity.CRITICAL, account_id="acct-1"))
    temp_db.upsert_rule(make_rule("disk-full", Metric.DISK, Operator.GTE, "95", window_seconds=60,
                                  severity=Severity.CRITICAL, account_id="acct-1"))
    temp_db.upsert_channel(make_webhook(), account_id="acct-1")
    return temp_db


@pytest.fixture
def webhook_client():
    client = MagicMock()
    client.send.return_value = 200
    return client


@pytest.fixture
def engine_config():
    return {
        "engine": {"window_mode": "debounce", "cache_ttl_seconds": 30, "state_grace_seconds": 600},
        "sweep": {"interval_seconds": 10, "max_agents_per_tick": 100, "staleness_factor": 5},
        "dispatch": {"workers": 1, "queue_size": 100, "max_attempts": 5,
                     "base_delay_seconds": 5, "max_delay_seconds": 300},
    }


@pytest.fixture
def engine(fleet_db, engine_config, webhook_client, clock):
    from alerts.engine import AlertEngine
    return AlertEngine(fleet_db, engine_config, email_sender=MagicMock(),
                       webhook_client=webhook_client, clock=clock)


def telemetry(cpu=None, memory=None, disk=None):
    payload = {}
    if cpu is not None:
        payload["cpu"] = {"usagePercent": cpu}
    if memory is not None:
        payload["memory"] = {"usagePercent": memory}
    if disk is not None:
        payload["disk"] = {"usagePercent": disk}
    return payload
