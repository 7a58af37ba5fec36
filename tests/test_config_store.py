"""Tests for cached config access and YAML fixtures."""
from pathlib import Path

import pytest

from alerts.config_store import ConfigStore
from conftest import make_rule, make_webhook
from models.enums import ChannelType, Metric, Operator

EXAMPLE_FLEET = Path(__file__).parent.parent / "config" / "fleet_example.yaml"


@pytest.fixture
def store(fleet_db, clock):
    return ConfigStore(fleet_db, ttl=30, clock=clock)


def test_lookups(store):
    assert store.get_agent_group("a1") == "g1"
    assert store.get_account_id("g1") == "acct-1"
    assert {r.id for r in store.get_enabled_rules("g1")} == {"cpu-high", "net-down", "disk-full"}
    assert [c.id for c in store.get_channels_for_group("g1")] == ["hook-1"]
    assert store.is_rule_active("g1", "cpu-high")
    assert not store.is_rule_active("g1", "nope")


def test_unknown_agent_is_cached_as_none(store, fleet_db):
    assert store.get_agent_group("new") is None
    fleet_db.upsert_agent("new", "g1")
    assert store.get_agent_group("new") is None
    store.invalidate_agent("new")
    assert store.get_agent_group("new") == "g1"


def test_reads_are_cached_until_ttl(store, fleet_db, clock):
    store.get_rules_for_group("g1")
    fleet_db.upsert_rule(make_rule("cpu-high", enabled=False))
    assert store.is_rule_active("g1", "cpu-high")

    clock.advance(31)
    assert not store.is_rule_active("g1", "cpu-high")


def test_invalidate_bumps_generation(store, fleet_db):
    store.get_rules_for_group("g1")
    fleet_db.delete_rule("net-down")
    assert store.generation("g1") == 0
    store.invalidate("g1")
    assert store.generation("g1") == 1
    assert "net-down" not in {r.id for r in store.get_rules_for_group("g1")}


def test_disabled_channels_are_hidden(store, fleet_db):
    fleet_db.upsert_channel(make_webhook("hook-2", enabled=False))
    store.invalidate("g1")
    assert [c.id for c in store.get_channels_for_group("g1")] == ["hook-1"]


def test_blank_rule_account_is_filled_from_group(store, fleet_db):
    fleet_db.upsert_rule(make_rule("mem-high", Metric.MEMORY))
    store.invalidate("g1")
    rule = next(r for r in store.get_rules_for_group("g1") if r.id == "mem-high")
    assert rule.account_id == "acct-1"


def test_misconfigured_rule_is_kept_with_warning(store, fleet_db, caplog):
    fleet_db.upsert_rule(make_rule("bad", Metric.NETWORK, Operator.GT, "up"))
    store.invalidate("g1")
    with caplog.at_level("WARNING", logger="fleetwatch"):
        rules = store.get_rules_for_group("g1")
    assert "bad" in {r.id for r in rules}
    assert any("configuration error" in r.message for r in caplog.records)


# ── Fixtures ────────────────────────────────────────────

def test_load_example_fleet(temp_db):
    store = ConfigStore(temp_db)
    counts = store.load_fixture(EXAMPLE_FLEET)
    assert counts == {"groups": 1, "agents": 2, "rules": 4, "channels": 2}
    assert store.get_agent_group("pos-01") == "store-001"
    channels = {c.id: c for c in store.get_channels_for_group("store-001")}
    assert channels["ops-hook"].type == ChannelType.WEBHOOK
    assert "{{value}}" in channels["ops-hook"].webhook_body


def test_fixture_skips_invalid_entries(temp_db, tmp_path):
    path = tmp_path / "fleet.yaml"
    path.write_text(
        "groups:\n"
        "  - id: g9\n"
        "    account_id: acct-9\n"
        "    agents: [x1, {id: x2, display_name: Till 2}]\n"
        "    rules:\n"
        "      - {id: ok, metric: cpu, operator: '>=', threshold: 80, window_seconds: 10}\n"
        "      - {id: bad-metric, metric: gpu, operator: '>=', threshold: 80}\n"
        "      - {id: bad-window, metric: cpu, operator: '>=', threshold: 80, window_seconds: 0}\n"
        "    channels:\n"
        "      - {id: hook, type: webhook, target: 'https://x.test', webhook_headers: {X-Key: abc}}\n"
        "      - {id: pager, type: pager, target: '123'}\n"
    )
    store = ConfigStore(temp_db)
    counts = store.load_fixture(path)
    assert counts == {"groups": 1, "agents": 2, "rules": 1, "channels": 1}
    rule = store.get_rules_for_group("g9")[0]
    assert rule.threshold == "80" and rule.account_id == "acct-9"
    assert store.get_channels_for_group("g9")[0].webhook_headers == '{"X-Key": "abc"}'
