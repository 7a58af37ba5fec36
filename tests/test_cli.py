"""Tests for CLI commands."""
import json

import pytest
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from click.testing import CliRunner
from main import cli

FLEET_YAML = """
groups:
  - id: g1
    name: Test Store
    account_id: acct-1
    agents: [a1]
    rules:
      - {id: cpu-high, name: CPU high, metric: cpu, operator: '>=', threshold: 90, window_seconds: 30}
      - {id: net-down, name: Net down, metric: network, operator: '==', threshold: disconnected,
         severity: critical, window_seconds: 1}
"""


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def workdir(tmp_path):
    config = tmp_path / "config.yaml"
    config.write_text(f"database:\n  path: {tmp_path / 'fleet.db'}\n")
    fleet = tmp_path / "fleet.yaml"
    fleet.write_text(FLEET_YAML)
    return tmp_path


def _invoke(runner, workdir, *args):
    return runner.invoke(cli, ["--config", str(workdir / "config.yaml"), *args])


def _events(workdir, events):
    path = workdir / "events.jsonl"
    path.write_text("\n".join(json.dumps(e) for e in events) + "\n")
    return path


def _cpu_event(t, value, agent_id="a1"):
    return {"agent_id": agent_id, "type": "telemetry", "payload": {"cpu": {"usagePercent": value}}, "timestamp": t}


def test_cli_help(runner):
    result = runner.invoke(cli, ["--help"])
    assert result.exit_code == 0
    assert "fleetwatch" in result.output


def test_cli_version(runner):
    result = runner.invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert "1.0.0" in result.output


def test_alerts_help(runner):
    result = runner.invoke(cli, ["alerts", "--help"])
    assert result.exit_code == 0
    assert "history" in result.output
    assert "deliveries" in result.output
    assert "test" in result.output


def test_config_help(runner):
    result = runner.invoke(cli, ["config", "--help"])
    assert result.exit_code == 0
    assert "load" in result.output
    assert "show" in result.output


def test_init_creates_database(runner, workdir):
    result = _invoke(runner, workdir, "init")
    assert result.exit_code == 0
    assert (workdir / "fleet.db").exists()


def test_config_load_and_show(runner, workdir):
    result = _invoke(runner, workdir, "config", "load", str(workdir / "fleet.yaml"))
    assert result.exit_code == 0
    assert "1 group(s)" in result.output
    assert "2 rule(s)" in result.output

    result = _invoke(runner, workdir, "config", "show", "g1")
    assert result.exit_code == 0
    assert "cpu-high" in result.output
    assert "Agents: a1" in result.output


def test_config_show_unknown_group(runner, workdir):
    result = _invoke(runner, workdir, "config", "show", "nope")
    assert result.exit_code == 1


def test_ingest_records_occurrence(runner, workdir):
    _invoke(runner, workdir, "config", "load", str(workdir / "fleet.yaml"))
    events = _events(workdir, [_cpu_event(1000, 95), _cpu_event(1035, 96)])
    result = _invoke(runner, workdir, "ingest", str(events), "--drain-timeout", "1")
    assert result.exit_code == 0, result.output
    assert "Occurrences recorded: 1" in result.output

    result = _invoke(runner, workdir, "alerts", "history", "g1")
    assert result.exit_code == 0
    assert "a1" in result.output


def test_ingest_sweeps_after_replay(runner, workdir):
    _invoke(runner, workdir, "config", "load", str(workdir / "fleet.yaml"))
    events = _events(workdir, [
        {"agent_id": "a1", "type": "status", "payload": {"network": "disconnected"}, "timestamp": 1000},
    ])
    result = _invoke(runner, workdir, "ingest", str(events), "--sweep-at", "1010", "--drain-timeout", "1")
    assert result.exit_code == 0, result.output
    assert "Occurrences recorded: 1" in result.output


def test_ingest_skips_unreadable_lines(runner, workdir):
    _invoke(runner, workdir, "config", "load", str(workdir / "fleet.yaml"))
    path = workdir / "events.jsonl"
    path.write_text('not json\n{"type": "telemetry"}\n' + json.dumps(_cpu_event(1000, 10)) + "\n")
    result = _invoke(runner, workdir, "ingest", str(path), "--drain-timeout", "1")
    assert result.exit_code == 0, result.output
    assert "2 unreadable line(s)" in result.output


def test_alerts_history_empty(runner, workdir):
    result = _invoke(runner, workdir, "alerts", "history", "g1")
    assert result.exit_code == 0
    assert "No alerts" in result.output


def test_alerts_deliveries_empty(runner, workdir):
    result = _invoke(runner, workdir, "alerts", "deliveries", "missing")
    assert result.exit_code == 0
    assert "No deliveries" in result.output


def test_alerts_test_previews_rules(runner, workdir):
    _invoke(runner, workdir, "config", "load", str(workdir / "fleet.yaml"))
    events = _events(workdir, [_cpu_event(1000, 95), _cpu_event(1040, 97)])
    result = _invoke(runner, workdir, "alerts", "test", "a1", "--events", str(events))
    assert result.exit_code == 0, result.output
    assert "YES" in result.output

    result = _invoke(runner, workdir, "alerts", "history", "g1")
    assert "No alerts" in result.output


def test_alerts_test_unknown_agent(runner, workdir):
    result = _invoke(runner, workdir, "alerts", "test", "ghost")
    assert result.exit_code == 0
    assert "not in any group" in result.output


def test_email_test_not_configured(runner, workdir):
    result = _invoke(runner, workdir, "email", "test", "ops@test.com")
    assert result.exit_code == 0
    assert "not configured" in result.output
