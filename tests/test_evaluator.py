"""Tests for the rule evaluator state machine, occurrence recording and sweeps."""
import threading
from unittest.mock import MagicMock

import pytest

from alerts.config_store import ConfigStore
from alerts.evaluator import RuleEvaluator
from alerts.recorder import AlertRecorder
from alerts.window import WindowAggregator
from conftest import make_rule
from models.database import StoreUnavailableError
from models.enums import Metric
from models.metrics import MetricSample


def _build(db, **kwargs):
    config = ConfigStore(db, ttl=30)
    aggregator = WindowAggregator()
    recorder = AlertRecorder(db)
    evaluator = RuleEvaluator(config, aggregator, recorder, db, **kwargs)
    return evaluator


def _feed(evaluator, agent_id, metric, points):
    for t, value in points:
        evaluator.aggregator.add_sample(MetricSample(agent_id, metric, value, float(t)), "g1")


@pytest.fixture
def evaluator(fleet_db):
    return _build(fleet_db, state_grace_seconds=600)


# ── OK -> FIRING -> OK ──────────────────────────────────

class TestTransitions:
    def test_fires_once_window_is_covered(self, evaluator, fleet_db):
        _feed(evaluator, "a1", Metric.CPU, [(0, 92)])
        assert evaluator.evaluate_agent("a1", 0.0) == []
        assert evaluator.get_state("a1", "cpu-high").is_firing is False

        _feed(evaluator, "a1", Metric.CPU, [(35, 92)])
        transitions = evaluator.evaluate_agent("a1", 35.0)
        assert len(transitions) == 1
        t = transitions[0]
        assert t.firing is True and t.rule_id == "cpu-high" and t.group_id == "g1"
        assert t.occurrence.anomaly_data["value"] == 92
        assert t.occurrence.anomaly_data["run_start"] == 0.0
        assert t.occurrence.account_id == "acct-1"

        state = fleet_db.get_rule_state("a1", "cpu-high")
        assert state.is_firing and state.occurrence_id == t.occurrence.id
        assert fleet_db.count_occurrences(agent_id="a1", rule_id="cpu-high") == 1

    def test_no_repeat_occurrence_while_firing(self, evaluator, fleet_db):
        _feed(evaluator, "a1", Metric.CPU, [(0, 95), (40, 95)])
        assert len(evaluator.evaluate_agent("a1", 40.0)) == 1
        _feed(evaluator, "a1", Metric.CPU, [(50, 99), (60, 97)])
        assert evaluator.evaluate_agent("a1", 60.0) == []
        assert fleet_db.count_occurrences(rule_id="cpu-high") == 1

    def test_contradicting_sample_resolves(self, evaluator, fleet_db):
        _feed(evaluator, "a1", Metric.CPU, [(0, 95), (40, 95)])
        evaluator.evaluate_agent("a1", 40.0)
        _feed(evaluator, "a1", Metric.CPU, [(50, 20)])
        transitions = evaluator.evaluate_agent("a1", 50.0)
        assert [(t.rule_id, t.firing) for t in transitions] == [("cpu-high", False)]
        stored = fleet_db.get_rule_state("a1", "cpu-high")
        assert stored.is_firing is False and stored.occurrence_id is None
        assert evaluator.resolved == 1

    def test_refires_with_new_occurrence_after_resolution(self, evaluator, fleet_db):
        _feed(evaluator, "a1", Metric.CPU, [(0, 95), (40, 95)])
        first = evaluator.evaluate_agent("a1", 40.0)[0].occurrence
        _feed(evaluator, "a1", Metric.CPU, [(50, 20)])
        evaluator.evaluate_agent("a1", 50.0)
        _feed(evaluator, "a1", Metric.CPU, [(60, 95), (100, 95)])
        second = evaluator.evaluate_agent("a1", 100.0)[0].occurrence
        assert first.id != second.id
        assert fleet_db.count_occurrences(rule_id="cpu-high") == 2

    def test_missing_samples_never_resolve(self, evaluator):
        _feed(evaluator, "a1", Metric.CPU, [(0, 95), (40, 95)])
        evaluator.evaluate_agent("a1", 40.0)
        assert evaluator.evaluate_agent("a1", 10_000.0) == []
        assert evaluator.is_firing("a1", "cpu-high")

    def test_firing_survives_restart_with_empty_buffers(self, evaluator, fleet_db):
        _feed(evaluator, "a1", Metric.CPU, [(0, 95), (40, 95)])
        evaluator.evaluate_agent("a1", 40.0)

        restarted = _build(fleet_db)
        assert restarted.load_states() >= 1
        assert restarted.is_firing("a1", "cpu-high")
        assert restarted.evaluate_agent("a1", 500.0) == []
        assert restarted.is_firing("a1", "cpu-high")

        _feed(restarted, "a1", Metric.CPU, [(600, 10)])
        assert [t.firing for t in restarted.evaluate_agent("a1", 600.0)] == [False]

    def test_agent_without_group_is_ignored(self, evaluator):
        _feed(evaluator, "ghost", Metric.CPU, [(0, 99), (100, 99)])
        assert evaluator.evaluate_agent("ghost", 100.0) == []

    def test_no_state_without_samples(self, evaluator):
        _feed(evaluator, "a1", Metric.CPU, [(0, 10)])
        evaluator.evaluate_agent("a1", 0.0)
        assert evaluator.get_state("a1", "cpu-high") is not None
        assert evaluator.get_state("a1", "disk-full") is None


# ── Exactly one occurrence per transition ───────────────

class TestSingleOccurrence:
    def test_concurrent_evaluations_record_one_occurrence(self, evaluator, fleet_db):
        _feed(evaluator, "a1", Metric.CPU, [(0, 95), (35, 95)])
        barrier = threading.Barrier(8)
        results = []
        lock = threading.Lock()

        def run():
            barrier.wait()
            transitions = evaluator.evaluate_agent("a1", 35.0)
            with lock:
                results.extend(transitions)

        threads = [threading.Thread(target=run) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert len([t for t in results if t.firing]) == 1
        assert fleet_db.count_occurrences(agent_id="a1", rule_id="cpu-high") == 1

    def test_second_writer_gets_duplicate_and_resyncs(self, evaluator, fleet_db):
        other = _build(fleet_db)
        for e in (evaluator, other):
            _feed(e, "a1", Metric.CPU, [(0, 95), (35, 95)])

        assert len(evaluator.evaluate_agent("a1", 35.0)) == 1
        assert other.evaluate_agent("a1", 35.0) == []
        assert other.recorder.duplicates == 1
        assert other.is_firing("a1", "cpu-high")
        assert fleet_db.count_occurrences(rule_id="cpu-high") == 1

    def test_recorder_rejects_mismatched_snapshot(self, evaluator):
        with pytest.raises(ValueError):
            evaluator.recorder.record_firing("a1", "disk-full", make_rule("cpu-high"), None, 1.0)


# ── Store failures ──────────────────────────────────────

class TestStoreFailures:
    def test_failed_commit_leaves_pair_ok_and_degraded(self, evaluator, fleet_db, monkeypatch):
        _feed(evaluator, "a1", Metric.CPU, [(0, 95), (35, 95)])
        monkeypatch.setattr(fleet_db, "record_firing",
                            MagicMock(side_effect=StoreUnavailableError("disk I/O error")))

        assert evaluator.evaluate_agent("a1", 35.0) == []
        assert evaluator.is_firing("a1", "cpu-high") is False
        assert evaluator.degraded is True
        assert fleet_db.count_occurrences() == 0

        monkeypatch.undo()
        transitions = evaluator.evaluate_agent("a1", 36.0)
        assert len(transitions) == 1
        assert evaluator.degraded is False

    def test_config_lookup_failure_marks_degraded(self, evaluator, monkeypatch):
        monkeypatch.setattr(evaluator.config, "get_agent_group",
                            MagicMock(side_effect=StoreUnavailableError("locked")))
        assert evaluator.evaluate_agent("a1", 1.0) == []
        assert evaluator.degraded is True


# ── Rule changes ────────────────────────────────────────

class TestRuleChanges:
    def test_rule_removed_during_evaluation_cancels_transition(self, evaluator, fleet_db, monkeypatch):
        _feed(evaluator, "a1", Metric.CPU, [(0, 95), (35, 95)])
        monkeypatch.setattr(evaluator.config, "is_rule_active", lambda group_id, rule_id: False)
        assert evaluator.evaluate_agent("a1", 35.0) == []
        assert evaluator.cancelled == 1
        assert fleet_db.count_occurrences() == 0

    def test_disabled_rule_freezes_state_then_evicts(self, evaluator, fleet_db):
        _feed(evaluator, "a1", Metric.CPU, [(0, 95), (35, 95)])
        occurrence = evaluator.evaluate_agent("a1", 35.0)[0].occurrence

        fleet_db.upsert_rule(make_rule("cpu-high", enabled=False, account_id="acct-1"))
        evaluator.config.invalidate("g1")
        _feed(evaluator, "a1", Metric.CPU, [(100, 10)])
        assert evaluator.evaluate_agent("a1", 100.0) == []
        assert evaluator.is_firing("a1", "cpu-high")
        assert fleet_db.get_occurrence(occurrence.id) is not None

        assert evaluator.evict_frozen(100.0 + 599) == 0
        assert evaluator.evict_frozen(100.0 + 600) == 1
        assert evaluator.get_state("a1", "cpu-high") is None
        assert fleet_db.get_rule_state("a1", "cpu-high") is None
        assert fleet_db.get_occurrence(occurrence.id) is not None

    def test_reenabled_rule_thaws(self, evaluator, fleet_db):
        _feed(evaluator, "a1", Metric.CPU, [(0, 10)])
        evaluator.evaluate_agent("a1", 0.0)
        fleet_db.upsert_rule(make_rule("cpu-high", enabled=False, account_id="acct-1"))
        evaluator.config.invalidate("g1")
        evaluator.evaluate_agent("a1", 10.0)
        fleet_db.upsert_rule(make_rule("cpu-high", account_id="acct-1"))
        evaluator.config.invalidate("g1")
        evaluator.evaluate_agent("a1", 20.0)
        assert evaluator.evict_frozen(10_000.0) == 0
        assert evaluator.get_state("a1", "cpu-high") is not None

    def test_horizons_follow_rule_windows(self, evaluator, fleet_db):
        _feed(evaluator, "a1", Metric.CPU, [(0, 10)])
        evaluator.evaluate_agent("a1", 0.0)
        assert evaluator.aggregator.horizon_for("a1", Metric.CPU) == 30

        fleet_db.upsert_rule(make_rule("cpu-long", window_seconds=120, account_id="acct-1"))
        evaluator.config.invalidate("g1")
        evaluator.evaluate_agent("a1", 1.0)
        assert evaluator.aggregator.horizon_for("a1", Metric.CPU) == 120

    def test_forget_agent(self, evaluator):
        _feed(evaluator, "a1", Metric.CPU, [(0, 95), (35, 95)])
        evaluator.evaluate_agent("a1", 35.0)
        evaluator.forget_agent("a1")
        assert evaluator.get_state("a1", "cpu-high") is None


# ── Sweeps ──────────────────────────────────────────────

class TestSweep:
    def _fleet(self, fleet_db, **kwargs):
        fleet_db.upsert_agent("a3", "g1", "acct-1")
        fleet_db.upsert_agent("a4", "g1", "acct-1")
        evaluator = _build(fleet_db, **kwargs)
        for i, agent in enumerate(["a1", "a2", "a3", "a4"]):
            _feed(evaluator, agent, Metric.CPU, [(10 * (i + 1), 50)])
        return evaluator

    def test_sweep_fires_condition_that_matured_without_new_samples(self, evaluator):
        _feed(evaluator, "a1", Metric.NETWORK, [(0, "disconnected")])
        assert evaluator.evaluate_agent("a1", 0.0) == []
        report = evaluator.sweep(5.0)
        assert [(t.rule_id, t.firing) for t in report.fired] == [("net-down", True)]
        assert report.evaluated == 1

    def test_never_swept_agents_are_all_included(self, fleet_db):
        evaluator = self._fleet(fleet_db, max_agents_per_tick=2, staleness_factor=5)
        planned, stale, deferred = evaluator.plan_sweep(100.0)
        assert sorted(planned) == ["a1", "a2", "a3", "a4"]
        assert stale == 4 and deferred == 0

    def test_budget_orders_by_recent_activity(self, fleet_db):
        evaluator = self._fleet(fleet_db, max_agents_per_tick=2, staleness_factor=5)
        report = evaluator.sweep(100.0)
        assert report.evaluated == 4 and report.stale_forced == 4

        planned, stale, deferred = evaluator.plan_sweep(110.0)
        assert planned == ["a4", "a3"]
        assert stale == 0 and deferred == 2

    def test_stale_agents_are_forced_back_in(self, fleet_db):
        evaluator = self._fleet(fleet_db, max_agents_per_tick=2, staleness_factor=5)
        evaluator.sweep(100.0)
        evaluator.evaluate_agent("a4", 250.0)
        # horizon is 60s (disk-full), so the staleness ceiling is 300s
        planned, stale, deferred = evaluator.plan_sweep(400.0)
        assert planned == ["a1", "a2", "a3"]
        assert stale == 3 and deferred == 1

    def test_sweep_reports_evictions_and_degraded(self, evaluator, fleet_db):
        _feed(evaluator, "a1", Metric.CPU, [(0, 10)])
        evaluator.evaluate_agent("a1", 0.0)
        fleet_db.delete_rule("cpu-high")
        evaluator.config.invalidate("g1")
        evaluator.sweep(10.0)
        report = evaluator.sweep(10.0 + 600)
        assert report.evicted == 1
        assert report.degraded is False
