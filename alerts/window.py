"""Sliding-window sample buffers and continuous-condition checks."""
import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Optional

from alerts.conditions import ConfigurationError, compare
from models.metrics import MetricSample

logger = logging.getLogger("fleetwatch.alerts.window")

DEBOUNCE = "debounce"
SAMPLES = "samples"
WINDOW_MODES = (DEBOUNCE, SAMPLES)


@dataclass
class WindowResult:
    holds: bool
    run_start: Optional[float] = None
    last_sample_at: Optional[float] = None
    sample: Optional[MetricSample] = None
    config_error: Optional[str] = None


class WindowAggregator:
    """Keeps recent samples per (agent, metric) and answers whether a rule's
    condition has held continuously for its window.

    Retention per buffer is the largest window among the rules that
    reference the metric in the agent's group. Eviction always keeps the
    newest sample at or before the cutoff, so a run that started before the
    horizon still reports a start at least one horizon ago.

    Modes:
      debounce  the run is measured up to ``now``; one qualifying sample
                that is not contradicted for window_seconds fires.
      samples   the run is measured up to the latest sample; a single
                isolated sample never fires.
    """

    def __init__(self, default_horizon=300, mode=DEBOUNCE, max_samples=5000):
        if mode not in WINDOW_MODES:
            raise ValueError(f"Unknown window mode: {mode}")
        self.default_horizon = default_horizon
        self.mode = mode
        self.max_samples = max_samples
        self._buffers = {}
        self._horizons = {}
        self._agent_groups = {}
        self._activity = {}
        self._reported_errors = set()
        self.config_errors = 0
        self._lock = threading.Lock()

    # --- Retention ---

    def set_horizons(self, group_id, rules):
        """Recompute retention for a group from its enabled rules."""
        horizons = {}
        for rule in rules:
            if rule.enabled:
                horizons[rule.metric] = max(horizons.get(rule.metric, 0), rule.window_seconds)
        with self._lock:
            for key in [k for k in self._horizons if k[0] == group_id]:
                del self._horizons[key]
            for metric, seconds in horizons.items():
                self._horizons[(group_id, metric)] = seconds

    def horizon_for(self, agent_id, metric):
        with self._lock:
            return self._horizon(agent_id, metric)

    def _horizon(self, agent_id, metric):
        group_id = self._agent_groups.get(agent_id)
        return self._horizons.get((group_id, metric), self.default_horizon)

    def max_horizon(self):
        with self._lock:
            return max(self._horizons.values(), default=self.default_horizon)

    # --- Samples ---

    def add_sample(self, sample: MetricSample, group_id=None):
        with self._lock:
            if group_id is not None:
                self._agent_groups[sample.agent_id] = group_id
            key = (sample.agent_id, sample.metric)
            buf = self._buffers.get(key)
            if buf is None:
                buf = deque()
                self._buffers[key] = buf

            if not buf or sample.observed_at >= buf[-1].observed_at:
                buf.append(sample)
            else:
                idx = len(buf)
                while idx > 0 and buf[idx - 1].observed_at > sample.observed_at:
                    idx -= 1
                buf.insert(idx, sample)

            previous = self._activity.get(sample.agent_id)
            if previous is None or sample.observed_at > previous:
                self._activity[sample.agent_id] = sample.observed_at

            self._evict(buf, self._horizon(sample.agent_id, sample.metric))

    def _evict(self, buf, horizon):
        cutoff = buf[-1].observed_at - horizon
        while len(buf) >= 2 and buf[1].observed_at <= cutoff:
            buf.popleft()
        while len(buf) > self.max_samples:
            buf.popleft()

    def samples(self, agent_id, metric):
        with self._lock:
            return list(self._buffers.get((agent_id, metric), ()))

    def activity(self):
        """agent_id -> time of the agent's most recent sample."""
        with self._lock:
            return dict(self._activity)

    def last_activity(self, agent_id):
        with self._lock:
            return self._activity.get(agent_id)

    def agents(self):
        with self._lock:
            return set(self._activity)

    def forget_agent(self, agent_id):
        with self._lock:
            for key in [k for k in self._buffers if k[0] == agent_id]:
                del self._buffers[key]
            self._activity.pop(agent_id, None)
            self._agent_groups.pop(agent_id, None)

    # --- Evaluation ---

    def evaluate(self, agent_id, rule, now) -> WindowResult:
        """Does rule's condition hold continuously for window_seconds as of now?"""
        with self._lock:
            buf = self._buffers.get((agent_id, rule.metric))
            history = [s for s in buf if s.observed_at <= now] if buf else []

        if not history:
            return WindowResult(holds=False)

        latest = history[-1]
        try:
            if not compare(latest.value, rule.operator, rule.threshold):
                return WindowResult(holds=False, last_sample_at=latest.observed_at, sample=latest)
            run_start = latest.observed_at
            for sample in reversed(history[:-1]):
                if not compare(sample.value, rule.operator, rule.threshold):
                    break
                run_start = sample.observed_at
        except ConfigurationError as e:
            self._report_config_error(rule, e)
            return WindowResult(holds=False, last_sample_at=latest.observed_at, config_error=str(e))

        end = now if self.mode == DEBOUNCE else latest.observed_at
        return WindowResult(
            holds=(end - run_start) >= rule.window_seconds,
            run_start=run_start,
            last_sample_at=latest.observed_at,
            sample=latest,
        )

    def _report_config_error(self, rule, error):
        marker = (rule.id, rule.operator, rule.threshold)
        with self._lock:
            first = marker not in self._reported_errors
            self._reported_errors.add(marker)
            self.config_errors += 1
        if first:
            logger.warning(f"Rule {rule.id} ({rule.name}) is misconfigured and will never fire: {error}")
