"""Rule evaluation: per-(agent, rule) state machine over the window aggregator."""
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Optional

from models.alerts import AlertOccurrence, Rule, RuleState
from models.database import DuplicateOccurrenceError, StoreUnavailableError
from utils.keyed_lock import KeyedLock

logger = logging.getLogger("fleetwatch.alerts.evaluator")


@dataclass
class Transition:
    agent_id: str
    rule: Rule
    firing: bool
    at: float
    occurrence: Optional[AlertOccurrence] = None

    @property
    def rule_id(self):
        return self.rule.id

    @property
    def group_id(self):
        return self.rule.group_id


@dataclass
class SweepReport:
    now: float
    evaluated: int = 0
    stale_forced: int = 0
    deferred: int = 0
    evicted: int = 0
    errors: int = 0
    degraded: bool = False
    transitions: list = field(default_factory=list)

    @property
    def fired(self):
        return [t for t in self.transitions if t.firing]


class RuleEvaluator:
    """Drives the OK/FIRING state machine of every (agent, rule) pair.

    Transitions are durable first: the store commits the new state (and, for
    OK -> FIRING, the occurrence) before the in-memory RuleState changes.
    A pair that is FIRING goes back to OK only when a sample contradicts the
    condition; missing samples never resolve it.
    """

    def __init__(self, config, aggregator, recorder, db, max_agents_per_tick=500,
                 state_grace_seconds=3600, staleness_factor=5, clock=time.time):
        self.config = config
        self.aggregator = aggregator
        self.recorder = recorder
        self.db = db
        self.max_agents_per_tick = max_agents_per_tick
        self.state_grace_seconds = state_grace_seconds
        self.staleness_factor = staleness_factor
        self._clock = clock

        self._states = {}       # (agent_id, rule_id) -> RuleState
        self._frozen = {}       # (agent_id, rule_id) -> first time seen inactive
        self._last_swept = {}   # agent_id -> evaluation time
        self._horizon_keys = {}  # group_id -> enabled (metric, window) pairs last pushed
        self._pair_locks = KeyedLock()
        self._lock = threading.Lock()

        self.degraded = False
        self.errors = 0
        self.cancelled = 0
        self.fired = 0
        self.resolved = 0

    # --- State ---

    def load_states(self):
        """Restore RuleStates from the store. Called once at startup."""
        states = self.db.load_rule_states()
        with self._lock:
            for state in states:
                self._states[(state.agent_id, state.rule_id)] = state
        firing = sum(1 for s in states if s.is_firing)
        logger.info(f"Loaded {len(states)} rule states ({firing} firing)")
        return len(states)

    def get_state(self, agent_id, rule_id):
        with self._lock:
            state = self._states.get((agent_id, rule_id))
        if state is None:
            return None
        return RuleState(state.agent_id, state.rule_id, state.is_firing,
                         state.firing_since, state.last_sample_at, state.occurrence_id)

    def is_firing(self, agent_id, rule_id):
        state = self.get_state(agent_id, rule_id)
        return bool(state and state.is_firing)

    def forget_agent(self, agent_id):
        with self._lock:
            for key in [k for k in self._states if k[0] == agent_id]:
                del self._states[key]
            for key in [k for k in self._frozen if k[0] == agent_id]:
                del self._frozen[key]
            self._last_swept.pop(agent_id, None)

    # --- Evaluation ---

    def rules_for_agent(self, agent_id):
        """(group_id, rules) for the agent; rules include disabled ones."""
        group_id = self.config.get_agent_group(agent_id)
        if group_id is None:
            return None, []
        rules = self.config.get_rules_for_group(group_id)
        self._sync_horizons(group_id, rules)
        return group_id, rules

    def _sync_horizons(self, group_id, rules):
        key = tuple(sorted((r.metric.value, r.window_seconds) for r in rules if r.enabled))
        with self._lock:
            if self._horizon_keys.get(group_id) == key:
                return
            self._horizon_keys[group_id] = key
        self.aggregator.set_horizons(group_id, rules)

    def evaluate_agent(self, agent_id, now=None):
        """Evaluate every rule of the agent's group. Returns the transitions made."""
        now = self._clock() if now is None else now
        try:
            group_id, rules = self.rules_for_agent(agent_id)
        except StoreUnavailableError as e:
            self._mark_degraded(f"config lookup for agent {agent_id}", e)
            return []
        if group_id is None:
            return []

        transitions = []
        active = set()
        store_failed = False
        for rule in rules:
            if not rule.enabled:
                continue
            active.add(rule.id)
            try:
                transition = self._evaluate_rule(agent_id, group_id, rule, now)
            except StoreUnavailableError as e:
                store_failed = True
                self._mark_degraded(f"agent={agent_id} rule={rule.id}", e)
                continue
            except DuplicateOccurrenceError:
                self._resync_from_store(agent_id, rule.id)
                continue
            except Exception as e:
                with self._lock:
                    self.errors += 1
                logger.error(f"Evaluation failed for agent={agent_id} rule={rule.id}: {e}", exc_info=True)
                continue
            if transition is not None:
                transitions.append(transition)

        self._freeze_inactive(agent_id, active, now)
        with self._lock:
            self._last_swept[agent_id] = now
        if not store_failed and self.degraded:
            self.degraded = False
            logger.info("Store reachable again, evaluator leaving degraded mode")
        return transitions

    def _evaluate_rule(self, agent_id, group_id, rule, now):
        key = (agent_id, rule.id)
        with self._pair_locks.hold(key):
            result = self.aggregator.evaluate(agent_id, rule, now)
            with self._lock:
                state = self._states.get(key)
                if state is None and result.last_sample_at is not None:
                    state = RuleState(agent_id, rule.id)
                    self._states[key] = state
            if state is None:
                return None

            if state.is_firing:
                # No samples at or before now: nothing contradicts the firing state.
                firing = True if result.last_sample_at is None else result.run_start is not None
            else:
                firing = result.holds

            if firing == state.is_firing:
                if result.last_sample_at is not None:
                    state.last_sample_at = result.last_sample_at
                return None

            if not self.config.is_rule_active(group_id, rule.id):
                with self._lock:
                    self.cancelled += 1
                logger.info(f"Rule {rule.id} changed during evaluation of {agent_id}; skipping transition")
                return None

            if firing:
                occurrence = self.recorder.record_firing(
                    agent_id, rule.id, rule, result.sample, now, run_start=result.run_start
                )
                new_state = RuleState(agent_id, rule.id, True, now, result.last_sample_at, occurrence.id)
                transition = Transition(agent_id, rule, True, now, occurrence)
            else:
                new_state = RuleState(agent_id, rule.id, False, None, result.last_sample_at, None)
                self.db.resolve_firing(new_state)
                transition = Transition(agent_id, rule, False, now)
                logger.info(f"Rule {rule.name} resolved for agent {agent_id}")

            with self._lock:
                self._states[key] = new_state
                if firing:
                    self.fired += 1
                else:
                    self.resolved += 1
            return transition

    def _resync_from_store(self, agent_id, rule_id):
        try:
            stored = self.db.get_rule_state(agent_id, rule_id)
        except StoreUnavailableError as e:
            self._mark_degraded(f"resync agent={agent_id} rule={rule_id}", e)
            return
        if stored is not None:
            with self._lock:
                self._states[(agent_id, rule_id)] = stored

    def _mark_degraded(self, context, error):
        if not self.degraded:
            logger.error(f"Store unavailable ({context}): {error}; evaluator degraded")
        self.degraded = True
        with self._lock:
            self.errors += 1

    # --- Disabled and deleted rules ---

    def _freeze_inactive(self, agent_id, active_rule_ids, now):
        with self._lock:
            for key in [k for k in self._states if k[0] == agent_id]:
                if key[1] in active_rule_ids:
                    self._frozen.pop(key, None)
                else:
                    self._frozen.setdefault(key, now)

    def evict_frozen(self, now):
        """Drop states whose rule has been inactive for the grace period."""
        with self._lock:
            expired = [k for k, since in self._frozen.items()
                       if now - since >= self.state_grace_seconds]
        evicted = 0
        for agent_id, rule_id in expired:
            with self._pair_locks.hold((agent_id, rule_id)):
                try:
                    self.db.delete_rule_states(agent_id=agent_id, rule_id=rule_id)
                except StoreUnavailableError as e:
                    self._mark_degraded(f"evicting agent={agent_id} rule={rule_id}", e)
                    continue
                with self._lock:
                    self._states.pop((agent_id, rule_id), None)
                    self._frozen.pop((agent_id, rule_id), None)
                evicted += 1
        if evicted:
            logger.info(f"Evicted {evicted} rule states after {self.state_grace_seconds}s grace")
        return evicted

    # --- Sweep ---

    def plan_sweep(self, now):
        """Order agents for this tick: stale agents first, then most recent activity.

        Agents not evaluated within staleness_factor x retention horizon are
        always included; the rest fill the remaining per-tick budget.
        """
        activity = self.aggregator.activity()
        ceiling = self.staleness_factor * self.aggregator.max_horizon()
        with self._lock:
            last_swept = dict(self._last_swept)

        stale, fresh = [], []
        for agent_id, last_sample in activity.items():
            swept = last_swept.get(agent_id)
            if swept is None or now - swept >= ceiling:
                stale.append((swept if swept is not None else float("-inf"), agent_id))
            else:
                fresh.append((last_sample, agent_id))

        stale.sort()
        fresh.sort(reverse=True)
        budget = max(0, self.max_agents_per_tick - len(stale))
        planned = [a for _, a in stale] + [a for _, a in fresh[:budget]]
        return planned, len(stale), max(0, len(fresh) - budget)

    def sweep(self, now=None) -> SweepReport:
        now = self._clock() if now is None else now
        planned, stale_count, deferred = self.plan_sweep(now)
        report = SweepReport(now=now, stale_forced=stale_count, deferred=deferred)
        errors_before = self.errors

        for agent_id in planned:
            try:
                report.transitions.extend(self.evaluate_agent(agent_id, now))
            except Exception as e:
                report.errors += 1
                logger.error(f"Sweep failed for agent {agent_id}: {e}", exc_info=True)
            report.evaluated += 1

        report.evicted = self.evict_frozen(now)
        report.errors += self.errors - errors_before
        report.degraded = self.degraded
        if deferred:
            logger.warning(f"Sweep deferred {deferred} agents (budget {self.max_agents_per_tick})")
        logger.debug(
            f"Sweep at {now:.0f}: {report.evaluated} agents, {len(report.transitions)} transitions, "
            f"{report.stale_forced} stale"
        )
        return report
