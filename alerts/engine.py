"""Alert engine: wires normalizer, window aggregator, evaluator, recorder and dispatcher."""
import logging
import time

from alerts.config_store import ConfigStore
from alerts.dispatcher import ChannelDispatcher
from alerts.evaluator import RuleEvaluator
from alerts.recorder import AlertRecorder
from alerts.window import DEBOUNCE, WindowAggregator
from models.alerts import AlertChannel
from models.database import StoreUnavailableError
from models.enums import ChannelType
from monitor.health import AgentHealthTracker
from monitor.normalizer import Normalizer
from notifications.webhook_client import WebhookClient
from utils.keyed_lock import KeyedLock

logger = logging.getLogger("fleetwatch.alerts.engine")

MAX_PAGE_SIZE = 500


class AlertEngine:
    """Entry point for the event feed, the sweep timer and history queries."""

    def __init__(self, db, config=None, email_sender=None, webhook_client=None, clock=time.time):
        config = config or {}
        engine_cfg = config.get("engine", {})
        sweep_cfg = config.get("sweep", {})
        dispatch_cfg = config.get("dispatch", {})

        self.db = db
        self.config = config
        self._clock = clock
        self.sweep_interval = sweep_cfg.get("interval_seconds", 10)

        self.health = AgentHealthTracker()
        self.normalizer = Normalizer(health=self.health, max_devices=engine_cfg.get("max_usb_devices", 256))
        self.config_store = ConfigStore(db, ttl=engine_cfg.get("cache_ttl_seconds", 30))
        self.aggregator = WindowAggregator(
            default_horizon=engine_cfg.get("default_horizon_seconds", 300),
            mode=engine_cfg.get("window_mode", DEBOUNCE),
            max_samples=engine_cfg.get("max_samples_per_series", 5000),
        )
        self.recorder = AlertRecorder(db)
        self.evaluator = RuleEvaluator(
            self.config_store, self.aggregator, self.recorder, db,
            max_agents_per_tick=sweep_cfg.get("max_agents_per_tick", 500),
            state_grace_seconds=engine_cfg.get("state_grace_seconds", 3600),
            staleness_factor=sweep_cfg.get("staleness_factor", 5),
            clock=clock,
        )
        if webhook_client is None:
            webhook_client = WebhookClient(timeout=dispatch_cfg.get("webhook_timeout_seconds", 10))
        self.dispatcher = ChannelDispatcher(
            db, email_sender=email_sender, webhook_client=webhook_client,
            workers=dispatch_cfg.get("workers", 4),
            queue_size=dispatch_cfg.get("queue_size", 1000),
            queue_policy=dispatch_cfg.get("queue_policy", "drop_oldest"),
            max_attempts=dispatch_cfg.get("max_attempts", 5),
            base_delay=dispatch_cfg.get("base_delay_seconds", 5),
            max_delay=dispatch_cfg.get("max_delay_seconds", 300),
            clock=clock,
        )
        self.scheduler = None
        self._agent_locks = KeyedLock()
        self.events = 0
        self.samples = 0

    # --- Lifecycle ---

    def start(self, run_scheduler=True):
        self.evaluator.load_states()
        self.dispatcher.start()
        self.dispatcher.resume_pending()
        if run_scheduler:
            from monitor.scheduler import SweepScheduler
            self.scheduler = SweepScheduler(self, interval_seconds=self.sweep_interval)
            self.scheduler.start()
        logger.info("Alert engine started")

    def stop(self):
        if self.scheduler:
            self.scheduler.stop()
            self.scheduler = None
        self.dispatcher.stop()
        logger.info("Alert engine stopped")

    # --- Event feed ---

    def ingest(self, agent_id, event_type, payload, timestamp=None):
        """Normalize one agent event and evaluate the agent's rules.

        Samples of one agent are applied in arrival order. Evaluation runs at
        the agent's most recent sample time. Returns the transitions made.
        """
        self.events += 1
        samples = self.normalizer.normalize(agent_id, event_type, payload, timestamp)
        if not samples:
            return []

        with self._agent_locks.hold(agent_id):
            try:
                group_id, _ = self.evaluator.rules_for_agent(agent_id)
            except StoreUnavailableError as e:
                logger.error(f"Config lookup failed for agent {agent_id}: {e}")
                group_id = None
            for sample in samples:
                self.aggregator.add_sample(sample, group_id)
            self.samples += len(samples)
            if group_id is None:
                return []
            transitions = self.evaluator.evaluate_agent(agent_id, self.aggregator.last_activity(agent_id))

        self._submit(transitions)
        return transitions

    def sweep(self, now=None):
        """Re-evaluate agents for time-elapsed transitions."""
        report = self.evaluator.sweep(self._clock() if now is None else now)
        self._submit(report.transitions)
        return report

    def _submit(self, transitions):
        for t in transitions:
            if not t.firing or t.occurrence is None:
                continue
            try:
                channels = self.channels_for(t.rule)
            except StoreUnavailableError as e:
                logger.error(f"Channel lookup failed for occurrence {t.occurrence.id}: {e}")
                continue
            if not channels:
                logger.info(f"No enabled channels for group {t.group_id}; occurrence {t.occurrence.id[:8]} recorded only")
                continue
            self.dispatcher.submit(t.occurrence, channels)

    def channels_for(self, rule):
        """Enabled group channels plus the rule's own webhook_url, if any."""
        channels = list(self.config_store.get_channels_for_group(rule.group_id))
        if rule.webhook_url:
            channels.append(AlertChannel(
                id=f"rule:{rule.id}",
                group_id=rule.group_id,
                type=ChannelType.WEBHOOK,
                target=rule.webhook_url,
                webhook_method="POST",
            ))
        return channels

    # --- Config change notifications ---

    def invalidate(self, group_id):
        """Drop cached config for a group; cancels retries to channels that were deleted."""
        try:
            before = {c.id for c in self.config_store.get_all_channels(group_id)}
        except StoreUnavailableError:
            before = set()
        self.config_store.invalidate(group_id)
        try:
            after = {c.id for c in self.config_store.get_all_channels(group_id)}
        except StoreUnavailableError as e:
            logger.warning(f"Could not reload channels for group {group_id}: {e}")
            return
        for channel_id in before - after:
            cancelled = self.dispatcher.cancel(channel_id=channel_id)
            logger.info(f"Channel {channel_id} removed from group {group_id}; cancelled {cancelled} retries")

    def invalidate_agent(self, agent_id):
        self.config_store.invalidate_agent(agent_id)

    def forget_agent(self, agent_id):
        """Agent deleted: drop its buffers, diff memory, health and rule states."""
        with self._agent_locks.hold(agent_id):
            self.aggregator.forget_agent(agent_id)
            self.normalizer.forget_agent(agent_id)
            self.evaluator.forget_agent(agent_id)
            self.health.forget(agent_id)
            self.config_store.invalidate_agent(agent_id)
            self.db.delete_rule_states(agent_id=agent_id)
        logger.info(f"Forgot agent {agent_id}")

    # --- Queries ---

    def list_occurrences(self, group_id, limit=50, offset=0):
        limit = max(1, min(int(limit), MAX_PAGE_SIZE))
        offset = max(0, int(offset))
        return self.db.list_occurrences(group_id, limit, offset)

    def list_deliveries(self, occurrence_id):
        return self.db.list_deliveries(occurrence_id)

    def preview(self, agent_id, now=None):
        """Evaluate the agent's rules without changing any state."""
        now = self._clock() if now is None else now
        group_id, rules = self.evaluator.rules_for_agent(agent_id)
        results = []
        for rule in rules:
            result = self.aggregator.evaluate(agent_id, rule, now) if rule.enabled else None
            results.append({
                "rule_id": rule.id,
                "name": rule.name,
                "condition": rule.describe(),
                "severity": rule.severity.value,
                "enabled": rule.enabled,
                "holds": bool(result and result.holds),
                "value": result.sample.value if result and result.sample else None,
                "run_start": result.run_start if result else None,
                "config_error": result.config_error if result else None,
                "firing": self.evaluator.is_firing(agent_id, rule.id),
            })
        return group_id, results

    def stats(self):
        return {
            "events": self.events,
            "samples": self.samples,
            "dropped_events": self.normalizer.dropped,
            "agents_tracked": len(self.aggregator.agents()),
            "config_errors": self.aggregator.config_errors,
            "fired": self.evaluator.fired,
            "resolved": self.evaluator.resolved,
            "cancelled_transitions": self.evaluator.cancelled,
            "evaluation_errors": self.evaluator.errors,
            "occurrences_recorded": self.recorder.recorded,
            "duplicate_detections": self.recorder.duplicates,
            "degraded": self.evaluator.degraded,
            "dispatch": self.dispatcher.stats(),
        }
