"""Durable alert occurrence recording."""
import logging
import threading
import uuid

from models.alerts import AlertOccurrence, RuleState
from models.database import DuplicateOccurrenceError

logger = logging.getLogger("fleetwatch.alerts.recorder")


class AlertRecorder:
    """Writes one AlertOccurrence per OK -> FIRING transition.

    The state flip and the occurrence insert commit together in
    ``Database.record_firing``; if either fails nothing is committed and the
    caller keeps the pair OK.
    """

    def __init__(self, db):
        self.db = db
        self.duplicates = 0
        self.recorded = 0
        self._lock = threading.Lock()

    def build_occurrence(self, agent_id, rule, sample, now, run_start=None) -> AlertOccurrence:
        data = {
            "value": sample.value if sample is not None else None,
            "observed_at": sample.observed_at if sample is not None else None,
            "threshold": rule.threshold,
            "operator": rule.operator.value,
            "window_seconds": rule.window_seconds,
            "rule_name": rule.name,
        }
        if run_start is not None:
            data["run_start"] = run_start
        if sample is not None and sample.details:
            data["details"] = dict(sample.details)
        return AlertOccurrence(
            id=uuid.uuid4().hex,
            account_id=rule.account_id,
            group_id=rule.group_id,
            agent_id=agent_id,
            rule_id=rule.id,
            severity=rule.severity,
            metric=rule.metric,
            message=rule.describe(),
            anomaly_type=f"threshold_{rule.metric.value}",
            anomaly_data=data,
            created_at=now,
        )

    def record_firing(self, agent_id, rule_id, rule_snapshot, sample_snapshot, now, run_start=None):
        """Commit the transition and return the new occurrence.

        Raises DuplicateOccurrenceError if the pair is already firing in the
        store, and StoreUnavailableError if the store cannot commit.
        """
        if rule_snapshot.id != rule_id:
            raise ValueError(f"Rule snapshot {rule_snapshot.id} does not match {rule_id}")

        occurrence = self.build_occurrence(agent_id, rule_snapshot, sample_snapshot, now, run_start)
        state = RuleState(
            agent_id=agent_id,
            rule_id=rule_id,
            is_firing=True,
            firing_since=now,
            last_sample_at=sample_snapshot.observed_at if sample_snapshot is not None else None,
            occurrence_id=occurrence.id,
        )
        try:
            self.db.record_firing(state, occurrence)
        except DuplicateOccurrenceError as e:
            with self._lock:
                self.duplicates += 1
            logger.critical(f"Invariant violation: {e}")
            raise

        with self._lock:
            self.recorded += 1
        logger.info(
            f"Alert {occurrence.id[:8]} [{occurrence.severity.value}] "
            f"agent={agent_id} rule={rule_snapshot.name}: {occurrence.message}"
        )
        return occurrence
