"""Agent online/offline tracking, fed by status events."""
import logging
import threading

logger = logging.getLogger("fleetwatch.monitor.health")


class AgentHealthTracker:
    """Keeps the last reported status and last-seen time per agent.

    Online/offline transitions come through here rather than through the
    metric channel, so they never trigger threshold rules directly.
    """

    def __init__(self):
        self._agents = {}
        self._lock = threading.Lock()
        self._listeners = []

    def on_change(self, callback):
        """Register callback(agent_id, old_status, new_status, at)."""
        self._listeners.append(callback)

    def update(self, agent_id, status, at):
        status = str(status).strip().lower()
        with self._lock:
            entry = self._agents.get(agent_id)
            if entry is not None and at < entry["last_seen_at"]:
                return False
            old = entry["status"] if entry else None
            self._agents[agent_id] = {"status": status, "last_seen_at": at}
        if old == status:
            return False
        logger.info(f"Agent {agent_id} is now {status} (was {old or 'unknown'})")
        for cb in self._listeners:
            try:
                cb(agent_id, old, status, at)
            except Exception as e:
                logger.warning(f"Health listener error: {e}")
        return True

    def get(self, agent_id):
        with self._lock:
            entry = self._agents.get(agent_id)
            return dict(entry) if entry else None

    def snapshot(self):
        with self._lock:
            return {agent_id: dict(entry) for agent_id, entry in self._agents.items()}

    def forget(self, agent_id):
        with self._lock:
            self._agents.pop(agent_id, None)
