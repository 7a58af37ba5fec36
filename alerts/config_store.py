"""Cached read access to groups, rules and alert channels."""
import json
import logging
import threading
import time
from pathlib import Path

import yaml

from alerts.conditions import validate_rule
from models.alerts import AlertChannel, Rule
from models.enums import ChannelType, Metric, Operator, Severity
from utils.cache import TTLCache

logger = logging.getLogger("fleetwatch.alerts.config")


class ConfigStore:
    """Read-mostly view of the config tables maintained by the CRUD API.

    Reads are cached for ``ttl`` seconds; ``invalidate(group_id)`` and
    ``invalidate_agent(agent_id)`` drop entries early when the API reports
    a change.
    """

    def __init__(self, db, ttl=30, clock=time.monotonic):
        self.db = db
        self._agents = TTLCache(ttl, clock)
        self._groups = TTLCache(ttl, clock)
        self._rules = TTLCache(ttl, clock)
        self._channels = TTLCache(ttl, clock)
        self._generations = {}
        self._lock = threading.Lock()

    def get_agent_group(self, agent_id):
        return self._agents.get_or_load(agent_id, lambda: self.db.get_agent_group(agent_id))

    def get_group(self, group_id):
        return self._groups.get_or_load(group_id, lambda: self.db.get_group(group_id))

    def get_account_id(self, group_id):
        group = self.get_group(group_id)
        return group["account_id"] if group else ""

    def get_rules_for_group(self, group_id):
        return self._rules.get_or_load(group_id, lambda: self._load_rules(group_id))

    def get_enabled_rules(self, group_id):
        return [r for r in self.get_rules_for_group(group_id) if r.enabled]

    def get_all_channels(self, group_id):
        """Channels of the group, disabled ones included."""
        return self._channels.get_or_load(group_id, lambda: self.db.get_channels_for_group(group_id))

    def get_channels_for_group(self, group_id):
        """Enabled channels of the group."""
        return [c for c in self.get_all_channels(group_id) if c.enabled]

    def is_rule_active(self, group_id, rule_id):
        return any(r.id == rule_id for r in self.get_enabled_rules(group_id))

    def generation(self, group_id):
        with self._lock:
            return self._generations.get(group_id, 0)

    def invalidate(self, group_id):
        self._rules.invalidate(group_id)
        self._channels.invalidate(group_id)
        self._groups.invalidate(group_id)
        with self._lock:
            self._generations[group_id] = self._generations.get(group_id, 0) + 1
        logger.debug(f"Config cache invalidated for group {group_id}")

    def invalidate_agent(self, agent_id):
        self._agents.invalidate(agent_id)

    def clear(self):
        for cache in (self._agents, self._groups, self._rules, self._channels):
            cache.clear()

    def _load_rules(self, group_id):
        account_id = self.get_account_id(group_id)
        rules = []
        for rule in self.db.get_rules_for_group(group_id):
            if not rule.account_id:
                rule.account_id = account_id
            problem = validate_rule(rule)
            if problem:
                logger.warning(f"Rule {rule.id} ({rule.name}) has a configuration error: {problem}")
            rules.append(rule)
        return rules

    # --- Fixtures ---

    def load_fixture(self, path):
        """Seed groups, agents, rules and channels from a YAML file.

        The CRUD API owns these tables in production; this is for local runs
        and tests. Returns counts of what was written.
        """
        path = Path(path)
        with open(path) as f:
            data = yaml.safe_load(f) or {}

        counts = {"groups": 0, "agents": 0, "rules": 0, "channels": 0}
        for g in data.get("groups", []):
            group_id = g["id"]
            account_id = g.get("account_id", "")
            self.db.upsert_group(group_id, g.get("name", group_id), account_id,
                                 g.get("category", "store"), g.get("description", ""))
            counts["groups"] += 1

            for agent in g.get("agents", []):
                if isinstance(agent, str):
                    agent = {"id": agent}
                self.db.upsert_agent(agent["id"], group_id, account_id, agent.get("display_name", ""))
                self.invalidate_agent(agent["id"])
                counts["agents"] += 1

            for r in g.get("rules", []):
                rule = _parse_rule(r, group_id, account_id)
                if rule is None:
                    continue
                self.db.upsert_rule(rule)
                counts["rules"] += 1

            for c in g.get("channels", []):
                channel = _parse_channel(c, group_id)
                if channel is None:
                    continue
                self.db.upsert_channel(channel, account_id)
                counts["channels"] += 1

            self.invalidate(group_id)

        logger.info(
            f"Loaded {counts['groups']} groups, {counts['agents']} agents, "
            f"{counts['rules']} rules, {counts['channels']} channels from {path}"
        )
        return counts


def _parse_rule(r, group_id, account_id):
    try:
        rule = Rule(
            id=r["id"],
            group_id=group_id,
            name=r.get("name", r["id"]),
            metric=Metric(r["metric"]),
            operator=Operator(r["operator"]),
            threshold=str(r["threshold"]),
            severity=Severity(r.get("severity", "warning")),
            window_seconds=int(r.get("window_seconds", 60)),
            enabled=bool(r.get("enabled", True)),
            webhook_url=r.get("webhook_url"),
            account_id=account_id,
        )
    except (KeyError, ValueError) as e:
        logger.warning(f"Invalid rule {r.get('id')}: {e}")
        return None
    if rule.window_seconds < 1:
        logger.warning(f"Invalid rule {rule.id}: window_seconds must be >= 1")
        return None
    return rule


def _parse_channel(c, group_id):
    headers = c.get("webhook_headers")
    if isinstance(headers, dict):
        headers = json.dumps(headers)
    try:
        return AlertChannel(
            id=c["id"],
            group_id=group_id,
            type=ChannelType(c["type"]),
            target=c["target"],
            webhook_method=c.get("webhook_method"),
            webhook_headers=headers,
            webhook_body=c.get("webhook_body"),
            enabled=bool(c.get("enabled", True)),
        )
    except (KeyError, ValueError) as e:
        logger.warning(f"Invalid channel {c.get('id')}: {e}")
        return None
