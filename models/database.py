"""SQLite store for fleet config, rule state, alert occurrences and deliveries."""
import json
import sqlite3
import logging
import threading
import time
from contextlib import contextmanager
from pathlib import Path

from models.alerts import AlertChannel, AlertOccurrence, DeliveryAttempt, Rule, RuleState
from models.enums import DeliveryStatus

logger = logging.getLogger("fleetwatch.db")


class StoreUnavailableError(Exception):
    """The store could not read or commit. Durable state is unchanged."""


class DuplicateOccurrenceError(Exception):
    """A firing transition was attempted for a pair that is already firing."""
    def __init__(self, agent_id, rule_id, open_occurrence_id=None):
        super().__init__(
            f"Duplicate firing for agent={agent_id} rule={rule_id} "
            f"(open occurrence {open_occurrence_id})"
        )
        self.agent_id = agent_id
        self.rule_id = rule_id
        self.open_occurrence_id = open_occurrence_id


class Database:
    def __init__(self, db_path="data/fleetwatch.db"):
        self.db_path = db_path
        self.conn = None
        self._lock = threading.RLock()

    def connect(self):
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA foreign_keys=ON")
        self._create_tables()
        return self

    def close(self):
        with self._lock:
            if self.conn:
                self.conn.close()
                self.conn = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, *args):
        self.close()

    def _create_tables(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS agent_groups (
                id TEXT PRIMARY KEY,
                account_id TEXT NOT NULL DEFAULT '',
                name TEXT NOT NULL,
                category TEXT DEFAULT 'store',
                description TEXT DEFAULT '',
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS agents (
                id TEXT PRIMARY KEY,
                account_id TEXT NOT NULL DEFAULT '',
                group_id TEXT,
                display_name TEXT DEFAULT '',
                created_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS group_rules (
                id TEXT PRIMARY KEY,
                group_id TEXT NOT NULL,
                account_id TEXT NOT NULL DEFAULT '',
                name TEXT NOT NULL,
                metric TEXT NOT NULL,
                operator TEXT NOT NULL,
                threshold TEXT NOT NULL,
                severity TEXT NOT NULL DEFAULT 'warning',
                window_seconds INTEGER NOT NULL DEFAULT 60,
                enabled INTEGER NOT NULL DEFAULT 1,
                webhook_url TEXT,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_rules_group
                ON group_rules(group_id);

            CREATE TABLE IF NOT EXISTS group_alert_channels (
                id TEXT PRIMARY KEY,
                group_id TEXT NOT NULL,
                account_id TEXT NOT NULL DEFAULT '',
                type TEXT NOT NULL,
                target TEXT NOT NULL,
                webhook_method TEXT,
                webhook_headers TEXT,
                webhook_body TEXT,
                enabled INTEGER NOT NULL DEFAULT 1,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_channels_group
                ON group_alert_channels(group_id);

            CREATE TABLE IF NOT EXISTS rule_states (
                agent_id TEXT NOT NULL,
                rule_id TEXT NOT NULL,
                is_firing INTEGER NOT NULL DEFAULT 0,
                firing_since REAL,
                last_sample_at REAL,
                occurrence_id TEXT,
                updated_at REAL NOT NULL,
                PRIMARY KEY (agent_id, rule_id)
            );

            CREATE TABLE IF NOT EXISTS alert_occurrences (
                id TEXT PRIMARY KEY,
                account_id TEXT NOT NULL DEFAULT '',
                group_id TEXT NOT NULL,
                agent_id TEXT NOT NULL,
                rule_id TEXT NOT NULL,
                severity TEXT NOT NULL,
                metric TEXT NOT NULL,
                message TEXT NOT NULL,
                anomaly_type TEXT NOT NULL,
                anomaly_data TEXT,
                created_at REAL NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_occurrences_group
                ON alert_occurrences(group_id, created_at);

            CREATE TABLE IF NOT EXISTS deliveries (
                occurrence_id TEXT NOT NULL,
                channel_id TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                attempts INTEGER NOT NULL DEFAULT 0,
                last_attempt_at REAL,
                channel_snapshot TEXT NOT NULL,
                created_at REAL NOT NULL,
                PRIMARY KEY (occurrence_id, channel_id)
            );

            CREATE INDEX IF NOT EXISTS idx_deliveries_status
                ON deliveries(status);

            CREATE TABLE IF NOT EXISTS delivery_attempts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                occurrence_id TEXT NOT NULL,
                channel_id TEXT NOT NULL,
                attempt_number INTEGER NOT NULL,
                outcome TEXT NOT NULL,
                response_code INTEGER,
                error TEXT,
                attempted_at REAL NOT NULL,
                UNIQUE (occurrence_id, channel_id, attempt_number)
            );
        """)
        self.conn.commit()

    @contextmanager
    def transaction(self):
        """Run a block atomically. SQLite errors surface as StoreUnavailableError."""
        with self._lock:
            if self.conn is None:
                raise StoreUnavailableError("Database is not connected")
            try:
                yield self.conn
                self.conn.commit()
            except sqlite3.Error as e:
                self.conn.rollback()
                raise StoreUnavailableError(str(e)) from e
            except Exception:
                self.conn.rollback()
                raise

    def _query(self, sql, params=()):
        with self._lock:
            if self.conn is None:
                raise StoreUnavailableError("Database is not connected")
            try:
                return self.conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise StoreUnavailableError(str(e)) from e

    # --- Config (written by the external CRUD API; helpers for fixtures) ---

    def upsert_group(self, group_id, name, account_id="", category="store", description=""):
        now = time.time()
        with self.transaction() as conn:
            conn.execute("""
                INSERT INTO agent_groups (id, account_id, name, category, description, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    account_id = excluded.account_id, name = excluded.name,
                    category = excluded.category, description = excluded.description,
                    updated_at = excluded.updated_at
            """, (group_id, account_id, name, category, description, now, now))

    def upsert_agent(self, agent_id, group_id=None, account_id="", display_name=""):
        with self.transaction() as conn:
            conn.execute("""
                INSERT INTO agents (id, account_id, group_id, display_name, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    account_id = excluded.account_id, group_id = excluded.group_id,
                    display_name = excluded.display_name
            """, (agent_id, account_id, group_id, display_name, time.time()))

    def delete_agent(self, agent_id):
        with self.transaction() as conn:
            conn.execute("DELETE FROM agents WHERE id = ?", (agent_id,))
            conn.execute("DELETE FROM rule_states WHERE agent_id = ?", (agent_id,))

    def upsert_rule(self, rule: Rule):
        now = time.time()
        with self.transaction() as conn:
            conn.execute("""
                INSERT INTO group_rules
                (id, group_id, account_id, name, metric, operator, threshold, severity,
                 window_seconds, enabled, webhook_url, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name, metric = excluded.metric,
                    operator = excluded.operator, threshold = excluded.threshold,
                    severity = excluded.severity, window_seconds = excluded.window_seconds,
                    enabled = excluded.enabled, webhook_url = excluded.webhook_url,
                    updated_at = excluded.updated_at
            """, (
                rule.id, rule.group_id, rule.account_id, rule.name, rule.metric.value,
                rule.operator.value, rule.threshold, rule.severity.value,
                rule.window_seconds, int(rule.enabled), rule.webhook_url, now, now,
            ))

    def delete_rule(self, rule_id):
        with self.transaction() as conn:
            conn.execute("DELETE FROM group_rules WHERE id = ?", (rule_id,))

    def upsert_channel(self, channel: AlertChannel, account_id=""):
        now = time.time()
        with self.transaction() as conn:
            conn.execute("""
                INSERT INTO group_alert_channels
                (id, group_id, account_id, type, target, webhook_method, webhook_headers,
                 webhook_body, enabled, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    type = excluded.type, target = excluded.target,
                    webhook_method = excluded.webhook_method,
                    webhook_headers = excluded.webhook_headers,
                    webhook_body = excluded.webhook_body,
                    enabled = excluded.enabled, updated_at = excluded.updated_at
            """, (
                channel.id, channel.group_id, account_id, channel.type.value, channel.target,
                channel.webhook_method, channel.webhook_headers, channel.webhook_body,
                int(channel.enabled), now, now,
            ))

    def delete_channel(self, channel_id):
        with self.transaction() as conn:
            conn.execute("DELETE FROM group_alert_channels WHERE id = ?", (channel_id,))

    def get_agent_group(self, agent_id):
        rows = self._query("SELECT group_id FROM agents WHERE id = ?", (agent_id,))
        return rows[0]["group_id"] if rows else None

    def get_group(self, group_id):
        rows = self._query("SELECT * FROM agent_groups WHERE id = ?", (group_id,))
        return dict(rows[0]) if rows else None

    def list_group_agents(self, group_id):
        rows = self._query("SELECT id FROM agents WHERE group_id = ?", (group_id,))
        return [r["id"] for r in rows]

    def get_rules_for_group(self, group_id):
        rows = self._query(
            "SELECT * FROM group_rules WHERE group_id = ? ORDER BY created_at, id", (group_id,)
        )
        rules = []
        for r in rows:
            try:
                rules.append(Rule.from_row(r))
            except (ValueError, KeyError) as e:
                logger.warning(f"Skipping malformed rule {r['id']}: {e}")
        return rules

    def get_channels_for_group(self, group_id):
        rows = self._query(
            "SELECT * FROM group_alert_channels WHERE group_id = ? ORDER BY created_at, id",
            (group_id,),
        )
        channels = []
        for r in rows:
            try:
                channels.append(AlertChannel.from_row(r))
            except ValueError as e:
                logger.warning(f"Skipping malformed channel {r['id']}: {e}")
        return channels

    # --- Rule State ---

    def load_rule_states(self):
        rows = self._query("SELECT * FROM rule_states")
        return [RuleState.from_row(r) for r in rows]

    def get_rule_state(self, agent_id, rule_id):
        rows = self._query(
            "SELECT * FROM rule_states WHERE agent_id = ? AND rule_id = ?", (agent_id, rule_id)
        )
        return RuleState.from_row(rows[0]) if rows else None

    def _upsert_state(self, conn, state):
        conn.execute("""
            INSERT INTO rule_states
            (agent_id, rule_id, is_firing, firing_since, last_sample_at, occurrence_id, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(agent_id, rule_id) DO UPDATE SET
                is_firing = excluded.is_firing, firing_since = excluded.firing_since,
                last_sample_at = excluded.last_sample_at,
                occurrence_id = excluded.occurrence_id, updated_at = excluded.updated_at
        """, (
            state.agent_id, state.rule_id, int(state.is_firing), state.firing_since,
            state.last_sample_at, state.occurrence_id, time.time(),
        ))

    def delete_rule_states(self, agent_id=None, rule_id=None):
        query = "DELETE FROM rule_states WHERE 1=1"
        params = []
        if agent_id is not None:
            query += " AND agent_id = ?"
            params.append(agent_id)
        if rule_id is not None:
            query += " AND rule_id = ?"
            params.append(rule_id)
        with self.transaction() as conn:
            conn.execute(query, params)

    def record_firing(self, state: RuleState, occurrence: AlertOccurrence):
        """Flip the pair to firing and insert its occurrence in one transaction.

        The UPDATE only matches a non-firing row, so a second writer for the
        same pair gets DuplicateOccurrenceError and nothing is committed.
        """
        with self.transaction() as conn:
            conn.execute("""
                INSERT OR IGNORE INTO rule_states (agent_id, rule_id, is_firing, updated_at)
                VALUES (?, ?, 0, ?)
            """, (state.agent_id, state.rule_id, time.time()))
            cur = conn.execute("""
                UPDATE rule_states
                SET is_firing = 1, firing_since = ?, last_sample_at = ?,
                    occurrence_id = ?, updated_at = ?
                WHERE agent_id = ? AND rule_id = ? AND is_firing = 0
            """, (
                state.firing_since, state.last_sample_at, occurrence.id, time.time(),
                state.agent_id, state.rule_id,
            ))
            if cur.rowcount == 0:
                row = conn.execute(
                    "SELECT occurrence_id FROM rule_states WHERE agent_id = ? AND rule_id = ?",
                    (state.agent_id, state.rule_id),
                ).fetchone()
                raise DuplicateOccurrenceError(
                    state.agent_id, state.rule_id, row["occurrence_id"] if row else None
                )
            conn.execute("""
                INSERT INTO alert_occurrences
                (id, account_id, group_id, agent_id, rule_id, severity, metric, message,
                 anomaly_type, anomaly_data, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                occurrence.id, occurrence.account_id, occurrence.group_id,
                occurrence.agent_id, occurrence.rule_id, occurrence.severity.value,
                occurrence.metric.value, occurrence.message, occurrence.anomaly_type,
                json.dumps(occurrence.anomaly_data, default=str), occurrence.created_at,
            ))

    def resolve_firing(self, state: RuleState):
        """Persist a FIRING -> OK transition."""
        with self.transaction() as conn:
            conn.execute("""
                UPDATE rule_states
                SET is_firing = 0, firing_since = NULL, occurrence_id = NULL,
                    last_sample_at = ?, updated_at = ?
                WHERE agent_id = ? AND rule_id = ?
            """, (state.last_sample_at, time.time(), state.agent_id, state.rule_id))

    # --- Alert Occurrences ---

    def get_occurrence(self, occurrence_id):
        rows = self._query("SELECT * FROM alert_occurrences WHERE id = ?", (occurrence_id,))
        return AlertOccurrence.from_row(rows[0]) if rows else None

    def list_occurrences(self, group_id, limit=50, offset=0):
        rows = self._query("""
            SELECT * FROM alert_occurrences WHERE group_id = ?
            ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?
        """, (group_id, int(limit), int(offset)))
        return [AlertOccurrence.from_row(r) for r in rows]

    def count_occurrences(self, group_id=None, agent_id=None, rule_id=None):
        query = "SELECT COUNT(*) as cnt FROM alert_occurrences WHERE 1=1"
        params = []
        for column, value in (("group_id", group_id), ("agent_id", agent_id), ("rule_id", rule_id)):
            if value is not None:
                query += f" AND {column} = ?"
                params.append(value)
        return self._query(query, params)[0]["cnt"]

    # --- Deliveries ---

    def create_deliveries(self, occurrence_id, channels):
        """Register a pending delivery per channel; existing pairs are left untouched."""
        now = time.time()
        with self.transaction() as conn:
            conn.executemany("""
                INSERT OR IGNORE INTO deliveries
                (occurrence_id, channel_id, status, attempts, channel_snapshot, created_at)
                VALUES (?, ?, 'pending', 0, ?, ?)
            """, [(occurrence_id, ch.id, json.dumps(_channel_snapshot(ch)), now) for ch in channels])

    def get_delivery(self, occurrence_id, channel_id):
        rows = self._query(
            "SELECT * FROM deliveries WHERE occurrence_id = ? AND channel_id = ?",
            (occurrence_id, channel_id),
        )
        return dict(rows[0]) if rows else None

    def record_attempt(self, attempt: DeliveryAttempt, status: DeliveryStatus):
        with self.transaction() as conn:
            conn.execute("""
                INSERT INTO delivery_attempts
                (occurrence_id, channel_id, attempt_number, outcome, response_code, error, attempted_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                attempt.occurrence_id, attempt.channel_id, attempt.attempt_number,
                attempt.outcome.value, attempt.response_code, attempt.error, attempt.attempted_at,
            ))
            conn.execute("""
                UPDATE deliveries SET status = ?, attempts = ?, last_attempt_at = ?
                WHERE occurrence_id = ? AND channel_id = ?
            """, (
                status.value, attempt.attempt_number, attempt.attempted_at,
                attempt.occurrence_id, attempt.channel_id,
            ))

    def mark_delivery(self, occurrence_id, channel_id, status: DeliveryStatus):
        with self.transaction() as conn:
            conn.execute(
                "UPDATE deliveries SET status = ? WHERE occurrence_id = ? AND channel_id = ?",
                (status.value, occurrence_id, channel_id),
            )

    def get_pending_deliveries(self):
        """Pending deliveries with their occurrence and channel snapshot."""
        rows = self._query("""
            SELECT d.occurrence_id, d.channel_id, d.attempts, d.last_attempt_at, d.channel_snapshot
            FROM deliveries d
            WHERE d.status = 'pending'
            ORDER BY d.created_at ASC
        """)
        pending = []
        for r in rows:
            occurrence = self.get_occurrence(r["occurrence_id"])
            if occurrence is None:
                logger.warning(f"Pending delivery references missing occurrence {r['occurrence_id']}")
                continue
            pending.append({
                "occurrence": occurrence,
                "channel": _channel_from_snapshot(json.loads(r["channel_snapshot"])),
                "attempts": r["attempts"],
                "last_attempt_at": r["last_attempt_at"],
            })
        return pending

    def list_deliveries(self, occurrence_id):
        deliveries = self._query(
            "SELECT * FROM deliveries WHERE occurrence_id = ? ORDER BY channel_id", (occurrence_id,)
        )
        attempts = self._query("""
            SELECT * FROM delivery_attempts WHERE occurrence_id = ?
            ORDER BY channel_id, attempt_number
        """, (occurrence_id,))
        result = []
        for d in deliveries:
            entry = dict(d)
            entry.pop("channel_snapshot", None)
            entry["attempt_log"] = [dict(a) for a in attempts if a["channel_id"] == d["channel_id"]]
            result.append(entry)
        return result

    def count_attempts(self, occurrence_id, channel_id):
        rows = self._query("""
            SELECT COUNT(*) as cnt FROM delivery_attempts
            WHERE occurrence_id = ? AND channel_id = ?
        """, (occurrence_id, channel_id))
        return rows[0]["cnt"]


def _channel_snapshot(channel: AlertChannel):
    return {
        "id": channel.id,
        "group_id": channel.group_id,
        "type": channel.type.value,
        "target": channel.target,
        "webhook_method": channel.webhook_method,
        "webhook_headers": channel.webhook_headers,
        "webhook_body": channel.webhook_body,
        "enabled": int(channel.enabled),
    }


def _channel_from_snapshot(data):
    return AlertChannel.from_row(data)
