"""Decode raw agent events into typed metric samples."""
import json
import logging
import threading
import time

from utils.numbers import parse_number
from models.enums import EventType, Metric
from models.metrics import MetricSample

logger = logging.getLogger("fleetwatch.monitor.normalizer")

NUMERIC_BLOCKS = (
    (Metric.CPU, "cpu"),
    (Metric.MEMORY, "memory"),
    (Metric.DISK, "disk"),
)
CONNECTIVITY_FIELDS = ("network", "connectivity", "networkStatus")
PROCESS_STATUS_FIELDS = ("processStatus", "process_status")
MAX_PROCESSES = 15


class Normalizer:
    """Maps each known event type to a sample extractor.

    Never raises: unknown types and malformed payloads yield no samples and
    bump ``dropped``. The only state kept is the last USB device set per
    agent, used to turn scans into added/removed tokens.
    """

    def __init__(self, health=None, max_devices=256):
        self.health = health
        self.max_devices = max_devices
        self.dropped = 0
        self._usb_snapshots = {}
        self._lock = threading.Lock()
        self._extractors = {
            EventType.TELEMETRY: self._from_telemetry,
            EventType.STATUS: self._from_status,
            EventType.SCAN: self._from_scan,
            EventType.ANOMALY: self._from_anomaly,
        }
        self._process_extractors = (
            _processes_from_block,
            _processes_from_top_level,
            _processes_from_result,
        )

    def normalize(self, agent_id, event_type, payload, timestamp):
        try:
            etype = EventType(event_type)
        except ValueError:
            return self._drop(agent_id, f"unknown event type {event_type!r}")

        observed_at = _parse_timestamp(timestamp)
        if observed_at is None or not agent_id:
            return self._drop(agent_id, f"bad timestamp/agent for {etype.value} event")

        if isinstance(payload, (str, bytes)):
            try:
                payload = json.loads(payload)
            except ValueError:
                return self._drop(agent_id, f"unparseable {etype.value} payload")
        if not isinstance(payload, dict):
            return self._drop(agent_id, f"{etype.value} payload is not an object")

        try:
            return self._extractors[etype](agent_id, payload, observed_at)
        except Exception as e:
            return self._drop(agent_id, f"{etype.value} payload rejected: {e}")

    def _drop(self, agent_id, reason):
        with self._lock:
            self.dropped += 1
        logger.debug(f"Dropped event from {agent_id}: {reason}")
        return []

    def forget_agent(self, agent_id):
        with self._lock:
            self._usb_snapshots.pop(agent_id, None)

    # --- extractors ---

    def _from_telemetry(self, agent_id, payload, observed_at):
        samples = []
        for metric, field in NUMERIC_BLOCKS:
            block = payload.get(field)
            if not isinstance(block, dict):
                continue
            value = parse_number(block.get("usagePercent"))
            if value is not None:
                samples.append(MetricSample(agent_id, metric, value, observed_at))
        status = _process_status(payload)
        if status:
            samples.append(self._process_sample(agent_id, status, payload, observed_at))
        return samples

    def _from_status(self, agent_id, payload, observed_at):
        status = payload.get("status")
        if self.health is not None and isinstance(status, str) and status:
            self.health.update(agent_id, status, observed_at)
        token = _connectivity(payload)
        if token is None:
            return []
        return [MetricSample(agent_id, Metric.NETWORK, token, observed_at)]

    def _from_scan(self, agent_id, payload, observed_at):
        action = str(payload.get("action") or "").lower()
        devices = payload.get("devices")
        if action == "usb" or isinstance(devices, list):
            if not isinstance(devices, list):
                return self._drop(agent_id, "usb scan without a device list")
            return self._usb_changes(agent_id, devices, observed_at)
        if action == "process":
            status = _process_status(payload)
            if status:
                return [self._process_sample(agent_id, status, payload, observed_at)]
            return []
        if action == "network":
            token = _connectivity(payload)
            return [MetricSample(agent_id, Metric.NETWORK, token, observed_at)] if token else []
        return []

    def _from_anomaly(self, agent_id, payload, observed_at):
        category = str(payload.get("category") or "").lower()
        try:
            metric = Metric(category)
        except ValueError:
            return []
        token = str(payload.get("type") or "").strip().lower()
        if not token:
            return []
        details = payload.get("details")
        details = dict(details) if isinstance(details, dict) else {}
        details["severity"] = str(payload.get("severity") or "warning")
        details["message"] = str(payload.get("message") or "Anomaly detected")
        if metric == Metric.PROCESS:
            processes = self._extract_processes(payload)
            if processes:
                details["processes"] = processes
        value = token
        if metric in (Metric.CPU, Metric.MEMORY, Metric.DISK):
            numeric = parse_number(details.get("usagePercent", details.get("value")))
            if numeric is None:
                return []
            value = numeric
        return [MetricSample(agent_id, metric, value, observed_at, details)]

    # --- helpers ---

    def _process_sample(self, agent_id, status, payload, observed_at):
        details = {}
        processes = self._extract_processes(payload)
        if processes:
            details["processes"] = processes
        return MetricSample(agent_id, Metric.PROCESS, status, observed_at, details)

    def _extract_processes(self, payload):
        for extractor in self._process_extractors:
            found = extractor(payload)
            if found:
                return found
        return []

    def _usb_changes(self, agent_id, devices, observed_at):
        current = set()
        for device in devices:
            key = _device_key(device)
            if key is not None:
                current.add(key)
            if len(current) >= self.max_devices:
                break

        with self._lock:
            previous = self._usb_snapshots.get(agent_id)
            self._usb_snapshots[agent_id] = current

        if previous is None:
            return []
        removed = sorted(previous - current)
        added = sorted(current - previous)
        if not removed and not added:
            return []
        token = "removed" if removed else "added"
        details = {"removed": removed, "added": added, "device_count": len(current)}
        return [MetricSample(agent_id, Metric.USB, token, observed_at, details)]


def _parse_timestamp(timestamp):
    if timestamp is None:
        return time.time()
    value = parse_number(timestamp)
    if value is None or value < 0:
        return None
    if value > 1e12:  # milliseconds
        value = value / 1000.0
    return value


def _connectivity(payload):
    for field in CONNECTIVITY_FIELDS:
        value = payload.get(field)
        if isinstance(value, dict):
            value = value.get("status")
        if isinstance(value, str) and value.strip():
            return value.strip().lower()
    return None


def _process_status(payload):
    block = payload.get("process")
    if isinstance(block, dict) and isinstance(block.get("status"), str) and block["status"].strip():
        return block["status"].strip().lower()
    for field in PROCESS_STATUS_FIELDS:
        value = payload.get(field)
        if isinstance(value, str) and value.strip():
            return value.strip().lower()
    return None


def _device_key(device):
    if not isinstance(device, dict):
        return None
    serial = device.get("serial")
    if serial:
        return str(serial)
    vendor, product = device.get("vendorId"), device.get("productId")
    if vendor or product:
        return f"{vendor or '?'}:{product or '?'}"
    name = device.get("product") or device.get("vendor")
    return str(name) if name else None


def _merge_process_lists(top_cpu, top_mem):
    by_name = {}
    for entry in (top_cpu or []):
        if isinstance(entry, dict):
            item = _process_item(entry)
            by_name[item["name"]] = item
    for entry in (top_mem or []):
        if isinstance(entry, dict):
            item = _process_item(entry)
            existing = by_name.get(item["name"], {})
            by_name[item["name"]] = {
                key: existing.get(key) if existing.get(key) is not None else item[key]
                for key in ("name", "cpu", "mem", "pid")
            }
    ordered = sorted(by_name.values(), key=lambda p: -(parse_number(p["cpu"]) or 0.0))
    return ordered[:MAX_PROCESSES]


def _process_item(entry):
    return {
        "name": str(entry.get("name") or "unknown"),
        "cpu": entry.get("cpu"),
        "mem": entry.get("mem"),
        "pid": entry.get("pid"),
    }


def _processes_from_block(payload):
    block = payload.get("process")
    if isinstance(block, dict) and (block.get("topCpu") or block.get("topMem")):
        return _merge_process_lists(block.get("topCpu"), block.get("topMem"))
    return []


def _processes_from_top_level(payload):
    if payload.get("topCpu") or payload.get("topMem"):
        return _merge_process_lists(payload.get("topCpu"), payload.get("topMem"))
    return []


def _processes_from_result(payload):
    result = payload.get("result") or payload.get("data")
    if isinstance(result, dict):
        return _processes_from_block(result) or _processes_from_top_level(result)
    return []
