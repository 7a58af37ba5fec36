"""Outbound HTTP webhook calls for alert channels."""
import json
import logging
import time

import requests

from __version__ import __version__

logger = logging.getLogger("fleetwatch.notifications.webhook")

ALLOWED_METHODS = {"GET", "POST", "PUT", "PATCH", "DELETE"}


class WebhookConfigError(ValueError):
    """Channel config cannot produce a request (bad method, headers or URL)."""


class DeliveryError(Exception):
    """A webhook call failed; ``timed_out`` separates timeouts from other failures."""
    def __init__(self, message, status_code=None, timed_out=False):
        super().__init__(message)
        self.status_code = status_code
        self.timed_out = timed_out


def parse_headers(raw):
    """Channel headers are stored as a JSON object string mapping str -> str."""
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return {}
    if isinstance(raw, dict):
        headers = raw
    else:
        try:
            headers = json.loads(raw)
        except ValueError as e:
            raise WebhookConfigError(f"webhook_headers is not valid JSON: {e}") from e
    if not isinstance(headers, dict):
        raise WebhookConfigError("webhook_headers must be a JSON object")
    return {str(k): str(v) for k, v in headers.items()}


def normalize_method(method):
    method = (method or "POST").strip().upper()
    if method not in ALLOWED_METHODS:
        raise WebhookConfigError(f"Unsupported webhook method: {method}")
    return method


def is_json_content(headers):
    for key, value in headers.items():
        if key.lower() == "content-type":
            return "json" in value.lower()
    return True


class WebhookClient:
    """Issues one HTTP request per call; retries are the dispatcher's job."""

    def __init__(self, timeout=10, session=None):
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": f"fleetwatch/{__version__}"})

    def send(self, method, url, headers=None, body=None):
        """Send the request and return the HTTP status code.

        Raises DeliveryError for timeouts, connection errors and non-2xx responses.
        """
        headers = dict(headers or {})
        if body is not None and not any(k.lower() == "content-type" for k in headers):
            headers["Content-Type"] = "application/json"
        data = body.encode("utf-8") if isinstance(body, str) else body

        start = time.time()
        try:
            resp = self.session.request(method, url, headers=headers, data=data, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            logger.warning(f"{method} {url} timed out after {self.timeout}s")
            raise DeliveryError(f"Timed out after {self.timeout}s", timed_out=True) from e
        except requests.exceptions.RequestException as e:
            logger.warning(f"{method} {url} failed: {e}")
            raise DeliveryError(f"Request error: {e}") from e

        latency = int((time.time() - start) * 1000)
        logger.debug(f"{method} {url} -> {resp.status_code} ({latency}ms)")
        if not 200 <= resp.status_code < 300:
            raise DeliveryError(f"HTTP {resp.status_code} from {url}", status_code=resp.status_code)
        return resp.status_code
