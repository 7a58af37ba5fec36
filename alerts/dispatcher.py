"""Delivery of alert occurrences to email and webhook channels."""
import logging
import queue
import threading
import time
from dataclasses import dataclass

from models.alerts import AlertChannel, AlertOccurrence, DeliveryAttempt
from models.database import StoreUnavailableError
from models.enums import ChannelType, DeliveryOutcome, DeliveryStatus
from notifications.email_sender import EmailDeliveryError
from notifications.templates import default_webhook_body, render_email, render_template
from notifications.webhook_client import (
    DeliveryError, WebhookConfigError, is_json_content, normalize_method, parse_headers,
)
from utils.retry_queue import DelayedQueue

logger = logging.getLogger("fleetwatch.alerts.dispatcher")

DROP_OLDEST = "drop_oldest"
REJECT_NEW = "reject_new"
QUEUE_POLICIES = (DROP_OLDEST, REJECT_NEW)


class ChannelConfigError(ValueError):
    """Channel cannot be delivered to as configured; never retried."""


@dataclass
class DeliveryJob:
    occurrence: AlertOccurrence
    channel: AlertChannel
    attempt: int = 1

    @property
    def key(self):
        return (self.occurrence.id, self.channel.id)


class ChannelDispatcher:
    """Fans occurrences out to channels on a bounded queue served by worker threads.

    Each (occurrence, channel) pair is an independent job. A failed attempt
    is rescheduled on a delayed-retry queue with exponential backoff until
    ``max_attempts`` is reached; configuration errors fail immediately.
    Every attempt is recorded in the store, which is what ``resume_pending``
    reads after a restart.
    """

    def __init__(self, db, email_sender=None, webhook_client=None, workers=4, queue_size=1000,
                 queue_policy=DROP_OLDEST, max_attempts=5, base_delay=5.0, max_delay=300.0,
                 clock=time.time, retry_clock=time.monotonic, sleep=time.sleep):
        if queue_policy not in QUEUE_POLICIES:
            raise ValueError(f"Unknown queue policy: {queue_policy}")
        self.db = db
        self.email_sender = email_sender
        self.webhook_client = webhook_client
        self.workers = workers
        self.queue_policy = queue_policy
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._clock = clock
        self._sleep = sleep

        self._queue = queue.Queue(maxsize=queue_size)
        self._queue_lock = threading.Lock()
        self._retries = DelayedQueue(retry_clock)
        self._inflight = set()
        self._cancelled = set()
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._threads = []

        self.counters = {
            "submitted": 0, "attempts": 0, "succeeded": 0, "failed": 0,
            "retries_scheduled": 0, "dropped": 0, "rejected": 0, "cancelled": 0,
        }

    # --- Lifecycle ---

    def start(self):
        if self._threads:
            return
        self._stop.clear()
        for i in range(self.workers):
            t = threading.Thread(target=self._worker, name=f"dispatch-{i}", daemon=True)
            t.start()
            self._threads.append(t)
        pump = threading.Thread(target=self._retry_pump, name="dispatch-retry", daemon=True)
        pump.start()
        self._threads.append(pump)
        logger.info(f"Dispatcher started with {self.workers} workers (policy={self.queue_policy})")

    def stop(self, timeout=5):
        self._stop.set()
        for t in self._threads:
            t.join(timeout=timeout)
        self._threads = []
        logger.info("Dispatcher stopped")

    def drain(self, timeout=60):
        """Wait until no job is queued, in flight or scheduled. Returns True if idle."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            with self._lock:
                idle = not self._inflight
            if idle and self._queue.unfinished_tasks == 0 and len(self._retries) == 0:
                return True
            time.sleep(0.05)
        return False

    def _worker(self):
        while not self._stop.is_set():
            try:
                job = self._queue.get(timeout=0.5)
            except queue.Empty:
                continue
            try:
                self._process(job)
            finally:
                self._queue.task_done()

    def _retry_pump(self):
        while not self._stop.is_set():
            for job in self._retries.pop_due():
                self._enqueue(job)
            wait = self._retries.next_due_in()
            self._retries.wait(0.5 if wait is None else min(wait, 0.5))

    def run_once(self):
        """Process queued jobs (and retries already due) in the calling thread."""
        for job in self._retries.pop_due():
            self._enqueue(job)
        attempts = []
        while True:
            try:
                job = self._queue.get_nowait()
            except queue.Empty:
                return attempts
            try:
                attempt = self._process(job)
                if attempt is not None:
                    attempts.append(attempt)
            finally:
                self._queue.task_done()

    # --- Submission ---

    def submit(self, occurrence, channels):
        """Register deliveries and queue one job per channel. Never blocks on I/O."""
        channels = list(channels)
        if not channels:
            return 0
        try:
            self.db.create_deliveries(occurrence.id, channels)
        except StoreUnavailableError as e:
            logger.error(f"Could not register deliveries for {occurrence.id}: {e}")
        queued = 0
        for channel in channels:
            job = DeliveryJob(occurrence, channel, 1)
            with self._lock:
                self._inflight.add(job.key)
                self.counters["submitted"] += 1
            if self._enqueue(job):
                queued += 1
        return queued

    def _enqueue(self, job):
        with self._queue_lock:
            try:
                self._queue.put_nowait(job)
                return True
            except queue.Full:
                pass
            if self.queue_policy == REJECT_NEW:
                self._shed(job, "rejected")
                return False
            try:
                oldest = self._queue.get_nowait()
                self._queue.task_done()
                self._shed(oldest, "dropped")
            except queue.Empty:
                pass
            self._queue.put_nowait(job)
            return True

    def _shed(self, job, counter):
        # Shed jobs stay pending in the store for resume_pending().
        with self._lock:
            self.counters[counter] += 1
            self._inflight.discard(job.key)
            self._cancelled.discard(job.key)
        logger.warning(
            f"Dispatch queue full: {counter} delivery of {job.occurrence.id} "
            f"to channel {job.channel.id} (attempt {job.attempt})"
        )

    def resume_pending(self):
        """Re-queue deliveries left pending by a previous run.

        Attempt numbering continues from what the store recorded; a delivery
        whose budget is already spent is marked failed, never retried.
        """
        try:
            pending = self.db.get_pending_deliveries()
        except StoreUnavailableError as e:
            logger.error(f"Could not load pending deliveries: {e}")
            return 0

        resumed = 0
        for entry in pending:
            occurrence, channel = entry["occurrence"], entry["channel"]
            done = entry["attempts"] or 0
            job = DeliveryJob(occurrence, channel, done + 1)
            with self._lock:
                if job.key in self._inflight:
                    continue
            if done >= self.max_attempts:
                self._mark(job, DeliveryStatus.FAILED)
                continue
            delay = 0.0
            if done and entry["last_attempt_at"] is not None:
                delay = max(0.0, entry["last_attempt_at"] + self.retry_delay(done) - self._clock())
            with self._lock:
                self._inflight.add(job.key)
            if delay > 0:
                self._retries.schedule(job, delay)
            else:
                self._enqueue(job)
            resumed += 1
        if resumed:
            logger.info(f"Resumed {resumed} pending deliveries")
        return resumed

    def cancel(self, occurrence_id=None, channel_id=None):
        """Cancel scheduled retries for an occurrence or channel; marks them failed."""
        def matches(job):
            return ((occurrence_id is None or job.occurrence.id == occurrence_id)
                    and (channel_id is None or job.channel.id == channel_id))

        cancelled = self._retries.cancel(matches)
        # Jobs in flight now; later submissions are unaffected.
        with self._lock:
            self._cancelled.update(
                key for key in self._inflight
                if (occurrence_id is None or key[0] == occurrence_id)
                and (channel_id is None or key[1] == channel_id)
            )
        for job in cancelled:
            self._finish_cancelled(job)
        return len(cancelled)

    def _is_cancelled(self, job):
        with self._lock:
            return job.key in self._cancelled

    def _finish_cancelled(self, job):
        with self._lock:
            self.counters["cancelled"] += 1
            self._inflight.discard(job.key)
            self._cancelled.discard(job.key)
        self._mark(job, DeliveryStatus.FAILED)
        logger.info(f"Cancelled delivery of {job.occurrence.id} to channel {job.channel.id}")

    # --- Delivery ---

    def retry_delay(self, attempt_number):
        return min(self.base_delay * 2 ** (attempt_number - 1), self.max_delay)

    def dispatch(self, occurrence, channels):
        """Deliver synchronously to every channel, retrying in-line. Returns all attempts."""
        channels = list(channels)
        if channels:
            try:
                self.db.create_deliveries(occurrence.id, channels)
            except StoreUnavailableError as e:
                logger.error(f"Could not register deliveries for {occurrence.id}: {e}")
        attempts = []
        for channel in channels:
            job = DeliveryJob(occurrence, channel, 1)
            while True:
                attempt, status = self._attempt_and_record(job)
                attempts.append(attempt)
                if status != DeliveryStatus.PENDING:
                    break
                self._sleep(self.retry_delay(job.attempt))
                job = DeliveryJob(occurrence, channel, job.attempt + 1)
        return attempts

    def _process(self, job):
        if self._is_cancelled(job):
            self._finish_cancelled(job)
            return None
        attempt, status = self._attempt_and_record(job)
        if status == DeliveryStatus.PENDING:
            delay = self.retry_delay(job.attempt)
            self._retries.schedule(DeliveryJob(job.occurrence, job.channel, job.attempt + 1), delay)
            with self._lock:
                self.counters["retries_scheduled"] += 1
        else:
            with self._lock:
                self._inflight.discard(job.key)
                self._cancelled.discard(job.key)
        return attempt

    def _attempt_and_record(self, job):
        attempt, config_error = self._attempt(job)
        if attempt.succeeded:
            status = DeliveryStatus.SUCCESS
        elif config_error or job.attempt >= self.max_attempts:
            status = DeliveryStatus.FAILED
        else:
            status = DeliveryStatus.PENDING

        try:
            self.db.record_attempt(attempt, status)
        except StoreUnavailableError as e:
            logger.error(f"Could not record attempt {job.attempt} for {job.key}: {e}")

        with self._lock:
            self.counters["attempts"] += 1
            if status == DeliveryStatus.SUCCESS:
                self.counters["succeeded"] += 1
            elif status == DeliveryStatus.FAILED:
                self.counters["failed"] += 1

        if status == DeliveryStatus.SUCCESS:
            logger.info(f"Delivered {job.occurrence.id[:8]} to {job.channel.type.value} "
                        f"channel {job.channel.id} (attempt {job.attempt})")
        elif status == DeliveryStatus.FAILED:
            logger.warning(f"Delivery of {job.occurrence.id[:8]} to channel {job.channel.id} failed "
                           f"after {job.attempt} attempt(s): {attempt.error}")
        else:
            logger.warning(f"Attempt {job.attempt} to channel {job.channel.id} failed "
                           f"({attempt.error}); retrying in {self.retry_delay(job.attempt):.0f}s")
        return attempt, status

    def _attempt(self, job):
        """One delivery attempt. Returns (DeliveryAttempt, is_config_error)."""
        attempted_at = self._clock()
        outcome, code, error, config_error = DeliveryOutcome.SUCCESS, None, None, False
        try:
            code = self._deliver(job.occurrence, job.channel)
        except (ChannelConfigError, WebhookConfigError) as e:
            outcome, error, config_error = DeliveryOutcome.FAILURE, f"configuration error: {e}", True
        except DeliveryError as e:
            outcome = DeliveryOutcome.TIMEOUT if e.timed_out else DeliveryOutcome.FAILURE
            code, error = e.status_code, str(e)
        except EmailDeliveryError as e:
            outcome, error = DeliveryOutcome.FAILURE, str(e)
        except Exception as e:
            logger.error(f"Unexpected delivery error for channel {job.channel.id}: {e}", exc_info=True)
            outcome, error = DeliveryOutcome.FAILURE, str(e)
        attempt = DeliveryAttempt(
            occurrence_id=job.occurrence.id,
            channel_id=job.channel.id,
            attempt_number=job.attempt,
            outcome=outcome,
            response_code=code,
            attempted_at=attempted_at,
            error=error,
        )
        return attempt, config_error

    def _deliver(self, occurrence, channel):
        if not channel.target or not channel.target.strip():
            raise ChannelConfigError("channel target is empty")
        if channel.type == ChannelType.EMAIL:
            if self.email_sender is None:
                raise ChannelConfigError("no email sender configured")
            subject, text, html = render_email(occurrence)
            self.email_sender.deliver(channel.target, subject, text, html)
            return None

        method = normalize_method(channel.webhook_method)
        headers = parse_headers(channel.webhook_headers)
        url = channel.target.strip()
        if not url.lower().startswith(("http://", "https://")):
            raise ChannelConfigError(f"webhook target is not an http(s) URL: {url}")
        if self.webhook_client is None:
            raise ChannelConfigError("no webhook client configured")
        body = None
        if method != "GET":
            if channel.webhook_body:
                body = render_template(channel.webhook_body, occurrence, json_escape=is_json_content(headers))
            else:
                body = default_webhook_body(occurrence)
        return self.webhook_client.send(method, url, headers, body)

    def _mark(self, job, status):
        try:
            self.db.mark_delivery(job.occurrence.id, job.channel.id, status)
        except StoreUnavailableError as e:
            logger.error(f"Could not mark delivery {job.key} {status.value}: {e}")

    def stats(self):
        with self._lock:
            data = dict(self.counters)
            data["in_flight"] = len(self._inflight)
        data["queued"] = self._queue.qsize()
        data["scheduled_retries"] = len(self._retries)
        return data
