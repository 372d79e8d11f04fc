import logging
import queue
import threading
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Callable, Dict, List, NamedTuple, Optional

import requests

from observatory.datadog import build_stream_event, send_stream_event
from observatory.errors import PagerUnavailable
from observatory.metrics import ALARMS_COUNTER, push_metrics

logger = logging.getLogger(__name__)


class Event(NamedTuple):
    """Report a chain's signing record to the pager."""

    chain_id: str

    # Number of blocks in the tracked window missing our signature
    missed_blocks: int

    # Number of blocks in the tracked window carrying our signature
    recent_blocks: int


class GetAlarms(NamedTuple):
    """Drain the alarms accumulated by the pager."""


class PagerAlarm(NamedTuple):
    """Pager alarm which indicates something is wrong and a page should be sent."""

    chain_id: str
    missed_blocks: int

    def __str__(self):
        return f"{self.chain_id} missed {self.missed_blocks} blocks!"


class PagerService:
    """
    Alarm ledger with hysteresis.

    A chain is armed once its missed block count reaches
    ``missed_blocks_threshold`` and disarmed once it has signed at least
    ``recovered_after_threshold`` blocks. Not thread safe: run it behind a
    ``PagerClient``, which serializes every request onto a single thread.
    """

    DEFAULT_MISSED_BLOCKS_THRESHOLD = 50
    DEFAULT_RECOVERED_AFTER_THRESHOLD = 5

    def __init__(
        self,
        missed_blocks_threshold: int = DEFAULT_MISSED_BLOCKS_THRESHOLD,
        recovered_after_threshold: int = DEFAULT_RECOVERED_AFTER_THRESHOLD,
    ):
        self.chains: Dict[str, int] = {}
        self.missed_blocks_threshold = missed_blocks_threshold
        self.recovered_after_threshold = recovered_after_threshold

    def call(self, request):
        if isinstance(request, Event):
            self.handle_event(request.chain_id, request.missed_blocks, request.recent_blocks)
            return None
        if isinstance(request, GetAlarms):
            return self.get_alarms()
        raise TypeError(f"unexpected pager request: {request!r}")

    def handle_event(self, chain_id: str, missed_blocks: int, recent_blocks: int):
        if recent_blocks >= self.recovered_after_threshold:
            if self.chains.pop(chain_id, None) is not None:
                logger.info(f"[{chain_id}] signing recovered ({recent_blocks} recent blocks)")
        elif missed_blocks >= self.missed_blocks_threshold:
            self.chains[chain_id] = missed_blocks

    def get_alarms(self) -> List[PagerAlarm]:
        result = [
            PagerAlarm(chain_id, missed_blocks)
            for chain_id, missed_blocks in sorted(self.chains.items())
        ]
        self.chains.clear()
        return result


class PagerClient:
    """
    Bounded request/response channel in front of a single ``PagerService``.

    Requests are queued and handled one at a time by a worker thread. Callers
    block while the queue is full and then wait for the service's response.
    """

    # How often a waiting sender re-checks that the worker is still alive
    PUT_POLL_INTERVAL = 0.5

    def __init__(self, service: PagerService, bound: int):
        self.service = service
        self.queue: "queue.Queue" = queue.Queue(maxsize=max(1, bound))
        self.closed = threading.Event()
        self.thread = threading.Thread(target=self._worker, name="pager", daemon=True)

    def start(self):
        self.thread.start()
        return self

    def close(self):
        """Stop the worker; pending and future requests fail with PagerUnavailable."""
        self.closed.set()

    def call(self, request):
        future: Future = Future()

        while True:
            if self.closed.is_set() or not self.thread.is_alive():
                raise PagerUnavailable("pager service is not running")
            try:
                self.queue.put((request, future), timeout=self.PUT_POLL_INTERVAL)
                break
            except queue.Full:
                continue

        while True:
            try:
                return future.result(timeout=self.PUT_POLL_INTERVAL)
            except FutureTimeoutError:
                if not self.thread.is_alive():
                    raise PagerUnavailable("pager service stopped before responding")

    def send_event(self, chain_id: str, missed_blocks: int, recent_blocks: int):
        self.call(Event(chain_id, missed_blocks, recent_blocks))

    def get_alarms(self) -> List[PagerAlarm]:
        return self.call(GetAlarms())

    def _worker(self):
        while not self.closed.is_set():
            try:
                request, future = self.queue.get(timeout=self.PUT_POLL_INTERVAL)
            except queue.Empty:
                continue

            if not future.set_running_or_notify_cancel():
                continue
            try:
                future.set_result(self.service.call(request))
            except Exception as e:
                future.set_exception(e)

        # Fail whatever is still queued so no sender waits forever
        while True:
            try:
                _, future = self.queue.get_nowait()
            except queue.Empty:
                break
            if future.set_running_or_notify_cancel():
                future.set_exception(PagerUnavailable("pager service stopped"))


def report_alarm(alarm: PagerAlarm, datadog_config: Optional[dict] = None) -> bool:
    """Report a triggered alarm to the alert delivery service."""
    logger.warning(f"[{alarm.chain_id}] missed {alarm.missed_blocks} blocks!")

    if not datadog_config:
        logger.debug(f"[{alarm.chain_id}] no datadog config; alarm logged only")
        ALARMS_COUNTER.labels(network=alarm.chain_id, delivered="false").inc()
        return False

    event = build_stream_event(
        title=str(alarm),
        # Text field must contain @pagerduty to trigger alert
        text=f"@pagerduty event: {alarm!r}",
        tags=datadog_config.get("tags"),
    )

    try:
        send_stream_event(event, datadog_config["api_key"], datadog_config.get("site", "datadoghq.com"))
    except requests.RequestException as e:
        logger.warning(f"[{alarm.chain_id}] unable to send event to datadog: {e}")
        ALARMS_COUNTER.labels(network=alarm.chain_id, delivered="false").inc()
        return False

    logger.info(f"[{alarm.chain_id}] event sent to datadog")
    ALARMS_COUNTER.labels(network=alarm.chain_id, delivered="true").inc()
    return True


def monitor_pager_service(
    pager: PagerClient,
    alerting_interval: float,
    stop_event: threading.Event,
    reporter: Callable[[PagerAlarm], bool] = report_alarm,
    metrics_config: Optional[dict] = None,
):
    """Monitor the pager service for alarms, reporting them to the configured alerting service."""
    while True:
        for alarm in pager.get_alarms():
            reporter(alarm)

        if metrics_config:
            push_metrics(metrics_config["pushgateway"], metrics_config["job"])

        if stop_event.wait(alerting_interval):
            return
