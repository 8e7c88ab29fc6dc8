"""
Bounded fire-and-forget queue for write-triggered recomputes.

Write hooks submit entity-days and return immediately; a single dedicated
worker thread drains the queue. Duplicate pending entity-days are coalesced
and a full queue drops the request with a warning, leaving the periodic
sweep to pick the change up on its next pass.
"""

import queue
import threading
from datetime import date
from typing import Any, Callable, Optional

import structlog

logger = structlog.get_logger(__name__)

EntityDay = tuple[str, str, date]

_STOP = object()


class RecomputeQueue:
    """
    Single-worker queue of (organization_id, user_id, day) recomputes.

    Attributes:
        handler: Called as handler(organization_id, user_id, day); a False
            return or an exception counts as a failure
        maxsize: Queue capacity
        processed_count: Entity-days handled successfully
        failed_count: Entity-days whose handler failed
        dropped_count: Submissions rejected because the queue was full
        coalesced_count: Submissions merged into an already pending entry
    """

    def __init__(
        self,
        handler: Callable[[str, str, date], Any],
        maxsize: int = 1000,
        name: str = "recompute-worker",
    ):
        self.handler = handler
        self.maxsize = maxsize
        self.name = name
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._pending: set[EntityDay] = set()
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

        self.processed_count = 0
        self.failed_count = 0
        self.dropped_count = 0
        self.coalesced_count = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._pending)

    def start(self) -> None:
        """Start the worker thread; no-op when already running."""
        if self.running:
            logger.warning("recompute_queue_already_running", name=self.name)
            return

        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        logger.info("recompute_queue_started", name=self.name, maxsize=self.maxsize)

    def stop(self, drain: bool = True, timeout: Optional[float] = None) -> None:
        """
        Stop the worker thread.

        Args:
            drain: Process pending entity-days before stopping; otherwise
                discard them
            timeout: Maximum seconds to wait for the worker to exit
        """
        if not self.running:
            return

        discarded = 0
        if not drain:
            discarded = self._discard_pending()

        self._queue.put(_STOP)
        self._thread.join(timeout)
        self._thread = None
        logger.info(
            "recompute_queue_stopped",
            name=self.name,
            drained=drain,
            discarded=discarded,
            processed=self.processed_count,
            failed=self.failed_count,
        )

    def submit(self, organization_id: str, user_id: str, day: date) -> bool:
        """
        Enqueue an entity-day without blocking.

        Returns:
            True if the entity-day is queued (or already pending), False if
            the queue was full and the request was dropped
        """
        item: EntityDay = (organization_id, user_id, day)
        with self._lock:
            if item in self._pending:
                self.coalesced_count += 1
                return True
            try:
                self._queue.put_nowait(item)
            except queue.Full:
                self.dropped_count += 1
                logger.warning(
                    "recompute_queue_full",
                    organization_id=organization_id,
                    user_id=user_id,
                    bucket_date=day.isoformat(),
                    maxsize=self.maxsize,
                )
                return False
            self._pending.add(item)
        return True

    def join(self) -> None:
        """Block until every queued entity-day has been handled."""
        self._queue.join()

    def _discard_pending(self) -> int:
        discarded = 0
        with self._lock:
            while True:
                try:
                    self._queue.get_nowait()
                except queue.Empty:
                    break
                self._queue.task_done()
                discarded += 1
            self._pending.clear()
        return discarded

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                with self._lock:
                    # Released before handling so a write arriving mid-recompute queues again.
                    self._pending.discard(item)
                self._handle(item)
            finally:
                self._queue.task_done()

    def _handle(self, item: EntityDay) -> None:
        organization_id, user_id, day = item
        try:
            ok = self.handler(organization_id, user_id, day)
        except Exception as e:
            ok = False
            logger.error(
                "recompute_queue_handler_failed",
                organization_id=organization_id,
                user_id=user_id,
                bucket_date=day.isoformat(),
                error=str(e),
            )

        if ok is False:
            self.failed_count += 1
        else:
            self.processed_count += 1
