"""Periodic snapshot polling.

Drives the orchestrator on a fixed interval while the consumer is visible,
keeps the last good snapshot, and publishes snapshots and connection states
to subscribers.
"""

import threading
import time
from collections.abc import Callable

import structlog

from . import models
from .fetcher import DEFAULT_TAIL_LINES, SnapshotOrchestrator
from .remote import ConnectionState, SessionManager

logger = structlog.get_logger(__name__)

DEFAULT_POLL_INTERVAL = 30.0

SnapshotCallback = Callable[[models.Snapshot], None]
StatusCallback = Callable[[ConnectionState], None]


class PollDriver:
    """Runs fetch cycles in a background thread and publishes the results.

    Cycles never overlap: the loop and ``refresh_now()`` share one cycle
    lock. Stopping only prevents future cycles; a cycle already running is
    allowed to finish.
    """

    def __init__(
        self,
        orchestrator: SnapshotOrchestrator,
        session: SessionManager,
        interval: float = DEFAULT_POLL_INTERVAL,
    ):
        """Initialize the poll driver.

        Args:
            orchestrator: Snapshot source.
            session: Session reconnected after a failed cycle.
            interval: Seconds between cycle starts.

        Raises:
            ValueError: If interval is not positive.
        """
        if interval <= 0:
            msg = "interval must be positive"
            raise ValueError(msg)
        self._orchestrator = orchestrator
        self._session = session
        self._interval = interval

        self._cycle_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._stop: threading.Event | None = None
        self._thread: threading.Thread | None = None
        self._latest: models.Snapshot | None = None
        self._snapshot_subscribers: list[SnapshotCallback] = []
        self._status_subscribers: list[StatusCallback] = []
        self.error_count = 0
        self.last_duration: float | None = None

        session.on_status_change(self._publish_status)

    @property
    def latest(self) -> models.Snapshot | None:
        """Last successfully fetched snapshot."""
        with self._state_lock:
            return self._latest

    @property
    def running(self) -> bool:
        with self._state_lock:
            return self._stop is not None

    def subscribe(self, callback: SnapshotCallback) -> None:
        """Register a callback for every new snapshot."""
        with self._state_lock:
            self._snapshot_subscribers.append(callback)

    def subscribe_status(self, callback: StatusCallback) -> None:
        """Register a callback for every connection state change."""
        with self._state_lock:
            self._status_subscribers.append(callback)

    def start(self) -> None:
        """Start polling; the first cycle runs immediately."""
        with self._state_lock:
            if self._stop is not None:
                return
            self._stop = threading.Event()
            self._thread = threading.Thread(
                target=self._run,
                args=(self._stop,),
                name="slurm-poll",
                daemon=True,
            )
            self._thread.start()
        logger.info("Polling started", interval_seconds=self._interval)

    def stop(self) -> None:
        """Stop scheduling cycles."""
        with self._state_lock:
            if self._stop is None:
                return
            self._stop.set()
            self._stop = None
            self._thread = None
        logger.info("Polling stopped")

    def set_visible(self, visible: bool) -> None:
        """Poll only while the consumer is visible."""
        if visible:
            self.start()
        else:
            self.stop()

    def refresh_now(self) -> models.Snapshot | None:
        """Run one cycle immediately, waiting for any running cycle first."""
        return self.run_cycle()

    def tail_log(self, path: str, lines: int = DEFAULT_TAIL_LINES) -> str:
        """Return the last lines of a remote file such as a job's stdout."""
        return self._orchestrator.fetch_log_tail(path, lines)

    def run_cycle(self) -> models.Snapshot | None:
        """Fetch one snapshot and publish it.

        On failure the previous snapshot is kept and a reconnect is attempted.

        Returns:
            The new snapshot, or None if the fetch failed.
        """
        with self._cycle_lock:
            start = time.time()
            try:
                snapshot = self._orchestrator.fetch_all()
            except Exception:
                logger.exception("Snapshot fetch failed")
                with self._state_lock:
                    self.error_count += 1
                self._reconnect()
                return None

            with self._state_lock:
                self._latest = snapshot
                self.last_duration = time.time() - start
                subscribers = list(self._snapshot_subscribers)
            for callback in subscribers:
                callback(snapshot)
            return snapshot

    def _reconnect(self) -> None:
        try:
            self._session.connect()
        except Exception as exc:
            # The session's own reconnect loop keeps retrying
            logger.warning("Reconnect after failed fetch did not succeed", error=str(exc))

    def _publish_status(self, status: ConnectionState) -> None:
        with self._state_lock:
            subscribers = list(self._status_subscribers)
        for callback in subscribers:
            callback(status)

    def _run(self, stop: threading.Event) -> None:
        while not stop.is_set():
            self.run_cycle()
            if stop.wait(self._interval):
                return
