"""Periodic snapshot poller.

Runs the fetch → reconcile cycle on a fixed interval in a background
thread. A failed cycle is logged and the previously committed state stays
visible; the next cycle starts from a fresh fetch.
"""

import threading
from collections.abc import Callable, Mapping
from typing import Any, TypeAlias

import structlog

from .errors import ReconciliationFailedError, ReconciliationInProgressError
from .reconciler import ReconcileResult, Reconciler
from .snapshot import Snapshot

logger = structlog.get_logger(__name__)

SnapshotFetcher: TypeAlias = Callable[[], Snapshot | Mapping[str, Any]]


class SnapshotPoller:
    """Drives a Reconciler from a snapshot fetcher on a fixed interval."""

    def __init__(
        self,
        fetcher: SnapshotFetcher,
        reconciler: Reconciler,
        interval: float,
    ):
        """Initialize the poller.

        Args:
            fetcher: Zero-argument function returning a fresh snapshot
                (dependencies pre-injected).
            reconciler: Reconciler the snapshots are applied with.
            interval: Seconds between the start of consecutive cycles.

        Raises:
            ValueError: If interval is not positive.
        """
        if interval <= 0:
            msg = "interval must be positive"
            raise ValueError(msg)
        self._fetcher = fetcher
        self._reconciler = reconciler
        self._interval = interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> ReconcileResult | None:
        """Fetch one snapshot and reconcile it.

        Returns:
            The reconciliation result, or None if the cycle failed.
        """
        try:
            snapshot = self._fetcher()
        except Exception:
            logger.exception("Failed to fetch snapshot")
            return None

        try:
            return self._reconciler.reconcile(snapshot)
        except ReconciliationInProgressError:
            logger.info("Skipping cycle, reconciliation already in progress")
        except ReconciliationFailedError:
            logger.exception("Snapshot rejected, keeping previous state")
        return None

    def _run(self) -> None:
        logger.info("Poller started", interval_seconds=self._interval)
        while not self._stop.is_set():
            self.run_once()
            self._stop.wait(self._interval)
        logger.info("Poller stopped")

    def start(self) -> None:
        """Start polling in a daemon thread. No-op if already running."""
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="snapshot-poller",
            daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        """Signal the polling thread to stop and wait for it."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
