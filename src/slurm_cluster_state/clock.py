"""Staleness clock for cheap change detection by polling clients."""

from datetime import datetime
from threading import Lock
from typing import NamedTuple


class ClockReading(NamedTuple):
    """Version and commit time of the last successful reconciliation."""

    version: int
    timestamp: datetime | None


class StalenessClock:
    """Monotonic (version, timestamp) pair advanced on every commit.

    Readers call :meth:`current`, which is a single attribute read and never
    takes a lock. The pair is stored as one immutable tuple so a reader can
    not see a version with another version's timestamp.
    """

    def __init__(self, version: int = 0, timestamp: datetime | None = None):
        self._reading = ClockReading(version, timestamp)
        self._advance_lock = Lock()

    def current(self) -> ClockReading:
        return self._reading

    def changed_since(self, version: int) -> bool:
        """Whether anything was committed after ``version``."""
        return self._reading.version != version

    def advance(self, version: int, timestamp: datetime) -> None:
        """Publish a new reading.

        Only the reconciler calls this, after a successful commit.

        Raises:
            ValueError: If ``version`` does not move the clock forward.
        """
        with self._advance_lock:
            if version <= self._reading.version:
                msg = (
                    f"Clock version must increase: {version} <= "
                    f"{self._reading.version}"
                )
                raise ValueError(msg)
            self._reading = ClockReading(version, timestamp)
