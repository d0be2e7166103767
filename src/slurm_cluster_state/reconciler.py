"""Snapshot reconciler.

Applies one scheduler snapshot to the committed cluster state as a single
transaction:

1. parse and validate the snapshot (nothing is touched on failure);
2. diff every table against the committed version;
3. delete allocations and jobs, then nodes and partitions, cascading to the
   rows they own;
4. write partitions, nodes, memberships, node resources, jobs, job resources
   and allocations, enforcing ledger and capacity invariants;
5. derive node and partition aggregates from the written rows;
6. optionally persist, then publish the new version and advance the clock.

The transaction works on private copies of the committed tables, so readers
keep seeing the previous version until the final reference swap. Only one
reconciliation may run at a time; a concurrent request is rejected rather
than queued.
"""

import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol, TypeAlias

import structlog

from .allocations import AllocationGraph
from .entities import EntityStore
from .errors import (
    ReconciliationFailedError,
    ReconciliationInProgressError,
    ReconciliationTimeoutError,
)
from .ledger import ResourceLedger
from .snapshot import Snapshot, parse_snapshot, validate_snapshot
from .state import ClusterState, ClusterStore
from .table import Table, TableDiff

logger = structlog.get_logger(__name__)

DEFAULT_TIMEOUT = 10.0

# Table names in the order their deletions and writes are applied.
TABLES = (
    "allocations",
    "job_resources",
    "jobs",
    "node_partitions",
    "node_resources",
    "nodes",
    "partitions",
)

StageHook: TypeAlias = Callable[[str], None]


class StateWriter(Protocol):
    """Durable sink for committed state versions."""

    def save(
        self,
        state: ClusterState,
        diffs: Mapping[str, TableDiff],
        timeout: float | None = None,
    ) -> None:
        """Durably write ``state``.

        ``timeout`` is the time left in the reconciliation; a writer that
        cannot finish within it raises ReconciliationTimeoutError.
        """
        ...


@dataclass(frozen=True)
class TableChanges:
    """Row counts applied to one table during a reconciliation."""

    added: int = 0
    changed: int = 0
    removed: int = 0
    touched: int = 0

    @classmethod
    def from_diff(cls, diff: TableDiff) -> "TableChanges":
        return cls(
            added=len(diff.added),
            changed=len(diff.changed),
            removed=len(diff.removed),
            touched=len(diff.touched),
        )


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of a successful reconciliation."""

    version: int
    updated_at: datetime
    changes: Mapping[str, TableChanges]

    @property
    def churn(self) -> int:
        """Total number of inserted, updated and deleted rows."""
        return sum(c.added + c.changed + c.removed for c in self.changes.values())


class _Deadline:
    def __init__(self, timeout: float, monotonic: Callable[[], float]):
        self._monotonic = monotonic
        self._timeout = timeout
        self._expires = monotonic() + timeout

    def check(self, stage: str) -> None:
        if self._monotonic() > self._expires:
            msg = f"Reconciliation exceeded {self._timeout}s timeout at stage {stage!r}"
            raise ReconciliationTimeoutError(msg)

    def remaining(self) -> float:
        """Seconds left before the deadline, never negative."""
        return max(self._expires - self._monotonic(), 0.0)


def _incoming_tables(snapshot: Snapshot) -> dict[str, Table]:
    return {
        "allocations": Table(snapshot.allocations),
        "job_resources": Table(snapshot.job_resources),
        "jobs": Table(snapshot.jobs),
        "node_partitions": Table(snapshot.node_partitions),
        "node_resources": Table(snapshot.node_resources),
        "nodes": Table(snapshot.nodes),
        "partitions": Table(snapshot.partitions),
    }


class _Transaction:
    """Private working copy of the committed tables."""

    def __init__(self, base: ClusterState):
        self.base = base
        self.entities: EntityStore = base.entities.copy()
        self.ledger: ResourceLedger = base.ledger.copy()
        self.allocations: AllocationGraph = base.allocations.copy()
        self.diffs: dict[str, TableDiff] = {}

    def _current_tables(self) -> dict[str, Table]:
        return {
            "allocations": self.allocations.allocations,
            "job_resources": self.ledger.job_resources,
            "jobs": self.entities.jobs,
            "node_partitions": self.entities.memberships,
            "node_resources": self.ledger.node_resources,
            "nodes": self.entities.nodes,
            "partitions": self.entities.partitions,
        }

    def plan(self, snapshot: Snapshot) -> None:
        current = self._current_tables()
        incoming = _incoming_tables(snapshot)
        self.diffs = {name: current[name].diff(incoming[name]) for name in TABLES}

    def delete(self) -> None:
        diffs = self.diffs
        removed_jobs = set(diffs["jobs"].removed)
        removed_nodes = set(diffs["nodes"].removed)
        # Allocations and jobs go first so no allocation row is left pointing
        # at a node that is already gone.
        self.allocations.remove(diffs["allocations"].removed)
        self.allocations.remove_jobs(removed_jobs)
        self.ledger.remove_jobs(removed_jobs)
        self.entities.remove_jobs(removed_jobs)
        self.allocations.remove_nodes(removed_nodes)
        self.ledger.remove_nodes(removed_nodes)
        self.entities.remove_nodes(removed_nodes)
        self.entities.remove_partitions(set(diffs["partitions"].removed))

    def write(self) -> None:
        diffs = self.diffs
        self.entities.apply_partitions(diffs["partitions"])
        self.entities.apply_nodes(diffs["nodes"])
        self.entities.apply_memberships(diffs["node_partitions"])
        self.ledger.apply_node_resources(diffs["node_resources"])
        self.entities.apply_jobs(diffs["jobs"])
        self.ledger.apply_job_resources(
            diffs["job_resources"],
            self.entities.jobs,
            recheck=[job.job_id for job in diffs["jobs"].changed],
        )
        self.allocations.apply(diffs["allocations"], self.capacity)

    def capacity(self, node: str, resource: str) -> int:
        return self.ledger.capacity(self.entities.get_node(node), resource)

    def build(self, version: int, updated_at: datetime) -> ClusterState:
        return ClusterState.build(
            version=version,
            updated_at=updated_at,
            entities=self.entities,
            ledger=self.ledger,
            allocations=self.allocations,
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Reconciler:
    """Single-writer reconciler of scheduler snapshots into a ClusterStore."""

    def __init__(
        self,
        store: ClusterStore,
        timeout: float = DEFAULT_TIMEOUT,
        writer: StateWriter | None = None,
        stage_hook: StageHook | None = None,
        monotonic: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = _utcnow,
    ):
        """Initialize the reconciler.

        Args:
            store: Store whose committed state is reconciled and published.
            timeout: Seconds a reconciliation may take before it aborts.
            writer: Optional durable sink, written before publishing.
            stage_hook: Called with each stage name inside the transaction.
            monotonic: Clock used for the timeout.
            now: Wall clock used for commit timestamps.

        Raises:
            ValueError: If timeout is not positive.
        """
        if timeout <= 0:
            msg = "timeout must be positive"
            raise ValueError(msg)
        self._store = store
        self._timeout = timeout
        self._writer = writer
        self._stage_hook = stage_hook
        self._monotonic = monotonic
        self._now = now
        self._lock = threading.Lock()
        self._failure_count = 0

    @property
    def failure_count(self) -> int:
        """Number of reconciliations that failed since start."""
        return self._failure_count

    @property
    def in_progress(self) -> bool:
        return self._lock.locked()

    def reconcile(self, snapshot: Snapshot | Mapping[str, Any]) -> ReconcileResult:
        """Apply one snapshot as a single atomic state transition.

        Args:
            snapshot: Typed snapshot or raw snapshot document.

        Returns:
            The new version, its commit time and per-table change counts.

        Raises:
            ReconciliationInProgressError: If another reconciliation runs.
            ReconciliationFailedError: If the snapshot was rejected; the
                previously committed state stays visible.
        """
        if not self._lock.acquire(blocking=False):
            logger.warning("Rejected reconciliation, another one is in progress")
            msg = "A reconciliation is already in progress"
            raise ReconciliationInProgressError(msg)
        try:
            return self._reconcile(snapshot)
        except ReconciliationFailedError as exc:
            self._failure_count += 1
            logger.warning(
                "Reconciliation failed",
                error_type=type(exc).__name__,
                error=str(exc),
                version=self._store.get_version().version,
            )
            raise
        except Exception:
            self._failure_count += 1
            logger.exception(
                "Reconciliation failed unexpectedly",
                version=self._store.get_version().version,
            )
            raise
        finally:
            self._lock.release()

    def _stage(self, name: str, deadline: _Deadline) -> None:
        if self._stage_hook is not None:
            self._stage_hook(name)
        deadline.check(name)

    def _reconcile(self, document: Snapshot | Mapping[str, Any]) -> ReconcileResult:
        deadline = _Deadline(self._timeout, self._monotonic)
        start = self._monotonic()

        snapshot = parse_snapshot(document)
        validate_snapshot(snapshot)
        self._stage("validated", deadline)

        base = self._store.get_snapshot()
        txn = _Transaction(base)
        txn.plan(snapshot)
        self._stage("planned", deadline)

        txn.delete()
        self._stage("deleted", deadline)

        txn.write()
        self._stage("written", deadline)

        state = txn.build(version=base.version + 1, updated_at=self._now())
        self._stage("aggregated", deadline)

        # The writer is bounded by what is left of the deadline. Once it
        # commits, the in-memory version must follow it.
        if self._writer is not None:
            self._writer.save(state, txn.diffs, timeout=deadline.remaining())

        self._store.publish(state)

        changes = {name: TableChanges.from_diff(txn.diffs[name]) for name in TABLES}
        result = ReconcileResult(
            version=state.version,
            updated_at=state.updated_at,
            changes=changes,
        )
        logger.info(
            "Reconciliation committed",
            version=result.version,
            churn=result.churn,
            nodes=len(state.entities.nodes),
            jobs=len(state.entities.jobs),
            allocations=len(state.allocations),
            duration_seconds=round(self._monotonic() - start, 3),
        )
        return result
