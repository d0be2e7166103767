"""Resource ledger for per-node capacity and per-job requests.

Keeps the ``node_resources`` and ``job_resources`` tables and enforces their
arithmetic invariants whenever the reconciler writes to them:

- node resources: ``0 <= available <= total``
- job resources: ``allocated <= requested``, and ``allocated == 0`` while
  the owning job is pending.
"""

from collections.abc import Collection, Iterable

import structlog

from .errors import LedgerInvariantViolationError
from .models import (
    CPU_RESOURCE,
    MEMORY_RESOURCE,
    Job,
    JobResource,
    JobStatus,
    Node,
    NodeResource,
)
from .table import Table, TableDiff

logger = structlog.get_logger(__name__)


def _check_node_resource(row: NodeResource) -> None:
    if row.available > row.total:
        msg = (
            f"Node {row.node!r} resource {row.resource!r}: "
            f"available {row.available} exceeds total {row.total}"
        )
        raise LedgerInvariantViolationError(msg)


def _check_job_resource(row: JobResource, job: Job | None) -> None:
    if job is None:
        msg = f"Job resource {row.resource!r} references missing job {row.job_id!r}"
        raise LedgerInvariantViolationError(msg)
    if row.allocated > row.requested:
        msg = (
            f"Job {row.job_id!r} resource {row.resource!r}: "
            f"allocated {row.allocated} exceeds requested {row.requested}"
        )
        raise LedgerInvariantViolationError(msg)
    if job.status is JobStatus.PENDING and row.allocated != 0:
        msg = (
            f"Job {row.job_id!r} resource {row.resource!r}: "
            f"pending job has allocated {row.allocated}"
        )
        raise LedgerInvariantViolationError(msg)


class ResourceLedger:
    """Per-node and per-job resource rows keyed by (owner, resource kind)."""

    def __init__(
        self,
        node_resources: Table[tuple[str, str], NodeResource] | None = None,
        job_resources: Table[tuple[str, str], JobResource] | None = None,
    ):
        self.node_resources = (
            node_resources if node_resources is not None else Table()
        )
        self.job_resources = job_resources if job_resources is not None else Table()

    def copy(self) -> "ResourceLedger":
        return ResourceLedger(
            node_resources=self.node_resources.copy(),
            job_resources=self.job_resources.copy(),
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ResourceLedger):
            return NotImplemented
        return (
            self.node_resources == other.node_resources
            and self.job_resources == other.job_resources
        )

    # Reads

    def node_resource(self, node: str, resource: str) -> NodeResource | None:
        return self.node_resources.get((node, resource))

    def job_resource(self, job_id: str, resource: str) -> JobResource | None:
        return self.job_resources.get((job_id, resource))

    def resources_for_node(self, node: str) -> list[NodeResource]:
        rows = self.node_resources.rows_for("node", node)
        return sorted(rows, key=lambda row: row.resource)

    def resources_for_job(self, job_id: str) -> list[JobResource]:
        rows = self.job_resources.rows_for("job_id", job_id)
        return sorted(rows, key=lambda row: row.resource)

    def capacity(self, node: Node | None, resource: str) -> int:
        """Total quantity of ``resource`` on ``node``.

        An explicit resource row wins; otherwise CPU and memory fall back to
        the node's own totals and any other kind has no capacity.
        """
        if node is None:
            return 0
        row = self.node_resources.get((node.name, resource))
        if row is not None:
            return row.total
        if resource == CPU_RESOURCE:
            return node.cpus
        if resource == MEMORY_RESOURCE:
            return node.memory
        return 0

    # Transaction writes

    def remove_nodes(self, nodes: Collection[str]) -> None:
        if nodes:
            self.node_resources.remove_where(lambda row: row.node in nodes)

    def remove_jobs(self, job_ids: Collection[str]) -> None:
        if job_ids:
            self.job_resources.remove_where(lambda row: row.job_id in job_ids)

    def apply_node_resources(
        self,
        diff: TableDiff[tuple[str, str], NodeResource],
    ) -> None:
        """Bulk-replace node resource rows.

        Raises:
            LedgerInvariantViolationError: If a written row has
                available > total.
        """
        for row in diff.added + diff.changed:
            _check_node_resource(row)
        self.node_resources.apply(diff)

    def apply_job_resources(
        self,
        diff: TableDiff[tuple[str, str], JobResource],
        jobs: Table[str, Job],
        recheck: Iterable[str] = (),
    ) -> None:
        """Bulk-replace job resource rows.

        Rows owned by the jobs in ``recheck`` are validated again even when
        unchanged, since a job status change alone can break the pending
        invariant.

        Args:
            diff: Changes to the job resource table.
            jobs: Job table as written by the same transaction.
            recheck: Job ids whose status may have changed.

        Raises:
            LedgerInvariantViolationError: If any written or rechecked row
                breaks an invariant.
        """
        self.job_resources.apply(diff)
        recheck_ids = set(recheck)
        for row in diff.added + diff.changed:
            recheck_ids.add(row.job_id)
        for row in self.job_resources:
            if row.job_id in recheck_ids:
                _check_job_resource(row, jobs.get(row.job_id))
        logger.debug(
            "Job resources written",
            written=len(diff.added) + len(diff.changed),
            rechecked_jobs=len(recheck_ids),
        )
