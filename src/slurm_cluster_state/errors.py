"""Exception hierarchy for the cluster state layer.

Every reconciliation failure derives from :class:`ReconciliationFailedError`
and leaves the previously committed state untouched.
:class:`ReconciliationInProgressError` is raised by the single-writer guard
and is not a failure of the snapshot itself.
"""


class ClusterStateError(Exception):
    """Base class for all cluster state errors."""


class ReconciliationFailedError(ClusterStateError):
    """Raised when a snapshot could not be committed."""


class MalformedSnapshotError(ReconciliationFailedError):
    """Raised when a snapshot has structural or referential defects."""

    def __init__(self, problems: list[str]):
        self.problems = list(problems)
        summary = "; ".join(self.problems[:10])
        if len(self.problems) > 10:  # noqa: PLR2004
            summary += f"; ... ({len(self.problems) - 10} more)"
        super().__init__(f"Malformed snapshot: {summary}")


class LedgerInvariantViolationError(ReconciliationFailedError):
    """Raised when a resource row breaks available/total or allocated/requested."""


class CapacityExceededError(ReconciliationFailedError):
    """Raised when allocations on a node exceed its capacity for a resource."""


class ReconciliationTimeoutError(ReconciliationFailedError):
    """Raised when a reconciliation transaction runs past its deadline."""


class PersistenceError(ReconciliationFailedError):
    """Raised when a state version could not be written to the database."""


class ReconciliationInProgressError(ClusterStateError):
    """Raised when a reconciliation is requested while another is running."""
