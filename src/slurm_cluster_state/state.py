"""Committed cluster state and the store that publishes it.

A :class:`ClusterState` is an immutable version of all tables plus the
aggregates derived from them. :class:`ClusterStore` holds the current
version behind a single reference; publishing a new version is one
assignment, so a reader that grabs :meth:`ClusterStore.get_snapshot` sees
either the old version or the new one in full.
"""

import dataclasses
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog

from .allocations import AllocationGraph, NodeUsage, PartitionUsage, summarize
from .clock import ClockReading, StalenessClock
from .entities import EntityStore
from .ledger import ResourceLedger
from .models import Allocation, Job, Node, Partition

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ClusterState:
    """One committed version of the cluster state."""

    version: int = 0
    updated_at: datetime | None = None
    entities: EntityStore = field(default_factory=EntityStore)
    ledger: ResourceLedger = field(default_factory=ResourceLedger)
    allocations: AllocationGraph = field(default_factory=AllocationGraph)
    node_usage: Mapping[str, NodeUsage] = field(default_factory=dict)
    partition_usage: Mapping[str, PartitionUsage] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        version: int,
        updated_at: datetime | None,
        entities: EntityStore,
        ledger: ResourceLedger,
        allocations: AllocationGraph,
    ) -> "ClusterState":
        """Create a state version, deriving all aggregates from the rows."""
        node_usage, partition_usage = summarize(entities, ledger, allocations)
        return cls(
            version=version,
            updated_at=updated_at,
            entities=entities,
            ledger=ledger,
            allocations=allocations,
            node_usage=node_usage,
            partition_usage=partition_usage,
        )

    def same_rows(self, other: "ClusterState") -> bool:
        """Whether both versions hold identical rows, ignoring version/time."""
        return (
            self.entities == other.entities
            and self.ledger == other.ledger
            and self.allocations == other.allocations
        )

    def node_document(self, node: Node) -> dict[str, Any]:
        usage = self.node_usage.get(node.name)
        return {
            **node.model_dump(mode="json"),
            "partitions": self.entities.partitions_of(node.name),
            "resources": [
                row.model_dump(mode="json", exclude={"node"})
                for row in self.ledger.resources_for_node(node.name)
            ],
            "usage": dataclasses.asdict(usage) if usage else None,
        }

    def job_document(self, job: Job) -> dict[str, Any]:
        return {
            **job.model_dump(mode="json"),
            "resources": [
                row.model_dump(mode="json", exclude={"job_id"})
                for row in self.ledger.resources_for_job(job.job_id)
            ],
            "allocations": [
                row.model_dump(mode="json", exclude={"job_id"})
                for row in self.allocations.allocations_for_job(job.job_id)
            ],
        }

    def partition_document(self, partition: Partition) -> dict[str, Any]:
        usage = self.partition_usage.get(partition.name)
        return {
            **partition.model_dump(mode="json"),
            "usage": dataclasses.asdict(usage) if usage else None,
        }

    def to_document(self) -> dict[str, Any]:
        """Render the whole state as a JSON-serializable mapping."""
        return {
            "version": self.version,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "nodes": [
                self.node_document(node)
                for node in sorted(self.entities.nodes, key=lambda n: n.name)
            ],
            "partitions": [
                self.partition_document(partition)
                for partition in sorted(self.entities.partitions, key=lambda p: p.name)
            ],
            "jobs": [
                self.job_document(job)
                for job in sorted(
                    self.entities.jobs,
                    key=lambda j: j.submit_time,
                    reverse=True,
                )
            ],
        }


class ClusterStore:
    """Holder of the committed cluster state.

    Any number of threads may read concurrently; only the reconciler
    publishes. Entity-scoped accessors each read the current version once;
    callers needing several consistent reads should use
    :meth:`get_snapshot` and query the returned state.
    """

    def __init__(
        self,
        initial: ClusterState | None = None,
        clock: StalenessClock | None = None,
    ):
        self._head = initial if initial is not None else ClusterState()
        self.clock = clock or StalenessClock(
            self._head.version,
            self._head.updated_at,
        )

    def get_snapshot(self) -> ClusterState:
        return self._head

    def get_version(self) -> ClockReading:
        return self.clock.current()

    def publish(self, state: ClusterState) -> None:
        """Make ``state`` the visible version and advance the clock.

        The state reference is swapped before the clock advances, so the
        clock never reports a version whose rows are not yet visible.

        Raises:
            ValueError: If ``state`` is not newer than the visible version.
        """
        if state.version <= self.clock.current().version:
            msg = (
                f"Cannot publish version {state.version} over "
                f"{self.clock.current().version}, version must increase"
            )
            raise ValueError(msg)
        self._head = state
        self.clock.advance(state.version, state.updated_at)
        logger.debug("Published cluster state", version=state.version)

    # Entity-scoped reads

    def get_node(self, name: str) -> Node | None:
        return self._head.entities.get_node(name)

    def get_job(self, job_id: str) -> Job | None:
        return self._head.entities.get_job(job_id)

    def get_partition(self, name: str) -> Partition | None:
        return self._head.entities.get_partition(name)

    def list_nodes(self) -> list[Node]:
        return sorted(self._head.entities.nodes, key=lambda node: node.name)

    def list_jobs(self) -> list[Job]:
        return sorted(self._head.entities.jobs, key=lambda job: job.job_id)

    def list_partitions(self) -> list[Partition]:
        return sorted(self._head.entities.partitions, key=lambda p: p.name)

    def allocations_for_job(self, job_id: str) -> list[Allocation]:
        return self._head.allocations.allocations_for_job(job_id)

    def allocations_for_node(self, node: str) -> list[Allocation]:
        return self._head.allocations.allocations_for_node(node)

    def node_usage(self, name: str) -> NodeUsage | None:
        return self._head.node_usage.get(name)

    def partition_usage(self, name: str) -> PartitionUsage | None:
        return self._head.partition_usage.get(name)
