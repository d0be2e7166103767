"""Allocation graph linking jobs to the nodes they occupy.

Holds the (job, node, resource) -> used relation, enforces node capacity on
every bulk write, and derives the node and partition aggregates that the
dashboards display. Aggregates are always recomputed from the rows, never
carried over between versions.
"""

from collections import defaultdict
from collections.abc import Callable, Collection, Iterable, Mapping
from dataclasses import dataclass

from .entities import EntityStore
from .errors import CapacityExceededError
from .ledger import ResourceLedger
from .models import CPU_RESOURCE, MEMORY_RESOURCE, Allocation
from .table import Table, TableDiff

CapacityLookup = Callable[[str, str], int]


@dataclass(frozen=True)
class NodeUsage:
    """CPU and memory figures for one node, derived from allocations."""

    node: str
    cpus: int
    cpus_alloc: int
    cpus_idle: int
    memory: int
    memory_alloc: int
    memory_free: int


@dataclass(frozen=True)
class PartitionUsage:
    """CPU and memory figures for one partition, summed over its members."""

    partition: str
    total_nodes: int = 0
    total_cpus: int = 0
    cpus_alloc: int = 0
    cpus_idle: int = 0
    total_memory: int = 0
    memory_alloc: int = 0
    memory_free: int = 0


class AllocationGraph:
    """Many-to-many linkage of jobs to nodes with per-resource usage."""

    def __init__(
        self,
        allocations: Table[tuple[str, str, str], Allocation] | None = None,
    ):
        self.allocations = allocations if allocations is not None else Table()

    def copy(self) -> "AllocationGraph":
        return AllocationGraph(self.allocations.copy())

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, AllocationGraph):
            return NotImplemented
        return self.allocations == other.allocations

    def __len__(self) -> int:
        return len(self.allocations)

    # Reads

    def allocations_for_job(self, job_id: str) -> list[Allocation]:
        rows = self.allocations.rows_for("job_id", job_id)
        return sorted(rows, key=lambda row: (row.node, row.resource))

    def allocations_for_node(self, node: str) -> list[Allocation]:
        rows = self.allocations.rows_for("node", node)
        return sorted(rows, key=lambda row: (row.job_id, row.resource))

    def used_totals(self) -> dict[tuple[str, str], int]:
        """Sum of ``used`` per (node, resource)."""
        totals: dict[tuple[str, str], int] = defaultdict(int)
        for row in self.allocations:
            totals[(row.node, row.resource)] += row.used
        return dict(totals)

    def total_used(self, node: str, resource: str) -> int:
        return sum(
            row.used
            for row in self.allocations.rows_for("node", node)
            if row.resource == resource
        )

    # Transaction writes

    def remove_jobs(self, job_ids: Collection[str]) -> None:
        if job_ids:
            self.allocations.remove_where(lambda row: row.job_id in job_ids)

    def remove_nodes(self, nodes: Collection[str]) -> None:
        if nodes:
            self.allocations.remove_where(lambda row: row.node in nodes)

    def remove(self, keys: Iterable[tuple[str, str, str]]) -> None:
        self.allocations.remove_keys(keys)

    def apply(
        self,
        diff: TableDiff[tuple[str, str, str], Allocation],
        capacity: CapacityLookup,
    ) -> None:
        """Bulk-replace allocation rows and check every node's capacity.

        The check runs over the whole graph after the write, so shrinking
        one job's share while growing another's on the same node is judged
        on the final figures only.

        Raises:
            CapacityExceededError: If any (node, resource) is over capacity.
        """
        self.allocations.apply(diff)
        over = [
            (node, resource, used, capacity(node, resource))
            for (node, resource), used in sorted(self.used_totals().items())
            if used > capacity(node, resource)
        ]
        if over:
            details = ", ".join(
                f"{node}/{resource} used {used} > capacity {limit}"
                for node, resource, used, limit in over
            )
            msg = f"Allocations exceed node capacity: {details}"
            raise CapacityExceededError(msg)


def summarize(
    entities: EntityStore,
    ledger: ResourceLedger,
    graph: AllocationGraph,
) -> tuple[Mapping[str, NodeUsage], Mapping[str, PartitionUsage]]:
    """Derive node and partition aggregates from the current rows.

    Returns:
        Tuple of (node usage by node name, partition usage by partition name).
    """
    used = graph.used_totals()
    node_usage: dict[str, NodeUsage] = {}
    for node in entities.nodes:
        cpus = ledger.capacity(node, CPU_RESOURCE)
        cpus_alloc = used.get((node.name, CPU_RESOURCE), 0)
        memory = ledger.capacity(node, MEMORY_RESOURCE)
        memory_alloc = used.get((node.name, MEMORY_RESOURCE), 0)
        node_usage[node.name] = NodeUsage(
            node=node.name,
            cpus=cpus,
            cpus_alloc=cpus_alloc,
            cpus_idle=cpus - cpus_alloc,
            memory=memory,
            memory_alloc=memory_alloc,
            memory_free=memory - memory_alloc,
        )

    partition_usage: dict[str, PartitionUsage] = {}
    for partition, members in entities.members_by_partition().items():
        usages = [node_usage[name] for name in members if name in node_usage]
        partition_usage[partition] = PartitionUsage(
            partition=partition,
            total_nodes=len(usages),
            total_cpus=sum(u.cpus for u in usages),
            cpus_alloc=sum(u.cpus_alloc for u in usages),
            cpus_idle=sum(u.cpus_idle for u in usages),
            total_memory=sum(u.memory for u in usages),
            memory_alloc=sum(u.memory_alloc for u in usages),
            memory_free=sum(u.memory_free for u in usages),
        )
    return node_usage, partition_usage
