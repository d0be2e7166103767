"""Entity store for nodes, partitions, jobs and partition membership."""

from collections.abc import Collection

from .models import Job, Node, NodePartition, Partition
from .table import Table, TableDiff


class EntityStore:
    """Current-state records for the cluster's entities.

    Read accessors are safe on committed stores. The ``apply_*`` and
    ``remove_*`` methods are only called on a transaction's private copy.
    """

    def __init__(
        self,
        nodes: Table[str, Node] | None = None,
        partitions: Table[str, Partition] | None = None,
        jobs: Table[str, Job] | None = None,
        memberships: Table[tuple[str, str], NodePartition] | None = None,
    ):
        self.nodes = nodes if nodes is not None else Table()
        self.partitions = partitions if partitions is not None else Table()
        self.jobs = jobs if jobs is not None else Table()
        self.memberships = memberships if memberships is not None else Table()

    def copy(self) -> "EntityStore":
        return EntityStore(
            nodes=self.nodes.copy(),
            partitions=self.partitions.copy(),
            jobs=self.jobs.copy(),
            memberships=self.memberships.copy(),
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, EntityStore):
            return NotImplemented
        return (
            self.nodes == other.nodes
            and self.partitions == other.partitions
            and self.jobs == other.jobs
            and self.memberships == other.memberships
        )

    # Reads

    def get_node(self, name: str) -> Node | None:
        return self.nodes.get(name)

    def get_partition(self, name: str) -> Partition | None:
        return self.partitions.get(name)

    def get_job(self, job_id: str) -> Job | None:
        return self.jobs.get(job_id)

    def partitions_of(self, node: str) -> list[str]:
        """Names of the partitions a node belongs to, sorted."""
        return sorted(m.partition for m in self.memberships.rows_for("node", node))

    def members_by_partition(self) -> dict[str, list[str]]:
        """Map each partition name to its sorted member node names."""
        members: dict[str, list[str]] = {name: [] for name in self.partitions.keys()}
        for membership in self.memberships:
            members.setdefault(membership.partition, []).append(membership.node)
        return {name: sorted(nodes) for name, nodes in members.items()}

    # Transaction writes

    def remove_jobs(self, job_ids: Collection[str]) -> None:
        self.jobs.remove_keys(job_ids)

    def remove_nodes(self, names: Collection[str]) -> None:
        """Delete nodes together with their partition memberships."""
        if not names:
            return
        self.nodes.remove_keys(names)
        self.memberships.remove_where(lambda m: m.node in names)

    def remove_partitions(self, names: Collection[str]) -> None:
        """Delete partitions together with the memberships pointing at them."""
        if not names:
            return
        self.partitions.remove_keys(names)
        self.memberships.remove_where(lambda m: m.partition in names)

    def apply_partitions(self, diff: TableDiff[str, Partition]) -> None:
        self.partitions.apply(diff)

    def apply_nodes(self, diff: TableDiff[str, Node]) -> None:
        self.nodes.apply(diff)

    def apply_memberships(self, diff: TableDiff[tuple[str, str], NodePartition]) -> None:
        self.memberships.apply(diff)

    def apply_jobs(self, diff: TableDiff[str, Job]) -> None:
        self.jobs.apply(diff)
