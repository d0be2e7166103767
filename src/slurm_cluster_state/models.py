"""Row types for the cluster state tables.

Frozen Pydantic models for nodes, partitions, jobs and the relations that
hang off them. The same models are used for incoming snapshots and for the
committed state, so a committed row is exactly the validated snapshot row.
All timestamps are timezone-aware and normalized to UTC.
"""

import enum
from datetime import datetime, timezone
from typing import Annotated

from pydantic import AfterValidator, AwareDatetime, BaseModel, ConfigDict, Field

# Slurm TRES names for the two resources every node carries.
CPU_RESOURCE = "cpu"
MEMORY_RESOURCE = "mem"


def _to_utc(value: datetime) -> datetime:
    return value.astimezone(timezone.utc)


UtcDatetime = Annotated[AwareDatetime, AfterValidator(_to_utc)]
Quantity = Annotated[int, Field(ge=0)]


class NodeStatus(str, enum.Enum):
    """Scheduler state of a node."""

    IDLE = "IDLE"
    MIXED = "MIXED"
    ALLOCATED = "ALLOCATED"
    DOWN = "DOWN"
    UNKNOWN = "UNKNOWN"


class PartitionStatus(str, enum.Enum):
    """Scheduler state of a partition."""

    UP = "UP"
    DOWN = "DOWN"
    UNKNOWN = "UNKNOWN"


class JobStatus(str, enum.Enum):
    """Scheduler state of a job."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    UNKNOWN = "UNKNOWN"


# Job states in which the scheduler may report an allocation.
ALLOCATING_JOB_STATUSES = frozenset({JobStatus.RUNNING, JobStatus.COMPLETED})


class Row(BaseModel):
    """Base class for all table rows.

    Rows are immutable and hashable so that committed tables can be shared
    between state versions without copying.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    def same_values(self, other: "Row") -> bool:
        """Compare two rows by value, ignoring the ``updated_at`` timestamp."""
        exclude = {"updated_at"}
        return self.model_dump(exclude=exclude) == other.model_dump(exclude=exclude)


class Node(Row):
    """A compute node. Memory is in MB."""

    name: str = Field(min_length=1)
    status: NodeStatus
    cpus: Quantity
    memory: Quantity
    updated_at: UtcDatetime

    @property
    def key(self) -> str:
        return self.name


class Partition(Row):
    """A named grouping of nodes with optional QoS references."""

    name: str = Field(min_length=1)
    status: PartitionStatus
    access_qos: str | None = None
    resource_qos: str | None = None
    updated_at: UtcDatetime

    @property
    def key(self) -> str:
        return self.name


class Job(Row):
    """A scheduler job. ``time_limit`` is in minutes."""

    job_id: str = Field(min_length=1)
    user: str
    partition: str
    status: JobStatus
    time_limit: Quantity | None = None
    start_time: UtcDatetime | None = None
    submit_time: UtcDatetime
    updated_at: UtcDatetime

    @property
    def key(self) -> str:
        return self.job_id


class NodePartition(Row):
    """Membership of a node in a partition."""

    node: str
    partition: str

    @property
    def key(self) -> tuple[str, str]:
        return (self.node, self.partition)


class NodeResource(Row):
    """Capacity of one resource kind on a node."""

    node: str
    resource: str = Field(min_length=1)
    total: Quantity
    available: Quantity

    @property
    def key(self) -> tuple[str, str]:
        return (self.node, self.resource)


class JobResource(Row):
    """Requested and allocated quantity of one resource kind for a job."""

    job_id: str
    resource: str = Field(min_length=1)
    requested: Quantity
    allocated: Quantity = 0

    @property
    def key(self) -> tuple[str, str]:
        return (self.job_id, self.resource)


class Allocation(Row):
    """Quantity of a resource a job uses on a specific node."""

    job_id: str
    node: str
    resource: str = Field(min_length=1)
    used: Quantity

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.job_id, self.node, self.resource)
