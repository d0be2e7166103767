"""Job rows from the SLURM REST API.

Maps raw job payloads onto :class:`Job` rows, their CPU and memory request
rows, and the per-node allocations of running jobs.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone

import structlog

from .. import slurmrestapi
from ..models import (
    ALLOCATING_JOB_STATUSES,
    CPU_RESOURCE,
    MEMORY_RESOURCE,
    Allocation,
    Job,
    JobResource,
    JobStatus,
)

logger = structlog.get_logger(__name__)

_JOB_STATUSES = {
    "PENDING": JobStatus.PENDING,
    "RUNNING": JobStatus.RUNNING,
    # Still holds its nodes until the epilog finishes
    "COMPLETING": JobStatus.RUNNING,
    "COMPLETED": JobStatus.COMPLETED,
    "FAILED": JobStatus.FAILED,
    "TIMEOUT": JobStatus.FAILED,
    "NODE_FAIL": JobStatus.FAILED,
    "OUT_OF_MEMORY": JobStatus.FAILED,
    "BOOT_FAIL": JobStatus.FAILED,
    "CANCELLED": JobStatus.CANCELLED,
    "PREEMPTED": JobStatus.CANCELLED,
}


@dataclass
class JobRows:
    """A job and the rows it owns in one snapshot."""

    job: Job
    resources: list[JobResource] = field(default_factory=list)
    allocations: list[Allocation] = field(default_factory=list)


def _job_status(state: str) -> JobStatus:
    return _JOB_STATUSES.get(state.upper(), JobStatus.UNKNOWN)


def _timestamp(seconds: int) -> datetime | None:
    if seconds <= 0:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def _requested_memory(raw: slurmrestapi.types.RawJobData) -> int:
    """Requested memory in MiB across all of the job's nodes.

    Prefers memory_per_node times the node count, then memory_per_cpu times
    cpus, and is 0 when neither is set.
    """
    if raw.memory_per_node:
        return raw.memory_per_node * max(raw.node_count or 1, 1)
    if raw.memory_per_cpu and raw.cpus:
        return raw.memory_per_cpu * raw.cpus
    return 0


def _request(job_id: str, resource: str, requested: int, allocated: int) -> JobResource:
    if allocated > requested:
        # Slurm rounds grants up to whole cores or nodes.
        logger.debug(
            "Allocation exceeds request, raising request",
            job_id=job_id,
            resource=resource,
            requested=requested,
            allocated=allocated,
        )
        requested = allocated
    return JobResource(
        job_id=job_id,
        resource=resource,
        requested=requested,
        allocated=allocated,
    )


def _transform_job(
    raw: slurmrestapi.types.RawJobData,
    observed_at: datetime,
) -> JobRows:
    """Transform a raw job into its snapshot rows.

    Args:
        raw: Raw job data from the REST API.
        observed_at: Observation time stamped on the job row.

    Returns:
        The job row, its request rows and, while running, its allocations.
    """
    job_id = str(raw.job_id)
    status = _job_status(raw.job_state)
    job = Job(
        job_id=job_id,
        user=raw.user_name,
        partition=raw.partition,
        status=status,
        time_limit=raw.time_limit,
        start_time=_timestamp(raw.start_time),
        submit_time=_timestamp(raw.submit_time) or observed_at,
        updated_at=observed_at,
    )

    per_node = raw.job_resources.allocated_nodes if raw.job_resources else []
    holds_allocation = status in ALLOCATING_JOB_STATUSES
    cpus_allocated = sum(n.cpus for n in per_node) if holds_allocation else 0
    memory_allocated = sum(n.memory for n in per_node) if holds_allocation else 0

    resources = [
        _request(job_id, CPU_RESOURCE, raw.cpus or 0, cpus_allocated),
        _request(job_id, MEMORY_RESOURCE, _requested_memory(raw), memory_allocated),
    ]

    allocations: list[Allocation] = []
    if status is JobStatus.RUNNING:
        for node in per_node:
            usage = {CPU_RESOURCE: node.cpus, MEMORY_RESOURCE: node.memory}
            allocations.extend(
                Allocation(job_id=job_id, node=node.nodename, resource=kind, used=used)
                for kind, used in usage.items()
                if used > 0
            )

    return JobRows(job=job, resources=resources, allocations=allocations)


def fetch(
    client: slurmrestapi.SlurmRestApiClient,
    observed_at: datetime,
) -> list[JobRows]:
    """Fetch all jobs and transform them into snapshot rows."""
    return [_transform_job(raw, observed_at) for raw in client.get_jobs()]
