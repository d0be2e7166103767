"""Tests for the jobs source module."""

from datetime import datetime, timezone

import pytest

from slurm_cluster_state.models import JobStatus
from slurm_cluster_state.slurmrestapi import types
from slurm_cluster_state.sources import jobs

OBSERVED = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
SUBMITTED = 1714560000  # 2024-05-01T10:40:00Z


def _allocated(*pairs: tuple[str, int, int]) -> types.RawJobResources:
    return types.RawJobResources(
        allocated_nodes=[
            types.RawNodeAllocation(nodename=name, cpus=cpus, memory=memory)
            for name, cpus, memory in pairs
        ],
    )


@pytest.fixture
def raw_job_running() -> types.RawJobData:
    """A running job spread over two nodes."""
    return types.RawJobData(
        job_id=1001,
        partition="batch",
        user_name="alice",
        job_state="RUNNING",
        cpus=8,
        node_count=2,
        memory_per_node=4000,
        time_limit=120,
        submit_time=SUBMITTED,
        start_time=SUBMITTED + 60,
        job_resources=_allocated(("n1", 4, 4000), ("n2", 4, 4000)),
    )


@pytest.fixture
def raw_job_pending() -> types.RawJobData:
    """A pending job with a per-cpu memory request and no start time."""
    return types.RawJobData(
        job_id=1002,
        partition="gpu",
        user_name="bob",
        job_state="PENDING",
        cpus=2,
        memory_per_cpu=1000,
        submit_time=SUBMITTED,
    )


# ---------------------------------------------------------------------------
# _job_status
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("state", "expected"),
    [
        ("pending", JobStatus.PENDING),
        ("RUNNING", JobStatus.RUNNING),
        ("COMPLETING", JobStatus.RUNNING),
        ("COMPLETED", JobStatus.COMPLETED),
        ("TIMEOUT", JobStatus.FAILED),
        ("OUT_OF_MEMORY", JobStatus.FAILED),
        ("PREEMPTED", JobStatus.CANCELLED),
        ("SUSPENDED", JobStatus.UNKNOWN),
    ],
)
def test_job_status_mapping(state: str, expected: JobStatus):
    """Slurm job states map onto the closed job status set."""
    assert jobs._job_status(state) is expected


# ---------------------------------------------------------------------------
# _transform_job
# ---------------------------------------------------------------------------


def test_transform_running_job(raw_job_running: types.RawJobData):
    """A running job gets requests, allocations and timestamps."""
    rows = jobs._transform_job(raw_job_running, OBSERVED)

    assert rows.job.job_id == "1001"
    assert rows.job.status is JobStatus.RUNNING
    assert rows.job.time_limit == 120
    assert rows.job.submit_time == datetime.fromtimestamp(SUBMITTED, tz=timezone.utc)
    assert rows.job.start_time.timestamp() == SUBMITTED + 60
    assert rows.job.updated_at == OBSERVED

    resources = {r.resource: (r.requested, r.allocated) for r in rows.resources}
    assert resources == {"cpu": (8, 8), "mem": (8000, 8000)}
    assert sorted(a.key for a in rows.allocations) == [
        ("1001", "n1", "cpu"),
        ("1001", "n1", "mem"),
        ("1001", "n2", "cpu"),
        ("1001", "n2", "mem"),
    ]


def test_transform_pending_job(raw_job_pending: types.RawJobData):
    """A pending job requests resources but holds none."""
    rows = jobs._transform_job(raw_job_pending, OBSERVED)

    assert rows.job.start_time is None
    resources = {r.resource: (r.requested, r.allocated) for r in rows.resources}
    assert resources == {"cpu": (2, 0), "mem": (2000, 0)}
    assert rows.allocations == []


def test_transform_completed_job_keeps_allocated_without_allocations(
    raw_job_running: types.RawJobData,
):
    """A completed job reports what it held but no longer occupies nodes."""
    raw = raw_job_running.model_copy(update={"job_state": "COMPLETED"})
    rows = jobs._transform_job(raw, OBSERVED)

    assert rows.resources[0].allocated == 8
    assert rows.allocations == []


def test_transform_job_raises_request_to_allocation():
    """Grants rounded up by the scheduler raise the request to match."""
    raw = types.RawJobData(
        job_id=7,
        job_state="RUNNING",
        cpus=3,
        submit_time=SUBMITTED,
        job_resources=_allocated(("n1", 4, 0)),
    )
    rows = jobs._transform_job(raw, OBSERVED)

    cpu = next(r for r in rows.resources if r.resource == "cpu")
    assert (cpu.requested, cpu.allocated) == (4, 4)
    assert [a.resource for a in rows.allocations] == ["cpu"]


def test_transform_job_without_submit_time_uses_observation():
    """Missing submit times fall back to the observation time."""
    raw = types.RawJobData(job_id=8, job_state="PENDING")
    rows = jobs._transform_job(raw, OBSERVED)
    assert rows.job.submit_time == OBSERVED
