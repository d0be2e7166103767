"""Reconciliation and rendering on cluster-sized snapshots."""

import time
from datetime import datetime, timezone

import pytest

from slurm_cluster_state.models import (
    Allocation,
    Job,
    JobResource,
    JobStatus,
    Node,
    NodePartition,
    NodeResource,
    NodeStatus,
    Partition,
    PartitionStatus,
)
from slurm_cluster_state.reconciler import Reconciler
from slurm_cluster_state.snapshot import Snapshot
from slurm_cluster_state.state import ClusterStore

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

NODES = 200
CPUS_PER_NODE = 64


def _cluster_snapshot(job_numbers: range) -> Snapshot:
    """Snapshot with NODES nodes and one single-cpu running job per number."""
    names = [f"n{i:03d}" for i in range(NODES)]
    job_ids = [f"j{number}" for number in job_numbers]
    return Snapshot(
        nodes=tuple(
            Node(
                name=name,
                status=NodeStatus.MIXED,
                cpus=CPUS_PER_NODE,
                memory=256000,
                updated_at=T0,
            )
            for name in names
        ),
        partitions=(
            Partition(name="batch", status=PartitionStatus.UP, updated_at=T0),
        ),
        node_partitions=tuple(
            NodePartition(node=name, partition="batch") for name in names
        ),
        node_resources=tuple(
            NodeResource(
                node=name,
                resource="cpu",
                total=CPUS_PER_NODE,
                available=CPUS_PER_NODE,
            )
            for name in names
        ),
        jobs=tuple(
            Job(
                job_id=job_id,
                user="alice",
                partition="batch",
                status=JobStatus.RUNNING,
                submit_time=T0,
                updated_at=T0,
            )
            for job_id in job_ids
        ),
        job_resources=tuple(
            JobResource(job_id=job_id, resource="cpu", requested=1, allocated=1)
            for job_id in job_ids
        ),
        allocations=tuple(
            Allocation(
                job_id=f"j{number}",
                node=names[number % NODES],
                resource="cpu",
                used=1,
            )
            for number in job_numbers
        ),
    )


@pytest.fixture
def busy_store() -> ClusterStore:
    """Store holding 6000 running jobs spread over 200 nodes."""
    store = ClusterStore()
    Reconciler(store).reconcile(_cluster_snapshot(range(6000)))
    return store


def test_mass_job_removal_fits_in_deadline(busy_store: ClusterStore):
    """Thousands of finished jobs disappear within the default timeout."""
    reconciler = Reconciler(busy_store)

    result = reconciler.reconcile(_cluster_snapshot(range(4000, 8000)))

    assert result.changes["jobs"].removed == 4000
    assert result.changes["jobs"].added == 2000
    assert len(busy_store.list_jobs()) == 4000
    assert busy_store.get_job("j0") is None
    assert busy_store.get_snapshot().ledger.resources_for_job("j0") == []
    assert busy_store.allocations_for_job("j0") == []
    assert busy_store.partition_usage("batch").cpus_alloc == 4000
    assert reconciler.failure_count == 0


def test_mass_node_removal_cascades(busy_store: ClusterStore):
    """Dropping every node and job at once clears all owned rows."""
    Reconciler(busy_store).reconcile({})

    state = busy_store.get_snapshot()
    assert len(state.allocations) == 0
    assert len(state.ledger.node_resources) == 0
    assert len(state.entities.memberships) == 0


def test_full_document_renders_quickly(busy_store: ClusterStore):
    """Rendering looks rows up by owner instead of scanning whole tables."""
    state = busy_store.get_snapshot()

    started = time.monotonic()
    document = state.to_document()
    elapsed = time.monotonic() - started

    assert len(document["jobs"]) == 6000
    assert document["nodes"][0]["partitions"] == ["batch"]
    assert document["jobs"][0]["allocations"][0]["used"] == 1
    assert elapsed < 5
