"""Snapshot input contract and pre-commit validation.

A snapshot is one complete observation of the cluster: one collection per
entity kind and one per relation. Structural checks (types, non-negative
quantities, timezone-aware timestamps) are done by Pydantic when parsing;
referential and key checks are done by :func:`validate_snapshot`.
"""

from collections import Counter
from collections.abc import Hashable, Iterable, Mapping
from typing import Any

import pydantic

from .errors import MalformedSnapshotError
from .models import (
    ALLOCATING_JOB_STATUSES,
    Allocation,
    Job,
    JobResource,
    Node,
    NodePartition,
    NodeResource,
    Partition,
)


class Snapshot(pydantic.BaseModel):
    """One complete observation of scheduler state."""

    model_config = pydantic.ConfigDict(frozen=True, extra="forbid")

    nodes: tuple[Node, ...] = ()
    partitions: tuple[Partition, ...] = ()
    jobs: tuple[Job, ...] = ()
    node_partitions: tuple[NodePartition, ...] = ()
    node_resources: tuple[NodeResource, ...] = ()
    job_resources: tuple[JobResource, ...] = ()
    allocations: tuple[Allocation, ...] = ()


def parse_snapshot(document: Snapshot | Mapping[str, Any]) -> Snapshot:
    """Parse a raw snapshot document.

    Args:
        document: Already-typed snapshot or a JSON-like mapping.

    Returns:
        Validated snapshot model.

    Raises:
        MalformedSnapshotError: If the document does not match the contract.
    """
    if isinstance(document, Snapshot):
        return document
    try:
        return Snapshot.model_validate(document)
    except pydantic.ValidationError as exc:
        problems = [
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in exc.errors()
        ]
        raise MalformedSnapshotError(problems) from exc


def _duplicates(collection: str, keys: Iterable[Hashable]) -> list[str]:
    counts = Counter(keys)
    return [
        f"duplicate {collection} key {key!r}"
        for key, count in counts.items()
        if count > 1
    ]


def validate_snapshot(snapshot: Snapshot) -> None:
    """Check keys and cross-collection references of a parsed snapshot.

    Every problem found is reported, not just the first one.

    Raises:
        MalformedSnapshotError: If any check fails.
    """
    problems: list[str] = []

    for collection in (
        "nodes",
        "partitions",
        "jobs",
        "node_partitions",
        "node_resources",
        "job_resources",
        "allocations",
    ):
        rows = getattr(snapshot, collection)
        problems.extend(_duplicates(collection, (row.key for row in rows)))

    node_names = {node.name for node in snapshot.nodes}
    partition_names = {partition.name for partition in snapshot.partitions}
    jobs = {job.job_id: job for job in snapshot.jobs}

    for membership in snapshot.node_partitions:
        if membership.node not in node_names:
            problems.append(f"membership references unknown node {membership.node!r}")
        if membership.partition not in partition_names:
            problems.append(
                f"membership references unknown partition {membership.partition!r}",
            )

    for resource in snapshot.node_resources:
        if resource.node not in node_names:
            problems.append(f"node resource references unknown node {resource.node!r}")
        if resource.available > resource.total:
            problems.append(
                f"node {resource.node!r} resource {resource.resource!r} has "
                f"available {resource.available} > total {resource.total}",
            )

    for resource in snapshot.job_resources:
        job = jobs.get(resource.job_id)
        if job is None:
            problems.append(f"job resource references unknown job {resource.job_id!r}")
            continue
        if (
            resource.allocated > resource.requested
            and job.status not in ALLOCATING_JOB_STATUSES
        ):
            problems.append(
                f"job {resource.job_id!r} resource {resource.resource!r} has "
                f"allocated {resource.allocated} > requested {resource.requested} "
                f"in status {job.status.value}",
            )

    for allocation in snapshot.allocations:
        job = jobs.get(allocation.job_id)
        if job is None:
            problems.append(
                f"allocation references unknown job {allocation.job_id!r}",
            )
        elif job.status not in ALLOCATING_JOB_STATUSES:
            problems.append(
                f"allocation for job {allocation.job_id!r} on node "
                f"{allocation.node!r} in status {job.status.value}",
            )
        if allocation.node not in node_names:
            problems.append(
                f"allocation references unknown node {allocation.node!r}",
            )

    if problems:
        raise MalformedSnapshotError(problems)
