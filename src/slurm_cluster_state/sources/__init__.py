"""Snapshot sources.

Each module maps one SLURM REST API collection onto snapshot rows;
:func:`fetch_snapshot` combines them into a single self-consistent
:class:`~slurm_cluster_state.snapshot.Snapshot`.
"""

from collections.abc import Callable
from datetime import datetime, timezone

import structlog

from .. import slurmrestapi
from ..models import Partition
from ..snapshot import Snapshot
from . import jobs, nodes, partitions

logger = structlog.get_logger(__name__)


def build_snapshot(
    node_rows: list[nodes.NodeRows],
    partition_rows: list[Partition],
    job_rows: list[jobs.JobRows],
) -> Snapshot:
    """Assemble fetched rows into one snapshot.

    Nodes, partitions and jobs come from separate requests, so a reference
    can point at something the other request did not see. Memberships in
    unknown partitions and allocations on unknown nodes are dropped here
    rather than letting the whole snapshot be rejected.
    """
    partition_names = {partition.name for partition in partition_rows}
    node_names = {rows.node.name for rows in node_rows}

    memberships = []
    for rows in node_rows:
        for partition in rows.partitions:
            if partition in partition_names:
                memberships.append({"node": rows.node.name, "partition": partition})
            else:
                logger.warning(
                    "Dropping membership in unknown partition",
                    node=rows.node.name,
                    partition=partition,
                )

    allocations = []
    for rows in job_rows:
        for allocation in rows.allocations:
            if allocation.node in node_names:
                allocations.append(allocation)
            else:
                logger.warning(
                    "Dropping allocation on unknown node",
                    job_id=allocation.job_id,
                    node=allocation.node,
                )

    return Snapshot(
        nodes=[rows.node for rows in node_rows],
        partitions=partition_rows,
        jobs=[rows.job for rows in job_rows],
        node_partitions=memberships,
        node_resources=[r for rows in node_rows for r in rows.resources],
        job_resources=[r for rows in job_rows for r in rows.resources],
        allocations=allocations,
    )


def fetch_snapshot(
    client: slurmrestapi.SlurmRestApiClient,
    now: Callable[[], datetime] | None = None,
) -> Snapshot:
    """Fetch nodes, partitions and jobs and build one snapshot.

    Args:
        client: REST API client to fetch with.
        now: Clock for the observation timestamp (defaults to UTC now).

    Returns:
        Snapshot stamped with the time the fetch started.
    """
    observed_at = now() if now else datetime.now(timezone.utc)
    snapshot = build_snapshot(
        nodes.fetch(client, observed_at),
        partitions.fetch(client, observed_at),
        jobs.fetch(client, observed_at),
    )
    logger.debug(
        "Fetched snapshot",
        nodes=len(snapshot.nodes),
        partitions=len(snapshot.partitions),
        jobs=len(snapshot.jobs),
        allocations=len(snapshot.allocations),
    )
    return snapshot
