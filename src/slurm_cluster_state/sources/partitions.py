"""Partition rows from the SLURM REST API."""

from datetime import datetime

from .. import slurmrestapi
from ..models import Partition, PartitionStatus

_PARTITION_STATUSES = {
    "UP": PartitionStatus.UP,
    "DOWN": PartitionStatus.DOWN,
}


def _transform_partition(
    raw: slurmrestapi.types.RawPartitionData,
    observed_at: datetime,
) -> Partition:
    return Partition(
        name=raw.name,
        status=_PARTITION_STATUSES.get(raw.state.upper(), PartitionStatus.UNKNOWN),
        access_qos=raw.allowed_qos or None,
        resource_qos=raw.qos or None,
        updated_at=observed_at,
    )


def fetch(
    client: slurmrestapi.SlurmRestApiClient,
    observed_at: datetime,
) -> list[Partition]:
    """Fetch all partitions as snapshot rows."""
    return [_transform_partition(raw, observed_at) for raw in client.get_partitions()]
