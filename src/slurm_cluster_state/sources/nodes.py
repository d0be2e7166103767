"""Node rows from the SLURM REST API.

Maps raw node payloads onto :class:`Node` rows, their CPU, memory and GPU
resource rows, and their partition memberships. GPU capacity comes from the
node's GRES strings.
"""

from dataclasses import dataclass, field
from datetime import datetime

import structlog

from .. import slurmrestapi
from ..models import CPU_RESOURCE, MEMORY_RESOURCE, Node, NodeResource, NodeStatus

logger = structlog.get_logger(__name__)

_NODE_STATUSES = {
    "IDLE": NodeStatus.IDLE,
    "MIX": NodeStatus.MIXED,
    "MIXED": NodeStatus.MIXED,
    "ALLOC": NodeStatus.ALLOCATED,
    "ALLOCATED": NodeStatus.ALLOCATED,
    "DOWN": NodeStatus.DOWN,
}

# Suffix flags slurm appends to a state (e.g. "idle*" for not responding).
_STATE_FLAGS = "*~#!%$@^-"


@dataclass
class NodeRows:
    """A node and the rows it owns in one snapshot."""

    node: Node
    resources: list[NodeResource] = field(default_factory=list)
    partitions: list[str] = field(default_factory=list)


def _node_status(state: str) -> NodeStatus:
    """Map a Slurm node state such as ``"mixed"`` or ``"idle+drain"``."""
    base = state.split("+")[0].strip().rstrip(_STATE_FLAGS).upper()
    return _NODE_STATUSES.get(base, NodeStatus.UNKNOWN)


def _parse_gres_gpus(gres_string: str) -> dict[str, int]:
    """Parse GPU counts from a GRES string into resource kinds.

    GRES format examples:
        "gpu:2" -> {"gres/gpu": 2}
        "gpu:a100:4,gpu:v100:2" -> {"gres/gpu:a100": 4, "gres/gpu:v100": 2}
        "gpu:tesla:2(S:0-1)" -> {"gres/gpu:tesla": 2}

    Non-GPU entries are ignored.
    """
    if not gres_string:
        return {}

    counts: dict[str, int] = {}
    min_parts_for_gpu = 2  # "gpu:count"
    for item in gres_string.split(","):
        entry = item.strip().split("(")[0]
        if not entry.startswith("gpu"):
            continue
        parts = entry.split(":")
        if len(parts) < min_parts_for_gpu:
            continue
        try:
            count = int(parts[-1])
        except ValueError:
            logger.warning("Failed to parse GPU count", gres_string=gres_string)
            continue
        if len(parts) == min_parts_for_gpu:
            kind = "gres/gpu"
        else:
            kind = f"gres/gpu:{':'.join(parts[1:-1])}"
        counts[kind] = counts.get(kind, 0) + count
    return counts


def _resource(node: str, resource: str, total: int, allocated: int) -> NodeResource:
    return NodeResource(
        node=node,
        resource=resource,
        total=total,
        available=max(total - allocated, 0),
    )


def _transform_node(
    raw: slurmrestapi.types.RawNodeData,
    observed_at: datetime,
) -> NodeRows:
    """Transform a raw node into its snapshot rows.

    Args:
        raw: Raw node data from the REST API.
        observed_at: Observation time stamped on the node row.

    Returns:
        The node row, its resource rows and partition names.
    """
    name = raw.name or raw.hostname
    node = Node(
        name=name,
        status=_node_status(raw.state),
        cpus=raw.cpus,
        memory=raw.real_memory,
        updated_at=observed_at,
    )

    resources = [
        _resource(name, CPU_RESOURCE, raw.cpus, raw.alloc_cpus),
        _resource(name, MEMORY_RESOURCE, raw.real_memory, raw.alloc_memory),
    ]
    gpus = _parse_gres_gpus(raw.gres)
    gpus_used = _parse_gres_gpus(raw.gres_used)
    for kind, total in sorted(gpus.items()):
        resources.append(_resource(name, kind, total, gpus_used.get(kind, 0)))

    return NodeRows(
        node=node,
        resources=resources,
        partitions=sorted(set(raw.partitions or [])),
    )


def fetch(
    client: slurmrestapi.SlurmRestApiClient,
    observed_at: datetime,
) -> list[NodeRows]:
    """Fetch all nodes and transform them into snapshot rows."""
    return [_transform_node(raw, observed_at) for raw in client.get_nodes()]
