"""Tests for the nodes source module."""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from slurm_cluster_state.models import NodeStatus
from slurm_cluster_state.slurmrestapi import client, types
from slurm_cluster_state.sources import nodes

OBSERVED = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def raw_node_mixed() -> types.RawNodeData:
    """A partially allocated node with two GPU types."""
    return types.RawNodeData(
        name="node002",
        hostname="node002.cluster.local",
        state="mixed",
        cpus=128,
        alloc_cpus=96,
        real_memory=512000,
        alloc_memory=384000,
        gres="gpu:a100:4,gpu:v100:2",
        gres_used="gpu:a100:2(IDX:0-1),gpu:v100:0",
        partitions=["gpu", "batch", "gpu"],
    )


@pytest.fixture
def rows(raw_node_mixed: types.RawNodeData) -> nodes.NodeRows:
    return nodes._transform_node(raw_node_mixed, OBSERVED)


# ---------------------------------------------------------------------------
# _node_status
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("state", "expected"),
    [
        ("idle", NodeStatus.IDLE),
        ("IDLE*", NodeStatus.IDLE),
        ("mix", NodeStatus.MIXED),
        ("allocated", NodeStatus.ALLOCATED),
        ("alloc+drain", NodeStatus.ALLOCATED),
        ("down~", NodeStatus.DOWN),
        ("drained", NodeStatus.UNKNOWN),
        ("", NodeStatus.UNKNOWN),
    ],
)
def test_node_status_mapping(state: str, expected: NodeStatus):
    """Slurm state strings map onto the closed node status set."""
    assert nodes._node_status(state) is expected


# ---------------------------------------------------------------------------
# _parse_gres_gpus
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("gres", "expected"),
    [
        ("", {}),
        ("gpu:2", {"gres/gpu": 2}),
        ("gpu:a100:4,gpu:v100:2", {"gres/gpu:a100": 4, "gres/gpu:v100": 2}),
        ("gpu:tesla:2(S:0-1)", {"gres/gpu:tesla": 2}),
        ("mps:100,gpu:1", {"gres/gpu": 1}),
        ("gpu:a100:many", {}),
    ],
)
def test_parse_gres_gpus(gres: str, expected: dict[str, int]):
    """GRES strings become TRES-style GPU resource kinds."""
    assert nodes._parse_gres_gpus(gres) == expected


# ---------------------------------------------------------------------------
# _transform_node
# ---------------------------------------------------------------------------


def test_transform_node_builds_node_row(rows: nodes.NodeRows):
    """The node row carries status, capacity and the observation time."""
    assert rows.node.name == "node002"
    assert rows.node.status is NodeStatus.MIXED
    assert rows.node.cpus == 128
    assert rows.node.memory == 512000
    assert rows.node.updated_at == OBSERVED


def test_transform_node_resources(rows: nodes.NodeRows):
    """cpu, mem and each GPU type get a resource row with availability."""
    resources = {r.resource: (r.total, r.available) for r in rows.resources}
    assert resources == {
        "cpu": (128, 32),
        "mem": (512000, 128000),
        "gres/gpu:a100": (4, 2),
        "gres/gpu:v100": (2, 2),
    }


def test_transform_node_partitions_are_unique_and_sorted(rows: nodes.NodeRows):
    """Duplicate partition names collapse into one membership."""
    assert rows.partitions == ["batch", "gpu"]


def test_transform_node_floors_availability_at_zero():
    """Over-reported allocation never produces negative availability."""
    raw = types.RawNodeData(name="n1", state="alloc", cpus=4, alloc_cpus=6)
    rows = nodes._transform_node(raw, OBSERVED)
    cpu = next(r for r in rows.resources if r.resource == "cpu")
    assert cpu.available == 0


def test_transform_node_falls_back_to_hostname():
    """Nodes without a name use their hostname."""
    raw = types.RawNodeData(hostname="n7", state="idle", partitions=None)
    rows = nodes._transform_node(raw, OBSERVED)
    assert rows.node.name == "n7"
    assert rows.partitions == []


def test_fetch_transforms_every_node(raw_node_mixed: types.RawNodeData):
    """fetch maps every node returned by the client."""
    api_client = MagicMock(spec=client.SlurmRestApiClient)
    api_client.get_nodes.return_value = [raw_node_mixed]

    result = nodes.fetch(api_client, OBSERVED)

    assert [r.node.name for r in result] == ["node002"]
