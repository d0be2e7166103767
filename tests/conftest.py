"""Shared fixtures for cluster state tests."""

import copy
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
T1 = T0 + timedelta(minutes=1)


@pytest.fixture
def snapshot_doc() -> dict[str, Any]:
    """Raw snapshot with one idle node, one partition and one pending job.

    n1 has 8 cpus and 32000 MB in partition "batch"; j1 requests 4 cpus and
    holds nothing yet.
    """
    return {
        "nodes": [
            {
                "name": "n1",
                "status": "IDLE",
                "cpus": 8,
                "memory": 32000,
                "updated_at": T0.isoformat(),
            },
        ],
        "partitions": [
            {"name": "batch", "status": "UP", "updated_at": T0.isoformat()},
        ],
        "jobs": [
            {
                "job_id": "j1",
                "user": "alice",
                "partition": "batch",
                "status": "PENDING",
                "time_limit": 60,
                "submit_time": T0.isoformat(),
                "updated_at": T0.isoformat(),
            },
        ],
        "node_partitions": [{"node": "n1", "partition": "batch"}],
        "node_resources": [
            {"node": "n1", "resource": "cpu", "total": 8, "available": 8},
            {"node": "n1", "resource": "mem", "total": 32000, "available": 32000},
        ],
        "job_resources": [
            {"job_id": "j1", "resource": "cpu", "requested": 4, "allocated": 0},
        ],
        "allocations": [],
    }


@pytest.fixture
def running_doc(snapshot_doc: dict[str, Any]) -> dict[str, Any]:
    """The pending snapshot one minute later, with j1 running 4 cpus on n1."""
    doc = copy.deepcopy(snapshot_doc)
    doc["nodes"][0].update(status="MIXED", updated_at=T1.isoformat())
    doc["partitions"][0]["updated_at"] = T1.isoformat()
    doc["jobs"][0].update(
        status="RUNNING",
        start_time=T1.isoformat(),
        updated_at=T1.isoformat(),
    )
    doc["job_resources"][0]["allocated"] = 4
    doc["allocations"] = [
        {"job_id": "j1", "node": "n1", "resource": "cpu", "used": 4},
    ]
    return doc
