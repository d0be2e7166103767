"""Raw API response types for the SLURM REST API.

Pydantic models mirroring the fields of the v0.0.38 node, partition and job
payloads that a cluster snapshot needs. Unknown fields are ignored and
missing ones default, so a partial payload still validates.
"""

from pydantic import BaseModel


class RawNodeData(BaseModel):
    """Raw node data. Memory values are in MB."""

    name: str = ""
    hostname: str = ""

    # "idle", "mixed", "allocated", "down", ...
    state: str = ""

    cpus: int = 0
    alloc_cpus: int = 0

    real_memory: int = 0
    alloc_memory: int = 0

    # GRES strings such as "gpu:a100:4,gpu:v100:2"
    gres: str = ""
    gres_used: str = ""

    partitions: list[str] | None = None


class RawPartitionData(BaseModel):
    """Raw partition data."""

    name: str = ""
    # "UP", "DOWN", "DRAIN", "INACTIVE"
    state: str = ""
    allowed_qos: str = ""
    qos: str = ""


class RawNodeAllocation(BaseModel):
    """Resources a job holds on one node. Memory is in MB."""

    nodename: str = ""
    cpus: int = 0
    memory: int = 0


class RawJobResources(BaseModel):
    """Per-node allocation detail of a job."""

    allocated_nodes: list[RawNodeAllocation] = []


class RawJobData(BaseModel):
    """Raw job data. Memory values are in MiB, times are Unix seconds."""

    job_id: int = 0
    partition: str = ""
    user_name: str = ""
    job_state: str = ""

    cpus: int | None = None
    node_count: int | None = None
    memory_per_node: int | None = None
    memory_per_cpu: int | None = None

    # Minutes; None when unlimited
    time_limit: int | None = None
    submit_time: int = 0
    start_time: int = 0

    job_resources: RawJobResources | None = None
