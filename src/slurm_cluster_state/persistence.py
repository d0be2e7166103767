"""Relational persistence of committed cluster state.

Mirrors each committed version into SQL tables (nodes, node_partitions,
node_resources, partitions, jobs, job_resources, job_allocations) inside a
single database transaction, and restores the latest version on startup.
Node and partition rows also carry the derived CPU and memory aggregates so
that read-only consumers can query them directly.
"""

import math
import time
from collections.abc import Mapping
from datetime import datetime, timezone

import structlog
from sqlalchemy import (
    BigInteger,
    DateTime,
    Integer,
    String,
    create_engine,
    make_url,
    select,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column

from .allocations import AllocationGraph, NodeUsage, PartitionUsage
from .entities import EntityStore
from .errors import PersistenceError, ReconciliationTimeoutError
from .ledger import ResourceLedger
from .models import (
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
from .state import ClusterState
from .table import Table, TableDiff

logger = structlog.get_logger(__name__)

# Seconds to wait for a new database connection.
CONNECT_TIMEOUT = 10


class Base(DeclarativeBase):
    pass


class NodeRecord(Base):
    __tablename__ = "nodes"

    name: Mapped[str] = mapped_column(String(255), primary_key=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    cpus: Mapped[int] = mapped_column(Integer, nullable=False)
    cpus_alloc: Mapped[int] = mapped_column(Integer, nullable=False)
    cpus_idle: Mapped[int] = mapped_column(Integer, nullable=False)
    memory: Mapped[int] = mapped_column(BigInteger, nullable=False)
    memory_alloc: Mapped[int] = mapped_column(BigInteger, nullable=False)
    memory_free: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )


class NodePartitionRecord(Base):
    __tablename__ = "node_partitions"

    node: Mapped[str] = mapped_column(String(255), primary_key=True)
    partition: Mapped[str] = mapped_column(String(255), primary_key=True)


class NodeResourceRecord(Base):
    __tablename__ = "node_resources"

    node: Mapped[str] = mapped_column(String(255), primary_key=True)
    resource: Mapped[str] = mapped_column(String(255), primary_key=True)
    available: Mapped[int] = mapped_column(BigInteger, nullable=False)
    total: Mapped[int] = mapped_column(BigInteger, nullable=False)


class PartitionRecord(Base):
    __tablename__ = "partitions"

    name: Mapped[str] = mapped_column(String(255), primary_key=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    access_qos: Mapped[str | None] = mapped_column(String(255), nullable=True)
    resource_qos: Mapped[str | None] = mapped_column(String(255), nullable=True)
    total_nodes: Mapped[int] = mapped_column(Integer, nullable=False)
    total_cpus: Mapped[int] = mapped_column(Integer, nullable=False)
    total_cpus_alloc: Mapped[int] = mapped_column(Integer, nullable=False)
    total_cpus_idle: Mapped[int] = mapped_column(Integer, nullable=False)
    total_memory: Mapped[int] = mapped_column(BigInteger, nullable=False)
    total_memory_alloc: Mapped[int] = mapped_column(BigInteger, nullable=False)
    total_memory_free: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )


class JobRecord(Base):
    __tablename__ = "jobs"

    job_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user: Mapped[str] = mapped_column(String(255), nullable=False)
    partition: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    time_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    start_time: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    submit_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )


class JobResourceRecord(Base):
    __tablename__ = "job_resources"

    job_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    resource: Mapped[str] = mapped_column(String(255), primary_key=True)
    requested: Mapped[int] = mapped_column(BigInteger, nullable=False)
    allocated: Mapped[int] = mapped_column(BigInteger, nullable=False)


class JobAllocationRecord(Base):
    __tablename__ = "job_allocations"

    job_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    node: Mapped[str] = mapped_column(String(255), primary_key=True)
    resource: Mapped[str] = mapped_column(String(255), primary_key=True)
    used: Mapped[int] = mapped_column(BigInteger, nullable=False)


class StateVersionRecord(Base):
    __tablename__ = "state_version"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    version: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )


# Record class per reconciler table name, in deletion order.
RECORDS: dict[str, type[Base]] = {
    "allocations": JobAllocationRecord,
    "job_resources": JobResourceRecord,
    "jobs": JobRecord,
    "node_partitions": NodePartitionRecord,
    "node_resources": NodeResourceRecord,
    "nodes": NodeRecord,
    "partitions": PartitionRecord,
}


def _as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes returned by backends like SQLite."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _node_record(node: Node, usage: NodeUsage | None) -> NodeRecord:
    return NodeRecord(
        name=node.name,
        status=node.status.value,
        cpus=node.cpus,
        cpus_alloc=usage.cpus_alloc if usage else 0,
        cpus_idle=usage.cpus_idle if usage else node.cpus,
        memory=node.memory,
        memory_alloc=usage.memory_alloc if usage else 0,
        memory_free=usage.memory_free if usage else node.memory,
        updated_at=node.updated_at,
    )


def _partition_record(
    partition: Partition,
    usage: PartitionUsage | None,
) -> PartitionRecord:
    usage = usage or PartitionUsage(partition.name)
    return PartitionRecord(
        name=partition.name,
        status=partition.status.value,
        access_qos=partition.access_qos,
        resource_qos=partition.resource_qos,
        total_nodes=usage.total_nodes,
        total_cpus=usage.total_cpus,
        total_cpus_alloc=usage.cpus_alloc,
        total_cpus_idle=usage.cpus_idle,
        total_memory=usage.total_memory,
        total_memory_alloc=usage.memory_alloc,
        total_memory_free=usage.memory_free,
        updated_at=partition.updated_at,
    )


def _row_record(table: str, row) -> Base:
    if table == "jobs":
        return JobRecord(
            job_id=row.job_id,
            user=row.user,
            partition=row.partition,
            status=row.status.value,
            time_limit=row.time_limit,
            start_time=row.start_time,
            submit_time=row.submit_time,
            updated_at=row.updated_at,
        )
    # Relation rows map field for field onto their records.
    return RECORDS[table](**row.model_dump())


class StateRepository:
    """SQLAlchemy-backed store for committed cluster state versions."""

    def __init__(self, engine: Engine):
        self._engine = engine

    @classmethod
    def from_url(
        cls,
        url: str,
        connect_timeout: int = CONNECT_TIMEOUT,
    ) -> "StateRepository":
        """Create a repository, bounding connection setup where supported."""
        kwargs = {}
        if make_url(url).get_backend_name() == "postgresql":
            kwargs["connect_args"] = {"connect_timeout": connect_timeout}
        return cls(create_engine(url, **kwargs))

    @property
    def engine(self) -> Engine:
        return self._engine

    def create_schema(self) -> None:
        Base.metadata.create_all(self._engine)

    def save(
        self,
        state: ClusterState,
        diffs: Mapping[str, TableDiff],
        timeout: float | None = None,
    ) -> None:
        """Write one state version in a single database transaction.

        Args:
            state: Version to write.
            diffs: Per-table changes that produced ``state``.
            timeout: Seconds the write may wait on locks and statements.
                Unbounded when None.

        Raises:
            ReconciliationTimeoutError: If the database failed only after
                ``timeout`` was used up.
            PersistenceError: If the database rejects the write; nothing of
                the version is kept.
        """
        started = time.monotonic()
        try:
            with Session(self._engine) as session, session.begin():
                if timeout is not None:
                    self._bound_session(session, timeout)
                self._write(session, state, diffs)
        except SQLAlchemyError as exc:
            elapsed = time.monotonic() - started
            if timeout is not None and elapsed >= timeout:
                msg = (
                    f"Persisting state version {state.version} did not finish "
                    f"within {timeout:.3f}s"
                )
                raise ReconciliationTimeoutError(msg) from exc
            msg = f"Failed to persist state version {state.version}"
            raise PersistenceError(msg) from exc
        logger.debug("Persisted cluster state", version=state.version)

    def _bound_session(self, session: Session, timeout: float) -> None:
        # Zero disables the postgres timeouts, so at least one millisecond.
        millis = max(math.ceil(timeout * 1000), 1)
        dialect = self._engine.dialect.name
        if dialect == "sqlite":
            session.execute(text(f"PRAGMA busy_timeout = {millis}"))
        elif dialect == "postgresql":
            session.execute(text(f"SET LOCAL lock_timeout = {millis}"))
            session.execute(text(f"SET LOCAL statement_timeout = {millis}"))

    def _write(
        self,
        session: Session,
        state: ClusterState,
        diffs: Mapping[str, TableDiff],
    ) -> None:
        for table, record_cls in RECORDS.items():
            diff = diffs.get(table)
            if diff is None:
                continue
            for key in diff.removed:
                record = session.get(record_cls, key)
                if record is not None:
                    session.delete(record)
        session.flush()

        for table in (
            "allocations",
            "job_resources",
            "jobs",
            "node_partitions",
            "node_resources",
        ):
            diff = diffs.get(table)
            if diff is None:
                continue
            for row in diff.upserts:
                session.merge(_row_record(table, row))

        # Aggregates change without their entity row changing, so every node
        # and partition row is rewritten.
        for node in state.entities.nodes:
            session.merge(_node_record(node, state.node_usage.get(node.name)))
        for partition in state.entities.partitions:
            session.merge(
                _partition_record(partition, state.partition_usage.get(partition.name)),
            )

        session.merge(
            StateVersionRecord(id=1, version=state.version, updated_at=state.updated_at),
        )

    def load(self) -> ClusterState | None:
        """Restore the most recently persisted state version.

        Returns:
            The stored state with aggregates recomputed, or None when no
            version has been persisted yet.
        """
        with Session(self._engine) as session:
            version_record = session.get(StateVersionRecord, 1)
            if version_record is None:
                return None

            nodes = Table(
                Node(
                    name=r.name,
                    status=NodeStatus(r.status),
                    cpus=r.cpus,
                    memory=r.memory,
                    updated_at=_as_utc(r.updated_at),
                )
                for r in session.scalars(select(NodeRecord))
            )
            partitions = Table(
                Partition(
                    name=r.name,
                    status=PartitionStatus(r.status),
                    access_qos=r.access_qos,
                    resource_qos=r.resource_qos,
                    updated_at=_as_utc(r.updated_at),
                )
                for r in session.scalars(select(PartitionRecord))
            )
            jobs = Table(
                Job(
                    job_id=r.job_id,
                    user=r.user,
                    partition=r.partition,
                    status=JobStatus(r.status),
                    time_limit=r.time_limit,
                    start_time=_as_utc(r.start_time),
                    submit_time=_as_utc(r.submit_time),
                    updated_at=_as_utc(r.updated_at),
                )
                for r in session.scalars(select(JobRecord))
            )
            memberships = Table(
                NodePartition(node=r.node, partition=r.partition)
                for r in session.scalars(select(NodePartitionRecord))
            )
            node_resources = Table(
                NodeResource(
                    node=r.node,
                    resource=r.resource,
                    total=r.total,
                    available=r.available,
                )
                for r in session.scalars(select(NodeResourceRecord))
            )
            job_resources = Table(
                JobResource(
                    job_id=r.job_id,
                    resource=r.resource,
                    requested=r.requested,
                    allocated=r.allocated,
                )
                for r in session.scalars(select(JobResourceRecord))
            )
            allocations = Table(
                Allocation(job_id=r.job_id, node=r.node, resource=r.resource, used=r.used)
                for r in session.scalars(select(JobAllocationRecord))
            )
            version = version_record.version
            updated_at = _as_utc(version_record.updated_at)

        logger.info("Loaded persisted cluster state", version=version, nodes=len(nodes))
        return ClusterState.build(
            version=version,
            updated_at=updated_at,
            entities=EntityStore(nodes, partitions, jobs, memberships),
            ledger=ResourceLedger(node_resources, job_resources),
            allocations=AllocationGraph(allocations),
        )
