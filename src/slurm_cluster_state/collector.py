"""Prometheus collector over the committed cluster state.

Renders the current state version on every scrape: it never fetches from
the scheduler itself, so a scrape costs a read of the committed state only.
"""

from collections import Counter
from collections.abc import Iterator

from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily
from prometheus_client.metrics_core import Metric
from prometheus_client.registry import Collector

from .reconciler import Reconciler
from .state import ClusterState, ClusterStore


def generate_metrics(state: ClusterState) -> Iterator[Metric]:
    """Generate Prometheus metrics from one committed state version.

    Args:
        state: Committed cluster state.

    Yields:
        Prometheus Metric objects.
    """
    version = GaugeMetricFamily(
        "slurm_state_version",
        "Version of the committed cluster state",
    )
    version.add_metric([], state.version)
    yield version

    updated = GaugeMetricFamily(
        "slurm_state_updated_timestamp_seconds",
        "Commit time of the last successful reconciliation, 0 if none",
    )
    updated.add_metric([], state.updated_at.timestamp() if state.updated_at else 0.0)
    yield updated

    per_state = Counter(node.status.value for node in state.entities.nodes)
    node_count = GaugeMetricFamily(
        "slurm_node_count_per_state",
        "nodes per state",
        labels=["state"],
    )
    for status, count in sorted(per_state.items()):
        node_count.add_metric([status], count)
    yield node_count

    job_states = Counter(job.status.value for job in state.entities.jobs)
    job_count = GaugeMetricFamily(
        "slurm_job_count_per_state",
        "jobs per state",
        labels=["state"],
    )
    for status, count in sorted(job_states.items()):
        job_count.add_metric([status], count)
    yield job_count

    families = {
        "cpus_total": ("Total cpus in partition", "total_cpus"),
        "cpus_allocated": ("Allocated cpus in partition", "cpus_alloc"),
        "cpus_idle": ("Idle cpus in partition", "cpus_idle"),
        "memory_total_megabytes": ("Total memory in partition", "total_memory"),
        "memory_allocated_megabytes": ("Allocated memory in partition", "memory_alloc"),
        "memory_free_megabytes": ("Unallocated memory in partition", "memory_free"),
    }
    for suffix, (description, attribute) in families.items():
        family = GaugeMetricFamily(
            f"slurm_partition_{suffix}",
            description,
            labels=["partition"],
        )
        for name, usage in sorted(state.partition_usage.items()):
            family.add_metric([name], getattr(usage, attribute))
        yield family


class ClusterStateCollector(Collector):
    """Prometheus collector reading from a ClusterStore."""

    def __init__(self, store: ClusterStore, reconciler: Reconciler | None = None):
        self._store = store
        self._reconciler = reconciler

    def collect(self) -> Iterator[Metric]:
        # One read, so every family describes the same version.
        state = self._store.get_snapshot()
        yield from generate_metrics(state)

        if self._reconciler is not None:
            failures = CounterMetricFamily(
                "slurm_state_reconciliation_failures",
                "Reconciliations rejected since start",
            )
            failures.add_metric([], self._reconciler.failure_count)
            yield failures
