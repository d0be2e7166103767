"""Slurm Cluster State.

Ingestion and consistency layer for Slurm cluster dashboards. Reconciles
periodic scheduler snapshots (nodes, partitions, jobs and their resource
allocations) into an atomically published, versioned cluster state.
"""

__version__ = "0.1.0"
