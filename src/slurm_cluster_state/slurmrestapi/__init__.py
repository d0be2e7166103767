"""SLURM REST API client package.

HTTP client for slurmrestd returning raw, validated response types. Mapping
them onto snapshot rows is done by the ``sources`` package.
"""

from . import types
from .client import (
    DEFAULT_API_VERSION,
    DEFAULT_TIMEOUT,
    ExpiredTokenError,
    SlurmApiError,
    SlurmRestApiClient,
)

__all__ = [
    "DEFAULT_API_VERSION",
    "DEFAULT_TIMEOUT",
    "ExpiredTokenError",
    "SlurmApiError",
    "SlurmRestApiClient",
    "types",
]
