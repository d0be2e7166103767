"""SLURM REST API client.

Fetches the node, partition and job collections that make up one cluster
snapshot. Responses are validated into the raw Pydantic types; turning them
into snapshot rows is left to the ``sources`` package.
"""

import base64
import json
import threading
import time
from pathlib import Path
from typing import Any, TypeVar

import httpx
import pydantic
import structlog

from .types import RawJobData, RawNodeData, RawPartitionData

logger = structlog.get_logger(__name__)

# Field names in the raw types follow this API version.
DEFAULT_API_VERSION = "v0.0.38"

DEFAULT_TIMEOUT = 30.0

_JWT_SEGMENTS = 3

RawT = TypeVar("RawT", bound=pydantic.BaseModel)


class ExpiredTokenError(Exception):
    """Raised when the Slurm JWT has expired."""


class SlurmApiError(RuntimeError):
    """Raised when slurmrestd answers with an ``errors`` list."""


def _decode_jwt_payload(token: str) -> dict[str, Any] | None:
    segments = token.split(".")
    if len(segments) != _JWT_SEGMENTS:
        return None
    payload_b64 = segments[1]
    payload_b64 += "=" * (-len(payload_b64) % 4)
    try:
        payload = json.loads(base64.urlsafe_b64decode(payload_b64))
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None


def validate_jwt_not_expired(token: str) -> None:
    """Refuse a Slurm JWT whose ``exp`` claim is already in the past.

    The signature is not verified. Tokens that are not JWTs, cannot be
    decoded, or carry no ``exp`` claim are accepted with a warning, since
    slurmrestd may be fronted by other authentication schemes.

    Args:
        token: Raw token string.

    Raises:
        ExpiredTokenError: If the token has expired.
    """
    payload = _decode_jwt_payload(token)
    if payload is None:
        logger.warning("Token is not a decodable JWT, skipping expiry check")
        return

    exp = payload.get("exp")
    if exp is None:
        logger.warning("JWT has no 'exp' claim, skipping expiry check")
        return

    now = time.time()
    if now >= exp:
        msg = f"Slurm JWT has expired (exp={exp}, now={int(now)})"
        raise ExpiredTokenError(msg)
    logger.info("JWT expiry validated", expires_in_seconds=int(exp - now))


class SlurmRestApiClient:
    """HTTP client for the SLURM REST API.

    Each thread gets its own ``httpx.Client``, so one instance can be shared
    between the poller thread and anything else that needs it. Usable as a
    context manager.
    """

    def __init__(
        self,
        base_url: str,
        token_file: str | Path | None = None,
        api_version: str = DEFAULT_API_VERSION,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        """Initialize the REST API client.

        Args:
            base_url: Base URL of slurmrestd (e.g. "http://localhost:6820").
            token_file: File holding the ``X-SLURM-USER-TOKEN`` value.
            api_version: REST API version path segment.
            timeout: Request timeout in seconds.

        Raises:
            ValueError: If base_url is empty or timeout is not positive.
            FileNotFoundError: If token_file does not exist.
            ExpiredTokenError: If the token is an expired JWT.
        """
        if not base_url:
            msg = "base_url cannot be empty"
            raise ValueError(msg)
        if timeout <= 0:
            msg = "timeout must be positive"
            raise ValueError(msg)

        self.base_url = base_url.rstrip("/")
        self.api_version = api_version
        self._timeout = timeout
        self._headers = {"Accept": "application/json"}

        if token_file:
            token_path = Path(token_file)
            if not token_path.exists():
                msg = f"Token file not found: {token_file}"
                raise FileNotFoundError(msg)
            token = token_path.read_text().strip()
            validate_jwt_not_expired(token)
            self._headers["X-SLURM-USER-TOKEN"] = token

        self._local = threading.local()

    @property
    def client(self) -> httpx.Client:
        """Thread-local ``httpx.Client``, created lazily."""
        existing = getattr(self._local, "client", None)
        if existing is None or existing.is_closed:
            self._local.client = httpx.Client(
                base_url=self.base_url,
                headers=self._headers,
                timeout=self._timeout,
            )
        return self._local.client

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def close(self):
        """Close this thread's HTTP client if it is open."""
        existing = getattr(self._local, "client", None)
        if existing is not None and not existing.is_closed:
            existing.close()

    def _get(self, resource: str) -> dict[str, Any]:
        """GET ``/slurm/<version>/<resource>`` and return the decoded body.

        Raises:
            httpx.HTTPError: If the request fails or returns an error status.
            SlurmApiError: If the body carries an ``errors`` list.
        """
        endpoint = f"/slurm/{self.api_version}/{resource}"
        start = time.monotonic()
        try:
            response = self.client.get(endpoint)
            response.raise_for_status()
        except httpx.HTTPError:
            logger.exception(
                "API request failed",
                endpoint=endpoint,
                duration_seconds=round(time.monotonic() - start, 3),
            )
            raise
        logger.debug(
            "API request completed",
            endpoint=endpoint,
            duration_seconds=round(time.monotonic() - start, 3),
        )

        data = response.json()
        if errors := data.get("errors", []):
            messages = [error.get("error", str(error)) for error in errors]
            for message in messages:
                logger.error("API error response", endpoint=endpoint, error=message)
            msg = f"API returned errors: {'; '.join(messages)}"
            raise SlurmApiError(msg)
        return data

    def _get_collection(self, resource: str, model: type[RawT]) -> list[RawT]:
        data = self._get(resource)
        return [model.model_validate(item) for item in data.get(resource, [])]

    def get_nodes(self) -> list[RawNodeData]:
        """Fetch every node known to slurmctld."""
        return self._get_collection("nodes", RawNodeData)

    def get_partitions(self) -> list[RawPartitionData]:
        """Fetch every partition known to slurmctld."""
        return self._get_collection("partitions", RawPartitionData)

    def get_jobs(self) -> list[RawJobData]:
        """Fetch every job slurmctld still tracks."""
        return self._get_collection("jobs", RawJobData)
