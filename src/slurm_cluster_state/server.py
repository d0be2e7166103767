"""HTTP server exposing the committed cluster state.

Serves the dashboard read API and Prometheus metrics from one process, and
runs the snapshot poller for the lifetime of the application.
"""

import contextlib
import json
import logging
import os
import pathlib
from collections.abc import AsyncIterator, Callable
from typing import Any

import prometheus_client
import prometheus_client.core
import pydantic
import starlette.applications
import starlette.requests
import starlette.responses
import starlette.routing
import structlog

from . import collector, slurmrestapi, sources
from .persistence import StateRepository
from .poller import SnapshotPoller
from .reconciler import DEFAULT_TIMEOUT, Reconciler
from .state import ClusterStore

CONFIG_ENV_VAR = "SLURM_STATE_CONFIG_PATH"
logger = structlog.get_logger(__name__)


class ServiceConfig(pydantic.BaseModel):
    """Configuration for the cluster state service."""

    rest_api_url: str = pydantic.Field(description="Base URL for SLURM REST API")
    rest_api_token_file: str | None = pydantic.Field(
        None,
        description="Path to file containing API auth token",
    )
    rest_api_version: str = pydantic.Field(
        slurmrestapi.DEFAULT_API_VERSION,
        description="SLURM REST API version",
    )
    rest_api_timeout: float = pydantic.Field(
        slurmrestapi.DEFAULT_TIMEOUT,
        description="Request timeout in seconds",
        gt=0,
    )
    port: int = pydantic.Field(9093, description="HTTP server port", gt=0, lt=65536)
    poll_interval: float = pydantic.Field(
        30.0,
        description="Seconds between snapshot polls",
        gt=0,
    )
    reconcile_timeout: float = pydantic.Field(
        DEFAULT_TIMEOUT,
        description="Seconds a reconciliation may take before it aborts",
        gt=0,
    )
    database_url: str | None = pydantic.Field(
        None,
        description="SQLAlchemy URL to persist committed state to",
    )
    api_prefix: str = pydantic.Field("/api", description="URL prefix of the read API")
    metrics_path: str = pydantic.Field(
        "/metrics",
        description="URL path for metrics endpoint",
    )
    log_level: str = pydantic.Field("INFO", description="Logging level")


def configure_logging(log_level_name: str) -> None:
    """Configure structlog for logfmt output."""
    log_level = getattr(logging, log_level_name.upper(), logging.INFO)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.EventRenamer("msg"),
            structlog.processors.format_exc_info,
            structlog.processors.LogfmtRenderer(
                key_order=("timestamp", "level", "msg"),
            ),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def load_config(config_path: str) -> ServiceConfig:
    """Load configuration from JSON file."""
    path = pathlib.Path(config_path)
    if not path.exists():
        msg = f"Configuration file not found: {config_path}"
        raise FileNotFoundError(msg)

    with path.open("r") as f:
        data = json.load(f)

    return ServiceConfig(**data)


def _not_found(kind: str, key: str) -> starlette.responses.JSONResponse:
    return starlette.responses.JSONResponse(
        {"error": f"{kind} {key!r} not found"},
        status_code=404,
    )


def _json(content: Any, version: int) -> starlette.responses.JSONResponse:
    return starlette.responses.JSONResponse(
        content,
        headers={"X-State-Version": str(version)},
    )


def create_routes(store: ClusterStore) -> list[starlette.routing.Route]:
    """Build the read API routes over ``store``.

    Every handler reads the committed state once, so a response never mixes
    two versions.
    """

    def status(request: starlette.requests.Request) -> starlette.responses.Response:
        state = store.get_snapshot()
        since = request.query_params.get("since")
        if since is not None and since.isdigit() and int(since) == state.version:
            return starlette.responses.Response(
                status_code=304,
                headers={"X-State-Version": str(state.version)},
            )
        return _json(state.to_document(), state.version)

    def version(request: starlette.requests.Request) -> starlette.responses.Response:
        reading = store.get_version()
        return _json(
            {
                "version": reading.version,
                "updated_at": (
                    reading.timestamp.isoformat() if reading.timestamp else None
                ),
            },
            reading.version,
        )

    def list_nodes(request: starlette.requests.Request) -> starlette.responses.Response:
        state = store.get_snapshot()
        nodes = sorted(state.entities.nodes, key=lambda node: node.name)
        return _json([state.node_document(node) for node in nodes], state.version)

    def get_node(request: starlette.requests.Request) -> starlette.responses.Response:
        state = store.get_snapshot()
        name = request.path_params["name"]
        node = state.entities.get_node(name)
        if node is None:
            return _not_found("node", name)
        return _json(state.node_document(node), state.version)

    def list_jobs(request: starlette.requests.Request) -> starlette.responses.Response:
        state = store.get_snapshot()
        jobs = sorted(state.entities.jobs, key=lambda job: job.submit_time, reverse=True)
        return _json([state.job_document(job) for job in jobs], state.version)

    def get_job(request: starlette.requests.Request) -> starlette.responses.Response:
        state = store.get_snapshot()
        job_id = request.path_params["job_id"]
        job = state.entities.get_job(job_id)
        if job is None:
            return _not_found("job", job_id)
        return _json(state.job_document(job), state.version)

    def list_partitions(
        request: starlette.requests.Request,
    ) -> starlette.responses.Response:
        state = store.get_snapshot()
        partitions = sorted(state.entities.partitions, key=lambda p: p.name)
        return _json(
            [state.partition_document(partition) for partition in partitions],
            state.version,
        )

    def get_partition(
        request: starlette.requests.Request,
    ) -> starlette.responses.Response:
        state = store.get_snapshot()
        name = request.path_params["name"]
        partition = state.entities.get_partition(name)
        if partition is None:
            return _not_found("partition", name)
        return _json(state.partition_document(partition), state.version)

    def list_allocations(
        request: starlette.requests.Request,
    ) -> starlette.responses.Response:
        state = store.get_snapshot()
        job_id = request.query_params.get("job")
        node = request.query_params.get("node")
        if job_id is not None:
            rows = state.allocations.allocations_for_job(job_id)
        elif node is not None:
            rows = state.allocations.allocations_for_node(node)
        else:
            rows = state.allocations.allocations.rows()
        if node is not None:
            rows = [row for row in rows if row.node == node]
        rows.sort(key=lambda row: row.key)
        return _json([row.model_dump(mode="json") for row in rows], state.version)

    return [
        starlette.routing.Route("/status", status, methods=["GET"]),
        starlette.routing.Route("/version", version, methods=["GET"]),
        starlette.routing.Route("/nodes", list_nodes, methods=["GET"]),
        starlette.routing.Route("/nodes/{name}", get_node, methods=["GET"]),
        starlette.routing.Route("/jobs", list_jobs, methods=["GET"]),
        starlette.routing.Route("/jobs/{job_id}", get_job, methods=["GET"]),
        starlette.routing.Route("/partitions", list_partitions, methods=["GET"]),
        starlette.routing.Route("/partitions/{name}", get_partition, methods=["GET"]),
        starlette.routing.Route("/allocations", list_allocations, methods=["GET"]),
    ]


def create_starlette_app(
    store: ClusterStore,
    registry: prometheus_client.core.CollectorRegistry,
    api_prefix: str = "/api",
    metrics_path: str = "/metrics",
    lifespan: Callable[[starlette.applications.Starlette], Any] | None = None,
) -> starlette.applications.Starlette:
    """Create a Starlette application for the read API and metrics.

    Args:
        store: Store holding the committed state.
        registry: Prometheus collector registry.
        api_prefix: URL prefix for the read API (e.g. "/api").
        metrics_path: URL path for metrics endpoint (e.g. "/metrics").
        lifespan: Optional lifespan context, used to run the poller.

    Returns:
        Configured Starlette application.
    """

    def metrics_endpoint(
        request: starlette.requests.Request,
    ) -> starlette.responses.Response:
        metrics_output = prometheus_client.generate_latest(registry)
        logger.info(
            "HTTP request",
            client_ip=request.client.host if request.client else "unknown",
            method=request.method,
            path=request.url.path,
        )
        return starlette.responses.PlainTextResponse(
            content=metrics_output,
            media_type="text/plain; version=0.0.4; charset=utf-8",
        )

    routes = [
        starlette.routing.Mount(api_prefix, routes=create_routes(store)),
        starlette.routing.Route(metrics_path, metrics_endpoint, methods=["GET"]),
    ]
    return starlette.applications.Starlette(routes=routes, lifespan=lifespan)


def create_service(config: ServiceConfig) -> starlette.applications.Starlette:
    """Construct the service ASGI app from validated config."""
    rest_client = slurmrestapi.SlurmRestApiClient(
        base_url=config.rest_api_url,
        token_file=config.rest_api_token_file,
        api_version=config.rest_api_version,
        timeout=config.rest_api_timeout,
    )
    logger.info("Created REST client", base_url=config.rest_api_url)

    repository: StateRepository | None = None
    store = ClusterStore()
    if config.database_url:
        repository = StateRepository.from_url(config.database_url)
        repository.create_schema()
        restored = repository.load()
        if restored is not None:
            store = ClusterStore(restored)

    reconciler = Reconciler(
        store,
        timeout=config.reconcile_timeout,
        writer=repository,
    )
    # Lambda captures rest_client in closure, creating a zero-argument fetcher
    poller = SnapshotPoller(
        fetcher=lambda: sources.fetch_snapshot(rest_client),
        reconciler=reconciler,
        interval=config.poll_interval,
    )

    registry = prometheus_client.core.CollectorRegistry()
    registry.register(collector.ClusterStateCollector(store, reconciler))

    @contextlib.asynccontextmanager
    async def lifespan(app: starlette.applications.Starlette) -> AsyncIterator[None]:
        poller.start()
        try:
            yield
        finally:
            poller.stop(timeout=config.reconcile_timeout)
            rest_client.close()

    return create_starlette_app(
        store=store,
        registry=registry,
        api_prefix=config.api_prefix,
        metrics_path=config.metrics_path,
        lifespan=lifespan,
    )


def create_app(config_path: str | None = None) -> starlette.applications.Starlette:
    """Create the service ASGI app using a config path or environment default."""
    resolved_path = config_path or os.environ.get(CONFIG_ENV_VAR, "/config.json")
    config = load_config(resolved_path)
    configure_logging(config.log_level)
    return create_service(config)
