"""HTTP server for the Slurm monitor."""

import contextlib
import dataclasses
import json
import logging
import os
import pathlib

import prometheus_client
import prometheus_client.core
import pydantic
import starlette.applications
import starlette.background
import starlette.concurrency
import starlette.requests
import starlette.responses
import starlette.routing
import structlog

from . import fetcher, metrics, models, poller
from .remote import session as remote_session

CONFIG_ENV_VAR = "SLURM_MONITOR_CONFIG_PATH"
DEFAULT_CONFIG_PATH = "~/.slurminal.json"
logger = structlog.get_logger(__name__)


class MonitorConfig(pydantic.BaseModel):
    """Configuration for the Slurm monitor."""

    host: str = pydantic.Field(description="Cluster login node", min_length=1)
    user: str = pydantic.Field(description="Remote and monitored username", min_length=1)
    name: str = pydantic.Field("Slurminal", description="Display name of the cluster")
    key_dir: str | None = pydantic.Field(
        None,
        description="Directory searched for SSH private keys (default: ~/.ssh)",
    )
    connect_timeout: float = pydantic.Field(
        remote_session.DEFAULT_CONNECT_TIMEOUT,
        description="SSH setup timeout in seconds",
        gt=0,
    )
    keepalive_interval: int = pydantic.Field(
        remote_session.DEFAULT_KEEPALIVE_INTERVAL,
        description="Seconds between SSH keep-alive probes",
        ge=0,
    )
    reconnect_delay: float = pydantic.Field(
        remote_session.DEFAULT_RECONNECT_DELAY,
        description="Fixed delay before each reconnect attempt in seconds",
        gt=0,
    )
    command_timeout: float | None = pydantic.Field(
        remote_session.DEFAULT_COMMAND_TIMEOUT,
        description="Per-command timeout in seconds, null to wait forever",
        gt=0,
    )
    poll_interval: float = pydantic.Field(
        poller.DEFAULT_POLL_INTERVAL,
        description="Seconds between fetch cycles",
        gt=0,
    )
    history_window: str = pydantic.Field(
        fetcher.DEFAULT_HISTORY_WINDOW,
        description="sacct --starttime value for job history",
    )
    quota_filesystems: list[str] = pydantic.Field(
        default_factory=lambda: list(fetcher.DEFAULT_QUOTA_FILESYSTEMS),
        description="Filesystems probed for disk quota",
    )
    log_tail_lines: int = pydantic.Field(
        fetcher.DEFAULT_TAIL_LINES,
        description="Default number of lines returned by /logtail",
        gt=0,
    )
    port: int = pydantic.Field(9092, description="HTTP server port", gt=0, lt=65536)
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


def load_config(config_path: str) -> MonitorConfig:
    """Load configuration from JSON file."""
    path = pathlib.Path(config_path).expanduser()
    if not path.exists():
        msg = f"Configuration file not found: {config_path}"
        raise FileNotFoundError(msg)

    with path.open("r") as f:
        data = json.load(f)

    return MonitorConfig(**data)


@dataclasses.dataclass
class Monitor:
    """The wired session, orchestrator and poll driver."""

    config: MonitorConfig
    session: remote_session.SessionManager
    orchestrator: fetcher.SnapshotOrchestrator
    driver: poller.PollDriver
    registry: prometheus_client.core.CollectorRegistry


def create_monitor(
    config: MonitorConfig,
    session: remote_session.SessionManager | None = None,
) -> Monitor:
    """Wire the monitor components from validated config.

    Args:
        config: Monitor configuration.
        session: Session to use instead of building one from config.

    Returns:
        Monitor with a custom (non-global) Prometheus registry.
    """
    if session is None:
        session = remote_session.SessionManager(
            host=config.host,
            user=config.user,
            key_dir=config.key_dir,
            connect_timeout=config.connect_timeout,
            keepalive_interval=config.keepalive_interval,
            reconnect_delay=config.reconnect_delay,
            command_timeout=config.command_timeout,
        )
    orchestrator = fetcher.SnapshotOrchestrator(
        session,
        user=config.user,
        history_window=config.history_window,
        quota_filesystems=config.quota_filesystems,
    )
    driver = poller.PollDriver(orchestrator, session, interval=config.poll_interval)

    registry = prometheus_client.core.CollectorRegistry()
    registry.register(metrics.SnapshotCollector(driver, lambda: session.status))
    logger.info("Registered collector", collector="snapshot", host=config.host)

    return Monitor(
        config=config,
        session=session,
        orchestrator=orchestrator,
        driver=driver,
        registry=registry,
    )


def _snapshot_payload(snapshot: models.Snapshot) -> dict:
    payload = dataclasses.asdict(snapshot)
    payload["captured_at"] = snapshot.last_updated
    return payload


def create_starlette_app(monitor: Monitor) -> starlette.applications.Starlette:
    """Create a Starlette application serving the monitor.

    Args:
        monitor: Wired monitor components.

    Returns:
        Configured Starlette application.
    """
    config = monitor.config

    def metrics_endpoint(
        request: starlette.requests.Request,
    ) -> starlette.responses.Response:
        """Serve Prometheus metrics for the latest snapshot."""
        metrics_output = prometheus_client.generate_latest(monitor.registry)
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

    def snapshot_endpoint(
        request: starlette.requests.Request,
    ) -> starlette.responses.Response:
        """Serve the latest snapshot as JSON."""
        snapshot = monitor.driver.latest
        if snapshot is None:
            return starlette.responses.JSONResponse(
                {"error": "no snapshot yet"},
                status_code=503,
            )
        return starlette.responses.JSONResponse(_snapshot_payload(snapshot))

    def status_endpoint(
        request: starlette.requests.Request,
    ) -> starlette.responses.Response:
        """Serve the connection state."""
        return starlette.responses.JSONResponse(
            {"name": config.name, "status": monitor.session.status.value},
        )

    def refresh_endpoint(
        request: starlette.requests.Request,
    ) -> starlette.responses.Response:
        """Schedule an immediate fetch cycle."""
        return starlette.responses.JSONResponse(
            {"accepted": True},
            status_code=202,
            background=starlette.background.BackgroundTask(monitor.driver.refresh_now),
        )

    def log_tail_endpoint(
        request: starlette.requests.Request,
    ) -> starlette.responses.Response:
        """Serve the tail of a remote file."""
        path = request.query_params.get("path")
        if not path:
            return starlette.responses.PlainTextResponse("missing path", status_code=400)
        try:
            lines = int(request.query_params.get("lines", config.log_tail_lines))
            text = monitor.driver.tail_log(path, lines)
        except ValueError as exc:
            return starlette.responses.PlainTextResponse(str(exc), status_code=400)
        except remote_session.CommandFailed as exc:
            logger.info("Log tail failed", path=path, exit_code=exc.exit_code)
            return starlette.responses.PlainTextResponse(exc.stderr, status_code=404)
        except remote_session.SessionError as exc:
            return starlette.responses.PlainTextResponse(str(exc), status_code=503)
        return starlette.responses.PlainTextResponse(text)

    @contextlib.asynccontextmanager
    async def lifespan(app: starlette.applications.Starlette):
        try:
            await starlette.concurrency.run_in_threadpool(monitor.session.connect)
        except remote_session.SessionError:
            logger.exception("Initial SSH connection failed", host=config.host)
        monitor.driver.start()
        yield
        monitor.driver.stop()
        monitor.session.dispose()

    routes = [
        starlette.routing.Route(config.metrics_path, metrics_endpoint, methods=["GET"]),
        starlette.routing.Route("/snapshot", snapshot_endpoint, methods=["GET"]),
        starlette.routing.Route("/status", status_endpoint, methods=["GET"]),
        starlette.routing.Route("/refresh", refresh_endpoint, methods=["POST"]),
        starlette.routing.Route("/logtail", log_tail_endpoint, methods=["GET"]),
    ]

    return starlette.applications.Starlette(routes=routes, lifespan=lifespan)


def create_app(config_path: str | None = None) -> starlette.applications.Starlette:
    """Create the monitor ASGI app using a config path or environment default."""
    resolved_path = config_path or os.environ.get(CONFIG_ENV_VAR, DEFAULT_CONFIG_PATH)
    config = load_config(resolved_path)
    configure_logging(config.log_level)
    return create_starlette_app(create_monitor(config))
