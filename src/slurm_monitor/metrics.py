"""Prometheus export of the latest snapshot.

The collector never triggers a fetch itself; it renders whatever the poll
driver last stored, together with polling and connection metadata.
"""

from collections.abc import Callable, Iterator

import structlog
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily
from prometheus_client.metrics_core import Metric
from prometheus_client.registry import Collector

from . import models
from .poller import PollDriver
from .remote import ConnectionState

logger = structlog.get_logger(__name__)


def _node_metrics(summary: models.NodeSummary) -> Iterator[Metric]:
    node_count_per_state = GaugeMetricFamily(
        "slurm_node_count_per_state",
        "nodes per state",
        labels=["state"],
    )
    node_count_per_state.add_metric(["allocated"], summary.allocated_nodes)
    node_count_per_state.add_metric(["idle"], summary.idle_nodes)
    node_count_per_state.add_metric(["down"], summary.down_nodes)
    node_count_per_state.add_metric(["mixed"], summary.mixed_nodes)
    yield node_count_per_state

    total_nodes = GaugeMetricFamily("slurm_nodes_total", "Total nodes")
    total_nodes.add_metric([], summary.total_nodes)
    yield total_nodes

    total_cpus = GaugeMetricFamily("slurm_cpus_total", "Total cpus")
    total_cpus.add_metric([], summary.total_cpus)
    yield total_cpus

    total_idle_cpus = GaugeMetricFamily("slurm_cpus_idle", "Total idle cpus")
    total_idle_cpus.add_metric([], summary.idle_cpus)
    yield total_idle_cpus

    total_allocated_cpus = GaugeMetricFamily(
        "slurm_cpus_allocated",
        "Total allocated cpus",
    )
    total_allocated_cpus.add_metric([], summary.allocated_cpus)
    yield total_allocated_cpus


def _job_metrics(jobs: tuple[models.Job, ...]) -> Iterator[Metric]:
    job_info = GaugeMetricFamily(
        "slurm_job_info",
        "Information about the monitored user's Slurm jobs",
        labels=["job_id", "name", "state", "partition", "cpus", "nodes", "time_limit"],
    )
    count_per_state: dict[str, int] = {}
    for job in jobs:
        job_info.add_metric(
            [
                str(job.job_id),
                job.name,
                job.state,
                job.partition,
                str(job.cpus),
                str(job.node_count),
                job.time_limit,
            ],
            1,
        )
        count_per_state[job.state] = count_per_state.get(job.state, 0) + 1
    yield job_info

    job_count_per_state = GaugeMetricFamily(
        "slurm_job_count_per_state",
        "jobs per state",
        labels=["state"],
    )
    for state, count in count_per_state.items():
        job_count_per_state.add_metric([state], count)
    yield job_count_per_state


def generate_metrics(snapshot: models.Snapshot) -> Iterator[Metric]:
    """Generate Prometheus metrics from a snapshot.

    Args:
        snapshot: Snapshot to render.

    Yields:
        Prometheus Metric objects.
    """
    yield from _node_metrics(snapshot.node_summary)
    yield from _job_metrics(snapshot.jobs)

    user_cpus = GaugeMetricFamily(
        "slurm_user_cpus_running",
        "Cores held by running jobs per user",
        labels=["user"],
    )
    for usage in snapshot.top_users:
        user_cpus.add_metric([usage.user], usage.cpus)
    yield user_cpus

    fair_share = snapshot.fair_share
    for name, documentation, value in (
        ("slurm_fairshare_factor", "Fair-share factor", fair_share.fair_share_factor),
        ("slurm_fairshare_effective_usage", "Effective usage", fair_share.effective_usage),
        ("slurm_fairshare_raw_shares", "Raw shares", fair_share.raw_shares),
    ):
        family = GaugeMetricFamily(name, documentation, labels=["user"])
        family.add_metric([fair_share.user], value)
        yield family

    space_pct = GaugeMetricFamily(
        "slurm_quota_space_percent",
        "Disk space used as a percentage of the limit",
        labels=["filesystem", "owner"],
    )
    files_pct = GaugeMetricFamily(
        "slurm_quota_files_percent",
        "Files used as a percentage of the limit",
        labels=["filesystem", "owner"],
    )
    over_quota = GaugeMetricFamily(
        "slurm_quota_exceeded",
        "1 when the quota is exceeded",
        labels=["filesystem", "owner"],
    )
    for entry in snapshot.quota.filesystems:
        labels = [entry.filesystem, entry.owner]
        space_pct.add_metric(labels, entry.space_pct)
        files_pct.add_metric(labels, entry.files_pct)
        over_quota.add_metric(labels, 1 if entry.over_quota else 0)
    yield space_pct
    yield files_pct
    yield over_quota

    captured = GaugeMetricFamily(
        "slurm_snapshot_timestamp_seconds",
        "Unix time the snapshot was captured",
    )
    captured.add_metric([], snapshot.captured_at.timestamp())
    yield captured


class SnapshotCollector(Collector):
    """Prometheus collector serving the poll driver's latest snapshot.

    Yields polling metadata (connection state, cycle duration and error
    count) followed by snapshot metrics when a snapshot is available.
    """

    def __init__(
        self,
        driver: PollDriver,
        status: Callable[[], ConnectionState],
    ):
        """Initialize the collector.

        Args:
            driver: Poll driver holding the latest snapshot.
            status: Returns the current connection state.
        """
        self._driver = driver
        self._status = status

    def collect(self) -> Iterator[Metric]:
        """Collect metrics for a Prometheus scrape.

        Yields:
            Prometheus Metric objects (metadata + snapshot metrics).
        """
        current = self._status()
        connection = GaugeMetricFamily(
            "slurm_monitor_connection_state",
            "1 for the current SSH connection state",
            labels=["state"],
        )
        for state in ConnectionState:
            connection.add_metric([state.value], 1 if state is current else 0)
        yield connection

        # -1 indicates no successful cycle yet
        duration = self._driver.last_duration
        poll_duration = GaugeMetricFamily(
            "slurm_monitor_poll_duration",
            "duration of the last successful fetch cycle in seconds, "
            "-1 indicates no successful cycle",
        )
        poll_duration.add_metric([], duration if duration is not None else -1.0)
        yield poll_duration

        error_counter = CounterMetricFamily(
            "slurm_monitor_poll_error",
            "failed fetch cycles",
        )
        error_counter.add_metric([], self._driver.error_count)
        yield error_counter

        snapshot = self._driver.latest
        if snapshot is None:
            logger.debug("No snapshot available for collection")
            return
        yield from generate_metrics(snapshot)
