"""Normalised data model for the cluster view.

Records are frozen and rebuilt from scratch on every fetch; consumers replace
the previous snapshot instead of mutating it.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone

# Job states the monitor acts on; other scheduler states pass through.
RUNNING = "RUNNING"
UNKNOWN = "UNKNOWN"

NOT_AVAILABLE = "N/A"


@dataclass(frozen=True)
class Job:
    """A single job, from the live queue or from accounting history.

    Times and memory are pre-formatted for display.
    """

    job_id: int
    name: str = ""
    user: str = ""
    state: str = UNKNOWN
    partition: str = ""
    cpus: int = 0
    node_count: int = 0
    node_list: str = ""
    time_elapsed: str = "0:00:00"
    time_limit: str = NOT_AVAILABLE
    submit_time: str = NOT_AVAILABLE
    start_time: str = NOT_AVAILABLE
    reason: str = "None"
    stdout_path: str = ""
    memory_requested: str = "0 MB"
    memory_used: str | None = None
    exit_code: str | None = None


@dataclass(frozen=True)
class NodeSummary:
    """Cluster-wide node and core counts, each node counted once."""

    total_nodes: int = 0
    allocated_nodes: int = 0
    idle_nodes: int = 0
    down_nodes: int = 0
    mixed_nodes: int = 0
    total_cpus: int = 0
    allocated_cpus: int = 0
    idle_cpus: int = 0


@dataclass(frozen=True)
class UserUsage:
    """Cores held by one user's running jobs."""

    user: str
    cpus: int


@dataclass(frozen=True)
class FairShareInfo:
    user: str
    raw_shares: float = 0.0
    effective_usage: float = 0.0
    fair_share_factor: float = 0.0


@dataclass(frozen=True)
class FilesystemQuota:
    """Quota usage of one owner on one filesystem.

    Sizes are kept as reported by the quota tool; percentages are relative to
    the effective limit and may exceed 100.
    """

    filesystem: str
    owner: str
    space_used: str
    space_limit: str
    space_pct: float
    files_used: str
    files_limit: str
    files_pct: float
    over_quota: bool = False


@dataclass(frozen=True)
class QuotaInfo:
    filesystems: tuple[FilesystemQuota, ...] = ()


@dataclass(frozen=True)
class Snapshot:
    """Everything fetched in one cycle."""

    jobs: tuple[Job, ...]
    node_summary: NodeSummary
    top_users: tuple[UserUsage, ...]
    fair_share: FairShareInfo
    quota: QuotaInfo = field(default_factory=QuotaInfo)
    captured_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def last_updated(self) -> str:
        return self.captured_at.isoformat()
