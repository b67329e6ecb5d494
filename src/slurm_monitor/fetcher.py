"""Snapshot orchestration over the remote session.

Runs the fixed set of Slurm queries concurrently over the shared session,
hands each output to its parser and assembles one :class:`Snapshot`.
"""

import json
import shlex
import time
from collections.abc import Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any

import structlog

from . import models, parsers
from .remote import SessionError, SessionManager

logger = structlog.get_logger(__name__)

DEFAULT_HISTORY_WINDOW = "now-24hours"
DEFAULT_QUOTA_FILESYSTEMS = ("/fred",)
DEFAULT_TAIL_LINES = 4

QUEUE = "queue"
QUEUE_ALL = "queue_all"
NODES = "nodes"
SHARES = "shares"
HISTORY = "history"
QUOTA = "quota"


class PayloadDecodeError(ValueError):
    """Raised when a command's output is not a JSON object."""

    def __init__(self, query: str, detail: str):
        self.query = query
        super().__init__(f"Output of {query!r} is not a JSON object: {detail}")


def build_commands(
    user: str,
    history_window: str = DEFAULT_HISTORY_WINDOW,
    quota_filesystems: Sequence[str] = DEFAULT_QUOTA_FILESYSTEMS,
) -> dict[str, str]:
    """Build the remote command line for each query.

    Args:
        user: Monitored username.
        history_window: ``sacct --starttime`` value.
        quota_filesystems: Filesystems probed for disk quota.

    Returns:
        Mapping of query name to shell command.
    """
    quoted_user = shlex.quote(user)
    quota = "; ".join(
        f"lfs quota -h -u {quoted_user} {shlex.quote(fs)}" for fs in quota_filesystems
    )
    return {
        QUEUE: f"squeue -u {quoted_user} --json",
        QUEUE_ALL: "squeue --all --json",
        NODES: "sinfo --json",
        SHARES: f"sshare -u {quoted_user} --json",
        HISTORY: f"sacct -u {quoted_user} --starttime={shlex.quote(history_window)} --json",
        QUOTA: quota or "true",
    }


def _decode(query: str, raw: str) -> dict[str, Any]:
    try:
        document = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise PayloadDecodeError(query, str(exc)) from exc
    if not isinstance(document, dict):
        raise PayloadDecodeError(query, type(document).__name__)
    return document


class SnapshotOrchestrator:
    """Fetches and assembles cluster snapshots for one monitored user."""

    def __init__(
        self,
        session: SessionManager,
        user: str,
        history_window: str = DEFAULT_HISTORY_WINDOW,
        quota_filesystems: Sequence[str] = DEFAULT_QUOTA_FILESYSTEMS,
    ):
        """Initialize the orchestrator.

        Args:
            session: Shared remote session.
            user: Monitored username.
            history_window: How far back accounting history reaches.
            quota_filesystems: Filesystems probed for disk quota.

        Raises:
            ValueError: If user is empty.
        """
        if not user:
            msg = "user cannot be empty"
            raise ValueError(msg)
        self._session = session
        self.user = user
        self.commands = build_commands(user, history_window, quota_filesystems)

    def _collect(self) -> dict[str, str]:
        """Run every query concurrently and wait for all of them.

        Raises:
            SessionError: The first failure of any query other than quota.
        """
        with ThreadPoolExecutor(
            max_workers=len(self.commands),
            thread_name_prefix="slurm-query",
        ) as pool:
            futures: dict[str, Future[str]] = {
                query: pool.submit(self._session.exec_command, command)
                for query, command in self.commands.items()
            }

        outputs: dict[str, str] = {}
        for query, future in futures.items():
            try:
                outputs[query] = future.result()
            except SessionError as exc:
                if query != QUOTA:
                    logger.error("Query failed", query=query, error=str(exc))
                    raise
                logger.warning("Quota probe failed, continuing without quota", error=str(exc))
                outputs[query] = ""
        return outputs

    def fetch_all(self) -> models.Snapshot:
        """Fetch and parse every query into a new snapshot.

        Returns:
            Snapshot stamped after all queries resolved.

        Raises:
            SessionError: If any query other than the quota probe failed.
            PayloadDecodeError: If a JSON query returned something else.
        """
        start_time = time.time()
        outputs = self._collect()
        captured_at = datetime.now(timezone.utc)

        queue = _decode(QUEUE, outputs[QUEUE])
        queue_all = _decode(QUEUE_ALL, outputs[QUEUE_ALL])
        nodes = _decode(NODES, outputs[NODES])
        shares = _decode(SHARES, outputs[SHARES])
        history = _decode(HISTORY, outputs[HISTORY])

        snapshot = models.Snapshot(
            jobs=tuple(parsers.parse_my_jobs(queue, history, now=int(captured_at.timestamp()))),
            node_summary=parsers.parse_node_summary(nodes),
            top_users=tuple(parsers.parse_top_users(queue_all)),
            fair_share=parsers.parse_fair_share(shares, self.user),
            quota=parsers.parse_quota(outputs[QUOTA]),
            captured_at=captured_at,
        )
        logger.info(
            "Snapshot fetched",
            jobs=len(snapshot.jobs),
            nodes=snapshot.node_summary.total_nodes,
            duration_seconds=round(time.time() - start_time, 3),
        )
        return snapshot

    def fetch_log_tail(self, path: str, lines: int = DEFAULT_TAIL_LINES) -> str:
        """Return the last ``lines`` lines of a remote file.

        Raises:
            ValueError: If lines is not positive.
            SessionError: If the remote read failed.
        """
        if lines <= 0:
            msg = "lines must be positive"
            raise ValueError(msg)
        return self._session.exec_command(f"tail -n {int(lines)} {shlex.quote(path)}")
