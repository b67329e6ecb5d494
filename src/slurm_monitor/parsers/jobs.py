"""Job parsers for Slurm queue and accounting output.

Turns ``squeue --json`` and ``sacct --json`` documents into :class:`Job`
records, merges the two sources so every job appears once, and ranks users by
the cores their running jobs hold.
"""

import time
from collections.abc import Collection, Mapping
from typing import Any

import structlog

from .. import models
from ..remote import types
from ._common import entries, validate_entries
from .formatting import epoch_to_iso, format_elapsed, format_mb, format_time_limit

logger = structlog.get_logger(__name__)

BYTES_PER_MB = 1024 * 1024


def _queue_memory_mb(raw: types.QueueJob) -> int:
    """Calculate requested memory in MB.

    Returns memory_per_cpu * cpus when set, otherwise
    memory_per_node * node_count, or 0 if neither is available.
    """
    cpus = raw.cpus.value
    if raw.memory_per_cpu.value > 0 and cpus > 0:
        return raw.memory_per_cpu.value * cpus
    if raw.memory_per_node.value > 0:
        return raw.memory_per_node.value * max(raw.node_count.value, 1)
    return 0


def _first_state(tags: list[str]) -> str:
    return tags[0] if tags else models.UNKNOWN


def _transform_queue_job(raw: types.QueueJob, now: int) -> models.Job:
    """Transform a live-queue entry into a Job.

    Args:
        raw: Validated ``squeue`` entry.
        now: Current epoch seconds used to compute elapsed time.

    Returns:
        Job with formatted times and memory.
    """
    start_epoch = raw.start_time.value
    elapsed = max(0, now - start_epoch) if start_epoch > 0 else 0

    return models.Job(
        job_id=raw.job_id,
        name=raw.name,
        user=raw.user_name,
        state=_first_state(raw.job_state),
        partition=raw.partition,
        cpus=raw.cpus.value,
        node_count=raw.node_count.value,
        node_list=raw.nodes,
        time_elapsed=format_elapsed(elapsed),
        time_limit=format_time_limit(raw.time_limit.value),
        submit_time=epoch_to_iso(raw.submit_time.value),
        start_time=epoch_to_iso(start_epoch),
        reason=raw.state_reason or "None",
        stdout_path=raw.standard_output,
        memory_requested=format_mb(_queue_memory_mb(raw)),
    )


def _tres_count(tres: list[types.TresEntry], kind: str) -> int | None:
    for entry in tres:
        if entry.type == kind:
            return entry.count
    return None


def _peak_memory_mb(raw: types.AccountingJob) -> float | None:
    """Largest per-step memory high-water mark in MB, None if unreported."""
    peaks = [
        entry.count
        for step in raw.steps
        for entry in step.tres.requested.max
        if entry.type == "mem"
    ]
    if not peaks:
        return None
    return max(peaks) / BYTES_PER_MB


def _transform_accounting_job(raw: types.AccountingJob) -> models.Job:
    """Transform an accounting record into a Job.

    Core count comes from the allocated ``cpu`` TRES (falling back to the
    allocated node count) and requested memory from the requested ``mem``
    TRES.
    """
    cpus = raw.allocation_nodes
    allocated_cpus = _tres_count(raw.tres.allocated, "cpu")
    if allocated_cpus is not None:
        cpus = allocated_cpus

    memory_mb = 0
    requested_mem = _tres_count(raw.tres.requested, "mem")
    if requested_mem is not None:
        memory_mb = requested_mem

    peak_mb = _peak_memory_mb(raw)

    return models.Job(
        job_id=raw.job_id,
        name=raw.name,
        user=raw.association.user,
        state=_first_state(raw.state.current),
        partition=raw.partition,
        cpus=cpus,
        node_count=raw.allocation_nodes,
        node_list=raw.nodes,
        time_elapsed=format_elapsed(raw.time.elapsed),
        time_limit=format_time_limit(raw.time.limit.value),
        submit_time=epoch_to_iso(raw.time.submission),
        start_time=epoch_to_iso(raw.time.start),
        reason=raw.state.reason or "None",
        stdout_path="",
        memory_requested=format_mb(memory_mb),
        memory_used=format_mb(peak_mb) if peak_mb is not None else None,
        exit_code=str(raw.exit_code.return_code.value),
    )


def parse_queue_jobs(
    document: Mapping[str, Any] | None,
    now: int | None = None,
) -> list[models.Job]:
    """Parse ``squeue --json`` output into jobs.

    Args:
        document: Decoded JSON document.
        now: Epoch seconds used for elapsed time (default: current time).

    Returns:
        Jobs in source order.
    """
    now = int(time.time()) if now is None else now
    raw_jobs = validate_entries(entries(document, "jobs"), types.QueueJob, "squeue")
    return [_transform_queue_job(raw, now) for raw in raw_jobs]


def parse_history_jobs(
    document: Mapping[str, Any] | None,
    exclude_ids: Collection[int] = (),
) -> list[models.Job]:
    """Parse ``sacct --json`` output into jobs.

    Args:
        document: Decoded JSON document.
        exclude_ids: Job ids already known from the live queue; skipped.

    Returns:
        Jobs in source order, without excluded ids.
    """
    jobs = []
    raw_jobs = validate_entries(entries(document, "jobs"), types.AccountingJob, "sacct")
    for raw in raw_jobs:
        if raw.job_id in exclude_ids:
            continue
        jobs.append(_transform_accounting_job(raw))
    return jobs


def parse_my_jobs(
    queue_document: Mapping[str, Any] | None,
    history_document: Mapping[str, Any] | None = None,
    now: int | None = None,
) -> list[models.Job]:
    """Merge live-queue and accounting jobs, each job id appearing once.

    Live-queue entries come first and win over accounting records with the
    same id.
    """
    jobs = parse_queue_jobs(queue_document, now=now)
    if history_document is not None:
        live_ids = {job.job_id for job in jobs}
        history = parse_history_jobs(history_document, exclude_ids=live_ids)
        logger.debug("Merged job sources", live=len(jobs), history=len(history))
        jobs.extend(history)
    return jobs


def parse_top_users(document: Mapping[str, Any] | None) -> list[models.UserUsage]:
    """Rank users by the cores held by their RUNNING jobs.

    Users with equal core counts are ordered by name.

    Args:
        document: Decoded ``squeue --all --json`` document.

    Returns:
        Users sorted by core count, highest first.
    """
    cores_by_user: dict[str, int] = {}
    raw_jobs = validate_entries(entries(document, "jobs"), types.QueueJob, "squeue")
    for raw in raw_jobs:
        if _first_state(raw.job_state) != models.RUNNING:
            continue
        cores_by_user[raw.user_name] = cores_by_user.get(raw.user_name, 0) + raw.cpus.value

    ranking = [
        models.UserUsage(user=user, cpus=cpus)
        for user, cpus in cores_by_user.items()
        if cpus > 0
    ]
    ranking.sort(key=lambda usage: (-usage.cpus, usage.user))
    return ranking
