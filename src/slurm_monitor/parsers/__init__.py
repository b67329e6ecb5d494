"""Parsers for Slurm command output.

Each module turns the output of one family of remote commands into records
of the monitor's data model. Parsers do no I/O and never raise on malformed
entries; they skip them or fall back to defaults instead.
"""

from .fairshare import parse_fair_share
from .jobs import parse_history_jobs, parse_my_jobs, parse_queue_jobs, parse_top_users
from .nodes import parse_node_summary
from .quota import parse_quota

__all__ = [
    "parse_fair_share",
    "parse_history_jobs",
    "parse_my_jobs",
    "parse_node_summary",
    "parse_queue_jobs",
    "parse_quota",
    "parse_top_users",
]
