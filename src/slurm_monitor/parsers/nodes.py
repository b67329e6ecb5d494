"""Node summary parser for ``sinfo --json`` output.

sinfo groups nodes by partition, state and feature set, so one physical node
can be listed by several entries. Nodes are deduplicated by name before
classification and aggregation so each node is counted once.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import structlog

from .. import models
from ..remote import types
from ._common import entries, validate_entries

logger = structlog.get_logger(__name__)

DOWN = "down"
ALLOCATED = "allocated"
MIXED = "mixed"
IDLE = "idle"

# Checked in order; the first matching bucket wins.
CLASSIFICATION = (
    (DOWN, frozenset({"DOWN", "DRAIN"})),
    (ALLOCATED, frozenset({"ALLOCATED"})),
    (MIXED, frozenset({"MIXED"})),
    (IDLE, frozenset({"IDLE"})),
)


@dataclass
class NodeRecord:
    """One unique node with its share of its sinfo entry's cores."""

    name: str
    states: list[str] = field(default_factory=list)
    cpus: int = 0
    alloc_cpus: int = 0
    idle_cpus: int = 0


def classify(states: list[str]) -> str | None:
    """Return the bucket for a node's state tags, None if none applies."""
    tags = {state.upper() for state in states}
    for bucket, members in CLASSIFICATION:
        if tags & members:
            return bucket
    return None


def _collect_nodes(raw_entries: list[types.SinfoEntry]) -> dict[str, NodeRecord]:
    """Build the per-node map, keeping the first entry seen for each name.

    Each entry's core counts are split evenly (floor division) across the
    nodes it lists.
    """
    nodes: dict[str, NodeRecord] = {}
    mentions = 0

    for entry in raw_entries:
        names = entry.nodes.nodes
        if not names:
            continue
        count = len(names)
        mentions += count
        cpus = entry.cpus.total // count
        alloc_cpus = entry.cpus.allocated // count
        idle_cpus = entry.cpus.idle // count

        for name in names:
            if name in nodes:
                continue
            nodes[name] = NodeRecord(
                name=name,
                states=list(entry.node.state),
                cpus=cpus,
                alloc_cpus=alloc_cpus,
                idle_cpus=idle_cpus,
            )

    logger.debug("Deduplicated sinfo nodes", mentions=mentions, unique=len(nodes))
    return nodes


def _aggregate(nodes: dict[str, NodeRecord]) -> models.NodeSummary:
    counts = {DOWN: 0, ALLOCATED: 0, MIXED: 0, IDLE: 0}
    total_cpus = 0
    alloc_cpus = 0
    idle_cpus = 0

    for node in nodes.values():
        total_cpus += node.cpus
        alloc_cpus += node.alloc_cpus
        idle_cpus += node.idle_cpus
        bucket = classify(node.states)
        if bucket is None:
            logger.debug("Node state not counted", node=node.name, states=node.states)
            continue
        counts[bucket] += 1

    return models.NodeSummary(
        total_nodes=sum(counts.values()),
        allocated_nodes=counts[ALLOCATED],
        idle_nodes=counts[IDLE],
        down_nodes=counts[DOWN],
        mixed_nodes=counts[MIXED],
        total_cpus=total_cpus,
        allocated_cpus=alloc_cpus,
        idle_cpus=idle_cpus,
    )


def parse_node_summary(document: Mapping[str, Any] | None) -> models.NodeSummary:
    """Parse ``sinfo --json`` output into a cluster-wide summary.

    Nodes whose state tags match none of DOWN/DRAIN, ALLOCATED, MIXED or IDLE
    are left out of the node counts, so the four node buckets always add up
    to ``total_nodes``; their cores are still counted.

    Args:
        document: Decoded JSON document.

    Returns:
        Aggregated node and core counts.
    """
    raw_entries = list(validate_entries(entries(document, "sinfo"), types.SinfoEntry, "sinfo"))
    return _aggregate(_collect_nodes(raw_entries))
