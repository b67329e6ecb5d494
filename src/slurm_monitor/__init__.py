"""Slurm Monitor.

Live telemetry for a remote SLURM cluster: runs scheduler queries over one
persistent SSH session and normalises their output into snapshots of jobs,
nodes, user usage, fair-share and disk quota.
"""

__version__ = "0.1.0"
