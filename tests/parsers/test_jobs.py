"""Tests for the job parsers (live queue, accounting history, user ranking)."""

import pytest

from slurm_monitor import models
from slurm_monitor.parsers import jobs

NOW = 1_700_000_000


def _number(value):
    return {"set": True, "infinite": False, "number": value}


def _queue_job(job_id, **overrides):
    """A squeue --json job entry in the wrapped-number format."""
    entry = {
        "job_id": job_id,
        "name": f"job-{job_id}",
        "user_name": "alice",
        "job_state": ["RUNNING"],
        "partition": "milan",
        "cpus": _number(8),
        "node_count": _number(1),
        "memory_per_cpu": _number(2048),
        "nodes": "dave001",
        "submit_time": _number(NOW - 7200),
        "start_time": _number(NOW - 3661),
        "time_limit": _number(720),
        "state_reason": "None",
        "standard_output": f"/home/alice/slurm-{job_id}.out",
    }
    entry.update(overrides)
    return entry


def _history_job(job_id, **overrides):
    """A sacct --json job entry."""
    entry = {
        "job_id": job_id,
        "name": f"old-{job_id}",
        "association": {"user": "alice", "account": "oz001"},
        "state": {"current": ["COMPLETED"], "reason": "None"},
        "time": {
            "elapsed": 8,
            "submission": NOW - 90000,
            "start": NOW - 86400,
            "limit": _number(60),
        },
        "partition": "milan",
        "nodes": "dave002",
        "allocation_nodes": 1,
        "exit_code": {"status": ["SUCCESS"], "return_code": _number(0)},
        "tres": {
            "allocated": [{"type": "cpu", "count": 4}, {"type": "mem", "count": 8192}],
            "requested": [{"type": "cpu", "count": 4}, {"type": "mem", "count": 4096}],
        },
    }
    entry.update(overrides)
    return entry


# ---------------------------------------------------------------------------
# parse_queue_jobs
# ---------------------------------------------------------------------------


def test_parse_queue_jobs_fields():
    """Live-queue entries map onto Job fields with formatted values."""
    [job] = jobs.parse_queue_jobs({"jobs": [_queue_job(101)]}, now=NOW)

    assert job.job_id == 101
    assert job.name == "job-101"
    assert job.user == "alice"
    assert job.state == "RUNNING"
    assert job.partition == "milan"
    assert job.cpus == 8
    assert job.node_count == 1
    assert job.node_list == "dave001"
    assert job.time_elapsed == "1:01:01"
    assert job.time_limit == "12:00:00"
    assert job.start_time == "2023-11-14T21:12:19Z"
    assert job.stdout_path == "/home/alice/slurm-101.out"
    assert job.memory_requested == "16.0 GB"
    assert job.exit_code is None
    assert job.memory_used is None


def test_parse_queue_jobs_pending_has_zero_elapsed():
    """A job without a start time has zero elapsed time and N/A start."""
    entry = _queue_job(
        102,
        job_state=["PENDING"],
        start_time=_number(0),
        state_reason="Priority",
    )
    [job] = jobs.parse_queue_jobs({"jobs": [entry]}, now=NOW)
    assert job.time_elapsed == "0:00:00"
    assert job.start_time == "N/A"
    assert job.reason == "Priority"


def test_parse_queue_jobs_future_start_clamped():
    """A start time in the future does not produce negative elapsed time."""
    [job] = jobs.parse_queue_jobs(
        {"jobs": [_queue_job(103, start_time=_number(NOW + 100))]},
        now=NOW,
    )
    assert job.time_elapsed == "0:00:00"


def test_parse_queue_jobs_bare_numbers_accepted():
    """Older Slurm releases emit bare numbers instead of wrappers."""
    entry = _queue_job(104, cpus=4, memory_per_cpu=128, time_limit=0, job_state="RUNNING")
    [job] = jobs.parse_queue_jobs({"jobs": [entry]}, now=NOW)
    assert job.cpus == 4
    assert job.memory_requested == "512 MB"
    assert job.time_limit == "N/A"
    assert job.state == "RUNNING"


def test_parse_queue_jobs_missing_fields_default():
    """A minimal entry falls back to empty strings, zeros and UNKNOWN."""
    [job] = jobs.parse_queue_jobs({"jobs": [{"job_id": 7}]}, now=NOW)
    assert job.state == models.UNKNOWN
    assert job.name == ""
    assert job.cpus == 0
    assert job.reason == "None"
    assert job.node_list == ""
    assert job.memory_requested == "0 MB"
    assert job.submit_time == "N/A"


def test_parse_queue_jobs_null_strings_become_empty():
    """Null string fields are normalised to empty strings."""
    [job] = jobs.parse_queue_jobs(
        {"jobs": [_queue_job(8, nodes=None, standard_output=None)]},
        now=NOW,
    )
    assert job.node_list == ""
    assert job.stdout_path == ""


def test_parse_queue_jobs_memory_per_node_fallback():
    """memory_per_node * node_count is used when memory_per_cpu is unset."""
    entry = _queue_job(
        9,
        memory_per_cpu=_number(0),
        memory_per_node=_number(4096),
        node_count=_number(2),
    )
    [job] = jobs.parse_queue_jobs({"jobs": [entry]}, now=NOW)
    assert job.memory_requested == "8.0 GB"


def test_parse_queue_jobs_malformed_entry_skipped():
    """An entry that cannot be validated is skipped, the rest survive."""
    document = {"jobs": [{"job_id": "not-a-number"}, _queue_job(10)]}
    result = jobs.parse_queue_jobs(document, now=NOW)
    assert [job.job_id for job in result] == [10]


@pytest.mark.parametrize("document", [None, {}, {"jobs": None}, {"jobs": "oops"}])
def test_parse_queue_jobs_absent_list(document):
    """Missing or malformed job lists produce no jobs."""
    assert jobs.parse_queue_jobs(document, now=NOW) == []


# ---------------------------------------------------------------------------
# parse_history_jobs
# ---------------------------------------------------------------------------


def test_parse_history_jobs_fields():
    """Accounting records map onto Job fields."""
    [job] = jobs.parse_history_jobs({"jobs": [_history_job(201)]})

    assert job.job_id == 201
    assert job.user == "alice"
    assert job.state == "COMPLETED"
    assert job.cpus == 4
    assert job.node_count == 1
    assert job.time_elapsed == "0:00:08"
    assert job.time_limit == "01:00:00"
    assert job.memory_requested == "4.0 GB"
    assert job.exit_code == "0"
    assert job.stdout_path == ""


def test_parse_history_jobs_cpu_defaults_to_node_count():
    """Without a cpu TRES entry the allocated node count is used."""
    entry = _history_job(202, allocation_nodes=3, tres={"allocated": [], "requested": []})
    [job] = jobs.parse_history_jobs({"jobs": [entry]})
    assert job.cpus == 3
    assert job.memory_requested == "0 MB"


def test_parse_history_jobs_peak_memory_from_steps():
    """The largest step memory maximum is reported as used memory."""
    steps = [
        {"tres": {"requested": {"max": [{"type": "mem", "count": 512 * 1024 * 1024}]}}},
        {"tres": {"requested": {"max": [{"type": "mem", "count": 3 * 1024**3}]}}},
    ]
    [job] = jobs.parse_history_jobs({"jobs": [_history_job(203, steps=steps)]})
    assert job.memory_used == "3.0 GB"


def test_parse_history_jobs_state_defaults():
    """Missing state and reason fall back to UNKNOWN and None."""
    entry = _history_job(204, state={})
    [job] = jobs.parse_history_jobs({"jobs": [entry]})
    assert job.state == models.UNKNOWN
    assert job.reason == "None"


def test_parse_history_jobs_exit_code_non_zero():
    """Non-zero return codes are reported as strings."""
    entry = _history_job(
        205,
        state={"current": ["FAILED"], "reason": "NonZeroExitCode"},
        exit_code={"return_code": _number(137)},
    )
    [job] = jobs.parse_history_jobs({"jobs": [entry]})
    assert job.exit_code == "137"
    assert job.reason == "NonZeroExitCode"


def test_parse_history_jobs_excluded_ids_skipped():
    """Ids already known from the live queue are skipped."""
    document = {"jobs": [_history_job(301), _history_job(302)]}
    result = jobs.parse_history_jobs(document, exclude_ids={301})
    assert [job.job_id for job in result] == [302]


# ---------------------------------------------------------------------------
# parse_my_jobs
# ---------------------------------------------------------------------------


def test_parse_my_jobs_live_entry_wins_over_history():
    """A job in both sources appears once, with the live-queue fields."""
    queue = {"jobs": [_queue_job(401)]}
    history = {
        "jobs": [
            _history_job(401, state={"current": ["COMPLETED"]}),
            _history_job(402),
        ],
    }
    result = jobs.parse_my_jobs(queue, history, now=NOW)

    assert [job.job_id for job in result] == [401, 402]
    duplicate = result[0]
    assert duplicate.state == "RUNNING"
    assert duplicate.exit_code is None
    assert duplicate == jobs.parse_queue_jobs(queue, now=NOW)[0]


def test_parse_my_jobs_without_history():
    """Only live-queue jobs are returned when no history is given."""
    result = jobs.parse_my_jobs({"jobs": [_queue_job(501)]}, now=NOW)
    assert [job.job_id for job in result] == [501]


# ---------------------------------------------------------------------------
# parse_top_users
# ---------------------------------------------------------------------------


def test_parse_top_users_sums_running_cores():
    """Running cores are summed per user and sorted descending."""
    document = {
        "jobs": [
            _queue_job(1, user_name="alice", cpus=_number(8)),
            _queue_job(2, user_name="bob", cpus=_number(32)),
            _queue_job(3, user_name="alice", cpus=_number(16)),
            _queue_job(4, user_name="carol", cpus=_number(4)),
        ],
    }
    ranking = jobs.parse_top_users(document)
    assert [(u.user, u.cpus) for u in ranking] == [("bob", 32), ("alice", 24), ("carol", 4)]


def test_parse_top_users_only_running():
    """Pending and completed jobs do not count."""
    document = {
        "jobs": [
            _queue_job(1, user_name="alice", job_state=["PENDING"]),
            _queue_job(2, user_name="bob", job_state=["COMPLETED"]),
            _queue_job(3, user_name="carol", job_state=[]),
        ],
    }
    assert jobs.parse_top_users(document) == []


def test_parse_top_users_non_increasing():
    """The ranking never increases from one entry to the next."""
    document = {
        "jobs": [
            _queue_job(i, user_name=f"user{i % 5}", cpus=_number(i * 3 % 17 + 1))
            for i in range(40)
        ],
    }
    ranking = jobs.parse_top_users(document)
    assert ranking
    for previous, current in zip(ranking, ranking[1:]):
        assert previous.cpus >= current.cpus


def test_parse_top_users_ties_ordered_by_name():
    """Users with equal cores are ordered alphabetically."""
    document = {
        "jobs": [
            _queue_job(1, user_name="zoe", cpus=_number(8)),
            _queue_job(2, user_name="adam", cpus=_number(8)),
        ],
    }
    assert [u.user for u in jobs.parse_top_users(document)] == ["adam", "zoe"]


def test_parse_top_users_zero_core_users_absent():
    """A running job reporting no cores does not rank its user."""
    document = {"jobs": [_queue_job(1, user_name="ghost", cpus=_number(0))]}
    assert jobs.parse_top_users(document) == []
