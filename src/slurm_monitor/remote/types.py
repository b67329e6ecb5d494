"""Raw payload types for Slurm command JSON output.

Pydantic models representing one entry of each ``--json`` document the
monitor reads (``squeue``, ``sacct``, ``sinfo``, ``sshare``). Fields default
to empty values so that partially populated entries still validate; unknown
fields are ignored. Slurm wraps many numbers in ``{set, infinite, number}``
objects depending on the release, so both shapes are accepted.
"""

from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict


def _wrap_number(value: Any) -> Any:
    """Accept bare numbers and nulls where Slurm may emit a number wrapper."""
    if value is None:
        return {}
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return {"set": True, "number": value}
    return value


def _none_to_empty(value: Any) -> Any:
    return "" if value is None else value


def _as_tag_list(value: Any) -> Any:
    """Normalise state tags: a bare string becomes a one-element list."""
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value else []
    return value


def _none_to_zero(value: Any) -> Any:
    return 0 if value is None else value


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore")


class SlurmNumber(_Payload):
    """Slurm's optional number wrapper (``{"set": true, "number": 4}``)."""

    set: bool = False
    infinite: bool = False
    number: float = 0.0

    @property
    def value(self) -> int:
        return int(self.number)


Number = Annotated[SlurmNumber, BeforeValidator(_wrap_number)]
Text = Annotated[str, BeforeValidator(_none_to_empty)]
Tags = Annotated[list[str], BeforeValidator(_as_tag_list)]
Count = Annotated[int, BeforeValidator(_none_to_zero)]


class QueueJob(_Payload):
    """One entry of ``squeue --json`` ``jobs``.

    Times are epoch seconds, ``time_limit`` is in minutes and memory values
    are in MB.
    """

    job_id: int = 0
    name: Text = ""
    user_name: Text = ""
    job_state: Tags = []
    partition: Text = ""
    nodes: Text = ""
    state_reason: Text = ""
    standard_output: Text = ""

    cpus: Number = SlurmNumber()
    node_count: Number = SlurmNumber()
    memory_per_cpu: Number = SlurmNumber()
    memory_per_node: Number = SlurmNumber()

    submit_time: Number = SlurmNumber()
    start_time: Number = SlurmNumber()
    time_limit: Number = SlurmNumber()


class TresEntry(_Payload):
    """Trackable resource (``{"type": "cpu", "count": 8}``)."""

    type: Text = ""
    name: Text = ""
    count: Count = 0


class Tres(_Payload):
    allocated: list[TresEntry] = []
    requested: list[TresEntry] = []


class StepTresUsage(_Payload):
    max: list[TresEntry] = []


class StepTres(_Payload):
    requested: StepTresUsage = StepTresUsage()


class AccountingStep(_Payload):
    tres: StepTres = StepTres()


class AccountingState(_Payload):
    current: Tags = []
    reason: Text = ""


class AccountingTime(_Payload):
    """Time block of an accounting record; ``limit`` is in minutes."""

    elapsed: Count = 0
    submission: Count = 0
    start: Count = 0
    end: Count = 0
    limit: Number = SlurmNumber()


class AccountingAssociation(_Payload):
    user: Text = ""
    account: Text = ""


class ExitCode(_Payload):
    status: Tags = []
    return_code: Number = SlurmNumber()


class AccountingJob(_Payload):
    """One entry of ``sacct --json`` ``jobs``.

    Memory counts in ``tres`` are MB, except step usage maxima which Slurm
    reports in bytes.
    """

    job_id: int = 0
    name: Text = ""
    partition: Text = ""
    nodes: Text = ""
    allocation_nodes: Count = 0

    association: AccountingAssociation = AccountingAssociation()
    state: AccountingState = AccountingState()
    time: AccountingTime = AccountingTime()
    exit_code: ExitCode = ExitCode()
    tres: Tres = Tres()
    steps: list[AccountingStep] = []


class SinfoNodeState(_Payload):
    state: Tags = []


class SinfoNodeCounts(_Payload):
    allocated: Count = 0
    idle: Count = 0
    other: Count = 0
    total: Count = 0
    nodes: list[str] = []


class SinfoCpuCounts(_Payload):
    allocated: Count = 0
    idle: Count = 0
    other: Count = 0
    total: Count = 0


class SinfoEntry(_Payload):
    """One entry of ``sinfo --json`` ``sinfo``.

    An entry groups nodes sharing a partition, state and feature set, so the
    same node may appear in several entries.
    """

    node: SinfoNodeState = SinfoNodeState()
    nodes: SinfoNodeCounts = SinfoNodeCounts()
    cpus: SinfoCpuCounts = SinfoCpuCounts()


class FairShareFactor(_Payload):
    factor: Number = SlurmNumber()
    level: Number = SlurmNumber()


class ShareEntry(_Payload):
    """One association of ``sshare --json`` ``shares.shares``."""

    name: Text = ""
    parent: Text = ""
    shares: Number = SlurmNumber()
    effective_usage: Number = SlurmNumber()
    usage_normalized: Number = SlurmNumber()
    fairshare: FairShareFactor = FairShareFactor()
