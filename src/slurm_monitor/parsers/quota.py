"""Disk quota parser for ``lfs quota -h`` output.

The quota tool prints plain text, one block per owner::

    Disk quotas for usr alice (uid 1234):
         Filesystem    used   quota   limit   grace   files   quota   limit   grace
              /fred  1.21T*     1T      2T   6d23h   12345       0       0       -

A ``*`` after a value marks an exceeded quota. Long filesystem names are
printed on their own line with the values on the next one. Lines that do not
fit this layout are skipped.
"""

import re

import structlog

from .. import models

logger = structlog.get_logger(__name__)

_HEADER = re.compile(r"^\s*Disk quotas for (?P<kind>\S+) (?P<owner>\S+)")
_VALUE = re.compile(r"^(?P<number>\d+(?:\.\d+)?)(?P<unit>[kKMGTPE]?)$")

# Space values without a unit are kilobytes.
_SPACE_UNITS = {"": 1024, "k": 1024, "K": 1024}
_SPACE_UNITS.update({unit: 1024 ** power for power, unit in enumerate("MGTPE", start=2)})
_FILE_UNITS = {"": 1, "k": 1000, "K": 1000}
_FILE_UNITS.update({unit: 1000 ** power for power, unit in enumerate("MGTPE", start=2)})

# filesystem, used, quota, limit, grace, files, quota, limit, grace
_ROW_FIELDS = 9


def _parse_value(token: str, units: dict[str, int]) -> float | None:
    match = _VALUE.match(token.rstrip("*"))
    if match is None:
        return None
    return float(match["number"]) * units[match["unit"]]


def _percent(used: float, limit: float) -> float:
    if limit <= 0:
        return 0.0
    return round(used / limit * 100, 1)


def _effective_limit(soft: str, hard: str, units: dict[str, int]) -> tuple[str, float] | None:
    """Pick the hard limit, falling back to the soft quota when it is unset."""
    hard_value = _parse_value(hard, units)
    soft_value = _parse_value(soft, units)
    if hard_value is None or soft_value is None:
        return None
    if hard_value > 0:
        return hard.rstrip("*"), hard_value
    return soft.rstrip("*"), soft_value


def _parse_row(owner: str, tokens: list[str]) -> models.FilesystemQuota | None:
    """Parse one data row; None when the row does not fit the layout."""
    if len(tokens) != _ROW_FIELDS:
        return None
    filesystem, used, soft, hard, _grace, files, files_soft, files_hard, _files_grace = tokens

    used_value = _parse_value(used, _SPACE_UNITS)
    files_value = _parse_value(files, _FILE_UNITS)
    space_limit = _effective_limit(soft, hard, _SPACE_UNITS)
    files_limit = _effective_limit(files_soft, files_hard, _FILE_UNITS)
    if used_value is None or files_value is None or space_limit is None or files_limit is None:
        return None

    space_limit_text, space_limit_value = space_limit
    files_limit_text, files_limit_value = files_limit
    over_quota = (
        used.endswith("*")
        or files.endswith("*")
        or 0 < space_limit_value < used_value
        or 0 < files_limit_value < files_value
    )

    return models.FilesystemQuota(
        filesystem=filesystem,
        owner=owner,
        space_used=used.rstrip("*"),
        space_limit=space_limit_text,
        space_pct=_percent(used_value, space_limit_value),
        files_used=files.rstrip("*"),
        files_limit=files_limit_text,
        files_pct=_percent(files_value, files_limit_value),
        over_quota=over_quota,
    )


def parse_quota(text: str | None) -> models.QuotaInfo:
    """Parse quota tool output into per-filesystem entries.

    Args:
        text: Raw command output; may be empty or contain several blocks.

    Returns:
        Quota entries in output order.
    """
    filesystems: list[models.FilesystemQuota] = []
    owner: str | None = None
    pending_filesystem: str | None = None

    for line in (text or "").splitlines():
        header = _HEADER.match(line)
        if header:
            owner = header["owner"]
            pending_filesystem = None
            continue

        tokens = line.split()
        if not tokens or owner is None or tokens[0] == "Filesystem":
            continue

        if len(tokens) == 1:
            pending_filesystem = tokens[0]
            continue
        if pending_filesystem is not None:
            tokens = [pending_filesystem, *tokens]
            pending_filesystem = None

        entry = _parse_row(owner, tokens)
        if entry is None:
            logger.debug("Skipping unparsable quota line", line=line.strip())
            continue
        filesystems.append(entry)

    return models.QuotaInfo(filesystems=tuple(filesystems))
