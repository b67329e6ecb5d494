"""Fair-share parser for ``sshare --json`` output."""

from collections.abc import Mapping
from typing import Any

from .. import models
from ..remote import types
from ._common import entries, validate_entries


def parse_fair_share(document: Mapping[str, Any] | None, user: str) -> models.FairShareInfo:
    """Return the fair-share record of ``user``.

    A user missing from the document gets a zeroed record.
    """
    shares = validate_entries(entries(document, "shares", "shares"), types.ShareEntry, "sshare")
    for entry in shares:
        if entry.name == user:
            return models.FairShareInfo(
                user=user,
                raw_shares=entry.shares.number,
                effective_usage=entry.effective_usage.number,
                fair_share_factor=entry.fairshare.factor.number,
            )
    return models.FairShareInfo(user=user)
