"""Helpers shared by the payload parsers."""

from collections.abc import Iterator, Mapping
from typing import Any, TypeVar

import pydantic
import structlog

logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=pydantic.BaseModel)


def entries(document: Mapping[str, Any] | None, *path: str) -> list[Any]:
    """Return the list found under ``path`` in a decoded JSON document.

    Missing keys, nulls and non-list values all yield an empty list.
    """
    node: Any = document
    for key in path:
        if not isinstance(node, Mapping):
            return []
        node = node.get(key)
    return node if isinstance(node, list) else []


def validate_entries(
    raw_entries: list[Any],
    model: type[ModelT],
    source: str,
) -> Iterator[ModelT]:
    """Validate raw entries one by one, skipping the ones that do not fit.

    Args:
        raw_entries: Decoded JSON entries.
        model: Payload model to validate each entry against.
        source: Command name used in log messages.

    Yields:
        Validated payload models.
    """
    for index, raw in enumerate(raw_entries):
        try:
            yield model.model_validate(raw)
        except pydantic.ValidationError as exc:
            logger.warning(
                "Skipping malformed entry",
                source=source,
                index=index,
                errors=exc.error_count(),
            )
