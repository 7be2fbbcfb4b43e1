"""
Base model shared by the benchmark records.

Records are written with camelCase keys (the layout of batch exports
produced by the browser harness) and accept either camelCase or
snake_case on input.
"""

from __future__ import annotations

import math
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


def finite_or_none(value: Any) -> float | None:
    """Return *value* as a float if it is a finite number, else ``None``."""
    if value is None or isinstance(value, bool):
        return None
    try:
        num = float(value)
    except (TypeError, ValueError):
        return None
    return num if math.isfinite(num) else None


class CamelModel(BaseModel):
    """Pydantic base with camelCase aliases."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )

    def to_json_dict(self) -> dict[str, Any]:
        """Dump to a JSON-compatible dict using camelCase keys."""
        return self.model_dump(mode="json", by_alias=True)
