from __future__ import annotations

import dataclasses
import enum
import json
from typing import Any


def _default(obj: Any) -> Any:
    if isinstance(obj, enum.Enum):
        return obj.value
    # `dataclasses.is_dataclass()` is true for both instances and dataclass *types*.
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def dumps(obj: Any, *, indent: int | None = None) -> str:
    """JSON serialize; compact separators unless `indent` is given."""

    if indent is None:
        return json.dumps(obj, default=_default, ensure_ascii=False, separators=(",", ":"))
    return json.dumps(obj, default=_default, ensure_ascii=False, indent=indent, sort_keys=True)


def loads(data: str | bytes) -> Any:
    return json.loads(data)
