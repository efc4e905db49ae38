"""
Data models for storage layer.

Defines the durable cost record and its wire representation.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict


@dataclass(frozen=True)
class CostRecordKey:
    """Order-independent grouping key for mergeable cost records."""
    kind: str
    strategy: str
    dimensions: str


@dataclass(frozen=True)
class CostRecord:
    """Cost attributed to a set of dimensions over an interval ending at ``end_time``.

    Value is in micro-cents. This is the unit that crosses the system
    boundary, both as a metric and as a ledger row.
    """
    kind: str
    strategy: str
    value: int
    dimensions: Dict[str, str] = field(default_factory=dict)
    end_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def key(self) -> CostRecordKey:
        """Grouping key over kind, strategy and the sorted dimension pairs."""
        pairs = sorted(f"{name}:{value}" for name, value in self.dimensions.items())
        return CostRecordKey(kind=self.kind, strategy=self.strategy, dimensions=",".join(pairs))

    def merge(self, newer: "CostRecord") -> "CostRecord":
        """Combine with a later record of the same key: values sum, time is the newer one."""
        return replace(newer, value=self.value + newer.value)

    def to_dict(self) -> Dict[str, Any]:
        """Wire representation: ``{kind, strategy, value, dimensions, endTime}``."""
        return {
            "kind": self.kind,
            "strategy": self.strategy,
            "value": self.value,
            "dimensions": dict(self.dimensions),
            "endTime": self.end_time.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CostRecord":
        """Rebuild a record from its wire representation.

        Raises:
            ValueError: If a field is missing or malformed
        """
        missing = {"kind", "strategy", "value", "dimensions", "endTime"} - set(data)
        if missing:
            raise ValueError(f"Cost record missing fields: {sorted(missing)}")

        value = data["value"]
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError("'value' must be an integer")

        dimensions = data["dimensions"] or {}
        if not isinstance(dimensions, dict):
            raise ValueError("'dimensions' must be a dictionary")

        end_time = data["endTime"]
        if isinstance(end_time, str):
            if end_time.endswith("Z"):
                end_time = end_time[:-1] + "+00:00"
            end_time = datetime.fromisoformat(end_time)
        elif not isinstance(end_time, datetime):
            raise ValueError("'endTime' must be an ISO 8601 timestamp")

        return cls(
            kind=str(data["kind"]),
            strategy=str(data["strategy"]),
            value=value,
            dimensions={str(k): str(v) for k, v in dimensions.items()},
            end_time=end_time,
        )
