"""
Pricing table lookups and rate conversion.

Resolves a node's labels to an hourly rate entry and converts resource
quantities into integer micro-cents (millionths of a cent).
"""

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, Mapping, Optional, Sequence, Tuple

HOUR = timedelta(hours=1)


class NoCostEntryError(LookupError):
    """Raised when no pricing entry matches a set of labels."""

    def __init__(self, labels: Optional[Mapping[str, str]] = None):
        super().__init__("could not find an appropriate cost entry")
        self.labels = dict(labels or {})


def labels_match(entry_labels: Mapping[str, str], candidate_labels: Mapping[str, str]) -> bool:
    """Return True if every entry label is present in the candidate with an equal value.

    An empty ``entry_labels`` is a subset of anything, so it matches every
    candidate including an empty one.
    """
    for key, value in entry_labels.items():
        if key not in candidate_labels or candidate_labels[key] != value:
            return False
    return True


def _duration_fraction(duration: timedelta) -> float:
    return duration / HOUR


@dataclass(frozen=True)
class PricingEntry:
    """Hourly rates for the resources of nodes selected by ``labels``.

    Rates are expressed in micro-cents per hour: per milli-CPU, per byte of
    memory and per GPU device.
    """
    labels: Dict[str, str] = field(default_factory=dict)
    hourly_milli_cpu_cost_micro_cents: float = 0.0
    hourly_memory_byte_cost_micro_cents: float = 0.0
    hourly_gpu_cost_micro_cents: float = 0.0

    def __post_init__(self):
        """Validate rates are non-negative."""
        if self.hourly_milli_cpu_cost_micro_cents < 0:
            raise ValueError("hourly_milli_cpu_cost_micro_cents cannot be negative")
        if self.hourly_memory_byte_cost_micro_cents < 0:
            raise ValueError("hourly_memory_byte_cost_micro_cents cannot be negative")
        if self.hourly_gpu_cost_micro_cents < 0:
            raise ValueError("hourly_gpu_cost_micro_cents cannot be negative")

    def match(self, labels: Mapping[str, str]) -> bool:
        """Check whether this entry selects a node carrying ``labels``."""
        return labels_match(self.labels, labels)

    def cpu_cost(self, milli_cpu: float, duration: timedelta) -> int:
        """Cost of ``milli_cpu`` over ``duration`` in micro-cents, truncated."""
        return int(milli_cpu * _duration_fraction(duration) * self.hourly_milli_cpu_cost_micro_cents)

    def memory_cost(self, memory_bytes: float, duration: timedelta) -> int:
        """Cost of ``memory_bytes`` over ``duration`` in micro-cents, truncated."""
        return int(memory_bytes * _duration_fraction(duration) * self.hourly_memory_byte_cost_micro_cents)

    def gpu_cost(self, gpus: float, duration: timedelta) -> int:
        """Cost of ``gpus`` devices over ``duration`` in micro-cents, truncated."""
        return int(gpus * _duration_fraction(duration) * self.hourly_gpu_cost_micro_cents)


@dataclass(frozen=True)
class PricingTable:
    """Ordered collection of pricing entries.

    Order encodes precedence: the first matching entry wins even when a later
    entry is more specific. No specificity sorting is performed.
    """
    entries: Tuple[PricingEntry, ...] = ()

    def __post_init__(self):
        """Normalize entries to a tuple and allow a single fallback entry."""
        object.__setattr__(self, "entries", tuple(self.entries))
        fallbacks = [entry for entry in self.entries if not entry.labels]
        if len(fallbacks) > 1:
            raise ValueError("pricing table may contain at most one entry without labels")

    @classmethod
    def from_entries(cls, entries: Sequence[PricingEntry]) -> "PricingTable":
        return cls(tuple(entries))

    def find_by_labels(self, labels: Mapping[str, str]) -> PricingEntry:
        """Return the first entry whose labels are a subset of ``labels``.

        An entry with labels ``{"size": "large", "region": "usa"}`` matches
        ``{"size": "large", "region": "usa", "foo": "bar"}`` but not
        ``{"region": "usa"}``.

        Args:
            labels: Labels of the node being priced

        Returns:
            The first matching PricingEntry in table order

        Raises:
            NoCostEntryError: If no entry matches
        """
        for entry in self.entries:
            if entry.match(labels):
                return entry
        raise NoCostEntryError(labels)

    def __len__(self) -> int:
        return len(self.entries)
