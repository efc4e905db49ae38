"""
Dimension mapping from cost item metadata.

A Mapper evaluates a list of path expressions against a structured record
(workload and node metadata plus the cost item's kind and strategy) and
produces the named dimensions attached to every cost record.

Expressions are dotted paths with optional bracketed keys, optionally
wrapped in braces::

    {.workload.labels.service}
    .workload.annotations['example.com/team']
    {.node.labels["cloud.google.com/gke-nodepool"]}
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping as MappingType, Sequence, Tuple

_IDENTIFIER_RE = re.compile(r"\.([A-Za-z0-9_\-]+)")
_BRACKET_RE = re.compile(r"\[\s*(?:'([^']*)'|\"([^\"]*)\")\s*\]")


class MappingExpressionError(ValueError):
    """Raised when a path expression cannot be parsed."""


def parse_path(expression: str) -> Tuple[str, ...]:
    """Parse a path expression into its key segments.

    Args:
        expression: Path expression such as ``{.workload.labels.service}``

    Returns:
        Tuple of keys to follow from the root object

    Raises:
        MappingExpressionError: If the expression syntax is invalid
    """
    if not isinstance(expression, str):
        raise MappingExpressionError(f"path expression must be a string, got {expression!r}")

    text = expression.strip()
    if text.startswith("{") or text.endswith("}"):
        if not (text.startswith("{") and text.endswith("}")):
            raise MappingExpressionError(f"unbalanced braces in path expression: {expression!r}")
        text = text[1:-1].strip()

    if not text:
        raise MappingExpressionError("path expression cannot be empty")

    segments: List[str] = []
    position = 0
    while position < len(text):
        match = _IDENTIFIER_RE.match(text, position)
        if match:
            segments.append(match.group(1))
            position = match.end()
            continue
        match = _BRACKET_RE.match(text, position)
        if match:
            key = match.group(1) if match.group(1) is not None else match.group(2)
            segments.append(key)
            position = match.end()
            continue
        raise MappingExpressionError(
            f"unexpected character {text[position]!r} at offset {position} in path expression: {expression!r}"
        )
    return tuple(segments)


def _lookup(obj: Any, key: str) -> Any:
    # Only mappings are traversed; anything else has no fields.
    if not isinstance(obj, MappingType):
        return None
    if key in obj:
        return obj[key]
    # Tolerate configuration written against capitalized field names.
    lowered = key.lower()
    for candidate, value in obj.items():
        if isinstance(candidate, str) and candidate.lower() == lowered:
            return value
    return None


def evaluate_path(segments: Sequence[str], obj: Any) -> str:
    """Follow ``segments`` through ``obj`` and render the result as a string.

    Missing keys resolve to an empty string rather than an error.
    """
    current = obj
    for key in segments:
        if current is None:
            return ""
        current = _lookup(current, key)

    if current is None:
        return ""
    if isinstance(current, (dict, list, tuple)):
        return json.dumps(current, sort_keys=True)
    return str(current)


@dataclass(frozen=True)
class Mapping:
    """Maps the value found at ``source`` onto the dimension ``destination``."""
    source: str
    destination: str
    default: str = ""

    def __post_init__(self):
        """Validate destination and compile the source expression."""
        if not self.destination:
            raise ValueError("mapping destination cannot be empty")
        object.__setattr__(self, "_segments", parse_path(self.source))

    def evaluate(self, obj: Any) -> str:
        value = evaluate_path(self._segments, obj)
        return value if value != "" else self.default


@dataclass(frozen=True)
class Mapper:
    """Ordered set of dimension mappings."""
    entries: Tuple[Mapping, ...] = field(default_factory=tuple)

    def __post_init__(self):
        object.__setattr__(self, "entries", tuple(self.entries))

    def map_data(self, obj: Any) -> Dict[str, str]:
        """Apply every mapping to ``obj``.

        Every mapping produces exactly one dimension. When two mappings share a
        destination the later one wins.

        Args:
            obj: Source record, typically ``CostItem.as_source()``

        Returns:
            Mapping of dimension name to value
        """
        dimensions: Dict[str, str] = {}
        for mapping in self.entries:
            dimensions[mapping.destination] = mapping.evaluate(obj)
        return dimensions

    def dimension_names(self) -> List[str]:
        """Destination names in first-seen order, without duplicates."""
        names: List[str] = []
        for mapping in self.entries:
            if mapping.destination not in names:
                names.append(mapping.destination)
        return names
