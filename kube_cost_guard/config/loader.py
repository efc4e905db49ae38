"""
Configuration management and loading.

Loads the pricing table and dimension mappings from a YAML (or JSON) file.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

import yaml

from kube_cost_guard.core.mapper import Mapper, Mapping, MappingExpressionError
from kube_cost_guard.core.metrics import label_name
from kube_cost_guard.core.pricing import PricingEntry, PricingTable
from kube_cost_guard.storage.repository import dimension_column

# Canonical key names. Matching is case-insensitive so files written with
# capitalized keys (``Pricing.Entries[].HourlyMilliCPUCostMicroCents``) load too.
_TOP_KEYS = ("pricing", "mapper")
_SECTION_KEYS = ("entries",)
_PRICING_ENTRY_KEYS = (
    "labels",
    "hourlyMilliCPUCostMicroCents",
    "hourlyMemoryByteCostMicroCents",
    "hourlyGPUCostMicroCents",
)
_MAPPING_KEYS = ("source", "destination", "default")


@dataclass(frozen=True)
class CostConfig:
    """Complete cost attribution configuration."""
    pricing: PricingTable
    mapper: Mapper = field(default_factory=Mapper)


def load_config(path: str) -> CostConfig:
    """Load and validate cost configuration from a YAML or JSON file.

    Strict validation ensures the calculation loop never starts with a
    pricing table or mapping that silently misattributes cost.

    Args:
        path: Path to configuration file

    Returns:
        Validated CostConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")

    return parse_config(raw_config)


def parse_config(raw_config: Any) -> CostConfig:
    """Validate an already decoded configuration document.

    Raises:
        ValueError: If configuration is invalid
    """
    top = _normalize_keys(raw_config, _TOP_KEYS, "configuration")

    if 'pricing' not in top:
        raise ValueError("Missing required 'pricing' section")

    pricing_entries = _section_entries(top['pricing'], "pricing")
    if not pricing_entries:
        raise ValueError("'pricing.entries' must contain at least one entry")

    entries = [
        _parse_pricing_entry(entry, f"pricing.entries[{i}]")
        for i, entry in enumerate(pricing_entries)
    ]
    try:
        pricing = PricingTable.from_entries(entries)
    except ValueError as e:
        raise ValueError(f"Invalid pricing table: {e}")

    mappings = []
    if top.get('mapper') is not None:
        for i, entry in enumerate(_section_entries(top['mapper'], "mapper")):
            mappings.append(_parse_mapping(entry, f"mapper.entries[{i}]"))

    mapper = Mapper(tuple(mappings))
    _check_dimension_collisions(mapper.dimension_names())
    return CostConfig(pricing=pricing, mapper=mapper)


def _check_dimension_collisions(names: List[str]) -> None:
    """Reject destinations that sanitize to the same label or ledger column."""
    for sanitize in (label_name, dimension_column):
        seen: Dict[str, str] = {}
        for name in names:
            key = sanitize(name)
            if key in seen:
                raise ValueError(
                    f"Mapper destinations '{seen[key]}' and '{name}' collide as '{key}'"
                )
            seen[key] = name


def _normalize_keys(data: Any, allowed: tuple, path: str) -> Dict[str, Any]:
    """Map keys of ``data`` onto canonical names, rejecting unknown keys."""
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")

    canonical = {key.lower(): key for key in allowed}
    normalized = {}
    unknown = set()
    for key, value in data.items():
        name = canonical.get(str(key).lower())
        if name is None:
            unknown.add(key)
            continue
        if name in normalized:
            raise ValueError(f"Duplicate key '{name}' in {path}")
        normalized[name] = value

    if unknown:
        raise ValueError(f"Unknown keys in {path}: {unknown}")
    return normalized


def _section_entries(data: Any, path: str) -> List[Any]:
    section = _normalize_keys(data, _SECTION_KEYS, path)
    entries = section.get('entries')
    if entries is None:
        return []
    if not isinstance(entries, list):
        raise ValueError(f"'{path}.entries' must be a list")
    return entries


def _parse_rate(data: Dict[str, Any], key: str, path: str) -> float:
    value = data.get(key, 0)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' in {path} must be a number")
    if value < 0:
        raise ValueError(f"'{key}' in {path} must be >= 0")
    return float(value)


def _parse_pricing_entry(data: Any, path: str) -> PricingEntry:
    """Parse and validate a pricing table entry.

    Args:
        data: Entry data
        path: Path for error messages

    Returns:
        Validated PricingEntry

    Raises:
        ValueError: If the entry is invalid
    """
    entry = _normalize_keys(data, _PRICING_ENTRY_KEYS, path)

    labels = entry.get('labels') or {}
    if not isinstance(labels, dict):
        raise ValueError(f"'labels' in {path} must be a dictionary")

    return PricingEntry(
        labels={str(k): str(v) for k, v in labels.items()},
        hourly_milli_cpu_cost_micro_cents=_parse_rate(entry, 'hourlyMilliCPUCostMicroCents', path),
        hourly_memory_byte_cost_micro_cents=_parse_rate(entry, 'hourlyMemoryByteCostMicroCents', path),
        hourly_gpu_cost_micro_cents=_parse_rate(entry, 'hourlyGPUCostMicroCents', path),
    )


def _parse_mapping(data: Any, path: str) -> Mapping:
    """Parse a mapping rule, compiling its source expression.

    Raises:
        ValueError: If the rule is invalid or its expression cannot be parsed
    """
    entry = _normalize_keys(data, _MAPPING_KEYS, path)

    for key in ('source', 'destination'):
        if key not in entry:
            raise ValueError(f"Missing required '{key}' in {path}")
        if not isinstance(entry[key], str) or not entry[key].strip():
            raise ValueError(f"'{key}' in {path} must be a non-empty string")

    default = entry.get('default')
    if default is None:
        default = ""

    try:
        return Mapping(
            source=entry['source'],
            destination=entry['destination'],
            default=str(default),
        )
    except MappingExpressionError as e:
        raise MappingExpressionError(f"Invalid source expression in {path}: {e}")
