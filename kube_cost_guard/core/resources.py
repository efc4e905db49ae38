"""
Cluster resource models and per-node aggregation.

Sums workload resource requests and node capacities so pricing strategies
can attribute node cost to the workloads scheduled on them.
"""

import logging
import math
import re
from dataclasses import dataclass, field
from decimal import Decimal, DecimalException
from enum import Enum
from typing import Dict, Iterable, List, Union

logger = logging.getLogger(__name__)

Quantity = Union[str, int, float, Decimal]


class ResourceKind(Enum):
    """Resources that carry a price. Values are the Kubernetes resource names."""
    CPU = "cpu"
    MEMORY = "memory"
    GPU = "nvidia.com/gpu"


_BINARY_SUFFIXES = {
    "Ki": Decimal(2) ** 10,
    "Mi": Decimal(2) ** 20,
    "Gi": Decimal(2) ** 30,
    "Ti": Decimal(2) ** 40,
    "Pi": Decimal(2) ** 50,
    "Ei": Decimal(2) ** 60,
}

_DECIMAL_SUFFIXES = {
    "n": Decimal("1e-9"),
    "u": Decimal("1e-6"),
    "m": Decimal("1e-3"),
    "": Decimal(1),
    "k": Decimal("1e3"),
    "M": Decimal("1e6"),
    "G": Decimal("1e9"),
    "T": Decimal("1e12"),
    "P": Decimal("1e15"),
    "E": Decimal("1e18"),
}

MAX_MILLI_VALUE = 2**63 - 1
_MAX_QUANTITY = Decimal(MAX_MILLI_VALUE) / 1000

_QUANTITY_RE = re.compile(
    r"^(?P<number>[+-]?(?:\d+\.?\d*|\.\d+))"
    r"(?:(?P<binary>Ki|Mi|Gi|Ti|Pi|Ei)|(?P<exponent>[eE][+-]?\d+)|(?P<decimal>[numkMGTPE]?))$"
)


def parse_quantity(value: Quantity) -> Decimal:
    """Parse a Kubernetes resource quantity such as ``500m``, ``32Mi`` or ``2``.

    Args:
        value: Quantity string or plain number

    Returns:
        The quantity in base units (cores, bytes, devices)

    Raises:
        ValueError: If the quantity is malformed
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid quantity: {value!r}")
    if isinstance(value, (Decimal, int, float)):
        quantity = Decimal(str(value))
        if not quantity.is_finite():
            raise ValueError(f"Invalid quantity: {value!r}")
        return _check_range(quantity, value)
    if not isinstance(value, str):
        raise ValueError(f"Invalid quantity: {value!r}")

    match = _QUANTITY_RE.match(value.strip())
    if not match:
        raise ValueError(f"Invalid quantity: {value!r}")

    try:
        number = Decimal(match.group("number"))
        if match.group("binary"):
            quantity = number * _BINARY_SUFFIXES[match.group("binary")]
        elif match.group("exponent"):
            quantity = number * (Decimal(10) ** int(match.group("exponent")[1:]))
        else:
            quantity = number * _DECIMAL_SUFFIXES[match.group("decimal") or ""]
    except DecimalException:
        raise ValueError(f"Invalid quantity: {value!r}")

    return _check_range(quantity, value)


def _check_range(quantity: Decimal, value: Quantity) -> Decimal:
    # Milli values are carried as signed 64-bit integers.
    if abs(quantity) > _MAX_QUANTITY:
        raise ValueError(f"Invalid quantity: {value!r} is out of range")
    return quantity


def _milli_value(quantity: Decimal) -> int:
    # Kubernetes rounds fractional milli values up.
    return int(math.ceil(quantity * 1000))


@dataclass(frozen=True)
class Container:
    """A sub-unit of a workload carrying resource requests."""
    name: str = ""
    requests: Dict[str, Quantity] = field(default_factory=dict)


@dataclass(frozen=True)
class Workload:
    """A schedulable unit (pod) placed on a node."""
    name: str
    node_name: str
    namespace: str = "default"
    phase: str = "Running"
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    containers: List[Container] = field(default_factory=list)


@dataclass(frozen=True)
class Node:
    """A cluster member with advertised capacity."""
    name: str
    labels: Dict[str, str] = field(default_factory=dict)
    capacity: Dict[str, Quantity] = field(default_factory=dict)


def _to_units(milli_total: int, kind: ResourceKind) -> int:
    if kind == ResourceKind.CPU:
        return milli_total
    # Memory in bytes and GPUs in whole devices.
    return milli_total // 1000


def sum_resource_request(workload: Workload, kind: ResourceKind) -> int:
    """Sum a resource request across every container of a workload.

    CPU is returned in milli-units (1 core is 1000), memory in bytes and GPU
    in whole devices. Containers without a request for ``kind`` contribute 0.
    """
    total = 0
    for container in workload.containers:
        if kind.value in container.requests:
            total += _milli_value(parse_quantity(container.requests[kind.value]))
    return _to_units(total, kind)


def node_capacity(node: Node, kind: ResourceKind) -> int:
    """Return the advertised capacity of ``node`` for ``kind``, 0 when absent.

    Raises:
        ValueError: If the advertised capacity cannot be parsed
    """
    if kind.value not in node.capacity:
        return 0
    return _to_units(_milli_value(parse_quantity(node.capacity[kind.value])), kind)


@dataclass(frozen=True)
class ResourceUsageRecord:
    """Requested resources of one workload for a single calculation cycle."""
    workload: Workload
    node_name: str
    cpu: int
    memory: int
    gpu: int

    def request(self, kind: ResourceKind) -> int:
        return {
            ResourceKind.CPU: self.cpu,
            ResourceKind.MEMORY: self.memory,
            ResourceKind.GPU: self.gpu,
        }[kind]


def build_usage_record(workload: Workload) -> ResourceUsageRecord:
    """Summarize the requests of ``workload`` across all resource kinds."""
    return ResourceUsageRecord(
        workload=workload,
        node_name=workload.node_name,
        cpu=sum_resource_request(workload, ResourceKind.CPU),
        memory=sum_resource_request(workload, ResourceKind.MEMORY),
        gpu=sum_resource_request(workload, ResourceKind.GPU),
    )


@dataclass
class NodeAllocation:
    """Requested versus advertised resources of a node."""
    node: Node
    cpu_used: int = 0
    memory_used: int = 0
    gpu_used: int = 0
    cpu_available: int = 0
    memory_available: int = 0
    gpu_available: int = 0

    def used(self, kind: ResourceKind) -> int:
        return getattr(self, f"{kind.name.lower()}_used")

    def available(self, kind: ResourceKind) -> int:
        return getattr(self, f"{kind.name.lower()}_available")

    def scale_factor(self, kind: ResourceKind) -> float:
        """Ratio of capacity to total requests for ``kind``.

        Scaling a workload's request by this factor attributes idle capacity
        back onto the workloads present on the node. A node with neither
        capacity nor requests for ``kind`` yields 0.0.
        """
        used = self.used(kind)
        if used == 0:
            return 0.0
        return float(self.available(kind)) / float(used)


def build_node_map(nodes: Iterable[Node]) -> Dict[str, Node]:
    return {node.name: node for node in nodes}


def _safe_capacity(node: Node, kind: ResourceKind) -> int:
    try:
        return node_capacity(node, kind)
    except ValueError:
        logger.warning("could not read %s capacity of node %s, assuming zero", kind.value, node.name)
        return 0


def build_node_allocation(
    workloads: Iterable[Workload],
    nodes: Iterable[Node],
) -> Dict[str, NodeAllocation]:
    """Sum workload requests per node and normalize zero usage.

    A workload scheduled on a node absent from ``nodes`` is skipped with a
    warning. When no workload requested a resource on a node, usage for that
    resource defaults to the node's capacity so proportional strategies never
    divide by zero.

    Args:
        workloads: Workloads in the current snapshot
        nodes: Nodes in the current snapshot

    Returns:
        Mapping of node name to NodeAllocation
    """
    allocations: Dict[str, NodeAllocation] = {}
    for node in nodes:
        allocations[node.name] = NodeAllocation(
            node=node,
            cpu_available=_safe_capacity(node, ResourceKind.CPU),
            memory_available=_safe_capacity(node, ResourceKind.MEMORY),
            gpu_available=_safe_capacity(node, ResourceKind.GPU),
        )

    for workload in workloads:
        allocation = allocations.get(workload.node_name)
        if allocation is None:
            logger.warning(
                "unexpected missing node for workload %s/%s: %s",
                workload.namespace, workload.name, workload.node_name,
            )
            continue
        try:
            usage = build_usage_record(workload)
        except ValueError as e:
            logger.warning("skipping workload %s/%s with unreadable requests: %s",
                           workload.namespace, workload.name, e)
            continue
        allocation.cpu_used += usage.cpu
        allocation.memory_used += usage.memory
        allocation.gpu_used += usage.gpu

    for allocation in allocations.values():
        if allocation.cpu_used == 0:
            allocation.cpu_used = allocation.cpu_available
        if allocation.memory_used == 0:
            allocation.memory_used = allocation.memory_available
        if allocation.gpu_used == 0:
            allocation.gpu_used = allocation.gpu_available

    return allocations
