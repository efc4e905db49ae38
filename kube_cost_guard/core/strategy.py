"""
Pricing strategies.

Each strategy converts a snapshot of workloads and nodes, a pricing table
and an elapsed duration into a list of cost items. Strategies are pure
functions and build whatever aggregation they need on every call.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from .pricing import NoCostEntryError, PricingEntry, PricingTable
from .resources import (
    Node,
    ResourceKind,
    Workload,
    build_node_allocation,
    build_node_map,
    build_usage_record,
    node_capacity,
)

logger = logging.getLogger(__name__)

STRATEGY_NAME_CPU = "CPUPricingStrategy"
STRATEGY_NAME_MEMORY = "MemoryPricingStrategy"
STRATEGY_NAME_GPU = "GPUPricingStrategy"
STRATEGY_NAME_WEIGHTED = "WeightedPricingStrategy"
STRATEGY_NAME_NODE = "NodePricingStrategy"


class CostKind(Enum):
    """Resource a cost figure was derived from."""
    CPU = "cpu"
    MEMORY = "memory"
    GPU = "gpu"
    WEIGHTED = "weighted"
    NODE = "node"


@dataclass(frozen=True)
class CostItem:
    """Cost of a workload and/or node produced by a pricing strategy.

    Value is in micro-cents. Node-level items carry no workload.
    """
    kind: CostKind
    strategy: str
    value: int
    workload: Optional[Workload] = None
    node: Optional[Node] = None

    def as_source(self) -> Dict[str, Any]:
        """Expose the item as the structured record dimension mappings read from."""
        source: Dict[str, Any] = {
            "kind": self.kind.value,
            "strategy": self.strategy,
            "value": self.value,
            "workload": {},
            "node": {},
        }
        if self.workload is not None:
            source["workload"] = {
                "name": self.workload.name,
                "namespace": self.workload.namespace,
                "labels": dict(self.workload.labels),
                "annotations": dict(self.workload.annotations),
                "node": self.workload.node_name,
            }
        if self.node is not None:
            source["node"] = {
                "name": self.node.name,
                "labels": dict(self.node.labels),
            }
        return source


PricingStrategy = Callable[[PricingTable, timedelta, Sequence[Workload], Sequence[Node]], List[CostItem]]


def _find_entry(table: PricingTable, node: Node) -> Optional[PricingEntry]:
    try:
        return table.find_by_labels(node.labels)
    except NoCostEntryError:
        logger.warning("could not find pricing entry for node %s", node.name)
        return None


def _log_item(item: CostItem) -> None:
    logger.debug(
        "generated cost item: strategy=%s kind=%s workload=%s node=%s value=%d",
        item.strategy,
        item.kind.value,
        item.workload.name if item.workload is not None else "",
        item.node.name if item.node is not None else "",
        item.value,
    )


def _per_workload_strategy(
    kind: CostKind,
    strategy_name: str,
    resource: ResourceKind,
    skip_zero: bool = False,
) -> PricingStrategy:
    """Build a strategy pricing each workload's raw request of one resource."""

    def calculate(
        table: PricingTable,
        duration: timedelta,
        workloads: Sequence[Workload],
        nodes: Sequence[Node],
    ) -> List[CostItem]:
        node_map = build_node_map(nodes)
        items: List[CostItem] = []
        for workload in workloads:
            try:
                quantity = build_usage_record(workload).request(resource)
            except ValueError as e:
                logger.warning("skipping workload %s with unreadable requests: %s", workload.name, e)
                continue
            if skip_zero and quantity == 0:
                continue

            node = node_map.get(workload.node_name)
            if node is None:
                logger.warning("could not find node %s for workload %s", workload.node_name, workload.name)
                continue

            entry = _find_entry(table, node)
            if entry is None:
                continue

            if resource == ResourceKind.CPU:
                value = entry.cpu_cost(quantity, duration)
            elif resource == ResourceKind.MEMORY:
                value = entry.memory_cost(quantity, duration)
            else:
                value = entry.gpu_cost(quantity, duration)

            item = CostItem(kind=kind, strategy=strategy_name, value=value, workload=workload, node=node)
            _log_item(item)
            items.append(item)
        return items

    calculate.__name__ = strategy_name
    return calculate


# Cost of a workload's CPU requests at the node's hourly rate.
cpu_pricing_strategy = _per_workload_strategy(CostKind.CPU, STRATEGY_NAME_CPU, ResourceKind.CPU)

# Cost of a workload's memory requests at the node's hourly rate.
memory_pricing_strategy = _per_workload_strategy(CostKind.MEMORY, STRATEGY_NAME_MEMORY, ResourceKind.MEMORY)

# Cost of a workload's GPU requests. Workloads without GPUs yield nothing.
gpu_pricing_strategy = _per_workload_strategy(CostKind.GPU, STRATEGY_NAME_GPU, ResourceKind.GPU, skip_zero=True)


def weighted_pricing_strategy(
    table: PricingTable,
    duration: timedelta,
    workloads: Sequence[Workload],
    nodes: Sequence[Node],
) -> List[CostItem]:
    """Price workloads by their share of all requests on their node.

    Each request is scaled by ``capacity / total requests`` for its resource,
    so unrequested capacity is attributed back onto the workloads present.
    This tends to penalize workloads landing on lightly packed nodes.
    """
    allocations = build_node_allocation(workloads, nodes)
    items: List[CostItem] = []
    for workload in workloads:
        allocation = allocations.get(workload.node_name)
        if allocation is None:
            logger.warning("could not find node %s for workload %s", workload.node_name, workload.name)
            continue

        try:
            usage = build_usage_record(workload)
        except ValueError as e:
            logger.warning("skipping workload %s with unreadable requests: %s", workload.name, e)
            continue

        entry = _find_entry(table, allocation.node)
        if entry is None:
            continue

        cpu_cost = entry.cpu_cost(usage.cpu * allocation.scale_factor(ResourceKind.CPU), duration)
        memory_cost = entry.memory_cost(usage.memory * allocation.scale_factor(ResourceKind.MEMORY), duration)
        gpu_cost = entry.gpu_cost(usage.gpu * allocation.scale_factor(ResourceKind.GPU), duration)

        item = CostItem(
            kind=CostKind.WEIGHTED,
            strategy=STRATEGY_NAME_WEIGHTED,
            value=cpu_cost + memory_cost + gpu_cost,
            workload=workload,
            node=allocation.node,
        )
        _log_item(item)
        items.append(item)
    return items


def node_pricing_strategy(
    table: PricingTable,
    duration: timedelta,
    workloads: Sequence[Workload],
    nodes: Sequence[Node],
) -> List[CostItem]:
    """Price every node at its full advertised capacity, regardless of workloads."""
    items: List[CostItem] = []
    for node in nodes:
        entry = _find_entry(table, node)
        if entry is None:
            continue

        try:
            cpu = node_capacity(node, ResourceKind.CPU)
            memory = node_capacity(node, ResourceKind.MEMORY)
        except ValueError as e:
            logger.warning("could not read capacity of node %s, skipping: %s", node.name, e)
            continue

        try:
            gpu = node_capacity(node, ResourceKind.GPU)
        except ValueError as e:
            logger.warning("could not read gpu capacity of node %s, assuming zero: %s", node.name, e)
            gpu = 0

        value = (
            entry.memory_cost(memory, duration)
            + entry.cpu_cost(cpu, duration)
            + entry.gpu_cost(gpu, duration)
        )
        item = CostItem(kind=CostKind.NODE, strategy=STRATEGY_NAME_NODE, value=value, node=node)
        _log_item(item)
        items.append(item)
    return items


STRATEGIES: Dict[str, PricingStrategy] = {
    STRATEGY_NAME_GPU: gpu_pricing_strategy,
    STRATEGY_NAME_CPU: cpu_pricing_strategy,
    STRATEGY_NAME_MEMORY: memory_pricing_strategy,
    STRATEGY_NAME_WEIGHTED: weighted_pricing_strategy,
    STRATEGY_NAME_NODE: node_pricing_strategy,
}

DEFAULT_STRATEGIES = tuple(STRATEGIES)


def get_strategy(name: str) -> PricingStrategy:
    """Look up a strategy by name.

    Raises:
        ValueError: If the strategy is unknown
    """
    if name not in STRATEGIES:
        raise ValueError(f"Unknown pricing strategy: {name}. Valid strategies: {list(STRATEGIES)}")
    return STRATEGIES[name]
