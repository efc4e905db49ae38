"""
Unit tests for pricing strategies.

Every scenario prices one hour on a single node labeled ``test: strategy``
with rates of 1000 micro-cents per milli-CPU, 1 per byte and 7000000 per GPU.
"""

from datetime import timedelta

import pytest

from kube_cost_guard.core.pricing import PricingEntry, PricingTable
from kube_cost_guard.core.resources import Container, Node, Workload
from kube_cost_guard.core.strategy import (
    DEFAULT_STRATEGIES,
    STRATEGY_NAME_CPU,
    STRATEGY_NAME_GPU,
    STRATEGY_NAME_MEMORY,
    STRATEGY_NAME_NODE,
    STRATEGY_NAME_WEIGHTED,
    CostItem,
    CostKind,
    cpu_pricing_strategy,
    get_strategy,
    gpu_pricing_strategy,
    memory_pricing_strategy,
    node_pricing_strategy,
    weighted_pricing_strategy,
)

NODE_NAME = "strategy-test-node"
NODE_LABELS = {"test": "strategy"}
HOUR = timedelta(hours=1)


def _pod(name, cpu, memory):
    return Workload(name=name, node_name=NODE_NAME,
                    containers=[Container(requests={"cpu": cpu, "memory": memory})])


POD_A = _pod("pod-a", "500m", "32Mi")
POD_B = _pod("pod-b", "250m", "32Mi")
POD_NO_RESOURCES = Workload(name="pod-empty", node_name=NODE_NAME, containers=[Container()])
POD_GPU = Workload(name="pod-gpu", node_name=NODE_NAME,
                   containers=[Container(requests={"nvidia.com/gpu": "1"})])
POD_TWO_GPU = Workload(name="pod-two-gpu", node_name=NODE_NAME,
                       containers=[Container(requests={"nvidia.com/gpu": "2"})])

NODE = Node(name=NODE_NAME, labels=NODE_LABELS, capacity={"cpu": "1", "memory": "1Gi"})
NODE_GPU = Node(name=NODE_NAME, labels=NODE_LABELS, capacity={"cpu": "1", "nvidia.com/gpu": "1"})
NODE_MULTI_GPU = Node(name=NODE_NAME, labels=NODE_LABELS, capacity={"cpu": "1", "nvidia.com/gpu": "2"})

TABLE = PricingTable.from_entries([
    PricingEntry(
        labels=NODE_LABELS,
        hourly_milli_cpu_cost_micro_cents=1000,
        hourly_memory_byte_cost_micro_cents=1,
        hourly_gpu_cost_micro_cents=7000000,
    )
])


def _values(items):
    return [item.value for item in items]


class TestCPUPricingStrategy:
    """Test pricing of CPU requests."""

    def test_single_pod(self):
        """Verify 500m for an hour at 1000 per milli-CPU."""
        items = cpu_pricing_strategy(TABLE, HOUR, [POD_A], [NODE])

        assert items == [CostItem(
            kind=CostKind.CPU, strategy=STRATEGY_NAME_CPU, value=500000, workload=POD_A, node=NODE
        )]

    def test_pod_without_resources_costs_zero(self):
        """Verify a pod with no requests yields a zero-valued item."""
        items = cpu_pricing_strategy(TABLE, HOUR, [POD_NO_RESOURCES], [NODE])
        assert _values(items) == [0]

    def test_two_pods(self):
        """Verify each pod is priced independently."""
        items = cpu_pricing_strategy(TABLE, HOUR, [POD_A, POD_B], [NODE])
        assert _values(items) == [500000, 250000]


class TestMemoryPricingStrategy:
    """Test pricing of memory requests."""

    def test_single_pod(self):
        """Verify 32Mi for an hour at 1 per byte."""
        items = memory_pricing_strategy(TABLE, HOUR, [POD_A], [NODE])

        assert _values(items) == [33554432]
        assert items[0].kind == CostKind.MEMORY
        assert items[0].strategy == STRATEGY_NAME_MEMORY

    def test_pod_without_resources_costs_zero(self):
        """Verify a pod with no requests yields a zero-valued item."""
        items = memory_pricing_strategy(TABLE, HOUR, [POD_NO_RESOURCES], [NODE])
        assert _values(items) == [0]

    def test_two_pods(self):
        """Verify both pods request the same memory."""
        items = memory_pricing_strategy(TABLE, HOUR, [POD_A, POD_B], [NODE])
        assert _values(items) == [33554432, 33554432]


class TestGPUPricingStrategy:
    """Test pricing of GPU requests."""

    def test_pod_without_gpu_is_skipped(self):
        """Verify workloads without GPU requests produce no items."""
        assert gpu_pricing_strategy(TABLE, HOUR, [POD_A], [NODE_GPU]) == []

    def test_single_gpu(self):
        """Verify one GPU for an hour at the GPU rate."""
        items = gpu_pricing_strategy(TABLE, HOUR, [POD_A, POD_GPU], [NODE_GPU])

        assert len(items) == 1
        assert items[0].workload == POD_GPU
        assert items[0].kind == CostKind.GPU
        assert items[0].strategy == STRATEGY_NAME_GPU
        assert items[0].value == 7000000

    def test_two_gpus(self):
        """Verify GPU cost scales with the device count."""
        items = gpu_pricing_strategy(TABLE, HOUR, [POD_TWO_GPU], [NODE_MULTI_GPU])
        assert _values(items) == [14000000]


class TestWeightedPricingStrategy:
    """Test proportional attribution of node capacity."""

    def test_two_pods_share_node(self):
        """Verify idle capacity is attributed in proportion to requests."""
        items = weighted_pricing_strategy(TABLE, HOUR, [POD_A, POD_B], [NODE])

        assert _values(items) == [537537578, 537204245]
        assert all(item.kind == CostKind.WEIGHTED for item in items)
        assert all(item.strategy == STRATEGY_NAME_WEIGHTED for item in items)

    def test_pod_without_resources_costs_zero(self):
        """Verify zero usage defaults to capacity without dividing by zero."""
        items = weighted_pricing_strategy(TABLE, HOUR, [POD_NO_RESOURCES], [NODE])
        assert _values(items) == [0]

    def test_gpu_node(self):
        """Verify CPU and GPU shares on a node advertising no memory."""
        items = weighted_pricing_strategy(TABLE, HOUR, [POD_A, POD_GPU], [NODE_GPU])
        assert _values(items) == [1000000, 7000000]

    def test_multi_gpu_node(self):
        """Verify a pod holding every GPU is charged for all of them."""
        items = weighted_pricing_strategy(TABLE, HOUR, [POD_TWO_GPU], [NODE_MULTI_GPU])
        assert _values(items) == [14000000]

    def test_missing_node_skipped(self):
        """Verify workloads on unknown nodes are skipped."""
        stray = Workload(name="stray", node_name="elsewhere",
                         containers=[Container(requests={"cpu": "1"})])
        items = weighted_pricing_strategy(TABLE, HOUR, [stray, POD_A], [NODE])

        assert [item.workload for item in items] == [POD_A]


class TestNodePricingStrategy:
    """Test pricing nodes at full capacity."""

    def test_standard_node(self):
        """Verify memory plus CPU at capacity."""
        items = node_pricing_strategy(TABLE, HOUR, [POD_A], [NODE])

        assert items == [CostItem(
            kind=CostKind.NODE, strategy=STRATEGY_NAME_NODE, value=1074741824, node=NODE
        )]

    def test_gpu_node(self):
        """Verify GPU capacity is included."""
        items = node_pricing_strategy(TABLE, HOUR, [], [NODE_GPU])
        assert _values(items) == [1000000 + 7000000]

    def test_multi_gpu_node(self):
        """Verify every GPU is included."""
        items = node_pricing_strategy(TABLE, HOUR, [], [NODE_MULTI_GPU])
        assert _values(items) == [1000000 + 14000000]

    def test_unpriced_node_skipped(self):
        """Verify nodes without a pricing entry produce nothing."""
        other = Node(name="other", labels={"test": "other"}, capacity={"cpu": "1"})
        assert node_pricing_strategy(TABLE, HOUR, [], [other]) == []

    def test_unreadable_capacity_skipped(self):
        """Verify a node with malformed CPU capacity is skipped."""
        broken = Node(name="broken", labels=NODE_LABELS, capacity={"cpu": "lots"})
        assert node_pricing_strategy(TABLE, HOUR, [], [broken, NODE]) == [
            CostItem(kind=CostKind.NODE, strategy=STRATEGY_NAME_NODE, value=1074741824, node=NODE)
        ]

    def test_out_of_range_capacity_skipped(self):
        """Verify a node advertising an absurd CPU capacity is skipped."""
        huge = Node(name="huge", labels=NODE_LABELS, capacity={"cpu": "1e400", "memory": "1Gi"})
        assert _values(node_pricing_strategy(TABLE, HOUR, [], [huge, NODE])) == [1074741824]


class TestStrategyRegistry:
    """Test strategy lookup by name."""

    def test_all_strategies_registered(self):
        """Verify every strategy runs by default."""
        assert set(DEFAULT_STRATEGIES) == {
            STRATEGY_NAME_CPU,
            STRATEGY_NAME_MEMORY,
            STRATEGY_NAME_GPU,
            STRATEGY_NAME_WEIGHTED,
            STRATEGY_NAME_NODE,
        }

    def test_get_strategy(self):
        """Verify lookup returns the strategy function."""
        assert get_strategy(STRATEGY_NAME_CPU) is cpu_pricing_strategy

    def test_unknown_strategy(self):
        """Verify unknown names are rejected."""
        with pytest.raises(ValueError, match="Unknown pricing strategy"):
            get_strategy("FreeLunchStrategy")


class TestCostItemSource:
    """Test the structured record mappings read from."""

    def test_workload_item(self):
        """Verify workload and node metadata are exposed."""
        workload = Workload(
            name="api", node_name=NODE_NAME, namespace="prod",
            labels={"service": "api"}, annotations={"team": "core"},
        )
        item = CostItem(kind=CostKind.CPU, strategy=STRATEGY_NAME_CPU, value=5,
                        workload=workload, node=NODE)

        source = item.as_source()
        assert source["kind"] == "cpu"
        assert source["workload"]["labels"] == {"service": "api"}
        assert source["workload"]["annotations"] == {"team": "core"}
        assert source["workload"]["namespace"] == "prod"
        assert source["node"] == {"name": NODE_NAME, "labels": NODE_LABELS}

    def test_node_item_has_empty_workload(self):
        """Verify node-level items expose an empty workload."""
        item = CostItem(kind=CostKind.NODE, strategy=STRATEGY_NAME_NODE, value=5, node=NODE)
        assert item.as_source()["workload"] == {}
