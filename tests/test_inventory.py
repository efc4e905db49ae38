"""
Unit tests for inventory sources.
"""

import json
import os
import tempfile

import pytest

from kube_cost_guard.core.inventory import (
    FileInventory,
    InventoryError,
    StaticInventory,
    node_from_k8s,
    workload_from_k8s,
)
from kube_cost_guard.core.resources import Node, ResourceKind, Workload, sum_resource_request

POD = {
    "apiVersion": "v1",
    "kind": "Pod",
    "metadata": {
        "name": "api-0",
        "namespace": "prod",
        "labels": {"service": "api"},
        "annotations": {"example.com/team": "core"},
    },
    "spec": {
        "nodeName": "node-1",
        "containers": [
            {"name": "app", "resources": {"requests": {"cpu": "500m", "memory": "32Mi"}}},
            {"name": "sidecar", "resources": {}},
        ],
    },
    "status": {"phase": "Running"},
}

NODE = {
    "apiVersion": "v1",
    "kind": "Node",
    "metadata": {"name": "node-1", "labels": {"size": "large"}},
    "status": {"capacity": {"cpu": "4", "memory": "16Gi", "pods": "110"}},
}


class TestKubernetesConversion:
    """Test conversion of Kubernetes objects."""

    def test_workload_from_pod(self):
        """Verify pod metadata, placement and requests are read."""
        workload = workload_from_k8s(POD)

        assert workload.name == "api-0"
        assert workload.namespace == "prod"
        assert workload.node_name == "node-1"
        assert workload.phase == "Running"
        assert workload.labels == {"service": "api"}
        assert workload.annotations == {"example.com/team": "core"}
        assert len(workload.containers) == 2
        assert sum_resource_request(workload, ResourceKind.CPU) == 500

    def test_unscheduled_pod(self):
        """Verify pods without placement have an empty node name."""
        workload = workload_from_k8s({"metadata": {"name": "pending"}, "spec": {}, "status": {"phase": "Pending"}})
        assert workload.node_name == ""
        assert workload.phase == "Pending"

    def test_node_from_k8s(self):
        """Verify node labels and capacity are read."""
        node = node_from_k8s(NODE)
        assert node.name == "node-1"
        assert node.labels == {"size": "large"}
        assert node.capacity["memory"] == "16Gi"

    def test_malformed_object(self):
        """Verify non-object items are rejected."""
        with pytest.raises(ValueError):
            workload_from_k8s(["not", "a", "pod"])
        with pytest.raises(ValueError, match="metadata.labels"):
            node_from_k8s({"metadata": {"labels": ["x"]}})

    @pytest.mark.parametrize("pod,message", [
        ({"spec": {"containers": ["app"]}}, r"spec.containers\[0\]"),
        ({"spec": {"containers": {"name": "app"}}}, "spec.containers"),
        ({"spec": ["app"]}, "'spec'"),
        ({"status": "Running"}, "'status'"),
        ({"spec": {"containers": [{"resources": {"requests": ["cpu"]}}]}}, "requests"),
    ])
    def test_malformed_pod_shapes(self, pod, message):
        """Verify wrongly shaped pod sections raise ValueError instead of crashing."""
        with pytest.raises(ValueError, match=message):
            workload_from_k8s(pod)

    def test_malformed_node_capacity(self):
        """Verify a non-mapping capacity is rejected."""
        with pytest.raises(ValueError, match="status.capacity"):
            node_from_k8s({"status": {"capacity": "4 cores"}})


class TestFileInventory:
    """Test reading kubectl dumps from disk."""

    def setup_method(self):
        """Set up a temporary directory."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up the temporary directory."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write(self, name, data):
        path = os.path.join(self.temp_dir, name)
        with open(path, 'w', encoding='utf-8') as f:
            if isinstance(data, str):
                f.write(data)
            else:
                json.dump(data, f)
        return path

    def test_list_documents(self):
        """Verify List objects are expanded into items."""
        pods = self._write("pods.json", {"kind": "List", "items": [POD, POD]})
        nodes = self._write("nodes.json", {"kind": "List", "items": [NODE]})
        inventory = FileInventory(pods, nodes)

        assert len(inventory.list_workloads()) == 2
        assert [node.name for node in inventory.list_nodes()] == ["node-1"]

    def test_single_object_and_bare_list(self):
        """Verify a single object and a bare list are accepted."""
        pods = self._write("pods.json", POD)
        nodes = self._write("nodes.json", [NODE])
        inventory = FileInventory(pods, nodes)

        assert [w.name for w in inventory.list_workloads()] == ["api-0"]
        assert len(inventory.list_nodes()) == 1

    def test_yaml_documents(self):
        """Verify YAML dumps are accepted."""
        pods = self._write("pods.yaml", "items:\n  - metadata:\n      name: a\n    spec:\n      nodeName: n\n")
        nodes = self._write("nodes.yaml", "items: []\n")
        inventory = FileInventory(pods, nodes)

        assert [w.node_name for w in inventory.list_workloads()] == ["n"]
        assert inventory.list_nodes() == []

    def test_missing_file(self):
        """Verify unreadable files raise InventoryError."""
        inventory = FileInventory(os.path.join(self.temp_dir, "missing.json"), "also-missing.json")
        with pytest.raises(InventoryError, match="could not read inventory file"):
            inventory.list_workloads()

    def test_malformed_item(self):
        """Verify malformed objects raise InventoryError."""
        pods = self._write("pods.json", {"items": ["garbage"]})
        with pytest.raises(InventoryError, match="malformed pod"):
            FileInventory(pods, pods).list_workloads()

    def test_container_not_an_object(self):
        """Verify a container given as a bare string raises InventoryError."""
        pods = self._write("pods.json", {"items": [{"spec": {"containers": ["app"]}}]})
        with pytest.raises(InventoryError, match="malformed pod"):
            FileInventory(pods, pods).list_workloads()

    def test_items_not_a_list(self):
        """Verify a non-list items field raises InventoryError."""
        pods = self._write("pods.json", {"kind": "List", "items": {"a": POD}})
        with pytest.raises(InventoryError, match="must be a list"):
            FileInventory(pods, pods).list_workloads()

    def test_unexpected_document(self):
        """Verify scalar documents raise InventoryError."""
        pods = self._write("pods.json", "42")
        with pytest.raises(InventoryError, match="unexpected inventory document"):
            FileInventory(pods, pods).list_workloads()


class TestStaticInventory:
    """Test the in-memory inventory."""

    def test_returns_copies(self):
        """Verify callers cannot mutate the snapshot."""
        inventory = StaticInventory([Workload(name="a", node_name="n")], [Node(name="n")])
        inventory.list_workloads().clear()

        assert len(inventory.list_workloads()) == 1
        assert len(inventory.list_nodes()) == 1
