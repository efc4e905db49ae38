"""
Inventory sources for workloads and nodes.

The calculation loop takes one snapshot per cycle from an :class:`Inventory`.
:class:`FileInventory` reads the JSON produced by ``kubectl get pods -o json``
and ``kubectl get nodes -o json``, re-reading the files on every cycle so an
external sync job can keep them current.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Sequence

import yaml

from .resources import Container, Node, Workload

logger = logging.getLogger(__name__)


class InventoryError(RuntimeError):
    """Raised when workloads or nodes cannot be listed."""


class Inventory:
    """Source of the workloads and nodes running in a cluster."""

    def list_workloads(self) -> List[Workload]:
        raise NotImplementedError

    def list_nodes(self) -> List[Node]:
        raise NotImplementedError


class StaticInventory(Inventory):
    """Inventory serving a fixed snapshot."""

    def __init__(self, workloads: Sequence[Workload] = (), nodes: Sequence[Node] = ()):
        self.workloads = list(workloads)
        self.nodes = list(nodes)

    def list_workloads(self) -> List[Workload]:
        return list(self.workloads)

    def list_nodes(self) -> List[Node]:
        return list(self.nodes)


def _section(obj: Dict[str, Any], key: str, path: str) -> Dict[str, Any]:
    value = obj.get(key) or {}
    if not isinstance(value, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    return value


def _metadata(obj: Dict[str, Any]) -> Dict[str, Any]:
    return _section(obj, "metadata", "metadata")


def _string_map(value: Any, path: str) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    return {str(k): str(v) for k, v in value.items()}


def workload_from_k8s(obj: Dict[str, Any]) -> Workload:
    """Convert a Kubernetes Pod object into a Workload.

    Raises:
        ValueError: If the object is not shaped like a Pod
    """
    if not isinstance(obj, dict):
        raise ValueError("pod must be a dictionary")
    metadata = _metadata(obj)
    spec = _section(obj, "spec", "spec")
    status = _section(obj, "status", "status")

    raw_containers = spec.get("containers") or []
    if not isinstance(raw_containers, list):
        raise ValueError("'spec.containers' must be a list")

    containers = []
    for i, container in enumerate(raw_containers):
        if not isinstance(container, dict):
            raise ValueError(f"'spec.containers[{i}]' must be a dictionary")
        resources = _section(container, "resources", f"spec.containers[{i}].resources")
        containers.append(Container(
            name=str(container.get("name", "")),
            requests=dict(_section(resources, "requests", f"spec.containers[{i}].resources.requests")),
        ))

    return Workload(
        name=str(metadata.get("name", "")),
        namespace=str(metadata.get("namespace", "default")),
        node_name=str(spec.get("nodeName", "")),
        phase=str(status.get("phase", "")),
        labels=_string_map(metadata.get("labels"), "metadata.labels"),
        annotations=_string_map(metadata.get("annotations"), "metadata.annotations"),
        containers=containers,
    )


def node_from_k8s(obj: Dict[str, Any]) -> Node:
    """Convert a Kubernetes Node object into a Node.

    Raises:
        ValueError: If the object is not shaped like a Node
    """
    if not isinstance(obj, dict):
        raise ValueError("node must be a dictionary")
    metadata = _metadata(obj)
    status = _section(obj, "status", "status")
    return Node(
        name=str(metadata.get("name", "")),
        labels=_string_map(metadata.get("labels"), "metadata.labels"),
        capacity=dict(_section(status, "capacity", "status.capacity")),
    )


def _load_items(path: Path) -> List[Dict[str, Any]]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise InventoryError(f"could not read inventory file {path}: {e}") from e

    if data is None:
        return []
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        # Either a List object or a single resource.
        if "items" in data:
            items = data["items"] or []
            if not isinstance(items, list):
                raise InventoryError(f"'items' in {path} must be a list")
            return items
        return [data]
    raise InventoryError(f"unexpected inventory document in {path}")


class FileInventory(Inventory):
    """Inventory backed by ``kubectl ... -o json`` (or YAML) dumps."""

    def __init__(self, pods_path: str, nodes_path: str):
        self.pods_path = Path(pods_path)
        self.nodes_path = Path(nodes_path)

    def list_workloads(self) -> List[Workload]:
        try:
            workloads = [workload_from_k8s(item) for item in _load_items(self.pods_path)]
        except ValueError as e:
            raise InventoryError(f"malformed pod in {self.pods_path}: {e}") from e
        logger.debug("listed %d workloads from %s", len(workloads), self.pods_path)
        return workloads

    def list_nodes(self) -> List[Node]:
        try:
            return [node_from_k8s(item) for item in _load_items(self.nodes_path)]
        except ValueError as e:
            raise InventoryError(f"malformed node in {self.nodes_path}: {e}") from e
