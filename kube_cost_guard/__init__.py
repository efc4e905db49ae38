"""
Kube Cost Guard.

Attributes Kubernetes node cost to the workloads scheduled on them.
"""

__version__ = "0.1.0"
