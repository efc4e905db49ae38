"""
Core modules for Kube Cost Guard.

This package contains pricing, resource aggregation, pricing strategies,
dimension mapping, exporters and the calculation loop.
"""
