"""
Workload filters applied to each inventory snapshot.
"""

from typing import Callable, Iterable, List

from .resources import Workload

WorkloadFilter = Callable[[Workload], bool]

RUNNING_PHASE = "Running"


def running_workload_filter(workload: Workload) -> bool:
    """Keep only workloads in the Running phase."""
    return workload.phase == RUNNING_PHASE


class WorkloadFilters(list):
    """List of predicates; a workload is kept when all of them pass."""

    def all(self, workload: Workload) -> bool:
        return all(predicate(workload) for predicate in self)

    def apply(self, workloads: Iterable[Workload]) -> List[Workload]:
        return [workload for workload in workloads if self.all(workload)]
