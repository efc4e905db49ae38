"""
Cost calculation loop.

On every tick the coster snapshots the inventory once, runs each pricing
strategy against that snapshot, maps dimensions for every cost item and
forwards the resulting cost records to the configured exporters.

Cycle states::

    IDLE -> CALCULATING -> EXPORTING -> IDLE

A cycle fails without exporting anything when the inventory cannot be listed
or the clock moved backwards since the previous cycle. Per-item problems
(missing node, no pricing entry, unmappable dimensions) only skip that item.
"""

import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, List, Optional, Sequence

from prometheus_client import start_http_server

from ..config.loader import CostConfig
from ..storage.models import CostRecord
from .exporter import BufferingCostExporter, CostExporter, MultiCostExporter
from .filters import WorkloadFilters, running_workload_filter
from .inventory import Inventory, InventoryError
from .metrics import STATUS_FAILED, STATUS_SUCCEEDED, CostMetrics
from .strategy import DEFAULT_STRATEGIES, CostItem, PricingStrategy, get_strategy

logger = logging.getLogger(__name__)


class SenselessIntervalError(RuntimeError):
    """Raised when the time since the previous cycle is not positive."""

    def __init__(self, elapsed: timedelta):
        super().__init__(f"senseless interval since last calculation: {elapsed}")
        self.elapsed = elapsed


class CycleState(Enum):
    """Phase of the calculation loop."""
    IDLE = "idle"
    CALCULATING = "calculating"
    EXPORTING = "exporting"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Coster:
    """Calculates and emits cost records for workloads running in a cluster.

    Args:
        interval: Configured time between cycles
        config: Pricing table and dimension mapper
        inventory: Source of workloads and nodes
        exporters: Destinations for cost records
        metrics: Observability sink, created when omitted
        strategies: Pricing strategies to run, defaults to all of them
        workload_filters: Predicates applied to workloads, defaults to running only
        clock: Wall clock returning timezone-aware datetimes
    """

    def __init__(
        self,
        interval: timedelta,
        config: CostConfig,
        inventory: Inventory,
        exporters: Sequence[CostExporter] = (),
        metrics: Optional[CostMetrics] = None,
        strategies: Optional[Sequence[PricingStrategy]] = None,
        workload_filters: Optional[WorkloadFilters] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        if config is None:
            raise ValueError("coster configuration is required")
        if interval <= timedelta(0):
            raise ValueError("interval must be > 0")

        self.interval = interval
        self.config = config
        self.inventory = inventory
        self.metrics = metrics or CostMetrics(config.mapper.dimension_names())
        self.exporters = list(exporters)
        self.strategies = list(strategies) if strategies is not None else [
            get_strategy(name) for name in DEFAULT_STRATEGIES
        ]
        self.workload_filters = (
            workload_filters if workload_filters is not None
            else WorkloadFilters([running_workload_filter])
        )
        self.clock = clock
        self.state = CycleState.IDLE
        self._last_run: Optional[datetime] = None
        self._exporter = MultiCostExporter(self.exporters, self.metrics)

    def _elapsed(self) -> timedelta:
        """Duration to attribute this cycle, recording lag against the interval."""
        now = self.clock()
        if self._last_run is None:
            self._last_run = now
            return self.interval

        elapsed = now - self._last_run
        if elapsed <= timedelta(0):
            raise SenselessIntervalError(elapsed)

        self._last_run = now
        lag_ms = (elapsed - self.interval) / timedelta(milliseconds=1)
        self.metrics.record_lag(lag_ms)
        return elapsed

    def calculate(self) -> List[CostItem]:
        """Run every strategy against a single inventory snapshot.

        Returns:
            Cost items from all strategies

        Raises:
            InventoryError: If workloads or nodes cannot be listed
            SenselessIntervalError: If the clock moved backwards
        """
        logger.debug("cost calculation loop triggered")

        workloads = self.workload_filters.apply(self.inventory.list_workloads())
        nodes = self.inventory.list_nodes()
        duration = self._elapsed()

        items: List[CostItem] = []
        for strategy in self.strategies:
            items.extend(strategy(self.config.pricing, duration, workloads, nodes))
        return items

    def calculate_and_emit(self) -> List[CostRecord]:
        """Run one full cycle and forward the records to every exporter.

        Returns:
            The cost records emitted this cycle

        Raises:
            InventoryError: If workloads or nodes cannot be listed
            SenselessIntervalError: If the clock moved backwards
        """
        self.state = CycleState.CALCULATING
        try:
            try:
                items = self.calculate()
            except (InventoryError, SenselessIntervalError):
                logger.error("failed to calculate workload costs")
                self.metrics.record_cycle(STATUS_FAILED)
                raise

            self.state = CycleState.EXPORTING
            end_time = self.clock()
            records: List[CostRecord] = []
            for item in items:
                try:
                    dimensions = self.config.mapper.map_data(item.as_source())
                except ValueError:
                    logger.exception("could not map dimensions for %s cost item", item.strategy)
                    continue

                record = CostRecord(
                    kind=item.kind.value,
                    strategy=item.strategy,
                    value=item.value,
                    dimensions=dimensions,
                    end_time=end_time,
                )
                self._exporter.export_cost(record)
                records.append(record)
        finally:
            self.state = CycleState.IDLE

        self.metrics.record_cycle(STATUS_SUCCEEDED)
        logger.debug("emitted %d cost records", len(records))
        return records

    def run(self, stop_event: threading.Event) -> None:
        """Run cycles on a fixed interval until ``stop_event`` is set.

        Cycle failures are logged and the loop resumes on the next tick.
        """
        logger.debug("starting cost calculation loop")
        seconds = self.interval.total_seconds()
        next_tick = time.monotonic() + seconds
        while not stop_event.wait(max(0.0, next_tick - time.monotonic())):
            try:
                self.calculate_and_emit()
            except (InventoryError, SenselessIntervalError) as e:
                logger.error("error during cost calculation cycle: %s", e)
            next_tick += seconds
            now = time.monotonic()
            if next_tick < now:
                # Drop ticks missed while a slow cycle ran.
                next_tick = now + seconds
        logger.debug("exiting cost calculation loop")


def parse_listen_addr(listen_addr: str):
    """Split ``host:port`` (``:5000`` binds all interfaces)."""
    host, sep, port = listen_addr.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"Invalid listen address: {listen_addr}")
    return host, int(port)


class CostService:
    """Runs the coster, the metrics endpoint and buffering flushers together.

    Metrics are served by ``prometheus_client``'s HTTP server from the
    coster's registry. The tasks form a fail-fast group: when any of them
    raises, the shared stop event is set and every other task winds down.
    Flushers are stopped last, after the coster has emitted its final records.
    ``run`` re-raises the first failure after all tasks have stopped.
    """

    def __init__(
        self,
        coster: Coster,
        listen_addr: Optional[str] = ":5000",
        buffering_exporters: Sequence[BufferingCostExporter] = (),
        stop_event: Optional[threading.Event] = None,
    ):
        self.coster = coster
        self.listen_addr = listen_addr
        self.buffering_exporters = list(buffering_exporters)
        self.stop_event = stop_event or threading.Event()
        self.started = threading.Event()
        self.server = None
        self._errors: List[BaseException] = []
        self._flush_stop = threading.Event()

    def _guard(self, name: str, target: Callable[[], None]) -> Callable[[], None]:
        def runner():
            try:
                target()
            except Exception as e:
                logger.exception("%s failed, shutting down", name)
                self._errors.append(e)
            finally:
                self.stop_event.set()
        return runner

    def _start_metrics_server(self) -> None:
        host, port = parse_listen_addr(self.listen_addr)
        self.server, self._server_thread = start_http_server(
            port, addr=host or "0.0.0.0", registry=self.coster.metrics.registry
        )
        logger.info("serving metrics on %s:%d", *self.server.server_address[:2])

    def _stop_metrics_server(self) -> None:
        if self.server is None:
            return
        self.server.shutdown()
        self.server.server_close()
        self._server_thread.join()

    def run(self) -> None:
        """Block until stopped, then shut every task down."""
        if self.listen_addr:
            self._start_metrics_server()

        flushers = [
            threading.Thread(
                target=self._guard("flusher", lambda exporter=exporter: exporter.run(self._flush_stop)),
                name=f"flush-{exporter.next_exporter.name}",
                daemon=True,
            )
            for exporter in self.buffering_exporters
        ]
        coster = threading.Thread(
            target=self._guard("coster", lambda: self.coster.run(self.stop_event)),
            name="coster",
            daemon=True,
        )

        for thread in flushers + [coster]:
            thread.start()
        self.started.set()

        try:
            self.stop_event.wait()
            coster.join()
            self._flush_stop.set()
            for thread in flushers:
                thread.join()
        finally:
            self._stop_metrics_server()

        if self._errors:
            raise self._errors[0]

    def stop(self) -> None:
        self.stop_event.set()
