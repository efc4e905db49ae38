"""
Cost exporters.

Exporters receive cost records from the calculation loop and forward them to
a metrics backend, a durable ledger or another exporter.
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Dict, Optional, Sequence, TextIO

from ..storage.db import DEFAULT_DB_PATH
from ..storage.models import CostRecord, CostRecordKey
from ..storage.repository import insert_cost_record
from .metrics import CostMetrics

logger = logging.getLogger(__name__)


class CostExporter(ABC):
    """Destination for cost records."""

    name = "exporter"

    @abstractmethod
    def export_cost(self, record: CostRecord) -> None:
        """Emit a single cost record."""


class PrometheusCostExporter(CostExporter):
    """Accumulates cost records into the Prometheus cost counter."""

    name = "prometheus"

    def __init__(self, metrics: CostMetrics):
        self.metrics = metrics

    def export_cost(self, record: CostRecord) -> None:
        self.metrics.record_cost(record.kind, record.strategy, record.dimensions, record.value)


class SqliteCostExporter(CostExporter):
    """Appends cost records to the SQLite cost ledger.

    The schema must already exist, see
    :func:`kube_cost_guard.storage.repository.initialize_schema`.
    """

    name = "sqlite"

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def export_cost(self, record: CostRecord) -> None:
        insert_cost_record(record, self.db_path)


class JsonLinesCostExporter(CostExporter):
    """Writes each record's wire representation as one JSON line."""

    name = "jsonl"

    def __init__(self, stream: TextIO):
        self.stream = stream
        self._lock = threading.Lock()

    def export_cost(self, record: CostRecord) -> None:
        line = json.dumps(record.to_dict(), sort_keys=True)
        with self._lock:
            self.stream.write(line + "\n")
            self.stream.flush()


class BufferingCostExporter(CostExporter):
    """Merges similarly dimensioned records locally before forwarding them.

    Records sharing a :class:`CostRecordKey` are combined: values are summed
    and the newest end time is kept. On every flush interval the buffer is
    swapped for an empty one and each merged record is forwarded to
    ``next_exporter``. Forwarding happens outside the lock so slow downstream
    I/O never blocks ingestion.

    A downstream failure drops the record, logs it and increments
    ``export_errors_total``. There is no retry queue.
    """

    name = "buffering"

    def __init__(
        self,
        interval: timedelta,
        next_exporter: CostExporter,
        metrics: Optional[CostMetrics] = None,
    ):
        if interval <= timedelta(0):
            raise ValueError("flush interval must be > 0")
        self.interval = interval
        self.next_exporter = next_exporter
        self.metrics = metrics
        self._lock = threading.Lock()
        self._buffer: Dict[CostRecordKey, CostRecord] = {}
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def export_cost(self, record: CostRecord) -> None:
        """Merge ``record`` into the buffer under its key."""
        key = record.key()
        with self._lock:
            existing = self._buffer.get(key)
            self._buffer[key] = existing.merge(record) if existing is not None else record

    def buffered(self) -> Dict[CostRecordKey, CostRecord]:
        """Snapshot of the records waiting for the next flush."""
        with self._lock:
            return dict(self._buffer)

    def flush(self) -> int:
        """Forward all buffered records downstream.

        Returns:
            Number of records successfully forwarded
        """
        with self._lock:
            pending, self._buffer = self._buffer, {}

        if pending:
            logger.debug("flushing %d buffered cost records to %s", len(pending), self.next_exporter.name)

        forwarded = 0
        for record in pending.values():
            try:
                self.next_exporter.export_cost(record)
            except Exception:
                logger.exception("failed to export cost record to %s", self.next_exporter.name)
                if self.metrics is not None:
                    self.metrics.record_export_error(self.next_exporter.name)
                continue
            forwarded += 1
        return forwarded

    def start(self) -> None:
        """Start the background flush thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self.run, name=f"flush-{self.next_exporter.name}", daemon=True
        )
        self._thread.start()

    def run(self, stop_event: Optional[threading.Event] = None) -> None:
        """Flush on every interval until stopped, then flush once more."""
        stop = stop_event or self._stop_event
        logger.debug("starting background flush loop")
        seconds = self.interval.total_seconds()
        while not (stop.wait(seconds) or self._stop_event.is_set()):
            self.flush()
        self.flush()
        logger.debug("background flush loop completed")

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the background flush thread, flushing whatever remains."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        else:
            self.flush()


class MultiCostExporter(CostExporter):
    """Fans a record out to several exporters, isolating their failures."""

    name = "multi"

    def __init__(self, exporters: Sequence[CostExporter], metrics: Optional[CostMetrics] = None):
        self.exporters = list(exporters)
        self.metrics = metrics

    def export_cost(self, record: CostRecord) -> None:
        for exporter in self.exporters:
            try:
                exporter.export_cost(record)
            except Exception:
                logger.exception("failed to export cost record to %s", exporter.name)
                if self.metrics is not None:
                    self.metrics.record_export_error(exporter.name)
