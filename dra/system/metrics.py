"""
Prometheus metrics for sync and refresh jobs.

Each engine owns an EngineMetrics instance with its own CollectorRegistry,
so several engines (and test fixtures) can coexist in one process.
"""

import logging

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest


logger = logging.getLogger(__name__)


class EngineMetrics:
    """Counters, histograms and gauges exported by the sync engine."""

    def __init__(self, registry: CollectorRegistry = None):
        self.registry = registry or CollectorRegistry()

        self.sync_runs_total = Counter(
            'dra_sync_runs_total',
            'Total sync runs by source type and terminal status',
            ['data_type', 'status'],
            registry=self.registry
        )

        self.sync_records_total = Counter(
            'dra_sync_records_total',
            'Records written to the unified store',
            ['data_type', 'outcome'],
            registry=self.registry
        )

        self.sync_duration = Histogram(
            'dra_sync_duration_seconds',
            'Sync run duration in seconds',
            ['data_type'],
            buckets=[1, 5, 15, 60, 300, 900, 3600],
            registry=self.registry
        )

        self.refresh_runs_total = Counter(
            'dra_refresh_runs_total',
            'Total data model refreshes by trigger and terminal status',
            ['triggered_by', 'status'],
            registry=self.registry
        )

        self.refresh_duration = Histogram(
            'dra_refresh_duration_seconds',
            'Data model refresh duration in seconds',
            buckets=[0.1, 0.5, 1, 5, 30, 120, 600],
            registry=self.registry
        )

        self.rate_limit_rejections_total = Counter(
            'dra_rate_limit_rejections_total',
            'Rate limiter acquisitions that timed out',
            ['limiter'],
            registry=self.registry
        )

        self.jobs_total = Counter(
            'dra_jobs_total',
            'Jobs processed by the worker pool',
            ['entity_type', 'outcome'],
            registry=self.registry
        )

        self.queue_depth = Gauge(
            'dra_job_queue_depth',
            'Jobs waiting in the queue',
            registry=self.registry
        )

    def record_sync(self, data_type: str, status: str, duration_seconds: float,
                    records_synced: int, records_failed: int) -> None:
        self.sync_runs_total.labels(data_type=data_type, status=status).inc()
        self.sync_duration.labels(data_type=data_type).observe(duration_seconds)
        if records_synced:
            self.sync_records_total.labels(data_type=data_type, outcome="synced").inc(records_synced)
        if records_failed:
            self.sync_records_total.labels(data_type=data_type, outcome="failed").inc(records_failed)

    def record_refresh(self, triggered_by: str, status: str, duration_seconds: float) -> None:
        self.refresh_runs_total.labels(triggered_by=triggered_by, status=status).inc()
        self.refresh_duration.observe(duration_seconds)

    def export(self) -> bytes:
        """Render metrics in the Prometheus text format."""
        return generate_latest(self.registry)
