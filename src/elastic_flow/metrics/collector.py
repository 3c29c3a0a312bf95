"""
Metrics collector for the execution engine.
Collects and manages Prometheus metrics.
"""

from typing import Dict, Optional

from loguru import logger
from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)


class MetricsCollector:
    """
    Central metrics collector for workflow executions.

    Manages Prometheus metrics including counters, gauges, and histograms.
    """

    def __init__(
        self,
        engine_name: str = "elastic-flow",
        environment: str = "development",
        registry: Optional[CollectorRegistry] = None,
        additional_labels: Optional[Dict[str, str]] = None,
    ):
        """
        Initialize metrics collector.

        Args:
            engine_name: Name of the engine instance
            environment: Environment name (development, production, etc.)
            registry: Prometheus registry (creates new if None)
            additional_labels: Extra constant labels applied to every metric
        """
        self.engine_name = engine_name
        self.environment = environment
        self.registry = registry or CollectorRegistry()

        self._counters: Dict[str, Counter] = {}
        self._gauges: Dict[str, Gauge] = {}
        self._histograms: Dict[str, Histogram] = {}

        # Default labels applied to all metrics
        self._default_labels = {
            "engine_name": engine_name,
            "environment": environment,
            **(additional_labels or {}),
        }

        self._init_execution_metrics()
        self._init_node_metrics()
        self._init_recovery_metrics()
        self._init_resource_metrics()

        logger.debug(f"MetricsCollector initialized for engine '{engine_name}'")

    def _init_execution_metrics(self) -> None:
        """Initialize workflow execution metrics."""
        self._create_counter(
            name="elastic_flow_executions_total",
            documentation="Total workflow executions by terminal status",
            labelnames=["status"],
        )
        self._create_histogram(
            name="elastic_flow_execution_duration_seconds",
            documentation="Workflow execution duration in seconds",
            labelnames=["status"],
            buckets=(0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 300.0, 900.0, 1800.0),
        )
        self._create_gauge(
            name="elastic_flow_active_executions",
            documentation="Number of executions currently running",
        )

    def _init_node_metrics(self) -> None:
        """Initialize node execution metrics."""
        self._create_counter(
            name="elastic_flow_node_executions_total",
            documentation="Total node executions by status",
            labelnames=["node_type", "status"],
        )
        self._create_histogram(
            name="elastic_flow_node_duration_seconds",
            documentation="Node execution duration in seconds",
            labelnames=["node_type"],
        )
        self._create_counter(
            name="elastic_flow_node_retries_total",
            documentation="Total node retries by error code",
            labelnames=["error_code"],
        )

    def _init_recovery_metrics(self) -> None:
        """Initialize recovery and optimization metrics."""
        self._create_counter(
            name="elastic_flow_recovery_actions_total",
            documentation="Recovery actions taken by type",
            labelnames=["action"],
        )
        self._create_counter(
            name="elastic_flow_optimization_suggestions_total",
            documentation="Optimization suggestions produced by category",
            labelnames=["category"],
        )
        self._create_counter(
            name="elastic_flow_optimizations_applied_total",
            documentation="Optimization suggestions applied by category",
            labelnames=["category"],
        )

    def _init_resource_metrics(self) -> None:
        """Initialize resource pool metrics."""
        self._create_gauge(
            name="elastic_flow_allocated_resources",
            documentation="Resources currently allocated from the shared pool",
            labelnames=["resource"],
        )
        self._create_counter(
            name="elastic_flow_scaling_events_total",
            documentation="Scaling state transitions by direction",
            labelnames=["direction"],
        )

    def _create_counter(
        self,
        name: str,
        documentation: str,
        labelnames: Optional[list] = None,
    ) -> Counter:
        """Create and register a counter metric."""
        if name in self._counters:
            return self._counters[name]

        all_labelnames = list(self._default_labels.keys())
        if labelnames:
            all_labelnames.extend(labelnames)

        counter = Counter(
            name,
            documentation,
            labelnames=all_labelnames,
            registry=self.registry,
        )

        self._counters[name] = counter
        return counter

    def _create_gauge(
        self,
        name: str,
        documentation: str,
        labelnames: Optional[list] = None,
    ) -> Gauge:
        """Create and register a gauge metric."""
        if name in self._gauges:
            return self._gauges[name]

        all_labelnames = list(self._default_labels.keys())
        if labelnames:
            all_labelnames.extend(labelnames)

        gauge = Gauge(
            name,
            documentation,
            labelnames=all_labelnames,
            registry=self.registry,
        )

        self._gauges[name] = gauge
        return gauge

    def _create_histogram(
        self,
        name: str,
        documentation: str,
        labelnames: Optional[list] = None,
        buckets: tuple = (0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
    ) -> Histogram:
        """Create and register a histogram metric."""
        if name in self._histograms:
            return self._histograms[name]

        all_labelnames = list(self._default_labels.keys())
        if labelnames:
            all_labelnames.extend(labelnames)

        histogram = Histogram(
            name,
            documentation,
            labelnames=all_labelnames,
            buckets=buckets,
            registry=self.registry,
        )

        self._histograms[name] = histogram
        return histogram

    def increment_counter(
        self,
        name: str,
        value: float = 1.0,
        labels: Optional[Dict[str, str]] = None,
    ) -> None:
        """
        Increment a counter metric.

        Args:
            name: Metric name
            value: Value to increment by (default: 1.0)
            labels: Additional labels (beyond default labels)
        """
        if name not in self._counters:
            logger.warning(f"Counter '{name}' not initialized, skipping increment")
            return

        try:
            all_labels = {**self._default_labels, **(labels or {})}
            self._counters[name].labels(**all_labels).inc(value)
        except Exception as e:
            logger.error(f"Failed to increment counter '{name}': {e}")

    def set_gauge(
        self,
        name: str,
        value: float,
        labels: Optional[Dict[str, str]] = None,
    ) -> None:
        """Set a gauge metric value."""
        if name not in self._gauges:
            logger.warning(f"Gauge '{name}' not initialized, skipping set")
            return

        try:
            all_labels = {**self._default_labels, **(labels or {})}
            self._gauges[name].labels(**all_labels).set(value)
        except Exception as e:
            logger.error(f"Failed to set gauge '{name}': {e}")

    def observe_histogram(
        self,
        name: str,
        value: float,
        labels: Optional[Dict[str, str]] = None,
    ) -> None:
        """Observe a value in a histogram metric."""
        if name not in self._histograms:
            logger.warning(f"Histogram '{name}' not initialized, skipping observation")
            return

        try:
            all_labels = {**self._default_labels, **(labels or {})}
            self._histograms[name].labels(**all_labels).observe(value)
        except Exception as e:
            logger.error(f"Failed to observe histogram '{name}': {e}")

    def record_execution(self, status: str, duration: float) -> None:
        """
        Record a finished workflow execution.

        Args:
            status: Terminal status (completed, failed, cancelled)
            duration: Wall-clock duration in seconds
        """
        self.increment_counter(
            "elastic_flow_executions_total", labels={"status": status}
        )
        self.observe_histogram(
            "elastic_flow_execution_duration_seconds",
            duration,
            labels={"status": status},
        )

    def set_active_executions(self, count: int) -> None:
        self.set_gauge("elastic_flow_active_executions", count)

    def record_node_execution(
        self, node_type: str, status: str, duration: Optional[float] = None
    ) -> None:
        """Record a node reaching completed, failed or skipped."""
        self.increment_counter(
            "elastic_flow_node_executions_total",
            labels={"node_type": node_type, "status": status},
        )
        if duration is not None:
            self.observe_histogram(
                "elastic_flow_node_duration_seconds",
                duration,
                labels={"node_type": node_type},
            )

    def record_retry(self, error_code: str) -> None:
        self.increment_counter(
            "elastic_flow_node_retries_total", labels={"error_code": error_code}
        )

    def record_recovery_action(self, action: str) -> None:
        self.increment_counter(
            "elastic_flow_recovery_actions_total", labels={"action": action}
        )

    def record_optimization_suggestion(self, category: str, applied: bool = False) -> None:
        name = (
            "elastic_flow_optimizations_applied_total"
            if applied
            else "elastic_flow_optimization_suggestions_total"
        )
        self.increment_counter(name, labels={"category": category})

    def set_allocated_resources(self, memory: float, cpu: float, storage: float) -> None:
        """Publish the pool's current allocation totals."""
        self.set_gauge("elastic_flow_allocated_resources", memory, {"resource": "memory"})
        self.set_gauge("elastic_flow_allocated_resources", cpu, {"resource": "cpu"})
        self.set_gauge("elastic_flow_allocated_resources", storage, {"resource": "storage"})

    def record_scaling_event(self, direction: str) -> None:
        self.increment_counter(
            "elastic_flow_scaling_events_total", labels={"direction": direction}
        )

    def serialize(self) -> bytes:
        """
        Serialize all metrics in Prometheus text format.

        Returns:
            Metrics in Prometheus exposition format
        """
        return generate_latest(self.registry)

    def get_metric_count(self) -> int:
        return len(self._counters) + len(self._gauges) + len(self._histograms)
