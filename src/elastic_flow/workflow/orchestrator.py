"""
Execution Orchestrator - public entry point of the engine.

Accepts workflow definitions, builds the execution graph, reserves resources,
optionally optimizes the graph and hands it to the scheduler. Every execution
is tracked in an ``ExecutionArena`` from submission until it is evicted a
grace period after reaching a terminal status. Lifecycle and node events are
published on the event bus; counters and durations go to Prometheus.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from loguru import logger

from ..bus import EventBus, EventType
from ..config import (
    EngineSettings,
    ExecutionConfiguration,
    OptimizationLevel,
    merge_with_default_config,
)
from ..errors import (
    ErrorCode,
    ExecutionCancelledError,
    ExecutionError,
    ExecutionNotFoundError,
    ExecutionStartupError,
    ExecutionStateError,
    GraphError,
    OptimizationError,
    ResourceAllocationError,
    WorkflowFailedError,
)
from ..metrics import MetricsCollector
from .channels import DataChannelManager
from .dag_builder import DAGBuilder
from .definition import WorkflowDefinition
from .models import (
    ExecutionContext,
    ExecutionNode,
    ExecutionProgress,
    ExecutionStatus,
    ImpactLevel,
    OptimizationSuggestion,
    ResourceAllocation,
    ScalingStatus,
)
from .node_executor import NodeExecutor
from .optimizer import OptimizationAnalyzer
from .recovery import RecoveryManager
from .registry import BlockRegistryClient
from .resources import ResourceManager
from .scheduler import RunControl, Scheduler, SchedulerCallbacks

WorkflowInput = Union[WorkflowDefinition, Dict[str, Any]]
ConfigInput = Union[ExecutionConfiguration, Dict[str, Any], None]


@dataclass
class ExecutionRecord:
    """Everything the orchestrator tracks for one execution."""

    context: ExecutionContext
    progress: ExecutionProgress
    control: RunControl = field(default_factory=RunControl)
    task: Optional[asyncio.Task] = None
    done: asyncio.Event = field(default_factory=asyncio.Event)
    results: Dict[str, Any] = field(default_factory=dict)
    error: Optional[ExecutionError] = None
    finalized: bool = False
    started_at: float = field(default_factory=time.monotonic)


class ExecutionArena:
    """Store of execution records keyed by execution id.

    Records are inserted on submission and evicted explicitly or by a timer
    scheduled once the execution reaches a terminal status.
    """

    def __init__(self):
        self._records: Dict[str, ExecutionRecord] = {}
        self._eviction_handles: Dict[str, asyncio.TimerHandle] = {}

    def insert(self, record: ExecutionRecord) -> None:
        self._records[record.context.id] = record

    def get(self, execution_id: str) -> Optional[ExecutionRecord]:
        return self._records.get(execution_id)

    def evict(self, execution_id: str) -> Optional[ExecutionRecord]:
        handle = self._eviction_handles.pop(execution_id, None)
        if handle is not None:
            handle.cancel()
        return self._records.pop(execution_id, None)

    def schedule_eviction(
        self,
        execution_id: str,
        delay: float,
        on_evict: Optional[Callable[[str], None]] = None,
    ) -> None:
        def _evict() -> None:
            self._eviction_handles.pop(execution_id, None)
            if self._records.pop(execution_id, None) is not None:
                logger.debug(f"Evicted execution {execution_id}")
                if on_evict is not None:
                    on_evict(execution_id)

        previous = self._eviction_handles.pop(execution_id, None)
        if previous is not None:
            previous.cancel()
        loop = asyncio.get_running_loop()
        self._eviction_handles[execution_id] = loop.call_later(delay, _evict)

    def records(self) -> List[ExecutionRecord]:
        return list(self._records.values())

    def clear(self) -> None:
        for handle in self._eviction_handles.values():
            handle.cancel()
        self._eviction_handles.clear()
        self._records.clear()

    def __contains__(self, execution_id: str) -> bool:
        return execution_id in self._records

    def __len__(self) -> int:
        return len(self._records)


class _ProgressCallbacks(SchedulerCallbacks):
    """Feeds scheduler notifications into progress, events and metrics."""

    def __init__(self, orchestrator: "ExecutionOrchestrator", record: ExecutionRecord):
        self.orchestrator = orchestrator
        self.record = record

    async def on_node_start(self, context: ExecutionContext, node: ExecutionNode) -> None:
        await self.orchestrator._emit_node_event(EventType.NODE_STARTED, context, node)

    async def on_node_complete(
        self, context: ExecutionContext, node: ExecutionNode, result: Any
    ) -> None:
        metrics = self.orchestrator.metrics
        if metrics is not None:
            metrics.record_node_execution(
                node.type, "completed", node.metrics.duration_ms / 1000
            )
        await self.orchestrator._emit_node_event(
            EventType.NODE_COMPLETED,
            context,
            node,
            {"duration_ms": node.metrics.duration_ms},
        )

    async def on_node_error(
        self, context: ExecutionContext, node: ExecutionNode, error: ExecutionError
    ) -> None:
        self.record.progress.record_error(error)
        metrics = self.orchestrator.metrics
        if metrics is not None:
            metrics.record_node_execution(
                node.type, "failed", node.metrics.duration_ms / 1000
            )
        await self.orchestrator._emit_node_event(
            EventType.NODE_FAILED,
            context,
            node,
            {"error": error.to_dict()},
        )

    async def on_node_retry(
        self,
        context: ExecutionContext,
        node: ExecutionNode,
        error: ExecutionError,
        delay_ms: int,
    ) -> None:
        metrics = self.orchestrator.metrics
        if metrics is not None:
            metrics.record_retry(error.code.value)
        await self.orchestrator._emit_node_event(
            EventType.NODE_RETRYING,
            context,
            node,
            {"retry_count": node.retry_count, "delay_ms": delay_ms, "code": error.code.value},
        )

    async def on_recovery_attempt(
        self,
        context: ExecutionContext,
        node: ExecutionNode,
        error: ExecutionError,
        applied_fix: Optional[str],
    ) -> None:
        await self.orchestrator._emit_node_event(
            EventType.RECOVERY_ATTEMPTED,
            context,
            node,
            {
                "code": error.code.value,
                "attempt": error.attempt,
                "applied_fix": applied_fix,
                "suggestions": [s.action for s in error.suggestions],
                "alternative_paths": [p.type.value for p in error.alternative_paths],
            },
        )

    async def on_node_skipped(
        self, context: ExecutionContext, node: ExecutionNode, reason: str
    ) -> None:
        metrics = self.orchestrator.metrics
        if metrics is not None:
            metrics.record_node_execution(node.type, "skipped")
        await self.orchestrator._emit_node_event(
            EventType.NODE_SKIPPED, context, node, {"reason": reason}
        )

    async def on_progress(self, context: ExecutionContext, counts: Dict[str, int]) -> None:
        progress = self.record.progress
        progress.completed_nodes = counts["completed"]
        progress.failed_nodes = counts["failed"]
        progress.running_nodes = counts["running"]
        progress.skipped_nodes = counts["skipped"]

        total = max(progress.total_nodes, 1)
        finished = progress.completed_nodes + progress.failed_nodes + progress.skipped_nodes
        progress.progress = finished / total * 100

        elapsed = time.monotonic() - self.record.started_at
        if finished:
            remaining = progress.total_nodes - finished
            progress.estimated_time_remaining = elapsed * 1000 / finished * remaining
        progress.items_processed = progress.completed_nodes
        progress.items_per_second = progress.completed_nodes / elapsed if elapsed > 0 else 0.0
        progress.last_update = datetime.utcnow()

        await self.orchestrator._publish(
            EventType.EXECUTION_PROGRESS,
            context,
            {"progress": progress.progress, "completed_nodes": progress.completed_nodes},
        )


class ExecutionOrchestrator:
    """
    Runs workflow executions end to end.

    Provides:
    - Graph building, resource allocation and optimization per execution
    - Asynchronous execution with pause, resume and cancel
    - Progress snapshots that reflect errors while retries are in flight
    - Exactly-once cleanup of resources for every terminal execution
    """

    def __init__(
        self,
        registry: BlockRegistryClient,
        executor: NodeExecutor,
        settings: Optional[EngineSettings] = None,
        resource_manager: Optional[ResourceManager] = None,
        channel_manager: Optional[DataChannelManager] = None,
        recovery_manager: Optional[RecoveryManager] = None,
        optimizer: Optional[OptimizationAnalyzer] = None,
        event_bus: Optional[EventBus] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.settings = settings or EngineSettings()
        self.metrics = metrics
        if self.metrics is None and self.settings.metrics.enabled:
            self.metrics = MetricsCollector(
                engine_name=self.settings.metrics.engine_name,
                environment=self.settings.environment,
                additional_labels=self.settings.metrics.additional_labels,
            )

        self.dag_builder = DAGBuilder(registry)
        self.resource_manager = resource_manager or ResourceManager(self.settings.capacity)
        if self.resource_manager.on_scaling is None:
            self.resource_manager.on_scaling = self._on_scaling
        self.channel_manager = channel_manager or DataChannelManager()
        self.recovery_manager = recovery_manager or RecoveryManager(self.metrics)
        self.optimizer = optimizer or OptimizationAnalyzer(self.metrics)
        self.event_bus = event_bus or EventBus()
        self.scheduler = Scheduler(
            executor,
            recovery=self.recovery_manager,
            channels=self.channel_manager,
            settings=self.settings.scheduler,
        )

        self.arena = ExecutionArena()

        self.execution_stats = {
            "total_executions": 0,
            "successful_executions": 0,
            "failed_executions": 0,
            "cancelled_executions": 0,
            "average_execution_time": 0.0,
            "total_nodes_executed": 0,
        }

        logger.info("ExecutionOrchestrator initialized")

    async def execute_workflow(
        self,
        definition: WorkflowInput,
        config: ConfigInput = None,
        caller_id: Optional[str] = None,
    ) -> str:
        """
        Start executing a workflow and return its execution id immediately.

        Args:
            definition: Workflow definition or its mapping form
            config: Full or partial execution configuration; defaults to the
                engine's configured execution settings
            caller_id: Identity of the submitting user, stored on the context

        Raises:
            ExecutionStartupError: If the graph cannot be built or no
                resources can be allocated
        """
        if not self.event_bus.running:
            await self.event_bus.start()

        configuration = (
            merge_with_default_config(config)
            if config is not None
            else self.settings.execution.model_copy(deep=True)
        )
        execution_id = str(uuid.uuid4())

        try:
            dag = self.dag_builder.build(definition, configuration)
        except GraphError as e:
            logger.error(f"Failed to build execution graph: {e.message}")
            raise ExecutionStartupError(
                f"Failed to build execution graph: {e.message}", details=e.details
            ) from e

        context = ExecutionContext(
            id=execution_id,
            workflow_id=dag.workflow_id,
            configuration=configuration,
            user_id=caller_id,
            status=ExecutionStatus.INITIALIZING,
            metadata={
                "dag": dag,
                "node_count": len(dag.nodes),
                "estimated_duration": dag.estimated_duration,
            },
        )

        try:
            allocation = await self.resource_manager.allocate(
                dag.resource_requirements, execution_id, configuration.memory_limit
            )
        except ResourceAllocationError as e:
            raise ExecutionStartupError(
                f"Failed to allocate resources: {e.message}", details=e.details
            ) from e
        context.allocated_resources = allocation
        self._update_resource_metrics()

        record = ExecutionRecord(
            context=context,
            progress=ExecutionProgress(
                execution_id=execution_id,
                workflow_id=dag.workflow_id,
                total_nodes=len(dag.nodes),
            ),
        )
        self.arena.insert(record)

        await self._optimize(context)

        self.resource_manager.start_monitoring(
            execution_id, allocation, configuration.resource_scaling
        )

        context.status = ExecutionStatus.RUNNING
        record.progress.current_phase = "executing"
        self.recovery_manager.save_working_state(context)
        self.execution_stats["total_executions"] += 1
        self._update_active_metric()

        await self._publish(
            EventType.EXECUTION_STARTED,
            context,
            {
                "workflow_id": context.workflow_id,
                "total_nodes": len(dag.nodes),
                "estimated_duration": dag.estimated_duration,
            },
        )

        record.task = asyncio.create_task(self._run_execution(record))
        logger.info(
            f"Started execution {execution_id} of workflow {dag.workflow_id} "
            f"({len(dag.nodes)} nodes)"
        )
        return execution_id

    def get_execution_progress(self, execution_id: str) -> Optional[ExecutionProgress]:
        """Live progress of an execution, or None once it is unknown or evicted."""
        record = self.arena.get(execution_id)
        if record is None:
            return None
        return record.progress

    def get_execution_context(self, execution_id: str) -> Optional[ExecutionContext]:
        record = self.arena.get(execution_id)
        if record is None:
            return None
        return record.context

    def get_execution_results(self, execution_id: str) -> Dict[str, Any]:
        return dict(self._get_record(execution_id).results)

    async def cancel_execution(self, execution_id: str) -> bool:
        """
        Cancel an execution and wait for it to wind down.

        Returns:
            False if the execution had already finished
        """
        record = self._get_record(execution_id)
        if record.context.status.is_terminal:
            return False

        logger.info(f"Cancelling execution {execution_id}")
        record.control.cancel()
        await record.done.wait()
        return True

    async def pause_execution(self, execution_id: str) -> None:
        record = self._get_record(execution_id)
        context = record.context
        if context.status != ExecutionStatus.RUNNING:
            raise ExecutionStateError(
                f"Cannot pause execution {execution_id} in status {context.status.value}"
            )

        record.control.pause()
        context.status = ExecutionStatus.PAUSED
        record.progress.current_phase = "paused"
        await self._publish(EventType.EXECUTION_PAUSED, context, {})
        logger.info(f"Paused execution {execution_id}")

    async def resume_execution(self, execution_id: str) -> None:
        record = self._get_record(execution_id)
        context = record.context
        if context.status != ExecutionStatus.PAUSED:
            raise ExecutionStateError(
                f"Cannot resume execution {execution_id} in status {context.status.value}"
            )

        context.status = ExecutionStatus.RUNNING
        record.progress.current_phase = "executing"
        record.control.resume()
        await self._publish(EventType.EXECUTION_RESUMED, context, {})
        logger.info(f"Resumed execution {execution_id}")

    def get_optimization_suggestions(
        self, definition: WorkflowInput, config: ConfigInput = None
    ) -> List[OptimizationSuggestion]:
        """Analyze a workflow without executing it."""
        configuration = merge_with_default_config(config) if config is not None else None
        dag = self.dag_builder.build(definition, configuration)
        return self.optimizer.analyze(dag)

    async def apply_optimization(
        self, execution_id: str, suggestion_id: str
    ) -> OptimizationSuggestion:
        """Apply an attached suggestion to a live execution.

        Raises:
            ExecutionNotFoundError: If the execution is unknown
            OptimizationError: If the suggestion is unknown or manual-only
        """
        record = self._get_record(execution_id)
        suggestion = self.optimizer.apply(record.context, suggestion_id)
        await self._publish(
            EventType.OPTIMIZATION_APPLIED,
            record.context,
            {"suggestion_id": suggestion.id, "category": suggestion.category.value},
        )
        return suggestion

    async def wait_for_completion(
        self, execution_id: str, timeout: Optional[float] = None
    ) -> ExecutionContext:
        """Wait until an execution reaches a terminal status."""
        record = self._get_record(execution_id)
        await asyncio.wait_for(record.done.wait(), timeout=timeout)
        return record.context

    def list_executions(self) -> List[Dict[str, Any]]:
        return [
            {
                "execution_id": record.context.id,
                "workflow_id": record.context.workflow_id,
                "status": record.context.status.value,
                "progress": record.progress.progress,
                "start_time": record.context.start_time.isoformat(),
            }
            for record in self.arena.records()
        ]

    def get_stats(self) -> Dict[str, Any]:
        """Get execution statistics."""
        active = sum(
            1 for record in self.arena.records() if not record.context.status.is_terminal
        )
        return {
            **self.execution_stats,
            "active_executions": active,
            "tracked_executions": len(self.arena),
            "scheduler": self.scheduler.get_stats(),
            "resources": self.resource_manager.stats.copy(),
            "recovery": self.recovery_manager.get_stats(),
            "channels": self.channel_manager.get_stats(),
        }

    async def shutdown(self) -> None:
        """Cancel running executions and release every resource."""
        logger.info("Shutting down execution orchestrator")
        for record in self.arena.records():
            if not record.context.status.is_terminal:
                record.control.cancel()
        for record in self.arena.records():
            if record.task is not None:
                await record.done.wait()

        await self.resource_manager.shutdown()
        self.arena.clear()
        await self.event_bus.stop()

    # Internal implementation methods

    def _get_record(self, execution_id: str) -> ExecutionRecord:
        record = self.arena.get(execution_id)
        if record is None:
            raise ExecutionNotFoundError(f"Execution not found: {execution_id}")
        return record

    async def _optimize(self, context: ExecutionContext) -> None:
        level = context.configuration.optimization_level
        if level == OptimizationLevel.NONE:
            return

        context.status = ExecutionStatus.OPTIMIZING
        suggestions = self.optimizer.analyze(context.dag)
        context.metadata["optimizations"] = suggestions

        if level == OptimizationLevel.AGGRESSIVE:
            to_apply = [s for s in suggestions if s.auto_applicable]
        elif level == OptimizationLevel.ADAPTIVE:
            to_apply = [
                s for s in suggestions if s.auto_applicable and s.impact == ImpactLevel.HIGH
            ]
        else:
            to_apply = []

        for suggestion in to_apply:
            try:
                self.optimizer.apply(context, suggestion.id)
            except OptimizationError as e:
                logger.warning(f"Skipping optimization {suggestion.id}: {e.message}")
                continue
            await self._publish(
                EventType.OPTIMIZATION_APPLIED,
                context,
                {"suggestion_id": suggestion.id, "category": suggestion.category.value},
            )

    async def _run_execution(self, record: ExecutionRecord) -> None:
        context = record.context
        timeout_ms = context.configuration.timeout_ms
        callbacks = _ProgressCallbacks(self, record)

        try:
            record.results = await asyncio.wait_for(
                self.scheduler.run(context, context.dag, callbacks, control=record.control),
                timeout=timeout_ms / 1000,
            )
            context.metadata["results"] = record.results
            status = ExecutionStatus.COMPLETED
        except ExecutionCancelledError:
            status = ExecutionStatus.CANCELLED
        except asyncio.TimeoutError:
            logger.error(f"Execution {context.id} timed out after {timeout_ms}ms")
            await self._handle_execution_failure(
                record,
                ExecutionError(
                    code=ErrorCode.TIMEOUT,
                    message=f"Execution exceeded its timeout of {timeout_ms}ms",
                    recoverable=False,
                ),
            )
            status = ExecutionStatus.FAILED
        except WorkflowFailedError as e:
            error = e.errors[0] if e.errors else ExecutionError(ErrorCode.EXECUTION_ERROR, e.message)
            await self._handle_execution_failure(record, error)
            status = ExecutionStatus.FAILED
        except ExecutionError as e:
            await self._handle_execution_failure(record, e)
            status = ExecutionStatus.FAILED
        except Exception as e:
            logger.exception(f"Execution {context.id} failed: {e}")
            await self._handle_execution_failure(record, ExecutionError.from_exception(e))
            status = ExecutionStatus.FAILED

        await self._finalize(record, status)

    async def _handle_execution_failure(
        self, record: ExecutionRecord, error: ExecutionError
    ) -> None:
        context = record.context
        if not error.suggestions:
            error.suggestions = self.recovery_manager.generate_suggestions(context, error)
        record.error = error
        record.progress.record_error(error)

        if context.configuration.error_handling.enable_rollback:
            self.recovery_manager.rollback_to_last_working_state(context)

        logger.error(f"Execution {context.id} failed: [{error.code.value}] {error.message}")

    async def _finalize(self, record: ExecutionRecord, status: ExecutionStatus) -> None:
        """Move an execution to a terminal status; runs once per execution."""
        if record.finalized:
            return
        record.finalized = True

        context = record.context
        context.status = status
        context.end_time = datetime.utcnow()
        record.progress.current_phase = status.value
        if status == ExecutionStatus.COMPLETED:
            record.progress.progress = 100.0
            record.progress.estimated_time_remaining = 0.0
        record.progress.last_update = context.end_time

        await self.resource_manager.stop_monitoring(context.id)
        if context.allocated_resources is not None:
            await self.resource_manager.release(context.allocated_resources)
        self._update_resource_metrics()

        duration = time.monotonic() - record.started_at
        self._update_execution_stats(record, status, duration)
        if self.metrics is not None:
            self.metrics.record_execution(status.value, duration)
        self._update_active_metric()

        event_type = {
            ExecutionStatus.COMPLETED: EventType.EXECUTION_COMPLETED,
            ExecutionStatus.CANCELLED: EventType.EXECUTION_CANCELLED,
        }.get(status, EventType.EXECUTION_FAILED)
        await self._publish(
            event_type,
            context,
            {
                "status": status.value,
                "duration": duration,
                "completed_nodes": record.progress.completed_nodes,
                "failed_nodes": record.progress.failed_nodes,
                "error": record.error.to_dict() if record.error else None,
            },
        )

        record.done.set()
        self.arena.schedule_eviction(
            context.id, self.settings.eviction_grace_period, self.recovery_manager.clear
        )
        logger.info(f"Execution {context.id} finished with status {status.value} in {duration:.2f}s")

    def _update_execution_stats(
        self, record: ExecutionRecord, status: ExecutionStatus, duration: float
    ) -> None:
        if status == ExecutionStatus.COMPLETED:
            self.execution_stats["successful_executions"] += 1
        elif status == ExecutionStatus.CANCELLED:
            self.execution_stats["cancelled_executions"] += 1
        else:
            self.execution_stats["failed_executions"] += 1

        finished = (
            self.execution_stats["successful_executions"]
            + self.execution_stats["failed_executions"]
            + self.execution_stats["cancelled_executions"]
        )
        prev_avg = self.execution_stats["average_execution_time"]
        self.execution_stats["average_execution_time"] = (
            prev_avg * (finished - 1) + duration
        ) / finished
        self.execution_stats["total_nodes_executed"] += record.progress.completed_nodes

    def _update_active_metric(self) -> None:
        if self.metrics is None:
            return
        active = sum(
            1 for record in self.arena.records() if not record.context.status.is_terminal
        )
        self.metrics.set_active_executions(active)

    def _update_resource_metrics(self) -> None:
        if self.metrics is None:
            return
        in_use = self.resource_manager.get_system_usage()["in_use"]
        self.metrics.set_allocated_resources(in_use["memory"], in_use["cpu"], in_use["storage"])

    async def _on_scaling(self, allocation: ResourceAllocation, status: ScalingStatus) -> None:
        if self.metrics is not None:
            self.metrics.record_scaling_event(status.state.value)
        await self.event_bus.publish_data(
            EventType.RESOURCE_SCALING,
            {
                "execution_id": allocation.execution_id,
                "scaling": status.to_dict(),
                "utilization": allocation.utilization.to_dict(),
            },
            source="resource_manager",
            correlation_id=allocation.execution_id,
        )

    # Event publishing

    async def _publish(
        self, event_type: EventType, context: ExecutionContext, data: Dict[str, Any]
    ) -> None:
        await self.event_bus.publish_data(
            event_type,
            {"execution_id": context.id, **data},
            source="orchestrator",
            correlation_id=context.id,
        )

    async def _emit_node_event(
        self,
        event_type: EventType,
        context: ExecutionContext,
        node: ExecutionNode,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self.event_bus.publish_data(
            event_type,
            {
                "execution_id": context.id,
                "node_id": node.id,
                "block_id": node.block_id,
                "status": node.status.value,
                **(extra or {}),
            },
            source="scheduler",
            correlation_id=context.id,
        )
