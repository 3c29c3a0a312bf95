"""
Scheduler - drives one execution graph to completion.

Nodes move through ``PENDING -> RUNNING -> COMPLETED | FAILED``, with
``FAILED -> RETRYING -> PENDING`` while the retry policy allows it and
``PENDING -> SKIPPED`` when recovery routes around a failed upstream node.

The control loop never waits on a single node: every node runs as its own
task, and each tick the loop dispatches whatever is ready, then waits for
the first completion or the tick interval, whichever comes first.
"""

import asyncio
import time
from abc import ABC
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Set

from loguru import logger

from ..config import SchedulerSettings
from ..errors import (
    ExecutionCancelledError,
    ExecutionError,
    NodeTimeoutError,
    WorkflowFailedError,
)
from .channels import DataChannelManager
from .models import (
    AlternativePathType,
    ExecutionContext,
    ExecutionDAG,
    ExecutionNode,
    NodeExecutionStatus,
)
from .node_executor import NodeExecutor
from .recovery import RecoveryManager


class SchedulerCallbacks(ABC):
    """Typed progress interface injected into ``Scheduler.run``.

    Every hook is a no-op by default; subclasses override what they need.
    """

    async def on_node_start(self, context: ExecutionContext, node: ExecutionNode) -> None:
        pass

    async def on_node_complete(
        self, context: ExecutionContext, node: ExecutionNode, result: Any
    ) -> None:
        pass

    async def on_node_error(
        self, context: ExecutionContext, node: ExecutionNode, error: ExecutionError
    ) -> None:
        pass

    async def on_node_retry(
        self,
        context: ExecutionContext,
        node: ExecutionNode,
        error: ExecutionError,
        delay_ms: int,
    ) -> None:
        pass

    async def on_recovery_attempt(
        self,
        context: ExecutionContext,
        node: ExecutionNode,
        error: ExecutionError,
        applied_fix: Optional[str],
    ) -> None:
        pass

    async def on_node_skipped(
        self, context: ExecutionContext, node: ExecutionNode, reason: str
    ) -> None:
        pass

    async def on_progress(self, context: ExecutionContext, counts: Dict[str, int]) -> None:
        pass


class ResultStore:
    """Per-execution node results, written under a lock."""

    def __init__(self, on_write: Optional[Callable[[str, Any], None]] = None):
        self._results: Dict[str, Any] = {}
        self._lock = asyncio.Lock()
        self.on_write = on_write

    async def write(self, node_id: str, result: Any) -> None:
        async with self._lock:
            self._results[node_id] = result
            if self.on_write is not None:
                self.on_write(node_id, result)

    async def has_all(self, node_ids: Iterable[str]) -> bool:
        async with self._lock:
            return all(node_id in self._results for node_id in node_ids)

    def get(self, node_id: str, default: Any = None) -> Any:
        return self._results.get(node_id, default)

    def snapshot(self) -> Dict[str, Any]:
        return dict(self._results)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._results

    def __len__(self) -> int:
        return len(self._results)


class RunControl:
    """Pause and cancel switches for one run.

    Created by the caller so an execution can be paused or cancelled before
    the scheduler has picked it up.
    """

    def __init__(self):
        self._resumed = asyncio.Event()
        self._resumed.set()
        self.cancelled = False

    @property
    def paused(self) -> bool:
        return not self._resumed.is_set()

    def pause(self) -> None:
        self._resumed.clear()

    def resume(self) -> None:
        self._resumed.set()

    def cancel(self) -> None:
        self.cancelled = True
        # Wake a paused loop so it observes the flag
        self._resumed.set()

    async def wait_resumed(self) -> None:
        await self._resumed.wait()


@dataclass
class _RunState:
    context: ExecutionContext
    dag: ExecutionDAG
    callbacks: SchedulerCallbacks
    results: ResultStore
    control: RunControl
    queue: Deque[str] = field(default_factory=deque)
    running: Dict[str, asyncio.Task] = field(default_factory=dict)
    retry_timers: Dict[str, asyncio.Task] = field(default_factory=dict)
    effective_dependencies: Dict[str, Set[str]] = field(default_factory=dict)
    failures: Dict[str, ExecutionError] = field(default_factory=dict)
    routed: Set[str] = field(default_factory=set)


def _select_output(result: Any, output_name: str) -> Any:
    if isinstance(result, dict) and output_name in result:
        return result[output_name]
    return result


class Scheduler:
    """
    Runs execution graphs against a ``NodeExecutor``.

    One ``Scheduler`` serves many concurrent executions; per-execution
    state lives in a private run record keyed by execution id.
    """

    def __init__(
        self,
        executor: NodeExecutor,
        recovery: Optional[RecoveryManager] = None,
        channels: Optional[DataChannelManager] = None,
        settings: Optional[SchedulerSettings] = None,
    ):
        self.executor = executor
        self.recovery = recovery or RecoveryManager()
        self.channels = channels or DataChannelManager()
        self.settings = settings or SchedulerSettings()

        self._runs: Dict[str, _RunState] = {}

        self.stats = {
            "nodes_started": 0,
            "nodes_completed": 0,
            "nodes_failed": 0,
            "nodes_skipped": 0,
            "retries": 0,
        }

    async def run(
        self,
        context: ExecutionContext,
        dag: ExecutionDAG,
        callbacks: Optional[SchedulerCallbacks] = None,
        results: Optional[ResultStore] = None,
        control: Optional[RunControl] = None,
    ) -> Dict[str, Any]:
        """
        Execute every node of ``dag`` and collect exit-node results.

        Returns:
            Mapping of exit node id to its result

        Raises:
            ExecutionCancelledError: If the execution was cancelled
            WorkflowFailedError: If a node failed and was not routed around
            ExecutionError: If a node failed with a non-recoverable error
        """
        if context.id in self._runs:
            raise RuntimeError(f"Execution {context.id} is already running")

        state = _RunState(
            context=context,
            dag=dag,
            callbacks=callbacks if callbacks is not None else SchedulerCallbacks(),
            results=results if results is not None else ResultStore(),
            control=control if control is not None else RunControl(),
        )
        state.effective_dependencies = {
            node.id: set(dag.dependencies[node.id].dependencies) for node in dag.nodes
        }

        # Entry points first, then the rest in graph order
        entry_points = set(dag.entry_points)
        state.queue.extend(dag.entry_points)
        state.queue.extend(node.id for node in dag.nodes if node.id not in entry_points)

        for edge in dag.edges:
            self.channels.create_channel(self._channel_id(context, edge.id), edge)

        self._runs[context.id] = state
        logger.info(f"Starting DAG execution {context.id}: {len(dag.nodes)} nodes")

        try:
            return await self._run_loop(state)
        finally:
            # Only non-empty when the run itself was cancelled from outside
            for task in state.running.values():
                task.cancel()
            for timer in list(state.retry_timers.values()):
                timer.cancel()
            for edge in dag.edges:
                self.channels.close_channel(self._channel_id(context, edge.id))
            self._runs.pop(context.id, None)

    def pause(self, execution_id: str) -> bool:
        state = self._runs.get(execution_id)
        if state is None:
            return False
        state.control.pause()
        logger.info(f"Execution paused: {execution_id}")
        return True

    def resume(self, execution_id: str) -> bool:
        state = self._runs.get(execution_id)
        if state is None:
            return False
        state.control.resume()
        logger.info(f"Execution resumed: {execution_id}")
        return True

    def cancel(self, execution_id: str) -> bool:
        state = self._runs.get(execution_id)
        if state is None:
            return False
        state.control.cancel()
        logger.info(f"Execution cancelled: {execution_id}")
        return True

    def is_running(self, execution_id: str) -> bool:
        return execution_id in self._runs

    def is_paused(self, execution_id: str) -> bool:
        state = self._runs.get(execution_id)
        return state is not None and state.control.paused

    def get_stats(self) -> Dict[str, Any]:
        return {**self.stats, "active_runs": len(self._runs)}

    # Control loop

    async def _run_loop(self, state: _RunState) -> Dict[str, Any]:
        context, dag = state.context, state.dag
        nodes = dag.node_map()

        while state.queue or state.running or state.retry_timers:
            if state.control.cancelled:
                break

            if state.control.paused:
                await state.control.wait_resumed()
                if state.control.cancelled:
                    break

            dispatched = 0
            for _ in range(len(state.queue)):
                if state.control.cancelled:
                    break
                if len(state.running) >= context.configuration.max_parallel_blocks:
                    break

                node_id = state.queue.popleft()
                node = nodes[node_id]
                if node.status == NodeExecutionStatus.SKIPPED or node_id in state.failures:
                    continue

                if await state.results.has_all(state.effective_dependencies[node_id]):
                    state.running[node_id] = asyncio.create_task(self._run_node(state, node))
                    dispatched += 1
                else:
                    state.queue.append(node_id)

            if not state.running and not state.retry_timers and state.queue and not dispatched:
                blocked = list(state.queue)
                logger.error(f"Execution {context.id} stuck: {len(blocked)} nodes blocked")
                raise WorkflowFailedError(
                    f"{len(blocked)} nodes blocked by unsatisfiable dependencies",
                    errors=list(state.failures.values()),
                )

            if state.running:
                await asyncio.wait(
                    list(state.running.values()),
                    timeout=self.settings.tick_interval,
                    return_when=asyncio.FIRST_COMPLETED,
                )
            else:
                await asyncio.sleep(self.settings.tick_interval)

            await self._reap(state)

        if state.control.cancelled:
            if state.running:
                await asyncio.gather(*state.running.values(), return_exceptions=True)
                state.running.clear()
            raise ExecutionCancelledError(f"Execution {context.id} was cancelled")

        unrouted = [
            error for node_id, error in state.failures.items() if node_id not in state.routed
        ]
        if unrouted:
            raise WorkflowFailedError(
                f"{len(unrouted)} node(s) failed: {', '.join(e.node_id or '?' for e in unrouted)}",
                errors=unrouted,
            )

        final_results = {
            node_id: state.results.get(node_id)
            for node_id in dag.exit_points
            if node_id in state.results
        }
        logger.info(f"DAG execution {context.id} finished with {len(final_results)} results")
        return final_results

    async def _reap(self, state: _RunState) -> None:
        """Collect finished node tasks; a raised exception ends the run."""
        for node_id, task in list(state.running.items()):
            if not task.done():
                continue
            state.running.pop(node_id)
            exc = task.exception()
            if exc is not None:
                for other in state.running.values():
                    other.cancel()
                if state.running:
                    await asyncio.gather(*state.running.values(), return_exceptions=True)
                    state.running.clear()
                raise exc

    # Node execution

    async def _run_node(self, state: _RunState, node: ExecutionNode) -> None:
        context = state.context
        node.status = NodeExecutionStatus.RUNNING
        node.start_time = datetime.utcnow()
        node.end_time = None
        self.stats["nodes_started"] += 1
        await state.callbacks.on_node_start(context, node)
        await self._report_progress(state)

        started = time.monotonic()
        timeout_ms = self._node_timeout_ms(context, node)
        try:
            inputs = self._prepare_inputs(state, node)
            try:
                result = await asyncio.wait_for(
                    self.executor.execute(node, inputs), timeout=timeout_ms / 1000
                )
            except asyncio.TimeoutError as e:
                raise NodeTimeoutError(
                    f"Node {node.id} timed out after {timeout_ms}ms",
                    details={"timeout_ms": timeout_ms},
                ) from e

            if state.control.cancelled:
                logger.debug(f"Discarding result of node {node.id}: execution cancelled")
                node.status = NodeExecutionStatus.SKIPPED
                node.end_time = datetime.utcnow()
                self.stats["nodes_skipped"] += 1
                return

            self._publish_outputs(state, node, result)
        except Exception as e:
            node.metrics.duration_ms = (time.monotonic() - started) * 1000
            await self._handle_failure(state, node, e)
            return

        node.metrics.duration_ms = (time.monotonic() - started) * 1000
        await state.results.write(node.id, result)
        node.status = NodeExecutionStatus.COMPLETED
        node.end_time = datetime.utcnow()
        node.error = None
        self.stats["nodes_completed"] += 1

        if node.retry_count > 0:
            self.recovery.mark_recovered(context, node.id)

        logger.debug(f"Node completed: {node.id} ({node.metrics.duration_ms:.0f}ms)")
        await state.callbacks.on_node_complete(context, node, result)
        await self._report_progress(state)

    def _node_timeout_ms(self, context: ExecutionContext, node: ExecutionNode) -> int:
        return int(
            node.config.get("timeout_ms")
            or node.timeout_ms
            or context.configuration.timeout_ms
        )

    def _prepare_inputs(self, state: _RunState, node: ExecutionNode) -> Dict[str, Any]:
        """Read inputs from edge channels, falling back to stored results."""
        inputs: Dict[str, Any] = {}
        for edge in state.dag.incoming_edges(node.id):
            channel_id = self._channel_id(state.context, edge.id)
            value = None
            if self.channels.has_channel(channel_id):
                value = self.channels.read(channel_id)
            if value is None:
                if edge.source not in state.results:
                    continue
                value = _select_output(state.results.get(edge.source), edge.source_output)
            inputs[edge.target_input] = value
        return inputs

    def _publish_outputs(self, state: _RunState, node: ExecutionNode, result: Any) -> None:
        for edge in state.dag.outgoing_edges(node.id):
            channel_id = self._channel_id(state.context, edge.id)
            if not self.channels.has_channel(channel_id):
                continue
            self.channels.write(channel_id, _select_output(result, edge.source_output))
            self.channels.flush(channel_id)

    # Failure handling

    async def _handle_failure(
        self, state: _RunState, node: ExecutionNode, exc: Exception
    ) -> None:
        context = state.context
        policy = context.configuration.retry_policy

        error = ExecutionError.from_exception(exc, node.id)
        node.status = NodeExecutionStatus.FAILED
        node.end_time = datetime.utcnow()
        node.error = error.message
        node.metrics.error_count += 1
        self.stats["nodes_failed"] += 1

        if state.control.cancelled:
            logger.debug(f"Node {node.id} failed after cancellation: {error.message}")
            return

        will_retry = (
            error.recoverable
            and error.code.value in policy.retryable_errors
            and node.retry_count < policy.max_retries
        )

        logger.warning(f"Node failed: {node.id} [{error.code.value}] {error.message}")
        await state.callbacks.on_node_error(context, node, error)

        try:
            error = await self.recovery.handle_error(
                context, node.id, error, retry_pending=will_retry
            )
        except ExecutionError:
            state.failures[node.id] = error
            raise

        applied_fix = self._apply_recovery_fix(context, node, error) if will_retry else None
        await state.callbacks.on_recovery_attempt(context, node, error, applied_fix)

        if will_retry:
            node.retry_count += 1
            node.metrics.retry_count = node.retry_count
            delay_ms = policy.compute_delay_ms(node.retry_count)
            node.status = NodeExecutionStatus.RETRYING
            self.stats["retries"] += 1

            logger.info(
                f"Retrying node {node.id} in {delay_ms}ms "
                f"(attempt {node.retry_count}/{policy.max_retries})"
            )
            await state.callbacks.on_node_retry(context, node, error, delay_ms)
            await self._report_progress(state)
            state.retry_timers[node.id] = asyncio.create_task(
                self._requeue_after(state, node, delay_ms)
            )
            return

        state.failures[node.id] = error
        await self._route_around(state, node, error)

    def _apply_recovery_fix(
        self, context: ExecutionContext, node: ExecutionNode, error: ExecutionError
    ) -> Optional[str]:
        """Apply the first auto-applicable suggestion; returns its action."""
        for suggestion in error.suggestions:
            if suggestion.auto_applicable and self.recovery.apply_suggestion(
                context, node.id, suggestion
            ):
                return suggestion.action
        return None

    async def _requeue_after(self, state: _RunState, node: ExecutionNode, delay_ms: int) -> None:
        try:
            await asyncio.sleep(delay_ms / 1000)
            if not state.control.cancelled:
                node.status = NodeExecutionStatus.PENDING
                state.queue.append(node.id)
        finally:
            state.retry_timers.pop(node.id, None)

    async def _route_around(
        self, state: _RunState, node: ExecutionNode, error: ExecutionError
    ) -> None:
        """
        Decide what happens downstream of a node that failed for good.

        Dependents reachable through a bypass path stop waiting for the
        failed node. Everything else downstream is skipped when cascade
        failure prevention is on; otherwise the run fails fast.
        """
        context, dag = state.context, state.dag
        bypassed: Set[str] = set()
        for path in error.alternative_paths:
            if path.type == AlternativePathType.BYPASS and path.nodes:
                dependent = path.nodes[-1]
                state.effective_dependencies[dependent].discard(node.id)
                bypassed.add(dependent)
                logger.info(f"Routing {dependent} around failed node {node.id}")

        blocked = self._blocked_by(state, node.id)

        if blocked and not context.configuration.error_handling.cascade_failure_prevention:
            raise WorkflowFailedError(
                f"Node {node.id} failed and blocks {len(blocked)} downstream node(s)",
                errors=[error],
            )

        nodes = dag.node_map()
        for node_id in blocked:
            skipped = nodes[node_id]
            if skipped.status != NodeExecutionStatus.PENDING:
                continue
            skipped.status = NodeExecutionStatus.SKIPPED
            self.stats["nodes_skipped"] += 1
            await state.callbacks.on_node_skipped(
                context, skipped, f"upstream node {node.id} failed"
            )

        if bypassed and not blocked:
            state.routed.add(node.id)

        await self._report_progress(state)

    def _blocked_by(self, state: _RunState, failed_id: str) -> List[str]:
        """Nodes that still transitively wait on ``failed_id``."""
        blocked: List[str] = []
        seen = {failed_id}
        frontier = [failed_id]
        while frontier:
            current = frontier.pop()
            for dependent in state.dag.dependencies[current].dependents:
                if dependent in seen:
                    continue
                if current not in state.effective_dependencies[dependent]:
                    continue
                seen.add(dependent)
                blocked.append(dependent)
                frontier.append(dependent)
        return blocked

    async def _report_progress(self, state: _RunState) -> None:
        counts = {
            "total": len(state.dag.nodes),
            "completed": 0,
            "failed": 0,
            "running": 0,
            "skipped": 0,
        }
        for node in state.dag.nodes:
            if node.status == NodeExecutionStatus.COMPLETED:
                counts["completed"] += 1
            elif node.status == NodeExecutionStatus.FAILED:
                counts["failed"] += 1
            elif node.status == NodeExecutionStatus.RUNNING:
                counts["running"] += 1
            elif node.status == NodeExecutionStatus.SKIPPED:
                counts["skipped"] += 1
        await state.callbacks.on_progress(state.context, counts)

    @staticmethod
    def _channel_id(context: ExecutionContext, edge_id: str) -> str:
        return f"{context.id}:{edge_id}"
