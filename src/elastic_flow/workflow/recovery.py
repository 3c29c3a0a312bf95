"""
Recovery Manager - reacts to node failures.

Every node failure passes through ``handle_error`` before the scheduler
decides whether to retry, route around the node, or give up. The manager
keeps a per-execution history of failures and applied fixes, isolates nodes
that failed for good, proposes alternative routes through the graph, and
can roll an execution back to its last saved working state.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from loguru import logger

from ..errors import ErrorCode, ExecutionError
from ..metrics import MetricsCollector
from .models import (
    AlternativePath,
    AlternativePathType,
    ErrorSuggestion,
    ExecutionContext,
    ExecutionDAG,
    ExecutionStatus,
    NodeExecutionStatus,
    RecoverySuggestionType,
    ResourceAllocation,
    ResourceNeeds,
)

PARALLEL_SUBSTITUTE_CONFIDENCE = 0.7
BYPASS_CONFIDENCE = 0.8
HISTORY_CONFIDENCE = 0.9


@dataclass
class RecoveryAttempt:
    """One failure of a node and the fix applied to it, if any."""

    node_id: str
    error_code: ErrorCode
    message: str
    attempt: int
    timestamp: datetime = field(default_factory=datetime.utcnow)
    action: Optional[str] = None
    parameters: Dict[str, Any] = field(default_factory=dict)
    successful: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "error_code": self.error_code.value,
            "message": self.message,
            "attempt": self.attempt,
            "timestamp": self.timestamp.isoformat(),
            "action": self.action,
            "parameters": self.parameters,
            "successful": self.successful,
        }


@dataclass
class WorkingState:
    execution_id: str
    timestamp: datetime
    status: ExecutionStatus
    allocated_resources: Optional[ResourceAllocation]
    metadata: Dict[str, Any]
    configuration: Any
    nodes: Dict[str, Dict[str, Any]]


class RecoveryManager:
    """Failure handling for running executions."""

    def __init__(self, metrics: Optional[MetricsCollector] = None):
        self.metrics = metrics
        self._history: Dict[str, List[RecoveryAttempt]] = {}
        self._working_states: Dict[str, WorkingState] = {}

        self.stats = {
            "errors_handled": 0,
            "unrecoverable_errors": 0,
            "nodes_isolated": 0,
            "suggestions_applied": 0,
            "recoveries": 0,
            "rollbacks": 0,
        }

        logger.info("RecoveryManager initialized")

    async def handle_error(
        self,
        context: ExecutionContext,
        node_id: str,
        error: BaseException,
        retry_pending: bool = False,
    ) -> ExecutionError:
        """
        Record a node failure and attach recovery information to it.

        Args:
            context: Execution the node belongs to
            node_id: Failed node
            error: Raised exception, classified on the way in
            retry_pending: The scheduler will retry the node; isolation and
                alternative paths are only produced for the final attempt

        Returns:
            The classified error with suggestions and alternative paths

        Raises:
            ExecutionError: If the error is not recoverable
        """
        execution_error = ExecutionError.from_exception(error, node_id)
        dag = context.dag
        node = dag.get_node(node_id) if dag else None
        if node is not None:
            execution_error.attempt = node.retry_count + 1

        self._record_attempt(context.id, node_id, execution_error)
        self.stats["errors_handled"] += 1

        logger.warning(
            f"Handling {execution_error.code.value} in node {node_id} "
            f"(attempt {execution_error.attempt}): {execution_error.message}"
        )

        if not execution_error.recoverable:
            self.stats["unrecoverable_errors"] += 1
            logger.error(f"Error in node {node_id} is not recoverable")
            raise execution_error

        handling = context.configuration.error_handling

        if handling.ai_assisted_recovery:
            execution_error.suggestions = self.generate_suggestions(context, execution_error)

        if not retry_pending and dag is not None:
            if handling.isolate_failed_blocks:
                self.isolate_node(dag, node_id)
            if handling.generate_alternative_paths:
                execution_error.alternative_paths = self.generate_alternative_paths(
                    dag, node_id
                )

        return execution_error

    def isolate_node(self, dag: ExecutionDAG, node_id: str) -> bool:
        """Mark a node failed and isolated so it is never scheduled again."""
        node = dag.get_node(node_id)
        if node is None:
            return False

        node.status = NodeExecutionStatus.FAILED
        node.config = {**node.config, "isolated": True}
        self.stats["nodes_isolated"] += 1
        self._record_metric("isolate")
        logger.info(f"Isolated failed node {node_id}")
        return True

    def generate_alternative_paths(
        self, dag: ExecutionDAG, node_id: str
    ) -> List[AlternativePath]:
        """
        Find routes that avoid a failed node.

        Parallel substitutes are other nodes of the same block category with
        the same number of inputs and outputs. A bypass exists for every
        dependency/dependent pair of the failed node that is already joined
        by a direct edge.
        """
        failed = dag.get_node(node_id)
        if failed is None:
            return []

        paths: List[AlternativePath] = []
        downstream = dag.descendants(node_id)

        substitutes = [
            node
            for node in dag.nodes
            if node.id != node_id
            and node.id not in downstream
            and node.type == failed.type
            and len(node.inputs) == len(failed.inputs)
            and len(node.outputs) == len(failed.outputs)
            and not node.is_isolated
        ]
        if substitutes:
            paths.append(
                AlternativePath(
                    id=f"parallel-{node_id}",
                    type=AlternativePathType.PARALLEL_SUBSTITUTE,
                    description=(
                        f"Use {len(substitutes)} compatible {failed.type} node(s) "
                        f"in place of {node_id}"
                    ),
                    nodes=[node.id for node in substitutes],
                    estimated_duration=min(n.estimated_duration for n in substitutes),
                    confidence=PARALLEL_SUBSTITUTE_CONFIDENCE,
                    resource_requirements=ResourceNeeds(
                        memory=max(n.resource_needs.memory for n in substitutes),
                        cpu=sum(n.resource_needs.cpu for n in substitutes),
                        storage=max(n.resource_needs.storage for n in substitutes),
                        network=max(n.resource_needs.network for n in substitutes),
                    ),
                )
            )

        info = dag.dependencies.get(node_id)
        if info is not None:
            nodes = dag.node_map()
            for dependency in info.dependencies:
                for dependent in info.dependents:
                    if not dag.has_edge(dependency, dependent):
                        continue
                    route = [nodes[dependency], nodes[dependent]]
                    paths.append(
                        AlternativePath(
                            id=f"bypass-{node_id}-{dependent}",
                            type=AlternativePathType.BYPASS,
                            description=(
                                f"Feed {dependent} directly from {dependency}, "
                                f"skipping {node_id}"
                            ),
                            nodes=[dependency, dependent],
                            estimated_duration=sum(n.estimated_duration for n in route),
                            confidence=BYPASS_CONFIDENCE,
                            resource_requirements=ResourceNeeds(
                                memory=sum(n.resource_needs.memory for n in route),
                                cpu=sum(n.resource_needs.cpu for n in route),
                                storage=max(n.resource_needs.storage for n in route),
                                network=max(n.resource_needs.network for n in route),
                            ),
                        )
                    )

        if paths:
            self._record_metric("alternative_paths")
            logger.info(f"Found {len(paths)} alternative path(s) around node {node_id}")
        return paths

    def generate_suggestions(
        self, context: ExecutionContext, error: ExecutionError
    ) -> List[ErrorSuggestion]:
        """Propose fixes for an error, most confident first."""
        suggestions: List[ErrorSuggestion] = []
        node = context.dag.get_node(error.node_id) if context.dag and error.node_id else None

        if error.code == ErrorCode.TIMEOUT:
            current = context.configuration.timeout_ms
            if node is not None:
                current = node.config.get("timeout_ms") or node.timeout_ms or current
            suggestions.append(
                ErrorSuggestion(
                    type=RecoverySuggestionType.CONFIG,
                    description="Increase the timeout for this node",
                    confidence=0.8,
                    auto_applicable=True,
                    action="update_timeout",
                    parameters={"timeout_ms": int(current * 1.5), "multiplier": 1.5},
                )
            )
        elif error.code == ErrorCode.MEMORY_ERROR:
            current_memory = node.resource_needs.memory if node is not None else 0.0
            suggestions.append(
                ErrorSuggestion(
                    type=RecoverySuggestionType.RESOURCE,
                    description="Allocate more memory to this node",
                    confidence=0.9,
                    auto_applicable=True,
                    action="scale_memory",
                    parameters={"memory": current_memory * 1.5, "multiplier": 1.5},
                )
            )
        elif error.code == ErrorCode.VALIDATION_ERROR:
            suggestions.append(
                ErrorSuggestion(
                    type=RecoverySuggestionType.FIX,
                    description="Data validation failed, check the input data format",
                    confidence=0.7,
                    auto_applicable=False,
                    action="validate_inputs",
                )
            )
        else:
            suggestions.append(
                ErrorSuggestion(
                    type=RecoverySuggestionType.ALTERNATIVE,
                    description="Try an alternative execution path",
                    confidence=0.6,
                    auto_applicable=True,
                    action="use_alternative_path",
                )
            )

        previous_fix = self._last_successful_fix(context.id, error.code)
        if previous_fix is not None:
            suggestions.append(
                ErrorSuggestion(
                    type=RecoverySuggestionType.FIX,
                    description=f"Apply previously successful fix: {previous_fix.action}",
                    confidence=HISTORY_CONFIDENCE,
                    auto_applicable=True,
                    action=previous_fix.action,
                    parameters=dict(previous_fix.parameters),
                    from_history=True,
                )
            )

        suggestions.sort(key=lambda s: s.confidence, reverse=True)
        return suggestions

    def apply_suggestion(
        self, context: ExecutionContext, node_id: str, suggestion: ErrorSuggestion
    ) -> bool:
        """
        Apply an auto-applicable configuration or resource fix to a node.

        Returns:
            True if the node was changed
        """
        if not suggestion.auto_applicable or context.dag is None:
            return False
        node = context.dag.get_node(node_id)
        if node is None:
            return False

        if suggestion.action == "update_timeout" and "timeout_ms" in suggestion.parameters:
            node.config["timeout_ms"] = int(suggestion.parameters["timeout_ms"])
        elif suggestion.action == "scale_memory":
            multiplier = suggestion.parameters.get("multiplier", 1.5)
            node.resource_needs.memory = suggestion.parameters.get(
                "memory", node.resource_needs.memory * multiplier
            )
        else:
            return False

        for attempt in reversed(self._history.get(context.id, [])):
            if attempt.node_id == node_id:
                attempt.action = suggestion.action
                attempt.parameters = dict(suggestion.parameters)
                break

        self.stats["suggestions_applied"] += 1
        self._record_metric(suggestion.action)
        logger.info(f"Applied recovery fix '{suggestion.action}' to node {node_id}")
        return True

    def mark_recovered(self, context: ExecutionContext, node_id: str) -> None:
        """Record that a node succeeded after failing, crediting the last fix."""
        for attempt in reversed(self._history.get(context.id, [])):
            if attempt.node_id == node_id:
                attempt.successful = True
                self.stats["recoveries"] += 1
                logger.info(f"Node {node_id} recovered after {attempt.attempt} attempt(s)")
                return

    def save_working_state(self, context: ExecutionContext) -> None:
        """Snapshot status, allocation, metadata, configuration and per-node tuning."""
        nodes = {}
        if context.dag is not None:
            for node in context.dag.nodes:
                nodes[node.id] = {
                    "config": copy.deepcopy(node.config),
                    "memory": node.resource_needs.memory,
                }

        self._working_states[context.id] = WorkingState(
            execution_id=context.id,
            timestamp=datetime.utcnow(),
            status=context.status,
            allocated_resources=context.allocated_resources,
            # Shallow: the dag entry stays the live graph
            metadata=dict(context.metadata),
            configuration=context.configuration.model_copy(deep=True),
            nodes=nodes,
        )
        logger.debug(f"Saved working state for execution {context.id}")

    def rollback_to_last_working_state(self, context: ExecutionContext) -> bool:
        """
        Restore the last saved working state of an execution.

        Returns:
            False if no state was ever saved
        """
        state = self._working_states.get(context.id)
        if state is None:
            logger.warning(f"No working state saved for execution {context.id}")
            return False

        context.status = state.status
        context.allocated_resources = state.allocated_resources
        context.metadata = dict(state.metadata)
        context.configuration = state.configuration.model_copy(deep=True)
        if context.dag is not None:
            for node in context.dag.nodes:
                saved = state.nodes.get(node.id)
                if saved is None:
                    continue
                # Node outcomes stay; only tuning applied since the snapshot is undone
                isolated = node.is_isolated
                node.config = copy.deepcopy(saved["config"])
                if isolated:
                    node.config["isolated"] = True
                node.resource_needs.memory = saved["memory"]

        self.stats["rollbacks"] += 1
        self._record_metric("rollback")
        logger.info(
            f"Rolled back execution {context.id} to state from {state.timestamp.isoformat()}"
        )
        return True

    def get_recovery_history(self, execution_id: str) -> List[RecoveryAttempt]:
        return list(self._history.get(execution_id, []))

    def clear(self, execution_id: str) -> None:
        self._history.pop(execution_id, None)
        self._working_states.pop(execution_id, None)

    def get_stats(self) -> Dict[str, Any]:
        return self.stats.copy()

    def _record_attempt(
        self, execution_id: str, node_id: str, error: ExecutionError
    ) -> None:
        self._history.setdefault(execution_id, []).append(
            RecoveryAttempt(
                node_id=node_id,
                error_code=error.code,
                message=error.message,
                attempt=error.attempt,
            )
        )

    def _last_successful_fix(
        self, execution_id: str, code: ErrorCode
    ) -> Optional[RecoveryAttempt]:
        for attempt in reversed(self._history.get(execution_id, [])):
            if attempt.error_code == code and attempt.successful and attempt.action:
                return attempt
        return None

    def _record_metric(self, action: str) -> None:
        if self.metrics is not None:
            self.metrics.record_recovery_action(action)
