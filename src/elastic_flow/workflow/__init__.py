"""Workflow graph building, scheduling and execution."""

from .channels import DataChannel, DataChannelManager
from .dag_builder import DAGBuilder
from .definition import (
    EdgeDefinition,
    NodeDefinition,
    ValidationReport,
    WorkflowDefinition,
    validate_workflow,
)
from .models import (
    ExecutionContext,
    ExecutionDAG,
    ExecutionEdge,
    ExecutionNode,
    ExecutionProgress,
    ExecutionStatus,
    NodeExecutionStatus,
    OptimizationSuggestion,
)
from .node_executor import HandlerNodeExecutor, NodeExecutor
from .optimizer import OptimizationAnalyzer
from .orchestrator import ExecutionArena, ExecutionOrchestrator
from .recovery import RecoveryManager
from .registry import BlockDefinition, BlockRegistryClient, InMemoryBlockRegistry
from .resources import ProcessUtilizationSampler, ResourceManager, UtilizationSampler
from .scheduler import ResultStore, RunControl, Scheduler, SchedulerCallbacks

__all__ = [
    "BlockDefinition",
    "BlockRegistryClient",
    "DAGBuilder",
    "DataChannel",
    "DataChannelManager",
    "EdgeDefinition",
    "ExecutionArena",
    "ExecutionContext",
    "ExecutionDAG",
    "ExecutionEdge",
    "ExecutionNode",
    "ExecutionOrchestrator",
    "ExecutionProgress",
    "ExecutionStatus",
    "HandlerNodeExecutor",
    "InMemoryBlockRegistry",
    "NodeDefinition",
    "NodeExecutionStatus",
    "NodeExecutor",
    "OptimizationAnalyzer",
    "OptimizationSuggestion",
    "ProcessUtilizationSampler",
    "RecoveryManager",
    "ResourceManager",
    "ResultStore",
    "RunControl",
    "Scheduler",
    "SchedulerCallbacks",
    "UtilizationSampler",
    "ValidationReport",
    "WorkflowDefinition",
    "validate_workflow",
]
