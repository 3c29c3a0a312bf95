"""Elastic Flow - asynchronous workflow graph execution engine

Builds execution graphs from workflow definitions and runs them with bounded
parallelism, elastic resource allocation, retry and recovery, and
optimization analysis.
"""

__version__ = "0.1.0"

from .bus import Event, EventBus, EventType
from .config import EngineSettings, ExecutionConfiguration, load_config
from .errors import ErrorCode, ExecutionError
from .workflow import ExecutionOrchestrator, WorkflowDefinition

__all__ = [
    "__version__",
    "EngineSettings",
    "ErrorCode",
    "Event",
    "EventBus",
    "EventType",
    "ExecutionConfiguration",
    "ExecutionError",
    "ExecutionOrchestrator",
    "WorkflowDefinition",
    "load_config",
]
