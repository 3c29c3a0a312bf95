"""Error taxonomy for the elastic-flow execution engine.

Build-time problems surface as ``GraphError`` and are fatal. Everything that
goes wrong while a node runs is classified into an ``ExecutionError``, which
carries the error code, the owning node, the recoverability flag and whatever
suggestions and alternative paths the recovery manager attached to it.
"""

import asyncio
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

if TYPE_CHECKING:
    from .workflow.models import AlternativePath, ErrorSuggestion


class ErrorCode(str, Enum):
    """Closed set of error kinds understood by the recovery protocol."""

    GRAPH_ERROR = "GRAPH_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    TIMEOUT = "TIMEOUT"
    TEMPORARY_FAILURE = "TEMPORARY_FAILURE"
    NETWORK_ERROR = "NETWORK_ERROR"
    MEMORY_ERROR = "MEMORY_ERROR"
    EXECUTION_ERROR = "EXECUTION_ERROR"
    CANCELLED = "CANCELLED"
    FATAL_ERROR = "FATAL_ERROR"


class ElasticFlowError(Exception):
    """Base class for all engine errors."""

    code: ErrorCode = ErrorCode.EXECUTION_ERROR
    recoverable: bool = True

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class GraphError(ElasticFlowError):
    """Malformed or unresolvable workflow definition."""

    code = ErrorCode.GRAPH_ERROR
    recoverable = False


class ChannelError(ElasticFlowError):
    """Unknown or closed data channel."""


class DataValidationError(ElasticFlowError):
    """Data crossing an edge does not satisfy its contract."""

    code = ErrorCode.VALIDATION_ERROR


class NodeTimeoutError(ElasticFlowError):
    code = ErrorCode.TIMEOUT


class TemporaryFailure(ElasticFlowError):
    code = ErrorCode.TEMPORARY_FAILURE


class NetworkError(ElasticFlowError):
    code = ErrorCode.NETWORK_ERROR


class ResourceExhaustedError(ElasticFlowError):
    """A node ran out of memory or another resource."""

    code = ErrorCode.MEMORY_ERROR


class FatalNodeError(ElasticFlowError):
    """Node failure that no retry or recovery strategy can fix."""

    code = ErrorCode.FATAL_ERROR
    recoverable = False


class ResourceAllocationError(ElasticFlowError):
    code = ErrorCode.MEMORY_ERROR
    recoverable = False


class ExecutionNotFoundError(ElasticFlowError, KeyError):
    """No execution with the given id is known to the orchestrator."""

    recoverable = False

    def __str__(self) -> str:
        return self.message


class ExecutionStateError(ElasticFlowError):
    """Control operation is not valid in the execution's current status."""

    recoverable = False


class ExecutionStartupError(ElasticFlowError):
    recoverable = False


class ExecutionCancelledError(ElasticFlowError):
    code = ErrorCode.CANCELLED
    recoverable = False


class OptimizationError(ElasticFlowError):
    recoverable = False


class ExecutionError(Exception):
    """
    A node-level failure as seen by the recovery protocol.

    Instances are raised and caught like any other exception, and are also
    kept in the execution's progress snapshot so pollers can inspect them.
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        node_id: Optional[str] = None,
        recoverable: bool = True,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.node_id = node_id
        self.recoverable = recoverable
        self.timestamp = datetime.utcnow()
        self.context: Dict[str, Any] = context or {}
        self.suggestions: List["ErrorSuggestion"] = []
        self.alternative_paths: List["AlternativePath"] = []
        self.attempt = 1
        self.cause = cause

    @classmethod
    def from_exception(
        cls, exc: BaseException, node_id: Optional[str] = None
    ) -> "ExecutionError":
        """Classify an arbitrary exception raised while running a node."""
        if isinstance(exc, ExecutionError):
            if node_id and not exc.node_id:
                exc.node_id = node_id
            return exc

        if isinstance(exc, ElasticFlowError):
            return cls(
                code=exc.code,
                message=exc.message,
                node_id=node_id,
                recoverable=exc.recoverable,
                context=dict(exc.details),
                cause=exc,
            )

        message = str(exc) or exc.__class__.__name__
        if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
            code = ErrorCode.TIMEOUT
        elif isinstance(exc, MemoryError):
            code = ErrorCode.MEMORY_ERROR
        elif isinstance(exc, ConnectionError):
            code = ErrorCode.NETWORK_ERROR
        else:
            code = ErrorCode.EXECUTION_ERROR

        return cls(
            code=code,
            message=message,
            node_id=node_id,
            context={"exception_class": exc.__class__.__name__},
            cause=exc,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "code": self.code.value,
            "message": self.message,
            "node_id": self.node_id,
            "timestamp": self.timestamp.isoformat(),
            "recoverable": self.recoverable,
            "attempt": self.attempt,
            "context": self.context,
            "suggestions": [s.to_dict() for s in self.suggestions],
            "alternative_paths": [p.to_dict() for p in self.alternative_paths],
        }


class WorkflowFailedError(ElasticFlowError):
    """One or more nodes failed and could not be routed around."""

    def __init__(self, message: str, errors: Optional[List[ExecutionError]] = None):
        super().__init__(message)
        self.errors = errors or []
