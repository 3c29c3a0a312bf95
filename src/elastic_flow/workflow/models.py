"""
Execution Data Models

Defines the runtime data structures of the execution core: the annotated
execution graph, per-execution context and progress, resource budgets, and
the suggestion records produced by recovery and optimization.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Set

from ..config import ExecutionConfiguration

if TYPE_CHECKING:
    from ..errors import ExecutionError


class ExecutionStatus(str, Enum):
    """Status of a whole workflow execution."""
    PENDING = "pending"
    INITIALIZING = "initializing"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    OPTIMIZING = "optimizing"

    @property
    def is_terminal(self) -> bool:
        return self in (
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
        )


class NodeExecutionStatus(str, Enum):
    """Status of a node during execution."""
    PENDING = "pending"
    LOADING = "loading"
    READY = "ready"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"  # Routed around by recovery
    RETRYING = "retrying"


class BlockCategory(str, Enum):
    INPUT = "input"
    DATA_PROCESSOR = "dataProcessor"
    ML_ALGORITHM = "mlAlgorithm"
    NEURAL_NETWORK = "neuralNetwork"
    EXPERT = "expert"
    UTILITY = "utility"
    OUTPUT = "output"
    CUSTOM = "custom"


class DataType(str, Enum):
    TEXT = "text"
    JSON = "json"
    BINARY = "binary"
    STREAM = "stream"
    TENSOR = "tensor"
    DATAFRAME = "dataframe"
    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"

    @classmethod
    def parse(cls, value: Any) -> "DataType":
        """Map a declared port type onto a data type, defaulting to json."""
        if isinstance(value, DataType):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.JSON


class SerializationFormat(str, Enum):
    JSON = "json"
    RAW = "raw"  # bytes passed through untouched


class ValidationRuleType(str, Enum):
    REQUIRED = "required"
    TYPE = "type"
    FORMAT = "format"
    RANGE = "range"
    CUSTOM = "custom"


class ScalingState(str, Enum):
    NONE = "none"
    SCALING_UP = "scaling_up"
    SCALING_DOWN = "scaling_down"


class SuggestionCategory(str, Enum):
    PARALLELIZATION = "parallelization"
    CACHING = "caching"
    RESOURCE = "resource"
    ALGORITHM = "algorithm"
    DATA = "data"


class ImpactLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class EffortLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RecoverySuggestionType(str, Enum):
    FIX = "fix"
    CONFIG = "config"
    RESOURCE = "resource"
    ALTERNATIVE = "alternative"


class AlternativePathType(str, Enum):
    PARALLEL_SUBSTITUTE = "parallel_substitute"
    BYPASS = "bypass"


def _serialize(value: Any) -> Any:
    """Recursively convert enums, sets and datetimes for JSON output."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, set):
        return sorted(_serialize(v) for v in value)
    if isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_serialize(v) for v in value]
    return value


@dataclass
class ResourceNeeds:
    """Resource figures in MB (memory, storage), cores (cpu) and Mbps (network)."""

    memory: float = 0.0
    cpu: float = 0.0
    storage: float = 0.0
    network: float = 0.0
    gpu: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ExecutionMetrics:
    """Accumulated metrics for a single node."""

    duration_ms: float = 0.0
    memory_peak: float = 0.0
    memory_average: float = 0.0
    retry_count: int = 0
    error_count: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    items_processed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ValidationRule:
    type: ValidationRuleType
    value: Any = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return _serialize(asdict(self))


@dataclass
class SerializationConfig:
    format: SerializationFormat = SerializationFormat.JSON
    compression: bool = False
    encryption: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return _serialize(asdict(self))


@dataclass
class DataContract:
    """Type, validation rules and serialization policy for data on a port."""

    name: str
    type: DataType = DataType.JSON
    validation: List[ValidationRule] = field(default_factory=list)
    serialization: SerializationConfig = field(default_factory=SerializationConfig)
    streaming: bool = False
    optional: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return _serialize(asdict(self))


@dataclass
class StreamConfig:
    buffer_size: int = 1024  # bytes
    flush_interval: int = 100  # ms
    compression: bool = False
    backpressure: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ExecutionNode:
    """
    Individual node in an execution graph.

    Bound to a block definition and its resolved configuration. Created by
    the DAG builder, mutated by the scheduler during a run, and never shared
    across executions.
    """

    id: str
    block_id: str
    type: str  # block category
    config: Dict[str, Any] = field(default_factory=dict)
    inputs: List[DataContract] = field(default_factory=list)
    outputs: List[DataContract] = field(default_factory=list)
    estimated_duration: float = 1000.0  # ms
    resource_needs: ResourceNeeds = field(default_factory=ResourceNeeds)

    # Runtime state
    status: NodeExecutionStatus = NodeExecutionStatus.PENDING
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    metrics: ExecutionMetrics = field(default_factory=ExecutionMetrics)
    retry_count: int = 0
    error: Optional[str] = None
    timeout_ms: Optional[int] = None  # block-declared timeout

    @property
    def is_isolated(self) -> bool:
        return bool(self.config.get("isolated"))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        data = asdict(self)
        return _serialize(data)


@dataclass
class ExecutionEdge:
    """Data-dependency edge between two nodes."""

    id: str
    source: str
    target: str
    source_output: str = "output"
    target_input: str = "input"
    data_contract: DataContract = field(default_factory=lambda: DataContract(name="output"))
    stream_config: StreamConfig = field(default_factory=StreamConfig)

    def to_dict(self) -> Dict[str, Any]:
        return _serialize(asdict(self))


@dataclass
class DependencyInfo:
    dependencies: List[str] = field(default_factory=list)
    dependents: List[str] = field(default_factory=list)
    critical_path: bool = False
    depth: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ParallelGroup:
    """Set of nodes with no dependency relation among them."""

    id: str
    node_ids: List[str]
    max_concurrency: int
    resource_pool: str = "default"
    coordination_strategy: str = "independent"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ResourceRequirements:
    total_memory: float = 0.0
    peak_memory: float = 0.0
    cpu_cores: float = 0.0
    storage: float = 0.0
    network_bandwidth: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ExecutionDAG:
    """
    Validated, annotated execution graph.

    Invariants: acyclic, every edge endpoint exists in ``nodes``, every node
    reachable from at least one entry point.
    """

    workflow_id: str
    nodes: List[ExecutionNode] = field(default_factory=list)
    edges: List[ExecutionEdge] = field(default_factory=list)
    entry_points: List[str] = field(default_factory=list)
    exit_points: List[str] = field(default_factory=list)
    dependencies: Dict[str, DependencyInfo] = field(default_factory=dict)
    parallel_groups: List[ParallelGroup] = field(default_factory=list)
    resource_requirements: ResourceRequirements = field(
        default_factory=ResourceRequirements
    )
    estimated_duration: float = 0.0  # ms

    def get_node(self, node_id: str) -> Optional[ExecutionNode]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def node_map(self) -> Dict[str, ExecutionNode]:
        return {node.id: node for node in self.nodes}

    def incoming_edges(self, node_id: str) -> List[ExecutionEdge]:
        return [edge for edge in self.edges if edge.target == node_id]

    def outgoing_edges(self, node_id: str) -> List[ExecutionEdge]:
        return [edge for edge in self.edges if edge.source == node_id]

    def has_edge(self, source: str, target: str) -> bool:
        return any(e.source == source and e.target == target for e in self.edges)

    def descendants(self, node_id: str) -> Set[str]:
        """All nodes transitively downstream of ``node_id``."""
        seen: Set[str] = set()
        stack = list(self.dependencies.get(node_id, DependencyInfo()).dependents)
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self.dependencies.get(current, DependencyInfo()).dependents)
        return seen

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "workflow_id": self.workflow_id,
            "nodes": [node.to_dict() for node in self.nodes],
            "edges": [edge.to_dict() for edge in self.edges],
            "entry_points": list(self.entry_points),
            "exit_points": list(self.exit_points),
            "dependencies": {k: v.to_dict() for k, v in self.dependencies.items()},
            "parallel_groups": [g.to_dict() for g in self.parallel_groups],
            "resource_requirements": self.resource_requirements.to_dict(),
            "estimated_duration": self.estimated_duration,
        }


@dataclass
class ResourceUtilization:
    """Utilization percentages (0-100) of an allocation."""

    memory: float = 0.0
    cpu: float = 0.0
    storage: float = 0.0
    network: float = 0.0
    sampled_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return _serialize(asdict(self))


@dataclass
class ScalingStatus:
    state: ScalingState = ScalingState.NONE
    trigger: Optional[str] = None
    next_evaluation: Optional[datetime] = None
    transitions: int = 0

    @property
    def is_scaling(self) -> bool:
        return self.state != ScalingState.NONE

    def to_dict(self) -> Dict[str, Any]:
        data = _serialize(asdict(self))
        data["is_scaling"] = self.is_scaling
        return data


@dataclass
class ResourceAllocation:
    allocation_id: str
    execution_id: str
    allocated: ResourceNeeds
    available: ResourceNeeds
    utilization: ResourceUtilization = field(default_factory=ResourceUtilization)
    scaling: ScalingStatus = field(default_factory=ScalingStatus)
    allocated_at: datetime = field(default_factory=datetime.utcnow)
    released: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allocation_id": self.allocation_id,
            "execution_id": self.execution_id,
            "allocated": self.allocated.to_dict(),
            "available": self.available.to_dict(),
            "utilization": self.utilization.to_dict(),
            "scaling": self.scaling.to_dict(),
            "allocated_at": self.allocated_at.isoformat(),
            "released": self.released,
        }


@dataclass
class ExecutionContext:
    """
    State of one in-flight execution.

    Owned by the orchestrator; other components receive a reference for the
    duration of the run only.
    """

    id: str
    workflow_id: str
    configuration: ExecutionConfiguration
    user_id: Optional[str] = None
    status: ExecutionStatus = ExecutionStatus.PENDING
    start_time: datetime = field(default_factory=datetime.utcnow)
    end_time: Optional[datetime] = None
    allocated_resources: Optional[ResourceAllocation] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def dag(self) -> Optional[ExecutionDAG]:
        return self.metadata.get("dag")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        metadata = {}
        for key, value in self.metadata.items():
            if hasattr(value, "to_dict"):
                metadata[key] = value.to_dict()
            elif isinstance(value, list):
                metadata[key] = [v.to_dict() if hasattr(v, "to_dict") else v for v in value]
            else:
                metadata[key] = _serialize(value)

        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "user_id": self.user_id,
            "status": self.status.value,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "configuration": self.configuration.model_dump(mode="json"),
            "allocated_resources": (
                self.allocated_resources.to_dict() if self.allocated_resources else None
            ),
            "metadata": metadata,
        }


@dataclass
class ExecutionProgress:
    """Live progress snapshot read by external pollers."""

    execution_id: str
    workflow_id: str
    total_nodes: int
    completed_nodes: int = 0
    failed_nodes: int = 0
    running_nodes: int = 0
    skipped_nodes: int = 0
    progress: float = 0.0  # percent
    estimated_time_remaining: Optional[float] = None  # ms
    current_phase: str = "initializing"
    items_processed: int = 0
    items_per_second: float = 0.0
    errors: List["ExecutionError"] = field(default_factory=list)
    last_update: datetime = field(default_factory=datetime.utcnow)

    def record_error(self, error: "ExecutionError") -> None:
        """Keep one entry per failing node, replacing the previous attempt."""
        for index, existing in enumerate(self.errors):
            if error.node_id is not None and existing.node_id == error.node_id:
                self.errors[index] = error
                break
        else:
            self.errors.append(error)
        self.last_update = datetime.utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "workflow_id": self.workflow_id,
            "total_nodes": self.total_nodes,
            "completed_nodes": self.completed_nodes,
            "failed_nodes": self.failed_nodes,
            "running_nodes": self.running_nodes,
            "skipped_nodes": self.skipped_nodes,
            "progress": self.progress,
            "estimated_time_remaining": self.estimated_time_remaining,
            "current_phase": self.current_phase,
            "throughput": {
                "items_processed": self.items_processed,
                "items_per_second": self.items_per_second,
            },
            "errors": [e.to_dict() for e in self.errors],
            "last_update": self.last_update.isoformat(),
        }


@dataclass
class ErrorSuggestion:
    """Recovery action proposed for a failed node."""

    type: RecoverySuggestionType
    description: str
    confidence: float
    auto_applicable: bool
    action: Optional[str] = None
    parameters: Dict[str, Any] = field(default_factory=dict)
    from_history: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return _serialize(asdict(self))


@dataclass
class AlternativePath:
    id: str
    type: AlternativePathType
    description: str
    nodes: List[str]
    estimated_duration: float
    confidence: float
    resource_requirements: ResourceNeeds = field(default_factory=ResourceNeeds)

    def to_dict(self) -> Dict[str, Any]:
        return _serialize(asdict(self))


@dataclass
class OptimizationSuggestion:
    id: str
    category: SuggestionCategory
    impact: ImpactLevel
    effort: EffortLevel
    description: str
    estimated_improvement: float  # percent
    affected_nodes: List[str] = field(default_factory=list)
    auto_applicable: bool = False
    details: Dict[str, Any] = field(default_factory=dict)
    score: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return _serialize(asdict(self))
