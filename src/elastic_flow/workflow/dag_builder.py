"""
DAG Builder - turns workflow definitions into annotated execution graphs.

For every node the block contract is resolved through the registry client,
then resource needs and duration are estimated from the block category and
its historical performance. Edges get a resolved data contract and stream
configuration. The finished graph carries entry/exit points, a dependency map
with depth and a critical-path flag, parallel groups, and aggregate resource
requirements.
"""

import math
from collections import deque
from typing import Any, Dict, List, Optional, Union

from loguru import logger

from ..config import ExecutionConfiguration
from ..errors import GraphError
from .definition import EdgeDefinition, NodeDefinition, WorkflowDefinition
from .models import (
    BlockCategory,
    DataContract,
    DataType,
    DependencyInfo,
    ExecutionDAG,
    ExecutionEdge,
    ExecutionNode,
    ParallelGroup,
    ResourceNeeds,
    ResourceRequirements,
    SerializationConfig,
    SerializationFormat,
    StreamConfig,
)
from .registry import BlockDefinition, BlockRegistryClient, PortDefinition

BASE_MEMORY_MB = 128
BASE_CPU_CORES = 0.5
BASE_STORAGE_MB = 100
BASE_NETWORK_MBPS = 10
DEFAULT_DURATION_MS = 1000.0
SLOW_BLOCK_THRESHOLD_MS = 5000

# (memory multiplier, cpu multiplier) per block category
CATEGORY_MULTIPLIERS = {
    BlockCategory.NEURAL_NETWORK: (4.0, 2.0),
    BlockCategory.ML_ALGORITHM: (3.0, 2.0),
}

# Depth ratio above which a node is flagged as critical path.
CRITICAL_DEPTH_RATIO = 0.8

_RAW_TYPES = {DataType.BINARY, DataType.IMAGE, DataType.AUDIO, DataType.VIDEO}


class DAGBuilder:
    """Builds validated ``ExecutionDAG`` instances from workflow definitions."""

    def __init__(self, registry: BlockRegistryClient):
        self.registry = registry

    def build(
        self,
        definition: Union[WorkflowDefinition, Dict[str, Any]],
        config: Optional[ExecutionConfiguration] = None,
    ) -> ExecutionDAG:
        """
        Build an execution graph.

        Args:
            definition: Workflow definition or its mapping form
            config: Execution configuration the graph will run under

        Returns:
            Annotated, validated execution graph

        Raises:
            GraphError: If a block cannot be resolved, an edge names a missing
                node or port, or the graph is cyclic or partly unreachable
        """
        if not isinstance(definition, WorkflowDefinition):
            try:
                definition = WorkflowDefinition.model_validate(definition)
            except ValueError as e:
                raise GraphError(f"Invalid workflow definition: {e}") from e

        config = config or ExecutionConfiguration()

        if not definition.nodes:
            raise GraphError(f"Workflow {definition.id} has no nodes")

        blocks: Dict[str, BlockDefinition] = {}
        nodes: List[ExecutionNode] = []
        for node_def in definition.nodes:
            if node_def.id in blocks:
                raise GraphError(f"Duplicate node id: {node_def.id}")
            block = self.registry.get_block(node_def.block_id)
            if block is None:
                raise GraphError(
                    f"Block not found: {node_def.block_id}",
                    details={"node_id": node_def.id, "block_id": node_def.block_id},
                )
            blocks[node_def.id] = block
            nodes.append(self._create_node(node_def, block))

        edges = [self._create_edge(edge_def, blocks) for edge_def in definition.edges]

        dependencies = self._build_dependency_map(definition, nodes, edges)
        order = self._topological_order(nodes, dependencies)
        self._assign_depths(order, dependencies)
        self._mark_critical_path(dependencies)

        entry_points = [n.id for n in nodes if not dependencies[n.id].dependencies]
        exit_points = [n.id for n in nodes if not dependencies[n.id].dependents]
        self._check_reachability(nodes, entry_points, dependencies)

        dag = ExecutionDAG(
            workflow_id=definition.id,
            nodes=nodes,
            edges=edges,
            entry_points=entry_points,
            exit_points=exit_points,
            dependencies=dependencies,
            parallel_groups=self._identify_parallel_groups(nodes, dependencies),
            resource_requirements=self._aggregate_resources(nodes),
        )
        dag.estimated_duration = self._estimate_duration(dag)

        if dag.resource_requirements.total_memory > config.memory_limit:
            logger.warning(
                f"Workflow {definition.id} needs {dag.resource_requirements.total_memory:.0f}MB, "
                f"above the configured limit of {config.memory_limit}MB"
            )

        logger.info(
            f"DAG built for {definition.id}: {len(nodes)} nodes, {len(edges)} edges, "
            f"{len(dag.parallel_groups)} parallel groups"
        )
        return dag

    # Node and edge construction

    def _create_node(self, node_def: NodeDefinition, block: BlockDefinition) -> ExecutionNode:
        timeout = block.error_handling.timeout if block.error_handling else None
        return ExecutionNode(
            id=node_def.id,
            block_id=block.id,
            type=block.category.value,
            config=dict(node_def.config),
            inputs=[self._port_contract(port) for port in block.inputs],
            outputs=[self._port_contract(port) for port in block.outputs],
            estimated_duration=self._estimate_node_duration(node_def.config, block),
            resource_needs=self._calculate_resource_needs(node_def.config, block),
            timeout_ms=timeout,
        )

    def _port_contract(self, port: PortDefinition) -> DataContract:
        data_type = DataType.parse(port.type)
        fmt = SerializationFormat.RAW if data_type in _RAW_TYPES else SerializationFormat.JSON
        return DataContract(
            name=port.name,
            type=data_type,
            serialization=SerializationConfig(format=fmt),
            optional=not port.required,
        )

    def _calculate_resource_needs(
        self, config: Dict[str, Any], block: BlockDefinition
    ) -> ResourceNeeds:
        memory = float(BASE_MEMORY_MB)
        cpu = BASE_CPU_CORES

        memory_mult, cpu_mult = CATEGORY_MULTIPLIERS.get(block.category, (1.0, 1.0))
        memory *= memory_mult
        cpu *= cpu_mult

        avg_time = block.performance.avg_execution_time if block.performance else None
        if avg_time and avg_time > SLOW_BLOCK_THRESHOLD_MS:
            memory *= 1.5
            cpu *= 1.3

        if "memory" in config:
            memory = float(config["memory"])

        return ResourceNeeds(
            memory=memory,
            cpu=cpu,
            storage=BASE_STORAGE_MB,
            network=BASE_NETWORK_MBPS,
            gpu=float(config.get("gpu", 0)),
        )

    def _estimate_node_duration(self, config: Dict[str, Any], block: BlockDefinition) -> float:
        base = DEFAULT_DURATION_MS
        if block.performance and block.performance.avg_execution_time:
            base = block.performance.avg_execution_time

        multiplier = 1.0
        iterations = config.get("iterations")
        if isinstance(iterations, (int, float)) and iterations > 1:
            multiplier *= iterations * 0.8

        data_size = config.get("dataSize", config.get("data_size"))
        if isinstance(data_size, (int, float)) and data_size > 0:
            multiplier *= math.log10(data_size / 1000 + 1)

        return base * max(0.1, multiplier)

    def _create_edge(
        self, edge_def: EdgeDefinition, blocks: Dict[str, BlockDefinition]
    ) -> ExecutionEdge:
        if edge_def.source not in blocks:
            raise GraphError(f"Edge {edge_def.id} references non-existent source node: {edge_def.source}")
        if edge_def.target not in blocks:
            raise GraphError(f"Edge {edge_def.id} references non-existent target node: {edge_def.target}")

        contract = self._resolve_data_contract(
            edge_def, blocks[edge_def.source], blocks[edge_def.target]
        )
        stream_config = StreamConfig(
            buffer_size=edge_def.buffer_size if edge_def.buffer_size is not None else 1024,
            flush_interval=edge_def.flush_interval if edge_def.flush_interval is not None else 100,
            compression=bool(edge_def.compression),
            backpressure=edge_def.backpressure if edge_def.backpressure is not None else True,
        )
        if stream_config.compression:
            contract.serialization.compression = True

        return ExecutionEdge(
            id=edge_def.id,
            source=edge_def.source,
            target=edge_def.target,
            source_output=edge_def.source_output,
            target_input=edge_def.target_input,
            data_contract=contract,
            stream_config=stream_config,
        )

    def _resolve_data_contract(
        self,
        edge_def: EdgeDefinition,
        source_block: BlockDefinition,
        target_block: BlockDefinition,
    ) -> DataContract:
        source_port = source_block.get_output(edge_def.source_output)
        target_port = target_block.get_input(edge_def.target_input)

        if source_port is None or target_port is None:
            missing = (
                f"output '{edge_def.source_output}' on {source_block.id}"
                if source_port is None
                else f"input '{edge_def.target_input}' on {target_block.id}"
            )
            raise GraphError(
                f"Data contract mismatch on edge {edge_def.id}: missing {missing}",
                details={"edge_id": edge_def.id},
            )

        if DataType.parse(source_port.type) != DataType.parse(target_port.type):
            logger.warning(
                f"Type mismatch on edge {edge_def.id}: "
                f"{source_port.type} -> {target_port.type}"
            )

        return self._port_contract(source_port)

    # Graph analysis

    def _build_dependency_map(
        self,
        definition: WorkflowDefinition,
        nodes: List[ExecutionNode],
        edges: List[ExecutionEdge],
    ) -> Dict[str, DependencyInfo]:
        dependencies = {node.id: DependencyInfo() for node in nodes}

        def link(source: str, target: str) -> None:
            if source not in dependencies[target].dependencies:
                dependencies[target].dependencies.append(source)
            if target not in dependencies[source].dependents:
                dependencies[source].dependents.append(target)

        for edge in edges:
            link(edge.source, edge.target)

        for node_def in definition.nodes:
            for dep in node_def.dependencies:
                if dep not in dependencies:
                    raise GraphError(f"Node {node_def.id} depends on unknown node: {dep}")
                link(dep, node_def.id)

        return dependencies

    def _topological_order(
        self, nodes: List[ExecutionNode], dependencies: Dict[str, DependencyInfo]
    ) -> List[str]:
        """Kahn's algorithm; leftover nodes mean the graph has a cycle."""
        in_degree = {node.id: len(dependencies[node.id].dependencies) for node in nodes}
        queue = deque(node.id for node in nodes if in_degree[node.id] == 0)
        order: List[str] = []

        while queue:
            node_id = queue.popleft()
            order.append(node_id)
            for dependent in dependencies[node_id].dependents:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        if len(order) != len(nodes):
            cyclic = sorted(node_id for node_id, degree in in_degree.items() if degree > 0)
            raise GraphError(f"Workflow contains a cycle through: {cyclic}")

        return order

    def _assign_depths(self, order: List[str], dependencies: Dict[str, DependencyInfo]) -> None:
        for node_id in order:
            info = dependencies[node_id]
            if info.dependencies:
                info.depth = 1 + max(dependencies[dep].depth for dep in info.dependencies)
            else:
                info.depth = 0

    def _mark_critical_path(self, dependencies: Dict[str, DependencyInfo]) -> None:
        """Flag nodes in the deepest fifth of the graph.

        This is a depth-percentile heuristic, not a longest-path computation.
        """
        max_depth = max(info.depth for info in dependencies.values())
        for info in dependencies.values():
            info.critical_path = max_depth > 0 and info.depth / max_depth > CRITICAL_DEPTH_RATIO

    def _check_reachability(
        self,
        nodes: List[ExecutionNode],
        entry_points: List[str],
        dependencies: Dict[str, DependencyInfo],
    ) -> None:
        reached = set(entry_points)
        stack = list(entry_points)
        while stack:
            for dependent in dependencies[stack.pop()].dependents:
                if dependent not in reached:
                    reached.add(dependent)
                    stack.append(dependent)

        unreachable = [node.id for node in nodes if node.id not in reached]
        if unreachable:
            raise GraphError(f"Nodes unreachable from any entry point: {unreachable}")

    def _identify_parallel_groups(
        self, nodes: List[ExecutionNode], dependencies: Dict[str, DependencyInfo]
    ) -> List[ParallelGroup]:
        """Greedy clustering of nodes that share the same dependency set."""
        groups: List[ParallelGroup] = []
        visited = set()

        for node in nodes:
            if node.id in visited:
                continue
            visited.add(node.id)
            start_deps = set(dependencies[node.id].dependencies)
            members = [node.id]

            for other in nodes:
                if other.id in visited:
                    continue
                if set(dependencies[other.id].dependencies) == start_deps:
                    members.append(other.id)
                    visited.add(other.id)

            if len(members) > 1:
                groups.append(
                    ParallelGroup(
                        id=f"group_{len(groups)}",
                        node_ids=members,
                        max_concurrency=min(len(members), 4),
                    )
                )

        return groups

    def _aggregate_resources(self, nodes: List[ExecutionNode]) -> ResourceRequirements:
        return ResourceRequirements(
            total_memory=sum(n.resource_needs.memory for n in nodes),
            peak_memory=max((n.resource_needs.memory for n in nodes), default=0.0),
            cpu_cores=sum(n.resource_needs.cpu for n in nodes),
            storage=sum(n.resource_needs.storage for n in nodes),
            network_bandwidth=max((n.resource_needs.network for n in nodes), default=0.0),
        )

    def _estimate_duration(self, dag: ExecutionDAG) -> float:
        critical = [
            node.estimated_duration
            for node in dag.nodes
            if dag.dependencies[node.id].critical_path
        ]
        if critical:
            return sum(critical)
        return max((node.estimated_duration for node in dag.nodes), default=0.0)
