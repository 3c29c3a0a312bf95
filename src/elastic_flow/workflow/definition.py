"""Declarative workflow definitions and structural validation.

A definition is what callers submit: a node list bound to block ids plus an
edge list binding named outputs to named inputs. Definitions may be built
directly, loaded from YAML, or converted from a canvas export.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class _DefinitionModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class NodeDefinition(_DefinitionModel):
    """A node bound to a reusable block."""

    id: str = Field(..., description="Node identifier, unique within the workflow")
    block_id: str = Field(..., description="Block registry identifier")
    config: Dict[str, Any] = Field(default_factory=dict)
    dependencies: List[str] = Field(default_factory=list)

    @field_validator("id", "block_id")
    @classmethod
    def validate_identifier(cls, v):
        if not v or not v.strip():
            raise ValueError("Identifier cannot be empty")
        return v.strip()


class EdgeDefinition(_DefinitionModel):
    """Binds a named output of ``source`` to a named input of ``target``."""

    id: str
    source: str
    target: str
    source_output: str = "output"
    target_input: str = "input"
    buffer_size: Optional[int] = Field(default=None, gt=0)
    flush_interval: Optional[int] = Field(default=None, ge=0)
    compression: Optional[bool] = None
    backpressure: Optional[bool] = None


class ValidationReport(BaseModel):
    valid: bool
    errors: List[str] = Field(default_factory=list)


class WorkflowDefinition(_DefinitionModel):
    """Workflow as submitted for execution."""

    id: str
    name: Optional[str] = None
    nodes: List[NodeDefinition] = Field(default_factory=list)
    edges: List[EdgeDefinition] = Field(default_factory=list)

    @classmethod
    def from_canvas(
        cls, payload: Dict[str, Any], workflow_id: Optional[str] = None
    ) -> "WorkflowDefinition":
        """Convert a canvas export into a workflow definition.

        Canvas nodes keep their block reference and configuration under
        ``data``; edges use ``sourceHandle``/``targetHandle`` for the port
        names, defaulting to ``output`` and ``input``.
        """
        nodes = []
        for raw in payload.get("nodes", []):
            data = raw.get("data", {})
            nodes.append(
                NodeDefinition(
                    id=raw["id"],
                    block_id=data.get("blockId") or data.get("block_id") or raw.get("type"),
                    config=data.get("config", {}),
                )
            )

        edges = []
        for raw in payload.get("edges", []):
            edges.append(
                EdgeDefinition(
                    id=raw.get("id") or f"{raw['source']}-{raw['target']}",
                    source=raw["source"],
                    target=raw["target"],
                    source_output=raw.get("sourceHandle") or "output",
                    target_input=raw.get("targetHandle") or "input",
                )
            )

        return cls(
            id=workflow_id or payload.get("id") or "canvas-workflow",
            name=payload.get("name"),
            nodes=nodes,
            edges=edges,
        )

    @classmethod
    def load_from_yaml(cls, yaml_path: str | Path) -> "WorkflowDefinition":
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Workflow file not found: {yaml_path}")

        with open(yaml_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        return cls.model_validate(data)


def validate_workflow(definition: WorkflowDefinition) -> ValidationReport:
    """Check the structure of a definition without resolving any block."""
    errors: List[str] = []

    if not definition.nodes:
        errors.append("Workflow must contain at least one node")
        return ValidationReport(valid=False, errors=errors)

    node_ids = [node.id for node in definition.nodes]
    seen = set()
    for node_id in node_ids:
        if node_id in seen:
            errors.append(f"Duplicate node id: {node_id}")
        seen.add(node_id)

    known = set(node_ids)
    adjacency: Dict[str, List[str]] = {node_id: [] for node_id in known}
    has_incoming = set()
    has_outgoing = set()

    for edge in definition.edges:
        if edge.source not in known:
            errors.append(f"Edge {edge.id} references non-existent source node: {edge.source}")
            continue
        if edge.target not in known:
            errors.append(f"Edge {edge.id} references non-existent target node: {edge.target}")
            continue
        adjacency[edge.source].append(edge.target)
        has_outgoing.add(edge.source)
        has_incoming.add(edge.target)

    for node in definition.nodes:
        for dep in node.dependencies:
            if dep not in known:
                errors.append(f"Node {node.id} depends on unknown node: {dep}")
                continue
            adjacency[dep].append(node.id)
            has_outgoing.add(dep)
            has_incoming.add(node.id)

    if len(known) > 1:
        orphaned = sorted(known - has_incoming - has_outgoing)
        if orphaned:
            errors.append(f"Orphaned nodes found: {orphaned}")

    if _has_cycle(adjacency):
        errors.append("Workflow contains cycles")
    else:
        if not known - has_incoming:
            errors.append("Workflow has no entry point")
        if not known - has_outgoing:
            errors.append("Workflow has no exit point")

    return ValidationReport(valid=not errors, errors=errors)


def _has_cycle(adjacency: Dict[str, List[str]]) -> bool:
    """Check for cycles using DFS."""
    WHITE, GRAY, BLACK = 0, 1, 2
    colors = {node_id: WHITE for node_id in adjacency}

    for root in adjacency:
        if colors[root] != WHITE:
            continue
        stack = [(root, iter(adjacency[root]))]
        colors[root] = GRAY
        while stack:
            node_id, children = stack[-1]
            for child in children:
                if colors[child] == GRAY:
                    return True  # Back edge found
                if colors[child] == WHITE:
                    colors[child] = GRAY
                    stack.append((child, iter(adjacency[child])))
                    break
            else:
                colors[node_id] = BLACK
                stack.pop()
    return False
