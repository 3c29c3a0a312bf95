"""Shared fixtures for the elastic-flow test suite."""

import asyncio
from typing import Any, Dict, Optional

import pytest

from elastic_flow.config import (
    EngineSettings,
    ExecutionConfiguration,
    MetricsConfig,
    SchedulerSettings,
    merge_with_default_config,
)
from elastic_flow.workflow.dag_builder import DAGBuilder
from elastic_flow.workflow.models import (
    BlockCategory,
    ExecutionContext,
    ExecutionDAG,
    ResourceAllocation,
    ResourceUtilization,
)
from elastic_flow.workflow.node_executor import HandlerNodeExecutor
from elastic_flow.workflow.registry import (
    BlockDefinition,
    InMemoryBlockRegistry,
    PerformanceHints,
    PortDefinition,
)
from elastic_flow.workflow.resources import UtilizationSampler


class FakeSampler(UtilizationSampler):
    """Returns whatever utilization the test sets."""

    def __init__(self, memory: float = 50.0, cpu: float = 50.0):
        self.memory = memory
        self.cpu = cpu
        self.calls = 0

    async def sample(self, allocation: ResourceAllocation) -> ResourceUtilization:
        self.calls += 1
        return ResourceUtilization(memory=self.memory, cpu=self.cpu)


def chain_workflow(workflow_id: str = "chain") -> Dict[str, Any]:
    """input -> preprocess -> classify -> output over the default blocks."""
    return {
        "id": workflow_id,
        "nodes": [
            {"id": "input", "blockId": "input-text", "config": {"value": "hello"}},
            {"id": "preprocess", "blockId": "data-preprocessor"},
            {"id": "classify", "blockId": "ml-classifier"},
            {"id": "output", "blockId": "output-display"},
        ],
        "edges": [
            {"id": "e1", "source": "input", "target": "preprocess",
             "sourceOutput": "text", "targetInput": "text"},
            {"id": "e2", "source": "preprocess", "target": "classify",
             "sourceOutput": "data", "targetInput": "data"},
            {"id": "e3", "source": "classify", "target": "output",
             "sourceOutput": "prediction", "targetInput": "result"},
        ],
    }


def step_workflow(node_ids, edges, workflow_id: str = "steps") -> Dict[str, Any]:
    """Workflow of ``step`` blocks linked out -> in along ``edges``."""
    return {
        "id": workflow_id,
        "nodes": [{"id": node_id, "blockId": "step"} for node_id in node_ids],
        "edges": [
            {"id": f"{source}-{target}", "source": source, "target": target,
             "sourceOutput": "out", "targetInput": "in"}
            for source, target in edges
        ],
    }


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.005) -> None:
    """Poll ``predicate`` until it holds or fail the test."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(interval)


@pytest.fixture
def registry():
    registry = InMemoryBlockRegistry.with_default_blocks()
    registry.register(
        BlockDefinition(
            id="step",
            name="Step",
            category=BlockCategory.UTILITY,
            inputs=[PortDefinition(name="in", required=False)],
            outputs=[PortDefinition(name="out")],
            performance=PerformanceHints(avg_execution_time=100, memory_usage=16),
        )
    )
    registry.register(
        BlockDefinition(
            id="merge",
            name="Merge",
            category=BlockCategory.UTILITY,
            inputs=[
                PortDefinition(name="left", required=False),
                PortDefinition(name="right", required=False),
            ],
            outputs=[PortDefinition(name="out")],
        )
    )
    return registry


@pytest.fixture
def builder(registry):
    return DAGBuilder(registry)


@pytest.fixture
def executor():
    """Executor with handlers for every test block; records call order."""
    executor = HandlerNodeExecutor(run_sync_in_thread=False)
    executor.calls = []

    def record(node, inputs):
        executor.calls.append(node.id)

    def input_text(node, inputs):
        record(node, inputs)
        return {"text": node.config.get("value", "hello")}

    def preprocess(node, inputs):
        record(node, inputs)
        return {"data": {"tokens": inputs["text"].split()}}

    def classify(node, inputs):
        record(node, inputs)
        return {"prediction": {"label": "greeting", "tokens": inputs["data"]["tokens"]}}

    def display(node, inputs):
        record(node, inputs)
        return {"displayed": inputs["result"]}

    def step(node, inputs):
        record(node, inputs)
        return {"out": node.id}

    executor.register_block("input-text", input_text)
    executor.register_block("data-preprocessor", preprocess)
    executor.register_block("ml-classifier", classify)
    executor.register_block("output-display", display)
    executor.register_block("step", step)
    executor.register_block("merge", step)
    return executor


@pytest.fixture
def make_context():
    def factory(
        dag: ExecutionDAG,
        config: Optional[Dict[str, Any]] = None,
        execution_id: str = "exec-1",
    ) -> ExecutionContext:
        configuration = merge_with_default_config(config) if config else ExecutionConfiguration()
        return ExecutionContext(
            id=execution_id,
            workflow_id=dag.workflow_id,
            configuration=configuration,
            metadata={"dag": dag},
        )

    return factory


@pytest.fixture
def fast_settings():
    """Engine settings with a short scheduler tick."""
    return EngineSettings(
        scheduler=SchedulerSettings(tick_interval=0.01),
        metrics=MetricsConfig(enabled=True, engine_name="test-engine"),
        eviction_grace_period=60.0,
    )


@pytest.fixture
def fake_sampler():
    return FakeSampler()


@pytest.fixture
def chain_definition():
    return chain_workflow()


@pytest.fixture
def steps():
    """Factory for ``step`` block workflows."""
    return step_workflow


@pytest.fixture
def until():
    return wait_until
