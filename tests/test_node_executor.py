"""Tests for handler-based node execution."""

import threading

import pytest

from elastic_flow.errors import FatalNodeError
from elastic_flow.workflow.models import BlockCategory
from elastic_flow.workflow.node_executor import HandlerNodeExecutor


@pytest.fixture
def node(builder, steps):
    return builder.build(steps(["a"], [])).get_node("a")


class TestHandlerNodeExecutor:
    @pytest.mark.asyncio
    async def test_block_handler_preferred_over_category(self, node):
        executor = HandlerNodeExecutor()
        executor.register_category(BlockCategory.UTILITY, lambda n, i: "category")
        executor.register_block("step", lambda n, i: "block")

        assert await executor.execute(node, {}) == "block"

    @pytest.mark.asyncio
    async def test_category_fallback(self, node):
        executor = HandlerNodeExecutor()
        executor.register_category(BlockCategory.UTILITY, lambda n, i: {"out": i["in"]})

        assert await executor.execute(node, {"in": 3}) == {"out": 3}

    @pytest.mark.asyncio
    async def test_sync_handler_runs_in_thread(self, node):
        executor = HandlerNodeExecutor()
        executor.register_block("step", lambda n, i: threading.current_thread().name)

        thread_name = await executor.execute(node, {})
        assert thread_name != threading.current_thread().name

    @pytest.mark.asyncio
    async def test_async_handler(self, node):
        async def handler(n, inputs):
            return n.id

        executor = HandlerNodeExecutor()
        executor.register_block("step", handler)
        assert await executor.execute(node, {}) == "a"

    @pytest.mark.asyncio
    async def test_missing_handler_is_fatal(self, node):
        with pytest.raises(FatalNodeError):
            await HandlerNodeExecutor().execute(node, {})

    @pytest.mark.asyncio
    async def test_stats_track_failures(self, node):
        def handler(n, inputs):
            raise ValueError("bad")

        executor = HandlerNodeExecutor(run_sync_in_thread=False)
        executor.register_block("step", handler)

        with pytest.raises(ValueError):
            await executor.execute(node, {})

        stats = executor.get_stats()
        assert stats["total_executions"] == 1
        assert stats["failed_executions"] == 1

    @pytest.mark.asyncio
    async def test_capabilities(self):
        executor = HandlerNodeExecutor()
        executor.register_block("step", lambda n, i: None)
        executor.register_category("utility", lambda n, i: None)

        capabilities = await executor.get_capabilities()
        assert capabilities == {
            "executor_type": "handler",
            "blocks": ["step"],
            "categories": ["utility"],
        }
