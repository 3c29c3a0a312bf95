"""
Node Executor - pluggable execution of individual nodes.

The scheduler never computes anything itself: it hands a node and its
prepared inputs to a ``NodeExecutor`` and records whatever comes back.
Failures are signalled by raising; timeouts are enforced by the scheduler.
"""

import asyncio
import inspect
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from loguru import logger

from ..errors import FatalNodeError
from .models import ExecutionNode

NodeHandler = Callable[
    [ExecutionNode, Dict[str, Any]], Union[Any, Awaitable[Any]]
]


class NodeExecutor(ABC):
    """Abstract base class for node executors."""

    @abstractmethod
    async def execute(self, node: ExecutionNode, inputs: Dict[str, Any]) -> Any:
        """Execute a node with the given inputs.

        Args:
            node: Node to execute, with its resolved configuration
            inputs: Values keyed by the node's input names

        Returns:
            Node outputs, usually keyed by output name

        Raises:
            Exception: Any failure; the scheduler classifies it
        """

    async def get_capabilities(self) -> Dict[str, Any]:
        return {}

    async def cleanup(self):
        """Clean up executor resources."""


class HandlerNodeExecutor(NodeExecutor):
    """
    Dispatches nodes to registered handler callables.

    Handlers are looked up by block id first, then by block category.
    Synchronous handlers run in the default thread pool so they cannot stall
    the event loop.
    """

    def __init__(self, run_sync_in_thread: bool = True):
        self._block_handlers: Dict[str, NodeHandler] = {}
        self._category_handlers: Dict[str, NodeHandler] = {}
        self.run_sync_in_thread = run_sync_in_thread

        self.node_stats = {
            "total_executions": 0,
            "successful_executions": 0,
            "failed_executions": 0,
            "average_execution_time": 0.0,
        }

    def register_block(self, block_id: str, handler: NodeHandler) -> None:
        self._block_handlers[block_id] = handler

    def register_category(self, category: str, handler: NodeHandler) -> None:
        self._category_handlers[getattr(category, "value", category)] = handler

    def resolve_handler(self, node: ExecutionNode) -> Optional[NodeHandler]:
        return self._block_handlers.get(node.block_id) or self._category_handlers.get(
            node.type
        )

    async def execute(self, node: ExecutionNode, inputs: Dict[str, Any]) -> Any:
        handler = self.resolve_handler(node)
        if handler is None:
            raise FatalNodeError(
                f"No handler registered for block '{node.block_id}' ({node.type})",
                details={"node_id": node.id, "block_id": node.block_id},
            )

        logger.debug(f"Executing node {node.id} with handler for {node.block_id}")

        start_time = time.time()
        self.node_stats["total_executions"] += 1
        try:
            if inspect.iscoroutinefunction(handler):
                result = await handler(node, inputs)
            elif self.run_sync_in_thread:
                result = await asyncio.to_thread(handler, node, inputs)
            else:
                result = handler(node, inputs)
                if inspect.isawaitable(result):
                    result = await result
        except Exception:
            self.node_stats["failed_executions"] += 1
            raise
        finally:
            self._update_average(time.time() - start_time)

        self.node_stats["successful_executions"] += 1
        return result

    def _update_average(self, execution_time: float) -> None:
        prev_avg = self.node_stats["average_execution_time"]
        total_execs = self.node_stats["total_executions"]
        self.node_stats["average_execution_time"] = (
            prev_avg * (total_execs - 1) + execution_time
        ) / total_execs

    async def get_capabilities(self) -> Dict[str, Any]:
        return {
            "executor_type": "handler",
            "blocks": sorted(self._block_handlers),
            "categories": sorted(self._category_handlers),
        }

    def get_stats(self) -> Dict[str, Any]:
        return self.node_stats.copy()
