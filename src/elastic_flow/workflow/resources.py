"""
Resource Manager - budgets the shared host pool across executions.

Each execution receives an allocation capped to a fraction of total system
capacity. While it runs, a monitoring task samples utilization and drives a
per-allocation scaling state machine. Scaling transitions are recorded and
handed to an optional policy hook; resizing is left to the embedding system.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Optional, Union

import psutil
from loguru import logger

from ..config import ResourceScalingConfig, SystemCapacity
from ..errors import ResourceAllocationError
from .models import (
    ResourceAllocation,
    ResourceNeeds,
    ResourceRequirements,
    ResourceUtilization,
    ScalingState,
    ScalingStatus,
)

# Both memory and cpu utilization must drop below this to scale down.
SCALE_DOWN_THRESHOLD = 30.0

ScalingHook = Callable[
    [ResourceAllocation, ScalingStatus], Union[None, Awaitable[None]]
]


class UtilizationSampler(ABC):
    """Source of live utilization figures for an allocation."""

    @abstractmethod
    async def sample(self, allocation: ResourceAllocation) -> ResourceUtilization:
        """Return utilization percentages relative to the allocation."""


class ProcessUtilizationSampler(UtilizationSampler):
    """Samples the current process through psutil."""

    def __init__(self):
        self._process = psutil.Process()
        self._process.cpu_percent(None)

    async def sample(self, allocation: ResourceAllocation) -> ResourceUtilization:
        rss_mb = self._process.memory_info().rss / (1024 * 1024)
        cpu_percent = self._process.cpu_percent(None)
        allocated = allocation.allocated

        memory = (rss_mb / allocated.memory * 100) if allocated.memory else 0.0
        cpu = (cpu_percent / allocated.cpu) if allocated.cpu else 0.0
        return ResourceUtilization(
            memory=min(memory, 100.0),
            cpu=min(cpu, 100.0),
            sampled_at=datetime.utcnow(),
        )


class ResourceManager:
    """
    Allocates and releases resource budgets from a global pool.

    The pool is the only state shared between concurrent executions, so all
    mutations happen under an ``asyncio.Lock``.
    """

    def __init__(
        self,
        capacity: Optional[SystemCapacity] = None,
        sampler: Optional[UtilizationSampler] = None,
        on_scaling: Optional[ScalingHook] = None,
    ):
        self.capacity = capacity or SystemCapacity()
        self.sampler = sampler or ProcessUtilizationSampler()
        self.on_scaling = on_scaling

        self._lock = asyncio.Lock()
        self._allocations: Dict[str, ResourceAllocation] = {}
        self._in_use = ResourceNeeds()
        self._monitors: Dict[str, asyncio.Task] = {}

        self.stats = {
            "allocations": 0,
            "releases": 0,
            "duplicate_releases": 0,
            "scaling_transitions": 0,
            "samples": 0,
        }

        logger.info(
            f"ResourceManager initialized: {self.capacity.memory}MB, "
            f"{self.capacity.cpu} cores"
        )

    def _free(self) -> ResourceNeeds:
        return ResourceNeeds(
            memory=self.capacity.memory - self._in_use.memory,
            cpu=self.capacity.cpu - self._in_use.cpu,
            storage=self.capacity.storage - self._in_use.storage,
            network=self.capacity.network - self._in_use.network,
        )

    async def allocate(
        self,
        requirements: ResourceRequirements,
        execution_id: Optional[str] = None,
        memory_limit: Optional[float] = None,
    ) -> ResourceAllocation:
        """
        Reserve a budget sized to the graph's aggregate requirements.

        Each dimension is capped at its share of total capacity (80% memory,
        cpu and network, 50% storage) and at what is still free in the pool.

        Raises:
            ResourceAllocationError: If no memory or cpu is left in the pool
        """
        async with self._lock:
            cap = self.capacity
            free = self._free()

            memory_ceiling = cap.memory * cap.memory_cap
            if memory_limit is not None:
                memory_ceiling = min(memory_ceiling, memory_limit)

            allocated = ResourceNeeds(
                memory=max(0.0, min(requirements.total_memory, memory_ceiling, free.memory)),
                cpu=max(0.0, min(requirements.cpu_cores, cap.cpu * cap.cpu_cap, free.cpu)),
                storage=max(0.0, min(requirements.storage, cap.storage * cap.storage_cap, free.storage)),
                network=max(
                    0.0,
                    min(requirements.network_bandwidth, cap.network * cap.network_cap, free.network),
                ),
            )

            if (requirements.total_memory > 0 and allocated.memory <= 0) or (
                requirements.cpu_cores > 0 and allocated.cpu <= 0
            ):
                raise ResourceAllocationError(
                    "Resource pool exhausted",
                    details={"free": free.to_dict(), "requested": requirements.to_dict()},
                )

            self._in_use.memory += allocated.memory
            self._in_use.cpu += allocated.cpu
            self._in_use.storage += allocated.storage
            self._in_use.network += allocated.network

            allocation = ResourceAllocation(
                allocation_id=str(uuid.uuid4()),
                execution_id=execution_id or "",
                allocated=allocated,
                available=self._free(),
                scaling=ScalingStatus(
                    next_evaluation=datetime.utcnow() + timedelta(seconds=30)
                ),
            )
            self._allocations[allocation.allocation_id] = allocation
            self.stats["allocations"] += 1

        logger.info(
            f"Allocated {allocated.memory:.0f}MB / {allocated.cpu:.1f} cores "
            f"for execution {allocation.execution_id}"
        )
        return allocation

    async def release(self, allocation: ResourceAllocation) -> bool:
        """Return an allocation to the pool.

        Returns:
            True on the first release, False if it was already released
        """
        async with self._lock:
            if allocation.released or allocation.allocation_id not in self._allocations:
                self.stats["duplicate_releases"] += 1
                logger.debug(f"Allocation {allocation.allocation_id} already released")
                return False

            self._allocations.pop(allocation.allocation_id)
            allocated = allocation.allocated
            self._in_use.memory = max(0.0, self._in_use.memory - allocated.memory)
            self._in_use.cpu = max(0.0, self._in_use.cpu - allocated.cpu)
            self._in_use.storage = max(0.0, self._in_use.storage - allocated.storage)
            self._in_use.network = max(0.0, self._in_use.network - allocated.network)
            allocation.released = True
            self.stats["releases"] += 1

        logger.info(f"Released resources for execution {allocation.execution_id}")
        return True

    def start_monitoring(
        self,
        execution_id: str,
        allocation: ResourceAllocation,
        scaling_config: Optional[ResourceScalingConfig] = None,
    ) -> None:
        """Begin periodic utilization sampling for an execution."""
        if execution_id in self._monitors:
            return

        scaling_config = scaling_config or ResourceScalingConfig()
        self._monitors[execution_id] = asyncio.create_task(
            self._monitor_loop(execution_id, allocation, scaling_config)
        )
        logger.debug(f"Started resource monitoring for {execution_id}")

    async def stop_monitoring(self, execution_id: str) -> bool:
        task = self._monitors.pop(execution_id, None)
        if task is None:
            return False

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.debug(f"Stopped resource monitoring for {execution_id}")
        return True

    def is_monitoring(self, execution_id: str) -> bool:
        return execution_id in self._monitors

    async def _monitor_loop(
        self,
        execution_id: str,
        allocation: ResourceAllocation,
        scaling_config: ResourceScalingConfig,
    ) -> None:
        while True:
            await asyncio.sleep(self.capacity.monitor_interval)
            try:
                allocation.utilization = await self.sampler.sample(allocation)
                self.stats["samples"] += 1
                if scaling_config.enabled:
                    await self.check_scaling_needs(allocation, scaling_config)
            except Exception as e:
                logger.error(f"Resource sampling failed for {execution_id}: {e}")

    async def check_scaling_needs(
        self,
        allocation: ResourceAllocation,
        scaling_config: Optional[ResourceScalingConfig] = None,
    ) -> ScalingStatus:
        """Advance the scaling state machine from the latest utilization sample."""
        scaling_config = scaling_config or ResourceScalingConfig()
        util = allocation.utilization
        status = allocation.scaling
        up_threshold = scaling_config.scale_threshold * 100
        now = datetime.utcnow()

        transition: Optional[ScalingState] = None
        if util.memory > up_threshold or util.cpu > up_threshold:
            if status.state == ScalingState.NONE:
                transition = ScalingState.SCALING_UP
                status.trigger = (
                    f"High resource utilization: CPU {util.cpu:.1f}%, Memory {util.memory:.1f}%"
                )
                status.next_evaluation = now + timedelta(milliseconds=scaling_config.scale_up_delay)
        elif util.memory < SCALE_DOWN_THRESHOLD and util.cpu < SCALE_DOWN_THRESHOLD:
            if status.state == ScalingState.NONE:
                transition = ScalingState.SCALING_DOWN
                status.trigger = (
                    f"Low resource utilization: CPU {util.cpu:.1f}%, Memory {util.memory:.1f}%"
                )
                status.next_evaluation = now + timedelta(milliseconds=scaling_config.scale_down_delay)
        else:
            status.state = ScalingState.NONE
            status.trigger = None

        if transition is not None:
            status.state = transition
            status.transitions += 1
            self.stats["scaling_transitions"] += 1
            logger.info(f"Resource scaling {transition.value} triggered: {status.trigger}")
            if self.on_scaling is not None:
                result = self.on_scaling(allocation, status)
                if asyncio.iscoroutine(result):
                    await result

        return status

    def get_allocation(self, allocation_id: str) -> Optional[ResourceAllocation]:
        return self._allocations.get(allocation_id)

    def get_system_usage(self) -> Dict[str, Dict[str, float]]:
        """Pool capacity, reserved and free figures."""
        return {
            "capacity": {
                "memory": float(self.capacity.memory),
                "cpu": float(self.capacity.cpu),
                "storage": float(self.capacity.storage),
                "network": float(self.capacity.network),
            },
            "in_use": self._in_use.to_dict(),
            "free": self._free().to_dict(),
        }

    async def shutdown(self) -> None:
        for execution_id in list(self._monitors):
            await self.stop_monitoring(execution_id)
        for allocation in list(self._allocations.values()):
            await self.release(allocation)
