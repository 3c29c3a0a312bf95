"""Block registry client.

The execution core only needs to look blocks up by id; the catalog itself
lives elsewhere. ``InMemoryBlockRegistry`` is the default client and can be
populated in code or from a YAML catalog file.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .models import BlockCategory


class _BlockModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PortDefinition(_BlockModel):
    name: str
    type: str = "json"
    description: Optional[str] = None
    required: bool = True


class PerformanceHints(_BlockModel):
    """Historical performance of a block."""

    avg_execution_time: Optional[float] = Field(default=None, description="Milliseconds")
    memory_usage: Optional[float] = Field(default=None, description="MB")


class BlockErrorHandling(_BlockModel):
    retryable: bool = True
    timeout: Optional[int] = Field(default=None, description="Milliseconds")


class BlockDefinition(_BlockModel):
    """Declared contract of a reusable processing block."""

    id: str
    name: str
    category: BlockCategory = BlockCategory.CUSTOM
    inputs: List[PortDefinition] = Field(default_factory=list)
    outputs: List[PortDefinition] = Field(default_factory=list)
    performance: Optional[PerformanceHints] = None
    error_handling: Optional[BlockErrorHandling] = None

    def get_input(self, name: str) -> Optional[PortDefinition]:
        return next((port for port in self.inputs if port.name == name), None)

    def get_output(self, name: str) -> Optional[PortDefinition]:
        return next((port for port in self.outputs if port.name == name), None)


class BlockRegistryClient(ABC):
    """Lookup service for block contracts."""

    @abstractmethod
    def get_block(self, block_id: str) -> Optional[BlockDefinition]:
        """Return the block with the given id, or None if it is unknown."""

    def list_blocks(self) -> List[BlockDefinition]:
        return []


class InMemoryBlockRegistry(BlockRegistryClient):
    """Registry backed by a dictionary of block definitions."""

    def __init__(self, blocks: Optional[List[BlockDefinition]] = None):
        self._blocks: Dict[str, BlockDefinition] = {}
        for block in blocks or []:
            self.register(block)

    def register(self, block: BlockDefinition) -> None:
        if block.id in self._blocks:
            logger.debug(f"Replacing block definition {block.id}")
        self._blocks[block.id] = block

    def unregister(self, block_id: str) -> bool:
        return self._blocks.pop(block_id, None) is not None

    def get_block(self, block_id: str) -> Optional[BlockDefinition]:
        return self._blocks.get(block_id)

    def list_blocks(self) -> List[BlockDefinition]:
        return list(self._blocks.values())

    def __contains__(self, block_id: str) -> bool:
        return block_id in self._blocks

    def __len__(self) -> int:
        return len(self._blocks)

    @classmethod
    def load_from_yaml(cls, yaml_path: str | Path) -> "InMemoryBlockRegistry":
        """Load a block catalog file with a top-level ``blocks`` list."""
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Block catalog not found: {yaml_path}")

        with open(yaml_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        blocks = [BlockDefinition.model_validate(raw) for raw in data.get("blocks", [])]
        logger.info(f"Loaded {len(blocks)} block definitions from {yaml_path}")
        return cls(blocks)

    @classmethod
    def with_default_blocks(cls) -> "InMemoryBlockRegistry":
        """Registry preloaded with a small set of general-purpose blocks."""
        return cls(
            [
                BlockDefinition(
                    id="input-text",
                    name="Text Input",
                    category=BlockCategory.INPUT,
                    outputs=[PortDefinition(name="text", type="text")],
                    performance=PerformanceHints(avg_execution_time=100, memory_usage=32),
                ),
                BlockDefinition(
                    id="data-preprocessor",
                    name="Data Preprocessor",
                    category=BlockCategory.DATA_PROCESSOR,
                    inputs=[PortDefinition(name="text", type="text")],
                    outputs=[PortDefinition(name="data", type="json")],
                    performance=PerformanceHints(avg_execution_time=500, memory_usage=128),
                ),
                BlockDefinition(
                    id="ml-classifier",
                    name="ML Classifier",
                    category=BlockCategory.ML_ALGORITHM,
                    inputs=[PortDefinition(name="data", type="json")],
                    outputs=[PortDefinition(name="prediction", type="json")],
                    performance=PerformanceHints(avg_execution_time=2000, memory_usage=512),
                    error_handling=BlockErrorHandling(retryable=True, timeout=30000),
                ),
                BlockDefinition(
                    id="output-display",
                    name="Output Display",
                    category=BlockCategory.OUTPUT,
                    inputs=[PortDefinition(name="result", type="json")],
                    performance=PerformanceHints(avg_execution_time=50, memory_usage=16),
                ),
            ]
        )
