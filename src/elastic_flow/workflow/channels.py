"""
Data Channel Manager - buffered, validated transfer along graph edges.

A channel belongs to one edge of one execution. Writes are validated
against the edge's data contract, serialized per its serialization policy
and appended to a pending buffer. Flushing delivers pending frames, in
order, to the queue the target node reads from. A flush happens on demand,
when the pending bytes exceed the buffer size (with backpressure on), or
when the flush interval has elapsed since the previous flush.
"""

import json
import re
import time
import zlib
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional

from cryptography.fernet import Fernet
from loguru import logger

from ..errors import ChannelError, DataValidationError
from .models import (
    DataContract,
    DataType,
    ExecutionEdge,
    SerializationFormat,
    StreamConfig,
    ValidationRule,
    ValidationRuleType,
)

CustomValidator = Callable[[Any, ValidationRule], bool]

# Leading byte of every RAW frame
RAW_BYTES_FRAME = b"\x00"
RAW_JSON_FRAME = b"\x01"


@dataclass
class DataChannel:
    id: str
    source: str
    target: str
    contract: DataContract
    config: StreamConfig
    pending: List[bytes] = field(default_factory=list)
    pending_size: int = 0
    delivered: Deque[bytes] = field(default_factory=deque)
    last_flush: float = field(default_factory=time.monotonic)
    bytes_written: int = 0
    messages_written: int = 0
    flushes: int = 0


class DataChannelManager:
    """Owns every open data channel of the engine."""

    def __init__(self, encryption_key: Optional[bytes] = None):
        self._channels: Dict[str, DataChannel] = {}
        self._fernet = Fernet(encryption_key or Fernet.generate_key())
        self._validators: Dict[str, CustomValidator] = {}

        self.stats = {
            "channels_created": 0,
            "channels_closed": 0,
            "messages_written": 0,
            "messages_read": 0,
            "validation_failures": 0,
            "forced_flushes": 0,
        }

    def register_validator(self, name: str, validator: CustomValidator) -> None:
        """Register a named check usable from ``custom`` validation rules."""
        self._validators[name] = validator

    def create_channel(
        self,
        channel_id: str,
        edge: ExecutionEdge,
        contract: Optional[DataContract] = None,
        stream_config: Optional[StreamConfig] = None,
    ) -> DataChannel:
        if channel_id in self._channels:
            raise ChannelError(f"Channel already exists: {channel_id}")

        channel = DataChannel(
            id=channel_id,
            source=edge.source,
            target=edge.target,
            contract=contract or edge.data_contract,
            config=stream_config or edge.stream_config,
        )
        self._channels[channel_id] = channel
        self.stats["channels_created"] += 1
        logger.debug(f"Created data channel {channel_id}: {edge.source} -> {edge.target}")
        return channel

    def has_channel(self, channel_id: str) -> bool:
        return channel_id in self._channels

    def _get(self, channel_id: str) -> DataChannel:
        channel = self._channels.get(channel_id)
        if channel is None:
            raise ChannelError(f"Channel not found: {channel_id}")
        return channel

    def write(self, channel_id: str, data: Any) -> None:
        """Validate, serialize and buffer one value.

        Raises:
            ChannelError: If the channel does not exist
            DataValidationError: If the value violates the channel contract
        """
        channel = self._get(channel_id)

        try:
            self.validate(data, channel.contract)
        except DataValidationError:
            self.stats["validation_failures"] += 1
            raise

        frame = self._serialize(data, channel.contract)
        channel.pending.append(frame)
        channel.pending_size += len(frame)
        channel.bytes_written += len(frame)
        channel.messages_written += 1
        self.stats["messages_written"] += 1

        if channel.config.backpressure and channel.pending_size > channel.config.buffer_size:
            self.stats["forced_flushes"] += 1
            self._flush(channel)
        elif (time.monotonic() - channel.last_flush) * 1000 > channel.config.flush_interval:
            self._flush(channel)

    def read(self, channel_id: str) -> Optional[Any]:
        """Pop the oldest delivered value, or None when nothing is delivered."""
        channel = self._get(channel_id)
        if not channel.delivered:
            return None
        self.stats["messages_read"] += 1
        return self._deserialize(channel.delivered.popleft(), channel.contract)

    def flush(self, channel_id: str) -> int:
        """Deliver pending frames; returns the number delivered."""
        return self._flush(self._get(channel_id))

    def _flush(self, channel: DataChannel) -> int:
        count = len(channel.pending)
        channel.delivered.extend(channel.pending)
        channel.pending = []
        channel.pending_size = 0
        channel.last_flush = time.monotonic()
        channel.flushes += 1
        if count:
            logger.trace(f"Flushed {count} frames on channel {channel.id}")
        return count

    def close_channel(self, channel_id: str) -> bool:
        channel = self._channels.pop(channel_id, None)
        if channel is None:
            return False
        self.stats["channels_closed"] += 1
        logger.debug(f"Closed data channel {channel_id}")
        return True

    def pending_count(self, channel_id: str) -> int:
        return len(self._get(channel_id).pending)

    def delivered_count(self, channel_id: str) -> int:
        return len(self._get(channel_id).delivered)

    # Validation

    def validate(self, data: Any, contract: DataContract) -> None:
        if data is None:
            if contract.optional:
                return
            raise DataValidationError(
                f"Missing value for required contract '{contract.name}'",
                details={"contract": contract.name},
            )

        if not _matches_type(data, contract.type):
            raise DataValidationError(
                f"Data type mismatch on '{contract.name}': expected {contract.type.value}, "
                f"got {type(data).__name__}",
                details={"contract": contract.name, "expected": contract.type.value},
            )

        for rule in contract.validation:
            self._apply_rule(data, rule, contract)

    def _apply_rule(self, data: Any, rule: ValidationRule, contract: DataContract) -> None:
        failed = False
        if rule.type == ValidationRuleType.REQUIRED:
            failed = data in ("", [], {})
        elif rule.type == ValidationRuleType.TYPE:
            failed = not _matches_type(data, DataType.parse(rule.value))
        elif rule.type == ValidationRuleType.FORMAT:
            failed = not (isinstance(data, str) and re.fullmatch(str(rule.value), data))
        elif rule.type == ValidationRuleType.RANGE:
            bounds = rule.value or {}
            measured = data if isinstance(data, (int, float)) else _length(data)
            if measured is not None:
                low, high = bounds.get("min"), bounds.get("max")
                failed = (low is not None and measured < low) or (
                    high is not None and measured > high
                )
        elif rule.type == ValidationRuleType.CUSTOM:
            validator = self._validators.get(str(rule.value))
            if validator is None:
                raise DataValidationError(f"Unknown custom validator: {rule.value}")
            failed = not validator(data, rule)

        if failed:
            raise DataValidationError(
                rule.message
                or f"Validation rule '{rule.type.value}' failed on '{contract.name}'",
                details={"contract": contract.name, "rule": rule.type.value},
            )

    # Serialization

    def _serialize(self, data: Any, contract: DataContract) -> bytes:
        policy = contract.serialization
        raw = policy.format == SerializationFormat.RAW
        if raw and isinstance(data, (bytes, bytearray)):
            payload = RAW_BYTES_FRAME + bytes(data)
        else:
            try:
                payload = json.dumps(data, default=_json_default).encode("utf-8")
            except (TypeError, ValueError) as e:
                raise DataValidationError(
                    f"Cannot serialize value for '{contract.name}': {e}"
                ) from e
            if raw:
                payload = RAW_JSON_FRAME + payload

        if policy.compression:
            payload = zlib.compress(payload)
        if policy.encryption:
            payload = self._fernet.encrypt(payload)
        return payload

    def _deserialize(self, payload: bytes, contract: DataContract) -> Any:
        policy = contract.serialization
        if policy.encryption:
            payload = self._fernet.decrypt(payload)
        if policy.compression:
            payload = zlib.decompress(payload)
        if policy.format == SerializationFormat.RAW:
            flag, body = payload[:1], payload[1:]
            if flag == RAW_BYTES_FRAME:
                return body
            if flag != RAW_JSON_FRAME:
                raise ChannelError(f"Corrupt frame on raw channel '{contract.name}'")
            return json.loads(body)
        return json.loads(payload)

    def get_stats(self) -> Dict[str, Any]:
        return {**self.stats, "open_channels": len(self._channels)}


def _length(data: Any) -> Optional[int]:
    try:
        return len(data)
    except TypeError:
        return None


def _json_default(value: Any) -> Any:
    if hasattr(value, "tolist"):
        return value.tolist()
    if isinstance(value, (set, tuple)):
        return list(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _matches_type(data: Any, data_type: DataType) -> bool:
    if data_type == DataType.TEXT:
        return isinstance(data, str)
    if data_type in (DataType.BINARY, DataType.IMAGE, DataType.AUDIO, DataType.VIDEO):
        return isinstance(data, (bytes, bytearray, str, dict, list))
    if data_type == DataType.TENSOR:
        return isinstance(data, (list, tuple)) or hasattr(data, "shape")
    if data_type == DataType.DATAFRAME:
        return isinstance(data, (dict, list)) or hasattr(data, "columns")
    if data_type == DataType.STREAM:
        return isinstance(data, (list, tuple, str, bytes, dict))
    return True
