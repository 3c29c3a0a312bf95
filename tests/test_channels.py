"""Tests for edge data channels."""

import time

import pytest
from cryptography.fernet import Fernet

from elastic_flow.errors import ChannelError, DataValidationError
from elastic_flow.workflow.channels import DataChannelManager
from elastic_flow.workflow.models import (
    DataContract,
    DataType,
    ExecutionEdge,
    SerializationConfig,
    SerializationFormat,
    StreamConfig,
    ValidationRule,
    ValidationRuleType,
)


def make_edge(contract=None, stream_config=None):
    return ExecutionEdge(
        id="e1",
        source="a",
        target="b",
        data_contract=contract or DataContract(name="out"),
        stream_config=stream_config or StreamConfig(),
    )


@pytest.fixture
def manager():
    return DataChannelManager()


class TestChannelLifecycle:
    def test_create_and_close(self, manager):
        manager.create_channel("x:e1", make_edge())
        assert manager.has_channel("x:e1")

        assert manager.close_channel("x:e1") is True
        assert manager.close_channel("x:e1") is False
        assert manager.get_stats()["open_channels"] == 0

    def test_duplicate_channel_rejected(self, manager):
        manager.create_channel("x:e1", make_edge())
        with pytest.raises(ChannelError):
            manager.create_channel("x:e1", make_edge())

    def test_unknown_channel(self, manager):
        with pytest.raises(ChannelError):
            manager.write("missing", 1)
        with pytest.raises(ChannelError):
            manager.read("missing")


class TestBuffering:
    def test_values_buffered_until_flush(self, manager):
        manager.create_channel("c", make_edge(stream_config=StreamConfig(flush_interval=60000)))
        manager.write("c", {"n": 1})
        manager.write("c", {"n": 2})

        assert manager.pending_count("c") == 2
        assert manager.read("c") is None

        assert manager.flush("c") == 2
        assert manager.read("c") == {"n": 1}
        assert manager.read("c") == {"n": 2}
        assert manager.read("c") is None

    def test_backpressure_forces_flush(self, manager):
        config = StreamConfig(buffer_size=10, flush_interval=60000, backpressure=True)
        manager.create_channel("c", make_edge(stream_config=config))

        manager.write("c", "a value larger than ten bytes")

        assert manager.pending_count("c") == 0
        assert manager.delivered_count("c") == 1
        assert manager.stats["forced_flushes"] == 1

    def test_no_forced_flush_without_backpressure(self, manager):
        config = StreamConfig(buffer_size=10, flush_interval=60000, backpressure=False)
        manager.create_channel("c", make_edge(stream_config=config))

        manager.write("c", "a value larger than ten bytes")
        assert manager.pending_count("c") == 1

    def test_elapsed_flush_interval_flushes(self, manager):
        manager.create_channel("c", make_edge(stream_config=StreamConfig(flush_interval=1)))
        time.sleep(0.01)
        manager.write("c", 42)
        assert manager.delivered_count("c") == 1

    def test_fifo_order_preserved(self, manager):
        manager.create_channel("c", make_edge(stream_config=StreamConfig(flush_interval=60000)))
        for i in range(5):
            manager.write("c", i)
        manager.flush("c")
        assert [manager.read("c") for _ in range(5)] == [0, 1, 2, 3, 4]


class TestSerialization:
    def test_compressed_and_encrypted(self):
        manager = DataChannelManager(encryption_key=Fernet.generate_key())
        contract = DataContract(
            name="out",
            serialization=SerializationConfig(compression=True, encryption=True),
        )
        manager.create_channel("c", make_edge(contract))
        payload = {"values": list(range(50))}

        manager.write("c", payload)
        manager.flush("c")
        assert manager.read("c") == payload

    def test_raw_bytes_pass_through(self, manager):
        contract = DataContract(
            name="frame",
            type=DataType.BINARY,
            serialization=SerializationConfig(format=SerializationFormat.RAW),
        )
        manager.create_channel("c", make_edge(contract))

        manager.write("c", b"\x00\xff\x10")
        manager.flush("c")
        assert manager.read("c") == b"\x00\xff\x10"

    @pytest.mark.parametrize("frame", [b"42", b"[]", b"{\"a\": 1}", b"null"])
    def test_json_looking_bytes_stay_bytes(self, manager, frame):
        contract = DataContract(
            name="frame",
            type=DataType.BINARY,
            serialization=SerializationConfig(format=SerializationFormat.RAW, compression=True),
        )
        manager.create_channel("c", make_edge(contract))

        manager.write("c", frame)
        manager.write("c", [1, 2])
        manager.flush("c")

        assert manager.read("c") == frame
        assert manager.read("c") == [1, 2]

    def test_tuples_and_sets_become_lists(self, manager):
        manager.create_channel("c", make_edge())
        manager.write("c", {"pair": (1, 2), "tags": {"x"}})
        manager.flush("c")
        assert manager.read("c") == {"pair": [1, 2], "tags": ["x"]}

    def test_unserializable_value_rejected(self, manager):
        manager.create_channel("c", make_edge())
        with pytest.raises(DataValidationError):
            manager.write("c", object())


class TestValidation:
    def test_missing_required_value(self, manager):
        manager.create_channel("c", make_edge())
        with pytest.raises(DataValidationError):
            manager.write("c", None)
        assert manager.stats["validation_failures"] == 1

    def test_optional_contract_accepts_none(self, manager):
        manager.create_channel("c", make_edge(DataContract(name="out", optional=True)))
        manager.write("c", None)
        manager.flush("c")
        assert manager.delivered_count("c") == 1

    def test_text_type_mismatch(self, manager):
        manager.create_channel("c", make_edge(DataContract(name="t", type=DataType.TEXT)))
        with pytest.raises(DataValidationError, match="Data type mismatch"):
            manager.write("c", 5)

    def test_required_rule_rejects_empty(self, manager):
        contract = DataContract(name="t", validation=[ValidationRule(ValidationRuleType.REQUIRED)])
        manager.create_channel("c", make_edge(contract))
        with pytest.raises(DataValidationError):
            manager.write("c", "")

    def test_format_rule(self, manager):
        contract = DataContract(
            name="t",
            type=DataType.TEXT,
            validation=[ValidationRule(ValidationRuleType.FORMAT, r"[a-z]+", "lowercase only")],
        )
        manager.create_channel("c", make_edge(contract))
        manager.write("c", "abc")
        with pytest.raises(DataValidationError, match="lowercase only"):
            manager.write("c", "ABC")

    def test_range_rule_on_numbers_and_lengths(self, manager):
        contract = DataContract(
            name="r", validation=[ValidationRule(ValidationRuleType.RANGE, {"min": 1, "max": 3})]
        )
        manager.create_channel("c", make_edge(contract))
        manager.write("c", 2)
        manager.write("c", [1, 2])
        with pytest.raises(DataValidationError):
            manager.write("c", 10)
        with pytest.raises(DataValidationError):
            manager.write("c", [])

    def test_custom_rule(self, manager):
        manager.register_validator("even", lambda data, rule: data % 2 == 0)
        contract = DataContract(name="n", validation=[ValidationRule(ValidationRuleType.CUSTOM, "even")])
        manager.create_channel("c", make_edge(contract))

        manager.write("c", 4)
        with pytest.raises(DataValidationError):
            manager.write("c", 3)

    def test_unknown_custom_validator(self, manager):
        contract = DataContract(name="n", validation=[ValidationRule(ValidationRuleType.CUSTOM, "nope")])
        manager.create_channel("c", make_edge(contract))
        with pytest.raises(DataValidationError, match="Unknown custom validator"):
            manager.write("c", 1)
