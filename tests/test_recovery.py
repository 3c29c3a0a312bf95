"""Tests for failure handling, alternative paths and rollback."""

import pytest

from elastic_flow.errors import (
    ErrorCode,
    ExecutionError,
    FatalNodeError,
    NodeTimeoutError,
    ResourceExhaustedError,
    TemporaryFailure,
)
from elastic_flow.metrics import MetricsCollector
from elastic_flow.workflow.models import (
    AlternativePathType,
    ErrorSuggestion,
    ExecutionStatus,
    NodeExecutionStatus,
    RecoverySuggestionType,
    ResourceAllocation,
    ResourceNeeds,
)
from elastic_flow.workflow.recovery import RecoveryManager


@pytest.fixture
def recovery():
    return RecoveryManager()


@pytest.fixture
def chain_context(builder, chain_definition, make_context):
    return make_context(builder.build(chain_definition))


@pytest.fixture
def bypass_context(builder, steps, make_context):
    dag = builder.build(steps(["a", "b", "c"], [("a", "b"), ("b", "c"), ("a", "c")]))
    return make_context(dag)


class TestHandleError:
    @pytest.mark.asyncio
    async def test_retry_pending_does_not_isolate(self, recovery, chain_context):
        error = await recovery.handle_error(
            chain_context, "preprocess", TemporaryFailure("flaky"), retry_pending=True
        )

        assert error.code == ErrorCode.TEMPORARY_FAILURE
        assert error.node_id == "preprocess"
        assert error.attempt == 1
        assert error.alternative_paths == []
        assert not chain_context.dag.get_node("preprocess").is_isolated

    @pytest.mark.asyncio
    async def test_final_failure_isolates_node(self, recovery, chain_context):
        await recovery.handle_error(chain_context, "preprocess", RuntimeError("boom"))

        node = chain_context.dag.get_node("preprocess")
        assert node.is_isolated
        assert node.status == NodeExecutionStatus.FAILED
        assert recovery.stats["nodes_isolated"] == 1

    @pytest.mark.asyncio
    async def test_unrecoverable_error_raised(self, recovery, chain_context):
        with pytest.raises(ExecutionError) as exc_info:
            await recovery.handle_error(chain_context, "classify", FatalNodeError("dead"))

        assert exc_info.value.code == ErrorCode.FATAL_ERROR
        assert recovery.stats["unrecoverable_errors"] == 1
        assert not chain_context.dag.get_node("classify").is_isolated

    @pytest.mark.asyncio
    async def test_attempt_follows_retry_count(self, recovery, chain_context):
        chain_context.dag.get_node("classify").retry_count = 2
        error = await recovery.handle_error(
            chain_context, "classify", NodeTimeoutError("slow"), retry_pending=True
        )
        assert error.attempt == 3
        assert recovery.get_recovery_history(chain_context.id)[-1].attempt == 3

    @pytest.mark.asyncio
    async def test_suggestions_disabled(self, recovery, builder, chain_definition, make_context):
        context = make_context(
            builder.build(chain_definition), {"errorHandling": {"aiAssistedRecovery": False}}
        )
        error = await recovery.handle_error(context, "classify", NodeTimeoutError("slow"))
        assert error.suggestions == []


class TestSuggestions:
    def test_timeout_uses_node_timeout(self, recovery, chain_context):
        error = ExecutionError(ErrorCode.TIMEOUT, "slow", node_id="classify")
        suggestions = recovery.generate_suggestions(chain_context, error)

        assert suggestions[0].action == "update_timeout"
        assert suggestions[0].parameters["timeout_ms"] == 45000
        assert suggestions[0].auto_applicable

    def test_timeout_falls_back_to_execution_timeout(self, recovery, chain_context):
        error = ExecutionError(ErrorCode.TIMEOUT, "slow", node_id="input")
        suggestions = recovery.generate_suggestions(chain_context, error)
        assert suggestions[0].parameters["timeout_ms"] == int(1_800_000 * 1.5)

    def test_memory_error(self, recovery, chain_context):
        error = ExecutionError.from_exception(ResourceExhaustedError("oom"), "classify")
        suggestions = recovery.generate_suggestions(chain_context, error)

        assert suggestions[0].type == RecoverySuggestionType.RESOURCE
        assert suggestions[0].parameters["memory"] == pytest.approx(384 * 1.5)

    def test_validation_error_needs_manual_fix(self, recovery, chain_context):
        error = ExecutionError(ErrorCode.VALIDATION_ERROR, "bad input", node_id="classify")
        suggestions = recovery.generate_suggestions(chain_context, error)
        assert suggestions[0].action == "validate_inputs"
        assert not suggestions[0].auto_applicable

    def test_other_errors_suggest_alternative_path(self, recovery, chain_context):
        error = ExecutionError(ErrorCode.EXECUTION_ERROR, "boom", node_id="classify")
        suggestions = recovery.generate_suggestions(chain_context, error)
        assert suggestions[0].type == RecoverySuggestionType.ALTERNATIVE

    @pytest.mark.asyncio
    async def test_successful_fix_is_suggested_again(self, recovery, chain_context):
        error = await recovery.handle_error(
            chain_context, "classify", NodeTimeoutError("slow"), retry_pending=True
        )
        assert recovery.apply_suggestion(chain_context, "classify", error.suggestions[0])
        recovery.mark_recovered(chain_context, "classify")

        repeat = ExecutionError(ErrorCode.TIMEOUT, "slow again", node_id="preprocess")
        suggestions = recovery.generate_suggestions(chain_context, repeat)

        assert suggestions[0].from_history
        assert suggestions[0].confidence == pytest.approx(0.9)
        assert suggestions[0].action == "update_timeout"
        assert [s.confidence for s in suggestions] == sorted(
            (s.confidence for s in suggestions), reverse=True
        )


class TestApplySuggestion:
    def test_update_timeout(self, recovery, chain_context):
        suggestion = ErrorSuggestion(
            type=RecoverySuggestionType.CONFIG,
            description="more time",
            confidence=0.8,
            auto_applicable=True,
            action="update_timeout",
            parameters={"timeout_ms": 9000},
        )
        assert recovery.apply_suggestion(chain_context, "classify", suggestion)
        assert chain_context.dag.get_node("classify").config["timeout_ms"] == 9000

    def test_scale_memory(self, recovery, chain_context):
        suggestion = ErrorSuggestion(
            type=RecoverySuggestionType.RESOURCE,
            description="more memory",
            confidence=0.9,
            auto_applicable=True,
            action="scale_memory",
            parameters={"memory": 1000},
        )
        assert recovery.apply_suggestion(chain_context, "classify", suggestion)
        assert chain_context.dag.get_node("classify").resource_needs.memory == 1000

    def test_manual_suggestion_not_applied(self, recovery, chain_context):
        suggestion = ErrorSuggestion(
            type=RecoverySuggestionType.FIX,
            description="look at it",
            confidence=0.7,
            auto_applicable=False,
            action="validate_inputs",
        )
        assert not recovery.apply_suggestion(chain_context, "classify", suggestion)

    def test_unknown_action_not_applied(self, recovery, chain_context):
        suggestion = ErrorSuggestion(
            type=RecoverySuggestionType.ALTERNATIVE,
            description="route",
            confidence=0.6,
            auto_applicable=True,
            action="use_alternative_path",
        )
        assert not recovery.apply_suggestion(chain_context, "classify", suggestion)


class TestAlternativePaths:
    def test_bypass_and_substitute(self, recovery, bypass_context):
        paths = recovery.generate_alternative_paths(bypass_context.dag, "b")
        by_type = {path.type: path for path in paths}

        bypass = by_type[AlternativePathType.BYPASS]
        assert bypass.id == "bypass-b-c"
        assert bypass.nodes == ["a", "c"]
        assert bypass.confidence == pytest.approx(0.8)

        substitute = by_type[AlternativePathType.PARALLEL_SUBSTITUTE]
        assert substitute.nodes == ["a"]
        assert substitute.confidence == pytest.approx(0.7)

    def test_no_bypass_without_direct_edge(self, recovery, builder, steps):
        dag = builder.build(steps(["a", "b", "c"], [("a", "b"), ("b", "c")]))
        paths = recovery.generate_alternative_paths(dag, "b")
        assert all(path.type != AlternativePathType.BYPASS for path in paths)

    def test_isolated_nodes_are_not_substitutes(self, recovery, bypass_context):
        recovery.isolate_node(bypass_context.dag, "a")
        paths = recovery.generate_alternative_paths(bypass_context.dag, "b")
        assert all(path.type != AlternativePathType.PARALLEL_SUBSTITUTE for path in paths)

    def test_unknown_node(self, recovery, bypass_context):
        assert recovery.generate_alternative_paths(bypass_context.dag, "zzz") == []


class TestRollback:
    @pytest.mark.asyncio
    async def test_rollback_restores_tuning_and_keeps_outcomes(self, recovery, chain_context):
        recovery.save_working_state(chain_context)

        chain_context.configuration.max_parallel_blocks = 1
        node = chain_context.dag.get_node("classify")
        node.config["timeout_ms"] = 99999
        node.resource_needs.memory = 2000
        await recovery.handle_error(chain_context, "classify", RuntimeError("boom"))

        assert recovery.rollback_to_last_working_state(chain_context)

        assert chain_context.configuration.max_parallel_blocks == 4
        assert "timeout_ms" not in node.config
        assert node.resource_needs.memory == pytest.approx(384)
        assert node.is_isolated
        assert node.status == NodeExecutionStatus.FAILED
        assert recovery.stats["rollbacks"] == 1

    def test_rollback_restores_status_allocation_and_metadata(self, recovery, chain_context):
        allocation = ResourceAllocation(
            allocation_id="alloc-1",
            execution_id=chain_context.id,
            allocated=ResourceNeeds(memory=512, cpu=1),
            available=ResourceNeeds(memory=4096, cpu=4),
        )
        dag = chain_context.dag
        chain_context.status = ExecutionStatus.RUNNING
        chain_context.allocated_resources = allocation
        chain_context.metadata["optimizations"] = []
        recovery.save_working_state(chain_context)

        chain_context.status = ExecutionStatus.FAILED
        chain_context.allocated_resources = None
        chain_context.metadata["error"] = "boom"
        del chain_context.metadata["optimizations"]

        assert recovery.rollback_to_last_working_state(chain_context)

        assert chain_context.status == ExecutionStatus.RUNNING
        assert chain_context.allocated_resources is allocation
        assert set(chain_context.metadata) == {"dag", "optimizations"}
        assert chain_context.dag is dag

    def test_rollback_without_snapshot(self, recovery, chain_context):
        assert recovery.rollback_to_last_working_state(chain_context) is False

    @pytest.mark.asyncio
    async def test_clear_drops_history(self, recovery, chain_context):
        recovery.save_working_state(chain_context)
        await recovery.handle_error(chain_context, "classify", RuntimeError("boom"))

        recovery.clear(chain_context.id)

        assert recovery.get_recovery_history(chain_context.id) == []
        assert recovery.rollback_to_last_working_state(chain_context) is False


@pytest.mark.asyncio
async def test_recovery_actions_exported_as_metrics(chain_context):
    metrics = MetricsCollector(engine_name="test")
    recovery = RecoveryManager(metrics)

    await recovery.handle_error(chain_context, "classify", RuntimeError("boom"))

    output = metrics.serialize().decode()
    assert 'action="isolate"' in output
