"""Tests for optimization analysis and application."""

import pytest

from elastic_flow.errors import OptimizationError
from elastic_flow.workflow.models import (
    BlockCategory,
    EffortLevel,
    ImpactLevel,
    OptimizationSuggestion,
    SuggestionCategory,
)
from elastic_flow.workflow.optimizer import OptimizationAnalyzer
from elastic_flow.workflow.registry import BlockDefinition, PortDefinition


@pytest.fixture
def analyzer():
    return OptimizationAnalyzer()


def by_id(suggestions):
    return {s.id: s for s in suggestions}


class TestAnalysis:
    def test_suggestions_sorted_by_score(self, analyzer, builder, chain_definition):
        suggestions = analyzer.analyze(builder.build(chain_definition))
        scores = [s.score for s in suggestions]
        assert scores == sorted(scores, reverse=True)
        assert all(s.score == analyzer.score(s) for s in suggestions)

    def test_score_formula(self):
        suggestion = OptimizationSuggestion(
            id="s",
            category=SuggestionCategory.CACHING,
            impact=ImpactLevel.HIGH,
            effort=EffortLevel.LOW,
            description="",
            estimated_improvement=50,
            auto_applicable=True,
        )
        assert OptimizationAnalyzer.score(suggestion) == pytest.approx(3 * 3 * 0.5 + 0.5)

    def test_peak_memory_triggers_staging(self, analyzer, builder):
        dag = builder.build(
            {"id": "heavy", "nodes": [{"id": "big", "blockId": "step", "config": {"memory": 4000}}]}
        )
        staging = by_id(analyzer.analyze(dag))["resource-staging"]

        assert staging.category == SuggestionCategory.RESOURCE
        assert staging.impact == ImpactLevel.MEDIUM
        assert staging.details["strategy"] == "memory-staging"

    def test_sequential_chain_parallelization(self, analyzer, builder, steps):
        dag = builder.build(steps(["a", "b", "c", "d"], [("a", "b"), ("b", "c"), ("c", "d")]))
        suggestion = by_id(analyzer.analyze(dag))["parallelization-a"]

        assert suggestion.affected_nodes == ["b", "c"]
        assert suggestion.impact == ImpactLevel.MEDIUM
        assert suggestion.estimated_improvement == 30
        assert suggestion.details["original_chain"] == ["a", "b", "c", "d"]

    def test_stateful_nodes_not_parallelized(self, analyzer, builder):
        dag = builder.build(
            {
                "id": "stateful",
                "nodes": [
                    {"id": "a", "blockId": "step"},
                    {"id": "b", "blockId": "step", "config": {"stateful": True}, "dependencies": ["a"]},
                    {"id": "c", "blockId": "step", "dependencies": ["b"]},
                    {"id": "d", "blockId": "step", "dependencies": ["c"]},
                ],
            }
        )
        assert "parallelization-a" not in by_id(analyzer.analyze(dag))

    def test_expensive_deterministic_node_cached(self, analyzer, builder):
        dag = builder.build(
            {
                "id": "cache",
                "nodes": [
                    {"id": "fat", "blockId": "step", "config": {"memory": 600}},
                    {"id": "dice", "blockId": "step", "config": {"memory": 600, "random": True}},
                ],
            }
        )
        suggestions = by_id(analyzer.analyze(dag))
        assert "caching-fat" in suggestions
        assert "caching-dice" not in suggestions

    def test_processor_to_ml_edge_gets_data_suggestion(self, analyzer, builder, chain_definition):
        suggestion = by_id(analyzer.analyze(builder.build(chain_definition)))["data-e2"]
        assert suggestion.impact == ImpactLevel.HIGH
        assert suggestion.details["edge_id"] == "e2"

    def test_algorithm_suggestions(self, analyzer, builder, registry):
        registry.register(
            BlockDefinition(
                id="batch-model",
                name="Batch Model",
                category=BlockCategory.ML_ALGORITHM,
                inputs=[PortDefinition(name="batch")],
                outputs=[PortDefinition(name="scores")],
            )
        )
        dag = builder.build(
            {"id": "algo", "nodes": [{"id": "m", "blockId": "batch-model", "config": {"algorithm": "naive"}}]}
        )
        suggestions = by_id(analyzer.analyze(dag))

        assert not suggestions["algorithm-naive-m"].auto_applicable
        assert suggestions["algorithm-batch-m"].details["batch_size"] == 32

    def test_stats(self, analyzer, builder, chain_definition):
        suggestions = analyzer.analyze(builder.build(chain_definition))
        assert analyzer.get_stats()["analyses"] == 1
        assert analyzer.get_stats()["suggestions_generated"] == len(suggestions)


class TestApply:
    @pytest.fixture
    def attach(self, analyzer, make_context):
        def factory(dag, config=None):
            context = make_context(dag, config)
            context.metadata["optimizations"] = analyzer.analyze(dag)
            return context

        return factory

    def test_parallelization(self, analyzer, builder, steps, attach):
        dag = builder.build(steps(["a", "b", "c", "d"], [("a", "b"), ("b", "c"), ("c", "d")]))
        context = attach(dag, {"maxParallelBlocks": 1})

        analyzer.apply(context, "parallelization-a")

        assert context.configuration.max_parallel_blocks == 2
        group = dag.parallel_groups[-1]
        assert group.node_ids == ["b", "c"]
        assert group.resource_pool == "optimized"
        assert context.metadata["applied_optimizations"] == ["parallelization-a"]

    def test_caching(self, analyzer, builder, attach):
        dag = builder.build(
            {"id": "cache", "nodes": [{"id": "fat", "blockId": "step", "config": {"memory": 600}}]}
        )
        context = attach(dag)
        analyzer.apply(context, "caching-fat")

        caching = dag.get_node("fat").config["caching"]
        assert caching["enabled"] is True
        assert caching["ttl"] == 3_600_000

    def test_memory_staging(self, analyzer, builder, attach):
        dag = builder.build(
            {"id": "heavy", "nodes": [{"id": "big", "blockId": "step", "config": {"memory": 4000}}]}
        )
        context = attach(dag)
        analyzer.apply(context, "resource-staging")

        assert context.configuration.resource_scaling.enabled is True
        assert context.configuration.resource_scaling.scale_threshold == pytest.approx(0.6)

    def test_right_sizing(self, analyzer, builder, chain_definition, attach):
        dag = builder.build(chain_definition)
        context = attach(dag)
        suggestion = by_id(context.metadata["optimizations"])["resource-rightsizing"]
        before = {n: dag.get_node(n).resource_needs.memory for n in suggestion.affected_nodes}

        analyzer.apply(context, "resource-rightsizing")

        for node_id, memory in before.items():
            assert dag.get_node(node_id).resource_needs.memory == pytest.approx(memory * 0.7)

    def test_data_compression(self, analyzer, builder, chain_definition, attach):
        dag = builder.build(chain_definition)
        context = attach(dag)
        analyzer.apply(context, "data-e2")

        edge = next(e for e in dag.edges if e.id == "e2")
        assert edge.stream_config.compression is True
        assert edge.data_contract.serialization.compression is True

    def test_manual_suggestion_rejected(self, analyzer, builder, registry, attach):
        dag = builder.build(
            {"id": "algo", "nodes": [{"id": "m", "blockId": "ml-classifier", "config": {"algorithm": "naive"}}]}
        )
        context = attach(dag)
        with pytest.raises(OptimizationError, match="cannot be auto-applied"):
            analyzer.apply(context, "algorithm-naive-m")

    def test_unknown_suggestion(self, analyzer, builder, chain_definition, attach):
        context = attach(builder.build(chain_definition))
        with pytest.raises(OptimizationError, match="not found"):
            analyzer.apply(context, "nope")
