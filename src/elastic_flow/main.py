"""
Main entry point for the elastic-flow engine.
"""

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import click
from loguru import logger

from .config import EngineSettings, load_config
from .log_setup import setup_logging
from .workflow.definition import WorkflowDefinition, validate_workflow
from .workflow.models import BlockCategory, ExecutionNode
from .workflow.node_executor import HandlerNodeExecutor
from .workflow.orchestrator import ExecutionOrchestrator
from .workflow.registry import InMemoryBlockRegistry


@click.group()
@click.option('--debug', is_flag=True, help='Enable debug mode')
@click.option('--config', '-c', type=click.Path(exists=True), help='Configuration file path')
@click.pass_context
def cli(ctx, debug: bool, config: Optional[str]):
    """Elastic Flow - asynchronous workflow execution engine"""
    ctx.ensure_object(dict)
    ctx.obj['debug'] = debug
    ctx.obj['config'] = config


def _load_settings(ctx) -> EngineSettings:
    settings = load_config(ctx.obj.get('config'))
    if ctx.obj.get('debug'):
        settings.debug = True
        settings.logging.level = "DEBUG"
    setup_logging(settings.logging)
    return settings


def _load_registry(blocks: Optional[str]) -> InMemoryBlockRegistry:
    if blocks:
        return InMemoryBlockRegistry.load_from_yaml(blocks)
    return InMemoryBlockRegistry.with_default_blocks()


def _passthrough(node: ExecutionNode, inputs: Dict[str, Any]) -> Any:
    """Forward the node's configured value, or its first input, to every output."""
    value = node.config.get("value")
    if value is None and inputs:
        value = next(iter(inputs.values()))
    if not node.outputs:
        return value
    return {contract.name: value for contract in node.outputs}


@cli.command()
@click.argument('workflow', type=click.Path(exists=True))
@click.option('--blocks', '-b', type=click.Path(exists=True), help='Block catalog file')
@click.option('--timeout', '-t', type=float, help='Seconds to wait for completion')
@click.pass_context
def run(ctx, workflow: str, blocks: Optional[str], timeout: Optional[float]):
    """Run a workflow with pass-through block handlers"""
    settings = _load_settings(ctx)

    try:
        definition = WorkflowDefinition.load_from_yaml(workflow)
        registry = _load_registry(blocks)
        summary = asyncio.run(run_workflow(settings, registry, definition, timeout))
    except KeyboardInterrupt:
        logger.info("Execution stopped by user")
        return
    except Exception as e:
        logger.error(f"Execution failed: {e}")
        sys.exit(1)

    click.echo(json.dumps(summary, indent=2, default=str))
    if summary["status"] != "completed":
        sys.exit(1)


async def run_workflow(
    settings: EngineSettings,
    registry: InMemoryBlockRegistry,
    definition: WorkflowDefinition,
    timeout: Optional[float] = None,
) -> Dict[str, Any]:
    """Execute one workflow and return a summary of the outcome."""
    executor = HandlerNodeExecutor()
    for category in BlockCategory:
        executor.register_category(category.value, _passthrough)

    orchestrator = ExecutionOrchestrator(registry, executor, settings=settings)
    try:
        execution_id = await orchestrator.execute_workflow(definition)
        context = await orchestrator.wait_for_completion(execution_id, timeout=timeout)
        progress = orchestrator.get_execution_progress(execution_id)
        return {
            "execution_id": execution_id,
            "status": context.status.value,
            "progress": progress.to_dict(),
            "results": orchestrator.get_execution_results(execution_id),
        }
    finally:
        await orchestrator.shutdown()


@cli.command()
@click.argument('workflow', type=click.Path(exists=True))
def validate(workflow: str):
    """Validate a workflow definition file"""
    try:
        definition = WorkflowDefinition.load_from_yaml(workflow)
    except Exception as e:
        logger.error(f"Cannot load workflow: {e}")
        sys.exit(1)

    report = validate_workflow(definition)
    if report.valid:
        logger.success("Workflow is valid")
        click.echo(f"Nodes: {len(definition.nodes)}")
        click.echo(f"Edges: {len(definition.edges)}")
        return

    for error in report.errors:
        click.echo(f"- {error}")
    logger.error(f"Workflow validation failed with {len(report.errors)} error(s)")
    sys.exit(1)


@cli.command()
@click.argument('workflow', type=click.Path(exists=True))
@click.option('--blocks', '-b', type=click.Path(exists=True), help='Block catalog file')
@click.pass_context
def analyze(ctx, workflow: str, blocks: Optional[str]):
    """Print optimization suggestions for a workflow"""
    settings = _load_settings(ctx)

    try:
        definition = WorkflowDefinition.load_from_yaml(workflow)
        orchestrator = ExecutionOrchestrator(
            _load_registry(blocks), HandlerNodeExecutor(), settings=settings
        )
        suggestions = orchestrator.get_optimization_suggestions(definition)
    except Exception as e:
        logger.error(f"Analysis failed: {e}")
        sys.exit(1)

    if not suggestions:
        click.echo("No optimization suggestions")
        return

    for suggestion in suggestions:
        marker = "auto" if suggestion.auto_applicable else "manual"
        click.echo(
            f"[{suggestion.score:5.1f}] {suggestion.id} ({suggestion.category.value}, "
            f"{suggestion.impact.value} impact, {marker}): {suggestion.description}"
        )


@cli.command()
@click.option('--output', '-o', default='./elastic-flow.yaml', help='Output configuration file')
@click.option('--env', type=click.Choice(['development', 'production']), default='development', help='Environment')
def init_config(output: str, env: str):
    """Generate initial configuration file"""
    output_path = Path(output)

    if output_path.exists():
        if not click.confirm(f"File {output} already exists. Overwrite?"):
            return

    settings = EngineSettings()
    settings.environment = env
    settings.save_to_yaml(output_path)
    logger.success(f"Configuration file created: {output}")


@cli.command()
def version():
    """Show version information"""
    from . import __version__
    click.echo(f"Elastic Flow v{__version__}")


def main():
    """Main CLI entry point."""
    cli()


if __name__ == '__main__':
    main()
