"""Convergence CLI (converge).

Operator-facing commands for a single deployment. Configuration comes from
the same environment variables as the operator; the options below override
the ones an operator most often changes by hand.

Usage:
    converge plan       # Show what an apply would do
    converge apply      # Converge the resource group on the template
    converge outputs    # Print resolved template outputs as JSON
    converge state      # List records in the state file
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import os
from pathlib import Path
from typing import Any

import click

from .config import (
    DEFAULT_STATE_PATH,
    Config,
    ConfigurationError,
    DeploymentMode,
    ReconciliationMode,
)
from .executor import NodeOutcome
from .main import create_azure_provider, setup_logging
from .planner import Action
from .reconciler import Reconciler, ReconcileResult
from .security import SecretlessViolationError
from .state import StateError, StateStore

ACTION_COLORS = {
    Action.CREATE: "green",
    Action.UPDATE: "yellow",
    Action.DELETE: "red",
    Action.SKIP: None,
}

OUTCOME_COLORS = {
    NodeOutcome.SUCCEEDED: "green",
    NodeOutcome.SKIPPED: None,
    NodeOutcome.FAILED: "red",
    NodeOutcome.BLOCKED: "red",
    NodeOutcome.CANCELLED: "yellow",
}


# =============================================================================
# Helpers
# =============================================================================


def load_config(
    template: Path | None,
    parameters: Path | None,
    state: Path | None,
    deployment_mode: str | None,
    refresh: bool,
    **overrides: Any,
) -> Config:
    """Load configuration from the environment with command-line overrides.

    Raises:
        click.ClickException: If the resulting configuration is invalid.
    """
    # Paths are validated in Config.__post_init__, so override before loading
    if template is not None:
        os.environ["TEMPLATE_PATH"] = str(template)
    if parameters is not None:
        os.environ["PARAMETERS_PATH"] = str(parameters)
    if state is not None:
        os.environ["STATE_PATH"] = str(state)
    if deployment_mode is not None:
        os.environ["DEPLOYMENT_MODE"] = deployment_mode
    if refresh:
        os.environ["REFRESH_STATE"] = "true"

    try:
        config = Config.from_env()
        if overrides:
            config = dataclasses.replace(config, **overrides)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e
    return config


def build_reconciler(config: Config) -> Reconciler:
    try:
        provider = create_azure_provider(config)
    except SecretlessViolationError as e:
        raise click.ClickException(str(e)) from e
    return Reconciler(config, provider)


def echo_plan(result: ReconcileResult) -> None:
    if result.plan is None:
        return
    for item in result.plan:
        if item.action == Action.SKIP and not item.reason.startswith("excluded"):
            continue
        click.secho(
            f"  {item.action.value:<7} {item.node_id}  ({item.reason})",
            fg=ACTION_COLORS[item.action],
        )
    click.echo(f"\nPlan: {result.plan.summary()}")


def echo_outputs(result: ReconcileResult) -> None:
    if result.outputs:
        click.echo("\nOutputs:")
        for name, value in sorted(result.outputs.items()):
            click.echo(f"  {name} = {json.dumps(value, default=str)}")
    for name, reason in sorted(result.omitted_outputs.items()):
        click.echo(f"  {name} omitted: {reason}")


def fail_on_error(result: ReconcileResult) -> None:
    if result.error is not None:
        raise click.ClickException(f"{type(result.error).__name__}: {result.error}")


# =============================================================================
# Commands
# =============================================================================


template_option = click.option(
    "--template", "-t", type=click.Path(path_type=Path), help="Template file (TEMPLATE_PATH)"
)
parameters_option = click.option(
    "--parameters", "-p", type=click.Path(path_type=Path), help="Parameters file (PARAMETERS_PATH)"
)
state_option = click.option(
    "--state", "-s", type=click.Path(path_type=Path), help="State file (STATE_PATH)"
)
mode_option = click.option(
    "--mode",
    "deployment_mode",
    type=click.Choice([m.value for m in DeploymentMode]),
    help="Deployment mode (DEPLOYMENT_MODE)",
)
refresh_option = click.option(
    "--refresh", is_flag=True, help="Check recorded resources against Azure first"
)


@click.group()
@click.version_option(version="0.1.0", prog_name="converge")
@click.option("--verbose", "-v", is_flag=True, help="Emit structured logs at INFO level")
def cli(verbose: bool) -> None:
    """Converge an Azure resource group on a deployment template.

    \b
    Quick Start:
        converge plan -t template.json -p parameters.json
        converge apply -t template.json -p parameters.json
    """
    setup_logging(logging.INFO if verbose else logging.WARNING)


@cli.command()
@template_option
@parameters_option
@state_option
@mode_option
@refresh_option
def plan(
    template: Path | None,
    parameters: Path | None,
    state: Path | None,
    deployment_mode: str | None,
    refresh: bool,
) -> None:
    """Show the actions an apply would take."""
    config = load_config(template, parameters, state, deployment_mode, refresh)
    result = asyncio.run(build_reconciler(config).preview())
    fail_on_error(result)

    click.echo(f"Deployment {config.deployment_name} -> {config.resource_group_name}")
    echo_plan(result)
    if result.drifted_nodes:
        click.secho(f"Drifted: {', '.join(result.drifted_nodes)}", fg="yellow")


@cli.command()
@template_option
@parameters_option
@state_option
@mode_option
@refresh_option
def apply(
    template: Path | None,
    parameters: Path | None,
    state: Path | None,
    deployment_mode: str | None,
    refresh: bool,
) -> None:
    """Apply the template and record the result."""
    config = load_config(
        template,
        parameters,
        state,
        deployment_mode,
        refresh,
        mode=ReconciliationMode.ENFORCE,
        run_once=True,
    )
    result = asyncio.run(build_reconciler(config).reconcile_once())
    fail_on_error(result)

    echo_plan(result)
    if result.apply is None:
        click.secho("No changes.", fg="green")
        echo_outputs(result)
        return

    click.echo("\nApply:")
    for node_result in result.apply.results.values():
        line = f"  {node_result.outcome.value:<9} {node_result.node_id}"
        if node_result.error:
            line += f"  {node_result.error}"
        elif node_result.reason:
            line += f"  ({node_result.reason})"
        click.secho(line, fg=OUTCOME_COLORS[node_result.outcome])
    echo_outputs(result)

    if not result.success:
        counts = result.apply.counts()
        raise click.ClickException(
            f"Apply incomplete: {counts['failed']} failed, {counts['blocked']} blocked, "
            f"{counts['cancelled']} cancelled"
        )
    click.secho(f"\n✓ Applied {result.changes_applied} changes", fg="green")


@cli.command()
@template_option
@parameters_option
@state_option
def outputs(template: Path | None, parameters: Path | None, state: Path | None) -> None:
    """Print the template outputs resolved from recorded state."""
    config = load_config(template, parameters, state, None, False)
    result = asyncio.run(build_reconciler(config).preview())
    fail_on_error(result)
    click.echo(json.dumps(result.outputs, indent=2, sort_keys=True, default=str))


@cli.command(name="state")
@state_option
def list_state(state: Path | None) -> None:
    """List the records in the state file."""
    path = state or Path(os.environ.get("STATE_PATH", DEFAULT_STATE_PATH))
    try:
        store = StateStore.load(path)
    except StateError as e:
        raise click.ClickException(str(e)) from e

    click.echo(f"State {path} (serial {store.serial}, {len(store)} records)")
    for record in sorted(store.records(), key=lambda r: str(r.node_id)):
        click.echo(f"  {record.node_id}")
        click.echo(f"    id:      {record.remote_id}")
        click.echo(f"    applied: {record.applied_at}")


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
