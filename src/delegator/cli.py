"""DNS delegation operator CLI (dnsdel).

Usage:
    dnsdel validate -c delegator.yaml     # Check the operator document
    dnsdel plan -c delegator.yaml         # Show the changes a pass would make
    dnsdel run -c delegator.yaml --once   # Run one pass and exit
    dnsdel run -c delegator.yaml          # Reconcile every RECONCILE_INTERVAL seconds
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import sys
from pathlib import Path

import click

from .azure_dns import AzureDnsProvider
from .config import Config, ConfigurationError
from .config_loader import ConfigLoadError, load_controller_spec
from .main import setup_logging
from .models import ControllerSpec
from .reconciler import PassResult, PassStatus, Reconciler, run_reconciliation_pass
from .security import SecretlessViolationError, enforce_secretless_architecture

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_SECURITY_VIOLATION = 2


def _load(config_file: Path | None, **overrides: object) -> tuple[Config, ControllerSpec]:
    """Load runtime settings and the operator document, or exit."""
    try:
        config = Config.from_env()
        if config_file is not None:
            overrides["config_file"] = config_file
        if overrides:
            config = dataclasses.replace(config, **overrides)  # type: ignore[arg-type]
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    try:
        spec = load_controller_spec(config.config_file)
    except ConfigLoadError as e:
        raise click.ClickException(str(e)) from e
    return config, spec


def _require_secretless() -> None:
    try:
        enforce_secretless_architecture()
    except SecretlessViolationError as e:
        click.secho(str(e), fg="red", err=True)
        sys.exit(EXIT_SECURITY_VIOLATION)


def _print_result(result: PassResult) -> None:
    color = {
        PassStatus.SUCCEEDED: "green",
        PassStatus.ABORTED: "red",
        PassStatus.CANCELLED: "yellow",
    }[result.status]
    click.secho(f"Pass {result.status.value} for {result.root_domain}", fg=color)
    if result.abort_reason:
        click.echo(f"  reason: {result.abort_reason}")
    click.echo(f"  accounts scanned: {len(result.accounts_scanned)}")
    for failure in result.accounts_failed:
        click.secho(f"  account failed: {failure.account}: {failure.error}", fg="yellow")
    for conflict in result.conflicts:
        claimants = ", ".join(conflict.claimants)
        click.secho(
            f"  conflict: {conflict.type} {conflict.name}: {conflict.reason} ({claimants})",
            fg="yellow",
        )
    for skipped in result.skipped:
        click.echo(f"  skipped: {skipped.type} {skipped.name}: {skipped.reason}")
    if result.planned_changes:
        click.echo("  changes:")
        for action in result.planned_changes:
            click.echo(f"    {action.describe()}")
    else:
        click.echo("  no changes")
    if not result.dry_run:
        click.echo(f"  added={result.added} changed={result.changed} removed={result.removed}")


config_option = click.option(
    "--config",
    "-c",
    "config_file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Operator document (default: $CONFIG_FILE)",
)


@click.group()
@click.version_option(version="0.1.0", prog_name="dnsdel")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def cli(verbose: bool) -> None:
    """DNS delegation operator CLI (dnsdel).

    Mirrors subdomain zones, promoted records and certificate validations
    from subdomain subscriptions into the root DNS zone.
    """
    setup_logging(logging.DEBUG if verbose else logging.WARNING, stream=sys.stderr)


@cli.command()
@config_option
def validate(config_file: Path | None) -> None:
    """Load and validate the operator document."""
    _, spec = _load(config_file)
    click.secho(
        f"✓ {spec.domain}: {len(spec.accounts)} accounts, {len(spec.filters)} filter rules",
        fg="green",
    )
    for account in spec.accounts:
        click.echo(f"  {account.name} ({account.subscription_id})")


@cli.command()
@config_option
@click.option("--json", "as_json", is_flag=True, help="Print the pass result as JSON")
def plan(config_file: Path | None, as_json: bool) -> None:
    """Compute the root-zone changes without applying them."""
    config, spec = _load(config_file)
    _require_secretless()
    provider = AzureDnsProvider(spec.root_zone, session_ttl_seconds=config.session_ttl_seconds)
    result = asyncio.run(run_reconciliation_pass(spec, config, provider, dry_run=True))

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
    else:
        _print_result(result)
    if result.status is PassStatus.ABORTED:
        sys.exit(EXIT_FAILURE)


@cli.command()
@config_option
@click.option("--once", is_flag=True, help="Run a single pass and exit")
@click.option("--dry-run", is_flag=True, help="Compute changes without applying them")
def run(config_file: Path | None, once: bool, dry_run: bool) -> None:
    """Run reconciliation passes against the root zone."""
    overrides: dict[str, object] = {}
    if dry_run:
        overrides["dry_run"] = True
    config, spec = _load(config_file, **overrides)
    _require_secretless()
    provider = AzureDnsProvider(spec.root_zone, session_ttl_seconds=config.session_ttl_seconds)
    reconciler = Reconciler(spec, config, provider)

    if once or config.run_once:
        result = asyncio.run(reconciler.run_once())
        _print_result(result)
        sys.exit(EXIT_FAILURE if result.status is PassStatus.ABORTED else EXIT_OK)

    try:
        asyncio.run(reconciler.run())
    except KeyboardInterrupt:
        click.echo("Interrupted")


def main() -> None:
    """Entry point for the dnsdel command."""
    cli()


if __name__ == "__main__":
    main()
