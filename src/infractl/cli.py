"""Infrastructure reconciler CLI (infractl).

Usage:
    infractl apply                   # Reconcile infra.yaml against AWS
    infractl apply --auto-approve    # Apply updates without prompting
    infractl validate                # Load and validate desired state only
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import click

from .config import (
    DEFAULT_RETRY_ATTEMPTS,
    DEFAULT_RETRY_DELAY_SECONDS,
    DEFAULT_SPEC_PATH,
    DEFAULT_VARIABLES_PATH,
    VALID_LOG_FORMATS,
    Config,
    ConfigurationError,
    RetryPolicy,
)
from .main import reconcile_once, setup_logging
from .models import InstanceSpec
from .spec_loader import SpecLoadError, load_infra

spec_option = click.option(
    "--spec",
    "spec_path",
    type=click.Path(dir_okay=False, path_type=Path),
    envvar="INFRA_SPEC",
    default=DEFAULT_SPEC_PATH,
    show_default=True,
    help="Desired-state file",
)
vars_option = click.option(
    "--vars",
    "variables_path",
    type=click.Path(dir_okay=False, path_type=Path),
    envvar="INFRA_VARIABLES",
    default=DEFAULT_VARIABLES_PATH,
    show_default=True,
    help="Optional variables file",
)


@click.group()
@click.version_option(version="0.1.0", prog_name="infractl")
def cli() -> None:
    """Infrastructure reconciler CLI (infractl).

    Converges AWS resources toward the state declared in a YAML file.

    \b
    Quick Start:
        infractl validate          # Check infra.yaml and variables.yaml
        infractl apply             # Reconcile, prompting before updates
    """
    pass


@cli.command()
@spec_option
@vars_option
@click.option(
    "--auto-approve", is_flag=True, envvar="AUTO_APPROVE", help="Apply updates without prompting"
)
@click.option(
    "--retry-attempts",
    type=int,
    envvar="RETRY_ATTEMPTS",
    default=DEFAULT_RETRY_ATTEMPTS,
    show_default=True,
    help="Attempts per provider call",
)
@click.option(
    "--retry-delay",
    type=float,
    envvar="RETRY_DELAY_SECONDS",
    default=DEFAULT_RETRY_DELAY_SECONDS,
    show_default=True,
    help="Seconds between attempts",
)
@click.option(
    "--log-format",
    type=click.Choice(VALID_LOG_FORMATS),
    envvar="LOG_FORMAT",
    default="json",
    show_default=True,
    help="Log output format",
)
@click.option("--log-level", envvar="LOG_LEVEL", default="INFO", show_default=True)
def apply(
    spec_path: Path,
    variables_path: Path,
    auto_approve: bool,
    retry_attempts: int,
    retry_delay: float,
    log_format: str,
    log_level: str,
) -> None:
    """Reconcile every declared resource kind once.

    \b
    Examples:
        infractl apply --spec infra.yaml --vars variables.yaml
        infractl apply --auto-approve --retry-attempts 5
    """
    try:
        config = Config(
            spec_path=spec_path,
            variables_path=variables_path,
            retry=RetryPolicy(attempts=retry_attempts, delay_seconds=retry_delay),
            auto_approve=auto_approve,
            json_logs=log_format == "json",
            log_level=log_level,
        )
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    setup_logging(config)

    try:
        report = asyncio.run(reconcile_once(config))
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e

    click.echo("")
    for line in report.status_lines():
        click.echo(line)

    if report.exit_code:
        raise SystemExit(report.exit_code)


@cli.command()
@spec_option
@vars_option
def validate(spec_path: Path, variables_path: Path) -> None:
    """Load, merge and validate the desired state without calling AWS."""
    try:
        infra = load_infra(spec_path, variables_path)
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e

    declared = infra.declared_resources()
    click.echo(f"Provider: {infra.provider}")
    click.echo(f"Region:   {infra.region}")
    if not declared:
        click.echo("No resources declared")
        return

    click.echo("Declared resources:")
    for spec in declared:
        suffix = ""
        if isinstance(spec, InstanceSpec) and spec.is_fleet:
            suffix = f" (fleet of {spec.desired_count})"
        click.echo(f"  {spec.kind.value}/{spec.name}{suffix}")


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
