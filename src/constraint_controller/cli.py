"""Constraint controller CLI.

Usage:
    constraint-controller run --kinds K8sRequiredLabels,K8sAllowedRepos
    constraint-controller check manifests/required-labels.yaml
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import click

from .config import DEFAULT_FINALIZER_NAME, Config, ConfigurationError
from .main import main, setup_logging
from .manifests import ManifestLoadError, load_manifests
from .models import InvalidEnforcementAction


@click.group()
@click.version_option(version="0.1.0", prog_name="constraint-controller")
def cli() -> None:
    """Keep policy engine rules in sync with constraint resources."""


@cli.command()
@click.option("--kinds", "-k", help="Comma separated constraint kinds (overrides CONSTRAINT_KINDS)")
@click.option("--workers", "-w", type=int, help="Concurrent reconciles per kind")
@click.option("--metrics-port", type=int, help="Prometheus port, 0 disables")
@click.option("--text-logs", is_flag=True, help="Plain text logs instead of JSON")
def run(
    kinds: str | None,
    workers: int | None,
    metrics_port: int | None,
    text_logs: bool,
) -> None:
    """Run the controller against the current cluster.

    \b
    Examples:
        constraint-controller run --kinds K8sRequiredLabels
        constraint-controller run --metrics-port 0 --text-logs
    """
    overrides: dict[str, object] = {}
    if kinds:
        overrides["constraint_kinds"] = tuple(k.strip() for k in kinds.split(",") if k.strip())
    if workers is not None:
        overrides["max_concurrent_reconciles"] = workers
    if metrics_port is not None:
        overrides["metrics_port"] = metrics_port
    if text_logs:
        overrides["enable_audit_logging"] = False

    try:
        config = Config.from_env(**overrides)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    setup_logging(json_output=config.enable_audit_logging)
    sys.exit(asyncio.run(main(config)))


@cli.command()
@click.argument("manifests", nargs=-1, required=True, type=click.Path(path_type=Path))
@click.option("--finalizer", default=DEFAULT_FINALIZER_NAME, show_default=True)
def check(manifests: tuple[Path, ...], finalizer: str) -> None:
    """Validate constraint manifests and show how they would be tracked."""
    failed = False
    for path in manifests:
        try:
            constraints = load_manifests(path)
        except ManifestLoadError as e:
            click.secho(f"✗ {e}", fg="red", err=True)
            failed = True
            continue

        for constraint in constraints:
            try:
                action = constraint.enforcement_action.value
            except InvalidEnforcementAction as e:
                click.secho(f"✗ {constraint.identity}: {e}", fg="red", err=True)
                failed = True
                continue

            state = "deleting" if constraint.deletion_requested else "live"
            marker = "finalizer" if constraint.has_finalizer(finalizer) else "no finalizer"
            click.echo(f"{constraint.identity}\taction={action}\t{state}\t{marker}")

    if failed:
        raise click.ClickException("One or more manifests are invalid")


if __name__ == "__main__":
    cli()
