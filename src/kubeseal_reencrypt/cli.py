#!/usr/bin/env python
"""Command-line interface for kubeseal-reencrypt.

This module provides the ``kubeseal-reencrypt`` entry point and its
``reencrypt`` subcommand, mapping the outcome of a run to exit codes:
0 when every item was committed or skipped as expected, 1 when any item
failed, 2 on a fatal setup error or an aborted run.
"""

import sys
from collections.abc import Callable
from datetime import timedelta
from pathlib import Path

import click
import questionary
from icecream import ic

from kubeseal_reencrypt import __version__, console
from kubeseal_reencrypt.config import DEFAULT_CONCURRENCY, DEFAULT_TIMEOUT, ENV_PREFIX, RunConfig
from kubeseal_reencrypt.exceptions import (
    BinaryNotFoundError,
    ClusterConnectionError,
    ControllerNotFoundError,
    KeyFetchError,
    UnsupportedPlatformError,
)
from kubeseal_reencrypt.models import ItemState, RunReport
from kubeseal_reencrypt.runner import Reencryptor
from kubeseal_reencrypt.styles import PROMPT_STYLE, QMARK

EXIT_OK = 0
EXIT_FATAL = 2

_FATAL_ERRORS = (
    ClusterConnectionError,
    ControllerNotFoundError,
    KeyFetchError,
    BinaryNotFoundError,
    UnsupportedPlatformError,
)


def confirm_run(config: RunConfig, context: str) -> Callable[[int], bool]:
    """Build the confirmation callback shown before cluster writes."""

    def ask(count: int) -> bool:
        answer = questionary.confirm(
            f"Re-encrypt and update {count} SealedSecret(s) in {config.scope} of {context}?",
            default=False,
            style=PROMPT_STYLE,
            qmark=QMARK,
        ).ask()
        return bool(answer)

    return ask


def render_summary(report: RunReport) -> None:
    """Print the final counts and a table of failed items."""
    console.newline()
    items = {
        "Committed": str(report.count(ItemState.COMMITTED)),
        "Skipped": str(report.count(ItemState.SKIPPED)),
        "Failed": str(report.count(ItemState.FAILED)),
    }
    if report.dry_run:
        items["Verified (dry run)"] = str(report.count(ItemState.VERIFIED))
    if report.key_fingerprint:
        items["Certificate"] = report.key_fingerprint[:16]
    items["Duration"] = f"{(report.ended - report.started).total_seconds():.1f}s"
    if report.aborted:
        items["Aborted"] = report.fatal_error or "cancelled"

    console.summary_panel("Re-encryption Summary", items, ok=report.exit_code == EXIT_OK)
    if report.failed:
        console.failures_table([(str(o.ref), o.error_kind.value if o.error_kind else "", o.message) for o in report.failed])


@click.group(
    help="Re-encrypt Kubernetes SealedSecrets after a controller key rotation",
    context_settings={"auto_envvar_prefix": ENV_PREFIX},
)
@click.version_option(__version__, "--version", "-v", message="%(version)s")
@click.option("--debug", required=False, is_flag=True, help="print debug information")
def cli(debug: bool) -> None:
    """Configure debug output for every subcommand."""
    if debug:
        ic.enable()
    else:
        ic.disable()


@cli.command(help="Reseal SealedSecrets against the controller's current certificate")
@click.option("--all", "all_", is_flag=True, help="process every SealedSecret in scope")
@click.option("--namespace", "-n", help="only process SealedSecrets in this namespace")
@click.option(
    "--output-dir",
    type=click.Path(file_okay=False, writable=True, path_type=Path),
    help="write a copy of each updated SealedSecret here before submitting it",
)
@click.option(
    "--concurrency",
    type=click.IntRange(min=1),
    default=DEFAULT_CONCURRENCY,
    show_default=True,
    help="number of SealedSecrets processed in parallel",
)
@click.option("--dry-run", is_flag=True, help="validate and reseal, but only dry-run the update")
@click.option("--log", "log_path", type=click.Path(dir_okay=False, path_type=Path), help="append log lines to this file")
@click.option("--context", help="kubeconfig context to use")
@click.option("--select", "select_context", is_flag=True, help="prompt for context select")
@click.option(
    "--cert",
    "-c",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="seal against this certificate instead of fetching it",
)
@click.option("--controller-name", help="SealedSecrets controller service name")
@click.option("--controller-namespace", help="SealedSecrets controller namespace")
@click.option(
    "--timeout",
    type=click.FloatRange(min=0, min_open=True),
    default=DEFAULT_TIMEOUT,
    show_default=True,
    help="seconds allowed for each cluster or kubeseal call",
)
@click.option(
    "--retries",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="extra attempts for SealedSecrets modified concurrently",
)
@click.option(
    "--key-max-age",
    type=click.IntRange(min=1),
    default=30,
    show_default=True,
    help="minutes after which the run's certificate is reported stale",
)
@click.option("--yes", "-y", "assume_yes", is_flag=True, help="do not ask for confirmation")
def reencrypt(
    all_: bool,
    namespace: str | None,
    output_dir: Path | None,
    concurrency: int,
    dry_run: bool,
    log_path: Path | None,
    context: str | None,
    select_context: bool,
    cert: Path | None,
    controller_name: str | None,
    controller_namespace: str | None,
    timeout: float,
    retries: int,
    key_max_age: int,
    assume_yes: bool,
) -> None:
    """Run a re-encryption and exit with a code describing its outcome."""
    if not all_ and not namespace:
        raise click.UsageError("Pass --all, optionally with --namespace, to select SealedSecrets")

    config = RunConfig(
        namespace=namespace,
        output_dir=output_dir,
        concurrency=concurrency,
        dry_run=dry_run,
        log_path=log_path,
        context=context,
        select_context=select_context,
        certificate=cert,
        controller_name=controller_name,
        controller_namespace=controller_namespace,
        timeout=timeout,
        retries=retries,
        assume_yes=assume_yes,
        key_max_age=timedelta(minutes=key_max_age),
    )
    ic(config)

    try:
        with Reencryptor(config) as reencryptor:
            confirm = None
            if not (config.dry_run or config.assume_yes):
                confirm = confirm_run(config, reencryptor.cluster.context if reencryptor.cluster else "the cluster")
            report = reencryptor.run(confirm=confirm)
    except _FATAL_ERRORS as e:
        console.error(f"Fatal: {e}")
        sys.exit(EXIT_FATAL)

    if report is None:
        console.warning("Re-encryption cancelled; nothing was changed.")
        sys.exit(EXIT_OK)

    render_summary(report)
    sys.exit(report.exit_code)


if __name__ == "__main__":
    cli()
