"""CloudFormation Stack Operator CLI (cfn-operator).

Usage:
    cfn-operator run                         # Run the operator (reads env config)
    cfn-operator validate ./specs            # Validate Stack manifests
    cfn-operator apply stack.yaml --wait     # Create/update stacks once, wait for them
    cfn-operator delete stack.yaml --wait    # Delete stacks once, wait for them
"""

from __future__ import annotations

import asyncio
import dataclasses
from pathlib import Path

import click

from .config import Config, ConfigurationError
from .controller import Controller, ReconcileAction, ReconcileResult
from .models import DesiredStack
from .provider import StackProvider, StackProviderError
from .session import create_cloudformation_client
from .spec_loader import SpecLoadError, load_manifest_file, load_manifests
from .store import InMemoryStore, NotFoundError

VERSION = "0.1.0"

# One-shot wait bound per stack (seconds)
DEFAULT_WAIT_TIMEOUT_SECONDS = 1800


def _load_config(dry_run: bool) -> Config:
    try:
        config = Config.from_env()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e
    if dry_run:
        config = dataclasses.replace(config, dry_run=True)
    return config


def _load_file(manifest: Path, namespace: str | None) -> list[DesiredStack]:
    try:
        return load_manifest_file(manifest, namespace)
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e


async def reconcile_once(
    controller: Controller,
    store: InMemoryStore,
    stacks: list[DesiredStack],
    *,
    delete: bool = False,
    wait: bool = False,
    timeout: float = DEFAULT_WAIT_TIMEOUT_SECONDS,
) -> list[tuple[DesiredStack, ReconcileResult]]:
    """Drive each stack through a single reconcile against a scratch store.

    The first pass only adds the finalizer, so every stack is reconciled
    twice. With ``wait`` each submitted stack is then polled to a terminal
    status.
    """
    results: list[tuple[DesiredStack, ReconcileResult]] = []
    for desired in stacks:
        created = store.create(desired)
        await controller.reconciler.reconcile(created.key)
        if delete:
            store.delete(created.key)

        result = await controller.reconciler.reconcile(created.key)
        if result.error is None and wait and result.action in (
            ReconcileAction.CREATE,
            ReconcileAction.UPDATE,
            ReconcileAction.DELETE,
            ReconcileAction.FOLLOWING,
        ):
            current = store.get(created.key)
            try:
                stack = await controller.lifecycle.wait_for_terminal(current, timeout)
            except (TimeoutError, StackProviderError) as e:
                result.error = e
            else:
                result.stack_status = (
                    str(stack.get("StackStatus") or "") if stack else "DELETE_COMPLETE"
                )

        try:
            final = store.get(created.key)
        except NotFoundError:
            final = created
        results.append((final, result))
    return results


def _report(results: list[tuple[DesiredStack, ReconcileResult]]) -> int:
    failures = 0
    for desired, result in results:
        line = f"{desired.key}: {result.action.value}"
        if result.operation is not None:
            line += f" ({result.operation.value})"
        if result.stack_status:
            line += f" {result.stack_status}"
        if result.error is not None:
            failures += 1
            click.secho(f"{line} - error: {result.error}", fg="red")
        else:
            click.echo(line)
        outputs = desired.status.outputs or {}
        for key, value in sorted(outputs.items()):
            click.echo(f"    {key} = {value}")
    return failures


def _run_one_shot(
    manifest: Path, *, delete: bool, wait: bool, timeout: float, dry_run: bool
) -> None:
    config = _load_config(dry_run)
    stacks = _load_file(manifest, config.namespace)
    if not stacks:
        click.echo(f"No stacks in {manifest}")
        return

    client = create_cloudformation_client(config)
    store = InMemoryStore()
    controller = Controller(config, store, StackProvider(client, config))

    results = asyncio.run(
        reconcile_once(controller, store, stacks, delete=delete, wait=wait, timeout=timeout)
    )
    failures = _report(results)
    if failures:
        raise click.ClickException(f"{failures} of {len(results)} stack(s) failed")


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version=VERSION, prog_name="cfn-operator")
def cli() -> None:
    """CloudFormation Stack Operator CLI (cfn-operator).

    \b
    Configuration is read from the environment (AWS_REGION, ASSUME_ROLE_ARN,
    DEFAULT_TAGS, DEFAULT_CAPABILITIES, DRY_RUN, ...).
    """
    pass


@cli.command()
def run() -> None:
    """Run the operator until SIGTERM/SIGINT."""
    from .main import run as run_operator

    run_operator()


@cli.command()
@click.argument(
    "specs_dir", type=click.Path(exists=True, file_okay=False, path_type=Path)
)
@click.option("--namespace", "-n", default=None, help="Namespace for manifests without one")
def validate(specs_dir: Path, namespace: str | None) -> None:
    """Validate every Stack manifest in SPECS_DIR."""
    try:
        stacks = load_manifests(specs_dir, namespace)
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e

    for desired in stacks:
        click.echo(
            f"{desired.key}: {len(desired.spec.parameters)} parameter(s), "
            f"{len(desired.spec.tags)} tag(s)"
        )
    click.secho(f"✓ {len(stacks)} stack manifest(s) valid", fg="green")


@cli.command()
@click.argument("manifest", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--wait", "-w", is_flag=True, help="Wait for each stack to settle")
@click.option(
    "--timeout",
    "-t",
    type=float,
    default=DEFAULT_WAIT_TIMEOUT_SECONDS,
    show_default=True,
    help="Seconds to wait per stack",
)
@click.option("--dry-run", is_flag=True, help="Log provider calls instead of making them")
def apply(manifest: Path, wait: bool, timeout: float, dry_run: bool) -> None:
    """Create or update the stacks in MANIFEST once."""
    _run_one_shot(manifest, delete=False, wait=wait, timeout=timeout, dry_run=dry_run)


@cli.command()
@click.argument("manifest", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--wait", "-w", is_flag=True, help="Wait for each deletion to finish")
@click.option(
    "--timeout",
    "-t",
    type=float,
    default=DEFAULT_WAIT_TIMEOUT_SECONDS,
    show_default=True,
    help="Seconds to wait per stack",
)
@click.option("--dry-run", is_flag=True, help="Log provider calls instead of making them")
def delete(manifest: Path, wait: bool, timeout: float, dry_run: bool) -> None:
    """Delete the stacks in MANIFEST once (only stacks this operator owns)."""
    _run_one_shot(manifest, delete=True, wait=wait, timeout=timeout, dry_run=dry_run)


if __name__ == "__main__":
    cli()
