"""graphctl command line interface.

Usage:
    graphctl plan [--out FILE] [--var NAME=VALUE ...]
    graphctl apply [PLAN_FILE] [--auto-approve]
    graphctl destroy [--dry-run] [--first ADDRESS ...]
    graphctl output [NAME] [--json]
    graphctl state list | show ADDRESS | rm ADDRESS
    graphctl force-unlock

Exit codes:
    0  success
    1  configuration, graph or plan error, or failed actions
    2  plan --detailed-exitcode found changes
    3  the State Store is locked by another process
"""

from __future__ import annotations

import dataclasses
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from .config import Config, ConfigurationError, LogFormat
from .executor import ActionStatus
from .main import run_cycle, setup_logging
from .planner import Plan, PlanConflict
from .reconciler import CycleResult, Reconciler
from .references import UNKNOWN
from .spec_loader import SpecLoadError, load_plan, parse_var_assignments, write_plan
from .state import LockContention, OutputValue, StateError, StateStore
from .teardown import DependencyConflictOnDelete

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CHANGES = 2
EXIT_LOCKED = 3

SENSITIVE_PLACEHOLDER = "(sensitive)"


@dataclass
class CliContext:
    """Objects shared by every command of one invocation."""

    config: Config

    def reconciler(self) -> Reconciler:
        return Reconciler(self.config)

    def store(self) -> StateStore:
        return StateStore(self.config.state_path, self.config.lock_timeout_seconds)


def _parse_vars(assignments: tuple[str, ...]) -> dict[str, str]:
    try:
        return parse_var_assignments(assignments)
    except SpecLoadError as e:
        raise click.BadParameter(str(e), param_hint="--var") from e


def _exit_code(error: Exception) -> int:
    return EXIT_LOCKED if isinstance(error, LockContention) else EXIT_ERROR


def _fail(ctx: click.Context, result: CycleResult) -> None:
    """Report a cycle error and exit."""
    assert result.error is not None
    error = result.error
    if isinstance(error, PlanConflict) and error.conflicts:
        for conflict in error.conflicts:
            click.echo(f"  ! {conflict.describe()}", err=True)
    if isinstance(error, DependencyConflictOnDelete):
        click.echo("Resources still refused deletion:", err=True)
        for address in error.addresses:
            click.echo(f"  ! {address}: {error.reasons.get(address, '')}", err=True)
    click.secho(f"Error: {error}", fg="red", err=True)
    ctx.exit(_exit_code(error))


def _format_value(value: Any) -> str:
    if value is UNKNOWN:
        return str(UNKNOWN)
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True, default=str)


def _echo_outputs(outputs: dict[str, OutputValue]) -> None:
    if not outputs:
        return
    click.echo("\nOutputs:")
    for name, output in outputs.items():
        shown = SENSITIVE_PLACEHOLDER if output.sensitive else _format_value(output.value)
        click.echo(f"  {name} = {shown}")


def _confirm_apply(plan: Plan) -> bool:
    click.echo(plan.render())
    try:
        return click.confirm("\nApply these changes?", default=False)
    except click.Abort:
        return False


def _confirm_destroy(order: list[str]) -> bool:
    click.echo("The following resources will be deleted, in this order:")
    for address in order:
        click.echo(f"  - {address}")
    try:
        return click.confirm("\nDestroy all of these resources?", default=False)
    except click.Abort:
        return False


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="graphctl")
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path, dir_okay=False),
    help="Configuration document (default: $CONFIG_PATH or infra.yaml)",
)
@click.option(
    "--state",
    "state_path",
    type=click.Path(path_type=Path, dir_okay=False),
    help="State document (default: $STATE_PATH or .graphctl/state.json)",
)
@click.option("--parallelism", type=int, help="Concurrent provider calls")
@click.option(
    "--log-format",
    type=click.Choice([f.value for f in LogFormat]),
    help="Log output format on stderr",
)
@click.pass_context
def cli(
    ctx: click.Context,
    config_path: Path | None,
    state_path: Path | None,
    parallelism: int | None,
    log_format: str | None,
) -> None:
    """graphctl: plan, apply and destroy a declared resource graph.

    \b
    Quick Start:
        graphctl plan --out plan.json
        graphctl apply plan.json
        graphctl output
        graphctl destroy
    """
    overrides: dict[str, Any] = {}
    if config_path is not None:
        overrides["config_path"] = config_path
    if state_path is not None:
        overrides["state_path"] = state_path
    if parallelism is not None:
        overrides["parallelism"] = parallelism
    if log_format is not None:
        overrides["log_format"] = LogFormat(log_format)

    try:
        # replace() runs __post_init__ again, so overrides are validated too
        config = dataclasses.replace(Config.from_env(), **overrides)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    setup_logging(config.log_format, config.log_level)
    ctx.obj = CliContext(config=config)


# =============================================================================
# Cycle Commands
# =============================================================================


@cli.command()
@click.option("--out", "out_path", type=click.Path(path_type=Path, dir_okay=False), help="Save the plan")
@click.option("--var", "var_assignments", multiple=True, metavar="NAME=VALUE", help="Set a variable")
@click.option("--refresh/--no-refresh", default=None, help="Read recorded resources for drift")
@click.option("--accept-drift", is_flag=True, help="Plan against observed reality")
@click.option(
    "--detailed-exitcode",
    is_flag=True,
    help="Exit 2 when the plan contains changes",
)
@click.pass_context
def plan(
    ctx: click.Context,
    out_path: Path | None,
    var_assignments: tuple[str, ...],
    refresh: bool | None,
    accept_drift: bool,
    detailed_exitcode: bool,
) -> None:
    """Show what apply would change."""
    obj: CliContext = ctx.obj
    overrides = _parse_vars(var_assignments)
    reconciler = obj.reconciler()
    result = run_cycle(
        reconciler,
        lambda: reconciler.plan(overrides, refresh=refresh, accept_drift=accept_drift),
    )
    if result.error is not None:
        _fail(ctx, result)
    assert result.plan is not None

    click.echo(result.plan.render())
    if out_path is not None:
        write_plan(result.plan, out_path)
        click.echo(f"\nSaved plan to {out_path}")

    if detailed_exitcode and result.plan.has_changes:
        ctx.exit(EXIT_CHANGES)


@cli.command()
@click.argument("plan_file", required=False, type=click.Path(path_type=Path, dir_okay=False))
@click.option("--auto-approve", is_flag=True, help="Skip the confirmation prompt")
@click.option("--var", "var_assignments", multiple=True, metavar="NAME=VALUE", help="Set a variable")
@click.option("--accept-drift", is_flag=True, help="Plan against observed reality")
@click.pass_context
def apply(
    ctx: click.Context,
    plan_file: Path | None,
    auto_approve: bool,
    var_assignments: tuple[str, ...],
    accept_drift: bool,
) -> None:
    """Apply a saved plan, or plan and apply after confirmation."""
    obj: CliContext = ctx.obj
    if plan_file is not None and (var_assignments or accept_drift):
        raise click.UsageError("--var and --accept-drift cannot be used with a saved plan")

    saved: Plan | None = None
    if plan_file is not None:
        try:
            saved = load_plan(plan_file)
        except SpecLoadError as e:
            raise click.ClickException(str(e)) from e

    overrides = _parse_vars(var_assignments)
    # A saved plan was already reviewed
    confirm = None if auto_approve or saved is not None else _confirm_apply
    reconciler = obj.reconciler()
    result = run_cycle(
        reconciler,
        lambda: reconciler.apply(
            saved, var_overrides=overrides, accept_drift=accept_drift, confirm=confirm
        ),
    )

    if result.execution is not None:
        for outcome in result.execution.outcomes.values():
            if outcome.error is not None:
                click.echo(f"  ! {outcome.address}: {outcome.error}", err=True)
            elif outcome.status == ActionStatus.SKIPPED:
                click.echo(f"  - {outcome.address}: skipped, a dependency failed", err=True)

    if result.error is not None:
        _fail(ctx, result)
    if result.declined:
        click.echo("Apply cancelled.")
        return

    assert result.execution is not None
    counts = result.execution.counts()
    click.echo(
        f"Apply complete: {counts['applied']} applied, {counts['no-op']} unchanged, "
        f"{counts['failed']} failed, {counts['skipped-due-to-dependency-failure']} skipped, "
        f"{counts['cancelled']} cancelled."
    )
    _echo_outputs(result.outputs)
    if not result.success:
        ctx.exit(EXIT_ERROR)


@cli.command()
@click.option("--dry-run", is_flag=True, help="Print the deletion order only")
@click.option("--first", "first", multiple=True, metavar="ADDRESS", help="Delete this resource first")
@click.option("--auto-approve", is_flag=True, help="Skip the confirmation prompt")
@click.pass_context
def destroy(ctx: click.Context, dry_run: bool, first: tuple[str, ...], auto_approve: bool) -> None:
    """Delete every resource recorded in state."""
    obj: CliContext = ctx.obj
    confirm = None if auto_approve or dry_run else _confirm_destroy
    reconciler = obj.reconciler()
    result = run_cycle(
        reconciler,
        lambda: reconciler.destroy(hints=first, dry_run=dry_run, confirm=confirm),
    )
    if result.error is not None:
        _fail(ctx, result)
    if result.declined:
        click.echo("Destroy cancelled.")
        return

    assert result.teardown is not None
    teardown = result.teardown
    if dry_run:
        click.echo("Destroy order:")
        for position, address in enumerate(teardown.order, start=1):
            click.echo(f"  {position}. {address}")
        return

    for address in teardown.failed:
        click.echo(f"  ! {address}: {teardown.errors.get(address, '')}", err=True)
    for address in teardown.skipped:
        click.echo(f"  - {address}: skipped, a dependent could not be deleted", err=True)
    click.echo(
        f"Destroy complete: {len(teardown.deleted)} deleted, {len(teardown.failed)} failed, "
        f"{len(teardown.skipped)} skipped, {len(teardown.cancelled)} cancelled "
        f"in {teardown.rounds} round(s)."
    )
    if not result.success:
        ctx.exit(EXIT_ERROR)


# =============================================================================
# Read-only and Maintenance Commands
# =============================================================================


@cli.command()
@click.argument("name", required=False)
@click.option("--json", "as_json", is_flag=True, help="Print as JSON, sensitive values included")
@click.pass_context
def output(ctx: click.Context, name: str | None, as_json: bool) -> None:
    """Print recorded outputs."""
    obj: CliContext = ctx.obj
    try:
        outputs = obj.reconciler().output(name)
    except KeyError as e:
        raise click.ClickException(str(e.args[0])) from e
    except StateError as e:
        raise click.ClickException(str(e)) from e

    if name is not None:
        value = outputs[name].value
        click.echo(json.dumps(value, default=str) if as_json else _format_value(value))
        return

    if as_json:
        payload = {k: {"value": v.value, "sensitive": v.sensitive} for k, v in outputs.items()}
        click.echo(json.dumps(payload, indent=2, default=str))
        return

    for output_name, value in outputs.items():
        shown = SENSITIVE_PLACEHOLDER if value.sensitive else _format_value(value.value)
        click.echo(f"{output_name} = {shown}")


@cli.group()
def state() -> None:
    """Inspect and edit the State Store."""
    pass


@state.command("list")
@click.pass_obj
def state_list(obj: CliContext) -> None:
    """List recorded resource addresses."""
    try:
        records = obj.store().records()
    except StateError as e:
        raise click.ClickException(str(e)) from e
    for address in records:
        click.echo(address)


@state.command("show")
@click.argument("address")
@click.pass_obj
def state_show(obj: CliContext, address: str) -> None:
    """Show one recorded resource as JSON."""
    try:
        record = obj.store().get(address)
    except StateError as e:
        raise click.ClickException(str(e)) from e
    if record is None:
        raise click.ClickException(f"No resource recorded at {address}")
    click.echo(json.dumps(record.model_dump(mode="json"), indent=2))


@state.command("rm")
@click.argument("address")
@click.pass_context
def state_rm(ctx: click.Context, address: str) -> None:
    """Forget a resource without deleting it remotely."""
    obj: CliContext = ctx.obj
    store = obj.store()
    try:
        with store.locked_for("state rm", wait_seconds=obj.config.lock_wait_seconds):
            if store.get(address) is None:
                raise click.ClickException(f"No resource recorded at {address}")
            store.delete(address)
    except LockContention as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        ctx.exit(EXIT_LOCKED)
    except StateError as e:
        raise click.ClickException(str(e)) from e
    click.echo(f"Removed {address} from state.")


@cli.command("force-unlock")
@click.pass_obj
def force_unlock(obj: CliContext) -> None:
    """Remove the State Store lock regardless of its holder."""
    info = obj.store().force_unlock()
    if info is None:
        click.echo("State is not locked.")
        return
    click.echo(f"Removed lock: {info.describe()}")


def main() -> None:
    """Entry point for the graphctl console script."""
    cli()


if __name__ == "__main__":
    main()
