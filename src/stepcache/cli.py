# cli.py
from __future__ import annotations

import logging
import sys
from pathlib import Path

import click

from stepcache.dag import build_graph
from stepcache.dsl import load_plan
from stepcache.reader import Reader
from stepcache.settings import PLAN_FILE, STORE_DIR, WORKERS
from stepcache.store import Store
from stepcache.ui.console import Console, get_console, set_console


def find_plan_files() -> list[Path]:
    """
    Find plan files in the current directory: the default plan file
    first, then any *_plan.py.
    """
    plan_files = []
    current_dir = Path(".")

    default_plan = current_dir / PLAN_FILE
    if default_plan.exists():
        return [default_plan]

    for path in current_dir.glob("*_plan.py"):
        plan_files.append(path)

    return sorted(plan_files)


def discover_plan(plan_arg: str | None) -> Path:
    """
    Discover plan file from argument or default.

    Raises:
        SystemExit: If no plan can be found or several candidates exist
    """
    console = get_console()

    if plan_arg:
        plan_path = Path(plan_arg)
        if not plan_path.exists() and plan_path.suffix != ".py":
            plan_path = Path(str(plan_path) + ".py")
        if not plan_path.exists():
            console.print_error(
                "Plan file not found",
                f"Could not find plan file: {plan_arg}",
                suggestion="Create a plan file or specify a different path:\n  stepcache make --plan my_plan.py",
            )
            sys.exit(1)
        return plan_path

    plan_files = find_plan_files()

    if len(plan_files) == 0:
        console.print_error(
            "No plan file found",
            "Could not find any plan files.",
            details=[
                "Looked for:",
                f"  {PLAN_FILE}",
                "  *_plan.py",
            ],
            suggestion=f"Create a plan file:\n  {PLAN_FILE}\n\nOr specify a plan explicitly:\n  stepcache make --plan my_plan.py",
        )
        sys.exit(1)

    if len(plan_files) > 1:
        file_list = "\n".join(f"  {f}" for f in plan_files)
        console.print_error(
            "Multiple plan files found",
            "Found multiple plan files. Please specify which one to use:",
            details=[file_list],
            suggestion=f"Specify a plan explicitly:\n  stepcache make --plan {plan_files[0]}",
        )
        sys.exit(1)

    return plan_files[0]


def _open_reader(ctx: click.Context, plan: str | None, workers: int | None = WORKERS) -> Reader:
    plan_path = discover_plan(plan)
    steps = load_plan(plan_path)
    get_console().print_debug(f"Loaded {len(steps)} steps from {plan_path}")
    return Reader(
        build_graph(steps),
        Store(ctx.obj["store"]),
        root=plan_path.resolve().parent,
        max_workers=workers,
        console=get_console(),
    )


def _fail(e: BaseException) -> None:
    get_console().print_exception(e)
    sys.exit(1)


plan_option = click.option(
    "--plan",
    default=None,
    help=f"Plan file path (defaults to {PLAN_FILE} if present)",
)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--store", default=STORE_DIR, show_default=True, help="Store directory")
@click.pass_context
def cli(ctx, debug, store):
    """stepcache: content-addressed, dependency-aware step cache."""
    console = Console(debug=debug)
    set_console(console)
    if debug:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["store"] = store


@cli.command()
@plan_option
@click.option("--workers", default=WORKERS, type=int, help="Number of parallel workers")
@click.option("--fail-fast/--keep-going", default=False, help="Stop scheduling new steps after first failure")
@click.argument("targets", nargs=-1)
@click.pass_context
def make(ctx, plan, workers, fail_fast, targets):
    """Build the plan (or only TARGETS and what they need)."""
    console = get_console()
    try:
        reader = _open_reader(ctx, plan, workers)
        report = reader.make(list(targets) or None, fail_fast=fail_fast)
        console.print_results({k: v.value for k, v in report.results.items()})
        if not report.ok:
            sys.exit(1)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        _fail(e)


@cli.command("outdated")
@plan_option
@click.pass_context
def outdated_cmd(ctx, plan):
    """List steps that would be rebuilt, and why."""
    try:
        reader = _open_reader(ctx, plan)
        get_console().print_outdated(reader.outdated())
    except Exception as e:
        _fail(e)


@cli.command()
@plan_option
@click.pass_context
def show(ctx, plan):
    """Show plan stages and the state of each step."""
    try:
        reader = _open_reader(ctx, plan)
        states = {k: v.value for k, v in reader.progress().items()}
        get_console().print_header(f"Plan: {len(reader.graph)} steps")
        get_console().print_stages(reader.graph.topo_levels(), states)
    except Exception as e:
        _fail(e)


@cli.command()
@plan_option
@click.argument("name")
@click.pass_context
def read(ctx, plan, name):
    """Print the current value of step NAME (building it if stale)."""
    try:
        reader = _open_reader(ctx, plan)
        get_console().print_info(repr(reader.read(name)))
    except Exception as e:
        _fail(e)


@cli.command()
@plan_option
@click.pass_context
def prune(ctx, plan):
    """Remove stored outputs the current plan no longer points to."""
    try:
        reader = _open_reader(ctx, plan)
        removed = reader.prune()
        reader.store.clear_tmp()
        get_console().print_info(f"Removed {len(removed)} stale object(s)")
    except Exception as e:
        _fail(e)


@cli.command()
@click.confirmation_option(prompt="Delete the whole store?")
@click.pass_context
def clean(ctx):
    """Delete the store directory."""
    store = Store(ctx.obj["store"])
    store.destroy()
    get_console().print_info(f"Removed {store.root}")


if __name__ == "__main__":
    cli()
