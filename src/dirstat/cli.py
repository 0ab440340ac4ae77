"""CLI interface for dirstat."""

from __future__ import annotations

import json
import logging
import re
import sys

import click

from dirstat.core.controller import EventKind, ScanController, ScanEvent, ScanState
from dirstat.core.exclude import ExcludeRules
from dirstat.core.walker import DirWalker
from dirstat.models.entry import Entry, SortKey
from dirstat.settings import Settings
from dirstat.utils import bytes_to_human, format_elapsed

_SORT_CHOICES = [key.value for key in SortKey]


def _setup_logging(verbosity: int) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")


@click.group()
@click.option("-v", "--verbose", count=True, help="Increase verbosity (-v info, -vv debug)")
def main(verbose: int) -> None:
    """dirstat: directory usage inspector."""
    _setup_logging(verbose)


# ── scan ─────────────────────────────────────────────────────────────────

@main.command()
@click.argument("path", type=click.Path(file_okay=True, dir_okay=True))
@click.option("--depth", "-d", default=1, show_default=True, help="Levels of the tree to print (-1 for all)")
@click.option("--sort", "sort_key", default="size", type=click.Choice(_SORT_CHOICES), show_default=True)
@click.option("--exclude", "-x", "excludes", multiple=True, help="Regex of full paths not to descend into")
@click.option("--cross-filesystems/--no-cross-filesystems", default=None,
              help="Descend into other mounted filesystems (default from settings)")
@click.option("--write-cache", "cache_file", default=None, type=click.Path(dir_okay=False),
              help="Save the scanned tree to this cache file")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def scan(
    path: str,
    depth: int,
    sort_key: str,
    excludes: tuple[str, ...],
    cross_filesystems: bool | None,
    cache_file: str | None,
    as_json: bool,
) -> None:
    """Scan PATH and print its size breakdown. Ctrl-C stops early."""
    settings = Settings.instance()
    try:
        rules = ExcludeRules([*settings.exclude_rules, *excludes])
    except re.error as e:
        raise click.BadParameter(str(e), param_hint="--exclude") from e
    walker = DirWalker(
        exclude_rules=rules,
        cross_filesystems=settings.cross_filesystems if cross_filesystems is None else cross_filesystems,
        progress_interval=settings.progress_interval,
    )

    with ScanController(walker=walker, settings=settings) as controller:
        if not as_json:
            controller.add_listener(_echo_progress)
        controller.start_scan(path)
        try:
            state = controller.wait()
        except KeyboardInterrupt:
            if controller.is_busy():
                controller.abort_scan()
            state = controller.wait()

        if not as_json:
            click.echo("\r\033[K", err=True, nl=False)
        _report(controller, state, depth, SortKey(sort_key), as_json)

        if cache_file and state in (ScanState.FINISHED, ScanState.ABORTED):
            if controller.save_cache(cache_file):
                if not as_json:
                    click.echo(f"Directory tree written to {cache_file}")
            else:
                click.echo(f"Error writing cache file {cache_file}: {controller.last_error}", err=True)
                sys.exit(1)


# ── show ─────────────────────────────────────────────────────────────────

@main.command()
@click.argument("cache_file", type=click.Path(dir_okay=False))
@click.option("--depth", "-d", default=1, show_default=True, help="Levels of the tree to print (-1 for all)")
@click.option("--sort", "sort_key", default="size", type=click.Choice(_SORT_CHOICES), show_default=True)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def show(cache_file: str, depth: int, sort_key: str, as_json: bool) -> None:
    """Print a tree previously saved with --write-cache."""
    with ScanController() as controller:
        controller.load_cache(cache_file)
        state = controller.wait()
        _report(controller, state, depth, SortKey(sort_key), as_json)


# ── output helpers ───────────────────────────────────────────────────────

def _echo_progress(event: ScanEvent) -> None:
    if event.kind is EventKind.PROGRESS:
        text = event.message if len(event.message) <= 70 else "…" + event.message[-69:]
        click.echo(f"\r\033[K  Reading {text}", err=True, nl=False)


def _report(controller: ScanController, state: ScanState, depth: int, sort: SortKey, as_json: bool) -> None:
    tree = controller.tree
    if state is ScanState.FAILED or tree.root is None:
        if as_json:
            click.echo(json.dumps({"state": state.value, "error": controller.last_error}, indent=2))
        else:
            click.echo(f"{click.style('✗', fg='red')} {controller.last_error}", err=True)
        sys.exit(1)

    root = tree.root
    if as_json:
        data = {
            "root_path": tree.root_path,
            "state": state.value,
            "partial": tree.partial,
            "total_size": root.total_size,
            "total_items": root.total_items,
            "error_count": root.error_count,
            "unreadable_bytes": root.total_unreadable_bytes,
            "tree": root.as_dict(depth, sort),
        }
        try:
            output = json.dumps(data, indent=2)
        except RecursionError:
            click.echo(f"{click.style('✗', fg='red')} Tree is too deep for JSON output; use a smaller --depth", err=True)
            sys.exit(1)
        click.echo(output)
        return

    if state is ScanState.ABORTED:
        click.echo(click.style("Reading aborted; sizes below are incomplete.", fg="yellow"))
    _print_tree(root, depth, sort)

    summary = f"\nTotal: {click.style(bytes_to_human(root.total_size), fg='green', bold=True)} in {root.total_items:,} items"
    if root.error_count:
        summary += click.style(f", {root.error_count} unreadable", fg="yellow")
    if root.total_unreadable_bytes:
        summary += f" (~{bytes_to_human(root.total_unreadable_bytes)} hidden)"
    session = controller.session
    if session is not None:
        summary += f" — {format_elapsed(session.elapsed)}"
    click.echo(summary + "\n")


def _print_tree(root: Entry, depth: int, sort: SortKey) -> None:
    total = root.total_size or 1
    stack: list[tuple[Entry, int]] = [(root, 0)]
    while stack:
        entry, level = stack.pop()
        click.echo(_format_line(entry, level, total))
        if entry.is_dir and (depth < 0 or level < depth):
            stack.extend((child, level + 1) for child in reversed(entry.sorted_children(sort)))


def _format_line(entry: Entry, level: int, total: int) -> str:
    name = entry.name if level == 0 else entry.name + ("/" if entry.is_dir else "")
    if entry.link_target:
        name += f" -> {entry.link_target}"
    tags = ""
    if entry.error:
        tags += click.style(" [unreadable]", fg="red")
    if entry.excluded:
        tags += click.style(" [excluded]", fg="bright_black")
    if entry.partial:
        tags += click.style(" [partial]", fg="yellow")
    percent = 100.0 * entry.total_size / total
    return f"{'  ' * level}{bytes_to_human(entry.total_size):>10s} {percent:5.1f}%  {name}{tags}"


# ── service ──────────────────────────────────────────────────────────────

@main.group()
def service() -> None:
    """D-Bus service management."""


@service.command("start")
def service_start() -> None:
    """Start the D-Bus service in foreground."""
    from dirstat.dbus_service import start_service

    click.echo("Starting dirstat D-Bus service...")
    start_service()
