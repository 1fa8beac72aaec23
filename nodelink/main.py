"""
nodelink — CLI entrypoint.

Usage:
    nodelink --help
    nodelink install package-lock.yml
    nodelink install package-lock.yml --strategy isolated --cache ~/.cache/nodelink
    nodelink rebuild package-lock.yml
    nodelink probe-reflink ~/.cache/nodelink ./node_modules
"""

from __future__ import annotations

import json
import os
import sys
import time
from pathlib import Path
from typing import Any

import click

from nodelink import __version__
from nodelink.core.config.loader import (
    ConfigError,
    LinkerSettings,
    Strategy,
    load_graph,
    load_settings,
)
from nodelink.core.engine.linker import Linker
from nodelink.core.errors import LinkerError
from nodelink.core.models.graph import PackageIdentity
from nodelink.core.observability.logging_config import (
    ENV_LOG_FILE,
    ENV_LOG_FILE_LEVEL,
    resolve_level,
    script_output_requested,
    setup_logging,
)
from nodelink.core.persistence.lockfile import hidden_lockfile_path, write_lockfile
from nodelink.core.services.package_source import PackageSource

_LOCKFILE = click.Path(exists=True, dir_okay=False, path_type=Path)


@click.group()
@click.version_option(version=__version__, prog_name="nodelink")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (shows script output).")
@click.option(
    "--script-output",
    is_flag=True,
    help="Stream lifecycle script output to stderr (also NODELINK_SCRIPT_OUTPUT=1).",
)
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False),
    default=None,
    help="Path to nodelink.yml (default: auto-detect).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    script_output: bool,
    config_path: str | None,
) -> None:
    """nodelink — lay out node_modules from a resolved lockfile."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["debug"] = debug
    ctx.obj["config_path"] = Path(config_path) if config_path else None

    # ── Logging setup (once, at process start) ──────────────────
    setup_logging(
        level=resolve_level(debug, verbose, quiet),
        log_file=os.environ.get(ENV_LOG_FILE),
        log_file_level=os.environ.get(ENV_LOG_FILE_LEVEL),
        script_output=script_output or script_output_requested(),
    )


# ── Helpers ─────────────────────────────────────────────────────


def _fail(message: str) -> None:
    click.secho(f"❌ {message}", fg="red", err=True)
    sys.exit(1)


def _settings(ctx: click.Context, overrides: dict[str, Any]) -> LinkerSettings:
    """Config file + environment, then CLI flags on top."""
    settings = load_settings(ctx.obj.get("config_path"))
    if not overrides:
        return settings
    try:
        return LinkerSettings.model_validate({**settings.model_dump(), **overrides})
    except ValueError as e:
        raise ConfigError(f"Invalid option: {e}") from e


def _script_announcer(ctx: click.Context, announce: bool = True):
    if not announce or ctx.obj.get("quiet"):
        return None

    def _announce(package: PackageIdentity, event: str) -> None:
        click.secho(f"   ▸ {package.spec} ", fg="cyan", nl=False)
        click.echo(event)

    return _announce


def _open_linker(
    ctx: click.Context,
    settings: LinkerSettings,
    lockfile: Path,
    root: Path,
    announce: bool = True,
) -> Linker:
    hidden = hidden_lockfile_path(root)
    opts = settings.to_options(
        root,
        actual_tree=hidden if hidden.is_file() else None,
        on_script_start=_script_announcer(ctx, announce),
    )
    source = PackageSource(cache=opts.cache, base_dir=lockfile.parent.resolve())
    return Linker.for_strategy(settings.strategy, opts, source)


def _common_overrides(
    strategy: str | None,
    cache: Path | None,
    concurrency: int | None,
) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    if strategy:
        overrides["strategy"] = strategy
    if cache is not None:
        overrides["cache"] = cache.resolve()
    if concurrency is not None:
        overrides["concurrency"] = concurrency
    return overrides


_strategy_option = click.option(
    "--strategy",
    type=click.Choice([s.value for s in Strategy]),
    default=None,
    help="node_modules layout (default: from config, else hoisted).",
)
_root_option = click.option(
    "--root",
    type=click.Path(file_okay=False, path_type=Path),
    default=".",
    show_default=True,
    help="Project directory whose node_modules is managed.",
)
_cache_option = click.option(
    "--cache",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Content cache directory for unpacked tarballs.",
)
_concurrency_option = click.option(
    "--concurrency",
    type=click.IntRange(min=1),
    default=None,
    help="Parallel filesystem operations.",
)


# ── Commands ────────────────────────────────────────────────────


@cli.command()
@click.argument("lockfile", type=_LOCKFILE)
@_strategy_option
@_root_option
@_cache_option
@_concurrency_option
@click.option("--script-concurrency", type=click.IntRange(min=1), default=None,
              help="Lifecycle scripts running at once.")
@click.option("--ignore-scripts", is_flag=True, help="Link bins but run no lifecycle scripts.")
@click.option("--prefer-copy", is_flag=True, help="Always copy files (no reflinks or hard links).")
@click.option("--validate", is_flag=True, help="Re-verify installed packages by content digest.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def install(
    ctx: click.Context,
    lockfile: Path,
    strategy: str | None,
    root: Path,
    cache: Path | None,
    concurrency: int | None,
    script_concurrency: int | None,
    ignore_scripts: bool,
    prefer_copy: bool,
    validate: bool,
    as_json: bool,
) -> None:
    """Install the packages in LOCKFILE into node_modules."""
    overrides = _common_overrides(strategy, cache, concurrency)
    if script_concurrency is not None:
        overrides["script_concurrency"] = script_concurrency
    if ignore_scripts:
        overrides["ignore_scripts"] = True
    if prefer_copy:
        overrides["prefer_copy"] = True
    if validate:
        overrides["validate_content"] = True

    root = root.resolve()
    start = time.monotonic()
    try:
        settings = _settings(ctx, overrides)
        graph = load_graph(lockfile)
        root.mkdir(parents=True, exist_ok=True)
        with _open_linker(ctx, settings, lockfile, root, announce=not as_json) as linker:
            pruned = linker.prune(graph)
            extracted = linker.extract(graph)
            linker.rebuild(graph, ignore_scripts=settings.ignore_scripts)
        write_lockfile(graph, hidden_lockfile_path(root))
    except (LinkerError, ConfigError) as e:
        _fail(str(e))
        return

    elapsed = time.monotonic() - start
    if as_json:
        click.echo(json.dumps({
            "strategy": settings.strategy.value,
            "packages": len(graph.reachable()) - 1,
            "extracted": extracted,
            "pruned": pruned,
            "seconds": round(elapsed, 3),
        }, indent=2))
        return

    if not ctx.obj.get("quiet"):
        click.secho(
            f"✅ Installed {len(graph.reachable()) - 1} packages ({settings.strategy})",
            fg="green", bold=True,
        )
        click.echo(f"   Extracted: {extracted}   Pruned: {pruned}   in {elapsed:.2f}s")


@cli.command()
@click.argument("lockfile", type=_LOCKFILE)
@_strategy_option
@_root_option
@_concurrency_option
@click.pass_context
def prune(
    ctx: click.Context,
    lockfile: Path,
    strategy: str | None,
    root: Path,
    concurrency: int | None,
) -> None:
    """Remove packages from node_modules that LOCKFILE no longer lists."""
    root = root.resolve()
    try:
        settings = _settings(ctx, _common_overrides(strategy, None, concurrency))
        graph = load_graph(lockfile)
        with _open_linker(ctx, settings, lockfile, root) as linker:
            pruned = linker.prune(graph)
    except (LinkerError, ConfigError) as e:
        _fail(str(e))
        return

    if not ctx.obj.get("quiet"):
        click.secho(f"🧹 Pruned {pruned} packages", fg="green")


@cli.command()
@click.argument("lockfile", type=_LOCKFILE)
@_strategy_option
@_root_option
@click.option("--script-concurrency", type=click.IntRange(min=1), default=None,
              help="Lifecycle scripts running at once.")
@click.pass_context
def rebuild(
    ctx: click.Context,
    lockfile: Path,
    strategy: str | None,
    root: Path,
    script_concurrency: int | None,
) -> None:
    """Re-link bins and re-run lifecycle scripts for every installed package."""
    overrides = _common_overrides(strategy, None, None)
    if script_concurrency is not None:
        overrides["script_concurrency"] = script_concurrency

    root = root.resolve()
    try:
        settings = _settings(ctx, overrides)
        graph = load_graph(lockfile)
        with _open_linker(ctx, settings, lockfile, root) as linker:
            linker.mark_all_pending(graph)
            linker.rebuild(graph, ignore_scripts=False)
    except (LinkerError, ConfigError) as e:
        _fail(str(e))
        return

    if not ctx.obj.get("quiet"):
        click.secho("✅ Rebuild complete", fg="green", bold=True)


@cli.command("probe-reflink")
@click.argument("src", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.argument("dest", type=click.Path(exists=True, file_okay=False, path_type=Path))
def probe_reflink(src: Path, dest: Path) -> None:
    """Check whether files in SRC can be reflinked into DEST."""
    from nodelink.adapters.shell.filesystem import supports_reflink

    if supports_reflink(src, dest):
        click.secho(f"✓ reflinks supported from {src} to {dest}", fg="green")
    else:
        click.secho(f"✗ reflinks not supported from {src} to {dest}", fg="yellow")


if __name__ == "__main__":
    cli()
