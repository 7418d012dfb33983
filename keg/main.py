"""
keg — CLI entrypoint.

Usage:
    keg install hurl.rb
    keg install hurl.yml --prefix /opt/hurl --strict
    keg check hurl.yml --json
    keg list
    keg test hurl
    keg uninstall hurl
"""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path

import click

from keg import __version__
from keg.core.config.settings import ConfigError, Settings, load_settings
from keg.core.errors import KegError
from keg.core.observability.logging_config import resolve_level, setup_logging


@click.group()
@click.version_option(version=__version__, prog_name="keg")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False),
    default=None,
    help="Path to keg's config.yml (default: KEG_CONFIG or ~/.config/keg/config.yml).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    config_path: str | None,
) -> None:
    """keg — install prebuilt tools from package manifests."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["debug"] = debug
    ctx.obj["config_path"] = Path(config_path) if config_path else None

    # ── Logging setup (once, at process start) ──────────────────
    setup_logging(
        level=resolve_level(debug=debug, verbose=verbose, quiet=quiet),
        log_file=os.environ.get("KEG_LOG_FILE"),
        log_file_level=os.environ.get("KEG_LOG_FILE_LEVEL"),
    )


def _settings(ctx: click.Context, prefix: str | None = None) -> Settings:
    try:
        return load_settings(ctx.obj.get("config_path"), prefix=prefix)
    except ConfigError as e:
        click.secho(f"❌ {e}", fg="red", err=True)
        sys.exit(e.exit_code)


def _fail(exc: KegError, as_json: bool = False) -> None:
    if as_json:
        click.echo(json.dumps({
            "ok": False,
            "error": str(exc),
            "kind": type(exc).__name__,
            "step_index": exc.step_index,
        }, indent=2))
    else:
        click.secho(f"❌ {exc}", fg="red", err=True)
    sys.exit(exc.exit_code)


# ── install ─────────────────────────────────────────────────────────


@cli.command()
@click.argument("manifest_path", type=click.Path(dir_okay=False, path_type=Path))
@click.option("--prefix", default=None, help="Destination root (overrides config and KEG_PREFIX).")
@click.option("--no-test", is_flag=True, help="Skip the post-install smoke test.")
@click.option("--strict", is_flag=True, help="Exit non-zero when the smoke test fails.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def install(
    ctx: click.Context,
    manifest_path: Path,
    prefix: str | None,
    no_test: bool,
    strict: bool,
    as_json: bool,
) -> None:
    """Install the package described by MANIFEST_PATH (.rb, .yml, .yaml or .json)."""
    from keg.core.config.loader import load_manifest
    from keg.core.services.install import install_manifest

    settings = _settings(ctx, prefix)
    try:
        manifest = load_manifest(manifest_path)
        report = install_manifest(manifest, settings, run_test=not no_test)
    except KegError as e:
        _fail(e, as_json)
        return

    failure = report.smoke_test_failure

    if as_json:
        click.echo(json.dumps({"ok": True, **report.to_dict()}, indent=2))
    else:
        quiet = ctx.obj.get("quiet", False)
        label = f"{report.name} {report.version}".strip()
        click.secho(f"✅ Installed {label} into {report.prefix}", fg="green")
        if not quiet:
            for step in report.steps:
                marker = "=" if step.unchanged else "+"
                click.echo(f"   {marker} {step.destination}")
        for dep in report.missing_dependencies:
            click.secho(f"⚠️  Run dependency '{dep}' not found", fg="yellow", err=True)
        if failure is not None:
            click.secho(f"⚠️  {failure}", fg="yellow", err=True)
        elif report.smoke_test is not None and not quiet:
            click.echo(f"   🧪 {' '.join(report.smoke_test.command)} → ok")

    if failure is not None and strict:
        sys.exit(failure.exit_code)


# ── check ───────────────────────────────────────────────────────────


@cli.command()
@click.argument("manifest_path", type=click.Path(dir_okay=False, path_type=Path))
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
def check(manifest_path: Path, as_json: bool) -> None:
    """Parse MANIFEST_PATH and show what it would install."""
    from keg.core.config.loader import load_manifest

    try:
        manifest = load_manifest(manifest_path)
    except KegError as e:
        _fail(e, as_json)
        return

    if as_json:
        click.echo(json.dumps(manifest.to_dict(), indent=2))
        return

    click.secho(f"📦 {manifest.name} {manifest.version}".rstrip(), fg="cyan", bold=True)
    if manifest.desc:
        click.echo(f"   {manifest.desc}")
    if manifest.homepage:
        click.echo(f"   🔗 {manifest.homepage}")
    click.echo(f"   url:     {manifest.url}")
    click.echo(f"   digest:  {manifest.digest}")
    if manifest.license:
        click.echo(f"   license: {', '.join(sorted(manifest.license))}")
    if manifest.dependencies:
        deps = ", ".join(f"{d.name} ({d.kind.value})" for d in manifest.dependencies)
        click.echo(f"   depends: {deps}")
    click.echo()
    click.secho(f"   Install steps: {len(manifest.install)}", bold=True)
    for index, step in enumerate(manifest.install):
        click.echo(f"     {index}. {step.describe()}")
    binary = manifest.smoke_binary()
    if binary:
        click.echo(f"   🧪 {binary} {' '.join(manifest.test.args)}")


# ── list ────────────────────────────────────────────────────────────


@cli.command(name="list")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def list_packages(ctx: click.Context, as_json: bool) -> None:
    """List installed packages."""
    from keg.core.persistence.install_log import ReceiptStore

    settings = _settings(ctx)
    receipts = ReceiptStore(settings.receipts_dir).list_receipts()

    if as_json:
        click.echo(json.dumps([r.model_dump(mode="json") for r in receipts], indent=2))
        return

    if not receipts:
        click.echo("No packages installed.")
        return
    for r in receipts:
        click.echo(f"{r.name:<24} {r.version or '-':<12} {len(r.files):>3} files  {r.prefix}")


# ── test ────────────────────────────────────────────────────────────


@cli.command(name="test")
@click.argument("name")
@click.pass_context
def test_package(ctx: click.Context, name: str) -> None:
    """Re-run the smoke test of an installed package."""
    from keg.core.services.install import smoke_test_installed

    settings = _settings(ctx)
    try:
        result = smoke_test_installed(name, settings)
    except KegError as e:
        _fail(e)
        return

    if result is None:
        click.echo(f"{name} installed no binary; nothing to test.")
        return
    failure = result.failure
    if failure is not None:
        failure.with_context(manifest_name=name)
        _fail(failure)
        return
    click.secho(f"✅ {' '.join(result.command)} → exit 0", fg="green")
    if result.stdout.strip() and not ctx.obj.get("quiet", False):
        click.echo(f"   {result.stdout.strip().splitlines()[0]}")


# ── uninstall ───────────────────────────────────────────────────────


@cli.command()
@click.argument("name")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def uninstall(ctx: click.Context, name: str, as_json: bool) -> None:
    """Remove an installed package."""
    from keg.core.services.install import uninstall_package

    settings = _settings(ctx)
    try:
        report = uninstall_package(name, settings)
    except KegError as e:
        _fail(e, as_json)
        return

    if as_json:
        click.echo(json.dumps({"ok": True, **report.to_dict()}, indent=2))
        return

    click.secho(f"🗑️  Removed {name} ({len(report.removed)} files)", fg="green")
    for path in report.kept:
        click.secho(f"⚠️  Kept {path}: modified since install", fg="yellow", err=True)


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
