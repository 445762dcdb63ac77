"""Thin CLI wrapper for kbuild.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import logging
from typing import Annotated

import httpx
import typer
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from typer.core import TyperGroup

from kbuild import __version__
from kbuild.config import (
    ConfigError,
    Settings,
    get_settings,
    print_settings_json,
    resolve_build_config,
)

logger = logging.getLogger(__name__)


class BuildGroup(TyperGroup):
    """Command group that treats unrecognised arguments as a full build.

    Known options and subcommands are parsed as usual. Anything else is
    dropped before parsing and recorded in ctx.meta["ignored_args"].
    """

    def parse_args(self, ctx: typer.Context, args: list[str]) -> list[str]:
        options = {
            opt
            for param in self.get_params(ctx)
            for opt in (*param.opts, *param.secondary_opts)
        }
        kept: list[str] = []
        ignored: list[str] = []
        for index, arg in enumerate(args):
            if arg in self.commands:
                kept.extend(args[index:])
                break
            if arg.split("=", 1)[0] in options:
                kept.append(arg)
            else:
                ignored.append(arg)
        ctx.meta["ignored_args"] = ignored
        return super().parse_args(ctx, kept)


app = typer.Typer(
    cls=BuildGroup,
    name="kbuild",
    help="Kernel Build Kit - build, package and ship Android kernels",
)
console = Console()
err_console = Console(stderr=True)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"kernel-buildkit version {__version__}")
        raise typer.Exit()


def configure_logging(level: str) -> None:
    """Route log records through Rich on stderr."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )
    # Request lines carry the bot token in the URL
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def fail(message: str, code: int = 1) -> typer.Exit:
    """Print an error to stderr and return the Exit to raise."""
    err_console.print(f"[red]ERROR:[/red] {escape(message)}", soft_wrap=True)
    return typer.Exit(code=code)


def info(message: str) -> None:
    console.print(f"[blue]INFO:[/blue] {escape(message)}", soft_wrap=True)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    setup_deps: Annotated[
        bool,
        typer.Option("--setup-deps", help="Install host build dependencies (apt)"),
    ] = False,
    fetch_toolchains: Annotated[
        bool,
        typer.Option(
            "--fetch-toolchains",
            help="Download the clang toolchain if missing (UPDATE_TOOLCHAINS=true forces)",
        ),
    ] = False,
    clean: Annotated[
        bool,
        typer.Option("--clean", help="Remove build outputs and run make mrproper"),
    ] = False,
    regen_defconfig: Annotated[
        bool,
        typer.Option(
            "--regen-defconfig",
            help="Regenerate a minimal defconfig snapshot without compiling",
        ),
    ] = False,
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """Build and package the kernel for DEVICE_TARGET, or run one maintenance mode."""
    if ctx.invoked_subcommand is not None:
        return

    selected = [setup_deps, fetch_toolchains, clean, regen_defconfig]
    if sum(selected) > 1:
        raise typer.BadParameter(
            "Use at most one of --setup-deps, --fetch-toolchains, --clean, "
            "--regen-defconfig"
        )

    try:
        settings = get_settings()
    except ValidationError as e:
        raise fail(f"Invalid configuration: {e}") from None
    configure_logging(settings.log_level)

    ignored = ctx.meta.get("ignored_args")
    if ignored:
        logger.warning("Ignoring unknown arguments: %s", " ".join(ignored))

    if setup_deps:
        _setup_deps()
    elif fetch_toolchains:
        _fetch_toolchains(settings)
    elif clean:
        _clean(settings)
    elif regen_defconfig:
        _regen_defconfig(settings)
    else:
        _build(settings)


def _setup_deps() -> None:
    from kbuild.deps import DependencySetupError
    from kbuild.deps import setup_deps as install

    try:
        install()
    except DependencySetupError as e:
        raise fail(str(e)) from None
    info("Dependencies installed")


def _fetch_toolchains(settings: Settings) -> None:
    from kbuild.toolchain import DownloadError, ExtractionError, ensure_toolchain
    from kbuild.types import ToolchainStatus

    config = resolve_build_config(settings, require_target=False)
    try:
        with httpx.Client() as client:
            status = ensure_toolchain(
                config,
                client,
                force=settings.update_toolchains,
                timeout=settings.http_timeout,
            )
    except (DownloadError, ExtractionError) as e:
        raise fail(f"Toolchain setup failed ({e.code}): {e}") from None

    if status is ToolchainStatus.INSTALLED:
        info(f"Toolchain extracted to {config.tc_dir}")
    else:
        info("Toolchain already exist")


def _clean(settings: Settings) -> None:
    from kbuild.runner import BuildExecutionError
    from kbuild.runner import clean as clean_tree

    config = resolve_build_config(settings, require_target=False)
    try:
        clean_tree(config)
    except BuildExecutionError as e:
        raise fail(str(e)) from None
    info("Clean completed")


def _regen_defconfig(settings: Settings) -> None:
    from kbuild.defconfig import ConfigPatchError, apply_thermal_workaround
    from kbuild.runner import BuildExecutionError, regen_defconfig

    try:
        config = resolve_build_config(settings)
    except ConfigError:
        raise fail("DEVICE_TARGET is required to regen!") from None

    try:
        if settings.apply_workaround:
            apply_thermal_workaround(config)
        snapshot = regen_defconfig(config)
    except (ConfigPatchError, BuildExecutionError) as e:
        raise fail(str(e)) from None
    info(f"Done! Minimal defconfig written to {snapshot}")


def _build(settings: Settings) -> None:
    from kbuild.defconfig import ConfigPatchError
    from kbuild.packaging import PackagingError
    from kbuild.pipeline import PipelineError, run_pipeline
    from kbuild.runner import BuildExecutionError
    from kbuild.types import NotifyStatus
    from kbuild.vcs import VcsError

    try:
        config = resolve_build_config(settings)
    except ConfigError as e:
        raise fail(str(e)) from None

    try:
        with httpx.Client() as client:
            report = run_pipeline(config, settings, client)
    except BuildExecutionError as e:
        if e.log_path is not None:
            err_console.print(f"See log: {e.log_path}")
        raise fail(str(e)) from None
    except (ConfigPatchError, PipelineError, PackagingError, VcsError) as e:
        raise fail(str(e)) from None

    if report.notify_status is NotifyStatus.FAILED:
        err_console.print(f"[yellow]Upload failed: {report.notify_error}[/yellow]")

    console.print()
    console.print(
        f"[green]Build completed in {report.elapsed_minutes} minute(s)![/green]"
    )
    info(f"Output Zip: {report.package.zip_name} (md5: {report.package.md5})")


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    try:
        settings = get_settings()
    except ValidationError as e:
        raise fail(f"Invalid configuration: {e}") from None
    if json_output:
        console.print(print_settings_json(settings), soft_wrap=True)
        return

    out_dir_display = str(settings.out_dir) if settings.out_dir else "(<source>/out)"
    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Target:[/bold]")
    console.print(f"  Device target:       {settings.device_target or '(empty)'}")
    console.print(f"  Build user:          {settings.build_user}")
    console.print(f"  Build host:          {settings.build_host}")
    console.print(f"  Jobs:                {settings.jobs}")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Source directory:    {settings.source_dir}")
    console.print(f"  Toolchain directory: {settings.tc_dir}")
    console.print(f"  Output directory:    {out_dir_display}")
    console.print(f"  Ccache directory:    {settings.ccache_dir}")
    console.print()
    console.print("[bold]Options:[/bold]")
    console.print(f"  Update toolchains:   {settings.update_toolchains}")
    console.print(f"  Thermal workaround:  {settings.apply_workaround}")
    console.print(f"  Clean after build:   {settings.do_clean}")
    console.print(f"  Log level:           {settings.log_level}")
    console.print(f"  HTTP timeout:        {settings.http_timeout}")
    console.print()
    console.print("[bold]Telegram:[/bold]")
    console.print(f"  Credentials set:     {settings.has_telegram_credentials}")
