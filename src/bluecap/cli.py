"""
CLI entry point for Bluecap.

This module provides the Typer-based command-line interface for Bluecap.

Commands:
    version         Show the version and the configured directories
    create          Create a capsule from an image
    delete          Delete a capsule
    trust           Trust (or untrust) a capsule
    options-modify  Add (or remove) runtime options
    options-dump    Print a capsule's record
    persistence     Add (or remove) a persistent directory
    run             Run a command inside a capsule
    export          Export a command from a capsule
    link            Link a capsule into a directory
    list            List capsules
    doctor          Check the environment

Architecture Note:
    main() looks at the raw arguments before Typer does. Export shims
    re-enter through a `run-exported-internal:<capsule>` marker, and the
    privileged `su-*` commands take purely positional arguments that must
    never be parsed as options. Everything else goes to the Typer app,
    whose commands only collect arguments and hand them to the
    PrivilegeDispatcher.
"""

import json
import logging
import os
import shutil
import sys
import traceback
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, NoReturn, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from bluecap import __version__
from bluecap.actions import PRIVILEGED_COMMANDS, Action
from bluecap.config import load_settings
from bluecap.dispatch import PrivilegeDispatcher, split_run_arguments
from bluecap.errors import BluecapError, ValidationError
from bluecap.exports import parse_marker
from bluecap.identity import CONTEXT_ARG, ROOTLESS_ENV, VERBOSE_ENV, IdentityContext
from bluecap.schema import CapsuleDefinition, DefaultsDefinition
from bluecap.services import Services
from bluecap.store import RecordStore

# Initialize Typer app with metadata
app = typer.Typer(
    name="bluecap",
    help="Run commands in named, reusable sandbox profiles.",
    add_completion=False,
    no_args_is_help=True,
)

# Rich consoles for formatted output
console = Console()
err_console = Console(stderr=True)


@dataclass
class CliState:
    """Global flags, shared with every command through ctx.obj."""

    verbose: bool = False
    rootless: bool = False
    debug: bool = False


# =============================================================================
# Wiring
# =============================================================================


def get_services(state: CliState, forwarded: IdentityContext | None = None) -> Services:
    """Build the components for this invocation."""
    settings = load_settings()
    identity = IdentityContext.detect(forwarded=forwarded).with_flags(
        rootless=state.rootless,
        verbose=state.verbose,
    )
    return Services.create(settings, identity, program=_program_path())


def get_dispatcher(services: Services) -> PrivilegeDispatcher:
    return PrivilegeDispatcher(services)


def configure_logging(verbose: bool) -> None:
    """Send debug diagnostics to stderr when verbose."""
    if not verbose:
        return
    logging.basicConfig(
        level=logging.DEBUG,
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def _program_path() -> str:
    """Absolute path of the running bluecap, for pkexec and export shims."""
    program = sys.argv[0]
    if os.sep not in program:
        program = shutil.which(program) or program
    return os.path.abspath(program)


def _report_error(error: BluecapError, debug: bool) -> None:
    err_console.print(f"[red]Error: {escape(error.message)}[/red]")
    if error.suggestion:
        err_console.print(f"[dim]{escape(error.suggestion)}[/dim]")
    if debug:
        err_console.print(f"[dim]{escape(traceback.format_exc())}[/dim]")


def _fail(error: BluecapError, debug: bool) -> NoReturn:
    _report_error(error, debug)
    raise typer.Exit(code=1)


def _request(ctx: typer.Context, action: Action, **kwargs) -> None:
    state: CliState = ctx.obj
    try:
        services = get_services(state)
        get_dispatcher(services).request(action, **kwargs)
    except BluecapError as e:
        _fail(e, state.debug)


# =============================================================================
# Callback
# =============================================================================


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold]bluecap[/bold] version {__version__}")
        raise typer.Exit()


@app.callback()
def callback(
    ctx: typer.Context,
    verbose: Annotated[
        bool,
        typer.Option(
            "--verbose",
            "-v",
            help="Print debug diagnostics to stderr.",
        ),
    ] = False,
    rootless: Annotated[
        bool,
        typer.Option(
            "--rootless",
            "-r",
            help="Use per-user capsules and run the runtime without pkexec.",
        ),
    ] = False,
    debug: Annotated[
        bool,
        typer.Option(
            "--debug",
            help="Show full tracebacks on errors.",
        ),
    ] = False,
    version: Annotated[
        Optional[bool],
        typer.Option(
            "--version",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """
    Bluecap - Named, reusable sandbox profiles.

    State-changing commands are authorized through pkexec; trusted capsules
    run without a prompt.
    """
    verbose = verbose or bool(os.environ.get(VERBOSE_ENV))
    rootless = rootless or bool(os.environ.get(ROOTLESS_ENV))
    ctx.obj = CliState(verbose=verbose, rootless=rootless, debug=debug)
    configure_logging(verbose)


# =============================================================================
# Commands
# =============================================================================


@app.command()
def version(ctx: typer.Context) -> None:
    """Show the Bluecap version and the configured directories."""
    state: CliState = ctx.obj
    try:
        settings = load_settings()
    except BluecapError as e:
        _fail(e, state.debug)

    console.print(f"bluecap {__version__}")
    console.print(f"sysconfdir     : {settings.sysconfdir}")
    console.print(f"sharedstatedir : {settings.sharedstatedir}")


@app.command()
def create(
    ctx: typer.Context,
    capsule: Annotated[str, typer.Argument(help="Name of the new capsule.")],
    image: Annotated[str, typer.Argument(help="Container image to base it on.")],
) -> None:
    """
    Create a capsule from the given image.

    The capsule starts out with the administrator's default options.

    Example:
        $ bluecap create dev fedora:latest
    """
    _request(ctx, Action.CREATE, capsule=capsule, image=image)


@app.command()
def delete(
    ctx: typer.Context,
    capsule: Annotated[str, typer.Argument(help="Capsule name, or '.' for the linked one.")],
    keep_persistence: Annotated[
        bool,
        typer.Option(
            "--keep-persistence",
            "-k",
            help="Keep the persisted files.",
        ),
    ] = False,
) -> None:
    """Delete the capsule (keep the persisted files if -k)."""
    _request(ctx, Action.DELETE, capsule=capsule, keep_persistence=keep_persistence)


@app.command()
def trust(
    ctx: typer.Context,
    capsule: Annotated[str, typer.Argument(help="Capsule name, or '.' for the linked one.")],
    untrust: Annotated[
        bool,
        typer.Option(
            "--untrust",
            "-u",
            help="Untrust the capsule instead.",
        ),
    ] = False,
) -> None:
    """Trust the given capsule (use -u to untrust instead)."""
    _request(ctx, Action.TRUST, capsule=capsule, untrust=untrust)


@app.command("options-modify")
def options_modify(
    ctx: typer.Context,
    capsule: Annotated[str, typer.Argument(help="Capsule name, or '.' for the linked one.")],
    options: Annotated[
        Optional[list[str]],
        typer.Argument(help="Runtime options without the leading dashes (e.g. net=none)."),
    ] = None,
    remove: Annotated[
        bool,
        typer.Option(
            "--remove",
            "-r",
            help="Remove the options instead.",
        ),
    ] = False,
) -> None:
    """
    Add options to a capsule (or remove them if -r is given).

    Example:
        $ bluecap options-modify dev net=none cap-drop=all
    """
    _request(ctx, Action.OPTIONS_MODIFY, capsule=capsule, options=options or [], remove=remove)


@app.command("options-dump")
def options_dump(
    ctx: typer.Context,
    capsule: Annotated[str, typer.Argument(help="Capsule name, or '.' for the linked one.")],
) -> None:
    """Dump the capsule's options."""
    state: CliState = ctx.obj
    try:
        services = get_services(state)
        info = services.resolver.resolve(capsule, should_exist=True)
        content = services.store.read_text(info.path)
    except BluecapError as e:
        _fail(e, state.debug)

    print(content, end="" if content.endswith("\n") else "\n")


@app.command()
def persistence(
    ctx: typer.Context,
    capsule: Annotated[str, typer.Argument(help="Capsule name, or '.' for the linked one.")],
    directory: Annotated[str, typer.Argument(help="Directory inside the sandbox.")],
    remove: Annotated[
        bool,
        typer.Option(
            "--remove",
            "-r",
            help="Stop persisting the directory.",
        ),
    ] = False,
    keep_persistence: Annotated[
        bool,
        typer.Option(
            "--keep-persistence",
            "-k",
            help="With -r, keep the persisted files.",
        ),
    ] = False,
) -> None:
    """
    Add a persistent directory.

    If -r is given, remove it instead, and if -k is also given, don't
    delete the persisted files.

    Example:
        $ bluecap persistence dev /data
    """
    _request(
        ctx,
        Action.PERSISTENCE,
        capsule=capsule,
        directory=directory,
        remove=remove,
        keep_persistence=keep_persistence,
    )


@app.command(
    context_settings={
        "allow_extra_args": True,
        "ignore_unknown_options": True,
        "allow_interspersed_args": False,
    },
)
def run(ctx: typer.Context) -> None:
    """
    Run a command within a capsule.

    Usage: bluecap run [-w|--workdir WORKDIR] CAPSULE COMMAND...

    CAPSULE may be '@IMAGE' to run an image directly with the default
    options. The command is passed through untouched.

    Example:
        $ bluecap run dev make -j4
    """
    state: CliState = ctx.obj
    try:
        request = split_run_arguments(ctx.args)
        workdir = Path(request.workdir) if request.workdir else Path.cwd()
    except BluecapError as e:
        _fail(e, state.debug)

    _request(ctx, Action.RUN, target=request.capsule, workdir=workdir, command=request.command)


@app.command()
def export(
    ctx: typer.Context,
    capsule: Annotated[str, typer.Argument(help="Capsule name, or '.' for the linked one.")],
    executable: Annotated[str, typer.Argument(help="Command to run inside the capsule.")],
    exposed_name: Annotated[
        Optional[str],
        typer.Option(
            "--as",
            help="Name of the exported command (default: the executable's base name).",
        ),
    ] = None,
) -> None:
    """
    Export a command from the capsule.

    Example:
        $ bluecap export dev /usr/bin/make --as=dev-make
    """
    _request(ctx, Action.EXPORT, capsule=capsule, executable=executable, exposed_name=exposed_name)


@app.command()
def link(
    ctx: typer.Context,
    capsule: Annotated[str, typer.Argument(help="Capsule to link.")],
    directory: Annotated[
        Optional[Path],
        typer.Argument(help="Directory to link into (default: current directory)."),
    ] = None,
) -> None:
    """Link a capsule into the directory, so '.' refers to it there."""
    state: CliState = ctx.obj
    try:
        services = get_services(state)
        info = services.resolver.resolve(capsule, should_exist=True)
        target = services.resolver.link(info, directory or Path.cwd())
    except BluecapError as e:
        _fail(e, state.debug)

    console.print(f"Linked [bold]{info.name}[/bold] at {escape(str(target))}")


@app.command("list")
def list_capsules(ctx: typer.Context) -> None:
    """List capsules in the active store."""
    state: CliState = ctx.obj
    try:
        services = get_services(state)
        store_path = services.resolver.store_path
        trusted = set() if services.identity.rootless else set(services.trust.trusted_names())
    except BluecapError as e:
        _fail(e, state.debug)

    records = sorted(store_path.glob("*.json")) if store_path.is_dir() else []
    if not records:
        console.print(f"[dim]No capsules in {store_path}[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Name", style="cyan")
    table.add_column("Image")
    table.add_column("Trusted", width=7)
    table.add_column("Options")
    table.add_column("Persistence")

    for path in records:
        name = path.stem
        try:
            definition = services.store.read(path, CapsuleDefinition)
        except BluecapError as e:
            table.add_row(name, "[red]unreadable[/red]", "", escape(e.message), "")
            continue

        table.add_row(
            name,
            escape(definition.image),
            "[green]yes[/green]" if name in trusted else "[dim]no[/dim]",
            escape(" ".join(f"--{o}" for o in sorted(definition.options))),
            escape(" ".join(sorted(definition.persistence))),
        )

    console.print(table)


@app.command()
def doctor(
    ctx: typer.Context,
    json_output: Annotated[
        bool,
        typer.Option(
            "--json",
            help="Output results in JSON format.",
        ),
    ] = False,
) -> None:
    """
    Check system environment and dependencies.

    Verifies:
    - Python version (3.11+)
    - The container runtime and the escalation program are on PATH
    - The administrator defaults file exists and is valid

    Example:
        $ bluecap doctor
    """
    state: CliState = ctx.obj
    checks = []
    all_ok = True

    # Check 1: Python version
    py_version = sys.version_info
    py_version_str = f"{py_version.major}.{py_version.minor}.{py_version.micro}"
    py_ok = py_version >= (3, 11)
    checks.append({
        "name": "Python version",
        "ok": py_ok,
        "value": py_version_str,
        "message": "OK" if py_ok else "Requires Python 3.11+",
    })
    all_ok = all_ok and py_ok

    try:
        settings = load_settings()
    except BluecapError as e:
        checks.append({
            "name": "Settings",
            "ok": False,
            "value": e.context.get("path", ""),
            "message": e.message,
        })
        _print_checks(checks, ok=False, json_output=json_output)
        raise typer.Exit(code=1)

    # Check 2: external programs
    programs = [("Container runtime", settings.container_runtime)]
    if not state.rootless:
        programs.append(("Escalation program", settings.escalation_program))
    for label, program in programs:
        found = shutil.which(program)
        checks.append({
            "name": label,
            "ok": found is not None,
            "value": program,
            "message": found or f"{program} not found on PATH",
        })
        all_ok = all_ok and found is not None

    # Check 3: administrator defaults
    defaults_ok = True
    defaults_message = "OK"
    try:
        defaults = RecordStore().read(settings.defaults_path, DefaultsDefinition)
        defaults_message = f"{len(defaults.options)} default option(s)"
    except BluecapError as e:
        defaults_ok = False
        defaults_message = e.message
    checks.append({
        "name": "Defaults",
        "ok": defaults_ok,
        "value": str(settings.defaults_path),
        "message": defaults_message,
    })
    all_ok = all_ok and defaults_ok

    _print_checks(checks, ok=all_ok, json_output=json_output)
    raise typer.Exit(code=0 if all_ok else 1)


def _print_checks(checks: list[dict], ok: bool, json_output: bool) -> None:
    if json_output:
        output = {
            "ok": ok,
            "version": __version__,
            "checks": checks,
        }
        print(json.dumps(output, indent=2))
        return

    console.print(f"[bold]Bluecap Doctor[/bold] v{__version__}")
    console.print()

    for check in checks:
        icon = "[green]✓[/green]" if check["ok"] else "[red]✗[/red]"
        value = escape(str(check.get("value", "")))
        message = escape(str(check.get("message", "")))

        if check["ok"]:
            console.print(f"{icon} {check['name']}: [dim]{value}[/dim] - {message}")
        else:
            console.print(f"{icon} {check['name']}: [dim]{value}[/dim]")
            console.print(f"    [red]{message}[/red]")

    console.print()
    if ok:
        console.print("[green]All checks passed![/green]")
    else:
        console.print("[yellow]Some checks failed. See above for details.[/yellow]")


# =============================================================================
# Entry Point
# =============================================================================


def main(argv: list[str] | None = None) -> None:
    """
    Console script entry point.

    Order matters: the export re-entry marker first, then the privileged
    su-* commands (optionally preceded by a forwarded identity context),
    and only then the Typer application.
    """
    argv = sys.argv[1:] if argv is None else list(argv)
    forwarded: IdentityContext | None = None

    try:
        marker = parse_marker(argv[0]) if argv else None
        if marker is not None:
            services = get_services(CliState(rootless=marker[1]))
            configure_logging(services.identity.verbose)
            get_dispatcher(services).run_exported(argv)

        if argv and argv[0].startswith(f"{CONTEXT_ARG}="):
            forwarded = IdentityContext.from_argument(argv[0])
            if forwarded is None:
                raise ValidationError(message="Malformed identity context.")
            argv = argv[1:]
            if not argv or argv[0] not in PRIVILEGED_COMMANDS:
                raise ValidationError(message="An identity context must precede a privileged command.")

        if argv and argv[0] in PRIVILEGED_COMMANDS:
            services = get_services(CliState(), forwarded=forwarded)
            configure_logging(services.identity.verbose)
            get_dispatcher(services).run_privileged(argv[0], argv[1:])
    except BluecapError as e:
        _report_error(e, debug=False)
        sys.exit(1)

    app(args=argv, prog_name="bluecap")


if __name__ == "__main__":
    main()
