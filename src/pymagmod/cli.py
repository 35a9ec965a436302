#!/usr/bin/env python3
"""Command-line interface for pymagmod using Typer: interactive session and macro replay."""

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from . import __version__  # type: ignore
from .addressing import format_address
from .console import Console
from .errors import FormatError, InvalidOperation, MacroIOError, TransportError
from .logbuffer import install as install_log_buffer
from .macro import FORMAT_VERSION, MacroDirective, MacroFile, ReplayReport, load, replay
from .session import ClientFactory, SessionHandle, default_client_factory
from .types import Endpoint, RegisterBank
from .workspace import Workspace

app = typer.Typer(
    name="magmod",
    help="Interactive Modbus TCP client with write queue and macro replay.",
    no_args_is_help=True,
)

logger = logging.getLogger(__name__)

# ============================================================================
# Shared options and helpers
# ============================================================================

HostOption = Annotated[
    Optional[str],
    typer.Option("--host", "-h", help="Device hostname or IP address", envvar="MAGMOD_HOST"),
]
PortOption = Annotated[
    Optional[int],
    typer.Option("--port", "-p", help="Modbus TCP port", envvar="MAGMOD_PORT"),
]
UnitIdOption = Annotated[
    int,
    typer.Option("--unit-id", "-u", help="Modbus unit ID", envvar="MAGMOD_UNIT_ID"),
]
TimeoutOption = Annotated[
    float,
    typer.Option("--timeout", "-t", help="Transport timeout in seconds", envvar="MAGMOD_TIMEOUT"),
]
RetriesOption = Annotated[
    int,
    typer.Option("--retries", "-r", help="Number of retries on failure", envvar="MAGMOD_RETRIES"),
]
VerboseOption = Annotated[
    bool,
    typer.Option("--verbose", "-v", help="Enable debug logging"),
]
JsonOption = Annotated[
    bool,
    typer.Option("--json", help="Output as JSON"),
]
MacroArgument = Annotated[
    Path,
    typer.Argument(help="Macro file (.magmod)"),
]


def setup_logging(verbose: bool) -> None:
    """Configure logging based on verbose flag."""
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(levelname)s: %(message)s" if not verbose else "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def create_client_factory(unit_id: int, timeout: float, retries: int) -> ClientFactory:
    """Return the factory the session task uses to open connections."""
    return default_client_factory(unit_id=unit_id, timeout=timeout, retries=retries)


def resolve_endpoint(host: Optional[str], port: Optional[int], recorded: Endpoint | None) -> Endpoint:
    """Command-line host/port win over the endpoint recorded in the macro."""
    if host:
        parsed = Endpoint.parse(host)
        return Endpoint(parsed.host, port) if port is not None else parsed
    if recorded is not None:
        return Endpoint(recorded.host, port) if port is not None else recorded
    typer.echo("Error: --host is required (macro has no recorded endpoint)", err=True)
    raise typer.Exit(2)


def format_value(value: bool | int) -> str:
    """Format value for display."""
    if isinstance(value, bool):
        return str(value).lower()
    return str(value)


def directive_to_dict(directive: MacroDirective) -> dict[str, object]:
    return {
        "bank": directive.bank.value,
        "address": directive.address,
        "reference": format_address(directive.bank, directive.address),
        "value": directive.value,
    }


async def _run_replay(
    macro: MacroFile,
    endpoint: Endpoint,
    factory: ClientFactory,
    keep_going: bool,
) -> ReplayReport:
    handle = SessionHandle.start(factory)
    try:
        await handle.connect(endpoint)
        typer.echo("Connection established. Beginning command-flow...")
        report = await replay(
            macro,
            handle,
            keep_going=keep_going,
            on_directive=lambda i, d: typer.echo(f"  {d.describe()}"),
        )
        typer.echo("Command-flow completed. Disconnecting from client...")
        await handle.disconnect()
        return report
    finally:
        await handle.close()


async def _check_connection(endpoint: Endpoint, factory: ClientFactory) -> None:
    handle = SessionHandle.start(factory)
    try:
        await handle.connect(endpoint)
        await handle.disconnect()
    finally:
        await handle.close()


# ============================================================================
# Commands
# ============================================================================


@app.command(name="replay")
def replay_command(
    macro_path: MacroArgument,
    host: HostOption = None,
    port: PortOption = None,
    unit_id: UnitIdOption = 1,
    timeout: TimeoutOption = 3.0,
    retries: RetriesOption = 1,
    verbose: VerboseOption = False,
    keep_going: Annotated[
        bool,
        typer.Option("--keep-going", help="Attempt every directive even after a failure"),
    ] = False,
    dry_run: Annotated[bool, typer.Option("--dry-run", help="Print the directives without connecting")] = False,
    check: Annotated[bool, typer.Option("--check", help="Only check that the target accepts a connection")] = False,
) -> None:
    """
    Replay a recorded macro against a device.

    Directives are sent one at a time, each waiting for the device's answer.
    By default the replay stops at the first failed directive (exit status 1);
    writes that already succeeded are not rolled back.
    """
    setup_logging(verbose)

    if dry_run and check:
        typer.echo("Error: --dry-run and --check are mutually exclusive", err=True)
        raise typer.Exit(2)

    try:
        macro = load(macro_path)
        endpoint = resolve_endpoint(host, port, macro.endpoint)

        if dry_run:
            typer.echo(f"[DRY RUN] Target {endpoint}, {len(macro)} directives")
            for directive in macro.directives:
                typer.echo(f"[DRY RUN]  {directive.describe()}")
            typer.echo("[DRY RUN] Command-flow completed.")
            return

        factory = create_client_factory(unit_id, timeout, retries)
        if check:
            typer.echo(f"Checking connection to {endpoint}...")
            asyncio.run(_check_connection(endpoint, factory))
            typer.echo("Connection successful.")
            return

        typer.echo(f"Connecting to {endpoint}...")
        report = asyncio.run(_run_replay(macro, endpoint, factory, keep_going))
    except ValueError as e:
        typer.echo(f"Error: Invalid endpoint: {e}", err=True)
        raise typer.Exit(2)
    except (FormatError, MacroIOError) as e:
        typer.echo(f"Error: Macro file: {e}", err=True)
        raise typer.Exit(2)
    except TransportError as e:
        typer.echo(f"Error: Connection/Modbus error: {e}", err=True)
        raise typer.Exit(3)
    except typer.Exit:
        raise
    except Exception as e:
        typer.echo(f"Error: Unexpected error: {e}", err=True)
        if verbose:
            import traceback
            traceback.print_exc()
        raise typer.Exit(4)

    typer.echo(f"{report.succeeded}/{report.total} directives applied")
    if not report.ok:
        for index, failure in report.failures:
            typer.echo(
                f"Error: Directive {index} ({macro.directives[index].describe()}) failed: "
                f"{failure.kind.value}: {failure.reason}",
                err=True,
            )
        raise typer.Exit(1)


@app.command()
def show(
    macro_path: MacroArgument,
    verbose: VerboseOption = False,
    json_output: JsonOption = False,
) -> None:
    """
    Print a macro's version, recorded endpoint and directives.

    Does not require a connection.
    """
    setup_logging(verbose)

    try:
        macro = load(macro_path)
    except (FormatError, MacroIOError) as e:
        typer.echo(f"Error: Macro file: {e}", err=True)
        raise typer.Exit(2)

    if json_output:
        data = {
            "version": macro.version,
            "endpoint": str(macro.endpoint) if macro.endpoint else None,
            "directives": [directive_to_dict(d) for d in macro.directives],
        }
        typer.echo(json.dumps(data, indent=2))
        return

    typer.echo(f"Macro version:   {macro.version}")
    typer.echo(f"Endpoint:        {macro.endpoint or '-'}")
    typer.echo(f"Directives:      {len(macro)}")
    for directive in macro.directives:
        typer.echo(
            f"  {format_address(directive.bank, directive.address)}  {directive.bank.value:<16} "
            f"{format_value(directive.value)}"
        )


@app.command()
def interactive(
    target: Annotated[Optional[str], typer.Argument(help="HOST[:PORT] to connect to on start")] = None,
    unit_id: UnitIdOption = 1,
    timeout: TimeoutOption = 3.0,
    retries: RetriesOption = 1,
    verbose: VerboseOption = False,
    max_pending: Annotated[
        int,
        typer.Option("--max-pending", help="Bound of the request and event channels"),
    ] = 64,
) -> None:
    """
    Start an interactive session: read pages, queue writes, apply them, save macros.

    Type 'help' at the prompt for the command list.
    """
    setup_logging(verbose)
    log_buffer = install_log_buffer()

    async def session() -> None:
        workspace = Workspace(create_client_factory(unit_id, timeout, retries), max_pending=max_pending)
        console = Console(workspace, log_handler=log_buffer)
        if target:
            await console.execute(f"connect {target}")
        await console.run()

    try:
        asyncio.run(session())
    except KeyboardInterrupt:
        typer.echo("\nStopped by user", err=True)
        raise typer.Exit(0)
    except InvalidOperation as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(2)


@app.command()
def info(json_output: JsonOption = False) -> None:
    """Show package version, macro format version and per-call protocol limits."""
    data = {
        "version": __version__,
        "macro_format": FORMAT_VERSION,
        "limits": {
            bank.value: {"max_read": bank.max_read, "max_write": bank.max_write if bank.is_writable else 0}
            for bank in RegisterBank
        },
    }
    if json_output:
        typer.echo(json.dumps(data, indent=2))
        return
    typer.echo(f"pymagmod version: {data['version']}")
    typer.echo(f"Macro format:     {data['macro_format']}")
    for bank in RegisterBank:
        access = "read/write" if bank.is_writable else "read-only"
        typer.echo(f"  {bank.value:<17} {access:<10} max read {bank.max_read}, max write {bank.max_write if bank.is_writable else '-'}")


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        typer.echo(f"pymagmod {__version__}")
        raise typer.Exit(0)


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option("--version", callback=version_callback, is_eager=True, help="Show version and exit"),
    ] = None,
) -> None:
    """magmod - interactive Modbus TCP client with write queue and macro replay."""
    pass


if __name__ == "__main__":
    app()
