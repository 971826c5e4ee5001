"""Entry point for termbench."""

import asyncio
import logging
import sys

USAGE = """termbench - terminal SQL client

Usage: termbench <sqlite-file|saved-connection> "<sql>" [options]
       termbench --connections

Options:
  --export FORMAT   Write results to stdout as csv, tsv or json
  --verbose, -v     Log engine activity to stderr
  --connections     List saved connections
  --help, -h        Show this help message
"""


def setup_logging(verbose):
    from rich.console import Console
    from rich.logging import RichHandler

    handler = RichHandler(console=Console(stderr=True), show_path=False)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[handler],
    )


def parse_args(argv):
    """Return (target, sql, export_format, verbose) or exit."""
    positional = []
    export_format = None
    verbose = False
    args = list(argv)
    while args:
        arg = args.pop(0)
        if arg in ("--help", "-h"):
            print(USAGE)
            sys.exit(0)
        elif arg in ("--verbose", "-v"):
            verbose = True
        elif arg == "--export":
            if not args:
                print("--export needs a format", file=sys.stderr)
                sys.exit(2)
            export_format = args.pop(0).lower()
            if export_format not in ("csv", "tsv", "json"):
                print(f"Unknown export format: {export_format}", file=sys.stderr)
                sys.exit(2)
        else:
            positional.append(arg)
    if len(positional) != 2:
        print(USAGE, file=sys.stderr)
        sys.exit(2)
    return positional[0], positional[1], export_format, verbose


def list_connections(db):
    from rich.console import Console
    from rich.table import Table

    from .adapters import get_unavailable_adapters

    table = Table(show_header=True, header_style="bold")
    for name in ("Name", "Type", "Host", "Database", "User"):
        table.add_column(name)
    for conn in db.get_connections():
        table.add_row(conn["name"], conn["db_type"], conn["host"] or "",
                      conn["database"] or "", conn["user"] or "")
    console = Console(highlight=False)
    console.print(table)
    for _db_type, display_name, hint in get_unavailable_adapters():
        console.print(f"{display_name} driver not installed: {hint}", style="dim")


def resolve_target(db, target):
    """A saved connection by name, else a SQLite database file."""
    from .adapters import get_adapter

    conn_info = db.get_connection(target)
    if conn_info:
        return get_adapter(conn_info["db_type"]), conn_info, conn_info["name"]
    return get_adapter("sqlite"), {"database": target}, target


def render_grid(buffer, settings, console):
    from rich.table import Table

    from .engine.grid import GridViewModel

    grid = GridViewModel(buffer, settings=settings,
                         height=max(1, buffer.row_count), width=max(1, len(buffer.columns)))
    frame = grid.render()
    table = Table(show_header=True, header_style="bold")
    for col in frame.columns:
        table.add_column(col.name, min_width=col.width, max_width=col.width, no_wrap=True)
    for row in frame.rows:
        table.add_row(*row.cells)
    console.print(table)


async def run_query(db, target, sql, export_format):
    from rich.console import Console

    from .engine.buffer import ResultBuffer
    from .engine.controller import ExecutionController
    from .engine.export import export
    from .engine.identity import IdentityResolver
    from .engine.models import QueryCancelled, QueryCompleted, QueryFailed
    from .engine.session import Session
    from .settings import EngineSettings

    console = Console(highlight=False)
    err = Console(stderr=True, highlight=False)
    settings = EngineSettings.load(db)
    adapter, conn_info, name = resolve_target(db, target)
    session = await Session.open(adapter, conn_info, connection_name=name, query_log=db)
    buffer = ResultBuffer(settings.max_window_rows)
    controller = ExecutionController(
        session, buffer, settings, IdentityResolver(session, db.get_identity_overrides()))
    status = 0
    try:
        seq = controller.submit(sql)
        try:
            await controller.wait_until_idle()
        except asyncio.CancelledError:
            controller.cancel(seq)
            await controller.wait_until_idle()
        for event in controller.poll_events():
            if isinstance(event, QueryFailed):
                err.print(f"Error: {event.error}", style="bold red", markup=False)
                status = 1
            elif isinstance(event, QueryCancelled):
                err.print(f"Cancelled after {event.summary.row_count} rows", style="yellow")
                status = 130
            elif isinstance(event, QueryCompleted):
                summary = event.summary
                if export_format:
                    console.file.write(export(buffer, export_format, settings.null_text))
                else:
                    render_grid(buffer, settings, console)
                note = " (more available)" if summary.truncated else ""
                err.print(f"{summary.row_count} rows in {summary.elapsed:.3f}s{note}", style="dim")
    finally:
        await controller.close()
        await session.close()
    return status


def main():
    """Main entry point with argument handling."""
    from .database import Database

    argv = sys.argv[1:]
    if argv and argv[0] == "--connections":
        list_connections(Database())
        sys.exit(0)

    target, sql, export_format, verbose = parse_args(argv)
    setup_logging(verbose)
    try:
        status = asyncio.run(run_query(Database(), target, sql, export_format))
    except KeyboardInterrupt:
        status = 130
    sys.exit(status)


if __name__ == "__main__":
    main()
