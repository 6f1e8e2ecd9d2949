"""CLI entry point for tourshell."""

from __future__ import annotations

import asyncio
import logging

import typer

from tourshell.config import TourshellConfig

app = typer.Typer(
    name="tourshell",
    help="Terminal sessions for the in-browser learning platform, over WebSocket.",
    no_args_is_help=True,
)


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


@app.command()
def serve(
    host: str | None = typer.Option(
        None, "--host", "-H", help="Bind address (default: from env/config)."
    ),
    port: int | None = typer.Option(
        None, "--port", "-p", help="Port (default: from env/config)."
    ),
    exercises: str | None = typer.Option(
        None, "--exercises", "-e", help="Exercise root directory shells start in."
    ),
    debug_websocket: bool = typer.Option(
        False, "--debug-websocket", help="Log every WebSocket envelope."
    ),
    no_watch: bool = typer.Option(
        False, "--no-watch", help="Don't broadcast file changes."
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug logging."
    ),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Run the terminal server."""
    setup_logging(verbose or debug_websocket)

    import uvicorn

    from tourshell.server.app import create_app

    config = TourshellConfig.load(config_file)
    if host:
        config.server.host = host
    if port:
        config.server.port = port
    if exercises:
        config.exercises_path = exercises
    if debug_websocket:
        config.server.debug_websocket = True
    if no_watch:
        config.watch_files = False

    if not config.exercises_dir.is_dir():
        typer.echo(
            f"Error: Exercise directory not found: {config.exercises_dir}", err=True
        )
        raise typer.Exit(1)

    typer.echo(
        f"tourshell listening on ws://{config.server.host}:{config.server.port}"
        f"{config.server.ws_path} (exercises: {config.exercises_dir})"
    )
    uvicorn.run(
        create_app(config),
        host=config.server.host,
        port=config.server.port,
        log_level="debug" if verbose else "info",
    )


@app.command()
def attach(
    url: str | None = typer.Option(
        None, "--url", "-u", help="Server WebSocket URL (default: from env/config)."
    ),
    session_file: str | None = typer.Option(
        None, "--session-file", help="Where the session identifier is kept."
    ),
    destroy: bool = typer.Option(
        False, "--destroy", help="Destroy the shell on detach instead of keeping it."
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug logging."
    ),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Attach this terminal to a server session. Ctrl-] detaches."""
    setup_logging(verbose)
    # Log lines would corrupt the raw-mode display.
    if not verbose:
        logging.getLogger().setLevel(logging.WARNING)

    from tourshell.client.tty import attach as run_attach

    config = TourshellConfig.load(config_file)
    if url:
        config.client.url = url
    if session_file:
        config.client.session_file = session_file

    code = asyncio.run(run_attach(config.client, destroy_on_exit=destroy))
    raise typer.Exit(code)


@app.command()
def version() -> None:
    """Print the version."""
    from tourshell import __version__

    typer.echo(f"tourshell {__version__}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
