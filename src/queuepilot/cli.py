from __future__ import annotations

from datetime import datetime
from typing import Optional

import typer
import uvicorn
from dotenv import load_dotenv

app = typer.Typer(add_completion=False)


def _load_env() -> None:
    load_dotenv()


def _setup_logging() -> None:
    """Configure centralized logging to both stdout and log files."""
    from queuepilot.core.config import Settings
    from queuepilot.core.logging_config import setup_logging

    settings = Settings.from_env()
    setup_logging(log_dir=settings.log_dir, log_level=settings.log_level, clear_on_launch=settings.clear_logs_on_launch)


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Bind host (default: QUEUEPILOT_HOST)"),
    port: Optional[int] = typer.Option(None, help="Bind port (default: QUEUEPILOT_PORT)"),
    reload: bool = typer.Option(False, help="Enable auto-reload"),
) -> None:
    """Run the executor, cron scheduler and HTTP API."""
    _load_env()
    from queuepilot.core.config import Settings

    settings = Settings.from_env()
    _setup_logging()
    uvicorn.run(
        "queuepilot.core.gateway:create_app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
        factory=True,
    )


@app.command()
def version() -> None:
    from queuepilot import __version__

    typer.echo(__version__)


@app.command("cron-validate")
def cron_validate(expression: str = typer.Argument(..., help="Five-field cron expression")) -> None:
    from queuepilot.core import cron

    result = cron.validate(expression)
    if result.valid:
        typer.echo("valid")
        return
    typer.secho(f"invalid: {result.error}", fg=typer.colors.RED, err=True)
    raise typer.Exit(code=1)


@app.command("cron-next")
def cron_next(
    expression: str = typer.Argument(..., help="Five-field cron expression"),
    tz: str = typer.Option("UTC", "--tz", help="IANA timezone the expression is evaluated in"),
    count: int = typer.Option(5, help="Number of fire times to show"),
    after: Optional[str] = typer.Option(None, help="ISO timestamp to start from (default: now)"),
) -> None:
    """Print the next fire times in UTC."""
    from queuepilot.core import cron
    from queuepilot.core.errors import ValidationError

    try:
        start = datetime.fromisoformat(after.replace("Z", "+00:00")) if after else None
        times = cron.next_run_times(expression, tz, start, count)
    except ValueError as exc:
        # ValidationError is a ValueError too
        message = str(exc) if isinstance(exc, ValidationError) else f"invalid --after: {exc}"
        typer.secho(message, fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    for t in times:
        typer.echo(t.isoformat())


@app.command("cron-describe")
def cron_describe(expression: str = typer.Argument(..., help="Five-field cron expression")) -> None:
    from queuepilot.core import cron

    typer.echo(cron.describe(expression))


if __name__ == "__main__":
    app()
