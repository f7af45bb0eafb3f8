"""CLI entrypoint for inbox-relay."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import rich_click as click

from inbox_relay import __version__
from inbox_relay.config import ConfigError
from inbox_relay.controllers import (
    InvokeCommand,
    ReconcileCommand,
    RelayCliController,
    TasksCommand,
    WatchCommand,
)
from inbox_relay.pipeline.stages import StageMoveError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = RelayCliController()
LOG_FORMAT = "%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s"

_config_option = click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Settings JSON file (default: $INBOX_RELAY_CONFIG or ./appsettings.json).",
)


@click.group()
@click.version_option(version=__version__, prog_name="inbox-relay")
def inbox_relay() -> None:
    """Inbox relay: hand each file dropped into the inbox to an external tool."""

    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)


@inbox_relay.command("watch")
@_config_option
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Override the configured log level.",
)
def watch(config_path: Path | None, log_level: str | None) -> None:
    """Watch the Input directory until interrupted (Ctrl+C or SIGTERM)."""

    with _fatal_startup_errors():
        lines = CONTROLLER.watch(WatchCommand(config_path=config_path, log_level=log_level))
    _emit_lines(lines)


@inbox_relay.command("reconcile")
@_config_option
def reconcile(config_path: Path | None) -> None:
    """Finish files left in Processing by a previous run, then exit."""

    with _fatal_startup_errors():
        lines = CONTROLLER.reconcile(ReconcileCommand(config_path=config_path))
    _emit_lines(lines)


@inbox_relay.command("invoke")
@_config_option
@click.argument("file_path", type=click.Path(path_type=Path, exists=True, dir_okay=False))
def invoke(config_path: Path | None, file_path: Path) -> None:
    """Run the tool once for FILE_PATH without moving it between stages."""

    with _fatal_startup_errors():
        result = CONTROLLER.invoke(InvokeCommand(config_path=config_path, file_path=file_path))
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Tool invocation failed.")


@inbox_relay.command("tasks")
@_config_option
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=20,
    show_default=True,
    help="Maximum records to show.",
)
@click.option("--unfinished", is_flag=True, default=False, help="Only tasks not yet routed.")
def tasks(config_path: Path | None, limit: int, unfinished: bool) -> None:
    """List task journal records, most recent first."""

    with _fatal_startup_errors():
        lines = CONTROLLER.tasks(
            TasksCommand(config_path=config_path, limit=limit, unfinished=unfinished),
        )
    _emit_lines(lines)


@contextmanager
def _fatal_startup_errors() -> Iterator[None]:
    try:
        yield
    except (ConfigError, StageMoveError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    inbox_relay()
