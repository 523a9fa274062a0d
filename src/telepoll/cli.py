from __future__ import annotations

from pathlib import Path

import anyio
import typer

from . import __version__
from .config import ConfigError
from .driver import build_poller, open_update_stream
from .filters import chat_id_of, update_kind
from .logging import get_logger, setup_logging
from .poller import PollingError
from .settings import TelepollSettings, load_settings
from .telegram.client import HttpBotClient

logger = get_logger(__name__)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(__version__)
        raise typer.Exit()


async def _stream_updates(settings: TelepollSettings) -> None:
    bot = HttpBotClient(settings.bot_token)
    poller = build_poller(settings)
    try:
        async with open_update_stream(
            bot, poller, buffer_size=settings.polling.buffer_size
        ) as updates:
            async for update in updates:
                logger.info(
                    "update.received",
                    update_id=update.update_id,
                    kind=update_kind(update),
                    chat_id=chat_id_of(update),
                )
    finally:
        await bot.close()


def run(
    version: bool = typer.Option(
        False,
        "--version",
        help="Show the version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    config: Path | None = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to telepoll.toml (default: ./telepoll.toml, then ~/.telepoll/).",
    ),
    debug: bool = typer.Option(
        False,
        "--debug/--no-debug",
        help="Log Telegram requests and every update moving through the chain.",
    ),
) -> None:
    setup_logging(debug=debug)
    try:
        settings, config_path = load_settings(config)
    except ConfigError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(code=1)
    logger.info(
        "startup",
        config_path=str(config_path),
        middleware_layers=len(settings.middleware),
    )
    try:
        anyio.run(_stream_updates, settings)
    except KeyboardInterrupt:
        logger.info("shutdown.interrupted")
    except PollingError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(code=1)


def create_app() -> typer.Typer:
    app = typer.Typer(add_completion=False)
    app.command()(run)
    return app


def main() -> None:
    create_app()()


if __name__ == "__main__":
    main()
