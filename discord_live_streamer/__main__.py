#!/usr/bin/env python3
import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Optional, Set

from .bot import StreamerBot
from .config import Config, load_config_from_json
from .errors import AuthenticationFailure
from .event_bus import EventBus

_LOGGER = logging.getLogger(__name__)
_MODULE_DIR = Path(__file__).parent
_REPO_DIR = _MODULE_DIR.parent

# discord.py is chatty at INFO; keep gateway noise out of our logs.
_QUIET_LOGGERS = ("discord.gateway", "discord.http", "discord.client", "discord.player")

# -----------------------------------------------------------------------------
# Main Application
# -----------------------------------------------------------------------------

async def main(argv: Optional[list] = None) -> int:
    # --- 1. Load Basics ---
    config = _init_basics(argv)

    if not config.discord.token:
        _LOGGER.critical("No Discord token configured (discord.token or STREAMER_TOKEN)")
        return 1

    # --- 2. Build Client ---
    event_bus = EventBus()
    bot = StreamerBot(config=config, event_bus=event_bus)

    # --- 3. Shutdown Signals ---
    loop = asyncio.get_running_loop()
    shutdown_tasks: Set[asyncio.Task] = set()

    def _on_signal(sig: signal.Signals) -> None:
        task = loop.create_task(_shutdown(bot, sig))
        shutdown_tasks.add(task)
        task.add_done_callback(shutdown_tasks.discard)

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _on_signal, sig)
        except NotImplementedError:
            pass

    # --- 4. Run ---
    try:
        await bot.serve(config.discord.token)
    except AuthenticationFailure as err:
        _LOGGER.critical("Login failed: %s", err)
        return 1
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except NotImplementedError:
                pass
        if shutdown_tasks:
            await asyncio.gather(*shutdown_tasks)
        if not bot.is_closed():
            await bot.close()

    return 0

# -----------------------------------------------------------------------------
# Helper Functions
# -----------------------------------------------------------------------------

def _init_basics(argv: Optional[list] = None) -> Config:
    """Parses arguments, loads config and sets up logging."""
    parser = argparse.ArgumentParser(prog="discord_live_streamer")
    parser.add_argument(
        "-c", "--config", type=Path, required=False,
        default=None,
        help="Path to config.json (default: built-in defaults + environment)"
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args(argv)

    config_path = args.config
    if config_path is not None and not config_path.is_absolute():
        config_path = _REPO_DIR / config_path
    config = load_config_from_json(config_path)

    if args.debug:
        config.app.debug = True

    logging.basicConfig(
        level=logging.DEBUG if config.app.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _LOGGER.info("Loaded configuration from: %s", config_path or "<defaults>")
    return config


async def _shutdown(bot: StreamerBot, sig: signal.Signals) -> None:
    _LOGGER.info("Received %s; stopping stream", sig.name)
    await bot.close()


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
