"""Logging configuration"""

import logging

from rich.console import Console
from rich.logging import RichHandler

from cardclash.core.config import Settings

# Third-party loggers and the level they are held at.
_NOISY_LOGGERS = {
    "httpx": logging.WARNING,
    "openai": logging.WARNING,
    "asyncpg": logging.WARNING,
    "asyncio": logging.ERROR,
}


def _rich_handler() -> RichHandler:
    handler = RichHandler(
        console=Console(force_terminal=True, width=120),
        show_path=False,
        markup=True,
        rich_tracebacks=True,
        tracebacks_width=120,
    )
    handler.setFormatter(logging.Formatter(fmt="%(message)s", datefmt="[%H:%M:%S]"))
    return handler


def setup_logging(settings: Settings) -> None:
    """Route all component loggers through one Rich handler on the root logger."""
    level = getattr(logging, settings.log_level, logging.INFO)

    try:
        logging.basicConfig(level=level, handlers=[_rich_handler()], force=True)
    except Exception as e:
        logging.basicConfig(
            level=level,
            format="%(asctime)s %(name)-16s %(levelname)-8s %(message)s",
            datefmt="%H:%M:%S",
            force=True,
        )
        logging.getLogger("CardClash").warning(f"Rich logging unavailable ({e}), using plain output")

    for name, noisy_level in _NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(noisy_level)
    if level == logging.DEBUG:
        # Request lines help when debugging catalog lookups.
        logging.getLogger("httpx").setLevel(logging.INFO)
