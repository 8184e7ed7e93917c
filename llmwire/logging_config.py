import logging
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

NOISY_LOGGERS = ("asyncio", "httpx", "httpcore", "openai", "anthropic", "google_genai")


def init_logging(level: str = "INFO", *, console: Optional[Console] = None) -> logging.Logger:
    """
    Route llmwire logs through a rich console handler.

    Library code only calls ``logging.getLogger(__name__)``; applications
    call this once. Calling it again replaces the previous handler.
    """
    logger = logging.getLogger("llmwire")
    for h in list(logger.handlers):
        logger.removeHandler(h)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    handler = RichHandler(console=console, rich_tracebacks=True, show_path=False)
    handler.setFormatter(logging.Formatter("%(name)s | %(message)s"))
    logger.addHandler(handler)
    logger.propagate = False

    # Reduce noise from HTTP and SDK clients
    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logger.debug("Logging initialized at %s", level.upper())
    return logger
