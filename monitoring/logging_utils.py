import logging
from typing import Optional, Union

DEFAULT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(level: Union[int, str] = logging.INFO, log_format: Optional[str] = None) -> None:
    """
    Configure process-wide logging with a consistent format.

    Accepts a numeric level or a name such as ``"DEBUG"``. Safe to call multiple
    times; subsequent calls are ignored once the root logger has handlers.
    """
    if logging.getLogger().handlers:
        return

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    logging.basicConfig(level=level, format=log_format or DEFAULT_FORMAT)
    # aiohttp access chatter drowns out per-tick summaries at INFO.
    logging.getLogger("aiohttp").setLevel(max(level, logging.WARNING))
