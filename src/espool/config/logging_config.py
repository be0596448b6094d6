import logging
import os
import sys
from typing import ClassVar, Optional

_DEFAULT_FORMAT = os.getenv(
    "ESPOOL_LOG_FORMAT",
    "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)
_DEFAULT_DATEFMT = os.getenv("ESPOOL_LOG_DATEFMT", "%Y-%m-%d %H:%M:%S")
_COLOR_FORMAT = "\x1b[90m%(asctime)s\x1b[0m | %(levelname_color)s | \x1b[36m%(name)s\x1b[0m | %(message)s"

# Level applied by the last configure_logging() call
_configured_level: Optional[str] = None


def _supports_color() -> bool:
    try:
        return sys.stdout.isatty() and os.getenv("NO_COLOR") is None
    except Exception:
        return False


class _LevelColorFormatter(logging.Formatter):
    COLORS: ClassVar[dict[str, str]] = {
        "DEBUG": "\x1b[37m",  # light gray
        "INFO": "\x1b[32m",  # green
        "WARNING": "\x1b[33m",  # yellow
        "ERROR": "\x1b[31m",  # red
        "CRITICAL": "\x1b[41m",  # red background
    }

    RESET: ClassVar[str] = "\x1b[0m"

    def __init__(self, fmt: str, datefmt: str, use_color: bool):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        if self.use_color:
            color = self.COLORS.get(record.levelname, "")
            record.levelname_color = f"{color}{record.levelname}{self.RESET}" if color else record.levelname
        else:
            record.levelname_color = record.levelname
        return super().format(record)


def configure_logging(
    level: Optional[str | int] = None,
    fmt: Optional[str] = None,
    datefmt: Optional[str] = None,
) -> str:
    """Configure root logging once with a consistent format.

    Environment overrides:
    - `ESPOOL_LOG_LEVEL`
    - `ESPOOL_LOG_FORMAT`
    - `ESPOOL_LOG_DATEFMT`

    Returns:
        The level name now in effect
    """
    from espool.config.environment import Environment

    global _configured_level

    if level is None:
        level = Environment.get_log_level()
    level_name = logging.getLevelName(level) if isinstance(level, int) else level.upper()

    if _configured_level == level_name:
        return level_name
    _configured_level = level_name

    use_color = _supports_color()
    if fmt is None:
        fmt = _COLOR_FORMAT if use_color and os.getenv("ESPOOL_LOG_FORMAT") is None else _DEFAULT_FORMAT
    formatter = _LevelColorFormatter(fmt, datefmt or _DEFAULT_DATEFMT, use_color)

    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level_name)
    root.setLevel(level_name)
    # Handlers installed by the host application (or pytest) are aligned, not replaced
    for handler in root.handlers:
        if isinstance(handler, logging.StreamHandler):
            handler.setLevel(level_name)
            handler.setFormatter(formatter)

    # psycopg logs every pool slot at debug level
    logging.getLogger("psycopg").setLevel(logging.INFO)
    logging.getLogger("psycopg.pool").setLevel(logging.WARNING)
    return level_name


def get_logger(name: str) -> logging.Logger:
    """Return a module-scoped logger."""
    configure_logging()
    return logging.getLogger(name)
