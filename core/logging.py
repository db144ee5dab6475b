import logging
import sys

from core.config import config


class Colors:
    """ANSI color codes for terminal output."""

    RESET = "\033[0m"
    BOLD = "\033[1m"

    CYAN = "\033[36m"
    WHITE = "\033[37m"
    BG_RED = "\033[41m"

    BRIGHT_BLACK = "\033[90m"
    BRIGHT_RED = "\033[91m"
    BRIGHT_GREEN = "\033[92m"
    BRIGHT_YELLOW = "\033[93m"
    BRIGHT_MAGENTA = "\033[95m"
    BRIGHT_CYAN = "\033[96m"


LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


class ColorfulFormatter(logging.Formatter):
    """Formatter that colours the level name, timestamp and source location."""

    LEVEL_COLORS = {
        logging.DEBUG: Colors.BRIGHT_CYAN,
        logging.INFO: Colors.BRIGHT_GREEN,
        logging.WARNING: Colors.BRIGHT_YELLOW,
        logging.ERROR: Colors.BRIGHT_RED,
        logging.CRITICAL: Colors.BOLD + Colors.BG_RED + Colors.WHITE,
    }

    def __init__(self, fmt: str = None, datefmt: str = None, use_colors: bool = True):
        super().__init__(fmt, datefmt)
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        if not self.use_colors:
            return super().format(record)

        original_levelname = record.levelname
        level_color = self.LEVEL_COLORS.get(record.levelno, Colors.WHITE)
        record.levelname = f"{level_color}{original_levelname}{Colors.RESET}"

        formatted_msg = super().format(record)
        record.levelname = original_levelname

        timestamp = self.formatTime(record, self.datefmt)
        location = f"{record.filename}:{record.lineno}"
        formatted_msg = formatted_msg.replace(
            timestamp, f"{Colors.BRIGHT_BLACK}{timestamp}{Colors.RESET}", 1
        )
        formatted_msg = formatted_msg.replace(
            location,
            f"{Colors.CYAN}{record.filename}{Colors.RESET}"
            f"{Colors.BRIGHT_BLACK}:{Colors.RESET}"
            f"{Colors.BRIGHT_MAGENTA}{record.lineno}{Colors.RESET}",
            1,
        )
        return formatted_msg


def setup_logging() -> logging.Logger:
    """
    Configure application logging.

    Default log level is INFO. SQL logs only show when LOG_LEVEL=DEBUG.
    Colors are only used when stdout is a TTY.
    """
    log_level = LOG_LEVELS.get(config.LOG_LEVEL.upper(), logging.INFO)
    use_colors = sys.stdout.isatty()

    formatter = ColorfulFormatter(
        fmt="%(asctime)s │ %(levelname)-8s │ %(filename)s:%(lineno)d │ %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        use_colors=use_colors,
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.setLevel(log_level)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Clear existing handlers to avoid duplicates
    root_logger.handlers.clear()
    root_logger.addHandler(console_handler)

    # Third-party loggers - reduce noise
    logging.getLogger("uvicorn").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("celery").setLevel(logging.WARNING)
    logging.getLogger("stripe").setLevel(logging.WARNING)

    # SQLAlchemy - only show SQL text at DEBUG level to avoid leaking PII in logs
    sqlalchemy_logger = logging.getLogger("sqlalchemy.engine")
    if log_level <= logging.DEBUG:
        sqlalchemy_logger.setLevel(logging.DEBUG)
        root_logger.info("SQL logging enabled (DEBUG mode)")
    else:
        sqlalchemy_logger.setLevel(logging.WARNING)

    root_logger.info(f"{config.APP_NAME} logging initialized at {config.LOG_LEVEL.upper()}")
    return root_logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the specified name."""
    return logging.getLogger(name)
