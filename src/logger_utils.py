import logging
import os
import sys


class ColoredFormatter(logging.Formatter):
    """Console formatter that colors the level name and dims the timestamp"""

    # ANSI color codes
    COLORS = {
        'DEBUG': '\033[36m',    # cyan
        'INFO': '\033[32m',     # green
        'WARNING': '\033[33m',  # yellow
        'ERROR': '\033[31m',    # red
        'CRITICAL': '\033[35m', # magenta
    }
    RESET = '\033[0m'
    BOLD = '\033[1m'
    DIM = '\033[90m'

    def __init__(self, use_colors=True, show_logger_name=False):
        super().__init__()
        self.use_colors = use_colors and self._supports_color()
        self.show_logger_name = show_logger_name

    def _supports_color(self):
        """Check if terminal supports colors"""
        return (
            hasattr(sys.stderr, "isatty") and sys.stderr.isatty() and
            os.environ.get('TERM') != 'dumb' and
            os.environ.get('NO_COLOR') is None
        )

    def format(self, record):
        message = record.getMessage()
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"

        source = f"[{record.name}] " if self.show_logger_name else ""

        if self.use_colors:
            level_color = self.COLORS.get(record.levelname, '')
            level_name = f"{level_color}{self.BOLD}{record.levelname:<8}{self.RESET}"
            timestamp = f"{self.DIM}{self.formatTime(record, '%H:%M:%S')}{self.RESET}"
            if source:
                source = f"{self.DIM}{source}{self.RESET}"
            return f"{timestamp} {level_name} {source}{message}"

        return f"{self.formatTime(record, '%Y-%m-%d %H:%M:%S')} - {record.levelname} - {source}{message}"


def setup_logging(verbose=False, no_color=False):
    """Install a single stderr handler on the root logger.

    Calling it again replaces the previous handler, so the CLI can re-run it
    once the global flags have been parsed.
    """
    logger = logging.getLogger()

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(ColoredFormatter(use_colors=not no_color, show_logger_name=verbose))

    level = logging.DEBUG if verbose else logging.INFO
    logger.setLevel(level)
    console_handler.setLevel(level)

    logger.addHandler(console_handler)

    # web3 and urllib3 are chatty at DEBUG
    for noisy in ('web3', 'urllib3'):
        logging.getLogger(noisy).setLevel(logging.INFO if verbose else logging.WARNING)

    return logger
