"""
Console logging helpers shared by the HTTP server and the CLI scripts.

The library modules only create loggers with ``logging.getLogger(__name__)``;
handlers are installed here, by the entry points.
"""

import logging
import sys

from wcwidth import wcswidth


class PrettyFormatter(logging.Formatter):
    """Custom formatter with colors and clear step indicators."""

    COLORS = {
        'DEBUG': '\033[36m',     # Cyan
        'INFO': '\033[32m',      # Green
        'WARNING': '\033[33m',   # Yellow
        'ERROR': '\033[31m',     # Red
        'CRITICAL': '\033[35m',  # Magenta
    }
    RESET = '\033[0m'
    BOLD = '\033[1m'

    ICONS = {
        'DEBUG': '🔍',
        'INFO': '✅',
        'WARNING': '⚠️ ',
        'ERROR': '❌',
        'CRITICAL': '🔥',
    }

    def format(self, record):
        color = self.COLORS.get(record.levelname, self.RESET)
        icon = self.ICONS.get(record.levelname, '')
        timestamp = self.formatTime(record, "%Y-%m-%d %H:%M:%S")

        formatted = (
            f"{self.BOLD}[{timestamp}]{self.RESET} "
            f"{color}{icon} {record.levelname:<8}{self.RESET} │ "
            f"{record.name}: {record.getMessage()}"
        )
        if record.exc_info:
            formatted += "\n" + self.formatException(record.exc_info)
        return formatted


def setup_logging(name: str = "ringabell", level: int = logging.INFO) -> logging.Logger:
    """Attach a pretty console handler to the ``name`` logger (once)."""
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if not any(isinstance(h.formatter, PrettyFormatter) for h in logger.handlers):
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(PrettyFormatter())
        logger.addHandler(console_handler)

    for handler in logger.handlers:
        handler.setLevel(level)
    return logger


def _center_display(s: str, target_cols: int) -> str:
    """Center using terminal display width (handles emoji/double-width chars)."""
    w = wcswidth(s)
    if w < 0:
        w = len(s)

    if w >= target_cols:
        return s

    pad = target_cols - w
    left = pad // 2
    right = pad - left
    return (" " * left) + s + (" " * right)


def log_section(title: str):
    """Print a visually distinct section header."""
    width = 50
    border = "═" * width
    print(f"\n\033[1;34m╔{border}╗\033[0m")
    centered = _center_display(title, width - 2)
    print(f"\033[1;34m║\033[0m {centered} \033[1;34m║\033[0m")
    print(f"\033[1;34m╚{border}╝\033[0m\n")


def log_step(step_num: int, description: str):
    """Print a numbered step indicator."""
    print(f"  \033[1;36m[Step {step_num}]\033[0m ➜  {description}")


def log_success(message: str):
    print(f"  \033[1;32m✓\033[0m {message}")


def log_detail(key: str, value: str):
    print(f"      \033[90m•\033[0m {key}: \033[1m{value}\033[0m")
