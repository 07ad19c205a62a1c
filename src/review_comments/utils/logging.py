"""Console logging for the review commands.

Messages go to stderr through click so they never mix with command output
on stdout:
- DEBUG only when verbose mode is on (``review --verbose``)
- Colors only when stderr is a terminal and NO_COLOR is unset
"""

import os
import sys
import traceback
from typing import Any

import click

# level -> (label, click foreground color)
LEVEL_STYLES: dict[str, tuple[str, str | None]] = {
    "debug": ("DEBUG: ", "cyan"),
    "info": ("", None),
    "warning": ("Warning: ", "yellow"),
    "error": ("Error: ", "red"),
}


class Logger:
    """Stderr logger shared by storage, reconciliation, the watcher and the CLI.

    Attributes:
        verbose: If True, DEBUG messages are printed
        use_colors: If True, lines are styled with click.style
    """

    def __init__(self, verbose: bool = False, use_colors: bool = True) -> None:
        self.verbose = verbose
        self.use_colors = (
            use_colors and sys.stderr.isatty() and os.environ.get("NO_COLOR") is None
        )

    def _write(self, text: str, fg: str | None = None) -> None:
        if self.use_colors and fg:
            text = click.style(text, fg=fg)
        click.echo(text, err=True, color=self.use_colors)

    def _log(self, level: str, message: str) -> None:
        label, fg = LEVEL_STYLES[level]
        self._write(f"{label}{message}", fg)

    def debug(self, message: str, **fields: Any) -> None:
        """Log a debug line, only in verbose mode.

        Keyword fields are rendered as ``key=value`` pairs after the message,
        e.g. ``DEBUG: Resolved thread (thread='01H...' strategy='search')``.
        """
        if not self.verbose:
            return
        if fields:
            message += " (" + " ".join(f"{k}={v!r}" for k, v in fields.items()) + ")"
        self._log("debug", message)

    def info(self, message: str) -> None:
        self._log("info", message)

    def warning(self, message: str) -> None:
        self._log("warning", message)

    def error(self, message: str, suggestion: str | None = None) -> None:
        """Log an error, followed by a hint line when a suggestion is given."""
        self._log("error", message)
        if suggestion:
            self._write(f"  -> {suggestion}", "yellow")

    def exception(self, message: str, exc: Exception) -> None:
        """Log an exception; the traceback is included in verbose mode only."""
        self.error(f"{message}: {exc}")

        if self.verbose:
            tb = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
            self._write(tb.rstrip("\n"), "bright_black")


_logger: Logger | None = None


def init_logger(verbose: bool = False, use_colors: bool = True) -> Logger:
    """Initialize the global logger.

    Args:
        verbose: Enable debug output
        use_colors: Enable colored output

    Returns:
        Logger instance
    """
    global _logger
    _logger = Logger(verbose=verbose, use_colors=use_colors)
    return _logger


def get_logger() -> Logger:
    """Get the global logger, creating a quiet one if none was initialized."""
    global _logger
    if _logger is None:
        _logger = Logger()
    return _logger
