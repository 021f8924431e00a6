"""Screen and log output shared by sync.py and syncview.py.

Messages are printed on screen, in color where the terminal supports it,
and sent to the "sync" logger. While a backup run collects its report,
screen output is switched off and a file handler on the logger receives
everything instead.
"""

import datetime as dt
import logging

import colorama  # pip install colorama

LONG_PREFIX = "*" * 30
SHORT_PREFIX = "*" * 5
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S%z"

LEVELS = {"debug": logging.DEBUG,
          "info": logging.INFO,
          "file operation": logging.INFO,
          "warning": logging.WARNING,
          "error": logging.ERROR}

_output_colors = {"debug": colorama.Style.DIM,
                  "info": "",
                  "file operation": colorama.Fore.CYAN,
                  "warning": colorama.Fore.YELLOW,
                  "error": colorama.Fore.RED,
                  "reset": colorama.Style.RESET_ALL}

logger = logging.getLogger("sync")
logger.setLevel(logging.INFO)
logger.addHandler(logging.NullHandler())

# Print messages on screen in addition to logging them
_screen_output = True


def set_screen_output(enabled):
    """Switch screen output of printlog on or off."""
    global _screen_output
    _screen_output = enabled


def set_verbose(enabled):
    """Show and log "debug" level messages."""
    logger.setLevel(logging.DEBUG if enabled else logging.INFO)


def printlog(content="", level="info", prefix=None, timestamp=False):
    """Print and log content.

    Args:
        content: string to print and log
        level: severity level of the message. One of "debug", "info",
            "file operation", "warning" or "error".
        prefix: None, "short" (5 stars) or "long" (30 stars)
        timestamp: boolean; insert the local time before content
    """
    if not logger.isEnabledFor(LEVELS[level]):
        return
    if timestamp:
        now = dt.datetime.now().astimezone()
        content = f"{now.strftime(TIMESTAMP_FORMAT)} {content}"
    if prefix == "long":
        content = f"{LONG_PREFIX} {content}"
    elif prefix == "short":
        content = f"{SHORT_PREFIX} {content}"
    if _screen_output:
        print(_output_colors[level] + content.replace("\t", " ")
              + _output_colors["reset"])
    logger.log(LEVELS[level], content)
