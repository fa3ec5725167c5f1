# @file
#
# Copyright (c) Microsoft Corporation.
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Logging configuration shared by the setup workflow and the post-reboot check.

Every record goes to the console with a colored ``[LEVEL]`` tag and is
appended, timestamped, to a persistent log file.
"""
import logging
import pathlib
import sys
from typing import List

SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")

FILE_FORMAT = "%(asctime)s - %(levelname)s: %(message)s"
FILE_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

RESET = "\033[0m"
LEVEL_COLORS = {
    logging.DEBUG: "\033[0;36m",
    logging.INFO: "\033[0;34m",
    SUCCESS: "\033[0;32m",
    logging.WARNING: "\033[1;33m",
    logging.ERROR: "\033[0;31m",
    logging.CRITICAL: "\033[0;31m",
}

# Marks the handlers installed by configure_logging so they can be replaced.
_HANDLER_MARK = "_secure_boot_setup_handler"


class ColorFormatter(logging.Formatter):
    """Formats console records as ``[LEVEL] message`` with an ANSI color per level."""

    def __init__(self, use_color: bool = True) -> None:
        """Initialize the formatter.

        Args:
            use_color (bool): Emit ANSI color codes around the level tag.
        """
        super().__init__("%(message)s")
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        """Return the message prefixed with its colored level tag."""
        message = super().format(record)
        tag = f"[{record.levelname}]"
        if self.use_color:
            color = LEVEL_COLORS.get(record.levelno, "")
            tag = f"{color}{tag}{RESET}"
        return f"{tag} {message}"


def configure_logging(log_file: pathlib.Path, debug: bool = False) -> List[logging.Handler]:
    """Install the console and log-file handlers on the root logger.

    Handlers installed by an earlier call are removed first, so calling this
    repeatedly never duplicates output.

    Args:
        log_file (pathlib.Path): File that receives every record, in append mode.
        debug (bool): Lower the threshold to DEBUG.

    Returns:
        List[logging.Handler]: The installed handlers.
    """
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, _HANDLER_MARK, False):
            root.removeHandler(handler)
            handler.close()

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(ColorFormatter(use_color=sys.stdout.isatty()))
    handlers = [console]

    log_file = pathlib.Path(log_file)
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
    except OSError as e:
        # The console still works; losing the persistent log is reported, not fatal.
        logging.getLogger(__name__).warning(f"Cannot open log file {log_file}: {e}")
    else:
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=FILE_DATE_FORMAT))
        handlers.append(file_handler)

    for handler in handlers:
        setattr(handler, _HANDLER_MARK, True)
        root.addHandler(handler)

    root.setLevel(logging.DEBUG if debug else logging.INFO)
    return handlers
