"""Shared terminal console and status-tag vocabulary.

Log lines are rendered by :class:`rich.logging.RichHandler` on the console
defined here.  The status tags are the standard ``INFO``/``WARNING``/``ERROR``
levels plus a ``SUCCESS`` level between INFO and WARNING, so ``--quiet``
(handler level WARNING) hides both informational and success lines.

Operator prompts bypass logging entirely: they must be seen even in quiet
mode, because the run cannot continue without the operator.
"""

from __future__ import annotations

import logging

from rich.console import Console

SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")

console = Console(stderr=True, highlight=False)


def prompt(message: str) -> str:
    """Show *message* and block until the operator presses Enter.

    There is no timeout: physical device handling takes as long as it takes.
    """
    return console.input(f"[bold cyan]>>[/] {message} ")
