"""Rich console shared by the ``ollastream`` command line and its log handler.

Styles are named after what the client reports rather than after colours, so
the CLI can print a streaming notice, a formatted client error or a pull
detail line without repeating markup:

``notice``
    Watchdog and fallback messages injected into a streamed answer.
``error``
    Error chunks and failure panels.
``muted``
    Secondary detail such as download speed and ETA.

Logging goes through the same console (see :mod:`ollastream.logging`) so log
lines and live progress bars do not tear each other.
"""

from __future__ import annotations

from rich.console import Console
from rich.theme import Theme

_THEME = Theme(
    {
        "info": "cyan",
        "notice": "italic yellow",
        "warning": "yellow",
        "error": "bold red",
        "success": "green",
        "muted": "dim",
    }
)

console = Console(theme=_THEME)

__all__ = ["console"]
