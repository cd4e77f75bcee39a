from __future__ import annotations

import sys
from typing import TYPE_CHECKING, Any

from rich.console import Console

from dronewatch.output.json_output import (
    format_json_error,
    format_json_line,
    format_json_response,
)
from dronewatch.output.rich_output import RichOutput

if TYPE_CHECKING:
    from io import TextIOBase


class OutputFormatter:
    """Unified output formatter that auto-detects JSON vs Rich output.

    Selection logic:

    * If *force_format* is provided, use it unconditionally.
    * Otherwise, if *stream* (default ``sys.stdout``) is a TTY, use ``"rich"``.
    * If the stream is **not** a TTY (piped / redirected), use ``"json"``.

    When the format is ``"quiet"``, the Rich console writes to *stderr* so
    that normal stdout stays empty.
    """

    def __init__(
        self,
        *,
        stream: TextIOBase | Any | None = None,
        force_format: str | None = None,
    ) -> None:
        self._stream = stream or sys.stdout
        if force_format is not None:
            self._format = force_format
        elif hasattr(self._stream, "isatty") and self._stream.isatty():
            self._format = "rich"
        else:
            self._format = "json"

        if self._format == "quiet":
            self._console = Console(stderr=True)
        else:
            self._console = Console(file=self._stream)

        self._rich = RichOutput(self._console)

    @property
    def format(self) -> str:  # noqa: A003
        """Return the active output format (``"rich"``, ``"json"``, or ``"quiet"``)."""
        return self._format

    @property
    def console(self) -> Console:
        return self._console

    @property
    def rich(self) -> RichOutput:
        return self._rich

    def _print(self, text: str) -> None:
        print(text, file=self._stream)  # noqa: T201

    def output(self, data: Any, *, command: str) -> None:
        """Emit *data* using the current format.

        Callers normally use :attr:`rich` directly for typed Rich output;
        this falls back to a ``str()`` line.
        """
        if self._format == "json":
            self._print(format_json_response(data=data, command=command))
        else:
            self._rich.info(str(data))

    def output_line(self, data: Any, *, command: str) -> None:
        """Emit one streaming update (a JSON line in json mode)."""
        if self._format == "json":
            self._print(format_json_line(data=data, command=command))
        else:
            self._rich.info(str(data))

    def output_error(self, *, code: str, message: str, command: str) -> None:
        """Emit an error using the current format."""
        if self._format == "json":
            self._print(format_json_error(code=code, message=message, command=command))
        else:
            self._rich.error(message)
