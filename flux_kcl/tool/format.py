"""Library for formatting output."""

from collections.abc import Generator
import json
import sys
from typing import Any, TextIO

import yaml

PADDING = 4


def column_format_string(rows: list[list[str]]) -> str:
    """Produce a format string based on max width of columns."""
    widths = [0] * len(rows[0])
    for row in rows:
        for i, value in enumerate(row):
            widths[i] = max(widths[i], len(str(value)))
    return "".join([f"{{:{w + PADDING}}}" for w in widths])


def format_columns(
    headers: list[str], rows: list[list[str]]
) -> Generator[str, None, None]:
    """Yield the rows aligned in columns below the headers."""
    data = [headers] + rows
    format_string = column_format_string(data)
    for row in data:
        yield format_string.format(*[str(x) for x in row]).rstrip()


class PrintFormatter:
    """A formatter that prints human readable console output."""

    def __init__(self, keys: list[str]) -> None:
        """Initialize the PrintFormatter with the keys to print as columns."""
        self._keys = keys

    def format(self, data: list[dict[str, Any]]) -> Generator[str, None, None]:
        """Format the data objects."""
        if not data:
            return
        rows = [[str(row.get(key, "")) for key in self._keys] for row in data]
        yield from format_columns([key.upper() for key in self._keys], rows)

    def print(self, data: list[dict[str, Any]], file: TextIO = sys.stdout) -> None:
        """Output the data objects."""
        for result in self.format(data):
            print(result, file=file)


class YamlFormatter:
    """A formatter that prints a stream of yaml documents."""

    def print(self, data: list[Any], file: TextIO = sys.stdout) -> None:
        """Output the data objects."""
        print(
            yaml.dump_all(data, sort_keys=False, explicit_start=True), end="", file=file
        )


class JsonFormatter:
    """A formatter that prints json output."""

    def print(self, data: Any, file: TextIO = sys.stdout) -> None:
        """Output the data objects."""
        json.dump(data, sort_keys=False, indent=4, fp=file)
        print(file=file)
