"""Tests for the format library."""

import io

from flux_kcl.tool.format import (
    JsonFormatter,
    PrintFormatter,
    YamlFormatter,
    format_columns,
)

INSTANCES = [
    {"namespace": "default", "name": "podinfo", "phase": "Ready"},
    {"namespace": "network", "name": "metallb", "phase": "Failed"},
]


def test_format_columns_empty_rows() -> None:
    """Tests with no rows."""
    assert list(format_columns(["a", "b", "c"], [])) == ["a    b    c"]


def test_format_columns_rows() -> None:
    """Tests format with normal rows"""
    assert list(
        format_columns(
            ["name", "namespace"], [["podinfo", "podinfo"], ["metallb", "network"]]
        )
    ) == [
        "name       namespace",
        "podinfo    podinfo",
        "metallb    network",
    ]


def test_print_formatter() -> None:
    """Print formatting with empty data."""
    formatter = PrintFormatter(keys=["name"])
    assert list(formatter.format([])) == []


def test_print_formatter_keys() -> None:
    """Print formatting with column names."""
    formatter = PrintFormatter(keys=["name", "phase"])
    assert list(formatter.format(INSTANCES)) == [
        "NAME       PHASE",
        "podinfo    Ready",
        "metallb    Failed",
    ]


def test_print_formatter_missing_key() -> None:
    """Print formatting with a key absent from the data."""
    formatter = PrintFormatter(keys=["name", "message"])
    buf = io.StringIO()
    formatter.print(INSTANCES[:1], file=buf)
    assert buf.getvalue() == "NAME       MESSAGE\npodinfo\n"


def test_yaml_formatter() -> None:
    """Yaml formatting as a document stream."""
    buf = io.StringIO()
    YamlFormatter().print(INSTANCES, file=buf)
    assert buf.getvalue() == (
        "---\n"
        "namespace: default\n"
        "name: podinfo\n"
        "phase: Ready\n"
        "---\n"
        "namespace: network\n"
        "name: metallb\n"
        "phase: Failed\n"
    )


def test_json_formatter() -> None:
    """Json formatting keeps the key order."""
    buf = io.StringIO()
    JsonFormatter().print(INSTANCES[0], file=buf)
    assert buf.getvalue() == (
        "{\n"
        '    "namespace": "default",\n'
        '    "name": "podinfo",\n'
        '    "phase": "Ready"\n'
        "}\n"
    )
