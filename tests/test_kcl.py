"""Tests for the kcl renderer."""

from pathlib import Path
import stat

import pytest

from flux_kcl.exceptions import RenderError
from flux_kcl.kcl import KclRenderer, RenderOptions, fingerprint, parse_output
from flux_kcl.manifest import InstanceConfig

RENDERED = """
apiVersion: v1
kind: ConfigMap
metadata:
  name: app
data:
  env: prod
---
apiVersion: v1
kind: List
items:
  - apiVersion: v1
    kind: Service
    metadata:
      name: app
  - apiVersion: apps/v1
    kind: Deployment
    metadata:
      name: app
---
"""


def _fake_kcl(tmp_path: Path, script: str) -> str:
    """Write an executable standing in for the kcl binary."""
    kcl_bin = tmp_path / "kcl"
    kcl_bin.write_text(f"#!/bin/sh\n{script}\n", encoding="utf-8")
    kcl_bin.chmod(kcl_bin.stat().st_mode | stat.S_IEXEC)
    return str(kcl_bin)


def test_command() -> None:
    """Test the kcl command line built for a render."""
    renderer = KclRenderer("kcl")
    cmd = renderer.command(
        Path("/src/app"),
        {"replicas": "2", "env": "prod"},
        RenderOptions(vendor=True, sort_keys=True, show_hidden=True),
    )
    assert cmd.cmd == [
        "kcl",
        "run",
        "/src/app",
        "-D",
        "env=prod",
        "-D",
        "replicas=2",
        "-k",
        "-H",
        "--vendor",
    ]
    assert cmd.cwd == Path("/src/app")
    assert cmd.exc is RenderError


def test_command_defaults() -> None:
    """Test the kcl command line without options."""
    cmd = KclRenderer().command(Path("/src/app"), {}, RenderOptions())
    assert cmd.cmd == ["kcl", "run", "/src/app"]


def test_options_from_config() -> None:
    """Test render options taken from the instance config."""
    config = InstanceConfig.from_dict({"vendor": True, "sortKeys": True})
    assert RenderOptions.from_config(config) == RenderOptions(
        vendor=True, sort_keys=True, show_hidden=False
    )


def test_parse_output() -> None:
    """Test documents are flattened and List kinds expanded."""
    manifests = parse_output(RENDERED)
    assert [(doc["kind"], doc["metadata"]["name"]) for doc in manifests] == [
        ("ConfigMap", "app"),
        ("Service", "app"),
        ("Deployment", "app"),
    ]


def test_parse_output_top_level_list() -> None:
    """Test a document holding a list of manifests."""
    manifests = parse_output(
        "- {apiVersion: v1, kind: ConfigMap, metadata: {name: a}}\n"
        "- {apiVersion: v1, kind: ConfigMap, metadata: {name: b}}\n"
    )
    assert [doc["metadata"]["name"] for doc in manifests] == ["a", "b"]


def test_parse_output_empty() -> None:
    """Test a module rendering nothing."""
    assert parse_output("") == []


@pytest.mark.parametrize("output", ["just a string", "a: [unclosed"])
def test_parse_output_invalid(output: str) -> None:
    """Test output that is not a stream of manifests."""
    with pytest.raises(RenderError):
        parse_output(output)


def test_fingerprint() -> None:
    """Test the fingerprint follows the content and its order."""
    a = {"kind": "ConfigMap", "metadata": {"name": "a"}}
    b = {"kind": "ConfigMap", "metadata": {"name": "b"}}
    assert fingerprint([a, b]) == fingerprint([a, b])
    assert fingerprint([a, b]).startswith("sha256:")
    assert fingerprint([a, b]) != fingerprint([b, a])
    assert fingerprint([{"b": 1, "a": 2}], sort_keys=True) == fingerprint(
        [{"a": 2, "b": 1}], sort_keys=True
    )


async def test_render(tmp_path: Path) -> None:
    """Test rendering with a kcl binary that prints manifests."""
    module = tmp_path / "module"
    module.mkdir()
    kcl_bin = _fake_kcl(tmp_path, f"cat <<'EOF'\n{RENDERED}\nEOF")
    result = await KclRenderer(kcl_bin).render(module, {}, RenderOptions())
    assert len(result.manifests) == 3
    assert result.fingerprint == fingerprint(result.manifests)


async def test_render_arguments(tmp_path: Path) -> None:
    """Test arguments reach the kcl binary."""
    module = tmp_path / "module"
    module.mkdir()
    kcl_bin = _fake_kcl(
        tmp_path,
        'echo "apiVersion: v1"\n'
        'echo "kind: ConfigMap"\n'
        'echo "metadata: {name: args}"\n'
        'echo "data: {args: \'$*\'}"',
    )
    result = await KclRenderer(kcl_bin).render(
        module, {"env": "prod"}, RenderOptions(sort_keys=True)
    )
    assert result.manifests[0]["data"]["args"] == f"run {module} -D env=prod -k"


async def test_render_failure(tmp_path: Path) -> None:
    """Test the diagnostics of a failed render are reported."""
    module = tmp_path / "module"
    module.mkdir()
    kcl_bin = _fake_kcl(tmp_path, "echo 'error: undefined name foo' >&2\nexit 1")
    with pytest.raises(RenderError, match="undefined name foo"):
        await KclRenderer(kcl_bin).render(module, {}, RenderOptions())


async def test_render_missing_module(tmp_path: Path) -> None:
    """Test rendering a module path that does not exist."""
    with pytest.raises(RenderError, match="not a directory"):
        await KclRenderer().render(tmp_path / "missing", {}, RenderOptions())
