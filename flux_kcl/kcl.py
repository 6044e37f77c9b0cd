"""Library for rendering a KCL module into kubernetes manifests.

A `Renderer` turns a module directory plus a flat set of string arguments into
an ordered list of manifest documents and a fingerprint of that content. The
`KclRenderer` shells out to the `kcl` command line tool.

```python
renderer = KclRenderer()
result = await renderer.render(
    Path("/path/to/module"),
    {"env": "prod"},
    RenderOptions(sort_keys=True),
)
for manifest in result.manifests:
    print(manifest["kind"], manifest["metadata"]["name"])
```
"""

from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass, field
import hashlib
import json
import logging
from pathlib import Path
from typing import Any

import yaml

from . import command
from .exceptions import RenderError
from .manifest import InstanceConfig

__all__ = [
    "Renderer",
    "RenderOptions",
    "RenderResult",
    "KclRenderer",
    "fingerprint",
]

_LOGGER = logging.getLogger(__name__)

KCL_BIN = "kcl"
LIST_KIND = "List"


@dataclass(frozen=True)
class RenderOptions:
    """Options passed to the renderer."""

    vendor: bool = False
    """Resolve module dependencies before evaluation."""

    sort_keys: bool = False
    """Emit documents with deterministic key ordering."""

    show_hidden: bool = False
    """Include hidden attributes in the output."""

    @classmethod
    def from_config(cls, config: InstanceConfig) -> "RenderOptions":
        """Build the options from an instance config."""
        return cls(
            vendor=config.vendor,
            sort_keys=config.sort_keys,
            show_hidden=config.show_hidden,
        )


@dataclass
class RenderResult:
    """Output of a render."""

    manifests: list[dict[str, Any]] = field(default_factory=list)
    """Ordered manifest documents."""

    fingerprint: str = ""
    """Content hash of the manifests."""


def fingerprint(manifests: list[dict[str, Any]], sort_keys: bool = False) -> str:
    """Return a content hash for a list of manifests."""
    content = json.dumps(
        manifests, sort_keys=sort_keys, separators=(",", ":"), default=str
    )
    return "sha256:" + hashlib.sha256(content.encode()).hexdigest()


def _flatten_documents(docs: Iterable[Any]) -> list[dict[str, Any]]:
    """Flatten rendered documents into a list of manifests.

    Empty documents are skipped, top level lists and `List` kinds are
    expanded in place.
    """
    manifests: list[dict[str, Any]] = []
    for doc in docs:
        if doc is None:
            continue
        if isinstance(doc, list):
            manifests.extend(_flatten_documents(doc))
            continue
        if not isinstance(doc, dict):
            raise RenderError(f"Rendered document is not a mapping: {doc!r}")
        if doc.get("kind") == LIST_KIND and isinstance(doc.get("items"), list):
            manifests.extend(_flatten_documents(doc["items"]))
            continue
        manifests.append(doc)
    return manifests


def parse_output(output: str) -> list[dict[str, Any]]:
    """Parse the YAML output of the renderer into manifests."""
    try:
        return _flatten_documents(yaml.safe_load_all(output))
    except yaml.YAMLError as err:
        raise RenderError(f"Unable to parse rendered output: {err}") from err


class Renderer(ABC):
    """A renderer of a module into kubernetes manifests."""

    @abstractmethod
    async def render(
        self, module_path: Path, arguments: dict[str, str], options: RenderOptions
    ) -> RenderResult:
        """Render the module at `module_path`.

        Raises RenderError with the diagnostic output on failure.
        """


class KclRenderer(Renderer):
    """Renderer invoking the kcl command line tool."""

    def __init__(
        self, kcl_bin: str = KCL_BIN, timeout: float = command.DEFAULT_TIMEOUT
    ) -> None:
        """Initialize KclRenderer."""
        self._kcl_bin = kcl_bin
        self._timeout = timeout

    def command(
        self, module_path: Path, arguments: dict[str, str], options: RenderOptions
    ) -> command.Command:
        """Return the command used to render a module."""
        args = [self._kcl_bin, "run", str(module_path)]
        for key, value in sorted(arguments.items()):
            args.extend(["-D", f"{key}={value}"])
        if options.sort_keys:
            args.append("-k")
        if options.show_hidden:
            args.append("-H")
        if options.vendor:
            args.append("--vendor")
        return command.Command(
            args, cwd=module_path, exc=RenderError, timeout=self._timeout
        )

    async def render(
        self, module_path: Path, arguments: dict[str, str], options: RenderOptions
    ) -> RenderResult:
        """Render the module by running `kcl run`."""
        if not module_path.is_dir():
            raise RenderError(f"Module path '{module_path}' is not a directory")
        output = await command.run(self.command(module_path, arguments, options))
        manifests = parse_output(output)
        _LOGGER.debug("Rendered %d manifests from %s", len(manifests), module_path)
        return RenderResult(
            manifests=manifests,
            fingerprint=fingerprint(manifests, sort_keys=options.sort_keys),
        )
