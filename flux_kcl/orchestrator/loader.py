"""Resource loader for the flux-kcl bootstrap process.

This module provides the ResourceLoader class which loads kubernetes manifests
from the filesystem so they can be added to an in-memory cluster before the
controllers start. It does not take part in reconciliation.
"""

import asyncio
import logging
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from flux_kcl.exceptions import FluxKclException

__all__ = ["ResourceLoader", "LoadOptions"]

_LOGGER = logging.getLogger(__name__)

YAML_SUFFIXES = (".yaml", ".yml", ".json")


@dataclass
class LoadOptions:
    """Options for loading resources.

    Attributes:
        path: Filesystem path to load resources from, a file or directory.
        recursive: If True and path is a directory, load resources from all
                  subdirectories as well.
    """

    path: Path
    recursive: bool = True

    def __post_init__(self) -> None:
        """Resolve the path after initialization."""
        self.path = Path(self.path).expanduser().resolve()


class ResourceLoader:
    """Loads raw kubernetes objects from the filesystem."""

    def __init__(self) -> None:
        """Initialize the resource loader."""
        self._processed_files: set[Path] = set()

    async def load(
        self, options: LoadOptions
    ) -> AsyncGenerator[dict[str, Any], None]:
        """Yield every object with a kind and name found under `options.path`."""
        _LOGGER.info("Loading resources from %s", options.path)
        if options.path.is_file():
            async for doc in self._load_file(options.path):
                yield doc
        elif options.path.is_dir():
            async for doc in self._load_directory(options.path, options):
                yield doc
        else:
            raise FluxKclException(f"Path does not exist: {options.path}")

    async def _load_directory(
        self, path: Path, options: LoadOptions
    ) -> AsyncGenerator[dict[str, Any], None]:
        _LOGGER.debug("Loading directory: %s", path)
        for entry in sorted(path.iterdir()):
            if entry.name.startswith("."):
                continue
            if entry.is_file() and entry.suffix.lower() in YAML_SUFFIXES:
                async for doc in self._load_file(entry):
                    yield doc
            elif options.recursive and entry.is_dir():
                async for doc in self._load_directory(entry, options):
                    yield doc

    async def _load_file(self, path: Path) -> AsyncGenerator[dict[str, Any], None]:
        if path in self._processed_files:
            return
        self._processed_files.add(path)
        _LOGGER.debug("Processing file: %s", path)
        try:
            content = await asyncio.to_thread(path.read_text, encoding="utf-8")
        except OSError as err:
            raise FluxKclException(f"Failed to read file {path}: {err}") from err
        try:
            docs = list(yaml.safe_load_all(content))
        except yaml.YAMLError as err:
            raise FluxKclException(f"Invalid YAML in file {path}: {err}") from err
        for doc in docs:
            if not isinstance(doc, dict):
                continue
            if not doc.get("kind") or not (doc.get("metadata") or {}).get("name"):
                _LOGGER.info("Skipping document in %s without kind or name", path)
                continue
            yield doc
