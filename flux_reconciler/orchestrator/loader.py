"""Resource loader for the bootstrap of a local reconciliation.

The loader reads Kustomizations, ConfigMaps and Secrets from YAML files on
disk so they can be added to the store. Documents of any other kind are
skipped. It is only used to populate the initial state; after that the
controller works from the store.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncGenerator

import aiofiles
import yaml

from flux_reconciler.config import ReadAction
from flux_reconciler.exceptions import FluxException, InputException
from flux_reconciler.manifest import BaseManifest, parse_raw_obj

__all__ = ["ResourceLoader", "LoadOptions"]

_LOGGER = logging.getLogger(__name__)


@dataclass
class LoadOptions:
    """Options for loading resources.

    Attributes:
        path: A file or directory to load resources from.
    """

    path: Path

    def __post_init__(self) -> None:
        """Resolve the path after initialization."""
        self.path = Path(self.path).expanduser().resolve()


class ResourceLoader:
    """Loads resources from the filesystem."""

    def __init__(self, config: ReadAction) -> None:
        """Initialize the resource loader."""
        self._config = config
        self._processed_files: set[Path] = set()

    async def load(self, options: LoadOptions) -> AsyncGenerator[BaseManifest, None]:
        """Yield every supported resource found at the path."""
        _LOGGER.info("Loading resources from %s", options.path)
        if options.path.is_file():
            async for resource in self._load_file(options.path):
                yield resource
        elif options.path.is_dir():
            async for resource in self._load_directory(options.path):
                yield resource
        else:
            raise FluxException(f"Path does not exist: {options.path}")
        _LOGGER.info("Finished loading resources")

    async def _load_directory(self, path: Path) -> AsyncGenerator[BaseManifest, None]:
        _LOGGER.debug("Loading directory: %s", path)
        for entry in sorted(path.iterdir()):
            if entry.is_file() and entry.suffix.lower() in self._config.extensions:
                async for resource in self._load_file(entry):
                    yield resource
            elif self._config.recursive and entry.is_dir():
                async for resource in self._load_directory(entry):
                    yield resource

    async def _load_file(self, path: Path) -> AsyncGenerator[BaseManifest, None]:
        """Load resources from a file.

        Raises:
            FluxException: If the file can't be read or is not valid YAML.
        """
        if path in self._processed_files:
            return
        self._processed_files.add(path)
        _LOGGER.debug("Processing file: %s", path)

        try:
            async with aiofiles.open(path, encoding="utf-8") as f:
                content = await f.read()
        except OSError as err:
            raise FluxException(f"Failed to read file {path}: {err}") from err

        try:
            docs = list(yaml.safe_load_all(content))
        except yaml.YAMLError as err:
            raise FluxException(f"Invalid YAML in file {path}: {err}") from err

        for doc in docs:
            if not isinstance(doc, dict):
                continue
            try:
                yield parse_raw_obj(doc)
            except InputException as err:
                _LOGGER.debug("Skipping document in %s: %s", path, err)
