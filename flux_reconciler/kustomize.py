"""Library for rendering a kustomize overlay into cluster objects.

The overlay templating engine is an external collaborator: the controller only
consumes the rendered manifest bytes. The default `KustomizeRenderer` writes a
generated `kustomization.yaml` that points at the source path and carries the
patches, image overrides and namespace of the Flux Kustomization, then runs
`kustomize build` on it.

```python
from flux_reconciler import kustomize

renderer = kustomize.KustomizeRenderer()
data = await renderer.render(Path('/path/to/app'), patches=[], images=[], target_namespace=None)
for obj in kustomize.parse_manifests(data):
    print(f"Found object {obj['apiVersion']} {obj['kind']}")
```
"""

from abc import ABC, abstractmethod
from collections.abc import Sequence
import logging
from pathlib import Path
import tempfile
from typing import Any

import aiofiles
from aiofiles.ospath import isdir
import yaml

from .command import Command, run
from .exceptions import BuildException, KustomizeException, KustomizePathException
from .manifest import Image, Patch

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "OverlayRenderer",
    "KustomizeRenderer",
    "manifest_objects",
    "parse_manifests",
    "split_manifests",
]

KUSTOMIZE_BIN = "kustomize"
KUSTOMIZE_API_VERSION = "kustomize.config.k8s.io/v1beta1"
KUSTOMIZE_KIND = "Kustomization"


class OverlayRenderer(ABC):
    """Renders a kustomize overlay into manifest bytes."""

    @abstractmethod
    async def render(
        self,
        path: Path,
        patches: Sequence[Patch],
        images: Sequence[Image],
        target_namespace: str | None,
    ) -> bytes:
        """Render the overlay at `path` and return the multi document YAML."""


def overlay_document(
    path: Path,
    patches: Sequence[Patch],
    images: Sequence[Image],
    target_namespace: str | None,
) -> dict[str, Any]:
    """Return the generated kustomization.yaml contents for an overlay."""
    doc: dict[str, Any] = {
        "apiVersion": KUSTOMIZE_API_VERSION,
        "kind": KUSTOMIZE_KIND,
        "resources": [str(path)],
    }
    if target_namespace:
        doc["namespace"] = target_namespace
    if patches:
        doc["patches"] = [patch.to_dict() for patch in patches]
    if images:
        doc["images"] = [image.to_dict() for image in images]
    return doc


class KustomizeRenderer(OverlayRenderer):
    """Renders an overlay with the `kustomize` binary."""

    def __init__(self, kustomize_bin: str = KUSTOMIZE_BIN) -> None:
        self._kustomize_bin = kustomize_bin

    async def render(
        self,
        path: Path,
        patches: Sequence[Patch],
        images: Sequence[Image],
        target_namespace: str | None,
    ) -> bytes:
        if not await isdir(path):
            raise KustomizePathException(f"Kustomization path is not a directory: {path}")
        doc = overlay_document(path.resolve(), patches, images, target_namespace)
        with tempfile.TemporaryDirectory(prefix="flux-reconciler-") as overlay_dir:
            overlay_path = Path(overlay_dir) / "kustomization.yaml"
            async with aiofiles.open(overlay_path, mode="w") as overlay_file:
                await overlay_file.write(yaml.dump(doc, sort_keys=False))
            cmd = Command(
                [
                    self._kustomize_bin,
                    "build",
                    "--load-restrictor",
                    "LoadRestrictionsNone",
                    overlay_dir,
                ],
                exc=KustomizeException,
            )
            _LOGGER.debug("Rendering overlay %s", path)
            return await run(cmd)


def manifest_objects(doc: Any) -> list[dict[str, Any]]:
    """Return the objects of a parsed document, flattening `List` kinds."""
    if doc is None:
        return []
    if not isinstance(doc, dict):
        raise BuildException(f"Rendered document is not an object: {doc!r}")
    if doc.get("kind") == "List" and isinstance(doc.get("items"), list):
        return [item for item in doc["items"] if item]
    return [doc]


def parse_manifests(data: bytes) -> list[dict[str, Any]]:
    """Parse rendered multi document YAML into a list of objects.

    Empty documents are dropped and `List` kinds are flattened.
    """
    try:
        docs = list(yaml.safe_load_all(data))
    except yaml.YAMLError as err:
        raise BuildException(f"Unable to parse rendered manifests: {err}") from err
    objects: list[dict[str, Any]] = []
    for doc in docs:
        objects.extend(manifest_objects(doc))
    return objects


def split_manifests(data: bytes) -> list[str]:
    """Split rendered multi document YAML into the source text of each document.

    The text is kept as rendered, including the quoting of scalars, so that
    variables can be substituted before the document is parsed. Empty
    documents are dropped.
    """
    try:
        text = data.decode("utf-8")
        nodes = list(yaml.compose_all(text, Loader=yaml.SafeLoader))
    except (UnicodeDecodeError, yaml.YAMLError) as err:
        raise BuildException(f"Unable to parse rendered manifests: {err}") from err
    documents = []
    for node in nodes:
        # Start at the beginning of the line to keep the indentation consistent
        start = node.start_mark.index - node.start_mark.column
        document = text[start : node.end_mark.index]
        try:
            doc = yaml.safe_load(document)
        except yaml.YAMLError as err:
            raise BuildException(f"Unable to parse rendered manifests: {err}") from err
        if manifest_objects(doc):
            documents.append(document)
    return documents


def dump_manifests(objects: Sequence[dict[str, Any]]) -> bytes:
    """Serialize objects back into multi document YAML."""
    return yaml.dump_all(
        objects, sort_keys=False, explicit_start=True
    ).encode("utf-8")
