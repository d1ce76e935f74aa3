"""FilesystemSaveProvider — write images to local paths."""

import logging
from pathlib import Path
from typing import Any

from imgflow.core.artifacts import ImageArtifact, SaveResult

logger = logging.getLogger(__name__)


class FilesystemSaveProvider:
    """Save images under ``base_dir`` (relative paths) or at absolute paths.

    A destination ending in ``/`` (or naming an existing directory) gets a
    file named after the image's source step.
    """

    name = "fs"

    def __init__(self, base_dir: str | Path | None = None) -> None:
        self.base_dir = Path(base_dir) if base_dir else None

    def resolve(self, path: str, artifact: ImageArtifact) -> Path:
        target = Path(path)
        if not target.is_absolute() and self.base_dir is not None:
            target = self.base_dir / target
        if path.endswith("/") or target.is_dir():
            target = target / f"{artifact.source or 'image'}.{artifact.extension}"
        return target

    async def save(self, artifact: ImageArtifact, path: str, **options: Any) -> SaveResult:
        target = self.resolve(path, artifact)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(artifact.bytes)
        logger.info("Saved %d bytes to %s", artifact.size, target)
        return SaveResult(
            provider=self.name,
            location=str(target),
            size=artifact.size,
            mime=artifact.mime,
        )
