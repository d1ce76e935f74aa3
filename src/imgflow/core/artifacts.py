"""Runtime values produced by steps, and stores for moderated images."""

import io
import json
import logging
import secrets
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from PIL import Image

logger = logging.getLogger(__name__)

_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/svg+xml": "svg",
}

_RASTER_FORMATS = ("PNG", "JPEG", "GIF", "WEBP")


@dataclass
class ImageArtifact:
    """Raster (or SVG) image bytes with their MIME type."""

    bytes: bytes
    mime: str = "image/png"
    width: int | None = None
    height: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    source: str | None = None

    @property
    def size(self) -> int:
        return len(self.bytes)

    @property
    def extension(self) -> str:
        return _EXTENSIONS.get(self.mime, "bin")

    def __repr__(self) -> str:
        dims = f", {self.width}x{self.height}" if self.width and self.height else ""
        return f"ImageArtifact({self.mime}, {self.size} bytes{dims})"


@dataclass
class DataResult:
    """Text or structured output of a vision/text step.

    ``parsed`` holds the decoded object for ``json`` results and is what
    routers and dynamic prompts read properties from.
    """

    type: Literal["text", "json"]
    content: str
    parsed: Any = None
    source: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_value(cls, value: Any, *, source: str | None = None) -> "DataResult":
        if isinstance(value, str):
            return cls(type="text", content=value, source=source)
        return cls(type="json", content=json.dumps(value), parsed=value, source=source)

    def get_property(self, name: str) -> Any:
        if isinstance(self.parsed, dict):
            return self.parsed.get(name)
        return None


@dataclass
class SaveResult:
    provider: str
    location: str
    size: int
    mime: str
    metadata: dict[str, Any] = field(default_factory=dict)


def _open_image(data: bytes) -> Image.Image | None:
    try:
        return Image.open(io.BytesIO(data), formats=_RASTER_FORMATS)
    except OSError:
        return None


def detect_mime(data: bytes) -> str | None:
    """MIME type of ``data``, or ``None`` when unrecognized.

    Raster formats are identified by Pillow; SVG is recognized by its root tag.
    """
    img = _open_image(data)
    if img is not None:
        with img:
            return Image.MIME.get(img.format or "")
    head = data[:512].lstrip()
    if head.startswith(b"<svg") or (head.startswith(b"<?xml") and b"<svg" in head):
        return "image/svg+xml"
    return None


def image_size(data: bytes) -> tuple[int, int] | None:
    """(width, height) of a raster image, read from its header."""
    img = _open_image(data)
    if img is None:
        return None
    with img:
        return img.size


def image_from_bytes(data: bytes, *, mime: str | None = None, source: str | None = None) -> ImageArtifact:
    """Build an ImageArtifact, sniffing the MIME type and dimensions."""
    dims = image_size(data)
    return ImageArtifact(
        bytes=data,
        mime=mime or detect_mime(data) or "application/octet-stream",
        width=dims[0] if dims else None,
        height=dims[1] if dims else None,
        source=source,
    )


def new_artifact_id() -> str:
    return f"img_{int(time.time() * 1000)}_{secrets.token_hex(3)}"


class MemoryArtifactStore:
    """Keep moderated images in memory, keyed by artifact id."""

    def __init__(self) -> None:
        self._items: dict[str, ImageArtifact] = {}
        self._meta: dict[str, dict[str, Any]] = {}

    def put(self, artifact: ImageArtifact, *, step_id: str, moderation: dict[str, Any] | None = None) -> str:
        artifact_id = new_artifact_id()
        self._items[artifact_id] = artifact
        self._meta[artifact_id] = _sidecar(artifact_id, artifact, step_id, moderation)
        return artifact_id

    def get(self, artifact_id: str) -> ImageArtifact | None:
        return self._items.get(artifact_id)

    def metadata(self, artifact_id: str) -> dict[str, Any] | None:
        return self._meta.get(artifact_id)

    def __contains__(self, artifact_id: str) -> bool:
        return artifact_id in self._items

    def __len__(self) -> int:
        return len(self._items)


class FilesystemArtifactStore:
    """Write each image to ``<root>/<id>.<ext>`` with a ``<id>.meta.json`` sidecar."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def put(self, artifact: ImageArtifact, *, step_id: str, moderation: dict[str, Any] | None = None) -> str:
        artifact_id = new_artifact_id()
        self.root.mkdir(parents=True, exist_ok=True)
        path = self.root / f"{artifact_id}.{artifact.extension}"
        path.write_bytes(artifact.bytes)
        meta = _sidecar(artifact_id, artifact, step_id, moderation)
        meta["filename"] = path.name
        (self.root / f"{artifact_id}.meta.json").write_text(json.dumps(meta, indent=2))
        logger.debug("Stored artifact %s at %s", artifact_id, path)
        return artifact_id

    def get(self, artifact_id: str) -> ImageArtifact | None:
        meta = self.metadata(artifact_id)
        if meta is None:
            return None
        data = (self.root / meta["filename"]).read_bytes()
        return ImageArtifact(
            bytes=data,
            mime=meta["mime"],
            width=meta.get("width"),
            height=meta.get("height"),
            source=meta.get("stepId"),
        )

    def metadata(self, artifact_id: str) -> dict[str, Any] | None:
        meta_path = self.root / f"{artifact_id}.meta.json"
        if not meta_path.exists():
            return None
        return json.loads(meta_path.read_text())

    def __contains__(self, artifact_id: str) -> bool:
        return (self.root / f"{artifact_id}.meta.json").exists()


def _sidecar(
    artifact_id: str,
    artifact: ImageArtifact,
    step_id: str,
    moderation: dict[str, Any] | None,
) -> dict[str, Any]:
    meta: dict[str, Any] = {
        "id": artifact_id,
        "mime": artifact.mime,
        "size": artifact.size,
        "width": artifact.width,
        "height": artifact.height,
        "stepId": step_id,
        "createdAt": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
    }
    if moderation is not None:
        meta["moderation"] = moderation
    return meta
