"""Capability protocols and the registry the scheduler dispatches through.

A ``CapabilityRegistry`` is an explicit value: build one (see
``imgflow.config.build_registry``) and hand it to the ``Scheduler``. There is
no module-level provider state.
"""

import logging
import re
from typing import Any, Protocol, Self, runtime_checkable

from imgflow.core.artifacts import DataResult, ImageArtifact, SaveResult
from imgflow.core.errors import ProviderNotFoundError

logger = logging.getLogger(__name__)

_SCHEME_RE = re.compile(r"^([a-zA-Z][a-zA-Z0-9+.-]*)://(.*)$", re.DOTALL)
_LOCAL_PREFIXES = ("./", "../", "/")
FILESYSTEM_PROVIDER = "fs"


@runtime_checkable
class ImageGenerator(Protocol):
    async def generate(self, params: dict[str, Any]) -> ImageArtifact: ...


@runtime_checkable
class TransformProvider(Protocol):
    async def transform(self, artifact: ImageArtifact, op: str, params: dict[str, Any]) -> ImageArtifact: ...


@runtime_checkable
class VisionProvider(Protocol):
    async def analyze(self, input: ImageArtifact | list[Any], params: dict[str, Any]) -> DataResult: ...


@runtime_checkable
class TextProvider(Protocol):
    async def generate(self, input: Any, params: dict[str, Any]) -> DataResult: ...


@runtime_checkable
class SaveProvider(Protocol):
    async def save(self, artifact: ImageArtifact, path: str, **options: Any) -> SaveResult: ...


class CapabilityRegistry:
    """Named generators, transform/vision/text providers and save providers."""

    def __init__(self, *, default_transform: str | None = None, default_save: str = FILESYSTEM_PROVIDER) -> None:
        self.default_transform = default_transform
        self.default_save = default_save
        self._generators: dict[str, ImageGenerator] = {}
        self._transforms: dict[str, TransformProvider] = {}
        self._vision: dict[str, VisionProvider] = {}
        self._text: dict[str, TextProvider] = {}
        self._save: dict[str, SaveProvider] = {}
        self._save_aliases: dict[str, str] = {}

    # -- registration -----------------------------------------------------

    def register_generator(self, name: str, generator: ImageGenerator) -> Self:
        self._generators[name] = generator
        return self

    def register_transform(self, name: str, provider: TransformProvider) -> Self:
        self._transforms[name] = provider
        return self

    def register_vision(self, name: str, provider: VisionProvider) -> Self:
        self._vision[name] = provider
        return self

    def register_text(self, name: str, provider: TextProvider) -> Self:
        self._text[name] = provider
        return self

    def register_save(self, name: str, provider: SaveProvider, *, aliases: tuple[str, ...] = ()) -> Self:
        self._save[name] = provider
        for alias in aliases:
            self._save_aliases[alias] = name
        return self

    # -- lookup -----------------------------------------------------------

    def _lookup(self, table: dict[str, Any], kind: str, name: str | None) -> Any:
        if name is None or name not in table:
            raise ProviderNotFoundError(kind, name or "<none>")
        return table[name]

    def _transform_provider_name(self, provider: str | None) -> str | None:
        if provider:
            return provider
        if self.default_transform:
            return self.default_transform
        if len(self._transforms) == 1:
            return next(iter(self._transforms))
        return None

    def resolve_destination(self, destination: str, provider: str | None = None) -> tuple[str, str, str | None]:
        """Pick the save provider for ``destination``.

        Returns ``(provider_name, path, scheme)``. ``scheme://rest`` selects
        provider ``scheme`` with path ``rest``; ``./``, ``../`` and ``/``
        select the filesystem provider; anything else uses the default.
        An explicit ``provider`` always wins.
        """
        scheme = None
        path = destination
        match = _SCHEME_RE.match(destination)
        if match:
            scheme, path = match.group(1).lower(), match.group(2)

        if provider:
            name = provider
        elif scheme:
            name = scheme
        elif destination.startswith(_LOCAL_PREFIXES):
            name = FILESYSTEM_PROVIDER
        else:
            name = self.default_save
        return self._save_aliases.get(name, name), path, scheme

    # -- dispatch ---------------------------------------------------------

    async def generate(self, name: str, params: dict[str, Any]) -> ImageArtifact:
        generator = self._lookup(self._generators, "generator", name)
        logger.debug("Dispatching generator %s", name)
        return await generator.generate(params)

    async def transform(
        self,
        op: str,
        provider: str | None,
        input: ImageArtifact,
        params: dict[str, Any],
    ) -> ImageArtifact:
        name = self._transform_provider_name(provider)
        transformer = self._lookup(self._transforms, "transform", name)
        logger.debug("Dispatching transform %s via %s", op, name)
        return await transformer.transform(input, op, params)

    async def analyze(self, provider: str, input: ImageArtifact | list[Any], params: dict[str, Any]) -> DataResult:
        vision = self._lookup(self._vision, "vision", provider)
        logger.debug("Dispatching vision %s", provider)
        return await vision.analyze(input, params)

    async def text_generate(self, provider: str, input: Any, params: dict[str, Any]) -> DataResult:
        text = self._lookup(self._text, "text", provider)
        logger.debug("Dispatching text %s", provider)
        return await text.generate(input, params)

    async def save(self, input: ImageArtifact, destination: str, provider: str | None = None) -> SaveResult:
        name, path, scheme = self.resolve_destination(destination, provider)
        saver = self._lookup(self._save, "save", name)
        logger.debug("Saving to %s via %s", path, name)
        options: dict[str, Any] = {}
        if scheme:
            options["scheme"] = scheme
        return await saver.save(input, path, **options)

    def capabilities(self) -> dict[str, list[str]]:
        return {
            "generators": sorted(self._generators),
            "transforms": sorted(self._transforms),
            "vision": sorted(self._vision),
            "text": sorted(self._text),
            "save": sorted(self._save),
        }

    async def aclose(self) -> None:
        """Close every registered provider that holds a client (``aclose()``)."""
        providers = [
            *self._generators.values(),
            *self._transforms.values(),
            *self._vision.values(),
            *self._text.values(),
            *self._save.values(),
        ]
        seen: set[int] = set()
        for provider in providers:
            close = getattr(provider, "aclose", None)
            if close is None or id(provider) in seen:
                continue
            seen.add(id(provider))
            await close()

    def __repr__(self) -> str:
        counts = ", ".join(f"{k}={len(v)}" for k, v in self.capabilities().items())
        return f"CapabilityRegistry({counts})"
