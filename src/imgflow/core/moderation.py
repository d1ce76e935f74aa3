"""Moderation gate for generated images.

Every image-producing step passes its result through ``ModerationGate.check``
before the image reaches the artifact store or any later step. A flagged image
is never stored or passed on.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol, runtime_checkable

from imgflow.core.artifacts import ImageArtifact
from imgflow.core.errors import ContentPolicyError, ModerationUnavailableError

logger = logging.getLogger(__name__)


@dataclass
class ModerationResult:
    flagged: bool
    categories: list[str] = field(default_factory=list)
    scores: dict[str, float] = field(default_factory=dict)


@runtime_checkable
class Moderator(Protocol):
    async def check(self, data: bytes, mime: str) -> ModerationResult: ...


@dataclass
class ModerationIncident:
    step_id: str
    kind: Literal["flagged", "unavailable"]
    message: str
    categories: list[str] = field(default_factory=list)
    timestamp: float = field(default_factory=time.time)


class ModerationGate:
    """Check images with a ``Moderator`` and enforce the outcome.

    - flagged: incident logged, ``ContentPolicyError`` raised.
    - checker failure, strict: incident logged, ``ModerationUnavailableError``.
    - checker failure, non-strict: warning logged, image allowed through.

    Checks are never retried here; retry policy belongs to the caller.
    """

    def __init__(self, moderator: Moderator | None, *, enabled: bool = True, strict: bool = False) -> None:
        self.moderator = moderator
        self.enabled = enabled and moderator is not None
        self.strict = strict
        self.incidents: list[ModerationIncident] = []

    async def check(self, artifact: ImageArtifact, step_id: str) -> dict[str, Any]:
        """Return the moderation record to store alongside the image."""
        if not self.enabled or self.moderator is None:
            return {"checked": False}

        try:
            result = await self.moderator.check(artifact.bytes, artifact.mime)
        except Exception as e:
            if self.strict:
                self._incident(step_id, "unavailable", f"Moderation check failed: {e}")
                raise ModerationUnavailableError(
                    "Content moderation is unavailable; image withheld",
                    step_id=step_id,
                    operation="moderation",
                    cause=e,
                ) from e
            logger.warning("Moderation check failed for %s, allowing image: %s", step_id, e)
            return {"checked": False, "error": str(e)}

        if result.flagged:
            self._incident(step_id, "flagged", "Image flagged", result.categories)
            raise ContentPolicyError(result.categories, step_id=step_id)

        return {"checked": True, "flagged": False, "categories": list(result.categories)}

    def _incident(
        self,
        step_id: str,
        kind: Literal["flagged", "unavailable"],
        message: str,
        categories: list[str] | None = None,
    ) -> None:
        incident = ModerationIncident(step_id=step_id, kind=kind, message=message, categories=categories or [])
        self.incidents.append(incident)
        logger.error(
            "Moderation incident at %s (%s): %s %s",
            step_id,
            kind,
            message,
            incident.categories or "",
        )
