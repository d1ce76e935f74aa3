"""Shell-command providers: image bytes in on stdin, image bytes out on stdout."""

import asyncio
import logging
import re
import shlex
from typing import Any

from imgflow.core.artifacts import ImageArtifact, image_from_bytes
from imgflow.core.errors import ProviderError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 120

_TEMPLATE_RE = re.compile(r"\{([^{}]+)\}")


def format_command(template: str, values: dict[str, Any]) -> str:
    """Fill ``{key}`` placeholders with shell-quoted values.

    Missing keys are left as-is (``{missing}`` stays ``{missing}``).
    """

    def _replace(match: re.Match[str]) -> str:
        key = match.group(1)
        if key in values and values[key] is not None:
            return shlex.quote(str(values[key]))
        return match.group(0)

    return _TEMPLATE_RE.sub(_replace, template)


async def run_command(command: str, stdin: bytes | None, *, timeout: float, cwd: str | None = None) -> bytes:
    """Run ``command`` in a shell and return stdout. Non-zero exit raises."""
    proc = await asyncio.create_subprocess_shell(
        command,
        stdin=asyncio.subprocess.PIPE if stdin is not None else None,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(stdin), timeout=timeout)
    except TimeoutError:
        proc.kill()
        await proc.wait()
        raise ProviderError(
            f"Command timed out after {timeout}s",
            code="TIMEOUT",
            retryable=True,
            provider="shell",
        ) from None

    if proc.returncode:
        raise ProviderError(
            f"Command exited with code {proc.returncode}: {stderr.decode(errors='replace').strip()}",
            provider="shell",
        )
    if not stdout:
        raise ProviderError("Command produced no output", provider="shell")
    return stdout


class ShellGenerator:
    """Generate an image by running a command template filled from ``params``."""

    def __init__(self, command: str, *, timeout: float = DEFAULT_TIMEOUT, cwd: str | None = None) -> None:
        self.command = command
        self.timeout = timeout
        self.cwd = cwd

    async def generate(self, params: dict[str, Any]) -> ImageArtifact:
        command = format_command(self.command, params)
        logger.debug("Shell generator: %s", command)
        data = await run_command(command, None, timeout=self.timeout, cwd=self.cwd)
        return image_from_bytes(data, mime=params.get("mime"))


class ShellTransformProvider:
    """Transform images through per-operation command templates.

    The input image is written to the command's stdin and the result read
    from stdout. ``{mime}``, ``{width}`` and ``{height}`` of the input are
    available to templates alongside ``params``.
    """

    def __init__(self, commands: dict[str, str], *, timeout: float = DEFAULT_TIMEOUT, cwd: str | None = None) -> None:
        self.commands = dict(commands)
        self.timeout = timeout
        self.cwd = cwd

    @property
    def operations(self) -> list[str]:
        return sorted(self.commands)

    async def transform(self, artifact: ImageArtifact, op: str, params: dict[str, Any]) -> ImageArtifact:
        template = self.commands.get(op)
        if template is None:
            raise ValidationError(f"Unknown transform operation: {op!r}", provider="shell", operation=op)
        values = {"mime": artifact.mime, "width": artifact.width, "height": artifact.height, **params}
        command = format_command(template, values)
        logger.debug("Shell transform %s: %s", op, command)
        data = await run_command(command, artifact.bytes, timeout=self.timeout, cwd=self.cwd)
        return image_from_bytes(data, mime=params.get("mime"))
