"""Built-in capability providers."""

from imgflow.providers.claude import ClaudeTextProvider, ClaudeVisionProvider
from imgflow.providers.filesystem import FilesystemSaveProvider
from imgflow.providers.http import HttpSaveProvider
from imgflow.providers.shell import ShellGenerator, ShellTransformProvider

__all__ = [
    "ClaudeTextProvider",
    "ClaudeVisionProvider",
    "FilesystemSaveProvider",
    "HttpSaveProvider",
    "ShellGenerator",
    "ShellTransformProvider",
]
