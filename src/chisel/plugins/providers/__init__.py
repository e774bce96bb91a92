"""Built-in resource providers."""

from chisel.plugins.providers.file import FileProvider
from chisel.plugins.providers.shell import ShellProvider

__all__ = ["FileProvider", "ShellProvider"]
