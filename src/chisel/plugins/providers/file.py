"""
File provider - manages files on the local filesystem.
"""

import logging
import os
import stat
from pathlib import Path
from typing import Any, Dict, Optional

from chisel.diff import ResourceDiff
from chisel.errors import ApplyError, ReadError
from chisel.module import Resource
from chisel.plugins.base import OperationContext
from chisel.plugins.providers.base import Provider

logger = logging.getLogger(__name__)


class FileProvider(Provider):
    """
    Provider for ``file`` resources.

    Properties:
        path: Absolute path of the file (required)
        content: Expected file content
        mode: Permission bits as a four digit octal string, e.g. "0644"
    """

    schema = {
        "type": "object",
        "required": ["path"],
        "properties": {
            "path": {"type": "string", "minLength": 1},
            "content": {"type": "string"},
            "mode": {"type": "string", "pattern": "^0[0-7]{3}$"},
        },
    }

    def __init__(self, root: Optional[str] = None):
        # Optional prefix for every path, useful for chroots and tests
        self.root = Path(root) if root else None

    @property
    def type(self) -> str:
        return "file"

    def _path(self, resource: Resource) -> Path:
        path = Path(resource.properties["path"])
        if self.root is not None:
            return self.root / path.relative_to(path.anchor)
        return path

    def read(
        self, ctx: OperationContext, resource: Resource
    ) -> Optional[Dict[str, Any]]:
        path = self._path(resource)
        try:
            st = path.stat()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise ReadError(resource.resource_id, str(e)) from e

        if not stat.S_ISREG(st.st_mode):
            raise ReadError(resource.resource_id, f"{path} is not a regular file")

        current: Dict[str, Any] = {
            "path": resource.properties["path"],
            "mode": f"{stat.S_IMODE(st.st_mode):04o}",
            "size": st.st_size,
        }
        # Always captured so a snapshot taken before a delete can restore it.
        # Undecodable bytes survive the round trip through surrogateescape.
        try:
            current["content"] = path.read_text(errors="surrogateescape")
        except OSError as e:
            raise ReadError(resource.resource_id, str(e)) from e
        return current

    def apply(
        self, ctx: OperationContext, resource: Resource, diff: ResourceDiff
    ) -> None:
        path = self._path(resource)
        try:
            if diff.after is None:
                path.unlink(missing_ok=True)
                logger.info(f"Removed {path}")
                return

            path.parent.mkdir(parents=True, exist_ok=True)
            content = diff.after.get("content")
            if content is not None:
                path.write_text(content, errors="surrogateescape")
            elif not path.exists():
                path.touch()

            mode = diff.after.get("mode")
            if mode is not None:
                os.chmod(path, int(mode, 8))
            logger.info(f"Wrote {path}")
        except OSError as e:
            raise ApplyError(resource.resource_id, diff.action.value, str(e)) from e
