"""
Shell provider - runs commands on the local host.
"""

import logging
import os
import subprocess
from pathlib import Path
from typing import Any, Dict, Optional

from chisel.diff import ResourceDiff
from chisel.errors import ApplyError, OperationTimeoutError, ReadError
from chisel.module import Resource
from chisel.plugins.base import OperationContext
from chisel.plugins.providers.base import Provider

logger = logging.getLogger(__name__)


class ShellProvider(Provider):
    """
    Provider for ``shell`` resources.

    A shell resource is "present" once its guard is satisfied: the path in
    ``creates`` exists, or the ``unless`` command exits 0. Without a guard
    the command runs on every apply. Removing the resource (or rolling back
    its creation) runs ``undo`` when one is declared.
    """

    schema = {
        "type": "object",
        "required": ["command"],
        "properties": {
            "command": {"type": "string", "minLength": 1},
            "creates": {"type": "string"},
            "unless": {"type": "string"},
            "undo": {"type": "string"},
            "cwd": {"type": "string"},
            "env": {"type": "object", "additionalProperties": {"type": "string"}},
        },
    }

    @property
    def type(self) -> str:
        return "shell"

    def read(
        self, ctx: OperationContext, resource: Resource
    ) -> Optional[Dict[str, Any]]:
        props = resource.properties
        creates = props.get("creates")
        unless = props.get("unless")

        satisfied = False
        if creates and Path(creates).exists():
            satisfied = True
        elif unless:
            try:
                satisfied = self._run(ctx, resource, unless, check=False) == 0
            except OperationTimeoutError:
                # TimeoutError subclasses OSError
                raise
            except OSError as e:
                raise ReadError(resource.resource_id, str(e)) from e

        if not satisfied:
            return None
        # Guard satisfied: report the declared properties so nothing differs
        return dict(props)

    def apply(
        self, ctx: OperationContext, resource: Resource, diff: ResourceDiff
    ) -> None:
        if diff.after is None:
            command = resource.properties.get("undo")
            if not command:
                raise ApplyError(
                    resource.resource_id,
                    diff.action.value,
                    "shell resource declares no undo command",
                )
        else:
            command = resource.properties["command"]

        self._run(ctx, resource, command, check=True, action=diff.action.value)

    def _run(
        self,
        ctx: OperationContext,
        resource: Resource,
        command: str,
        check: bool,
        action: str = "run",
    ) -> int:
        props = resource.properties
        env = None
        if props.get("env"):
            env = {**os.environ, **props["env"]}

        timeout = ctx.remaining()
        logger.debug(f"Running for {resource.resource_id}: {command}")
        try:
            completed = subprocess.run(
                command,
                shell=True,
                cwd=props.get("cwd"),
                env=env,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise OperationTimeoutError(resource.resource_id, timeout or 0) from e

        if check and completed.returncode != 0:
            stderr = completed.stderr.strip() or completed.stdout.strip()
            raise ApplyError(
                resource.resource_id,
                action,
                f"command exited with {completed.returncode}: {stderr}",
            )
        return completed.returncode
