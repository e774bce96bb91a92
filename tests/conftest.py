"""Pytest configuration and fixtures."""

import copy
import threading
import time
from typing import Any, Dict, Iterable, List, Optional, Tuple

import pytest

from chisel.config import Config, reset_config
from chisel.diff import Action, ResourceDiff
from chisel.errors import ApplyError, ReadError
from chisel.module import Module, Resource
from chisel.plugins.base import OperationContext
from chisel.plugins.providers.base import Provider
from chisel.plugins.registry import ProviderRegistry, reset_registry


class MemoryProvider(Provider):
    """
    In-memory provider standing in for a remote target.

    State is keyed by ResourceID. Failures, read errors and per-resource
    delays can be injected; every call is recorded in ``calls``. Delays end
    early when the engine cancels the call, stalls block regardless.
    """

    def __init__(self, resource_type: str = "mem", states=None):
        self._type = resource_type
        self.states: Dict[str, Dict[str, Any]] = copy.deepcopy(dict(states or {}))
        self.fail_apply = set()
        self.fail_rollback = set()
        self.fail_read = set()
        self.delays: Dict[str, float] = {}
        self.read_delays: Dict[str, float] = {}
        self.stalls: Dict[str, float] = {}
        self.read_stalls: Dict[str, float] = {}
        self.calls: List[Tuple[str, ...]] = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    @property
    def type(self) -> str:
        return self._type

    def read(self, ctx: OperationContext, resource: Resource):
        resource_id = resource.resource_id
        with self._lock:
            self.calls.append(("read", resource_id))
        delay = self.read_delays.get(resource_id)
        if delay:
            ctx.cancelled.wait(delay)
        if resource_id in self.read_stalls:
            time.sleep(self.read_stalls[resource_id])
        if resource_id in self.fail_read:
            raise ReadError(resource_id, "target unreachable")
        state = self.states.get(resource_id)
        return copy.deepcopy(state) if state is not None else None

    def apply(self, ctx: OperationContext, resource: Resource, diff: ResourceDiff):
        resource_id = diff.resource_id
        with self._lock:
            self.calls.append((ctx.phase.value, resource_id, diff.action.value))
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            delay = self.delays.get(resource_id)
            if delay:
                # Returns early once the engine gives up on this operation
                if ctx.cancelled.wait(delay):
                    raise ApplyError(resource_id, diff.action.value, "cancelled")
            if resource_id in self.stalls:
                time.sleep(self.stalls[resource_id])

            failures = (
                self.fail_rollback if ctx.phase.value == "rollback" else self.fail_apply
            )
            if resource_id in failures:
                raise ApplyError(resource_id, diff.action.value, "injected failure")

            with self._lock:
                if diff.after is None:
                    self.states.pop(resource_id, None)
                else:
                    self.states[resource_id] = copy.deepcopy(diff.after)
        finally:
            with self._lock:
                self.active -= 1

    def applied(self, phase: str = "apply") -> List[str]:
        """ResourceIDs passed to apply in the given phase, in call order."""
        return [call[1] for call in self.calls if call[0] == phase]


def make_resource(resource_id: str, depends_on: Iterable[str] = (), **properties) -> Resource:
    resource_type, name = resource_id.split(".", 1)
    state = properties.pop("state", "present")
    return Resource(
        type=resource_type,
        name=name,
        state=state,
        properties=properties,
        depends_on=list(depends_on),
    )


def make_module(*resources: Resource, name: str = "test-module") -> Module:
    return Module(name=name, version="1.0.0", resources=resources)


def make_diff(
    resource_id: str,
    action: Action = Action.CREATE,
    depends_on: Iterable[str] = (),
    before: Optional[Dict[str, Any]] = None,
    after: Optional[Dict[str, Any]] = None,
) -> ResourceDiff:
    resource = make_resource(resource_id, depends_on)
    if after is None and action in (Action.CREATE, Action.UPDATE):
        after = {"value": resource_id}
    return ResourceDiff(
        resource_id=resource_id,
        action=action,
        before=before,
        after=after,
        resource=resource,
    )


def provider_callables(provider: MemoryProvider):
    """apply/read callables for the executor backed by a MemoryProvider."""

    def apply(ctx, diff):
        provider.apply(ctx, diff.resource, diff)

    def read(ctx, diff):
        return provider.read(ctx, diff.resource)

    return apply, read


@pytest.fixture(autouse=True)
def reset_globals():
    """Reset the global registry and configuration around every test."""
    reset_registry()
    reset_config()
    yield
    reset_registry()
    reset_config()


@pytest.fixture
def memory_provider():
    return MemoryProvider()


@pytest.fixture
def registry(memory_provider):
    registry = ProviderRegistry()
    registry.register(memory_provider)
    return registry


@pytest.fixture
def config():
    return Config.default()
