"""
Module and Resource definitions.

A Module is a named, versioned collection of Resources loaded from a YAML
document. Resources are immutable for the duration of a planning cycle and
carry loosely-typed properties normalised into PropertyValue trees.
"""

import copy
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import yaml

from chisel.errors import ModuleValidationError
from chisel.validation import validate_module_document

logger = logging.getLogger(__name__)

API_VERSION = "chisel/v1"
KIND = "Module"

SEMVER_PATTERN = re.compile(
    r"^(\d+)\.(\d+)\.(\d+)"
    r"(?:-([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?"
    r"(?:\+([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?$"
)

# Keys of a resource document that are not inline properties
RESERVED_KEYS = ("type", "name", "state", "depends_on")

PropertyValue = Union[
    str, int, float, bool, None, List["PropertyValue"], Dict[str, "PropertyValue"]
]


def coerce_property(value: Any, path: str = "") -> PropertyValue:
    """
    Normalise a value into a PropertyValue tree.

    Tuples become lists and nested containers are copied. Mapping keys must
    be strings.

    Raises:
        TypeError: If the value (or a nested value) is not representable.
    """
    if value is None or isinstance(value, (str, bool, int, float)):
        return value
    if isinstance(value, (list, tuple)):
        return [coerce_property(v, f"{path}[{i}]") for i, v in enumerate(value)]
    if isinstance(value, Mapping):
        result: Dict[str, PropertyValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise TypeError(
                    f"Property keys must be strings, got {type(key).__name__} "
                    f"at {path or '(root)'}"
                )
            result[key] = coerce_property(item, f"{path}.{key}" if path else key)
        return result
    raise TypeError(
        f"Unsupported property type {type(value).__name__} at {path or '(root)'}"
    )


class ResourceState(str, Enum):
    """Desired state of a resource."""

    PRESENT = "present"
    ABSENT = "absent"
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass(frozen=True)
class Resource:
    """A single unit of declared infrastructure state."""

    type: str
    name: str
    state: ResourceState = ResourceState.PRESENT
    properties: Dict[str, PropertyValue] = field(default_factory=dict)
    depends_on: List[str] = field(default_factory=list)

    def __post_init__(self):
        # Frozen: normalise through object.__setattr__ so callers can pass
        # plain strings and tuples.
        object.__setattr__(self, "state", ResourceState(self.state))
        object.__setattr__(
            self, "properties", coerce_property(dict(self.properties))
        )
        object.__setattr__(self, "depends_on", list(self.depends_on))

    @property
    def resource_id(self) -> str:
        return f"{self.type}.{self.name}"

    def validate(self) -> None:
        """Check the resource is well formed."""
        if not self.type:
            raise ModuleValidationError("resource type cannot be empty")
        if not self.name:
            raise ModuleValidationError("resource name cannot be empty")
        if "." in self.type:
            raise ModuleValidationError(
                f"resource type '{self.type}' must not contain '.'"
            )

    def desired_properties(self) -> Dict[str, PropertyValue]:
        """Properties the planner compares against observed state."""
        desired = copy.deepcopy(self.properties)
        if self.state in (ResourceState.RUNNING, ResourceState.STOPPED):
            desired["state"] = self.state.value
        return desired

    @property
    def wants_absent(self) -> bool:
        return self.state == ResourceState.ABSENT

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Resource":
        properties = {k: v for k, v in data.items() if k not in RESERVED_KEYS}
        return cls(
            type=data.get("type", ""),
            name=data.get("name", ""),
            state=data.get("state") or ResourceState.PRESENT,
            properties=properties,
            depends_on=data.get("depends_on") or [],
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.type, "name": self.name}
        if self.state != ResourceState.PRESENT:
            data["state"] = self.state.value
        if self.depends_on:
            data["depends_on"] = list(self.depends_on)
        data.update(copy.deepcopy(self.properties))
        return data


@dataclass(frozen=True)
class Module:
    """A named, versioned collection of resources."""

    name: str
    version: str
    resources: Sequence[Resource] = ()
    description: str = ""
    labels: Dict[str, str] = field(default_factory=dict)
    api_version: str = API_VERSION
    kind: str = KIND

    def __post_init__(self):
        object.__setattr__(self, "resources", tuple(self.resources))
        object.__setattr__(self, "labels", dict(self.labels))

    def validate(self) -> None:
        """
        Validate the module.

        Raises:
            ModuleValidationError: On the first problem found.
        """
        if self.api_version != API_VERSION:
            raise ModuleValidationError(f"apiVersion must be {API_VERSION}")
        if self.kind != KIND:
            raise ModuleValidationError(f"kind must be {KIND}")
        if not self.name:
            raise ModuleValidationError("metadata.name is required")
        if not self.version:
            raise ModuleValidationError("metadata.version is required")
        if not SEMVER_PATTERN.match(self.version):
            raise ModuleValidationError("metadata.version must be valid semver")

        seen = set()
        for i, resource in enumerate(self.resources):
            try:
                resource.validate()
            except ModuleValidationError as e:
                raise ModuleValidationError(f"resource[{i}]: {e}") from e
            if resource.resource_id in seen:
                raise ModuleValidationError(
                    f"resource[{i}]: duplicate resource {resource.resource_id}"
                )
            seen.add(resource.resource_id)

        for resource in self.resources:
            for dep in resource.depends_on:
                if dep == resource.resource_id:
                    raise ModuleValidationError(
                        f"{resource.resource_id} cannot depend on itself"
                    )
                if dep not in seen:
                    raise ModuleValidationError(
                        f"{resource.resource_id} depends on undeclared resource {dep}"
                    )

    def get_resource(self, resource_id: str) -> Optional[Resource]:
        for resource in self.resources:
            if resource.resource_id == resource_id:
                return resource
        return None

    @classmethod
    def from_dict(cls, doc: Dict[str, Any]) -> "Module":
        """
        Build a module from a parsed document and validate it.

        Raises:
            ModuleValidationError: If the document shape or contents are invalid.
        """
        is_valid, error = validate_module_document(doc)
        if not is_valid:
            raise ModuleValidationError(error)

        metadata = doc["metadata"]
        try:
            resources = [
                Resource.from_dict(r) for r in doc.get("spec", {}).get("resources", [])
            ]
        except (TypeError, ValueError) as e:
            raise ModuleValidationError(f"invalid resource: {e}") from e

        module = cls(
            name=metadata.get("name", ""),
            version=str(metadata.get("version", "")),
            description=metadata.get("description", ""),
            labels=metadata.get("labels") or {},
            resources=resources,
            api_version=doc.get("apiVersion", ""),
            kind=doc.get("kind", ""),
        )
        module.validate()
        return module

    def to_dict(self) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {"name": self.name, "version": self.version}
        if self.description:
            metadata["description"] = self.description
        if self.labels:
            metadata["labels"] = dict(self.labels)
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "metadata": metadata,
            "spec": {"resources": [r.to_dict() for r in self.resources]},
        }


def load_module(path: Union[str, Path]) -> Module:
    """
    Load and validate a module from a YAML file.

    Raises:
        ModuleValidationError: If the file cannot be parsed or is invalid.
    """
    path = Path(path)
    try:
        with open(path, "r") as f:
            doc = yaml.safe_load(f)
    except OSError as e:
        raise ModuleValidationError(f"failed to read module file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ModuleValidationError(f"failed to parse module file {path}: {e}") from e

    if not isinstance(doc, dict):
        raise ModuleValidationError(f"module file {path} must contain a mapping")

    try:
        module = Module.from_dict(doc)
    except ModuleValidationError as e:
        raise ModuleValidationError(f"invalid module in file {path}: {e}") from e

    logger.debug(f"Loaded module {module.name} v{module.version} from {path}")
    return module


def save_module(module: Module, path: Union[str, Path]) -> None:
    """Validate and write a module to a YAML file."""
    module.validate()
    with open(path, "w") as f:
        yaml.safe_dump(module.to_dict(), f, default_flow_style=False, sort_keys=False)
