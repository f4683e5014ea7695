"""Immutable pipeline description types."""
import fnmatch
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Tuple

from ecs_pipeline.errors import ConfigError

# Reference namespaces that are not step ids
RESERVED_NAMESPACES = ("env", "inputs", "event")
EVENT_FIELDS = ("name", "ref", "branch", "sha")

PUSH_EVENT = "push"
DISPATCH_EVENT = "workflow_dispatch"
INPUT_TYPES = ("string", "choice", "boolean")


def frozen_mapping(values: Optional[Mapping[str, str]] = None) -> Mapping[str, str]:
    return MappingProxyType(dict(values or {}))


@dataclass(frozen=True)
class PipelineStep:
    """One step of a pipeline: an action invoked with string parameters.

    `outputs` maps the name a step exports to the action output it comes from.
    """
    id: str
    name: str
    action: str
    parameters: Mapping[str, str] = field(default_factory=frozen_mapping)
    outputs: Mapping[str, str] = field(default_factory=frozen_mapping)


@dataclass(frozen=True)
class WorkflowInput:
    """A manual-dispatch input, optionally constrained to a set of options."""
    name: str
    description: str = ""
    required: bool = False
    default: Optional[str] = None
    type: str = "string"
    options: Tuple[str, ...] = ()

    def coerce(self, value: Optional[str]) -> str:
        if value is None or value == "":
            if self.default is not None:
                value = self.default
            elif self.required:
                raise ConfigError(f"Input '{self.name}' is required")
            else:
                return ""

        if self.type == "choice" and value not in self.options:
            raise ConfigError(
                f"Input '{self.name}' must be one of {list(self.options)}, got '{value}'"
            )
        if self.type == "boolean":
            lowered = value.lower()
            if lowered not in ("true", "false"):
                raise ConfigError(f"Input '{self.name}' must be true or false, got '{value}'")
            return lowered
        return value


@dataclass(frozen=True)
class Triggers:
    """Events that start a pipeline.

    `push_branches` is None when pushes do not trigger the pipeline and empty
    when any branch does. `dispatch_inputs` is None when manual dispatch is
    not enabled.
    """
    push_branches: Optional[Tuple[str, ...]] = None
    dispatch_inputs: Optional[Tuple[WorkflowInput, ...]] = None

    @property
    def inputs(self) -> Tuple[WorkflowInput, ...]:
        return self.dispatch_inputs or ()

    def event_names(self) -> Tuple[str, ...]:
        names = []
        if self.push_branches is not None:
            names.append(PUSH_EVENT)
        if self.dispatch_inputs is not None:
            names.append(DISPATCH_EVENT)
        return tuple(names)


@dataclass(frozen=True)
class RunEvent:
    """The event a run is started for."""
    name: str = DISPATCH_EVENT
    ref: str = ""
    sha: str = ""
    inputs: Mapping[str, str] = field(default_factory=frozen_mapping)

    @property
    def branch(self) -> str:
        prefix = "refs/heads/"
        return self.ref[len(prefix):] if self.ref.startswith(prefix) else self.ref

    def fields(self) -> Dict[str, str]:
        return {"name": self.name, "ref": self.ref, "branch": self.branch, "sha": self.sha}


@dataclass(frozen=True)
class Pipeline:
    name: str
    steps: Tuple[PipelineStep, ...]
    env: Mapping[str, str] = field(default_factory=frozen_mapping)
    triggers: Optional[Triggers] = None

    @property
    def input_names(self) -> Tuple[str, ...]:
        return tuple(i.name for i in self.triggers.inputs) if self.triggers else ()

    def step(self, step_id: str) -> PipelineStep:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise KeyError(step_id)

    def resolve_event(self, event: RunEvent) -> Dict[str, str]:
        """Check that `event` triggers this pipeline and return the resolved inputs."""
        if self.triggers is None:
            return dict(event.inputs)

        if event.name not in self.triggers.event_names():
            raise ConfigError(
                f"Pipeline '{self.name}' is not triggered by '{event.name}' "
                f"(triggers: {', '.join(self.triggers.event_names()) or 'none'})"
            )

        if event.name == PUSH_EVENT:
            patterns = self.triggers.push_branches
            if patterns and not any(fnmatch.fnmatchcase(event.branch, p) for p in patterns):
                raise ConfigError(
                    f"Branch '{event.branch}' does not match push branches {list(patterns)}"
                )

        declared = {i.name: i for i in self.triggers.inputs}
        unknown = sorted(set(event.inputs) - set(declared))
        if unknown:
            raise ConfigError(f"Unknown input(s) for pipeline '{self.name}': {', '.join(unknown)}")

        resolved = {}
        for name, spec in declared.items():
            if event.name == DISPATCH_EVENT:
                resolved[name] = spec.coerce(event.inputs.get(name))
            else:
                # Inputs only arrive with manual dispatch; other events see defaults
                resolved[name] = spec.default if spec.default is not None else ""
        return resolved
