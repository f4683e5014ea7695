"""
Pipeline loader.

Parses a YAML pipeline description into an immutable Pipeline and validates
it completely: actions, parameters, step ids and every `${...}` reference.
Nothing is executed and no AWS call is made; every problem is a ConfigError.
"""
import logging
import re
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Union

import yaml

from ecs_pipeline.errors import ConfigError
from ecs_pipeline.pipeline.actions import ActionRegistry, default_registry
from ecs_pipeline.pipeline.context import REFERENCE_PATTERN, iter_references, normalize_key
from ecs_pipeline.pipeline.models import (
    DISPATCH_EVENT,
    EVENT_FIELDS,
    INPUT_TYPES,
    PUSH_EVENT,
    RESERVED_NAMESPACES,
    Pipeline,
    PipelineStep,
    Triggers,
    WorkflowInput,
    frozen_mapping,
)

logger = logging.getLogger(__name__)

STEP_ID_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]*$")
STEP_KEYS = {"id", "name", "uses", "action", "with", "outputs"}


def load_pipeline(path: Union[str, Path], registry: Optional[ActionRegistry] = None) -> Pipeline:
    """Load and validate a pipeline description from a YAML file."""
    path = Path(path)
    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Could not read pipeline {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    pipeline = parse_pipeline(data, registry=registry, default_name=path.stem)
    logger.info(f"Loaded pipeline '{pipeline.name}' with {len(pipeline.steps)} steps from {path}")
    return pipeline


def parse_pipeline(data: Any, registry: Optional[ActionRegistry] = None,
                   default_name: str = "pipeline") -> Pipeline:
    """Build a Pipeline from already-parsed YAML data."""
    registry = registry or default_registry
    if not isinstance(data, dict):
        raise ConfigError("Pipeline description must be a mapping")

    env = _parse_env(data.get("env"), "env")
    raw_steps = data.get("steps")

    if raw_steps is None and "jobs" in data:
        job = _single_job(data["jobs"])
        env.update(_parse_env(job.get("env"), "job env"))
        raw_steps = job.get("steps")

    if not isinstance(raw_steps, list) or not raw_steps:
        raise ConfigError("Pipeline must declare a non-empty 'steps' list")

    # YAML 1.1 reads a bare `on` key as boolean True
    raw_triggers = data.get("on", data.get(True))
    triggers = _parse_triggers(raw_triggers) if raw_triggers is not None else None

    steps = [_parse_step(raw, index, registry) for index, raw in enumerate(raw_steps, start=1)]

    name = data.get("name") or default_name
    if not isinstance(name, str):
        raise ConfigError("Pipeline 'name' must be a string")

    pipeline = Pipeline(
        name=name,
        steps=tuple(steps),
        env=frozen_mapping(env),
        triggers=triggers,
    )
    _validate(pipeline)
    return pipeline


def _single_job(jobs: Any) -> Dict[str, Any]:
    if not isinstance(jobs, dict) or len(jobs) != 1:
        raise ConfigError("Pipeline 'jobs' must contain exactly one job")
    job = next(iter(jobs.values()))
    if not isinstance(job, dict):
        raise ConfigError("Job definition must be a mapping")
    return job


def _to_string(value: Any, where: str) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (str, int, float)):
        return str(value)
    raise ConfigError(f"{where} must be a scalar value, got {type(value).__name__}")


def _parse_env(raw: Any, where: str) -> Dict[str, str]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"'{where}' must be a mapping")
    return {str(k): _to_string(v, f"{where}.{k}") for k, v in raw.items()}


def _as_list(value: Any, where: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, list):
        return [_to_string(v, where) for v in value]
    raise ConfigError(f"{where} must be a string or a list")


def _parse_triggers(raw: Any) -> Triggers:
    if isinstance(raw, (str, list)):
        raw = {name: None for name in _as_list(raw, "on")}
    if not isinstance(raw, dict):
        raise ConfigError("'on' must be an event name, a list or a mapping")

    unsupported = sorted(str(k) for k in set(raw) - {PUSH_EVENT, DISPATCH_EVENT})
    if unsupported:
        raise ConfigError(f"Unsupported trigger(s): {', '.join(unsupported)}")

    push_branches = None
    if PUSH_EVENT in raw:
        push = raw[PUSH_EVENT] or {}
        if not isinstance(push, dict):
            raise ConfigError("'on.push' must be a mapping")
        push_branches = tuple(_as_list(push.get("branches"), "on.push.branches"))

    dispatch_inputs = None
    if DISPATCH_EVENT in raw:
        dispatch = raw[DISPATCH_EVENT] or {}
        if not isinstance(dispatch, dict):
            raise ConfigError("'on.workflow_dispatch' must be a mapping")
        inputs = dispatch.get("inputs") or {}
        if not isinstance(inputs, dict):
            raise ConfigError("'on.workflow_dispatch.inputs' must be a mapping")
        dispatch_inputs = tuple(_parse_input(name, spec) for name, spec in inputs.items())

    return Triggers(push_branches=push_branches, dispatch_inputs=dispatch_inputs)


def _parse_input(name: str, raw: Any) -> WorkflowInput:
    raw = raw or {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Input '{name}' must be a mapping")

    input_type = raw.get("type", "string")
    if input_type not in INPUT_TYPES:
        raise ConfigError(f"Input '{name}' has unsupported type '{input_type}'")

    options = tuple(_as_list(raw.get("options"), f"input {name} options"))
    if input_type == "choice" and not options:
        raise ConfigError(f"Choice input '{name}' must list its options")

    default = raw.get("default")
    spec = WorkflowInput(
        name=str(name),
        description=_to_string(raw.get("description"), f"input {name} description"),
        required=bool(raw.get("required", False)),
        default=None if default is None else _to_string(default, f"input {name} default"),
        type=input_type,
        options=options,
    )
    if spec.default is not None:
        # Validates the default against choice options and boolean values
        spec.coerce(spec.default)
    return spec


def _parse_step(raw: Any, index: int, registry: ActionRegistry) -> PipelineStep:
    where = f"Step {index}"
    if not isinstance(raw, dict):
        raise ConfigError(f"{where} must be a mapping")

    unknown = sorted(str(k) for k in set(raw) - STEP_KEYS)
    if unknown:
        raise ConfigError(f"{where} has unsupported key(s): {', '.join(unknown)}")

    action = raw.get("uses", raw.get("action"))
    if not action or not isinstance(action, str):
        raise ConfigError(f"{where} must name an action with 'uses'")
    spec = registry.get(action)

    step_id = raw.get("id") or f"step-{index}"
    if not isinstance(step_id, str) or not STEP_ID_PATTERN.match(step_id):
        raise ConfigError(f"{where} has invalid id {step_id!r}")
    if step_id in RESERVED_NAMESPACES:
        raise ConfigError(f"{where} id '{step_id}' is reserved")
    where = f"Step '{step_id}'"

    raw_with = raw.get("with") or {}
    if not isinstance(raw_with, dict):
        raise ConfigError(f"{where} 'with' must be a mapping")
    parameters = {
        normalize_key(str(k)): _to_string(v, f"{where} parameter '{k}'") for k, v in raw_with.items()
    }

    missing = [p for p in spec.required if not parameters.get(p)]
    if missing:
        raise ConfigError(f"{where} ({spec.name}) is missing required parameter(s): {', '.join(missing)}")
    unexpected = sorted(set(parameters) - set(spec.parameters))
    if unexpected:
        raise ConfigError(f"{where} ({spec.name}) got unknown parameter(s): {', '.join(unexpected)}")

    raw_outputs = raw.get("outputs")
    if raw_outputs is None:
        outputs = {key: key for key in spec.outputs}
    elif isinstance(raw_outputs, dict):
        outputs = {normalize_key(str(k)): normalize_key(_to_string(v, f"{where} output '{k}'"))
                   for k, v in raw_outputs.items()}
        bad = sorted(v for v in outputs.values() if v not in spec.outputs)
        if bad:
            raise ConfigError(
                f"{where} ({spec.name}) does not produce output(s) {', '.join(bad)}; "
                f"available: {', '.join(spec.outputs) or 'none'}"
            )
    else:
        raise ConfigError(f"{where} 'outputs' must be a mapping")

    name = raw.get("name") or step_id
    return PipelineStep(
        id=step_id,
        name=str(name),
        action=spec.name,
        parameters=frozen_mapping(parameters),
        outputs=frozen_mapping(outputs),
    )


def _check_malformed(value: str, where: str) -> None:
    if "${" in REFERENCE_PATTERN.sub("", value):
        raise ConfigError(f"{where} has a malformed reference in {value!r}; expected ${{step.output}}")


def _check_references(values: Iterable[str], where: str, env: Mapping[str, str],
                      inputs: Set[str], prior: Dict[str, Set[str]], later: Set[str],
                      allowed: Iterable[str]) -> None:
    allowed = set(allowed)
    for value in values:
        _check_malformed(value, where)
        for namespace, key in iter_references(value):
            if namespace in RESERVED_NAMESPACES and namespace not in allowed:
                raise ConfigError(f"{where} cannot refer to ${{{namespace}.{key}}}")
            if namespace == "env":
                if key not in env:
                    raise ConfigError(f"{where} refers to undefined env binding '{key}'")
            elif namespace == "inputs":
                if key not in inputs:
                    raise ConfigError(f"{where} refers to undeclared input '{key}'")
            elif namespace == "event":
                if key not in EVENT_FIELDS:
                    raise ConfigError(f"{where} refers to unknown event field '{key}'")
            elif namespace in prior:
                if key not in prior[namespace]:
                    raise ConfigError(
                        f"{where} refers to undeclared output '{key}' of step '{namespace}'"
                    )
            elif namespace in later:
                raise ConfigError(f"{where} refers to step '{namespace}' which runs later")
            else:
                raise ConfigError(f"{where} refers to unknown step '{namespace}'")


def _validate(pipeline: Pipeline) -> None:
    """Check step ids and that every reference resolves to something declared earlier."""
    inputs = set(pipeline.input_names)
    env = dict(pipeline.env)

    _check_references(env.values(), "env", {}, inputs, {}, set(), allowed=("inputs", "event"))

    all_ids = [step.id for step in pipeline.steps]
    duplicates = sorted({i for i in all_ids if all_ids.count(i) > 1})
    if duplicates:
        raise ConfigError(f"Duplicate step id(s): {', '.join(duplicates)}")

    prior: Dict[str, Set[str]] = {}
    later = set(all_ids)
    for step in pipeline.steps:
        _check_references(step.parameters.values(), f"Step '{step.id}'", env, inputs, prior, later,
                          allowed=RESERVED_NAMESPACES)
        later.discard(step.id)
        prior[step.id] = set(step.outputs)
