"""Run context: the explicit state shared by the steps of one pipeline run."""
import logging
import re
from pathlib import Path
from typing import Dict, Iterator, Mapping, Optional, Tuple

from ecs_pipeline.errors import ConfigError
from ecs_pipeline.pipeline.models import RESERVED_NAMESPACES, RunEvent

logger = logging.getLogger(__name__)

# ${namespace.key}, where namespace is a step id or env / inputs / event
REFERENCE_PATTERN = re.compile(r"\$\{\s*([A-Za-z_][A-Za-z0-9_-]*)\.([A-Za-z_][A-Za-z0-9_-]*)\s*\}")


def normalize_key(key: str) -> str:
    """Parameter and output keys accept kebab-case: `task-definition` == `task_definition`."""
    return key.replace("-", "_")


def reference_key(namespace: str, key: str) -> str:
    # Env bindings and inputs are matched by their declared names
    if namespace in RESERVED_NAMESPACES:
        return key
    return normalize_key(key)


def iter_references(value: str) -> Iterator[Tuple[str, str]]:
    for match in REFERENCE_PATTERN.finditer(value):
        yield match.group(1), reference_key(match.group(1), match.group(2))


class RunContext:
    """Outputs and bindings visible to steps during a single run."""

    def __init__(self,
                 env: Mapping[str, str],
                 inputs: Mapping[str, str],
                 event: RunEvent,
                 workdir: Path,
                 run_id: Optional[str] = None):
        self.run_id = run_id
        self.inputs = dict(inputs)
        self.event = event
        self.workdir = Path(workdir)
        self.outputs: Dict[str, Dict[str, str]] = {}
        self.current_step: Optional[str] = None
        self.env: Dict[str, str] = {}
        # Env values may refer to inputs and event fields only
        for name, value in env.items():
            self.env[name] = self.resolve(value)

    def lookup(self, namespace: str, key: str) -> str:
        if namespace == "env":
            source = self.env
        elif namespace == "inputs":
            source = self.inputs
        elif namespace == "event":
            source = self.event.fields()
        else:
            source = self.outputs.get(namespace)
            if source is None:
                raise ConfigError(f"Reference to step '{namespace}' which has not run")

        if key not in source:
            raise ConfigError(f"Unresolved reference ${{{namespace}.{key}}}")
        return source[key]

    def resolve(self, value: str) -> str:
        """Substitute every ${namespace.key} reference in `value`."""
        return REFERENCE_PATTERN.sub(
            lambda m: self.lookup(m.group(1), reference_key(m.group(1), m.group(2))), value
        )

    def resolve_parameters(self, parameters: Mapping[str, str]) -> Dict[str, str]:
        return {name: self.resolve(value) for name, value in parameters.items()}

    def record_outputs(self, step_id: str, outputs: Mapping[str, str]) -> None:
        self.outputs[step_id] = {normalize_key(k): v for k, v in outputs.items()}
        for key, value in outputs.items():
            logger.debug(f"Output {step_id}.{key} = {value}")

