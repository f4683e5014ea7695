"""
ECS Task Definition documents

Purpose: immutable model of an ECS task definition as stored in a repository
(`task-definition.json`), rendering of new image references into it, and
registration of the result as a new task definition revision.

Main classes: TaskDefinitionDocument (frozen pydantic model, rendering
returns a new document) and TaskDefinitionRegistry (registers documents with
ECS and returns the new revision ARN).

Rendering never mutates the template: every change produces a new document,
and every registration produces a new revision, so earlier revisions stay
exactly as they were registered.
"""
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from botocore.exceptions import ClientError
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from ecs_pipeline.errors import ConfigError, DeploymentError

logger = logging.getLogger(__name__)

# Fields returned by DescribeTaskDefinition that RegisterTaskDefinition rejects
READ_ONLY_FIELDS = (
    "taskDefinitionArn",
    "revision",
    "status",
    "requiresAttributes",
    "compatibilities",
    "registeredAt",
    "registeredBy",
    "deregisteredAt",
)


class _TaskDefinitionModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="allow",
    )


class PortMapping(_TaskDefinitionModel):
    container_port: int
    host_port: Optional[int] = None
    protocol: str = "tcp"


class LogConfiguration(_TaskDefinitionModel):
    """Log sink for a container, e.g. awslogs with group, region and stream prefix."""
    log_driver: str
    options: Dict[str, str] = Field(default_factory=dict)


class EnvironmentVariable(_TaskDefinitionModel):
    name: str
    value: str

    @field_validator("value", mode="before")
    @classmethod
    def coerce_value(cls, v):
        if isinstance(v, bool):
            return "true" if v else "false"
        return str(v)


class ContainerDefinition(_TaskDefinitionModel):
    name: str
    image: str
    essential: Optional[bool] = None
    cpu: Optional[int] = None
    memory: Optional[int] = None
    port_mappings: Tuple[PortMapping, ...] = ()
    log_configuration: Optional[LogConfiguration] = None
    environment: Tuple[EnvironmentVariable, ...] = ()

    def env_dict(self) -> Dict[str, str]:
        return {var.name: var.value for var in self.environment}


class TaskDefinitionDocument(_TaskDefinitionModel):
    """Declarative snapshot of a deployable unit."""
    family: str
    container_definitions: Tuple[ContainerDefinition, ...] = Field(min_length=1)
    execution_role_arn: Optional[str] = None
    task_role_arn: Optional[str] = None
    network_mode: Optional[str] = None
    cpu: Optional[str] = None
    memory: Optional[str] = None
    requires_compatibilities: Tuple[str, ...] = ()

    @field_validator("cpu", "memory", mode="before")
    @classmethod
    def coerce_task_size(cls, v):
        # Task-level sizes are strings in the ECS API ("256", "0.5 vCPU")
        return None if v is None else str(v)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskDefinitionDocument":
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"Invalid task definition: {e}") from e

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "TaskDefinitionDocument":
        """Load a task definition JSON file."""
        path = Path(path)
        try:
            with open(path, 'r') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Could not read task definition {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"Task definition {path} must be a JSON object")
        return cls.from_dict(data)

    def container(self, name: str) -> ContainerDefinition:
        for container in self.container_definitions:
            if container.name == name:
                return container
        raise ConfigError(
            f"Invalid task definition: could not find container definition with matching name: {name}"
        )

    def _replace_container(self, updated: ContainerDefinition) -> "TaskDefinitionDocument":
        containers = tuple(
            updated if c.name == updated.name else c for c in self.container_definitions
        )
        return self.model_copy(update={"container_definitions": containers})

    def with_image(self, container_name: str, image: str) -> "TaskDefinitionDocument":
        """Return a copy with the named container's image replaced."""
        container = self.container(container_name)
        return self._replace_container(container.model_copy(update={"image": image}))

    def with_environment(self, container_name: str, variables: Dict[str, str]) -> "TaskDefinitionDocument":
        """Return a copy with environment variables merged into the named container.

        Existing variables keep their position; new ones are appended.
        """
        container = self.container(container_name)
        merged = container.env_dict()
        merged.update(variables)
        environment = tuple(EnvironmentVariable(name=k, value=v) for k, v in merged.items())
        return self._replace_container(container.model_copy(update={"environment": environment}))

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def to_register_kwargs(self) -> Dict[str, Any]:
        """Convert to RegisterTaskDefinition keyword arguments."""
        task_def = self.to_dict()
        for field_name in READ_ONLY_FIELDS:
            task_def.pop(field_name, None)
        # Empty lists are omitted rather than sent
        for key in [k for k, v in task_def.items() if v == []]:
            task_def.pop(key)
        return task_def

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    def write(self, path: Union[str, Path]) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.to_json())
        return path


def render_task_definition(template: Union[str, Path, TaskDefinitionDocument],
                           container_name: str,
                           image_uri: str,
                           environment: Optional[Dict[str, str]] = None) -> TaskDefinitionDocument:
    """Fill a new image (and optional environment variables) into a task definition."""
    if isinstance(template, TaskDefinitionDocument):
        document = template
    else:
        document = TaskDefinitionDocument.from_file(template)

    rendered = document.with_image(container_name, image_uri)
    if environment:
        rendered = rendered.with_environment(container_name, environment)

    logger.info(f"Rendered task definition {rendered.family}: {container_name} -> {image_uri}")
    return rendered


def parse_environment_lines(text: str) -> Dict[str, str]:
    """Parse `KEY=VALUE` lines (blank lines and `#` comments ignored)."""
    variables = {}
    for line_no, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            raise ConfigError(f"Invalid environment variable on line {line_no}: {raw!r} (expected KEY=VALUE)")
        name, value = line.split("=", 1)
        name = name.strip()
        if not name:
            raise ConfigError(f"Invalid environment variable on line {line_no}: empty name")
        variables[name] = value.strip()
    return variables


@dataclass(frozen=True)
class RegisteredTaskDefinition:
    arn: str
    family: str
    revision: int


class TaskDefinitionRegistry:
    """Registers task definition documents with ECS."""

    def __init__(self, ecs_client: Any):
        self.ecs_client = ecs_client
        self.task_definitions: Dict[str, List[str]] = {}

    def register(self, document: TaskDefinitionDocument) -> RegisteredTaskDefinition:
        """Register a document as a new revision. Returns the revision details."""
        try:
            response = self.ecs_client.register_task_definition(**document.to_register_kwargs())
        except ClientError as e:
            logger.error(f"Failed to register task definition {document.family}: {e}")
            raise DeploymentError(f"Failed to register task definition {document.family}: {e}") from e

        task_def = response['taskDefinition']
        registered = RegisteredTaskDefinition(
            arn=task_def['taskDefinitionArn'],
            family=task_def['family'],
            revision=task_def['revision'],
        )
        self.task_definitions.setdefault(registered.family, []).append(registered.arn)

        logger.info(f"Registered task definition: {registered.family}:{registered.revision}")
        return registered

    def describe(self, task_definition: str) -> TaskDefinitionDocument:
        """Fetch a registered revision as a document."""
        try:
            response = self.ecs_client.describe_task_definition(taskDefinition=task_definition)
        except ClientError as e:
            logger.error(f"Failed to describe task definition {task_definition}: {e}")
            raise DeploymentError(f"Failed to describe task definition {task_definition}: {e}") from e
        return TaskDefinitionDocument.from_dict(response['taskDefinition'])

    def get_task_definitions(self) -> Dict[str, List[str]]:
        """Get all task definition ARNs registered through this registry, per family."""
        return {family: list(arns) for family, arns in self.task_definitions.items()}
