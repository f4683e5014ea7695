"""
Pipeline actions.

Each action declares the parameters it accepts and the outputs it produces,
so a pipeline can be fully validated before anything runs. Actions are
registered under a short name plus the `aws-actions/...` names used by the
GitHub workflow they mirror (a trailing `@version` is ignored).
"""
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Tuple

from ecs_pipeline.aws.status import DeploymentStatus
from ecs_pipeline.aws.task_definitions import TaskDefinitionDocument, parse_environment_lines
from ecs_pipeline.errors import ConfigError, PushError
from ecs_pipeline.pipeline.context import RunContext

logger = logging.getLogger(__name__)

Handler = Callable[[Any, Dict[str, str], RunContext], Dict[str, str]]


@dataclass(frozen=True)
class ActionSpec:
    name: str
    handler: Handler
    required: Tuple[str, ...] = ()
    optional: Tuple[str, ...] = ()
    outputs: Tuple[str, ...] = ()
    aliases: Tuple[str, ...] = ()
    description: str = ""

    @property
    def parameters(self) -> Tuple[str, ...]:
        return self.required + self.optional


class ActionRegistry:
    """Lookup of action identifiers to their specs."""

    def __init__(self):
        self._actions: Dict[str, ActionSpec] = {}
        self._aliases: Dict[str, str] = {}

    def register(self, spec: ActionSpec) -> ActionSpec:
        if spec.name in self._actions:
            raise ValueError(f"Action already registered: {spec.name}")
        self._actions[spec.name] = spec
        for alias in spec.aliases:
            self._aliases[alias] = spec.name
        return spec

    def action(self, name: str, required: Tuple[str, ...] = (), optional: Tuple[str, ...] = (),
               outputs: Tuple[str, ...] = (), aliases: Tuple[str, ...] = ()):
        """Decorator registering a handler function as an action."""
        def decorator(func: Handler) -> Handler:
            self.register(ActionSpec(
                name=name,
                handler=func,
                required=required,
                optional=optional,
                outputs=outputs,
                aliases=aliases,
                description=(func.__doc__ or "").strip().splitlines()[0] if func.__doc__ else "",
            ))
            return func
        return decorator

    def get(self, identifier: str) -> ActionSpec:
        name = identifier.split("@", 1)[0].strip()
        name = self._aliases.get(name, name)
        try:
            return self._actions[name]
        except KeyError:
            raise ConfigError(
                f"Unknown action '{identifier}'. Available: {', '.join(sorted(self._actions))}"
            ) from None

    def names(self) -> List[str]:
        return sorted(self._actions)

    def __contains__(self, identifier: str) -> bool:
        try:
            self.get(identifier)
            return True
        except ConfigError:
            return False


def parse_bool(name: str, value: str, default: bool = False) -> bool:
    if value is None or value == "":
        return default
    lowered = value.strip().lower()
    if lowered in ("true", "yes", "1"):
        return True
    if lowered in ("false", "no", "0"):
        return False
    raise ConfigError(f"Parameter '{name}' must be true or false, got '{value}'")


def parse_number(name: str, value: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"Parameter '{name}' must be a number, got '{value}'") from None
    if number <= 0:
        raise ConfigError(f"Parameter '{name}' must be positive, got '{value}'")
    return number


default_registry = ActionRegistry()


@default_registry.action("checkout", aliases=("actions/checkout",))
def checkout(adapter, params, context):
    """Use the current working tree as the build source."""
    logger.info("Using current working tree as build source")
    return {}


@default_registry.action(
    "authenticate",
    optional=("region", "aws_region", "aws_access_key_id", "aws_secret_access_key"),
    outputs=("registry", "account_id"),
    aliases=("aws-actions/configure-aws-credentials", "aws-actions/amazon-ecr-login"),
)
def authenticate(adapter, params, context):
    """Verify AWS credentials and log in to the ECR registry."""
    region = params.get("region") or params.get("aws_region") or None
    credentials = adapter.authenticate(
        region,
        access_key_id=params.get("aws_access_key_id") or None,
        secret_access_key=params.get("aws_secret_access_key") or None,
    )
    return {"registry": credentials.registry, "account_id": credentials.account_id}


@default_registry.action(
    "push-image",
    required=("repository", "tag"),
    optional=("registry", "local_image", "build_context", "dockerfile"),
    outputs=("image",),
)
def push_image(adapter, params, context):
    """Build or tag an image and push it to ECR."""
    registry = params.get("registry")
    if not registry:
        credentials = getattr(adapter, "credentials", None)
        if credentials is None:
            raise PushError("No registry given and no earlier authenticate step")
        registry = credentials.registry

    image = adapter.push_image(
        registry,
        params["repository"],
        params["tag"],
        local_image=params.get("local_image") or None,
        build_context=params.get("build_context") or None,
        dockerfile=params.get("dockerfile") or None,
    )
    return {"image": image}


@default_registry.action(
    "render-task-definition",
    required=("task_definition", "container_name", "image"),
    optional=("environment_variables",),
    outputs=("task_definition",),
    aliases=("aws-actions/amazon-ecs-render-task-definition",),
)
def render_task_definition(adapter, params, context):
    """Fill a new image into a task definition and write it to the run's work directory."""
    environment = parse_environment_lines(params.get("environment_variables", ""))
    document = adapter.render_task_definition(
        params["task_definition"],
        params["container_name"],
        params["image"],
        environment or None,
    )
    path = document.write(context.workdir / f"{context.current_step or 'task-definition'}.json")
    return {"task_definition": str(path)}


@default_registry.action(
    "deploy-task-definition",
    required=("task_definition", "service", "cluster"),
    optional=("wait_for_service_stability", "wait_for_minutes", "force_new_deployment"),
    outputs=("task_definition_arn", "revision", "status"),
    aliases=("aws-actions/amazon-ecs-deploy-task-definition",),
)
def deploy_task_definition(adapter, params, context):
    """Register the task definition and update the service, optionally waiting for stability."""
    document = TaskDefinitionDocument.from_file(params["task_definition"])
    wait = parse_bool("wait_for_service_stability", params.get("wait_for_service_stability"))
    timeout = None
    if params.get("wait_for_minutes"):
        timeout = parse_number("wait_for_minutes", params["wait_for_minutes"]) * 60

    result = adapter.deploy(
        document,
        params["service"],
        params["cluster"],
        wait_for_stable=wait,
        timeout=timeout,
        force_new_deployment=parse_bool("force_new_deployment", params.get("force_new_deployment")),
    )
    return {
        "task_definition_arn": result.task_definition_arn,
        "revision": str(result.revision),
        "status": result.state.value,
    }


@default_registry.action(
    "verify-deployment",
    required=("cluster", "service"),
    outputs=("status",),
)
def verify_deployment(adapter, params, context):
    """Report the status of the service's latest deployment."""
    status = adapter.poll_deployment_status(params["cluster"], params["service"])
    if status == DeploymentStatus.PRIMARY:
        logger.info("✅ Deployment successful!")
    else:
        logger.warning(f"❌ Deployment status is {status.value}. Check the ECS console for details.")
    return {"status": status.value}


@default_registry.action(
    "resolve-endpoint",
    required=("cluster", "service"),
    optional=("port",),
    outputs=("url",),
)
def resolve_endpoint(adapter, params, context):
    """Find the public URL of the service's running task."""
    port_value = params.get("port") or "80"
    try:
        port = int(port_value)
    except ValueError:
        raise ConfigError(f"Parameter 'port' must be an integer, got '{port_value}'") from None
    url = adapter.resolve_public_endpoint(params["cluster"], params["service"], port)
    return {"url": url}
