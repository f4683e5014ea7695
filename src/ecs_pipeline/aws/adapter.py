"""Cloud adapter: the AWS operations a deployment pipeline is built from."""
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

from botocore.exceptions import ClientError

from ecs_pipeline.aws.clients import AWSClientManager
from ecs_pipeline.aws.registry import Credentials, DockerCLI, login_to_ecr, push_image
from ecs_pipeline.aws.status import DeploymentStatus, RunState, StatusReporter
from ecs_pipeline.aws.task_definitions import (
    TaskDefinitionDocument,
    TaskDefinitionRegistry,
    render_task_definition,
)
from ecs_pipeline.config.settings import Settings, get_settings
from ecs_pipeline.errors import AuthenticationError, DeploymentError
from ecs_pipeline.utils.decorators import log_operation

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str, Optional[str]], Any]


@dataclass(frozen=True)
class DeploymentResult:
    task_definition_arn: str
    family: str
    revision: int
    service: str
    cluster: str
    state: RunState
    deployment_status: DeploymentStatus


class CloudAdapter:
    """Wraps registry login, image push, task definition rendering and service deployment."""

    def __init__(self,
                 settings: Optional[Settings] = None,
                 client_factory: Optional[ClientFactory] = None,
                 docker: Optional[DockerCLI] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.settings = settings or get_settings()
        self._owns_clients = client_factory is None
        self._client_factory = client_factory or AWSClientManager(self.settings).get_client
        self.docker = docker or DockerCLI(dry_run=self.settings.is_mock)
        self.region = self.settings.aws_region
        self.sleep = sleep
        self.clock = clock
        self.credentials: Optional[Credentials] = None

    def _client(self, service_name: str) -> Any:
        return self._client_factory(service_name, self.region)

    def status_reporter(self) -> StatusReporter:
        return StatusReporter(
            self._client('ecs'),
            self._client('ec2'),
            endpoint_max_attempts=self.settings.endpoint_max_attempts,
            endpoint_retry_delay=self.settings.endpoint_retry_delay_seconds,
            sleep=self.sleep,
            clock=self.clock,
        )

    def use_credentials(self, access_key_id: str, secret_access_key: str) -> None:
        """Switch to static access keys for every client created from now on."""
        if not access_key_id or not secret_access_key:
            raise AuthenticationError("Both an access key id and a secret access key are required")
        self.settings = self.settings.model_copy(update={
            'aws_access_key_id': access_key_id,
            'aws_secret_access_key': secret_access_key,
        })
        if self._owns_clients:
            self._client_factory = AWSClientManager(self.settings).get_client
        logger.info(f"Using static credentials for access key ...{access_key_id[-4:]}")

    @log_operation("Authenticating with AWS and ECR", logger_name=__name__)
    def authenticate(self,
                     region: Optional[str] = None,
                     access_key_id: Optional[str] = None,
                     secret_access_key: Optional[str] = None) -> Credentials:
        """Verify AWS credentials for `region` and log docker in to its ECR registry.

        Explicit access keys, when given, replace the configured credentials.
        """
        if access_key_id or secret_access_key:
            self.use_credentials(access_key_id, secret_access_key)
        if region:
            self.region = region
        self.credentials = login_to_ecr(self._client('sts'), self._client('ecr'), self.docker, self.region)
        return self.credentials

    @log_operation("Building, tagging and pushing image", logger_name=__name__)
    def push_image(self,
                   registry: str,
                   repository: str,
                   tag: str,
                   local_image: Optional[str] = None,
                   build_context: Optional[str] = None,
                   dockerfile: Optional[str] = None) -> str:
        """Push `<registry>/<repository>:<tag>`. Returns the image URI."""
        return push_image(self.docker, registry, repository, tag,
                          local_image=local_image, build_context=build_context, dockerfile=dockerfile)

    def render_task_definition(self,
                               template: Union[str, Path, TaskDefinitionDocument],
                               container_name: str,
                               image_uri: str,
                               environment: Optional[Dict[str, str]] = None) -> TaskDefinitionDocument:
        """Produce a new task definition document with the container's image replaced."""
        return render_task_definition(template, container_name, image_uri, environment)

    @log_operation("Deploying task definition to ECS service", logger_name=__name__)
    def deploy(self,
               task_def: TaskDefinitionDocument,
               service: str,
               cluster: str,
               wait_for_stable: bool,
               timeout: Optional[float] = None,
               force_new_deployment: bool = False) -> DeploymentResult:
        """Register a new revision and roll the service onto it."""
        reporter = self.status_reporter()
        ecs_client = self._client('ecs')

        description = reporter.describe_service(cluster, service)
        if description.get('status') != 'ACTIVE':
            raise DeploymentError(f"Service {service} is {description.get('status')}, expected ACTIVE")

        registered = TaskDefinitionRegistry(ecs_client).register(task_def)

        try:
            response = ecs_client.update_service(
                cluster=cluster,
                service=service,
                taskDefinition=registered.arn,
                forceNewDeployment=force_new_deployment
            )
        except ClientError as e:
            logger.error(f"Failed to update service {service}: {e}")
            raise DeploymentError(f"Failed to update service {service}: {e}") from e

        logger.info(f"Service {service} updated to {registered.family}:{registered.revision}")
        description = response.get('service', {})
        state = RunState.RUNNING

        if wait_for_stable:
            timeout = timeout if timeout is not None else self.settings.stability_timeout_seconds
            description = reporter.wait_for_stable(
                cluster, service, timeout, self.settings.stability_poll_interval_seconds
            )
            state = RunState.STABLE

        deployments = description.get('deployments', [])
        deployment_status = DeploymentStatus.parse(deployments[0].get('status') if deployments else None)

        return DeploymentResult(
            task_definition_arn=registered.arn,
            family=registered.family,
            revision=registered.revision,
            service=service,
            cluster=cluster,
            state=state,
            deployment_status=deployment_status,
        )

    def poll_deployment_status(self, cluster: str, service: str) -> DeploymentStatus:
        return self.status_reporter().poll_deployment_status(cluster, service)

    def resolve_public_endpoint(self, cluster: str, service: str, port: int) -> str:
        return self.status_reporter().resolve_public_endpoint(cluster, service, port)
