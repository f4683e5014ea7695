"""
Deployment status checking for ECS services.

Polls service deployments until they stabilize and resolves the public
address of a service's running task (Fargate tasks get a dynamic public IP
on their network interface).
"""
import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

from botocore.exceptions import BotoCoreError, ClientError

from ecs_pipeline.errors import DeploymentError, DeploymentTimeout, EndpointNotFound
from ecs_pipeline.utils.decorators import retry

logger = logging.getLogger(__name__)


class DeploymentStatus(str, Enum):
    """Status of a service deployment as reported by ECS"""
    PRIMARY = "PRIMARY"     # Most recent deployment
    ACTIVE = "ACTIVE"       # Previous deployment still running tasks
    DRAINING = "DRAINING"   # Previous deployment being stopped
    UNKNOWN = "UNKNOWN"     # Service, cluster or deployment not found

    @classmethod
    def parse(cls, value: Optional[str]) -> "DeploymentStatus":
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


class RunState(str, Enum):
    """Lifecycle of a pipeline run or a deployment"""
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    STABLE = "STABLE"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"

    @property
    def is_terminal(self) -> bool:
        return self in (RunState.STABLE, RunState.FAILED, RunState.TIMED_OUT)


class StatusReporter:
    """Polls ECS service state and discovers task endpoints."""

    def __init__(self,
                 ecs_client: Any,
                 ec2_client: Any,
                 endpoint_max_attempts: int = 10,
                 endpoint_retry_delay: float = 30,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.ecs_client = ecs_client
        self.ec2_client = ec2_client
        self.endpoint_max_attempts = endpoint_max_attempts
        self.endpoint_retry_delay = endpoint_retry_delay
        self.sleep = sleep
        self.clock = clock

    def describe_service(self, cluster: str, service: str) -> Dict[str, Any]:
        """Describe a single service. Raises DeploymentError if it does not exist."""
        try:
            response = self.ecs_client.describe_services(cluster=cluster, services=[service])
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to describe service {service} in {cluster}: {e}")
            raise DeploymentError(f"Failed to describe service {service} in {cluster}: {e}") from e

        services = response.get('services', [])
        if not services:
            reasons = ", ".join(f.get('reason', 'UNKNOWN') for f in response.get('failures', []))
            raise DeploymentError(f"Service {service} not found in cluster {cluster} ({reasons or 'MISSING'})")
        return services[0]

    def poll_deployment_status(self, cluster: str, service: str) -> DeploymentStatus:
        """Status of the service's most recent deployment."""
        try:
            description = self.describe_service(cluster, service)
        except DeploymentError as e:
            logger.warning(f"Could not read deployment status: {e}")
            return DeploymentStatus.UNKNOWN

        deployments = description.get('deployments', [])
        if not deployments:
            return DeploymentStatus.UNKNOWN
        status = DeploymentStatus.parse(deployments[0].get('status'))
        logger.info(f"Deployment status: {status.value}")
        return status

    @staticmethod
    def is_stable(description: Dict[str, Any]) -> bool:
        """A service is stable when one deployment remains and it runs the desired count."""
        deployments = description.get('deployments', [])
        return (
            description.get('status') == 'ACTIVE'
            and len(deployments) == 1
            and description.get('runningCount') == description.get('desiredCount')
        )

    def wait_for_stable(self, cluster: str, service: str, timeout: float, interval: float = 15) -> Dict[str, Any]:
        """Block until the service is stable. Raises DeploymentTimeout after `timeout` seconds."""
        logger.info(f"⏳ Waiting up to {timeout:.0f}s for service {service} to stabilize")
        deadline = self.clock() + timeout

        while True:
            description = self.describe_service(cluster, service)
            deployments = description.get('deployments', [])

            primary = next((d for d in deployments if d.get('status') == 'PRIMARY'), None)
            if primary and primary.get('rolloutState') == 'FAILED':
                reason = primary.get('rolloutStateReason', 'no reason given')
                raise DeploymentError(f"Deployment of {service} failed: {reason}")

            if self.is_stable(description):
                logger.info(f"✅ Service {service} is stable")
                return description

            remaining = deadline - self.clock()
            if remaining <= 0:
                raise DeploymentTimeout(cluster, service, timeout)

            logger.info(
                f"Service {service}: {description.get('runningCount', 0)}/{description.get('desiredCount', 0)} "
                f"tasks running, {len(deployments)} deployment(s) - waiting..."
            )
            self.sleep(min(interval, remaining))

    def resolve_public_endpoint(self, cluster: str, service: str, port: int, scheme: str = "http") -> str:
        """Find the public URL of the service's running task, retrying a bounded number of times."""
        lookup = retry(
            max_attempts=self.endpoint_max_attempts,
            delay=self.endpoint_retry_delay,
            backoff=1.0,
            exceptions=(EndpointNotFound,),
            logger_name=__name__,
            sleep=self.sleep,
        )(self._lookup_public_ip)

        public_ip = lookup(cluster, service)
        url = f"{scheme}://{public_ip}:{port}"
        logger.info(f"🚀 Application is available at: {url}")
        return url

    def _lookup_public_ip(self, cluster: str, service: str) -> str:
        try:
            task_arns = self.ecs_client.list_tasks(
                cluster=cluster,
                serviceName=service,
                desiredStatus='RUNNING'
            ).get('taskArns', [])
            if not task_arns:
                raise EndpointNotFound(f"No running task for service {service}")
            task_arn = task_arns[0]
            logger.info(f"📋 Task ARN: {task_arn}")

            tasks = self.ecs_client.describe_tasks(cluster=cluster, tasks=[task_arn]).get('tasks', [])
            interface_id = self._network_interface_id(tasks[0] if tasks else {})
            if not interface_id:
                raise EndpointNotFound(f"Task {task_arn} has no network interface attached yet")
            logger.info(f"🌐 Network Interface: {interface_id}")

            interfaces = self.ec2_client.describe_network_interfaces(
                NetworkInterfaceIds=[interface_id]
            ).get('NetworkInterfaces', [])
        except (ClientError, BotoCoreError) as e:
            raise EndpointNotFound(f"Endpoint lookup for {service} failed: {e}") from e

        public_ip = interfaces[0].get('Association', {}).get('PublicIp') if interfaces else None
        if not public_ip:
            raise EndpointNotFound(f"No public IP assigned to {interface_id}")
        logger.info(f"🌍 Public IP: {public_ip}")
        return public_ip

    @staticmethod
    def _network_interface_id(task: Dict[str, Any]) -> Optional[str]:
        for attachment in task.get('attachments', []):
            if attachment.get('type', 'ElasticNetworkInterface') != 'ElasticNetworkInterface':
                continue
            for detail in attachment.get('details', []):
                if detail.get('name') == 'networkInterfaceId':
                    return detail.get('value')
        return None
