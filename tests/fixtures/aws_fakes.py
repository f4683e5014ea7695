"""
Scripted stand-ins for the ECS, EC2, STS and ECR clients and the docker CLI.

moto does not model ECS deployments rolling over time, so polling and
endpoint discovery are exercised against these fakes instead.
"""
import base64
import subprocess
from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError

from ecs_pipeline.aws.registry import DockerCLI

ACCOUNT_ID = "123456789012"
REGION = "us-east-1"
REGISTRY = f"{ACCOUNT_ID}.dkr.ecr.{REGION}.amazonaws.com"


def client_error(code: str, operation: str, message: str = "") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message or code}}, operation)


class FakeClock:
    """Monotonic clock that only advances when sleep() is called."""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeSTSClient:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = 0

    def get_caller_identity(self):
        self.calls += 1
        if self.fail:
            raise client_error("InvalidClientTokenId", "GetCallerIdentity", "The security token is invalid")
        return {"Account": ACCOUNT_ID, "Arn": f"arn:aws:iam::{ACCOUNT_ID}:user/deployer"}


class FakeECRClient:
    def get_authorization_token(self):
        token = base64.b64encode(b"AWS:secret-password").decode()
        return {
            "authorizationData": [{
                "authorizationToken": token,
                "proxyEndpoint": f"https://{REGISTRY}",
            }]
        }


class FakeECSClient:
    """ECS service whose new deployment becomes stable after a number of describe calls.

    `stabilize_after=None` keeps the rollout in progress forever.
    """

    def __init__(self, cluster: str = "todo-app-cluster", service: str = "todo-app-service",
                 stabilize_after: Optional[int] = 1, service_status: str = "ACTIVE",
                 running_tasks: int = 1, task_visible_after: int = 0):
        self.cluster = cluster
        self.service = service
        self.stabilize_after = stabilize_after
        self.service_status = service_status
        self.running_tasks = running_tasks
        self.task_visible_after = task_visible_after
        self.desired_count = 1
        self.running_count = 1
        self.deployments: List[Dict[str, Any]] = [
            {"id": "ecs-svc/0", "status": "PRIMARY", "taskDefinition": "old", "rolloutState": "COMPLETED"}
        ]
        self.registered: List[Dict[str, Any]] = []
        self.revisions: Dict[str, int] = {}
        self.updates: List[Dict[str, Any]] = []
        self.calls: List[str] = []
        self._describes_since_update = 0
        self._list_tasks_calls = 0

    def _description(self) -> Dict[str, Any]:
        return {
            "serviceName": self.service,
            "clusterArn": f"arn:aws:ecs:{REGION}:{ACCOUNT_ID}:cluster/{self.cluster}",
            "status": self.service_status,
            "desiredCount": self.desired_count,
            "runningCount": self.running_count,
            "deployments": [dict(d) for d in self.deployments],
        }

    def describe_services(self, cluster, services):
        self.calls.append("describe_services")
        if cluster != self.cluster or services != [self.service]:
            return {"services": [], "failures": [{"arn": services[0], "reason": "MISSING"}]}

        if self.updates and len(self.deployments) > 1:
            self._describes_since_update += 1
            if self.stabilize_after is not None and self._describes_since_update > self.stabilize_after:
                self.deployments = [dict(self.deployments[0], rolloutState="COMPLETED")]
                self.running_count = self.desired_count
        return {"services": [self._description()], "failures": []}

    def register_task_definition(self, **kwargs):
        self.calls.append("register_task_definition")
        family = kwargs["family"]
        revision = self.revisions.get(family, 0) + 1
        self.revisions[family] = revision
        self.registered.append(kwargs)
        return {
            "taskDefinition": {
                **kwargs,
                "taskDefinitionArn": f"arn:aws:ecs:{REGION}:{ACCOUNT_ID}:task-definition/{family}:{revision}",
                "revision": revision,
                "status": "ACTIVE",
            }
        }

    def update_service(self, cluster, service, taskDefinition, forceNewDeployment=False):
        self.calls.append("update_service")
        self.updates.append({
            "cluster": cluster,
            "service": service,
            "taskDefinition": taskDefinition,
            "forceNewDeployment": forceNewDeployment,
        })
        old = [dict(d, status="ACTIVE") for d in self.deployments]
        self.deployments = [
            {"id": f"ecs-svc/{len(self.updates)}", "status": "PRIMARY",
             "taskDefinition": taskDefinition, "rolloutState": "IN_PROGRESS"}
        ] + old
        self.running_count = 0
        self._describes_since_update = 0
        return {"service": self._description()}

    def list_tasks(self, cluster, serviceName, desiredStatus="RUNNING"):
        self.calls.append("list_tasks")
        self._list_tasks_calls += 1
        if self._list_tasks_calls <= self.task_visible_after:
            return {"taskArns": []}
        arns = [f"arn:aws:ecs:{REGION}:{ACCOUNT_ID}:task/{cluster}/task{i}" for i in range(self.running_tasks)]
        return {"taskArns": arns}

    def describe_tasks(self, cluster, tasks):
        self.calls.append("describe_tasks")
        return {
            "tasks": [{
                "taskArn": tasks[0],
                "attachments": [{
                    "type": "ElasticNetworkInterface",
                    "status": "ATTACHED",
                    "details": [
                        {"name": "subnetId", "value": "subnet-12345"},
                        {"name": "networkInterfaceId", "value": "eni-0abc123"},
                    ],
                }],
            }]
        }


class FakeEC2Client:
    def __init__(self, public_ip: Optional[str] = "54.12.34.56"):
        self.public_ip = public_ip
        self.requests: List[List[str]] = []

    def describe_network_interfaces(self, NetworkInterfaceIds):
        self.requests.append(NetworkInterfaceIds)
        interface = {"NetworkInterfaceId": NetworkInterfaceIds[0]}
        if self.public_ip:
            interface["Association"] = {"PublicIp": self.public_ip}
        return {"NetworkInterfaces": [interface]}


class RecordingDocker(DockerCLI):
    """Records docker commands instead of running them; fails on a chosen subcommand."""

    def __init__(self, fail_on: Optional[str] = None):
        super().__init__(dry_run=False)
        self.fail_on = fail_on
        self.commands: List[List[str]] = []

    def run(self, args, input=None, quiet=False):
        self.commands.append(list(args))
        if self.fail_on and args[0] == self.fail_on:
            raise subprocess.CalledProcessError(1, [self.executable, *args])

    def subcommands(self) -> List[str]:
        return [command[0] for command in self.commands]


class FakeAWS:
    """Bundle of fake clients served through a CloudAdapter client factory."""

    def __init__(self, ecs: Optional[FakeECSClient] = None, ec2: Optional[FakeEC2Client] = None,
                 sts: Optional[FakeSTSClient] = None, ecr: Optional[FakeECRClient] = None):
        self.clients = {
            "ecs": ecs or FakeECSClient(),
            "ec2": ec2 or FakeEC2Client(),
            "sts": sts or FakeSTSClient(),
            "ecr": ecr or FakeECRClient(),
        }
        self.regions: List[str] = []

    def __call__(self, service_name: str, region: Optional[str] = None):
        self.regions.append(region)
        return self.clients[service_name]

    @property
    def ecs(self) -> FakeECSClient:
        return self.clients["ecs"]

    @property
    def ec2(self) -> FakeEC2Client:
        return self.clients["ec2"]

    @property
    def sts(self) -> FakeSTSClient:
        return self.clients["sts"]
