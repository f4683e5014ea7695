"""ECR authentication and image push through the docker CLI."""
import base64
import logging
import re
import subprocess
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from ecs_pipeline.errors import AuthenticationError, PushError

logger = logging.getLogger(__name__)

REPOSITORY_PATTERN = re.compile(r"^[a-z0-9]+(?:[._-][a-z0-9]+)*(?:/[a-z0-9]+(?:[._-][a-z0-9]+)*)*$")
TAG_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")


@dataclass(frozen=True)
class Credentials:
    """Registry credentials obtained from ECR."""
    account_id: str
    region: str
    registry: str
    username: str
    password: str = field(repr=False)
    expires_at: Optional[datetime] = None


class DockerCLI:
    """Thin wrapper around the docker command line.

    In dry-run mode (aws-mock deployments) commands are logged and skipped.
    """

    def __init__(self, executable: str = "docker", dry_run: bool = False, cwd: Optional[str] = None):
        self.executable = executable
        self.dry_run = dry_run
        self.cwd = cwd

    def run(self, args: List[str], input: Optional[bytes] = None, quiet: bool = False) -> None:
        command = [self.executable, *args]
        if self.dry_run:
            logger.info(f"Skipping docker command in dry-run mode: {' '.join(args[:2])} ...")
            return

        logger.debug(f"Running: {' '.join(command[:3])} ...")
        subprocess.run(command, input=input, check=True, cwd=self.cwd, capture_output=quiet)

    def login(self, registry: str, username: str, password: str) -> None:
        self.run(
            ["login", "--username", username, "--password-stdin", registry],
            input=password.encode(),
            quiet=True,
        )

    def build(self, image: str, context: str, dockerfile: Optional[str] = None) -> None:
        args = ["build", "-t", image]
        if dockerfile:
            args += ["-f", dockerfile]
        self.run(args + [context])

    def tag(self, source: str, target: str) -> None:
        self.run(["tag", source, target])

    def push(self, image: str) -> None:
        self.run(["push", image])


def _registry_host(proxy_endpoint: str) -> str:
    return proxy_endpoint.split("//", 1)[-1].rstrip("/")


def login_to_ecr(sts_client: Any, ecr_client: Any, docker: DockerCLI, region: str) -> Credentials:
    """Verify the caller identity, fetch an ECR token and log docker in to the registry."""
    try:
        identity = sts_client.get_caller_identity()
        account_id = identity['Account']
        logger.info(f"Authenticated as {identity.get('Arn', account_id)}")

        token_response = ecr_client.get_authorization_token()
        token_data = token_response['authorizationData'][0]
    except (ClientError, BotoCoreError) as e:
        logger.error(f"AWS authentication failed in {region}: {e}")
        raise AuthenticationError(f"AWS authentication failed in {region}: {e}") from e
    except (KeyError, IndexError) as e:
        raise AuthenticationError(f"Unexpected ECR authorization response: missing {e}") from e

    try:
        token = base64.b64decode(token_data['authorizationToken']).decode('utf-8')
        username, password = token.split(':', 1)
    except (ValueError, KeyError) as e:
        raise AuthenticationError(f"Could not decode ECR authorization token: {e}") from e

    proxy_endpoint = token_data['proxyEndpoint']
    registry = _registry_host(proxy_endpoint)

    try:
        docker.login(proxy_endpoint, username, password)
    except (subprocess.CalledProcessError, OSError) as e:
        logger.error(f"Docker login to {registry} failed: {e}")
        raise AuthenticationError(f"Docker login to {registry} failed: {e}") from e

    logger.info(f"Logged in to ECR registry: {registry}")
    return Credentials(
        account_id=account_id,
        region=region,
        registry=registry,
        username=username,
        password=password,
        expires_at=token_data.get('expiresAt'),
    )


def image_uri(registry: str, repository: str, tag: str) -> str:
    return f"{registry}/{repository}:{tag}"


def push_image(docker: DockerCLI,
               registry: str,
               repository: str,
               tag: str,
               local_image: Optional[str] = None,
               build_context: Optional[str] = None,
               dockerfile: Optional[str] = None) -> str:
    """Build or tag an image and push it to the registry. Returns the pushed image URI."""
    if not REPOSITORY_PATTERN.match(repository):
        raise PushError(f"Invalid repository name: {repository!r}")
    if not TAG_PATTERN.match(tag):
        raise PushError(f"Invalid image tag: {tag!r}")
    if not registry:
        raise PushError("No registry given for image push")

    uri = image_uri(registry, repository, tag)

    try:
        if build_context:
            logger.info(f"Building Docker image with tag: {tag}")
            docker.build(uri, build_context, dockerfile)
        elif local_image:
            docker.tag(local_image, uri)

        logger.info(f"Pushing image to ECR repository: {repository}")
        docker.push(uri)
    except (subprocess.CalledProcessError, OSError) as e:
        logger.error(f"Error building/pushing Docker image {uri}: {e}")
        raise PushError(f"Failed to push {uri}: {e}") from e

    logger.info(f"Image pushed: {uri}")
    return uri
