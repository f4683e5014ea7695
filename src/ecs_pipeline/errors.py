"""Exceptions raised while loading and running deployment pipelines."""


class PipelineError(Exception):
    """Base class for pipeline failures."""

    # Fatal errors halt the run; non-fatal ones are reported as warnings
    fatal = True


class ConfigError(PipelineError):
    """Malformed pipeline description, task definition or run event."""
    pass


class AuthenticationError(PipelineError):
    """AWS credentials or registry login could not be established."""
    pass


class PushError(PipelineError):
    """Image build, tag or push failed."""
    pass


class DeploymentError(PipelineError):
    """Service update failed or the service cannot be deployed to."""
    pass


class DeploymentTimeout(DeploymentError):
    """Service did not reach a stable state before the timeout.

    The deployment may still be progressing in ECS and is left for manual
    inspection.
    """

    def __init__(self, cluster: str, service: str, timeout: float):
        self.cluster = cluster
        self.service = service
        self.timeout = timeout
        super().__init__(
            f"Service {service} in cluster {cluster} did not stabilize within {timeout:.0f}s"
        )


class EndpointNotFound(PipelineError):
    """No public address could be resolved for the service's running task."""

    fatal = False
