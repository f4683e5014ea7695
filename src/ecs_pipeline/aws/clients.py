"""AWS client management."""
import os
import boto3
import logging
from typing import Any, Dict, Optional, Tuple

from ecs_pipeline.config.settings import Settings, get_settings

logger = logging.getLogger(__name__)


class AWSClientManager:
    """Manager for AWS service clients, cached per service and region.

    `AWSClientManager()` returns the process-wide instance built from
    `get_settings()`. Passing explicit settings builds a separate manager
    with its own client cache.
    """
    _instance = None

    def __new__(cls, settings: Optional[Settings] = None):
        if settings is not None:
            instance = super(AWSClientManager, cls).__new__(cls)
            instance._initialize(settings)
            return instance
        if cls._instance is None:
            cls._instance = super(AWSClientManager, cls).__new__(cls)
            cls._instance._initialize(get_settings())
        return cls._instance

    def _initialize(self, settings: Settings):
        """Initialize the client manager with settings."""
        self.settings = settings
        self._clients: Dict[Tuple[str, str], Any] = {}

        self.region = self.settings.aws_region
        self.endpoint_url = self.settings.aws_endpoint_url
        self.mode = self.settings.deployment_mode

        logger.debug("Initializing AWSClientManager")
        logger.debug(f"  Mode: {self.mode}")
        logger.debug(f"  Region: {self.region}")
        logger.debug(f"  Endpoint: {self.endpoint_url}")

    def get_client(self, service_name: str, region: Optional[str] = None) -> Any:
        """Get or create an AWS service client."""
        region = region or self.region
        key = (service_name, region)
        if key in self._clients:
            return self._clients[key]

        client_kwargs = {
            'region_name': region
        }

        # Named profiles (SSO) take precedence over static credentials in production
        aws_profile = os.environ.get('AWS_PROFILE')
        if aws_profile and self.mode == 'aws-prod':
            try:
                session = boto3.Session(profile_name=aws_profile)
                client = session.client(service_name, region_name=region)
                self._clients[key] = client
                logger.debug(f"Created {service_name} client in {region} using profile: {aws_profile}")
                return client
            except Exception as e:
                logger.warning(f"Failed to create client with profile {aws_profile}: {e}")

        if self.settings.aws_access_key_id:
            client_kwargs['aws_access_key_id'] = self.settings.aws_access_key_id
        if self.settings.aws_secret_access_key:
            client_kwargs['aws_secret_access_key'] = self.settings.aws_secret_access_key

        if self.endpoint_url:
            client_kwargs['endpoint_url'] = self.endpoint_url

        try:
            client = boto3.client(service_name, **client_kwargs)
            self._clients[key] = client
            logger.debug(f"Created {service_name} client in {region}")
            return client
        except Exception as e:
            logger.error(f"Error creating {service_name} client: {str(e)}")
            raise

    @classmethod
    def reset(cls):
        """Drop the shared instance so the next use re-reads settings."""
        cls._instance = None
