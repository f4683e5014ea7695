# src/ecs_pipeline/config/settings.py
from typing import Optional
from functools import lru_cache

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


VALID_DEPLOYMENT_MODES = ["aws-mock", "aws-prod"]
MOCK_ENDPOINT_URL = "http://localhost:5000"


class Settings(BaseSettings):
    """
    Single source of truth for pipeline runner settings.

    Configuration precedence:
    1. Environment variables (highest priority)
    2. .env file (if exists)
    3. Default values in this class (lowest priority)

    Usage:
        from ecs_pipeline.config.settings import get_settings
        settings = get_settings()
        timeout = settings.stability_timeout_seconds
    """

    # Application Settings
    app_name: str = Field(
        default="ecs-pipeline",
        description="Application name, used in log output and resource tags"
    )

    # Deployment Mode
    deployment_mode: str = Field(
        default="aws-prod",
        description="Deployment mode: aws-mock (moto server, docker skipped) or aws-prod"
    )

    # AWS Core Settings
    aws_region: str = Field(
        default="us-east-1",
        alias="AWS_DEFAULT_REGION"
    )

    aws_access_key_id: Optional[str] = Field(
        default=None,
        alias="AWS_ACCESS_KEY_ID"
    )

    aws_secret_access_key: Optional[str] = Field(
        default=None,
        alias="AWS_SECRET_ACCESS_KEY"
    )

    aws_endpoint_url: Optional[str] = Field(
        default=None,
        alias="AWS_ENDPOINT_URL",
        validate_default=True
    )

    # Stability polling
    stability_timeout_seconds: float = Field(
        default=1800,
        gt=0,
        description="Upper bound on the wait for a service to stabilize"
    )

    stability_poll_interval_seconds: float = Field(
        default=15,
        gt=0,
        description="Delay between service stability checks"
    )

    # Endpoint discovery
    endpoint_max_attempts: int = Field(
        default=10,
        ge=1,
        description="Attempts made to resolve a public endpoint before giving up"
    )

    endpoint_retry_delay_seconds: float = Field(
        default=30,
        ge=0,
        description="Delay between endpoint resolution attempts"
    )

    # Local state
    state_file: str = Field(
        default=".pipeline_runs.json",
        description="JSON file that records pipeline run history"
    )

    work_dir: Optional[str] = Field(
        default=None,
        description="Directory for rendered task definitions (temporary directory if unset)"
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level"
    )

    @field_validator('deployment_mode')
    @classmethod
    def validate_deployment_mode(cls, v):
        """Validate deployment mode is one of the allowed values."""
        if v not in VALID_DEPLOYMENT_MODES:
            raise ValueError(f"Invalid deployment_mode: {v}. Must be one of {VALID_DEPLOYMENT_MODES}")
        return v

    @field_validator('aws_endpoint_url')
    @classmethod
    def set_endpoint_url_based_on_mode(cls, v, info: ValidationInfo):
        """Point clients at the local moto server in aws-mock mode unless overridden."""
        if v is None and info.data.get('deployment_mode') == "aws-mock":
            return MOCK_ENDPOINT_URL
        return v

    @field_validator('log_level')
    @classmethod
    def normalize_log_level(cls, v):
        return v.upper()

    @property
    def is_mock(self) -> bool:
        return self.deployment_mode == "aws-mock"

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    This ensures we only create one Settings instance per process.
    """
    return Settings()
