import json
import os

import pytest
from moto import mock_aws

from ecs_pipeline.aws.adapter import CloudAdapter
from ecs_pipeline.aws.clients import AWSClientManager
from ecs_pipeline.config.settings import Settings, get_settings
from tests.consts import TASK_DEFINITION_TEMPLATE
from tests.fixtures.aws_fakes import REGION, FakeAWS, FakeClock, RecordingDocker


@pytest.fixture(autouse=True)
def aws_environment(monkeypatch, tmp_path):
    """Fake credentials, a temp state file and fresh settings/clients for every test."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", REGION)
    monkeypatch.setenv("DEPLOYMENT_MODE", "aws-prod")
    monkeypatch.setenv("STATE_FILE", str(tmp_path / "runs.json"))
    monkeypatch.delenv("AWS_ENDPOINT_URL", raising=False)
    monkeypatch.delenv("AWS_PROFILE", raising=False)
    monkeypatch.chdir(tmp_path)

    get_settings.cache_clear()
    AWSClientManager.reset()
    yield
    get_settings.cache_clear()
    AWSClientManager.reset()


@pytest.fixture
def mocked_aws():
    with mock_aws():
        yield


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        deployment_mode="aws-prod",
        stability_timeout_seconds=120,
        stability_poll_interval_seconds=15,
        endpoint_max_attempts=3,
        endpoint_retry_delay_seconds=30,
        state_file=str(tmp_path / "runs.json"),
        work_dir=str(tmp_path / "work"),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_aws() -> FakeAWS:
    return FakeAWS()


@pytest.fixture
def docker() -> RecordingDocker:
    return RecordingDocker()


@pytest.fixture
def adapter(settings, fake_aws, docker, clock):
    return CloudAdapter(settings, client_factory=fake_aws, docker=docker, sleep=clock.sleep, clock=clock)


@pytest.fixture
def task_definition_file(tmp_path):
    path = tmp_path / "task-definition.json"
    path.write_text(json.dumps(TASK_DEFINITION_TEMPLATE, indent=2))
    return path


@pytest.fixture
def repo_root():
    return os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
