import json
from pathlib import Path

import boto3
import pytest

from ecs_pipeline.aws.adapter import CloudAdapter
from ecs_pipeline.aws.status import RunState
from ecs_pipeline.errors import ConfigError
from ecs_pipeline.pipeline import PipelineExecutor, RunEvent, parse_pipeline
from ecs_pipeline.pipeline.actions import ActionRegistry, default_registry
from ecs_pipeline.state.run_history import RunHistory
from tests.fixtures.aws_fakes import REGISTRY, FakeAWS, FakeECSClient, FakeSTSClient


def deploy_pipeline(task_definition_file, extra_steps=()):
    return parse_pipeline({
        "name": "deploy-todo",
        "on": {"push": {"branches": ["master"]}, "workflow_dispatch": None},
        "env": {
            "ECS_CLUSTER": "todo-app-cluster",
            "ECS_SERVICE": "todo-app-service",
            "CONTAINER_NAME": "todo-app-container",
        },
        "steps": [
            {"id": "login", "uses": "authenticate", "with": {"region": "us-east-1"}},
            {"id": "build", "uses": "push-image",
             "with": {"registry": "${login.registry}", "repository": "myrepo", "tag": "${event.sha}"}},
            {"id": "task-def", "uses": "render-task-definition",
             "with": {"task-definition": str(task_definition_file),
                      "container-name": "${env.CONTAINER_NAME}",
                      "image": "${build.image}"}},
            {"id": "deploy", "uses": "deploy-task-definition",
             "with": {"task-definition": "${task-def.task-definition}",
                      "service": "${env.ECS_SERVICE}", "cluster": "${env.ECS_CLUSTER}",
                      "wait-for-service-stability": "true"}},
            *extra_steps,
        ],
    })


PUSH_EVENT = RunEvent("push", ref="refs/heads/master", sha="abc123")


def test_full_pipeline_deploys_and_reaches_stable(adapter, fake_aws, docker, task_definition_file):
    pipeline = deploy_pipeline(task_definition_file)

    result = PipelineExecutor(adapter).run(pipeline, PUSH_EVENT)

    assert result.state == RunState.STABLE
    assert result.succeeded
    assert result.executed_steps() == ["login", "build", "task-def", "deploy"]
    assert result.output("login", "registry") == REGISTRY
    assert result.output("build", "image") == f"{REGISTRY}/myrepo:abc123"
    assert result.output("deploy", "revision") == "1"
    assert result.output("deploy", "status") == "STABLE"

    # Registered revision carries the new image; the sidecar is untouched
    registered = fake_aws.ecs.registered[0]
    images = {c["name"]: c["image"] for c in registered["containerDefinitions"]}
    assert images == {
        "todo-app-container": f"{REGISTRY}/myrepo:abc123",
        "log-router": "amazon/aws-for-fluent-bit:stable",
    }
    assert fake_aws.ecs.updates[0]["taskDefinition"].endswith("todo-app-task:1")
    assert docker.subcommands() == ["login", "push"]

    # Template on disk is never modified
    template = json.loads(task_definition_file.read_text())
    assert template["containerDefinitions"][0]["image"] == "todo-app:latest"


def test_steps_run_in_declaration_order(adapter, fake_aws, task_definition_file):
    result = PipelineExecutor(adapter).run(deploy_pipeline(task_definition_file), PUSH_EVENT)

    assert result.succeeded
    calls = fake_aws.ecs.calls
    assert calls.index("register_task_definition") < calls.index("update_service")
    assert fake_aws.sts.calls == 1


def test_fatal_error_halts_run_and_skips_remaining_steps(settings, docker, clock, task_definition_file):
    fake_aws = FakeAWS(sts=FakeSTSClient(fail=True))
    adapter = CloudAdapter(settings, client_factory=fake_aws, docker=docker, sleep=clock.sleep, clock=clock)

    result = PipelineExecutor(adapter).run(deploy_pipeline(task_definition_file), PUSH_EVENT)

    assert result.state == RunState.FAILED
    assert result.error.startswith("login:")
    assert [s.status for s in result.steps] == ["failed", "skipped", "skipped", "skipped"]
    assert docker.commands == []
    assert fake_aws.ecs.calls == []


def test_push_failure_is_fatal(adapter, fake_aws, docker, task_definition_file):
    docker.fail_on = "push"

    result = PipelineExecutor(adapter).run(deploy_pipeline(task_definition_file), PUSH_EVENT)

    assert result.state == RunState.FAILED
    assert result.steps[1].status == "failed"
    assert result.error.startswith("build:")
    assert fake_aws.ecs.registered == []


def test_stability_timeout_marks_run_timed_out(settings, docker, clock, task_definition_file):
    fake_aws = FakeAWS(ecs=FakeECSClient(stabilize_after=None))
    adapter = CloudAdapter(settings, client_factory=fake_aws, docker=docker, sleep=clock.sleep, clock=clock)
    verify = {"id": "verify", "uses": "verify-deployment",
              "with": {"cluster": "todo-app-cluster", "service": "todo-app-service"}}

    result = PipelineExecutor(adapter).run(deploy_pipeline(task_definition_file, [verify]), PUSH_EVENT)

    assert result.state == RunState.TIMED_OUT
    assert result.steps[3].status == "failed"
    assert result.steps[4].status == "skipped"
    assert clock.now == pytest.approx(settings.stability_timeout_seconds)
    # The new revision stays registered for inspection
    assert len(fake_aws.ecs.registered) == 1


def test_endpoint_not_found_is_a_warning(settings, docker, clock, task_definition_file):
    fake_aws = FakeAWS(ecs=FakeECSClient(running_tasks=0))
    adapter = CloudAdapter(settings, client_factory=fake_aws, docker=docker, sleep=clock.sleep, clock=clock)
    endpoint = {"id": "endpoint", "uses": "resolve-endpoint",
                "with": {"cluster": "todo-app-cluster", "service": "todo-app-service", "port": "8000"}}

    result = PipelineExecutor(adapter).run(deploy_pipeline(task_definition_file, [endpoint]), PUSH_EVENT)

    assert result.state == RunState.STABLE
    assert result.steps[-1].status == "warning"
    assert result.output("endpoint", "url") == ""
    assert fake_aws.ecs.calls.count("list_tasks") == settings.endpoint_max_attempts


def test_endpoint_resolves_public_url(adapter, fake_aws, task_definition_file):
    endpoint = {"id": "endpoint", "uses": "resolve-endpoint",
                "with": {"cluster": "todo-app-cluster", "service": "todo-app-service", "port": "8000"}}

    result = PipelineExecutor(adapter).run(deploy_pipeline(task_definition_file, [endpoint]), PUSH_EVENT)

    assert result.output("endpoint", "url") == "http://54.12.34.56:8000"
    assert fake_aws.ec2.requests == [["eni-0abc123"]]


def test_event_that_does_not_trigger_pipeline_fails_before_any_call(adapter, fake_aws, task_definition_file):
    pipeline = deploy_pipeline(task_definition_file)

    with pytest.raises(ConfigError, match="does not match"):
        PipelineExecutor(adapter).run(pipeline, RunEvent("push", ref="refs/heads/feature"))

    assert fake_aws.sts.calls == 0
    assert fake_aws.ecs.calls == []


def test_unexpected_exception_fails_run(adapter):
    registry = ActionRegistry()

    @registry.action("explode")
    def explode(adapter, params, context):
        raise RuntimeError("boom")

    @registry.action("after")
    def after(adapter, params, context):
        return {}

    pipeline = parse_pipeline(
        {"steps": [{"id": "a", "uses": "explode"}, {"id": "b", "uses": "after"}]}, registry=registry
    )

    result = PipelineExecutor(adapter, registry=registry).run(pipeline)

    assert result.state == RunState.FAILED
    assert result.steps[0].error == "RuntimeError: boom"
    assert result.steps[1].status == "skipped"


def test_outputs_flow_between_custom_actions(adapter):
    registry = ActionRegistry()
    seen = []

    @registry.action("produce", outputs=("value",))
    def produce(adapter, params, context):
        return {"value": f"{context.event.sha}-built"}

    @registry.action("consume", required=("value",))
    def consume(adapter, params, context):
        seen.append(params["value"])
        return {}

    pipeline = parse_pipeline({"steps": [
        {"id": "first", "uses": "produce"},
        {"id": "second", "uses": "consume", "with": {"value": "${first.value}/x"}},
    ]}, registry=registry)

    result = PipelineExecutor(adapter, registry=registry).run(pipeline, RunEvent(sha="f00"))

    assert result.succeeded
    assert seen == ["f00-built/x"]


def test_run_is_recorded_in_history(adapter, task_definition_file, tmp_path):
    history = RunHistory(tmp_path / "history.json")

    result = PipelineExecutor(adapter, history=history).run(deploy_pipeline(task_definition_file), PUSH_EVENT)

    runs = RunHistory(tmp_path / "history.json").list_runs()
    assert len(runs) == 1
    assert runs[0]["run_id"] == result.run_id
    assert runs[0]["state"] == "STABLE"
    assert runs[0]["event"]["sha"] == "abc123"
    assert runs[0]["outputs"]["build"]["image"] == f"{REGISTRY}/myrepo:abc123"


def test_temporary_work_directory_is_removed_after_run(adapter, task_definition_file):
    result = PipelineExecutor(adapter).run(deploy_pipeline(task_definition_file), PUSH_EVENT)

    rendered = Path(result.output("task-def", "task_definition"))
    assert result.succeeded
    assert rendered.name == "task-def.json"
    assert not rendered.parent.exists()


def test_configured_work_directory_keeps_rendered_files(adapter, task_definition_file, tmp_path):
    executor = PipelineExecutor(adapter, work_dir=tmp_path / "work")

    result = executor.run(deploy_pipeline(task_definition_file), PUSH_EVENT)

    rendered = Path(result.output("task-def", "task_definition"))
    assert rendered == tmp_path / "work" / result.run_id / "task-def.json"
    assert json.loads(rendered.read_text())["family"] == "todo-app-task"


def test_credentials_step_switches_clients_to_given_keys(settings, monkeypatch, docker, clock):
    fake_aws = FakeAWS()
    created = []

    def fake_client(service_name, **kwargs):
        created.append((service_name, kwargs))
        return fake_aws.clients[service_name]

    monkeypatch.setattr(boto3, "client", fake_client)
    adapter = CloudAdapter(settings, docker=docker, sleep=clock.sleep, clock=clock)
    credentials_step = {
        "id": "creds", "uses": "aws-actions/configure-aws-credentials@v1",
        "with": {"aws-access-key-id": "AKIAEXAMPLE1234", "aws-secret-access-key": "s3cr3t",
                 "aws-region": "us-east-1"},
    }
    pipeline = parse_pipeline({"steps": [credentials_step]})

    result = PipelineExecutor(adapter).run(pipeline)

    assert result.succeeded
    assert result.output("creds", "registry") == REGISTRY
    assert adapter.settings.aws_access_key_id == "AKIAEXAMPLE1234"
    assert settings.aws_access_key_id != "AKIAEXAMPLE1234"
    assert [name for name, _ in created] == ["sts", "ecr"]
    for _, kwargs in created:
        assert kwargs["aws_access_key_id"] == "AKIAEXAMPLE1234"
        assert kwargs["aws_secret_access_key"] == "s3cr3t"
        assert kwargs["region_name"] == "us-east-1"


def test_credentials_step_needs_both_keys(adapter, fake_aws):
    pipeline = parse_pipeline({"steps": [
        {"id": "creds", "uses": "aws-actions/configure-aws-credentials@v1",
         "with": {"aws-access-key-id": "AKIAEXAMPLE1234"}},
    ]})

    result = PipelineExecutor(adapter).run(pipeline)

    assert result.state == RunState.FAILED
    assert "secret access key" in result.error
    assert fake_aws.sts.calls == 0


def test_default_registry_lists_deployment_actions():
    assert default_registry.names() == [
        "authenticate",
        "checkout",
        "deploy-task-definition",
        "push-image",
        "render-task-definition",
        "resolve-endpoint",
        "verify-deployment",
    ]
    assert "aws-actions/amazon-ecr-login@v2" in default_registry
