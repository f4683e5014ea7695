# cli.py
import json
import logging
import sys

import click

from ecs_pipeline.aws.adapter import CloudAdapter
from ecs_pipeline.aws.task_definitions import render_task_definition
from ecs_pipeline.config.settings import get_settings
from ecs_pipeline.errors import PipelineError
from ecs_pipeline.pipeline import PipelineExecutor, RunEvent, load_pipeline
from ecs_pipeline.pipeline.models import DISPATCH_EVENT, PUSH_EVENT
from ecs_pipeline.state.run_history import RunHistory

logger = logging.getLogger(__name__)


def _parse_inputs(ctx, param, values):
    inputs = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"expected KEY=VALUE, got '{item}'")
        inputs[key.strip()] = value
    return inputs


def _fail(message: str) -> None:
    print(f"❌ {message}")
    sys.exit(1)


@click.group()
@click.option("--verbose", is_flag=True, help="Verbose logging")
def cli(verbose):
    """Run ECS deployment pipelines described in YAML"""
    settings = get_settings()
    log_level = logging.DEBUG if verbose else getattr(logging, settings.log_level, logging.INFO)
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


@cli.command()
@click.argument("pipeline_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--event", "event_name",
              type=click.Choice([PUSH_EVENT, DISPATCH_EVENT]),
              default=DISPATCH_EVENT,
              help="Event that triggers the run")
@click.option("--ref", default="refs/heads/main", help="Git ref of the event")
@click.option("--sha", default="", help="Commit SHA of the event")
@click.option("--input", "inputs", multiple=True, callback=_parse_inputs,
              help="Dispatch input as KEY=VALUE (repeatable)")
@click.option("--no-history", is_flag=True, help="Do not record the run in the history file")
def run(pipeline_file, event_name, ref, sha, inputs, no_history):
    """Run a pipeline end to end"""
    settings = get_settings()
    try:
        pipeline = load_pipeline(pipeline_file)
        event = RunEvent(name=event_name, ref=ref, sha=sha, inputs=inputs)
        history = None if no_history else RunHistory(settings.state_file)
        executor = PipelineExecutor(CloudAdapter(settings), history=history, work_dir=settings.work_dir)
        result = executor.run(pipeline, event)
    except PipelineError as e:
        _fail(str(e))
        return

    print(f"Run {result.run_id} of '{result.pipeline}': {result.state.value}")
    for step in result.steps:
        marker = {"success": "✅", "warning": "⚠️", "failed": "❌"}.get(step.status, "⏭️")
        print(f"  {marker} {step.step_id} ({step.action}): {step.status}")
        if step.error:
            print(f"      {step.error}")
        for key, value in step.outputs.items():
            print(f"      {key} = {value}")

    if not result.succeeded:
        sys.exit(1)


@cli.command()
@click.argument("pipeline_file", type=click.Path(exists=True, dir_okay=False))
def validate(pipeline_file):
    """Load a pipeline and check it without running anything"""
    try:
        pipeline = load_pipeline(pipeline_file)
    except PipelineError as e:
        _fail(str(e))
        return

    print(f"✅ Pipeline '{pipeline.name}' is valid ({len(pipeline.steps)} steps)")
    if pipeline.triggers:
        print(f"  Triggers: {', '.join(pipeline.triggers.event_names()) or 'none'}")
    for step in pipeline.steps:
        print(f"  - {step.id}: {step.action}")


@cli.command()
@click.argument("template", type=click.Path(exists=True, dir_okay=False))
@click.option("--container-name", required=True, help="Container whose image is replaced")
@click.option("--image", required=True, help="New image URI")
@click.option("--output", type=click.Path(dir_okay=False), help="Write the result here instead of stdout")
def render(template, container_name, image, output):
    """Render a task definition with a new container image"""
    try:
        document = render_task_definition(template, container_name, image)
    except PipelineError as e:
        _fail(str(e))
        return

    if output:
        document.write(output)
        print(f"✅ Task definition written to {output}")
    else:
        print(document.to_json())


@cli.command()
@click.option("--cluster", required=True, help="ECS cluster name")
@click.option("--service", required=True, help="ECS service name")
def status(cluster, service):
    """Show the status of a service's latest deployment"""
    deployment_status = CloudAdapter(get_settings()).poll_deployment_status(cluster, service)
    print(f"Deployment status: {deployment_status.value}")


@cli.command()
@click.option("--cluster", required=True, help="ECS cluster name")
@click.option("--service", required=True, help="ECS service name")
@click.option("--port", type=int, default=80, show_default=True, help="Container port")
def endpoint(cluster, service, port):
    """Resolve the public URL of a service's running task"""
    try:
        url = CloudAdapter(get_settings()).resolve_public_endpoint(cluster, service, port)
    except PipelineError as e:
        _fail(str(e))
        return
    print(url)


@cli.command()
@click.option("--limit", type=int, default=10, show_default=True, help="Number of runs to show")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def history(limit, as_json):
    """Show recorded pipeline runs, most recent first"""
    runs = RunHistory(get_settings().state_file).list_runs(limit)
    if as_json:
        print(json.dumps(runs, indent=2, default=str))
        return

    if not runs:
        print("No recorded runs")
        return
    for entry in runs:
        event = entry.get("event", {})
        print(
            f"{entry.get('run_id')}  {str(entry.get('state')):<9}  {entry.get('pipeline')}  "
            f"{event.get('name', '')} {event.get('branch', '')}  {entry.get('started_at')}"
        )
        if entry.get("error"):
            print(f"    {entry['error']}")


@cli.command()
def show_config():
    """Show current configuration"""
    settings = get_settings()

    print("Current Configuration:")
    print(f"  Deployment Mode: {settings.deployment_mode}")
    print(f"  AWS Region: {settings.aws_region}")
    print(f"  AWS Endpoint: {settings.aws_endpoint_url}")
    print(f"  Stability Timeout: {settings.stability_timeout_seconds}s")
    print(f"  Stability Poll Interval: {settings.stability_poll_interval_seconds}s")
    print(f"  Endpoint Attempts: {settings.endpoint_max_attempts}")
    print(f"  Endpoint Retry Delay: {settings.endpoint_retry_delay_seconds}s")
    print(f"  State File: {settings.state_file}")
    print(f"  Work Dir: {settings.work_dir or '(temporary)'}")
    print(f"  Log Level: {settings.log_level}")


if __name__ == "__main__":
    cli()
