"""
Pipeline loading and execution.

- loader: YAML description -> validated, immutable Pipeline
- executor: runs steps in order against a cloud adapter
- actions: the step actions and their declared parameters/outputs
"""
from .actions import ActionRegistry, ActionSpec, default_registry
from .context import RunContext
from .executor import PipelineExecutor, RunResult, StepRecord
from .loader import load_pipeline, parse_pipeline
from .models import Pipeline, PipelineStep, RunEvent, Triggers, WorkflowInput

__all__ = [
    "ActionRegistry",
    "ActionSpec",
    "default_registry",
    "RunContext",
    "PipelineExecutor",
    "RunResult",
    "StepRecord",
    "load_pipeline",
    "parse_pipeline",
    "Pipeline",
    "PipelineStep",
    "RunEvent",
    "Triggers",
    "WorkflowInput",
]
