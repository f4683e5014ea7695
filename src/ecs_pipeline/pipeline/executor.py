"""Step executor: runs a pipeline's steps in declaration order on a single worker."""
import logging
import tempfile
import time
import uuid
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

from ecs_pipeline.aws.status import RunState
from ecs_pipeline.errors import DeploymentTimeout, PipelineError
from ecs_pipeline.pipeline.actions import ActionRegistry, default_registry
from ecs_pipeline.pipeline.context import RunContext
from ecs_pipeline.pipeline.models import Pipeline, RunEvent
from ecs_pipeline.state.run_history import RunHistory

logger = logging.getLogger(__name__)

STEP_SUCCESS = "success"
STEP_WARNING = "warning"
STEP_FAILED = "failed"
STEP_SKIPPED = "skipped"


@dataclass
class StepRecord:
    step_id: str
    name: str
    action: str
    status: str
    outputs: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None
    duration_seconds: float = 0.0


@dataclass
class RunResult:
    run_id: str
    pipeline: str
    event: Dict[str, Any]
    state: RunState = RunState.PENDING
    steps: List[StepRecord] = field(default_factory=list)
    outputs: Dict[str, Dict[str, str]] = field(default_factory=dict)
    error: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.state == RunState.STABLE

    def output(self, step_id: str, key: str) -> Optional[str]:
        return self.outputs.get(step_id, {}).get(key)

    def executed_steps(self) -> List[str]:
        return [s.step_id for s in self.steps if s.status != STEP_SKIPPED]

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data


class PipelineExecutor:
    """Executes pipelines against a cloud adapter.

    Steps run strictly one after another. Each step's parameters are resolved
    against the outputs of the steps before it, and its own outputs are
    recorded in the run context. The first fatal failure halts the run; no
    rollback is attempted.
    """

    def __init__(self,
                 adapter: Any,
                 registry: Optional[ActionRegistry] = None,
                 history: Optional[RunHistory] = None,
                 work_dir: Optional[Union[str, Path]] = None):
        self.adapter = adapter
        self.registry = registry or default_registry
        self.history = history
        self.work_dir = work_dir

    @contextmanager
    def _workdir(self, run_id: str) -> Iterator[Path]:
        """Per-run directory; a temporary one is removed when the run ends."""
        if self.work_dir:
            path = Path(self.work_dir) / run_id
            path.mkdir(parents=True, exist_ok=True)
            yield path
            return
        with tempfile.TemporaryDirectory(prefix=f"ecs-pipeline-{run_id}-") as tmp:
            yield Path(tmp)

    def run(self, pipeline: Pipeline, event: Optional[RunEvent] = None) -> RunResult:
        """Run every step of `pipeline` for `event`.

        Raises ConfigError, before any step runs, if the event does not
        trigger the pipeline or its inputs are invalid.
        """
        event = event or RunEvent()
        inputs = pipeline.resolve_event(event)

        run_id = uuid.uuid4().hex[:12]
        result = RunResult(
            run_id=run_id,
            pipeline=pipeline.name,
            event={**event.fields(), "inputs": inputs},
            started_at=datetime.now(timezone.utc).isoformat(),
        )

        logger.info(f"🚀 Starting run {run_id} of '{pipeline.name}' ({event.name})")
        result.state = RunState.RUNNING
        with self._workdir(run_id) as workdir:
            context = RunContext(pipeline.env, inputs, event, workdir, run_id=run_id)
            self._run_steps(pipeline, context, result)

        if result.state == RunState.RUNNING:
            result.state = RunState.STABLE

        result.outputs = {step_id: dict(values) for step_id, values in context.outputs.items()}
        result.finished_at = datetime.now(timezone.utc).isoformat()

        if result.succeeded:
            logger.info(f"✅ Run {run_id} finished: {result.state.value}")
        else:
            logger.error(f"Run {run_id} finished: {result.state.value} ({result.error})")

        if self.history is not None:
            self.history.record_run(result.to_dict())
        return result

    def _run_steps(self, pipeline: Pipeline, context: RunContext, result: RunResult) -> None:
        total = len(pipeline.steps)
        for index, step in enumerate(pipeline.steps, start=1):
            if result.state != RunState.RUNNING:
                result.steps.append(StepRecord(step.id, step.name, step.action, STEP_SKIPPED))
                continue

            logger.info(f"📋 Step {index}/{total}: {step.name}")
            context.current_step = step.id
            start_time = time.time()
            record = StepRecord(step.id, step.name, step.action, STEP_SUCCESS)

            try:
                spec = self.registry.get(step.action)
                params = context.resolve_parameters(step.parameters)
                produced = spec.handler(self.adapter, params, context) or {}
                record.outputs = {name: str(produced.get(key, "")) for name, key in step.outputs.items()}
            except PipelineError as e:
                record.error = str(e)
                if e.fatal:
                    record.status = STEP_FAILED
                    result.state = RunState.TIMED_OUT if isinstance(e, DeploymentTimeout) else RunState.FAILED
                    result.error = f"{step.id}: {e}"
                    logger.error(f"❌ Step '{step.id}' failed: {e}")
                else:
                    record.status = STEP_WARNING
                    record.outputs = {name: "" for name in step.outputs}
                    logger.warning(f"⚠️ Step '{step.id}' completed with warning: {e}")
            except Exception as e:
                logger.exception(f"❌ Step '{step.id}' failed unexpectedly")
                record.status = STEP_FAILED
                record.error = f"{type(e).__name__}: {e}"
                result.state = RunState.FAILED
                result.error = f"{step.id}: {record.error}"

            record.duration_seconds = round(time.time() - start_time, 3)
            if record.status != STEP_FAILED:
                context.record_outputs(step.id, record.outputs)
                logger.info(f"Completed: {step.name} in {record.duration_seconds:.2f}s")
            result.steps.append(record)
