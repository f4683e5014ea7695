"""
Pipeline run history.

Records every run (its event, steps, outputs and final state) in a local
JSON state file so past deployments and registered revisions can be
inspected after the fact.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

MAX_RUNS = 100


class RunHistory:
    """Append-only record of pipeline runs stored as JSON."""

    def __init__(self, state_file: Union[str, Path] = ".pipeline_runs.json", max_runs: int = MAX_RUNS):
        self.state_file = Path(state_file)
        self.max_runs = max_runs
        self.state = self._load_state()

    def _load_state(self) -> Dict[str, Any]:
        """Load run history from file."""
        if self.state_file.exists():
            try:
                with open(self.state_file, 'r') as f:
                    state = json.load(f)
                if isinstance(state, dict) and isinstance(state.get("runs"), list):
                    return state
                logger.warning(f"Ignoring malformed run history in {self.state_file}")
            except (json.JSONDecodeError, IOError) as e:
                logger.warning(f"Could not read run history {self.state_file}: {e}")

        return {
            "runs": [],
            "last_updated": None
        }

    def save_state(self) -> None:
        """Save current state to file."""
        self.state["last_updated"] = datetime.now(timezone.utc).isoformat()

        try:
            with open(self.state_file, 'w') as f:
                json.dump(self.state, f, indent=2, default=str)
        except IOError as e:
            logger.warning(f"Could not save run history: {e}")

    def record_run(self, run: Dict[str, Any]) -> None:
        """Append a finished run, keeping at most `max_runs` entries."""
        runs = self.state.setdefault("runs", [])
        runs.append({**run, "recorded_at": datetime.now(timezone.utc).isoformat()})
        del runs[:-self.max_runs]
        self.save_state()
        logger.debug(f"Recorded run {run.get('run_id')} in {self.state_file}")

    def list_runs(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Most recent runs first."""
        runs = list(reversed(self.state.get("runs", [])))
        return runs[:limit] if limit else runs

    def get_run(self, run_id: str) -> Optional[Dict[str, Any]]:
        for run in self.state.get("runs", []):
            if run.get("run_id") == run_id:
                return run
        return None

    def clear(self) -> None:
        """Clear all recorded runs."""
        self.state = {"runs": [], "last_updated": None}
        self.save_state()
