"""
Pipeline run persistence.

Handles loading and saving pipeline runs to disk.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles  # type: ignore

from stagegate.models import PipelineRun
from stagegate.stages import PipelineState

logger = logging.getLogger(__name__)


class RunStore:
    """
    Manages persistent storage of pipeline runs.

    Handles serialization/deserialization of runs to JSON, atomic file
    writes, and recovery of runs interrupted by a restart.
    """

    def __init__(self, state_dir: Optional[Path] = None, history_limit: int = 100) -> None:
        """
        Initialize the run store.

        Args:
            state_dir: Directory for state files. Defaults to /var/lib/stagegate
                      with fallback to temp directory.
            history_limit: Maximum number of finished runs kept
        """
        if state_dir:
            self.state_dir = Path(state_dir)
        else:
            self.state_dir = Path("/var/lib/stagegate")
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
        except PermissionError:
            import tempfile

            self.state_dir = Path(tempfile.gettempdir()) / "stagegate"
            self.state_dir.mkdir(parents=True, exist_ok=True)

        self.state_file = self.state_dir / "pipeline_runs.json"
        self.history_limit = history_limit
        self.runs: Dict[str, PipelineRun] = {}

    def load(self) -> Dict[str, PipelineRun]:
        """
        Load runs from persistent storage.

        Runs that were still in flight when the process stopped are marked
        failed: their stage calls cannot be resumed safely.

        Returns:
            All loaded runs keyed by run id
        """
        if not self.state_file.exists():
            return self.runs

        try:
            with open(self.state_file, "r") as f:
                state = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to load pipeline run state: {e}")
            return self.runs

        interrupted = 0
        for run_id, run_data in state.get("runs", {}).items():
            try:
                run = PipelineRun(**run_data)
            except Exception as e:
                logger.warning(f"Skipping unreadable run {run_id}: {e}")
                continue
            if not run.is_terminal:
                logger.warning(
                    f"Found in-flight run {run_id} in state {run.state.value} after restart. "
                    "Marking as failed due to restart during the run."
                )
                run.finalize(PipelineState.FAILED, "Run interrupted by restart")
                interrupted += 1
            self.runs[run_id] = run

        logger.info(f"Loaded {len(self.runs)} pipeline runs ({interrupted} interrupted)")
        if interrupted:
            self.save_sync()
        return self.runs

    def _serialize(self) -> Dict[str, Any]:
        self._trim()
        return {
            "runs": {run_id: run.model_dump(mode="json") for run_id, run in self.runs.items()},
            "saved_at": datetime.now(timezone.utc).isoformat(),
        }

    def _trim(self) -> None:
        """Drop the oldest finished runs beyond the history limit."""
        finished = [run for run in self.runs.values() if run.is_terminal]
        excess = len(self.runs) - self.history_limit
        if excess <= 0:
            return
        for run in sorted(finished, key=lambda r: r.created_at)[:excess]:
            del self.runs[run.run_id]

    def save_sync(self) -> None:
        """Save all runs synchronously."""
        try:
            state = self._serialize()
            temp_file = self.state_file.with_suffix(".tmp")
            with open(temp_file, "w") as f:
                json.dump(state, f, indent=2)
            temp_file.replace(self.state_file)
            logger.debug(f"Saved {len(self.runs)} pipeline runs")
        except OSError as e:
            logger.error(f"Failed to save pipeline run state: {e}")

    async def save_run(self, run: PipelineRun) -> None:
        """Record ``run`` and persist all runs asynchronously."""
        self.runs[run.run_id] = run
        try:
            state = self._serialize()
            temp_file = self.state_file.with_suffix(".tmp")
            async with aiofiles.open(temp_file, "w") as f:
                await f.write(json.dumps(state, indent=2))
            # Atomic rename (still sync as it's a filesystem operation)
            temp_file.replace(self.state_file)
            logger.debug(f"Saved pipeline run {run.run_id} ({run.state.value})")
        except OSError as e:
            logger.error(f"Failed to save pipeline run {run.run_id}: {e}")

    def get(self, run_id: str) -> Optional[PipelineRun]:
        return self.runs.get(run_id)

    def list_runs(self, limit: int = 20) -> List[PipelineRun]:
        """Most recent runs first."""
        ordered = sorted(self.runs.values(), key=lambda r: r.created_at, reverse=True)
        return ordered[:limit]
