"""
Output formatting for the StageGate CLI.

Runs and stage results are printed as tables or JSON.
"""

import json
from typing import Any, Dict, List

from tabulate import tabulate  # type: ignore[import-untyped]

from stagegate.models import PipelineRun

RUN_COLUMNS = ["run_id", "state", "artifact", "commit", "created_at", "completed_at"]
STAGE_COLUMNS = ["stage", "status", "environment", "error", "message"]


def _cell(value: Any, width: int = 60) -> str:
    if value is None:
        return ""
    text = json.dumps(value, default=str) if isinstance(value, (dict, list)) else str(value)
    return text if len(text) <= width else text[: width - 3] + "..."


def format_table(rows: List[Dict[str, Any]], columns: List[str]) -> str:
    """
    Render ``rows`` as a plain-text table with the given columns.

    Missing values print as blanks and long values are shortened.
    """
    if not rows:
        return "Nothing to show."
    return str(
        tabulate(
            [[_cell(row.get(column)) for column in columns] for row in rows],
            headers=columns,
            tablefmt="simple",
        )
    )


def format_json(data: Any) -> str:
    return json.dumps(data, indent=2, default=str)


def run_rows(runs: List[PipelineRun]) -> List[Dict[str, Any]]:
    return [
        {
            "run_id": run.run_id,
            "state": run.state.value,
            "artifact": run.artifact.reference,
            "commit": run.artifact.commit_sha,
            "created_at": run.created_at,
            "completed_at": run.completed_at,
        }
        for run in runs
    ]


def stage_rows(run: PipelineRun) -> List[Dict[str, Any]]:
    return [
        {
            "stage": result.stage.value,
            "status": result.status,
            "environment": result.environment,
            "error": result.error,
            "message": result.message,
        }
        for result in run.stage_results
    ]


def format_run(run: PipelineRun, output_format: str = "table") -> str:
    """Render one run with its stage results."""
    if output_format == "json":
        return format_json(run.model_dump(mode="json"))
    header = f"Run {run.run_id}: {run.state.value}"
    if run.message:
        header += f" - {run.message}"
    return f"{header}\n\n{format_table(stage_rows(run), STAGE_COLUMNS)}"


def format_runs(runs: List[PipelineRun], output_format: str = "table") -> str:
    if output_format == "json":
        return format_json([run.model_dump(mode="json") for run in runs])
    return format_table(run_rows(runs), RUN_COLUMNS)
