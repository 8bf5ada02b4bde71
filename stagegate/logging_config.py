"""
Logging configuration for StageGate.

Three rotating files are written under the configured log directory:

* ``stagegate.log`` - everything at the file level
* ``error.log`` - errors only, for alerting
* ``pipeline-runs.log`` - one line per stage result, from ``log_stage_transition``

Records created inside a ``LogContext`` carry the run identifier (and any
other context fields), so concurrent runs can be told apart in every stream.
"""
# mypy: ignore-errors

import contextvars
import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

PIPELINE_RUNS_LOGGER = "stagegate.pipeline_runs"

# Fields copied from records into structured output
_CONTEXT_FIELDS = ("run_id", "stage", "environment", "duration_ms")

_NOISY_LOGGERS = ("httpx", "botocore", "boto3", "urllib3", "uvicorn.access")

_log_context: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar(
    "stagegate_log_context", default={}
)


def _context_record_factory(base_factory):
    def factory(*args, **kwargs):
        record = base_factory(*args, **kwargs)
        for key, value in _log_context.get().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return record

    factory._stagegate = True
    return factory


def _install_record_factory() -> None:
    current = logging.getLogRecordFactory()
    if not getattr(current, "_stagegate", False):
        logging.setLogRecordFactory(_context_record_factory(current))


_install_record_factory()


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        entry.update(
            {name: getattr(record, name) for name in _CONTEXT_FIELDS if hasattr(record, name)}
        )
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Plain text, with the run id inline and optional level colors."""

    COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, use_colors: bool = False):
        super().__init__(
            fmt="%(asctime)s %(levelname)-8s %(name)s%(run_tag)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        record = logging.makeLogRecord(record.__dict__)
        run_id = getattr(record, "run_id", None)
        record.run_tag = f" [{run_id}]" if run_id else ""
        if self.use_colors and record.levelno in self.COLORS:
            record.levelname = f"{self.COLORS[record.levelno]}{record.levelname}{self.RESET}"
        return super().format(record)


def _rotating_handler(
    path: Path, level: int, formatter: logging.Formatter, max_bytes: int, backup_count: int
) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=max_bytes, backupCount=backup_count
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging(
    log_dir: str = "/var/log/stagegate",
    console_level: str = "INFO",
    file_level: str = "DEBUG",
    use_json: bool = False,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 10,
) -> None:
    """
    Configure console and rotating file logging.

    Args:
        log_dir: Directory for log files, created if missing
        console_level: Level name for stdout
        file_level: Level name for ``stagegate.log``
        use_json: Write files as JSON lines instead of text
        max_bytes: Size at which a file is rotated
        backup_count: Rotated files kept per stream

    Raises:
        PermissionError: The log directory cannot be created or written
    """
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)
    file_formatter = StructuredFormatter() if use_json else HumanReadableFormatter()

    def rotating(name: str, level: int) -> logging.Handler:
        return _rotating_handler(log_path / name, level, file_formatter, max_bytes, backup_count)

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(logging.getLevelName(console_level.upper()))
    console.setFormatter(HumanReadableFormatter(use_colors=sys.stdout.isatty()))

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(logging.DEBUG)
    root.addHandler(console)
    root.addHandler(rotating("stagegate.log", logging.getLevelName(file_level.upper())))
    root.addHandler(rotating("error.log", logging.ERROR))

    runs = logging.getLogger(PIPELINE_RUNS_LOGGER)
    runs.handlers.clear()
    runs.setLevel(logging.INFO)
    runs.addHandler(rotating("pipeline-runs.log", logging.INFO))
    runs.addHandler(console)
    runs.propagate = False

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    root.info(
        f"Logging to {log_dir} (console {console_level}, files {file_level}, "
        f"{'json' if use_json else 'text'})"
    )


def setup_console_logging(verbose: bool = False) -> None:
    """Console-only fallback when the log directory is not writable."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(HumanReadableFormatter(use_colors=sys.stdout.isatty()))
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, handlers=[handler])


class LogContext:
    """
    Attach fields to every record created inside the block.

    Backed by a context variable, so each asyncio task sees only the
    context it entered.
    """

    def __init__(self, **fields: Any):
        self.fields = fields
        self._token: Optional[contextvars.Token] = None

    def __enter__(self) -> "LogContext":
        self._token = _log_context.set({**_log_context.get(), **self.fields})
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._token is not None:
            _log_context.reset(self._token)
            self._token = None


def log_stage_transition(
    run_id: str,
    stage: str,
    status: str,
    environment: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Write one stage result to the pipeline-run stream.

    Failed stages are logged at ERROR, everything else at INFO.
    """
    fields: Dict[str, Any] = {"run_id": run_id, "stage": stage}
    if environment:
        fields["environment"] = environment

    message = f"{stage} {status}"
    if environment:
        message += f" on {environment}"
    if details:
        message += f": {json.dumps(details, default=str)}"

    # ``extra`` may not overwrite a run_id set by an enclosing LogContext
    level = logging.ERROR if status == "failed" else logging.INFO
    with LogContext(**fields):
        logging.getLogger(PIPELINE_RUNS_LOGGER).log(level, message)
