"""
Gate runner.

Runs an externally defined test suite once against an environment endpoint.
A failing suite is reported verbatim; it is never retried.
"""

import asyncio
import logging
import os
import re
import time
from typing import Any, Dict, List, Optional

from stagegate.config.settings import GatesConfig, GateSuiteConfig
from stagegate.errors import GateConfigurationError
from stagegate.models import GateResult

logger = logging.getLogger(__name__)

# pytest short summary lines: "FAILED tests/test_x.py::test_y - AssertionError"
_FAILED_TEST = re.compile(r"^(?:FAILED|ERROR)\s+(\S+)", re.MULTILINE)

OUTPUT_TAIL_CHARS = 4000


def parse_failed_tests(output: str) -> List[str]:
    """Names of failing tests found in suite output."""
    seen: List[str] = []
    for name in _FAILED_TEST.findall(output):
        if name not in seen:
            seen.append(name)
    return seen


def _tail(text: str, limit: int = OUTPUT_TAIL_CHARS) -> str:
    return text if len(text) <= limit else text[-limit:]


class GateRunner:
    """Executes configured gate suites."""

    def __init__(self, config: GatesConfig) -> None:
        self.config = config

    def _suite(self, suite_id: str) -> GateSuiteConfig:
        suite = self.config.suites.get(suite_id)
        if suite is None:
            raise GateConfigurationError(
                f"No command configured for gate suite '{suite_id}'",
                {"suite_id": suite_id, "configured": sorted(self.config.suites)},
            )
        return suite

    async def run_suite(self, suite_id: str, endpoint: str) -> GateResult:
        """
        Run ``suite_id`` against ``endpoint``.

        The caller must already have confirmed the service is stable. One
        settle delay absorbs load-balancer registration lag, then the suite
        runs exactly once.

        Args:
            suite_id: Configured suite name (e.g., acceptance, smoke)
            endpoint: Base URL the suite targets

        Returns:
            GateResult with passed=True only when the suite exits 0

        Raises:
            GateConfigurationError: If the suite is not configured
        """
        suite = self._suite(suite_id)

        if self.config.settle_seconds > 0:
            logger.info(
                f"Waiting {self.config.settle_seconds}s for {endpoint} to settle before {suite_id}"
            )
            await asyncio.sleep(self.config.settle_seconds)

        env = dict(os.environ)
        env.update(suite.env)
        env[self.config.base_url_env] = endpoint

        logger.info(f"Running gate suite {suite_id} against {endpoint}: {' '.join(suite.command)}")
        started = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                *suite.command,
                cwd=suite.cwd,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error(f"Gate suite {suite_id} could not start: {e}")
            return GateResult(
                suite_id=suite_id,
                passed=False,
                details={
                    "endpoint": endpoint,
                    "error": f"Suite command could not start: {e}",
                    "command": suite.command,
                },
            )

        timed_out = False
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=suite.timeout_seconds
            )
        except asyncio.TimeoutError:
            timed_out = True
            process.kill()
            stdout, stderr = await process.communicate()

        duration = round(time.monotonic() - started, 2)
        out = stdout.decode(errors="replace") if stdout else ""
        err = stderr.decode(errors="replace") if stderr else ""
        exit_code: Optional[int] = process.returncode
        passed = not timed_out and exit_code == 0

        details: Dict[str, Any] = {
            "endpoint": endpoint,
            "exit_code": exit_code,
            "duration_seconds": duration,
            "stdout": _tail(out),
            "stderr": _tail(err),
            "failed_tests": parse_failed_tests(out + "\n" + err),
        }
        if timed_out:
            details["error"] = f"Suite timed out after {suite.timeout_seconds}s"

        if passed:
            logger.info(f"Gate suite {suite_id} passed in {duration}s")
        else:
            logger.warning(
                f"Gate suite {suite_id} failed (exit code {exit_code}, "
                f"{len(details['failed_tests'])} failing test(s))"
            )
        return GateResult(suite_id=suite_id, passed=passed, details=details)
