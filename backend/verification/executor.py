"""Verification executors.

The gate only needs something with an async ``verify`` method. The command
executor shipped here runs a test command in a subprocess and turns its
output into a :class:`VerificationResult`.
"""

import asyncio
import contextlib
import shlex
from typing import Protocol

import structlog

from models.verification import (
    CriterionResult,
    TestFailure,
    VerificationRequest,
    VerificationResult,
)
from verification.parsers import parse_test_output

logger = structlog.get_logger(__name__)

MAX_OUTPUT_CHARS = 50000
MAX_RECOMMENDATIONS = 5


class VerificationExecutor(Protocol):
    """Runs the checks for one verification request."""

    async def verify(self, request: VerificationRequest) -> VerificationResult: ...


def truncate_output(output: str, max_length: int = MAX_OUTPUT_CHARS) -> str:
    """Truncate command output, noting how much was dropped."""
    if not output:
        return ""
    if len(output) > max_length:
        omitted = len(output) - max_length
        output = output[:max_length] + f"\n... [truncated, {omitted} chars omitted]"
    return output


class CommandVerificationExecutor:
    """Run a shell test command and interpret its output.

    When a request names test files and does not ask for the full suite, the
    files are appended to the command.

    Attributes:
        command: Base shell command, e.g. ``pytest -q``.
        workdir: Directory the command runs in.
        timeout_seconds: Wall-clock limit for one run.
    """

    def __init__(
        self,
        command: str,
        *,
        workdir: str = ".",
        timeout_seconds: float = 600.0,
    ) -> None:
        self.command = command
        self.workdir = workdir
        self.timeout_seconds = timeout_seconds

    def build_command(self, request: VerificationRequest) -> str:
        if request.test_files and not request.full_suite:
            return f"{self.command} {shlex.join(request.test_files)}"
        return self.command

    async def _run(self, command: str) -> tuple[int, str, bool]:
        process = await asyncio.create_subprocess_shell(
            command,
            cwd=self.workdir,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        try:
            stdout, _ = await asyncio.wait_for(
                process.communicate(), timeout=self.timeout_seconds
            )
        except TimeoutError:
            return 124, "", True
        finally:
            # Timeouts and cancellation both leave the child running.
            if process.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                await process.wait()
                logger.info("verification_command_killed", pid=process.pid)
        output = truncate_output(stdout.decode("utf-8", errors="replace"))
        return process.returncode or 0, output, False

    async def verify(self, request: VerificationRequest) -> VerificationResult:
        """Run the command for ``request``.

        Raises:
            OSError: If the command cannot be started.
        """
        command = self.build_command(request)
        logger.info(
            "verification_command_started",
            task_id=request.task_id,
            command=command[:200],
        )
        exit_code, output, timed_out = await self._run(command)

        if timed_out:
            logger.warning(
                "verification_command_timeout",
                task_id=request.task_id,
                timeout=self.timeout_seconds,
            )
            message = f"Verification timed out after {self.timeout_seconds} seconds"
            return VerificationResult(
                task_id=request.task_id,
                passed=False,
                failures=[TestFailure(test_name="timeout", error=message)],
                criteria_results=[
                    CriterionResult(criterion=c, met=False, evidence=message)
                    for c in request.acceptance_criteria
                ],
                recommendations=["Check for hanging tests or raise the timeout"],
            )

        parsed = parse_test_output(output)
        passed = exit_code == 0 and parsed.counts.failed == 0
        if passed:
            evidence = f"{parsed.counts.passed} test(s) passed"
        elif parsed.counts.failed:
            evidence = f"{parsed.counts.failed} test(s) failed"
        else:
            evidence = f"Test command exited with code {exit_code}"

        failures = list(parsed.failures)
        if not passed and not failures:
            tail = "\n".join(output.splitlines()[-20:])
            failures.append(TestFailure(test_name=command, error=tail))

        recommendations = [
            f"Fix failing test {f.test_name}" + (f" in {f.file}" if f.file else "")
            for f in failures[:MAX_RECOMMENDATIONS]
        ] if not passed else []

        logger.info(
            "verification_command_finished",
            task_id=request.task_id,
            exit_code=exit_code,
            framework=parsed.framework,
            passed=passed,
            failed=parsed.counts.failed,
        )
        return VerificationResult(
            task_id=request.task_id,
            passed=passed,
            test_results=parsed.counts,
            failures=failures,
            criteria_results=[
                CriterionResult(criterion=c, met=passed, evidence=evidence)
                for c in request.acceptance_criteria
            ],
            coverage=parsed.coverage,
            recommendations=recommendations,
        )
