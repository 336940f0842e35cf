"""Parse test runner output into counts and failures.

Supports the summary formats printed by pytest and Jest. Output that matches
neither yields zero counts and no failures.
"""

import re
from dataclasses import dataclass, field
from typing import Literal

from models.verification import CoverageMetrics, TestCounts, TestFailure

Framework = Literal["pytest", "jest", "unknown"]

_PYTEST_PAIR = re.compile(
    r"(\d+) (passed|failed|skipped|errors?|xfailed|xpassed|deselected|warnings?)"
)
_PYTEST_DURATION = re.compile(r" in [\d.]+s")
_PYTEST_FAILED_LINE = re.compile(r"^(?:FAILED|ERROR) (\S+?)(?: - (.*))?$")
_PYTEST_COVERAGE = re.compile(r"^TOTAL\s+.*?(\d+(?:\.\d+)?)%\s*$")

_JEST_TESTS_LINE = re.compile(r"^Tests:\s+(.*)$")
_JEST_PAIR = re.compile(r"(\d+) (passed|failed|skipped|todo|total)")
_JEST_FAILURE = re.compile(r"^\s*● (.+)$")
_JEST_COVERAGE = re.compile(
    r"^All files\s*\|\s*([\d.]+)\s*\|\s*([\d.]+)\s*\|\s*([\d.]+)\s*\|\s*([\d.]+)"
)


@dataclass
class ParsedTestOutput:
    """What could be recovered from a test run's output."""

    __test__ = False

    framework: Framework = "unknown"
    counts: TestCounts = field(default_factory=TestCounts)
    failures: list[TestFailure] = field(default_factory=list)
    coverage: CoverageMetrics | None = None


def parse_pytest_output(output: str) -> ParsedTestOutput | None:
    """Parse pytest's final summary line and ``FAILED`` short-summary lines."""
    lines = output.splitlines()
    summary = next(
        (
            line
            for line in reversed(lines)
            if _PYTEST_DURATION.search(line) and _PYTEST_PAIR.search(line)
        ),
        None,
    )
    if summary is None:
        return None

    found: dict[str, int] = {}
    for count, label in _PYTEST_PAIR.findall(summary):
        found[label.rstrip("s") if label.startswith("error") else label] = int(count)
    failed = found.get("failed", 0) + found.get("error", 0)
    passed = found.get("passed", 0) + found.get("xpassed", 0)
    skipped = found.get("skipped", 0) + found.get("xfailed", 0)

    failures: list[TestFailure] = []
    for line in lines:
        match = _PYTEST_FAILED_LINE.match(line.strip())
        if match is None:
            continue
        node_id, message = match.group(1), match.group(2) or ""
        path, _, name = node_id.partition("::")
        failures.append(
            TestFailure(test_name=name or node_id, error=message, file=path or None)
        )

    coverage = None
    for line in lines:
        cov = _PYTEST_COVERAGE.match(line.strip())
        if cov:
            coverage = CoverageMetrics(lines=float(cov.group(1)))

    return ParsedTestOutput(
        framework="pytest",
        counts=TestCounts(
            total=failed + passed + skipped,
            passed=passed,
            failed=failed,
            skipped=skipped,
        ),
        failures=failures,
        coverage=coverage,
    )


def parse_jest_output(output: str) -> ParsedTestOutput | None:
    """Parse Jest's ``Tests:`` summary line and ``●`` failure headers."""
    lines = output.splitlines()
    summary = next(
        (m.group(1) for line in lines if (m := _JEST_TESTS_LINE.match(line.strip()))),
        None,
    )
    if summary is None:
        return None

    found = {label: int(count) for count, label in _JEST_PAIR.findall(summary)}
    passed = found.get("passed", 0)
    failed = found.get("failed", 0)
    skipped = found.get("skipped", 0) + found.get("todo", 0)

    failures: list[TestFailure] = []
    seen: set[str] = set()
    for index, line in enumerate(lines):
        match = _JEST_FAILURE.match(line)
        if match is None or match.group(1).startswith("Console"):
            continue
        full_name = match.group(1).strip()
        if full_name in seen:
            continue
        seen.add(full_name)
        error = next((ln.strip() for ln in lines[index + 1:] if ln.strip()), "")
        failures.append(
            TestFailure(test_name=full_name.split(" › ")[-1], error=error)
        )

    coverage = None
    for line in lines:
        cov = _JEST_COVERAGE.match(line.strip())
        if cov:
            coverage = CoverageMetrics(
                lines=float(cov.group(4)),
                branches=float(cov.group(2)),
                functions=float(cov.group(3)),
            )

    return ParsedTestOutput(
        framework="jest",
        counts=TestCounts(
            total=found.get("total", passed + failed + skipped),
            passed=passed,
            failed=failed,
            skipped=skipped,
        ),
        failures=failures,
        coverage=coverage,
    )


def parse_test_output(output: str) -> ParsedTestOutput:
    """Detect the runner from its output and parse it."""
    for parser in (parse_jest_output, parse_pytest_output):
        parsed = parser(output)
        if parsed is not None:
            return parsed
    return ParsedTestOutput()
