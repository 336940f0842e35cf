"""Verification request and result models."""

import time
from enum import StrEnum

from pydantic import BaseModel, Field


class VerificationPriority(StrEnum):
    """How urgently a verification should be processed."""

    IMMEDIATE = "immediate"
    NORMAL = "normal"
    LOW = "low"


class VerificationOutcome(StrEnum):
    """How a finished verification was resolved."""

    PASSED = "passed"
    NEEDS_REVISION = "needs_revision"
    MAX_RETRIES_EXCEEDED = "max_retries_exceeded"


class VerificationRequest(BaseModel):
    """What to verify once a task's files have settled."""

    task_id: str
    modified_files: list[str] = Field(default_factory=list)
    change_summary: str = ""
    acceptance_criteria: list[str] = Field(default_factory=list)
    test_files: list[str] = Field(default_factory=list)
    full_suite: bool = False
    priority: VerificationPriority = VerificationPriority.NORMAL


class TestCounts(BaseModel):
    """Aggregate test counts from one run."""

    __test__ = False

    total: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0


class TestFailure(BaseModel):
    """A single failing test."""

    __test__ = False

    test_name: str
    error: str = ""
    file: str | None = None


class CriterionResult(BaseModel):
    """Whether one acceptance criterion was met."""

    criterion: str
    met: bool
    evidence: str | None = None


class CoverageMetrics(BaseModel):
    """Coverage percentages, when the runner reports them."""

    lines: float = 0.0
    branches: float = 0.0
    functions: float = 0.0


class VerificationResult(BaseModel):
    """Result returned by a verification executor.

    Only ``passed`` drives the gate; everything else is carried through to
    events and callers.
    """

    task_id: str
    passed: bool
    test_results: TestCounts = Field(default_factory=TestCounts)
    failures: list[TestFailure] = Field(default_factory=list)
    criteria_results: list[CriterionResult] = Field(default_factory=list)
    regression_detected: bool = False
    coverage: CoverageMetrics | None = None
    recommendations: list[str] = Field(default_factory=list)
    finished_at: float = Field(default_factory=time.time)


class VerificationStatusResponse(BaseModel):
    """Snapshot of one pending verification."""

    task_id: str
    queued_at: float
    retry_count: int
    timer_armed: bool
    running: bool
    last_result: VerificationResult | None = None
