"""Verification gating: stability debounce, executors and bounded retries."""

from verification.executor import (
    CommandVerificationExecutor,
    VerificationExecutor,
    truncate_output,
)
from verification.gate import PendingVerification, StatusWriter, VerificationGate
from verification.parsers import ParsedTestOutput, parse_test_output
from verification.timers import KeyedTimer

__all__ = [
    "CommandVerificationExecutor",
    "KeyedTimer",
    "ParsedTestOutput",
    "PendingVerification",
    "StatusWriter",
    "VerificationExecutor",
    "VerificationGate",
    "parse_test_output",
    "truncate_output",
]
