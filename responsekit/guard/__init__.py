"""
Deduplication guard.

Admits at most one live attempt per correlation key and reaps attempts
left behind by crashed workers.
"""

from responsekit.guard.guard import Admission, DeduplicationGuard
from responsekit.guard.liveness import (
    AdvisoryLockChecker,
    LivenessChecker,
    LivenessUnavailableError,
    ProcessFingerprintChecker,
    build_liveness_checker,
)

__all__ = [
    "DeduplicationGuard",
    "Admission",
    "LivenessChecker",
    "AdvisoryLockChecker",
    "ProcessFingerprintChecker",
    "LivenessUnavailableError",
    "build_liveness_checker",
]
