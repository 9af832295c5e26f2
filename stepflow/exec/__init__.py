"""
Execution module.
Runs individual steps: nested commands, external programs and inline scripts.
"""

from .step_executor import RunOutcome, StepRunner

__all__ = [
    "RunOutcome",
    "StepRunner",
]
