"""Errors that are allowed to leave the pipeline, plus detection reason codes."""

from typing import Optional

# Reason codes logged when a single rule degrades to "no findings"
L1_RULE_FAILED = "L1_RULE_FAILED"
L2_RULE_FAILED = "L2_RULE_FAILED"
L3_RULE_EXECUTION_FAILED = "L3_RULE_EXECUTION_FAILED"
L3_RULE_INTERRUPTED = "L3_RULE_INTERRUPTED"
L3_RULE_TIMEOUT = "L3_RULE_TIMEOUT"
L3_PRECOMPUTED_MISSING = "L3_PRECOMPUTED_MISSING"


class ContentGuardError(Exception):
    """Base class for errors surfaced to callers of the pipeline."""

    code = "CONTENTGUARD_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        if code:
            self.code = code


class PolicyUnavailable(ContentGuardError):
    """Missing or disabled policy, or no binding for the caller."""

    code = "POLICY_UNAVAILABLE"


class InvalidInput(ContentGuardError):
    code = "INVALID_INPUT"
