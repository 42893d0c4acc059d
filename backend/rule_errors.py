"""
Rule Engine Error Taxonomy

Hard errors (ParseError, OperatorError, RegexError) reject a rule before any
evaluation happens. Soft issues (unknown fields) are reported as warnings and
never raised. EvaluationError is raised inside the evaluator and caught per
record by the rule engine.
"""
from enum import Enum
from typing import Optional


class Severity(str, Enum):
    """Severity of a validation issue."""
    ERROR = "error"
    WARNING = "warning"


class RuleError(Exception):
    """Base class for all rule engine errors."""

    def __init__(self, message: str, position: Optional[int] = None, token: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.position = position
        self.token = token

    def to_dict(self) -> dict:
        result = {"message": self.message}
        if self.position is not None:
            result["position"] = self.position
        if self.token is not None:
            result["token"] = self.token
        return result


class ParseError(RuleError):
    """Malformed expression: unmatched quote, bad parentheses, bad shape."""


class UnsupportedExpressionError(ParseError):
    """Structured rule has no single-line text form (e.g. custom transforms)."""


class OperatorError(RuleError):
    """Unrecognized condition operator."""


class RegexError(RuleError):
    """Regex value failed to compile."""


class EvaluationError(RuleError):
    """Failure while evaluating conditions or applying actions to one record."""


class RuleValidationError(RuleError):
    """Raised by the store when a rule or filter fails validation."""

    def __init__(self, message: str, report=None):
        super().__init__(message)
        self.report = report


class RuleNotFoundError(RuleError):
    """Raised when a rule, filter or proxy id does not exist."""
