"""
Rule Condition Evaluator

Evaluates condition groups against channel records. Entries chain flat
left to right with short-circuiting:

    a AND b OR c  ==  ((a AND b) OR c)

An empty group is true. Missing fields read as the empty string.
Successful `matches` conditions expose their capture groups as $1..$n.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Optional

from channel_record import ChannelRecord
from field_catalog import get_catalog
from rule_errors import OperatorError, RegexError
from rule_schema import REGEX_OPERATORS, Condition, ConditionGroup, Operator


logger = logging.getLogger(__name__)

DEFAULT_CACHE_SIZE = 1000


class RegexCache:
    """
    Compiled-pattern cache keyed by (pattern, flags).

    Bounded: when full it is cleared and refilled. Prime it before fanning
    out across threads so workers only read.
    """

    def __init__(self, max_size: int = DEFAULT_CACHE_SIZE):
        self.max_size = max_size
        self._patterns: dict[tuple[str, int], re.Pattern] = {}

    def get(self, pattern: str, flags: int = 0) -> re.Pattern:
        key = (pattern, flags)
        compiled = self._patterns.get(key)
        if compiled is not None:
            return compiled
        try:
            compiled = re.compile(pattern, flags)
        except re.error as e:
            raise RegexError(f"Invalid regex '{pattern}': {e}", token=pattern)
        if len(self._patterns) >= self.max_size:
            logger.debug("[EVALUATOR] Regex cache full (%s), clearing", self.max_size)
            self._patterns.clear()
        self._patterns[key] = compiled
        return compiled

    def clear(self) -> None:
        self._patterns.clear()

    def __len__(self) -> int:
        return len(self._patterns)


@dataclass
class EvaluationResult:
    """Result of condition evaluation."""
    matched: bool
    condition_type: str
    details: Optional[str] = None  # Human-readable explanation
    captures: tuple = ()

    def __bool__(self):
        return self.matched


@dataclass
class ConditionDiagnostic:
    """Per-condition outcome for previews."""
    field: str
    operator: str
    value: str
    actual: str
    matched: bool
    details: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "field": self.field,
            "operator": self.operator,
            "value": self.value,
            "actual": self.actual,
            "matched": self.matched,
            "details": self.details,
        }


@dataclass
class _Pass:
    """Mutable state for one group evaluation."""
    captures: list = field(default_factory=list)
    diagnostics: Optional[list] = None


class ConditionEvaluator:
    """
    Evaluates conditions against channel records.

    Usage:
        evaluator = ConditionEvaluator()
        matched = evaluator.evaluate(group, record)
    """

    def __init__(self, regex_cache: Optional[RegexCache] = None):
        self.regex_cache = regex_cache or RegexCache()

    # =========================================================================
    # Groups
    # =========================================================================

    def evaluate(self, group: ConditionGroup, record: ChannelRecord) -> bool:
        """Evaluate a group against a record."""
        return self._evaluate_group(group, record, _Pass())

    def evaluate_with_captures(self, group: ConditionGroup,
                               record: ChannelRecord) -> tuple[bool, dict]:
        """Evaluate and return {"$1": ..., "$2": ...} from successful regex matches."""
        state = _Pass()
        matched = self._evaluate_group(group, record, state)
        captures = {f"${i}": value for i, value in enumerate(state.captures, 1)}
        return matched, captures

    def evaluate_with_diagnostics(self, group: ConditionGroup,
                                  record: ChannelRecord) -> tuple[bool, list[ConditionDiagnostic]]:
        """
        Evaluate with per-condition results.

        The overall result uses normal short-circuit composition; every
        condition is still visited so the preview can show all of them.
        """
        matched = self.evaluate(group, record)
        diagnostics = []
        for condition in group.iter_conditions():
            result = self.evaluate_condition(condition, record)
            diagnostics.append(ConditionDiagnostic(
                field=condition.field,
                operator=condition.operator,
                value=condition.value,
                actual=record.value_of(condition.field),
                matched=result.matched,
                details=result.details,
            ))
        return matched, diagnostics

    def _evaluate_group(self, group: ConditionGroup, record: ChannelRecord, state: _Pass) -> bool:
        entries = group.entries
        if not entries:
            return True

        result = self._evaluate_entry(entries[0], record, state)
        for previous, entry in zip(entries, entries[1:]):
            if previous.logical_operator == "OR":
                if result:
                    continue
            elif not result:
                continue
            result = self._evaluate_entry(entry, record, state)
        return result

    def _evaluate_entry(self, entry, record: ChannelRecord, state: _Pass) -> bool:
        if isinstance(entry, ConditionGroup):
            return self._evaluate_group(entry, record, state)
        result = self.evaluate_condition(entry, record)
        if result.matched and result.captures:
            state.captures.extend(result.captures)
        return result.matched

    # =========================================================================
    # Single Conditions
    # =========================================================================

    def evaluate_condition(self, condition: Condition | dict,
                           record: ChannelRecord) -> EvaluationResult:
        """Evaluate one condition, applying negate."""
        if isinstance(condition, dict):
            condition = Condition.from_dict(condition)

        result = self._evaluate_operator(condition, record)

        if condition.negate:
            result = EvaluationResult(
                matched=not result.matched,
                condition_type=f"not({result.condition_type})",
                details=f"Negated: {result.details}",
            )
        return result

    def _evaluate_operator(self, condition: Condition, record: ChannelRecord) -> EvaluationResult:
        op = condition.operator
        actual = record.value_of(condition.field)
        expected = condition.value

        if op == Operator.EQUALS.value:
            matched = actual == expected
            return EvaluationResult(matched, op, f"'{actual}' {'==' if matched else '!='} '{expected}'")
        if op == Operator.NOT_EQUALS.value:
            matched = actual != expected
            return EvaluationResult(matched, op, f"'{actual}' {'!=' if matched else '=='} '{expected}'")

        if op in REGEX_OPERATORS:
            return self._evaluate_regex(condition, actual)

        case_sensitive = condition.case_sensitive or get_catalog().is_case_sensitive(
            record.source_type, condition.field
        )
        if not case_sensitive:
            actual_cmp, expected_cmp = actual.lower(), expected.lower()
        else:
            actual_cmp, expected_cmp = actual, expected

        if op == Operator.CONTAINS.value:
            matched = expected_cmp in actual_cmp
            return EvaluationResult(matched, op,
                                    f"'{actual}' {'contains' if matched else 'does not contain'} '{expected}'")
        if op == Operator.NOT_CONTAINS.value:
            matched = expected_cmp not in actual_cmp
            return EvaluationResult(matched, op,
                                    f"'{actual}' {'does not contain' if matched else 'contains'} '{expected}'")
        if op == Operator.STARTS_WITH.value:
            matched = actual_cmp.startswith(expected_cmp)
            return EvaluationResult(matched, op,
                                    f"'{actual}' {'starts' if matched else 'does not start'} with '{expected}'")
        if op == Operator.ENDS_WITH.value:
            matched = actual_cmp.endswith(expected_cmp)
            return EvaluationResult(matched, op,
                                    f"'{actual}' {'ends' if matched else 'does not end'} with '{expected}'")

        raise OperatorError(f"Unknown operator: {op}", token=op)

    def _evaluate_regex(self, condition: Condition, actual: str) -> EvaluationResult:
        flags = 0 if condition.case_sensitive else re.IGNORECASE
        regex = self.regex_cache.get(condition.value, flags)
        match = regex.search(actual)
        if condition.operator == Operator.MATCHES.value:
            captures = tuple(g or "" for g in match.groups()) if match else ()
            return EvaluationResult(
                bool(match), condition.operator,
                f"'{actual}' {'matches' if match else 'does not match'} /{condition.value}/",
                captures,
            )
        return EvaluationResult(
            match is None, condition.operator,
            f"'{actual}' {'does not match' if match is None else 'matches'} /{condition.value}/",
        )

    # =========================================================================
    # Cache Priming
    # =========================================================================

    def prime(self, items) -> int:
        """
        Precompile every regex referenced by rules/filters (or ASTs/groups).

        Returns the number of patterns compiled or already cached.
        """
        count = 0
        for item in items:
            if isinstance(item, ConditionGroup):
                group, actions = item, ()
            elif hasattr(item, "ast"):
                ast = item.ast()
                group, actions = ast.conditions, ast.actions
            elif hasattr(item, "condition_group"):
                group, actions = item.condition_group(), ()
            else:
                group, actions = item.conditions, item.actions
            for condition in group.iter_conditions():
                if condition.operator in REGEX_OPERATORS:
                    self.regex_cache.get(condition.value, 0 if condition.case_sensitive else re.IGNORECASE)
                    count += 1
            for action in actions:
                payload = action.payload if isinstance(action.payload, dict) else {}
                if payload.get("transform") == "regex_replace" and payload.get("pattern"):
                    self.regex_cache.get(payload["pattern"],
                                         0 if payload.get("case_sensitive") else re.IGNORECASE)
                    count += 1
        logger.debug("[EVALUATOR] Primed %s regex pattern(s)", count)
        return count
