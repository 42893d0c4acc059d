"""
Rule Validator

Runs independent checks over a rule or filter and aggregates them into one
ValidationReport:

    syntax     quotes, parentheses, condition/assignment shape
    fields     field names against the catalog (warnings with suggestions)
    operators  operator names
    regex      regex values and regex_replace patterns must compile
    actions    action payload shape
    length     literal values longer than max_value_length

Validation is pure; it never touches records.
"""
import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import Optional

from config import get_settings
from expression_parser import ExpressionParser
from field_catalog import STREAM, get_catalog
from rule_errors import ParseError, Severity
from rule_schema import (
    REGEX_OPERATORS,
    Action,
    ActionType,
    ConditionGroup,
    Filter,
    Operator,
    Rule,
    RuleAst,
    entry_from_dict,
)
from transform_registry import replacement_template, validate_directive


logger = logging.getLogger(__name__)


VALID = "valid"
WARNING = "warning"
INVALID = "invalid"


@dataclass
class ValidationIssue:
    """One finding from a validation check."""
    severity: Severity
    check: str
    message: str
    position: Optional[int] = None
    suggestions: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        result = {
            "severity": self.severity.value,
            "check": self.check,
            "message": self.message,
        }
        if self.position is not None:
            result["position"] = self.position
        if self.suggestions:
            result["suggestions"] = self.suggestions
        return result


@dataclass
class ValidationReport:
    """Aggregated result of all checks."""
    issues: list[ValidationIssue] = field(default_factory=list)

    def add_error(self, check: str, message: str, position: Optional[int] = None) -> None:
        self.issues.append(ValidationIssue(Severity.ERROR, check, message, position))

    def add_warning(self, check: str, message: str, position: Optional[int] = None,
                    suggestions: Optional[list[str]] = None) -> None:
        self.issues.append(ValidationIssue(Severity.WARNING, check, message, position,
                                           suggestions or []))

    def merge(self, other: "ValidationReport") -> None:
        self.issues.extend(other.issues)

    @property
    def errors(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.severity == Severity.ERROR]

    @property
    def warnings(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.severity == Severity.WARNING]

    @property
    def overall(self) -> str:
        if self.errors:
            return INVALID
        if self.warnings:
            return WARNING
        return VALID

    @property
    def valid(self) -> bool:
        return self.overall != INVALID

    def first_error(self) -> Optional[str]:
        errors = self.errors
        return errors[0].message if errors else None

    def to_dict(self) -> dict:
        return {
            "overall": self.overall,
            "valid": self.valid,
            "issues": [i.to_dict() for i in self.issues],
            "errors": [i.message for i in self.errors],
            "warnings": [i.message for i in self.warnings],
        }


# =============================================================================
# Entry Points
# =============================================================================

def validate_rule(conditions: Optional[list] = None, actions: Optional[list] = None,
                  expression: Optional[str] = None, source_type: str = STREAM,
                  max_value_length: Optional[int] = None,
                  allow_actions: bool = True) -> ValidationReport:
    """
    Validate a rule given in either authoring form.

    Args:
        conditions: Structured condition dicts (ignored when expression is set)
        actions: Structured action dicts (ignored when expression is set)
        expression: Text expression
        source_type: Record kind whose catalog applies to field names
        max_value_length: Literal length limit (defaults to the configured one)
        allow_actions: False for filters, which carry no actions

    Returns:
        ValidationReport
    """
    report = ValidationReport()
    if max_value_length is None:
        max_value_length = get_settings().max_value_length

    positions: dict[tuple[str, str], list[int]] = {}
    if expression:
        parser = ExpressionParser(expression)
        try:
            ast = parser.parse()
        except ParseError as e:
            report.add_error("syntax", e.message, e.position)
            return report
        for kind, name, position in parser.references:
            positions.setdefault((kind, name), []).append(position)
    else:
        ast = _structured_ast(conditions, actions, report)
        if ast is None:
            return report

    _check_connectors(ast.conditions, report)
    _check_conditions(ast.conditions, source_type, max_value_length, positions, report)
    if ast.actions and not allow_actions:
        report.add_error("syntax", "Filters cannot carry actions")
    elif allow_actions:
        _check_actions(ast.actions, source_type, max_value_length, positions, report)

    if report.errors:
        logger.debug("[VALIDATOR] Rule invalid: %s", report.first_error())
    return report


def validate_filter(conditions: Optional[list] = None, expression: Optional[str] = None,
                    source_type: str = STREAM,
                    max_value_length: Optional[int] = None) -> ValidationReport:
    return validate_rule(conditions, None, expression, source_type, max_value_length,
                         allow_actions=False)


def validate(item, max_value_length: Optional[int] = None) -> ValidationReport:
    """Validate a Rule or Filter value object."""
    conditions = [c.to_dict() for c in item.conditions]
    if isinstance(item, Filter):
        return validate_filter(conditions, item.expression, item.source_type, max_value_length)
    if isinstance(item, Rule):
        actions = [a.to_dict() for a in item.actions]
        return validate_rule(conditions, actions, item.expression, item.source_type,
                             max_value_length)
    raise TypeError(f"Cannot validate {type(item).__name__}")


# =============================================================================
# Checks
# =============================================================================

def _structured_ast(conditions, actions, report: ValidationReport) -> Optional[RuleAst]:
    entries = []
    for i, item in enumerate(conditions or []):
        if not isinstance(item, dict) and not hasattr(item, "to_dict"):
            report.add_error("syntax", f"conditions[{i}] must be an object")
            continue
        try:
            entries.append(entry_from_dict(item))
        except (ValueError, TypeError) as e:
            report.add_error("syntax", f"conditions[{i}]: {e}")
    parsed_actions = []
    for i, item in enumerate(actions or []):
        if not isinstance(item, dict) and not isinstance(item, Action):
            report.add_error("syntax", f"actions[{i}] must be an object")
            continue
        parsed_actions.append(Action.from_dict(item))
    if report.errors:
        return None
    return RuleAst(conditions=ConditionGroup(entries=tuple(entries)), actions=tuple(parsed_actions))


def _check_connectors(group: ConditionGroup, report: ValidationReport) -> None:
    """Warn when AND and OR are mixed at one level without parentheses."""
    connectors = {entry.logical_operator for entry in group.entries[:-1]}
    if len(connectors) > 1:
        report.add_warning(
            "syntax",
            "AND and OR are mixed at the same level; they are applied left to right. "
            "Use parentheses to make grouping explicit",
        )
    for entry in group.entries:
        if isinstance(entry, ConditionGroup):
            if not entry.entries:
                report.add_error("syntax", "Empty condition group")
            _check_connectors(entry, report)


def _position(positions: dict, kind: str, name: str) -> Optional[int]:
    found = positions.get((kind, name))
    return found[0] if found else None


def _check_field(name: str, kind: str, source_type: str, positions: dict,
                 report: ValidationReport) -> None:
    catalog = get_catalog()
    if catalog.is_known(source_type, name):
        return
    suggestions = catalog.suggest(source_type, name)
    hint = f" Did you mean: {', '.join(suggestions)}?" if suggestions else ""
    label = "Unknown field" if kind == "field" else "Unknown target field"
    report.add_warning("fields", f"{label} '{name}' for {source_type} records.{hint}",
                       _position(positions, kind, name), suggestions)


def _check_conditions(group: ConditionGroup, source_type: str, max_value_length: int,
                      positions: dict, report: ValidationReport) -> None:
    for condition in group.iter_conditions():
        if not condition.field:
            report.add_error("syntax", "Condition requires a field")
        else:
            _check_field(condition.field, "field", source_type, positions, report)

        if condition.operator not in Operator.values():
            report.add_error(
                "operators",
                f"Unknown operator '{condition.operator}'. "
                f"Valid operators: {', '.join(Operator.values())}",
                _position(positions, "field", condition.field),
            )
        elif condition.operator in REGEX_OPERATORS:
            flags = 0 if condition.case_sensitive else re.IGNORECASE
            try:
                re.compile(condition.value, flags)
            except re.error as e:
                report.add_error("regex", f"Invalid regex '{condition.value}': {e}",
                                 _position(positions, "field", condition.field))

        if len(condition.value) > max_value_length:
            report.add_error("length", f"Value for '{condition.field}' exceeds "
                                       f"{max_value_length} characters")


def _check_actions(actions: tuple, source_type: str, max_value_length: int,
                   positions: dict, report: ValidationReport) -> None:
    valid_types = [t.value for t in ActionType]
    for i, action in enumerate(actions):
        prefix = f"actions[{i}]"
        if action.action_type not in valid_types:
            report.add_error("actions", f"{prefix}: Unknown action type '{action.action_type}'")
            continue

        if action.action_type == ActionType.SET_LABEL.value:
            payload = action.payload if isinstance(action.payload, dict) else {}
            if not payload.get("key"):
                report.add_error("actions", f"{prefix}: set_label requires a label key")
            value = payload.get("value")
            if value is None:
                report.add_error("actions", f"{prefix}: set_label requires a value")
            elif len(str(value)) > max_value_length:
                report.add_error("length", f"{prefix}: label value exceeds {max_value_length} characters")
            continue

        if action.action_type == ActionType.SET_LOGO.value:
            if action.target_field:
                _check_field(action.target_field, "target", source_type, positions, report)
            try:
                uuid.UUID(str(action.payload))
            except ValueError:
                report.add_error("actions", f"{prefix}: set_logo requires a logo asset UUID, "
                                            f"got '{action.payload}'")
            continue

        if not action.target_field:
            report.add_error("actions", f"{prefix}: {action.action_type} requires a target field")
        else:
            _check_field(action.target_field, "target", source_type, positions, report)

        if action.action_type == ActionType.CLEAR_VALUE.value:
            continue

        if action.action_type == ActionType.TRANSFORM_VALUE.value:
            for message in validate_directive(action.payload):
                report.add_error("actions", f"{prefix}: {message}")
            directive = action.payload if isinstance(action.payload, dict) else {}
            if directive.get("transform") == "regex_replace" and directive.get("pattern"):
                flags = 0 if directive.get("case_sensitive") else re.IGNORECASE
                try:
                    compiled = re.compile(directive["pattern"], flags)
                except re.error as e:
                    report.add_error("regex", f"{prefix}: Invalid regex '{directive['pattern']}': {e}")
                else:
                    replacement = directive.get("replacement")
                    try:
                        # The template is parsed even when nothing matches
                        compiled.sub(replacement_template(replacement), "")
                    except (re.error, TypeError) as e:
                        report.add_error("regex", f"{prefix}: Invalid replacement '{replacement}': {e}")
            for key in ("value", "replacement", "find"):
                if isinstance(directive.get(key), str) and len(directive[key]) > max_value_length:
                    report.add_error("length", f"{prefix}: '{key}' exceeds {max_value_length} characters")
            continue

        # set_value / set_default_if_empty
        if action.payload is None:
            report.add_error("actions", f"{prefix}: {action.action_type} requires a value")
        elif len(str(action.payload)) > max_value_length:
            report.add_error("length", f"{prefix}: value exceeds {max_value_length} characters")
