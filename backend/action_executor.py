"""
Rule Action Executor

Applies a rule's actions to a channel record, strictly in list order. Each
action sees the record as already mutated by the previous one. Records are
immutable, so the executor returns a new record plus a log of what changed.
"""
import logging
import re
from dataclasses import dataclass
from typing import Any, Optional

from channel_record import ChannelRecord
from field_catalog import DEFAULT_LOGO_FIELD, get_catalog
from rule_errors import EvaluationError
from rule_schema import Action, ActionType
from transform_registry import apply_transform


logger = logging.getLogger(__name__)

LOGO_TOKEN_PREFIX = "@logo:"
EMPTY_DISPLAY = "(empty)"

_CAPTURE_REF = re.compile(r"\$(\d+)")


@dataclass
class AppliedAction:
    """One entry of the applied-actions log."""
    action_type: str
    target: str
    before: Optional[str]
    after: Optional[str]
    description: str

    def to_dict(self) -> dict:
        return {
            "action_type": self.action_type,
            "target": self.target,
            "before": self.before,
            "after": self.after,
            "description": self.description,
        }

    def __str__(self) -> str:
        return self.description


def describe_change(target: str, before: Optional[str], after: Optional[str]) -> str:
    """Render '<target>: <before> → <after>'."""
    return f"{target}: {before or EMPTY_DISPLAY} → {after or EMPTY_DISPLAY}"


def substitute_captures(value: str, captures: Optional[dict]) -> str:
    """Replace $1..$n with regex captures; unknown references stay literal."""
    if not captures or "$" not in value:
        return value
    return _CAPTURE_REF.sub(lambda m: captures.get(m.group(0), m.group(0)), value)


class ActionExecutor:
    """
    Executes mutation actions against records.

    Usage:
        executor = ActionExecutor()
        record, applied = executor.apply(actions, record, captures)
    """

    def __init__(self, compile_regex=None):
        """
        Args:
            compile_regex: Optional (pattern, flags) -> compiled regex, shared
                with the evaluator's cache
        """
        self.compile_regex = compile_regex

    def apply(self, actions, record: ChannelRecord,
              captures: Optional[dict] = None) -> tuple[ChannelRecord, list[AppliedAction]]:
        """
        Apply actions in order.

        Returns:
            (mutated_record, applied_log). Skipped set_default_if_empty
            actions do not appear in the log.

        Raises:
            EvaluationError: If an action cannot be applied
        """
        applied = []
        for action in actions:
            if isinstance(action, dict):
                action = Action.from_dict(action)
            record, entry = self._apply_one(action, record, captures)
            if entry is not None:
                logger.debug("[EXECUTOR] record=%s %s", record.record_id, entry.description)
                applied.append(entry)
        return record, applied

    def _apply_one(self, action: Action, record: ChannelRecord,
                   captures: Optional[dict]) -> tuple[ChannelRecord, Optional[AppliedAction]]:
        action_type = action.action_type

        if action_type == ActionType.SET_VALUE.value:
            value = substitute_captures(_as_text(action.payload), captures)
            return self._set_field(record, action, action.target_field, value)

        if action_type == ActionType.SET_DEFAULT_IF_EMPTY.value:
            current = record.get(action.target_field)
            if current is not None and current.strip():
                return record, None
            value = substitute_captures(_as_text(action.payload), captures)
            return self._set_field(record, action, action.target_field, value)

        if action_type == ActionType.SET_LOGO.value:
            target = action.target_field or DEFAULT_LOGO_FIELD.get(record.source_type, "tvg_logo")
            return self._set_field(record, action, target, f"{LOGO_TOKEN_PREFIX}{action.payload}")

        if action_type == ActionType.SET_LABEL.value:
            payload = action.payload or {}
            key = payload.get("key")
            value = substitute_captures(_as_text(payload.get("value")), captures)
            before = record.label(key)
            entry = AppliedAction(action_type, f"label:{key}", before, value,
                                  f"label {key}: {before or EMPTY_DISPLAY} → {value}")
            return record.with_label(key, value), entry

        if action_type == ActionType.TRANSFORM_VALUE.value:
            target = action.target_field
            before = record.get(target)
            after = apply_transform(before, action.payload or {}, self.compile_regex)
            return self._set_field(record, action, target, after, before)

        if action_type == ActionType.CLEAR_VALUE.value:
            target = action.target_field
            spec = get_catalog().get(record.source_type, target) if target else None
            # Required fields are blanked; optional ones become null
            value = "" if spec is not None and not spec.nullable else None
            return self._set_field(record, action, target, value)

        raise EvaluationError(f"Unknown action type: {action_type}", token=action_type)

    def _set_field(self, record: ChannelRecord, action: Action, target: Optional[str],
                   value: Optional[str], before: Any = None) -> tuple[ChannelRecord, AppliedAction]:
        if not target:
            raise EvaluationError(f"{action.action_type} has no target field")
        if before is None:
            before = record.get(target)
        entry = AppliedAction(action.action_type, target, before, value,
                              describe_change(target, before, value))
        return record.with_field(target, value), entry


def _as_text(value: Any) -> str:
    return "" if value is None else str(value)
