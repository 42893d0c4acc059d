"""
Rule Schema Definitions

Defines conditions, condition groups, actions, mapping rules, filters and
proxies. All of these are immutable value objects during an evaluation pass;
they serialize to and from plain dicts for storage and the HTTP layer.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator, Optional, Union

from field_catalog import STREAM, SOURCE_TYPES


# =============================================================================
# Enums
# =============================================================================

class Operator(str, Enum):
    """Comparison operators for conditions."""
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    MATCHES = "matches"          # Regex search
    NOT_MATCHES = "not_matches"  # Regex search, inverted

    @classmethod
    def values(cls) -> list[str]:
        return [op.value for op in cls]


REGEX_OPERATORS = (Operator.MATCHES.value, Operator.NOT_MATCHES.value)


class LogicalOperator(str, Enum):
    """Connector linking an entry to the next entry of the same group."""
    AND = "AND"
    OR = "OR"

    @classmethod
    def coerce(cls, value: Optional[str], default: str = "AND") -> "LogicalOperator":
        """Accept any case and the ALL/ANY aliases."""
        text = str(value or default).upper()
        if text == "ALL":
            text = "AND"
        elif text == "ANY":
            text = "OR"
        return cls(text)


class ActionType(str, Enum):
    """Mutation actions a mapping rule can perform."""
    SET_VALUE = "set_value"
    SET_DEFAULT_IF_EMPTY = "set_default_if_empty"
    SET_LOGO = "set_logo"
    SET_LABEL = "set_label"
    TRANSFORM_VALUE = "transform_value"
    CLEAR_VALUE = "clear_value"


class RuleScope(str, Enum):
    GLOBAL = "global"
    SOURCES = "sources"


# =============================================================================
# Conditions
# =============================================================================

@dataclass(frozen=True)
class Condition:
    """
    A single field comparison.

        Condition(field="group_title", operator="contains", value="News")

    logical_operator links this condition to the next entry of its group.
    """
    field: str
    operator: str
    value: str = ""
    logical_operator: str = LogicalOperator.AND.value
    case_sensitive: bool = False
    negate: bool = False

    def to_dict(self) -> dict:
        result = {
            "field": self.field,
            "operator": self.operator,
            "value": self.value,
            "logical_operator": self.logical_operator,
        }
        if self.case_sensitive:
            result["case_sensitive"] = True
        if self.negate:
            result["negate"] = True
        return result

    @classmethod
    def from_dict(cls, data: dict, default_logical: str = "AND") -> "Condition":
        if isinstance(data, Condition):
            return data
        value = data.get("value")
        return cls(
            field=data.get("field", ""),
            operator=data.get("operator", ""),
            value="" if value is None else str(value),
            logical_operator=LogicalOperator.coerce(
                data.get("logical_operator") or data.get("connector"), default_logical
            ).value,
            case_sensitive=bool(data.get("case_sensitive", False)),
            negate=bool(data.get("negate", False)),
        )

    def validate(self) -> list[str]:
        """Structural check. Returns error messages (empty if valid)."""
        errors = []
        if not self.field:
            errors.append("Condition requires a field")
        if self.operator not in Operator.values():
            errors.append(f"Unknown operator: {self.operator}")
        return errors


@dataclass(frozen=True)
class ConditionGroup:
    """
    A nested list of conditions and groups.

    An empty group evaluates to true. logical_operator links the group to its
    next sibling when nested.
    """
    entries: tuple = ()
    logical_operator: str = LogicalOperator.AND.value

    def __len__(self) -> int:
        return len(self.entries)

    def to_dict(self) -> dict:
        return {
            "conditions": [e.to_dict() for e in self.entries],
            "logical_operator": self.logical_operator,
        }

    @classmethod
    def from_list(cls, items: Optional[list], default_logical: str = "AND",
                  logical_operator: str = "AND") -> "ConditionGroup":
        return cls(
            entries=tuple(entry_from_dict(item, default_logical) for item in (items or [])),
            logical_operator=LogicalOperator.coerce(logical_operator).value,
        )

    @classmethod
    def from_dict(cls, data: dict, default_logical: str = "AND") -> "ConditionGroup":
        if isinstance(data, ConditionGroup):
            return data
        return cls.from_list(
            data.get("conditions"),
            default_logical,
            data.get("logical_operator") or default_logical,
        )

    def iter_conditions(self) -> Iterator[Condition]:
        """Depth-first walk over every leaf condition."""
        for entry in self.entries:
            if isinstance(entry, ConditionGroup):
                yield from entry.iter_conditions()
            else:
                yield entry

    def is_flat(self) -> bool:
        return all(isinstance(e, Condition) for e in self.entries)


ConditionEntry = Union[Condition, ConditionGroup]


def entry_from_dict(data: Any, default_logical: str = "AND") -> ConditionEntry:
    """Build a Condition, or a ConditionGroup when the dict nests conditions."""
    if isinstance(data, (Condition, ConditionGroup)):
        return data
    if not isinstance(data, dict):
        raise TypeError(f"Condition entries must be objects, got {type(data).__name__}")
    if "conditions" in data:
        return ConditionGroup.from_dict(data, default_logical)
    return Condition.from_dict(data, default_logical)


# =============================================================================
# Actions
# =============================================================================

@dataclass(frozen=True)
class Action:
    """
    A single mutation.

    payload depends on action_type:
        set_value / set_default_if_empty: literal string ($1..$9 allowed)
        set_logo: logo asset uuid
        set_label: {"key": ..., "value": ...}
        transform_value: {"transform": name, ...directive params}
        clear_value: no payload
    """
    action_type: str
    target_field: Optional[str] = None
    payload: Any = None

    def to_dict(self) -> dict:
        return {
            "action_type": self.action_type,
            "target_field": self.target_field,
            "payload": self.payload,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Action":
        if isinstance(data, Action):
            return data
        payload = data.get("payload")
        if payload is None and "value" in data:
            payload = data["value"]
        return cls(
            action_type=data.get("action_type") or data.get("type", ""),
            target_field=data.get("target_field"),
            payload=payload,
        )


@dataclass(frozen=True)
class RuleAst:
    """Common parsed form of structured and text rules."""
    conditions: ConditionGroup = field(default_factory=ConditionGroup)
    actions: tuple = ()

    def to_dict(self) -> dict:
        return {
            "conditions": [e.to_dict() for e in self.conditions.entries],
            "actions": [a.to_dict() for a in self.actions],
        }


# =============================================================================
# Rules, Filters, Proxies
# =============================================================================

@dataclass(frozen=True)
class Rule:
    """A data-mapping rule: conditions plus actions, authored structured or as text."""
    id: Any
    name: str
    description: str = ""
    is_active: bool = True
    source_type: str = STREAM
    scope: str = RuleScope.GLOBAL.value
    source_ids: tuple = ()
    conditions: tuple = ()
    actions: tuple = ()
    expression: Optional[str] = None
    sort_order: int = 0

    def ast(self) -> RuleAst:
        """Parse to the common AST. Text expressions take precedence."""
        if self.expression:
            from expression_parser import parse_expression
            return parse_expression(self.expression)
        return RuleAst(conditions=ConditionGroup(entries=self.conditions),
                       actions=self.actions)

    def applies_to(self, record) -> bool:
        """Source-type and scope check (conditions are evaluated separately)."""
        if record.source_type != self.source_type:
            return False
        if self.scope == RuleScope.SOURCES.value:
            return record.source_id in self.source_ids or str(record.source_id) in {
                str(s) for s in self.source_ids
            }
        return True

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "is_active": self.is_active,
            "source_type": self.source_type,
            "scope": self.scope,
            "source_ids": list(self.source_ids),
            "conditions": [c.to_dict() for c in self.conditions],
            "actions": [a.to_dict() for a in self.actions],
            "expression": self.expression,
            "sort_order": self.sort_order,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Rule":
        if isinstance(data, Rule):
            return data
        source_type = data.get("source_type") or STREAM
        if source_type not in SOURCE_TYPES:
            raise ValueError(f"Unknown source type: {source_type}")
        return cls(
            id=data.get("id"),
            name=data.get("name", ""),
            description=data.get("description") or "",
            is_active=data.get("is_active", True),
            source_type=source_type,
            scope=data.get("scope") or RuleScope.GLOBAL.value,
            source_ids=tuple(data.get("source_ids") or ()),
            conditions=tuple(entry_from_dict(c) for c in data.get("conditions") or []),
            actions=tuple(Action.from_dict(a) for a in data.get("actions") or []),
            expression=data.get("expression") or None,
            sort_order=data.get("sort_order") or 0,
        )


@dataclass(frozen=True)
class Filter:
    """
    An inclusion filter. Filters carry no actions.

    logical_operator is the default connector for conditions that do not
    name one. is_inverse keeps the records that do NOT match.
    """
    id: Any
    name: str
    description: str = ""
    source_type: str = STREAM
    conditions: tuple = ()
    expression: Optional[str] = None
    logical_operator: str = LogicalOperator.AND.value
    is_active: bool = True
    is_inverse: bool = False
    starting_channel_number: int = 1

    def condition_group(self) -> ConditionGroup:
        if self.expression:
            from expression_parser import parse_expression
            return parse_expression(self.expression).conditions
        return ConditionGroup(entries=self.conditions)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "source_type": self.source_type,
            "conditions": [c.to_dict() for c in self.conditions],
            "expression": self.expression,
            "logical_operator": self.logical_operator,
            "is_active": self.is_active,
            "is_inverse": self.is_inverse,
            "starting_channel_number": self.starting_channel_number,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Filter":
        if isinstance(data, Filter):
            return data
        logical = LogicalOperator.coerce(data.get("logical_operator")).value
        return cls(
            id=data.get("id"),
            name=data.get("name", ""),
            description=data.get("description") or "",
            source_type=data.get("source_type") or STREAM,
            conditions=tuple(entry_from_dict(c, logical) for c in data.get("conditions") or []),
            expression=data.get("expression") or None,
            logical_operator=logical,
            is_active=data.get("is_active", True),
            is_inverse=bool(data.get("is_inverse", False)),
            starting_channel_number=data.get("starting_channel_number") or 1,
        )


@dataclass(frozen=True)
class SourceRef:
    """A stream or EPG source attached to a proxy."""
    source_id: Any
    priority_order: int
    name: Optional[str] = None

    def to_dict(self) -> dict:
        return {"source_id": self.source_id, "priority_order": self.priority_order,
                "name": self.name}


@dataclass(frozen=True)
class ProxyFilterRef:
    """A filter attached to a proxy."""
    filter_id: Any
    priority_order: int
    is_active: bool = True

    def to_dict(self) -> dict:
        return {"filter_id": self.filter_id, "priority_order": self.priority_order,
                "is_active": self.is_active}


@dataclass(frozen=True)
class Proxy:
    """
    A stream proxy lineup.

    mapping_rules=None means every active rule applies.
    """
    id: Any
    name: str
    stream_sources: tuple = ()
    epg_sources: tuple = ()
    filters: tuple = ()
    mapping_rules: Optional[tuple] = None
    starting_channel_number: int = 1

    def sorted_stream_sources(self) -> list[SourceRef]:
        return sorted(self.stream_sources, key=lambda s: s.priority_order)

    def sorted_epg_sources(self) -> list[SourceRef]:
        return sorted(self.epg_sources, key=lambda s: s.priority_order)

    def active_filter_ids(self) -> list:
        return [f.filter_id for f in sorted(self.filters, key=lambda f: f.priority_order)
                if f.is_active]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "stream_sources": [s.to_dict() for s in self.sorted_stream_sources()],
            "epg_sources": [s.to_dict() for s in self.sorted_epg_sources()],
            "filters": [f.to_dict() for f in sorted(self.filters, key=lambda f: f.priority_order)],
            "mapping_rules": list(self.mapping_rules) if self.mapping_rules is not None else None,
            "starting_channel_number": self.starting_channel_number,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Proxy":
        if isinstance(data, Proxy):
            return data
        mapping_rules = data.get("mapping_rules")
        return cls(
            id=data.get("id"),
            name=data.get("name", ""),
            stream_sources=tuple(_source_ref(s, i) for i, s in enumerate(data.get("stream_sources") or [], 1)),
            epg_sources=tuple(_source_ref(s, i) for i, s in enumerate(data.get("epg_sources") or [], 1)),
            filters=tuple(
                ProxyFilterRef(
                    filter_id=f["filter_id"],
                    priority_order=f.get("priority_order") or i,
                    is_active=f.get("is_active", True),
                )
                for i, f in enumerate(data.get("filters") or [], 1)
            ),
            mapping_rules=tuple(mapping_rules) if mapping_rules is not None else None,
            starting_channel_number=data.get("starting_channel_number") or 1,
        )


def _source_ref(data: Any, default_priority: int) -> SourceRef:
    if isinstance(data, SourceRef):
        return data
    return SourceRef(
        source_id=data["source_id"],
        priority_order=data.get("priority_order") or default_priority,
        name=data.get("name"),
    )


# =============================================================================
# Priority Ordering
# =============================================================================

def normalize_priorities(pairs: list) -> list[tuple]:
    """
    Rewrite (id, requested_priority) pairs to a dense 1-based sequence.

    Sorted by requested priority; ties keep input order.

    Raises:
        ValueError: If an id appears more than once
    """
    seen = set()
    for item_id, _ in pairs:
        if item_id in seen:
            raise ValueError(f"Duplicate id in reorder request: {item_id}")
        seen.add(item_id)

    ordered = sorted(enumerate(pairs), key=lambda p: (p[1][1], p[0]))
    return [(item_id, position) for position, (_, (item_id, _)) in enumerate(ordered, 1)]
