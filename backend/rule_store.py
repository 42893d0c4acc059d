"""
Rule store.

CRUD for mapping rules, filters and proxies on SQLAlchemy, dense priority
reordering, loading stored rows as immutable rule-engine value objects, and
YAML export/import of mapping rules.
"""
import json
import logging
from datetime import datetime
from typing import List, Optional

import yaml
from sqlalchemy import func
from sqlalchemy.orm import Session

from field_catalog import SOURCE_TYPES, STREAM
from models import ChannelFilter, MappingRule, ProxyEpgSource, ProxyFilter, ProxyStreamSource, StreamProxy
from rule_errors import RuleNotFoundError, RuleValidationError
from rule_schema import Filter, LogicalOperator, Proxy, Rule, RuleScope, normalize_priorities
from rule_validator import validate_filter, validate_rule


logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 255
EXPORT_VERSION = 1


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------

def _validate_name(name: Optional[str]) -> None:
    if not name or not name.strip():
        raise RuleValidationError("Name is required")
    if len(name) > MAX_NAME_LENGTH:
        raise RuleValidationError(f"Name exceeds maximum length ({MAX_NAME_LENGTH})")


def _validate_source_type(source_type: str) -> None:
    if source_type not in SOURCE_TYPES:
        raise RuleValidationError(f"Unknown source type: {source_type}")


def _check_rule(data: dict) -> None:
    _validate_name(data.get("name"))
    _validate_source_type(data.get("source_type") or STREAM)
    scope = data.get("scope") or RuleScope.GLOBAL.value
    if scope not in [s.value for s in RuleScope]:
        raise RuleValidationError(f"Unknown scope: {scope}")
    if scope == RuleScope.SOURCES.value and not data.get("source_ids"):
        raise RuleValidationError("Scope 'sources' requires at least one source id")
    report = validate_rule(
        data.get("conditions"),
        data.get("actions"),
        data.get("expression"),
        data.get("source_type") or STREAM,
    )
    if not report.valid:
        raise RuleValidationError(report.first_error(), report)


def _check_filter(data: dict) -> None:
    _validate_name(data.get("name"))
    _validate_source_type(data.get("source_type") or STREAM)
    try:
        LogicalOperator.coerce(data.get("logical_operator"))
    except ValueError:
        raise RuleValidationError(f"Unknown logical operator: {data.get('logical_operator')}")
    report = validate_filter(data.get("conditions"), data.get("expression"),
                             data.get("source_type") or STREAM)
    if not report.valid:
        raise RuleValidationError(report.first_error(), report)


def _next_sort_order(session: Session, column) -> int:
    current = session.query(func.max(column)).scalar()
    return (current or 0) + 1


# ---------------------------------------------------------------------------
# Mapping rules
# ---------------------------------------------------------------------------

def create_rule(session: Session, data: dict) -> MappingRule:
    """Validate and persist a new mapping rule.

    Raises:
        RuleValidationError: If the rule is invalid.
    """
    _check_rule(data)
    rule = MappingRule(
        name=data["name"].strip(),
        description=data.get("description"),
        is_active=data.get("is_active", True),
        source_type=data.get("source_type") or STREAM,
        scope=data.get("scope") or RuleScope.GLOBAL.value,
        expression=data.get("expression") or None,
        sort_order=data.get("sort_order") or _next_sort_order(session, MappingRule.sort_order),
        created_at=datetime.utcnow(),
        updated_at=datetime.utcnow(),
    )
    rule.set_conditions(data.get("conditions"))
    rule.set_actions(data.get("actions"))
    rule.set_source_ids(data.get("source_ids"))
    session.add(rule)
    session.commit()
    session.refresh(rule)
    logger.info("[RULE-STORE] Created rule %s (%s)", rule.id, rule.name)
    return rule


def get_rule(session: Session, rule_id: int) -> MappingRule:
    """Raises RuleNotFoundError if missing."""
    rule = session.query(MappingRule).filter(MappingRule.id == rule_id).first()
    if rule is None:
        raise RuleNotFoundError(f"Rule with id {rule_id} not found")
    return rule


def update_rule(session: Session, rule_id: int, data: dict) -> MappingRule:
    """Apply a partial update; the merged rule is validated before saving."""
    rule = get_rule(session, rule_id)
    merged = {**rule.to_dict(), **{k: v for k, v in data.items() if v is not None}}
    if "expression" in data and data["expression"] in ("", None) and "conditions" in data:
        merged["expression"] = None
    _check_rule(merged)

    rule.name = merged["name"].strip()
    rule.description = merged.get("description")
    rule.is_active = merged.get("is_active", True)
    rule.source_type = merged.get("source_type") or STREAM
    rule.scope = merged.get("scope") or RuleScope.GLOBAL.value
    rule.expression = merged.get("expression") or None
    rule.sort_order = merged.get("sort_order") or rule.sort_order
    rule.set_conditions(merged.get("conditions"))
    rule.set_actions(merged.get("actions"))
    rule.set_source_ids(merged.get("source_ids"))
    rule.updated_at = datetime.utcnow()
    session.commit()
    session.refresh(rule)
    return rule


def delete_rule(session: Session, rule_id: int) -> None:
    rule = get_rule(session, rule_id)
    session.delete(rule)
    session.commit()
    logger.info("[RULE-STORE] Deleted rule %s", rule_id)


def list_rules(session: Session, source_type: Optional[str] = None,
               active_only: bool = False) -> List[MappingRule]:
    """Rules in execution order (sort_order, then id)."""
    q = session.query(MappingRule)
    if source_type:
        q = q.filter(MappingRule.source_type == source_type)
    if active_only:
        q = q.filter(MappingRule.is_active == True)  # noqa: E712
    return q.order_by(MappingRule.sort_order, MappingRule.id).all()


def reorder_rules(session: Session, pairs: list) -> List[MappingRule]:
    """Rewrite sort_order densely from (rule_id, new_priority) pairs.

    Rules not named in pairs keep their relative order after the named ones.

    Raises:
        RuleNotFoundError: If a rule id does not exist.
        RuleValidationError: If a rule id is repeated.
    """
    return _reorder(session, MappingRule, pairs, list_rules(session), "sort_order", "Rule")


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------

def create_filter(session: Session, data: dict) -> ChannelFilter:
    _check_filter(data)
    channel_filter = ChannelFilter(
        name=data["name"].strip(),
        description=data.get("description"),
        source_type=data.get("source_type") or STREAM,
        expression=data.get("expression") or None,
        logical_operator=LogicalOperator.coerce(data.get("logical_operator")).value,
        is_active=data.get("is_active", True),
        is_inverse=data.get("is_inverse", False),
        starting_channel_number=data.get("starting_channel_number") or 1,
        sort_order=data.get("sort_order") or _next_sort_order(session, ChannelFilter.sort_order),
        created_at=datetime.utcnow(),
        updated_at=datetime.utcnow(),
    )
    channel_filter.set_conditions(data.get("conditions"))
    session.add(channel_filter)
    session.commit()
    session.refresh(channel_filter)
    logger.info("[RULE-STORE] Created filter %s (%s)", channel_filter.id, channel_filter.name)
    return channel_filter


def get_filter(session: Session, filter_id: int) -> ChannelFilter:
    channel_filter = session.query(ChannelFilter).filter(ChannelFilter.id == filter_id).first()
    if channel_filter is None:
        raise RuleNotFoundError(f"Filter with id {filter_id} not found")
    return channel_filter


def update_filter(session: Session, filter_id: int, data: dict) -> ChannelFilter:
    channel_filter = get_filter(session, filter_id)
    merged = {**channel_filter.to_dict(), **{k: v for k, v in data.items() if v is not None}}
    _check_filter(merged)

    channel_filter.name = merged["name"].strip()
    channel_filter.description = merged.get("description")
    channel_filter.source_type = merged.get("source_type") or STREAM
    channel_filter.expression = merged.get("expression") or None
    channel_filter.logical_operator = LogicalOperator.coerce(merged.get("logical_operator")).value
    channel_filter.is_active = merged.get("is_active", True)
    channel_filter.is_inverse = merged.get("is_inverse", False)
    channel_filter.starting_channel_number = merged.get("starting_channel_number") or 1
    channel_filter.set_conditions(merged.get("conditions"))
    channel_filter.updated_at = datetime.utcnow()
    session.commit()
    session.refresh(channel_filter)
    return channel_filter


def delete_filter(session: Session, filter_id: int) -> None:
    channel_filter = get_filter(session, filter_id)
    session.query(ProxyFilter).filter(ProxyFilter.filter_id == filter_id).delete()
    session.delete(channel_filter)
    session.commit()
    logger.info("[RULE-STORE] Deleted filter %s", filter_id)


def list_filters(session: Session) -> List[ChannelFilter]:
    return session.query(ChannelFilter).order_by(ChannelFilter.sort_order, ChannelFilter.id).all()


def reorder_filters(session: Session, pairs: list) -> List[ChannelFilter]:
    return _reorder(session, ChannelFilter, pairs, list_filters(session), "sort_order", "Filter")


# ---------------------------------------------------------------------------
# Proxies
# ---------------------------------------------------------------------------

def create_proxy(session: Session, data: dict) -> StreamProxy:
    """Create a proxy with its source and filter attachments.

    Source and filter priorities are normalized to dense 1-based sequences.
    """
    _validate_name(data.get("name"))
    if session.query(StreamProxy).filter(StreamProxy.name == data["name"].strip()).first():
        raise RuleValidationError(f"Proxy '{data['name']}' already exists")

    mapping_rules = data.get("mapping_rules")
    proxy = StreamProxy(
        name=data["name"].strip(),
        starting_channel_number=data.get("starting_channel_number") or 1,
        use_all_rules=mapping_rules is None,
        mapping_rule_ids=None if mapping_rules is None else _dump_ids(mapping_rules),
        created_at=datetime.utcnow(),
        updated_at=datetime.utcnow(),
    )

    for source_id, priority, item in _ordered_refs(data.get("stream_sources"), "source_id"):
        proxy.stream_sources.append(ProxyStreamSource(
            source_id=str(source_id), name=item.get("name"), priority_order=priority))
    for source_id, priority, item in _ordered_refs(data.get("epg_sources"), "source_id"):
        proxy.epg_sources.append(ProxyEpgSource(
            source_id=str(source_id), name=item.get("name"), priority_order=priority))
    for filter_id, priority, item in _ordered_refs(data.get("filters"), "filter_id"):
        get_filter(session, filter_id)
        proxy.filters.append(ProxyFilter(
            filter_id=filter_id, priority_order=priority, is_active=item.get("is_active", True)))

    session.add(proxy)
    session.commit()
    session.refresh(proxy)
    logger.info("[RULE-STORE] Created proxy %s (%s)", proxy.id, proxy.name)
    return proxy


def get_proxy(session: Session, proxy_id: int) -> StreamProxy:
    proxy = session.query(StreamProxy).filter(StreamProxy.id == proxy_id).first()
    if proxy is None:
        raise RuleNotFoundError(f"Proxy with id {proxy_id} not found")
    return proxy


def list_proxies(session: Session) -> List[StreamProxy]:
    return session.query(StreamProxy).order_by(StreamProxy.name).all()


def reorder_proxy_filters(session: Session, proxy_id: int, pairs: list) -> List[ProxyFilter]:
    """Rewrite a proxy's filter priority_order from (filter_id, new_priority) pairs."""
    proxy = get_proxy(session, proxy_id)
    by_filter = {link.filter_id: link for link in proxy.filters}
    for filter_id, _ in pairs:
        if filter_id not in by_filter:
            raise RuleNotFoundError(f"Filter {filter_id} is not attached to proxy {proxy_id}")
    try:
        ordered = normalize_priorities(pairs)
    except ValueError as e:
        raise RuleValidationError(str(e))

    position = 0
    for position, (filter_id, priority) in enumerate(ordered, 1):
        by_filter[filter_id].priority_order = priority
    named = {filter_id for filter_id, _ in pairs}
    for link in sorted(proxy.filters, key=lambda f: f.priority_order):
        if link.filter_id not in named:
            position += 1
            link.priority_order = position
    proxy.updated_at = datetime.utcnow()
    session.commit()
    session.refresh(proxy)
    return sorted(proxy.filters, key=lambda f: f.priority_order)


def _ordered_refs(items: Optional[list], key: str) -> list:
    items = items or []
    pairs = [(item[key], item.get("priority_order") or index) for index, item in enumerate(items, 1)]
    try:
        ordered = normalize_priorities(pairs)
    except ValueError as e:
        raise RuleValidationError(str(e))
    by_id = {item[key]: item for item in items}
    return [(ref_id, priority, by_id[ref_id]) for ref_id, priority in ordered]


def _dump_ids(ids: list) -> str:
    return json.dumps(list(ids))


# ---------------------------------------------------------------------------
# Reordering
# ---------------------------------------------------------------------------

def _reorder(session: Session, model, pairs: list, current: list, column: str, label: str) -> list:
    by_id = {row.id: row for row in current}
    for item_id, _ in pairs:
        if item_id not in by_id:
            raise RuleNotFoundError(f"{label} with id {item_id} not found")
    try:
        ordered = normalize_priorities(pairs)
    except ValueError as e:
        raise RuleValidationError(str(e))

    position = 0
    for position, (item_id, priority) in enumerate(ordered, 1):
        setattr(by_id[item_id], column, priority)
    named = {item_id for item_id, _ in pairs}
    for row in current:
        if row.id not in named:
            position += 1
            setattr(row, column, position)

    session.commit()
    logger.info("[RULE-STORE] Reordered %s %s(s)", len(current), label.lower())
    return session.query(model).order_by(getattr(model, column), model.id).all()


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------

def load_rule(session: Session, rule_id: int) -> Rule:
    return Rule.from_dict(get_rule(session, rule_id).to_dict())


def load_rules(session: Session, rule_ids: Optional[list] = None,
               source_type: Optional[str] = None, active_only: bool = True) -> List[Rule]:
    """Stored rules as immutable Rule objects, in execution order."""
    rows = list_rules(session, source_type, active_only)
    if rule_ids is not None:
        wanted = set(rule_ids)
        rows = [r for r in rows if r.id in wanted]
    return [Rule.from_dict(r.to_dict()) for r in rows]


def load_filter(session: Session, filter_id: int) -> Filter:
    return Filter.from_dict(get_filter(session, filter_id).to_dict())


def load_filters(session: Session, filter_ids: Optional[list] = None) -> List[Filter]:
    rows = list_filters(session)
    if filter_ids is not None:
        wanted = set(filter_ids)
        rows = [f for f in rows if f.id in wanted]
    return [Filter.from_dict(f.to_dict()) for f in rows]


def load_proxy(session: Session, proxy_id: int) -> Proxy:
    return Proxy.from_dict(get_proxy(session, proxy_id).to_dict())


# ---------------------------------------------------------------------------
# YAML export / import
# ---------------------------------------------------------------------------

_EXPORT_FIELDS = ("name", "description", "is_active", "source_type", "scope", "source_ids",
                  "conditions", "actions", "expression", "sort_order")


def export_rules_yaml(session: Session, rule_ids: Optional[list] = None) -> str:
    """Export mapping rules (all, or the given ids) as a YAML document."""
    rows = list_rules(session)
    if rule_ids is not None:
        wanted = set(rule_ids)
        rows = [r for r in rows if r.id in wanted]

    rules = []
    for row in rows:
        data = row.to_dict()
        entry = {k: data[k] for k in _EXPORT_FIELDS if data.get(k) not in (None, "", [])}
        entry.setdefault("is_active", data["is_active"])
        rules.append(entry)

    return yaml.dump({"version": EXPORT_VERSION, "mapping_rules": rules},
                     default_flow_style=False, sort_keys=False, allow_unicode=True)


def import_rules_yaml(session: Session, text: str, replace: bool = False) -> List[MappingRule]:
    """Import mapping rules from YAML. Everything is validated before anything is written.

    Args:
        replace: Delete all existing rules first.

    Raises:
        RuleValidationError: On malformed YAML or any invalid rule.
    """
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise RuleValidationError(f"Invalid YAML: {e}")

    if isinstance(data, dict):
        items = data.get("mapping_rules")
    else:
        items = data
    if not isinstance(items, list):
        raise RuleValidationError("YAML must contain a 'mapping_rules' list")

    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise RuleValidationError(f"mapping_rules[{index}] must be a mapping")
        try:
            _check_rule(item)
        except RuleValidationError as e:
            raise RuleValidationError(f"mapping_rules[{index}] ({item.get('name')}): {e.message}",
                                      e.report)

    if replace:
        session.query(MappingRule).delete()
        session.commit()

    created = []
    for item in items:
        item = {k: v for k, v in item.items() if k != "sort_order"}
        created.append(create_rule(session, item))
    logger.info("[RULE-STORE] Imported %s rule(s) from YAML", len(created))
    return created
