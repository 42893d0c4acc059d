"""
Rule Engine

Runs filters and data-mapping rules over batches of channel records:

- test_rule / test_filter preview a single rule or filter without saving
- apply_rule_chain applies every active rule in sort order to each record
- filter_records keeps records accepted by every active filter

Errors raised while processing one record never fail the batch; the record
is dropped and a RecordError is reported instead.
"""
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from action_executor import ActionExecutor
from channel_record import ChannelRecord
from config import get_settings
from rule_errors import RuleError
from rule_evaluator import ConditionEvaluator, RegexCache
from rule_schema import Filter, Rule
from rule_validator import validate


logger = logging.getLogger(__name__)


# =============================================================================
# Result Types
# =============================================================================

@dataclass
class RecordError:
    """A failure isolated to one record (or one rule when record_id is None)."""
    error: str
    record_id: Optional[str] = None
    channel_name: Optional[str] = None
    rule_id: Any = None

    def to_dict(self) -> dict:
        return {
            "record_id": self.record_id,
            "channel_name": self.channel_name,
            "rule_id": self.rule_id,
            "error": self.error,
        }


@dataclass
class RuleStats:
    """Observational per-rule counters. Times are in milliseconds."""
    rule_id: Any
    rule_name: str = ""
    processed_count: int = 0
    matched_count: int = 0
    total_execution_time: float = 0.0

    @property
    def avg_execution_time(self) -> float:
        if not self.processed_count:
            return 0.0
        return self.total_execution_time / self.processed_count

    def record(self, matched: bool, elapsed_ms: float) -> None:
        self.processed_count += 1
        if matched:
            self.matched_count += 1
        self.total_execution_time += elapsed_ms

    def to_dict(self) -> dict:
        return {
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "processed_count": self.processed_count,
            "matched_count": self.matched_count,
            "total_execution_time": round(self.total_execution_time, 3),
            "avg_execution_time": round(self.avg_execution_time, 3),
        }


@dataclass
class MatchingChannel:
    """One matched record in a rule preview."""
    record: ChannelRecord
    original: ChannelRecord
    applied_actions: list = field(default_factory=list)  # AppliedAction entries
    diagnostics: Optional[list] = None  # ConditionDiagnostic entries when requested

    @property
    def channel_name(self) -> str:
        return self.original.channel_name

    @property
    def source_name(self) -> Optional[str]:
        return self.original.source_name

    @property
    def original_fields(self) -> dict:
        return self.original.tracked_fields()

    @property
    def mapped_fields(self) -> dict:
        return self.record.tracked_fields()

    def to_dict(self) -> dict:
        result = {
            "record_id": self.original.record_id,
            "channel_name": self.channel_name,
            "source_name": self.source_name,
        }
        for name, value in self.original_fields.items():
            result[f"original_{name}"] = value
        for name, value in self.mapped_fields.items():
            result[f"mapped_{name}"] = value
        result["labels"] = [{"key": k, "value": v} for k, v in self.record.labels]
        result["applied_actions"] = [a.description for a in self.applied_actions]
        if self.diagnostics is not None:
            result["diagnostics"] = [d.to_dict() for d in self.diagnostics]
        return result


@dataclass
class RuleTestResult:
    """Preview of a single rule over a record batch."""
    is_valid: bool
    error: Optional[str] = None
    matched_count: int = 0
    total_channels: int = 0
    matching_channels: list[MatchingChannel] = field(default_factory=list)
    errors: list[RecordError] = field(default_factory=list)
    truncated: bool = False
    validation: Optional[dict] = None

    def to_dict(self) -> dict:
        result = {
            "is_valid": self.is_valid,
            "matched_count": self.matched_count,
            "total_channels": self.total_channels,
            "matching_channels": [m.to_dict() for m in self.matching_channels],
            "errors": [e.to_dict() for e in self.errors],
            "truncated": self.truncated,
        }
        if self.error is not None:
            result["error"] = self.error
        if self.validation is not None:
            result["validation"] = self.validation
        return result


@dataclass
class FilterTestResult:
    """Preview of a single filter: survivors after inversion, numbered."""
    is_valid: bool
    error: Optional[str] = None
    matched_count: int = 0
    total_channels: int = 0
    channels: list[ChannelRecord] = field(default_factory=list)
    errors: list[RecordError] = field(default_factory=list)
    truncated: bool = False

    def to_dict(self) -> dict:
        result = {
            "is_valid": self.is_valid,
            "matched_count": self.matched_count,
            "total_channels": self.total_channels,
            "channels": [c.to_dict() for c in self.channels],
            "errors": [e.to_dict() for e in self.errors],
            "truncated": self.truncated,
        }
        if self.error is not None:
            result["error"] = self.error
        return result


@dataclass
class FilterRunResult:
    records: list[ChannelRecord] = field(default_factory=list)
    errors: list[RecordError] = field(default_factory=list)


@dataclass
class RuleChainResult:
    """Output of apply_rule_chain."""
    records: list[ChannelRecord] = field(default_factory=list)
    errors: list[RecordError] = field(default_factory=list)
    rule_stats: dict = field(default_factory=dict)  # rule_id -> RuleStats

    def to_dict(self) -> dict:
        return {
            "records": [r.to_dict() for r in self.records],
            "errors": [e.to_dict() for e in self.errors],
            "rule_stats": [s.to_dict() for s in self.rule_stats.values()],
        }


@dataclass
class _PreparedRule:
    rule: Rule
    conditions: Any
    actions: tuple


# =============================================================================
# Engine
# =============================================================================

class RuleEngine:
    """
    Filter and data-mapping rule runner.

    Usage:
        engine = RuleEngine()
        preview = engine.test_rule(rule, records)
        result = engine.apply_rule_chain(rules, records)
    """

    def __init__(self, evaluator: Optional[ConditionEvaluator] = None, settings=None,
                 clock: Callable[[], float] = time.monotonic):
        self.settings = settings or get_settings()
        self.evaluator = evaluator or ConditionEvaluator(RegexCache(self.settings.regex_cache_size))
        self.executor = ActionExecutor(compile_regex=self.evaluator.regex_cache.get)
        self.clock = clock

    # -------------------------------------------------------------------------
    # Preview
    # -------------------------------------------------------------------------

    def test_rule(self, rule: Rule | dict, records: list,
                  include_diagnostics: bool = False) -> RuleTestResult:
        """
        Preview a rule over records without persisting anything.

        Validation runs first; an invalid rule evaluates nothing. With
        include_diagnostics each matching channel also carries the outcome
        of every condition.
        """
        rule = Rule.from_dict(rule)
        records = [_as_record(r, rule.source_type) for r in records]
        result = RuleTestResult(is_valid=True, total_channels=len(records))

        report = validate(rule, self.settings.max_value_length)
        result.validation = report.to_dict()
        if not report.valid:
            result.is_valid = False
            result.error = report.first_error()
            return result

        ast = rule.ast()
        self.evaluator.prime([ast.conditions])
        deadline = self.clock() + self.settings.preview_timeout_seconds

        for record in records:
            if self.clock() > deadline:
                result.truncated = True
                logger.warning("[RULE-ENGINE] Preview of rule %s truncated after %s seconds",
                               rule.id, self.settings.preview_timeout_seconds)
                break
            if not rule.applies_to(record):
                continue
            try:
                matched, captures = self.evaluator.evaluate_with_captures(ast.conditions, record)
                if not matched:
                    continue
                mapped, applied = self.executor.apply(ast.actions, record, captures)
                diagnostics = None
                if include_diagnostics:
                    _, diagnostics = self.evaluator.evaluate_with_diagnostics(ast.conditions, record)
            except Exception as e:
                result.errors.append(_record_error(e, record, rule.id))
                continue
            result.matching_channels.append(MatchingChannel(mapped, record, applied, diagnostics))

        result.matched_count = len(result.matching_channels)
        return result

    def test_filter(self, filter_: Filter | dict, records: list) -> FilterTestResult:
        """Preview a filter; survivors are numbered from starting_channel_number."""
        filter_ = Filter.from_dict(filter_)
        records = [_as_record(r, filter_.source_type) for r in records]
        result = FilterTestResult(is_valid=True, total_channels=len(records))

        report = validate(filter_, self.settings.max_value_length)
        if not report.valid:
            result.is_valid = False
            result.error = report.first_error()
            return result

        group = filter_.condition_group()
        self.evaluator.prime([group])
        deadline = self.clock() + self.settings.preview_timeout_seconds
        number = filter_.starting_channel_number

        for record in records:
            if self.clock() > deadline:
                result.truncated = True
                logger.warning("[RULE-ENGINE] Preview of filter %s truncated", filter_.id)
                break
            try:
                accepted = self.evaluator.evaluate(group, record) != filter_.is_inverse
            except Exception as e:
                result.errors.append(_record_error(e, record))
                continue
            if accepted:
                result.channels.append(record.with_channel_number(number))
                number += 1

        result.matched_count = len(result.channels)
        return result

    # -------------------------------------------------------------------------
    # Filtering
    # -------------------------------------------------------------------------

    def accepts(self, filter_: Filter, record: ChannelRecord, group=None) -> bool:
        """Filter decision after inversion. Filters for another record kind accept."""
        if filter_.source_type != record.source_type:
            return True
        group = group if group is not None else filter_.condition_group()
        return self.evaluator.evaluate(group, record) != filter_.is_inverse

    def filter_records(self, filters: list, records: list) -> FilterRunResult:
        """Keep records accepted by every active filter, in filter order."""
        active = [Filter.from_dict(f) for f in filters]
        active = [f for f in active if f.is_active]
        groups = [f.condition_group() for f in active]
        self.evaluator.prime(groups)

        result = FilterRunResult()
        for record in records:
            try:
                keep = all(self.accepts(f, record, g) for f, g in zip(active, groups))
            except Exception as e:
                result.errors.append(_record_error(e, record))
                continue
            if keep:
                result.records.append(record)

        logger.debug("[RULE-ENGINE] %s filter(s) kept %s of %s records",
                     len(active), len(result.records), len(records))
        return result

    # -------------------------------------------------------------------------
    # Rule Chain
    # -------------------------------------------------------------------------

    def apply_rule_chain(self, rules: list, records: list,
                         max_workers: Optional[int] = None) -> RuleChainResult:
        """
        Apply every active rule, in ascending sort_order, to each record.

        Each rule sees the record as left by the previous rule. Records are
        processed in parallel when max_workers > 1; output keeps input order.
        """
        result = RuleChainResult()
        prepared = self._prepare_rules(rules, result)
        for item in prepared:
            result.rule_stats[item.rule.id] = RuleStats(item.rule.id, item.rule.name)

        records = [_as_record(r) for r in records]
        workers = max_workers if max_workers is not None else self.settings.max_workers

        if workers and workers > 1 and len(records) > 1:
            with ThreadPoolExecutor(max_workers=workers) as pool:
                outcomes = list(pool.map(lambda r: self._run_chain(prepared, r), records))
        else:
            outcomes = [self._run_chain(prepared, r) for r in records]

        for mapped, error, timings in outcomes:
            for rule_id, matched, elapsed_ms in timings:
                result.rule_stats[rule_id].record(matched, elapsed_ms)
            if error is not None:
                result.errors.append(error)
            else:
                result.records.append(mapped)

        logger.info("[RULE-ENGINE] Applied %s rule(s) to %s record(s), %s error(s)",
                    len(prepared), len(records), len(result.errors))
        return result

    def _prepare_rules(self, rules: list, result: RuleChainResult) -> list[_PreparedRule]:
        active = [Rule.from_dict(r) for r in rules]
        active = sorted((r for r in active if r.is_active),
                        key=lambda r: (r.sort_order, _id_key(r.id)))
        prepared = []
        for rule in active:
            report = validate(rule, self.settings.max_value_length)
            if not report.valid:
                logger.warning("[RULE-ENGINE] Skipping invalid rule %s (%s): %s",
                               rule.id, rule.name, report.first_error())
                result.errors.append(RecordError(error=report.first_error(), rule_id=rule.id))
                continue
            ast = rule.ast()
            prepared.append(_PreparedRule(rule, ast.conditions, ast.actions))
        self.evaluator.prime([p.rule for p in prepared])
        return prepared

    def _run_chain(self, prepared: list[_PreparedRule], record: ChannelRecord):
        """Returns (mapped_record, error, [(rule_id, matched, elapsed_ms)])."""
        timings = []
        current = record
        for item in prepared:
            if not item.rule.applies_to(current):
                continue
            started = time.perf_counter()
            try:
                matched, captures = self.evaluator.evaluate_with_captures(item.conditions, current)
                if matched:
                    current, _ = self.executor.apply(item.actions, current, captures)
                    current = current.with_applied_rule(item.rule.id)
            except Exception as e:
                timings.append((item.rule.id, False, (time.perf_counter() - started) * 1000))
                logger.warning("[RULE-ENGINE] Rule %s failed on record %s: %s",
                               item.rule.id, record.record_id, e)
                return None, _record_error(e, record, item.rule.id), timings
            timings.append((item.rule.id, matched, (time.perf_counter() - started) * 1000))
        return current, None, timings


def _as_record(item, source_type: Optional[str] = None) -> ChannelRecord:
    if isinstance(item, ChannelRecord):
        return item
    kind = item.get("source_type") or source_type
    return ChannelRecord.from_dict(item, kind) if kind else ChannelRecord.from_dict(item)


def _record_error(error: Exception, record: ChannelRecord, rule_id: Any = None) -> RecordError:
    message = error.message if isinstance(error, RuleError) else f"{type(error).__name__}: {error}"
    return RecordError(error=message, record_id=record.record_id,
                       channel_name=record.channel_name, rule_id=rule_id)


def _id_key(rule_id: Any) -> tuple:
    if isinstance(rule_id, int):
        return (0, rule_id, "")
    return (1, 0, str(rule_id))


# =============================================================================
# Module-level helpers
# =============================================================================

def get_engine() -> RuleEngine:
    """Engine built from the current settings."""
    return RuleEngine()
