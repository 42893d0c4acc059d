"""
Proxy Assembly Pipeline

Builds a proxy lineup from its stream and EPG sources:

1. Merge stream sources by priority, dropping duplicates of earlier sources
2. Merge EPG sources by priority on channel_id (first source wins)
3. Filter streams with the proxy's active filters (before mapping)
4. Map streams and EPG channels with the rule chain
5. Attach each stream's EPG channel by mapped tvg_id
6. Number channels from the proxy's starting channel number
"""
import logging
from dataclasses import dataclass, field, replace
from typing import Optional

from channel_record import ChannelRecord
from config import get_settings
from field_catalog import EPG, STREAM
from rule_engine import RecordError, RuleEngine
from rule_schema import Filter, Proxy, Rule


logger = logging.getLogger(__name__)


@dataclass
class AssemblyResult:
    """Assembled lineup plus counts for the UI."""
    channels: list[ChannelRecord] = field(default_factory=list)
    epg_channels: list[ChannelRecord] = field(default_factory=list)
    errors: list[RecordError] = field(default_factory=list)
    rule_stats: list = field(default_factory=list)
    total_input: int = 0
    after_merge: int = 0
    after_filters: int = 0
    duplicates: int = 0

    def to_dict(self) -> dict:
        return {
            "channels": [c.to_dict() for c in self.channels],
            "epg_channels": [c.to_dict() for c in self.epg_channels],
            "errors": [e.to_dict() for e in self.errors],
            "rule_stats": [s.to_dict() for s in self.rule_stats],
            "counts": {
                "total_input": self.total_input,
                "after_merge": self.after_merge,
                "after_filters": self.after_filters,
                "duplicates": self.duplicates,
            },
        }


class AssemblyPipeline:
    """
    Assembles one proxy.

    Usage:
        pipeline = AssemblyPipeline()
        result = pipeline.assemble(proxy, streams_by_source, epg_by_source, filters, rules)
    """

    def __init__(self, engine: Optional[RuleEngine] = None, dedup_keys: Optional[list[str]] = None):
        self.engine = engine or RuleEngine()
        self.dedup_keys = dedup_keys or list(get_settings().dedup_keys)

    def assemble(self, proxy: Proxy | dict, stream_records_by_source: dict,
                 epg_records_by_source: Optional[dict] = None,
                 filters: Optional[list] = None, rules: Optional[list] = None,
                 max_workers: Optional[int] = None) -> AssemblyResult:
        """
        Args:
            proxy: Proxy definition (sources, filter refs, rule refs)
            stream_records_by_source: source_id -> list of stream records/dicts
            epg_records_by_source: source_id -> list of EPG records/dicts
            filters: Filter definitions; only those the proxy references are used
            rules: Rule definitions; narrowed to proxy.mapping_rules when set
        """
        proxy = Proxy.from_dict(proxy)
        epg_records_by_source = epg_records_by_source or {}
        result = AssemblyResult()

        # 1. Merge streams
        merged = self._merge_streams(proxy, stream_records_by_source, result)
        result.after_merge = len(merged)

        # 2. Merge EPG
        epg_merged = self._merge_epg(proxy, epg_records_by_source)

        # 3. Filter
        proxy_filters = self._proxy_filters(proxy, filters or [])
        filtered = self.engine.filter_records(proxy_filters, merged)
        result.errors.extend(filtered.errors)
        result.after_filters = len(filtered.records)

        # 4. Map
        proxy_rules = self._proxy_rules(proxy, rules or [])
        stream_rules = [r for r in proxy_rules if r.source_type == STREAM]
        epg_rules = [r for r in proxy_rules if r.source_type == EPG]

        stream_chain = self.engine.apply_rule_chain(stream_rules, filtered.records, max_workers)
        epg_chain = self.engine.apply_rule_chain(epg_rules, epg_merged, max_workers)
        result.errors.extend(stream_chain.errors)
        result.errors.extend(epg_chain.errors)
        result.rule_stats = list(stream_chain.rule_stats.values()) + list(epg_chain.rule_stats.values())

        # 5. Attach EPG
        epg_by_id = {}
        for record in epg_chain.records:
            channel_id = record.get("channel_id")
            if channel_id and channel_id not in epg_by_id:
                epg_by_id[channel_id] = record

        referenced = {}
        number = proxy.starting_channel_number
        for record in stream_chain.records:
            epg_record = epg_by_id.get(record.get("tvg_id") or "")
            if epg_record is not None:
                record = record.with_epg(epg_record)
                referenced.setdefault(epg_record.get("channel_id"), epg_record)
            # 6. Number
            result.channels.append(record.with_channel_number(number))
            number += 1

        result.epg_channels = list(referenced.values())

        logger.info(
            "[ASSEMBLY] Proxy %s: input=%s merged=%s duplicates=%s filtered=%s channels=%s epg=%s errors=%s",
            proxy.id, result.total_input, result.after_merge, result.duplicates,
            result.after_filters, len(result.channels), len(result.epg_channels), len(result.errors),
        )
        return result

    # =========================================================================
    # Merge
    # =========================================================================

    def dedup_key(self, record: ChannelRecord) -> Optional[tuple]:
        """First non-empty configured key field, or None (never deduplicated)."""
        for name in self.dedup_keys:
            value = record.get(name)
            if value is not None and value.strip():
                return (name, value.strip())
        return None

    def _merge_streams(self, proxy: Proxy, by_source: dict, result: AssemblyResult) -> list[ChannelRecord]:
        merged = []
        seen = set()
        for source in proxy.sorted_stream_sources():
            records = _lookup(by_source, source.source_id)
            result.total_input += len(records)
            for item in records:
                record = _to_record(item, STREAM, source)
                key = self.dedup_key(record)
                if key is not None:
                    if key in seen:
                        result.duplicates += 1
                        continue
                    seen.add(key)
                merged.append(record)
        return merged

    def _merge_epg(self, proxy: Proxy, by_source: dict) -> list[ChannelRecord]:
        merged = []
        seen = set()
        for source in proxy.sorted_epg_sources():
            for item in _lookup(by_source, source.source_id):
                record = _to_record(item, EPG, source)
                channel_id = record.get("channel_id")
                if channel_id:
                    if channel_id in seen:
                        continue
                    seen.add(channel_id)
                merged.append(record)
        return merged

    # =========================================================================
    # Proxy References
    # =========================================================================

    @staticmethod
    def _proxy_filters(proxy: Proxy, filters: list) -> list[Filter]:
        by_id = {}
        for item in filters:
            filter_ = Filter.from_dict(item)
            by_id[filter_.id] = filter_
            by_id[str(filter_.id)] = filter_
        selected = []
        for filter_id in proxy.active_filter_ids():
            filter_ = by_id.get(filter_id) or by_id.get(str(filter_id))
            if filter_ is None:
                logger.warning("[ASSEMBLY] Proxy %s references unknown filter %s", proxy.id, filter_id)
                continue
            if filter_.is_active:
                selected.append(filter_)
        return selected

    @staticmethod
    def _proxy_rules(proxy: Proxy, rules: list) -> list[Rule]:
        parsed = [Rule.from_dict(r) for r in rules]
        if proxy.mapping_rules is None:
            return parsed
        wanted = {str(rule_id) for rule_id in proxy.mapping_rules}
        return [r for r in parsed if str(r.id) in wanted]


def _lookup(by_source: dict, source_id) -> list:
    if source_id in by_source:
        return by_source[source_id]
    return by_source.get(str(source_id), [])


def _to_record(item, source_type: str, source) -> ChannelRecord:
    if isinstance(item, ChannelRecord):
        if item.source_id is None:
            return replace(item, source_id=source.source_id,
                           source_name=item.source_name or source.name)
        return item
    return ChannelRecord.from_dict(item, source_type, source_id=source.source_id,
                                   source_name=source.name)
