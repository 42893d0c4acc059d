"""
Channel record value type.

A ChannelRecord holds the fields of one stream channel or EPG channel plus
side-channel metadata (labels, rule provenance, attached EPG data). Records
are immutable: every mutation returns a new record, so the original can
always be diffed against the mapped result.
"""
from dataclasses import dataclass, field, replace
from typing import Any, Optional

from field_catalog import EPG, STREAM, get_catalog


@dataclass(frozen=True)
class ChannelRecord:
    """One channel (stream or EPG) flowing through the engine."""
    source_type: str
    fields: dict = field(default_factory=dict)
    record_id: Optional[str] = None
    source_id: Optional[str] = None
    source_name: Optional[str] = None
    labels: tuple = ()  # ((key, value), ...)
    applied_rules: tuple = ()  # rule ids, in application order
    channel_number: Optional[int] = None
    epg: Optional["ChannelRecord"] = None

    def get(self, name: str) -> Optional[str]:
        """Raw field value (None when missing)."""
        return self.fields.get(name)

    def value_of(self, name: str) -> str:
        """Field value for comparison: missing/None becomes ''."""
        value = self.fields.get(name)
        return "" if value is None else str(value)

    @property
    def channel_name(self) -> str:
        return self.value_of("channel_name")

    def with_field(self, name: str, value: Optional[str]) -> "ChannelRecord":
        new_fields = dict(self.fields)
        new_fields[name] = value
        return replace(self, fields=new_fields)

    def with_label(self, key: str, value: str) -> "ChannelRecord":
        return replace(self, labels=self.labels + ((key, value),))

    def label(self, key: str) -> Optional[str]:
        """Latest value attached for a label key."""
        found = None
        for k, v in self.labels:
            if k == key:
                found = v
        return found

    def with_applied_rule(self, rule_id: Any) -> "ChannelRecord":
        return replace(self, applied_rules=self.applied_rules + (rule_id,))

    def with_channel_number(self, number: int) -> "ChannelRecord":
        return replace(self, channel_number=number)

    def with_epg(self, epg_record: Optional["ChannelRecord"]) -> "ChannelRecord":
        return replace(self, epg=epg_record)

    def tracked_fields(self) -> dict:
        """Catalog fields for this record kind, plus any extra fields present."""
        names = get_catalog().field_names(self.source_type)
        result = {name: self.fields.get(name) for name in names}
        for name, value in self.fields.items():
            if name not in result:
                result[name] = value
        return result

    def to_dict(self) -> dict:
        result = {
            "record_id": self.record_id,
            "source_type": self.source_type,
            "source_id": self.source_id,
            "source_name": self.source_name,
            **self.fields,
            "labels": [{"key": k, "value": v} for k, v in self.labels],
            "applied_rules": list(self.applied_rules),
        }
        if self.channel_number is not None:
            result["channel_number"] = self.channel_number
        if self.epg is not None:
            result["epg"] = self.epg.to_dict()
        return result

    @classmethod
    def from_stream(cls, stream: dict, source_id: Any = None,
                    source_name: Optional[str] = None) -> "ChannelRecord":
        """
        Build a stream-channel record from an upstream dict.

        Accepts both M3U attribute names (tvg-id, group-title) and the
        underscored field names. Unknown keys are kept as extra fields.
        """
        data = {str(k).replace("-", "_"): v for k, v in stream.items()}
        record_id = data.pop("id", None)
        alias = data.pop("record_id", None)
        if record_id is None:
            record_id = alias
        data.pop("source_type", None)
        if "channel_name" not in data and "name" in data:
            data["channel_name"] = data.pop("name")
        if "stream_url" not in data and "url" in data:
            data["stream_url"] = data.pop("url")
        if "tvg_logo" not in data and "logo_url" in data:
            data["tvg_logo"] = data.pop("logo_url")
        src_id = data.pop("source_id", None)
        src_name = data.pop("source_name", None)
        return cls(
            source_type=STREAM,
            fields=_stringify(data),
            record_id=str(record_id) if record_id is not None else None,
            source_id=source_id if source_id is not None else src_id,
            source_name=source_name or src_name,
        )

    @classmethod
    def from_epg(cls, channel: dict, source_id: Any = None,
                 source_name: Optional[str] = None) -> "ChannelRecord":
        """Build an EPG-channel record from an upstream dict."""
        data = dict(channel)
        record_id = data.pop("record_id", None)
        if "channel_id" not in data and "id" in data:
            data["channel_id"] = data.pop("id")
        if "channel_name" not in data and "display_name" in data:
            data["channel_name"] = data.pop("display_name")
        data.pop("source_type", None)
        src_id = data.pop("source_id", None)
        src_name = data.pop("source_name", None)
        fields = _stringify(data)
        return cls(
            source_type=EPG,
            fields=fields,
            record_id=str(record_id) if record_id is not None else fields.get("channel_id"),
            source_id=source_id if source_id is not None else src_id,
            source_name=source_name or src_name,
        )

    @classmethod
    def from_dict(cls, data: dict, source_type: str = STREAM, **kwargs) -> "ChannelRecord":
        if isinstance(data, ChannelRecord):
            return data
        if source_type == EPG:
            return cls.from_epg(data, **kwargs)
        return cls.from_stream(data, **kwargs)


def _stringify(data: dict) -> dict:
    """Field values are strings or None; numbers from upstream are coerced."""
    return {k: (None if v is None else v if isinstance(v, str) else str(v))
            for k, v in data.items()}
