"""
SQLAlchemy ORM models for data-mapping rules, filters and stream proxies.
"""
import json
from datetime import datetime
from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, Index, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from database import Base


def _load_json(value, default):
    if not value:
        return default
    try:
        return json.loads(value)
    except (ValueError, TypeError):
        return default


def _isoformat(value):
    return value.isoformat() + "Z" if value else None


class MappingRule(Base):
    """
    Data-mapping rule applied to stream or EPG channels.

    Rules run in ascending sort_order. A rule is stored either as structured
    conditions/actions (JSON arrays) or as a single text expression.
    """
    __tablename__ = "mapping_rules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    source_type = Column(String(10), default="stream", nullable=False)  # "stream" or "epg"
    scope = Column(String(20), default="global", nullable=False)  # "global" or "sources"
    source_ids = Column(Text, nullable=True)  # JSON array, used when scope == "sources"
    conditions = Column(Text, nullable=True)  # JSON array of condition objects
    actions = Column(Text, nullable=True)  # JSON array of action objects
    expression = Column(Text, nullable=True)
    sort_order = Column(Integer, default=0, nullable=False)  # Lower = runs first

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("idx_mapping_rule_active_order", is_active, sort_order),
        Index("idx_mapping_rule_source_type", source_type),
    )

    def get_conditions(self) -> list:
        return _load_json(self.conditions, [])

    def set_conditions(self, conditions: list) -> None:
        self.conditions = json.dumps(conditions or [])

    def get_actions(self) -> list:
        return _load_json(self.actions, [])

    def set_actions(self, actions: list) -> None:
        self.actions = json.dumps(actions or [])

    def get_source_ids(self) -> list:
        return _load_json(self.source_ids, [])

    def set_source_ids(self, source_ids: list) -> None:
        self.source_ids = json.dumps(source_ids) if source_ids else None

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description or "",
            "is_active": self.is_active,
            "source_type": self.source_type,
            "scope": self.scope or "global",
            "source_ids": self.get_source_ids(),
            "conditions": self.get_conditions(),
            "actions": self.get_actions(),
            "expression": self.expression,
            "sort_order": self.sort_order,
            "created_at": _isoformat(self.created_at),
            "updated_at": _isoformat(self.updated_at),
        }

    def __repr__(self):
        return f"<MappingRule(id={self.id}, name={self.name}, sort_order={self.sort_order})>"


class ChannelFilter(Base):
    """Inclusion filter shared between proxies."""
    __tablename__ = "channel_filters"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    source_type = Column(String(10), default="stream", nullable=False)
    conditions = Column(Text, nullable=True)  # JSON array of condition objects
    expression = Column(Text, nullable=True)
    logical_operator = Column(String(3), default="AND", nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    is_inverse = Column(Boolean, default=False, nullable=False)
    starting_channel_number = Column(Integer, default=1, nullable=False)
    sort_order = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def get_conditions(self) -> list:
        return _load_json(self.conditions, [])

    def set_conditions(self, conditions: list) -> None:
        self.conditions = json.dumps(conditions or [])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description or "",
            "source_type": self.source_type,
            "conditions": self.get_conditions(),
            "expression": self.expression,
            "logical_operator": self.logical_operator,
            "is_active": self.is_active,
            "is_inverse": self.is_inverse,
            "starting_channel_number": self.starting_channel_number,
            "sort_order": self.sort_order,
            "created_at": _isoformat(self.created_at),
            "updated_at": _isoformat(self.updated_at),
        }

    def __repr__(self):
        return f"<ChannelFilter(id={self.id}, name={self.name}, inverse={self.is_inverse})>"


class StreamProxy(Base):
    """
    A proxy lineup assembled from stream and EPG sources.

    use_all_rules=True applies every active mapping rule; otherwise only the
    rules listed in mapping_rule_ids.
    """
    __tablename__ = "stream_proxies"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False, unique=True)
    starting_channel_number = Column(Integer, default=1, nullable=False)
    use_all_rules = Column(Boolean, default=True, nullable=False)
    mapping_rule_ids = Column(Text, nullable=True)  # JSON array of rule ids

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    stream_sources = relationship("ProxyStreamSource", cascade="all, delete-orphan",
                                  order_by="ProxyStreamSource.priority_order")
    epg_sources = relationship("ProxyEpgSource", cascade="all, delete-orphan",
                               order_by="ProxyEpgSource.priority_order")
    filters = relationship("ProxyFilter", cascade="all, delete-orphan",
                           order_by="ProxyFilter.priority_order")

    def get_mapping_rule_ids(self) -> list:
        return _load_json(self.mapping_rule_ids, [])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "starting_channel_number": self.starting_channel_number,
            "stream_sources": [s.to_dict() for s in self.stream_sources],
            "epg_sources": [s.to_dict() for s in self.epg_sources],
            "filters": [f.to_dict() for f in self.filters],
            "mapping_rules": None if self.use_all_rules else self.get_mapping_rule_ids(),
            "created_at": _isoformat(self.created_at),
            "updated_at": _isoformat(self.updated_at),
        }


class ProxyStreamSource(Base):
    __tablename__ = "proxy_stream_sources"

    id = Column(Integer, primary_key=True, autoincrement=True)
    proxy_id = Column(Integer, ForeignKey("stream_proxies.id", ondelete="CASCADE"), nullable=False)
    source_id = Column(String(64), nullable=False)  # Upstream stream source id
    name = Column(String(255), nullable=True)
    priority_order = Column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("proxy_id", "source_id", name="uq_proxy_stream_source"),
    )

    def to_dict(self) -> dict:
        return {"source_id": self.source_id, "name": self.name, "priority_order": self.priority_order}


class ProxyEpgSource(Base):
    __tablename__ = "proxy_epg_sources"

    id = Column(Integer, primary_key=True, autoincrement=True)
    proxy_id = Column(Integer, ForeignKey("stream_proxies.id", ondelete="CASCADE"), nullable=False)
    source_id = Column(String(64), nullable=False)  # Upstream EPG source id
    name = Column(String(255), nullable=True)
    priority_order = Column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("proxy_id", "source_id", name="uq_proxy_epg_source"),
    )

    def to_dict(self) -> dict:
        return {"source_id": self.source_id, "name": self.name, "priority_order": self.priority_order}


class ProxyFilter(Base):
    __tablename__ = "proxy_filters"

    id = Column(Integer, primary_key=True, autoincrement=True)
    proxy_id = Column(Integer, ForeignKey("stream_proxies.id", ondelete="CASCADE"), nullable=False)
    filter_id = Column(Integer, ForeignKey("channel_filters.id", ondelete="CASCADE"), nullable=False)
    priority_order = Column(Integer, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    __table_args__ = (
        UniqueConstraint("proxy_id", "filter_id", name="uq_proxy_filter"),
    )

    def to_dict(self) -> dict:
        return {"filter_id": self.filter_id, "priority_order": self.priority_order,
                "is_active": self.is_active}
