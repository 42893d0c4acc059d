"""
Field Catalog

Enumerates the legal field names for each record kind (stream channels and
EPG channels). The catalog is process-wide and read-only once built; call
reload_catalog() to rebuild it explicitly.
"""
import logging
from dataclasses import dataclass
from typing import Optional


logger = logging.getLogger(__name__)


STREAM = "stream"
EPG = "epg"
SOURCE_TYPES = (STREAM, EPG)


@dataclass(frozen=True)
class FieldSpec:
    """A single catalog entry."""
    name: str
    description: str
    nullable: bool = True
    case_sensitive: bool = False

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "nullable": self.nullable,
            "case_sensitive": self.case_sensitive,
        }


_STREAM_FIELDS = (
    FieldSpec("channel_name", "Display name of the channel", nullable=False),
    FieldSpec("tvg_id", "EPG identifier used to link guide data"),
    FieldSpec("tvg_name", "EPG display name"),
    FieldSpec("tvg_logo", "Logo URL or @logo:<uuid> asset reference"),
    FieldSpec("tvg_shift", "EPG time shift in hours (e.g. +1, -2)"),
    FieldSpec("group_title", "Channel group / category"),
    FieldSpec("stream_url", "Upstream stream URL", nullable=False, case_sensitive=True),
)

_EPG_FIELDS = (
    FieldSpec("channel_id", "EPG channel identifier"),
    FieldSpec("channel_name", "EPG channel display name"),
    FieldSpec("channel_logo", "Logo URL or @logo:<uuid> asset reference"),
    FieldSpec("channel_group", "EPG channel group / category"),
    FieldSpec("language", "Language code (e.g. en, fr, en-US)"),
)

# Field that receives the @logo: token when set_logo has no explicit target
DEFAULT_LOGO_FIELD = {STREAM: "tvg_logo", EPG: "channel_logo"}


class FieldCatalog:
    """Lookup of field specs by source type."""

    def __init__(self, fields: dict[str, tuple]):
        self._fields = {
            source_type: {spec.name: spec for spec in specs}
            for source_type, specs in fields.items()
        }

    def source_types(self) -> list[str]:
        return list(self._fields.keys())

    def fields_for(self, source_type: str) -> list[FieldSpec]:
        """Return the field specs for a source type, in catalog order."""
        if source_type not in self._fields:
            raise ValueError(f"Unknown source type: {source_type}")
        return list(self._fields[source_type].values())

    def field_names(self, source_type: str) -> list[str]:
        return [spec.name for spec in self.fields_for(source_type)]

    def get(self, source_type: str, name: str) -> Optional[FieldSpec]:
        return self._fields.get(source_type, {}).get(name)

    def is_known(self, source_type: str, name: str) -> bool:
        return self.get(source_type, name) is not None

    def is_case_sensitive(self, source_type: str, name: str) -> bool:
        spec = self.get(source_type, name)
        return bool(spec and spec.case_sensitive)

    def suggest(self, source_type: str, name: str, limit: int = 3) -> list[str]:
        """
        Suggest catalog fields close to an unknown name.

        Tries, in order: case-insensitive exact match, case-insensitive
        substring in either direction, then same first letter.
        """
        candidates = self.field_names(source_type) if source_type in self._fields else []
        lowered = (name or "").lower()
        if not lowered:
            return []

        exact = [c for c in candidates if c.lower() == lowered]
        if exact:
            return exact[:limit]

        substring = [c for c in candidates if lowered in c.lower() or c.lower() in lowered]
        if substring:
            return substring[:limit]

        same_letter = [c for c in candidates if c[0].lower() == lowered[0]]
        return same_letter[:limit]

    def to_dict(self) -> dict:
        return {
            source_type: [spec.to_dict() for spec in specs.values()]
            for source_type, specs in self._fields.items()
        }


_catalog: Optional[FieldCatalog] = None


def get_catalog() -> FieldCatalog:
    """Return the process-wide catalog, building it on first use."""
    global _catalog
    if _catalog is None:
        _catalog = FieldCatalog({STREAM: _STREAM_FIELDS, EPG: _EPG_FIELDS})
        logger.debug("[FIELD-CATALOG] Loaded %s stream fields, %s epg fields",
                     len(_STREAM_FIELDS), len(_EPG_FIELDS))
    return _catalog


def reload_catalog(extra_fields: Optional[dict[str, list[FieldSpec]]] = None) -> FieldCatalog:
    """
    Rebuild the catalog, optionally adding fields per source type.

    Used when the upstream field list changes (forward-compatible fields).
    """
    global _catalog
    fields = {STREAM: list(_STREAM_FIELDS), EPG: list(_EPG_FIELDS)}
    for source_type, specs in (extra_fields or {}).items():
        fields.setdefault(source_type, []).extend(specs)
    _catalog = FieldCatalog({k: tuple(v) for k, v in fields.items()})
    logger.info("[FIELD-CATALOG] Catalog reloaded (%s)",
                ", ".join(f"{k}={len(v)}" for k, v in fields.items()))
    return _catalog
