"""
Settings router: rule engine settings and log level.
"""
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, ValidationError

from config import EngineSettings, VALID_LOG_LEVELS, clear_settings_cache, get_settings, save_settings, set_log_level
from field_catalog import get_catalog

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/settings", tags=["Settings"])


class SettingsRequest(BaseModel):
    """Partial settings update. Omitted fields keep their current value."""
    preview_timeout_seconds: Optional[float] = None
    max_workers: Optional[int] = None
    regex_cache_size: Optional[int] = None
    dedup_keys: Optional[list[str]] = None
    max_value_length: Optional[int] = None
    backend_log_level: Optional[str] = None


@router.get("")
async def get_current_settings():
    """Get current rule engine settings."""
    return get_settings().model_dump()


@router.post("")
async def update_settings(request: SettingsRequest):
    """Update rule engine settings."""
    logger.debug("[SETTINGS] POST /api/settings - %s", request.model_dump(exclude_unset=True))
    current_settings = get_settings()
    changes = request.model_dump(exclude_unset=True, exclude_none=True)

    level = changes.get("backend_log_level")
    if level is not None:
        if level.upper() not in VALID_LOG_LEVELS:
            raise HTTPException(status_code=400, detail=f"Invalid log level: {level}")
        changes["backend_log_level"] = level.upper()

    catalog = get_catalog()
    for key in changes.get("dedup_keys") or []:
        if not any(catalog.is_known(kind, key) for kind in catalog.source_types()):
            raise HTTPException(status_code=400, detail=f"Unknown dedup key field: {key}")

    try:
        new_settings = EngineSettings(**{**current_settings.model_dump(), **changes})
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    save_settings(new_settings)
    clear_settings_cache()

    # Apply backend log level immediately
    if new_settings.backend_log_level != current_settings.backend_log_level:
        logger.info("[SETTINGS] Applying new backend log level: %s", new_settings.backend_log_level)
        set_log_level(new_settings.backend_log_level)

    return {"status": "saved", "settings": new_settings.model_dump()}
