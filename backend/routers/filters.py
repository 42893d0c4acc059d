"""
Filters router: inclusion filter CRUD, reorder, validation and preview.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Body, HTTPException
from pydantic import BaseModel

import rule_engine
import rule_store
from database import get_session
from field_catalog import STREAM
from rule_errors import RuleNotFoundError, RuleValidationError
from rule_schema import Filter
from rule_validator import validate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/filters", tags=["Filters"])


class CreateFilterRequest(BaseModel):
    name: str
    description: Optional[str] = None
    source_type: str = STREAM
    conditions: list = []
    expression: Optional[str] = None
    logical_operator: str = "AND"
    is_active: bool = True
    is_inverse: bool = False
    starting_channel_number: int = 1
    sort_order: Optional[int] = None


class UpdateFilterRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    source_type: Optional[str] = None
    conditions: Optional[list] = None
    expression: Optional[str] = None
    logical_operator: Optional[str] = None
    is_active: Optional[bool] = None
    is_inverse: Optional[bool] = None
    starting_channel_number: Optional[int] = None


class ReorderItem(BaseModel):
    id: int
    priority: int


class ValidateFilterRequest(BaseModel):
    conditions: list = []
    expression: Optional[str] = None
    logical_operator: str = "AND"
    source_type: str = STREAM


class PreviewFilterRequest(BaseModel):
    """A filter (saved or inline) plus the records to preview it against."""
    filter_id: Optional[int] = None
    name: str = "Preview"
    source_type: str = STREAM
    conditions: list = []
    expression: Optional[str] = None
    logical_operator: str = "AND"
    is_inverse: bool = False
    starting_channel_number: int = 1
    records: List[dict] = []


def _error_detail(e: RuleValidationError) -> dict:
    detail = {"message": e.message}
    if e.report is not None:
        detail["validation"] = e.report.to_dict()
    return detail


@router.get("")
async def get_filters():
    session = get_session()
    try:
        return {"filters": [f.to_dict() for f in rule_store.list_filters(session)]}
    finally:
        session.close()


@router.get("/{filter_id}")
async def get_filter(filter_id: int):
    session = get_session()
    try:
        return rule_store.get_filter(session, filter_id).to_dict()
    except RuleNotFoundError:
        raise HTTPException(status_code=404, detail="Filter not found")
    finally:
        session.close()


@router.post("")
async def create_filter(request: CreateFilterRequest):
    logger.debug("[FILTERS] Creating filter '%s'", request.name)
    session = get_session()
    try:
        return rule_store.create_filter(session, request.model_dump()).to_dict()
    except RuleValidationError as e:
        raise HTTPException(status_code=400, detail=_error_detail(e))
    finally:
        session.close()


@router.put("/{filter_id}")
async def update_filter(filter_id: int, request: UpdateFilterRequest):
    session = get_session()
    try:
        channel_filter = rule_store.update_filter(session, filter_id,
                                                  request.model_dump(exclude_unset=True))
        return channel_filter.to_dict()
    except RuleNotFoundError:
        raise HTTPException(status_code=404, detail="Filter not found")
    except RuleValidationError as e:
        raise HTTPException(status_code=400, detail=_error_detail(e))
    finally:
        session.close()


@router.delete("/{filter_id}")
async def delete_filter(filter_id: int):
    """Delete a filter and detach it from every proxy."""
    session = get_session()
    try:
        rule_store.delete_filter(session, filter_id)
        return {"status": "deleted", "id": filter_id}
    except RuleNotFoundError:
        raise HTTPException(status_code=404, detail="Filter not found")
    finally:
        session.close()


@router.post("/reorder")
async def reorder_filters(items: List[ReorderItem] = Body(...)):
    logger.debug("[FILTERS] POST /reorder - %d filters", len(items))
    session = get_session()
    try:
        filters = rule_store.reorder_filters(session, [(i.id, i.priority) for i in items])
        return {"filters": [f.to_dict() for f in filters]}
    except RuleNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except RuleValidationError as e:
        raise HTTPException(status_code=400, detail=e.message)
    finally:
        session.close()


@router.post("/validate")
async def validate_channel_filter(request: ValidateFilterRequest):
    try:
        channel_filter = Filter.from_dict({"id": None, "name": "", **request.model_dump()})
    except (ValueError, TypeError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    return validate(channel_filter).to_dict()


@router.post("/test")
async def preview_filter(request: PreviewFilterRequest):
    """Preview a filter; surviving channels come back numbered."""
    if request.filter_id is not None:
        session = get_session()
        try:
            channel_filter = rule_store.load_filter(session, request.filter_id)
        except RuleNotFoundError:
            raise HTTPException(status_code=404, detail="Filter not found")
        finally:
            session.close()
    else:
        channel_filter = request.model_dump(exclude={"records", "filter_id"})
        channel_filter["id"] = None

    try:
        result = rule_engine.get_engine().test_filter(channel_filter, request.records)
    except (ValueError, TypeError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    return result.to_dict()
