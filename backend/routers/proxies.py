"""
Proxies router: stream proxy definitions, filter ordering and lineup assembly.
"""
import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Body, HTTPException
from pydantic import BaseModel

import rule_store
from assembly_pipeline import AssemblyPipeline
from database import get_session
from rule_errors import RuleNotFoundError, RuleValidationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/proxies", tags=["Proxies"])


class SourceAttachment(BaseModel):
    source_id: str
    name: Optional[str] = None
    priority_order: Optional[int] = None


class FilterAttachment(BaseModel):
    filter_id: int
    priority_order: Optional[int] = None
    is_active: bool = True


class CreateProxyRequest(BaseModel):
    """mapping_rules=None applies every active rule."""
    name: str
    starting_channel_number: int = 1
    stream_sources: List[SourceAttachment] = []
    epg_sources: List[SourceAttachment] = []
    filters: List[FilterAttachment] = []
    mapping_rules: Optional[List[int]] = None


class FilterOrderItem(BaseModel):
    filter_id: int
    priority: int


class AssembleRequest(BaseModel):
    """Upstream records keyed by source id."""
    streams: Dict[str, List[dict]] = {}
    epg: Dict[str, List[dict]] = {}
    max_workers: Optional[int] = None


@router.get("")
async def get_proxies():
    session = get_session()
    try:
        return {"proxies": [p.to_dict() for p in rule_store.list_proxies(session)]}
    finally:
        session.close()


@router.get("/{proxy_id}")
async def get_proxy(proxy_id: int):
    session = get_session()
    try:
        return rule_store.get_proxy(session, proxy_id).to_dict()
    except RuleNotFoundError:
        raise HTTPException(status_code=404, detail="Proxy not found")
    finally:
        session.close()


@router.post("")
async def create_proxy(request: CreateProxyRequest):
    logger.debug("[PROXIES] Creating proxy '%s'", request.name)
    session = get_session()
    try:
        return rule_store.create_proxy(session, request.model_dump()).to_dict()
    except RuleNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except RuleValidationError as e:
        raise HTTPException(status_code=400, detail=e.message)
    finally:
        session.close()


@router.post("/{proxy_id}/filters/reorder")
async def reorder_proxy_filters(proxy_id: int, items: List[FilterOrderItem] = Body(...)):
    session = get_session()
    try:
        links = rule_store.reorder_proxy_filters(
            session, proxy_id, [(i.filter_id, i.priority) for i in items])
        return {"filters": [link.to_dict() for link in links]}
    except RuleNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except RuleValidationError as e:
        raise HTTPException(status_code=400, detail=e.message)
    finally:
        session.close()


@router.post("/{proxy_id}/assemble")
async def assemble_proxy(proxy_id: int, request: AssembleRequest):
    """
    Assemble the proxy lineup from the upstream records in the body.

    Sources are merged by priority, filtered, mapped by the rule chain, joined
    to EPG channels and numbered.
    """
    session = get_session()
    try:
        proxy = rule_store.load_proxy(session, proxy_id)
        filters = rule_store.load_filters(session, proxy.active_filter_ids())
        rules = rule_store.load_rules(session, proxy.mapping_rules)
    except RuleNotFoundError:
        raise HTTPException(status_code=404, detail="Proxy not found")
    finally:
        session.close()

    try:
        result = AssemblyPipeline().assemble(proxy, request.streams, request.epg, filters, rules,
                                             request.max_workers)
        return result.to_dict()
    except Exception as e:
        logger.exception("[PROXIES] Failed to assemble proxy %s: %s", proxy_id, e)
        raise HTTPException(status_code=500, detail="Internal server error")
