"""
Data-mapping router: mapping rule CRUD, reorder, validation, preview, apply,
field catalog and YAML import/export.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Body, HTTPException
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

import rule_engine
import rule_store
from database import get_session
from expression_parser import expression_to_structured, structured_to_expression
from field_catalog import STREAM, get_catalog
from rule_errors import ParseError, RuleNotFoundError, RuleValidationError
from rule_validator import validate_rule

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/data-mapping", tags=["Data Mapping"])


# =============================================================================
# Pydantic models
# =============================================================================


class CreateRuleRequest(BaseModel):
    """Request to create a mapping rule."""
    name: str
    description: Optional[str] = None
    is_active: bool = True
    source_type: str = STREAM
    scope: str = "global"
    source_ids: List[str] = []
    conditions: list = []
    actions: list = []
    expression: Optional[str] = None
    sort_order: Optional[int] = None


class UpdateRuleRequest(BaseModel):
    """Request to update a mapping rule. Omitted fields keep their value."""
    name: Optional[str] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None
    source_type: Optional[str] = None
    scope: Optional[str] = None
    source_ids: Optional[List[str]] = None
    conditions: Optional[list] = None
    actions: Optional[list] = None
    expression: Optional[str] = None
    sort_order: Optional[int] = None


class ReorderItem(BaseModel):
    id: int
    priority: int


class ValidateRuleRequest(BaseModel):
    conditions: list = []
    actions: list = []
    expression: Optional[str] = None
    source_type: str = STREAM


class PreviewRuleRequest(BaseModel):
    """A rule (saved or inline) plus the records to preview it against."""
    rule_id: Optional[int] = None
    name: str = "Preview"
    source_type: str = STREAM
    scope: str = "global"
    source_ids: List[str] = []
    conditions: list = []
    actions: list = []
    expression: Optional[str] = None
    records: List[dict] = []
    include_diagnostics: bool = False


class ApplyRulesRequest(BaseModel):
    records: List[dict]
    source_type: Optional[str] = None
    rule_ids: Optional[List[int]] = None
    max_workers: Optional[int] = None


class ExpressionRequest(BaseModel):
    expression: str


class StructuredRequest(BaseModel):
    conditions: list = []
    actions: list = []
    source_type: str = STREAM


class ImportYAMLRequest(BaseModel):
    """Request to import rules from YAML."""
    yaml_content: str
    overwrite: bool = False


def _validation_detail(e: RuleValidationError) -> dict:
    detail = {"message": e.message}
    if e.report is not None:
        detail["validation"] = e.report.to_dict()
    return detail


# =============================================================================
# Rule CRUD Endpoints
# =============================================================================


@router.get("/rules")
async def get_rules(source_type: Optional[str] = None):
    """Get all mapping rules in execution order."""
    logger.debug("[DATA-MAPPING] GET /rules source_type=%s", source_type)
    session = get_session()
    try:
        rules = rule_store.list_rules(session, source_type)
        return {"rules": [r.to_dict() for r in rules]}
    finally:
        session.close()


@router.get("/rules/{rule_id}")
async def get_rule(rule_id: int):
    session = get_session()
    try:
        return rule_store.get_rule(session, rule_id).to_dict()
    except RuleNotFoundError:
        raise HTTPException(status_code=404, detail="Rule not found")
    finally:
        session.close()


@router.post("/rules")
async def create_rule(request: CreateRuleRequest):
    """Create a mapping rule. The rule is validated before it is stored."""
    logger.debug("[DATA-MAPPING] Creating rule '%s'", request.name)
    session = get_session()
    try:
        rule = rule_store.create_rule(session, request.model_dump())
        return rule.to_dict()
    except RuleValidationError as e:
        raise HTTPException(status_code=400, detail=_validation_detail(e))
    finally:
        session.close()


@router.put("/rules/{rule_id}")
async def update_rule(rule_id: int, request: UpdateRuleRequest):
    session = get_session()
    try:
        rule = rule_store.update_rule(session, rule_id, request.model_dump(exclude_unset=True))
        return rule.to_dict()
    except RuleNotFoundError:
        raise HTTPException(status_code=404, detail="Rule not found")
    except RuleValidationError as e:
        raise HTTPException(status_code=400, detail=_validation_detail(e))
    finally:
        session.close()


@router.delete("/rules/{rule_id}")
async def delete_rule(rule_id: int):
    session = get_session()
    try:
        rule_store.delete_rule(session, rule_id)
        return {"status": "deleted", "id": rule_id}
    except RuleNotFoundError:
        raise HTTPException(status_code=404, detail="Rule not found")
    finally:
        session.close()


@router.post("/rules/reorder")
async def reorder_rules(items: List[ReorderItem] = Body(...)):
    """Rewrite rule sort order from (id, priority) pairs into a dense 1-based sequence."""
    logger.debug("[DATA-MAPPING] POST /rules/reorder - %d rules", len(items))
    session = get_session()
    try:
        rules = rule_store.reorder_rules(session, [(i.id, i.priority) for i in items])
        return {"rules": [r.to_dict() for r in rules]}
    except RuleNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except RuleValidationError as e:
        raise HTTPException(status_code=400, detail=e.message)
    finally:
        session.close()


# =============================================================================
# Validation, Preview & Apply
# =============================================================================


@router.post("/validate")
async def validate_mapping_rule(request: ValidateRuleRequest):
    """Validate a rule without storing it."""
    report = validate_rule(request.conditions, request.actions, request.expression,
                           request.source_type)
    return report.to_dict()


@router.post("/test")
async def preview_rule(request: PreviewRuleRequest):
    """Preview a saved or inline rule against the records in the body."""
    if request.rule_id is not None:
        session = get_session()
        try:
            rule = rule_store.load_rule(session, request.rule_id)
        except RuleNotFoundError:
            raise HTTPException(status_code=404, detail="Rule not found")
        finally:
            session.close()
    else:
        rule = request.model_dump(exclude={"records", "rule_id", "include_diagnostics"})
        rule["id"] = None

    try:
        result = rule_engine.get_engine().test_rule(rule, request.records,
                                                     request.include_diagnostics)
    except (ValueError, TypeError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    return result.to_dict()


@router.post("/apply")
async def apply_rules(request: ApplyRulesRequest):
    """Apply the stored active rules, in order, to the records in the body."""
    session = get_session()
    try:
        rules = rule_store.load_rules(session, request.rule_ids, request.source_type)
    finally:
        session.close()

    records = request.records
    if request.source_type:
        records = [{"source_type": request.source_type, **r} for r in records]
    result = rule_engine.get_engine().apply_rule_chain(rules, records, request.max_workers)
    return result.to_dict()


@router.get("/fields")
async def get_fields():
    """Field catalog for each record kind."""
    return get_catalog().to_dict()


@router.post("/expression/parse")
async def parse_expression(request: ExpressionRequest):
    """Convert a text expression to structured conditions and actions."""
    try:
        return expression_to_structured(request.expression)
    except ParseError as e:
        raise HTTPException(status_code=400, detail=e.to_dict())


@router.post("/expression/render")
async def render_expression(request: StructuredRequest):
    """Convert structured conditions and actions to a text expression."""
    try:
        return {"expression": structured_to_expression(request.conditions, request.actions,
                                                       request.source_type)}
    except ParseError as e:
        raise HTTPException(status_code=400, detail=e.to_dict())
    except (ValueError, TypeError) as e:
        raise HTTPException(status_code=400, detail=str(e))


# =============================================================================
# YAML Import / Export
# =============================================================================


@router.get("/export/yaml", response_class=PlainTextResponse)
async def export_rules_yaml():
    logger.debug("[DATA-MAPPING-YAML] GET /export/yaml")
    session = get_session()
    try:
        return PlainTextResponse(rule_store.export_rules_yaml(session), media_type="application/x-yaml")
    finally:
        session.close()


@router.post("/import/yaml")
async def import_rules_yaml(request: ImportYAMLRequest):
    session = get_session()
    try:
        created = rule_store.import_rules_yaml(session, request.yaml_content, request.overwrite)
        return {"imported": len(created), "rules": [r.to_dict() for r in created]}
    except RuleValidationError as e:
        raise HTTPException(status_code=400, detail=_validation_detail(e))
    finally:
        session.close()
