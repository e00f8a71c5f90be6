import json
import logging
import socket
import threading
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request, Security
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader

from . import calendar_store, config, db, inbox, ledger
from .agent import DecisionOutcome, OrchestrationAgent
from .audit import log_exception
from .ledger import AgentNotFound, DecisionNotFound, InvalidTransition
from .metrics_api import router as metrics_router
from .schemas import (
    ActionType,
    AgentConfig,
    AgentDecision,
    ApproveDecisionRequest,
    AvailabilityCheckRequest,
    CreateDecisionRequest,
    DecisionStatus,
    EnvelopeValidationError,
    InputEnvelope,
    InputSource,
    RejectDecisionRequest,
    parse_envelope,
)

log = logging.getLogger(__name__)

app = FastAPI(title="Orchestration Agent")
app.include_router(metrics_router)

API_KEY_NAME = "X-API-KEY"
api_key_header = APIKeyHeader(name=API_KEY_NAME, auto_error=False)

_AGENT: Optional[OrchestrationAgent] = None
_AGENT_LOCK = threading.Lock()


def get_agent() -> OrchestrationAgent:
    global _AGENT
    with _AGENT_LOCK:
        if _AGENT is None:
            _AGENT = OrchestrationAgent()
        return _AGENT


def _get_api_key(api_key_header: str = Security(api_key_header)) -> str:
    if not config.REQUIRE_API_KEY:
        return api_key_header or ""
    expected = config.INGEST_API_KEY
    if not expected:
        raise HTTPException(status_code=503, detail="API key not configured")
    if api_key_header != expected:
        raise HTTPException(status_code=401, detail="Invalid or missing API Key")
    return api_key_header


@app.exception_handler(RequestValidationError)
async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {"field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"), "message": err.get("msg")}
        for err in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"success": False, "error": "Validation failed", "details": details})


@app.exception_handler(Exception)
async def _unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    log.exception("Unhandled error", extra={"extra_data": {"path": request.url.path}})
    log_exception("http_unhandled_error", error=exc, path=request.url.path)
    return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})


def _check_db() -> bool:
    try:
        conn = db.get_connection()
        conn.execute("SELECT 1")
        conn.close()
        return True
    except Exception:
        return False


def _check_classifier() -> bool:
    if config.CLASSIFIER_MODE == "heuristic":
        return True
    parsed = urlparse(config.OLLAMA_HOST)
    host = parsed.hostname or "127.0.0.1"
    port = parsed.port or 11434
    try:
        with socket.create_connection((host, port), timeout=2):
            return True
    except OSError:
        return False


def _decision_json(decision: AgentDecision) -> Dict[str, Any]:
    return decision.model_dump(by_alias=True, mode="json")


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _envelope_from_request(body: CreateDecisionRequest) -> InputEnvelope:
    data = body.input_data
    metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
    return parse_envelope(
        {
            "source": body.input_source,
            "type": body.input_type,
            "rawContent": body.raw_content or data.get("rawContent") or json.dumps(data, ensure_ascii=False, default=str),
            "structuredData": data,
            "metadata": metadata,
            "correlationId": body.correlation_id,
        }
    )


def _outcome_json(outcome: DecisionOutcome) -> Dict[str, Any]:
    decision = outcome.decision
    body: Dict[str, Any] = {"success": True, "decision": _decision_json(decision)}
    if outcome.result is not None:
        body["result"] = {
            "intent": outcome.result.intent,
            "confidence": outcome.result.confidence,
            "requiresApproval": decision.status is DecisionStatus.REQUIRES_APPROVAL or outcome.result.requires_approval,
            "actions": [action.model_dump(by_alias=True, mode="json") for action in outcome.result.actions],
        }
    return body


@app.get("/healthz")
def healthz() -> Dict[str, Any]:
    db_ok = _check_db()
    classifier_ok = _check_classifier()
    if not (db_ok and classifier_ok):
        raise HTTPException(status_code=503, detail={"db": db_ok, "classifier": classifier_ok})
    return {"status": "ok", "db": db_ok, "classifier": classifier_ok, "classifier_mode": config.CLASSIFIER_MODE}


# ---------------------------------------------------------------------------- decisions


@app.post("/api/agent/decisions", status_code=201, dependencies=[Depends(_get_api_key)])
def create_decision(body: CreateDecisionRequest, agent: OrchestrationAgent = Depends(get_agent)) -> Dict[str, Any]:
    org_id = body.org_id or config.DEFAULT_ORG_ID
    if not org_id:
        raise HTTPException(status_code=400, detail="orgId is required")
    try:
        envelope = _envelope_from_request(body)
    except EnvelopeValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        outcome = agent.process(envelope, org_id)
    except AgentNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return _outcome_json(outcome)


@app.post("/api/agent/envelopes", status_code=202, dependencies=[Depends(_get_api_key)])
def enqueue_envelope(body: CreateDecisionRequest) -> Dict[str, Any]:
    """Queue an envelope for the background worker instead of deciding inline."""
    org_id = body.org_id or config.DEFAULT_ORG_ID
    if not org_id:
        raise HTTPException(status_code=400, detail="orgId is required")
    if ledger.find_agent_config(org_id) is None:
        raise HTTPException(status_code=404, detail=f"No orchestration agent configured for organization {org_id}")
    try:
        envelope = _envelope_from_request(body)
    except EnvelopeValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    row_id, created = inbox.enqueue(org_id, envelope)
    return {"success": True, "inboxId": row_id, "created": created}


@app.get("/api/agent/decisions", dependencies=[Depends(_get_api_key)])
def list_decisions(
    org_id: Optional[str] = Query(None, alias="orgId"),
    status: Optional[DecisionStatus] = Query(None),
    input_source: Optional[InputSource] = Query(None, alias="inputSource"),
    decision_type: Optional[ActionType] = Query(None, alias="decisionType"),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
) -> Dict[str, Any]:
    decisions, total = ledger.list_decisions(
        org_id=org_id or config.DEFAULT_ORG_ID,
        status=status,
        input_source=input_source,
        decision_type=decision_type,
        start_date=_as_utc(start_date),
        end_date=_as_utc(end_date),
        limit=limit,
        offset=offset,
    )
    return {
        "success": True,
        "decisions": [_decision_json(decision) for decision in decisions],
        "pagination": {"total": total, "limit": limit, "offset": offset, "hasMore": offset + limit < total},
    }


@app.get("/api/agent/decisions/{decision_id}", dependencies=[Depends(_get_api_key)])
def get_decision(decision_id: str) -> Dict[str, Any]:
    decision = ledger.get_decision(decision_id)
    if not decision:
        raise HTTPException(status_code=404, detail="decision not found")
    return {"success": True, "decision": _decision_json(decision)}


@app.post("/api/agent/decisions/{decision_id}/approve", dependencies=[Depends(_get_api_key)])
def approve_decision(
    decision_id: str,
    body: Optional[ApproveDecisionRequest] = Body(None),
    agent: OrchestrationAgent = Depends(get_agent),
) -> Dict[str, Any]:
    body = body or ApproveDecisionRequest()
    try:
        outcome = agent.approve(decision_id, reviewer=body.reviewer, notes=body.notes)
    except DecisionNotFound as exc:
        raise HTTPException(status_code=404, detail="decision not found") from exc
    except InvalidTransition as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _outcome_json(outcome)


@app.post("/api/agent/decisions/{decision_id}/reject", dependencies=[Depends(_get_api_key)])
def reject_decision(
    decision_id: str,
    body: RejectDecisionRequest,
    agent: OrchestrationAgent = Depends(get_agent),
) -> Dict[str, Any]:
    try:
        outcome = agent.reject(decision_id, reviewer=body.reviewer, reason=body.reason)
    except DecisionNotFound as exc:
        raise HTTPException(status_code=404, detail="decision not found") from exc
    except InvalidTransition as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _outcome_json(outcome)


# ---------------------------------------------------------------------------- agent config


@app.post("/api/agent/config", status_code=201, dependencies=[Depends(_get_api_key)])
def create_agent_config(body: AgentConfig) -> Dict[str, Any]:
    try:
        agent = ledger.create_agent_config(body)
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {"success": True, "agent": agent.model_dump(by_alias=True, mode="json")}


@app.get("/api/agent/config/{org_id}", dependencies=[Depends(_get_api_key)])
def get_agent_config(org_id: str, agent: OrchestrationAgent = Depends(get_agent)) -> Dict[str, Any]:
    try:
        config_row = ledger.get_agent_config(org_id)
    except AgentNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {
        "success": True,
        "agent": config_row.model_dump(by_alias=True, mode="json"),
        "stats": agent.stats(org_id),
    }


@app.patch("/api/agent/config/{org_id}", dependencies=[Depends(_get_api_key)])
def update_agent_config(org_id: str, changes: Dict[str, Any] = Body(...)) -> Dict[str, Any]:
    try:
        updated = ledger.update_agent_config(org_id, changes)
    except AgentNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"success": True, "agent": updated.model_dump(by_alias=True, mode="json")}


# ---------------------------------------------------------------------------- calendar


@app.post("/api/agent/availability/check", dependencies=[Depends(_get_api_key)])
def check_availability(body: AvailabilityCheckRequest, agent: OrchestrationAgent = Depends(get_agent)) -> Dict[str, Any]:
    report = agent.detector.detect_conflicts(
        body.subject_id, body.start_time, body.end_time, exclude_event_id=body.exclude_event_id
    )
    alternatives = []
    if report.has_conflict:
        slots = agent.detector.find_alternative_slots(
            body.subject_id, body.end_time - body.start_time, body.start_time.date()
        )
        alternatives = [slot.model_dump(by_alias=True, mode="json") for slot in slots[:10]]
    return {
        "success": True,
        "available": not report.has_conflict,
        "report": report.model_dump(by_alias=True, mode="json"),
        "alternatives": alternatives,
    }


@app.post("/api/agent/availability/rules", status_code=201, dependencies=[Depends(_get_api_key)])
def add_availability_rule(payload: Dict[str, Any] = Body(...)) -> Dict[str, Any]:
    try:
        rule = calendar_store.add_availability_rule(
            str(payload["subjectId"]),
            int(payload["dayOfWeek"]),
            str(payload["startTime"]),
            str(payload["endTime"]),
            timezone=str(payload.get("timezone") or "UTC"),
            is_active=bool(payload.get("isActive", True)),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=f"invalid availability rule: {exc}") from exc
    return {"success": True, "rule": asdict(rule)}
