"""REST route handlers for the FlowLane API.

Routes wrap board functions with HTTP semantics. All board mutations go
through flowlane.board; mutations that correspond to automation triggers
then hand an event to the automation engine.
"""

import sqlite3
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from fastapi.websockets import WebSocket, WebSocketDisconnect

from api.deps import get_db, get_engine
from api.models import (
    AutomationResponse,
    CardDetailResponse,
    CreateAutomationRequest,
    CreateCardRequest,
    CreateEmailTemplateRequest,
    CreateFormRequest,
    CreatePipeRequest,
    CreateSmsTemplateRequest,
    CreateStageRequest,
    DispatchReportResponse,
    FormResponse,
    MoveCardRequest,
    PipeResponse,
    RunAutomationRequest,
    SetEnabledRequest,
    SetFieldRequest,
    SetGlobalVariableRequest,
    StageResponse,
    SubmitFormRequest,
)
from api.ws import manager
from db.state_machine import get_valid_stages
from engine.models import DispatchEvent, EventContext
from engine.orchestrator import AutomationEngine
from flowlane import board

router = APIRouter()

DISPATCH_ERROR_STATUS = {
    "invalid_event": 422,
    "pipe_not_found": 404,
    "card_not_found": 404,
}


def _check_error(result: dict[str, Any]) -> None:
    """Convert board error dicts to HTTPException."""
    if "error" not in result:
        return
    error = result["error"]
    message = result.get("message", "Unknown error")
    if error == "not_found":
        raise HTTPException(status_code=404, detail=message)
    if error == "conflict":
        raise HTTPException(status_code=409, detail=message)
    if error in ("invalid_transition", "invalid_input"):
        raise HTTPException(status_code=422, detail=message)
    raise HTTPException(status_code=400, detail=message)


async def _dispatch(
    engine: AutomationEngine,
    trigger_type: str,
    card_id: str,
    pipe_id: str,
    **context: Any,
) -> dict[str, Any]:
    report = await engine.dispatch(
        DispatchEvent(
            trigger_type=trigger_type,
            card_id=card_id,
            pipe_id=pipe_id,
            context=EventContext(**context),
        )
    )
    return report.to_dict()


# ── Pipe endpoints ─────────────────────────────────────────


@router.post("/pipes", status_code=201)
def create_pipe_endpoint(
    body: CreatePipeRequest,
    conn: sqlite3.Connection = Depends(get_db),
) -> dict[str, Any]:
    """Create a pipe with an optional initial list of stages."""
    result = board.create_pipe(
        conn, body.name, [s.model_dump() for s in body.stages]
    )
    _check_error(result)
    return result


@router.get("/pipes", response_model=list[PipeResponse])
def list_pipes_endpoint(
    conn: sqlite3.Connection = Depends(get_db),
) -> list[dict[str, Any]]:
    return board.list_pipes(conn)


@router.get("/pipes/{pipe_id}")
def get_pipe_endpoint(
    pipe_id: str,
    conn: sqlite3.Connection = Depends(get_db),
) -> dict[str, Any]:
    """Get a pipe with its stages and their forms."""
    result = board.get_pipe(conn, pipe_id)
    _check_error(result)
    return result


@router.get("/pipes/{pipe_id}/board")
def get_board_endpoint(
    pipe_id: str,
    conn: sqlite3.Connection = Depends(get_db),
) -> dict[str, Any]:
    """Board view: stages plus cards grouped by stage."""
    result = board.get_board(conn, pipe_id)
    _check_error(result)
    return result


@router.delete("/pipes/{pipe_id}")
def delete_pipe_endpoint(
    pipe_id: str,
    conn: sqlite3.Connection = Depends(get_db),
) -> dict[str, Any]:
    """Delete a pipe and everything it owns."""
    result = board.delete_pipe(conn, pipe_id)
    _check_error(result)
    return result


@router.post("/pipes/{pipe_id}/duplicate", status_code=201)
def duplicate_pipe_endpoint(
    pipe_id: str,
    conn: sqlite3.Connection = Depends(get_db),
) -> dict[str, Any]:
    """Copy a pipe's structure, templates and automations."""
    result = board.duplicate_pipe(conn, pipe_id)
    _check_error(result)
    return result


# ── Stage and form endpoints ───────────────────────────────


@router.post("/pipes/{pipe_id}/stages", status_code=201, response_model=StageResponse)
def create_stage_endpoint(
    pipe_id: str,
    body: CreateStageRequest,
    conn: sqlite3.Connection = Depends(get_db),
) -> dict[str, Any]:
    result = board.create_stage(
        conn,
        pipe_id,
        body.name,
        position=body.position,
        background_color=body.background_color,
    )
    _check_error(result)
    return result


@router.get("/pipes/{pipe_id}/stages", response_model=list[StageResponse])
def list_stages_endpoint(
    pipe_id: str,
    conn: sqlite3.Connection = Depends(get_db),
) -> list[dict[str, Any]]:
    """Return the ordered stages of a pipe."""
    _check_error(board.get_pipe(conn, pipe_id))
    return board.get_stages(conn, pipe_id)


@router.post("/stages/{stage_id}/forms", status_code=201, response_model=FormResponse)
def create_form_endpoint(
    stage_id: str,
    body: CreateFormRequest,
    conn: sqlite3.Connection = Depends(get_db),
) -> dict[str, Any]:
    result = board.create_form(
        conn, stage_id, body.name, form_type=body.form_type, fields=body.fields
    )
    _check_error(result)
    return result


@router.get("/forms/{form_id}", response_model=FormResponse)
def get_form_endpoint(
    form_id: str,
    conn: sqlite3.Connection = Depends(get_db),
) -> dict[str, Any]:
    form = board.get_form(conn, form_id)
    if form is None:
        raise HTTPException(status_code=404, detail=f"Form '{form_id}' not found")
    return form


# ── Card endpoints ─────────────────────────────────────────


@router.post("/cards", status_code=201)
async def create_card_endpoint(
    body: CreateCardRequest,
    conn: sqlite3.Connection = Depends(get_db),
    engine: AutomationEngine = Depends(get_engine),
) -> dict[str, Any]:
    """Create a card and run the automations for the stage it lands in."""
    card = board.create_card(
        conn,
        body.pipe_id,
        body.stage_id,
        body.title,
        description=body.description,
        fields=body.fields,
    )
    _check_error(card)

    report = await _dispatch(
        engine, "card_enters_stage", card["id"], card["pipe_id"], stage_id=card["stage_id"]
    )
    return {"card": board.get_card(conn, card["id"]), "automations": report}


@router.get("/cards/{card_id}", response_model=CardDetailResponse)
def get_card_endpoint(
    card_id: str,
    conn: sqlite3.Connection = Depends(get_db),
) -> dict[str, Any]:
    """Get a card with fields, stage, pipe and form submissions."""
    result = board.get_card(conn, card_id)
    _check_error(result)
    return result


@router.post("/cards/{card_id}/move")
async def move_card_endpoint(
    card_id: str,
    body: MoveCardRequest,
    conn: sqlite3.Connection = Depends(get_db),
    engine: AutomationEngine = Depends(get_engine),
) -> dict[str, Any]:
    """Move a card; a real move runs the destination stage's automations."""
    result = board.move_card(conn, card_id, body.stage_id)
    _check_error(result)

    report = None
    if result["moved"]:
        card = board.get_card(conn, card_id)
        report = await _dispatch(
            engine, "card_enters_stage", card_id, card["pipe_id"], stage_id=body.stage_id
        )
    return {"move": result, "automations": report}


@router.put("/cards/{card_id}/fields/{key}")
async def set_card_field_endpoint(
    card_id: str,
    key: str,
    body: SetFieldRequest,
    conn: sqlite3.Connection = Depends(get_db),
    engine: AutomationEngine = Depends(get_engine),
) -> dict[str, Any]:
    """Set a card field and run field-value automations."""
    result = board.upsert_card_field(conn, card_id, key, body.value, field_type=body.type)
    _check_error(result)

    card = board.get_card(conn, card_id)
    report = await _dispatch(
        engine,
        "card_field_value",
        card_id,
        card["pipe_id"],
        field_key=key,
        field_value=body.value,
    )
    return {"field": result, "automations": report}


@router.post("/cards/{card_id}/submissions", status_code=201)
async def submit_form_endpoint(
    card_id: str,
    body: SubmitFormRequest,
    conn: sqlite3.Connection = Depends(get_db),
    engine: AutomationEngine = Depends(get_engine),
) -> dict[str, Any]:
    """Record a form submission (once per form) and run form automations."""
    result = board.submit_form(
        conn, card_id, body.form_id, body.responses, submitter_email=body.submitter_email
    )
    _check_error(result)

    card = board.get_card(conn, card_id)
    report = await _dispatch(
        engine, "form_submission", card_id, card["pipe_id"], form_id=body.form_id
    )
    return {"submission": result, "automations": report}


@router.get("/cards/{card_id}/history")
def card_history_endpoint(
    card_id: str,
    conn: sqlite3.Connection = Depends(get_db),
) -> list[dict[str, Any]]:
    _check_error(board.get_card(conn, card_id))
    return board.get_card_history(conn, card_id)


@router.get("/cards/{card_id}/move-targets", response_model=list[StageResponse])
def card_move_targets_endpoint(
    card_id: str,
    conn: sqlite3.Connection = Depends(get_db),
) -> list[dict[str, Any]]:
    """Stages the card can be moved to."""
    try:
        return get_valid_stages(conn, card_id)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e


@router.get("/cards/{card_id}/emails")
def card_emails_endpoint(
    card_id: str,
    conn: sqlite3.Connection = Depends(get_db),
) -> list[dict[str, Any]]:
    _check_error(board.get_card(conn, card_id))
    return board.get_card_emails(conn, card_id)


@router.get("/cards/{card_id}/sms")
def card_sms_endpoint(
    card_id: str,
    conn: sqlite3.Connection = Depends(get_db),
) -> list[dict[str, Any]]:
    _check_error(board.get_card(conn, card_id))
    return board.get_card_sms(conn, card_id)


@router.get("/cards/{card_id}/automation-logs")
def card_automation_logs_endpoint(
    card_id: str,
    conn: sqlite3.Connection = Depends(get_db),
) -> list[dict[str, Any]]:
    """Execution records of every automation run against a card."""
    _check_error(board.get_card(conn, card_id))
    return board.get_automation_logs(conn, card_id)


# ── Automation endpoints ───────────────────────────────────


@router.post(
    "/pipes/{pipe_id}/automations", status_code=201, response_model=AutomationResponse
)
def create_pipe_automation_endpoint(
    pipe_id: str,
    body: CreateAutomationRequest,
    conn: sqlite3.Connection = Depends(get_db),
) -> dict[str, Any]:
    """Create a pipe-level automation."""
    result = board.create_automation(conn, pipe_id, body.model_dump())
    _check_error(result)
    return result


@router.post(
    "/stages/{stage_id}/automations", status_code=201, response_model=AutomationResponse
)
def create_stage_automation_endpoint(
    stage_id: str,
    body: CreateAutomationRequest,
    conn: sqlite3.Connection = Depends(get_db),
) -> dict[str, Any]:
    """Create an automation attached to a stage."""
    stage = board.get_stage(conn, stage_id)
    if stage is None:
        raise HTTPException(status_code=404, detail=f"Stage '{stage_id}' not found")
    result = board.create_automation(
        conn, stage["pipe_id"], body.model_dump(), stage_id=stage_id
    )
    _check_error(result)
    return result


@router.get("/pipes/{pipe_id}/automations", response_model=list[AutomationResponse])
def list_automations_endpoint(
    pipe_id: str,
    conn: sqlite3.Connection = Depends(get_db),
) -> list[dict[str, Any]]:
    _check_error(board.get_pipe(conn, pipe_id))
    return board.list_automations(conn, pipe_id)


@router.patch("/automations/{automation_id}", response_model=AutomationResponse)
def set_automation_enabled_endpoint(
    automation_id: str,
    body: SetEnabledRequest,
    conn: sqlite3.Connection = Depends(get_db),
) -> dict[str, Any]:
    """Enable or disable an automation."""
    result = board.set_automation_enabled(conn, automation_id, body.enabled)
    _check_error(result)
    return result


@router.delete("/automations/{automation_id}")
def delete_automation_endpoint(
    automation_id: str,
    conn: sqlite3.Connection = Depends(get_db),
) -> dict[str, Any]:
    result = board.delete_automation(conn, automation_id)
    _check_error(result)
    return result


@router.post("/automations/execute", response_model=DispatchReportResponse)
async def execute_automations_endpoint(
    body: dict[str, Any],
    engine: AutomationEngine = Depends(get_engine),
) -> Any:
    """Dispatch an arbitrary trigger event and return the aggregated report."""
    report = await engine.dispatch(body)
    if not report.success:
        status = DISPATCH_ERROR_STATUS.get(report.error_code or "", 400)
        return JSONResponse(status_code=status, content=report.to_dict())
    return report.to_dict()


@router.post("/automations/{automation_id}/run", response_model=DispatchReportResponse)
async def run_automation_endpoint(
    automation_id: str,
    body: RunAutomationRequest,
    conn: sqlite3.Connection = Depends(get_db),
    engine: AutomationEngine = Depends(get_engine),
) -> Any:
    """Run a manual automation against one card."""
    automation = board.get_automation(conn, automation_id)
    _check_error(automation)
    if automation["trigger_type"] != "manual":
        raise HTTPException(
            status_code=422,
            detail=f"Automation '{automation['name']}' is not a manual automation",
        )

    report = await engine.dispatch(
        DispatchEvent(
            trigger_type="manual",
            card_id=body.card_id,
            pipe_id=automation["pipe_id"],
            context=EventContext(automation_id=automation_id),
        )
    )
    if not report.success:
        status = DISPATCH_ERROR_STATUS.get(report.error_code or "", 400)
        return JSONResponse(status_code=status, content=report.to_dict())
    return report.to_dict()


# ── Template endpoints ─────────────────────────────────────


@router.post("/pipes/{pipe_id}/email-templates", status_code=201)
def create_email_template_endpoint(
    pipe_id: str,
    body: CreateEmailTemplateRequest,
    conn: sqlite3.Connection = Depends(get_db),
) -> dict[str, Any]:
    result = board.create_email_template(conn, pipe_id, **body.model_dump())
    _check_error(result)
    return result


@router.get("/pipes/{pipe_id}/email-templates")
def list_email_templates_endpoint(
    pipe_id: str,
    conn: sqlite3.Connection = Depends(get_db),
) -> list[dict[str, Any]]:
    _check_error(board.get_pipe(conn, pipe_id))
    return board.list_email_templates(conn, pipe_id)


@router.post("/pipes/{pipe_id}/sms-templates", status_code=201)
def create_sms_template_endpoint(
    pipe_id: str,
    body: CreateSmsTemplateRequest,
    conn: sqlite3.Connection = Depends(get_db),
) -> dict[str, Any]:
    result = board.create_sms_template(conn, pipe_id, **body.model_dump())
    _check_error(result)
    return result


@router.get("/pipes/{pipe_id}/sms-templates")
def list_sms_templates_endpoint(
    pipe_id: str,
    conn: sqlite3.Connection = Depends(get_db),
) -> list[dict[str, Any]]:
    _check_error(board.get_pipe(conn, pipe_id))
    return board.list_sms_templates(conn, pipe_id)


# ── Global variable endpoints ──────────────────────────────


@router.get("/global-variables")
def list_global_variables_endpoint(
    conn: sqlite3.Connection = Depends(get_db),
) -> list[dict[str, str]]:
    return board.get_global_variables(conn)


@router.put("/global-variables/{name}")
def set_global_variable_endpoint(
    name: str,
    body: SetGlobalVariableRequest,
    conn: sqlite3.Connection = Depends(get_db),
) -> dict[str, Any]:
    result = board.set_global_variable(conn, name, body.value)
    _check_error(result)
    return result


# ── WebSocket endpoint ─────────────────────────────────────


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, pipe_id: str | None = None) -> None:
    """Live board updates, optionally limited to one pipe."""
    await manager.connect(websocket, pipe_id)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        manager.disconnect(websocket)
