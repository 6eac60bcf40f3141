"""Pydantic request/response models for the FlowLane API."""

from typing import Any

from pydantic import BaseModel, Field


# ── Request models ──────────────────────────────────────


class StageInput(BaseModel):
    name: str
    background_color: str | None = None


class CreatePipeRequest(BaseModel):
    name: str
    stages: list[StageInput] = []


class CreateStageRequest(BaseModel):
    name: str
    position: int | None = None
    background_color: str | None = None


class CreateFormRequest(BaseModel):
    name: str
    form_type: str = "client"
    fields: list[dict[str, Any]] = []


class CreateCardRequest(BaseModel):
    pipe_id: str
    stage_id: str
    title: str
    description: str = ""
    fields: dict[str, Any] = {}


class MoveCardRequest(BaseModel):
    stage_id: str


class SetFieldRequest(BaseModel):
    value: Any = None
    type: str | None = None


class SubmitFormRequest(BaseModel):
    form_id: str
    responses: dict[str, Any] = {}
    submitter_email: str | None = None


class CreateAutomationRequest(BaseModel):
    name: str
    enabled: bool = True
    trigger_type: str
    trigger_config: dict[str, Any] = {}
    conditions: dict[str, Any] | None = None
    actions: list[dict[str, Any]] = []
    position: int = 0


class SetEnabledRequest(BaseModel):
    enabled: bool


class RunAutomationRequest(BaseModel):
    card_id: str


class CreateEmailTemplateRequest(BaseModel):
    name: str
    subject: str
    body: str
    from_email: str | None = None
    from_name: str | None = None
    to_email: str | None = None
    cc: str | None = None
    bcc: str | None = None
    description: str | None = None


class CreateSmsTemplateRequest(BaseModel):
    name: str
    body: str
    description: str | None = None


class SetGlobalVariableRequest(BaseModel):
    value: str


# ── Response models ─────────────────────────────────────


class PipeResponse(BaseModel):
    id: str
    name: str
    created_at: str


class StageResponse(BaseModel):
    id: str
    pipe_id: str
    name: str
    position: int
    background_color: str | None = None
    created_at: str


class FormResponse(BaseModel):
    id: str
    stage_id: str
    name: str
    form_type: str
    fields: list[dict[str, Any]]
    created_at: str


class CardFieldResponse(BaseModel):
    key: str
    type: str
    value: Any = None


class SubmissionResponse(BaseModel):
    id: str
    form: dict[str, str]
    responses: dict[str, Any]
    submitted_at: str
    submitter_email: str | None = None


class CardDetailResponse(BaseModel):
    id: str
    pipe_id: str
    stage_id: str
    title: str
    description: str | None = None
    stage: dict[str, Any]
    pipe: dict[str, Any]
    fields: list[CardFieldResponse]
    form_submissions: list[SubmissionResponse]
    created_at: str
    updated_at: str


class AutomationResponse(BaseModel):
    id: str
    pipe_id: str
    owner: dict[str, str]
    name: str
    enabled: bool
    trigger_type: str
    trigger_config: dict[str, Any]
    conditions: dict[str, Any] | None = None
    actions: list[dict[str, Any]]
    position: int


class DispatchReportResponse(BaseModel):
    success: bool
    automations_found: int = 0
    automations_matched: int = 0
    automations_executed: list[str] = []
    automations_skipped: list[str] = []
    automations_failed: list[dict[str, str]] = []
    cascaded: list[dict[str, Any]] = []
    details: list[dict[str, Any]] = Field(default_factory=list)
    error: str | None = None
    error_code: str | None = None
