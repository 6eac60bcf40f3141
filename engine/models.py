"""Typed automation definitions.

Automations are stored as JSON columns but always pass through these
models: once when saved (so malformed configs are rejected up front) and
once when loaded for a dispatch. Trigger configs are chosen by
``trigger_type``; actions are a discriminated union on ``type``.
"""

from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, ValidationInfo, field_validator, model_validator

TriggerType = Literal[
    "form_submission", "card_enters_stage", "card_field_value", "manual"
]

Operator = Literal[
    "equals",
    "not_equals",
    "contains",
    "is_filled",
    "is_empty",
    "greater_than",
    "less_than",
]


# ── Conditions ────────────────────────────────────────────


class ConditionRule(BaseModel):
    field_key: str = Field(min_length=1)
    operator: Operator
    value: Any = None


class Conditions(BaseModel):
    logic: Literal["AND", "OR"] = "AND"
    rules: list[ConditionRule] = Field(default_factory=list)


# ── Trigger configs ───────────────────────────────────────


class StageTriggerConfig(BaseModel):
    stage_id: str = Field(min_length=1)


class FormTriggerConfig(BaseModel):
    form_id: str | None = None
    match_any_form: bool = False

    @model_validator(mode="after")
    def _require_form_or_any(self) -> "FormTriggerConfig":
        if not self.form_id and not self.match_any_form:
            raise ValueError(
                "form_submission trigger needs 'form_id' or 'match_any_form: true'"
            )
        return self


class FieldValueTriggerConfig(BaseModel):
    field_key: str = Field(min_length=1)
    operator: Operator = "equals"
    value: Any = None


class ManualTriggerConfig(BaseModel):
    pass


TriggerConfig = (
    StageTriggerConfig | FormTriggerConfig | FieldValueTriggerConfig | ManualTriggerConfig
)

TRIGGER_CONFIG_MODELS: dict[str, type[BaseModel]] = {
    "card_enters_stage": StageTriggerConfig,
    "form_submission": FormTriggerConfig,
    "card_field_value": FieldValueTriggerConfig,
    "manual": ManualTriggerConfig,
}


# ── Actions ───────────────────────────────────────────────


class MoveCardConfig(BaseModel):
    target_stage_id: str = Field(min_length=1)


class SendEmailConfig(BaseModel):
    template_id: str = Field(min_length=1)
    recipient_field: str | None = None
    form_id: str | None = None


class SendFormLinkConfig(BaseModel):
    form_id: str = Field(min_length=1)
    template_id: str | None = None
    recipient_field: str | None = None


class SendSmsConfig(BaseModel):
    template_id: str = Field(min_length=1)
    recipient_field: str = Field(min_length=1)


class UpdateFieldConfig(BaseModel):
    field_key: str = Field(min_length=1)
    value: Any = None


class MoveCardAction(BaseModel):
    type: Literal["move_card"] = "move_card"
    config: MoveCardConfig


class SendEmailAction(BaseModel):
    type: Literal["send_email"] = "send_email"
    config: SendEmailConfig


class SendFormLinkAction(BaseModel):
    type: Literal["send_form_link"] = "send_form_link"
    config: SendFormLinkConfig


class SendSmsAction(BaseModel):
    type: Literal["send_sms"] = "send_sms"
    config: SendSmsConfig


class UpdateFieldAction(BaseModel):
    type: Literal["update_field"] = "update_field"
    config: UpdateFieldConfig


Action = Annotated[
    MoveCardAction
    | SendEmailAction
    | SendFormLinkAction
    | SendSmsAction
    | UpdateFieldAction,
    Field(discriminator="type"),
]


# ── Automation ────────────────────────────────────────────


class OwnerRef(BaseModel):
    """Where an automation is attached: the pipe itself or one of its stages."""

    type: Literal["pipe", "stage"]
    id: str = Field(min_length=1)


class Automation(BaseModel):
    id: str = ""
    pipe_id: str = ""
    owner: OwnerRef | None = None
    name: str = Field(min_length=1)
    enabled: bool = True
    trigger_type: TriggerType
    trigger_config: TriggerConfig = Field(default_factory=dict, validate_default=True)
    conditions: Conditions | None = None
    actions: list[Action] = Field(default_factory=list)
    position: int = 0

    @field_validator("trigger_config", mode="before")
    @classmethod
    def _coerce_trigger_config(cls, value: Any, info: ValidationInfo) -> Any:
        model = TRIGGER_CONFIG_MODELS.get(info.data.get("trigger_type", ""))
        if model is None or isinstance(value, model):
            return value
        return model.model_validate(value or {})

    def sort_key(self) -> tuple[int, str]:
        return (self.position, self.name)

    def remap_ids(
        self,
        stage_ids: dict[str, str],
        form_ids: dict[str, str],
        template_ids: dict[str, str] | None = None,
    ) -> "Automation":
        """Return a copy with stage/form/template references rewritten.

        Only known ID-bearing fields are touched; free text (names, field
        values, condition values) is never rewritten.
        """
        template_ids = template_ids or {}

        def stage(sid: str) -> str:
            return stage_ids.get(sid, sid)

        def form(fid: str | None) -> str | None:
            return form_ids.get(fid, fid) if fid else fid

        def template(tid: str | None) -> str | None:
            return template_ids.get(tid, tid) if tid else tid

        trigger_config = self.trigger_config
        if isinstance(trigger_config, StageTriggerConfig):
            trigger_config = trigger_config.model_copy(
                update={"stage_id": stage(trigger_config.stage_id)}
            )
        elif isinstance(trigger_config, FormTriggerConfig):
            trigger_config = trigger_config.model_copy(
                update={"form_id": form(trigger_config.form_id)}
            )

        actions: list[Any] = []
        for action in self.actions:
            config = action.config
            if isinstance(config, MoveCardConfig):
                config = config.model_copy(
                    update={"target_stage_id": stage(config.target_stage_id)}
                )
            elif isinstance(config, (SendEmailConfig, SendFormLinkConfig)):
                config = config.model_copy(
                    update={
                        "form_id": form(config.form_id),
                        "template_id": template(config.template_id),
                    }
                )
            elif isinstance(config, SendSmsConfig):
                config = config.model_copy(
                    update={"template_id": template(config.template_id)}
                )
            actions.append(action.model_copy(update={"config": config}))

        owner = self.owner
        if owner is not None and owner.type == "stage":
            owner = owner.model_copy(update={"id": stage(owner.id)})

        return self.model_copy(
            update={
                "trigger_config": trigger_config,
                "actions": actions,
                "owner": owner,
            }
        )


# ── Dispatch events ───────────────────────────────────────


class EventContext(BaseModel):
    stage_id: str | None = None
    form_id: str | None = None
    field_key: str | None = None
    field_value: Any = None
    automation_id: str | None = None


class DispatchEvent(BaseModel):
    trigger_type: TriggerType
    card_id: str = Field(min_length=1)
    pipe_id: str = Field(min_length=1)
    context: EventContext = Field(default_factory=EventContext)
