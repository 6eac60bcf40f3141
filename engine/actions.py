"""Action execution.

Runs an automation's actions in order against the board and the
delivery transports. Every action gets a fresh read of the card, so it
sees what earlier actions did. A failing action is recorded and the rest
still run.
"""

import html
import logging
import re
import sqlite3
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable

from engine.errors import (
    ActionError,
    FormNotFound,
    NoRecipient,
    StageNotFound,
    TemplateNotFound,
    TransportError,
)
from engine.models import (
    Automation,
    DispatchEvent,
    MoveCardConfig,
    SendEmailConfig,
    SendFormLinkConfig,
    SendSmsConfig,
    UpdateFieldConfig,
)
from engine.placeholders import PlaceholderContext, form_link, resolve
from engine.transports import EmailMessage, EmailTransport, SmsMessage, SmsTransport
from flowlane import board

logger = logging.getLogger(__name__)

PHONE_RE = re.compile(r"^\+?[1-9]\d{1,14}$")


@dataclass
class ActionResult:
    action_type: str
    status: str
    result: dict[str, Any] | None = None
    error: str | None = None
    cascade_stage_id: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "success"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ExecutionContext:
    """Everything an action needs beyond its own config."""

    conn: sqlite3.Connection
    base_url: str = "http://localhost:3000"
    default_from_email: str = "system"
    default_from_name: str | None = None
    sms_from_number: str | None = None
    email_transport: EmailTransport | None = None
    sms_transport: SmsTransport | None = None
    event: DispatchEvent | None = None
    clock: Callable[[], datetime] = field(default=datetime.now)

    def placeholder_context(
        self, card: dict[str, Any], form: dict[str, Any] | None = None
    ) -> PlaceholderContext:
        return PlaceholderContext.from_card(
            card,
            client_forms=board.get_client_forms(self.conn, card["pipe_id"]),
            global_variables=board.get_global_variables(self.conn),
            form=form,
            submission=self._triggering_submission(card),
        )

    def _triggering_submission(self, card: dict[str, Any]) -> dict[str, Any] | None:
        if self.event is None or self.event.trigger_type != "form_submission":
            return None
        form_id = self.event.context.form_id
        for submission in card.get("form_submissions", []):
            if submission["form"]["id"] == form_id:
                return submission
        return None

    def render(self, text: str | None, context: PlaceholderContext) -> str:
        return resolve(text or "", context, self.base_url, now=self.clock())


def _field_value(card: dict[str, Any], key: str | None) -> Any:
    if not key:
        return None
    for f in card.get("fields", []):
        if f["key"] == key:
            return f["value"]
    return None


def _resolve_recipient(
    ctx: ExecutionContext,
    card: dict[str, Any],
    recipient_field: str | None,
    template: dict[str, Any] | None,
    context: PlaceholderContext,
) -> str:
    """Card field first, then the template's own recipient."""
    value = _field_value(card, recipient_field)
    if value is not None and str(value).strip():
        return str(value).strip()

    if template and template.get("to_email"):
        to_email = ctx.render(template["to_email"], context).strip()
        if to_email:
            return to_email

    if recipient_field:
        raise NoRecipient(f"Recipient field '{recipient_field}' not found or empty")
    raise NoRecipient("No recipient: no recipient field and template has no to_email")


def _tag_subject(subject: str, card_id: str) -> str:
    tag = f"[#{card_id}]"
    return subject if tag in subject else f"{subject} {tag}"


async def _deliver_email(
    ctx: ExecutionContext,
    card: dict[str, Any],
    to: str,
    subject: str,
    body: str,
    template: dict[str, Any] | None,
    context: PlaceholderContext,
) -> dict[str, Any]:
    if ctx.email_transport is None:
        raise TransportError("Email transport is not configured")

    from_email = (template or {}).get("from_email") or ctx.default_from_email
    from_name = (template or {}).get("from_name") or ctx.default_from_name
    cc = ctx.render((template or {}).get("cc"), context) or None
    bcc = ctx.render((template or {}).get("bcc"), context) or None

    message = EmailMessage(
        to=to,
        subject=_tag_subject(subject, card["id"]),
        body=body,
        from_email=from_email,
        from_name=from_name,
        cc=cc,
        bcc=bcc,
        card_id=card["id"],
    )
    await ctx.email_transport.send_email(message)
    board.log_email(
        ctx.conn,
        card["id"],
        from_addr=from_email,
        to_addr=to,
        subject=message.subject,
        body=body,
        cc=cc,
        sent_via="automation",
    )
    return {"recipient": to, "subject": message.subject}


async def _move_card(
    ctx: ExecutionContext, config: MoveCardConfig, card: dict[str, Any]
) -> ActionResult:
    target = board.get_stage(ctx.conn, config.target_stage_id)
    if target is None or target["pipe_id"] != card["pipe_id"]:
        raise StageNotFound(f"Stage not found: {config.target_stage_id}")

    moved = board.move_card(ctx.conn, card["id"], target["id"])
    if "error" in moved:
        raise StageNotFound(moved["message"])

    result = {
        "moved": moved["moved"],
        "moved_from": moved["from_stage_name"],
        "moved_to": moved["to_stage_name"],
    }
    return ActionResult(
        "move_card",
        "success",
        result=result,
        cascade_stage_id=target["id"] if moved["moved"] else None,
    )


async def _send_email(
    ctx: ExecutionContext, config: SendEmailConfig, card: dict[str, Any]
) -> ActionResult:
    template = board.get_email_template(ctx.conn, config.template_id)
    if template is None:
        raise TemplateNotFound(f"Template not found: {config.template_id}")

    form = None
    if config.form_id:
        found = board.get_form(ctx.conn, config.form_id)
        if found is not None:
            form = {
                "id": found["id"],
                "name": found["name"],
                "link": form_link(ctx.base_url, card["id"], found["id"]),
            }

    context = ctx.placeholder_context(card, form)
    to = _resolve_recipient(ctx, card, config.recipient_field, template, context)
    subject = ctx.render(template["subject"], context)
    body = ctx.render(template["body"], context)

    sent = await _deliver_email(ctx, card, to, subject, body, template, context)
    return ActionResult(
        "send_email", "success", result={**sent, "template_id": config.template_id}
    )


async def _send_form_link(
    ctx: ExecutionContext, config: SendFormLinkConfig, card: dict[str, Any]
) -> ActionResult:
    found = board.get_form(ctx.conn, config.form_id)
    if found is None or found["pipe_id"] != card["pipe_id"]:
        raise FormNotFound(f"Form not found: {config.form_id}")

    link = form_link(ctx.base_url, card["id"], found["id"])
    form = {"id": found["id"], "name": found["name"], "link": link}
    context = ctx.placeholder_context(card, form)

    template = None
    if config.template_id:
        template = board.get_email_template(ctx.conn, config.template_id)
        if template is None:
            raise TemplateNotFound(f"Template not found: {config.template_id}")

    to = _resolve_recipient(ctx, card, config.recipient_field, template, context)
    if template is not None:
        subject = ctx.render(template["subject"], context)
        body = ctx.render(template["body"], context)
    else:
        name = html.escape(found["name"])
        subject = f"Action Required: Please fill out {found['name']}"
        body = (
            "<p>Hello,</p><p>We need some information from you.</p>"
            f'<p>Please fill out the form: <a href="{html.escape(link, quote=True)}">{name}</a></p>'
            "<p>Thank you!</p>"
        )

    sent = await _deliver_email(ctx, card, to, subject, body, template, context)
    return ActionResult(
        "send_form_link",
        "success",
        result={**sent, "form_link": link, "template_used": config.template_id or "default"},
    )


async def _send_sms(
    ctx: ExecutionContext, config: SendSmsConfig, card: dict[str, Any]
) -> ActionResult:
    template = board.get_sms_template(ctx.conn, config.template_id)
    if template is None:
        raise TemplateNotFound(f"Template not found: {config.template_id}")

    raw = _field_value(card, config.recipient_field)
    if raw is None or not str(raw).strip():
        raise NoRecipient(f"Recipient field '{config.recipient_field}' not found or empty")
    phone = re.sub(r"[\s\-().]", "", str(raw))
    if not PHONE_RE.match(phone):
        raise NoRecipient(f"Invalid phone number in '{config.recipient_field}': {raw}")

    if ctx.sms_transport is None:
        raise TransportError("SMS transport is not configured")

    body = ctx.render(template["body"], ctx.placeholder_context(card))
    sent = await ctx.sms_transport.send_sms(
        SmsMessage(to=phone, body=body, from_number=ctx.sms_from_number, card_id=card["id"])
    )
    board.log_sms(
        ctx.conn,
        card["id"],
        from_number=ctx.sms_from_number or "",
        to_number=phone,
        body=body,
        sms_id=sent.get("sid"),
        status=sent.get("status"),
        sent_via="automation",
    )
    return ActionResult(
        "send_sms",
        "success",
        result={"recipient": phone, "sid": sent.get("sid"), "template_id": config.template_id},
    )


async def _update_field(
    ctx: ExecutionContext, config: UpdateFieldConfig, card: dict[str, Any]
) -> ActionResult:
    updated = board.upsert_card_field(ctx.conn, card["id"], config.field_key, config.value)
    if "error" in updated:
        raise ActionError(updated["message"])
    return ActionResult(
        "update_field",
        "success",
        result={"field_key": config.field_key, "new_value": config.value},
    )


ACTION_HANDLERS: dict[str, Callable[..., Awaitable[ActionResult]]] = {
    "move_card": _move_card,
    "send_email": _send_email,
    "send_form_link": _send_form_link,
    "send_sms": _send_sms,
    "update_field": _update_field,
}


async def execute_actions(
    automation: Automation, card_id: str, ctx: ExecutionContext
) -> list[ActionResult]:
    """Run every action of ``automation`` against the card, one result each."""
    results: list[ActionResult] = []
    for action in automation.actions:
        card = board.get_card(ctx.conn, card_id)
        if "error" in card:
            results.append(
                ActionResult(action.type, "error", error=f"Card not found: {card_id}")
            )
            continue

        handler = ACTION_HANDLERS[action.type]
        try:
            results.append(await handler(ctx, action.config, card))
        except ActionError as e:
            logger.warning(
                "Action %s of automation %r failed for card %s: %s",
                action.type,
                automation.name,
                card_id,
                e,
            )
            results.append(ActionResult(action.type, "error", error=str(e)))
        except Exception as e:
            logger.exception(
                "Unexpected error in action %s of automation %r", action.type, automation.name
            )
            results.append(ActionResult(action.type, "error", error=str(e)))
    return results
