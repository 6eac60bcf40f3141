"""Template placeholder resolution.

Replaces ``{{...}}`` tokens in email/SMS subjects and bodies with card,
stage, pipe, form and global-variable values. Substitution is a single
pass: text produced by one token is never re-scanned, and tokens that
resolve to nothing recognisable are left as written.
"""

import html
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:3000"

DATE_FORMAT = "%m/%d/%Y"
DATETIME_FORMAT = "%m/%d/%Y, %I:%M:%S %p"

MULTIPLE_FORMS_ERROR = "[Error: Multiple forms available. Use {{form:FormName.link}} syntax]"

TOKEN_RE = re.compile(r"\{\{(.+?)\}\}")
FORM_REF_RE = re.compile(r"^form:([^.]+)\.(.+)$")


@dataclass
class PlaceholderContext:
    """Values available to a template.

    ``card`` holds title, description and fields (``[{key, value}]``);
    ``stage``, ``pipe`` hold a name; ``form`` may hold id, name and an
    explicit link; ``submission`` holds the responses of the submission
    that triggered the dispatch.
    """

    card: dict[str, Any] = field(default_factory=dict)
    stage: dict[str, Any] = field(default_factory=dict)
    pipe: dict[str, Any] = field(default_factory=dict)
    form: dict[str, Any] = field(default_factory=dict)
    submission: dict[str, Any] = field(default_factory=dict)
    form_submissions: list[dict[str, Any]] = field(default_factory=list)
    global_variables: list[dict[str, str]] = field(default_factory=list)
    client_forms: list[dict[str, Any]] = field(default_factory=list)
    card_id: str | None = None

    @classmethod
    def from_card(
        cls,
        card: dict[str, Any],
        client_forms: list[dict[str, Any]] | None = None,
        global_variables: list[dict[str, str]] | None = None,
        form: dict[str, Any] | None = None,
        submission: dict[str, Any] | None = None,
    ) -> "PlaceholderContext":
        """Build a context from an expanded card (as returned by board.get_card)."""
        return cls(
            card={
                "title": card.get("title") or "",
                "description": card.get("description") or "",
                "fields": card.get("fields") or [],
            },
            stage=card.get("stage") or {},
            pipe=card.get("pipe") or {},
            form=form or {},
            submission=submission or {},
            form_submissions=card.get("form_submissions") or [],
            global_variables=global_variables or [],
            client_forms=client_forms or [],
            card_id=card.get("id"),
        )


def make_absolute_url(url: str, base_url: str | None) -> str:
    if not url or url.startswith(("http://", "https://")):
        return url
    base = (base_url or DEFAULT_BASE_URL).rstrip("/")
    return f"{base}/{url.lstrip('/')}"


def form_link(base_url: str | None, card_id: str, form_id: str) -> str:
    base = (base_url or DEFAULT_BASE_URL).rstrip("/")
    return f"{base}/form/{card_id}/{form_id}"


def render_value(value: Any, base_url: str | None = None) -> str:
    """Render a stored field or response value as template text."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, dict):
        if value.get("url") and value.get("name"):
            return _render_file(value, base_url)
        if value.get("data") and value.get("name"):
            return str(value["name"])
        return str(value)
    if isinstance(value, list):
        return ", ".join(render_value(v, base_url) for v in value)
    return str(value)


def _render_file(value: dict[str, Any], base_url: str | None) -> str:
    url = html.escape(make_absolute_url(str(value["url"]), base_url), quote=True)
    name = html.escape(str(value["name"]), quote=True)
    if str(value.get("type") or "").startswith("image/"):
        return (
            f'<a href="{url}" target="_blank" rel="noopener noreferrer">'
            f'<img src="{url}" alt="{name}" style="max-width: 300px; max-height: 300px; '
            f'border-radius: 4px; border: 1px solid #ddd;" /></a>'
        )
    return (
        f'<a href="{url}" target="_blank" rel="noopener noreferrer" '
        f'style="color: #2563eb; text-decoration: underline;">📎 {name}</a>'
    )


def resolve(
    template: str,
    context: PlaceholderContext,
    base_url: str | None = None,
    now: datetime | None = None,
) -> str:
    """Substitute every recognised ``{{token}}`` in ``template``."""
    if not template:
        return template

    now = now or datetime.now()
    fields = {f["key"]: f.get("value") for f in context.card.get("fields", [])}
    variables = {v["name"]: v["value"] for v in context.global_variables}

    def replace(match: re.Match[str]) -> str:
        token = match.group(1).strip()
        value = _resolve_token(token, context, fields, base_url, now)
        if value is None:
            value = variables.get(token)
        return match.group(0) if value is None else value

    return TOKEN_RE.sub(replace, template)


def _resolve_token(
    token: str,
    context: PlaceholderContext,
    fields: dict[str, Any],
    base_url: str | None,
    now: datetime,
) -> str | None:
    """Resolve one token; None means "not ours", leaving it for global variables."""
    if token in ("card_title", "card.title"):
        return context.card.get("title") or ""
    if token in ("card_description", "card.description"):
        return context.card.get("description") or ""
    if token in ("stage_name", "stage.name"):
        return context.stage.get("name") or ""
    if token in ("pipe_name", "pipe.name"):
        return context.pipe.get("name") or ""
    if token in ("form_name", "form.name"):
        return context.form.get("name") or ""
    if token == "form.id":
        return context.form.get("id") or ""
    if token == "current_date":
        return now.strftime(DATE_FORMAT)
    if token == "current_datetime":
        return now.strftime(DATETIME_FORMAT)

    if token.startswith("field_") and token[len("field_"):] in fields:
        return render_value(fields[token[len("field_"):]], base_url)
    if token.startswith("card.field."):
        return render_value(fields.get(token[len("card.field."):]), base_url)
    if token in fields:
        return render_value(fields[token], base_url)
    if token.startswith("field_"):
        return ""

    if token.startswith("submission_"):
        responses = context.submission.get("responses") or {}
        return render_value(responses.get(token[len("submission_"):]), base_url)

    form_ref = FORM_REF_RE.match(token)
    if form_ref:
        return _resolve_form_ref(form_ref.group(1), form_ref.group(2), context, base_url)

    if token == "form.link":
        return _resolve_form_link(context, base_url)

    return None


def _resolve_form_ref(
    form_name: str,
    prop: str,
    context: PlaceholderContext,
    base_url: str | None,
) -> str:
    wanted = form_name.strip().lower()

    if prop.lower() == "link":
        if not context.card_id:
            return ""
        for form in context.client_forms:
            if (form.get("name") or "").lower() == wanted:
                return form_link(base_url, context.card_id, form["id"])
        logger.debug("No client form named %r for link placeholder", form_name)
        return ""

    for submission in context.form_submissions:
        name = ((submission.get("form") or {}).get("name") or "").lower()
        if name == wanted:
            responses = submission.get("responses") or {}
            return render_value(responses.get(prop), base_url)
    return ""


def _resolve_form_link(context: PlaceholderContext, base_url: str | None) -> str:
    if context.form.get("link"):
        return context.form["link"]
    if not context.card_id or not context.client_forms:
        return ""
    if len(context.client_forms) == 1:
        return form_link(base_url, context.card_id, context.client_forms[0]["id"])
    logger.warning(
        "Card %s has %d client forms; {{form.link}} is ambiguous",
        context.card_id,
        len(context.client_forms),
    )
    return MULTIPLE_FORMS_ERROR
