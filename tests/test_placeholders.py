"""Tests for template placeholder resolution."""

from datetime import datetime

from engine.placeholders import (
    MULTIPLE_FORMS_ERROR,
    PlaceholderContext,
    make_absolute_url,
    render_value,
    resolve,
)

NOW = datetime(2026, 3, 5, 14, 7, 9)


def _context(**overrides) -> PlaceholderContext:
    base = {
        "card": {
            "title": "Acme Corp",
            "description": "New lead",
            "fields": [
                {"key": "email", "value": "ops@acme.test"},
                {"key": "company", "value": "Acme"},
                {"key": "notes", "value": ""},
            ],
        },
        "stage": {"name": "Qualified"},
        "pipe": {"name": "Sales"},
        "card_id": "card-1",
    }
    base.update(overrides)
    return PlaceholderContext(**base)


class TestBuiltins:
    def test_card_stage_pipe_aliases(self) -> None:
        text = "{{card_title}}/{{card.title}} in {{stage_name}}/{{stage.name}} of {{pipe.name}}"
        assert resolve(text, _context()) == "Acme Corp/Acme Corp in Qualified/Qualified of Sales"

    def test_description(self) -> None:
        assert resolve("{{card.description}}", _context()) == "New lead"

    def test_form_name_and_id(self) -> None:
        ctx = _context(form={"id": "f-1", "name": "Onboarding"})
        assert resolve("{{form_name}} {{form.name}} {{form.id}}", ctx) == "Onboarding Onboarding f-1"

    def test_dates_use_injected_clock(self) -> None:
        result = resolve("{{current_date}} | {{current_datetime}}", _context(), now=NOW)
        assert result == "03/05/2026 | 03/05/2026, 02:07:09 PM"

    def test_empty_template(self) -> None:
        assert resolve("", _context()) == ""


class TestFields:
    def test_all_field_forms(self) -> None:
        text = "{{field_email}} {{email}} {{card.field.email}}"
        assert resolve(text, _context()) == "ops@acme.test ops@acme.test ops@acme.test"

    def test_empty_field_gives_empty_string(self) -> None:
        assert resolve("[{{field_notes}}]", _context()) == "[]"

    def test_missing_prefixed_field_gives_empty_string(self) -> None:
        assert resolve("[{{field_phone}}][{{card.field.phone}}]", _context()) == "[][]"

    def test_unknown_bare_token_left_verbatim(self) -> None:
        assert resolve("Hi {{nickname}}", _context()) == "Hi {{nickname}}"

    def test_boolean_field_renders_yes_no(self) -> None:
        ctx = _context(card={"title": "T", "fields": [{"key": "vip", "value": True}]})
        assert resolve("{{field_vip}}", ctx) == "Yes"


class TestSinglePass:
    def test_substituted_text_is_not_rescanned(self) -> None:
        ctx = _context(card={"title": "{{pipe_name}}", "fields": []})
        assert resolve("{{card_title}}", ctx) == "{{pipe_name}}"

    def test_global_variable_value_is_not_rescanned(self) -> None:
        ctx = _context(global_variables=[{"name": "sig", "value": "{{card_title}}"}])
        assert resolve("{{sig}}", ctx) == "{{card_title}}"


class TestFormSubmissions:
    def test_form_field_case_insensitive(self) -> None:
        ctx = _context(
            form_submissions=[
                {"form": {"id": "f-1", "name": "Onboarding"}, "responses": {"size": "50"}}
            ]
        )
        assert resolve("{{form:onboarding.size}}", ctx) == "50"

    def test_missing_form_or_field_gives_empty(self) -> None:
        ctx = _context(
            form_submissions=[
                {"form": {"id": "f-1", "name": "Onboarding"}, "responses": {"size": "50"}}
            ]
        )
        assert resolve("[{{form:Other.size}}][{{form:Onboarding.nope}}]", ctx) == "[][]"

    def test_submission_prefix(self) -> None:
        ctx = _context(submission={"responses": {"budget": 1200}})
        assert resolve("{{submission_budget}}", ctx) == "1200"

    def test_image_file_value(self) -> None:
        ctx = _context(
            form_submissions=[
                {
                    "form": {"id": "f-1", "name": "Docs"},
                    "responses": {
                        "logo": {"url": "/uploads/logo.png", "name": "logo.png", "type": "image/png"}
                    },
                }
            ]
        )
        result = resolve("{{form:Docs.logo}}", ctx, base_url="https://app.test")
        assert '<img src="https://app.test/uploads/logo.png"' in result
        assert 'href="https://app.test/uploads/logo.png"' in result

    def test_non_image_file_value(self) -> None:
        value = {"url": "https://cdn.test/a.pdf", "name": "a.pdf", "type": "application/pdf"}
        result = render_value(value)
        assert "📎 a.pdf" in result
        assert 'href="https://cdn.test/a.pdf"' in result

    def test_legacy_file_value_renders_name(self) -> None:
        assert render_value({"data": "aGVsbG8=", "name": "old.txt"}) == "old.txt"


class TestFormLinks:
    def test_named_link_without_submission(self) -> None:
        ctx = _context(client_forms=[{"id": "f-9", "name": "Intake"}])
        assert (
            resolve("{{form:INTAKE.link}}", ctx, base_url="https://app.test")
            == "https://app.test/form/card-1/f-9"
        )

    def test_form_link_single_client_form(self) -> None:
        ctx = _context(client_forms=[{"id": "f-9", "name": "Intake"}])
        assert resolve("{{form.link}}", ctx) == "http://localhost:3000/form/card-1/f-9"

    def test_form_link_no_client_forms(self) -> None:
        assert resolve("[{{form.link}}]", _context()) == "[]"

    def test_form_link_multiple_client_forms(self) -> None:
        ctx = _context(
            client_forms=[{"id": "f-1", "name": "A"}, {"id": "f-2", "name": "B"}]
        )
        assert resolve("{{form.link}}", ctx) == MULTIPLE_FORMS_ERROR

    def test_explicit_form_link_wins(self) -> None:
        ctx = _context(
            form={"id": "f-2", "name": "B", "link": "https://x.test/form/card-1/f-2"},
            client_forms=[{"id": "f-1", "name": "A"}, {"id": "f-2", "name": "B"}],
        )
        assert resolve("{{form.link}}", ctx) == "https://x.test/form/card-1/f-2"


class TestGlobalVariables:
    def test_globals_fill_unclaimed_tokens(self) -> None:
        ctx = _context(global_variables=[{"name": "year", "value": "2026"}])
        assert resolve("© {{year}}", ctx) == "© 2026"

    def test_field_takes_precedence_over_global(self) -> None:
        ctx = _context(global_variables=[{"name": "company", "value": "Global Inc"}])
        assert resolve("{{company}}", ctx) == "Acme"


class TestFromCard:
    def test_builds_from_expanded_card(self) -> None:
        card = {
            "id": "c-1",
            "title": "T",
            "description": None,
            "fields": [{"key": "k", "value": "v"}],
            "stage": {"id": "s", "name": "Stage"},
            "pipe": {"id": "p", "name": "Pipe"},
            "form_submissions": [],
        }
        ctx = PlaceholderContext.from_card(card)
        assert resolve("{{card_title}}|{{card_description}}|{{k}}|{{stage_name}}", ctx) == "T||v|Stage"
        assert ctx.card_id == "c-1"


def test_make_absolute_url() -> None:
    assert make_absolute_url("/a/b", "https://h.test/") == "https://h.test/a/b"
    assert make_absolute_url("https://x.test/a", "https://h.test") == "https://x.test/a"
    assert make_absolute_url("a", "") == "http://localhost:3000/a"
