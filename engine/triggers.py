"""Trigger matching.

Selects which automations an incoming event should run.
"""

import logging

from engine.conditions import FieldLookup, evaluate_rule
from engine.errors import ConditionEvaluationError
from engine.models import (
    Automation,
    DispatchEvent,
    FieldValueTriggerConfig,
    FormTriggerConfig,
    StageTriggerConfig,
)

logger = logging.getLogger(__name__)


def trigger_config_matches(
    automation: Automation,
    event: DispatchEvent,
    lookup: FieldLookup | None = None,
) -> bool:
    """Check an automation's trigger config against the event context.

    Assumes the trigger types already agree.
    """
    config = automation.trigger_config
    context = event.context

    if isinstance(config, StageTriggerConfig):
        return config.stage_id == context.stage_id

    if isinstance(config, FormTriggerConfig):
        if config.match_any_form:
            return True
        return config.form_id is not None and config.form_id == context.form_id

    if isinstance(config, FieldValueTriggerConfig):
        if context.field_key is not None and context.field_key != config.field_key:
            return False
        if "field_value" in context.model_fields_set:
            value = context.field_value
        elif lookup is not None:
            value = lookup(config.field_key)
        else:
            value = context.field_value
        try:
            return evaluate_rule(
                {"operator": config.operator, "value": config.value}, value
            )
        except ConditionEvaluationError as e:
            logger.warning("Field trigger on %r did not match: %s", automation.name, e)
            return False

    # manual: only an explicit run of this automation
    return context.automation_id is not None and context.automation_id == automation.id


def match_automations(
    event: DispatchEvent,
    automations: list[Automation],
    lookup: FieldLookup | None = None,
) -> list[Automation]:
    """Return enabled automations triggered by ``event``, in run order."""
    matched = [
        a
        for a in automations
        if a.enabled
        and a.trigger_type == event.trigger_type
        and trigger_config_matches(a, event, lookup)
    ]
    return sorted(matched, key=Automation.sort_key)
