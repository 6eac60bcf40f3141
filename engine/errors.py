"""Exception taxonomy for the automation engine.

Structural errors (DispatchError) abort a whole dispatch. Action errors
are recorded against one action and never stop sibling actions or other
automations.
"""


class AutomationError(Exception):
    """Base class for all automation engine errors."""

    code = "automation_error"


class DispatchError(AutomationError):
    """A dispatch cannot proceed at all."""

    code = "dispatch_error"


class InvalidEvent(DispatchError):
    """Event is missing required fields or references a card outside its pipe."""

    code = "invalid_event"


class PipeNotFound(DispatchError):
    code = "pipe_not_found"


class CardNotFound(DispatchError):
    code = "card_not_found"


class ActionError(AutomationError):
    """A single action failed."""

    code = "action_error"


class TemplateNotFound(ActionError):
    code = "template_not_found"


class FormNotFound(ActionError):
    code = "form_not_found"


class StageNotFound(ActionError):
    code = "stage_not_found"


class NoRecipient(ActionError):
    code = "no_recipient"


class TransportError(ActionError):
    """Email/SMS delivery failed (not configured, timeout, or non-2xx)."""

    code = "transport_error"


class CascadeLimitExceeded(AutomationError):
    code = "cascade_limit_exceeded"


class ConditionEvaluationError(AutomationError):
    """A condition rule is malformed. Evaluation fails closed."""

    code = "condition_error"
