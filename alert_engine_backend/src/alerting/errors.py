"""Exception hierarchy for the alerting engine.

All engine exceptions inherit from AlertEngineError, so callers can catch broad
or specific errors:

    try:
        await manager.resolve_alert(alert_id, "fixed", "user1")
    except NotFoundError:
        ...
    except PersistenceError:
        ...
"""

from __future__ import annotations


class AlertEngineError(Exception):
    """Base exception for all alerting engine errors."""


class ConfigurationError(AlertEngineError):
    """Raised when a rule's conditions/actions or the engine config are malformed."""


class EvaluationError(AlertEngineError):
    """Raised (and caught per rule) when evaluating one rule against one record fails."""


class PersistenceError(AlertEngineError):
    """Raised when a rule or alert cannot be read from or written to the store."""


class DuplicateActiveAlertError(PersistenceError):
    """Raised by the store when an active alert already exists for (ruleId, deviceId)."""

    def __init__(self, rule_id: str, device_id: str):
        super().__init__(f"active alert already exists for ruleId={rule_id} deviceId={device_id}")
        self.rule_id = rule_id
        self.device_id = device_id


class ActionDispatchError(AlertEngineError):
    """Raised inside the dispatcher when a single action fails; never propagates to callers."""

    def __init__(self, action_type: str, message: str):
        super().__init__(f"{action_type}: {message}")
        self.action_type = action_type


class NotFoundError(AlertEngineError):
    """Raised when a rule or active alert id is unknown."""


class ValidationError(AlertEngineError):
    """Raised when a rule payload is missing required fields or is malformed."""
