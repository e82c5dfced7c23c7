"""Action dispatch for newly created alerts.

Actions are looked up by `type` in a handler registry:
- "notification": forwards a titled message to the NotificationService
- "webhook": POSTs the alert as JSON to `action.url`
- "script": records the request only; scripts are never executed by the engine

Each action runs independently with its own timeout. A failing action is logged
and reported in the returned outcomes; it never stops the other actions and
never raises to the caller.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Deque, Dict, List, Mapping, Optional, Protocol

import httpx

from src.alerting.errors import ActionDispatchError
from src.alerting.schemas.alerts import Alert
from src.alerting.schemas.common import utc_now
from src.alerting.schemas.rules import ActionConfig, Rule
from src.alerting.services.notifications import NotificationService

logger = logging.getLogger(__name__)


class ActionHandler(Protocol):
    async def handle(self, rule: Rule, alert: Alert, action: ActionConfig) -> None: ...


@dataclass(frozen=True)
class ActionOutcome:
    """Result of one action: status is ok|failed|skipped."""

    action_type: str
    status: str
    error: Optional[str] = None


class NotificationAction:
    def __init__(self, notifier: NotificationService):
        self._notifier = notifier

    async def handle(self, rule: Rule, alert: Alert, action: ActionConfig) -> None:
        await self._notifier.send_notification(
            {
                "type": action.notification_type or "system",
                "recipients": action.recipients or "admin",
                "title": f"[{alert.severity.value.upper()}] {rule.name}",
                "message": alert.description,
                "alertId": alert.id,
            }
        )


class WebhookAction:
    """POST the full alert as JSON; any non-2xx response is a failure."""

    def __init__(self, client: httpx.AsyncClient):
        self._client = client

    async def handle(self, rule: Rule, alert: Alert, action: ActionConfig) -> None:
        if not action.url:
            raise ActionDispatchError("webhook", f"rule {rule.id} webhook action has no url")

        resp = await self._client.post(
            action.url,
            json=alert.model_dump(mode="json", by_alias=True),
            headers={"X-Alert-ID": alert.id, "X-Alert-Severity": alert.severity.value},
        )
        if not resp.is_success:
            raise ActionDispatchError("webhook", f"HTTP {resp.status_code} from {action.url}")
        logger.info("Webhook alert sent: alertId=%s -> %s", alert.id, action.url)


@dataclass(frozen=True)
class ScriptIntent:
    script_path: str
    alert_id: str
    rule_id: str
    recorded_at: datetime


class ScriptAction:
    """Records script requests for operators; executing them is deliberately not supported."""

    def __init__(self, history: int = 100, *, clock: Callable[[], datetime] = utc_now):
        self._intents: Deque[ScriptIntent] = deque(maxlen=max(1, history))
        self._clock = clock

    async def handle(self, rule: Rule, alert: Alert, action: ActionConfig) -> None:
        if not action.script_path:
            raise ActionDispatchError("script", f"rule {rule.id} script action has no script_path")
        self._intents.append(
            ScriptIntent(
                script_path=action.script_path,
                alert_id=alert.id,
                rule_id=rule.id,
                recorded_at=self._clock(),
            )
        )
        logger.warning("Alert script requested (not executed): %s (alertId=%s)", action.script_path, alert.id)

    def intents(self) -> List[ScriptIntent]:
        return list(self._intents)


class ActionDispatcher:
    """Runs a rule's actions for an alert through the registered handlers."""

    def __init__(
        self,
        handlers: Optional[Mapping[str, ActionHandler]] = None,
        *,
        action_timeout_sec: float = 10.0,
    ):
        self._handlers: Dict[str, ActionHandler] = dict(handlers or {})
        self._timeout = float(action_timeout_sec)

    def register(self, action_type: str, handler: ActionHandler) -> None:
        self._handlers[action_type] = handler

    def handler_for(self, action_type: str) -> Optional[ActionHandler]:
        return self._handlers.get(action_type)

    async def dispatch(self, rule: Rule, alert: Alert) -> List[ActionOutcome]:
        """Run all of rule.actions concurrently; outcomes are returned in declaration order."""
        if not rule.actions:
            return []
        return list(await asyncio.gather(*(self._run_one(rule, alert, a) for a in rule.actions)))

    async def _run_one(self, rule: Rule, alert: Alert, action: ActionConfig) -> ActionOutcome:
        handler = self._handlers.get(action.type)
        if handler is None:
            logger.warning("Ignoring unknown action type=%r on rule %s", action.type, rule.id)
            return ActionOutcome(action_type=action.type, status="skipped")

        try:
            await asyncio.wait_for(handler.handle(rule, alert, action), timeout=self._timeout)
            return ActionOutcome(action_type=action.type, status="ok")
        except asyncio.TimeoutError:
            err = ActionDispatchError(action.type, f"timed out after {self._timeout:g}s")
            logger.error("Alert action failed for ruleId=%s alertId=%s: %s", rule.id, alert.id, err)
        except ActionDispatchError as exc:
            err = exc
            logger.error("Alert action failed for ruleId=%s alertId=%s: %s", rule.id, alert.id, err)
        except Exception as exc:
            err = ActionDispatchError(action.type, str(exc) or type(exc).__name__)
            logger.exception("Alert action failed for ruleId=%s alertId=%s", rule.id, alert.id)
        return ActionOutcome(action_type=action.type, status="failed", error=str(err))


# PUBLIC_INTERFACE
def build_dispatcher(
    notifier: NotificationService,
    http_client: httpx.AsyncClient,
    *,
    action_timeout_sec: float = 10.0,
    script_history: int = 100,
) -> ActionDispatcher:
    """Dispatcher with the built-in notification/webhook/script handlers registered."""
    return ActionDispatcher(
        {
            "notification": NotificationAction(notifier),
            "webhook": WebhookAction(http_client),
            "script": ScriptAction(script_history),
        },
        action_timeout_sec=action_timeout_sec,
    )
