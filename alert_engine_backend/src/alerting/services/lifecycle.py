from __future__ import annotations

import asyncio
import logging
import weakref
from collections.abc import Mapping
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set, Tuple

from pydantic import ValidationError as PydanticValidationError

from src.alerting.db.store import AlertStore
from src.alerting.errors import DuplicateActiveAlertError, EvaluationError, NotFoundError, PersistenceError
from src.alerting.schemas.alerts import Alert, AlertHistoryPage, AlertHistoryQuery
from src.alerting.schemas.common import AlertStatus, new_id, utc_now
from src.alerting.schemas.rules import Rule
from src.alerting.services.actions import ActionDispatcher
from src.alerting.services.conditions import ConditionEvaluator
from src.alerting.services.rule_store import RuleLoadResult, RuleStore
from src.alerting.services.templates import default_description, render_template

logger = logging.getLogger(__name__)

AlertKey = Tuple[str, str]  # (ruleId, deviceId)


async def _run_in_thread(func, *args, **kwargs):
    """Run blocking store calls in a worker thread."""
    return await asyncio.to_thread(func, *args, **kwargs)


class AlertLifecycleManager:
    """
    Evaluates rules per telemetry data point and drives alerts through active -> resolved.

    - One active alert per (ruleId, deviceId), held in an index keyed by that pair
    - Re-firing while active only bumps updatedAt (no new alert, no actions)
    - Creation, continuation and resolution of a key run under that key's lock
    - Actions for a new alert run in a background task
    """

    def __init__(
        self,
        rule_store: RuleStore,
        store: AlertStore,
        dispatcher: ActionDispatcher,
        *,
        evaluator: Optional[ConditionEvaluator] = None,
        clock: Callable[[], datetime] = utc_now,
        dispose_timeout_sec: float = 5.0,
    ):
        self._rules = rule_store
        self._store = store
        self._dispatcher = dispatcher
        self._evaluator = evaluator or ConditionEvaluator()
        self._clock = clock
        self._dispose_timeout = dispose_timeout_sec

        self._active: Dict[AlertKey, Alert] = {}
        self._by_id: Dict[str, AlertKey] = {}
        # Entries vanish once no coroutine holds or awaits the key's lock.
        self._locks: "weakref.WeakValueDictionary[AlertKey, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._reload_lock = asyncio.Lock()
        # Keys indexed or unindexed while a reload is reading the store.
        self._changed_during_reload: Optional[Set[AlertKey]] = None
        self._dispatch_tasks: Set[asyncio.Task] = set()

    @property
    def rule_store(self) -> RuleStore:
        return self._rules

    # ---- lifecycle ----

    async def init(self) -> RuleLoadResult:
        """Load the rule snapshot and rebuild the active-alert index from the store."""
        async with self._reload_lock:
            result = await self._rules.load()
            await self._load_active_alerts()
        return result

    async def reload(self) -> RuleLoadResult:
        return await self.init()

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for pending action dispatches; anything still running after timeout is cancelled."""
        pending = set(self._dispatch_tasks)
        if not pending:
            return
        _, not_done = await asyncio.wait(pending, timeout=timeout)
        if not_done:
            logger.warning("Cancelling %s pending alert action dispatches", len(not_done))
            for task in not_done:
                task.cancel()
            await asyncio.gather(*not_done, return_exceptions=True)

    async def dispose(self) -> None:
        await self.drain(timeout=self._dispose_timeout)
        self._active.clear()
        self._by_id.clear()
        self._locks.clear()
        self._rules.clear()

    async def _load_active_alerts(self) -> None:
        self._changed_during_reload = set()
        try:
            docs = await _run_in_thread(self._store.load_active_alerts)
        finally:
            changed, self._changed_during_reload = self._changed_during_reload, None

        active: Dict[AlertKey, Alert] = {}
        for doc in docs:
            try:
                alert = Alert.from_doc(doc)
            except (PydanticValidationError, ValueError, TypeError):
                logger.exception("Skipping malformed active alert id=%s", doc.get("_id"))
                continue
            current = active.get(alert.key)
            if current is not None:
                logger.warning(
                    "Multiple active alerts for ruleId=%s deviceId=%s (%s, %s); indexing the newest",
                    alert.rule_id,
                    alert.device_id,
                    current.id,
                    alert.id,
                )
                if current.created_at >= alert.created_at:
                    continue
            active[alert.key] = alert

        # What this process did after the read is newer than the documents read.
        for key in changed:
            current = self._active.get(key)
            if current is None:
                active.pop(key, None)
            else:
                active[key] = current

        self._active = active
        self._by_id = {a.id: k for k, a in active.items()}
        logger.info("Loaded %s active alerts", len(active))

    # ---- index ----

    def _lock_for(self, key: AlertKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def _mark_changed(self, key: AlertKey) -> None:
        if self._changed_during_reload is not None:
            self._changed_during_reload.add(key)

    def _index(self, alert: Alert) -> None:
        self._mark_changed(alert.key)
        self._active[alert.key] = alert
        self._by_id[alert.id] = alert.key

    def _unindex(self, alert: Alert) -> None:
        self._mark_changed(alert.key)
        if self._active.get(alert.key) is alert:
            del self._active[alert.key]
        self._by_id.pop(alert.id, None)

    # ---- evaluation ----

    async def check_alerts(self, record: Mapping, data_type: str, device_id: str) -> List[Alert]:
        """
        Evaluate every matching rule against one telemetry data point.

        Returns the alerts that fired (newly created or continued). Store failures
        propagate; any other failure is confined to the rule that caused it.
        """
        if not record or not data_type or not device_id:
            logger.debug("check_alerts called without record/dataType/deviceId; ignoring")
            return []

        fired: List[Alert] = []
        for rule in self._rules.matching(data_type, device_id):
            try:
                if not self._evaluator.evaluate(record, rule.conditions):
                    continue
                fired.append(await self._fire(rule, record, device_id))
            except PersistenceError:
                raise
            except Exception as exc:
                err = EvaluationError(f"rule {rule.id} on device {device_id}: {exc}")
                logger.exception("Alert rule evaluation failed: %s", err)
        return fired

    async def _fire(self, rule: Rule, record: Mapping, device_id: str) -> Alert:
        key = (rule.id, device_id)
        async with self._lock_for(key):
            existing = self._active.get(key)
            if existing is not None:
                touched = await self._touch(existing)
                if touched is not None:
                    return touched
                # Resolved or removed behind our back; start a new episode.
                self._unindex(existing)

            alert = self._new_alert(rule, record, device_id)
            try:
                await _run_in_thread(self._store.insert_alert, alert.to_doc())
            except DuplicateActiveAlertError:
                doc = await _run_in_thread(self._store.find_active_alert, rule.id, device_id)
                if doc is None:
                    raise
                existing = Alert.from_doc(doc)
                self._index(existing)
                touched = await self._touch(existing)
                if touched is None:
                    raise
                return touched

            self._index(alert)
            logger.warning(
                "New alert [%s]: %s (ruleId=%s deviceId=%s alertId=%s)",
                alert.severity.value,
                alert.description,
                rule.id,
                device_id,
                alert.id,
            )
            if rule.actions:
                self._schedule_dispatch(rule, alert.model_copy(deep=True))
            return alert.model_copy(deep=True)

    async def _touch(self, alert: Alert) -> Optional[Alert]:
        """Bump updatedAt of a still-active alert. Returns None if the store no longer has it active."""
        now = self._clock()
        if not await _run_in_thread(self._store.update_alert, alert.id, {"updatedAt": now}):
            return None
        alert.updated_at = now
        self._mark_changed(alert.key)
        logger.debug("Alert %s still active; updatedAt bumped", alert.id)
        return alert.model_copy(deep=True)

    def _new_alert(self, rule: Rule, record: Mapping, device_id: str) -> Alert:
        now = self._clock()
        description = render_template(rule.description_template, record)
        if description is None:
            description = default_description(rule.name, device_id)
        return Alert(
            id=new_id(),
            rule_id=rule.id,
            device_id=device_id,
            severity=rule.severity,
            status=AlertStatus.active,
            description=description,
            data=dict(record),
            created_at=now,
            updated_at=now,
        )

    def _schedule_dispatch(self, rule: Rule, alert: Alert) -> None:
        task = asyncio.create_task(self._dispatch(rule, alert), name=f"alert-actions-{alert.id}")
        self._dispatch_tasks.add(task)
        task.add_done_callback(self._dispatch_tasks.discard)

    async def _dispatch(self, rule: Rule, alert: Alert) -> None:
        try:
            outcomes = await self._dispatcher.dispatch(rule, alert)
        except Exception:
            logger.exception("Action dispatch crashed for alertId=%s", alert.id)
            return
        failed = [o for o in outcomes if o.status == "failed"]
        if failed:
            logger.warning("%s of %s actions failed for alertId=%s", len(failed), len(outcomes), alert.id)

    # ---- resolution ----

    async def resolve_alert(self, alert_id: str, resolution: str, user_id: str) -> Alert:
        """Resolve an active alert. Resolution is terminal; a later firing creates a new alert."""
        key = self._by_id.get(alert_id)
        if key is None:
            raise NotFoundError(f"active alert not found: {alert_id}")

        async with self._lock_for(key):
            alert = self._active.get(key)
            if alert is None or alert.id != alert_id:
                raise NotFoundError(f"active alert not found: {alert_id}")

            now = self._clock()
            fields = {
                "status": AlertStatus.resolved.value,
                "resolvedAt": now,
                "resolution": resolution,
                "resolvedBy": user_id,
            }
            matched = await _run_in_thread(self._store.update_alert, alert_id, fields)
            self._unindex(alert)
            if not matched:
                raise NotFoundError(f"alert {alert_id} is no longer active in the store")

        logger.info("Alert resolved: %s - %s (by %s)", alert_id, resolution, user_id)
        return alert.model_copy(
            update={
                "status": AlertStatus.resolved,
                "resolved_at": now,
                "resolution": resolution,
                "resolved_by": user_id,
            }
        )

    # ---- queries ----

    def get_active_alerts(
        self,
        severity: Optional[str] = None,
        device_id: Optional[str] = None,
        rule_id: Optional[str] = None,
    ) -> List[Alert]:
        """Active alerts matching all supplied filters, newest first."""
        items = [
            a
            for a in self._active.values()
            if (severity is None or a.severity == severity)
            and (device_id is None or a.device_id == device_id)
            and (rule_id is None or a.rule_id == rule_id)
        ]
        items.sort(key=lambda a: a.created_at, reverse=True)
        return [a.model_copy(deep=True) for a in items]

    async def list_alert_history(self, query: Optional[AlertHistoryQuery] = None) -> AlertHistoryPage:
        """Persisted alerts of any status, newest first, with filters and pagination."""
        query = query or AlertHistoryQuery()
        docs, total = await _run_in_thread(self._store.find_alerts, query)
        return AlertHistoryPage(items=[Alert.from_doc(d) for d in docs], total=total)
