from __future__ import annotations

import copy
import os
import threading
import uuid
from collections.abc import Iterator
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import pytest

from src.alerting.errors import DuplicateActiveAlertError
from src.alerting.schemas.alerts import AlertHistoryQuery
from src.alerting.services.actions import ActionDispatcher, NotificationAction, ScriptAction
from src.alerting.services.lifecycle import AlertLifecycleManager
from src.alerting.services.rule_store import RuleStore


class FakeClock:
    """Deterministic clock: every call is one second after the previous one."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 5, 20, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.now = self.now + timedelta(seconds=1)
        return self.now


class InMemoryAlertStore:
    """
    AlertStore fake with the same contract as MongoAlertStore.

    Enforces at-most-one active alert per (ruleId, deviceId) like the partial
    unique index does in MongoDB.
    """

    def __init__(self):
        self.rules: Dict[str, dict] = {}
        self.alerts: Dict[str, dict] = {}
        self._lock = threading.Lock()

    def load_active_rules(self) -> List[dict]:
        with self._lock:
            return [copy.deepcopy(d) for d in self.rules.values() if d.get("isActive") is True]

    def get_rule(self, rule_id: str) -> Optional[dict]:
        with self._lock:
            doc = self.rules.get(rule_id)
            return copy.deepcopy(doc) if doc else None

    def insert_rule(self, doc: dict) -> None:
        with self._lock:
            self.rules[doc["_id"]] = copy.deepcopy(doc)

    def update_rule(self, rule_id: str, fields: Dict[str, Any]) -> Optional[dict]:
        with self._lock:
            doc = self.rules.get(rule_id)
            if doc is None:
                return None
            doc.update(copy.deepcopy(fields))
            return copy.deepcopy(doc)

    def insert_alert(self, doc: dict) -> None:
        with self._lock:
            for existing in self.alerts.values():
                if (
                    existing["status"] == "active"
                    and existing["ruleId"] == doc["ruleId"]
                    and existing["deviceId"] == doc["deviceId"]
                ):
                    raise DuplicateActiveAlertError(doc["ruleId"], doc["deviceId"])
            self.alerts[doc["_id"]] = copy.deepcopy(doc)

    def update_alert(self, alert_id: str, fields: Dict[str, Any]) -> bool:
        with self._lock:
            doc = self.alerts.get(alert_id)
            if doc is None or doc["status"] != "active":
                return False
            doc.update(copy.deepcopy(fields))
            return True

    def find_active_alert(self, rule_id: str, device_id: str) -> Optional[dict]:
        with self._lock:
            for doc in self.alerts.values():
                if doc["status"] == "active" and doc["ruleId"] == rule_id and doc["deviceId"] == device_id:
                    return copy.deepcopy(doc)
            return None

    def load_active_alerts(self) -> List[dict]:
        with self._lock:
            docs = [copy.deepcopy(d) for d in self.alerts.values() if d["status"] == "active"]
        return sorted(docs, key=lambda d: d["createdAt"], reverse=True)

    def find_alerts(self, query: AlertHistoryQuery) -> Tuple[List[dict], int]:
        with self._lock:
            docs = [copy.deepcopy(d) for d in self.alerts.values()]
        if query.status:
            docs = [d for d in docs if d["status"] == query.status.value]
        if query.severity:
            docs = [d for d in docs if d["severity"] == query.severity.value]
        if query.device_id:
            docs = [d for d in docs if d["deviceId"] == query.device_id]
        if query.rule_id:
            docs = [d for d in docs if d["ruleId"] == query.rule_id]
        if query.start:
            docs = [d for d in docs if d["createdAt"] >= query.start]
        if query.end:
            docs = [d for d in docs if d["createdAt"] <= query.end]
        docs.sort(key=lambda d: d["createdAt"], reverse=True)
        return docs[query.offset : query.offset + query.limit], len(docs)

    # ---- test helpers ----

    def active_alerts(self) -> List[dict]:
        return [d for d in self.alerts.values() if d["status"] == "active"]


class GatedAlertStore(InMemoryAlertStore):
    """
    Store whose bulk read of "rules" or "alerts" pauses after reading until released.

    Lets a test run writes between a reload's read and its swap.
    """

    def __init__(self):
        super().__init__()
        self.read_done = threading.Event()
        self._held: Optional[str] = None
        self._gate = threading.Event()

    def hold_reads(self, kind: str) -> None:
        self.read_done.clear()
        self._gate.clear()
        self._held = kind

    def release_reads(self) -> None:
        self._held = None
        self._gate.set()

    def _pause(self, kind: str) -> None:
        if self._held != kind:
            return
        self.read_done.set()
        self._gate.wait(5)

    def load_active_rules(self) -> List[dict]:
        docs = super().load_active_rules()
        self._pause("rules")
        return docs

    def load_active_alerts(self) -> List[dict]:
        docs = super().load_active_alerts()
        self._pause("alerts")
        return docs


class RecordingNotifier:
    """NotificationService that keeps every payload it was asked to send."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []

    async def send_notification(self, payload: Dict[str, Any]) -> None:
        self.sent.append(payload)


def rule_doc(**overrides: Any) -> dict:
    """A stored rule document (camelCase keys, as the store holds it)."""
    doc = {
        "_id": str(uuid.uuid4()),
        "name": "Energy overload",
        "description": "",
        "dataType": "energy",
        "deviceId": None,
        "severity": "high",
        "conditions": {"type": "simple", "field": "power", "operator": "gt", "value": 1000},
        "actions": [{"type": "notification", "recipients": ["ops"]}],
        "descriptionTemplate": None,
        "isActive": True,
        "createdAt": datetime(2024, 5, 1, tzinfo=timezone.utc),
        "updatedAt": datetime(2024, 5, 1, tzinfo=timezone.utc),
    }
    doc.update(overrides)
    return doc


@pytest.fixture
def anyio_backend() -> str:
    # The engine uses asyncio primitives (locks, tasks).
    return "asyncio"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryAlertStore:
    return InMemoryAlertStore()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def script_action(clock: FakeClock) -> ScriptAction:
    return ScriptAction(history=10, clock=clock)


@pytest.fixture
def dispatcher(notifier: RecordingNotifier, script_action: ScriptAction) -> ActionDispatcher:
    return ActionDispatcher(
        {"notification": NotificationAction(notifier), "script": script_action},
        action_timeout_sec=2.0,
    )


@pytest.fixture
def rule_store(store: InMemoryAlertStore, clock: FakeClock) -> RuleStore:
    return RuleStore(store, clock=clock)


@pytest.fixture
def manager(
    rule_store: RuleStore,
    store: InMemoryAlertStore,
    dispatcher: ActionDispatcher,
    clock: FakeClock,
) -> AlertLifecycleManager:
    return AlertLifecycleManager(rule_store, store, dispatcher, clock=clock, dispose_timeout_sec=2.0)


# ---- MongoDB integration (opt-in) ----


@pytest.fixture(scope="session")
def mongo_uri() -> str:
    """MongoDB URI for integration tests; the tests are skipped when ALERT_TEST_MONGO_URI is unset."""
    uri = os.getenv("ALERT_TEST_MONGO_URI")
    if not uri:
        pytest.skip("ALERT_TEST_MONGO_URI not set; skipping MongoDB integration tests")
    return uri


@pytest.fixture
def mongo_manager(mongo_uri: str) -> Iterator["MongoManager"]:
    """MongoManager on a throwaway database that is dropped after the test."""
    from src.alerting.db.mongo import MongoManager

    db_name = f"alerting_test_{uuid.uuid4().hex[:8]}"
    manager = MongoManager(mongo_uri, db_name)
    manager.connect()
    manager.init_indexes()
    try:
        yield manager
    finally:
        manager.db().client.drop_database(db_name)
        manager.close()
