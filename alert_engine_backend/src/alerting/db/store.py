"""Rule/alert persistence.

`AlertStore` is the contract the engine consumes; `MongoAlertStore` implements it
on pymongo. All methods are blocking; the engine calls them from a worker thread.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Protocol, Tuple

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from src.alerting.db.mongo import ACTIVE_ALERT_INDEX, MongoManager
from src.alerting.errors import DuplicateActiveAlertError, PersistenceError
from src.alerting.schemas.alerts import AlertHistoryQuery

logger = logging.getLogger(__name__)


class AlertStore(Protocol):
    """Persistence contract for rules and alerts (documents with camelCase keys and `_id`)."""

    def load_active_rules(self) -> List[dict]: ...

    def get_rule(self, rule_id: str) -> Optional[dict]: ...

    def insert_rule(self, doc: dict) -> None: ...

    def update_rule(self, rule_id: str, fields: Dict[str, Any]) -> Optional[dict]:
        """Apply fields; return the updated document, or None if the rule does not exist."""
        ...

    def insert_alert(self, doc: dict) -> None:
        """Insert an alert. Raises DuplicateActiveAlertError if an active alert exists for the key."""
        ...

    def update_alert(self, alert_id: str, fields: Dict[str, Any]) -> bool:
        """Apply fields to an alert that is still active; returns False if it is not."""
        ...

    def find_active_alert(self, rule_id: str, device_id: str) -> Optional[dict]: ...

    def load_active_alerts(self) -> List[dict]: ...

    def find_alerts(self, query: AlertHistoryQuery) -> Tuple[List[dict], int]: ...


def _history_filter(q: AlertHistoryQuery) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    if q.status:
        query["status"] = q.status.value
    if q.severity:
        query["severity"] = q.severity.value
    if q.device_id:
        query["deviceId"] = q.device_id
    if q.rule_id:
        query["ruleId"] = q.rule_id

    if q.start or q.end:
        created: Dict[str, Any] = {}
        if q.start:
            created["$gte"] = q.start
        if q.end:
            created["$lte"] = q.end
        query["createdAt"] = created

    return query


class MongoAlertStore:
    """AlertStore backed by the `alert_rules` and `alerts` collections."""

    def __init__(self, mongo: MongoManager):
        self._mongo = mongo

    def load_active_rules(self) -> List[dict]:
        cols = self._mongo.collections()
        try:
            return list(cols.alert_rules.find({"isActive": True}))
        except PyMongoError as exc:
            raise PersistenceError(f"failed to load active rules: {exc}") from exc

    def get_rule(self, rule_id: str) -> Optional[dict]:
        cols = self._mongo.collections()
        try:
            return cols.alert_rules.find_one({"_id": rule_id})
        except PyMongoError as exc:
            raise PersistenceError(f"failed to read rule {rule_id}: {exc}") from exc

    def insert_rule(self, doc: dict) -> None:
        cols = self._mongo.collections()
        try:
            cols.alert_rules.insert_one(doc)
        except PyMongoError as exc:
            raise PersistenceError(f"failed to insert rule {doc.get('_id')}: {exc}") from exc

    def update_rule(self, rule_id: str, fields: Dict[str, Any]) -> Optional[dict]:
        cols = self._mongo.collections()
        try:
            return cols.alert_rules.find_one_and_update(
                {"_id": rule_id},
                {"$set": fields},
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as exc:
            raise PersistenceError(f"failed to update rule {rule_id}: {exc}") from exc

    def insert_alert(self, doc: dict) -> None:
        cols = self._mongo.collections()
        try:
            cols.alerts.insert_one(doc)
        except DuplicateKeyError as exc:
            # Only the partial index on active (ruleId, deviceId) is a dedup conflict.
            if ACTIVE_ALERT_INDEX in str(exc):
                raise DuplicateActiveAlertError(doc["ruleId"], doc["deviceId"]) from exc
            raise PersistenceError(f"failed to insert alert {doc.get('_id')}: {exc}") from exc
        except PyMongoError as exc:
            raise PersistenceError(f"failed to insert alert {doc.get('_id')}: {exc}") from exc

    def update_alert(self, alert_id: str, fields: Dict[str, Any]) -> bool:
        cols = self._mongo.collections()
        try:
            res = cols.alerts.update_one({"_id": alert_id, "status": "active"}, {"$set": fields})
        except PyMongoError as exc:
            raise PersistenceError(f"failed to update alert {alert_id}: {exc}") from exc
        return res.matched_count > 0

    def find_active_alert(self, rule_id: str, device_id: str) -> Optional[dict]:
        cols = self._mongo.collections()
        try:
            return cols.alerts.find_one({"ruleId": rule_id, "deviceId": device_id, "status": "active"})
        except PyMongoError as exc:
            raise PersistenceError(f"failed to read active alert for ruleId={rule_id}: {exc}") from exc

    def load_active_alerts(self) -> List[dict]:
        cols = self._mongo.collections()
        try:
            return list(cols.alerts.find({"status": "active"}).sort("createdAt", -1))
        except PyMongoError as exc:
            raise PersistenceError(f"failed to load active alerts: {exc}") from exc

    def find_alerts(self, query: AlertHistoryQuery) -> Tuple[List[dict], int]:
        cols = self._mongo.collections()
        q = _history_filter(query)
        try:
            total = int(cols.alerts.count_documents(q))
            docs = list(
                cols.alerts.find(q)
                .sort("createdAt", -1)
                .skip(int(query.offset))
                .limit(int(query.limit))
            )
        except PyMongoError as exc:
            raise PersistenceError(f"failed to list alerts: {exc}") from exc
        return docs, total
