from __future__ import annotations

import logging
from dataclasses import dataclass
from threading import RLock
from typing import Optional

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)


DEFAULT_DB_NAME = "alerting"

# Partial unique index enforcing at most one active alert per (ruleId, deviceId).
ACTIVE_ALERT_INDEX = "uniq_alerts_active_rule_device"


@dataclass(frozen=True)
class MongoCollections:
    """Convenience wrapper for engine collections."""

    alert_rules: Collection
    alerts: Collection


class MongoManager:
    """MongoDB connection manager for the engine's storage DB."""

    def __init__(self, mongo_uri: str, db_name: str = DEFAULT_DB_NAME):
        self._mongo_uri = mongo_uri
        self._db_name = db_name
        self._client: Optional[MongoClient] = None
        self._lock = RLock()

    def connect(self) -> None:
        """Initialize the Mongo client if needed."""
        with self._lock:
            if self._client is not None:
                return
            # MongoClient is thread-safe and manages internal pooling.
            self._client = MongoClient(self._mongo_uri, connect=True, tz_aware=True)

    # PUBLIC_INTERFACE
    def ping(self, timeout_ms: int = 1500) -> bool:
        """Ping the configured MongoDB to validate connectivity."""
        try:
            if self._client is None:
                self.connect()
            assert self._client is not None
            self._client.admin.command("ping", maxTimeMS=int(max(250, timeout_ms)))
            return True
        except PyMongoError:
            logger.exception("Mongo ping failed (PyMongoError)")
            return False
        except Exception:
            logger.exception("Mongo ping failed (unexpected)")
            return False

    def close(self) -> None:
        """Close the Mongo client."""
        with self._lock:
            if self._client is not None:
                try:
                    self._client.close()
                except Exception:
                    logger.exception("Error closing MongoClient")
                self._client = None

    def db(self) -> Database:
        """Return the engine database handle."""
        if self._client is None:
            self.connect()
        assert self._client is not None
        return self._client[self._db_name]

    def collections(self) -> MongoCollections:
        """Return engine collections."""
        db = self.db()
        return MongoCollections(alert_rules=db["alert_rules"], alerts=db["alerts"])

    def init_indexes(self) -> None:
        """Create required indexes (idempotent)."""
        cols = self.collections()

        # ---- Alert rules ----
        cols.alert_rules.create_index([("isActive", ASCENDING)], name="idx_alert_rules_isActive")
        cols.alert_rules.create_index([("dataType", ASCENDING)], name="idx_alert_rules_dataType")

        # ---- Alerts ----
        cols.alerts.create_index([("ruleId", ASCENDING)], name="idx_alerts_rule")
        cols.alerts.create_index([("deviceId", ASCENDING)], name="idx_alerts_device")
        cols.alerts.create_index([("status", ASCENDING)], name="idx_alerts_status")
        cols.alerts.create_index([("createdAt", DESCENDING)], name="idx_alerts_createdAt_desc")
        cols.alerts.create_index(
            [("ruleId", ASCENDING), ("deviceId", ASCENDING)],
            name=ACTIVE_ALERT_INDEX,
            unique=True,
            partialFilterExpression={"status": "active"},
        )
