from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from src.alerting.config import EngineConfig
from src.alerting.db.mongo import MongoManager
from src.alerting.db.store import MongoAlertStore
from src.alerting.errors import ConfigurationError
from src.alerting.services.actions import ActionDispatcher, build_dispatcher
from src.alerting.services.lifecycle import AlertLifecycleManager
from src.alerting.services.notifications import LogNotificationService, NotificationService
from src.alerting.services.rule_store import RuleStore

logger = logging.getLogger(__name__)


@dataclass
class EngineState:
    """Everything start_engine() wired together; owned by the embedding process."""

    config: EngineConfig
    mongo: MongoManager
    store: MongoAlertStore
    rules: RuleStore
    dispatcher: ActionDispatcher
    manager: AlertLifecycleManager
    http_client: httpx.AsyncClient


def _configure_logging(level: str) -> None:
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


# PUBLIC_INTERFACE
async def start_engine(
    config: EngineConfig,
    *,
    notifier: Optional[NotificationService] = None,
) -> EngineState:
    """Connect Mongo, ensure indexes, build the engine and load rules + active alerts."""
    _configure_logging(config.log_level)

    if not config.mongo_uri:
        raise ConfigurationError("ALERT_MONGO_URI is not configured")

    mongo = MongoManager(config.mongo_uri, config.db_name)
    mongo.connect()
    # Verify early so a misconfigured Mongo fails startup instead of every data point.
    if not mongo.ping():
        mongo.close()
        raise ConfigurationError("Mongo connectivity check failed during engine startup; verify ALERT_MONGO_URI")
    if config.ensure_indexes:
        mongo.init_indexes()

    store = MongoAlertStore(mongo)
    rules = RuleStore(store)
    http_client = httpx.AsyncClient(timeout=httpx.Timeout(config.webhook_timeout_sec))
    dispatcher = build_dispatcher(
        notifier or LogNotificationService(),
        http_client,
        action_timeout_sec=config.action_timeout_sec,
        script_history=config.script_intent_history,
    )
    manager = AlertLifecycleManager(rules, store, dispatcher, dispose_timeout_sec=config.dispose_timeout_sec)

    state = EngineState(
        config=config,
        mongo=mongo,
        store=store,
        rules=rules,
        dispatcher=dispatcher,
        manager=manager,
        http_client=http_client,
    )
    try:
        result = await manager.init()
    except Exception:
        await stop_engine(state)
        raise

    if result.failures:
        logger.warning("Alert engine started with %s unparsable rules", len(result.failures))
    logger.info("Alert engine started (rules=%s)", result.loaded)
    return state


# PUBLIC_INTERFACE
async def stop_engine(state: EngineState) -> None:
    """Drain pending actions, then close the HTTP client and Mongo connections."""
    try:
        await state.manager.dispose()
    except Exception:
        logger.exception("Error disposing alert lifecycle manager")
    try:
        await state.http_client.aclose()
    except Exception:
        logger.exception("Error closing webhook HTTP client")
    state.mongo.close()
    logger.info("Alert engine stopped")
