from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from src.alerting.db.store import AlertStore
from src.alerting.errors import ConfigurationError, NotFoundError, ValidationError
from src.alerting.schemas.common import new_id, utc_now
from src.alerting.schemas.rules import Rule, RuleCreate, RuleUpdate

logger = logging.getLogger(__name__)

# Patch fields that may be omitted but never explicitly nulled.
_NON_NULLABLE = ("name", "data_type", "severity", "conditions", "is_active")


async def _run_in_thread(func, *args, **kwargs):
    """Run blocking store calls in a worker thread."""
    return await asyncio.to_thread(func, *args, **kwargs)


@dataclass(frozen=True)
class RuleLoadFailure:
    """A stored rule that could not be parsed and was left out of the snapshot."""

    rule_id: str
    reason: str


@dataclass(frozen=True)
class RuleLoadResult:
    """Outcome of RuleStore.load()."""

    loaded: int
    failures: Tuple[RuleLoadFailure, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.failures


def _doc_to_rule(doc: Mapping) -> Rule:
    data = dict(doc)
    data["id"] = str(data.pop("_id", data.get("id", "")))
    return Rule.model_validate(data)


def _rule_to_doc(rule: Rule) -> dict:
    doc = rule.model_dump(by_alias=True, mode="json", exclude={"id", "created_at", "updated_at"})
    doc["_id"] = rule.id
    doc["createdAt"] = rule.created_at
    doc["updatedAt"] = rule.updated_at
    return doc


class RuleStore:
    """Holds the active rule set as an immutable snapshot and writes rule changes through to the store.

    Readers (`matching`, `rules`, `get`) never lock: they read whatever tuple is
    current. Writers build a new tuple and swap it in under `_write_lock`.
    """

    def __init__(self, store: AlertStore, *, clock: Callable[[], datetime] = utc_now):
        self._store = store
        self._clock = clock
        self._snapshot: Tuple[Rule, ...] = ()
        self._write_lock = asyncio.Lock()

    async def load(self) -> RuleLoadResult:
        """Replace the snapshot with all active rules from the store; unparsable rules are skipped."""
        rules: List[Rule] = []
        failures: List[RuleLoadFailure] = []

        # Held across the read so add/update cannot land between read and swap.
        async with self._write_lock:
            docs = await _run_in_thread(self._store.load_active_rules)
            for doc in docs:
                rule_id = str(doc.get("_id") or doc.get("id") or "")
                try:
                    rules.append(_doc_to_rule(doc))
                except (PydanticValidationError, ValueError, TypeError) as exc:
                    err = ConfigurationError(f"rule {rule_id} has malformed conditions/actions: {exc}")
                    logger.warning("Skipping alert rule id=%s: %s", rule_id, err)
                    failures.append(RuleLoadFailure(rule_id=rule_id, reason=str(exc)))

            self._snapshot = tuple(r for r in rules if r.is_active)

        logger.info("Loaded %s alert rules (%s skipped)", len(self._snapshot), len(failures))
        return RuleLoadResult(loaded=len(self._snapshot), failures=tuple(failures))

    def clear(self) -> None:
        self._snapshot = ()

    def rules(self) -> Tuple[Rule, ...]:
        return self._snapshot

    def get(self, rule_id: str) -> Optional[Rule]:
        for rule in self._snapshot:
            if rule.id == rule_id:
                return rule
        return None

    def matching(self, data_type: str, device_id: str) -> Tuple[Rule, ...]:
        """Active rules for this data type (or 'all') scoped to this device (or to any device)."""
        snapshot = self._snapshot
        return tuple(r for r in snapshot if r.is_active and r.applies_to(data_type, device_id))

    async def add(self, payload: Union[RuleCreate, Mapping]) -> str:
        """Validate, persist and (if active) publish a new rule. Returns its id."""
        if not isinstance(payload, RuleCreate):
            try:
                payload = RuleCreate.model_validate(payload)
            except (PydanticValidationError, ValueError, TypeError) as exc:
                raise ValidationError(f"invalid alert rule: {exc}") from exc

        now = self._clock()
        rule = Rule.model_validate({**payload.model_dump(), "id": new_id(), "created_at": now, "updated_at": now})

        async with self._write_lock:
            await _run_in_thread(self._store.insert_rule, _rule_to_doc(rule))
            if rule.is_active:
                self._snapshot = self._snapshot + (rule,)

        logger.info("Added alert rule: %s (id=%s)", rule.name, rule.id)
        return rule.id

    async def update(self, rule_id: str, patch: Union[RuleUpdate, Mapping]) -> Rule:
        """Apply a partial update; replaced conditions/actions are re-parsed before anything is written."""
        if not isinstance(patch, RuleUpdate):
            try:
                patch = RuleUpdate.model_validate(patch)
            except (PydanticValidationError, ValueError, TypeError) as exc:
                raise ValidationError(f"invalid alert rule update: {exc}") from exc

        fields_set = set(patch.model_fields_set)
        for name in _NON_NULLABLE:
            if name in fields_set and getattr(patch, name) is None:
                raise ValidationError(f"{name} must not be null")
        if "name" in fields_set and not patch.name.strip():
            raise ValidationError("name must not be empty")
        if "data_type" in fields_set and not patch.data_type.strip():
            raise ValidationError("dataType must not be empty")

        fields = patch.model_dump(by_alias=True, mode="json", include=fields_set)
        if "name" in fields:
            fields["name"] = fields["name"].strip()
        if "actions" in fields and fields["actions"] is None:
            fields["actions"] = []
        fields["updatedAt"] = self._clock()

        async with self._write_lock:
            doc = await _run_in_thread(self._store.update_rule, rule_id, fields)
            if doc is None:
                raise NotFoundError(f"alert rule not found: {rule_id}")
            try:
                rule = _doc_to_rule(doc)
            except (PydanticValidationError, ValueError, TypeError) as exc:
                raise ConfigurationError(f"rule {rule_id} is malformed after update: {exc}") from exc

            updated: List[Rule] = []
            replaced = False
            for existing in self._snapshot:
                if existing.id == rule_id:
                    replaced = True
                    if rule.is_active:
                        updated.append(rule)
                else:
                    updated.append(existing)
            if not replaced and rule.is_active:
                updated.append(rule)
            self._snapshot = tuple(updated)

        logger.info("Updated alert rule: %s (active=%s)", rule_id, rule.is_active)
        return rule

    async def deactivate(self, rule_id: str) -> Rule:
        """Stop evaluating a rule without deleting it."""
        return await self.update(rule_id, RuleUpdate(is_active=False))
