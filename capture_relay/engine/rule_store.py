"""
Rule Store

In-memory mirror of the three persisted rule collections. Evaluations read an
immutable snapshot; every mutation writes the collection back first and only
then swaps the snapshot, so readers see either the old or the new rule set.
"""

import re
from typing import Any, Dict, List, Tuple, Type

import structlog
from pydantic import ValidationError

from capture_relay.core.errors import RuleNotFoundError, RuleValidationError
from capture_relay.core.helpers import new_id, utc_now_iso
from capture_relay.core.store import CAPTURE_RULES, INTERCEPT_RULES, RESPONSE_RULES, CollectionStore
from capture_relay.models.rules import RULE_MODELS, CaptureRule, InterceptRule, ResponseRule, Rule

logger = structlog.get_logger()

RULE_COLLECTIONS = {
    CaptureRule.kind: CAPTURE_RULES,
    ResponseRule.kind: RESPONSE_RULES,
    InterceptRule.kind: INTERCEPT_RULES,
}

# Keys a client may not set directly
PROTECTED_KEYS = {"id", "created_at", "createdAt", "updated_at", "updatedAt"}


def _normalize_keys(model: Type[Rule], payload: Dict[str, Any]) -> Dict[str, Any]:
    """Rewrite python field names in a payload to their stored aliases"""
    data = dict(payload)
    for name, field in model.model_fields.items():
        if field.alias and field.alias != name and name in data:
            data[field.alias] = data.pop(name)
    return data


class RuleStore:
    """CRUD and enable/disable over capture, response and intercept rules"""

    def __init__(self, store: CollectionStore):
        self.store = store
        self.logger = logger.bind(component="rule_store")
        self._rules: Dict[str, Tuple[Rule, ...]] = {kind: () for kind in RULE_MODELS}

    async def load(self):
        """Read every rule collection into memory"""
        for kind, collection in RULE_COLLECTIONS.items():
            records = await self.store.read_all(collection)
            self._rules[kind] = self._parse(kind, records)
        self.logger.info(
            "Rules loaded",
            **{f"{kind}_rules": len(rules) for kind, rules in self._rules.items()}
        )

    def _parse(self, kind: str, records: List[Dict[str, Any]]) -> Tuple[Rule, ...]:
        model = RULE_MODELS[kind]
        rules = []
        for record in records:
            try:
                rules.append(model.model_validate(record))
            except ValidationError as e:
                self.logger.warning("Ignoring malformed stored rule", kind=kind, rule_id=record.get("id"), error=str(e))
        return tuple(rules)

    def _model(self, kind: str) -> Type[Rule]:
        try:
            return RULE_MODELS[kind]
        except KeyError:
            raise RuleValidationError(f"Unknown rule kind: {kind}") from None

    # Snapshots

    def rules(self, kind: str) -> Tuple[Rule, ...]:
        self._model(kind)
        return self._rules[kind]

    @property
    def capture_rules(self) -> Tuple[CaptureRule, ...]:
        return self._rules[CaptureRule.kind]

    @property
    def response_rules(self) -> Tuple[ResponseRule, ...]:
        return self._rules[ResponseRule.kind]

    @property
    def intercept_rules(self) -> Tuple[InterceptRule, ...]:
        return self._rules[InterceptRule.kind]

    def get(self, kind: str, rule_id: str) -> Rule:
        for rule in self.rules(kind):
            if rule.id == rule_id:
                return rule
        raise RuleNotFoundError(kind, rule_id)

    # Validation

    def _build(self, kind: str, data: Dict[str, Any]) -> Rule:
        model = self._model(kind)
        try:
            rule = model.model_validate(data)
        except ValidationError as e:
            raise RuleValidationError(str(e)) from e

        if isinstance(rule, CaptureRule):
            if not rule.host or not rule.host.strip():
                raise RuleValidationError("Capture rules require a host")
        else:
            if rule.path_regex:
                try:
                    re.compile(rule.path_regex, re.IGNORECASE)
                except re.error as e:
                    raise RuleValidationError(f"Invalid pathRegex {rule.path_regex!r}: {e}") from e
        if isinstance(rule, ResponseRule) and rule.response_status is not None:
            if not 100 <= rule.response_status <= 599:
                raise RuleValidationError("responseStatus must be a valid HTTP status code")
        return rule

    # Mutations

    async def _commit(self, kind: str, mutator):
        """Apply mutator to the stored collection and refresh the snapshot"""
        collection = RULE_COLLECTIONS[kind]

        def apply(records):
            result = mutator(records)
            return result, list(records)

        result, records = await self.store.update(collection, apply)
        self._rules[kind] = self._parse(kind, records)
        return result

    async def add(self, kind: str, payload: Dict[str, Any]) -> Rule:
        model = self._model(kind)
        data = {k: v for k, v in _normalize_keys(model, payload).items() if k not in PROTECTED_KEYS}
        data["id"] = new_id()
        data.setdefault("enabled", True)
        rule = self._build(kind, data)

        def append(records):
            records.append(rule.to_record())

        await self._commit(kind, append)
        self.logger.info("Rule added", kind=kind, rule_id=rule.id, host=rule.host)
        return rule

    async def update(self, kind: str, rule_id: str, changes: Dict[str, Any]) -> Rule:
        model = self._model(kind)
        changes = {k: v for k, v in _normalize_keys(model, changes).items() if k not in PROTECTED_KEYS}
        current = self.get(kind, rule_id)

        merged = {**current.to_record(), **changes}
        rule = self._build(kind, merged).model_copy(update={"updated_at": utc_now_iso()})

        def replace(records):
            for index, record in enumerate(records):
                if record.get("id") == rule_id:
                    records[index] = rule.to_record()
                    return True
            return False

        if not await self._commit(kind, replace):
            raise RuleNotFoundError(kind, rule_id)
        self.logger.info("Rule updated", kind=kind, rule_id=rule_id)
        return rule

    async def set_enabled(self, kind: str, rule_id: str, enabled: bool) -> Rule:
        rule = await self.update(kind, rule_id, {"enabled": bool(enabled)})
        self.logger.info("Rule status changed", kind=kind, rule_id=rule_id, enabled=rule.enabled)
        return rule

    async def delete(self, kind: str, rule_id: str) -> None:
        self._model(kind)

        def remove(records):
            before = len(records)
            records[:] = [record for record in records if record.get("id") != rule_id]
            return before - len(records)

        if not await self._commit(kind, remove):
            raise RuleNotFoundError(kind, rule_id)
        self.logger.info("Rule deleted", kind=kind, rule_id=rule_id)

    async def clear(self, kind: str) -> int:
        self._model(kind)

        def remove_all(records):
            count = len(records)
            records.clear()
            return count

        count = await self._commit(kind, remove_all)
        self.logger.info("Rules cleared", kind=kind, count=count)
        return count
