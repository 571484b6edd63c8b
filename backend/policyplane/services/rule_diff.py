"""Apply a proposal's ordered change-set onto a base rule set."""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Iterable

from .. import schemas
from .errors import DuplicateRuleName, UnknownRuleReference

# purpose: turn a proposal into a draft snapshot and its rule set without touching storage
# inputs: Proposal, rules from any snapshots (filtered to the proposal base)
# outputs: draft Snapshot (id 0, native) and the resulting ordered rules
# status: pilot

logger = logging.getLogger(__name__)

DRAFT_SNAPSHOT_ID = 0
_PROTECTED_FIELDS = {"id", "snapshot_id", "snapshotId"}


def _fresh_rule_id() -> str:
    return f"rule-{uuid.uuid4().hex[:12]}"


def serialize_rules(rules: Iterable[schemas.Rule]) -> bytes:
    """Return the compact JSON encoding used for size and checksum."""

    payload = [rule.model_dump(mode="json", by_alias=True) for rule in rules]
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _matches(rule: schemas.Rule, rule_id: str) -> bool:
    return rule.id == rule_id or rule.parent_rule_id == rule_id


def _synthesize_rule(rule_data: dict[str, Any], snapshot_id: int) -> schemas.Rule:
    data = {key: value for key, value in rule_data.items() if key not in _PROTECTED_FIELDS}
    data.setdefault("engine", "wasm")
    data.setdefault("priority", 100)
    data["disabled"] = False
    return schemas.Rule.model_validate(
        {**data, "id": _fresh_rule_id(), "snapshot_id": snapshot_id}
    )


def _merge_rule(rule: schemas.Rule, rule_data: dict[str, Any]) -> schemas.Rule:
    merged = rule.model_dump(by_alias=False)
    for key, value in rule_data.items():
        if key in _PROTECTED_FIELDS:
            continue
        field_name = _field_name(key)
        merged[field_name] = value
    return schemas.Rule.model_validate(merged)


def _field_name(key: str) -> str:
    for name, field in schemas.Rule.model_fields.items():
        if key == name or key == field.alias:
            return name
    return key


def _unknown_reference(change: schemas.RuleChange, strict: bool) -> None:
    message = f"{change.action} targets unknown rule {change.rule_id!r}"
    if strict:
        raise UnknownRuleReference(message)
    logger.warning("Ignoring proposal change: %s", message)


def _name_taken(rules: list[schemas.Rule], name: str, skip: int | None = None) -> bool:
    return any(rule.rule_name == name for i, rule in enumerate(rules) if i != skip)


def _duplicate_name(change: schemas.RuleChange, name: str, strict: bool) -> None:
    message = f"{change.action} would duplicate rule name {name!r}"
    if strict:
        raise DuplicateRuleName(message)
    logger.warning("Ignoring proposal change: %s", message)


def build_snapshot_from_proposal(
    proposal: schemas.Proposal,
    base_rules: Iterable[schemas.Rule],
    *,
    strict: bool = False,
    now: datetime | None = None,
) -> tuple[schemas.Snapshot, list[schemas.Rule]]:
    """Clone the proposal's base rules into a draft and apply its changes in order.

    MODIFY and DELETE of a rule id absent from the working set are ignored with a
    warning, or raise ``UnknownRuleReference`` when ``strict`` is set. A CREATE or
    MODIFY that would leave two rules with one name is handled the same way and
    raises ``DuplicateRuleName`` in strict mode.
    """

    snapshot_id = DRAFT_SNAPSHOT_ID
    rules: list[schemas.Rule] = [
        rule.model_copy(
            update={
                "id": _fresh_rule_id(),
                "snapshot_id": snapshot_id,
                "parent_rule_id": rule.id,
            },
            deep=True,
        )
        for rule in base_rules
        if rule.snapshot_id == proposal.base_snapshot_id
    ]

    for change in proposal.changes:
        if change.action == "CREATE":
            if change.rule_data is None:
                logger.warning("Ignoring CREATE without rule data in proposal %s", proposal.id)
                continue
            created = _synthesize_rule(change.rule_data, snapshot_id)
            if _name_taken(rules, created.rule_name):
                _duplicate_name(change, created.rule_name, strict)
                continue
            rules.append(created)
            continue

        if not change.rule_id:
            _unknown_reference(change, strict)
            continue
        index = next((i for i, rule in enumerate(rules) if _matches(rule, change.rule_id)), None)
        if index is None:
            _unknown_reference(change, strict)
            continue
        if change.action == "DELETE":
            del rules[index]
        elif change.rule_data:
            merged = _merge_rule(rules[index], change.rule_data)
            if _name_taken(rules, merged.rule_name, skip=index):
                _duplicate_name(change, merged.rule_name, strict)
                continue
            rules[index] = merged

    encoded = serialize_rules(rules)
    snapshot = schemas.Snapshot(
        id=snapshot_id,
        version=proposal.new_version,
        env="prod",
        stage="DRAFT",
        is_active=False,
        artifact_format="native",
        checksum=hashlib.sha256(encoded).hexdigest(),
        size_bytes=len(encoded),
        created_at=now or datetime.now(timezone.utc),
        notes=f"AI Evolution: {proposal.reason}",
        parent_id=proposal.base_snapshot_id or None,
    )
    return snapshot, rules
