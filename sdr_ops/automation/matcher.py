"""Tag-change trigger evaluation.

A rule fires only when the event adds at least one of the rule's tags:

* ``any`` fires when the added tags intersect the rule's tags.
* ``all`` fires when every rule tag is present on the export after the change
  and at least one of them was just added, so a rule fires once per completion
  of its tag set and never on unrelated edits of an already-complete set.

Tags are compared exactly (case-sensitive) after whitespace stripping.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from sdr_ops.automation.models import ACTION_TYPES, TRIGGER_MODES, AutomationRule
from sdr_ops.automation.repository import AutomationRuleRepository
from sdr_ops.metrics import observe_rule_skipped


logger = logging.getLogger("app.automation.matcher")


@dataclass(frozen=True)
class TagChangeEvent:
    export_id: str
    new_tags: frozenset[str]
    previous_tags: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def build(cls, export_id: str, new_tags: Iterable[str], previous_tags: Iterable[str] = ()) -> "TagChangeEvent":
        return cls(
            export_id=export_id.strip(),
            new_tags=_tag_set(new_tags),
            previous_tags=_tag_set(previous_tags),
        )

    @property
    def added_tags(self) -> frozenset[str]:
        return self.new_tags - self.previous_tags

    def to_context(self) -> dict[str, list[str]]:
        return {
            "new_tags": sorted(self.new_tags),
            "previous_tags": sorted(self.previous_tags),
            "added_tags": sorted(self.added_tags),
        }


def _tag_set(values: Iterable[str]) -> frozenset[str]:
    return frozenset(tag for tag in (str(value).strip() for value in values) if tag)


def rule_matches(
    trigger_tags: Iterable[str],
    trigger_mode: str,
    new_tags: Iterable[str],
    previous_tags: Iterable[str],
) -> bool:
    rule_tags = _tag_set(trigger_tags)
    current = _tag_set(new_tags)
    added = current - _tag_set(previous_tags)
    if not rule_tags or not added:
        return False

    newly_relevant = bool(rule_tags & added)
    if trigger_mode == "any":
        return newly_relevant
    if trigger_mode == "all":
        return newly_relevant and rule_tags <= current
    raise ValueError(f"unknown trigger_mode: {trigger_mode}")


def _skip_reason(rule: AutomationRule) -> str | None:
    if rule.trigger_mode not in TRIGGER_MODES:
        return "invalid_trigger_mode"
    if rule.action_type not in ACTION_TYPES:
        return "invalid_action_type"
    if not isinstance(rule.trigger_tags, list) or not _tag_set(rule.trigger_tags):
        return "empty_trigger_tags"
    return None


@dataclass(slots=True)
class TriggerMatcher:
    rule_repository: AutomationRuleRepository = AutomationRuleRepository()

    def match_rules(
        self,
        session: Session,
        organization_id: str,
        event: TagChangeEvent,
    ) -> list[AutomationRule]:
        if not event.added_tags:
            return []

        rules = self.rule_repository.list_enabled(session, organization_id)
        return self.select_matching(rules, event, organization_id=organization_id)

    def select_matching(
        self,
        rules: Sequence[AutomationRule],
        event: TagChangeEvent,
        *,
        organization_id: str,
    ) -> list[AutomationRule]:
        matched: list[AutomationRule] = []
        for rule in rules:
            if not rule.enabled:
                continue
            reason = _skip_reason(rule)
            if reason is not None:
                logger.warning(
                    "automation.rule_skipped",
                    extra={
                        "organization_id": organization_id,
                        "rule_id": str(rule.id),
                        "export_id": event.export_id,
                        "error": reason,
                    },
                )
                observe_rule_skipped(reason)
                continue
            if rule_matches(rule.trigger_tags, rule.trigger_mode, event.new_tags, event.previous_tags):
                matched.append(rule)
        return matched


def match_rules(
    session: Session,
    organization_id: str,
    export_id: str,
    new_tags: Iterable[str],
    previous_tags: Iterable[str],
) -> list[AutomationRule]:
    return TriggerMatcher().match_rules(session, organization_id, TagChangeEvent.build(export_id, new_tags, previous_tags))
