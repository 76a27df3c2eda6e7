"""Allow/deny rules deciding which records the operator may manage.

DESIGN PHILOSOPHY:
- Default deny: a record that matches no rule is never managed
- Ordered rules: the first matching rule decides
- Glob matching: fnmatch patterns on the subdomain and on the record name
- No side effects: evaluation is a pure function of its inputs

Example:
```yaml
rules:
  - action: deny
    subdomain: "legacy.example.com"
  - action: allow
    subdomain: "*.example.com"
    record: "*"
    types: [NS, CNAME, TXT]
```
"""

from __future__ import annotations

import fnmatch
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum

import yaml

from .records import normalize_name

logger = logging.getLogger(__name__)


class FilterRulesError(Exception):
    """Raised when filter rules configuration is invalid."""

    pass


class FilterAction(str, Enum):
    """Decision taken by a matching rule."""

    ALLOW = "allow"
    DENY = "deny"


@dataclass(frozen=True)
class FilterRule:
    """A single filter rule.

    Attributes:
        action: allow or deny.
        subdomain: Glob on the subdomain zone name ("*" matches all).
        record: Glob on the record name ("*" matches all).
        types: Record types the rule applies to; empty means every type.
    """

    action: FilterAction
    subdomain: str = "*"
    record: str = "*"
    types: frozenset[str] = field(default_factory=frozenset)

    def matches(self, subdomain: str, record_name: str, record_type: str) -> bool:
        if self.types and record_type.upper() not in self.types:
            return False
        return _glob(subdomain, self.subdomain) and _glob(record_name, self.record)


def _glob(name: str, pattern: str) -> bool:
    if pattern == "*":
        return True
    return fnmatch.fnmatchcase(normalize_name(name), normalize_name(pattern))


@dataclass(frozen=True)
class FilterDecision:
    """Outcome of a filter evaluation, with the rule index for audit."""

    allowed: bool
    rule_index: int | None = None


class FilterEvaluator:
    """Evaluates records against an ordered rule list."""

    def __init__(self, rules: Iterable[FilterRule]) -> None:
        self._rules = tuple(rules)

    @property
    def rules(self) -> tuple[FilterRule, ...]:
        return self._rules

    def evaluate(
        self,
        subdomain: str,
        record_name: str,
        record_type: str,
    ) -> FilterDecision:
        """Decide whether a record is eligible for management.

        Args:
            subdomain: Name of the subdomain zone the record belongs to.
            record_name: Fully qualified record name.
            record_type: Record type.

        Returns:
            FilterDecision; allowed is False when no rule matches.
        """
        for index, rule in enumerate(self._rules):
            if rule.matches(subdomain, record_name, record_type):
                return FilterDecision(allowed=rule.action is FilterAction.ALLOW, rule_index=index)
        return FilterDecision(allowed=False)

    def is_allowed(
        self,
        subdomain: str,
        record_name: str,
        record_type: str,
    ) -> bool:
        decision = self.evaluate(subdomain, record_name, record_type)
        if not decision.allowed:
            logger.debug(
                "Record filtered out",
                extra={
                    "subdomain": subdomain,
                    "record_name": record_name,
                    "record_type": record_type,
                    "rule_index": decision.rule_index,
                },
            )
        return decision.allowed

    @classmethod
    def from_dicts(cls, raw_rules: list[object]) -> FilterEvaluator:
        """Build an evaluator from a list of plain mappings.

        Raises:
            FilterRulesError: If a rule is malformed.
        """
        rules: list[FilterRule] = []
        for i, rule_data in enumerate(raw_rules):
            if not isinstance(rule_data, dict):
                raise FilterRulesError(f"Rule {i} must be an object")

            raw_action = str(rule_data.get("action", "")).lower()
            try:
                action = FilterAction(raw_action)
            except ValueError as e:
                raise FilterRulesError(
                    f"Rule {i}: 'action' must be 'allow' or 'deny', got {raw_action!r}"
                ) from e

            types = rule_data.get("types", [])
            if not isinstance(types, list):
                raise FilterRulesError(f"Rule {i}: 'types' must be a list")

            rules.append(
                FilterRule(
                    action=action,
                    subdomain=str(rule_data.get("subdomain", "*")),
                    record=str(rule_data.get("record", "*")),
                    types=frozenset(str(t).upper() for t in types),
                )
            )
        return cls(rules)

    @classmethod
    def from_yaml(cls, yaml_content: str) -> FilterEvaluator:
        """Parse rules from a YAML document with a top-level 'rules' list.

        Raises:
            FilterRulesError: If YAML is invalid or malformed.
        """
        try:
            data = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise FilterRulesError(f"Invalid YAML in filter rules: {e}") from e

        if data is None:
            return cls([])
        if not isinstance(data, dict):
            raise FilterRulesError("Filter rules must be a YAML object")

        raw_rules = data.get("rules", [])
        if not isinstance(raw_rules, list):
            raise FilterRulesError("'rules' must be a list")
        return cls.from_dicts(raw_rules)
