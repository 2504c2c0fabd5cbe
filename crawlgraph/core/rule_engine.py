"""
Page check rules loaded from JSON.

A rule fires when its conditions hold for a page, meaning the issue it names
is present. Conditions read the flat field dict built by
engines.issues.engine.page_check_fields. Rules sharing a `check` name count as
one check per page, so missing_canonical and canonical_mismatch together are a
single pass/fail.

Rule files live in crawlgraph/rules/definitions; adding a check needs no code
change unless it reads a new field.
"""

from __future__ import annotations

import json
import operator
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Literal

import structlog
from pydantic import BaseModel, ValidationError

from crawlgraph.engines.base import IssueCategory, IssueType, Severity

logger = structlog.get_logger(__name__)

RULES_DIR = Path(__file__).resolve().parent.parent / "rules" / "definitions"


def is_blank(value: Any) -> bool:
    return value is None or value == "" or value == []


# ─────────────────────────────────────────────
# Rule Schema
# ─────────────────────────────────────────────

class Condition(BaseModel):
    field: str
    op: str
    value: Any = None
    transform: str | None = None   # len | lower | strip


class CheckRule(BaseModel):
    id: IssueType
    check: str
    name: str
    description: str        # format template over the page fields
    category: IssueCategory
    severity: Severity
    when: list[Condition]
    match: Literal["all", "any"] = "all"
    recommendation: str = ""
    enabled: bool = True


# ─────────────────────────────────────────────
# Evaluation
# ─────────────────────────────────────────────

OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "eq": operator.eq,
    "ne": operator.ne,
    "lt": operator.lt,
    "gt": operator.gt,
    "lte": operator.le,
    "gte": operator.ge,
    "exists": lambda actual, _: not is_blank(actual),
    "not_exists": lambda actual, _: is_blank(actual),
    "contains": lambda actual, expected: bool(actual) and expected in actual,
    "not_contains": lambda actual, expected: not actual or expected not in actual,
}

TRANSFORMS: dict[str, Callable[[Any], Any]] = {
    "len": lambda v: len(v) if v else 0,
    "lower": lambda v: v.lower() if isinstance(v, str) else v,
    "strip": lambda v: v.strip() if isinstance(v, str) else v,
}


def condition_holds(condition: Condition, fields: dict[str, Any]) -> bool:
    value = fields.get(condition.field)
    if condition.transform:
        transform = TRANSFORMS.get(condition.transform)
        if transform is None:
            logger.warning("Unknown rule transform", transform=condition.transform)
        else:
            value = transform(value)

    compare = OPERATORS.get(condition.op)
    if compare is None:
        logger.warning("Unknown rule operator", op=condition.op)
        return False

    try:
        return compare(value, condition.value)
    except TypeError:
        # None compared with a number, e.g. word_count on a page without a body
        return False


def rule_fires(rule: CheckRule, fields: dict[str, Any]) -> bool:
    results = (condition_holds(c, fields) for c in rule.when)
    return all(results) if rule.match == "all" else any(results)


class _KeepMissing(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def render_description(template: str, fields: dict[str, Any]) -> str:
    return template.format_map(_KeepMissing(fields))


# ─────────────────────────────────────────────
# Rule Set
# ─────────────────────────────────────────────

class RuleSet:
    """Enabled rules from every *.json file under a directory, in file order."""

    def __init__(self, rules: list[CheckRule]):
        self.rules = rules

    @classmethod
    def from_directory(cls, directory: Path) -> RuleSet:
        rules: list[CheckRule] = []
        files = sorted(directory.glob("**/*.json"))
        for path in files:
            try:
                data = json.loads(path.read_text())
                entries = data if isinstance(data, list) else [data]
                loaded = [CheckRule.model_validate(entry) for entry in entries]
            except (OSError, ValueError, ValidationError) as e:
                logger.error("Skipping rule file", file=str(path), error=str(e))
                continue
            rules.extend(rule for rule in loaded if rule.enabled)

        logger.info("Rules loaded", rules=len(rules), files=len(files))
        return cls(rules)

    def get(self, rule_id: IssueType) -> CheckRule | None:
        return next((r for r in self.rules if r.id == rule_id), None)

    @property
    def checks(self) -> list[str]:
        """Distinct check names in rule order."""
        return list(dict.fromkeys(rule.check for rule in self.rules))

    def fired(self, fields: dict[str, Any]) -> list[CheckRule]:
        return [rule for rule in self.rules if rule_fires(rule, fields)]


@lru_cache
def get_rule_set() -> RuleSet:
    return RuleSet.from_directory(RULES_DIR)
