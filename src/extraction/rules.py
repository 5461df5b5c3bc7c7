"""
Deterministic rule matching over raw schedule text.

``apply_rules`` is pure: it evaluates active rules in ascending
``priority_order`` and merges what they contribute. A field set by an
earlier rule is never overwritten by a later one; keywords accumulate.
Rules whose pattern does not compile are treated as non-matching and
reported as warnings.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, List, Optional, Pattern, Sequence

from schedule_ai.models import ParsedFields, ParsingRule, RuleCondition
from storage.base import RuleStore

logger = logging.getLogger(__name__)

# /pattern/flags as stored by the rule editor
_DELIMITED = re.compile(r"^/(?P<body>.*)/(?P<flags>[a-zA-Z]*)$", re.DOTALL)
_FLAG_MAP = {
    "i": re.IGNORECASE,
    "m": re.MULTILINE,
    "s": re.DOTALL,
    "x": re.VERBOSE,
    "u": 0,
}

_FIELD_NAMES = ("title", "description", "location", "priority")


@lru_cache(maxsize=512)
def compile_pattern(pattern: str) -> Pattern[str]:
    """Compile a bare or ``/delimited/flags`` pattern; raises ``re.error``."""
    m = _DELIMITED.match(pattern)
    if m is None:
        return re.compile(pattern)
    flags = 0
    for ch in m.group("flags"):
        if ch not in _FLAG_MAP:
            raise re.error(f"unsupported pattern flag {ch!r}")
        flags |= _FLAG_MAP[ch]
    return re.compile(m.group("body"), flags)


@dataclass
class RuleApplication:
    fields: ParsedFields = field(default_factory=ParsedFields)
    keywords: List[str] = field(default_factory=list)
    matched_rule_ids: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    category: Optional[str] = None
    importance: Optional[float] = None

    def as_hints(self) -> Dict[str, object]:
        hints: Dict[str, object] = self.fields.model_dump(mode="json", exclude_none=True)
        if self.category is not None:
            hints["category"] = self.category
        if self.importance is not None:
            hints["importance"] = self.importance
        if self.keywords:
            hints["keywords"] = list(self.keywords)
        return hints


def _condition_passes(condition: RuleCondition, text: str) -> bool:
    """Raises ValueError for unknown condition types or bad values."""
    kind = condition.type
    value = condition.value
    if kind == "contains":
        return str(value).lower() in text.lower()
    if kind == "not_contains":
        return str(value).lower() not in text.lower()
    if kind == "regex":
        try:
            return compile_pattern(str(value)).search(text) is not None
        except re.error as e:
            raise ValueError(f"invalid condition regex {value!r}: {e}") from e
    if kind == "min_length":
        return len(text) >= int(value)
    if kind == "max_length":
        return len(text) <= int(value)
    raise ValueError(f"unknown condition type {kind!r}")


def match_rule(rule: ParsingRule, text: str) -> tuple[Optional[re.Match], Optional[str]]:
    """Return ``(match, warning)``; a warning means the rule is unhealthy."""
    try:
        pattern = compile_pattern(rule.pattern)
    except re.error as e:
        return None, f"rule {rule.id} ({rule.name}): invalid pattern {rule.pattern!r}: {e}"

    m = pattern.search(text)
    if m is None:
        return None, None

    for condition in rule.conditions:
        try:
            if not _condition_passes(condition, text):
                return None, None
        except (TypeError, ValueError) as e:
            return None, f"rule {rule.id} ({rule.name}): {e}"
    return m, None


def apply_rules(rules: Sequence[ParsingRule], text: str) -> RuleApplication:
    result = RuleApplication()
    field_values: Dict[str, object] = {}

    ordered = sorted((r for r in rules if r.is_active), key=lambda r: r.priority_order)
    for rule in ordered:
        m, warning = match_rule(rule, text)
        if warning is not None:
            result.warnings.append(warning)
            continue
        if m is None:
            continue

        result.matched_rule_ids.append(rule.id)
        action = rule.action
        for name in _FIELD_NAMES:
            value = getattr(action, name)
            if value is not None and name not in field_values:
                field_values[name] = value
        if result.category is None and action.category is not None:
            result.category = action.category
        if result.importance is None and action.importance is not None:
            result.importance = action.importance

        keywords = action.keywords or ([m.group(0)] if rule.rule_type == "keyword_detection" else [])
        for kw in keywords:
            if kw and kw not in result.keywords:
                result.keywords.append(kw)

    result.fields = ParsedFields(**field_values)
    return result


@dataclass
class ExampleCheck:
    example: str
    expected_match: bool
    matched: bool

    @property
    def passed(self) -> bool:
        return self.expected_match == self.matched


@dataclass
class RuleTestReport:
    rule_id: str
    checks: List[ExampleCheck] = field(default_factory=list)
    warning: Optional[str] = None

    @property
    def passed(self) -> bool:
        return self.warning is None and all(c.passed for c in self.checks)


def test_with_examples(rule: ParsingRule) -> RuleTestReport:
    """Run a rule against its own positive and negative examples."""
    report = RuleTestReport(rule_id=rule.id)
    for example, expected in [
        *((e, True) for e in rule.positive_examples),
        *((e, False) for e in rule.negative_examples),
    ]:
        m, warning = match_rule(rule, example)
        if warning is not None:
            report.warning = warning
        report.checks.append(ExampleCheck(example=example, expected_match=expected, matched=m is not None))
    return report


# keep pytest from collecting the helper above when it is imported into a test module
test_with_examples.__test__ = False  # type: ignore[attr-defined]


class ParsingEngine:
    """Rule matching backed by a RuleStore for rule lookup and usage accounting."""

    def __init__(self, rule_store: RuleStore):
        self.rule_store = rule_store

    async def load_rules(self, profession: Optional[str]) -> List[ParsingRule]:
        return await self.rule_store.list_rules(profession)

    async def run(
        self,
        text: str,
        profession: Optional[str] = None,
        rules: Optional[Sequence[ParsingRule]] = None,
    ) -> RuleApplication:
        if rules is None:
            rules = await self.load_rules(profession)
        application = apply_rules(rules, text)
        for warning in application.warnings:
            logger.warning(f"Rule health: {warning}")
        if application.matched_rule_ids:
            await self.rule_store.increment_usage(application.matched_rule_ids)
        return application
