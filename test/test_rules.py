import pytest

from api.state import memory_stores
from extraction.rules import ParsingEngine, apply_rules, compile_pattern, match_rule, test_with_examples
from schedule_ai.models import ParsingRule, RuleAction, RuleCondition


def _rule(name, pattern, order=100, **kw):
    return ParsingRule(name=name, pattern=pattern, priority_order=order, **kw)


def test_delimited_pattern_flags():
    p = compile_pattern("/team\\s+meeting/i")
    assert p.search("TEAM Meeting at 9") is not None


def test_bare_pattern_is_case_sensitive():
    assert compile_pattern("meeting").search("Meeting") is None


def test_invalid_pattern_is_non_matching_with_warning():
    bad = _rule("broken", "(unclosed")
    m, warning = match_rule(bad, "anything (unclosed")
    assert m is None
    assert "invalid pattern" in warning


def test_invalid_rule_does_not_stop_others():
    rules = [
        _rule("broken", "([", order=1),
        _rule("meeting", "/meeting/i", order=2, action=RuleAction(category="meeting")),
    ]
    out = apply_rules(rules, "Team meeting 9am Friday")
    assert out.category == "meeting"
    assert out.matched_rule_ids == [rules[1].id]
    assert len(out.warnings) == 1


def test_earlier_rule_keeps_its_fields():
    high = _rule("high", "report", order=1, action=RuleAction(title="Quarterly report", priority=2))
    low = _rule("low", "report", order=50, action=RuleAction(title="Something else", location="Office"))
    out = apply_rules([low, high], "report due")
    assert out.fields.title == "Quarterly report"
    assert out.fields.priority == 2
    # a lower-priority rule still contributes fields nobody set
    assert out.fields.location == "Office"
    assert out.matched_rule_ids == [high.id, low.id]


def test_keyword_detection_collects_match():
    rule = _rule("doctor", "/doctor|dentist/i")
    out = apply_rules([rule], "Dentist at 3pm")
    assert out.keywords == ["Dentist"]


def test_inactive_rules_are_ignored():
    rule = _rule("off", "meeting", is_active=False, action=RuleAction(category="meeting"))
    out = apply_rules([rule], "meeting")
    assert out.category is None
    assert out.matched_rule_ids == []


@pytest.mark.parametrize(
    "condition,text,expected",
    [
        (RuleCondition(type="contains", value="room"), "meeting in room 4", True),
        (RuleCondition(type="not_contains", value="cancelled"), "meeting cancelled", False),
        (RuleCondition(type="min_length", value=20), "meeting", False),
        (RuleCondition(type="max_length", value=20), "meeting", True),
        (RuleCondition(type="regex", value="/\\d+am/"), "meeting 9am", True),
    ],
)
def test_conditions(condition, text, expected):
    rule = _rule("meeting", "meeting", conditions=[condition])
    m, warning = match_rule(rule, text)
    assert warning is None
    assert (m is not None) is expected


def test_unknown_condition_is_a_warning():
    rule = _rule("meeting", "meeting", conditions=[RuleCondition(type="weekday", value="fri")])
    m, warning = match_rule(rule, "meeting")
    assert m is None
    assert "unknown condition" in warning


def test_rule_examples_report():
    rule = _rule(
        "standup",
        "/stand-?up/i",
        positive_examples=["Daily standup", "Stand-up 9:15"],
        negative_examples=["Stand by for news"],
    )
    report = test_with_examples(rule)
    assert report.passed
    assert len(report.checks) == 3


def test_rule_examples_report_failure():
    rule = _rule("standup", "standup", positive_examples=["Stand-up"])
    assert not test_with_examples(rule).passed


@pytest.mark.asyncio
async def test_engine_counts_usage_and_scopes_profession():
    _, _, _, rules = memory_stores()
    business = await rules.save_rule(_rule("meeting", "/meeting/i", profession="business"))
    teacher = await rules.save_rule(_rule("class", "/meeting/i", profession="teacher"))
    glob = await rules.save_rule(_rule("global", "/team/i"))

    engine = ParsingEngine(rules)
    out = await engine.run("Team meeting", profession="business")
    assert set(out.matched_rule_ids) == {business.id, glob.id}

    stored = {r.id: r for r in await rules.list_rules("business")}
    assert stored[business.id].usage_count == 1
    assert stored[glob.id].usage_count == 1
    assert [r.id for r in await rules.list_rules("teacher")] == [teacher.id, glob.id]
