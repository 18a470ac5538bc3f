"""
Tests for rule evaluation.

Covers tag detection, the ai() judge path, the judge fallback over every
condition, interactive-only filtering and all()/any() aggregation over
parallel children.
"""

import asyncio

import pytest

from score.config.piece_loader import parse_rule
from score.runtime.engine import JudgeCaller, RuleEvaluator, detect_judge_index, detect_rule_index
from score.runtime.engine.rule_evaluator import condition_kind, resolved_condition
from score.runtime.providers import ScriptedProvider, ScriptedReply
from score.runtime.types import (
    AgentResponse,
    LeafMovement,
    MatchMethod,
    ParallelMovement,
    ResponseStatus,
    RuleMatch,
)


def _rules(*conditions, **flags):
    return tuple(parse_rule({"condition": c, "next": "COMPLETE", **flags}) for c in conditions)


def _judge(provider, tmp_path):
    return JudgeCaller(provider, str(tmp_path))


def _child_response(name, index, status=ResponseStatus.DONE):
    response = AgentResponse(persona=name, status=status, content="")
    if index is None:
        return response
    return response.with_match(RuleMatch(index, MatchMethod.PHASE1_TAG))


class TestDetectRuleIndex:
    """[MOVEMENT:N] tag detection."""

    def test_returns_zero_based_index(self):
        assert detect_rule_index("All good.\n[REVIEW:2]", "review") == 1

    def test_last_tag_wins(self):
        assert detect_rule_index("[REVIEW:1] then on reflection [REVIEW:3]", "review") == 2

    def test_case_insensitive(self):
        assert detect_rule_index("[review:1]", "Review") == 0

    def test_zero_is_not_a_rule(self):
        assert detect_rule_index("[REVIEW:0]", "review") is None

    def test_other_movement_tag_ignored(self):
        assert detect_rule_index("[STEP:1]", "plan") is None

    def test_hyphenated_names(self):
        assert detect_rule_index("[AI-REVIEW:1]", "ai-review") == 0


class TestDetectJudgeIndex:
    def test_first_tag_wins(self):
        assert detect_judge_index("[JUDGE:2] or maybe [JUDGE:1]") == 1

    def test_missing_tag(self):
        assert detect_judge_index("I think the second one") is None


class TestTagMatching:
    """Phase-1 tag matching and the judge fallback."""

    def test_phase1_tag(self, tmp_path):
        movement = LeafMovement(name="review", rules=_rules("approved", "needs fix"))
        provider = ScriptedProvider()
        evaluator = RuleEvaluator(movement, _judge(provider, tmp_path))

        match = asyncio.run(evaluator.evaluate("Looks fine. [REVIEW:1]"))

        assert match == RuleMatch(0, MatchMethod.PHASE1_TAG)
        assert provider.calls == []

    def test_out_of_range_tag_falls_back_to_judge(self, tmp_path):
        movement = LeafMovement(name="review", rules=_rules("approved", "needs fix"))
        provider = ScriptedProvider(["[JUDGE:2]"])
        evaluator = RuleEvaluator(movement, _judge(provider, tmp_path))

        match = asyncio.run(evaluator.evaluate("[REVIEW:5]"))

        assert match == RuleMatch(1, MatchMethod.AI_JUDGE_FALLBACK)
        prompt = provider.calls[0].prompt
        assert "| 1 | approved |" in prompt
        assert "| 2 | needs fix |" in prompt

    def test_judge_runs_without_tools_in_fresh_session(self, tmp_path):
        movement = LeafMovement(name="review", rules=_rules("approved"))
        provider = ScriptedProvider(["[JUDGE:1]"])
        asyncio.run(RuleEvaluator(movement, _judge(provider, tmp_path)).evaluate("no tag"))

        options = provider.calls[0].options
        assert options.allowed_tools == ()
        assert options.session_id is None
        assert provider.calls[0].persona == "conductor"

    def test_no_judge_means_no_match(self):
        movement = LeafMovement(name="review", rules=_rules("approved"))
        assert asyncio.run(RuleEvaluator(movement).evaluate("no tag")) is None

    def test_no_rules(self, tmp_path):
        movement = LeafMovement(name="review")
        assert asyncio.run(RuleEvaluator(movement, _judge(ScriptedProvider(), tmp_path)).evaluate("x")) is None


class TestAiConditions:
    """ai("...") rules are decided by the judge only."""

    def test_ai_condition_match(self, tmp_path):
        movement = LeafMovement(name="verify", rules=_rules('ai("tests pass")', 'ai("tests fail")'))
        provider = ScriptedProvider(["[JUDGE:2]"])

        match = asyncio.run(RuleEvaluator(movement, _judge(provider, tmp_path)).evaluate("3 failures"))

        assert match == RuleMatch(1, MatchMethod.AI_JUDGE)
        assert "| 1 | tests pass |" in provider.calls[0].prompt

    def test_judge_index_maps_to_ai_rules_only(self, tmp_path):
        movement = LeafMovement(name="verify", rules=_rules("plain", 'ai("tests pass")'))
        provider = ScriptedProvider(["[JUDGE:1]"])

        match = asyncio.run(RuleEvaluator(movement, _judge(provider, tmp_path)).evaluate("ok"))

        assert match == RuleMatch(1, MatchMethod.AI_JUDGE)

    def test_tag_still_wins_over_ai(self, tmp_path):
        movement = LeafMovement(name="verify", rules=_rules("plain", 'ai("tests pass")'))
        provider = ScriptedProvider()

        match = asyncio.run(RuleEvaluator(movement, _judge(provider, tmp_path)).evaluate("[VERIFY:1]"))

        assert match == RuleMatch(0, MatchMethod.PHASE1_TAG)

    def test_no_fallback_when_ai_judge_undecided(self, tmp_path):
        movement = LeafMovement(name="verify", rules=_rules('ai("tests pass")', "plain"))
        provider = ScriptedProvider(["I cannot tell"])

        match = asyncio.run(RuleEvaluator(movement, _judge(provider, tmp_path)).evaluate("ok"))

        assert match is None
        assert len(provider.calls) == 1

    def test_failed_judge_call_is_no_match(self, tmp_path):
        movement = LeafMovement(name="verify", rules=_rules('ai("tests pass")'))
        provider = ScriptedProvider([ScriptedReply(status=ResponseStatus.ERROR, error="rate limited")])

        assert asyncio.run(RuleEvaluator(movement, _judge(provider, tmp_path)).evaluate("ok")) is None


class TestInteractiveOnly:
    def test_hidden_when_not_interactive(self):
        movement = LeafMovement(
            name="plan",
            rules=_rules("ask the user", interactive_only=True) + _rules("proceed"),
        )
        assert asyncio.run(RuleEvaluator(movement).evaluate("[PLAN:1]")) is None
        assert asyncio.run(RuleEvaluator(movement).evaluate("[PLAN:2]")) == RuleMatch(1, MatchMethod.PHASE1_TAG)

    def test_eligible_when_interactive(self):
        movement = LeafMovement(name="plan", rules=_rules("ask the user", interactive_only=True))
        match = asyncio.run(RuleEvaluator(movement, interactive=True).evaluate("[PLAN:1]"))
        assert match == RuleMatch(0, MatchMethod.PHASE1_TAG)


class TestAggregates:
    """all()/any() conditions over parallel child results."""

    @pytest.fixture
    def reviewers(self):
        child_rules = tuple(parse_rule({"condition": c}) for c in ("approved", "needs_fix"))
        children = tuple(LeafMovement(name=n, rules=child_rules) for n in ("arch", "security", "qa"))

        def _parent(*conditions):
            return ParallelMovement(
                name="reviewers",
                children=children,
                rules=tuple(parse_rule({"condition": c, "next": "COMPLETE"}) for c in conditions),
            )

        return _parent

    def test_all_matches(self, reviewers):
        parent = reviewers('all("approved")', 'any("needs_fix")')
        outputs = {n: _child_response(n, 0) for n in ("arch", "security", "qa")}

        assert asyncio.run(RuleEvaluator(parent).evaluate("", outputs)) == RuleMatch(0, MatchMethod.AGGREGATE)

    def test_any_matches_when_all_fails(self, reviewers):
        parent = reviewers('all("approved")', 'any("needs_fix")')
        outputs = {"arch": _child_response("arch", 0), "security": _child_response("security", 1),
                   "qa": _child_response("qa", 0)}

        assert asyncio.run(RuleEvaluator(parent).evaluate("", outputs)) == RuleMatch(1, MatchMethod.AGGREGATE)

    def test_per_child_conditions(self, reviewers):
        parent = reviewers('all("approved", "needs_fix", "approved")')
        outputs = {"arch": _child_response("arch", 0), "security": _child_response("security", 1),
                   "qa": _child_response("qa", 0)}

        assert asyncio.run(RuleEvaluator(parent).evaluate("", outputs)) == RuleMatch(0, MatchMethod.AGGREGATE)

    def test_errored_child_resolves_to_nothing(self, reviewers):
        parent = reviewers('all("approved")', 'any("approved")')
        outputs = {
            "arch": _child_response("arch", 0),
            "security": _child_response("security", 0, status=ResponseStatus.ERROR),
            "qa": _child_response("qa", 0),
        }

        assert asyncio.run(RuleEvaluator(parent).evaluate("", outputs)) == RuleMatch(1, MatchMethod.AGGREGATE)
        assert resolved_condition(parent.children[1], outputs["security"]) is None

    def test_aggregate_only_parent_never_calls_judge(self, reviewers, tmp_path):
        parent = reviewers('all("approved")')
        provider = ScriptedProvider()
        outputs = {n: _child_response(n, 1) for n in ("arch", "security", "qa")}

        match = asyncio.run(RuleEvaluator(parent, _judge(provider, tmp_path)).evaluate("", outputs))

        assert match is None
        assert provider.calls == []

    def test_unmatched_child(self, reviewers):
        parent = reviewers('any("approved")')
        outputs = {n: _child_response(n, None) for n in ("arch", "security", "qa")}

        assert asyncio.run(RuleEvaluator(parent).evaluate("", outputs)) is None


class TestConditionKind:
    def test_kinds(self):
        assert condition_kind(parse_rule({"condition": "done"}).match) == "tag"
        assert condition_kind(parse_rule({"condition": 'ai("done")'}).match) == "ai"
        assert condition_kind(parse_rule({"condition": 'any("done")'}).match) == "aggregate"

    def test_unknown_kind(self):
        with pytest.raises(TypeError):
            condition_kind("done")
