"""
Tests for parallel movements.

Children run concurrently under disjoint session keys; one child failing
never cancels its siblings, and the parent routes on aggregated results.
"""

import asyncio

import pytest

from score.runtime.engine.parallel_runner import ChildLogAdapter, child_label, prefixed_stream
from score.runtime.providers import ScriptedProvider, ScriptedReply
from score.runtime.types import LeafMovement, MatchMethod, PieceStatus, ResponseStatus

from conftest import with_status_echo

CHILDREN = ("arch-review", "security-review", "qa-review")


def _reviewers_piece(make_piece, parent_rules):
    return make_piece(
        [
            {
                "name": "reviewers",
                "parallel": [
                    {
                        "name": name,
                        "persona": "reviewer",
                        "rules": [{"condition": "approved"}, {"condition": "needs_fix"}],
                    }
                    for name in CHILDREN
                ],
                "rules": parent_rules,
            },
            {"name": "fix", "rules": [{"condition": "done", "next": "COMPLETE"}]},
        ]
    )


def _tag_from_instruction(verdicts):
    """Responder answering each child with the tag for its scripted verdict.

    Status judgments echo the tag found in the child's response.
    """

    def respond(call):
        for name, verdict in verdicts.items():
            if f"- Movement: {name}" in call.prompt:
                if isinstance(verdict, ScriptedReply):
                    return verdict
                return f"{name} finished. [{name.upper()}:{verdict}]"
        return None

    return with_status_echo(respond)


class TestChildLabels:
    def test_label(self):
        assert child_label(LeafMovement(name="arch-review"), 2) == "arch-review#2"

    def test_prefixed_stream(self):
        lines = []
        handler = prefixed_stream("arch-review#1", lines.append)
        handler("checking modules")

        assert lines == ["[arch-review#1] checking modules"]
        assert prefixed_stream("arch-review#1", None) is None

    def test_log_adapter_prefix(self):
        adapter = ChildLogAdapter(None, {"label": "qa-review#3"})
        msg, _ = adapter.process("done", {})
        assert msg == "[qa-review#3] done"


class TestParallelRun:
    def test_all_approved_routes_to_parent_rule(self, make_piece, make_engine):
        piece = _reviewers_piece(
            make_piece,
            [{"condition": 'all("approved")', "next": "COMPLETE"}, {"condition": 'any("needs_fix")', "next": "fix"}],
        )
        provider = ScriptedProvider(responder=_tag_from_instruction({n: 1 for n in CHILDREN}))
        engine = make_engine(piece, provider)

        state = asyncio.run(engine.run())

        assert state.status is PieceStatus.COMPLETED
        parent = state.movement_outputs["reviewers"]
        assert parent.matched_rule_index == 0
        assert parent.matched_rule_method is MatchMethod.AGGREGATE
        assert "## arch-review\narch-review finished." in parent.content

    def test_children_use_disjoint_session_keys(self, make_piece, make_engine):
        piece = _reviewers_piece(make_piece, [{"condition": 'all("approved")', "next": "COMPLETE"}])
        provider = ScriptedProvider(responder=_tag_from_instruction({n: 1 for n in CHILDREN}))
        engine = make_engine(piece, provider)

        state = asyncio.run(engine.run())

        for name in CHILDREN:
            assert f"reviewer#{name}" in state.sessions
        assert len({state.sessions[f"reviewer#{n}"] for n in CHILDREN}) == 3

    def test_children_run_concurrently(self, make_piece, make_engine):
        piece = _reviewers_piece(make_piece, [{"condition": 'all("approved")', "next": "COMPLETE"}])
        verdicts = {n: ScriptedReply(f"[{n.upper()}:1]", delay_s=0.05) for n in CHILDREN}
        provider = ScriptedProvider(responder=_tag_from_instruction(verdicts))
        engine = make_engine(piece, provider)

        asyncio.run(engine.run())

        calls = provider.calls_for("reviewer")
        assert len(calls) == 3
        latest_start = max(c.started_at for c in calls)
        earliest_finish = min(c.finished_at for c in calls)
        assert latest_start < earliest_finish

    def test_one_needs_fix_takes_any_branch(self, make_piece, make_engine):
        piece = _reviewers_piece(
            make_piece,
            [{"condition": 'all("approved")', "next": "COMPLETE"}, {"condition": 'any("needs_fix")', "next": "fix"}],
        )
        verdicts = {"arch-review": 1, "security-review": 2, "qa-review": 1}
        responder = _tag_from_instruction(verdicts)
        provider = ScriptedProvider(
            responder=lambda call: responder(call) or ("[FIX:1]" if "- Movement: fix" in call.prompt else None)
        )
        engine = make_engine(piece, provider)

        state = asyncio.run(engine.run())

        assert state.status is PieceStatus.COMPLETED
        assert "fix" in state.movement_outputs

    def test_failing_child_does_not_cancel_siblings(self, make_piece, make_engine):
        piece = _reviewers_piece(make_piece, [{"condition": 'any("approved")', "next": "COMPLETE"}])
        verdicts = {
            "arch-review": ScriptedReply(raises=RuntimeError("provider crashed")),
            "security-review": ScriptedReply("[SECURITY-REVIEW:1]", delay_s=0.02),
            "qa-review": ScriptedReply("[QA-REVIEW:1]", delay_s=0.02),
        }
        provider = ScriptedProvider(responder=_tag_from_instruction(verdicts))
        engine = make_engine(piece, provider)
        completed = []
        engine.on(None, lambda e: completed.append(e) if e.kind.value == "movement_complete" else None)

        state = asyncio.run(engine.run())

        assert state.status is PieceStatus.COMPLETED
        children = completed[0].payload["children"]
        assert children["arch-review"].status is ResponseStatus.ERROR
        assert "provider crashed" in children["arch-review"].error
        assert children["security-review"].status is ResponseStatus.DONE

    def test_all_children_failing_is_unmatched_not_raised(self, make_piece, make_engine):
        piece = _reviewers_piece(make_piece, [{"condition": 'all("approved")', "next": "COMPLETE"}])
        verdicts = {n: ScriptedReply(raises=RuntimeError("down")) for n in CHILDREN}
        provider = ScriptedProvider(responder=_tag_from_instruction(verdicts))
        engine = make_engine(piece, provider)

        state = asyncio.run(engine.run())

        assert state.status is PieceStatus.ABORTED
        assert 'No matching rule found for movement "reviewers"' in state.abort_reason

    def test_stream_lines_are_prefixed(self, make_piece, make_engine):
        piece = _reviewers_piece(make_piece, [{"condition": 'all("approved")', "next": "COMPLETE"}])
        provider = ScriptedProvider(responder=_tag_from_instruction({n: 1 for n in CHILDREN}))
        lines = []
        engine = make_engine(piece, provider, on_stream=lines.append)

        asyncio.run(engine.run())

        assert "[arch-review#1] arch-review finished. [ARCH-REVIEW:1]" in lines
        assert any(line.startswith("[qa-review#3] ") for line in lines)

    @pytest.mark.parametrize("ordinal,name", list(enumerate(CHILDREN, start=1)))
    def test_child_iterations_are_tracked(self, make_piece, make_engine, ordinal, name):
        piece = _reviewers_piece(make_piece, [{"condition": 'all("approved")', "next": "COMPLETE"}])
        provider = ScriptedProvider(responder=_tag_from_instruction({n: 1 for n in CHILDREN}))
        engine = make_engine(piece, provider)

        state = asyncio.run(engine.run())

        assert state.movement_iterations[name] == 1
        assert state.movement_iterations["reviewers"] == 1
        assert state.iteration == 1
