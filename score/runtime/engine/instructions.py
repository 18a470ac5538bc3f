"""
instructions.py - Prompt construction for the three movement phases.

Handles:
- Phase 1 (execute): template placeholders plus auto-injected sections
  (piece context, policy, knowledge, previous response, user inputs)
- Phase 2 (report): one instruction per declared report file
- Phase 3 (status judgment): criteria table of numbered [MOVEMENT:N] tags
- AI judge prompt: condition table answered with [JUDGE:N]

Dynamic values are escaped (curly braces become full-width braces) so agent
output can never inject new placeholders into a template.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from ..types import AgentResponse, LeafMovement, Rule

# Long context blocks are cut here; the full text stays in the snapshot file
CONTEXT_MAX_CHARS = 2000

CONFLICT_NOTICE = "If prompt content conflicts with source files, source files take precedence."

_REPORT_PLACEHOLDER = re.compile(r"\{report:([^}]+)\}")


def escape_template_chars(text: str) -> str:
    """Replace curly braces with full-width braces."""
    return text.replace("{", "｛").replace("}", "｝")


def tag_for(movement_name: str, index: int) -> str:
    """Tag a persona emits to select the rule at 0-based `index`."""
    return f"[{movement_name.upper()}:{index + 1}]"


@dataclass
class InstructionContext:
    """Everything phase 1 needs besides the movement itself.

    Attributes:
        task: The user's task text.
        iteration: Global iteration counter (already incremented).
        max_movements: Current iteration budget.
        movement_iteration: How many times this movement has run, this run included.
        cwd: Working directory.
        report_dir: Absolute report directory of the run.
        user_inputs: Additional inputs gathered during the run.
        previous_output: Most recent response, for pass-previous-response.
        previous_response_source: Snapshot path holding the full previous response.
        policy_source: Snapshot path of this movement's policy.
        knowledge_source: Snapshot path of this movement's knowledge.
    """

    task: str
    iteration: int
    max_movements: int
    movement_iteration: int
    cwd: str
    report_dir: Optional[str] = None
    user_inputs: Sequence[str] = ()
    previous_output: Optional[AgentResponse] = None
    previous_response_source: Optional[str] = None
    policy_source: Optional[str] = None
    knowledge_source: Optional[str] = None
    piece_name: str = ""
    piece_description: Optional[str] = None
    piece_movements: Sequence[str] = field(default_factory=tuple)
    retry_note: Optional[str] = None


def _trim(content: str) -> Tuple[str, bool]:
    if len(content) <= CONTEXT_MAX_CHARS:
        return content, False
    return content[:CONTEXT_MAX_CHARS] + "\n...TRUNCATED...", True


def _prepare_block(content: str, label: str, source: Optional[str]) -> str:
    trimmed, truncated = _trim(content)
    lines = [trimmed]
    if truncated and source:
        lines += ["", f"{label} is truncated. You MUST consult the source file before making decisions. Source: {source}"]
    if source:
        lines += ["", f"{label} Source: {source}"]
    lines += ["", CONFLICT_NOTICE]
    return "\n".join(lines)


def replace_template_placeholders(
    template: str,
    movement: LeafMovement,
    ctx: InstructionContext,
    previous_text: Optional[str] = None,
) -> str:
    """Substitute {placeholders} in an instruction template."""
    result = template.replace("{task}", escape_template_chars(ctx.task))
    result = result.replace("{iteration}", str(ctx.iteration))
    result = result.replace("{max_movements}", str(ctx.max_movements))
    result = result.replace("{movement_iteration}", str(ctx.movement_iteration))

    if movement.pass_previous_response:
        if previous_text is None and ctx.previous_output is not None:
            previous_text = ctx.previous_output.content
        result = result.replace("{previous_response}", escape_template_chars(previous_text or ""))

    result = result.replace("{user_inputs}", escape_template_chars("\n".join(ctx.user_inputs)))

    if ctx.report_dir:
        result = result.replace("{report_dir}", ctx.report_dir)
        result = _REPORT_PLACEHOLDER.sub(lambda m: f"{ctx.report_dir}/{m.group(1)}", result)

    return result


def build_phase1_instruction(movement: LeafMovement, ctx: InstructionContext) -> str:
    """Build the phase-1 (execute) instruction for a leaf movement."""
    template = movement.instruction_template
    sections: List[str] = []

    # Execution context
    header = [
        "## Execution Context",
        f"- Working Directory: {ctx.cwd}",
        f"- Piece: {ctx.piece_name}",
    ]
    if ctx.piece_description:
        header.append(f"- Description: {escape_template_chars(ctx.piece_description)}")
    header.append(f"- Iteration: {ctx.iteration}/{ctx.max_movements} (piece-wide)")
    header.append(f"- Movement Iteration: {ctx.movement_iteration} (times this movement has run)")
    header.append(f"- Movement: {movement.name}")
    if ctx.piece_movements:
        flow = " -> ".join(
            f"**{name}**" if name == movement.name else name for name in ctx.piece_movements
        )
        header.append(f"- Piece Structure: {flow}")
    if not movement.edit:
        header.append("- Do not edit project source files in this movement.")
    sections.append("\n".join(header))

    if movement.output_contracts and ctx.report_dir:
        files = "\n".join(f"  - {ctx.report_dir}/{c.name}" for c in movement.output_contracts)
        sections.append(
            "## Report\n"
            f"- Report Directory: {ctx.report_dir}\n"
            f"- Report Files:\n{files}\n\n"
            "**Note:** This is Phase 1 (main work). After you complete your work, "
            "Phase 2 will generate the report based on your findings."
        )

    if movement.policy_contents:
        joined = "\n\n---\n\n".join(movement.policy_contents)
        sections.append("## Policy\n" + escape_template_chars(_prepare_block(joined, "Policy", ctx.policy_source)))

    if movement.knowledge_contents:
        joined = "\n\n---\n\n".join(movement.knowledge_contents)
        sections.append(
            "## Knowledge\n" + escape_template_chars(_prepare_block(joined, "Knowledge", ctx.knowledge_source))
        )

    if "{task}" not in template:
        sections.append("## User Request\n" + escape_template_chars(ctx.task))

    previous_prepared: Optional[str] = None
    if movement.pass_previous_response and ctx.previous_output is not None:
        previous_prepared = _prepare_block(
            ctx.previous_output.content, "Previous Response", ctx.previous_response_source
        )
        if "{previous_response}" not in template:
            sections.append("## Previous Response\n" + escape_template_chars(previous_prepared))

    if ctx.user_inputs and "{user_inputs}" not in template:
        sections.append("## Additional User Inputs\n" + escape_template_chars("\n".join(ctx.user_inputs)))

    if ctx.retry_note:
        sections.append("## Retry Note\n" + escape_template_chars(ctx.retry_note))

    instructions = replace_template_placeholders(template, movement, ctx, previous_prepared)
    sections.append("## Instructions\n" + instructions)

    if movement.policy_contents:
        sections.append("**Reminder:** follow the Policy section above strictly.")

    return "\n\n".join(sections)


def build_report_instruction(
    movement: LeafMovement,
    report_dir: str,
    target_file: str,
    movement_iteration: int,
    last_response: Optional[str] = None,
) -> str:
    """Build the phase-2 instruction for one report file.

    `last_response` is included only when the report is regenerated in a
    fresh session, which cannot see the phase-1 conversation.
    """
    contract = next((c for c in movement.output_contracts if c.name == target_file), None)
    lines = [
        "## Report Output",
        f"- Movement: {movement.name} (iteration {movement_iteration})",
        f"- Report Directory: {report_dir}",
        f"- Target File: {target_file}",
        "",
        "Write the report for the work you just completed.",
        "Output only the report body. It will be saved to the target file as-is.",
        "Do not perform any additional work.",
    ]
    if contract is not None and contract.format:
        lines += ["", "## Report Format", contract.format.rstrip()]
    if last_response:
        lines += ["", "## Work Result", escape_template_chars(last_response)]
    return "\n".join(lines)


def build_status_rules(movement_name: str, rules: Sequence[Rule], interactive: bool = False) -> str:
    """Build the numbered criteria table and output format for a movement's rules.

    Rules flagged interactive_only are left out when not interactive; the
    remaining rules keep their original numbers.
    """
    visible = [(i, r) for i, r in enumerate(rules) if interactive or not r.interactive_only]

    lines = ["## Decision Criteria", "", "| # | Condition | Tag |", "|---|------|------|"]
    for i, rule in visible:
        lines.append(f"| {i + 1} | {rule.condition} | `{tag_for(movement_name, i)}` |")
    lines += ["", "## Output Format", "", "Output the tag corresponding to your decision:", ""]
    for i, rule in visible:
        lines.append(f"- `{tag_for(movement_name, i)}`: {rule.condition}")

    with_appendix = [(i, r) for i, r in visible if r.appendix]
    if with_appendix:
        lines += ["", "### Appendix Template"]
        for i, rule in with_appendix:
            lines += [
                "",
                f"When outputting `{tag_for(movement_name, i)}`, append the following:",
                "```",
                (rule.appendix or "").rstrip(),
                "```",
            ]
    return "\n".join(lines)


def build_status_judgment_instruction(
    movement: LeafMovement,
    content_to_judge: str,
    source: str = "response",
    interactive: bool = False,
) -> str:
    """Build the phase-3 instruction.

    Args:
        movement: Movement being judged.
        content_to_judge: Report contents or the phase-1 response.
        source: "report" or "response", shown to the judge.
        interactive: Whether interactive-only rules are offered.
    """
    heading = "## Reports" if source == "report" else "## Agent Response"
    return "\n".join(
        [
            "**Review the work results below and determine the status. Do not perform any additional work.**",
            "",
            heading,
            "",
            escape_template_chars(content_to_judge),
            "",
            build_status_rules(movement.name, movement.rules, interactive),
        ]
    )


def build_judge_prompt(agent_output: str, conditions: Sequence[str]) -> str:
    """Build the AI judge prompt; conditions are numbered from 1 in order."""
    table = "\n".join(f"| {i + 1} | {text} |" for i, text in enumerate(conditions))
    return "\n".join(
        [
            "# Judge Task",
            "",
            "You are a judge evaluating an agent's output against a set of conditions.",
            "Read the agent output below, then determine which condition best matches.",
            "",
            "## Agent Output",
            "```",
            agent_output,
            "```",
            "",
            "## Conditions",
            "| # | Condition |",
            "|---|-----------|",
            table,
            "",
            "## Instructions",
            "Output ONLY the tag `[JUDGE:N]` where N is the number of the best matching condition.",
            "Do not output anything else.",
        ]
    )
