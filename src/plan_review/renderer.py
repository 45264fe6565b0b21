from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

from .models import Decision, DecisionKind, Phase, Proposal

EXCLUDED_PHASE_NOTE = "*This phase was excluded from the implementation scope.*"

_STATUS_LABELS = {
    DecisionKind.APPROVE: "✅ Approved",
    DecisionKind.MODIFY: "🔄 Approved with modifications",
    DecisionKind.REJECT: "❌ Rejected",
}


def _bullets(lines: list[str], items: list[str], *, checkbox: bool = False) -> None:
    prefix = "- [ ] " if checkbox else "- "
    lines.extend(f"{prefix}{item}" for item in items)


def _section(lines: list[str], heading: str, body: str | None) -> None:
    if not body:
        return
    lines.extend([heading, "", body, ""])


def _list_section(lines: list[str], heading: str, items: list[str]) -> None:
    if not items:
        return
    lines.extend([heading, ""])
    _bullets(lines, items)
    lines.append("")


def _render_phase(lines: list[str], phase: Phase, included: bool) -> None:
    marker = "✅" if included else "⏭️ Skipped"
    lines.extend([f"### Phase {phase.number}: {phase.name} {marker}", ""])
    if not included:
        lines.extend([EXCLUDED_PHASE_NOTE, ""])
        return

    if phase.description:
        lines.extend([phase.description, ""])

    if phase.tasks:
        lines.append("**Tasks:**")
        _bullets(lines, phase.tasks, checkbox=True)
        lines.append("")

    criteria = phase.success_criteria
    lines.extend(["**Success Criteria:**", ""])
    if criteria.automated:
        lines.append("*Automated:*")
        _bullets(lines, criteria.automated, checkbox=True)
    if criteria.manual:
        lines.extend(["", "*Manual:*"])
        _bullets(lines, criteria.manual, checkbox=True)
    lines.append("")

    if phase.implementation_notes:
        lines.extend([f"> **Implementation Note:** {phase.implementation_notes}", ""])

    lines.extend(["---", ""])


def render_plan_markdown(
    proposal: Proposal,
    decision: Decision | None = None,
    *,
    generated_at: datetime | None = None,
) -> str:
    """Render a proposal and the reviewer's decision as a markdown plan document.

    Every phase is emitted in phase-number order. Phases outside the effective
    selection are kept as "Skipped" stubs so the document shows what was
    proposed as well as what was approved. Without a decision, or with an empty
    selection, all phases count as selected.
    """
    timestamp = generated_at if generated_at is not None else datetime.now(UTC)
    selected = set(decision.effective_phases(proposal) if decision else proposal.phase_numbers())
    lines: list[str] = [f"# {proposal.title}", ""]

    if decision is not None:
        lines.extend(
            [
                f"> **Status:** {_STATUS_LABELS[decision.decision]}",
                f"> **Priority:** {decision.priority}",
                f"> **Approach:** {decision.approach}",
                "",
            ]
        )

    _section(lines, "## Overview", proposal.overview)
    _section(lines, "## Current State", proposal.current_state)
    _section(lines, "## Desired End State", proposal.desired_end_state)
    _list_section(lines, "## Out of Scope", proposal.out_of_scope)

    lines.extend(["## Implementation Phases", ""])
    for phase in proposal.ordered_phases():
        _render_phase(lines, phase, phase.number in selected)

    strategy = proposal.testing_strategy
    if strategy is not None and not strategy.is_empty():
        lines.extend(["## Testing Strategy", ""])
        for heading, items in (
            ("### Unit Tests", strategy.unit),
            ("### Integration Tests", strategy.integration),
            ("### Manual Testing", strategy.manual),
        ):
            if items:
                lines.append(heading)
                _bullets(lines, items)
                lines.append("")

    if decision is not None:
        _list_section(lines, "## Additional Requirements", decision.requirements)
        _list_section(lines, "## Constraints", decision.constraints)
        _section(lines, "## User Notes", decision.notes)

    _list_section(lines, "## References", proposal.references)

    lines.extend(["---", f"*Generated: {timestamp.isoformat()}*"])
    return "\n".join(lines)


def render_review_summary(proposal: Proposal, decision: Decision, saved_path: Path) -> str:
    """Render the message handed back to the caller after an approval."""
    selected = decision.effective_phases(proposal)
    phase_lines = "\n".join(
        f"{phase.number}. {phase.name}" for phase in proposal.ordered_phases() if phase.number in selected
    )
    label = "Approved" if decision.decision is DecisionKind.APPROVE else "Approved with modifications"

    parts = [
        f"**Plan Approved: {proposal.title}**\n",
        f"**Decision:** {label}",
        f"**Priority:** {decision.priority}",
        f"**Approach:** {decision.approach}\n",
        f"**Selected Phases:**\n{phase_lines}\n",
    ]
    if decision.requirements:
        parts.append("**Additional Requirements:**\n" + "\n".join(f"- {item}" for item in decision.requirements) + "\n")
    if decision.constraints:
        parts.append("**Constraints:**\n" + "\n".join(f"- {item}" for item in decision.constraints) + "\n")
    if decision.notes:
        parts.append(f"**User Notes:**\n{decision.notes}\n")
    parts.append(f"Plan saved to: {saved_path}\n")

    first = proposal.phase(selected[0]) if selected else None
    if first is not None:
        parts.append(f"Begin executing Phase {first.number}: {first.name}")
    return "\n".join(parts)
