"""角色简报（briefing）渲染

把项目状态渲染成某个角色视角的 Markdown 文本，供外部 agent 启动时读取。
内容生成（AI 推理）不在引擎范围内，这里只做状态到文本的映射。
"""

from .models.assignment import Assignment
from .models.enums import Role
from .models.project import ProjectState


def _bullets(items: list[str], empty: str) -> str:
    if not items:
        return f"- {empty}"
    return "\n".join(f"- {item}" for item in items)


def _assignment_lines(assignments: list[Assignment]) -> str:
    if not assignments:
        return "No assignments created yet."
    return "\n".join(
        f"- [{a.status.lower()}] {a.task_id} ({a.role.lower()}): {a.title}" for a in assignments
    )


def _plan_section(state: ProjectState) -> str:
    plan = state.plan
    if plan is None:
        return "## Plan\n\nNo plan has been produced yet."
    return (
        f"## Plan: {plan.title or '(untitled)'}\n\n"
        f"{plan.description}\n\n"
        f"### Subtasks\n{_bullets(plan.subtasks_preview, 'None listed')}\n\n"
        f"### Considerations\n{_bullets(plan.considerations, 'None specified')}"
    )


def _context_section(state: ProjectState) -> str:
    items = [f"{c.path} ({c.size_bytes} bytes)" for c in state.sorted_context_items()]
    return f"## Context Files\n{_bullets(items, 'None ingested')}"


def _header(role: Role, state: ProjectState) -> str:
    return (
        f"# CrocEngine {role.capitalize()} Mode\n\n"
        f"Project `{state.project_id}` is in phase **{state.phase}** "
        f"(revision {state.revision})."
    )


def render_briefing(state: ProjectState, role: Role) -> str:
    """渲染某个角色的简报"""
    current = [a for a in state.sorted_assignments() if a.revision == state.revision]
    sections = [_header(role, state)]

    if role == Role.PLANNER:
        sections.append(
            "You are in **planning mode**: break the request into atomic subtasks, "
            "note dependencies and constraints, and propose a plan for approval. "
            "No code execution in this phase."
        )
        sections.append(_plan_section(state))
        rejections = [
            f"{d.reviewer_kind.lower()}: {d.rationale}"
            for d in state.reviews
            if d.revision == state.revision - 1 and d.rationale
        ]
        if rejections:
            sections.append(f"## Feedback From Previous Revision\n{_bullets(rejections, '')}")
    elif role == Role.FOREMAN:
        sections.append(_plan_section(state))
        sections.append(f"## Current Assignments\n{_assignment_lines(current)}")
        if state.escalations:
            escalated = [
                f"{e.task_id} after {e.attempt_count} attempts: {e.last_error}"
                for e in state.escalations
            ]
            sections.append(f"## Escalations\n{_bullets(escalated, '')}")
    elif role == Role.WORKER:
        sections.append(_plan_section(state))
        mine = [a for a in current if a.role == Role.WORKER]
        sections.append(f"## Worker Assignments\n{_assignment_lines(mine)}")
        sections.append(
            "Claim one pending assignment at a time and check its status at each "
            "checkpoint; stop when it has been cancelled."
        )
    else:
        sections.append(_plan_section(state))
        sections.append(f"## Completed Work\n{_assignment_lines(current)}")
        sections.append(
            "Record an APPROVE or REJECT verdict with a rationale. "
            "Both an automated and a human approval are required to pass the gate."
        )

    sections.append(_context_section(state))
    return "\n\n".join(sections) + "\n"
