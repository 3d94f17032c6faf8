"""枚举定义

包含 Phase 状态机、EventKind、Assignment 状态机、角色与评审枚举，
以及 PHASE_TRANSITIONS 边表和 ASSIGNMENT_TRANSITIONS 合法流转映射。
"""

from dataclasses import dataclass
from enum import StrEnum


class Phase(StrEnum):
    """Project 工作流阶段"""

    INIT = "INIT"
    PLANNING = "PLANNING"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    EXECUTING = "EXECUTING"
    REVIEW = "REVIEW"

    # 终态
    DONE = "DONE"
    FAILED = "FAILED"


TERMINAL_PHASES: frozenset[Phase] = frozenset({Phase.DONE, Phase.FAILED})


class Gate(StrEnum):
    """需要显式审批事件才能通过的阶段边界"""

    PLAN = "PLAN"
    REVIEW = "REVIEW"


# gate 所在的 phase
GATE_PHASES: dict[Phase, Gate] = {
    Phase.PENDING_APPROVAL: Gate.PLAN,
    Phase.REVIEW: Gate.REVIEW,
}


class EventKind(StrEnum):
    """事件类型"""

    PROJECT_INITIALIZED = "PROJECT_INITIALIZED"

    # phase 流转
    PLAN_REQUESTED = "PLAN_REQUESTED"
    PLAN_PRODUCED = "PLAN_PRODUCED"
    PLAN_APPROVED = "PLAN_APPROVED"
    PLAN_REJECTED = "PLAN_REJECTED"
    REVIEW_REQUESTED = "REVIEW_REQUESTED"
    REVIEW_PASSED = "REVIEW_PASSED"
    REVIEW_REJECTED = "REVIEW_REJECTED"
    PROJECT_ABORTED = "PROJECT_ABORTED"
    PROJECT_FAILED = "PROJECT_FAILED"

    # assignment 生命周期
    ASSIGNMENT_CREATED = "ASSIGNMENT_CREATED"
    ASSIGNMENT_STARTED = "ASSIGNMENT_STARTED"
    ASSIGNMENT_COMPLETED = "ASSIGNMENT_COMPLETED"
    ASSIGNMENT_FAILED = "ASSIGNMENT_FAILED"
    ASSIGNMENT_CANCELLED = "ASSIGNMENT_CANCELLED"
    FOREMAN_ESCALATION = "FOREMAN_ESCALATION"

    # 评审
    REVIEW_RECORDED = "REVIEW_RECORDED"
    REVIEW_STALE = "REVIEW_STALE"

    CONTEXT_INGESTED = "CONTEXT_INGESTED"


class Role(StrEnum):
    """Assignment 所属的 worker 角色"""

    PLANNER = "PLANNER"
    FOREMAN = "FOREMAN"
    WORKER = "WORKER"
    REVIEWER = "REVIEWER"


class ActorRole(StrEnum):
    """事件操作者角色"""

    PLANNER = "PLANNER"
    FOREMAN = "FOREMAN"
    WORKER = "WORKER"
    REVIEWER = "REVIEWER"
    HUMAN = "HUMAN"
    SYSTEM = "SYSTEM"


class AssignmentStatus(StrEnum):
    """Assignment 状态机"""

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"

    # 终态
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


ASSIGNMENT_TRANSITIONS: dict[AssignmentStatus, frozenset[AssignmentStatus]] = {
    AssignmentStatus.PENDING: frozenset(
        {AssignmentStatus.IN_PROGRESS, AssignmentStatus.CANCELLED}
    ),
    AssignmentStatus.IN_PROGRESS: frozenset(
        {
            AssignmentStatus.COMPLETED,
            AssignmentStatus.PENDING,  # 失败后重试
            AssignmentStatus.FAILED,  # 重试耗尽
            AssignmentStatus.CANCELLED,
        }
    ),
    # 终态不可再流转
    AssignmentStatus.COMPLETED: frozenset(),
    AssignmentStatus.FAILED: frozenset(),
    AssignmentStatus.CANCELLED: frozenset(),
}

TERMINAL_ASSIGNMENT_STATES: frozenset[AssignmentStatus] = frozenset(
    {
        AssignmentStatus.COMPLETED,
        AssignmentStatus.FAILED,
        AssignmentStatus.CANCELLED,
    }
)

OPEN_ASSIGNMENT_STATES: frozenset[AssignmentStatus] = frozenset(
    {AssignmentStatus.PENDING, AssignmentStatus.IN_PROGRESS}
)


class ReviewerKind(StrEnum):
    """评审者类型：自动化（AI）或人工"""

    AUTOMATED = "AUTOMATED"
    HUMAN = "HUMAN"


class Verdict(StrEnum):
    """评审结论"""

    APPROVE = "APPROVE"
    REJECT = "REJECT"


@dataclass(frozen=True)
class PhaseEdge:
    """Phase 边表中的一条边

    gate_owned=True 的边只能由 ReviewGate 在评审结论满足时追加，
    外部 request_transition 不能直接触发。
    """

    source: Phase
    trigger: EventKind
    target: Phase
    bumps_revision: bool = False
    gate_owned: bool = False


def _abort_edges() -> list[PhaseEdge]:
    edges = []
    for phase in Phase:
        if phase in TERMINAL_PHASES:
            continue
        edges.append(PhaseEdge(phase, EventKind.PROJECT_ABORTED, Phase.FAILED))
        edges.append(PhaseEdge(phase, EventKind.PROJECT_FAILED, Phase.FAILED))
    return edges


# Phase 合法流转边表，键为 (当前 phase, 触发事件)
PHASE_TRANSITIONS: dict[tuple[Phase, EventKind], PhaseEdge] = {
    (edge.source, edge.trigger): edge
    for edge in [
        PhaseEdge(Phase.INIT, EventKind.PLAN_REQUESTED, Phase.PLANNING),
        PhaseEdge(Phase.PLANNING, EventKind.PLAN_PRODUCED, Phase.PENDING_APPROVAL),
        PhaseEdge(
            Phase.PENDING_APPROVAL,
            EventKind.PLAN_APPROVED,
            Phase.EXECUTING,
            gate_owned=True,
        ),
        PhaseEdge(
            Phase.PENDING_APPROVAL,
            EventKind.PLAN_REJECTED,
            Phase.PLANNING,
            bumps_revision=True,
            gate_owned=True,
        ),
        PhaseEdge(Phase.EXECUTING, EventKind.REVIEW_REQUESTED, Phase.REVIEW),
        PhaseEdge(Phase.REVIEW, EventKind.REVIEW_PASSED, Phase.DONE, gate_owned=True),
        PhaseEdge(
            Phase.REVIEW,
            EventKind.REVIEW_REJECTED,
            Phase.PLANNING,
            bumps_revision=True,
            gate_owned=True,
        ),
        *_abort_edges(),
    ]
}

# 会改变 phase 的事件类型
TRANSITION_KINDS: frozenset[EventKind] = frozenset(
    trigger for _, trigger in PHASE_TRANSITIONS
)

# Assignment 生命周期事件，只能由 AssignmentTracker 追加
ASSIGNMENT_KINDS: frozenset[EventKind] = frozenset(
    {
        EventKind.ASSIGNMENT_CREATED,
        EventKind.ASSIGNMENT_STARTED,
        EventKind.ASSIGNMENT_COMPLETED,
        EventKind.ASSIGNMENT_FAILED,
        EventKind.ASSIGNMENT_CANCELLED,
        EventKind.FOREMAN_ESCALATION,
    }
)


def find_edge(phase: Phase, trigger: EventKind) -> PhaseEdge | None:
    """在边表中查找 (phase, trigger) 对应的边，不存在返回 None"""
    return PHASE_TRANSITIONS.get((phase, trigger))


def validate_assignment_transition(
    from_status: AssignmentStatus, to_status: AssignmentStatus
) -> bool:
    """验证 Assignment 状态流转是否合法

    Args:
        from_status: 当前状态
        to_status: 目标状态

    Returns:
        True 如果流转合法，否则 False
    """
    return to_status in ASSIGNMENT_TRANSITIONS.get(from_status, frozenset())
