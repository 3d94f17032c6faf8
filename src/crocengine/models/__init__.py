"""CrocEngine Domain Models -- 公共类型导出

所有公共模型类型从此入口导入。
"""

from .assignment import Assignment, AssignmentFilter, AssignmentOutcome, TaskSpec
from .context import ContextItem, ContextSummary
from .enums import (
    ASSIGNMENT_KINDS,
    ASSIGNMENT_TRANSITIONS,
    GATE_PHASES,
    OPEN_ASSIGNMENT_STATES,
    PHASE_TRANSITIONS,
    TERMINAL_ASSIGNMENT_STATES,
    TERMINAL_PHASES,
    TRANSITION_KINDS,
    ActorRole,
    AssignmentStatus,
    EventKind,
    Gate,
    Phase,
    PhaseEdge,
    ReviewerKind,
    Role,
    Verdict,
    find_edge,
    validate_assignment_transition,
)
from .event import SYSTEM_ACTOR, Actor, Event
from .payloads import (
    PAYLOAD_MODELS,
    AssignmentCancelledPayload,
    AssignmentCompletedPayload,
    AssignmentCreatedPayload,
    AssignmentFailedPayload,
    AssignmentStartedPayload,
    ContextIngestedPayload,
    ForemanEscalationPayload,
    PlanDraft,
    PlanProducedPayload,
    ProjectInitializedPayload,
    ReviewRecordedPayload,
    ReviewStalePayload,
    TransitionPayload,
)
from .project import GateOutcome, PlanOutcome, ProjectHandle, ProjectState, ProjectStatus
from .review import Escalation, ReviewDecision

__all__ = [
    # 枚举
    "Phase",
    "Gate",
    "EventKind",
    "Role",
    "ActorRole",
    "AssignmentStatus",
    "ReviewerKind",
    "Verdict",
    # 状态机
    "PhaseEdge",
    "PHASE_TRANSITIONS",
    "TRANSITION_KINDS",
    "ASSIGNMENT_KINDS",
    "TERMINAL_PHASES",
    "GATE_PHASES",
    "find_edge",
    "ASSIGNMENT_TRANSITIONS",
    "TERMINAL_ASSIGNMENT_STATES",
    "OPEN_ASSIGNMENT_STATES",
    "validate_assignment_transition",
    # Event
    "Actor",
    "Event",
    "SYSTEM_ACTOR",
    # Project
    "ProjectState",
    "ProjectStatus",
    "ProjectHandle",
    "PlanOutcome",
    "GateOutcome",
    # Assignment
    "Assignment",
    "AssignmentFilter",
    "AssignmentOutcome",
    "TaskSpec",
    # Context
    "ContextItem",
    "ContextSummary",
    # Review
    "ReviewDecision",
    "Escalation",
    # Payloads
    "ProjectInitializedPayload",
    "PlanDraft",
    "PlanProducedPayload",
    "TransitionPayload",
    "AssignmentCreatedPayload",
    "AssignmentStartedPayload",
    "AssignmentCompletedPayload",
    "AssignmentFailedPayload",
    "AssignmentCancelledPayload",
    "ForemanEscalationPayload",
    "ReviewRecordedPayload",
    "ReviewStalePayload",
    "ContextIngestedPayload",
    "PAYLOAD_MODELS",
]
