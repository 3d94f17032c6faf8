"""Event Payload 子类型

所有事件的结构化 payload 定义。新增字段必须带默认值，
保证旧事件可以正常反序列化和重放。
"""

from pydantic import BaseModel, Field

from .enums import EventKind, Gate, ReviewerKind, Role, Verdict


class ProjectInitializedPayload(BaseModel):
    """PROJECT_INITIALIZED 事件 payload"""

    root_path: str


class PlanDraft(BaseModel):
    """计划内容（由 Planner 产出，内容生成不在引擎范围内）"""

    title: str = Field(default="")
    description: str = Field(default="")
    subtasks_preview: list[str] = Field(default_factory=list)
    considerations: list[str] = Field(default_factory=list)


class PlanProducedPayload(BaseModel):
    """PLAN_PRODUCED 事件 payload"""

    plan: PlanDraft = Field(default_factory=PlanDraft)
    revision: int


class TransitionPayload(BaseModel):
    """phase 流转类事件的通用 payload"""

    from_phase: str
    to_phase: str
    reason: str = Field(default="")


class AssignmentCreatedPayload(BaseModel):
    """ASSIGNMENT_CREATED 事件 payload"""

    task_id: str
    title: str
    description: str = Field(default="")
    role: Role
    max_attempts: int = Field(ge=1)


class AssignmentStartedPayload(BaseModel):
    """ASSIGNMENT_STARTED 事件 payload"""

    task_id: str
    worker_id: str
    attempt: int = Field(description="本次执行是第几次尝试（从 1 开始）")


class AssignmentCompletedPayload(BaseModel):
    """ASSIGNMENT_COMPLETED 事件 payload"""

    task_id: str
    summary: str = Field(default="")


class AssignmentFailedPayload(BaseModel):
    """ASSIGNMENT_FAILED 事件 payload

    terminal 在追加时即确定，重放不依赖当前配置。
    """

    task_id: str
    error: str = Field(default="")
    attempt_count: int = Field(ge=1)
    terminal: bool


class AssignmentCancelledPayload(BaseModel):
    """ASSIGNMENT_CANCELLED 事件 payload"""

    task_id: str
    reason: str = Field(default="")


class ForemanEscalationPayload(BaseModel):
    """FOREMAN_ESCALATION 事件 payload"""

    task_id: str
    role: Role
    attempt_count: int
    last_error: str = Field(default="")


class ReviewRecordedPayload(BaseModel):
    """REVIEW_RECORDED 事件 payload"""

    gate: Gate
    revision: int
    reviewer_kind: ReviewerKind
    reviewer_id: str
    verdict: Verdict
    rationale: str = Field(default="")


class ReviewStalePayload(BaseModel):
    """REVIEW_STALE 事件 payload（仅提示，不触发流转）"""

    gate: Gate
    revision: int
    waiting_since_seq: int
    waited_s: float


class ContextIngestedPayload(BaseModel):
    """CONTEXT_INGESTED 事件 payload"""

    path: str
    content_digest: str
    size_bytes: int = Field(ge=0)


# 事件类型 -> payload 模型，追加前按此校验
PAYLOAD_MODELS: dict[EventKind, type[BaseModel]] = {
    EventKind.PROJECT_INITIALIZED: ProjectInitializedPayload,
    EventKind.PLAN_REQUESTED: TransitionPayload,
    EventKind.PLAN_PRODUCED: PlanProducedPayload,
    EventKind.PLAN_APPROVED: TransitionPayload,
    EventKind.PLAN_REJECTED: TransitionPayload,
    EventKind.REVIEW_REQUESTED: TransitionPayload,
    EventKind.REVIEW_PASSED: TransitionPayload,
    EventKind.REVIEW_REJECTED: TransitionPayload,
    EventKind.PROJECT_ABORTED: TransitionPayload,
    EventKind.PROJECT_FAILED: TransitionPayload,
    EventKind.ASSIGNMENT_CREATED: AssignmentCreatedPayload,
    EventKind.ASSIGNMENT_STARTED: AssignmentStartedPayload,
    EventKind.ASSIGNMENT_COMPLETED: AssignmentCompletedPayload,
    EventKind.ASSIGNMENT_FAILED: AssignmentFailedPayload,
    EventKind.ASSIGNMENT_CANCELLED: AssignmentCancelledPayload,
    EventKind.FOREMAN_ESCALATION: ForemanEscalationPayload,
    EventKind.REVIEW_RECORDED: ReviewRecordedPayload,
    EventKind.REVIEW_STALE: ReviewStalePayload,
    EventKind.CONTEXT_INGESTED: ContextIngestedPayload,
}
