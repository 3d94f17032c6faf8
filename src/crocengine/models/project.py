"""Project Domain Model

ProjectState 是对事件序列的纯函数折叠结果（物化视图），
只读查询通过它返回；从不直接修改，只能通过追加事件改变。
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from .assignment import Assignment
from .context import ContextItem
from .enums import GATE_PHASES, Gate, Phase
from .payloads import PlanDraft
from .review import Escalation, ReviewDecision


class ProjectState(BaseModel):
    """单个 Project 的完整物化状态"""

    project_id: str = Field(description="Project 标识")
    root_path: str = Field(description="项目根目录")
    phase: Phase = Field(default=Phase.INIT, description="当前阶段")
    revision: int = Field(default=0, description="驳回循环计数")
    phase_version: int = Field(default=0, description="phase 版本号，每次流转 +1")
    last_seq: int = Field(default=0, description="已折叠的最后一个事件 seq")
    created_at: datetime
    updated_at: datetime
    plan: PlanDraft | None = Field(default=None, description="最近一次产出的计划")

    # gate 簿记
    gate_entered_seq: int | None = Field(default=None)
    gate_entered_at: datetime | None = Field(default=None)
    stale_flagged: bool = Field(default=False)

    assignments: dict[str, Assignment] = Field(default_factory=dict)
    context_items: dict[str, ContextItem] = Field(default_factory=dict)
    reviews: list[ReviewDecision] = Field(default_factory=list)
    escalations: list[Escalation] = Field(default_factory=list)

    @property
    def current_gate(self) -> Gate | None:
        return GATE_PHASES.get(self.phase)

    def decisions_for(self, gate: Gate, revision: int) -> list[ReviewDecision]:
        """某个 (gate, revision) 作用域内的评审结论，按 seq 排序"""
        return [d for d in self.reviews if d.gate == gate and d.revision == revision]

    def open_assignments(self, revision: int | None = None) -> list[Assignment]:
        return [
            a
            for a in self.sorted_assignments()
            if a.is_open and (revision is None or a.revision == revision)
        ]

    def sorted_assignments(self) -> list[Assignment]:
        """按创建顺序返回所有 Assignment"""
        return sorted(self.assignments.values(), key=lambda a: a.created_seq)

    def sorted_context_items(self) -> list[ContextItem]:
        return sorted(self.context_items.values(), key=lambda c: c.ingested_seq)


class ProjectStatus(BaseModel):
    """status 查询结果"""

    project_id: str
    phase: Phase
    revision: int
    phase_version: int
    last_seq: int
    plan: PlanDraft | None = None
    assignments: list[Assignment] = Field(default_factory=list)
    context_items: list[ContextItem] = Field(default_factory=list)
    escalations: list[Escalation] = Field(default_factory=list)

    @classmethod
    def from_state(cls, state: ProjectState) -> "ProjectStatus":
        return cls(
            project_id=state.project_id,
            phase=state.phase,
            revision=state.revision,
            phase_version=state.phase_version,
            last_seq=state.last_seq,
            plan=state.plan,
            assignments=state.sorted_assignments(),
            context_items=state.sorted_context_items(),
            escalations=list(state.escalations),
        )


class ProjectHandle(BaseModel):
    """init 的返回值"""

    project_id: str
    root_path: str
    db_path: str
    created: bool = Field(description="True 表示新建，False 表示已存在")
    phase_version: int = 0


class PlanOutcome(BaseModel):
    """plan 的返回值"""

    project_id: str
    status: Literal["pending_approval"] = "pending_approval"
    revision: int
    phase_version: int
    plan_seq: int


class GateOutcome(BaseModel):
    """approve / record_review 的返回值"""

    project_id: str
    gate: Gate
    status: Literal["pending", "passed", "rejected"]
    phase: Phase
    revision: int
    decision: ReviewDecision
