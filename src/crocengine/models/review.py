"""Review Domain Model

评审结论按 (gate, revision) 划分作用域：revision 增加后，
旧 revision 的结论不再参与 gate 判定。
"""

from pydantic import BaseModel, Field

from .enums import Gate, ReviewerKind, Role, Verdict


class ReviewDecision(BaseModel):
    """一条评审结论"""

    gate: Gate
    revision: int
    reviewer_kind: ReviewerKind
    reviewer_id: str = Field(default="")
    verdict: Verdict
    rationale: str = Field(default="")
    seq: int


class Escalation(BaseModel):
    """重试耗尽后升级给 Foreman/人工跟进的记录"""

    task_id: str
    role: Role
    attempt_count: int
    last_error: str = Field(default="")
    seq: int
