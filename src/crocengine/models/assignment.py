"""Assignment Domain Model

assignments 表是 events 的物化视图（projection），
所有状态更新必须通过 Assignment Tracker 写入事件触发。
"""

from pydantic import BaseModel, Field

from .enums import OPEN_ASSIGNMENT_STATES, AssignmentStatus, Role


class TaskSpec(BaseModel):
    """待分配的任务描述

    task_id 为空时由引擎生成 ULID（字典序即创建顺序）。
    """

    task_id: str | None = Field(default=None, min_length=1, max_length=128)
    title: str = Field(min_length=1, description="任务标题")
    description: str = Field(default="", description="任务描述")


class AssignmentOutcome(BaseModel):
    """worker 提交的执行结果"""

    succeeded: bool
    summary: str = Field(default="", description="成功时的工作摘要")
    error: str = Field(default="", description="失败原因")

    @classmethod
    def success(cls, summary: str = "") -> "AssignmentOutcome":
        return cls(succeeded=True, summary=summary)

    @classmethod
    def failure(cls, error: str) -> "AssignmentOutcome":
        return cls(succeeded=False, error=error)


class Assignment(BaseModel):
    """Assignment 数据模型：分配给某个角色的一个工作单元"""

    task_id: str = Field(description="任务 ID，项目内唯一")
    project_id: str = Field(description="所属 Project ID")
    title: str = Field(description="任务标题")
    description: str = Field(default="", description="任务描述")
    role: Role = Field(description="可领取该任务的角色")
    status: AssignmentStatus = Field(default=AssignmentStatus.PENDING)
    attempt_count: int = Field(default=0, ge=0, description="已失败次数")
    max_attempts: int = Field(ge=1, description="创建时确定的最大尝试次数")
    revision: int = Field(default=0, description="创建时的 project revision")
    claimed_by: str | None = Field(default=None, description="当前执行者")
    last_error: str = Field(default="")
    result_summary: str = Field(default="")
    created_seq: int = Field(description="ASSIGNMENT_CREATED 事件 seq")
    updated_seq: int = Field(description="最近一次变更的事件 seq，compare-and-append 版本号")

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_ASSIGNMENT_STATES


class AssignmentFilter(BaseModel):
    """assignments 查询条件"""

    status: AssignmentStatus | None = None
    role: Role | None = None
    revision: int | None = None
