"""Event Domain Model

事件表 append-only，不允许更新或删除。
event_id 使用 ULID 格式，时间有序。
seq 同一 project 内从 1 开始严格递增且无空洞。
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from .enums import ActorRole, EventKind


class Actor(BaseModel):
    """事件操作者：角色 + 身份"""

    role: ActorRole = Field(description="操作者角色")
    id: str = Field(description="操作者身份标识")


SYSTEM_ACTOR = Actor(role=ActorRole.SYSTEM, id="crocengine")


class Event(BaseModel):
    """Event 数据模型

    既是持久化格式，也是未来 API 的传输格式（model_dump(mode="json")）。
    """

    event_id: str = Field(description="唯一标识，ULID 格式，时间有序")
    project_id: str = Field(description="关联的 Project ID")
    seq: int = Field(ge=1, description="项目内序号，严格单调递增")
    ts: datetime = Field(description="事件时间戳（UTC）")
    actor: Actor = Field(description="操作者")
    kind: EventKind = Field(description="事件类型")
    payload: dict[str, Any] = Field(default_factory=dict, description="结构化 payload")
    schema_version: int = Field(default=1, description="Schema 版本号")
    idempotency_key: str | None = Field(
        default=None,
        description="幂等键，重试的客户端调用据此返回原 seq",
    )
