"""ContextItem Domain Model

同一 project 内按 content_digest 唯一，重复摄入相同内容是幂等的空操作。
"""

from pydantic import BaseModel, Field


class ContextItem(BaseModel):
    """已摄入的上下文文件引用"""

    path: str = Field(description="首次摄入时的文件路径")
    content_digest: str = Field(description="内容 SHA-256")
    size_bytes: int = Field(default=0, ge=0, description="内容大小（字节）")
    ingested_seq: int = Field(description="CONTEXT_INGESTED 事件 seq")


class ContextSummary(BaseModel):
    """prime 的结果汇总"""

    project_id: str
    ingested: list[ContextItem] = Field(default_factory=list, description="本次新摄入")
    duplicates: list[ContextItem] = Field(
        default_factory=list,
        description="内容已存在，未追加事件",
    )
    total_items: int = Field(default=0, description="摄入后项目内上下文总数")
