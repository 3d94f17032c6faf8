"""Store Protocol 接口定义

定义 EventStore、IndexStore 的抽象接口，
使用 Python Protocol 实现结构化子类型（duck typing）。
"""

from typing import Protocol

from ..models.assignment import Assignment, AssignmentFilter
from ..models.context import ContextItem
from ..models.event import Event
from ..models.project import ProjectState


class EventStore(Protocol):
    """Event 存储接口

    事件表 append-only：只允许插入，不允许更新或删除。
    """

    async def append_event(self, event: Event) -> None:
        """追加事件（append-only）"""
        ...

    async def get_events(
        self,
        project_id: str,
        from_seq: int = 1,
        to_seq: int | None = None,
        limit: int | None = None,
    ) -> list[Event]:
        """按 seq 正序查询区间内的事件"""
        ...

    async def get_last_seq(self, project_id: str) -> int:
        """获取项目当前最大 seq"""
        ...

    async def find_by_idempotency_key(self, project_id: str, key: str) -> Event | None:
        """检查幂等键是否已存在，返回原始事件或 None"""
        ...


class IndexStore(Protocol):
    """索引（projection）存储接口，只由 projection 写入"""

    async def save_state(self, state: ProjectState, since_seq: int) -> None:
        """增量写入 seq 大于 since_seq 的变更"""
        ...

    async def replace_state(self, state: ProjectState) -> None:
        """全量替换某个项目的索引"""
        ...

    async def load_state(self, project_id: str) -> ProjectState | None:
        """装配完整的项目状态"""
        ...

    async def get_watermark(self, project_id: str) -> int | None:
        """索引已折叠到的 seq"""
        ...

    async def list_assignments(
        self,
        project_id: str,
        flt: AssignmentFilter | None = None,
    ) -> list[Assignment]:
        """按条件查询 Assignment"""
        ...

    async def get_assignment(self, project_id: str, task_id: str) -> Assignment | None:
        """根据 task_id 查询 Assignment"""
        ...

    async def list_context_items(
        self,
        project_id: str,
        after_seq: int = 0,
        limit: int | None = None,
    ) -> list[ContextItem]:
        """按摄入顺序分页查询上下文条目"""
        ...
