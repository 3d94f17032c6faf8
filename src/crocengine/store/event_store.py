"""EventStore SQLite 实现

事件表 append-only：只允许插入，不允许更新或删除（由触发器强制）。
seq 同一 project 内从 1 开始严格递增。
"""

import json
from datetime import datetime

import aiosqlite

from ..models.enums import ActorRole, EventKind
from ..models.event import Actor, Event

_EVENT_COLUMNS = (
    "event_id, project_id, seq, ts, kind, schema_version, "
    "actor_role, actor_id, payload, idempotency_key"
)


class SqliteEventStore:
    """EventStore 的 SQLite 实现"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def append_event(self, event: Event) -> None:
        """追加事件（append-only）

        注意：此方法不自动提交事务，需由调用方管理事务。
        """
        await self._conn.execute(
            f"""
            INSERT INTO events ({_EVENT_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.event_id,
                event.project_id,
                event.seq,
                event.ts.isoformat(),
                event.kind.value,
                event.schema_version,
                event.actor.role.value,
                event.actor.id,
                json.dumps(event.payload, ensure_ascii=False),
                event.idempotency_key,
            ),
        )

    async def get_events(
        self,
        project_id: str,
        from_seq: int = 1,
        to_seq: int | None = None,
        limit: int | None = None,
    ) -> list[Event]:
        """查询 [from_seq, to_seq] 区间内的事件，按 seq 正序"""
        sql = f"SELECT {_EVENT_COLUMNS} FROM events WHERE project_id = ? AND seq >= ?"
        params: list = [project_id, from_seq]
        if to_seq is not None:
            sql += " AND seq <= ?"
            params.append(to_seq)
        sql += " ORDER BY seq ASC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        cursor = await self._conn.execute(sql, params)
        rows = await cursor.fetchall()
        return [self._row_to_event(row) for row in rows]

    async def get_last_seq(self, project_id: str) -> int:
        """获取项目当前最大 seq，空日志返回 0"""
        cursor = await self._conn.execute(
            "SELECT COALESCE(MAX(seq), 0) FROM events WHERE project_id = ?",
            (project_id,),
        )
        row = await cursor.fetchone()
        return row[0] if row else 0

    async def find_by_idempotency_key(self, project_id: str, key: str) -> Event | None:
        """查找携带该幂等键的原始事件

        Returns:
            原始事件，如果不存在返回 None
        """
        cursor = await self._conn.execute(
            f"""
            SELECT {_EVENT_COLUMNS} FROM events
            WHERE project_id = ? AND idempotency_key = ?
            LIMIT 1
            """,
            (project_id, key),
        )
        row = await cursor.fetchone()
        return self._row_to_event(row) if row else None

    @staticmethod
    def _row_to_event(row) -> Event:
        """将数据库行转换为 Event 模型"""
        payload = json.loads(row[8]) if row[8] else {}
        return Event(
            event_id=row[0],
            project_id=row[1],
            seq=row[2],
            ts=datetime.fromisoformat(row[3]),
            kind=EventKind(row[4]),
            schema_version=row[5],
            actor=Actor(role=ActorRole(row[6]), id=row[7]),
            payload=payload,
            idempotency_key=row[9],
        )
