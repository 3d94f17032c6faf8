"""CrocEngine Store -- SQLite 持久化实现

每个 project 一个数据库文件；提供工厂函数创建共享数据库连接的 Store 实例组。
"""

from pathlib import Path

import aiosqlite

from ..exceptions import StorageError
from .event_store import SqliteEventStore
from .index_store import SqliteIndexStore
from .protocols import EventStore, IndexStore
from .sqlite_init import INDEX_TABLES, init_db, verify_wal_mode
from .transaction import immediate_transaction


class StoreGroup:
    """Store 实例组 -- 共享同一个数据库连接"""

    def __init__(self, conn: aiosqlite.Connection, db_path: Path) -> None:
        self.conn = conn
        self.db_path = db_path
        self.event_store = SqliteEventStore(conn)
        self.index_store = SqliteIndexStore(conn)

    async def close(self) -> None:
        await self.conn.close()


async def open_store_group(db_path: str | Path, busy_timeout_ms: int = 5000) -> StoreGroup:
    """打开（必要时创建）project 数据库并返回 Store 实例组

    Args:
        db_path: SQLite 数据库文件路径
        busy_timeout_ms: SQLite busy_timeout

    Returns:
        StoreGroup 实例

    Raises:
        StorageError: 数据目录不可写或数据库无法打开
    """
    path = Path(db_path)
    try:
        # 确保数据库目录存在
        path.parent.mkdir(parents=True, exist_ok=True)
        # isolation_level=None：事务边界由 immediate_transaction 显式控制
        conn = await aiosqlite.connect(str(path), isolation_level=None)
    except (OSError, aiosqlite.Error) as exc:
        raise StorageError(f"cannot open project database {path}: {exc}", exc) from exc

    try:
        await init_db(conn, busy_timeout_ms=busy_timeout_ms)
    except aiosqlite.Error as exc:
        await conn.close()
        raise StorageError(f"cannot initialize project database {path}: {exc}", exc) from exc

    return StoreGroup(conn=conn, db_path=path)


__all__ = [
    "StoreGroup",
    "open_store_group",
    "EventStore",
    "IndexStore",
    "SqliteEventStore",
    "SqliteIndexStore",
    "INDEX_TABLES",
    "init_db",
    "verify_wal_mode",
    "immediate_transaction",
]
