"""写事务封装

事件追加与索引更新必须在同一个 SQLite 事务内原子提交：
要么全部可见，要么全部回滚，不会留下部分写入。
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import aiosqlite


@asynccontextmanager
async def immediate_transaction(conn: aiosqlite.Connection) -> AsyncIterator[None]:
    """以 BEGIN IMMEDIATE 开启写事务

    IMMEDIATE 在事务开始时即获取写锁，其他进程的写入者会在 busy_timeout
    内等待，而不是在提交时才发现冲突。连接需以 isolation_level=None 打开。

    Raises:
        Exception: 事务体内的任何异常都会触发回滚后原样抛出
    """
    await conn.execute("BEGIN IMMEDIATE")
    try:
        yield
    except BaseException:
        await conn.rollback()
        raise
    else:
        await conn.commit()
