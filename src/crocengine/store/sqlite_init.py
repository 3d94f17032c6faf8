"""SQLite 数据库初始化

每个 project 一个数据库文件：events 表是 append-only 日志（唯一事实来源），
projects / assignments / context_items / review_decisions 是可随时重建的索引。
"""

import aiosqlite

# events 表 DDL（日志）
_EVENTS_DDL = """
CREATE TABLE IF NOT EXISTS events (
    event_id        TEXT PRIMARY KEY,
    project_id      TEXT NOT NULL,
    seq             INTEGER NOT NULL,
    ts              TEXT NOT NULL,
    kind            TEXT NOT NULL,
    schema_version  INTEGER NOT NULL DEFAULT 1,
    actor_role      TEXT NOT NULL,
    actor_id        TEXT NOT NULL,
    payload         TEXT NOT NULL DEFAULT '{}',
    idempotency_key TEXT
);
"""

_EVENTS_INDEXES = [
    # 项目内事件序号唯一约束（并发写入者计算出相同 seq 时由数据库拒绝）
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_events_project_seq ON events(project_id, seq);",
    # 幂等键唯一约束（仅对非 NULL 值生效）
    (
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_events_idempotency_key "
        "ON events(project_id, idempotency_key) WHERE idempotency_key IS NOT NULL;"
    ),
]

# 日志只允许插入
_EVENTS_TRIGGERS = [
    """
    CREATE TRIGGER IF NOT EXISTS trg_events_no_update
    BEFORE UPDATE ON events
    BEGIN
        SELECT RAISE(ABORT, 'events table is append-only');
    END;
    """,
    """
    CREATE TRIGGER IF NOT EXISTS trg_events_no_delete
    BEFORE DELETE ON events
    BEGIN
        SELECT RAISE(ABORT, 'events table is append-only');
    END;
    """,
]

# 以下为索引表（projection）
_PROJECTS_DDL = """
CREATE TABLE IF NOT EXISTS projects (
    project_id       TEXT PRIMARY KEY,
    root_path        TEXT NOT NULL,
    phase            TEXT NOT NULL,
    revision         INTEGER NOT NULL DEFAULT 0,
    phase_version    INTEGER NOT NULL DEFAULT 0,
    last_seq         INTEGER NOT NULL DEFAULT 0,
    created_at       TEXT NOT NULL,
    updated_at       TEXT NOT NULL,
    plan             TEXT,
    gate_entered_seq INTEGER,
    gate_entered_at  TEXT,
    stale_flagged    INTEGER NOT NULL DEFAULT 0,
    escalations      TEXT NOT NULL DEFAULT '[]'
);
"""

_ASSIGNMENTS_DDL = """
CREATE TABLE IF NOT EXISTS assignments (
    project_id     TEXT NOT NULL,
    task_id        TEXT NOT NULL,
    title          TEXT NOT NULL,
    description    TEXT NOT NULL DEFAULT '',
    role           TEXT NOT NULL,
    status         TEXT NOT NULL,
    attempt_count  INTEGER NOT NULL DEFAULT 0,
    max_attempts   INTEGER NOT NULL,
    revision       INTEGER NOT NULL DEFAULT 0,
    claimed_by     TEXT,
    last_error     TEXT NOT NULL DEFAULT '',
    result_summary TEXT NOT NULL DEFAULT '',
    created_seq    INTEGER NOT NULL,
    updated_seq    INTEGER NOT NULL,

    PRIMARY KEY (project_id, task_id)
);
"""

_CONTEXT_ITEMS_DDL = """
CREATE TABLE IF NOT EXISTS context_items (
    project_id     TEXT NOT NULL,
    content_digest TEXT NOT NULL,
    path           TEXT NOT NULL,
    size_bytes     INTEGER NOT NULL DEFAULT 0,
    ingested_seq   INTEGER NOT NULL,

    PRIMARY KEY (project_id, content_digest)
);
"""

_REVIEW_DECISIONS_DDL = """
CREATE TABLE IF NOT EXISTS review_decisions (
    project_id    TEXT NOT NULL,
    seq           INTEGER NOT NULL,
    gate          TEXT NOT NULL,
    revision      INTEGER NOT NULL,
    reviewer_kind TEXT NOT NULL,
    reviewer_id   TEXT NOT NULL DEFAULT '',
    verdict       TEXT NOT NULL,
    rationale     TEXT NOT NULL DEFAULT '',

    PRIMARY KEY (project_id, seq)
);
"""

_INDEX_INDEXES = [
    # claim 查询：按角色 + 状态过滤
    (
        "CREATE INDEX IF NOT EXISTS idx_assignments_role_status "
        "ON assignments(project_id, role, status);"
    ),
    (
        "CREATE INDEX IF NOT EXISTS idx_context_items_seq "
        "ON context_items(project_id, ingested_seq);"
    ),
]

# 索引表清单（重建时整体清空）
INDEX_TABLES: tuple[str, ...] = (
    "projects",
    "assignments",
    "context_items",
    "review_decisions",
)


async def init_db(conn: aiosqlite.Connection, busy_timeout_ms: int = 5000) -> None:
    """初始化数据库：设置 PRAGMA + 创建表 + 创建索引

    synchronous=FULL 保证 commit 返回时 WAL 已落盘，
    即提交确认后立刻崩溃也不会丢失事件。

    Args:
        conn: aiosqlite 数据库连接
        busy_timeout_ms: 其他进程持有写锁时的等待上限
    """
    await conn.execute("PRAGMA journal_mode = WAL;")
    await conn.execute("PRAGMA synchronous = FULL;")
    await conn.execute(f"PRAGMA busy_timeout = {int(busy_timeout_ms)};")

    for ddl in (
        _EVENTS_DDL,
        _PROJECTS_DDL,
        _ASSIGNMENTS_DDL,
        _CONTEXT_ITEMS_DDL,
        _REVIEW_DECISIONS_DDL,
    ):
        await conn.execute(ddl)

    for sql in _EVENTS_INDEXES + _EVENTS_TRIGGERS + _INDEX_INDEXES:
        await conn.execute(sql)

    await conn.commit()


async def verify_wal_mode(conn: aiosqlite.Connection) -> bool:
    """验证 WAL 模式是否生效

    Returns:
        True 如果 WAL 模式已启用
    """
    cursor = await conn.execute("PRAGMA journal_mode;")
    row = await cursor.fetchone()
    return row is not None and row[0].lower() == "wal"
