"""EventLog 测试

测试内容：
1. seq 从 1 开始严格递增、无空洞
2. 幂等键重复追加返回原 seq
3. 流转、Assignment 事件的归属与 payload 校验
4. 提交后重启可读回（持久性）
5. 事件流可重复迭代
6. 失败时整体回滚，不留部分事件
"""

import sqlite3
from pathlib import Path

import aiosqlite
import pytest
from crocengine.config import EngineSettings
from crocengine.event_log import EventLog, PendingBatch
from crocengine.exceptions import NotFoundError, StorageError, ValidationError
from crocengine.models import (
    AssignmentCreatedPayload,
    AssignmentFailedPayload,
    AssignmentStartedPayload,
    AssignmentStatus,
    ContextIngestedPayload,
    EventKind,
    Phase,
    PlanProducedPayload,
    ProjectInitializedPayload,
    Role,
)
from crocengine.store import SqliteEventStore, open_store_group, verify_wal_mode


async def _init(log: EventLog, project_id: str = "demo") -> int:
    return await log.append(
        project_id,
        EventKind.PROJECT_INITIALIZED,
        ProjectInitializedPayload(root_path="/tmp/demo"),
    )


def _context(n: int) -> ContextIngestedPayload:
    return ContextIngestedPayload(path=f"f{n}.md", content_digest=f"digest-{n}", size_bytes=n)


async def _request_plan(log: EventLog, project_id: str = "demo") -> None:
    await log.commit(project_id, lambda batch: batch.transition(EventKind.PLAN_REQUESTED))


class TestOrdering:
    """seq 顺序"""

    async def test_seq_is_gapless_from_one(self, event_log: EventLog):
        assert await _init(event_log) == 1
        for n in range(5):
            await event_log.append("demo", EventKind.CONTEXT_INGESTED, _context(n))

        events = await event_log.read("demo").to_list()
        assert [e.seq for e in events] == [1, 2, 3, 4, 5, 6]
        assert await event_log.last_seq("demo") == 6

    async def test_batch_events_are_consecutive(self, event_log: EventLog):
        await _init(event_log)

        def decide(batch: PendingBatch) -> None:
            for n in range(3):
                batch.add(EventKind.CONTEXT_INGESTED, _context(n))

        result = await event_log.commit("demo", decide)
        assert [e.seq for e in result.events] == [2, 3, 4]
        assert len({e.ts for e in result.events}) == 1
        assert result.state.last_seq == 4

    async def test_projects_are_isolated(self, event_log: EventLog):
        await _init(event_log, "alpha")
        await _init(event_log, "beta")
        await event_log.append("alpha", EventKind.CONTEXT_INGESTED, _context(1))

        assert await event_log.last_seq("alpha") == 2
        assert await event_log.last_seq("beta") == 1
        assert event_log.list_project_ids() == ["alpha", "beta"]


class TestIdempotency:
    """幂等键"""

    async def test_repeated_key_returns_original_seq(self, event_log: EventLog):
        await _init(event_log)
        first = await event_log.append(
            "demo", EventKind.CONTEXT_INGESTED, _context(1), idempotency_key="req-1"
        )
        again = await event_log.append(
            "demo", EventKind.CONTEXT_INGESTED, _context(2), idempotency_key="req-1"
        )
        assert first == again == 2
        assert await event_log.last_seq("demo") == 2

    async def test_key_is_scoped_per_project(self, event_log: EventLog):
        await _init(event_log, "alpha")
        await _init(event_log, "beta")
        a = await event_log.append(
            "alpha", EventKind.CONTEXT_INGESTED, _context(1), idempotency_key="req-1"
        )
        b = await event_log.append(
            "beta", EventKind.CONTEXT_INGESTED, _context(1), idempotency_key="req-1"
        )
        assert a == 2
        assert b == 2

    async def test_replay_is_flagged(self, event_log: EventLog):
        await _init(event_log)

        def decide(batch: PendingBatch) -> None:
            batch.add(EventKind.CONTEXT_INGESTED, _context(1))

        first = await event_log.commit("demo", decide, idempotency_key="k")
        second = await event_log.commit("demo", decide, idempotency_key="k")
        assert not first.replayed
        assert second.replayed
        assert second.seq == first.seq


class TestValidation:
    """追加前校验"""

    async def test_unknown_project(self, event_log: EventLog):
        with pytest.raises(NotFoundError):
            await event_log.append("ghost", EventKind.CONTEXT_INGESTED, _context(1))

    async def test_invalid_project_id(self, event_log: EventLog):
        with pytest.raises(ValidationError):
            await _init(event_log, "../escape")

    async def test_illegal_transition_appends_nothing(self, event_log: EventLog):
        await _init(event_log)
        with pytest.raises(ValidationError, match="current phase is INIT"):
            await event_log.commit("demo", lambda batch: batch.transition(EventKind.REVIEW_PASSED))
        assert await event_log.last_seq("demo") == 1

    @pytest.mark.parametrize(
        "kind",
        [
            EventKind.PLAN_REQUESTED,
            EventKind.REVIEW_PASSED,
            EventKind.ASSIGNMENT_CREATED,
            EventKind.ASSIGNMENT_FAILED,
            EventKind.FOREMAN_ESCALATION,
            EventKind.REVIEW_RECORDED,
        ],
    )
    async def test_append_refuses_component_kinds(self, event_log: EventLog, kind: EventKind):
        """流转、Assignment 与评审事件只能经由所属组件追加"""
        await _init(event_log)
        with pytest.raises(ValidationError, match="owning component"):
            await event_log.append("demo", kind, {})
        assert await event_log.last_seq("demo") == 1

    async def test_gate_edge_requires_gate(self, event_log: EventLog):
        """gate 专属边不能由普通批次暂存"""
        await _init(event_log)
        await _request_plan(event_log)
        await event_log.commit(
            "demo",
            lambda batch: batch.add(EventKind.PLAN_PRODUCED, PlanProducedPayload(revision=0)),
        )

        with pytest.raises(ValidationError, match="review gate"):
            await event_log.commit("demo", lambda batch: batch.transition(EventKind.PLAN_APPROVED))
        state = await event_log.state("demo")
        assert state.phase == Phase.PENDING_APPROVAL
        assert state.last_seq == 3

        result = await event_log.commit(
            "demo",
            lambda batch: batch.transition(EventKind.PLAN_APPROVED, gate=True),
        )
        assert result.state.phase == Phase.EXECUTING

    async def test_malformed_payload_is_typed_error(self, event_log: EventLog):
        await _init(event_log)
        with pytest.raises(ValidationError, match="malformed CONTEXT_INGESTED payload"):
            await event_log.append("demo", EventKind.CONTEXT_INGESTED, {"oops": 1})
        with pytest.raises(ValidationError, match="size_bytes"):
            await event_log.append(
                "demo",
                EventKind.CONTEXT_INGESTED,
                {"path": "a.md", "content_digest": "x", "size_bytes": -1},
            )
        assert await event_log.last_seq("demo") == 1

    async def test_assignment_events_follow_state_machine(self, event_log: EventLog):
        """失败的 Assignment 不能经由伪造的非终态失败事件回到 PENDING"""
        await _init(event_log)
        await _request_plan(event_log)

        def create_and_fail(batch: PendingBatch) -> None:
            batch.add(
                EventKind.ASSIGNMENT_CREATED,
                AssignmentCreatedPayload(task_id="t1", title="t", role=Role.WORKER, max_attempts=1),
            )
            batch.add(
                EventKind.ASSIGNMENT_STARTED,
                AssignmentStartedPayload(task_id="t1", worker_id="w", attempt=1),
            )
            batch.add(
                EventKind.ASSIGNMENT_FAILED,
                AssignmentFailedPayload(task_id="t1", error="boom", attempt_count=1, terminal=True),
            )

        await event_log.commit("demo", create_and_fail)
        before = await event_log.last_seq("demo")

        with pytest.raises(ValidationError, match="attempt 2"):
            await event_log.commit(
                "demo",
                lambda batch: batch.add(
                    EventKind.ASSIGNMENT_FAILED,
                    AssignmentFailedPayload(task_id="t1", attempt_count=1, terminal=False),
                ),
            )
        with pytest.raises(ValidationError, match="cannot move from FAILED"):
            await event_log.commit(
                "demo",
                lambda batch: batch.add(
                    EventKind.ASSIGNMENT_FAILED,
                    AssignmentFailedPayload(task_id="t1", attempt_count=2, terminal=True),
                ),
            )
        with pytest.raises(ValidationError, match="wrong terminal flag"):
            await event_log.commit(
                "demo",
                lambda batch: batch.add(
                    EventKind.ASSIGNMENT_FAILED,
                    AssignmentFailedPayload(task_id="t1", attempt_count=2, terminal=False),
                ),
            )
        assert await event_log.last_seq("demo") == before
        assert (await event_log.state("demo")).assignments["t1"].status == AssignmentStatus.FAILED

    async def test_double_initialization_rejected(self, event_log: EventLog):
        await _init(event_log)
        with pytest.raises(ValidationError):
            await _init(event_log)

    async def test_failed_decision_rolls_back_whole_batch(self, event_log: EventLog):
        await _init(event_log)

        def decide(batch: PendingBatch) -> None:
            batch.add(EventKind.CONTEXT_INGESTED, _context(1))
            batch.add(EventKind.PLAN_APPROVED, {})

        with pytest.raises(ValidationError):
            await event_log.commit("demo", decide)
        assert await event_log.last_seq("demo") == 1
        state = await event_log.state("demo")
        assert state.context_items == {}


class TestStorageFailures:
    """存储故障映射为 StorageError"""

    async def test_unwritable_data_dir(self, tmp_path: Path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory", encoding="utf-8")
        log = EventLog(EngineSettings(data_dir=blocker))
        try:
            with pytest.raises(StorageError):
                await _init(log)
        finally:
            await log.close()

    async def test_write_failure_rolls_back(
        self,
        event_log: EventLog,
        monkeypatch: pytest.MonkeyPatch,
    ):
        await _init(event_log)
        calls = {"n": 0}
        original = SqliteEventStore.append_event

        async def flaky_append(self, event):
            calls["n"] += 1
            if calls["n"] == 2:
                raise sqlite3.OperationalError("disk I/O error")
            await original(self, event)

        monkeypatch.setattr(SqliteEventStore, "append_event", flaky_append)

        def decide(batch: PendingBatch) -> None:
            batch.add(EventKind.CONTEXT_INGESTED, _context(1))
            batch.add(EventKind.CONTEXT_INGESTED, _context(2))

        with pytest.raises(StorageError):
            await event_log.commit("demo", decide)

        monkeypatch.setattr(SqliteEventStore, "append_event", original)
        assert await event_log.last_seq("demo") == 1
        assert (await event_log.state("demo")).last_seq == 1


class TestDurability:
    """进程重启后事件不丢失"""

    async def test_events_survive_reopen(self, settings: EngineSettings):
        log1 = EventLog(settings)
        await _init(log1)
        await _request_plan(log1)
        await log1.close()

        log2 = EventLog(settings)
        try:
            state = await log2.state("demo")
            assert state.phase == Phase.PLANNING
            assert [e.kind for e in await log2.read("demo").to_list()] == [
                EventKind.PROJECT_INITIALIZED,
                EventKind.PLAN_REQUESTED,
            ]
        finally:
            await log2.close()

    async def test_wal_mode_enabled(self, settings: EngineSettings):
        group = await open_store_group(settings.project_db_path("demo"))
        try:
            assert await verify_wal_mode(group.conn)
        finally:
            await group.close()

    async def test_events_table_is_append_only(self, event_log: EventLog, settings: EngineSettings):
        await _init(event_log)
        async with aiosqlite.connect(str(settings.project_db_path("demo"))) as conn:
            with pytest.raises(sqlite3.IntegrityError):
                await conn.execute("UPDATE events SET kind = 'X' WHERE seq = 1")
            with pytest.raises(sqlite3.IntegrityError):
                await conn.execute("DELETE FROM events WHERE seq = 1")


class TestEventStream:
    """事件流"""

    async def test_stream_is_restartable(self, settings: EngineSettings):
        log = EventLog(settings.model_copy(update={"read_page_size": 2}))
        try:
            await _init(log)
            for n in range(4):
                await log.append("demo", EventKind.CONTEXT_INGESTED, _context(n))

            stream = log.read("demo", from_seq=2)
            first = [e.seq async for e in stream]
            second = [e.seq async for e in stream]
            assert first == second == [2, 3, 4, 5]
        finally:
            await log.close()

    async def test_stream_upper_bound_fixed_at_start(self, event_log: EventLog):
        await _init(event_log)
        await event_log.append("demo", EventKind.CONTEXT_INGESTED, _context(1))

        seen = []
        async for event in event_log.read("demo"):
            seen.append(event.seq)
            if event.seq == 1:
                await event_log.append("demo", EventKind.CONTEXT_INGESTED, _context(2))
        assert seen == [1, 2]
        assert await event_log.last_seq("demo") == 3

    async def test_bounded_range(self, event_log: EventLog):
        await _init(event_log)
        for n in range(3):
            await event_log.append(
                "demo",
                EventKind.CONTEXT_INGESTED,
                _context(n),
            )
        events = await event_log.read("demo", from_seq=2, to_seq=3).to_list()
        assert [e.seq for e in events] == [2, 3]


class TestIndexSync:
    """索引落后时自动重建"""

    async def test_missing_index_is_rebuilt_on_open(self, settings: EngineSettings):
        log1 = EventLog(settings)
        await _init(log1)
        await _request_plan(log1)
        await log1.commit(
            "demo",
            lambda batch: batch.add(
                EventKind.ASSIGNMENT_CREATED,
                AssignmentCreatedPayload(task_id="t1", title="t", role=Role.WORKER, max_attempts=3),
            ),
        )
        await log1.close()

        async with aiosqlite.connect(str(settings.project_db_path("demo"))) as conn:
            await conn.execute("DELETE FROM projects")
            await conn.execute("DELETE FROM assignments")
            await conn.commit()

        log2 = EventLog(settings)
        try:
            state = await log2.state("demo")
            assert state.phase == Phase.PLANNING
            assert "t1" in state.assignments
        finally:
            await log2.close()


class TestConnections:
    """连接按需打开与释放"""

    async def test_release_and_reopen(self, event_log: EventLog):
        await _init(event_log)
        assert event_log.is_open("demo")

        await event_log.release("demo")
        assert not event_log.is_open("demo")

        await event_log.append("demo", EventKind.CONTEXT_INGESTED, _context(1))
        assert event_log.is_open("demo")
        assert await event_log.last_seq("demo") == 2

    async def test_stray_database_names_are_ignored(
        self, event_log: EventLog, settings: EngineSettings
    ):
        await _init(event_log)
        (settings.projects_dir / "not a project.db").write_bytes(b"")
        assert event_log.list_project_ids() == ["demo"]
