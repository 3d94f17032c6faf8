"""EventLog -- 每个 project 单写者的 append-only 事件日志

所有状态变更都经由 commit：在项目锁与 BEGIN IMMEDIATE 事务内读取索引状态、
校验版本、由调用方决定要追加的事件、写入事件与索引，然后提交。
任何异常都会回滚，不会留下部分事件。
"""

import asyncio
import re
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, TypeVar

import aiosqlite
import structlog
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from ulid import ULID

from .config import EngineSettings
from .exceptions import (
    ConflictError,
    CrocEngineError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from .models.enums import (
    ASSIGNMENT_KINDS,
    TRANSITION_KINDS,
    AssignmentStatus,
    EventKind,
    find_edge,
    validate_assignment_transition,
)
from .models.event import SYSTEM_ACTOR, Actor, Event
from .models.payloads import PAYLOAD_MODELS, TransitionPayload
from .models.project import ProjectState
from .projection import apply_event, fold_events
from .store import StoreGroup, immediate_transaction, open_store_group

log = structlog.get_logger()

T = TypeVar("T")

_PROJECT_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")

# 只能由所属组件在校验后追加的事件类型
COMPONENT_KINDS: frozenset[EventKind] = (
    TRANSITION_KINDS | ASSIGNMENT_KINDS | {EventKind.REVIEW_RECORDED}
)

_ASSIGNMENT_TARGETS: dict[EventKind, AssignmentStatus] = {
    EventKind.ASSIGNMENT_STARTED: AssignmentStatus.IN_PROGRESS,
    EventKind.ASSIGNMENT_COMPLETED: AssignmentStatus.COMPLETED,
    EventKind.ASSIGNMENT_CANCELLED: AssignmentStatus.CANCELLED,
}


def validate_project_id(project_id: str) -> None:
    """project_id 同时用作数据库文件名，只允许安全字符"""
    if not _PROJECT_ID_RE.match(project_id or ""):
        raise ValidationError(f"invalid project id: {project_id!r}")


class PendingBatch:
    """一次 commit 内待追加的事件批次

    每个事件在 add 时立即折叠进 state，后续决策可以看到之前追加的效果。
    同一批次的事件共享时间戳，幂等键只写在第一个事件上。
    """

    def __init__(
        self,
        project_id: str,
        state: ProjectState | None,
        idempotency_key: str | None = None,
    ) -> None:
        self.project_id = project_id
        self.state = state
        self.events: list[Event] = []
        self._idempotency_key = idempotency_key
        self._ts = datetime.now(UTC)

    def add(
        self,
        kind: EventKind,
        payload: BaseModel | dict[str, Any],
        actor: Actor | None = None,
        *,
        gate: bool = False,
    ) -> Event:
        """暂存一个事件

        Args:
            kind: 事件类型
            payload: payload 模型或 dict，按 PAYLOAD_MODELS 校验
            actor: 操作者，缺省为 system
            gate: 由 ReviewGate 暂存，允许 gate 专属的流转边

        Raises:
            NotFoundError: 项目尚未初始化
            ValidationError: 流转类事件在当前 phase 没有对应的边、
                gate 专属边不是由 gate 暂存，或 payload 不合法
        """
        if self.state is None and kind != EventKind.PROJECT_INITIALIZED:
            raise NotFoundError("project", self.project_id)
        if self.state is not None and kind == EventKind.PROJECT_INITIALIZED:
            raise ValidationError(
                f"project '{self.project_id}' is already initialized",
                phase=self.state.phase,
            )
        if kind in TRANSITION_KINDS:
            edge = find_edge(self.state.phase, kind)
            if edge is None:
                raise ValidationError(f"transition {kind} rejected", phase=self.state.phase)
            if edge.gate_owned and not gate:
                raise ValidationError(
                    f"transition {kind} can only be produced by a review gate",
                    phase=self.state.phase,
                )

        body = self._validate_payload(kind, payload)
        if kind in ASSIGNMENT_KINDS:
            self._check_assignment_event(kind, body)

        event = Event(
            event_id=str(ULID()),
            project_id=self.project_id,
            seq=(self.state.last_seq if self.state is not None else 0) + 1,
            ts=self._ts,
            actor=actor or SYSTEM_ACTOR,
            kind=kind,
            payload=body,
            idempotency_key=None if self.events else self._idempotency_key,
        )
        self.state = apply_event(self.state, event)
        self.events.append(event)
        return event

    def transition(
        self,
        kind: EventKind,
        reason: str = "",
        actor: Actor | None = None,
        *,
        gate: bool = False,
    ) -> Event:
        """暂存一个 phase 流转事件，payload 记录流转前后的 phase"""
        if self.state is None:
            raise NotFoundError("project", self.project_id)
        edge = find_edge(self.state.phase, kind)
        if edge is None:
            raise ValidationError(f"transition {kind} rejected", phase=self.state.phase)
        return self.add(
            kind,
            TransitionPayload(
                from_phase=edge.source,
                to_phase=edge.target,
                reason=reason,
            ),
            actor=actor,
            gate=gate,
        )

    def _check_assignment_event(self, kind: EventKind, body: dict[str, Any]) -> None:
        """Assignment 事件必须符合 Assignment 状态机与重试上限"""
        task_id = body["task_id"]
        current = self.state.assignments.get(task_id)
        if kind == EventKind.ASSIGNMENT_CREATED:
            if current is not None:
                raise ValidationError(f"task '{task_id}' already exists", phase=self.state.phase)
            return
        if current is None:
            raise NotFoundError("assignment", task_id)
        if kind == EventKind.FOREMAN_ESCALATION:
            return

        if kind == EventKind.ASSIGNMENT_FAILED:
            expected_count = current.attempt_count + 1
            if body["attempt_count"] != expected_count:
                raise ValidationError(
                    f"assignment '{task_id}' failure must record attempt {expected_count}",
                    phase=self.state.phase,
                )
            if body["terminal"] != (expected_count >= current.max_attempts):
                raise ValidationError(
                    f"assignment '{task_id}' failure has wrong terminal flag",
                    phase=self.state.phase,
                )
            target = AssignmentStatus.FAILED if body["terminal"] else AssignmentStatus.PENDING
        else:
            target = _ASSIGNMENT_TARGETS[kind]
        if not validate_assignment_transition(current.status, target):
            raise ValidationError(
                f"assignment '{task_id}' cannot move from {current.status} to {target}",
                phase=self.state.phase,
            )

    def _validate_payload(
        self,
        kind: EventKind,
        payload: BaseModel | dict[str, Any],
    ) -> dict[str, Any]:
        body = payload.model_dump(mode="json") if isinstance(payload, BaseModel) else payload
        try:
            model = PAYLOAD_MODELS[kind].model_validate(body)
        except PydanticValidationError as exc:
            first = exc.errors()[0]
            field = ".".join(str(part) for part in first["loc"]) or "payload"
            raise ValidationError(
                f"malformed {kind} payload: {field}: {first['msg']}",
                phase=self.state.phase if self.state is not None else None,
            ) from exc
        return model.model_dump(mode="json")


@dataclass
class AppendResult:
    """commit 的结果"""

    events: list[Event]
    state: ProjectState | None
    replayed: bool = False
    value: Any = None

    @property
    def seq(self) -> int:
        """最后一个事件的 seq；幂等重放时为原事件 seq"""
        if self.events:
            return self.events[-1].seq
        return self.state.last_seq if self.state is not None else 0


@dataclass
class EventStream:
    """有限、可重复迭代的事件流

    每次迭代开始时记录上界，按 seq 分页读取，迭代期间新追加的事件不会出现。
    """

    event_log: "EventLog"
    project_id: str
    from_seq: int = 1
    to_seq: int | None = None
    page_size: int = 500

    def __aiter__(self) -> AsyncIterator[Event]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Event]:
        upper = self.to_seq
        if upper is None:
            upper = await self.event_log.last_seq(self.project_id)
        next_seq = max(self.from_seq, 1)
        while next_seq <= upper:
            page = await self.event_log.read_page(
                self.project_id,
                from_seq=next_seq,
                to_seq=upper,
                limit=self.page_size,
            )
            if not page:
                return
            for event in page:
                yield event
            next_seq = page[-1].seq + 1

    async def to_list(self) -> list[Event]:
        return [event async for event in self]


class EventLog:
    """按 project 划分的事件日志

    每个 project 一个 SQLite 文件和一个连接；同一 project 的所有访问
    （包括只读查询）都在该 project 的 asyncio.Lock 内进行，
    不同 project 之间互不阻塞。
    """

    def __init__(self, settings: EngineSettings) -> None:
        self._settings = settings
        self._groups: dict[str, StoreGroup] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._guard = asyncio.Lock()

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    # ------------------------------------------------------------------
    # 写入
    # ------------------------------------------------------------------

    async def commit(
        self,
        project_id: str,
        decide: Callable[[PendingBatch], T],
        *,
        expected_version: int | None = None,
        idempotency_key: str | None = None,
        allow_missing: bool = False,
    ) -> AppendResult:
        """在项目临界区内原子地决定并追加一批事件

        Args:
            project_id: 项目 ID
            decide: 同步回调，基于 batch.state 校验并通过 batch.add 暂存事件；
                抛出的异常会回滚整个事务
            expected_version: 期望的 phase_version，不一致时 ConflictError
            idempotency_key: 幂等键，已存在时直接返回原事件
            allow_missing: 允许项目尚未初始化（仅 PROJECT_INITIALIZED 使用）

        Returns:
            AppendResult，value 为 decide 的返回值

        Raises:
            NotFoundError: 项目不存在
            ConflictError: 版本不一致，或其他进程抢先写入了相同 seq
            StorageError: 数据库读写失败
        """
        lock = await self._get_project_lock(project_id)
        async with lock:
            group = await self._get_group(project_id, create=allow_missing)
            try:
                async with immediate_transaction(group.conn):
                    if idempotency_key is not None:
                        original = await group.event_store.find_by_idempotency_key(
                            project_id, idempotency_key
                        )
                        if original is not None:
                            state = await group.index_store.load_state(project_id)
                            log.info(
                                "idempotent_replay",
                                project_id=project_id,
                                idempotency_key=idempotency_key,
                                seq=original.seq,
                            )
                            return AppendResult(events=[original], state=state, replayed=True)

                    state = await group.index_store.load_state(project_id)
                    if state is None and not allow_missing:
                        raise NotFoundError("project", project_id)

                    if expected_version is not None:
                        actual = state.phase_version if state is not None else 0
                        if actual != expected_version:
                            raise ConflictError(
                                f"project '{project_id}' phase_version is {actual}, "
                                f"expected {expected_version}",
                                expected_version=expected_version,
                                actual_version=actual,
                            )

                    since_seq = state.last_seq if state is not None else 0
                    batch = PendingBatch(project_id, state, idempotency_key)
                    value = decide(batch)

                    for event in batch.events:
                        await group.event_store.append_event(event)
                    if batch.events:
                        await group.index_store.save_state(batch.state, since_seq=since_seq)
            except CrocEngineError:
                raise
            except aiosqlite.IntegrityError as exc:
                if self._is_seq_conflict(exc) or self._is_idempotency_conflict(exc):
                    log.warning("append_conflict", project_id=project_id, error=str(exc))
                    raise ConflictError(
                        f"concurrent append to project '{project_id}': {exc}"
                    ) from exc
                raise StorageError(f"append to project '{project_id}' failed: {exc}", exc) from exc
            except (aiosqlite.Error, OSError) as exc:
                log.error("append_failed", project_id=project_id, error=str(exc))
                raise StorageError(f"append to project '{project_id}' failed: {exc}", exc) from exc

        if batch.events:
            log.info(
                "events_appended",
                project_id=project_id,
                first_seq=batch.events[0].seq,
                last_seq=batch.events[-1].seq,
                kinds=[e.kind.value for e in batch.events],
            )
        return AppendResult(events=batch.events, state=batch.state, value=value)

    async def append(
        self,
        project_id: str,
        kind: EventKind,
        payload: BaseModel | dict[str, Any],
        *,
        actor: Actor | None = None,
        idempotency_key: str | None = None,
    ) -> int:
        """追加单个事件，返回其 seq

        幂等键已存在时返回原事件的 seq，不追加新事件。
        phase 流转、Assignment 生命周期与评审结论各有归属组件，
        必须经由 PhaseStateMachine / AssignmentTracker / ReviewGate 追加。

        Raises:
            ValidationError: 事件类型由组件专属，或 payload 不合法
        """
        if kind in COMPONENT_KINDS:
            raise ValidationError(f"{kind} events can only be appended by their owning component")
        result = await self.commit(
            project_id,
            lambda batch: batch.add(kind, payload, actor=actor),
            idempotency_key=idempotency_key,
            allow_missing=kind == EventKind.PROJECT_INITIALIZED,
        )
        return result.seq

    # ------------------------------------------------------------------
    # 读取
    # ------------------------------------------------------------------

    async def query(
        self,
        project_id: str,
        reader: Callable[[StoreGroup], Awaitable[T]],
    ) -> T:
        """在项目锁内执行只读查询"""
        lock = await self._get_project_lock(project_id)
        async with lock:
            group = await self._get_group(project_id)
            try:
                return await reader(group)
            except (aiosqlite.Error, OSError) as exc:
                raise StorageError(f"read from project '{project_id}' failed: {exc}", exc) from exc

    def read(
        self,
        project_id: str,
        from_seq: int = 1,
        to_seq: int | None = None,
    ) -> EventStream:
        """返回 [from_seq, to_seq] 区间的事件流"""
        return EventStream(
            event_log=self,
            project_id=project_id,
            from_seq=from_seq,
            to_seq=to_seq,
            page_size=self._settings.read_page_size,
        )

    async def read_page(
        self,
        project_id: str,
        from_seq: int,
        to_seq: int | None = None,
        limit: int | None = None,
    ) -> list[Event]:
        async def _page(group: StoreGroup) -> list[Event]:
            return await group.event_store.get_events(
                project_id, from_seq=from_seq, to_seq=to_seq, limit=limit
            )

        return await self.query(project_id, _page)

    async def last_seq(self, project_id: str) -> int:
        async def _last(group: StoreGroup) -> int:
            return await group.event_store.get_last_seq(project_id)

        return await self.query(project_id, _last)

    async def state(self, project_id: str) -> ProjectState:
        """读取索引中的项目状态

        Raises:
            NotFoundError: 项目不存在或尚未初始化
        """

        async def _load(group: StoreGroup) -> ProjectState | None:
            return await group.index_store.load_state(project_id)

        state = await self.query(project_id, _load)
        if state is None:
            raise NotFoundError("project", project_id)
        return state

    async def require(self, project_id: str) -> None:
        """确认项目存在，否则 NotFoundError"""
        await self.state(project_id)

    async def exists(self, project_id: str) -> bool:
        try:
            await self.state(project_id)
        except NotFoundError:
            return False
        return True

    def list_project_ids(self) -> list[str]:
        """扫描数据目录，返回所有 project ID（按字典序）"""
        projects_dir = self._settings.projects_dir
        if not projects_dir.is_dir():
            return []
        return sorted(
            path.stem for path in projects_dir.glob("*.db") if _PROJECT_ID_RE.match(path.stem)
        )

    # ------------------------------------------------------------------
    # 连接与锁
    # ------------------------------------------------------------------

    async def close(self) -> None:
        async with self._guard:
            groups = list(self._groups.values())
            self._groups.clear()
        for group in groups:
            await group.close()

    def is_open(self, project_id: str) -> bool:
        return project_id in self._groups

    async def release(self, project_id: str) -> None:
        """关闭某个 project 的连接；下次访问时重新打开"""
        lock = await self._get_project_lock(project_id)
        async with lock:
            async with self._guard:
                group = self._groups.pop(project_id, None)
            if group is not None:
                await group.close()

    async def _get_project_lock(self, project_id: str) -> asyncio.Lock:
        """获取 project 级别锁，序列化同一项目的读写。

        连接只在持有该锁时取用和关闭；锁对象本身不回收。
        """
        validate_project_id(project_id)
        async with self._guard:
            lock = self._locks.get(project_id)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[project_id] = lock
            return lock

    async def _get_group(self, project_id: str, create: bool = False) -> StoreGroup:
        validate_project_id(project_id)
        async with self._guard:
            group = self._groups.get(project_id)
            if group is not None:
                return group

            db_path = self._settings.project_db_path(project_id)
            if not create and not db_path.exists():
                raise NotFoundError("project", project_id)

            group = await open_store_group(db_path, self._settings.busy_timeout_ms)
            try:
                await self._resync_index(group, project_id)
            except aiosqlite.Error as exc:
                await group.close()
                raise StorageError(f"cannot sync index for '{project_id}': {exc}", exc) from exc
            self._groups[project_id] = group
            return group

    async def _resync_index(self, group: StoreGroup, project_id: str) -> None:
        """索引缺失或落后于日志时，从日志完整重建索引"""
        async with immediate_transaction(group.conn):
            last_seq = await group.event_store.get_last_seq(project_id)
            watermark = await group.index_store.get_watermark(project_id)
            if last_seq == 0 or (watermark is not None and watermark >= last_seq):
                return
            events = await group.event_store.get_events(project_id)
            state = fold_events(events)
            if state is not None:
                await group.index_store.replace_state(state)
        log.warning(
            "index_resynced",
            project_id=project_id,
            watermark=watermark,
            last_seq=last_seq,
        )

    @staticmethod
    def _is_seq_conflict(error: Exception) -> bool:
        text = str(error)
        return "idx_events_project_seq" in text or "events.project_id, events.seq" in text

    @staticmethod
    def _is_idempotency_conflict(error: Exception) -> bool:
        text = str(error)
        return (
            "idx_events_idempotency_key" in text
            or "events.project_id, events.idempotency_key" in text
        )
