"""Projection 模块

ProjectState 是事件序列的纯函数折叠结果：apply_event 不做 IO、不修改输入，
同样的事件序列永远得到同样的状态。索引表只是这个折叠结果的缓存，
可以随时通过 rebuild_project 从事件日志完整重建。
"""

import time
from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from .models.assignment import Assignment, AssignmentFilter
from .models.context import ContextItem
from .models.enums import (
    GATE_PHASES,
    TRANSITION_KINDS,
    AssignmentStatus,
    EventKind,
    find_edge,
)
from .models.event import Event
from .models.payloads import (
    AssignmentCancelledPayload,
    AssignmentCompletedPayload,
    AssignmentCreatedPayload,
    AssignmentFailedPayload,
    AssignmentStartedPayload,
    ContextIngestedPayload,
    ForemanEscalationPayload,
    PlanProducedPayload,
    ProjectInitializedPayload,
    ReviewRecordedPayload,
)
from .models.project import ProjectState, ProjectStatus
from .models.review import Escalation, ReviewDecision
from .store import StoreGroup, immediate_transaction

if TYPE_CHECKING:
    from .event_log import EventLog

log = structlog.get_logger()


def apply_event(state: ProjectState | None, event: Event) -> ProjectState | None:
    """将单个事件应用到 ProjectState，返回新状态

    Args:
        state: 当前状态；项目尚未初始化时为 None
        event: 要应用的事件

    Returns:
        新的 ProjectState（输入不会被修改）；
        未初始化项目上的非 PROJECT_INITIALIZED 事件被忽略，仍返回 None
    """
    if event.kind == EventKind.PROJECT_INITIALIZED:
        if state is not None:
            return state.model_copy(update={"last_seq": event.seq, "updated_at": event.ts})
        payload = ProjectInitializedPayload.model_validate(event.payload)
        return ProjectState(
            project_id=event.project_id,
            root_path=payload.root_path,
            last_seq=event.seq,
            created_at=event.ts,
            updated_at=event.ts,
        )

    if state is None:
        return None

    update: dict = {"last_seq": event.seq, "updated_at": event.ts}

    if event.kind in TRANSITION_KINDS:
        update.update(_apply_transition(state, event))
    elif event.kind in _ASSIGNMENT_HANDLERS:
        assignments = dict(state.assignments)
        _ASSIGNMENT_HANDLERS[event.kind](assignments, state, event)
        update["assignments"] = assignments
    elif event.kind == EventKind.FOREMAN_ESCALATION:
        payload = ForemanEscalationPayload.model_validate(event.payload)
        update["escalations"] = [
            *state.escalations,
            Escalation(**payload.model_dump(), seq=event.seq),
        ]
    elif event.kind == EventKind.REVIEW_RECORDED:
        payload = ReviewRecordedPayload.model_validate(event.payload)
        update["reviews"] = [
            *state.reviews,
            ReviewDecision(**payload.model_dump(), seq=event.seq),
        ]
    elif event.kind == EventKind.REVIEW_STALE:
        update["stale_flagged"] = True
    elif event.kind == EventKind.CONTEXT_INGESTED:
        payload = ContextIngestedPayload.model_validate(event.payload)
        if payload.content_digest not in state.context_items:
            context_items = dict(state.context_items)
            context_items[payload.content_digest] = ContextItem(
                path=payload.path,
                content_digest=payload.content_digest,
                size_bytes=payload.size_bytes,
                ingested_seq=event.seq,
            )
            update["context_items"] = context_items

    return state.model_copy(update=update)


def _apply_transition(state: ProjectState, event: Event) -> dict:
    edge = find_edge(state.phase, event.kind)
    if edge is None:
        # 日志中的流转在追加时已校验，这里只可能是手工篡改
        log.warning(
            "projection_edge_missing",
            project_id=state.project_id,
            seq=event.seq,
            phase=state.phase,
            kind=event.kind,
        )
        return {}

    update: dict = {
        "phase": edge.target,
        "phase_version": state.phase_version + 1,
    }
    if edge.bumps_revision:
        update["revision"] = state.revision + 1
    if edge.target in GATE_PHASES:
        update["gate_entered_seq"] = event.seq
        update["gate_entered_at"] = event.ts
        update["stale_flagged"] = False
    else:
        update["gate_entered_seq"] = None
        update["gate_entered_at"] = None
        update["stale_flagged"] = False
    if event.kind == EventKind.PLAN_PRODUCED:
        update["plan"] = PlanProducedPayload.model_validate(event.payload).plan
    return update


def _on_created(assignments: dict[str, Assignment], state: ProjectState, event: Event) -> None:
    payload = AssignmentCreatedPayload.model_validate(event.payload)
    assignments[payload.task_id] = Assignment(
        task_id=payload.task_id,
        project_id=state.project_id,
        title=payload.title,
        description=payload.description,
        role=payload.role,
        max_attempts=payload.max_attempts,
        revision=state.revision,
        created_seq=event.seq,
        updated_seq=event.seq,
    )


def _on_started(assignments: dict[str, Assignment], state: ProjectState, event: Event) -> None:
    payload = AssignmentStartedPayload.model_validate(event.payload)
    _update_assignment(
        assignments,
        payload.task_id,
        event,
        status=AssignmentStatus.IN_PROGRESS,
        claimed_by=payload.worker_id,
    )


def _on_completed(assignments: dict[str, Assignment], state: ProjectState, event: Event) -> None:
    payload = AssignmentCompletedPayload.model_validate(event.payload)
    _update_assignment(
        assignments,
        payload.task_id,
        event,
        status=AssignmentStatus.COMPLETED,
        result_summary=payload.summary,
    )


def _on_failed(assignments: dict[str, Assignment], state: ProjectState, event: Event) -> None:
    payload = AssignmentFailedPayload.model_validate(event.payload)
    _update_assignment(
        assignments,
        payload.task_id,
        event,
        status=AssignmentStatus.FAILED if payload.terminal else AssignmentStatus.PENDING,
        attempt_count=payload.attempt_count,
        last_error=payload.error,
        claimed_by=None,
    )


def _on_cancelled(assignments: dict[str, Assignment], state: ProjectState, event: Event) -> None:
    payload = AssignmentCancelledPayload.model_validate(event.payload)
    _update_assignment(
        assignments,
        payload.task_id,
        event,
        status=AssignmentStatus.CANCELLED,
        claimed_by=None,
    )


def _update_assignment(
    assignments: dict[str, Assignment],
    task_id: str,
    event: Event,
    **changes,
) -> None:
    current = assignments.get(task_id)
    if current is None:
        return
    assignments[task_id] = current.model_copy(update={**changes, "updated_seq": event.seq})


_ASSIGNMENT_HANDLERS = {
    EventKind.ASSIGNMENT_CREATED: _on_created,
    EventKind.ASSIGNMENT_STARTED: _on_started,
    EventKind.ASSIGNMENT_COMPLETED: _on_completed,
    EventKind.ASSIGNMENT_FAILED: _on_failed,
    EventKind.ASSIGNMENT_CANCELLED: _on_cancelled,
}


def fold_events(events: Iterable[Event]) -> ProjectState | None:
    """从空状态依次折叠事件序列"""
    state: ProjectState | None = None
    for event in events:
        state = apply_event(state, event)
    return state


@dataclass
class RebuildReport:
    """rebuild_project 的结果"""

    project_id: str
    event_count: int
    last_seq: int
    assignment_count: int
    elapsed_ms: int


async def rebuild_project(event_log: "EventLog", project_id: str) -> RebuildReport:
    """从事件日志重建某个项目的索引

    流程：
    1. 记录开始时的水位线，不持锁折叠 [1, watermark] 区间的事件
    2. 持项目锁读取水位线之后追加的事件并继续折叠
    3. 在同一事务内清空并写入该项目的索引表

    重建期间的追加不会被阻塞，只有最后的追赶与替换在锁内完成。

    Returns:
        RebuildReport
    """
    start_time = time.monotonic()
    watermark = await event_log.last_seq(project_id)

    await log.ainfo(
        "projection_rebuild_started",
        project_id=project_id,
        watermark=watermark,
    )

    state: ProjectState | None = None
    event_count = 0
    async for event in event_log.read(project_id, to_seq=watermark):
        state = apply_event(state, event)
        event_count += 1

    async def _catch_up_and_replace(group: StoreGroup) -> None:
        nonlocal state, event_count
        async with immediate_transaction(group.conn):
            tail = await group.event_store.get_events(project_id, from_seq=watermark + 1)
            for event in tail:
                state = apply_event(state, event)
                event_count += 1
            if state is None:
                await group.index_store.clear(project_id)
            else:
                await group.index_store.replace_state(state)

    await event_log.query(project_id, _catch_up_and_replace)

    report = RebuildReport(
        project_id=project_id,
        event_count=event_count,
        last_seq=state.last_seq if state is not None else 0,
        assignment_count=len(state.assignments) if state is not None else 0,
        elapsed_ms=int((time.monotonic() - start_time) * 1000),
    )
    await log.ainfo(
        "projection_rebuild_completed",
        project_id=project_id,
        event_count=report.event_count,
        assignment_count=report.assignment_count,
        elapsed_ms=report.elapsed_ms,
    )
    return report


async def verify_index(event_log: "EventLog", project_id: str) -> bool:
    """校验索引与事件日志的完整折叠结果一致"""
    folded: ProjectState | None = None
    async for event in event_log.read(project_id):
        folded = apply_event(folded, event)

    async def _load(group: StoreGroup) -> ProjectState | None:
        return await group.index_store.load_state(project_id)

    indexed = await event_log.query(project_id, _load)
    if folded is not None and indexed is not None and folded.last_seq != indexed.last_seq:
        # 比较期间有新事件追加，以索引水位线为准重新折叠
        folded = None
        async for event in event_log.read(project_id, to_seq=indexed.last_seq):
            folded = apply_event(folded, event)

    matches = folded == indexed
    if not matches:
        log.warning("projection_index_mismatch", project_id=project_id)
    return matches


class ProjectIndex:
    """索引只读查询

    所有查询都走索引表，不读取原始事件。
    """

    def __init__(self, event_log: "EventLog") -> None:
        self._log = event_log

    async def status(self, project_id: str) -> ProjectStatus:
        state = await self._log.state(project_id)
        return ProjectStatus.from_state(state)

    async def assignments(
        self,
        project_id: str,
        flt: AssignmentFilter | None = None,
    ) -> list[Assignment]:
        async def _list(group: StoreGroup) -> list[Assignment]:
            return await group.index_store.list_assignments(project_id, flt)

        await self._log.require(project_id)
        return await self._log.query(project_id, _list)

    async def assignment(self, project_id: str, task_id: str) -> Assignment | None:
        async def _get(group: StoreGroup) -> Assignment | None:
            return await group.index_store.get_assignment(project_id, task_id)

        return await self._log.query(project_id, _get)

    async def context_page(
        self,
        project_id: str,
        after_seq: int = 0,
        limit: int | None = None,
    ) -> list[ContextItem]:
        async def _page(group: StoreGroup) -> list[ContextItem]:
            return await group.index_store.list_context_items(
                project_id, after_seq=after_seq, limit=limit
            )

        return await self._log.query(project_id, _page)
