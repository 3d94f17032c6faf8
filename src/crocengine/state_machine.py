"""Phase 状态机

合法流转由 models.enums.PHASE_TRANSITIONS 边表定义。
gate 边（PLAN_APPROVED / PLAN_REJECTED / REVIEW_PASSED / REVIEW_REJECTED）
只能由 ReviewGate 在评审结论满足时追加，外部请求一律拒绝。
"""

import structlog

from .event_log import AppendResult, EventLog, PendingBatch
from .exceptions import ValidationError
from .models.enums import AssignmentStatus, EventKind, Phase, find_edge
from .models.event import Actor
from .models.payloads import AssignmentCancelledPayload, PlanDraft, PlanProducedPayload
from .models.project import ProjectState

log = structlog.get_logger()


def check_review_guard(state: ProjectState) -> None:
    """EXECUTING -> REVIEW 的守卫条件

    当前 revision 内不能有未结束的 Assignment，也不能有重试耗尽的 Assignment。
    """
    current = [a for a in state.assignments.values() if a.revision == state.revision]
    open_ids = [a.task_id for a in current if a.is_open]
    if open_ids:
        raise ValidationError(
            f"review requested while assignments are open: {', '.join(sorted(open_ids))}",
            phase=state.phase,
        )
    failed_ids = [a.task_id for a in current if a.status == AssignmentStatus.FAILED]
    if failed_ids:
        raise ValidationError(
            f"review requested while assignments failed: {', '.join(sorted(failed_ids))}",
            phase=state.phase,
        )


def cancel_open_assignments(batch: PendingBatch, reason: str, actor: Actor | None = None) -> int:
    """在当前批次内取消所有未结束的 Assignment，返回取消数量"""
    open_assignments = batch.state.open_assignments()
    for assignment in open_assignments:
        batch.add(
            EventKind.ASSIGNMENT_CANCELLED,
            AssignmentCancelledPayload(task_id=assignment.task_id, reason=reason),
            actor=actor,
        )
    return len(open_assignments)


class PhaseStateMachine:
    """Project phase 流转"""

    def __init__(self, event_log: EventLog) -> None:
        self._log = event_log

    async def request_transition(
        self,
        project_id: str,
        trigger: EventKind,
        *,
        expected_version: int | None = None,
        reason: str = "",
        actor: Actor | None = None,
        plan: PlanDraft | None = None,
    ) -> AppendResult:
        """请求一次 phase 流转

        Args:
            project_id: 项目 ID
            trigger: 流转事件类型
            expected_version: 调用方读取到的 phase_version；不一致时 ConflictError
            reason: 流转原因
            actor: 操作者
            plan: 仅 PLAN_PRODUCED 使用的计划内容

        Raises:
            ValidationError: 边表中不存在该流转、触发器由 gate 专属，或守卫不满足
            ConflictError: expected_version 过期
        """

        def decide(batch: PendingBatch) -> None:
            state = batch.state
            edge = find_edge(state.phase, trigger)
            if edge is None:
                raise ValidationError(f"transition {trigger} rejected", phase=state.phase)
            if edge.gate_owned:
                raise ValidationError(
                    f"transition {trigger} can only be produced by a review gate",
                    phase=state.phase,
                )

            if trigger == EventKind.REVIEW_REQUESTED:
                check_review_guard(state)
            if trigger == EventKind.PLAN_PRODUCED:
                batch.add(
                    trigger,
                    PlanProducedPayload(plan=plan or PlanDraft(), revision=state.revision),
                    actor=actor,
                )
                return
            if trigger in (EventKind.PROJECT_ABORTED, EventKind.PROJECT_FAILED):
                cancel_open_assignments(batch, reason or trigger.value, actor=actor)
            batch.transition(trigger, reason=reason, actor=actor)

        try:
            result = await self._log.commit(
                project_id,
                decide,
                expected_version=expected_version,
            )
        except ValidationError as exc:
            log.info(
                "transition_rejected",
                project_id=project_id,
                trigger=trigger,
                error=str(exc),
            )
            raise

        log.info(
            "phase_transitioned",
            project_id=project_id,
            trigger=trigger,
            phase=result.state.phase,
            phase_version=result.state.phase_version,
        )
        return result

    async def abort(
        self,
        project_id: str,
        reason: str = "",
        *,
        actor: Actor | None = None,
        expected_version: int | None = None,
    ) -> AppendResult:
        """中止项目：取消所有未结束的 Assignment 并进入 FAILED"""
        return await self.request_transition(
            project_id,
            EventKind.PROJECT_ABORTED,
            expected_version=expected_version,
            reason=reason,
            actor=actor,
        )

    @staticmethod
    def allowed_triggers(phase: Phase) -> list[EventKind]:
        """当前 phase 可由外部请求的流转（不含 gate 专属边）"""
        return [
            kind
            for kind in EventKind
            if (edge := find_edge(phase, kind)) is not None and not edge.gate_owned
        ]
