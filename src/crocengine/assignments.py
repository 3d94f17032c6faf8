"""Assignment Tracker

Assignment 状态机：
    PENDING -> IN_PROGRESS -> COMPLETED
                           -> PENDING   （失败且未耗尽重试）
                           -> FAILED    （重试耗尽，升级给 Foreman）
    PENDING / IN_PROGRESS -> CANCELLED

claim 使用 compare-and-append：候选 Assignment 的 updated_seq 是版本号，
提交时若已被其他调用方改变则重新读取并重试。
"""

import structlog
from ulid import ULID

from .event_log import AppendResult, EventLog, PendingBatch
from .exceptions import ConflictError, NotFoundError, RetryExhaustedError, ValidationError
from .models.assignment import Assignment, AssignmentOutcome, TaskSpec
from .models.enums import (
    ActorRole,
    AssignmentStatus,
    EventKind,
    Phase,
    Role,
    validate_assignment_transition,
)
from .models.event import Actor
from .models.payloads import (
    AssignmentCancelledPayload,
    AssignmentCompletedPayload,
    AssignmentCreatedPayload,
    AssignmentFailedPayload,
    AssignmentStartedPayload,
    ForemanEscalationPayload,
)
from .models.project import ProjectState
from .projection import ProjectIndex
from .state_machine import cancel_open_assignments, check_review_guard

log = structlog.get_logger()

# 允许创建 Assignment 的 phase
ASSIGNABLE_PHASES = frozenset({Phase.PLANNING, Phase.PENDING_APPROVAL, Phase.EXECUTING})


def select_claim_candidate(state: ProjectState, role: Role) -> Assignment | None:
    """按 task_id 升序、created_seq 次序选出第一个可领取的 Assignment"""
    candidates = [
        a
        for a in state.assignments.values()
        if a.role == role and a.status == AssignmentStatus.PENDING
    ]
    if not candidates:
        return None
    return min(candidates, key=lambda a: (a.task_id, a.created_seq))


def _require_assignment(state: ProjectState, task_id: str) -> Assignment:
    assignment = state.assignments.get(task_id)
    if assignment is None:
        raise NotFoundError("assignment", task_id)
    return assignment


def _require_transition(
    assignment: Assignment,
    target: AssignmentStatus,
    phase: Phase,
) -> None:
    if not validate_assignment_transition(assignment.status, target):
        raise ValidationError(
            f"assignment '{assignment.task_id}' cannot move from "
            f"{assignment.status} to {target}",
            phase=phase,
        )


def _replayed_assignment(
    result: AppendResult,
    idempotency_key: str | None,
    task_id: str | None = None,
) -> Assignment:
    """幂等重放时，从原事件找回它作用的 Assignment"""
    original_task = result.events[0].payload.get("task_id")
    assignment = result.state.assignments.get(original_task) if original_task else None
    if assignment is None or (task_id is not None and original_task != task_id):
        raise ConflictError(
            f"idempotency key '{idempotency_key}' was used by another operation"
        )
    return assignment


class AssignmentTracker:
    """Assignment 生命周期管理"""

    def __init__(self, event_log: EventLog) -> None:
        self._log = event_log
        self._index = ProjectIndex(event_log)

    async def create_assignment(
        self,
        project_id: str,
        task: TaskSpec,
        role: Role,
        *,
        max_attempts: int | None = None,
        actor: Actor | None = None,
        idempotency_key: str | None = None,
    ) -> Assignment:
        """创建 Assignment（状态 PENDING）

        携带 idempotency_key 的重试返回首次创建的 Assignment，不会重复创建。

        Raises:
            ValidationError: 当前 phase 不允许分配，或 task_id 已存在
            ConflictError: idempotency_key 已被其他操作使用
        """
        task_id = task.task_id or str(ULID())
        attempts = max_attempts or self._log.settings.max_attempts
        if attempts < 1:
            raise ValidationError(f"max_attempts must be >= 1, got {attempts}")

        def decide(batch: PendingBatch) -> Assignment:
            state = batch.state
            if state.phase not in ASSIGNABLE_PHASES:
                raise ValidationError("assignment rejected", phase=state.phase)
            if task_id in state.assignments:
                raise ValidationError(f"task '{task_id}' already exists", phase=state.phase)
            batch.add(
                EventKind.ASSIGNMENT_CREATED,
                AssignmentCreatedPayload(
                    task_id=task_id,
                    title=task.title,
                    description=task.description,
                    role=role,
                    max_attempts=attempts,
                ),
                actor=actor,
            )
            return batch.state.assignments[task_id]

        result = await self._log.commit(project_id, decide, idempotency_key=idempotency_key)
        if result.replayed:
            return _replayed_assignment(result, idempotency_key)
        log.info(
            "assignment_created",
            project_id=project_id,
            task_id=task_id,
            role=role,
        )
        return result.value

    async def claim(
        self,
        project_id: str,
        role: Role,
        *,
        worker_id: str,
    ) -> Assignment | None:
        """领取一个 PENDING 的 Assignment

        Returns:
            领取到的 Assignment（IN_PROGRESS）；没有可领取的任务或项目不在
            EXECUTING 阶段时返回 None

        Raises:
            ConflictError: 连续 claim_max_retries 次都被其他调用方抢先
        """
        actor = Actor(role=ActorRole(role.value), id=worker_id)
        max_retries = self._log.settings.claim_max_retries

        for attempt in range(1, max_retries + 1):
            state = await self._log.state(project_id)
            if state.phase != Phase.EXECUTING:
                return None
            candidate = select_claim_candidate(state, role)
            if candidate is None:
                return None

            def decide(
                batch: PendingBatch, candidate: Assignment = candidate
            ) -> Assignment | None:
                if batch.state.phase != Phase.EXECUTING:
                    return None
                current = batch.state.assignments.get(candidate.task_id)
                if current is None or current.updated_seq != candidate.updated_seq:
                    raise ConflictError(
                        f"assignment '{candidate.task_id}' changed since it was read",
                        expected_version=candidate.updated_seq,
                        actual_version=current.updated_seq if current else None,
                    )
                batch.add(
                    EventKind.ASSIGNMENT_STARTED,
                    AssignmentStartedPayload(
                        task_id=current.task_id,
                        worker_id=worker_id,
                        attempt=current.attempt_count + 1,
                    ),
                    actor=actor,
                )
                return batch.state.assignments[current.task_id]

            try:
                result = await self._log.commit(project_id, decide)
            except ConflictError:
                log.warning(
                    "claim_conflict_retry",
                    project_id=project_id,
                    task_id=candidate.task_id,
                    worker_id=worker_id,
                    attempt=attempt,
                )
                continue

            if result.value is None:
                return None
            log.info(
                "assignment_claimed",
                project_id=project_id,
                task_id=candidate.task_id,
                worker_id=worker_id,
            )
            return result.value

        raise ConflictError(
            f"claim for role {role} in project '{project_id}' lost {max_retries} races"
        )

    async def complete(
        self,
        task_id: str,
        outcome: AssignmentOutcome,
        *,
        project_id: str | None = None,
        actor: Actor | None = None,
        idempotency_key: str | None = None,
    ) -> Assignment:
        """提交执行结果

        成功且当前 revision 已无未结束的 Assignment 时，同一批次内追加
        REVIEW_REQUESTED。失败则计入 attempt_count，未耗尽时回到 PENDING；
        耗尽时标记 FAILED、追加 FOREMAN_ESCALATION、取消其余任务并使项目进入 FAILED。

        Raises:
            NotFoundError: task 不存在
            ValidationError: 项目不在 EXECUTING 阶段，或 Assignment 不在 IN_PROGRESS
            RetryExhaustedError: 本次失败耗尽了重试次数（事件已落盘）
        """
        project_id = project_id or await self.locate(task_id)

        def decide(batch: PendingBatch) -> Assignment:
            state = batch.state
            assignment = _require_assignment(state, task_id)
            if state.phase != Phase.EXECUTING:
                raise ValidationError(
                    f"assignment '{task_id}' can only finish while executing",
                    phase=state.phase,
                )

            if outcome.succeeded:
                _require_transition(assignment, AssignmentStatus.COMPLETED, state.phase)
                batch.add(
                    EventKind.ASSIGNMENT_COMPLETED,
                    AssignmentCompletedPayload(task_id=task_id, summary=outcome.summary),
                    actor=actor,
                )
                self._maybe_request_review(batch)
                return batch.state.assignments[task_id]

            attempt_count = assignment.attempt_count + 1
            terminal = attempt_count >= assignment.max_attempts
            target = AssignmentStatus.FAILED if terminal else AssignmentStatus.PENDING
            _require_transition(assignment, target, state.phase)
            batch.add(
                EventKind.ASSIGNMENT_FAILED,
                AssignmentFailedPayload(
                    task_id=task_id,
                    error=outcome.error,
                    attempt_count=attempt_count,
                    terminal=terminal,
                ),
                actor=actor,
            )
            if terminal:
                batch.add(
                    EventKind.FOREMAN_ESCALATION,
                    ForemanEscalationPayload(
                        task_id=task_id,
                        role=assignment.role,
                        attempt_count=attempt_count,
                        last_error=outcome.error,
                    ),
                )
                reason = f"assignment '{task_id}' exhausted retries"
                cancel_open_assignments(batch, reason)
                batch.transition(EventKind.PROJECT_FAILED, reason=reason)
            return batch.state.assignments[task_id]

        result = await self._log.commit(project_id, decide, idempotency_key=idempotency_key)
        if result.replayed:
            assignment = _replayed_assignment(result, idempotency_key, task_id)
        else:
            assignment = result.value

        if assignment.status == AssignmentStatus.FAILED:
            escalation = next(
                e for e in reversed(result.state.escalations) if e.task_id == task_id
            )
            log.error(
                "assignment_escalated",
                project_id=project_id,
                task_id=task_id,
                attempt_count=assignment.attempt_count,
                last_error=assignment.last_error,
            )
            raise RetryExhaustedError(task_id, assignment.attempt_count, escalation.seq)

        log.info(
            "assignment_finished",
            project_id=project_id,
            task_id=task_id,
            status=assignment.status,
            attempt_count=assignment.attempt_count,
        )
        return assignment

    async def cancel(
        self,
        task_id: str,
        reason: str = "",
        *,
        project_id: str | None = None,
        actor: Actor | None = None,
    ) -> Assignment:
        """取消 PENDING 或 IN_PROGRESS 的 Assignment

        执行者需要自行在下一个检查点观察到取消并停止。
        """
        project_id = project_id or await self.locate(task_id)

        def decide(batch: PendingBatch) -> Assignment:
            assignment = _require_assignment(batch.state, task_id)
            _require_transition(assignment, AssignmentStatus.CANCELLED, batch.state.phase)
            batch.add(
                EventKind.ASSIGNMENT_CANCELLED,
                AssignmentCancelledPayload(task_id=task_id, reason=reason),
                actor=actor,
            )
            return batch.state.assignments[task_id]

        result = await self._log.commit(project_id, decide)
        log.info("assignment_cancelled", project_id=project_id, task_id=task_id, reason=reason)
        return result.value

    async def get(self, task_id: str, project_id: str | None = None) -> Assignment:
        """查询 Assignment

        Raises:
            NotFoundError: task 不存在
        """
        project_id = project_id or await self.locate(task_id)
        assignment = await self._index.assignment(project_id, task_id)
        if assignment is None:
            raise NotFoundError("assignment", task_id)
        return assignment

    async def locate(self, task_id: str) -> str:
        """在所有项目的索引中查找 task 所属的 project_id

        仅为查找而打开的连接在查找后关闭。
        """
        for project_id in self._log.list_project_ids():
            was_open = self._log.is_open(project_id)
            try:
                assignment = await self._index.assignment(project_id, task_id)
            except NotFoundError:
                assignment = None
            if assignment is not None:
                return project_id
            if not was_open:
                await self._log.release(project_id)
        raise NotFoundError("assignment", task_id)

    @staticmethod
    def _maybe_request_review(batch: PendingBatch) -> None:
        """EXECUTING 阶段最后一个任务完成时进入 REVIEW"""
        state = batch.state
        if state.phase != Phase.EXECUTING:
            return
        current = [a for a in state.assignments.values() if a.revision == state.revision]
        if not current:
            return
        try:
            check_review_guard(state)
        except ValidationError:
            return
        batch.transition(EventKind.REVIEW_REQUESTED, reason="all assignments completed")
