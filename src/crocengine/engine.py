"""CrocEngine -- 面向调用方（CLI / UI / agent）的编排入口

每个意图在项目临界区内针对投影状态校验，合法则追加事件并同步更新索引；
被拒绝的意图以带类型的异常返回，且不追加任何事件。
"""

from collections.abc import Iterable
from datetime import datetime
from pathlib import Path

import structlog
from pydantic import ValidationError as PydanticValidationError

from .assignments import AssignmentTracker
from .briefing import render_briefing
from .config import EngineSettings, load_settings
from .context import ContextItemStream, ContextManager
from .event_log import EventLog, EventStream, PendingBatch, validate_project_id
from .exceptions import NotFoundError, ValidationError
from .models.assignment import Assignment, AssignmentFilter, AssignmentOutcome, TaskSpec
from .models.context import ContextItem, ContextSummary
from .models.enums import (
    ActorRole,
    AssignmentStatus,
    EventKind,
    Phase,
    ReviewerKind,
    Role,
    Verdict,
)
from .models.event import Actor
from .models.payloads import PlanDraft, PlanProducedPayload, ProjectInitializedPayload
from .models.project import GateOutcome, PlanOutcome, ProjectHandle, ProjectStatus
from .projection import ProjectIndex, RebuildReport, rebuild_project, verify_index
from .review_gate import ReviewGate
from .state_machine import PhaseStateMachine

log = structlog.get_logger()


class RoleSession:
    """角色能力接口

    Planner / Foreman / Worker / Reviewer 共用同一组能力，
    角色差异只体现在 role 与 actor 身份上。
    """

    def __init__(self, engine: "CrocEngine", project_id: str, role: Role, actor_id: str) -> None:
        self.engine = engine
        self.project_id = project_id
        self.role = role
        self.actor = Actor(role=ActorRole(role.value), id=actor_id)

    async def claim(self) -> Assignment | None:
        return await self.engine.claim(self.project_id, self.role, worker_id=self.actor.id)

    async def complete(
        self,
        task_id: str,
        outcome: AssignmentOutcome,
        *,
        idempotency_key: str | None = None,
    ) -> Assignment:
        return await self.engine.tracker.complete(
            task_id,
            outcome,
            project_id=self.project_id,
            actor=self.actor,
            idempotency_key=idempotency_key,
        )

    async def submit_context(self, path: str, content: bytes | str) -> ContextItem:
        return await self.engine.context.ingest(
            self.project_id,
            path,
            content,
            actor=self.actor,
        )

    async def briefing(self) -> str:
        return await self.engine.briefing(self.project_id, self.role)


class CrocEngine:
    """编排引擎

    用法:
        async with CrocEngine(settings) as engine:
            await engine.init("demo", "/path/to/repo")
            await engine.plan("demo")
    """

    def __init__(self, settings: EngineSettings | None = None) -> None:
        self.settings = settings or load_settings()
        self.event_log = EventLog(self.settings)
        self.index = ProjectIndex(self.event_log)
        self.state_machine = PhaseStateMachine(self.event_log)
        self.tracker = AssignmentTracker(self.event_log)
        self.context = ContextManager(self.event_log)
        self.review_gate = ReviewGate(self.event_log)

    async def __aenter__(self) -> "CrocEngine":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        await self.event_log.close()

    # ------------------------------------------------------------------
    # 项目与计划
    # ------------------------------------------------------------------

    async def init(self, project_id: str, path: str | Path) -> ProjectHandle:
        """初始化项目；同一根目录重复初始化是幂等的

        Raises:
            NotFoundError: 根目录不存在
            ValidationError: project_id 非法，或项目已在其他根目录初始化
        """
        validate_project_id(project_id)
        root = Path(path).expanduser().resolve()
        if not root.is_dir():
            raise NotFoundError("project root", str(root))
        if not (root / ".git").exists():
            log.warning("project_root_not_git", project_id=project_id, root_path=str(root))

        def decide(batch: PendingBatch) -> bool:
            if batch.state is not None:
                if batch.state.root_path != str(root):
                    raise ValidationError(
                        f"project '{project_id}' is already initialized at "
                        f"{batch.state.root_path}",
                        phase=batch.state.phase,
                    )
                return False
            batch.add(
                EventKind.PROJECT_INITIALIZED,
                ProjectInitializedPayload(root_path=str(root)),
            )
            return True

        result = await self.event_log.commit(project_id, decide, allow_missing=True)
        created: bool = result.value
        log.info(
            "project_initialized" if created else "project_already_initialized",
            project_id=project_id,
            root_path=str(root),
        )
        return ProjectHandle(
            project_id=project_id,
            root_path=result.state.root_path,
            db_path=str(self.settings.project_db_path(project_id)),
            created=created,
            phase_version=result.state.phase_version,
        )

    async def plan(
        self,
        project_id: str,
        draft: PlanDraft | None = None,
        *,
        actor: Actor | None = None,
    ) -> PlanOutcome:
        """请求并产出计划，项目进入 PENDING_APPROVAL 等待审批

        INIT 阶段会先追加 PLAN_REQUESTED；PLANNING 阶段（含驳回后）直接产出新计划。

        Raises:
            ValidationError: 当前 phase 不能产出计划
        """

        def decide(batch: PendingBatch) -> int:
            if batch.state.phase == Phase.INIT:
                batch.transition(EventKind.PLAN_REQUESTED, reason="plan requested", actor=actor)
            if batch.state.phase != Phase.PLANNING:
                raise ValidationError("plan rejected", phase=batch.state.phase)
            event = batch.add(
                EventKind.PLAN_PRODUCED,
                PlanProducedPayload(plan=draft or PlanDraft(), revision=batch.state.revision),
                actor=actor,
            )
            return event.seq

        result = await self.event_log.commit(project_id, decide)
        log.info(
            "plan_produced",
            project_id=project_id,
            revision=result.state.revision,
            seq=result.value,
        )
        return PlanOutcome(
            project_id=project_id,
            revision=result.state.revision,
            phase_version=result.state.phase_version,
            plan_seq=result.value,
        )

    async def approve(
        self,
        project_id: str,
        reviewer_kind: ReviewerKind,
        verdict: Verdict,
        rationale: str = "",
        *,
        reviewer_id: str = "",
        expected_version: int | None = None,
    ) -> GateOutcome:
        """在当前 gate（计划审批或评审）记录一条结论"""
        return await self.review_gate.record_review(
            project_id,
            reviewer_kind,
            verdict,
            rationale,
            reviewer_id=reviewer_id,
            expected_version=expected_version,
        )

    async def request_transition(
        self,
        project_id: str,
        trigger: EventKind,
        *,
        expected_version: int | None = None,
        reason: str = "",
    ) -> ProjectStatus:
        result = await self.state_machine.request_transition(
            project_id,
            trigger,
            expected_version=expected_version,
            reason=reason,
        )
        return ProjectStatus.from_state(result.state)

    async def abort(self, project_id: str, reason: str = "") -> ProjectStatus:
        result = await self.state_machine.abort(project_id, reason)
        return ProjectStatus.from_state(result.state)

    async def check_stale_reviews(
        self,
        project_id: str,
        now: datetime | None = None,
    ) -> int | None:
        return await self.review_gate.check_stale(project_id, now)

    # ------------------------------------------------------------------
    # Assignment
    # ------------------------------------------------------------------

    async def assign(
        self,
        project_id: str,
        task: TaskSpec | str,
        role: Role,
        *,
        max_attempts: int | None = None,
        idempotency_key: str | None = None,
    ) -> Assignment:
        """创建 Assignment；task 为字符串时作为标题

        Raises:
            ValidationError: 任务描述不合法，或当前 phase 不允许分配
        """
        if isinstance(task, str):
            try:
                task = TaskSpec(title=task)
            except PydanticValidationError as exc:
                raise ValidationError(f"invalid task: {exc.errors()[0]['msg']}") from exc
        return await self.tracker.create_assignment(
            project_id,
            task,
            role,
            max_attempts=max_attempts,
            idempotency_key=idempotency_key,
        )

    async def claim(
        self,
        project_id: str,
        role: Role,
        *,
        worker_id: str = "",
    ) -> Assignment | None:
        """领取任务；没有可领取的任务时返回 None，不阻塞"""
        return await self.tracker.claim(
            project_id,
            role,
            worker_id=worker_id or role.value.lower(),
        )

    async def complete(
        self,
        task_id: str,
        outcome: AssignmentOutcome,
        *,
        project_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> Assignment:
        return await self.tracker.complete(
            task_id,
            outcome,
            project_id=project_id,
            idempotency_key=idempotency_key,
        )

    async def cancel(
        self,
        task_id: str,
        reason: str = "",
        *,
        project_id: str | None = None,
    ) -> Assignment:
        return await self.tracker.cancel(task_id, reason, project_id=project_id)

    # ------------------------------------------------------------------
    # Context
    # ------------------------------------------------------------------

    async def prime(self, project_id: str, files: Iterable[str | Path]) -> ContextSummary:
        return await self.context.prime(project_id, files)

    async def ingest(self, project_id: str, path: str, content: bytes | str) -> ContextItem:
        return await self.context.ingest(project_id, path, content)

    def context_items(self, project_id: str) -> ContextItemStream:
        return self.context.list(project_id)

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------

    async def status(self, project_id: str) -> ProjectStatus:
        return await self.index.status(project_id)

    async def assignments(
        self,
        project_id: str,
        *,
        status: AssignmentStatus | None = None,
        role: Role | None = None,
        revision: int | None = None,
    ) -> list[Assignment]:
        flt = AssignmentFilter(status=status, role=role, revision=revision)
        return await self.index.assignments(project_id, flt)

    async def assignment(self, task_id: str, *, project_id: str | None = None) -> Assignment:
        return await self.tracker.get(task_id, project_id)

    def read_events(
        self,
        project_id: str,
        from_seq: int = 1,
        to_seq: int | None = None,
    ) -> EventStream:
        return self.event_log.read(project_id, from_seq, to_seq)

    def list_projects(self) -> list[str]:
        return self.event_log.list_project_ids()

    async def briefing(self, project_id: str, role: Role) -> str:
        """渲染某个角色视角的项目简报"""
        state = await self.event_log.state(project_id)
        return render_briefing(state, role)

    def session(self, project_id: str, role: Role, actor_id: str) -> RoleSession:
        return RoleSession(self, project_id, role, actor_id)

    # ------------------------------------------------------------------
    # 维护
    # ------------------------------------------------------------------

    async def rebuild(self, project_id: str) -> RebuildReport:
        await self.event_log.require(project_id)
        return await rebuild_project(self.event_log, project_id)

    async def verify(self, project_id: str) -> bool:
        await self.event_log.require(project_id)
        return await verify_index(self.event_log, project_id)
