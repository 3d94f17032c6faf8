"""Review Gate -- 双重审批（自动化 + 人工）

PENDING_APPROVAL（计划 gate）与 REVIEW（评审 gate）使用同一规则：
- 任一 REJECT：退回 PLANNING，revision + 1，取消未结束的 Assignment
- 当前 (gate, revision) 内同时存在 AUTOMATED APPROVE 与 HUMAN APPROVE：放行
- 否则保持在 gate 内等待

评审结论按 revision 划分作用域，旧 revision 的结论不参与判定。
"""

from datetime import UTC, datetime

import structlog

from .event_log import EventLog, PendingBatch
from .exceptions import ValidationError
from .models.enums import ActorRole, EventKind, Gate, ReviewerKind, Verdict
from .models.event import Actor
from .models.payloads import ReviewRecordedPayload, ReviewStalePayload
from .models.project import GateOutcome, ProjectState
from .state_machine import cancel_open_assignments

log = structlog.get_logger()

_PASS_TRIGGER: dict[Gate, EventKind] = {
    Gate.PLAN: EventKind.PLAN_APPROVED,
    Gate.REVIEW: EventKind.REVIEW_PASSED,
}

_REJECT_TRIGGER: dict[Gate, EventKind] = {
    Gate.PLAN: EventKind.PLAN_REJECTED,
    Gate.REVIEW: EventKind.REVIEW_REJECTED,
}


def gate_satisfied(state: ProjectState, gate: Gate, revision: int) -> bool:
    """当前 (gate, revision) 是否同时具备自动化与人工的 APPROVE"""
    approvals = {
        d.reviewer_kind
        for d in state.decisions_for(gate, revision)
        if d.verdict == Verdict.APPROVE
    }
    return ReviewerKind.AUTOMATED in approvals and ReviewerKind.HUMAN in approvals


class ReviewGate:
    """记录评审结论并判定 gate"""

    def __init__(self, event_log: EventLog) -> None:
        self._log = event_log

    async def record_review(
        self,
        project_id: str,
        reviewer_kind: ReviewerKind,
        verdict: Verdict,
        rationale: str = "",
        *,
        reviewer_id: str = "",
        expected_version: int | None = None,
    ) -> GateOutcome:
        """记录一条评审结论并立即判定

        Raises:
            ValidationError: 项目不在 gate 阶段
            ConflictError: expected_version 过期
        """
        reviewer_id = reviewer_id or reviewer_kind.value.lower()
        actor = Actor(
            role=ActorRole.HUMAN if reviewer_kind == ReviewerKind.HUMAN else ActorRole.REVIEWER,
            id=reviewer_id,
        )

        def decide(batch: PendingBatch) -> GateOutcome:
            state = batch.state
            gate = state.current_gate
            if gate is None:
                raise ValidationError("review decision rejected", phase=state.phase)
            revision = state.revision

            batch.add(
                EventKind.REVIEW_RECORDED,
                ReviewRecordedPayload(
                    gate=gate,
                    revision=revision,
                    reviewer_kind=reviewer_kind,
                    reviewer_id=reviewer_id,
                    verdict=verdict,
                    rationale=rationale,
                ),
                actor=actor,
            )
            decision = batch.state.reviews[-1]

            if verdict == Verdict.REJECT:
                reason = rationale or f"{reviewer_kind} rejected"
                cancel_open_assignments(batch, reason)
                batch.transition(_REJECT_TRIGGER[gate], reason=reason, actor=actor, gate=True)
                status = "rejected"
            elif gate_satisfied(batch.state, gate, revision):
                batch.transition(
                    _PASS_TRIGGER[gate], reason="dual approval", actor=actor, gate=True
                )
                status = "passed"
            else:
                status = "pending"

            return GateOutcome(
                project_id=project_id,
                gate=gate,
                status=status,
                phase=batch.state.phase,
                revision=batch.state.revision,
                decision=decision,
            )

        result = await self._log.commit(project_id, decide, expected_version=expected_version)
        outcome: GateOutcome = result.value
        log.info(
            "review_recorded",
            project_id=project_id,
            gate=outcome.gate,
            reviewer_kind=reviewer_kind,
            verdict=verdict,
            status=outcome.status,
            phase=outcome.phase,
            revision=outcome.revision,
        )
        return outcome

    async def check_stale(self, project_id: str, now: datetime | None = None) -> int | None:
        """人工结论等待超时时追加 REVIEW_STALE（每个 gate/revision 至多一次）

        Returns:
            REVIEW_STALE 事件的 seq；未超时或已标记时返回 None

        Raises:
            ValidationError: now 不带时区
        """
        now = now or datetime.now(UTC)
        if now.tzinfo is None:
            raise ValidationError("now must be timezone-aware")
        timeout_s = self._log.settings.review_stale_after_s

        def decide(batch: PendingBatch) -> int | None:
            state = batch.state
            gate = state.current_gate
            if gate is None or state.stale_flagged or state.gate_entered_at is None:
                return None
            human_decided = any(
                d.reviewer_kind == ReviewerKind.HUMAN
                for d in state.decisions_for(gate, state.revision)
            )
            if human_decided:
                return None
            waited_s = (now - state.gate_entered_at).total_seconds()
            if waited_s < timeout_s:
                return None
            event = batch.add(
                EventKind.REVIEW_STALE,
                ReviewStalePayload(
                    gate=gate,
                    revision=state.revision,
                    waiting_since_seq=state.gate_entered_seq or 0,
                    waited_s=waited_s,
                ),
            )
            return event.seq

        result = await self._log.commit(project_id, decide)
        if result.value is not None:
            log.warning(
                "review_stale",
                project_id=project_id,
                seq=result.value,
                timeout_s=timeout_s,
            )
        return result.value
