"""CrocEngine 端到端场景测试

测试内容：
1. init 幂等与根目录校验
2. 计划 -> 双重审批 -> 执行 -> 评审 -> Done 全流程
3. 评审驳回回到 PLANNING
4. 角色会话与简报
5. CLI 命令
"""

import asyncio
from pathlib import Path

import pytest
from crocengine.__main__ import run_command
from crocengine.config import EngineSettings
from crocengine.engine import CrocEngine
from crocengine.exceptions import NotFoundError, ValidationError
from crocengine.models import (
    AssignmentOutcome,
    AssignmentStatus,
    EventKind,
    Phase,
    PlanDraft,
    ReviewerKind,
    Role,
    TaskSpec,
    Verdict,
)
from structlog.testing import capture_logs


class TestInit:
    """init"""

    async def test_fresh_project(self, engine: CrocEngine, project_root: Path):
        handle = await engine.init("demo", project_root)
        assert handle.created
        assert handle.root_path == str(project_root.resolve())

        status = await engine.status("demo")
        assert status.phase == Phase.INIT
        assert status.revision == 0
        assert status.assignments == []

    async def test_same_root_is_idempotent(self, engine: CrocEngine, project_root: Path):
        await engine.init("demo", project_root)
        again = await engine.init("demo", project_root)

        assert not again.created
        assert await engine.event_log.last_seq("demo") == 1

    async def test_other_root_rejected(
        self, engine: CrocEngine, project_root: Path, tmp_path: Path
    ):
        await engine.init("demo", project_root)
        other = tmp_path / "other"
        other.mkdir()
        with pytest.raises(ValidationError, match="already initialized"):
            await engine.init("demo", other)

    async def test_missing_root(self, engine: CrocEngine, tmp_path: Path):
        with pytest.raises(NotFoundError):
            await engine.init("demo", tmp_path / "nowhere")
        assert engine.list_projects() == []

    async def test_invalid_project_id(self, engine: CrocEngine, project_root: Path):
        with pytest.raises(ValidationError):
            await engine.init("../escape", project_root)

    async def test_non_git_root_warns(self, engine: CrocEngine, tmp_path: Path):
        plain = tmp_path / "plain"
        plain.mkdir()
        with capture_logs() as logs:
            await engine.init("plain", plain)
        assert any(entry["event"] == "project_root_not_git" for entry in logs)
        assert engine.list_projects() == ["plain"]


class TestWorkflow:
    """主流程"""

    async def test_plan_waits_for_approval(self, engine: CrocEngine, demo: str):
        outcome = await engine.plan(demo, PlanDraft(title="first"))
        assert outcome.revision == 0

        status = await engine.status(demo)
        assert status.phase == Phase.PENDING_APPROVAL
        assert status.plan.title == "first"

    async def test_full_cycle_to_done(self, engine: CrocEngine, demo: str):
        await engine.plan(demo, PlanDraft(title="ship", subtasks_preview=["a", "b"]))
        await engine.approve(demo, ReviewerKind.AUTOMATED, Verdict.APPROVE)
        await engine.approve(demo, ReviewerKind.HUMAN, Verdict.APPROVE)
        assert (await engine.status(demo)).phase == Phase.EXECUTING

        for task_id in ("a", "b"):
            await engine.assign(demo, TaskSpec(task_id=task_id, title=task_id), Role.WORKER)
        for _ in range(2):
            claimed = await engine.claim(demo, Role.WORKER)
            await engine.complete(claimed.task_id, AssignmentOutcome.success())
        assert (await engine.status(demo)).phase == Phase.REVIEW

        await engine.approve(demo, ReviewerKind.AUTOMATED, Verdict.APPROVE)
        outcome = await engine.approve(demo, ReviewerKind.HUMAN, Verdict.APPROVE)
        assert outcome.phase == Phase.DONE

        kinds = [e.kind for e in await engine.read_events(demo).to_list()]
        assert kinds[0] == EventKind.PROJECT_INITIALIZED
        assert kinds[-1] == EventKind.REVIEW_PASSED
        assert kinds.count(EventKind.PLAN_APPROVED) == 1

    async def test_review_reject_returns_to_planning(self, engine: CrocEngine, executing: str):
        await engine.request_transition(executing, EventKind.REVIEW_REQUESTED)
        outcome = await engine.approve(executing, ReviewerKind.HUMAN, Verdict.REJECT, "redo")

        status = await engine.status(executing)
        assert outcome.status == "rejected"
        assert status.phase == Phase.PLANNING
        assert status.revision == 1

        await engine.plan(executing, PlanDraft(title="second"))
        assert (await engine.status(executing)).phase == Phase.PENDING_APPROVAL

    async def test_concurrent_claims_one_pending(self, engine: CrocEngine, executing: str):
        await engine.assign(executing, TaskSpec(task_id="only", title="only"), Role.WORKER)
        first, second = await asyncio.gather(
            engine.claim(executing, Role.WORKER, worker_id="w1"),
            engine.claim(executing, Role.WORKER, worker_id="w2"),
        )
        assert (first is None) != (second is None)

    async def test_complete_locates_project(self, engine: CrocEngine, executing: str):
        await engine.assign(executing, TaskSpec(task_id="t1", title="t1"), Role.WORKER)
        await engine.claim(executing, Role.WORKER)
        done = await engine.complete("t1", AssignmentOutcome.success())
        assert done.status == AssignmentStatus.COMPLETED

    async def test_state_survives_restart(self, settings: EngineSettings, project_root: Path):
        async with CrocEngine(settings) as engine:
            await engine.init("demo", project_root)
            await engine.plan("demo")
            before = await engine.status("demo")

        async with CrocEngine(settings) as engine:
            after = await engine.status("demo")
        assert after == before

    async def test_assignment_filters(self, engine: CrocEngine, executing: str):
        await engine.assign(executing, TaskSpec(task_id="w1", title="w1"), Role.WORKER)
        await engine.assign(executing, TaskSpec(task_id="r1", title="r1"), Role.REVIEWER)
        await engine.claim(executing, Role.WORKER)

        workers = await engine.assignments(executing, role=Role.WORKER)
        pending = await engine.assignments(executing, status=AssignmentStatus.PENDING)
        assert [a.task_id for a in workers] == ["w1"]
        assert [a.task_id for a in pending] == ["r1"]


class TestRoleSession:
    """角色会话与简报"""

    async def test_worker_session(self, engine: CrocEngine, executing: str):
        await engine.assign(executing, TaskSpec(task_id="t1", title="write docs"), Role.WORKER)
        session = engine.session(executing, Role.WORKER, "worker-7")

        claimed = await session.claim()
        assert claimed.claimed_by == "worker-7"

        item = await session.submit_context("out.md", "result")
        assert item.path == "out.md"

        done = await session.complete("t1", AssignmentOutcome.success("written"))
        assert done.status == AssignmentStatus.COMPLETED

        events = await engine.read_events(executing).to_list()
        completed = next(e for e in events if e.kind == EventKind.ASSIGNMENT_COMPLETED)
        assert completed.actor.id == "worker-7"

    async def test_briefings(self, engine: CrocEngine, executing: str):
        await engine.assign(executing, TaskSpec(task_id="t1", title="write docs"), Role.WORKER)
        await engine.ingest(executing, "README.md", "# demo")

        foreman = await engine.briefing(executing, Role.FOREMAN)
        assert "Foreman Mode" in foreman
        assert "demo plan" in foreman
        assert "t1" in foreman
        assert "README.md" in foreman

        planner = await engine.session(executing, Role.PLANNER, "p").briefing()
        assert "planning mode" in planner

    async def test_planner_sees_rejection_feedback(self, engine: CrocEngine, demo: str):
        await engine.plan(demo)
        await engine.approve(demo, ReviewerKind.HUMAN, Verdict.REJECT, "split the work")

        briefing = await engine.briefing(demo, Role.PLANNER)
        assert "split the work" in briefing


class TestCli:
    """CLI 命令"""

    @pytest.fixture
    def cli_env(self, settings: EngineSettings, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("CROCENGINE_DATA_DIR", str(settings.data_dir))

    async def test_status_and_verify(self, cli_env, demo: str, capsys):
        assert await run_command("status", demo) == 0
        assert '"phase": "INIT"' in capsys.readouterr().out

        assert await run_command("verify", demo) == 0
        assert await run_command("rebuild-projections", demo) == 0
        assert "重建完成" in capsys.readouterr().out

    async def test_unknown_project(self, cli_env, capsys):
        assert await run_command("status", "ghost") == 1
        assert "错误" in capsys.readouterr().out
