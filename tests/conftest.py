"""crocengine 测试配置 -- 公共 fixture"""

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio
from crocengine.config import EngineSettings
from crocengine.engine import CrocEngine
from crocengine.event_log import EventLog
from crocengine.models import PlanDraft, ReviewerKind, Verdict


@pytest.fixture
def settings(tmp_path: Path) -> EngineSettings:
    """临时数据目录下的引擎配置"""
    return EngineSettings(data_dir=tmp_path / "data")


@pytest.fixture
def project_root(tmp_path: Path) -> Path:
    """带 .git 目录的项目根目录"""
    root = tmp_path / "repo"
    (root / ".git").mkdir(parents=True)
    (root / "README.md").write_text("# demo\n", encoding="utf-8")
    (root / "docs").mkdir()
    (root / "docs" / "design.md").write_text("design notes\n", encoding="utf-8")
    return root


@pytest_asyncio.fixture
async def engine(settings: EngineSettings) -> AsyncGenerator[CrocEngine, None]:
    async with CrocEngine(settings) as eng:
        yield eng


@pytest_asyncio.fixture
async def event_log(settings: EngineSettings) -> AsyncGenerator[EventLog, None]:
    log = EventLog(settings)
    yield log
    await log.close()


@pytest_asyncio.fixture
async def demo(engine: CrocEngine, project_root: Path) -> str:
    """已初始化的 demo 项目"""
    await engine.init("demo", project_root)
    return "demo"


@pytest_asyncio.fixture
async def executing(engine: CrocEngine, demo: str) -> str:
    """计划已通过双重审批、处于 EXECUTING 的 demo 项目"""
    await engine.plan(demo, PlanDraft(title="demo plan", subtasks_preview=["a", "b"]))
    await engine.approve(demo, ReviewerKind.AUTOMATED, Verdict.APPROVE, "lgtm")
    await engine.approve(demo, ReviewerKind.HUMAN, Verdict.APPROVE, "ship it")
    return demo
