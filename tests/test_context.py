"""Context Manager 测试

测试内容：
1. 相同内容重复摄入只追加一个事件
2. list 按摄入顺序、可重复迭代
3. prime 读取文件、缺失文件时不追加任何事件
"""

import hashlib
from pathlib import Path

import pytest
from crocengine.config import EngineSettings
from crocengine.engine import CrocEngine
from crocengine.exceptions import NotFoundError
from crocengine.models import EventKind


async def _ingest_count(engine: CrocEngine, project_id: str) -> int:
    events = await engine.read_events(project_id).to_list()
    return [e.kind for e in events].count(EventKind.CONTEXT_INGESTED)


class TestIngest:
    """ingest"""

    async def test_digest_and_size(self, engine: CrocEngine, demo: str):
        item = await engine.ingest(demo, "notes.md", "hello")
        assert item.content_digest == hashlib.sha256(b"hello").hexdigest()
        assert item.size_bytes == 5
        assert item.path == "notes.md"

    async def test_same_content_is_idempotent(self, engine: CrocEngine, demo: str):
        first = await engine.ingest(demo, "a.md", b"same bytes")
        second = await engine.ingest(demo, "b.md", b"same bytes")

        assert second == first
        assert second.path == "a.md"
        assert await _ingest_count(engine, demo) == 1

    async def test_different_content_appends(self, engine: CrocEngine, demo: str):
        await engine.ingest(demo, "a.md", "one")
        await engine.ingest(demo, "a.md", "two")
        assert await _ingest_count(engine, demo) == 2


class TestList:
    """list"""

    async def test_ingestion_order(self, engine: CrocEngine, demo: str):
        for name in ("c.md", "a.md", "b.md"):
            await engine.ingest(demo, name, name * 3)

        items = await engine.context_items(demo).to_list()
        assert [i.path for i in items] == ["c.md", "a.md", "b.md"]
        assert [i.ingested_seq for i in items] == sorted(i.ingested_seq for i in items)

    async def test_stream_pages_and_restarts(self, tmp_path: Path, project_root: Path):
        settings = EngineSettings(data_dir=tmp_path / "paged", read_page_size=2)
        async with CrocEngine(settings) as engine:
            await engine.init("demo", project_root)
            for n in range(5):
                await engine.ingest("demo", f"f{n}.md", f"content {n}")

            stream = engine.context_items("demo")
            first = [i.path async for i in stream]
            second = [i.path async for i in stream]

        assert first == second == [f"f{n}.md" for n in range(5)]


class TestPrime:
    """prime"""

    async def test_prime_relative_paths(
        self,
        engine: CrocEngine,
        demo: str,
        project_root: Path,
    ):
        summary = await engine.prime(demo, ["README.md", "docs/design.md"])

        assert [Path(i.path) for i in summary.ingested] == [
            project_root.resolve() / "README.md",
            project_root.resolve() / "docs" / "design.md",
        ]
        assert summary.duplicates == []
        assert summary.total_items == 2

    async def test_prime_reports_duplicates(
        self,
        engine: CrocEngine,
        demo: str,
        project_root: Path,
    ):
        await engine.prime(demo, ["README.md"])
        copy = project_root / "README.copy.md"
        copy.write_bytes((project_root / "README.md").read_bytes())

        summary = await engine.prime(demo, [copy, "docs/design.md"])

        assert len(summary.duplicates) == 1
        assert len(summary.ingested) == 1
        assert summary.total_items == 2

    async def test_missing_file_appends_nothing(self, engine: CrocEngine, demo: str):
        before = await engine.event_log.last_seq(demo)
        with pytest.raises(NotFoundError, match="missing.md"):
            await engine.prime(demo, ["README.md", "missing.md"])
        assert await engine.event_log.last_seq(demo) == before

    async def test_unknown_project(self, engine: CrocEngine):
        with pytest.raises(NotFoundError):
            await engine.prime("ghost", ["README.md"])
