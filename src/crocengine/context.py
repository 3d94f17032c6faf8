"""Context Manager

上下文条目按内容 SHA-256 去重：同一 project 内重复摄入相同内容
直接返回已有条目，不追加事件。
"""

import hashlib
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass
from pathlib import Path

import structlog

from .event_log import EventLog, PendingBatch
from .exceptions import NotFoundError, StorageError
from .models.context import ContextItem, ContextSummary
from .models.enums import EventKind
from .models.event import Actor
from .models.payloads import ContextIngestedPayload
from .projection import ProjectIndex

log = structlog.get_logger()


def content_digest(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


@dataclass
class ContextItemStream:
    """按摄入顺序分页读取的上下文条目流，可重复迭代"""

    index: ProjectIndex
    project_id: str
    page_size: int = 500

    def __aiter__(self) -> AsyncIterator[ContextItem]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[ContextItem]:
        after_seq = 0
        while True:
            page = await self.index.context_page(
                self.project_id,
                after_seq=after_seq,
                limit=self.page_size,
            )
            for item in page:
                yield item
            if len(page) < self.page_size:
                return
            after_seq = page[-1].ingested_seq

    async def to_list(self) -> list[ContextItem]:
        return [item async for item in self]


class ContextManager:
    """上下文摄入与查询"""

    def __init__(self, event_log: EventLog) -> None:
        self._log = event_log
        self._index = ProjectIndex(event_log)

    async def ingest(
        self,
        project_id: str,
        path: str,
        content: bytes | str,
        *,
        actor: Actor | None = None,
    ) -> ContextItem:
        """摄入一份上下文内容

        Returns:
            新摄入的条目；内容已存在时返回已有条目
        """
        item, _ = await self._ingest(project_id, path, content, actor=actor)
        return item

    async def _ingest(
        self,
        project_id: str,
        path: str,
        content: bytes | str,
        *,
        actor: Actor | None = None,
    ) -> tuple[ContextItem, bool]:
        data = content.encode("utf-8") if isinstance(content, str) else content
        digest = content_digest(data)

        def decide(batch: PendingBatch) -> tuple[ContextItem, bool]:
            existing = batch.state.context_items.get(digest)
            if existing is not None:
                return existing, False
            batch.add(
                EventKind.CONTEXT_INGESTED,
                ContextIngestedPayload(path=path, content_digest=digest, size_bytes=len(data)),
                actor=actor,
            )
            return batch.state.context_items[digest], True

        result = await self._log.commit(project_id, decide)
        item, created = result.value
        if created:
            log.info(
                "context_ingested",
                project_id=project_id,
                path=path,
                digest=digest,
                size_bytes=item.size_bytes,
            )
        else:
            log.debug("context_duplicate", project_id=project_id, path=path, digest=digest)
        return item, created

    def list(self, project_id: str) -> ContextItemStream:
        """按摄入顺序列出上下文条目（惰性分页）"""
        return ContextItemStream(
            index=self._index,
            project_id=project_id,
            page_size=self._log.settings.read_page_size,
        )

    async def prime(
        self,
        project_id: str,
        files: Iterable[str | Path],
        *,
        actor: Actor | None = None,
    ) -> ContextSummary:
        """读取并摄入一组文件

        相对路径按项目根目录解析。所有文件先读完再摄入，
        任一文件缺失时直接失败，不追加任何事件。

        Raises:
            NotFoundError: 文件不存在
            StorageError: 文件读取失败
        """
        state = await self._log.state(project_id)
        root = Path(state.root_path)

        loaded: list[tuple[str, bytes]] = []
        for file in files:
            path = Path(file)
            if not path.is_absolute():
                path = root / path
            if not path.is_file():
                raise NotFoundError("file", str(path))
            try:
                loaded.append((str(path), path.read_bytes()))
            except OSError as exc:
                raise StorageError(f"cannot read context file {path}: {exc}", exc) from exc

        summary = ContextSummary(project_id=project_id)
        for path, data in loaded:
            item, created = await self._ingest(project_id, path, data, actor=actor)
            if created:
                summary.ingested.append(item)
            else:
                summary.duplicates.append(item)

        state = await self._log.state(project_id)
        summary.total_items = len(state.context_items)
        log.info(
            "context_primed",
            project_id=project_id,
            ingested=len(summary.ingested),
            duplicates=len(summary.duplicates),
            total_items=summary.total_items,
        )
        return summary
