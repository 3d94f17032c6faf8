"""IndexStore SQLite 实现

projects / assignments / context_items / review_decisions 是 events 的物化视图，
只由 projection 写入；任何时候都可以从 events 表完整重建。
"""

import json
from datetime import datetime

import aiosqlite

from ..models.assignment import Assignment, AssignmentFilter
from ..models.context import ContextItem
from ..models.enums import AssignmentStatus, Gate, Phase, ReviewerKind, Role, Verdict
from ..models.payloads import PlanDraft
from ..models.project import ProjectState
from ..models.review import Escalation, ReviewDecision
from .sqlite_init import INDEX_TABLES

_ASSIGNMENT_COLUMNS = (
    "task_id, project_id, title, description, role, status, attempt_count, "
    "max_attempts, revision, claimed_by, last_error, result_summary, "
    "created_seq, updated_seq"
)


class SqliteIndexStore:
    """IndexStore 的 SQLite 实现

    注意：写方法不自动提交事务，需由调用方在同一事务内与事件写入一起提交。
    """

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    # ------------------------------------------------------------------
    # 写入
    # ------------------------------------------------------------------

    async def save_state(self, state: ProjectState, since_seq: int) -> None:
        """增量写入：项目行 + seq 大于 since_seq 的实体行

        Assignment 的每次变更都会把 updated_seq 推进到对应事件的 seq，
        因此只需写入 updated_seq > since_seq 的行。
        """
        await self._upsert_project(state)
        for assignment in state.assignments.values():
            if assignment.updated_seq > since_seq:
                await self._upsert_assignment(assignment)
        for item in state.context_items.values():
            if item.ingested_seq > since_seq:
                await self._insert_context_item(state.project_id, item)
        for decision in state.reviews:
            if decision.seq > since_seq:
                await self._insert_review(state.project_id, decision)

    async def replace_state(self, state: ProjectState) -> None:
        """全量替换某个项目的索引行（重建时使用）"""
        await self.clear(state.project_id)
        await self.save_state(state, since_seq=0)

    async def clear(self, project_id: str) -> None:
        for table in INDEX_TABLES:
            await self._conn.execute(
                f"DELETE FROM {table} WHERE project_id = ?",
                (project_id,),
            )

    async def _upsert_project(self, state: ProjectState) -> None:
        await self._conn.execute(
            """
            INSERT INTO projects (project_id, root_path, phase, revision, phase_version,
                                  last_seq, created_at, updated_at, plan, gate_entered_seq,
                                  gate_entered_at, stale_flagged, escalations)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(project_id) DO UPDATE SET
                root_path = excluded.root_path,
                phase = excluded.phase,
                revision = excluded.revision,
                phase_version = excluded.phase_version,
                last_seq = excluded.last_seq,
                updated_at = excluded.updated_at,
                plan = excluded.plan,
                gate_entered_seq = excluded.gate_entered_seq,
                gate_entered_at = excluded.gate_entered_at,
                stale_flagged = excluded.stale_flagged,
                escalations = excluded.escalations
            """,
            (
                state.project_id,
                state.root_path,
                state.phase.value,
                state.revision,
                state.phase_version,
                state.last_seq,
                state.created_at.isoformat(),
                state.updated_at.isoformat(),
                state.plan.model_dump_json() if state.plan is not None else None,
                state.gate_entered_seq,
                state.gate_entered_at.isoformat() if state.gate_entered_at else None,
                int(state.stale_flagged),
                json.dumps(
                    [e.model_dump(mode="json") for e in state.escalations],
                    ensure_ascii=False,
                ),
            ),
        )

    async def _upsert_assignment(self, assignment: Assignment) -> None:
        await self._conn.execute(
            f"""
            INSERT OR REPLACE INTO assignments ({_ASSIGNMENT_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                assignment.task_id,
                assignment.project_id,
                assignment.title,
                assignment.description,
                assignment.role.value,
                assignment.status.value,
                assignment.attempt_count,
                assignment.max_attempts,
                assignment.revision,
                assignment.claimed_by,
                assignment.last_error,
                assignment.result_summary,
                assignment.created_seq,
                assignment.updated_seq,
            ),
        )

    async def _insert_context_item(self, project_id: str, item: ContextItem) -> None:
        await self._conn.execute(
            """
            INSERT OR REPLACE INTO context_items (project_id, content_digest, path,
                                                  size_bytes, ingested_seq)
            VALUES (?, ?, ?, ?, ?)
            """,
            (project_id, item.content_digest, item.path, item.size_bytes, item.ingested_seq),
        )

    async def _insert_review(self, project_id: str, decision: ReviewDecision) -> None:
        await self._conn.execute(
            """
            INSERT OR REPLACE INTO review_decisions (project_id, seq, gate, revision,
                                                     reviewer_kind, reviewer_id, verdict,
                                                     rationale)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                project_id,
                decision.seq,
                decision.gate.value,
                decision.revision,
                decision.reviewer_kind.value,
                decision.reviewer_id,
                decision.verdict.value,
                decision.rationale,
            ),
        )

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------

    async def get_watermark(self, project_id: str) -> int | None:
        """索引已折叠到的 seq；索引中没有该项目时返回 None"""
        cursor = await self._conn.execute(
            "SELECT last_seq FROM projects WHERE project_id = ?",
            (project_id,),
        )
        row = await cursor.fetchone()
        return row[0] if row else None

    async def load_state(self, project_id: str) -> ProjectState | None:
        """从索引表装配完整 ProjectState"""
        cursor = await self._conn.execute(
            """
            SELECT project_id, root_path, phase, revision, phase_version, last_seq,
                   created_at, updated_at, plan, gate_entered_seq, gate_entered_at,
                   stale_flagged, escalations
            FROM projects WHERE project_id = ?
            """,
            (project_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None

        assignments = await self.list_assignments(project_id)
        context_items = await self.list_context_items(project_id)
        reviews = await self.list_reviews(project_id)

        return ProjectState(
            project_id=row[0],
            root_path=row[1],
            phase=Phase(row[2]),
            revision=row[3],
            phase_version=row[4],
            last_seq=row[5],
            created_at=datetime.fromisoformat(row[6]),
            updated_at=datetime.fromisoformat(row[7]),
            plan=PlanDraft.model_validate_json(row[8]) if row[8] else None,
            gate_entered_seq=row[9],
            gate_entered_at=datetime.fromisoformat(row[10]) if row[10] else None,
            stale_flagged=bool(row[11]),
            escalations=[Escalation(**e) for e in json.loads(row[12] or "[]")],
            assignments={a.task_id: a for a in assignments},
            context_items={c.content_digest: c for c in context_items},
            reviews=reviews,
        )

    async def list_assignments(
        self,
        project_id: str,
        flt: AssignmentFilter | None = None,
    ) -> list[Assignment]:
        """查询 Assignment 列表，按 created_seq 正序"""
        sql = f"SELECT {_ASSIGNMENT_COLUMNS} FROM assignments WHERE project_id = ?"
        params: list = [project_id]
        if flt is not None:
            if flt.status is not None:
                sql += " AND status = ?"
                params.append(flt.status.value)
            if flt.role is not None:
                sql += " AND role = ?"
                params.append(flt.role.value)
            if flt.revision is not None:
                sql += " AND revision = ?"
                params.append(flt.revision)
        sql += " ORDER BY created_seq ASC"

        cursor = await self._conn.execute(sql, params)
        rows = await cursor.fetchall()
        return [self._row_to_assignment(row) for row in rows]

    async def get_assignment(self, project_id: str, task_id: str) -> Assignment | None:
        cursor = await self._conn.execute(
            f"""
            SELECT {_ASSIGNMENT_COLUMNS} FROM assignments
            WHERE project_id = ? AND task_id = ?
            """,
            (project_id, task_id),
        )
        row = await cursor.fetchone()
        return self._row_to_assignment(row) if row else None

    async def list_context_items(
        self,
        project_id: str,
        after_seq: int = 0,
        limit: int | None = None,
    ) -> list[ContextItem]:
        """按摄入顺序分页查询上下文条目"""
        sql = """
            SELECT path, content_digest, size_bytes, ingested_seq FROM context_items
            WHERE project_id = ? AND ingested_seq > ?
            ORDER BY ingested_seq ASC
        """
        params: list = [project_id, after_seq]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        cursor = await self._conn.execute(sql, params)
        rows = await cursor.fetchall()
        return [
            ContextItem(path=r[0], content_digest=r[1], size_bytes=r[2], ingested_seq=r[3])
            for r in rows
        ]

    async def list_reviews(self, project_id: str) -> list[ReviewDecision]:
        cursor = await self._conn.execute(
            """
            SELECT gate, revision, reviewer_kind, reviewer_id, verdict, rationale, seq
            FROM review_decisions WHERE project_id = ?
            ORDER BY seq ASC
            """,
            (project_id,),
        )
        rows = await cursor.fetchall()
        return [
            ReviewDecision(
                gate=Gate(r[0]),
                revision=r[1],
                reviewer_kind=ReviewerKind(r[2]),
                reviewer_id=r[3],
                verdict=Verdict(r[4]),
                rationale=r[5],
                seq=r[6],
            )
            for r in rows
        ]

    @staticmethod
    def _row_to_assignment(row) -> Assignment:
        """将数据库行转换为 Assignment 模型"""
        return Assignment(
            task_id=row[0],
            project_id=row[1],
            title=row[2],
            description=row[3],
            role=Role(row[4]),
            status=AssignmentStatus(row[5]),
            attempt_count=row[6],
            max_attempts=row[7],
            revision=row[8],
            claimed_by=row[9],
            last_error=row[10],
            result_summary=row[11],
            created_seq=row[12],
            updated_seq=row[13],
        )
