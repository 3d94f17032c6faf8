"""CrocEngine -- 人工监督下的 AI agent 编排核心

事件溯源：append-only 事件日志是唯一事实来源，索引是可重建的物化视图。
"""

from .assignments import AssignmentTracker
from .config import EngineSettings, load_settings
from .context import ContextItemStream, ContextManager
from .engine import CrocEngine, RoleSession
from .event_log import AppendResult, EventLog, EventStream, PendingBatch
from .exceptions import (
    ConflictError,
    CrocEngineError,
    NotFoundError,
    RetryExhaustedError,
    StorageError,
    ValidationError,
)
from .logging_config import setup_logging
from .projection import ProjectIndex, RebuildReport, apply_event, fold_events
from .review_gate import ReviewGate
from .state_machine import PhaseStateMachine

__all__ = [
    # 引擎
    "CrocEngine",
    "RoleSession",
    "EngineSettings",
    "load_settings",
    "setup_logging",
    # 组件
    "EventLog",
    "EventStream",
    "PendingBatch",
    "AppendResult",
    "ProjectIndex",
    "RebuildReport",
    "apply_event",
    "fold_events",
    "PhaseStateMachine",
    "AssignmentTracker",
    "ContextManager",
    "ContextItemStream",
    "ReviewGate",
    # 异常
    "CrocEngineError",
    "StorageError",
    "ValidationError",
    "ConflictError",
    "NotFoundError",
    "RetryExhaustedError",
]
