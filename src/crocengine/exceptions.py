"""CrocEngine 异常体系

所有被拒绝的操作都以带类型的异常返回，且不会追加任何事件。
调用方约定：
- ConflictError -> 重新读取状态后重试
- ValidationError -> 拒绝，附带当前 phase
- StorageError -> 运维故障，需要人工介入
"""


class CrocEngineError(Exception):
    """CrocEngine 基础异常"""

    def __init__(self, message: str, recoverable: bool = False) -> None:
        """
        Args:
            message: 错误描述
            recoverable: 调用方是否可以通过重试恢复
        """
        super().__init__(message)
        self.recoverable = recoverable


class StorageError(CrocEngineError):
    """事件日志读写失败

    当前操作整体中止（事务回滚，不会留下部分事件），调用方可退避重试。
    """

    def __init__(self, message: str, original_error: Exception | None = None) -> None:
        super().__init__(message, recoverable=True)
        self.original_error = original_error


class ValidationError(CrocEngineError):
    """非法的 phase 触发或畸形 payload，同步拒绝"""

    def __init__(self, message: str, phase: str | None = None) -> None:
        if phase is not None:
            message = f"{message} (current phase is {phase})"
        super().__init__(message, recoverable=False)
        self.phase = phase


class ConflictError(CrocEngineError):
    """compare-and-append 竞争失败：其他参与者已先行写入"""

    def __init__(
        self,
        message: str,
        expected_version: int | None = None,
        actual_version: int | None = None,
    ) -> None:
        super().__init__(message, recoverable=True)
        self.expected_version = expected_version
        self.actual_version = actual_version


class NotFoundError(CrocEngineError):
    """未知的 project / task"""

    def __init__(self, entity_type: str, entity_id: str) -> None:
        super().__init__(f"{entity_type} not found: '{entity_id}'")
        self.entity_type = entity_type
        self.entity_id = entity_id


class RetryExhaustedError(CrocEngineError):
    """Assignment 失败次数达到 max_attempts

    对该任务而言是终态。失败、升级（FOREMAN_ESCALATION）事件已经落盘，
    此异常只是把结果显式地告知调用方。
    """

    def __init__(
        self,
        task_id: str,
        attempt_count: int,
        escalation_seq: int,
    ) -> None:
        super().__init__(
            f"Assignment '{task_id}' exhausted retries after {attempt_count} attempts "
            f"(escalation seq={escalation_seq})",
            recoverable=False,
        )
        self.task_id = task_id
        self.attempt_count = attempt_count
        self.escalation_seq = escalation_seq
