"""structlog 配置模块

引擎内部统一使用 structlog.get_logger() + snake_case 事件名；
宿主进程（CLI / 未来的 API 服务）在启动时调用一次 setup_logging()。

dev 模式：pretty print 可读输出
json 模式：结构化 JSON 输出，适合写入日志采集
"""

import logging
import os

import structlog


def setup_logging(log_format: str | None = None, log_level: str | None = None) -> None:
    """初始化 structlog 配置

    Args:
        log_format: "json" 或 "dev"，缺省读取 CROCENGINE_LOG_FORMAT（默认 dev）
        log_level: 日志级别，缺省读取 CROCENGINE_LOG_LEVEL（默认 INFO）
    """
    log_format = log_format or os.environ.get("CROCENGINE_LOG_FORMAT", "dev")
    log_level = log_level or os.environ.get("CROCENGINE_LOG_LEVEL", "INFO")

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if log_format == "json":
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer(
            ensure_ascii=False
        )
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=renderer,
        foreign_pre_chain=shared_processors,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    # aiosqlite 的 debug 日志过于嘈杂
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
