"""EngineSettings -- 引擎配置加载

从环境变量加载配置，非法值记录 warning 后回退到默认值，不阻塞启动。
"""

import os
from pathlib import Path

import structlog
from pydantic import BaseModel, Field, ValidationError

log = structlog.get_logger()

# 事件流分页大小上限
MAX_READ_PAGE_SIZE: int = 10_000


class EngineSettings(BaseModel):
    """引擎配置 -- 从环境变量加载

    环境变量:
        CROCENGINE_DATA_DIR: 数据目录（默认 data）
        CROCENGINE_MAX_ATTEMPTS: Assignment 最大尝试次数（默认 3）
        CROCENGINE_REVIEW_STALE_AFTER_S: 人工评审超时提示阈值（秒，默认 86400）
        CROCENGINE_CLAIM_MAX_RETRIES: claim 冲突重试次数（默认 3）
        CROCENGINE_READ_PAGE_SIZE: 事件流分页大小（默认 500）
        CROCENGINE_BUSY_TIMEOUT_MS: SQLite busy_timeout（默认 5000）
    """

    data_dir: Path = Field(default=Path("data"), description="数据目录")
    max_attempts: int = Field(default=3, ge=1, description="Assignment 最大尝试次数")
    review_stale_after_s: float = Field(
        default=86400.0,
        gt=0,
        description="人工评审超过该时长未给出结论时追加 REVIEW_STALE",
    )
    claim_max_retries: int = Field(default=3, ge=1, description="claim 冲突重试次数")
    read_page_size: int = Field(
        default=500,
        ge=1,
        le=MAX_READ_PAGE_SIZE,
        description="事件流分页大小",
    )
    busy_timeout_ms: int = Field(default=5000, ge=0, description="SQLite busy_timeout")

    @property
    def projects_dir(self) -> Path:
        """每个 project 一个 SQLite 文件的存放目录"""
        return self.data_dir / "projects"

    def project_db_path(self, project_id: str) -> Path:
        return self.projects_dir / f"{project_id}.db"


_INT_ENV: dict[str, str] = {
    "CROCENGINE_MAX_ATTEMPTS": "max_attempts",
    "CROCENGINE_CLAIM_MAX_RETRIES": "claim_max_retries",
    "CROCENGINE_READ_PAGE_SIZE": "read_page_size",
    "CROCENGINE_BUSY_TIMEOUT_MS": "busy_timeout_ms",
}


def _accept(field_name: str, value: int | float, env_var: str) -> bool:
    """单独校验一个字段的取值；越界时记录 warning 并回退默认值"""
    try:
        EngineSettings(**{field_name: value})
    except ValidationError as exc:
        log.warning(
            "invalid_range_config",
            env_var=env_var,
            value=value,
            error=exc.errors()[0]["msg"],
            fallback=EngineSettings.model_fields[field_name].default,
        )
        return False
    return True


def load_settings() -> EngineSettings:
    """从环境变量加载引擎配置

    Returns:
        EngineSettings 实例
    """
    kwargs: dict = {}

    if val := os.environ.get("CROCENGINE_DATA_DIR"):
        kwargs["data_dir"] = Path(val)

    for env_var, field_name in _INT_ENV.items():
        if val := os.environ.get(env_var):
            try:
                value = int(val)
            except ValueError:
                log.warning(
                    "invalid_int_config",
                    env_var=env_var,
                    value=val,
                    fallback=EngineSettings.model_fields[field_name].default,
                )
                continue
            if _accept(field_name, value, env_var):
                kwargs[field_name] = value

    if val := os.environ.get("CROCENGINE_REVIEW_STALE_AFTER_S"):
        try:
            value = float(val)
        except ValueError:
            log.warning(
                "invalid_float_config",
                env_var="CROCENGINE_REVIEW_STALE_AFTER_S",
                value=val,
                fallback=86400.0,
            )
        else:
            if _accept("review_stale_after_s", value, "CROCENGINE_REVIEW_STALE_AFTER_S"):
                kwargs["review_stale_after_s"] = value

    return EngineSettings(**kwargs)
