"""CLI 入口模块 -- python -m crocengine <command> <project_id>

支持的命令：
  rebuild-projections  从事件日志重建项目索引
  status               打印项目状态（JSON）
  verify               校验索引与事件日志一致
"""

import asyncio
import sys

from .logging_config import setup_logging

_COMMANDS = {
    "rebuild-projections": "从事件日志重建项目索引",
    "status": "打印项目状态（JSON）",
    "verify": "校验索引与事件日志一致",
}


def _usage() -> None:
    print("用法: python -m crocengine <command> <project_id>")
    print("命令:")
    for name, help_text in _COMMANDS.items():
        print(f"  {name:<20} {help_text}")


def main() -> None:
    """CLI 主入口"""
    if len(sys.argv) < 3:
        _usage()
        sys.exit(1)

    command, project_id = sys.argv[1], sys.argv[2]
    if command not in _COMMANDS:
        print(f"未知命令: {command}")
        print(f"可用命令: {', '.join(_COMMANDS)}")
        sys.exit(1)

    setup_logging()
    sys.exit(asyncio.run(run_command(command, project_id)))


async def run_command(command: str, project_id: str) -> int:
    """执行命令并返回进程退出码"""
    from .engine import CrocEngine
    from .exceptions import CrocEngineError

    async with CrocEngine() as engine:
        print(f"数据目录: {engine.settings.data_dir}")
        try:
            if command == "rebuild-projections":
                print("开始重建 Projection...")
                report = await engine.rebuild(project_id)
                print(
                    f"重建完成，处理 {report.event_count} 条事件，"
                    f"{report.assignment_count} 个 Assignment"
                )
            elif command == "status":
                status = await engine.status(project_id)
                print(status.model_dump_json(indent=2))
            elif command == "verify":
                if not await engine.verify(project_id):
                    print("索引与事件日志不一致，请执行 rebuild-projections")
                    return 2
                print("索引与事件日志一致")
        except CrocEngineError as exc:
            print(f"错误: {exc}")
            return 1
    return 0


if __name__ == "__main__":
    main()
