import asyncio
import sys
from pathlib import Path

from loguru import logger

from dbclone.config.loader import load_config
from dbclone.services.run_log import RunStatus
from dbclone.sync.synchronizer import DatabaseSynchronizer

# 移除默认的处理器
logger.remove()

# 添加文件处理器
logger.add(
    "clone.log",
    rotation="500 MB",
    level="INFO",
    format="<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)

# 添加控制台处理器
logger.add(
    sys.stdout,
    level="DEBUG",
    format="<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <level>{message}</level>"
)


def parse_args() -> str:
    """解析命令行参数 config=<path>"""
    config_path = None
    for arg in sys.argv[1:]:
        if arg.startswith("config="):
            config_path = arg.split("=", 1)[1].strip("'\"")
            break

    if not config_path:
        raise ValueError("Missing required argument: config=<path_to_config_file>")

    logger.debug(f"Parsed config path: {config_path}")
    return config_path


async def main() -> int:
    try:
        config_path = parse_args()
        config_file = Path(config_path)

        logger.debug(f"Checking file existence: {config_file.absolute()}")
        if not config_file.exists():
            raise FileNotFoundError(f"Config file not found: {config_file.absolute()}")

        logger.info(f"Loading configuration from: {config_path}")
        config = load_config(str(config_file))

        synchronizer = DatabaseSynchronizer(config)
        run = await synchronizer.run(
            on_progress=lambda progress: logger.info(
                f"Progress: {progress.processed}/{progress.total} jobs ({progress.percent}%), {progress.failed} failed"
            )
        )

        if run.status == RunStatus.COMPLETED:
            logger.success(f"Run {run.id} completed")
            return 0
        logger.error(f"Run {run.id} finished with status {run.status.value}")
        return 1

    except Exception as e:
        logger.error(f"Clone failed: {str(e)}")
        raise


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
