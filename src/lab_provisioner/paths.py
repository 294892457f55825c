"""Unified path constants for Lab Provisioner.

All local state lives under the working directory:
- config/            # default_config.json and plan files
- provision_logs/    # append-only JSONL run logs, one file per Run
"""

from pathlib import Path
from typing import Optional, Union

# 基础目录（在当前工作目录下）
CONFIG_DIR = Path("config")
LOGS_DIR = Path("provision_logs")

DEFAULT_CONFIG_PATH = CONFIG_DIR / "default_config.json"
DEFAULT_PLAN_FILE = CONFIG_DIR / "lab_plan.json"


def get_logs_dir(base: Optional[Union[str, Path]] = None) -> Path:
    """获取运行日志目录路径（按需创建）."""
    logs_dir = Path(base) if base else LOGS_DIR
    logs_dir.mkdir(parents=True, exist_ok=True)
    return logs_dir
