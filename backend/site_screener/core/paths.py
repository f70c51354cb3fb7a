# site_screener/core/paths.py
from pathlib import Path

from site_screener.core.config import settings

# 数据目录相对于 backend 根目录解析，不管在哪里启动服务都能定位
BASE_DIR = Path(__file__).resolve().parent.parent.parent

DATA_DIR = Path(settings.DATA_DIR)
if not DATA_DIR.is_absolute():
    DATA_DIR = BASE_DIR / DATA_DIR

ANALYSIS_RESULTS_FILE = DATA_DIR / "analysis-results.json"
FAILED_DATA_FILE = DATA_DIR / "failed-analysis.json"
TASK_REGISTRY_FILE = DATA_DIR / "background-tasks.json"


def ensure_data_dir() -> Path:
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    return DATA_DIR
