from sqlmodel import SQLModel, create_engine

from site_screener.core.config import settings
from site_screener.core.paths import DATA_DIR, ensure_data_dir


def get_database_uri() -> str:
    if settings.SQLALCHEMY_DATABASE_URI:
        return settings.SQLALCHEMY_DATABASE_URI
    ensure_data_dir()
    return f"sqlite:///{DATA_DIR / 'site_screener.db'}"


_database_uri = get_database_uri()
engine = create_engine(
    _database_uri,
    # 后台任务在事件循环之外的线程中也会访问 SQLite
    connect_args={"check_same_thread": False} if _database_uri.startswith("sqlite") else {},
)


def init_db(db_engine=engine) -> None:
    # 表没有使用 Alembic 迁移，启动时直接创建
    # 必须先导入 site_screener.models，确保所有 SQLModel 表已注册
    from site_screener import models  # noqa: F401

    SQLModel.metadata.create_all(db_engine)
