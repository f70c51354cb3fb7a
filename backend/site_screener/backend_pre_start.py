import logging

from sqlalchemy import Engine
from sqlmodel import Session, select
from tenacity import after_log, before_log, retry, stop_after_attempt, wait_fixed

from site_screener.core.config import settings
from site_screener.core.db import engine, init_db
from site_screener.core.paths import ensure_data_dir
from site_screener.store.record_store import RecordStore

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

max_tries = 60 * 5  # 5 分钟
wait_seconds = 1


@retry(
    stop=stop_after_attempt(max_tries),
    wait=wait_fixed(wait_seconds),
    before=before_log(logger, logging.INFO),
    after=after_log(logger, logging.WARN),
)
def wait_for_db(db_engine: Engine) -> None:
    try:
        with Session(db_engine) as session:
            session.exec(select(1))
    except Exception as e:
        logger.error(e)
        raise e


def check_record_store() -> int:
    """Load the configured record store once so unreadable files show up before serving."""
    store = RecordStore.from_settings()
    return len(store.all())


def main() -> None:
    logger.info(f"Preparing site screener ({settings.ENVIRONMENT})")
    data_dir = ensure_data_dir()
    logger.info(f"Data directory: {data_dir}")
    wait_for_db(engine)
    init_db(engine)
    logger.info(f"Background task table ready, record store holds {check_record_store()} records")


if __name__ == "__main__":
    main()
