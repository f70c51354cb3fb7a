import os

# 测试不写 data 目录
os.environ.setdefault("RECORD_STORE_BACKEND", "memory")
os.environ.setdefault("SQLALCHEMY_DATABASE_URI", "sqlite://")

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import create_engine

from site_screener.core.db import init_db
from site_screener.models import AnalysisConfig
from site_screener.store.backends import MemoryBackend
from site_screener.store.failed_journal import FailedJournal
from site_screener.store.record_store import RecordStore
from tests.utils import StubStageClient, make_config


@pytest.fixture
def config() -> AnalysisConfig:
    return make_config()


@pytest.fixture
def store() -> RecordStore:
    return RecordStore(MemoryBackend(), max_records=1000, retention_days=7)


@pytest.fixture
def journal() -> FailedJournal:
    return FailedJournal(MemoryBackend(), limit=100)


@pytest.fixture
def stub_client() -> StubStageClient:
    return StubStageClient()


@pytest.fixture
def db_engine():
    test_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(test_engine)
    yield test_engine
    test_engine.dispose()
