import random
import string
import time
from datetime import datetime
from typing import Any

from sqlmodel import Field, SQLModel

from .analysis_record import utcnow


def new_failed_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"failed_{int(time.time() * 1000)}_{suffix}"


# 写入失败日志时接收的属性
class FailedEntryCreate(SQLModel):
    url: str
    stage: str
    error_type: str
    error_message: str
    request_data: Any | None = None
    response_data: Any | None = None
    stack_trace: str | None = None
    user_agent: str | None = None
    proxy_used: str | None = None
    config: dict[str, Any] | None = None


class FailedEntry(FailedEntryCreate):
    id: str = Field(default_factory=new_failed_id)
    timestamp: datetime = Field(default_factory=utcnow)


class FailedEntriesPublic(SQLModel):
    data: list[FailedEntry]
    count: int
