import csv
import io
import json
from typing import Any, Literal

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import Response

from site_screener.api.deps import RecordStoreDep
from site_screener.models import (
    AnalysisRecord,
    AnalysisRecordsPublic,
    AnalysisRecordUpdate,
    PendingUrlsPublic,
    RecordsDelete,
    RecordsDeleted,
    UrlsAdded,
    UrlsCreate,
)
from site_screener.store.record_store import StaleWriteError

router = APIRouter()

EXPORT_COLUMNS = [
    "url",
    "status",
    "result",
    "reason",
    "primary_name",
    "full_name",
    "emails",
    "error",
    "created_at",
    "updated_at",
]


@router.get("/", response_model=AnalysisRecordsPublic)
def read_records(
    store: RecordStoreDep,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=1000),
) -> Any:
    """
    分页读取分析记录。
    """
    return store.list(page=page, limit=limit)


@router.post("/", response_model=UrlsAdded)
def add_urls(urls_in: UrlsCreate, store: RecordStoreDep) -> Any:
    """
    批量添加 URL，重复和无效的 URL 会被跳过。
    """
    return store.add_urls(urls_in.urls)


@router.delete("/", response_model=RecordsDeleted)
def delete_records(records_in: RecordsDelete, store: RecordStoreDep) -> Any:
    """
    删除指定记录；不传 ids 时清空全部记录。
    """
    if records_in.ids is None:
        deleted = store.clear()
    else:
        deleted = store.delete_many(records_in.ids)
    return RecordsDeleted(deleted=deleted, remaining=store.count())


@router.get("/pending-urls", response_model=PendingUrlsPublic)
def read_pending_urls(store: RecordStoreDep) -> Any:
    urls = store.find_pending_urls()
    return PendingUrlsPublic(urls=urls, count=len(urls))


@router.get("/export")
def export_records(
    store: RecordStoreDep,
    format: Literal["csv", "json"] = "csv",
) -> Response:
    """
    导出全部记录为 CSV 或 JSON 文件。
    """
    records = store.all()
    if format == "json":
        body = json.dumps(
            [record.model_dump(mode="json") for record in records], ensure_ascii=False, indent=2
        )
        return Response(
            content=body,
            media_type="application/json",
            headers={"Content-Disposition": 'attachment; filename="analysis-results.json"'},
        )

    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=EXPORT_COLUMNS)
    writer.writeheader()
    for record in records:
        writer.writerow(_export_row(record))
    return Response(
        content=buffer.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="analysis-results.csv"'},
    )


@router.get("/{record_id}", response_model=AnalysisRecord)
def read_record(record_id: str, store: RecordStoreDep) -> Any:
    record = store.get(record_id)
    if not record:
        raise HTTPException(status_code=404, detail="Record not found")
    return record


@router.patch("/{record_id}", response_model=AnalysisRecord)
def update_record(
    record_id: str,
    record_in: AnalysisRecordUpdate,
    store: RecordStoreDep,
    expected_version: int | None = None,
) -> Any:
    """
    更新一条记录，可选地带上 expected_version 防止覆盖更新的数据。
    """
    try:
        record = store.update(record_id, record_in.to_patch(), expected_version=expected_version)
    except StaleWriteError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if not record:
        raise HTTPException(status_code=404, detail="Record not found")
    return record


def _export_row(record: AnalysisRecord) -> dict[str, str]:
    company = record.company_info
    return {
        "url": record.url,
        "status": record.status.value,
        "result": record.result.value,
        "reason": record.reason,
        "primary_name": company.primary_name if company else "",
        "full_name": company.full_name if company else "",
        "emails": "; ".join(e.email for e in record.emails or []),
        "error": record.error or "",
        "created_at": record.created_at.isoformat(),
        "updated_at": record.updated_at.isoformat(),
    }
