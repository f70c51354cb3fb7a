import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session

from site_screener.api.deps import (
    get_analysis_service,
    get_db,
    get_failed_journal,
    get_record_store,
    get_stage_client,
    get_task_manager,
)
from site_screener.core.config import settings
from site_screener.main import app
from site_screener.models import RecordStatus
from site_screener.monitor.job_control import LocalJobControl
from site_screener.monitor.reconcile import ResultReconciler
from site_screener.monitor.task_monitor import BackgroundTaskMonitor
from site_screener.services.analysis_service import AnalysisService
from site_screener.worker_tasks.background import BackgroundTaskManager
from tests.utils import StubStageClient, make_config

API = settings.API_V1_STR


@pytest.fixture
def client(store, journal, db_engine, stub_client):
    manager = BackgroundTaskManager(db_engine, journal=journal, client_factory=lambda: stub_client)
    jobs = LocalJobControl(manager)
    service = AnalysisService(
        store,
        journal,
        jobs,
        BackgroundTaskMonitor(jobs, ResultReconciler(store)),
        client_factory=lambda: stub_client,
    )

    def override_db():
        with Session(db_engine) as session:
            yield session

    app.dependency_overrides = {
        get_db: override_db,
        get_record_store: lambda: store,
        get_failed_journal: lambda: journal,
        get_stage_client: lambda: stub_client,
        get_task_manager: lambda: manager,
        get_analysis_service: lambda: service,
    }
    yield TestClient(app)
    app.dependency_overrides = {}


def _config_json(**overrides):
    return make_config(**overrides).model_dump(mode="json")


def test_add_list_and_delete_records(client):
    r = client.post(f"{API}/analysis-data/", json={"urls": ["a.com", "b.com", "a.com", "bad url"]})
    assert r.status_code == 200
    assert r.json() == {"added": 2, "total": 2, "invalid": ["bad url"]}

    r = client.get(f"{API}/analysis-data/", params={"page": 1, "limit": 1})
    body = r.json()
    assert body["count"] == 2
    assert len(body["data"]) == 1
    assert body["has_next"] is True

    first_id = body["data"][0]["id"]
    r = client.request("DELETE", f"{API}/analysis-data/", json={"ids": [first_id]})
    assert r.json() == {"deleted": 1, "remaining": 1}

    r = client.request("DELETE", f"{API}/analysis-data/", json={})
    assert r.json() == {"deleted": 1, "remaining": 0}


def test_patch_record(client, store):
    store.add_urls(["a.com"])
    record = store.all()[0]

    r = client.patch(f"{API}/analysis-data/{record.id}", json={"status": "completed", "result": "Y"})
    assert r.status_code == 200
    assert r.json()["status"] == "completed"
    assert r.json()["version"] == 1

    r = client.patch(
        f"{API}/analysis-data/{record.id}", params={"expected_version": 0}, json={"reason": "late"}
    )
    assert r.status_code == 409

    r = client.patch(f"{API}/analysis-data/missing", json={"reason": "x"})
    assert r.status_code == 404


def test_pending_urls_and_export(client, store):
    store.add_urls(["a.com", "b.com"])
    b = store.find_by_url("https://b.com")
    store.update(b.id, {"status": RecordStatus.COMPLETED})

    r = client.get(f"{API}/analysis-data/pending-urls")
    assert r.json() == {"urls": ["https://a.com"], "count": 1}

    r = client.get(f"{API}/analysis-data/export", params={"format": "csv"})
    assert r.headers["content-type"].startswith("text/csv")
    lines = r.text.strip().splitlines()
    assert lines[0].startswith("url,status,result")
    assert len(lines) == 3

    r = client.get(f"{API}/analysis-data/export", params={"format": "json"})
    assert [row["url"] for row in r.json()] == ["https://a.com", "https://b.com"]


def test_failed_data_routes(client):
    entry = {
        "url": "https://a.com",
        "stage": "crawling",
        "error_type": "crawl_error",
        "error_message": "HTTP 503",
    }
    created = client.post(f"{API}/failed-data/", json=entry).json()
    assert created["id"].startswith("failed_")

    assert client.get(f"{API}/failed-data/").json()["count"] == 1
    assert client.delete(f"{API}/failed-data/{created['id']}").status_code == 200
    assert client.delete(f"{API}/failed-data/{created['id']}").status_code == 404

    client.post(f"{API}/failed-data/", json=entry)
    assert client.delete(f"{API}/failed-data/").json() == {"message": "Cleared 1 failed entries"}


def test_stage_routes(client):
    r = client.post(f"{API}/crawl", json={"url": "https://a.com"})
    assert r.status_code == 200
    content = r.json()["content"]
    assert content["title"] == "https://a.com"

    r = client.post(f"{API}/analyze", json={"config": _config_json(), "crawled_content": content})
    assert r.json()["success"] is True
    assert r.json()["result"] == "N"

    r = client.post(f"{API}/analyze", json={"config": _config_json(api_key=""), "crawled_content": content})
    assert r.status_code == 400

    r = client.post(f"{API}/analyze", json={"config": _config_json()})
    assert r.status_code == 400

    r = client.post(f"{API}/extract-emails", json={"config": _config_json(), "crawled_content": content})
    assert r.json()["emails"][0]["email"] == "sales@acme.com"

    r = client.post(
        f"{API}/extract-company-info", json={"config": _config_json(), "crawled_content": content}
    )
    assert r.json()["company_info"]["primary_name"] == "Acme"


def test_analysis_run_routes(client, store):
    store.add_urls(["a.com", "b.com"])

    r = client.post(f"{API}/analysis/start", json={"config": _config_json(api_key="")})
    assert r.status_code == 400

    r = client.post(f"{API}/analysis/start", json={"config": _config_json()})
    assert r.status_code == 200
    assert r.json()["mode"] == "foreground"
    assert r.json()["total"] == 2

    # TestClient 在返回前执行完后台任务
    progress = client.get(f"{API}/analysis/progress").json()
    assert progress["running"] is False
    assert progress["current"] == 2
    assert all(r.status == RecordStatus.COMPLETED for r in store.all())

    assert client.post(f"{API}/analysis/stop").json() == {"message": "No run in progress"}

    r = client.post(f"{API}/analysis/extract", json={"config": _config_json()})
    assert r.json()["mode"] == "none"


def test_background_task_routes(client, stub_client):
    r = client.post(
        f"{API}/background-tasks/",
        json={"type": "analyze", "urls": ["a.com", "b.com"], "config": _config_json()},
    )
    assert r.status_code == 200
    task_id = r.json()["task_id"]

    snapshot = client.get(f"{API}/background-tasks/{task_id}").json()
    assert snapshot["status"] == "completed"
    assert snapshot["summary"]["completed"] == 2

    results = client.get(f"{API}/background-tasks/{task_id}/results").json()
    assert len(results["results"]) == 2

    listing = client.get(f"{API}/background-tasks/").json()
    assert listing["count"] == 1
    assert listing["summary"]["completed"] == 1

    assert client.post(f"{API}/background-tasks/{task_id}/cancel").json()["status"] == "completed"
    assert client.post(f"{API}/background-tasks/cleanup").json() == {"message": "Deleted 1 finished tasks"}
    assert client.get(f"{API}/background-tasks/{task_id}").status_code == 404

    r = client.post(f"{API}/background-tasks/", json={"urls": ["bad url"]})
    assert r.status_code == 400
