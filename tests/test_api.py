from __future__ import annotations

import time

import pytest
from fastapi.testclient import TestClient

from api.main import create_app
from common.errors import RateLimitedError
from conftest import FakeStylizer
from worker.worker import TransformQueue


def _client(store, stylizer: FakeStylizer | None = None) -> TestClient:
    queue = TransformQueue(stylizer or FakeStylizer(), delay_seconds=0, timeout_seconds=5)
    return TestClient(create_app(store=store, queue=queue))


def _photo(png: bytes) -> dict:
    return {"photo": ("capture.png", png, "image/png")}


def _wait_done(client: TestClient, job_id: str) -> dict:
    for _ in range(100):
        body = client.get(f"/status/{job_id}").json()
        if body["done"]:
            return body
        time.sleep(0.05)
    pytest.fail(f"job {job_id} never finished")


def test_upload_returns_both_paths(local_store, png_bytes) -> None:
    with _client(local_store) as client:
        resp = client.post("/upload", data={"name": "guest"}, files=_photo(png_bytes))

    assert resp.status_code == 200
    body = resp.json()
    assert body["ok"] is True
    assert body["user"] == "guest"
    assert body["status"] == "done"
    assert body["original_path"].startswith("/booth_uploads/guest_")
    assert body["stylized_path"].endswith("_stylized.png")
    assert "http_status" not in body


def test_upload_without_photo_is_400(local_store) -> None:
    with _client(local_store) as client:
        resp = client.post("/upload", data={"name": "guest"})

    assert resp.status_code == 400
    assert resp.json()["ok"] is False
    assert resp.json()["error"] == "NoFile"


def test_upload_rate_limited_is_429(local_store, png_bytes) -> None:
    stylizer = FakeStylizer(outcomes=[RateLimitedError("slow down")])
    with _client(local_store, stylizer) as client:
        resp = client.post("/upload", data={"name": "guest"}, files=_photo(png_bytes))

    assert resp.status_code == 429
    body = resp.json()
    assert body["error"] == "RateLimited"
    assert "/booth_failed/" in body["original_path"]


def test_async_job_flow(local_store, png_bytes) -> None:
    with _client(local_store) as client:
        created = client.post("/jobs", data={"name": "guest"}, files=_photo(png_bytes))
        assert created.status_code == 202
        job_id = created.json()["job_id"]
        assert created.json()["status"] == "QUEUED"

        status = _wait_done(client, job_id)
        assert status["ok"] is True
        assert status["image"].startswith("data:image/png;base64,")
        assert status["stylized_path"] == f"/booth_outputs/{job_id}_stylized.png"

        result = client.get(f"/jobs/{job_id}/result")
        assert result.status_code == 200
        assert result.headers["content-type"] == "image/png"
        assert result.content == local_store.get(status["stylized_path"])

        gone = client.get(f"/status/{job_id}")
        assert gone.status_code == 404


def test_result_of_sync_upload_is_served_from_the_store(local_store, png_bytes) -> None:
    with _client(local_store) as client:
        body = client.post("/upload", data={"name": "guest"}, files=_photo(png_bytes)).json()
        result = client.get(f"/jobs/{body['job_id']}/result")

    assert result.status_code == 200
    assert result.content == local_store.get(body["stylized_path"])


def test_async_job_without_photo_is_400(local_store) -> None:
    with _client(local_store) as client:
        resp = client.post("/jobs", data={"name": "guest"})

    assert resp.status_code == 400
    assert resp.json()["error"] == "NoFile"


def test_unknown_job_is_404_not_pending(local_store) -> None:
    with _client(local_store) as client:
        resp = client.get("/status/nobody_000000")

    assert resp.status_code == 404
    assert resp.json() == {
        "ok": False,
        "error": "NoSuchJob",
        "message": "No such job.",
        "detail": "no job nobody_000000",
    }


def test_health_reports_queue(local_store) -> None:
    with _client(local_store) as client:
        body = client.get("/health").json()

    assert body == {"ok": True, "storage_backend": "local", "queued": 0, "running": None}


def test_cors_preflight_is_allowed(local_store) -> None:
    with _client(local_store) as client:
        resp = client.options(
            "/upload",
            headers={"Origin": "https://booth.example", "Access-Control-Request-Method": "POST"},
        )

    assert resp.status_code == 200
    assert resp.headers["access-control-allow-origin"] == "*"
