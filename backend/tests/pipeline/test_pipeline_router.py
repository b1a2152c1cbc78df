"""HTTP tests for the pipeline routes."""

import pytest
from fastapi.testclient import TestClient

from conftest import FakeRunStore
from vodflow.main import app
from vodflow.modules.pipeline.router import get_pipeline_service
from vodflow.modules.pipeline.service import PipelineService

BODY = {"video_id": "vid-1", "object_key": "uploads/vid-1/movie.mp4", "filename": "movie.mp4"}


@pytest.fixture
def runs() -> FakeRunStore:
    return FakeRunStore()


@pytest.fixture
def dispatched() -> list:
    return []


@pytest.fixture
def client(runs, dispatched):
    service = PipelineService(runs, dispatch=dispatched.append)
    app.dependency_overrides[get_pipeline_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_start_run_accepted(client, dispatched) -> None:
    response = client.post("/pipeline/runs", json=BODY)

    assert response.status_code == 202
    assert response.json()["workflow_id"] == "transcode-vid-1"
    assert dispatched == ["vid-1"]


def test_duplicate_start_coalesces(client, dispatched) -> None:
    client.post("/pipeline/runs", json=BODY)
    response = client.post("/pipeline/runs", json=BODY)

    assert response.status_code == 202
    assert response.json()["coalesced"] is True
    assert dispatched == ["vid-1"]


def test_get_run(client) -> None:
    client.post("/pipeline/runs", json=BODY)

    response = client.get("/pipeline/runs/vid-1")

    assert response.status_code == 200
    assert response.json()["status"] == "active"


def test_get_unknown_run_is_404(client) -> None:
    assert client.get("/pipeline/runs/missing").status_code == 404


def test_cancel_run(client, runs) -> None:
    client.post("/pipeline/runs", json=BODY)

    response = client.delete("/pipeline/runs/vid-1")

    assert response.status_code == 202
    assert runs.runs["vid-1"].cancel_requested is True


def test_invalid_body_is_422(client) -> None:
    response = client.post("/pipeline/runs", json={"video_id": "vid-1"})
    assert response.status_code == 422


def test_dispatch_failure_is_503(runs) -> None:
    def broker_down(video_id: str) -> None:
        raise ConnectionError("broker unreachable")

    app.dependency_overrides[get_pipeline_service] = lambda: PipelineService(runs, dispatch=broker_down)
    try:
        response = TestClient(app).post("/pipeline/runs", json=BODY)
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 503
    assert runs.runs == {}
